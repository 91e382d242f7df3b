from .pci_calculator import calculate_pci, calculate_astm_pci, determine_severity
from .deduct_tables import (
    get_deduct_value,
    apply_multiple_deduct_correction,
    trace_multiple_deduct_correction,
    get_pci_rating,
    get_pixel_based_pci_rating,
    get_pci_color,
)

__all__ = [
    'calculate_pci',
    'calculate_astm_pci',
    'determine_severity',
    'get_deduct_value',
    'apply_multiple_deduct_correction',
    'trace_multiple_deduct_correction',
    'get_pci_rating',
    'get_pixel_based_pci_rating',
    'get_pci_color',
]
