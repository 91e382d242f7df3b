import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Union

from roadscan.models.pavement import (
    DamageMetrics,
    DeductBreakdown,
    DefectType,
    PCIResult,
    PixelPercentages,
    SeverityLevel,
)
from roadscan.utils.coercion import coerce_finite_number
from .deduct_tables import (
    apply_multiple_deduct_correction,
    get_deduct_value,
    get_pci_rating,
    get_pixel_based_pci_rating,
)

logger = logging.getLogger(__name__)

# Power-law curves (deduct = a * density^b, capped), medium-severity approximations
POWER_LAW_CURVES = {
    'alligator': {'a': 28.0, 'b': 0.45, 'max': 80.0},
    'pothole': {'a': 100.0, 'b': 0.60, 'max': 100.0},
    'longitudinal': {'a': 8.0, 'b': 0.65, 'max': 40.0},
    'transverse': {'a': 7.5, 'b': 0.60, 'max': 40.0},
    'sealed': {'a': 3.0, 'b': 0.50, 'max': 15.0},
}

# Diminishing weights for the sorted deducts; anything past the list uses the last one
DEDUCT_WEIGHTS = (1.0, 0.7, 0.4, 0.1)

# Severity keywords, checked in order
SEVERITY_KEYWORDS = (
    (SeverityLevel.HIGH, ('high', 'severe', 'major', 'critical')),
    (SeverityLevel.MEDIUM, ('medium', 'moderate', 'mid')),
    (SeverityLevel.LOW, ('low', 'minor', 'slight')),
)
SEVERITY_FIELDS = ('joint_severity', 'pixel_severity', 'mm_severity')


def round_half_up(value: float, digits: int = 1) -> float:
    factor = 10 ** digits
    return math.floor(value * factor + 0.5) / factor


def _density_from(values: Mapping[str, Any], *keys: str) -> float:
    for key in keys:
        numeric = coerce_finite_number(values.get(key))
        if numeric is not None:
            return max(0.0, numeric)
    return 0.0


def calculate_pci(pixel_percentages: Union[PixelPercentages, Mapping[str, Any], None],
                  verbose: bool = False,
                  segment_id: Optional[Any] = None) -> PCIResult:
    """
    Calculate the Pavement Condition Index from pixel coverage percentages

    Each category with density > 0 gets a deduct of min(cap, a * density^b).
    Deducts are sorted descending and weighted 1.0 / 0.7 / 0.4 / 0.1 so several
    simultaneous defects do not stack linearly; the weighted total is capped at 100.

    Args:
        pixel_percentages: Coverage percentage per defect category
        verbose: Log the per-segment calculation at INFO
        segment_id: Label used in the verbose log

    Returns:
        PCIResult with a 0-100 score rated on the pixel-based bands
    """
    if isinstance(pixel_percentages, PixelPercentages):
        raw = pixel_percentages.model_dump()
    else:
        raw = dict(pixel_percentages or {})

    densities = {
        'alligator': _density_from(raw, 'alligator'),
        'transverse': _density_from(raw, 'transverse'),
        'longitudinal': _density_from(raw, 'longitudinal'),
        'sealed': _density_from(raw, 'sealed_crack', 'sealed'),
        'pothole': _density_from(raw, 'pothole'),
    }

    deducts = []
    breakdown = {'transverse': 0.0, 'longitudinal': 0.0, 'alligator': 0.0, 'pothole': 0.0}
    for defect_type, density in densities.items():
        if density <= 0:
            continue
        curve = POWER_LAW_CURVES[defect_type]
        value = min(curve['a'] * density ** curve['b'], curve['max'])
        deducts.append((defect_type, value))
        # Sealed cracks are reported under transverse
        if defect_type == 'sealed':
            breakdown['transverse'] += value
        else:
            breakdown[defect_type] = value

    deducts.sort(key=lambda item: item[1], reverse=True)
    total_cdv = 0.0
    for i, (_, value) in enumerate(deducts):
        weight = DEDUCT_WEIGHTS[i] if i < len(DEDUCT_WEIGHTS) else DEDUCT_WEIGHTS[-1]
        total_cdv += value * weight
    total_cdv = min(100.0, total_cdv)

    pci_score = max(0.0, 100.0 - total_cdv)
    pci_rating = get_pixel_based_pci_rating(pci_score)

    if verbose:
        label = f"Segment {segment_id}" if segment_id is not None else "Segment"
        logger.info(f"Power law PCI calculation - {label}")
        logger.info(f"  Input densities: {densities}")
        logger.info(f"  Calculated deducts: {[f'{t}: {v:.2f}' for t, v in deducts]}")
        logger.info(f"  Total CDV (with diminishing weights): {total_cdv:.2f}")
        logger.info(f"  Final PCI: {pci_score:.1f} ({pci_rating})")

    damage_percentage = (densities['transverse'] + densities['alligator']
                         + densities['pothole'] + densities['longitudinal'])

    return PCIResult(
        pci_score=round_half_up(pci_score),
        pci_rating=pci_rating,
        total_deduct_value=round_half_up(total_cdv),
        deduct_breakdown=DeductBreakdown(**{k: round_half_up(v) for k, v in breakdown.items()}),
        damage_metrics=DamageMetrics(
            total_damage_length_ft=0.0,
            damage_percentage=round_half_up(damage_percentage),
            defect_count_by_type={
                key: 1 if densities[key] > 0 else 0
                for key in ('transverse', 'longitudinal', 'alligator', 'pothole')
            },
            severity_distribution={},
        ),
    )


def determine_severity(severity: Any, default: SeverityLevel = SeverityLevel.MEDIUM) -> SeverityLevel:
    """
    Map a loose severity label onto Low / Medium / High.

    Accepts plain strings ("minor", "Severe", "HIGH"), numeric scores (1-3 or 0-1)
    and the nested ``{joint_severity, pixel_severity, mm_severity}`` object, in
    which case the first usable variant wins.
    """
    if isinstance(severity, SeverityLevel):
        return severity
    if isinstance(severity, Mapping):
        for field in SEVERITY_FIELDS:
            if severity.get(field) is not None:
                return determine_severity(severity[field], default)
        score = coerce_finite_number(severity.get('joint_severity_score'))
        return determine_severity(score, default) if score is not None else default

    numeric = coerce_finite_number(severity)
    if numeric is not None:
        if numeric <= 1:
            # normalized 0-1 score
            if numeric < 1 / 3:
                return SeverityLevel.LOW
            return SeverityLevel.MEDIUM if numeric < 2 / 3 else SeverityLevel.HIGH
        if numeric < 2:
            return SeverityLevel.LOW
        return SeverityLevel.MEDIUM if numeric < 3 else SeverityLevel.HIGH

    if isinstance(severity, str):
        text = severity.strip().lower()
        for level, keywords in SEVERITY_KEYWORDS:
            if any(word in text for word in keywords):
                return level
    return default


def calculate_astm_pci(distresses: List[Dict[str, Any]]) -> PCIResult:
    """
    PCI from discrete distresses through the ASTM deduct tables and the
    iterative CDV correction.

    Each distress is ``{defect_type, severity, density}``; sealed cracks and
    unknown types carry no deduct table and are skipped.
    """
    if not distresses:
        return PCIResult(pci_score=100.0, pci_rating=get_pci_rating(100.0), total_deduct_value=0.0)

    breakdown = {'transverse': 0.0, 'longitudinal': 0.0, 'alligator': 0.0, 'pothole': 0.0}
    counts: Dict[str, int] = {}
    severity_distribution: Dict[str, Dict[str, int]] = {}
    deduct_values = []

    for distress in distresses:
        defect_type = DefectType.from_label(distress.get('defect_type') or distress.get('type'))
        if defect_type.value not in breakdown:
            logger.debug(f"Skipping distress without deduct table: {defect_type.value}")
            continue
        severity = determine_severity(distress.get('severity'))
        density = coerce_finite_number(distress.get('density')) or 0.0

        deduct = get_deduct_value(defect_type, severity, density)
        deduct_values.append(deduct)
        breakdown[defect_type.value] += deduct
        counts[defect_type.value] = counts.get(defect_type.value, 0) + 1
        by_severity = severity_distribution.setdefault(defect_type.value, {})
        by_severity[severity.value] = by_severity.get(severity.value, 0) + 1

    corrected = apply_multiple_deduct_correction(deduct_values)
    pci_score = max(0.0, min(100.0, 100.0 - corrected))

    return PCIResult(
        pci_score=round_half_up(pci_score),
        pci_rating=get_pci_rating(pci_score),
        total_deduct_value=round_half_up(corrected),
        deduct_breakdown=DeductBreakdown(**{k: round_half_up(v) for k, v in breakdown.items()}),
        damage_metrics=DamageMetrics(
            defect_count_by_type=counts,
            severity_distribution=severity_distribution,
        ),
    )
