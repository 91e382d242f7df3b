"""
ASTM D6433 deduct value tables and multiple-deduct correction.

Simplified representations of the asphalt-concrete deduct curves. Each table
maps a density (percentage of segment affected, or a count for transverse
cracks and potholes) to a deduct value in [0, 100]. Values between break-points
are linearly interpolated.

The Corrected Deduct Value (CDV) correction implements the iterative
procedure of the standard: when several distresses are present their deducts
do not simply add up; the worst CDV across all reduction steps is used.
"""

import logging
import math
from types import MappingProxyType
from typing import Iterable, List, Mapping, Optional, Sequence, Tuple, Union

from roadscan.models.pavement import (
    CorrectionIteration,
    CorrectionTrace,
    DefectType,
    SeverityLevel,
)

logger = logging.getLogger(__name__)

# (density or TDV, deduct or CDV) break-points, ascending
DeductTable = Tuple[Tuple[float, float], ...]

SIGNIFICANT_DEDUCT = 2.0
MAX_CORRECTION_ITERATIONS = 20

# Transverse cracking: number of cracks per segment, severity by width/spalling
TRANSVERSE_DEDUCT = MappingProxyType({
    SeverityLevel.LOW: (
        (0, 0), (1, 2), (2, 4), (3, 6), (5, 8), (10, 12), (15, 15), (20, 18),
        (30, 22), (50, 28), (60, 31), (70, 34), (80, 36), (90, 38), (100, 40),
    ),
    SeverityLevel.MEDIUM: (
        (0, 0), (1, 4), (2, 8), (3, 11), (5, 15), (10, 22), (15, 28), (20, 33),
        (30, 40), (50, 50), (60, 55), (70, 59), (80, 63), (90, 66), (100, 69),
    ),
    SeverityLevel.HIGH: (
        (0, 0), (1, 6), (2, 12), (3, 17), (5, 23), (10, 34), (15, 42), (20, 48),
        (30, 58), (50, 70), (60, 75), (70, 79), (80, 83), (90, 86), (100, 89),
    ),
})

# Longitudinal cracking: percentage of segment length affected
LONGITUDINAL_DEDUCT = MappingProxyType({
    SeverityLevel.LOW: (
        (0, 0), (1, 1), (5, 3), (10, 5), (20, 8), (30, 11), (40, 14), (50, 16),
        (60, 18), (80, 22), (100, 25),
    ),
    SeverityLevel.MEDIUM: (
        (0, 0), (1, 2), (5, 6), (10, 10), (20, 16), (30, 21), (40, 26), (50, 30),
        (60, 34), (80, 40), (100, 45),
    ),
    SeverityLevel.HIGH: (
        (0, 0), (1, 3), (5, 9), (10, 15), (20, 24), (30, 31), (40, 38), (50, 44),
        (60, 49), (80, 58), (100, 65),
    ),
})

# Alligator cracking: percentage of segment area, structural failure so steeper
ALLIGATOR_DEDUCT = MappingProxyType({
    SeverityLevel.LOW: (
        (0, 0), (1, 3), (5, 8), (10, 14), (20, 22), (30, 28), (40, 33), (50, 38),
        (60, 42), (80, 48), (100, 52),
    ),
    SeverityLevel.MEDIUM: (
        (0, 0), (1, 5), (5, 14), (10, 24), (20, 38), (30, 48), (40, 56), (50, 62),
        (60, 67), (80, 75), (100, 80),
    ),
    SeverityLevel.HIGH: (
        (0, 0), (1, 8), (5, 20), (10, 35), (20, 54), (30, 66), (40, 75), (50, 82),
        (60, 87), (80, 94), (100, 98),
    ),
})

# Potholes: number per segment
POTHOLE_DEDUCT = MappingProxyType({
    SeverityLevel.LOW: (
        (0, 0), (1, 5), (2, 10), (3, 14), (5, 20), (10, 32), (15, 40), (20, 46),
        (30, 55), (50, 68), (60, 74), (70, 79), (80, 83), (90, 87), (100, 90),
    ),
    SeverityLevel.MEDIUM: (
        (0, 0), (1, 8), (2, 15), (3, 21), (5, 30), (10, 45), (15, 55), (20, 62),
        (30, 72), (50, 85), (60, 89), (70, 92), (80, 95), (90, 97), (100, 99),
    ),
    SeverityLevel.HIGH: (
        (0, 0), (1, 12), (2, 22), (3, 30), (5, 42), (10, 60), (15, 72), (20, 80),
        (30, 90), (50, 100), (60, 100), (70, 100), (80, 100), (90, 100), (100, 100),
    ),
})

DEDUCT_TABLES: Mapping[DefectType, Mapping[SeverityLevel, DeductTable]] = MappingProxyType({
    DefectType.TRANSVERSE: TRANSVERSE_DEDUCT,
    DefectType.LONGITUDINAL: LONGITUDINAL_DEDUCT,
    DefectType.ALLIGATOR: ALLIGATOR_DEDUCT,
    DefectType.POTHOLE: POTHOLE_DEDUCT,
})

# CDV correction curves (Fig. X3.27 approximation), keyed by q
_TDV_STEPS = (0, 10, 20, 30, 40, 50, 60, 70, 80, 90, 100, 110, 120, 140, 160, 180, 200)

def _curve(*cdvs: float) -> DeductTable:
    return tuple(zip(_TDV_STEPS, cdvs))

CDV_CORRECTION_CURVES: Mapping[int, DeductTable] = MappingProxyType({
    1: ((0, 0), (10, 10), (20, 20), (30, 30), (40, 40), (50, 50), (60, 60), (70, 70),
        (80, 80), (90, 90), (100, 100), (110, 100), (120, 100)),
    2: _curve(0, 8, 16, 24, 32, 40, 47, 54, 61, 67, 73, 78, 82, 88, 93, 96, 98),
    3: _curve(0, 7, 14, 21, 28, 35, 42, 48, 54, 60, 65, 70, 74, 81, 87, 91, 95),
    4: _curve(0, 6, 13, 19, 26, 32, 38, 44, 50, 55, 60, 65, 69, 76, 82, 88, 92),
    5: _curve(0, 6, 12, 18, 24, 30, 36, 41, 46, 51, 56, 61, 65, 72, 78, 84, 89),
    6: _curve(0, 5, 11, 16, 22, 28, 33, 38, 43, 48, 53, 57, 61, 69, 75, 81, 86),
    7: _curve(0, 5, 10, 15, 21, 26, 31, 36, 40, 45, 50, 54, 58, 66, 72, 78, 83),
    8: _curve(0, 5, 10, 15, 19, 24, 29, 34, 38, 43, 47, 51, 55, 63, 69, 75, 81),
    9: _curve(0, 4, 9, 14, 18, 23, 27, 32, 36, 40, 45, 49, 53, 60, 67, 73, 78),
    10: _curve(0, 4, 9, 13, 17, 22, 26, 30, 34, 38, 43, 47, 51, 58, 65, 71, 76),
})

# (lower bound, label / colour), checked top down
PCI_RATING_BANDS = (
    (85, "Excellent"),
    (70, "Good"),
    (55, "Fair"),
    (40, "Poor"),
    (25, "Very Poor"),
)
PIXEL_PCI_RATING_BANDS = (
    (85, "Good"),
    (70, "Satisfactory"),
    (55, "Fair"),
    (40, "Poor"),
    (25, "Very Poor"),
    (10, "Serious"),
)
PCI_COLOR_BANDS = (
    (85, "#16a34a"),  # Good
    (70, "#65a30d"),  # Satisfactory
    (55, "#facc15"),  # Fair
    (40, "#f97316"),  # Poor
    (25, "#ea580c"),  # Very Poor
    (10, "#dc2626"),  # Serious
)
FAILED_RATING = "Failed"
FAILED_COLOR = "#991b1b"


def interpolate_deduct_value(table: DeductTable, density: float) -> float:
    """
    Linear interpolation between the two break-points around ``density``.

    The lookup value is clamped to [0, 100] first, for deduct tables and CDV
    curves alike.
    """
    clamped = max(0.0, min(100.0, float(density)))
    for key, value in table:
        if key == clamped:
            return float(value)

    lower_key, lower_value = table[0]
    upper_key, upper_value = table[-1]
    for (k0, v0), (k1, v1) in zip(table, table[1:]):
        if k0 <= clamped <= k1:
            lower_key, lower_value, upper_key, upper_value = k0, v0, k1, v1
            break

    if lower_key == upper_key:
        return float(lower_value)
    ratio = (clamped - lower_key) / (upper_key - lower_key)
    return float(lower_value + ratio * (upper_value - lower_value))


def get_deduct_value(defect_type: Union[DefectType, str],
                     severity: Union[SeverityLevel, str],
                     density: float) -> float:
    """Deduct value (0-100) for one defect type / severity / density combination"""
    table = _lookup_table(defect_type, severity)
    if table is None:
        logger.warning(f"No deduct table found for {defect_type} - {severity}")
        return 0.0
    return interpolate_deduct_value(table, density)


def _lookup_table(defect_type, severity) -> Optional[DeductTable]:
    try:
        type_key = DefectType(defect_type)
        severity_key = SeverityLevel(severity)
    except ValueError:
        return None
    return DEDUCT_TABLES.get(type_key, {}).get(severity_key)


def get_cdv_from_curve(tdv: float, q: int) -> float:
    clamped_q = max(1, min(10, int(round(q))))
    return interpolate_deduct_value(CDV_CORRECTION_CURVES[clamped_q], tdv)


def limit_deduct_count(deduct_values: Sequence[float]) -> Tuple[float, ...]:
    """
    Keep the m largest deducts, m = 1 + (9/98)(100 - HDV) capped at 10.

    The ``floor(m)`` largest values are kept whole; the next one contributes
    scaled by the fractional part of m. Returns values sorted descending.
    """
    ordered = sorted((float(v) for v in deduct_values), reverse=True)
    if not ordered:
        return ()
    hdv = ordered[0]
    m = min(10.0, 1 + (9 / 98) * (100 - hdv))
    m_floor = int(math.floor(m))
    m_fraction = m - m_floor

    working = ordered[:m_floor]
    if m_fraction > 0 and len(ordered) > m_floor:
        working.append(ordered[m_floor] * m_fraction)
    return tuple(working)


def correction_step(deduct_values: Sequence[float]) -> CorrectionIteration:
    """Compute q, TDV and CDV for one iteration"""
    q = sum(1 for v in deduct_values if v > SIGNIFICANT_DEDUCT)
    tdv = float(sum(deduct_values))
    return CorrectionIteration(
        q=q,
        total_deduct_value=tdv,
        corrected_deduct_value=get_cdv_from_curve(tdv, q),
        deduct_values=list(deduct_values),
    )


def reduce_smallest_significant(deduct_values: Sequence[float]) -> Optional[Tuple[float, ...]]:
    """
    Return a copy with the smallest deduct above 2.0 set to exactly 2.0, or
    None when there is nothing left to reduce.
    """
    values = list(deduct_values)
    for i in range(len(values) - 1, -1, -1):
        if values[i] > SIGNIFICANT_DEDUCT:
            values[i] = SIGNIFICANT_DEDUCT
            return tuple(values)
    return None


def trace_multiple_deduct_correction(deduct_values: Iterable[float]) -> CorrectionTrace:
    """Run the full correction and keep every iteration for inspection"""
    values = [float(v) for v in deduct_values]
    if not values:
        return CorrectionTrace(max_cdv=0.0, corrected_directly=True)

    significant = [v for v in values if v > SIGNIFICANT_DEDUCT]
    if len(significant) <= 1:
        return CorrectionTrace(max_cdv=max(0.0, min(100.0, sum(values))), corrected_directly=True)

    working = limit_deduct_count(values)
    iterations: List[CorrectionIteration] = []
    terminated_early = False

    for _ in range(MAX_CORRECTION_ITERATIONS):
        step = correction_step(working)
        iterations.append(step)
        logger.debug(
            f"[CDV iteration {len(iterations)}] q={step.q}, TDV={step.total_deduct_value:.2f}, "
            f"CDV={step.corrected_deduct_value:.2f}, deducts={[round(d, 1) for d in working]}"
        )
        if step.q <= 1:
            break
        reduced = reduce_smallest_significant(working)
        if reduced is None:
            logger.warning("[CDV] Could not find a deduct > 2.0 to reduce, stopping iteration early")
            terminated_early = True
            break
        working = reduced

    max_cdv = max(it.corrected_deduct_value for it in iterations)
    logger.debug(f"[CDV final] max CDV = {max_cdv:.2f} from {len(iterations)} iterations")
    return CorrectionTrace(
        iterations=iterations,
        max_cdv=max(0.0, min(100.0, max_cdv)),
        terminated_early=terminated_early,
    )


def apply_multiple_deduct_correction(deduct_values: Iterable[float]) -> float:
    """
    Corrected Deduct Value for a list of individual deduct values.

    1. At most one deduct above 2.0: CDV = min(100, sum of all deducts).
    2. Otherwise keep the m largest deducts (see :func:`limit_deduct_count`).
    3. Iterate: q = count above 2.0, TDV = sum, CDV from the q curve; stop at
       q <= 1, else set the smallest deduct above 2.0 to 2.0 and repeat.
    4. Result is the largest CDV seen, clamped to [0, 100].
    """
    return trace_multiple_deduct_correction(deduct_values).max_cdv


def _band_lookup(score: float, bands, fallback: str) -> str:
    for lower_bound, label in bands:
        if score >= lower_bound:
            return label
    return fallback


def get_pci_rating(pci: float) -> str:
    return _band_lookup(pci, PCI_RATING_BANDS, FAILED_RATING)


def get_pixel_based_pci_rating(pci: float) -> str:
    return _band_lookup(pci, PIXEL_PCI_RATING_BANDS, FAILED_RATING)


def get_pci_color(pci: float) -> str:
    return _band_lookup(pci, PCI_COLOR_BANDS, FAILED_COLOR)
