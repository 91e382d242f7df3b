# backend/roadscan/services/path_density.py

import logging
import math
from typing import Any, Dict, List, Mapping, Optional, Sequence, Tuple

import numpy as np

from roadscan.models.pavement import Coordinate, DensitySegment, PathDensityResult, PercentileThresholds
from roadscan.utils.coercion import coerce_finite_number, coerce_timestamp
from roadscan.utils.geo import (
    EARTH_RADIUS_FEET,
    is_valid_coordinate,
    line_chunk,
    path_length_feet,
    point_within_buffer,
)

logger = logging.getLogger(__name__)

# (density class, colour) for densities <= p50, > p50, > p70, > p85
DENSITY_BANDS = (
    ("low", "#00FF00"),
    ("moderate", "#FFFF00"),
    ("high", "#FFA500"),
    ("severe", "#FF0000"),
)


def percentile(sorted_values: Sequence[float], pct: float) -> float:
    """Nearest-rank percentile of an ascending sequence; 0 when empty."""
    if len(sorted_values) == 0:
        return 0.0
    index = math.ceil((pct / 100) * len(sorted_values)) - 1
    return float(sorted_values[max(0, index)])


def classify_density(density: float, thresholds: PercentileThresholds) -> Tuple[str, str]:
    if density > thresholds.p85:
        return DENSITY_BANDS[3]
    if density > thresholds.p70:
        return DENSITY_BANDS[2]
    if density > thresholds.p50:
        return DENSITY_BANDS[1]
    return DENSITY_BANDS[0]


def _member(container: Any, key: str) -> Mapping[str, Any]:
    value = container.get(key) if isinstance(container, Mapping) else None
    return value if isinstance(value, Mapping) else {}


def _point_coordinates(feature: Mapping[str, Any]) -> Optional[Coordinate]:
    geometry = _member(feature, "geometry")
    if geometry.get("type") != "Point":
        return None
    coords = geometry.get("coordinates")
    if not is_valid_coordinate(coords):
        return None
    return (float(coords[0]), float(coords[1]))


def build_continuous_paths(features: List[Mapping[str, Any]], gap_threshold_ms: float) -> List[List[Coordinate]]:
    """
    Sort timestamped Point features chronologically and split them into
    separate paths wherever consecutive timestamps are more than
    ``gap_threshold_ms`` apart. Paths with fewer than two points are dropped.
    """
    timed = []
    for feature in features or []:
        coords = _point_coordinates(feature)
        timestamp = coerce_timestamp(_member(feature, "properties").get("globalTimestamp"))
        if coords is None or timestamp is None:
            continue
        timed.append((timestamp, coords))
    timed.sort(key=lambda item: item[0])

    paths = []
    current: List[Coordinate] = []
    previous_ts = None
    for timestamp, coords in timed:
        if previous_ts is not None and timestamp - previous_ts > gap_threshold_ms:
            if len(current) >= 2:
                paths.append(current)
            current = []
        current.append(coords)
        previous_ts = timestamp
    if len(current) >= 2:
        paths.append(current)
    return paths


class PathDensityCalculator:
    """Crack density along the drive path, in detections per foot"""

    def __init__(self, config: Dict[str, Any]):
        density_cfg = config.get("path_density", {})
        self.gap_threshold_ms = float(density_cfg.get("gap_threshold_ms", 10000))
        self.segment_length_feet = float(density_cfg.get("segment_length_feet", 500.0))
        self.buffer_radius_feet = float(density_cfg.get("buffer_radius_feet", 25.0))

    def _detection_points(self, features: List[Mapping[str, Any]]) -> Tuple[np.ndarray, np.ndarray]:
        points, counts = [], []
        for feature in features or []:
            coords = _point_coordinates(feature)
            count = coerce_finite_number(_member(feature, "properties").get("detection_count_in_frame"))
            if coords is None or count is None or count <= 0:
                continue
            points.append(coords)
            counts.append(count)
        return np.asarray(points, dtype=float).reshape(-1, 2), np.asarray(counts, dtype=float)

    def _count_in_buffer(self, chunk: List[Coordinate], points: np.ndarray, counts: np.ndarray) -> float:
        if len(points) == 0:
            return 0.0
        chunk_arr = np.asarray(chunk, dtype=float)
        # Bounding-box prefilter, padded by the buffer radius in degrees
        pad_lat = np.degrees(self.buffer_radius_feet / EARTH_RADIUS_FEET)
        cos_lat = max(math.cos(math.radians(float(chunk_arr[:, 1].mean()))), 1e-6)
        pad_lng = pad_lat / cos_lat
        mask = (
            (points[:, 0] >= chunk_arr[:, 0].min() - pad_lng) & (points[:, 0] <= chunk_arr[:, 0].max() + pad_lng)
            & (points[:, 1] >= chunk_arr[:, 1].min() - pad_lat) & (points[:, 1] <= chunk_arr[:, 1].max() + pad_lat)
        )
        total = 0.0
        for point, count in zip(points[mask], counts[mask]):
            if point_within_buffer(point, chunk, self.buffer_radius_feet):
                total += count
        return total

    def compute(self, features: List[Mapping[str, Any]]) -> PathDensityResult:
        if not features or len(features) < 2:
            return PathDensityResult()

        paths = build_continuous_paths(features, self.gap_threshold_ms)
        points, counts = self._detection_points(features)

        segments = []
        for path in paths:
            for chunk in line_chunk(path, self.segment_length_feet):
                if len(chunk) < 2:
                    continue
                length = path_length_feet(chunk)
                detections = self._count_in_buffer(chunk, points, counts)
                segments.append(DensitySegment(
                    coordinates=chunk,
                    detections_in_segment=int(round(detections)),
                    crack_density=detections / length if length > 0 else 0.0,
                    actual_length_feet=length,
                ))

        densities = sorted(s.crack_density for s in segments)
        thresholds = PercentileThresholds(
            p50=percentile(densities, 50),
            p70=percentile(densities, 70),
            p85=percentile(densities, 85),
        )
        for segment in segments:
            segment.density_class, segment.density_color = classify_density(segment.crack_density, thresholds)

        logger.debug(f"Path density: {len(paths)} paths, {len(segments)} chunks, "
                     f"P50={thresholds.p50:.4f} P70={thresholds.p70:.4f} P85={thresholds.p85:.4f}")
        return PathDensityResult(
            segments=segments,
            min_density=densities[0] if densities else 0.0,
            max_density=densities[-1] if densities else 0.0,
            percentile_thresholds=thresholds,
            path_count=len(paths),
        )


def compute_path_density(features: List[Mapping[str, Any]], config: Optional[Dict[str, Any]] = None) -> PathDensityResult:
    return PathDensityCalculator(config or {}).compute(features)
