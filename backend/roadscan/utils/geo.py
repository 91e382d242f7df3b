import math
from typing import Any, List, Optional, Sequence, Tuple

import numpy as np

from .coercion import coerce_finite_number


EARTH_RADIUS_M = 6371008.8
FEET_PER_METER = 3.28084
EARTH_RADIUS_FEET = EARTH_RADIUS_M * FEET_PER_METER

# [longitude, latitude], geojson order
Coordinate = Tuple[float, float]


def is_valid_coordinate(coord: Any) -> bool:
    """True for a [lng, lat] pair made of two finite numbers."""
    if not isinstance(coord, (list, tuple)) or len(coord) < 2:
        return False
    lng, lat = coord[0], coord[1]
    for value in (lng, lat):
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            return False
        if not math.isfinite(value):
            return False
    return True


def clean_coordinates(coords: Any) -> List[Coordinate]:
    """Drop anything that is not a finite [lng, lat] pair."""
    if not isinstance(coords, (list, tuple)):
        return []
    return [(float(c[0]), float(c[1])) for c in coords if is_valid_coordinate(c)]


def haversine_distance_feet(lat1, lon1, lat2, lon2):
    """Calculate the great-circle distance in feet (scalars or numpy arrays)"""
    lat1_rad = np.radians(lat1)
    lon1_rad = np.radians(lon1)
    lat2_rad = np.radians(lat2)
    lon2_rad = np.radians(lon2)

    dlat = lat2_rad - lat1_rad
    dlon = lon2_rad - lon1_rad

    a = np.sin(dlat/2)**2 + np.cos(lat1_rad) * np.cos(lat2_rad) * np.sin(dlon/2)**2
    c = 2 * np.arcsin(np.sqrt(np.clip(a, 0.0, 1.0)))

    return EARTH_RADIUS_FEET * c


def coordinate_distance_feet(a: Sequence[float], b: Sequence[float]) -> float:
    return float(haversine_distance_feet(a[1], a[0], b[1], b[0]))


def cumulative_distances_feet(coords: Sequence[Sequence[float]]) -> np.ndarray:
    """Running distance along ``coords``; first entry is always 0."""
    if len(coords) == 0:
        return np.zeros(0)
    arr = np.asarray(coords, dtype=float)
    if len(arr) == 1:
        return np.zeros(1)
    steps = haversine_distance_feet(arr[:-1, 1], arr[:-1, 0], arr[1:, 1], arr[1:, 0])
    return np.concatenate(([0.0], np.cumsum(steps)))


def path_length_feet(coords: Sequence[Sequence[float]]) -> float:
    if len(coords) < 2:
        return 0.0
    return float(cumulative_distances_feet(coords)[-1])


def _point_at(coords: Sequence[Sequence[float]], cumulative: np.ndarray, distance: float) -> Coordinate:
    """Coordinate located ``distance`` feet along the line."""
    if distance <= 0:
        return (float(coords[0][0]), float(coords[0][1]))
    if distance >= cumulative[-1]:
        return (float(coords[-1][0]), float(coords[-1][1]))
    idx = int(np.searchsorted(cumulative, distance, side="right")) - 1
    idx = min(max(idx, 0), len(coords) - 2)
    edge = cumulative[idx + 1] - cumulative[idx]
    t = 0.0 if edge <= 0 else (distance - cumulative[idx]) / edge
    lng = coords[idx][0] + t * (coords[idx + 1][0] - coords[idx][0])
    lat = coords[idx][1] + t * (coords[idx + 1][1] - coords[idx][1])
    return (float(lng), float(lat))


def line_slice_along(coords: Sequence[Sequence[float]],
                     start_feet: float,
                     stop_feet: float,
                     cumulative: Optional[np.ndarray] = None) -> List[Coordinate]:
    """Part of the line between two along-line distances (feet)."""
    if len(coords) < 2:
        return []
    if cumulative is None:
        cumulative = cumulative_distances_feet(coords)
    start_feet = max(0.0, start_feet)
    stop_feet = min(float(cumulative[-1]), stop_feet)
    if stop_feet < start_feet:
        return []

    sliced = [_point_at(coords, cumulative, start_feet)]
    for i in range(len(coords)):
        if start_feet < cumulative[i] < stop_feet:
            sliced.append((float(coords[i][0]), float(coords[i][1])))
    sliced.append(_point_at(coords, cumulative, stop_feet))
    return sliced


def line_chunk(coords: Sequence[Sequence[float]], segment_length_feet: float) -> List[List[Coordinate]]:
    """
    Split a line into consecutive pieces of ``segment_length_feet`` (last piece
    holds the remainder).
    """
    if len(coords) < 2 or segment_length_feet <= 0:
        return []
    cumulative = cumulative_distances_feet(coords)
    total = float(cumulative[-1])
    if total <= 0:
        return []
    # float noise past an exact multiple is not another chunk
    chunk_count = max(1, int(math.ceil(total / segment_length_feet - 1e-9)))
    chunks = []
    for i in range(chunk_count):
        start = i * segment_length_feet
        stop = min((i + 1) * segment_length_feet, total)
        piece = line_slice_along(coords, start, stop, cumulative)
        if len(piece) >= 2:
            chunks.append(piece)
    return chunks


def point_to_line_distance_feet(point: Sequence[float], coords: Sequence[Sequence[float]]) -> float:
    """
    Minimum distance (feet) from ``point`` to the polyline ``coords``.

    Edges are projected onto a local equirectangular plane centred on the point,
    which is accurate at the tens-of-feet scale used for buffer membership.
    """
    if len(coords) == 0:
        return float("inf")
    arr = np.asarray(coords, dtype=float)
    lng0, lat0 = float(point[0]), float(point[1])
    scale_x = np.radians(1.0) * EARTH_RADIUS_FEET * math.cos(math.radians(lat0))
    scale_y = np.radians(1.0) * EARTH_RADIUS_FEET
    xs = (arr[:, 0] - lng0) * scale_x
    ys = (arr[:, 1] - lat0) * scale_y
    if len(arr) == 1:
        return float(np.hypot(xs[0], ys[0]))

    ax, ay = xs[:-1], ys[:-1]
    dx, dy = xs[1:] - ax, ys[1:] - ay
    length_sq = dx * dx + dy * dy
    with np.errstate(invalid="ignore", divide="ignore"):
        t = np.where(length_sq > 0, -(ax * dx + ay * dy) / length_sq, 0.0)
    t = np.clip(t, 0.0, 1.0)
    px = ax + t * dx
    py = ay + t * dy
    return float(np.min(np.hypot(px, py)))


def point_within_buffer(point: Sequence[float], coords: Sequence[Sequence[float]], radius_feet: float) -> bool:
    return point_to_line_distance_feet(point, coords) <= radius_feet


def midpoint(a: Optional[Sequence[float]], b: Optional[Sequence[float]]) -> Optional[Coordinate]:
    """Arithmetic midpoint of two [lng, lat] pairs; falls back to whichever exists."""
    a_ok = is_valid_coordinate(a)
    b_ok = is_valid_coordinate(b)
    if a_ok and b_ok:
        return ((a[0] + b[0]) / 2, (a[1] + b[1]) / 2)
    if a_ok:
        return (float(a[0]), float(a[1]))
    if b_ok:
        return (float(b[0]), float(b[1]))
    return None


def normalize_coordinate(value: Any) -> Optional[Coordinate]:
    """Accept [lng, lat] pairs or {lat, lon|lng|longitude} mappings."""
    if is_valid_coordinate(value):
        return (float(value[0]), float(value[1]))
    if isinstance(value, dict):
        lat = coerce_finite_number(value.get("lat", value.get("latitude")))
        lng = coerce_finite_number(value.get("lon", value.get("lng", value.get("longitude"))))
        if lat is not None and lng is not None:
            return (lng, lat)
    return None
