# backend/roadscan/services/gps_frames.py

"""
Per-job GPS frame handling: CSV parsing, speed derivation and the
frame -> distance-bin map used by the segment builder.
"""

import bisect
import csv
import io
import logging
from typing import Dict, Iterable, List, Optional, Sequence, Set

import numpy as np

from roadscan.models.pavement import Coordinate, GpsFrame
from roadscan.utils.coercion import coerce_finite_number, coerce_int, coerce_timestamp
from roadscan.utils.geo import haversine_distance_feet, is_valid_coordinate

logger = logging.getLogger(__name__)

GPS_CSV_COLUMNS = ("frame_id", "timestamp", "latitude", "longitude", "altitude", "accuracy")
FEET_PER_SECOND_TO_MPH = 3600 / 5280
# Numeric timestamps at or above this are epoch milliseconds
EPOCH_MILLIS_THRESHOLD = 1e11


def _parse_timestamp_seconds(value: str) -> Optional[float]:
    numeric = coerce_finite_number(value)
    if numeric is not None:
        return numeric / 1000.0 if abs(numeric) >= EPOCH_MILLIS_THRESHOLD else numeric
    millis = coerce_timestamp(value)
    return millis / 1000.0 if millis is not None else None


def parse_gps_csv(text: str) -> List[GpsFrame]:
    """
    Parse a GPS frame CSV (frame_id, timestamp, latitude, longitude, altitude,
    accuracy). The first row is a header; malformed rows are skipped.
    """
    frames = []
    if not text:
        return frames
    reader = csv.reader(io.StringIO(text))
    next(reader, None)
    skipped = 0
    for row_number, row in enumerate(reader, start=2):
        if not row or all(not cell.strip() for cell in row):
            continue
        if len(row) < 4:
            skipped += 1
            continue
        cells = [cell.strip() for cell in row] + [""] * (len(GPS_CSV_COLUMNS) - len(row))
        frame_id = coerce_int(cells[0])
        timestamp = _parse_timestamp_seconds(cells[1])
        latitude = coerce_finite_number(cells[2])
        longitude = coerce_finite_number(cells[3])
        if frame_id is None or timestamp is None or latitude is None or longitude is None:
            logger.debug(f"Skipping malformed GPS row {row_number}: {row}")
            skipped += 1
            continue
        frames.append(GpsFrame(
            frame_id=frame_id,
            timestamp=timestamp,
            latitude=latitude,
            longitude=longitude,
            altitude=coerce_finite_number(cells[4]),
            accuracy=coerce_finite_number(cells[5]),
        ))
    if skipped:
        logger.warning(f"Skipped {skipped} malformed GPS rows")
    return frames


def derive_speeds(frames: Iterable[GpsFrame]) -> List[GpsFrame]:
    """
    Copies of ``frames`` in frame_id order with ``speed_mph`` set from the
    distance and elapsed time to the previous frame. The first frame, and any
    frame with no positive elapsed time, has no speed.
    """
    ordered = sorted(frames, key=lambda f: (f.frame_id, f.timestamp))
    if not ordered:
        return []
    lats = np.array([f.latitude for f in ordered])
    lons = np.array([f.longitude for f in ordered])
    times = np.array([f.timestamp for f in ordered])
    distances = haversine_distance_feet(lats[:-1], lons[:-1], lats[1:], lons[1:])
    elapsed = np.diff(times)

    result = [ordered[0].model_copy(update={"speed_mph": None})]
    for frame, distance, dt in zip(ordered[1:], distances, elapsed):
        speed = float(distance / dt * FEET_PER_SECOND_TO_MPH) if dt > 0 else None
        result.append(frame.model_copy(update={"speed_mph": speed}))
    return result


class FrameSegmentMap:
    """
    Assigns every GPS frame of one job to a distance bin
    ``floor(cumulative_feet / segment_length_feet)`` and answers segment and
    speed lookups for arbitrary frame ids.
    """

    def __init__(self, frames: Iterable[GpsFrame], segment_length_feet: float):
        if segment_length_feet <= 0:
            raise ValueError("segment_length_feet must be positive")
        self.segment_length_feet = segment_length_feet

        unique: Dict[int, GpsFrame] = {}
        for frame in derive_speeds(frames):
            if frame.frame_id in unique:
                continue
            if not is_valid_coordinate(frame.coordinate):
                continue
            unique[frame.frame_id] = frame

        self.frames: List[GpsFrame] = list(unique.values())
        self.frame_ids: List[int] = [f.frame_id for f in self.frames]
        self.frame_to_segment: Dict[int, int] = {}
        self.cumulative_feet: Dict[int, float] = {}
        self.segment_coordinates: Dict[int, List[Coordinate]] = {}

        if not self.frames:
            return

        lats = np.array([f.latitude for f in self.frames])
        lons = np.array([f.longitude for f in self.frames])
        steps = haversine_distance_feet(lats[:-1], lons[:-1], lats[1:], lons[1:])
        cumulative = np.concatenate(([0.0], np.cumsum(steps)))

        for frame, distance in zip(self.frames, cumulative):
            segment_index = int(distance // segment_length_feet)
            self.frame_to_segment[frame.frame_id] = segment_index
            self.cumulative_feet[frame.frame_id] = float(distance)
            self.segment_coordinates.setdefault(segment_index, []).append(frame.coordinate)

    def __bool__(self) -> bool:
        return bool(self.frames)

    @property
    def total_feet(self) -> float:
        return self.cumulative_feet[self.frame_ids[-1]] if self.frames else 0.0

    def nearest_frame_id(self, frame_id: int) -> Optional[int]:
        if not self.frame_ids:
            return None
        pos = bisect.bisect_left(self.frame_ids, frame_id)
        if pos == 0:
            return self.frame_ids[0]
        if pos == len(self.frame_ids):
            return self.frame_ids[-1]
        before, after = self.frame_ids[pos - 1], self.frame_ids[pos]
        return before if frame_id - before <= after - frame_id else after

    def segment_for_frame(self, frame_id: int) -> Optional[int]:
        if frame_id in self.frame_to_segment:
            return self.frame_to_segment[frame_id]
        nearest = self.nearest_frame_id(frame_id)
        return self.frame_to_segment[nearest] if nearest is not None else None

    def segments_for_frame_range(self, low: int, high: int) -> Set[int]:
        """
        Bins touched by the frames in [low, high]. When no GPS frame falls in the
        range, the bins of the GPS frames nearest to either end are used.
        """
        if not self.frame_ids:
            return set()
        if high < low:
            low, high = high, low
        start = bisect.bisect_left(self.frame_ids, low)
        end = bisect.bisect_right(self.frame_ids, high)
        inside = {self.frame_to_segment[fid] for fid in self.frame_ids[start:end]}
        if inside:
            return inside
        return {self.segment_for_frame(low), self.segment_for_frame(high)}

    def feet_at_frame(self, frame_id: int) -> Optional[float]:
        nearest = frame_id if frame_id in self.cumulative_feet else self.nearest_frame_id(frame_id)
        return self.cumulative_feet.get(nearest) if nearest is not None else None

    def speed_at(self, frame_id: Optional[int]) -> Optional[float]:
        """
        Speed for a frame: exact value, else linear interpolation between the
        neighbouring GPS frames, else the nearest side alone. None when unknown.
        """
        if frame_id is None or not self.frames:
            return None
        pos = bisect.bisect_left(self.frame_ids, frame_id)
        if pos < len(self.frame_ids) and self.frame_ids[pos] == frame_id:
            return self.frames[pos].speed_mph

        before = self.frames[pos - 1] if pos > 0 else None
        after = self.frames[pos] if pos < len(self.frames) else None
        before_speed = before.speed_mph if before is not None else None
        after_speed = after.speed_mph if after is not None else None

        if before_speed is not None and after_speed is not None:
            ratio = (frame_id - before.frame_id) / (after.frame_id - before.frame_id)
            return before_speed + ratio * (after_speed - before_speed)
        if before_speed is not None:
            return before_speed
        return after_speed


def frame_ids_in(values: Sequence) -> List[int]:
    """Integer frame ids from a loosely typed list, order kept, invalid entries dropped."""
    ids = []
    for value in values or []:
        frame_id = coerce_int(value)
        if frame_id is not None:
            ids.append(frame_id)
    return ids
