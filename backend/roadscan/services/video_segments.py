# backend/roadscan/services/video_segments.py

import logging
from typing import Any, Dict, Iterable, List, Mapping, Optional, Union

from pydantic import ValidationError

from roadscan.models.pavement import PixelPercentages, RoadSegment, VideoSegment, VideoSegmentIndex
from roadscan.utils.coercion import coerce_int
from roadscan.utils.geo import coordinate_distance_feet, midpoint, normalize_coordinate
from roadscan.utils.storage import StorageUrlResolver, extract_job_id_from_source_url

logger = logging.getLogger(__name__)

# Keys that may wrap the per-type percentages inside pixel_percentage_with_projections
PERCENTAGE_CONTAINER_KEYS = ("percentages", "pixel_percentages", "with_projections")


def normalize_segments_index(payload: Any, job_prefix: str,
                             resolver: StorageUrlResolver) -> Optional[VideoSegmentIndex]:
    """
    Parse a job's segments index and point every HLS master playlist at the
    job's published video folder.
    """
    if not isinstance(payload, Mapping):
        return None

    segments = []
    for raw_segment in payload.get("segments") or []:
        if not isinstance(raw_segment, Mapping):
            continue
        segment = dict(raw_segment)
        hls = segment.get("hls")
        if isinstance(hls, Mapping):
            segment["hls"] = {
                **hls,
                "master_playlist_url": resolver.rewrite_master_playlist_url(hls.get("master_playlist_url"), job_prefix),
            }
        try:
            segments.append(VideoSegment(**segment))
        except ValidationError as e:
            logger.warning(f"Skipping malformed video segment {segment.get('segment_id')!r} for {job_prefix}: {e}")

    index_fields = {k: v for k, v in payload.items() if k != "segments"}
    try:
        return VideoSegmentIndex(**index_fields, segments=segments)
    except ValidationError as e:
        logger.warning(f"Malformed segments index for {job_prefix}: {e}")
        return VideoSegmentIndex(segments=segments)


def find_video_segment(index: Optional[VideoSegmentIndex], segment_id: Any) -> Optional[VideoSegment]:
    """Video segment with the given 1-indexed id, or None."""
    if index is None:
        return None
    wanted = coerce_int(segment_id)
    if wanted is None:
        return None
    for segment in index.segments:
        if coerce_int(segment.segment_id) == wanted:
            return segment
    return None


def _video_segment_midpoint(segment: VideoSegment):
    return midpoint(normalize_coordinate(segment.gps_start), normalize_coordinate(segment.gps_end))


def match_nearest_video_segment(road_segment: RoadSegment,
                                index: Optional[VideoSegmentIndex]) -> Optional[VideoSegment]:
    """Video segment whose GPS midpoint lies closest to the road segment's midpoint."""
    if index is None or not index.segments:
        return None
    target = midpoint(road_segment.start_coord, road_segment.end_coord)
    if target is None:
        return None

    best, best_distance = None, float("inf")
    for segment in index.segments:
        candidate = _video_segment_midpoint(segment)
        if candidate is None:
            continue
        distance = coordinate_distance_feet(target, candidate)
        if distance < best_distance:
            best, best_distance = segment, distance
    return best


def extract_pixel_percentages(segment: Optional[VideoSegment]) -> Optional[PixelPercentages]:
    if segment is None:
        return None
    raw = segment.pixel_percentage_with_projections
    if not isinstance(raw, Mapping):
        return None
    for key in PERCENTAGE_CONTAINER_KEYS:
        if isinstance(raw.get(key), Mapping):
            raw = raw[key]
            break
    try:
        return PixelPercentages(**{k: v for k, v in raw.items() if v is not None})
    except ValidationError as e:
        logger.warning(f"Unusable pixel percentages on video segment {segment.segment_id!r}: {e}")
        return None


def video_segment_reference(segment: VideoSegment) -> Dict[str, Any]:
    """Playback fields copied onto a road segment feature."""
    return {
        "segment_id": segment.segment_id,
        "frame_range": segment.frame_range,
        "master_playlist_url": segment.master_playlist_url,
        "gps_start": segment.gps_start,
        "gps_end": segment.gps_end,
    }


def derive_segment_job_ids(segment: Union[RoadSegment, Mapping[str, Any]]) -> List[str]:
    """Job ids of a road segment, from its own list and from its tracks' job ids or source URLs."""
    if isinstance(segment, RoadSegment):
        segment = {
            "job_ids": segment.job_ids,
            "overlapping_tracks": [t.model_dump() for t in segment.overlapping_tracks],
        }
    if not segment:
        return []

    ids: Dict[str, None] = {}
    for job_id in segment.get("job_ids") or []:
        if isinstance(job_id, str) and job_id.strip():
            ids[job_id.strip()] = None

    tracks: Iterable[Mapping[str, Any]] = segment.get("overlapping_tracks") or []
    for track in tracks:
        job_id = track.get("job_id")
        if isinstance(job_id, str) and job_id.strip():
            ids[job_id.strip()] = None
            continue
        derived = extract_job_id_from_source_url(track.get("source_geojson_url"))
        if derived:
            ids[derived] = None
    return list(ids)
