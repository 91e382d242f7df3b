# backend/roadscan/services/segment_builder.py

"""
Road segment builder.

Parent-track features (each carrying ``child_tracks``) are indexed into two flat
collections joined by ``parent_track_id``. For jobs with GPS frames every frame
is mapped onto a fixed-length distance bin; each parent is placed on the bins
its frame span touches and, when it spans several, each child track is placed
individually on every bin its own frames touch. Damage is duplicated across
overlapping bins, never split.

Jobs without GPS frames either put everything in bin 0 or, with the
``geometric`` strategy, chain their tracks into one line and chunk it.
"""

import logging
from collections import OrderedDict
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Mapping, Optional, Set, Tuple

from roadscan.ml.pavement_analysis.analysis_modules.pci_calculator import (
    calculate_astm_pci,
    calculate_pci,
    determine_severity,
)
from roadscan.models.pavement import (
    Coordinate,
    ChildTrack,
    DefectType,
    GpsFrame,
    ParentTrack,
    RoadSegment,
    TrackSummary,
    VideoSegmentIndex,
)
from roadscan.utils.coercion import coerce_finite_number, coerce_int, coerce_timestamp
from roadscan.utils.geo import FEET_PER_METER, clean_coordinates, line_chunk, path_length_feet
from roadscan.utils.storage import StorageUrlResolver, extract_job_id_from_source_url
from .gps_frames import FrameSegmentMap, frame_ids_in
from .video_segments import (
    derive_segment_job_ids,
    extract_pixel_percentages,
    find_video_segment,
    match_nearest_video_segment,
    video_segment_reference,
)

logger = logging.getLogger(__name__)

SINGLE_SEGMENT_STRATEGY = "single_segment"
GEOMETRIC_STRATEGY = "geometric"

# Image slots tried in order for a track's representative thumbnail
THUMBNAIL_SLOTS = ("thumbnail", "polygon_overlay", "measurement_overlay", "original_frame")


class TrackIndex:
    """Flat parent and child track collections for one load"""

    def __init__(self):
        self.parents: "OrderedDict[str, ParentTrack]" = OrderedDict()
        self.children: "OrderedDict[str, ChildTrack]" = OrderedDict()
        self.child_frame_spans: Dict[str, Optional[Tuple[int, int]]] = {}

    def parents_for_job(self, job_id: Optional[str]) -> List[Tuple[str, ParentTrack]]:
        return [(key, parent) for key, parent in self.parents.items() if parent.job_id == job_id]

    def job_ids(self) -> List[Optional[str]]:
        return list(OrderedDict.fromkeys(parent.job_id for parent in self.parents.values()))


class _SegmentAccumulator:
    def __init__(self, job_id: Optional[str], segment_index: int):
        self.job_id = job_id
        self.segment_index = segment_index
        self.damage_count = 0
        self.track_ids: Dict[Any, None] = OrderedDict()
        self.defect_types: Dict[str, None] = OrderedDict()
        self.tracks: List[TrackSummary] = []
        self.job_ids: Dict[str, None] = OrderedDict()
        self.distresses: Dict[Tuple[str, str], int] = {}
        self.child_keys: List[str] = []

    def add_track(self, child_key: str, child: ChildTrack, counted: List[Tuple[str, str]],
                  start_feet: float, end_feet: float) -> None:
        self.damage_count += child.track_damage
        self.child_keys.append(child_key)
        if child.track_id is not None:
            self.track_ids[child.track_id] = None
        if child.parent_track_id is not None:
            self.track_ids[child.parent_track_id] = None
        for defect_type in child.defect_types:
            self.defect_types[defect_type] = None
        if child.job_id:
            self.job_ids[child.job_id] = None
        for distress in counted:
            self.distresses[distress] = self.distresses.get(distress, 0) + 1

        self.tracks.append(TrackSummary(
            track_id=child.track_id,
            parent_track_id=child.parent_track_id,
            start_feet=start_feet,
            end_feet=end_feet,
            thumbnail_url=child.representative_thumbnail,
            track_damage=child.track_damage,
            defect_types=list(child.defect_types),
            severity_labels=list(child.severity_labels),
            measured_length_feet=(child.measured_length_feet if child.measured_length_feet is not None
                                  else child.track_length_feet),
            job_id=child.job_id,
            source_geojson_url=child.source_geojson_url,
        ))

    def to_segment(self, coordinates: List[Coordinate], start_feet: float, end_feet: float) -> RoadSegment:
        # density for the table lookup is the number of counted defects of that type and severity
        distresses = [
            {"defect_type": defect_type, "severity": severity, "density": count}
            for (defect_type, severity), count in self.distresses.items()
        ]
        return RoadSegment(
            job_id=self.job_id,
            segment_index=self.segment_index,
            segment_id=self.segment_index + 1,
            start_feet=start_feet,
            end_feet=end_feet,
            segment_length_feet=end_feet - start_feet,
            coordinates=coordinates,
            start_coord=coordinates[0],
            end_coord=coordinates[-1],
            damage_count=self.damage_count,
            track_ids=list(self.track_ids),
            defect_types=list(self.defect_types),
            overlapping_tracks=self.tracks,
            job_ids=list(self.job_ids),
            astm_pci=calculate_astm_pci(distresses),
        )


class SegmentBuilder:
    """Builds scored road segments from parent-track features"""

    def __init__(self, config: Dict[str, Any], resolver: StorageUrlResolver):
        segmentation_cfg = config.get("segmentation", {})
        self.segment_length_feet = float(segmentation_cfg.get("segment_length_feet", 528.0))
        self.geometric_segment_length_feet = float(segmentation_cfg.get("geometric_segment_length_feet", 500.0))
        self.min_speed_mph = float(segmentation_cfg.get("min_speed_mph", 5.0))
        self.no_gps_strategy = segmentation_cfg.get("no_gps_strategy", SINGLE_SEGMENT_STRATEGY)
        self.max_workers = max(1, int(segmentation_cfg.get("max_workers", 1)))
        self.pci_verbose = bool(config.get("pci", {}).get("verbose", False))
        self.resolver = resolver

    # ------------------------------------------------------------------
    # Indexing
    # ------------------------------------------------------------------
    def index_tracks(self, parent_features: List[Dict[str, Any]]) -> TrackIndex:
        """Flatten parent features and their child tracks into keyed collections."""
        index = TrackIndex()
        for feature_idx, feature in enumerate(parent_features or []):
            properties = (feature or {}).get("properties")
            if not properties:
                continue
            source_url = properties.get("sourceUrl")
            parent_id = properties.get("parent_track_id")
            if parent_id is None:
                parent_id = properties.get("track_id")
            job_id = properties.get("job_id") if isinstance(properties.get("job_id"), str) and properties.get("job_id") else None
            job_id = job_id or extract_job_id_from_source_url(source_url)

            frame_range = self._frame_span(properties.get("frame_range"))
            parent_key = f"{job_id}:{parent_id}:{feature_idx}"
            parent = ParentTrack(parent_track_id=parent_id, job_id=job_id, frame_range=frame_range, source_url=source_url)

            child_tracks = properties.get("child_tracks")
            if not isinstance(child_tracks, list):
                child_tracks = []
            for child_idx, raw_child in enumerate(child_tracks):
                if not isinstance(raw_child, Mapping):
                    continue
                child_key = f"{parent_key}:{child_idx}"
                child, span = self._build_child(raw_child, child_idx, parent_id, job_id, source_url)
                index.children[child_key] = child
                index.child_frame_spans[child_key] = span
                parent.child_track_keys.append(child_key)

            index.parents[parent_key] = parent
        return index

    @staticmethod
    def _frame_span(value: Any) -> Optional[Tuple[int, int]]:
        ids = frame_ids_in(value) if isinstance(value, (list, tuple)) else []
        if not ids:
            return None
        return min(ids), max(ids)

    def _build_child(self, raw: Mapping[str, Any], child_idx: int, parent_id: Any,
                     parent_job_id: Optional[str], source_url: Optional[str]) -> Tuple[ChildTrack, Optional[Tuple[int, int]]]:
        defects = [d for d in (raw.get("defects") or []) if isinstance(d, Mapping)]

        defect_types: Dict[str, None] = OrderedDict()
        severity_labels: Dict[str, None] = OrderedDict()
        thumbnail = None
        frame_ids = list(frame_ids_in(raw.get("frame_range") if isinstance(raw.get("frame_range"), list) else []))
        for defect in defects:
            defect_type = str(defect.get("defect_type") or "").lower()
            if defect_type:
                defect_types[defect_type] = None
            severity = defect.get("severity")
            if isinstance(severity, Mapping):
                severity = severity.get("joint_severity") or severity.get("pixel_severity")
            if severity:
                severity_labels[str(severity)] = None
            if thumbnail is None:
                images = defect.get("images") or {}
                for slot in THUMBNAIL_SLOTS:
                    url = self.resolver.to_http(images.get(slot))
                    if url:
                        thumbnail = url
                        break
            frame_id = coerce_int(defect.get("frame_id") if defect.get("frame_id") is not None else defect.get("frame_number"))
            if frame_id is not None:
                frame_ids.append(frame_id)

        timestamps = []
        for defect in defects:
            gps = defect.get("gps_coordinates") if isinstance(defect.get("gps_coordinates"), Mapping) else {}
            ts = coerce_timestamp(gps.get("timestamp") if gps.get("timestamp") is not None else defect.get("timestamp"))
            if ts is not None:
                timestamps.append(ts)
        frame_span = (min(frame_ids), max(frame_ids)) if frame_ids else None
        if timestamps:
            start_ts = min(timestamps)
        elif frame_span is not None:
            start_ts = float(frame_span[0])
        else:
            start_ts = float(child_idx)

        coordinates = clean_coordinates(raw.get("coordinates"))
        measured_m = coerce_finite_number(raw.get("measured_real_length"))
        measured_feet = measured_m * FEET_PER_METER if measured_m is not None else None
        track_length_feet = measured_feet if measured_feet is not None and measured_feet > 0 else None
        if track_length_feet is None:
            gps_length_m = coerce_finite_number(raw.get("gps_length_m"))
            if gps_length_m is not None and gps_length_m > 0:
                track_length_feet = gps_length_m * FEET_PER_METER
        if track_length_feet is None:
            track_length_feet = path_length_feet(coordinates)

        job_id = raw.get("job_id") if isinstance(raw.get("job_id"), str) and raw.get("job_id") else parent_job_id
        child = ChildTrack(
            track_id=raw.get("track_id"),
            parent_track_id=parent_id,
            job_id=job_id,
            coordinates=coordinates,
            defects=[dict(d) for d in defects],
            frame_ids=sorted(set(frame_ids)),
            measured_real_length=measured_m,
            measured_length_feet=measured_feet,
            track_length_feet=track_length_feet,
            defect_types=list(defect_types),
            severity_labels=list(severity_labels),
            representative_thumbnail=thumbnail,
            track_start_ts=start_ts,
            source_geojson_url=source_url,
        )
        return child, frame_span

    # ------------------------------------------------------------------
    # Damage counting
    # ------------------------------------------------------------------
    def counted_defects(self, child: ChildTrack, frame_map: Optional[FrameSegmentMap]) -> List[Tuple[str, str]]:
        """
        (defect type, severity) of every defect that counts as damage: sealed
        cracks never count, nor do defects from frames slower than the minimum
        speed. A defect whose frame has no speed datum counts.
        """
        counted = []
        for defect in child.defects:
            defect_type = DefectType.from_label(defect.get("defect_type"))
            if defect_type == DefectType.SEALED_CRACK:
                continue
            if frame_map:
                frame_id = coerce_int(defect.get("frame_id") if defect.get("frame_id") is not None else defect.get("frame_number"))
                speed = frame_map.speed_at(frame_id)
                if speed is not None and speed < self.min_speed_mph:
                    logger.debug(f"Ignoring {defect_type.value} on track {child.track_id}: "
                                 f"frame {frame_id} speed {speed:.1f} mph")
                    continue
            counted.append((defect_type.value, determine_severity(defect.get("severity")).value))
        return counted

    # ------------------------------------------------------------------
    # Building
    # ------------------------------------------------------------------
    def build(self, parent_features: List[Dict[str, Any]],
              gps_frames_by_job: Optional[Mapping[Optional[str], List[GpsFrame]]] = None,
              video_indexes_by_job: Optional[Mapping[Optional[str], VideoSegmentIndex]] = None) -> List[RoadSegment]:
        """Build, score and sort the road segments of every job."""
        gps_frames_by_job = gps_frames_by_job or {}
        video_indexes_by_job = video_indexes_by_job or {}
        index = self.index_tracks(parent_features)
        job_ids = index.job_ids()
        logger.info(f"Building segments for {len(index.parents)} parent tracks "
                    f"({len(index.children)} child tracks) across {len(job_ids)} job(s)")

        def build_job(job_id):
            return self._build_job(index, job_id, gps_frames_by_job.get(job_id) or [], video_indexes_by_job.get(job_id))

        if self.max_workers > 1 and len(job_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
                per_job = list(executor.map(build_job, job_ids))
        else:
            per_job = [build_job(job_id) for job_id in job_ids]

        segments = [segment for job_segments in per_job for segment in job_segments]
        segments.sort(key=lambda s: (s.job_id or "", s.segment_index))
        return segments

    def _build_job(self, index: TrackIndex, job_id: Optional[str], gps_frames: List[GpsFrame],
                   video_index: Optional[VideoSegmentIndex]) -> List[RoadSegment]:
        frame_map = FrameSegmentMap(gps_frames, self.segment_length_feet) if gps_frames else None
        if not frame_map:
            frame_map = None
            if self.no_gps_strategy == GEOMETRIC_STRATEGY:
                return self._score(self.build_geometric_segments(index, job_id), video_index, match_by_position=True)
            logger.warning(f"No GPS frames for job {job_id}; placing all tracks in segment 0")
        else:
            logger.debug(f"Job {job_id}: {len(frame_map.frame_ids)} GPS frames over {frame_map.total_feet:.0f} ft")

        buckets: "OrderedDict[int, _SegmentAccumulator]" = OrderedDict()

        def bucket(segment_index: int) -> _SegmentAccumulator:
            if segment_index not in buckets:
                buckets[segment_index] = _SegmentAccumulator(job_id, segment_index)
            return buckets[segment_index]

        for _, parent in index.parents_for_job(job_id):
            parent_segments = self._parent_segments(index, parent, frame_map)
            for child_key in parent.child_track_keys:
                child = index.children[child_key]
                if len(parent_segments) <= 1:
                    child_segments = parent_segments or {0}
                else:
                    child_segments = self._child_segments(index.child_frame_spans.get(child_key), frame_map)
                    if not child_segments:
                        child_segments = {min(parent_segments)}

                counted = self.counted_defects(child, frame_map)
                child.track_damage = len(counted)
                span = index.child_frame_spans.get(child_key)
                for segment_index in sorted(child_segments):
                    start_feet, end_feet = self._child_feet(segment_index, child, span, frame_map)
                    bucket(segment_index).add_track(child_key, child, counted, start_feet, end_feet)

        segments = []
        for segment_index, acc in buckets.items():
            segment = self._to_segment(acc, index, frame_map)
            if segment is None:
                logger.debug(f"Dropping segment {segment_index} of job {job_id}: no geometry")
                continue
            segments.append(segment)
        return self._score(segments, video_index, match_by_position=frame_map is None)

    def _parent_segments(self, index: TrackIndex, parent: ParentTrack,
                         frame_map: Optional[FrameSegmentMap]) -> Set[int]:
        if frame_map is None:
            return {0}
        bounds = []
        if parent.frame_range is not None:
            bounds.extend(parent.frame_range)
        for child_key in parent.child_track_keys:
            span = index.child_frame_spans.get(child_key)
            if span is not None:
                bounds.extend(span)
        if not bounds:
            return {0}
        return frame_map.segments_for_frame_range(min(bounds), max(bounds))

    @staticmethod
    def _child_segments(span: Optional[Tuple[int, int]], frame_map: Optional[FrameSegmentMap]) -> Set[int]:
        if span is None or frame_map is None:
            return set()
        return frame_map.segments_for_frame_range(span[0], span[1])

    def _child_feet(self, segment_index: int, child: ChildTrack, span: Optional[Tuple[int, int]],
                    frame_map: Optional[FrameSegmentMap]) -> Tuple[float, float]:
        """Span of a child track along the path, clipped to one segment"""
        segment_start = segment_index * self.segment_length_feet
        segment_end = segment_start + self.segment_length_feet
        if frame_map is None or span is None:
            return segment_start, segment_start + child.track_length_feet
        start_feet = max(segment_start, min(segment_end, frame_map.feet_at_frame(span[0])))
        end_feet = max(segment_start, min(segment_end, frame_map.feet_at_frame(span[1])))
        return start_feet, end_feet

    def _to_segment(self, acc: _SegmentAccumulator, index: TrackIndex,
                    frame_map: Optional[FrameSegmentMap]) -> Optional[RoadSegment]:
        coordinates = []
        if frame_map is not None:
            coordinates = list(frame_map.segment_coordinates.get(acc.segment_index, []))
        if not coordinates:
            for child_key in acc.child_keys:
                if index.children[child_key].coordinates:
                    coordinates = list(index.children[child_key].coordinates)
                    break
        if not coordinates:
            return None
        if len(coordinates) == 1:
            coordinates = coordinates * 2

        start_feet = acc.segment_index * self.segment_length_feet
        return acc.to_segment(coordinates, start_feet, start_feet + self.segment_length_feet)

    def _score(self, segments: List[RoadSegment], video_index: Optional[VideoSegmentIndex],
               match_by_position: bool = False) -> List[RoadSegment]:
        """
        Attach the matching video segment's pixel data and the power-law PCI.

        Segments binned from GPS frames share ids with the video segments.
        Without GPS frames the ids do not line up, so the video segment with
        the nearest GPS midpoint is preferred and the id is only a fallback.
        """
        for segment in segments:
            segment.job_ids = derive_segment_job_ids(segment)
            video_segment = None
            if match_by_position:
                video_segment = match_nearest_video_segment(segment, video_index)
            if video_segment is None:
                video_segment = find_video_segment(video_index, segment.segment_id)
            if video_segment is None:
                if video_index is not None:
                    logger.debug(f"No video segment {segment.segment_id} for job {segment.job_id}")
                continue
            segment.video_segment = video_segment_reference(video_segment)
            segment.pixel_percentages = extract_pixel_percentages(video_segment)
            if segment.pixel_percentages is not None:
                segment.pci = calculate_pci(segment.pixel_percentages, verbose=self.pci_verbose,
                                            segment_id=segment.segment_id)
        return segments

    # ------------------------------------------------------------------
    # Geometric fallback
    # ------------------------------------------------------------------
    def build_geometric_segments(self, index: TrackIndex, job_id: Optional[str] = None) -> List[RoadSegment]:
        """
        Chain the job's child tracks in start-time order, lay them end to end
        along a cumulative distance axis and chunk the chained line into
        fixed-length segments. A track lands on every chunk its span overlaps.
        """
        tracks = []
        counted_by_key = {}
        for _, parent in index.parents_for_job(job_id):
            for child_key in parent.child_track_keys:
                child = index.children[child_key]
                if child.coordinates:
                    counted_by_key[child_key] = self.counted_defects(child, None)
                    child.track_damage = len(counted_by_key[child_key])
                    tracks.append((child_key, child))
        tracks.sort(key=lambda item: (item[1].track_start_ts is None, item[1].track_start_ts or 0.0))
        if not tracks:
            return []

        spans = []
        cumulative = 0.0
        for child_key, track in tracks:
            start = cumulative
            cumulative += track.track_length_feet or 0.0
            spans.append((child_key, track, start, cumulative))

        ordered_coords = []
        for _, track in tracks:
            for i, coord in enumerate(track.coordinates):
                if i == 0 and ordered_coords:
                    continue
                ordered_coords.append(coord)
        if len(ordered_coords) < 2:
            return []

        segments = []
        segment_start = 0.0
        for chunk in line_chunk(ordered_coords, self.geometric_segment_length_feet):
            chunk_length = path_length_feet(chunk)
            if chunk_length <= 0:
                continue
            segment_end = segment_start + chunk_length
            acc = _SegmentAccumulator(job_id, len(segments))
            for child_key, track, start, end in spans:
                if start >= segment_end or end <= segment_start:
                    continue
                acc.add_track(child_key, track, counted_by_key[child_key], start, end)
            segments.append(acc.to_segment(chunk, segment_start, segment_end))
            segment_start = segment_end
        return segments
