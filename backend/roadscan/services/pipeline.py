# backend/roadscan/services/pipeline.py

import copy
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Mapping, Optional, Union

from roadscan.models.pavement import GpsFrame, PathDensityResult, VideoSegmentIndex
from roadscan.utils.storage import StorageUrlResolver
from .detection_normalizer import (
    DATA_MODE,
    TRACKS_MODE,
    DetectionNormalizer,
    compute_global_timestamp,
    filter_features_by_length,
    is_parent_track_dataset,
)
from .exceptions import UnsupportedModeError
from .gps_frames import parse_gps_csv
from .path_density import PathDensityCalculator
from .segment_builder import SegmentBuilder
from .video_segments import normalize_segments_index

logger = logging.getLogger(__name__)

SUPPORTED_MODES = (DATA_MODE, TRACKS_MODE)


class PavementDataPipeline:
    """
    Turns already-fetched source documents into one feature collection.

    Sources that failed upstream (``geojson`` is None) or lack a ``features``
    array are listed in ``metadata.failedSources`` and skipped; the rest are
    tagged with their source, normalized and then either merged per frame or,
    for parent-track datasets, built into scored road segments.
    """

    def __init__(self, config: Dict[str, Any]):
        self.config = config
        self.resolver = StorageUrlResolver.from_config(config)
        self.normalizer = DetectionNormalizer(self.resolver)
        self.segment_builder = SegmentBuilder(config, self.resolver)
        self.density_calculator = PathDensityCalculator(config)

    def load_features(self, sources: List[Mapping[str, Any]], mode: str,
                      now_ms: Optional[float] = None):
        """Tag and normalize the features of every usable source; returns (features, failed source urls)."""
        features: List[Dict[str, Any]] = []
        failed: List[str] = []
        for source_index, source in enumerate(sources or []):
            source = source if isinstance(source, Mapping) else {}
            source_url = source.get("source_url")
            document = source.get("geojson")
            if not isinstance(document, Mapping) or not isinstance(document.get("features"), list):
                logger.error(f"Error loading {source_url}: GeoJSON missing feature array")
                failed.append(source_url)
                continue

            for raw_feature in document["features"]:
                if not isinstance(raw_feature, Mapping):
                    continue
                feature = dict(raw_feature)
                raw_properties = feature.get("properties")
                properties = copy.deepcopy(dict(raw_properties)) if isinstance(raw_properties, Mapping) else {}
                properties["sourceUrl"] = source_url
                properties["sourceIndex"] = source_index
                properties["globalTimestamp"] = compute_global_timestamp(document, {"properties": properties}, now_ms)
                feature["properties"] = properties
                features.append(self.normalizer.normalize_feature_properties(feature, mode))
        return features, failed

    def _gps_frames(self, gps_csv_by_job: Optional[Mapping[str, Union[str, List[GpsFrame]]]]) -> Dict[str, List[GpsFrame]]:
        frames_by_job = {}
        for job_id, payload in (gps_csv_by_job or {}).items():
            frames = parse_gps_csv(payload) if isinstance(payload, str) else list(payload or [])
            if frames:
                frames_by_job[job_id] = frames
            else:
                logger.warning(f"No usable GPS frames for job {job_id}")
        return frames_by_job

    def _video_indexes(self, video_index_by_job: Optional[Mapping[str, Any]],
                       job_prefixes: Optional[Mapping[str, str]]) -> Dict[str, VideoSegmentIndex]:
        indexes = {}
        for job_id, payload in (video_index_by_job or {}).items():
            if isinstance(payload, VideoSegmentIndex):
                indexes[job_id] = payload
                continue
            prefix = (job_prefixes or {}).get(job_id) or job_id
            index = normalize_segments_index(payload, prefix, self.resolver)
            if index is not None:
                indexes[job_id] = index
        logger.info(f"Loaded video segments for {len(indexes)} job(s).")
        return indexes

    def process(self, sources: List[Mapping[str, Any]],
                gps_csv_by_job: Optional[Mapping[str, Union[str, List[GpsFrame]]]] = None,
                video_index_by_job: Optional[Mapping[str, Any]] = None,
                mode: str = DATA_MODE,
                length_filter: Optional[Mapping[str, Any]] = None,
                job_prefixes: Optional[Mapping[str, str]] = None,
                now_ms: Optional[float] = None) -> Dict[str, Any]:
        """
        Run one full load.

        Args:
            sources: ``[{"source_url": str, "geojson": dict | None}, ...]``
            gps_csv_by_job: GPS frame CSV text (or parsed frames) per job id
            video_index_by_job: segments index payload per job id
            mode: ``data`` (one detection per record) or ``tracks``
            length_filter: optional ``{"min": mm, "max": mm}`` applied to Point features
            job_prefixes: storage prefix per job id, used to rewrite playlist URLs
            now_ms: clock override for features without any timestamp

        Returns:
            A FeatureCollection dict with a ``metadata`` envelope
        """
        if mode not in SUPPORTED_MODES:
            raise UnsupportedModeError(mode)

        features, failed = self.load_features(sources, mode, now_ms)
        processed_at = datetime.now(timezone.utc).isoformat()

        if is_parent_track_dataset(features):
            segments = self.segment_builder.build(
                features,
                self._gps_frames(gps_csv_by_job),
                self._video_indexes(video_index_by_job, job_prefixes),
            )
            collection = {
                "type": "FeatureCollection",
                "features": [segment.to_feature() for segment in segments],
                "metadata": {
                    "totalSegments": len(segments),
                    "totalParentTracks": len(features),
                    "failedSources": failed,
                    "processedAt": processed_at,
                },
            }
            logger.info(f"Built {len(segments)} road segments from {len(features)} parent tracks")
        else:
            frames = self.normalizer.aggregate_detections_by_frame(features)
            collection = {
                "type": "FeatureCollection",
                "features": frames,
                "metadata": {
                    "totalFramesLoaded": len(frames),
                    "totalDetectionsLoaded": len(features),
                    "failedSources": failed,
                    "processedAt": processed_at,
                },
            }
            logger.info(f"Loaded {len(frames)} frames ({len(features)} detections) "
                        f"from {len(sources or []) - len(failed)} sources")

        if length_filter:
            collection = filter_features_by_length(collection, length_filter.get("min"), length_filter.get("max"))
        return collection

    def compute_path_density(self, collection: Mapping[str, Any]) -> PathDensityResult:
        return self.density_calculator.compute(list((collection or {}).get("features") or []))
