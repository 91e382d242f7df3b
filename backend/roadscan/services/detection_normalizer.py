# backend/roadscan/services/detection_normalizer.py

"""
Normalization of raw detection features.

Raw features arrive with loosely typed properties: frame ids as strings,
timestamps in several formats, ``s3://`` image URIs and either an
``all_detections_in_frame`` array or one flat detection per feature. This module
turns them into a canonical shape, removes duplicate detections and merges
features that describe the same capture frame.

None of the functions here mutate the features they are given.
"""

import copy
import logging
import math
import re
import time
from typing import Any, Dict, List, Mapping, Optional

from roadscan.utils.coercion import (
    coerce_finite_number,
    coerce_int,
    coerce_number,
    coerce_timestamp,
    derive_frame_identifier,
)
from roadscan.utils.storage import StorageUrlResolver

logger = logging.getLogger(__name__)

DATA_MODE = "data"
TRACKS_MODE = "tracks"

PARENT_TRACK_SOURCE_PATTERN = re.compile(r"parent_tracks", re.IGNORECASE)

# Checked in order when the scan start + frame offset is not available
GLOBAL_TIMESTAMP_FIELDS = (
    "gps_timestamp",
    "gpsTimestamp",
    "timestamp",
    "capture_time",
    "captureTimestamp",
    "globalTimestamp",
)

# Fields copied into the single detection synthesized from a flat record
FLAT_DETECTION_FIELDS = (
    "defect_id",
    "severity",
    "severity_score",
    "track_id",
    "confidence",
    "area_px",
    "spatial_zone",
    "spatial_bin",
    "length_mm",
)


def _first_present(*values: Any) -> Any:
    """First value that is not None."""
    for value in values:
        if value is not None:
            return value
    return None


def _first_truthy(*values: Any) -> Any:
    for value in values:
        if value:
            return value
    return None


def _as_mapping(value: Any) -> Mapping[str, Any]:
    return value if isinstance(value, Mapping) else {}


def _properties_of(feature: Any) -> Mapping[str, Any]:
    return _as_mapping(_as_mapping(feature).get("properties"))


def _key_part(value: Any) -> str:
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def _as_frame_number(value: Any) -> Optional[float]:
    numeric = coerce_number(value)
    if numeric is None:
        return None
    if math.isfinite(numeric) and numeric.is_integer():
        return int(numeric)
    return numeric


def compute_global_timestamp(source_document: Optional[Mapping[str, Any]],
                             feature: Optional[Mapping[str, Any]],
                             now_ms: Optional[float] = None) -> float:
    """
    Epoch-millisecond timestamp for a feature.

    Scan start time plus the frame offset when both exist, else the first
    usable direct timestamp field, else the current time.
    """
    metadata = _as_mapping(_as_mapping(source_document).get("metadata"))
    scan_info = _as_mapping(metadata.get("scan_info"))
    properties = _properties_of(feature)

    base_timestamp = coerce_timestamp(scan_info.get("timestamp"))
    frame_offset = coerce_timestamp(properties.get("frame_number"))
    if base_timestamp is not None and frame_offset is not None:
        return base_timestamp + frame_offset

    for field in GLOBAL_TIMESTAMP_FIELDS:
        coerced = coerce_timestamp(properties.get(field))
        if coerced is not None:
            return coerced

    return now_ms if now_ms is not None else time.time() * 1000.0


def build_detection_dedup_key(detection: Optional[Mapping[str, Any]],
                              fallback_frame_id: Any = None) -> Optional[str]:
    """
    Identity of a detection: ``defect:<id>`` when a defect id exists, else
    ``frame|track|class|confidence(4dp)|bbox(2dp)``.
    """
    if not detection or not isinstance(detection, Mapping):
        return None
    defect_id = _first_truthy(detection.get("defect_id"), detection.get("id"))
    if defect_id:
        return f"defect:{defect_id}"

    frame = _first_present(detection.get("frame_id"), detection.get("frame_number"), fallback_frame_id)
    track = _first_present(detection.get("track_id"), detection.get("track"))
    class_name = _first_present(detection.get("class_name"), detection.get("defect_type"))

    confidence = detection.get("confidence")
    if isinstance(confidence, (int, float)) and not isinstance(confidence, bool) and math.isfinite(confidence):
        confidence_part = f"{confidence:.4f}"
    else:
        confidence_part = "conf-na"

    bbox = detection.get("bbox")
    if isinstance(bbox, (list, tuple)):
        bbox_part = ",".join(
            f"{coord:.2f}" if isinstance(coord, (int, float)) and not isinstance(coord, bool) and math.isfinite(coord) else "x"
            for coord in bbox
        )
    else:
        bbox_part = "bbox-na"

    return "|".join((
        _key_part(frame) if frame is not None else "frame-unknown",
        _key_part(track) if track is not None else "track-unknown",
        str(class_name) if class_name is not None else "class-unknown",
        confidence_part,
        bbox_part,
    ))


def dedupe_detections(detections: Any, fallback_frame_id: Any = None) -> Any:
    """Drop repeated and non-object detections, first occurrence wins, order preserved."""
    if not isinstance(detections, list):
        return detections

    seen = set()
    result = []
    for detection in detections:
        if not isinstance(detection, Mapping):
            logger.debug(f"Skipping malformed detection entry: {detection!r}")
            continue
        key = build_detection_dedup_key(detection, fallback_frame_id)
        if key:
            if key in seen:
                continue
            seen.add(key)
        result.append(detection)
    return result


def is_parent_track_dataset(features: Any) -> bool:
    if not isinstance(features, list):
        return False
    for feature in features:
        properties = _properties_of(feature)
        source = properties.get("sourceUrl") or ""
        if properties.get("child_tracks") or properties.get("is_parent_track"):
            return True
        if isinstance(source, str) and PARENT_TRACK_SOURCE_PATTERN.search(source):
            return True
    return False


def filter_features_by_length(collection: Optional[Dict[str, Any]],
                              min_length_mm: Any = None,
                              max_length_mm: Any = None) -> Optional[Dict[str, Any]]:
    """
    Keep only detections whose ``length_mm`` lies within the bounds.

    Point features losing every detection are removed; non-Point features pass
    through. Detections without a length are dropped while a bound is set.
    """
    if not collection or not isinstance(collection.get("features"), list):
        return collection

    min_length = coerce_finite_number(min_length_mm)
    max_length = coerce_finite_number(max_length_mm)
    if min_length is None and max_length is None:
        return collection

    filtered_total = 0
    filtered_features = []
    for feature in collection["features"]:
        geometry_type = _as_mapping(_as_mapping(feature).get("geometry")).get("type")
        if geometry_type and geometry_type != "Point":
            filtered_features.append(feature)
            continue

        properties = _properties_of(feature)
        detections = properties.get("all_detections_in_frame")
        if not isinstance(detections, list):
            detections = []

        kept = []
        for detection in detections:
            if not isinstance(detection, Mapping):
                continue
            length = coerce_finite_number(_first_present(detection.get("length_mm"), detection.get("lengthMm")))
            if length is None:
                continue
            if min_length is not None and length < min_length:
                continue
            if max_length is not None and length > max_length:
                continue
            kept.append(detection)

        if not kept:
            continue
        filtered_total += len(kept)
        filtered_features.append({
            **feature,
            "properties": {**properties, "all_detections_in_frame": kept, "detection_count_in_frame": len(kept)},
        })

    logger.debug(f"Length filter [{min_length}, {max_length}] kept {filtered_total} detections "
                 f"in {len(filtered_features)} features")
    return {
        **collection,
        "features": filtered_features,
        "metadata": {
            **(collection.get("metadata") or {}),
            "filteredDetectionCount": filtered_total,
            "appliedLengthFilter": {"min": min_length, "max": max_length},
        },
    }


class DetectionNormalizer:
    """
    Canonicalizes detection features and merges them per capture frame.

    Image references are rewritten through the injected ``StorageUrlResolver``.
    """

    def __init__(self, resolver: StorageUrlResolver):
        self.resolver = resolver

    def _to_http(self, value: Any) -> Optional[str]:
        return self.resolver.to_http(value) or None

    def normalize_feature_properties(self, feature: Optional[Dict[str, Any]], mode: str) -> Optional[Dict[str, Any]]:
        """
        Return a normalized copy of ``feature``.

        In ``data`` mode a flat record gets a one-element detection array and a
        ``detection_count_in_frame`` of at least 1; otherwise the count is the
        length of the deduplicated array.
        """
        if not feature or not isinstance(feature, Mapping):
            return feature
        normalized = copy.deepcopy(dict(feature))
        properties = normalized.get("properties")
        properties = dict(properties) if isinstance(properties, Mapping) else {}
        normalized["properties"] = properties

        frame_id = _as_frame_number(properties.get("frame_id"))
        if frame_id is not None:
            properties["frame_id"] = frame_id

        frame_number = _as_frame_number(properties["frame_number"]) if "frame_number" in properties else frame_id
        if frame_number is not None:
            properties["frame_number"] = frame_number

        gps_timestamp = coerce_timestamp(properties.get("gps_timestamp"))
        if gps_timestamp is not None:
            properties["gps_timestamp"] = gps_timestamp

        images = properties.get("images")
        if isinstance(images, dict):
            thumbnail = images.get("thumbnail")
            polygon_overlay = images.get("polygon_overlay")
            measurement_overlay = images.get("measurement_overlay")
            original_frame = images.get("original_frame")
            properties["compressed_annotated_image_url"] = (
                properties.get("compressed_annotated_image_url")
                or self.resolver.to_http(_first_truthy(thumbnail, polygon_overlay, original_frame))
            )
            properties["annotated_image_url"] = (
                properties.get("annotated_image_url")
                or self.resolver.to_http(_first_truthy(polygon_overlay, measurement_overlay, thumbnail))
            )
            properties["original_image_url"] = (
                properties.get("original_image_url")
                or self.resolver.to_http(_first_truthy(original_frame, thumbnail))
            )
        else:
            for slot in ("compressed_annotated_image_url", "annotated_image_url", "original_image_url"):
                properties[slot] = self.resolver.to_http(properties.get(slot))

        detections = properties.get("all_detections_in_frame")
        if isinstance(detections, list):
            detections = [detection for detection in detections if isinstance(detection, Mapping)]
        synthesized = False
        if mode == DATA_MODE and (not isinstance(detections, list) or not detections):
            flat = {field: properties.get(field) for field in FLAT_DETECTION_FIELDS}
            flat["class_id"] = _first_truthy(properties.get("class_name"), properties.get("defect_type"))
            flat["frame_id"] = _first_present(properties.get("frame_id"), properties.get("frame_number"))
            properties["all_detections_in_frame"] = [flat]
            synthesized = True

        if isinstance(properties.get("all_detections_in_frame"), list):
            properties["all_detections_in_frame"] = dedupe_detections(
                properties["all_detections_in_frame"],
                _first_present(properties.get("frame_id"), properties.get("frame_number")),
            )
            if synthesized:
                stated = coerce_int(properties.get("detection_count_in_frame")) or 0
                properties["detection_count_in_frame"] = max(stated, 1)
            else:
                properties["detection_count_in_frame"] = len(properties["all_detections_in_frame"])

        if not properties.get("frame_type"):
            frame_type = _first_truthy(properties.get("defect_type"), properties.get("class_name"))
            if frame_type:
                properties["frame_type"] = frame_type

        return normalized

    def extract_detection_summary(self, feature: Optional[Mapping[str, Any]],
                                  detection: Optional[Mapping[str, Any]] = None) -> Dict[str, Any]:
        """
        Flatten one detection into the summary entry stored per frame.

        Fields missing on ``detection`` fall back to the feature's own properties.
        """
        fallback = _properties_of(feature)
        props = detection if isinstance(detection, Mapping) and detection else fallback
        images = _as_mapping(props.get("images") or fallback.get("images"))

        def pick(field: str) -> Any:
            return _first_present(props.get(field), fallback.get(field))

        detection_timestamp = coerce_timestamp(_first_present(
            props.get("gps_timestamp"),
            props.get("globalTimestamp"),
            props.get("capture_time"),
            props.get("captureTimestamp"),
            fallback.get("gps_timestamp"),
            fallback.get("globalTimestamp"),
        ))

        geometry = _as_mapping(_as_mapping(feature).get("geometry"))
        coordinates = geometry.get("coordinates") if geometry.get("type") == "Point" else None

        return {
            "defect_id": pick("defect_id"),
            "defect_type": _first_truthy(props.get("defect_type"), props.get("class_name"),
                                         fallback.get("defect_type"), fallback.get("class_name")),
            "class_name": _first_truthy(props.get("class_name"), props.get("defect_type"),
                                        fallback.get("class_name"), fallback.get("defect_type")),
            "severity": pick("severity"),
            "severity_score": pick("severity_score"),
            "track_id": pick("track_id"),
            "frame_id": _first_present(props.get("frame_id"), props.get("frame_number"),
                                       fallback.get("frame_id"), fallback.get("frame_number")),
            "confidence": coerce_finite_number(pick("confidence")),
            "area_px": coerce_finite_number(pick("area_px")),
            "area_mm2": coerce_finite_number(pick("area_mm2")),
            "length_mm": coerce_finite_number(pick("length_mm")),
            "width_mm": pick("width_mm"),
            "spatial_zone": pick("spatial_zone"),
            "spatial_bin": pick("spatial_bin"),
            "gps_timestamp": detection_timestamp,
            "bbox": pick("bbox"),
            "thumbnail_url": self._to_http(_first_truthy(
                props.get("thumbnail"), props.get("thumbnail_url"),
                fallback.get("thumbnail"), fallback.get("thumbnail_url"),
                fallback.get("compressed_annotated_image_url"),
            )),
            "polygon_overlay_url": self._to_http(_first_truthy(
                props.get("polygon_overlay"), props.get("polygon_overlay_url"), images.get("polygon_overlay"),
                fallback.get("polygon_overlay"), fallback.get("polygon_overlay_url"),
            )),
            "measurement_overlay_url": self._to_http(_first_truthy(
                props.get("measurement_overlay"), props.get("measurement_overlay_url"),
                images.get("measurement_overlay"),
                fallback.get("measurement_overlay"), fallback.get("measurement_overlay_url"),
            )),
            "original_frame_url": self._to_http(_first_truthy(
                props.get("original_frame"), props.get("original_frame_url"),
                fallback.get("original_frame"), fallback.get("original_frame_url"),
                fallback.get("original_image_url"),
            )),
            "annotated_image_url": self._to_http(_first_truthy(
                props.get("annotated_image_url"), fallback.get("annotated_image_url"),
                props.get("polygon_overlay"), fallback.get("polygon_overlay"),
                props.get("measurement_overlay"), fallback.get("measurement_overlay"),
            )),
            "coordinates": coordinates,
        }

    def gather_detections_for_feature(self, feature: Optional[Mapping[str, Any]]) -> List[Dict[str, Any]]:
        properties = _properties_of(feature)
        detections = properties.get("all_detections_in_frame")
        if isinstance(detections, list):
            usable = [detection for detection in detections if isinstance(detection, Mapping)]
            if usable:
                return [self.extract_detection_summary(feature, detection) for detection in usable]
        return [self.extract_detection_summary(feature)]

    def aggregate_detections_by_frame(self, features: Optional[List[Dict[str, Any]]]) -> List[Dict[str, Any]]:
        """
        Merge features sharing a frame identifier into one Point feature per frame.

        Returns ``features`` unchanged when no frame identifier occurs twice.
        Merged frames carry the deduplicated union of detections, the mean of
        their valid Point coordinates, the earliest timestamp and the first
        image URL seen per slot. Frames are sorted by frame number; features
        without any frame identifier follow in input order.
        """
        if not isinstance(features, list) or not features:
            return features or []

        entries = []
        frame_counts: Dict[str, int] = {}
        for feature in features:
            frame_info = derive_frame_identifier(_properties_of(feature))
            if frame_info is not None:
                frame_counts[frame_info.key] = frame_counts.get(frame_info.key, 0) + 1
            entries.append((feature, frame_info))

        if not any(count > 1 for count in frame_counts.values()):
            return features

        frames: Dict[str, Dict[str, Any]] = {}
        accumulators: Dict[str, List[float]] = {}
        registries: Dict[str, set] = {}
        source_urls: Dict[str, List[str]] = {}
        orphans = []

        for feature, frame_info in entries:
            if frame_info is None:
                orphans.append(feature)
                continue

            key = frame_info.key
            summaries = self.gather_detections_for_feature(feature)
            source_url = _properties_of(feature).get("sourceUrl")

            frame_feature = frames.get(key)
            if frame_feature is None:
                base_props = copy.deepcopy(dict(_properties_of(feature)))
                numeric = frame_info.numeric
                if numeric is not None and numeric.is_integer():
                    numeric = int(numeric)
                geometry = _as_mapping(feature).get("geometry")
                frame_feature = {
                    "type": _as_mapping(feature).get("type") or "Feature",
                    "geometry": copy.deepcopy(geometry) if geometry else None,
                    "properties": {
                        **base_props,
                        "frame_id": _first_present(numeric, base_props.get("frame_id"), base_props.get("frame_number")),
                        "frame_number": _first_present(base_props.get("frame_number"), numeric, base_props.get("frame_id")),
                        "all_detections_in_frame": [],
                        "detection_count_in_frame": 0,
                    },
                }
                frames[key] = frame_feature
                accumulators[key] = [0.0, 0.0, 0]  # lng sum, lat sum, count
                registries[key] = set()
                source_urls[key] = [source_url] if source_url else []
            elif source_url and source_url not in source_urls[key]:
                source_urls[key].append(source_url)

            frame_props = frame_feature["properties"]
            for summary in summaries:
                dedup_key = build_detection_dedup_key(
                    summary, _first_present(frame_props.get("frame_id"), frame_props.get("frame_number"))
                )
                if dedup_key:
                    if dedup_key in registries[key]:
                        continue
                    registries[key].add(dedup_key)

                frame_props["all_detections_in_frame"].append(summary)
                frame_props["detection_count_in_frame"] = len(frame_props["all_detections_in_frame"])

                coords = summary.get("coordinates")
                if (isinstance(coords, (list, tuple)) and len(coords) == 2
                        and all(isinstance(v, (int, float)) and not isinstance(v, bool) and math.isfinite(v)
                                for v in coords)):
                    accumulators[key][0] += coords[0]
                    accumulators[key][1] += coords[1]
                    accumulators[key][2] += 1

                if not frame_props.get("compressed_annotated_image_url") and summary.get("thumbnail_url"):
                    frame_props["compressed_annotated_image_url"] = summary["thumbnail_url"]
                if not frame_props.get("annotated_image_url") and (
                        summary.get("annotated_image_url") or summary.get("polygon_overlay_url")):
                    frame_props["annotated_image_url"] = summary.get("annotated_image_url") or summary.get("polygon_overlay_url")
                if not frame_props.get("original_image_url") and summary.get("original_frame_url"):
                    frame_props["original_image_url"] = summary["original_frame_url"]

                timestamp = summary.get("gps_timestamp")
                if timestamp is not None:
                    current = coerce_timestamp(frame_props.get("globalTimestamp"))
                    if current is None or timestamp < current:
                        frame_props["globalTimestamp"] = timestamp

        aggregated = []
        for key, frame_feature in frames.items():
            lng_sum, lat_sum, count = accumulators[key]
            if count > 0:
                frame_feature["geometry"] = {"type": "Point", "coordinates": [lng_sum / count, lat_sum / count]}
            if source_urls[key]:
                frame_feature["properties"]["sourceUrl"] = source_urls[key][0]
            aggregated.append(frame_feature)

        def frame_sort_key(frame_feature):
            props = frame_feature["properties"]
            value = coerce_finite_number(_first_present(props.get("frame_number"), props.get("frame_id")))
            return (0, value) if value is not None else (1, 0.0)

        aggregated.sort(key=frame_sort_key)
        logger.debug(f"Aggregated {len(features)} features into {len(aggregated)} frames "
                     f"({len(orphans)} without frame id)")
        return aggregated + orphans
