# backend/roadscan/services/__init__.py

import logging

from .exceptions import PavementPipelineError, UnsupportedModeError
from .detection_normalizer import DetectionNormalizer, filter_features_by_length
from .segment_builder import SegmentBuilder
from .path_density import PathDensityCalculator, compute_path_density
from .pipeline import PavementDataPipeline

logger = logging.getLogger(__name__)
logger.debug("roadscan.services package initialized.")

__all__ = [
    "PavementPipelineError",
    "UnsupportedModeError",
    "DetectionNormalizer",
    "filter_features_by_length",
    "SegmentBuilder",
    "PathDensityCalculator",
    "compute_path_density",
    "PavementDataPipeline",
]
