# backend/roadscan/utils/__init__.py

"""
Utility package for the pavement pipeline.

Re-exports the config loader, boundary coercion helpers, geometry helpers and
storage URL rewriting under the `roadscan.utils` namespace.
"""

import logging

# Import from .config module
from .config import ConfigError, load_config, DEFAULT_CONFIG, merge_dicts

# Import from .coercion module
from .coercion import (
    FrameIdentifier,
    coerce_number,
    coerce_finite_number,
    coerce_int,
    coerce_timestamp,
    derive_frame_identifier,
)

# Import from .geo module
from .geo import (
    FEET_PER_METER,
    clean_coordinates,
    coordinate_distance_feet,
    haversine_distance_feet,
    line_chunk,
    path_length_feet,
    point_within_buffer,
)

# Import from .storage module
from .storage import StorageUrlResolver, extract_job_id_from_source_url

logger = logging.getLogger(__name__)

__all__ = [
    # From config.py
    'ConfigError',
    'load_config',
    'DEFAULT_CONFIG',
    'merge_dicts',

    # From coercion.py
    'FrameIdentifier',
    'coerce_number',
    'coerce_finite_number',
    'coerce_int',
    'coerce_timestamp',
    'derive_frame_identifier',

    # From geo.py
    'FEET_PER_METER',
    'clean_coordinates',
    'coordinate_distance_feet',
    'haversine_distance_feet',
    'line_chunk',
    'path_length_feet',
    'point_within_buffer',

    # From storage.py
    'StorageUrlResolver',
    'extract_job_id_from_source_url',
]
