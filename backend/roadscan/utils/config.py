import yaml
from pathlib import Path
import logging
from typing import Dict, Any
import copy

class ConfigError(Exception):
    """Custom exception for configuration errors."""
    pass

DEFAULT_CONFIG: Dict[str, Any] = {
    "logging": {
        "level": "INFO",
    },
    "storage": {
        # Default bucket gets its region-specific host, everything else the generic virtual-hosted URL
        "default_bucket": "roadscan-data-dev-usw2",
        "default_http_base": "https://roadscan-data-dev-usw2.s3.us-west-2.amazonaws.com",
        "bucket_http_bases": {},
    },
    "segmentation": {
        "segment_length_feet": 528.0,  # 0.1 mile
        "geometric_segment_length_feet": 500.0,
        "min_speed_mph": 5.0,
        "no_gps_strategy": "single_segment",  # or "geometric"
        "max_workers": 1,
    },
    "path_density": {
        "gap_threshold_ms": 10000,
        "segment_length_feet": 500.0,
        "buffer_radius_feet": 25.0,
    },
    "pci": {
        "verbose": False,
    },
    "api": {
        "title": "RoadScan - Pavement Condition API",
        "version": "1.0.0",
    },
}

def merge_dicts(source: Dict[Any, Any], destination: Dict[Any, Any]) -> Dict[Any, Any]:
    """Overlay ``source`` onto ``destination`` in place, section by section, and return it."""
    for key, value in source.items():
        existing = destination.get(key)
        if isinstance(value, dict) and isinstance(existing, dict):
            merge_dicts(value, existing)
        elif isinstance(value, dict):
            destination[key] = merge_dicts(value, {})
        else:
            destination[key] = value
    return destination

def load_config(config_file: Path = Path("config.yaml")) -> Dict[str, Any]:
    """
    Read the pipeline settings from ``config_file`` on top of DEFAULT_CONFIG.

    A missing file is not an error; the defaults are returned and a warning
    is logged. Unreadable files, broken YAML and non-mapping documents raise
    ConfigError.
    """
    config = copy.deepcopy(DEFAULT_CONFIG)
    config_file = Path(config_file)
    if not config_file.exists():
        logging.warning(f"No pipeline settings at {config_file}; running with defaults.")
        return config

    try:
        overrides = yaml.safe_load(config_file.read_text())
    except yaml.YAMLError as e:
        logging.error(f"Invalid YAML in {config_file}: {e}")
        raise ConfigError(f"Invalid YAML in {config_file}: {e}") from e
    except OSError as e:
        logging.error(f"Could not read {config_file}: {e}")
        raise ConfigError(f"Could not read {config_file}: {e}") from e

    if overrides is None:
        return config
    if not isinstance(overrides, dict):
        raise ConfigError(f"Top level of {config_file} must be a mapping, got {type(overrides).__name__}")
    return merge_dicts(overrides, config)
