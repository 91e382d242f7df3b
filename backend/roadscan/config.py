# backend/roadscan/config.py

import logging
from pathlib import Path
from typing import Dict, Any, Optional

from roadscan.utils.config import load_config, ConfigError

logger = logging.getLogger(__name__)

DEFAULT_CONFIG_PATH = Path(__file__).resolve().parent.parent / "configs" / "config.yaml"
LOG_FORMAT = "%(asctime)s - %(name)s - %(levelname)s - %(message)s"

# Settings shared by the API process; set once at startup
_config_instance: Optional[Dict[str, Any]] = None

def _apply_log_level(config: Dict[str, Any]) -> str:
    level_name = str(config.get('logging', {}).get('level', 'INFO')).upper()
    level = getattr(logging, level_name, logging.INFO)
    logging.basicConfig(level=level, format=LOG_FORMAT, force=True)
    logging.getLogger('roadscan').setLevel(level)
    return level_name

def initialize_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """
    Load pipeline settings once per process.

    Later calls return the instance already loaded. Falls back to
    backend/configs/config.yaml when no path is given.
    """
    global _config_instance
    if _config_instance is not None:
        logger.warning("Pipeline settings already loaded; keeping the current instance.")
        return _config_instance

    path = Path(config_path) if config_path is not None else DEFAULT_CONFIG_PATH
    logger.info(f"Loading pipeline settings from {path}")
    try:
        _config_instance = load_config(path)
    except ConfigError as e:
        logger.critical(f"Pipeline settings at {path} are unusable: {e}", exc_info=True)
        _config_instance = None
        raise RuntimeError(f"Configuration loading failed: {e}") from e

    level_name = _apply_log_level(_config_instance)
    logger.info(f"Log level {level_name}, segment length {_config_instance['segmentation']['segment_length_feet']} ft")
    return _config_instance

def get_current_config() -> Dict[str, Any]:
    """Settings loaded by initialize_config; RuntimeError before that."""
    if _config_instance is None:
        logger.error("Pipeline settings requested before initialize_config ran.")
        raise RuntimeError("Configuration has not been initialized. Call initialize_config first.")
    return _config_instance

def reload_config(config_path: Optional[str] = None) -> Dict[str, Any]:
    """Drop the loaded settings and read them again."""
    global _config_instance
    logger.warning("Reloading pipeline settings.")
    _config_instance = None
    return initialize_config(config_path)
