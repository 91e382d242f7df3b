# backend/roadscan/dependencies.py

from typing import Dict, Any

from fastapi import Depends

from .config import get_current_config
from .services.pipeline import PavementDataPipeline

async def get_config() -> Dict[str, Any]:
    """Dependency to get the currently loaded configuration dictionary."""
    config = get_current_config()
    return config

async def get_pavement_pipeline(config: Dict[str, Any] = Depends(get_config)) -> PavementDataPipeline:
    """Dependency to get a pipeline bound to the current configuration."""
    return PavementDataPipeline(config)
