# backend/roadscan/routers/pavement.py

import asyncio
import functools
import logging
from concurrent.futures import ThreadPoolExecutor
from typing import Any, Dict, List, Optional

from fastapi import APIRouter, Body, Depends, HTTPException, status
from pydantic import BaseModel, Field

from ..dependencies import get_config, get_pavement_pipeline
from ..ml.pavement_analysis.analysis_modules.deduct_tables import (
    get_deduct_value,
    get_pci_color,
    trace_multiple_deduct_correction,
)
from ..ml.pavement_analysis.analysis_modules.pci_calculator import calculate_pci
from ..models.pavement import CorrectionTrace, DefectType, PathDensityResult, PCIResult, PixelPercentages, SeverityLevel
from ..services.pipeline import PavementDataPipeline

logger = logging.getLogger(__name__)

# Pipeline runs are CPU bound and go through this pool
thread_pool = ThreadPoolExecutor(max_workers=4)

router = APIRouter(
    prefix="/api/pavement",
    tags=["pavement"],
    responses={404: {"description": "Not found"}},
)


class DeductValueRequest(BaseModel):
    defect_type: DefectType
    severity: SeverityLevel
    density: float = Field(..., description="Percentage of segment affected, or count for transverse cracks and potholes")

class DeductValueResponse(BaseModel):
    defect_type: DefectType
    severity: SeverityLevel
    density: float
    deduct_value: float

class DeductCorrectionRequest(BaseModel):
    deduct_values: List[float] = Field(default_factory=list)

class DeductCorrectionResponse(BaseModel):
    corrected_deduct_value: float
    pci_score: float
    pci_color: str
    trace: CorrectionTrace

class SourceDocument(BaseModel):
    source_url: str
    geojson: Optional[Dict[str, Any]] = Field(None, description="Parsed GeoJSON, or null when the fetch failed")

class LengthFilter(BaseModel):
    min: Optional[float] = None
    max: Optional[float] = None

class SegmentsRequest(BaseModel):
    sources: List[SourceDocument]
    gps_csv_by_job: Dict[str, str] = Field(default_factory=dict)
    video_index_by_job: Dict[str, Dict[str, Any]] = Field(default_factory=dict)
    job_prefixes: Dict[str, str] = Field(default_factory=dict)
    mode: str = "data"
    length_filter: Optional[LengthFilter] = None


async def _run_in_executor(func, *args, **kwargs):
    loop = asyncio.get_running_loop()
    return await loop.run_in_executor(thread_pool, functools.partial(func, *args, **kwargs))


@router.post("/pci", response_model=PCIResult)
async def score_pixel_percentages(
    pixel_percentages: PixelPercentages = Body(...),
    config: Dict[str, Any] = Depends(get_config),
):
    """
    Power-law PCI from pixel coverage percentages
    """
    return calculate_pci(pixel_percentages, verbose=config.get("pci", {}).get("verbose", False))


@router.post("/deduct-value", response_model=DeductValueResponse)
async def lookup_deduct_value(request: DeductValueRequest = Body(...)):
    value = get_deduct_value(request.defect_type, request.severity, request.density)
    return DeductValueResponse(
        defect_type=request.defect_type,
        severity=request.severity,
        density=request.density,
        deduct_value=value,
    )


@router.post("/deduct-correction", response_model=DeductCorrectionResponse)
async def correct_deduct_values(request: DeductCorrectionRequest = Body(...)):
    """
    Corrected Deduct Value for a set of individual deducts, with every iteration
    """
    if any(value < 0 for value in request.deduct_values):
        raise HTTPException(status_code=422, detail="Deduct values must be non-negative.")
    trace = trace_multiple_deduct_correction(request.deduct_values)
    pci_score = max(0.0, 100.0 - trace.max_cdv)
    return DeductCorrectionResponse(
        corrected_deduct_value=trace.max_cdv,
        pci_score=pci_score,
        pci_color=get_pci_color(pci_score),
        trace=trace,
    )


@router.post("/segments", response_model=Dict[str, Any])
async def build_segments(
    request: SegmentsRequest = Body(...),
    pipeline: PavementDataPipeline = Depends(get_pavement_pipeline),
):
    """
    Load detections from already-fetched sources and return aggregated frames
    or scored road segments as a FeatureCollection
    """
    collection = await _run_in_executor(
        pipeline.process,
        [source.model_dump() for source in request.sources],
        gps_csv_by_job=request.gps_csv_by_job,
        video_index_by_job=request.video_index_by_job,
        mode=request.mode,
        length_filter=request.length_filter.model_dump() if request.length_filter else None,
        job_prefixes=request.job_prefixes,
    )
    if not collection.get("features"):
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=f"No features could be built. Failed sources: {collection['metadata'].get('failedSources', [])}",
        )
    return collection


@router.post("/path-density", response_model=PathDensityResult)
async def path_density(
    collection: Dict[str, Any] = Body(...),
    pipeline: PavementDataPipeline = Depends(get_pavement_pipeline),
):
    return await _run_in_executor(pipeline.compute_path_density, collection)
