# backend/roadscan/main.py

import logging

from fastapi import FastAPI, HTTPException, Request
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from roadscan.routers import pavement
from .config import initialize_config
from .services.exceptions import PavementPipelineError
from .utils.config import DEFAULT_CONFIG

logging.basicConfig(level=logging.INFO, format="%(asctime)s - %(name)s - %(levelname)s - %(message)s")
logger = logging.getLogger(__name__)

app = FastAPI(
    title=DEFAULT_CONFIG["api"]["title"],
    version=DEFAULT_CONFIG["api"]["version"],
    description="Pavement condition scoring and road-segment aggregation for geotagged defect detections.",
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=["*"],
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)


@app.exception_handler(Exception)
async def unhandled_exception_handler(request: Request, exc: Exception):
    """Ensure all unhandled exceptions return JSON rather than HTML"""
    logger.exception("Unhandled exception occurred:")
    return JSONResponse(
        status_code=500,
        content={"detail": str(exc), "type": "Internal Server Error"}
    )

@app.exception_handler(HTTPException)
async def http_exception_handler(request: Request, exc: HTTPException):
    """Convert HTTPExceptions to JSON format"""
    return JSONResponse(
        status_code=exc.status_code,
        content={"detail": exc.detail, "type": "HTTP Exception"}
    )

@app.exception_handler(PavementPipelineError)
async def pipeline_exception_handler(request: Request, exc: PavementPipelineError):
    logger.warning(f"Rejected pipeline request: {exc}")
    return JSONResponse(
        status_code=422,
        content={"detail": str(exc), "type": "Pipeline Error"}
    )

@app.on_event("startup")
async def startup_event():
    logger.info("--- Starting RoadScan Backend ---")
    try:
        initialize_config()
    except Exception as e:
        logger.critical(f"CRITICAL FAILURE during config initialization: {e}", exc_info=True)
        raise RuntimeError(f"Configuration Initialization Failed: {e}") from e
    logger.info("Application startup complete.")


app.include_router(pavement.router)


@app.get("/health")
async def health_check():
    return {"status": "ok"}


if __name__ == "__main__":
    import uvicorn
    uvicorn.run("roadscan.main:app", host="0.0.0.0", port=9002, reload=True)
