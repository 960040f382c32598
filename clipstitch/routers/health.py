"""
Health check endpoints for the compilation server.
"""

import shutil

from fastapi import APIRouter, Request

from clipstitch import __version__
from clipstitch.schemas.responses import HealthResponse, ReadinessResponse

router = APIRouter()


@router.get("/health", response_model=HealthResponse)
async def health_check():
    """
    Basic health check endpoint.

    Returns 200 if the service is running.
    """
    return HealthResponse(
        status="healthy",
        version=__version__,
    )


@router.get("/health/ready", response_model=ReadinessResponse)
async def readiness_check(request: Request):
    """
    Readiness check endpoint.

    Ready once the services are built and both ffmpeg and ffprobe resolve.
    """
    settings = request.app.state.settings
    registry = getattr(request.app.state, "registry", None)

    ffmpeg_ready = shutil.which(settings.ffmpeg_path) is not None
    ffprobe_ready = shutil.which(settings.ffprobe_path) is not None

    return ReadinessResponse(
        ready=registry is not None and ffmpeg_ready and ffprobe_ready,
        ffmpeg="available" if ffmpeg_ready else "not_found",
        ffprobe="available" if ffprobe_ready else "not_found",
        tracked_jobs=len(registry) if registry is not None else 0,
    )
