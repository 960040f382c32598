"""
FastAPI application entry point for clipstitch.

clipstitch compiles an ordered list of clips, trimmed from uploaded source
videos, into a single MP4:
1. Sources arrive whole or in chunks
2. Each clip is trimmed and normalized by ffmpeg, one at a time
3. The clips are joined with a stream copy and offered for download
"""

import asyncio
import logging
import os
import shutil
from contextlib import asynccontextmanager
from typing import AsyncGenerator, Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from clipstitch import __version__
from clipstitch.config import Settings, get_settings
from clipstitch.routers import compilation, health, uploads
from clipstitch.services.compilation_pipeline import CompilationPipeline, JobRunner
from clipstitch.services.job_registry import JobRegistry
from clipstitch.services.maintenance import run_maintenance
from clipstitch.services.media_probe import MediaProbe
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.transcode_driver import TranscodeDriver
from clipstitch.services.upload_assembler import UploadAssembler

# Configure logging
logging.basicConfig(
    level=getattr(logging, get_settings().log_level.upper(), logging.INFO),
    format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
)
logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncGenerator[None, None]:
    """
    Lifespan context manager for startup and shutdown events.
    Builds the services on startup and stops background work on shutdown.
    """
    settings: Settings = app.state.settings
    logger.info("Starting clipstitch...")

    # Create data directories
    for directory in (
        settings.upload_directory,
        settings.chunk_directory,
        settings.temp_directory,
        settings.output_directory,
    ):
        os.makedirs(directory, exist_ok=True)
    logger.info(f"Data directory: {settings.data_directory}")

    registry = JobRegistry()
    assembler = UploadAssembler(settings)
    storage = OutputStorage(settings)
    pipeline = CompilationPipeline(
        registry=registry,
        driver=TranscodeDriver(settings),
        probe=MediaProbe(settings),
        storage=storage,
        settings=settings,
    )
    runner = JobRunner(pipeline, registry, settings)
    logger.info(f"Max concurrent jobs: {settings.max_concurrent_jobs}")

    # Store in app state for dependency injection
    app.state.registry = registry
    app.state.assembler = assembler
    app.state.storage = storage
    app.state.pipeline = pipeline
    app.state.runner = runner

    _verify_external_tools(settings)

    maintenance_task = asyncio.create_task(run_maintenance(assembler, storage, settings))

    logger.info("clipstitch ready to accept requests.")

    yield

    # Cleanup on shutdown
    logger.info("Shutting down clipstitch...")
    maintenance_task.cancel()
    try:
        await maintenance_task
    except asyncio.CancelledError:
        pass

    # Clean up job temp directories
    if os.path.isdir(settings.temp_directory):
        try:
            shutil.rmtree(settings.temp_directory)
        except Exception as e:
            logger.warning(f"Failed to clean up temp directory: {e}")

    logger.info("Shutdown complete")


def _verify_external_tools(settings: Settings):
    """Verify that required external tools are available."""
    tools = {
        settings.ffmpeg_path: "FFmpeg for clip encoding",
        settings.ffprobe_path: "FFprobe for source analysis",
    }

    for tool, description in tools.items():
        if shutil.which(tool):
            logger.info(f"✓ {description} available")
        else:
            logger.warning(f"✗ {description} NOT FOUND - compilation will fail")


def create_app(settings: Optional[Settings] = None) -> FastAPI:
    """Build the FastAPI application."""
    app = FastAPI(
        title="clipstitch",
        description="""
clipstitch - timeline compilation service.

## Usage

1. Upload sources with a clip list: `POST /upload`
   (or upload first via `POST /upload/chunk` / `POST /upload/file` and pass `fileIds`)
2. Poll status: `GET /progress/{job_id}`
3. Download the result: `GET /download/{filename}`
4. Cancel at any time: `POST /cancel/{job_id}`
        """,
        version=__version__,
        lifespan=lifespan,
    )
    app.state.settings = settings or get_settings()

    # Add CORS middleware (the browser editor calls the API directly)
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # Include routers
    app.include_router(health.router, tags=["Health"])
    app.include_router(uploads.router, tags=["Uploads"])
    app.include_router(compilation.router, tags=["Compilation"])

    @app.get("/")
    async def root():
        """Root endpoint with service info."""
        return {
            "service": "clipstitch",
            "version": __version__,
            "docs": "/docs",
        }

    return app


app = create_app()
