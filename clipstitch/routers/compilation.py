"""
Compilation API router.

Endpoints:
- POST /upload                - Upload sources plus a clip list, start a job
- GET  /progress/{job_id}     - Poll job progress
- POST /cancel/{job_id}       - Request cancellation (idempotent)
- GET  /download/{filename}   - Fetch a compiled video
"""

import json
import logging
from typing import Optional

from fastapi import (
    APIRouter,
    BackgroundTasks,
    Depends,
    File,
    Form,
    HTTPException,
    Request,
    UploadFile,
    status,
)
from fastapi.responses import FileResponse
from pydantic import ValidationError

from clipstitch.auth import verify_api_key
from clipstitch.schemas.requests import ClipInput
from clipstitch.schemas.responses import (
    CancelResponse,
    JobAcceptedResponse,
    ProgressResponse,
)
from clipstitch.services.clip_validator import ClipSpec, validate
from clipstitch.services.compilation_pipeline import JobRunner
from clipstitch.services.job_registry import JobRegistry, JobStatus, new_job_id
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.upload_assembler import (
    UploadAssembler,
    UploadedFile,
    UploadError,
    UploadTooLargeError,
)

logger = logging.getLogger(__name__)

router = APIRouter()

STAGE_INITIALIZING = "Initializing..."


# ============================================================================
# Dependencies
# ============================================================================


def get_registry(request: Request) -> JobRegistry:
    return request.app.state.registry


def get_assembler(request: Request) -> UploadAssembler:
    return request.app.state.assembler


def get_storage(request: Request) -> OutputStorage:
    return request.app.state.storage


def get_runner(request: Request) -> JobRunner:
    return request.app.state.runner


# ============================================================================
# Helpers
# ============================================================================


def parse_clips(clips_data: Optional[str]) -> list[ClipSpec]:
    """Decode the clipsData form field into clip specs."""
    if not clips_data:
        return []
    try:
        raw = json.loads(clips_data)
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"clipsData is not valid JSON: {e}",
        )
    if not isinstance(raw, list):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="clipsData must be a JSON array",
        )
    try:
        return [ClipInput.model_validate(item).to_spec() for item in raw]
    except ValidationError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"Invalid clip in clipsData: {e.errors()[0]['msg']}",
        )


def parse_file_ids(file_ids: Optional[str]) -> list[str]:
    """Decode the fileIds form field (JSON array of finalized upload ids)."""
    if not file_ids:
        return []
    try:
        raw = json.loads(file_ids)
    except json.JSONDecodeError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=f"fileIds is not valid JSON: {e}",
        )
    if not isinstance(raw, list) or not all(isinstance(i, str) for i in raw):
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="fileIds must be a JSON array of strings",
        )
    return raw


# ============================================================================
# Endpoints
# ============================================================================


@router.post(
    "/upload",
    response_model=JobAcceptedResponse,
    status_code=status.HTTP_202_ACCEPTED,
    dependencies=[Depends(verify_api_key)],
)
async def upload_and_compile(
    background_tasks: BackgroundTasks,
    videos: Optional[list[UploadFile]] = File(None),
    clips_data: Optional[str] = Form(None, alias="clipsData"),
    file_ids: Optional[str] = Form(None, alias="fileIds"),
    registry: JobRegistry = Depends(get_registry),
    assembler: UploadAssembler = Depends(get_assembler),
    runner: JobRunner = Depends(get_runner),
) -> JobAcceptedResponse:
    """
    Accept source files and a clip list, then compile in the background.

    Sources are the uploaded ``videos`` in order followed by the previously
    finalized uploads named in ``fileIds``; each clip's ``sourceIndex`` points
    into that combined list. Returns immediately with a job id to poll.
    """
    videos = videos or []
    ids = parse_file_ids(file_ids)

    if not videos and not ids:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No video files uploaded",
        )

    clips = parse_clips(clips_data)
    if not clips:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No clips data provided",
        )

    files: list[UploadedFile] = []
    try:
        for video in videos:
            files.append(
                await assembler.accept_whole(
                    video.filename or "video.mp4",
                    video.file,
                    size=getattr(video, "size", None),
                    register=False,
                )
            )
        for file_id in ids:
            files.append(assembler.claim(file_id))
    except UploadTooLargeError as e:
        assembler.discard(files)
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e),
        )
    except UploadError as e:
        assembler.discard(files)
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    if not validate(clips, files):
        assembler.discard(files)
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="No valid clips found",
        )

    job_id = new_job_id()
    registry.create(job_id)
    logger.info(f"[{job_id}] Accepted: {len(clips)} clip(s) from {len(files)} source(s)")

    background_tasks.add_task(runner.run, job_id, clips, files)

    return JobAcceptedResponse(job_id=job_id)


@router.get(
    "/progress/{job_id}",
    response_model=ProgressResponse,
    response_model_exclude_none=True,
)
async def get_progress(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> ProgressResponse:
    """Current progress of a job; unknown ids report as initializing."""
    state = registry.get(job_id)
    if state is None:
        return ProgressResponse(percent=0, stage=STAGE_INITIALIZING)

    response = ProgressResponse(
        percent=round(state.percent),
        stage=state.stage,
        status=state.status.value,
    )
    if state.status == JobStatus.COMPLETE and state.output is not None:
        response.download_url = state.output.download_url
        response.output_file = state.output.output_file
    return response


@router.post(
    "/cancel/{job_id}",
    response_model=CancelResponse,
    dependencies=[Depends(verify_api_key)],
)
async def cancel_job(
    job_id: str,
    registry: JobRegistry = Depends(get_registry),
) -> CancelResponse:
    """Request cancellation. Always succeeds, even for unknown or finished jobs."""
    if not registry.mark_cancelled(job_id):
        logger.debug(f"[{job_id}] Cancel ignored: job unknown or already finished")
    return CancelResponse(success=True)


@router.get("/download/{filename}")
async def download_video(
    filename: str,
    storage: OutputStorage = Depends(get_storage),
):
    """Serve a compiled video from the output directory."""
    path = storage.resolve(filename)
    if path is None:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail="File not found",
        )
    return FileResponse(str(path), media_type="video/mp4", filename=path.name)
