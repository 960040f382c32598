"""
Upload API router.

Endpoints used by clients that upload sources ahead of submitting a job:
- POST /upload/chunk                       - Store one chunk of a file
- POST /upload/chunk/{file_id}/finalize    - Reassemble a complete chunk session
- POST /upload/file                        - Single-shot whole-file upload

Finalized uploads are referenced from POST /upload via ``fileIds``.
"""

import logging
from typing import Optional

from fastapi import APIRouter, Depends, File, Form, HTTPException, UploadFile, status

from clipstitch.auth import verify_api_key
from clipstitch.routers.compilation import get_assembler
from clipstitch.schemas.responses import ChunkUploadResponse, UploadedFileResponse
from clipstitch.services.upload_assembler import (
    IncompleteUploadError,
    UploadAssembler,
    UploadError,
    UploadTooLargeError,
)

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/upload", dependencies=[Depends(verify_api_key)])


@router.post("/chunk", response_model=ChunkUploadResponse)
async def upload_chunk(
    file_id: str = Form(..., alias="fileId"),
    chunk_index: int = Form(..., alias="chunkIndex"),
    total_chunks: int = Form(..., alias="totalChunks"),
    file_name: str = Form(..., alias="fileName"),
    total_size: Optional[int] = Form(None, alias="totalSize"),
    chunk: UploadFile = File(...),
    assembler: UploadAssembler = Depends(get_assembler),
) -> ChunkUploadResponse:
    """
    Store one chunk. Chunks may arrive in any order; a resent index
    overwrites the earlier bytes.
    """
    try:
        session = assembler.begin_chunk_session(file_id, total_chunks, file_name, total_size)
        data = await chunk.read()
        chunk_status = await assembler.accept_chunk(file_id, chunk_index, data)
    except UploadTooLargeError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e),
        )
    except UploadError as e:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail=str(e),
        )

    return ChunkUploadResponse(
        file_id=file_id,
        chunk_index=chunk_index,
        status=chunk_status.value,
        received=len(session.received),
        total_chunks=session.total_chunks,
    )


@router.post("/chunk/{file_id}/finalize", response_model=UploadedFileResponse)
async def finalize_upload(
    file_id: str,
    assembler: UploadAssembler = Depends(get_assembler),
) -> UploadedFileResponse:
    """Reassemble a chunk session; 409 lists the missing chunk indices."""
    try:
        uploaded = await assembler.finalize(file_id)
    except IncompleteUploadError as e:
        raise HTTPException(
            status_code=status.HTTP_409_CONFLICT,
            detail={"message": str(e), "missing": e.missing},
        )
    except UploadError as e:
        raise HTTPException(
            status_code=status.HTTP_404_NOT_FOUND,
            detail=str(e),
        )

    return UploadedFileResponse(
        file_id=uploaded.file_id,
        file_name=uploaded.original_name,
        size=uploaded.size,
    )


@router.post("/file", response_model=UploadedFileResponse)
async def upload_whole_file(
    file: UploadFile = File(...),
    assembler: UploadAssembler = Depends(get_assembler),
) -> UploadedFileResponse:
    """Store a whole file in one request (fallback when chunking fails)."""
    try:
        uploaded = await assembler.accept_whole(
            file.filename or "video.mp4",
            file.file,
            size=getattr(file, "size", None),
        )
    except UploadTooLargeError as e:
        raise HTTPException(
            status_code=status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
            detail=str(e),
        )

    return UploadedFileResponse(
        file_id=uploaded.file_id,
        file_name=uploaded.original_name,
        size=uploaded.size,
    )
