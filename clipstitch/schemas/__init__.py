"""
Pydantic schemas for request/response models.
"""

from clipstitch.schemas.requests import ClipInput
from clipstitch.schemas.responses import (
    CancelResponse,
    ChunkUploadResponse,
    HealthResponse,
    JobAcceptedResponse,
    ProgressResponse,
    ReadinessResponse,
    UploadedFileResponse,
)

__all__ = [
    "ClipInput",
    "HealthResponse",
    "ReadinessResponse",
    "JobAcceptedResponse",
    "ProgressResponse",
    "CancelResponse",
    "ChunkUploadResponse",
    "UploadedFileResponse",
]
