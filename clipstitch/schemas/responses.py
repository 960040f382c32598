"""
Response schemas for the compilation API.

Field names are camelCase on the wire, matching what the browser editor and
the Python client read.
"""

from typing import Optional

from pydantic import BaseModel, ConfigDict, Field


class ApiModel(BaseModel):
    """Base model serialized by alias."""

    model_config = ConfigDict(populate_by_name=True)


class HealthResponse(ApiModel):
    """Health check response."""

    status: str = Field(..., description="Service status")
    version: str = Field(..., description="Service version")


class ReadinessResponse(ApiModel):
    """Readiness check response."""

    ready: bool = Field(..., description="Whether the service is ready to accept jobs")
    ffmpeg: str = Field(..., description="ffmpeg status")
    ffprobe: str = Field(..., description="ffprobe status")
    tracked_jobs: int = Field(0, alias="trackedJobs", description="Jobs currently held in the registry")


class JobAcceptedResponse(ApiModel):
    """Returned when a compilation job is accepted."""

    job_id: str = Field(..., alias="jobId", description="Id to poll /progress with")


class ProgressResponse(ApiModel):
    """Snapshot of a job's progress."""

    percent: int = Field(..., ge=0, le=100, description="Overall progress percent")
    stage: str = Field(..., description="Human-readable stage label")
    status: Optional[str] = Field(None, description="running, complete, error or cancelled")
    download_url: Optional[str] = Field(None, alias="downloadUrl")
    output_file: Optional[str] = Field(None, alias="outputFile")


class CancelResponse(ApiModel):
    """Cancel acknowledgement (always successful)."""

    success: bool = True


class ChunkUploadResponse(ApiModel):
    """Result of storing one chunk."""

    file_id: str = Field(..., alias="fileId")
    chunk_index: int = Field(..., alias="chunkIndex")
    status: str = Field(..., description="accepted or duplicate")
    received: int = Field(..., description="Distinct chunks received so far")
    total_chunks: int = Field(..., alias="totalChunks")


class UploadedFileResponse(ApiModel):
    """A finalized source file, referenced later through fileIds."""

    file_id: str = Field(..., alias="fileId")
    file_name: str = Field(..., alias="fileName")
    size: int = Field(..., description="Size in bytes")
