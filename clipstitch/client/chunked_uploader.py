"""
Chunked file upload with retry and whole-file fallback.

States:
    CHUNKED     sending chunks
    RETRYING    a chunk failed and is being resent
    WHOLE_FILE  chunking gave up (or was skipped); sending the file in one request
    DONE        the server holds the file
    FAILED      the whole-file upload failed too

Only a failed whole-file upload is an error for the caller.
"""

import logging
import math
import os
import time
import uuid
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

import requests

from clipstitch.client.api_client import CompilationClient

logger = logging.getLogger(__name__)

CHUNK_SIZE = 10 * 1024 * 1024  # 10 MiB
MAX_CHUNKED_BYTES = 2 * 1024 * 1024 * 1024  # 2 GiB
MAX_WHOLE_BYTES = 8 * 1024 * 1024 * 1024  # 8 GiB

# Replies meaning the server does not support chunked uploads at all
CHUNKING_UNSUPPORTED = (404, 405, 501)


class UploadTooLargeError(Exception):
    """Raised before any request when a file exceeds every upload ceiling."""
    pass


class UploadFailedError(Exception):
    """Raised when the whole-file fallback upload fails."""
    pass


class UploadState(str, Enum):
    """States of one file upload."""

    CHUNKED = "chunked"
    RETRYING = "retrying"
    WHOLE_FILE = "whole_file"
    DONE = "done"
    FAILED = "failed"


@dataclass
class UploadOutcome:
    """Result of a successful upload."""

    file_id: str
    file_name: str
    size: int
    method: UploadState  # CHUNKED or WHOLE_FILE
    transitions: list[UploadState] = field(default_factory=list)


def new_upload_id() -> str:
    """Client-chosen id for a chunk session."""
    return f"{int(time.time() * 1000)}-{uuid.uuid4().hex[:8]}"


class ChunkedUploader:
    """
    Uploads one file at a time, preferring chunks.

    Each chunk gets up to ``max_attempts`` tries with a fixed ``retry_delay``
    between them. When a chunk exhausts its attempts, or the server answers
    that chunking is not supported, the file is resent whole.
    """

    def __init__(
        self,
        client: CompilationClient,
        chunk_size: int = CHUNK_SIZE,
        max_attempts: int = 3,
        retry_delay: float = 1.0,
        max_chunked_bytes: int = MAX_CHUNKED_BYTES,
        max_whole_bytes: int = MAX_WHOLE_BYTES,
        on_progress: Optional[Callable[[float], None]] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.client = client
        self.chunk_size = chunk_size
        self.max_attempts = max_attempts
        self.retry_delay = retry_delay
        self.max_chunked_bytes = max_chunked_bytes
        self.max_whole_bytes = max_whole_bytes
        self.on_progress = on_progress
        self._sleep = sleep

        self.state: Optional[UploadState] = None
        self.transitions: list[UploadState] = []

    def upload(self, path: str) -> UploadOutcome:
        """
        Upload a file and return the server's id for it.

        Raises:
            UploadTooLargeError: File exceeds the whole-file ceiling
            UploadFailedError: Whole-file upload failed
        """
        self.state = None
        self.transitions = []

        file_path = Path(path)
        size = os.path.getsize(file_path)

        if size > self.max_whole_bytes:
            raise UploadTooLargeError(
                f"{file_path.name} is {size} bytes, exceeds the {self.max_whole_bytes} byte limit"
            )

        if size > self.max_chunked_bytes:
            logger.info(f"{file_path.name} is above the chunked limit, uploading whole")
            return self._upload_whole(file_path, size)

        self._transition(UploadState.CHUNKED)
        file_id = self._upload_chunks(file_path, size)
        if file_id is None:
            return self._upload_whole(file_path, size)

        self._transition(UploadState.DONE)
        return UploadOutcome(
            file_id=file_id,
            file_name=file_path.name,
            size=size,
            method=UploadState.CHUNKED,
            transitions=list(self.transitions),
        )

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _transition(self, state: UploadState) -> None:
        if state != self.state:
            logger.debug(f"Upload state: {self.state} -> {state.value}")
            self.state = state
            self.transitions.append(state)

    def _report(self, percent: float) -> None:
        if self.on_progress:
            self.on_progress(min(100.0, percent))

    def _upload_chunks(self, file_path: Path, size: int) -> Optional[str]:
        """Send every chunk and finalize. Returns None when falling back."""
        file_id = new_upload_id()
        total_chunks = max(1, math.ceil(size / self.chunk_size))
        logger.info(f"Uploading {file_path.name} in {total_chunks} chunk(s)")

        with open(file_path, "rb") as f:
            for index in range(total_chunks):
                data = f.read(self.chunk_size)
                if not self._send_chunk(file_id, index, total_chunks, file_path.name, data, size):
                    return None
                self._report((index + 1) / total_chunks * 100)

        try:
            result = self.client.finalize_upload(file_id)
        except requests.RequestException as e:
            logger.warning(f"Finalizing {file_path.name} failed: {e}")
            return None

        return result.get("fileId", file_id)

    def _send_chunk(
        self,
        file_id: str,
        index: int,
        total_chunks: int,
        file_name: str,
        data: bytes,
        total_size: int,
    ) -> bool:
        for attempt in range(1, self.max_attempts + 1):
            try:
                self.client.upload_chunk(file_id, index, total_chunks, file_name, data, total_size)
                self._transition(UploadState.CHUNKED)
                return True
            except requests.HTTPError as e:
                code = e.response.status_code if e.response is not None else None
                if code in CHUNKING_UNSUPPORTED:
                    logger.info(f"Server does not accept chunks (HTTP {code}), falling back")
                    return False
                logger.warning(f"Chunk {index} attempt {attempt}/{self.max_attempts} failed: {e}")
            except requests.RequestException as e:
                logger.warning(f"Chunk {index} attempt {attempt}/{self.max_attempts} failed: {e}")

            if attempt < self.max_attempts:
                self._transition(UploadState.RETRYING)
                self._sleep(self.retry_delay)

        logger.warning(f"Chunk {index} failed {self.max_attempts} times, falling back to whole-file upload")
        return False

    def _upload_whole(self, file_path: Path, size: int) -> UploadOutcome:
        self._transition(UploadState.WHOLE_FILE)
        try:
            result = self.client.upload_whole(str(file_path))
        except requests.RequestException as e:
            self._transition(UploadState.FAILED)
            raise UploadFailedError(f"Upload of {file_path.name} failed: {e}") from e

        self._report(100.0)
        self._transition(UploadState.DONE)
        return UploadOutcome(
            file_id=result["fileId"],
            file_name=file_path.name,
            size=size,
            method=UploadState.WHOLE_FILE,
            transitions=list(self.transitions),
        )
