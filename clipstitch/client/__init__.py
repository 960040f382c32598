"""
Python client for the compilation API.
"""

from clipstitch.client.api_client import CompilationClient
from clipstitch.client.chunked_uploader import (
    ChunkedUploader,
    UploadFailedError,
    UploadState,
    UploadTooLargeError,
)
from clipstitch.client.progress_poller import PollOutcome, PollResult, ProgressPoller

__all__ = [
    "CompilationClient",
    "ChunkedUploader",
    "UploadState",
    "UploadFailedError",
    "UploadTooLargeError",
    "ProgressPoller",
    "PollOutcome",
    "PollResult",
]
