"""
HTTP client for the clipstitch compilation API.
"""

import json
import os
from pathlib import Path
from typing import Optional, Sequence

import requests


class ClientConfig:
    """Client defaults."""

    DEFAULT_BASE_URL = "http://localhost:8000"
    API_KEY_HEADER = "X-Clipstitch-API-Key"

    # Request timeout for small calls (seconds)
    REQUEST_TIMEOUT = 30
    # Uploads and downloads move large bodies
    TRANSFER_TIMEOUT = 600


class CompilationClient:
    """Client for interacting with the clipstitch API."""

    def __init__(self, base_url: str = None, api_key: str = None):
        self.base_url = (
            base_url or os.getenv("CLIPSTITCH_API_URL", ClientConfig.DEFAULT_BASE_URL)
        ).rstrip("/")
        self.api_key = api_key if api_key is not None else os.getenv("CLIPSTITCH_API_KEY")
        self.session = requests.Session()
        if self.api_key:
            self.session.headers.update({ClientConfig.API_KEY_HEADER: self.api_key})

    def health_check(self) -> dict:
        """Check API health status."""
        response = self.session.get(f"{self.base_url}/health", timeout=ClientConfig.REQUEST_TIMEOUT)
        response.raise_for_status()
        return response.json()

    def upload_chunk(
        self,
        file_id: str,
        chunk_index: int,
        total_chunks: int,
        file_name: str,
        data: bytes,
        total_size: Optional[int] = None,
    ) -> dict:
        """Send one chunk of a file."""
        form = {
            "fileId": file_id,
            "chunkIndex": str(chunk_index),
            "totalChunks": str(total_chunks),
            "fileName": file_name,
        }
        if total_size is not None:
            form["totalSize"] = str(total_size)

        response = self.session.post(
            f"{self.base_url}/upload/chunk",
            data=form,
            files={"chunk": (file_name, data, "application/octet-stream")},
            timeout=ClientConfig.TRANSFER_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def finalize_upload(self, file_id: str) -> dict:
        """Reassemble an uploaded chunk session on the server."""
        response = self.session.post(
            f"{self.base_url}/upload/chunk/{file_id}/finalize",
            timeout=ClientConfig.TRANSFER_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def upload_whole(self, path: str) -> dict:
        """Upload a whole file in a single request."""
        file_path = Path(path)
        with open(file_path, "rb") as f:
            response = self.session.post(
                f"{self.base_url}/upload/file",
                files={"file": (file_path.name, f, "application/octet-stream")},
                timeout=ClientConfig.TRANSFER_TIMEOUT,
            )
        response.raise_for_status()
        return response.json()

    def submit_job(
        self,
        clips: Sequence[dict],
        file_ids: Sequence[str] = (),
        videos: Sequence[str] = (),
    ) -> str:
        """
        Submit a compilation job and return its id.

        Sources are ``videos`` (sent in this request) followed by ``file_ids``
        (uploaded earlier); each clip's ``sourceIndex`` points into that list.
        """
        form = {"clipsData": json.dumps(list(clips))}
        if file_ids:
            form["fileIds"] = json.dumps(list(file_ids))

        handles = [open(v, "rb") for v in videos]
        try:
            files = [
                ("videos", (Path(v).name, handle, "video/mp4"))
                for v, handle in zip(videos, handles)
            ]
            response = self.session.post(
                f"{self.base_url}/upload",
                data=form,
                files=files or None,
                timeout=ClientConfig.TRANSFER_TIMEOUT,
            )
        finally:
            for handle in handles:
                handle.close()

        response.raise_for_status()
        return response.json()["jobId"]

    def get_progress(self, job_id: str) -> dict:
        """Get job progress."""
        response = self.session.get(
            f"{self.base_url}/progress/{job_id}",
            timeout=ClientConfig.REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def cancel_job(self, job_id: str) -> dict:
        """Cancel a job."""
        response = self.session.post(
            f"{self.base_url}/cancel/{job_id}",
            timeout=ClientConfig.REQUEST_TIMEOUT,
        )
        response.raise_for_status()
        return response.json()

    def download(self, download_url: str, destination: str) -> Path:
        """
        Download a compiled video.

        Args:
            download_url: ``/download/<name>`` path or absolute URL
            destination: Target file, or a directory to save into by name
        """
        url = download_url if download_url.startswith("http") else f"{self.base_url}{download_url}"
        target = Path(destination)
        if target.is_dir():
            target = target / download_url.rstrip("/").rsplit("/", 1)[-1]

        with self.session.get(url, stream=True, timeout=ClientConfig.TRANSFER_TIMEOUT) as response:
            response.raise_for_status()
            target.parent.mkdir(parents=True, exist_ok=True)
            with open(target, "wb") as f:
                for chunk in response.iter_content(chunk_size=1024 * 1024):
                    f.write(chunk)
        return target
