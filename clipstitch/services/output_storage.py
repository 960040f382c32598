"""
Output Storage - owns the directory of finished compilations.

Output structure:
    output/
    ├── compiled-<job_id>.mp4
    └── compiled-<job_id>.mp4
"""

import logging
import os
import time
from pathlib import Path
from typing import Optional

from clipstitch.config import Settings, get_settings
from clipstitch.services.job_registry import OutputArtifact

logger = logging.getLogger(__name__)

OUTPUT_PREFIX = "compiled-"
OUTPUT_SUFFIX = ".mp4"
DOWNLOAD_ROUTE = "/download"


class OutputStorage:
    """Names, registers, serves and expires compiled artifacts."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()
        os.makedirs(self.settings.output_directory, exist_ok=True)

    @property
    def directory(self) -> Path:
        return Path(self.settings.output_directory)

    def output_path_for(self, job_id: str) -> str:
        return str(self.directory / f"{OUTPUT_PREFIX}{job_id}{OUTPUT_SUFFIX}")

    def register(self, path: str) -> OutputArtifact:
        """Describe a finished output file for download."""
        output = Path(path)
        name = output.name
        return OutputArtifact(
            output_file=name,
            download_url=f"{DOWNLOAD_ROUTE}/{name}",
            path=str(output.resolve()),
            size_bytes=output.stat().st_size,
        )

    def resolve(self, filename: str) -> Optional[Path]:
        """
        Find a downloadable artifact by name.

        Only the basename is honoured, so ``../`` segments can never escape the
        output directory.
        """
        safe_name = Path(filename).name
        if not safe_name or safe_name in (".", ".."):
            return None
        candidate = self.directory / safe_name
        if not candidate.is_file():
            return None
        return candidate

    def discard(self, path: str) -> None:
        """Remove a partial or unwanted output."""
        try:
            Path(path).unlink(missing_ok=True)
        except OSError as e:
            logger.warning(f"Could not delete output {path}: {e}")

    def purge_older_than(self, max_age_seconds: float) -> int:
        """Delete artifacts last modified more than ``max_age_seconds`` ago."""
        if not self.directory.exists():
            return 0

        now = time.time()
        deleted = 0
        for file in self.directory.iterdir():
            if not file.is_file():
                continue
            try:
                if now - file.stat().st_mtime > max_age_seconds:
                    file.unlink()
                    deleted += 1
            except OSError as e:
                logger.warning(f"Could not delete {file.name}: {e}")

        if deleted:
            logger.info(f"Deleted {deleted} stale output file(s) from {self.directory}")
        return deleted
