"""
Media Probe - reads source durations with ffprobe.
"""

import asyncio
import json
import logging
import subprocess
from typing import Optional

from clipstitch.config import Settings, get_settings

logger = logging.getLogger(__name__)


class MediaProbeError(Exception):
    """Raised when ffprobe output cannot be interpreted."""
    pass


class MediaProbe:
    """Thin async wrapper around ffprobe."""

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def get_duration(self, path: str) -> Optional[float]:
        """
        Return the duration of a media file in seconds.

        Probe failures are logged and reported as None so a flaky probe never
        fails a job; the clip is then used with its requested duration.
        """
        cmd = [
            self.settings.ffprobe_path,
            "-v", "quiet",
            "-print_format", "json",
            "-show_format",
            "-show_streams",
            path,
        ]

        # Use run_in_executor for Windows compatibility
        loop = asyncio.get_event_loop()
        try:
            result = await loop.run_in_executor(
                None,
                lambda: subprocess.run(cmd, capture_output=True)
            )
        except OSError as e:
            logger.warning(f"ffprobe could not be started: {e}")
            return None

        if result.returncode != 0:
            error_msg = result.stderr.decode(errors="replace")[:200] if result.stderr else "Unknown error"
            logger.warning(f"ffprobe failed for {path}: {error_msg}")
            return None

        try:
            return parse_duration(result.stdout.decode(errors="replace"))
        except MediaProbeError as e:
            logger.warning(f"Could not determine duration for {path}: {e}")
            return None


def parse_duration(probe_json: str) -> float:
    """Extract the duration from ffprobe JSON, preferring the container value."""
    try:
        info = json.loads(probe_json)
    except json.JSONDecodeError as e:
        raise MediaProbeError(f"Invalid ffprobe output: {e}") from e

    candidates = [info.get("format", {}).get("duration")]
    candidates += [stream.get("duration") for stream in info.get("streams", [])]

    for value in candidates:
        if value in (None, "N/A"):
            continue
        try:
            return float(value)
        except (TypeError, ValueError):
            continue

    raise MediaProbeError("No duration in ffprobe output")
