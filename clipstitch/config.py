"""
Configuration module using Pydantic Settings for environment variable management.

Operational knobs (paths, limits, timeouts, progress windows) come from the
environment. The output-normalization contract is hardcoded: every clip of a
job must be encoded with identical parameters so the final concatenation can
stream-copy.
"""

import os
from functools import lru_cache
from typing import Optional

from pydantic_settings import BaseSettings


def default_max_workers() -> int:
    """Available CPU cores minus one, capped at 3 (the transcoder is multi-threaded)."""
    cores = os.cpu_count() or 1
    return min(3, max(1, cores - 1))


class Settings(BaseSettings):
    """
    Application settings.

    Only operational configuration is loaded from environment variables.
    Encoding parameters are hardcoded for byte-compatible clip output.
    """

    # ============================================================
    # ENVIRONMENT VARIABLES
    # ============================================================

    # Application
    app_name: str = "clipstitch"
    debug: bool = False
    log_level: str = "INFO"

    # Security - API authentication (skipped when unset)
    api_key: Optional[str] = None

    # Storage root: uploads/, chunks/, temp/, output/ live below it
    data_directory: str = "/tmp/clipstitch"

    # Transcoder binaries
    ffmpeg_path: str = "ffmpeg"
    ffprobe_path: str = "ffprobe"

    # Video encoder used for per-clip output (h264_nvenc on NVIDIA hosts)
    video_codec: str = "libx264"
    video_preset: str = "veryfast"
    video_crf: int = 23

    # Concurrency: max jobs compiling at once (None -> cores - 1, capped at 3)
    max_workers: Optional[int] = None

    # Upload ceilings
    max_chunked_upload_bytes: int = 2 * 1024 * 1024 * 1024  # 2 GiB
    max_whole_upload_bytes: int = 8 * 1024 * 1024 * 1024  # 8 GiB

    # Job lifecycle
    job_retention_seconds: float = 300.0  # keep terminal jobs visible to late pollers
    clip_timeout_seconds: float = 180.0  # watchdog for one clip encode
    compile_timeout_seconds: float = 300.0  # watchdog for concat / single-clip compile
    chunk_session_timeout_seconds: float = 3600.0
    unclaimed_upload_timeout_seconds: float = 3600.0

    # Progress windows (overall job percent)
    single_clip_window: tuple[float, float] = (25.0, 95.0)
    clip_window: tuple[float, float] = (20.0, 85.0)
    concat_window: tuple[float, float] = (85.0, 95.0)

    # ============================================================
    # HARDCODED SETTINGS (not configurable via env vars)
    # ============================================================

    @property
    def max_concurrent_jobs(self) -> int:
        if self.max_workers is not None:
            return max(1, self.max_workers)
        return default_max_workers()

    # Directories
    @property
    def upload_directory(self) -> str:
        return os.path.join(self.data_directory, "uploads")

    @property
    def chunk_directory(self) -> str:
        return os.path.join(self.data_directory, "chunks")

    @property
    def temp_directory(self) -> str:
        return os.path.join(self.data_directory, "temp")

    @property
    def output_directory(self) -> str:
        return os.path.join(self.data_directory, "output")

    # Output normalization
    @property
    def target_width(self) -> int:
        return 1920

    @property
    def target_height(self) -> int:
        return 1080

    @property
    def target_fps(self) -> int:
        return 30

    @property
    def pixel_format(self) -> str:
        return "yuv420p"

    @property
    def audio_codec(self) -> str:
        return "aac"

    @property
    def audio_bitrate(self) -> str:
        return "128k"

    @property
    def audio_sample_rate(self) -> int:
        return 48000

    @property
    def audio_channels(self) -> int:
        return 2

    # Clip handling
    @property
    def min_clip_duration_seconds(self) -> float:
        return 0.1

    @property
    def kill_grace_seconds(self) -> float:
        return 5.0

    # Uploads
    @property
    def upload_block_size(self) -> int:
        return 1024 * 1024

    # Maintenance
    @property
    def maintenance_interval_seconds(self) -> float:
        return 30 * 60

    @property
    def max_output_age_seconds(self) -> float:
        return 60 * 60

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        case_sensitive = False


@lru_cache()
def get_settings() -> Settings:
    """Get cached settings instance."""
    return Settings()
