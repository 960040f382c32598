"""
Transcode Driver - one external transcoder subprocess per unit of work.

Each invocation is wrapped in a TranscodeHandle that turns the subprocess's
``-progress pipe:1`` output into a stream of typed events:

    progress(percent) ... progress(percent) -> succeeded | failed(reason)

Exactly one terminal event is produced per handle, whether the process exits on
its own, is killed on cancellation, or is stopped by the per-invocation
watchdog.
"""

import asyncio
import logging
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import AsyncIterator, Optional, Sequence

from clipstitch.config import Settings, get_settings

logger = logging.getLogger(__name__)

# Characters of stderr kept for error reporting
STDERR_TAIL_CHARS = 1000

# How long to wait for pipe readers after the process exits
READER_FLUSH_SECONDS = 2.0


class TranscodeError(Exception):
    """Raised when a transcoder subprocess cannot be started."""
    pass


class TranscodeEventKind(str, Enum):
    """Kinds of events emitted by a TranscodeHandle."""

    PROGRESS = "progress"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


@dataclass(frozen=True)
class TranscodeEvent:
    """One event from a running transcode."""

    kind: TranscodeEventKind
    percent: float = 0.0  # Percent of this unit of work (progress events)
    reason: Optional[str] = None  # Failure reason (failed events)

    @property
    def terminal(self) -> bool:
        return self.kind != TranscodeEventKind.PROGRESS

    @classmethod
    def progress(cls, percent: float) -> "TranscodeEvent":
        return cls(kind=TranscodeEventKind.PROGRESS, percent=percent)

    @classmethod
    def succeeded(cls) -> "TranscodeEvent":
        return cls(kind=TranscodeEventKind.SUCCEEDED, percent=100.0)

    @classmethod
    def failed(cls, reason: str) -> "TranscodeEvent":
        return cls(kind=TranscodeEventKind.FAILED, reason=reason)


def parse_progress_line(line: str) -> Optional[float]:
    """
    Parse one ``-progress`` line into seconds of output written so far.

    Recognized keys: ``out_time_us`` and ``out_time_ms`` (both microseconds,
    despite the name of the latter) and ``out_time`` (HH:MM:SS.ffffff).
    Returns None for any other line or an unavailable value.
    """
    key, sep, value = line.strip().partition("=")
    if not sep:
        return None
    value = value.strip()
    if not value or value == "N/A":
        return None

    try:
        if key in ("out_time_us", "out_time_ms"):
            return int(value) / 1_000_000
        if key == "out_time":
            hours, minutes, seconds = value.split(":")
            return int(hours) * 3600 + int(minutes) * 60 + float(seconds)
    except ValueError:
        return None

    return None


class TranscodeHandle:
    """
    A single running transcoder subprocess.

    The handle is owned by whoever started it; it is never shared or stored in
    the job registry.
    """

    def __init__(
        self,
        process: asyncio.subprocess.Process,
        expected_duration: float,
        timeout: float,
        kill_grace: float = 5.0,
        label: str = "transcode",
    ):
        self._process = process
        self._expected_duration = expected_duration
        self._timeout = timeout
        self._kill_grace = kill_grace
        self._label = label

        self._events: asyncio.Queue[TranscodeEvent] = asyncio.Queue()
        self._done = asyncio.Event()
        self._terminal: Optional[TranscodeEvent] = None
        self._kill_reason: Optional[str] = None
        self._last_percent = 0.0
        self._stderr_tail = ""

        self._stdout_task = asyncio.create_task(self._read_progress())
        self._stderr_task = asyncio.create_task(self._drain_stderr())
        self._supervisor = asyncio.create_task(self._supervise())

    @property
    def pid(self) -> int:
        return self._process.pid

    @property
    def terminal_event(self) -> Optional[TranscodeEvent]:
        return self._terminal

    @property
    def stderr_tail(self) -> str:
        return self._stderr_tail

    async def events(self) -> AsyncIterator[TranscodeEvent]:
        """Yield progress events, then the single terminal event."""
        while True:
            event = await self._events.get()
            yield event
            if event.terminal:
                return

    async def wait(self) -> TranscodeEvent:
        """Wait for and return the terminal event."""
        await self._done.wait()
        assert self._terminal is not None
        return self._terminal

    async def kill(self, reason: str = "cancelled") -> TranscodeEvent:
        """
        Force-kill the subprocess and return the terminal event.

        The handle reaches a terminal ``failed(reason)`` state even when the
        process has not exited within the grace period.
        """
        if self._terminal is not None:
            return self._terminal

        if self._kill_reason is None:
            self._kill_reason = reason
        logger.info(f"[{self._label}] Killing transcoder (pid {self.pid}): {self._kill_reason}")
        self._signal_kill()

        try:
            await asyncio.wait_for(asyncio.shield(self._done.wait()), timeout=self._kill_grace)
        except asyncio.TimeoutError:
            logger.warning(
                f"[{self._label}] Transcoder pid {self.pid} still running "
                f"{self._kill_grace:.0f}s after kill, abandoning it"
            )
            self._finish(TranscodeEvent.failed(self._kill_reason))
            for task in (self._supervisor, self._stdout_task, self._stderr_task):
                task.cancel()

        assert self._terminal is not None
        return self._terminal

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _signal_kill(self) -> None:
        try:
            self._process.kill()
        except ProcessLookupError:
            pass

    def _finish(self, event: TranscodeEvent) -> bool:
        if self._terminal is not None:
            return False
        self._terminal = event
        self._events.put_nowait(event)
        self._done.set()
        if event.kind == TranscodeEventKind.SUCCEEDED:
            logger.debug(f"[{self._label}] Transcoder finished")
        else:
            logger.debug(f"[{self._label}] Transcoder failed: {event.reason}")
        return True

    def _report_progress(self, percent: float) -> None:
        if self._terminal is not None:
            return
        percent = min(100.0, percent)
        if percent <= self._last_percent:
            return
        self._last_percent = percent
        self._events.put_nowait(TranscodeEvent.progress(percent))

    async def _read_progress(self) -> None:
        stream = self._process.stdout
        if stream is None:
            return
        while True:
            line = await stream.readline()
            if not line:
                break
            text = line.decode(errors="replace")
            if text.strip() == "progress=end":
                self._report_progress(100.0)
                continue
            seconds = parse_progress_line(text)
            if seconds is not None and self._expected_duration > 0:
                self._report_progress(seconds / self._expected_duration * 100)

    async def _drain_stderr(self) -> None:
        stream = self._process.stderr
        if stream is None:
            return
        while True:
            chunk = await stream.read(4096)
            if not chunk:
                break
            self._stderr_tail = (self._stderr_tail + chunk.decode(errors="replace"))[-STDERR_TAIL_CHARS:]

    async def _flush_readers(self) -> None:
        try:
            await asyncio.wait_for(
                asyncio.gather(self._stdout_task, self._stderr_task, return_exceptions=True),
                timeout=READER_FLUSH_SECONDS,
            )
        except asyncio.TimeoutError:
            logger.debug(f"[{self._label}] Output pipes still open after exit")

    async def _supervise(self) -> None:
        try:
            await asyncio.wait_for(self._process.wait(), timeout=self._timeout)
        except asyncio.TimeoutError:
            logger.warning(f"[{self._label}] Transcoder timed out after {self._timeout:.0f}s")
            if self._kill_reason is None:
                self._kill_reason = f"timed out after {self._timeout:g}s"
            self._signal_kill()
            try:
                await asyncio.wait_for(self._process.wait(), timeout=self._kill_grace)
            except asyncio.TimeoutError:
                logger.warning(f"[{self._label}] Transcoder pid {self.pid} ignored kill")
            self._finish(TranscodeEvent.failed(self._kill_reason))
            return

        if self._kill_reason is not None:
            self._finish(TranscodeEvent.failed(self._kill_reason))
            return

        # Deliver trailing progress lines before the terminal event
        await self._flush_readers()

        returncode = self._process.returncode
        if returncode == 0:
            self._finish(TranscodeEvent.succeeded())
        else:
            tail = self._stderr_tail.strip()[-300:] or "no error output"
            self._finish(TranscodeEvent.failed(f"transcoder exited with code {returncode}: {tail}"))


class TranscodeDriver:
    """
    Starts transcoder subprocesses and builds their argument lists.

    Every clip of a job is encoded with the same normalization flags (size,
    frame rate, pixel format, audio layout) so the outputs can be joined with a
    stream copy.
    """

    def __init__(self, settings: Optional[Settings] = None):
        self.settings = settings or get_settings()

    async def start(
        self,
        command: str,
        args: Sequence[str],
        *,
        expected_duration: float,
        timeout: float,
        label: str = "transcode",
    ) -> TranscodeHandle:
        """
        Launch one subprocess and return its handle.

        Raises:
            TranscodeError: If the executable cannot be started
        """
        logger.debug(f"Running: {command} {' '.join(args)}")
        try:
            process = await asyncio.create_subprocess_exec(
                command,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            raise TranscodeError(f"Could not start {command}: {e}") from e

        return TranscodeHandle(
            process,
            expected_duration=expected_duration,
            timeout=timeout,
            kill_grace=self.settings.kill_grace_seconds,
            label=label,
        )

    async def encode_clip(
        self,
        source_path: str,
        start_offset: float,
        duration: float,
        output_path: str,
        timeout: float,
        label: str = "clip",
    ) -> TranscodeHandle:
        """Trim and encode one clip to the normalized output format."""
        return await self.start(
            self.settings.ffmpeg_path,
            self.build_clip_args(source_path, start_offset, duration, output_path),
            expected_duration=duration,
            timeout=timeout,
            label=label,
        )

    async def concat(
        self,
        manifest_path: str,
        output_path: str,
        expected_duration: float,
        timeout: float,
        label: str = "concat",
    ) -> TranscodeHandle:
        """Join normalized clips listed in a manifest with a stream copy."""
        return await self.start(
            self.settings.ffmpeg_path,
            self.build_concat_args(manifest_path, output_path),
            expected_duration=expected_duration,
            timeout=timeout,
            label=label,
        )

    def normalization_filter(self) -> str:
        """Scale into the target frame (letterboxed), square pixels, fixed frame rate."""
        w = self.settings.target_width
        h = self.settings.target_height
        return (
            f"scale={w}:{h}:force_original_aspect_ratio=decrease,"
            f"pad={w}:{h}:(ow-iw)/2:(oh-ih)/2:color=black,"
            f"setsar=1,"
            f"fps={self.settings.target_fps}"
        )

    def build_clip_args(
        self,
        source_path: str,
        start_offset: float,
        duration: float,
        output_path: str,
    ) -> list[str]:
        settings = self.settings
        codec = settings.video_codec
        # NVENC encoders take constant quality via -cq rather than -crf
        quality_flag = "-crf" if codec.startswith("lib") else "-cq"

        return [
            "-y",
            "-hide_banner",
            "-nostdin",
            "-accurate_seek",
            "-ss", f"{start_offset:.6f}",
            "-i", source_path,
            "-t", f"{duration:.6f}",
            "-map", "0:v:0",
            "-map", "0:a:0?",
            "-vf", self.normalization_filter(),
            "-c:v", codec,
            "-preset", settings.video_preset,
            quality_flag, str(settings.video_crf),
            "-pix_fmt", settings.pixel_format,
            "-c:a", settings.audio_codec,
            "-b:a", settings.audio_bitrate,
            "-ar", str(settings.audio_sample_rate),
            "-ac", str(settings.audio_channels),
            "-avoid_negative_ts", "make_zero",
            "-movflags", "+faststart",
            "-f", "mp4",
            "-progress", "pipe:1",
            "-nostats",
            output_path,
        ]

    def build_concat_args(self, manifest_path: str, output_path: str) -> list[str]:
        return [
            "-y",
            "-hide_banner",
            "-nostdin",
            "-f", "concat",
            "-safe", "0",
            "-i", manifest_path,
            "-c", "copy",
            "-movflags", "+faststart",
            "-progress", "pipe:1",
            "-nostats",
            output_path,
        ]

    @staticmethod
    def write_manifest(clip_paths: Sequence[str], manifest_path: str) -> None:
        """Write a concat-demuxer list naming the clips in order."""
        lines = []
        for clip_path in clip_paths:
            # Use absolute path and escape single quotes
            safe_path = os.path.abspath(clip_path).replace("'", "'\\''")
            lines.append(f"file '{safe_path}'\n")
        Path(manifest_path).write_text("".join(lines), encoding="utf-8")
