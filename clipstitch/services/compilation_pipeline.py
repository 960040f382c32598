"""
Compilation Pipeline - turns uploaded sources plus a clip list into one MP4.

Stages:
1. Preparing: validate clips, probe sources, clamp durations
2. SingleClipFast: one clip is encoded straight to the final output
3. MultiClipSequential: each clip is trimmed and normalized into the job's
   temp directory, one at a time
4. Finalizing: the normalized clips are joined with a stream-copy concat
5. Complete / Error / Cancelled: terminal transition plus cleanup

Overall progress (0-100) is written to the JobRegistry as each stage advances.
Work directory layout:
    temp/<job_id>/
    ├── clip_00.mp4
    ├── clip_01.mp4
    └── concat_list.txt
"""

import asyncio
import logging
import os
import shutil
import time
from enum import Enum
from pathlib import Path
from typing import Callable, Optional, Sequence

from clipstitch.config import Settings, get_settings
from clipstitch.services.clip_validator import ClipSpec, clamp_to_source, validate
from clipstitch.services.job_registry import JobRegistry, JobState
from clipstitch.services.media_probe import MediaProbe
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.transcode_driver import (
    TranscodeDriver,
    TranscodeEventKind,
    TranscodeHandle,
)
from clipstitch.services.upload_assembler import UploadedFile

logger = logging.getLogger(__name__)

MANIFEST_NAME = "concat_list.txt"


class CompilationError(Exception):
    """Raised when a compilation cannot produce its output."""
    pass


class NoValidClipsError(CompilationError):
    """Raised when no clip survives validation and clamping."""
    pass


class CompilationCancelled(Exception):
    """Raised inside the pipeline when the job's cancel flag is observed."""
    pass


class CompilationStage(str, Enum):
    """Stage of a running compilation."""

    PREPARING = "preparing"
    SINGLE_CLIP_FAST = "single_clip_fast"
    MULTI_CLIP_SEQUENTIAL = "multi_clip_sequential"
    FINALIZING = "finalizing"
    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"


def map_into_window(percent: float, window: tuple[float, float]) -> float:
    """Map a 0-100 unit percent linearly onto an overall [lo, hi] window."""
    lo, hi = window
    percent = min(100.0, max(0.0, percent))
    return min(hi, lo + percent * (hi - lo) / 100)


class CompilationPipeline:
    """
    Runs one job from validated clip list to downloadable artifact.

    Each transcoder handle lives only inside the stage that started it. While a
    handle runs the pipeline also watches the job's cancellation event and
    force-kills the handle as soon as cancellation is requested.
    """

    def __init__(
        self,
        registry: JobRegistry,
        driver: TranscodeDriver,
        probe: MediaProbe,
        storage: OutputStorage,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.registry = registry
        self.driver = driver
        self.probe = probe
        self.storage = storage

    async def run(
        self,
        job_id: str,
        clips: Sequence[ClipSpec],
        files: Sequence[UploadedFile],
    ) -> Optional[JobState]:
        """
        Compile a job and record its outcome in the registry.

        Never raises for job failures: every outcome ends as a terminal
        registry state, and the temp directory, uploaded sources and any
        partial output are cleaned up exactly once.
        """
        start_time = time.time()
        work_dir = os.path.join(self.settings.temp_directory, job_id)
        output_path = self.storage.output_path_for(job_id)
        stage = CompilationStage.PREPARING

        try:
            os.makedirs(work_dir, exist_ok=True)
            logger.info(f"[{job_id}] Starting compilation: {len(clips)} clip(s), {len(files)} source(s)")

            self._progress(job_id, 5, "Processing files...")
            self._check_cancelled(job_id)

            self._progress(job_id, 10, "Validating clips...")
            timeline = await self._prepare(job_id, clips, files)
            self._check_cancelled(job_id)

            if len(timeline) == 1:
                stage = CompilationStage.SINGLE_CLIP_FAST
                await self._compile_single(job_id, timeline[0], files, output_path)
            else:
                stage = CompilationStage.MULTI_CLIP_SEQUENTIAL
                clip_paths = await self._encode_clips(job_id, timeline, files, work_dir)

                stage = CompilationStage.FINALIZING
                self._check_cancelled(job_id)
                total_duration = sum(clip.duration for clip in timeline)
                await self._concatenate(job_id, clip_paths, total_duration, work_dir, output_path)

            artifact = self.storage.register(output_path)
            self.registry.complete(job_id, artifact)
            stage = CompilationStage.COMPLETE
            logger.info(f"[{job_id}] Compiled in {time.time() - start_time:.1f}s")

        except CompilationCancelled:
            self.registry.cancelled(job_id)
            stage = CompilationStage.CANCELLED

        except asyncio.CancelledError:
            # Task cancelled (shutdown): record it, still clean up
            self.registry.cancelled(job_id)
            stage = CompilationStage.CANCELLED
            raise

        except Exception as e:
            logger.exception(f"[{job_id}] Compilation failed during {stage.value}: {e}")
            self.registry.fail(job_id, str(e))
            stage = CompilationStage.ERROR

        finally:
            self._finish(job_id, stage, work_dir, files, output_path)

        return self.registry.get(job_id)

    def abandon(self, job_id: str, files: Sequence[UploadedFile]) -> Optional[JobState]:
        """End a job cancelled before it started; its sources are still deleted."""
        self.registry.cancelled(job_id)
        self._finish(
            job_id,
            CompilationStage.CANCELLED,
            os.path.join(self.settings.temp_directory, job_id),
            files,
            self.storage.output_path_for(job_id),
        )
        return self.registry.get(job_id)

    # ------------------------------------------------------------------
    # Stages
    # ------------------------------------------------------------------

    async def _prepare(
        self,
        job_id: str,
        clips: Sequence[ClipSpec],
        files: Sequence[UploadedFile],
    ) -> list[ClipSpec]:
        ordered = validate(clips, files)
        if not ordered:
            raise NoValidClipsError("No valid clips to compile")

        durations: dict[int, Optional[float]] = {}
        timeline: list[ClipSpec] = []
        for clip in ordered:
            if clip.source_index not in durations:
                durations[clip.source_index] = await self.probe.get_duration(
                    files[clip.source_index].path
                )
            clamped = clamp_to_source(
                clip,
                durations[clip.source_index],
                min_duration=self.settings.min_clip_duration_seconds,
            )
            if clamped is not None:
                timeline.append(clamped)

        if not timeline:
            raise NoValidClipsError("No valid clips to compile")

        logger.info(
            f"[{job_id}] {len(timeline)} clip(s) on timeline, "
            f"{sum(c.duration for c in timeline):.2f}s total"
        )
        return timeline

    async def _compile_single(
        self,
        job_id: str,
        clip: ClipSpec,
        files: Sequence[UploadedFile],
        output_path: str,
    ) -> None:
        window = self.settings.single_clip_window
        self._progress(job_id, window[0], "Encoding single clip...")

        handle = await self.driver.encode_clip(
            files[clip.source_index].path,
            clip.start_offset,
            clip.duration,
            output_path,
            timeout=self.settings.compile_timeout_seconds,
            label=f"{job_id} single",
        )
        await self._drive(
            job_id,
            handle,
            lambda p: self._progress(job_id, map_into_window(p, window), f"Encoding: {int(p)}%"),
            failure="Encoding failed",
        )

    async def _encode_clips(
        self,
        job_id: str,
        timeline: Sequence[ClipSpec],
        files: Sequence[UploadedFile],
        work_dir: str,
    ) -> list[str]:
        lo, hi = self.settings.clip_window
        total = len(timeline)
        share = (hi - lo) / total
        clip_paths: list[str] = []

        for i, clip in enumerate(timeline):
            self._check_cancelled(job_id)

            clip_window = (lo + i * share, lo + (i + 1) * share)
            label = f"Processing clip {i + 1}/{total}"
            self._progress(job_id, clip_window[0], f"{label}: 0%")

            clip_path = os.path.join(work_dir, f"clip_{i:02d}.mp4")
            handle = await self.driver.encode_clip(
                files[clip.source_index].path,
                clip.start_offset,
                clip.duration,
                clip_path,
                timeout=self.settings.clip_timeout_seconds,
                label=f"{job_id} clip {i + 1}/{total}",
            )
            await self._drive(
                job_id,
                handle,
                lambda p, w=clip_window, l=label: self._progress(
                    job_id, map_into_window(p, w), f"{l}: {int(p)}%"
                ),
                failure=f"Clip {i + 1} of {total} failed",
            )
            clip_paths.append(clip_path)
            logger.info(f"[{job_id}] Clip {i + 1}/{total} encoded ({clip.duration:.2f}s)")

        return clip_paths

    async def _concatenate(
        self,
        job_id: str,
        clip_paths: Sequence[str],
        total_duration: float,
        work_dir: str,
        output_path: str,
    ) -> None:
        window = self.settings.concat_window
        self._progress(job_id, window[0], "Concatenating clips...")

        manifest_path = os.path.join(work_dir, MANIFEST_NAME)
        self.driver.write_manifest(clip_paths, manifest_path)

        handle = await self.driver.concat(
            manifest_path,
            output_path,
            expected_duration=total_duration,
            timeout=self.settings.compile_timeout_seconds,
            label=f"{job_id} concat",
        )
        await self._drive(
            job_id,
            handle,
            lambda p: self._progress(
                job_id, map_into_window(p, window), f"Concatenating clips: {int(p)}%"
            ),
            failure="Concatenation failed",
        )

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    async def _drive(
        self,
        job_id: str,
        handle: TranscodeHandle,
        on_progress: Callable[[float], None],
        failure: str,
    ) -> None:
        """
        Consume a handle's events until its terminal event.

        Raises:
            CompilationCancelled: Cancellation was requested while running
            CompilationError: The invocation failed
        """
        cancel_event = self.registry.cancellation_event(job_id)

        async def consume():
            async for event in handle.events():
                if event.kind == TranscodeEventKind.PROGRESS:
                    on_progress(event.percent)
                else:
                    return event

        consumer = asyncio.create_task(consume())
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({consumer, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await handle.kill("shutdown")
            raise
        finally:
            cancel_wait.cancel()

        if not consumer.done():
            await handle.kill("cancelled")
            consumer.cancel()
            raise CompilationCancelled()

        terminal = consumer.result()
        if terminal.kind == TranscodeEventKind.FAILED:
            if terminal.reason == "cancelled" or self.registry.is_cancelled(job_id):
                raise CompilationCancelled()
            raise CompilationError(f"{failure}: {terminal.reason}")

    def _check_cancelled(self, job_id: str) -> None:
        if self.registry.is_cancelled(job_id):
            logger.info(f"[{job_id}] Cancellation observed, stopping")
            raise CompilationCancelled()

    def _progress(self, job_id: str, percent: float, stage: str) -> None:
        self.registry.update(job_id, percent, stage)

    def _finish(
        self,
        job_id: str,
        stage: CompilationStage,
        work_dir: str,
        files: Sequence[UploadedFile],
        output_path: str,
    ) -> None:
        """Single terminal-transition cleanup for every outcome."""
        if os.path.isdir(work_dir):
            try:
                shutil.rmtree(work_dir)
            except Exception as e:
                logger.warning(f"[{job_id}] Failed to cleanup work dir: {e}")

        for uploaded in files:
            try:
                Path(uploaded.path).unlink(missing_ok=True)
            except OSError as e:
                logger.warning(f"[{job_id}] Failed to delete source {uploaded.path}: {e}")

        if stage != CompilationStage.COMPLETE:
            self.storage.discard(output_path)

        self.registry.schedule_delete(job_id, self.settings.job_retention_seconds)
        logger.info(f"[{job_id}] Finished: {stage.value}")


class JobRunner:
    """
    Bounds how many compilations run at once across jobs.

    Jobs beyond ``max_concurrent_jobs`` wait in the "Queued..." stage; a job
    cancelled while it waits ends as Cancelled without starting.
    """

    def __init__(
        self,
        pipeline: CompilationPipeline,
        registry: JobRegistry,
        settings: Optional[Settings] = None,
    ):
        self.settings = settings or get_settings()
        self.pipeline = pipeline
        self.registry = registry
        self._semaphore = asyncio.Semaphore(self.settings.max_concurrent_jobs)

    async def run(
        self,
        job_id: str,
        clips: Sequence[ClipSpec],
        files: Sequence[UploadedFile],
    ) -> Optional[JobState]:
        cancel_event = self.registry.cancellation_event(job_id)
        acquire = asyncio.create_task(self._semaphore.acquire())
        cancel_wait = asyncio.create_task(cancel_event.wait())
        try:
            await asyncio.wait({acquire, cancel_wait}, return_when=asyncio.FIRST_COMPLETED)
        finally:
            cancel_wait.cancel()
            if not acquire.done():
                acquire.cancel()

        try:
            acquired = await acquire
        except asyncio.CancelledError:
            acquired = False

        try:
            if not acquired or self.registry.is_cancelled(job_id):
                logger.info(f"[{job_id}] Cancelled while queued")
                return self.pipeline.abandon(job_id, files)
            return await self.pipeline.run(job_id, clips, files)
        except Exception as e:
            logger.exception(f"[{job_id}] Job runner error: {e}")
            self.registry.fail(job_id, str(e))
            return self.registry.get(job_id)
        finally:
            if acquired:
                self._semaphore.release()
