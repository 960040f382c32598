"""
Progress Poller - turns server progress into a smooth, phase-aware display.

The server reports a percent plus a free-text stage label. The poller sorts
each label into a display phase, rescales the server percent into that phase's
range, and never lets the displayed percent move backwards.
"""

import logging
import time
from dataclasses import dataclass
from enum import Enum
from typing import Callable, Optional

import requests

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 1.5
SAFETY_TIMEOUT_SECONDS = 600.0
FAILURES_BEFORE_RECONNECTING = 3
STAGE_RECONNECTING = "Reconnecting..."


class Phase(str, Enum):
    """Display phases, in pipeline order."""

    UPLOAD = "upload"
    VALIDATION = "validation"
    PROCESSING = "processing"
    COMPILATION = "compilation"
    FINALIZATION = "finalization"


DEFAULT_STAGE_RANGES: dict[Phase, tuple[float, float]] = {
    Phase.UPLOAD: (0.0, 20.0),
    Phase.VALIDATION: (20.0, 30.0),
    Phase.PROCESSING: (30.0, 80.0),
    Phase.COMPILATION: (80.0, 95.0),
    Phase.FINALIZATION: (95.0, 100.0),
}


class PollOutcome(str, Enum):
    """How tracking ended."""

    COMPLETE = "complete"
    ERROR = "error"
    CANCELLED = "cancelled"
    TIMEOUT = "timeout"


@dataclass
class PollUpdate:
    """One display update."""

    percent: float
    stage: str
    phase: Phase


@dataclass
class PollResult:
    """Final result of tracking a job."""

    outcome: PollOutcome
    percent: float
    stage: str
    download_url: Optional[str] = None
    output_file: Optional[str] = None


def classify_stage(stage: str, current: Phase) -> Phase:
    """
    Map a server stage label to a display phase (case-insensitive).

    Error labels count as processing; labels matching nothing keep the
    current phase.
    """
    label = stage.lower()
    if "error" in label:
        return Phase.PROCESSING
    if "upload" in label:
        return Phase.UPLOAD
    if "validat" in label:
        return Phase.VALIDATION
    if "process" in label or "encoding" in label:
        return Phase.PROCESSING
    if "compil" in label or "concat" in label:
        return Phase.COMPILATION
    if "final" in label or "complete" in label:
        return Phase.FINALIZATION
    return current


def rescale(percent: float, stage_range: tuple[float, float]) -> float:
    """Rescale a 0-100 server percent into a display range."""
    lo, hi = stage_range
    percent = min(100.0, max(0.0, percent))
    return lo + (hi - lo) * percent / 100


class ProgressPoller:
    """
    Polls ``/progress/{job_id}`` until the job ends.

    ``fetch``, ``sleep`` and ``clock`` are injectable so tracking can be driven
    without a server or real time passing.
    """

    def __init__(
        self,
        fetch: Callable[[str], dict],
        interval: float = POLL_INTERVAL_SECONDS,
        timeout: float = SAFETY_TIMEOUT_SECONDS,
        failure_threshold: int = FAILURES_BEFORE_RECONNECTING,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.fetch = fetch
        self.interval = interval
        self.timeout = timeout
        self.failure_threshold = failure_threshold
        self._sleep = sleep
        self._clock = clock

    def track(
        self,
        job_id: str,
        on_update: Callable[[PollUpdate], None],
        stage_ranges: Optional[dict[Phase, tuple[float, float]]] = None,
    ) -> PollResult:
        """
        Poll until the job completes, fails, is cancelled, or the safety
        timeout passes.

        Args:
            job_id: Job to track
            on_update: Called with every display update
            stage_ranges: Per-phase overrides of DEFAULT_STAGE_RANGES
        """
        ranges = dict(DEFAULT_STAGE_RANGES)
        if stage_ranges:
            ranges.update(stage_ranges)

        started = self._clock()
        phase = Phase.UPLOAD
        displayed = 0.0
        stage = ""
        failures = 0

        while True:
            if self._clock() - started >= self.timeout:
                logger.warning(f"Gave up tracking {job_id} after {self.timeout:.0f}s")
                return PollResult(PollOutcome.TIMEOUT, displayed, stage)

            try:
                data = self.fetch(job_id)
            except (requests.RequestException, ValueError) as e:
                failures += 1
                logger.debug(f"Progress poll {failures} for {job_id} failed: {e}")
                if failures >= self.failure_threshold:
                    on_update(PollUpdate(displayed, STAGE_RECONNECTING, phase))
                self._sleep(self.interval)
                continue

            failures = 0
            stage = str(data.get("stage") or "")
            percent = float(data.get("percent") or 0)
            label = stage.lower()
            phase = classify_stage(stage, phase)

            if "error" in label:
                on_update(PollUpdate(displayed, stage, phase))
                return PollResult(PollOutcome.ERROR, displayed, stage)

            if "cancelled" in label:
                on_update(PollUpdate(displayed, stage, phase))
                return PollResult(PollOutcome.CANCELLED, displayed, stage)

            if data.get("downloadUrl") or percent >= 100:
                displayed = 100.0
                on_update(PollUpdate(displayed, stage, Phase.FINALIZATION))
                return PollResult(
                    PollOutcome.COMPLETE,
                    displayed,
                    stage,
                    download_url=data.get("downloadUrl"),
                    output_file=data.get("outputFile"),
                )

            displayed = max(displayed, rescale(percent, ranges[phase]))
            on_update(PollUpdate(displayed, stage, phase))
            self._sleep(self.interval)
