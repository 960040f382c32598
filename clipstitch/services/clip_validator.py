"""
Clip Validator - filters a job's clip list against its uploaded sources.
"""

import logging
import os
from dataclasses import dataclass, replace
from typing import Optional, Sequence

from clipstitch.services.upload_assembler import UploadedFile

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ClipSpec:
    """A trim of one uploaded source placed on the timeline."""

    source_index: int  # Index into the job's uploaded file list
    start_offset: float  # Seconds into the source
    duration: float  # Seconds
    timeline_position: float  # Sort key


def validate(clips: Sequence[ClipSpec], files: Sequence[UploadedFile]) -> list[ClipSpec]:
    """
    Drop clips that reference a missing source and sort the rest into timeline order.

    A clip is dropped when its ``source_index`` has no corresponding file or the
    file is no longer on disk. The sort is stable, so clips sharing a
    ``timeline_position`` keep their submitted order. An empty result is not an
    error here; the caller decides what an empty timeline means.
    """
    valid: list[ClipSpec] = []
    for clip in clips:
        if clip.source_index < 0 or clip.source_index >= len(files):
            logger.warning(f"Dropping clip: source index {clip.source_index} has no uploaded file")
            continue
        source = files[clip.source_index]
        if not os.path.isfile(source.path):
            logger.warning(f"Dropping clip: source file missing on disk ({source.original_name})")
            continue
        valid.append(clip)

    return sorted(valid, key=lambda c: c.timeline_position)


def clamp_to_source(
    clip: ClipSpec,
    source_duration: Optional[float],
    min_duration: float = 0.1,
) -> Optional[ClipSpec]:
    """
    Clamp a clip's duration to what the source actually has after ``start_offset``.

    Returns None when the clamped duration falls below ``min_duration``; such
    clips are dropped silently. An unknown source duration leaves the clip as-is.
    """
    if source_duration is None:
        return clip

    available = max(0.0, source_duration - clip.start_offset)
    duration = min(clip.duration, available)

    if duration < min_duration:
        logger.info(
            f"Dropping clip at position {clip.timeline_position}: "
            f"{duration:.3f}s left in source after clamping"
        )
        return None

    if duration < clip.duration:
        logger.info(f"Clamped clip duration {clip.duration:.3f}s -> {duration:.3f}s")
        return replace(clip, duration=duration)

    return clip
