"""
Services for the compilation server.

Includes:
- Upload assembly (chunked and whole-file)
- Clip validation and source probing
- Transcoder process driving
- Job registry, compilation pipeline and output storage
"""

from clipstitch.services.clip_validator import ClipSpec
from clipstitch.services.compilation_pipeline import CompilationPipeline, JobRunner
from clipstitch.services.job_registry import JobRegistry, JobState, JobStatus, OutputArtifact
from clipstitch.services.media_probe import MediaProbe
from clipstitch.services.output_storage import OutputStorage
from clipstitch.services.transcode_driver import TranscodeDriver, TranscodeEvent, TranscodeHandle
from clipstitch.services.upload_assembler import UploadAssembler, UploadedFile

__all__ = [
    # Uploads
    "UploadAssembler",
    "UploadedFile",
    # Clips
    "ClipSpec",
    "MediaProbe",
    # Transcoding
    "TranscodeDriver",
    "TranscodeEvent",
    "TranscodeHandle",
    # Jobs
    "JobRegistry",
    "JobState",
    "JobStatus",
    "OutputArtifact",
    "CompilationPipeline",
    "JobRunner",
    "OutputStorage",
]
