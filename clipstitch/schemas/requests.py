"""
Request schemas for the compilation API.

Multipart form fields carry JSON strings (``clipsData``, ``fileIds``); these
models validate the decoded payloads.
"""

from pydantic import AliasChoices, BaseModel, ConfigDict, Field

from clipstitch.services.clip_validator import ClipSpec


class ClipInput(BaseModel):
    """One clip of the submitted timeline."""

    model_config = ConfigDict(
        populate_by_name=True,
        json_schema_extra={
            "example": {"sourceIndex": 0, "startTime": 12.5, "duration": 4.0, "position": 0}
        },
    )

    source_index: int = Field(
        ...,
        validation_alias=AliasChoices("sourceIndex", "fileIndex", "source_index"),
        description="Index into the job's sources (uploaded videos, then fileIds)",
    )
    start_time: float = Field(
        0.0,
        ge=0,
        validation_alias=AliasChoices("startTime", "start_time"),
        description="Seconds into the source",
    )
    duration: float = Field(..., gt=0, description="Clip length in seconds")
    position: float = Field(0.0, description="Timeline position used for ordering")

    def to_spec(self) -> ClipSpec:
        return ClipSpec(
            source_index=self.source_index,
            start_offset=self.start_time,
            duration=self.duration,
            timeline_position=self.position,
        )

