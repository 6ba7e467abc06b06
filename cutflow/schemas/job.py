"""Pydantic schemas for job input, configuration and analysis output.

This module defines Pydantic v2 schemas for the JSON columns of the Job
model and for the storyboards returned by the analysis client.

Schema Overview:
    - VideoInput: One source video reference (path, file://, http(s), gs://)
    - JobConfig: Per-job style/config (scene concurrency, counts, subtitles, bgm)
    - Storyboard: One scene as proposed by the analysis model (unvalidated)
    - ValidatedScene: A storyboard after normalisation and bounds checking

All schemas use Pydantic v2 syntax with model_config instead of class Config.
"""

from typing import Literal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from cutflow.config import DEFAULT_MAX_CONCURRENT_SCENES

Platform = Literal["vertex", "ai-studio"]


class VideoInput(BaseModel):
    """One input video of a job.

    Multi-video jobs refer to inputs as ``video-1`` ... ``video-N`` in the
    order of this list.
    """

    model_config = ConfigDict(from_attributes=True)

    url: str = Field(
        ...,
        min_length=1,
        description="Local path or URL of the source video",
        examples=["gs://bucket/raw/clip.mp4", "/data/clip.mp4"],
    )
    label: str | None = Field(default=None, description="Optional display name")


class JobConfig(BaseModel):
    """Per-job configuration stored in ``Job.config``.

    Defaults:
        - max_concurrent_scenes: 3 (bounded to 1..8, never above the system cap)
        - platform: "vertex"
        - subtitle_enabled: None (system default from SUBTITLE_ENABLED)
    """

    model_config = ConfigDict(from_attributes=True)

    max_concurrent_scenes: int = Field(
        default=DEFAULT_MAX_CONCURRENT_SCENES,
        ge=1,
        le=8,
        description="Scenes processed concurrently within this job",
    )
    storyboard_count: int | None = Field(
        default=None,
        ge=1,
        description="Target number of scenes requested from the analysis model",
    )
    platform: Platform = Field(default="vertex", description="Analysis platform")
    script_outline: str | None = Field(default=None, description="Optional narration outline")
    original_audio_scene_count: int = Field(
        default=0,
        ge=0,
        description="Expected number of scenes that keep their original audio",
    )
    subtitle_enabled: bool | None = Field(default=None)
    bgm_url: str | None = Field(default=None, description="Background music reference")
    voice_id: str | None = Field(default=None, description="Speech synthesis voice")

    @field_validator("bgm_url", "script_outline", "voice_id")
    @classmethod
    def _blank_to_none(cls, value: str | None) -> str | None:
        if value is None or not value.strip():
            return None
        return value.strip()


class Storyboard(BaseModel):
    """One scene as returned by the analysis model.

    Timestamps are kept as received; ``validate_storyboards`` parses and
    normalises them.
    """

    model_config = ConfigDict(extra="ignore")

    scene_index: int | None = Field(default=None, ge=1)
    source_video: str | None = Field(
        default=None, description='Source reference, "video-N" (1-based)'
    )
    start_time: str | float
    end_time: str | float
    duration_seconds: float | None = None
    description: str | None = None
    use_original_audio: bool = False
    narration: str | None = None


class ValidatedScene(BaseModel):
    """A storyboard after validation: seconds, resolved source index, flags."""

    scene_index: int = Field(..., ge=1)
    source_video_index: int = Field(default=0, ge=0)
    # Skipped scenes keep their out-of-range bounds for diagnostics
    start: float
    end: float
    duration_seconds: float
    description: str | None = None
    use_original_audio: bool = False
    narration: str | None = None
    is_skipped: bool = False
    skip_reason: str | None = None

    @property
    def scene_key(self) -> str:
        return f"scene-{self.scene_index}"
