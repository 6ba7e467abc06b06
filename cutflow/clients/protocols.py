"""Client protocols for the external AI services.

The orchestration core never talks to a vendor directly. It depends on three
small protocols that deployments implement (and tests fake):

    AnalysisClient   multimodal model that turns videos into storyboards
    NarrationClient  text model that writes narration candidates per scene
    SpeechClient     text-to-speech that renders one narration to a file

Concrete implementations are resolved by the worker from the import paths in
ANALYSIS_CLIENT, NARRATION_CLIENT and SPEECH_CLIENT.
"""

import asyncio
from dataclasses import dataclass, field
from pathlib import Path
from typing import Protocol, runtime_checkable

from cutflow.schemas.job import Storyboard, VideoInput
from cutflow.schemas.step_payloads import VideoMetadataPayload


@dataclass(frozen=True)
class AnalysisRequest:
    """Everything the analysis model needs to propose storyboards."""

    video_refs: list[str]
    videos: list[VideoMetadataPayload]
    platform: str = "vertex"
    storyboard_count: int | None = None
    original_audio_scene_count: int = 0
    script_outline: str | None = None


@dataclass(frozen=True)
class NarrationRequest:
    """One dubbed scene whose narration candidates must be written."""

    scene_key: str
    duration_seconds: float
    description: str | None = None
    narration_script: str | None = None
    script_outline: str | None = None
    extra: dict[str, str] = field(default_factory=dict)


@runtime_checkable
class AnalysisClient(Protocol):
    async def prepare(
        self,
        videos: list[VideoInput],
        platform: str,
        *,
        cancel_event: asyncio.Event | None = None,
    ) -> list[str]:
        """Upload or reference the inputs; return model-ready references, one per video."""
        ...

    async def analyze(self, request: AnalysisRequest) -> list[Storyboard]:
        """Return the storyboards proposed for the request."""
        ...


@runtime_checkable
class NarrationClient(Protocol):
    async def generate(self, batch: list[NarrationRequest]) -> dict[str, list[str]]:
        """Return narration candidates keyed by scene key.

        Every requested scene must map to at least three non-empty candidates.
        """
        ...


@runtime_checkable
class SpeechClient(Protocol):
    async def synthesize(self, text: str, output_path: Path, *, voice_id: str | None = None) -> Path:
        """Render ``text`` to an audio file at ``output_path`` and return the path."""
        ...
