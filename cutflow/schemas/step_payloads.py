"""Typed payloads stored on StepRecord rows.

Every sub-step's output is a Pydantic model tagged with ``kind`` equal to its
sub-step id. Two discriminated unions cover the two record scopes:

    StepOutput       stage-level records (scene_id is None)
    SceneStepOutput  per-scene records (scene_id = "scene-N")

Per-scene sub-steps also get one stage-level aggregate record after the
fan-out; its payload is ``SceneStepSummary``, whose ``kind`` accepts every
per-scene sub-step id.

On resume the executor re-validates stored payloads with ``parse_step_output``
so downstream sub-steps always receive typed values, never raw dicts.
"""

from typing import Annotated, Any, Literal

from pydantic import BaseModel, ConfigDict, Field, TypeAdapter

from cutflow.schemas.job import Storyboard, ValidatedScene


class _Payload(BaseModel):
    model_config = ConfigDict(extra="ignore")


# ---------------------------------------------------------------------------
# analysis
# ---------------------------------------------------------------------------


class VideoMetadataPayload(_Payload):
    index: int
    url: str
    duration: float
    width: int = 0
    height: int = 0
    fps: float = 0.0
    has_audio: bool = False
    codec: str | None = None
    size: int | None = None


class FetchMetadataOutput(_Payload):
    kind: Literal["fetch_metadata"] = "fetch_metadata"
    videos: list[VideoMetadataPayload]


class PrepareAnalysisOutput(_Payload):
    kind: Literal["prepare_analysis"] = "prepare_analysis"
    platform: str
    video_refs: list[str]


class AnalyzeVideoOutput(_Payload):
    kind: Literal["analyze_video"] = "analyze_video"
    storyboards: list[Storyboard]


class ValidateStoryboardsOutput(_Payload):
    kind: Literal["validate_storyboards"] = "validate_storyboards"
    scenes: list[ValidatedScene]
    warnings: list[str] = Field(default_factory=list)
    valid_count: int
    skipped_count: int = 0
    original_audio_count: int = 0


# ---------------------------------------------------------------------------
# generate_narrations
# ---------------------------------------------------------------------------


class BatchGenerateNarrationsOutput(_Payload):
    kind: Literal["batch_generate_narrations"] = "batch_generate_narrations"
    generated_scene_count: int
    batch_count: int
    already_present: int = 0


# ---------------------------------------------------------------------------
# extract_scenes
# ---------------------------------------------------------------------------


class SourceGroup(_Payload):
    source_video_index: int
    scene_keys: list[str]


class GroupBySourceOutput(_Payload):
    kind: Literal["group_by_source"] = "group_by_source"
    groups: list[SourceGroup]


class EnsureLocalVideoOutput(_Payload):
    kind: Literal["ensure_local_video"] = "ensure_local_video"
    local_paths: list[str]
    downloaded_indexes: list[int] = Field(default_factory=list)


class SplitSegment(_Payload):
    scene_key: str
    path: str
    duration: float


class SplitScenesOutput(_Payload):
    kind: Literal["split_scenes"] = "split_scenes"
    segments: list[SplitSegment]
    target_width: int
    target_height: int
    fps: int


# ---------------------------------------------------------------------------
# process_scenes
# ---------------------------------------------------------------------------


class SceneLoopStartOutput(_Payload):
    kind: Literal["scene_loop_start"] = "scene_loop_start"
    total_scenes: int
    pending_scenes: int
    concurrency: int


class SceneLoopEndOutput(_Payload):
    kind: Literal["scene_loop_end"] = "scene_loop_end"
    completed: int
    failed: int
    failed_scenes: dict[str, str] = Field(default_factory=dict)


PER_SCENE_SUB_STEPS = (
    "synthesize_audio",
    "trim_jumpcuts",
    "select_best_match",
    "adjust_video_speed",
    "merge_audio_video",
    "burn_subtitle",
    "reencode_original_audio",
)

PerSceneKind = Literal[
    "synthesize_audio",
    "trim_jumpcuts",
    "select_best_match",
    "adjust_video_speed",
    "merge_audio_video",
    "burn_subtitle",
    "reencode_original_audio",
]


class SceneStepSummary(_Payload):
    """Stage-level aggregate of one per-scene sub-step across all scenes."""

    kind: PerSceneKind
    completed: int = 0
    failed: int = 0
    skipped: int = 0


class AudioCandidate(_Payload):
    version: int
    path: str
    duration: float | None = None


class SynthesizeAudioOutput(_Payload):
    kind: Literal["synthesize_audio"] = "synthesize_audio"
    candidates: list[AudioCandidate]


class TrimJumpcutsOutput(_Payload):
    kind: Literal["trim_jumpcuts"] = "trim_jumpcuts"
    output_path: str
    trimmed_start: float = 0.0
    trimmed_end: float = 0.0
    original_duration: float
    new_duration: float
    skipped: bool = False


class SelectBestMatchOutput(_Payload):
    kind: Literal["select_best_match"] = "select_best_match"
    version: int
    audio_path: str
    audio_duration: float
    video_duration: float
    speed_factor: float
    adjusted_speed_factor: float
    loop_count: int = 1
    need_trim: bool = False
    trim_to_duration: float | None = None


class AdjustVideoSpeedOutput(_Payload):
    kind: Literal["adjust_video_speed"] = "adjust_video_speed"
    output_path: str
    speed_factor: float
    looped: bool = False
    trimmed: bool = False


class MergeAudioVideoOutput(_Payload):
    kind: Literal["merge_audio_video"] = "merge_audio_video"
    output_path: str
    duration: float


class BurnSubtitleOutput(_Payload):
    kind: Literal["burn_subtitle"] = "burn_subtitle"
    output_path: str
    segment_count: int = 0
    enabled: bool = True


class ReencodeOriginalAudioOutput(_Payload):
    kind: Literal["reencode_original_audio"] = "reencode_original_audio"
    output_path: str


# ---------------------------------------------------------------------------
# compose
# ---------------------------------------------------------------------------


class ConcatenateScenesOutput(_Payload):
    kind: Literal["concatenate_scenes"] = "concatenate_scenes"
    output_path: str
    scene_count: int
    duration: float | None = None


class AddBgmOutput(_Payload):
    kind: Literal["add_bgm"] = "add_bgm"
    output_path: str
    bgm_source: str


class PublishOutputOutput(_Payload):
    kind: Literal["publish_output"] = "publish_output"
    output_path: str
    duration: float
    width: int = 0
    height: int = 0
    size: int | None = None


StepOutput = Annotated[
    FetchMetadataOutput
    | PrepareAnalysisOutput
    | AnalyzeVideoOutput
    | ValidateStoryboardsOutput
    | BatchGenerateNarrationsOutput
    | GroupBySourceOutput
    | EnsureLocalVideoOutput
    | SplitScenesOutput
    | SceneLoopStartOutput
    | SceneLoopEndOutput
    | SceneStepSummary
    | ConcatenateScenesOutput
    | AddBgmOutput
    | PublishOutputOutput,
    Field(discriminator="kind"),
]

SceneStepOutput = Annotated[
    SynthesizeAudioOutput
    | TrimJumpcutsOutput
    | SelectBestMatchOutput
    | AdjustVideoSpeedOutput
    | MergeAudioVideoOutput
    | BurnSubtitleOutput
    | ReencodeOriginalAudioOutput,
    Field(discriminator="kind"),
]

_step_output_adapter: TypeAdapter[Any] = TypeAdapter(StepOutput)
_scene_output_adapter: TypeAdapter[Any] = TypeAdapter(SceneStepOutput)


def parse_step_output(data: dict[str, Any] | None, *, scene_level: bool = False) -> Any:
    """Validate a stored payload back into its typed model.

    Args:
        data: JSON payload from ``StepRecord.output_data``.
        scene_level: True for records with a scene_id.

    Returns:
        The payload model, or None when no payload was stored.

    Raises:
        pydantic.ValidationError: If the payload does not match its ``kind``.
    """
    if data is None:
        return None
    adapter = _scene_output_adapter if scene_level else _step_output_adapter
    return adapter.validate_python(data)


def dump_payload(payload: BaseModel | None) -> dict[str, Any] | None:
    """Serialize a payload for a JSON column."""
    if payload is None:
        return None
    return payload.model_dump(mode="json")
