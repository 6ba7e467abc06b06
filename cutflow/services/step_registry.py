"""Step Registry: the ordered stage/sub-step plan of a job.

This module maps a job's static context to the ordered list of major stages
and their sub-steps, and derives progress and status labels from the step
history. Everything here is pure: no I/O, no clock, no database. Functions
are cheap enough to be called on every progress query.

Key Responsibilities:
- Build the stage plan for a context (conditional sub-steps included only
  when they apply: ``group_by_source`` for multi-video jobs,
  ``reencode_original_audio`` when a scene keeps its audio, ``add_bgm``
  when background music is configured)
- Compute progress as done (completed or skipped) sub-steps over total
- Derive a major stage's status and human-readable numbered labels

Architecture Pattern:
    Plan (this module) → Executor walks the plan → StepHistory records outcomes
    → progress()/get_major_step_status() read them back

Usage:
    context = StepContext(video_count=2, has_original_audio=True)
    for stage in get_stages(context):
        for sub_step in stage.sub_steps:
            ...
    percent = progress(records, context)
"""

from collections.abc import Iterable, Sequence
from dataclasses import asdict, dataclass, field
from typing import Any, Literal, Protocol

from cutflow.models import DONE_STEP_STATUSES, JobStatus, SceneStatus, StepStatus

StepKey = tuple[str, str, str | None]


@dataclass(frozen=True)
class StepContext:
    """Static job facts that shape the stage plan.

    Attributes:
        video_count: Number of input videos (1-5).
        has_original_audio: True when at least one scene keeps its own audio.
        platform: Analysis platform, only affects labels.
        has_bgm: True when a background-music reference is configured.
        total_scenes: Valid scene count, known after storyboard validation.
        original_scene_count: Scenes keeping their original audio.
    """

    video_count: int = 1
    has_original_audio: bool = False
    platform: Literal["vertex", "ai-studio"] = "vertex"
    has_bgm: bool = False
    total_scenes: int = 0
    original_scene_count: int = 0

    @property
    def is_multi_video(self) -> bool:
        return self.video_count > 1

    @property
    def dubbed_scene_count(self) -> int:
        return max(self.total_scenes - self.original_scene_count, 0)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any] | None) -> "StepContext":
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        return cls(**known)


@dataclass(frozen=True)
class SubStep:
    id: str
    label: str
    per_scene: bool = False


@dataclass(frozen=True)
class Stage:
    id: str
    label: str
    sub_steps: tuple[SubStep, ...] = field(default_factory=tuple)

    @property
    def sub_step_ids(self) -> list[str]:
        return [s.id for s in self.sub_steps]


STAGE_IDS = ("analysis", "generate_narrations", "extract_scenes", "process_scenes", "compose")


def get_stages(context: StepContext) -> list[Stage]:
    """Return the ordered stage plan for ``context``.

    Deterministic: the same context always yields the same plan.

    Example:
        >>> [s.id for s in get_stages(StepContext())]
        ['analysis', 'generate_narrations', 'extract_scenes', 'process_scenes', 'compose']
    """
    prepare_label = (
        "Prepare cloud storage input" if context.platform == "vertex" else "Upload via file API"
    )
    analysis = Stage(
        "analysis",
        "Video analysis",
        (
            SubStep("fetch_metadata", "Fetch video metadata"),
            SubStep("prepare_analysis", prepare_label),
            SubStep(
                "analyze_video",
                "Generate multi-video storyboards" if context.is_multi_video else "Generate storyboards",
            ),
            SubStep("validate_storyboards", "Validate storyboards"),
        ),
    )

    narrations = Stage(
        "generate_narrations",
        "Generate narrations",
        (SubStep("batch_generate_narrations", "Generate narrations"),),
    )

    extract_steps = []
    if context.is_multi_video:
        extract_steps.append(SubStep("group_by_source", "Group scenes by source video"))
    extract_steps += [
        SubStep("ensure_local_video", "Prepare local video"),
        SubStep("split_scenes", "Split scenes"),
    ]
    extract = Stage("extract_scenes", "Scene extraction", tuple(extract_steps))

    process_steps = [
        SubStep("scene_loop_start", "Start scene processing"),
        SubStep("synthesize_audio", "Synthesize narration audio", per_scene=True),
        SubStep("trim_jumpcuts", "Trim jump cuts", per_scene=True),
        SubStep("select_best_match", "Select best audio match", per_scene=True),
        SubStep("adjust_video_speed", "Adjust video speed", per_scene=True),
        SubStep("merge_audio_video", "Merge audio and video", per_scene=True),
        SubStep("burn_subtitle", "Burn subtitles", per_scene=True),
    ]
    if context.has_original_audio:
        process_steps.append(
            SubStep("reencode_original_audio", "Re-encode original-audio scenes", per_scene=True)
        )
    process_steps.append(SubStep("scene_loop_end", "Finish scene processing"))
    process = Stage("process_scenes", "Audio/video sync", tuple(process_steps))

    compose_steps = [SubStep("concatenate_scenes", "Concatenate scenes")]
    if context.has_bgm:
        compose_steps.append(SubStep("add_bgm", "Add background music"))
    compose_steps.append(SubStep("publish_output", "Publish final video"))
    compose = Stage("compose", "Final compose", tuple(compose_steps))

    return [analysis, narrations, extract, process, compose]


def total_sub_steps(context: StepContext) -> int:
    return sum(len(stage.sub_steps) for stage in get_stages(context))


class _RecordLike(Protocol):
    stage_id: str
    sub_step_id: str
    scene_id: str | None
    status: StepStatus


def latest_by_key(history: Iterable[_RecordLike]) -> dict[StepKey, _RecordLike]:
    """Collapse an append-ordered history into the latest record per key."""
    latest: dict[StepKey, _RecordLike] = {}
    for record in history:
        latest[(record.stage_id, record.sub_step_id, record.scene_id)] = record
    return latest


def progress(history: Sequence[_RecordLike], context: StepContext) -> float:
    """Percentage of stage-level sub-steps that are completed or skipped.

    Only records without a scene id count; per-scene work is reflected by the
    stage-level aggregate record written after the fan-out.

    Args:
        history: Step records in append order.
        context: Job context defining the plan.

    Returns:
        Percentage in [0, 100], rounded to one decimal.
    """
    latest = latest_by_key(history)
    total = 0
    done = 0
    for stage in get_stages(context):
        for sub_step in stage.sub_steps:
            total += 1
            record = latest.get((stage.id, sub_step.id, None))
            if record is not None and record.status in DONE_STEP_STATUSES:
                done += 1
    if total == 0:
        return 0.0
    return round(done / total * 100, 1)


def get_major_step_status(
    stage: Stage,
    history: Sequence[_RecordLike],
    context: StepContext,
    job_status: JobStatus | None = None,
) -> StepStatus:
    """Derive a major stage's status from its sub-step records.

    Rules, in order:
        any running → running (pending if the job itself already failed)
        any failed → failed
        all completed/skipped → completed
        otherwise → pending
    """
    latest = latest_by_key(history)
    statuses = [
        latest[(stage.id, s.id, None)].status
        for s in stage.sub_steps
        if (stage.id, s.id, None) in latest
    ]

    if StepStatus.RUNNING in statuses:
        return StepStatus.PENDING if job_status == JobStatus.FAILED else StepStatus.RUNNING
    if StepStatus.FAILED in statuses:
        return StepStatus.FAILED
    if statuses and len(statuses) == len(stage.sub_steps) and all(
        s in DONE_STEP_STATUSES for s in statuses
    ):
        return StepStatus.COMPLETED
    return StepStatus.PENDING


@dataclass(frozen=True)
class StepNumber:
    stage_number: int
    stage_total: int
    step_number: int
    step_total: int


def get_step_numbering(context: StepContext) -> dict[tuple[str, str], StepNumber]:
    """Map (stage id, sub-step id) to its position in the plan."""
    stages = get_stages(context)
    numbering = {}
    for stage_no, stage in enumerate(stages, start=1):
        for step_no, sub_step in enumerate(stage.sub_steps, start=1):
            numbering[(stage.id, sub_step.id)] = StepNumber(
                stage_no, len(stages), step_no, len(stage.sub_steps)
            )
    return numbering


def format_step_label(stage_id: str, sub_step_id: str, context: StepContext) -> str:
    """Format a numbered label such as ``[stage 2/5][step 1/1] Generate narrations``.

    Unknown ids are returned as-is.
    """
    number = get_step_numbering(context).get((stage_id, sub_step_id))
    if number is None:
        return sub_step_id
    label = next(
        s.label
        for stage in get_stages(context)
        if stage.id == stage_id
        for s in stage.sub_steps
        if s.id == sub_step_id
    )
    return (
        f"[stage {number.stage_number}/{number.stage_total}]"
        f"[step {number.step_number}/{number.step_total}] {label}"
    )


@dataclass(frozen=True)
class SceneProgress:
    total: int
    completed: int
    failed: int
    processing: int
    pending: int

    @property
    def percent(self) -> float:
        if self.total == 0:
            return 0.0
        return round((self.completed + self.failed) / self.total * 100, 1)


def get_scene_progress(statuses: Iterable[SceneStatus]) -> SceneProgress:
    """Summarise scene statuses for the progress display."""
    items = list(statuses)
    return SceneProgress(
        total=len(items),
        completed=sum(1 for s in items if s == SceneStatus.COMPLETED),
        failed=sum(1 for s in items if s == SceneStatus.FAILED),
        processing=sum(1 for s in items if s == SceneStatus.PROCESSING),
        pending=sum(1 for s in items if s == SceneStatus.PENDING),
    )
