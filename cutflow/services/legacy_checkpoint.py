"""Compatibility shim: infer stage completion from the checkpoint row.

Jobs created before step history existed (or whose history was lost) only
have a JobState checkpoint and their SceneTask rows. This module infers which
major stages are already complete from that data. It is deliberately kept
out of the executor's state machine: the executor only calls
``infer_completed_stages`` when a job has no step history at all, records
the inferred stages as skipped sub-steps, and from then on history is the
single source of truth.

Inference Rules:
    analysis             scene rows exist or total_scenes > 0
    generate_narrations  every dubbed scene has three narration candidates
    extract_scenes       every scene has a split video
    process_scenes       processed_scenes >= total_scenes > 0
    compose              a final video path is recorded

A stage is only inferred complete when every stage before it is too.
"""

from collections.abc import Sequence

from cutflow.constants import NARRATION_CANDIDATE_COUNT
from cutflow.models import JobState, SceneTask
from cutflow.services.step_registry import STAGE_IDS


def _analysis_done(state: JobState | None, scenes: Sequence[SceneTask]) -> bool:
    return bool(scenes) or bool(state and state.total_scenes > 0)


def _narrations_done(scenes: Sequence[SceneTask]) -> bool:
    dubbed = [s for s in scenes if not s.use_original_audio]
    return bool(scenes) and all(len(s.narrations) >= NARRATION_CANDIDATE_COUNT for s in dubbed)


def _extract_done(scenes: Sequence[SceneTask]) -> bool:
    return bool(scenes) and all(s.split_video_path for s in scenes)


def _process_done(state: JobState | None) -> bool:
    return bool(state and state.total_scenes > 0 and state.processed_scenes >= state.total_scenes)


def _compose_done(state: JobState | None) -> bool:
    return bool(state and state.final_video_path)


def infer_completed_stages(state: JobState | None, scenes: Sequence[SceneTask]) -> list[str]:
    """Return the ids of the leading stages the checkpoint shows as complete.

    Args:
        state: The job's checkpoint row, if any.
        scenes: Non-skipped scene rows of the job.

    Returns:
        Stage ids in plan order, stopping at the first stage not complete.

    Example:
        >>> infer_completed_stages(JobState(total_scenes=4, processed_scenes=0), scenes)
        ['analysis', 'generate_narrations', 'extract_scenes']
    """
    checks = {
        "analysis": _analysis_done(state, scenes),
        "generate_narrations": _narrations_done(scenes),
        "extract_scenes": _extract_done(scenes),
        "process_scenes": _process_done(state),
        "compose": _compose_done(state),
    }
    completed = []
    for stage_id in STAGE_IDS:
        if not checks[stage_id]:
            break
        completed.append(stage_id)
    return completed
