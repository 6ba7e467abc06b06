"""Workflow specifications: explicit per-sub-step retry policy.

A WorkflowSpec is the only place retry counts, backoff and the partial scene
success flag are defined. The executor never infers them: it looks up the
policy of each sub-step with ``policy_for`` and applies it verbatim.

Built-in Workflows:
    SINGLE_VIDEO_WORKFLOW  one input video
    MULTI_VIDEO_WORKFLOW   2-5 input videos, tighter per-step policies

Both disable partial scene success. A best-effort variant is built explicitly:

    lenient = dataclasses.replace(MULTI_VIDEO_WORKFLOW, allow_partial_scene_success=True)
"""

from dataclasses import dataclass, field

from cutflow.config import DEFAULT_STEP_WATCHDOG_SECONDS
from cutflow.models import JobType
from cutflow.schemas.step_payloads import PER_SCENE_SUB_STEPS


@dataclass(frozen=True)
class RetryPolicy:
    """Attempt bound and exponential backoff for one sub-step.

    The delay before attempt ``n + 1`` is ``delay_seconds * backoff ** (n - 1)``,
    capped at ``max_delay_seconds``.
    """

    max_attempts: int = 3
    delay_seconds: float = 1.0
    backoff: float = 2.0
    max_delay_seconds: float = 60.0

    def __post_init__(self) -> None:
        if self.max_attempts < 1:
            raise ValueError(f"max_attempts must be >= 1, got {self.max_attempts}")
        if self.delay_seconds < 0:
            raise ValueError(f"delay_seconds must be >= 0, got {self.delay_seconds}")


@dataclass(frozen=True)
class WorkflowSpec:
    """Named, explicit execution policy for one kind of job."""

    name: str
    job_type: JobType
    step_policies: dict[str, RetryPolicy] = field(default_factory=dict)
    default_policy: RetryPolicy = field(default_factory=RetryPolicy)
    scene_step_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(3, 2.0))
    scene_loop_policy: RetryPolicy = field(default_factory=lambda: RetryPolicy(2, 5.0))
    allow_partial_scene_success: bool = False
    step_watchdog_seconds: float = DEFAULT_STEP_WATCHDOG_SECONDS

    def policy_for(self, sub_step_id: str, *, per_scene: bool = False) -> RetryPolicy:
        """Resolve the policy of a sub-step.

        Explicit entries win; per-scene sub-steps fall back to
        ``scene_step_policy``; everything else to ``default_policy``.
        """
        if sub_step_id in self.step_policies:
            return self.step_policies[sub_step_id]
        if per_scene or sub_step_id in PER_SCENE_SUB_STEPS:
            return self.scene_step_policy
        return self.default_policy


SINGLE_VIDEO_WORKFLOW = WorkflowSpec(
    name="single-video",
    job_type=JobType.SINGLE_VIDEO,
    step_policies={"add_bgm": RetryPolicy(2, 2.0)},
    default_policy=RetryPolicy(3, 1.0),
)

MULTI_VIDEO_WORKFLOW = WorkflowSpec(
    name="multi-video",
    job_type=JobType.MULTI_VIDEO,
    step_policies={
        "fetch_metadata": RetryPolicy(3, 2.0),
        "prepare_analysis": RetryPolicy(3, 3.0),
        "analyze_video": RetryPolicy(2, 5.0),
        "validate_storyboards": RetryPolicy(1, 0.0),
        "batch_generate_narrations": RetryPolicy(3, 5.0),
        "ensure_local_video": RetryPolicy(3, 2.0),
        "split_scenes": RetryPolicy(3, 3.0),
        "concatenate_scenes": RetryPolicy(3, 3.0),
        "add_bgm": RetryPolicy(2, 2.0),
        "publish_output": RetryPolicy(1, 0.0),
    },
    default_policy=RetryPolicy(3, 1.0),
)


def workflow_for(job_type: JobType) -> WorkflowSpec:
    """Return the built-in workflow of a job type."""
    if job_type == JobType.MULTI_VIDEO:
        return MULTI_VIDEO_WORKFLOW
    return SINGLE_VIDEO_WORKFLOW
