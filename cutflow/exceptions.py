"""Shared exceptions for the orchestration core.

This module contains exception classes used across the executor, queue and
media layers so that services can raise and catch them without importing
each other.

Sentinel:
    QUEUE_FULL is the admission-rejection sentinel. ``QueueFullError`` carries
    it both as ``code`` and as its string form, so callers can match either by
    type or by ``str(err) == QUEUE_FULL``.
"""

from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from cutflow.models import JobStatus

QUEUE_FULL = "QUEUE_FULL"


class ConfigurationError(Exception):
    """Raised when required configuration is missing or invalid.

    Examples are an unresolvable client import path in the worker or a
    media binary that cannot be located.
    """

    pass


class InvalidStateTransitionError(Exception):
    """Raised when a Job status change is not allowed by the state machine.

    Only transitions listed in ``Job.VALID_TRANSITIONS`` are allowed:
    pending → processing/failed and processing → completed/failed.

    Attributes:
        from_status: Status before the attempted transition.
        to_status: Status that was attempted.

    Example:
        >>> job.status = JobStatus.COMPLETED
        >>> job.status = JobStatus.PROCESSING
        InvalidStateTransitionError: Invalid transition: completed → processing
    """

    def __init__(self, message: str, from_status: "JobStatus", to_status: "JobStatus"):
        self.from_status = from_status
        self.to_status = to_status
        super().__init__(message)

    def __str__(self) -> str:
        base_message = super().__str__()
        return f"{base_message} (from={self.from_status.value}, to={self.to_status.value})"


class QueueFullError(Exception):
    """Raised when the admission queue has no free running slot.

    The rejection is synchronous: the job is not buffered, and the caller is
    expected to delete the job or mark it failed.

    Attributes:
        code: Always ``QUEUE_FULL``.
        running: Number of jobs running at rejection time.
        max_concurrent: Configured admission capacity.
    """

    code = QUEUE_FULL

    def __init__(self, running: int = 0, max_concurrent: int = 1):
        self.running = running
        self.max_concurrent = max_concurrent
        super().__init__(QUEUE_FULL)


class JobAlreadyRunningError(Exception):
    """Raised when a job id is enqueued while it is already running."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job {job_id} is already running")


class JobNotFoundError(Exception):
    """Raised when a job id does not exist in the store."""

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")


class JobCancelledError(Exception):
    """Raised when a job-level cancellation signal is observed."""

    def __init__(self, message: str = "Job stopped by user"):
        super().__init__(message)


class StepWatchdogError(Exception):
    """Raised when a sub-step exceeds the stuck-job wall-clock bound.

    Never retried: the executor force-fails the job.
    """

    def __init__(self, sub_step: str, limit_seconds: float):
        self.sub_step = sub_step
        self.limit_seconds = limit_seconds
        super().__init__(f"Sub-step {sub_step} exceeded watchdog limit of {limit_seconds:.0f}s")


class SceneProcessingError(Exception):
    """Raised when the scene fan-out ends with failures the policy does not allow.

    The message embeds the first failure reason so the classifier sees the
    underlying cause (e.g. a media timeout).

    Attributes:
        failures: Mapping of scene id to failure reason.
        total: Number of scenes in the fan-out.
    """

    def __init__(self, failures: dict[str, str], total: int):
        self.failures = failures
        self.total = total
        first_scene, first_reason = next(iter(failures.items()))
        super().__init__(
            f"{len(failures)} of {total} scenes failed; {first_scene}: {first_reason}"
        )


class StoryboardValidationError(Exception):
    """Raised when storyboards contain fatal errors.

    Attributes:
        errors: Human-readable error lines, one per problem.
    """

    def __init__(self, errors: list[str]):
        self.errors = errors
        lines = [f"Storyboard validation failed with {len(errors)} error(s):"]
        lines.extend(f"  {i}. {error}" for i, error in enumerate(errors, start=1))
        super().__init__("\n".join(lines))


class MediaProcessError(Exception):
    """Raised when a media subprocess exits with a non-zero code.

    Attributes:
        operation: Logical operation name (e.g. "split", "merge_audio_video").
        exit_code: Process exit code, or None when the process never exited
            on its own (timeout, cancellation, spawn failure).
        stderr: Captured stderr tail.
    """

    def __init__(
        self,
        operation: str,
        exit_code: int | None,
        stderr: str,
        message: str | None = None,
        **context: Any,
    ) -> None:
        self.operation = operation
        self.exit_code = exit_code
        self.stderr = stderr
        self.context = context
        if message is None:
            tail = stderr[-500:] if stderr else ""
            message = f"{operation} failed with exit code {exit_code}: {tail}"
        super().__init__(message)


class MediaTimeoutError(MediaProcessError, TimeoutError):
    """Raised when a media subprocess is killed for exceeding its timeout."""

    def __init__(self, operation: str, timeout_seconds: float, stderr: str = "") -> None:
        self.timeout_seconds = timeout_seconds
        super().__init__(
            operation,
            None,
            stderr,
            message=f"{operation} timed out after {timeout_seconds:.1f}s",
        )


class MediaCancelledError(MediaProcessError):
    """Raised when a media subprocess is killed by the cancellation signal."""

    def __init__(self, operation: str, stderr: str = "") -> None:
        super().__init__(operation, None, stderr, message=f"{operation} was cancelled")
