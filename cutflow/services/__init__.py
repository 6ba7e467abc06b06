"""Business logic services of the editing pipeline."""

from cutflow.services.error_classifier import ClassifiedError, ErrorCategory, classify
from cutflow.services.job_queue import JobAdmissionQueue, QueueStatus
from cutflow.services.step_history import JobRepository
from cutflow.services.step_registry import StepContext, get_stages
from cutflow.services.workflow_executor import WorkflowExecutor
from cutflow.services.workflows import (
    MULTI_VIDEO_WORKFLOW,
    SINGLE_VIDEO_WORKFLOW,
    RetryPolicy,
    WorkflowSpec,
)

__all__ = [
    "ClassifiedError",
    "ErrorCategory",
    "JobAdmissionQueue",
    "JobRepository",
    "MULTI_VIDEO_WORKFLOW",
    "QueueStatus",
    "RetryPolicy",
    "SINGLE_VIDEO_WORKFLOW",
    "StepContext",
    "WorkflowExecutor",
    "WorkflowSpec",
    "classify",
    "get_stages",
]
