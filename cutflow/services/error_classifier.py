"""Error classification for retry decisions and failure reporting.

Every exception raised by a sub-step is classified into one category that
drives two decisions: whether the executor retries the attempt, and what
guidance is stored on the failed job.

Categories:
    retryable  network, rate limiting, timeouts, transient upstream failures
    config     credentials, permissions, missing configuration
    input      bad video, bad URL, unsupported media, invalid storyboards
    system     database, filesystem, internal errors (retried at most twice)
    unknown    anything unmatched (treated as retryable)

Classification Order:
    1. Exception type (timeouts, connection errors, httpx status codes, OSError)
    2. Message patterns: retryable → config → input → system, first match wins
    3. Fallback: unknown
"""

import re
import traceback
from dataclasses import dataclass
from enum import Enum
from typing import Any

import httpx
from pydantic import ValidationError

from cutflow.constants import RETRYABLE_DELAY_SECONDS, SYSTEM_MAX_ATTEMPTS
from cutflow.exceptions import (
    ConfigurationError,
    JobCancelledError,
    MediaCancelledError,
    MediaTimeoutError,
    StepWatchdogError,
    StoryboardValidationError,
)


class ErrorCategory(str, Enum):
    RETRYABLE = "retryable"
    CONFIG = "config"
    INPUT = "input"
    SYSTEM = "system"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class ClassifiedError:
    """Classification result for one exception.

    Attributes:
        category: The error family.
        is_retryable: Whether another attempt may succeed.
        guidance: Operator-facing hint stored on the job.
        retry_delay_seconds: Advisory delay for retryable errors (informational,
            the workflow policy decides the actual backoff).
        max_attempts: Hard cap on attempts for this category, None when only the
            workflow policy applies.
    """

    category: ErrorCategory
    is_retryable: bool
    guidance: str
    retry_delay_seconds: int | None = None
    max_attempts: int | None = None


_RETRYABLE_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"network|timeout|timed out|ECONNREFUSED|ETIMEDOUT|ENOTFOUND",
        r"rate limit|too many requests|429",
        r"service unavailable|503|502|504",
        r"temporary|transient",
        r"RESOURCE_EXHAUSTED|quota|capacity|overloaded",
        r"500 Internal Server Error",
        r"deadline exceeded|context deadline",
        r"connection reset|ECONNRESET",
    )
]

_CONFIG_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"api key|invalid key|unauthorized|401|403",
        r"authentication|credentials|permission denied",
        r"not configured|missing.*config|invalid.*config",
        r"service account|project.*not found",
        r"PERMISSION_DENIED|ACCESS_TOKEN_EXPIRED",
        r"API_KEY_INVALID|billing.*not enabled",
        r"model.*not found|model.*deprecated",
        r"location.*not supported|region.*not available",
    )
]

_INPUT_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"invalid.*video|unsupported.*format|video.*corrupt",
        r"invalid.*url|url.*not found|404",
        r"file.*not found|file.*corrupt|invalid.*file",
        r"duration.*invalid|metadata.*missing",
        r"INVALID_ARGUMENT|FAILED_PRECONDITION",
        r"video.*too long|file.*too large|exceeds.*limit",
        r"unsupported.*media|invalid.*mime|content.*type",
        r"video.*processing.*failed|unable.*to.*process",
    )
]

_SYSTEM_PATTERNS = [
    re.compile(p, re.IGNORECASE)
    for p in (
        r"database|sqlite|sql error",
        r"internal error|unexpected error",
        r"ENOENT|EACCES|no such file or directory|disk.*full",
    )
]

_RESULTS = {
    ErrorCategory.RETRYABLE: ClassifiedError(
        ErrorCategory.RETRYABLE,
        True,
        "Network or upstream service temporarily unavailable, retry later",
        retry_delay_seconds=RETRYABLE_DELAY_SECONDS,
    ),
    ErrorCategory.CONFIG: ClassifiedError(
        ErrorCategory.CONFIG,
        False,
        "Configuration error, check API keys, credentials and permissions",
    ),
    ErrorCategory.INPUT: ClassifiedError(
        ErrorCategory.INPUT,
        False,
        "Invalid input, check that the video URLs are reachable and the format is supported",
    ),
    ErrorCategory.SYSTEM: ClassifiedError(
        ErrorCategory.SYSTEM,
        True,
        "Internal system error, retry later or contact support",
        max_attempts=SYSTEM_MAX_ATTEMPTS,
    ),
    ErrorCategory.UNKNOWN: ClassifiedError(
        ErrorCategory.UNKNOWN,
        True,
        "Unknown error, the job can be retried",
    ),
}


def _classify_by_type(error: BaseException) -> ErrorCategory | None:
    if isinstance(error, MediaTimeoutError | TimeoutError | ConnectionError):
        return ErrorCategory.RETRYABLE
    if isinstance(error, httpx.HTTPStatusError):
        code = error.response.status_code
        if code == 429 or code >= 500:
            return ErrorCategory.RETRYABLE
        if code in (401, 403):
            return ErrorCategory.CONFIG
        if code in (400, 404, 415, 422):
            return ErrorCategory.INPUT
        return None
    if isinstance(error, httpx.TransportError):
        return ErrorCategory.RETRYABLE
    if isinstance(error, ConfigurationError):
        return ErrorCategory.CONFIG
    if isinstance(error, StoryboardValidationError | ValidationError):
        return ErrorCategory.INPUT
    if isinstance(error, OSError):
        return ErrorCategory.SYSTEM
    return None


def _classify_by_message(message: str) -> ErrorCategory:
    for category, patterns in (
        (ErrorCategory.RETRYABLE, _RETRYABLE_PATTERNS),
        (ErrorCategory.CONFIG, _CONFIG_PATTERNS),
        (ErrorCategory.INPUT, _INPUT_PATTERNS),
        (ErrorCategory.SYSTEM, _SYSTEM_PATTERNS),
    ):
        if any(p.search(message) for p in patterns):
            return category
    return ErrorCategory.UNKNOWN


def classify(error: BaseException | str) -> ClassifiedError:
    """Classify an exception (or a bare message) into a ClassifiedError.

    Example:
        >>> classify(MediaTimeoutError("merge_audio_video", 120)).category
        <ErrorCategory.RETRYABLE: 'retryable'>
        >>> classify("401 Unauthorized").is_retryable
        False
    """
    if isinstance(error, str):
        return _RESULTS[_classify_by_message(error)]
    category = _classify_by_type(error) or _classify_by_message(str(error))
    return _RESULTS[category]


def is_never_retried(error: BaseException) -> bool:
    """Errors that must end the attempt loop regardless of category."""
    return isinstance(error, JobCancelledError | StepWatchdogError | MediaCancelledError)


def build_error_metadata(
    error: BaseException, classified: ClassifiedError | None = None
) -> dict[str, Any]:
    """JSON metadata stored on a failed StepRecord (includes the stack)."""
    classified = classified or classify(error)
    metadata: dict[str, Any] = {
        "category": classified.category.value,
        "guidance": classified.guidance,
        "is_retryable": classified.is_retryable,
        "error_type": type(error).__name__,
        "stack": "".join(traceback.format_exception(type(error), error, error.__traceback__)),
    }
    if classified.retry_delay_seconds is not None:
        metadata["retry_delay_seconds"] = classified.retry_delay_seconds
    return metadata


def public_error_metadata(metadata: dict[str, Any]) -> dict[str, Any]:
    """Subset of the record metadata stored on the job row (no stack)."""
    return {k: v for k, v in metadata.items() if k != "stack"}
