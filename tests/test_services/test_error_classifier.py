"""Tests for error classification.

Test Coverage:
- Type-based classification (timeouts, connection errors, httpx status codes,
  OSError, validation errors)
- Message pattern precedence: retryable → config → input → system
- Unknown fallback, system attempt cap
- Error metadata for step records and the public subset for jobs
"""

import httpx
import pytest

from cutflow.constants import SYSTEM_MAX_ATTEMPTS
from cutflow.exceptions import (
    ConfigurationError,
    JobCancelledError,
    MediaCancelledError,
    MediaProcessError,
    MediaTimeoutError,
    SceneProcessingError,
    StepWatchdogError,
    StoryboardValidationError,
)
from cutflow.services.error_classifier import (
    ErrorCategory,
    build_error_metadata,
    classify,
    is_never_retried,
    public_error_metadata,
)


def http_error(status_code: int) -> httpx.HTTPStatusError:
    request = httpx.Request("GET", "https://api.example.com/v1/analyze")
    response = httpx.Response(status_code, request=request)
    return httpx.HTTPStatusError(f"HTTP {status_code}", request=request, response=response)


class TestClassifyByType:
    """Test classification driven by the exception type."""

    @pytest.mark.parametrize(
        "error",
        [
            MediaTimeoutError("split", 120.0),
            TimeoutError(),
            ConnectionError("peer went away"),
            httpx.ConnectError("connect failed"),
        ],
    )
    def test_retryable_types(self, error):
        result = classify(error)
        assert result.category == ErrorCategory.RETRYABLE
        assert result.is_retryable is True
        assert result.retry_delay_seconds is not None

    @pytest.mark.parametrize(
        ("status_code", "category"),
        [
            (429, ErrorCategory.RETRYABLE),
            (503, ErrorCategory.RETRYABLE),
            (401, ErrorCategory.CONFIG),
            (403, ErrorCategory.CONFIG),
            (404, ErrorCategory.INPUT),
            (422, ErrorCategory.INPUT),
        ],
    )
    def test_http_status_codes(self, status_code, category):
        assert classify(http_error(status_code)).category == category

    def test_configuration_error(self):
        result = classify(ConfigurationError("ANALYSIS_CLIENT is not set"))
        assert result.category == ErrorCategory.CONFIG
        assert result.is_retryable is False

    def test_storyboard_validation_error_is_input(self):
        error = StoryboardValidationError(["Scene 1 (scene-1): zero-length scene at 3.000s"])
        assert classify(error).category == ErrorCategory.INPUT

    def test_os_error_is_system_and_capped(self):
        result = classify(PermissionError("read-only workspace"))
        assert result.category == ErrorCategory.SYSTEM
        assert result.is_retryable is True
        assert result.max_attempts == SYSTEM_MAX_ATTEMPTS


class TestClassifyByMessage:
    """Test message pattern matching and its precedence."""

    @pytest.mark.parametrize(
        ("message", "category"),
        [
            ("429 Too Many Requests", ErrorCategory.RETRYABLE),
            ("RESOURCE_EXHAUSTED: quota exceeded", ErrorCategory.RETRYABLE),
            ("upstream returned 502 Bad Gateway", ErrorCategory.RETRYABLE),
            ("Invalid API key provided", ErrorCategory.CONFIG),
            ("PERMISSION_DENIED on bucket", ErrorCategory.CONFIG),
            ("Invalid video file: /data/clip.mp4 does not exist", ErrorCategory.INPUT),
            ("Unsupported format: video/x-flv", ErrorCategory.INPUT),
            ("sqlite: database is locked", ErrorCategory.SYSTEM),
            ("something odd happened", ErrorCategory.UNKNOWN),
        ],
    )
    def test_patterns(self, message, category):
        assert classify(message).category == category
        assert classify(RuntimeError(message)).category == category

    def test_retryable_wins_over_later_categories(self):
        """Test that the first matching category in order wins."""
        assert classify("unauthorized: request timed out").category == ErrorCategory.RETRYABLE

    def test_unknown_is_retryable(self):
        result = classify(ValueError("weird"))
        assert result.category == ErrorCategory.UNKNOWN
        assert result.is_retryable is True

    def test_scene_failure_inherits_first_cause(self):
        """Test that the scene loop error is classified by its embedded cause."""
        error = SceneProcessingError(
            {"scene-3": "merge_audio_video timed out after 60.0s"}, total=4
        )
        assert str(error).startswith("1 of 4 scenes failed; scene-3")
        assert classify(error).category == ErrorCategory.RETRYABLE

    def test_media_process_error_uses_stderr_message(self):
        error = MediaProcessError("split", 1, "/data/clip.mp4: Invalid video stream")
        assert classify(error).category == ErrorCategory.INPUT


class TestNeverRetried:
    @pytest.mark.parametrize(
        "error",
        [JobCancelledError(), StepWatchdogError("analyze_video", 3600), MediaCancelledError("split")],
    )
    def test_terminal_errors(self, error):
        assert is_never_retried(error) is True

    def test_ordinary_errors(self):
        assert is_never_retried(MediaTimeoutError("split", 10)) is False


class TestErrorMetadata:
    """Test metadata stored on records and jobs."""

    def test_record_metadata_includes_stack(self):
        try:
            raise MediaTimeoutError("merge_audio_video", 60.0)
        except MediaTimeoutError as e:
            metadata = build_error_metadata(e)

        assert metadata["category"] == "retryable"
        assert metadata["is_retryable"] is True
        assert metadata["error_type"] == "MediaTimeoutError"
        assert "retry_delay_seconds" in metadata
        assert "MediaTimeoutError" in metadata["stack"]

    def test_public_metadata_drops_stack(self):
        metadata = build_error_metadata(ValueError("Invalid video file"))
        public = public_error_metadata(metadata)

        assert "stack" not in public
        assert public["category"] == "input"
        assert "retry_delay_seconds" not in public
