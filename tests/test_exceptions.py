"""Tests for custom exception classes.

Tests cover:
- QueueFullError sentinel (P0)
- Media process errors: default messages, timeout and cancellation variants (P1)
- Aggregated errors: storyboard validation, scene fan-out (P1)
- ConfigurationError basics (P2)
"""

import pytest

from cutflow.exceptions import (
    QUEUE_FULL,
    ConfigurationError,
    JobAlreadyRunningError,
    JobCancelledError,
    JobNotFoundError,
    MediaCancelledError,
    MediaProcessError,
    MediaTimeoutError,
    QueueFullError,
    SceneProcessingError,
    StepWatchdogError,
    StoryboardValidationError,
)


class TestQueueFullError:
    """Tests for the admission rejection sentinel (P0)."""

    def test_p0_matches_by_type_and_string(self) -> None:
        """[P0] Test QueueFullError is recognisable by type, code and str.

        GIVEN: A rejection at capacity 2
        WHEN: Inspecting the error
        THEN: code and str() both equal QUEUE_FULL
        """
        # GIVEN/WHEN: Rejection at capacity
        error = QueueFullError(running=2, max_concurrent=2)

        # THEN: Sentinel is exposed both ways
        assert error.code == QUEUE_FULL
        assert str(error) == "QUEUE_FULL"
        assert (error.running, error.max_concurrent) == (2, 2)


class TestMediaErrors:
    """Tests for media subprocess errors (P1)."""

    def test_p1_default_message_includes_stderr_tail(self) -> None:
        """[P1] Test the default message carries operation, exit code and stderr tail."""
        stderr = "x" * 600 + "Invalid data found when processing input"

        error = MediaProcessError("split", 1, stderr, scene_id="scene-2")

        message = str(error)
        assert message.startswith("split failed with exit code 1: ")
        assert message.endswith("Invalid data found when processing input")
        assert len(message) < 600
        assert error.context == {"scene_id": "scene-2"}

    def test_p1_timeout_is_a_timeout_error(self) -> None:
        """[P1] Test MediaTimeoutError is both a media and a builtin timeout error."""
        error = MediaTimeoutError("merge_audio_video", 45.25)

        assert isinstance(error, MediaProcessError)
        assert isinstance(error, TimeoutError)
        assert error.exit_code is None
        assert str(error) == "merge_audio_video timed out after 45.2s"

    def test_p1_cancelled_message(self) -> None:
        error = MediaCancelledError("concat")

        assert str(error) == "concat was cancelled"
        assert error.operation == "concat"


class TestAggregatedErrors:
    """Tests for errors that summarise several failures (P1)."""

    def test_p1_storyboard_errors_are_numbered(self) -> None:
        """[P1] Test every validation error appears on its own numbered line."""
        error = StoryboardValidationError(["Scene 1: bad", "Scene 4: worse"])

        assert str(error) == (
            "Storyboard validation failed with 2 error(s):\n"
            "  1. Scene 1: bad\n"
            "  2. Scene 4: worse"
        )
        assert error.errors == ["Scene 1: bad", "Scene 4: worse"]

    def test_p1_scene_processing_error_names_first_failure(self) -> None:
        error = SceneProcessingError(
            {"scene-3": "merge_audio_video timed out after 60.0s", "scene-5": "boom"}, total=6
        )

        assert str(error) == "2 of 6 scenes failed; scene-3: merge_audio_video timed out after 60.0s"
        assert error.total == 6

    def test_p2_watchdog_message(self) -> None:
        error = StepWatchdogError("analyze_video", 3600)

        assert str(error) == "Sub-step analyze_video exceeded watchdog limit of 3600s"


class TestJobErrors:
    """Tests for job lookup and lifecycle errors (P2)."""

    def test_p2_job_errors_keep_the_id(self) -> None:
        assert JobNotFoundError("abc").job_id == "abc"
        assert str(JobAlreadyRunningError("abc")) == "Job abc is already running"

    def test_p2_cancelled_default_message(self) -> None:
        assert str(JobCancelledError()) == "Job stopped by user"


class TestConfigurationError:
    """Tests for ConfigurationError exception (P2 - Medium priority)."""

    def test_configuration_error_message_is_preserved(self) -> None:
        """[P2] Test ConfigurationError preserves error message.

        GIVEN: ConfigurationError with a specific message
        WHEN: Exception is caught
        THEN: Message can be retrieved from exception instance
        """
        # GIVEN: Error message
        error_message = "ANALYSIS_CLIENT is not configured"

        # WHEN: Raising and catching ConfigurationError
        with pytest.raises(ConfigurationError) as exc_info:
            raise ConfigurationError(error_message)

        # THEN: Message is preserved
        assert str(exc_info.value) == error_message

    def test_configuration_error_inherits_from_exception(self) -> None:
        assert issubclass(ConfigurationError, Exception)
