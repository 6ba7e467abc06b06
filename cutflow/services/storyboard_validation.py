"""Storyboard validation: repair, bounds checking and filtering.

The analysis model returns storyboards whose timestamps are loosely
formatted and occasionally wrong. Validation turns them into
``ValidatedScene`` objects in four passes:

    1. Scale repair: when every scene ends past the source duration and all
       timestamps look like ``HH:MM:00.mmm``, they are reinterpreted as
       ``00:HH:MM.mmm`` (a common model mistake on sub-hour videos).
    2. Per-scene repair: swap reversed start/end, recompute
       ``duration_seconds`` when it is off by more than 0.1 s.
    3. Per-scene checks: unparseable timestamps, unknown sources and
       zero-length scenes are fatal; scenes starting before 0 or ending past
       the source duration, and dubbed scenes without a narration script, are
       skipped with a warning.
    4. Count checks: fewer valid scenes than requested, or a different number
       of original-audio scenes than configured, only add warnings.

Fatal errors are collected for all scenes and raised together as one
``StoryboardValidationError``.
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field

from cutflow.constants import DURATION_TOLERANCE_SECONDS
from cutflow.exceptions import StoryboardValidationError
from cutflow.schemas.job import Storyboard, ValidatedScene
from cutflow.utils.logging import get_logger
from cutflow.utils.timecode import parse_timestamp

log = get_logger(__name__)

_SOURCE_PATTERN = re.compile(r"^video-(\d+)$", re.IGNORECASE)
_SCALE_ERROR_PATTERN = re.compile(r"^(\d{2}):(\d{2}):00\.(\d{3})$")
_SCALE_REPAIR_MAX_DURATION = 3600.0


@dataclass
class StoryboardValidationResult:
    scenes: list[ValidatedScene] = field(default_factory=list)
    warnings: list[str] = field(default_factory=list)

    @property
    def valid_scenes(self) -> list[ValidatedScene]:
        return [s for s in self.scenes if not s.is_skipped]

    @property
    def skipped_scenes(self) -> list[ValidatedScene]:
        return [s for s in self.scenes if s.is_skipped]

    @property
    def original_audio_count(self) -> int:
        return sum(1 for s in self.valid_scenes if s.use_original_audio)


def _parse_bound(value: str | float) -> float:
    """Parse a scene bound, keeping the sign of negative values."""
    if isinstance(value, str) and value.strip().startswith("-"):
        return -parse_timestamp(value.strip()[1:])
    if isinstance(value, (int, float)) and not isinstance(value, bool) and value < 0:
        return float(value)
    return parse_timestamp(value)


def _rescale(value: str | float) -> str | float:
    if isinstance(value, str):
        match = _SCALE_ERROR_PATTERN.match(value.strip())
        if match:
            hh, mm, ms = match.groups()
            return f"00:{hh}:{mm}.{ms}"
    return value


def _is_scale_error(value: str | float) -> bool:
    if not isinstance(value, str):
        return False
    match = _SCALE_ERROR_PATTERN.match(value.strip())
    return bool(match) and int(match.group(1)) < 60


def repair_timestamp_scale(
    storyboards: Sequence[Storyboard], source_durations: Sequence[float]
) -> list[Storyboard]:
    """Reinterpret ``HH:MM:00.mmm`` timestamps as ``00:HH:MM.mmm`` when safe.

    The repair only applies when all of these hold: the longest source is
    shorter than an hour, every scene ends past it, every timestamp matches
    the pattern, and after the repair every scene fits.
    """
    if not storyboards or not source_durations:
        return list(storyboards)
    max_duration = max(source_durations)
    if max_duration >= _SCALE_REPAIR_MAX_DURATION:
        return list(storyboards)

    try:
        all_out_of_range = all(_parse_bound(s.end_time) > max_duration for s in storyboards)
    except ValueError:
        return list(storyboards)
    if not all_out_of_range:
        return list(storyboards)
    if not all(_is_scale_error(s.start_time) and _is_scale_error(s.end_time) for s in storyboards):
        return list(storyboards)

    fixed = [
        s.model_copy(update={"start_time": _rescale(s.start_time), "end_time": _rescale(s.end_time)})
        for s in storyboards
    ]
    if all(_parse_bound(s.end_time) <= max_duration for s in fixed):
        log.warning(
            "storyboard_timestamp_scale_repaired",
            scene_count=len(fixed),
            original_sample=storyboards[0].start_time,
            fixed_sample=fixed[0].start_time,
            video_duration=max_duration,
        )
        return fixed
    return list(storyboards)


def resolve_source_index(source: str | None, video_count: int) -> int:
    """Map ``video-N`` (1-based) to a 0-based input index.

    Single-video jobs may omit the source.

    Raises:
        ValueError: If the reference is missing (multi-video) or out of range.
    """
    if source is None or not source.strip():
        if video_count == 1:
            return 0
        raise ValueError("missing source_video reference")
    match = _SOURCE_PATTERN.match(source.strip())
    if not match:
        raise ValueError(f"unknown source video {source!r}")
    index = int(match.group(1)) - 1
    if index < 0 or index >= video_count:
        raise ValueError(f"unknown source video {source!r} (job has {video_count} videos)")
    return index


def validate_storyboards(
    storyboards: Sequence[Storyboard],
    source_durations: Sequence[float],
    *,
    expected_count: int | None = None,
    expected_original_audio_count: int = 0,
) -> StoryboardValidationResult:
    """Validate and repair storyboards against the source video durations.

    Args:
        storyboards: Raw storyboards from the analysis client.
        source_durations: Duration in seconds of each input video, by index.
        expected_count: Requested scene count, if any.
        expected_original_audio_count: Configured number of original-audio scenes.

    Returns:
        All scenes (valid and skipped) in storyboard order, plus warnings.

    Raises:
        StoryboardValidationError: On any fatal error, or when no scene is valid.
    """
    if not storyboards:
        raise StoryboardValidationError(["No storyboards returned by the analysis"])

    storyboards = repair_timestamp_scale(storyboards, source_durations)
    result = StoryboardValidationResult()
    errors: list[str] = []

    for position, board in enumerate(storyboards, start=1):
        scene_index = board.scene_index or position
        label = f"Scene {position} (scene-{scene_index})"

        try:
            start = _parse_bound(board.start_time)
            end = _parse_bound(board.end_time)
        except ValueError:
            errors.append(
                f"{label}: unparseable timestamps (start: {board.start_time}, end: {board.end_time})"
            )
            continue

        try:
            source_index = resolve_source_index(board.source_video, len(source_durations))
        except ValueError as e:
            errors.append(f"{label}: {e}")
            continue

        if start > end:
            start, end = end, start
            result.warnings.append(f"{label}: start/end were reversed and have been swapped")
        if start == end:
            errors.append(f"{label}: zero-length scene at {start:.3f}s")
            continue

        duration = round(end - start, 3)
        if (
            board.duration_seconds is not None
            and abs(board.duration_seconds - duration) > DURATION_TOLERANCE_SECONDS
        ):
            result.warnings.append(
                f"{label}: duration corrected ({board.duration_seconds}s -> {duration}s)"
            )

        skip_reason = None
        source_duration = source_durations[source_index]
        if start < 0:
            skip_reason = f"{label}: start time is negative"
        elif end > source_duration:
            skip_reason = (
                f"{label}: end time {end:.3f}s exceeds source duration {source_duration:.3f}s"
            )
        elif not board.use_original_audio and not (board.narration and board.narration.strip()):
            skip_reason = f"{label}: missing narration script"

        if skip_reason:
            result.warnings.append(f"{skip_reason}, skipped")

        result.scenes.append(
            ValidatedScene(
                scene_index=scene_index,
                source_video_index=source_index,
                start=start,
                end=end,
                duration_seconds=duration,
                description=board.description,
                use_original_audio=board.use_original_audio,
                narration=board.narration,
                is_skipped=skip_reason is not None,
                skip_reason=skip_reason,
            )
        )

    if errors:
        raise StoryboardValidationError(errors)

    seen: set[int] = set()
    for scene in result.scenes:
        if scene.scene_index in seen:
            raise StoryboardValidationError([f"duplicate scene index {scene.scene_index}"])
        seen.add(scene.scene_index)

    valid = result.valid_scenes
    if not valid:
        raise StoryboardValidationError(["All scenes are invalid or skipped"])

    if expected_count and len(valid) < expected_count:
        result.warnings.append(
            f"Valid scene count ({len(valid)}) is below the requested {expected_count}; "
            f"{len(result.skipped_scenes)} scene(s) skipped"
        )
    if result.original_audio_count != expected_original_audio_count:
        result.warnings.append(
            f"Original-audio scene count mismatch: expected {expected_original_audio_count}, "
            f"got {result.original_audio_count}"
        )

    log.info(
        "storyboards_validated",
        valid=len(valid),
        skipped=len(result.skipped_scenes),
        original_audio=result.original_audio_count,
        warnings=len(result.warnings),
    )
    return result
