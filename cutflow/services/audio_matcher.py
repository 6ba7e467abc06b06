"""Narration candidate selection for dubbed scenes.

Each dubbed scene gets several synthesized narration candidates of slightly
different lengths. The scene video is then sped up or slowed down to match
the chosen audio. Picking the candidate whose speed factor is closest to 1.0
keeps the visual speed change as small as possible.

Speed Factor:
    speed_factor = video_duration / audio_duration

Boundary Handling (speed filters only accept [0.5, 5.0]):
    factor < 0.5  the video is too short: loop it ``ceil(0.5 / factor)`` times
                  and use ``factor * loop_count`` as the adjusted factor
    factor > 5.0  the video is too long: clamp to 5.0 and trim the video to
                  ``audio_duration * 5.0`` before adjusting its speed
"""

import math
from collections.abc import Sequence
from dataclasses import dataclass

from cutflow.constants import MAX_SPEED_FACTOR, MIN_SPEED_FACTOR
from cutflow.schemas.step_payloads import AudioCandidate


@dataclass(frozen=True)
class BestMatch:
    candidate: AudioCandidate
    speed_factor: float
    adjusted_speed_factor: float
    loop_count: int = 1
    need_trim: bool = False
    trim_to_duration: float | None = None

    @property
    def diff(self) -> float:
        return abs(self.speed_factor - 1.0)


def select_best_audio_match(video_duration: float, candidates: Sequence[AudioCandidate]) -> BestMatch:
    """Pick the candidate whose speed factor is closest to 1.0.

    Ties keep the earliest candidate.

    Args:
        video_duration: Duration of the (trimmed) scene video in seconds.
        candidates: Synthesized narration candidates with probed durations.

    Returns:
        The best match with loop/trim adjustments applied.

    Raises:
        ValueError: If there are no candidates, none has a positive duration,
            or the video duration is not positive.

    Example:
        >>> select_best_audio_match(10.0, [AudioCandidate(version=1, path="a", duration=8.0),
        ...                                 AudioCandidate(version=2, path="b", duration=9.5)])
        BestMatch(candidate=...version=2..., speed_factor=1.0526..., ...)
    """
    if not candidates:
        raise ValueError("No audio candidates available")
    if video_duration <= 0:
        raise ValueError(f"Video duration must be > 0, got {video_duration}")

    valid = [c for c in candidates if c.duration is not None and c.duration > 0]
    if not valid:
        raise ValueError("All audio candidates have an invalid duration (zero or missing)")

    best = min(valid, key=lambda c: abs(video_duration / c.duration - 1.0))  # type: ignore[operator]
    audio_duration = float(best.duration)  # type: ignore[arg-type]
    factor = video_duration / audio_duration

    if factor < MIN_SPEED_FACTOR:
        loop_count = math.ceil(MIN_SPEED_FACTOR / factor)
        return BestMatch(best, factor, factor * loop_count, loop_count=loop_count)
    if factor > MAX_SPEED_FACTOR:
        return BestMatch(
            best,
            factor,
            MAX_SPEED_FACTOR,
            need_trim=True,
            trim_to_duration=round(audio_duration * MAX_SPEED_FACTOR, 3),
        )
    return BestMatch(best, factor, factor)
