"""Per-operation timeout calculation for media subprocesses.

Each invocation of the media binary is individually timeboxed. The timeout
scales with the input duration and the relative cost of the operation:
re-encoding operations are slower than stream-copy ones.

Formula:
    timeout = duration × multiplier[operation] × 2.5, clamped to [60 s, 2 h]
"""

from typing import Literal

MediaOperation = Literal["split", "speed", "merge", "concat", "metadata"]

OPERATION_MULTIPLIERS: dict[str, float] = {
    "split": 0.15,  # fast preset re-encode
    "speed": 0.25,  # medium preset re-encode
    "merge": 0.05,  # video stream copy
    "concat": 0.1,  # demuxer copy
    "metadata": 0.02,  # ffprobe
}

SAFETY_MULTIPLIER = 2.5
BASE_TIMEOUT_SECONDS = 60.0
MAX_TIMEOUT_SECONDS = 2 * 60 * 60.0

# Average bitrate assumed when only the file size is known (5 Mbps)
AVERAGE_BITRATE_BPS = 5 * 1024 * 1024


def calculate_timeout(duration_seconds: float, operation: MediaOperation) -> float:
    """Calculate a timeout in seconds for one media operation.

    Args:
        duration_seconds: Duration of the media being processed.
        operation: Operation kind, selects the cost multiplier.

    Returns:
        Timeout in seconds, never below 60 s or above 2 h.

    Raises:
        KeyError: If the operation is unknown.

    Example:
        >>> calculate_timeout(600, "split")
        225.0
    """
    multiplier = OPERATION_MULTIPLIERS[operation]
    estimated = max(duration_seconds, 0.0) * multiplier * SAFETY_MULTIPLIER
    return min(MAX_TIMEOUT_SECONDS, max(BASE_TIMEOUT_SECONDS, estimated))


def estimate_duration_from_size(file_size_bytes: int) -> float:
    """Estimate media duration in seconds from its size at 5 Mbps."""
    return (file_size_bytes * 8) / AVERAGE_BITRATE_BPS


def calculate_timeout_from_size(file_size_bytes: int, operation: MediaOperation) -> float:
    return calculate_timeout(estimate_duration_from_size(file_size_bytes), operation)
