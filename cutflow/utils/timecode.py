"""Timestamp parsing and formatting.

Analysis models return scene bounds in loosely formatted strings. Everything
is parsed to float seconds on the way in and formatted as ``HH:MM:SS.mmm``
on the way out.

Accepted inputs:
    HH:MM:SS.mmm, HH:MM:SS, MM:SS.mmm, MM:SS, SS.mmm, plain seconds,
    MM:SS:mmm (milliseconds written after a colon), and a comma as the
    decimal separator ("01:30,500").
"""

import math
import re

_NUMBER_PATTERN = re.compile(r"^\d+(\.\d+)?$")
_CLOCK_PATTERN = re.compile(r"^\d{1,3}(:\d{1,3}){0,2}(\.\d+)?$")


def parse_timestamp(value: str | int | float) -> float:
    """Parse a timestamp into seconds.

    Args:
        value: Timestamp string or a non-negative number of seconds.

    Returns:
        Seconds as float.

    Raises:
        ValueError: If the value cannot be parsed or is negative.

    Example:
        >>> parse_timestamp("00:01:23.456")
        83.456
        >>> parse_timestamp("00:06:500")
        6.5
    """
    if isinstance(value, bool):
        raise ValueError(f"Invalid timestamp: {value!r}")
    if isinstance(value, (int, float)):
        if not math.isfinite(value) or value < 0:
            raise ValueError(f"Invalid timestamp number: {value}")
        return float(value)

    normalized = value.replace(",", ".").strip()
    if not normalized:
        raise ValueError("Invalid timestamp: empty string")

    if _NUMBER_PATTERN.match(normalized):
        return float(normalized)

    if not _CLOCK_PATTERN.match(normalized):
        raise ValueError(f"Invalid timestamp format: {value}")

    time_part, _, fraction = normalized.partition(".")
    raw_segments = time_part.split(":")
    segments = [int(s) for s in raw_segments]

    hours = minutes = seconds = 0
    extra_ms = 0
    if len(segments) == 3:
        # Third segment of 3 digits or >= 60 is milliseconds after a colon
        if segments[2] >= 60 or len(raw_segments[2]) == 3:
            minutes, seconds, extra_ms = segments
        else:
            hours, minutes, seconds = segments
    elif len(segments) == 2:
        minutes, seconds = segments
    else:
        seconds = segments[0]

    if minutes >= 60 and hours > 0:
        raise ValueError(f"Invalid time components: {value}")
    if seconds >= 60:
        raise ValueError(f"Invalid time components: {value}")

    total = hours * 3600 + minutes * 60 + seconds
    if extra_ms:
        total += extra_ms / 1000
    elif fraction:
        total += int(fraction.ljust(3, "0")[:3]) / 1000
    return round(total, 3)


def format_timestamp(seconds: float) -> str:
    """Format seconds as ``HH:MM:SS.mmm``.

    Raises:
        ValueError: If seconds is negative or not finite.
    """
    if not math.isfinite(seconds) or seconds < 0:
        raise ValueError(f"Invalid duration: {seconds}")
    total_ms = int(round(seconds * 1000))
    hours, rem = divmod(total_ms, 3_600_000)
    minutes, rem = divmod(rem, 60_000)
    secs, ms = divmod(rem, 1000)
    return f"{hours:02d}:{minutes:02d}:{secs:02d}.{ms:03d}"


def format_ass_time(seconds: float) -> str:
    """Format seconds for ASS subtitles: ``H:MM:SS.cc`` (centiseconds)."""
    total_cs = int(round(max(seconds, 0.0) * 100))
    hours, rem = divmod(total_cs, 360_000)
    minutes, rem = divmod(rem, 6000)
    secs, cs = divmod(rem, 100)
    return f"{hours}:{minutes:02d}:{secs:02d}.{cs:02d}"


def normalize_timestamp(value: str | int | float) -> str:
    """Parse any accepted timestamp and return the standard format."""
    return format_timestamp(parse_timestamp(value))
