"""Subtitle segmentation and ASS file generation.

Narration text is split into short on-screen segments, each given a share
of the scene duration proportional to its character count, and rendered as
an ASS script sized to the video (PlayResX/PlayResY).

Segmentation:
    1. split on sentence punctuation (。！？.!?)
    2. segments longer than ``max_chars`` are split on clause punctuation
       (，,、；;：:)
    3. segments shorter than ``min_chars`` are merged into the previous one
"""

import re
from dataclasses import dataclass
from pathlib import Path

from cutflow.utils.timecode import format_ass_time

PRIMARY_DELIMITERS = re.compile(r"([。！？.!?])")
SECONDARY_DELIMITERS = re.compile(r"([，,、；;：:])")
_PUNCTUATION = re.compile(r"[。！？.!?，,、；;：:\"'“”‘’]")

DEFAULT_MAX_CHARS = 15
DEFAULT_MIN_CHARS = 4


@dataclass
class SubtitleSegment:
    text: str
    start_time: float
    end_time: float


def _split_by(text: str, delimiter: re.Pattern[str]) -> list[str]:
    """Split keeping each delimiter attached to the text before it."""
    result: list[str] = []
    for piece in delimiter.split(text):
        if not piece:
            continue
        if delimiter.fullmatch(piece) and result:
            result[-1] += piece
        else:
            result.append(piece)
    result = [seg for seg in result if seg.strip()]
    return result or [text]


def _merge_short(segments: list[str], min_chars: int) -> list[str]:
    merged: list[str] = []
    for seg in segments:
        if merged and len(seg) < min_chars:
            merged[-1] += seg
        else:
            merged.append(seg)
    return merged


def split_into_segments(
    text: str,
    duration: float,
    *,
    max_chars: int = DEFAULT_MAX_CHARS,
    min_chars: int = DEFAULT_MIN_CHARS,
) -> list[SubtitleSegment]:
    """Split narration into timed subtitle segments.

    Args:
        text: Narration text.
        duration: Seconds the narration spans.
        max_chars: Segments longer than this are split on clause punctuation.
        min_chars: Segments shorter than this are merged into the previous one.

    Returns:
        Consecutive segments covering [0, duration]; empty for blank text.

    Example:
        >>> [s.text for s in split_into_segments("Hello there. How are you?", 4.0)]
        ['Hello there.', ' How are you?']
    """
    if not text.strip():
        return []

    segments = _split_by(text, PRIMARY_DELIMITERS)
    segments = [
        part
        for seg in segments
        for part in (_split_by(seg, SECONDARY_DELIMITERS) if len(seg) > max_chars else [seg])
    ]
    segments = _merge_short(segments, min_chars)

    total_chars = sum(len(seg) for seg in segments)
    if total_chars == 0:
        return []

    timed: list[SubtitleSegment] = []
    current = 0.0
    for seg in segments:
        seg_duration = len(seg) / total_chars * duration
        timed.append(SubtitleSegment(text=seg, start_time=current, end_time=current + seg_duration))
        current += seg_duration
    return timed


def escape_ass_text(text: str) -> str:
    """Escape characters with meaning in ASS dialogue text."""
    return text.replace("\\", "\\\\").replace("{", "\\{").replace("}", "\\}").replace("\n", "\\N")


def clean_segment_text(text: str) -> str:
    return _PUNCTUATION.sub(" ", text).strip()


def wrap_text(text: str, max_chars_per_line: int) -> str:
    """Insert ASS line breaks (``\\N``) every ``max_chars_per_line`` characters."""
    if max_chars_per_line <= 0 or len(text) <= max_chars_per_line:
        return text
    lines = [text[i : i + max_chars_per_line] for i in range(0, len(text), max_chars_per_line)]
    return "\\N".join(lines)


def build_ass_header(width: int, height: int, font_name: str = "Noto Sans CJK SC") -> str:
    """Build the ASS header with a single bottom-centred style scaled to the video."""
    font_size = max(16, round(min(width, height) * 0.055))
    outline = max(1, round(font_size / 12))
    margin_h = round(width * 0.06)
    margin_v = round(height * 0.08)
    return (
        "[Script Info]\n"
        "ScriptType: v4.00+\n"
        f"PlayResX: {width}\n"
        f"PlayResY: {height}\n"
        "ScaledBorderAndShadow: yes\n"
        "WrapStyle: 2\n"
        "\n"
        "[V4+ Styles]\n"
        "Format: Name, Fontname, Fontsize, PrimaryColour, SecondaryColour, OutlineColour, "
        "BackColour, Bold, Italic, Underline, StrikeOut, ScaleX, ScaleY, Spacing, Angle, "
        "BorderStyle, Outline, Shadow, Alignment, MarginL, MarginR, MarginV, Encoding\n"
        f"Style: Default,{font_name},{font_size},&H00FFFFFF,&H00FFFFFF,&H00000000,&H80000000,"
        f"0,0,0,0,100,100,0,0,1,{outline},1,2,{margin_h},{margin_h},{margin_v},1\n"
        "\n"
        "[Events]\n"
        "Format: Layer, Start, End, Style, Name, MarginL, MarginR, MarginV, Effect, Text\n"
    )


def generate_segmented_ass(
    segments: list[SubtitleSegment], width: int, height: int, max_chars_per_line: int = 16
) -> str:
    """Render timed segments as a complete ASS script (one Dialogue per segment)."""
    dialogues = []
    for seg in segments:
        text = wrap_text(escape_ass_text(clean_segment_text(seg.text)), max_chars_per_line)
        dialogues.append(
            f"Dialogue: 0,{format_ass_time(seg.start_time)},{format_ass_time(seg.end_time)},"
            f"Default,,0,0,0,,{text}"
        )
    return build_ass_header(width, height) + "".join(f"{line}\n" for line in dialogues)


def write_subtitle_file(content: str, output_path: Path | str) -> Path:
    path = Path(output_path)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(content, encoding="utf-8")
    return path
