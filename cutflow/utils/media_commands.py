"""Pure argument-vector builders for the media binary.

Every logical media operation is a builder returning the ffmpeg argument list
(without the binary and without ``-y``, which the executor adds), plus the
parsers that turn ffprobe/ffmpeg output into typed values. Nothing in this
module spawns processes, which keeps the encoding rules unit-testable.

Encoding Rules:
- split normalises every scene to the target resolution (scale + pad) at
  30 fps so scene outputs can be concatenated with stream copy
- merge takes its output length from the narration audio, not the shortest
  stream, so narration is never truncated
- speed adjustment is bounded to [0.5, 5.0]; the audio tempo chain is split
  into atempo factors within [0.5, 2.0]
"""

import re
from collections.abc import Sequence
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cutflow.constants import (
    ATEMPO_MAX,
    ATEMPO_MIN,
    AUDIO_BITRATE,
    AUDIO_CHANNELS,
    AUDIO_CODEC,
    AUDIO_SAMPLE_RATE,
    BGM_AUDIO_BITRATE,
    BGM_VOLUME,
    JUMPCUT_MIN_KEEP_SECONDS,
    JUMPCUT_MIN_TRIM_SECONDS,
    JUMPCUT_SCAN_RANGE_SECONDS,
    JUMPCUT_SCENE_THRESHOLD,
    MAX_SPEED_FACTOR,
    MIN_SPEED_FACTOR,
    REENCODE_PRESET,
    SPLIT_PRESET,
    TARGET_FPS,
)

_GCS_CONSOLE_RE = re.compile(r"https://storage\.cloud\.google\.com/([^/?]+)/(.+)")
_SCENE_SCORE_RE = re.compile(r"lavfi\.scd\.score:\s*([\d.]+),\s*lavfi\.scd\.time:\s*([\d.]+)")


def _fmt(seconds: float) -> str:
    return f"{seconds:.3f}"


def _audio_encoding(bitrate: str = AUDIO_BITRATE) -> list[str]:
    return [
        "-c:a",
        AUDIO_CODEC,
        "-b:a",
        bitrate,
        "-ar",
        str(AUDIO_SAMPLE_RATE),
        "-ac",
        str(AUDIO_CHANNELS),
    ]


def _video_encoding(preset: tuple[str, int]) -> list[str]:
    name, crf = preset
    return ["-c:v", "libx264", "-preset", name, "-crf", str(crf)]


# ---------------------------------------------------------------------------
# URL handling
# ---------------------------------------------------------------------------


def convert_media_url(url: str) -> str:
    """Convert a media reference into something ffmpeg/ffprobe can open.

    - ``file:///path`` → ``/path``
    - ``gs://bucket/key`` → ``https://storage.googleapis.com/bucket/key``
    - ``https://storage.cloud.google.com/bucket/key?x`` → storage.googleapis.com
      without the query string (the console host redirects to a login page)
    """
    if url.startswith("file://"):
        return url[len("file://") :]
    if url.startswith("gs://"):
        return f"https://storage.googleapis.com/{url[len('gs://'):]}"
    match = _GCS_CONSOLE_RE.match(url)
    if match:
        bucket, key = match.groups()
        return f"https://storage.googleapis.com/{bucket}/{key.split('?')[0]}"
    return url


def is_remote_url(path: str) -> bool:
    """Return True for http(s) and gs URLs; ``file://`` counts as local."""
    if path.startswith("file://"):
        return False
    return path.startswith(("http://", "https://", "gs://"))


# ---------------------------------------------------------------------------
# Builders
# ---------------------------------------------------------------------------


def build_split_args(
    input_path: str,
    start_seconds: float,
    duration_seconds: float,
    output_path: str,
    *,
    target_width: int,
    target_height: int,
    has_audio: bool = True,
    fps: int = TARGET_FPS,
) -> list[str]:
    """Build arguments cutting one scene out of a source video.

    The output is normalised: scaled to fit and padded with black bars to
    ``target_width``x``target_height``, timestamps reset, fixed frame rate.

    Raises:
        ValueError: If the duration is not positive or the start is negative.
    """
    if duration_seconds <= 0:
        raise ValueError(f"Split duration must be > 0, got {duration_seconds}")
    if start_seconds < 0:
        raise ValueError(f"Split start must be >= 0, got {start_seconds}")

    video_filter = ",".join(
        [
            f"scale={target_width}:{target_height}:force_original_aspect_ratio=decrease",
            f"pad={target_width}:{target_height}:(ow-iw)/2:(oh-ih)/2:black",
            "setpts=PTS-STARTPTS",
        ]
    )
    args = [
        "-ss",
        _fmt(start_seconds),
        "-i",
        convert_media_url(input_path),
        "-t",
        _fmt(duration_seconds),
        "-vf",
        video_filter,
        "-r",
        str(fps),
        *_video_encoding(SPLIT_PRESET),
    ]
    if has_audio:
        args += ["-af", "asetpts=PTS-STARTPTS", *_audio_encoding()]
    else:
        args.append("-an")
    args.append(output_path)
    return args


def build_atempo_filter(speed_factor: float) -> str:
    """Build an atempo chain whose product equals ``speed_factor``.

    Each atempo stage only accepts [0.5, 2.0], so larger changes are chained.

    Example:
        >>> build_atempo_filter(3.0)
        'atempo=2.0,atempo=1.5000'
        >>> build_atempo_filter(1.0)
        'anull'
    """
    if abs(speed_factor - 1.0) < 0.001:
        return "anull"

    filters: list[str] = []
    remaining = speed_factor
    if speed_factor > 1:
        while remaining > ATEMPO_MAX:
            filters.append(f"atempo={ATEMPO_MAX}")
            remaining /= ATEMPO_MAX
        if remaining > 1.0001:
            filters.append(f"atempo={remaining:.4f}")
    else:
        while remaining < ATEMPO_MIN:
            filters.append(f"atempo={ATEMPO_MIN}")
            remaining /= ATEMPO_MIN
        if remaining < 0.9999:
            filters.append(f"atempo={remaining:.4f}")
    return ",".join(filters) if filters else "anull"


def build_speed_args(
    input_path: str,
    output_path: str,
    speed_factor: float,
    *,
    include_audio: bool = False,
) -> list[str]:
    """Build arguments changing playback speed.

    Dubbed scenes drop their original audio (``include_audio=False``) because
    the narration is merged afterwards.

    Raises:
        ValueError: If speed_factor is outside [0.5, 5.0].
    """
    if not MIN_SPEED_FACTOR <= speed_factor <= MAX_SPEED_FACTOR:
        raise ValueError(
            f"Speed factor {speed_factor} outside [{MIN_SPEED_FACTOR}, {MAX_SPEED_FACTOR}]"
        )

    video_filter = f"setpts=PTS/{speed_factor}"
    args = ["-i", convert_media_url(input_path)]
    if include_audio:
        args += [
            "-filter_complex",
            f"[0:v]{video_filter}[v];[0:a]{build_atempo_filter(speed_factor)}[a]",
            "-map",
            "[v]",
            "-map",
            "[a]",
            "-r",
            str(TARGET_FPS),
            *_video_encoding(REENCODE_PRESET),
            *_audio_encoding(),
        ]
    else:
        args += [
            "-an",
            "-vf",
            video_filter,
            "-r",
            str(TARGET_FPS),
            *_video_encoding(REENCODE_PRESET),
        ]
    args.append(output_path)
    return args


def build_merge_args(
    video_path: str,
    audio_path: str,
    output_path: str,
    *,
    audio_duration: float | None = None,
    volume: float | None = None,
    copy_video: bool = True,
) -> list[str]:
    """Build arguments muxing narration audio onto a video stream.

    Mono narration is upmixed to stereo. The output length follows the
    narration (``-t audio_duration``); ``-shortest`` is only used when the
    audio duration is unknown.
    """
    args = [
        "-i",
        convert_media_url(video_path),
        "-i",
        convert_media_url(audio_path),
        "-map",
        "0:v:0",
        "-map",
        "1:a:0",
    ]
    args += ["-c:v", "copy"] if copy_video else _video_encoding(REENCODE_PRESET)

    audio_filters = ["pan=stereo|c0=c0|c1=c0"]
    if volume is not None and volume != 1.0:
        audio_filters.append(f"volume={volume:.2f}")
    args += ["-af", ",".join(audio_filters), *_audio_encoding()]

    if audio_duration and audio_duration > 0:
        args += ["-t", _fmt(audio_duration)]
    else:
        args.append("-shortest")
    args.append(output_path)
    return args


def build_reencode_args(input_path: str, output_path: str, *, copy_audio: bool = False) -> list[str]:
    """Build arguments re-encoding a scene that keeps its original audio.

    Forces 30 fps and the dubbed-scene encoding so both kinds concatenate.
    """
    args = [
        "-i",
        convert_media_url(input_path),
        *_video_encoding(REENCODE_PRESET),
        "-r",
        str(TARGET_FPS),
    ]
    args += ["-c:a", "copy"] if copy_audio else _audio_encoding()
    args.append(output_path)
    return args


def escape_concat_path(path: str) -> str:
    """Quote a path for an ffmpeg concat list (single quotes escaped)."""
    return "'" + path.replace("'", "'\\''") + "'"


def build_concat_list(inputs: Sequence[str]) -> str:
    """Render the concat demuxer list file content."""
    return "".join(f"file {escape_concat_path(str(Path(p).resolve()))}\n" for p in inputs)


def build_concat_demuxer_args(list_path: str, output_path: str) -> list[str]:
    """Build stream-copy concatenation over a demuxer list file."""
    return ["-f", "concat", "-safe", "0", "-i", list_path, "-c:v", "copy", "-c:a", "copy", output_path]


def build_concat_filter_args(inputs: Sequence[str], output_path: str) -> list[str]:
    """Build re-encoding concatenation for inputs with mismatched streams."""
    args: list[str] = []
    for item in inputs:
        args += ["-i", convert_media_url(item)]
    streams = "".join(f"[{i}:v][{i}:a]" for i in range(len(inputs)))
    args += [
        "-filter_complex",
        f"{streams}concat=n={len(inputs)}:v=1:a=1[v][a]",
        "-map",
        "[v]",
        "-map",
        "[a]",
        *_video_encoding(REENCODE_PRESET),
        *_audio_encoding(),
        output_path,
    ]
    return args


def build_mix_bgm_args(
    video_path: str,
    bgm_path: str,
    output_path: str,
    *,
    volume: float = BGM_VOLUME,
    loop_bgm: bool = True,
) -> list[str]:
    """Build arguments mixing background music under the video's audio.

    The music loops indefinitely and the mix ends with the video
    (``amix duration=first``); the video stream is copied.
    """
    args = ["-i", convert_media_url(video_path)]
    if loop_bgm:
        args += ["-stream_loop", "-1"]
    args += ["-i", convert_media_url(bgm_path)]
    filter_complex = ";".join(
        [
            f"[1:a]volume={volume:.2f}[bgm]",
            "[0:a][bgm]amix=inputs=2:duration=first:dropout_transition=2[aout]",
        ]
    )
    args += [
        "-filter_complex",
        filter_complex,
        "-map",
        "0:v:0",
        "-map",
        "[aout]",
        "-c:v",
        "copy",
        *_audio_encoding(BGM_AUDIO_BITRATE),
        output_path,
    ]
    return args


def build_loop_args(
    input_path: str, loop_count: int, target_duration: float, output_path: str
) -> list[str]:
    """Build arguments looping a clip ``loop_count`` times, cut to the target.

    Raises:
        ValueError: If loop_count < 1 or target_duration <= 0.
    """
    if loop_count < 1:
        raise ValueError(f"Loop count must be >= 1, got {loop_count}")
    if target_duration <= 0:
        raise ValueError(f"Target duration must be > 0, got {target_duration}")
    return [
        "-stream_loop",
        str(loop_count - 1),
        "-i",
        input_path,
        "-t",
        _fmt(target_duration),
        "-c",
        "copy",
        output_path,
    ]


def build_trim_args(
    input_path: str, output_path: str, start_seconds: float, duration_seconds: float
) -> list[str]:
    """Build arguments keeping ``duration_seconds`` from ``start_seconds``."""
    return [
        "-ss",
        _fmt(start_seconds),
        "-i",
        input_path,
        "-t",
        _fmt(duration_seconds),
        *_video_encoding(SPLIT_PRESET),
        "-c:a",
        AUDIO_CODEC,
        "-b:a",
        AUDIO_BITRATE,
        "-vf",
        "setpts=PTS-STARTPTS",
        "-af",
        "asetpts=PTS-STARTPTS",
        output_path,
    ]


def build_scene_detect_args(input_path: str, threshold: float = JUMPCUT_SCENE_THRESHOLD) -> list[str]:
    """Build a decode-only pass printing scene-change scores to stderr."""
    return ["-i", input_path, "-vf", f"scdet=s=1:t={threshold:g}", "-f", "null", "-"]


def escape_filter_path(path: str) -> str:
    """Escape a path for use inside an ffmpeg filter argument."""
    return (
        path.replace("\\", "/")
        .replace(":", "\\:")
        .replace("'", "\\'")
        .replace("[", "\\[")
        .replace("]", "\\]")
    )


def build_burn_subtitle_args(
    video_path: str, subtitle_path: str, output_path: str, fonts_dir: str | None = None
) -> list[str]:
    """Build arguments burning an ASS subtitle file into the video."""
    ass_filter = f"ass={escape_filter_path(subtitle_path)}"
    if fonts_dir:
        ass_filter += f":fontsdir={escape_filter_path(fonts_dir)}"
    return [
        "-i",
        video_path,
        "-vf",
        ass_filter,
        *_video_encoding(REENCODE_PRESET),
        "-c:a",
        "copy",
        output_path,
    ]


# ---------------------------------------------------------------------------
# Parsers
# ---------------------------------------------------------------------------


@dataclass
class VideoStreamInfo:
    codec: str | None
    width: int
    height: int
    fps: float
    duration: float | None = None


@dataclass
class AudioStreamInfo:
    codec: str | None
    sample_rate: int
    channels: int
    duration: float | None = None


@dataclass
class MediaMetadata:
    """Typed view over ffprobe JSON output."""

    duration: float
    format_name: str | None = None
    size: int | None = None
    bitrate: int | None = None
    video: VideoStreamInfo | None = None
    audio: AudioStreamInfo | None = None

    @property
    def has_audio(self) -> bool:
        return self.audio is not None


def parse_fps(value: str | None) -> float:
    """Parse an ffprobe frame rate ("30000/1001" → 29.97)."""
    if not value:
        return 0.0
    if "/" in value:
        numerator, _, denominator = value.partition("/")
        try:
            num, den = float(numerator), float(denominator)
        except ValueError:
            return 0.0
        if den == 0:
            return 0.0
        return round(num / den, 2)
    try:
        return float(value)
    except ValueError:
        return 0.0


def _to_float(value: Any) -> float | None:
    try:
        return float(value)
    except (TypeError, ValueError):
        return None


def _to_int(value: Any) -> int | None:
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_probe_output(raw: dict[str, Any]) -> MediaMetadata:
    """Convert ffprobe JSON into MediaMetadata.

    The first video and first audio streams are used; missing numeric values
    default to 0 / None rather than failing.
    """
    fmt = raw.get("format") or {}
    streams = raw.get("streams") or []

    video = None
    video_stream = next((s for s in streams if s.get("codec_type") == "video"), None)
    if video_stream is not None:
        video = VideoStreamInfo(
            codec=video_stream.get("codec_name"),
            width=int(video_stream.get("width") or 0),
            height=int(video_stream.get("height") or 0),
            fps=parse_fps(video_stream.get("r_frame_rate") or video_stream.get("avg_frame_rate")),
            duration=_to_float(video_stream.get("duration")),
        )

    audio = None
    audio_stream = next((s for s in streams if s.get("codec_type") == "audio"), None)
    if audio_stream is not None:
        audio = AudioStreamInfo(
            codec=audio_stream.get("codec_name"),
            sample_rate=_to_int(audio_stream.get("sample_rate")) or 0,
            channels=int(audio_stream.get("channels") or 0),
            duration=_to_float(audio_stream.get("duration")),
        )

    return MediaMetadata(
        duration=_to_float(fmt.get("duration")) or 0.0,
        format_name=fmt.get("format_name"),
        size=_to_int(fmt.get("size")),
        bitrate=_to_int(fmt.get("bit_rate")),
        video=video,
        audio=audio,
    )


@dataclass
class SceneChange:
    time: float
    score: float


@dataclass
class TrimAnalysis:
    """Suggested trim of jump cuts at the edges of a scene clip."""

    original_duration: float
    trim_start: float
    trim_end: float
    new_duration: float
    needs_trim: bool
    scene_changes: list[SceneChange] = field(default_factory=list)


def parse_scene_changes(stderr: str) -> list[SceneChange]:
    """Extract ``scdet`` scene changes from ffmpeg stderr, in time order."""
    return [
        SceneChange(time=float(t), score=float(score))
        for score, t in _SCENE_SCORE_RE.findall(stderr)
    ]


def analyze_trim_points(
    duration: float,
    changes: list[SceneChange],
    *,
    scan_range: float = JUMPCUT_SCAN_RANGE_SECONDS,
    min_duration: float = JUMPCUT_MIN_KEEP_SECONDS,
) -> TrimAnalysis:
    """Decide how much to trim from each end of a clip.

    Analysis models often place scene bounds slightly off, so the clip begins
    or ends with a few frames of the neighbouring shot. A scene change within
    ``scan_range`` seconds of either edge marks the cut to remove.

    Args:
        duration: Clip duration in seconds.
        changes: Detected scene changes (ascending time).
        scan_range: Seconds from each edge that are scanned.
        min_duration: Minimum seconds that must remain.

    Returns:
        TrimAnalysis; ``needs_trim`` is False when both trims are within 50 ms.
    """
    trim_start = 0.0
    trim_end = 0.0

    start_changes = [c for c in changes if c.time <= scan_range]
    if start_changes:
        trim_start = start_changes[-1].time

    end_threshold = duration - scan_range
    end_changes = [c for c in changes if c.time >= end_threshold]
    if end_changes:
        trim_end = duration - end_changes[0].time

    new_duration = duration - trim_start - trim_end
    if new_duration < min_duration:
        half_excess = (min_duration - new_duration) / 2
        if trim_end > 0 and trim_end >= half_excess:
            trim_end -= half_excess
        if trim_start > 0 and trim_start >= half_excess:
            trim_start -= half_excess
        new_duration = duration - trim_start - trim_end

    needs_trim = trim_start > JUMPCUT_MIN_TRIM_SECONDS or trim_end > JUMPCUT_MIN_TRIM_SECONDS
    return TrimAnalysis(
        original_duration=duration,
        trim_start=trim_start if needs_trim else 0.0,
        trim_end=trim_end if needs_trim else 0.0,
        new_duration=new_duration if needs_trim else duration,
        needs_trim=needs_trim,
        scene_changes=list(changes),
    )
