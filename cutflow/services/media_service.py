"""Job-scoped media operations.

MediaService binds the shared MediaProcessExecutor to one job: every call
carries the job's cancellation signal and a timeout derived from the media
duration, and every failure surfaces as a media exception the executor can
classify. Argument vectors come from ``cutflow.utils.media_commands``; this
module only decides timeouts, fallbacks and file bookkeeping.

Architecture Pattern:
    Service (Smart): timeouts, fallbacks, result parsing, logging
    Builders (Dumb): pure argument vectors, no I/O

Usage:
    media = MediaService(MediaProcessExecutor(), job_id=job.id, cancel_event=cancel)
    metadata = await media.probe("/data/clip.mp4")
    await media.split("/data/clip.mp4", 12.0, 4.5, "/ws/jobs/1/scenes/scene-1/split.mp4",
                      target_width=1080, target_height=1920)
"""

import asyncio
import shutil
from collections.abc import Sequence
from pathlib import Path

from cutflow.exceptions import MediaCancelledError, MediaProcessError
from cutflow.utils import media_commands as cmd
from cutflow.utils.logging import get_logger
from cutflow.utils.media_commands import MediaMetadata, TrimAnalysis
from cutflow.utils.media_executor import MediaProcessExecutor
from cutflow.utils.timeouts import MediaOperation, calculate_timeout

log = get_logger(__name__)


class MediaService:
    """Media operations of one job.

    Args:
        executor: Shared subprocess executor.
        job_id: Job the operations belong to (logging only).
        cancel_event: The job's cancellation signal.
        fonts_dir: Optional fonts directory for subtitle burning.
    """

    def __init__(
        self,
        executor: MediaProcessExecutor,
        *,
        job_id: str,
        cancel_event: asyncio.Event | None = None,
        fonts_dir: str | None = None,
    ) -> None:
        self.executor = executor
        self.job_id = job_id
        self.cancel_event = cancel_event
        self.fonts_dir = fonts_dir
        self.log = log.bind(job_id=job_id)

    async def _ffmpeg(
        self,
        operation: str,
        args: list[str],
        *,
        duration: float | None,
        cost: MediaOperation,
        output_path: str | None = None,
    ) -> str:
        timeout = calculate_timeout(duration or 0.0, cost)
        result = await self.executor.run_ffmpeg(
            operation,
            args,
            timeout_seconds=timeout,
            cancel_event=self.cancel_event,
            total_duration=duration,
            output_paths=[output_path] if output_path else None,
        )
        self.log.debug(
            "media_operation_completed",
            operation=operation,
            output_path=output_path,
            elapsed=round(result.duration_seconds, 2),
        )
        return result.stderr_tail

    async def probe(self, path: str) -> MediaMetadata:
        raw = await self.executor.probe(path, cancel_event=self.cancel_event)
        return cmd.parse_probe_output(raw)

    async def duration(self, path: str) -> float:
        """Probe and return a positive duration.

        Raises:
            MediaProcessError: If the file reports no usable duration.
        """
        metadata = await self.probe(path)
        if metadata.duration <= 0:
            raise MediaProcessError(
                "probe", None, "", message=f"Media duration invalid for {path}: {metadata.duration}"
            )
        return metadata.duration

    async def split(
        self,
        input_path: str,
        start: float,
        duration: float,
        output_path: str,
        *,
        target_width: int,
        target_height: int,
        has_audio: bool = True,
    ) -> str:
        args = cmd.build_split_args(
            input_path,
            start,
            duration,
            output_path,
            target_width=target_width,
            target_height=target_height,
            has_audio=has_audio,
        )
        await self._ffmpeg("split", args, duration=duration, cost="split", output_path=output_path)
        return output_path

    async def analyze_jumpcuts(self, input_path: str, duration: float) -> TrimAnalysis:
        """Detect scene changes near the clip edges and suggest trims."""
        stderr = await self._ffmpeg(
            "scene_detect",
            cmd.build_scene_detect_args(input_path),
            duration=duration,
            cost="split",
        )
        return cmd.analyze_trim_points(duration, cmd.parse_scene_changes(stderr))

    async def trim(self, input_path: str, output_path: str, start: float, duration: float) -> str:
        args = cmd.build_trim_args(input_path, output_path, start, duration)
        await self._ffmpeg("trim", args, duration=duration, cost="split", output_path=output_path)
        return output_path

    async def adjust_speed(
        self, input_path: str, output_path: str, speed_factor: float, *, duration: float
    ) -> str:
        args = cmd.build_speed_args(input_path, output_path, speed_factor)
        await self._ffmpeg("speed", args, duration=duration, cost="speed", output_path=output_path)
        return output_path

    async def loop(
        self, input_path: str, loop_count: int, target_duration: float, output_path: str
    ) -> str:
        args = cmd.build_loop_args(input_path, loop_count, target_duration, output_path)
        await self._ffmpeg(
            "loop", args, duration=target_duration, cost="concat", output_path=output_path
        )
        return output_path

    async def merge(
        self, video_path: str, audio_path: str, output_path: str, *, audio_duration: float
    ) -> str:
        args = cmd.build_merge_args(video_path, audio_path, output_path, audio_duration=audio_duration)
        await self._ffmpeg(
            "merge_audio_video", args, duration=audio_duration, cost="merge", output_path=output_path
        )
        return output_path

    async def reencode(self, input_path: str, output_path: str, *, duration: float) -> str:
        args = cmd.build_reencode_args(input_path, output_path)
        await self._ffmpeg("reencode", args, duration=duration, cost="speed", output_path=output_path)
        return output_path

    async def burn_subtitles(
        self, video_path: str, subtitle_path: str, output_path: str, *, duration: float
    ) -> str:
        args = cmd.build_burn_subtitle_args(video_path, subtitle_path, output_path, self.fonts_dir)
        await self._ffmpeg(
            "burn_subtitle", args, duration=duration, cost="speed", output_path=output_path
        )
        return output_path

    async def concat(
        self,
        inputs: Sequence[str],
        output_path: str,
        *,
        list_path: str,
        total_duration: float | None = None,
    ) -> str:
        """Concatenate clips in order.

        Uses the stream-copy demuxer; when the inputs' streams do not line up
        the demuxer fails and the re-encoding filter variant is used instead.
        A single input is copied as-is.

        Raises:
            ValueError: If ``inputs`` is empty.
        """
        if not inputs:
            raise ValueError("No clips to concatenate")
        if len(inputs) == 1:
            shutil.copyfile(inputs[0], output_path)
            return output_path

        Path(list_path).write_text(cmd.build_concat_list(inputs), encoding="utf-8")
        try:
            await self._ffmpeg(
                "concat",
                cmd.build_concat_demuxer_args(list_path, output_path),
                duration=total_duration,
                cost="concat",
                output_path=output_path,
            )
        except (MediaCancelledError, TimeoutError):
            raise
        except MediaProcessError as e:
            self.log.warning(
                "concat_demuxer_failed_using_filter",
                clip_count=len(inputs),
                error=str(e)[:300],
            )
            await self._ffmpeg(
                "concat_filter",
                cmd.build_concat_filter_args(inputs, output_path),
                duration=total_duration,
                cost="speed",
                output_path=output_path,
            )
        return output_path

    async def mix_bgm(
        self, video_path: str, bgm_path: str, output_path: str, *, duration: float
    ) -> str:
        args = cmd.build_mix_bgm_args(video_path, bgm_path, output_path)
        await self._ffmpeg("add_bgm", args, duration=duration, cost="merge", output_path=output_path)
        return output_path
