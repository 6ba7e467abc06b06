"""Media Process Executor for async ffmpeg/ffprobe execution.

This module spawns the external media binary as a child process without
blocking the event loop, enforces a per-invocation timeout and a job-level
cancellation signal, and parses progress lines from the diagnostic stream.

Critical Pattern:
- Pipeline code MUST go through this executor instead of subprocess directly
- ``run()`` never raises for process failures; it reports a result whose
  ``failure_reason`` distinguishes exit_code / timeout / cancelled / spawn_error
- ``run_ffmpeg()`` and ``probe()`` are the raising convenience wrappers used
  by the pipeline actions
- Killing is SIGTERM first, then SIGKILL after a grace period

Progress Format (ffmpeg stderr):
    frame=  100 fps= 25 q=28.0 size=1024kB time=00:00:04.00 bitrate= 256.0kbits/s speed=0.5x
"""

import asyncio
import json
import re
import time
from collections.abc import Callable
from contextlib import suppress
from dataclasses import dataclass, field
from typing import Any, Literal

from cutflow import config
from cutflow.constants import KILL_GRACE_SECONDS, STDERR_CAPTURE_LIMIT_BYTES
from cutflow.exceptions import MediaCancelledError, MediaProcessError, MediaTimeoutError
from cutflow.utils.logging import get_logger
from cutflow.utils.media_commands import convert_media_url

log = get_logger(__name__)

FailureReason = Literal["exit_code", "timeout", "cancelled", "spawn_error"]

_FRAME_RE = re.compile(r"frame=\s*(\d+)")
_FPS_RE = re.compile(r"fps=\s*([\d.]+)")
_TIME_RE = re.compile(r"time=\s*(\d+):(\d{2}):(\d{2}(?:\.\d+)?)")
_BITRATE_RE = re.compile(r"bitrate=\s*([\d.]+\s*\w+/s)")
_SPEED_RE = re.compile(r"speed=\s*([\d.]+)x")
_LINE_SPLIT_RE = re.compile(rb"[\r\n]")


@dataclass
class FFmpegProgress:
    """One progress sample parsed from ffmpeg stderr."""

    frame: int | None = None
    fps: float | None = None
    time_seconds: float | None = None
    bitrate: str | None = None
    speed: float | None = None
    percent: float | None = None


@dataclass
class MediaOperationResult:
    """Outcome of one media subprocess invocation.

    Attributes:
        success: True when the process exited with code 0.
        operation: Logical operation name.
        output_paths: Files the operation was asked to produce.
        stderr_tail: Last captured stderr (capped at 100 KB).
        duration_seconds: Wall-clock duration of the invocation.
        exit_code: Process exit code (None if killed before exiting on its own
            or never spawned).
        failure_reason: None on success, otherwise why the invocation failed.
        stdout: Captured stdout (used by probe).
    """

    success: bool
    operation: str
    output_paths: list[str] = field(default_factory=list)
    stderr_tail: str = ""
    duration_seconds: float = 0.0
    exit_code: int | None = None
    failure_reason: FailureReason | None = None
    stdout: str = ""


ProgressCallback = Callable[[FFmpegProgress], None]


def parse_progress(line: str, total_duration: float | None = None) -> FFmpegProgress | None:
    """Parse one ffmpeg progress line.

    Args:
        line: A single stderr line.
        total_duration: Expected output duration, used to compute ``percent``.

    Returns:
        FFmpegProgress, or None if the line carries neither frame nor time.

    Example:
        >>> p = parse_progress("frame=  100 fps= 25 time=00:00:04.00 speed=0.5x", 8.0)
        >>> p.frame, p.time_seconds, p.percent
        (100, 4.0, 50.0)
    """
    frame_match = _FRAME_RE.search(line)
    time_match = _TIME_RE.search(line)
    if not frame_match and not time_match:
        return None

    time_seconds = None
    if time_match:
        hours, minutes, seconds = time_match.groups()
        time_seconds = int(hours) * 3600 + int(minutes) * 60 + float(seconds)

    fps_match = _FPS_RE.search(line)
    bitrate_match = _BITRATE_RE.search(line)
    speed_match = _SPEED_RE.search(line)

    percent = None
    if time_seconds is not None and total_duration:
        percent = round(min(100.0, time_seconds / total_duration * 100), 2)

    return FFmpegProgress(
        frame=int(frame_match.group(1)) if frame_match else None,
        fps=float(fps_match.group(1)) if fps_match else None,
        time_seconds=time_seconds,
        bitrate=bitrate_match.group(1).replace(" ", "") if bitrate_match else None,
        speed=float(speed_match.group(1)) if speed_match else None,
        percent=percent,
    )


def _sanitize_args(args: list[str]) -> list[str]:
    """Truncate long arguments (filter graphs, subtitle text) for logging."""
    return [arg if len(arg) <= 100 else arg[:100] + "..." for arg in args]


class MediaProcessExecutor:
    """Shared executor for every media subprocess.

    Args:
        ffmpeg_path: ffmpeg binary (default from FFMPEG_PATH).
        ffprobe_path: ffprobe binary (default from FFPROBE_PATH).
        default_timeout: Timeout used when a call passes none
            (default from MEDIA_DEFAULT_TIMEOUT_SECONDS).
        kill_grace_seconds: Delay between SIGTERM and SIGKILL.
        stderr_limit: Bytes of stderr kept (the tail is kept).

    Example:
        >>> executor = MediaProcessExecutor()
        >>> result = await executor.run("split", args, timeout_seconds=120, cancel_event=cancel)
        >>> if not result.success:
        ...     print(result.failure_reason, result.stderr_tail[-500:])
    """

    def __init__(
        self,
        ffmpeg_path: str | None = None,
        ffprobe_path: str | None = None,
        default_timeout: float | None = None,
        kill_grace_seconds: float = KILL_GRACE_SECONDS,
        stderr_limit: int = STDERR_CAPTURE_LIMIT_BYTES,
    ) -> None:
        self.ffmpeg_path = ffmpeg_path or config.get_ffmpeg_path()
        self.ffprobe_path = ffprobe_path or config.get_ffprobe_path()
        self.default_timeout = (
            default_timeout if default_timeout is not None else config.get_media_default_timeout()
        )
        self.kill_grace_seconds = kill_grace_seconds
        self.stderr_limit = stderr_limit

    async def run(
        self,
        operation: str,
        args: list[str],
        *,
        timeout_seconds: float | None = None,
        cancel_event: asyncio.Event | None = None,
        on_progress: ProgressCallback | None = None,
        total_duration: float | None = None,
        binary: str | None = None,
        output_paths: list[str] | None = None,
    ) -> MediaOperationResult:
        """Run the media binary with ``args`` and report the outcome.

        Args:
            operation: Logical operation name, used in logs and errors.
            args: Argument vector (without the binary itself).
            timeout_seconds: Per-invocation timeout.
            cancel_event: Job-level cancellation signal; when set, the process
                is killed and the result reports ``cancelled``.
            on_progress: Called with each parsed progress sample.
            total_duration: Expected output duration for percent calculation.
            binary: Binary to spawn (default ffmpeg).
            output_paths: Files the operation writes, echoed in the result.

        Returns:
            MediaOperationResult. Process failures are reported, not raised.

        Raises:
            asyncio.CancelledError: If the calling task is cancelled (the child
                process is killed first).
        """
        binary = binary or self.ffmpeg_path
        timeout = timeout_seconds if timeout_seconds is not None else self.default_timeout
        outputs = list(output_paths or [])
        started = time.monotonic()

        def _result(**kwargs: Any) -> MediaOperationResult:
            return MediaOperationResult(
                operation=operation,
                output_paths=outputs,
                duration_seconds=round(time.monotonic() - started, 3),
                **kwargs,
            )

        if cancel_event is not None and cancel_event.is_set():
            log.info("media_process_cancelled_before_start", operation=operation)
            return _result(success=False, failure_reason="cancelled")

        log.info(
            "media_process_started",
            operation=operation,
            binary=binary,
            args=_sanitize_args(args),
            timeout=timeout,
        )

        try:
            process = await asyncio.create_subprocess_exec(
                binary,
                *args,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            log.error("media_process_spawn_failed", operation=operation, binary=binary, error=str(e))
            return _result(success=False, failure_reason="spawn_error", stderr_tail=str(e))

        stderr_buffer = bytearray()
        stdout_chunks: list[bytes] = []

        def _handle_line(raw: bytes) -> None:
            if on_progress is None or not raw:
                return
            progress = parse_progress(raw.decode("utf-8", errors="replace"), total_duration)
            if progress is None:
                return
            try:
                on_progress(progress)
            except Exception as e:
                log.warning("media_progress_callback_failed", operation=operation, error=str(e))

        async def _read_stderr() -> None:
            assert process.stderr is not None
            pending = b""
            while True:
                chunk = await process.stderr.read(4096)
                if not chunk:
                    break
                stderr_buffer.extend(chunk)
                if len(stderr_buffer) > self.stderr_limit:
                    del stderr_buffer[: len(stderr_buffer) - self.stderr_limit]
                pending += chunk
                *lines, pending = _LINE_SPLIT_RE.split(pending)
                for line in lines:
                    _handle_line(line)
            _handle_line(pending)

        async def _read_stdout() -> None:
            assert process.stdout is not None
            stdout_chunks.append(await process.stdout.read())

        io_task = asyncio.ensure_future(
            asyncio.gather(_read_stderr(), _read_stdout(), process.wait())
        )
        cancel_task = (
            asyncio.ensure_future(cancel_event.wait()) if cancel_event is not None else None
        )
        waiters: set[asyncio.Future[Any]] = {io_task}
        if cancel_task is not None:
            waiters.add(cancel_task)

        try:
            done, _ = await asyncio.wait(
                waiters, timeout=timeout, return_when=asyncio.FIRST_COMPLETED
            )
        except asyncio.CancelledError:
            await self._kill(process, operation)
            io_task.cancel()
            raise
        finally:
            if cancel_task is not None and not cancel_task.done():
                cancel_task.cancel()

        failure_reason: FailureReason | None = None
        if io_task not in done:
            failure_reason = (
                "cancelled" if cancel_task is not None and cancel_task in done else "timeout"
            )
            await self._kill(process, operation)
            with suppress(asyncio.TimeoutError, asyncio.CancelledError):
                await asyncio.wait_for(io_task, self.kill_grace_seconds)
        else:
            # Surface reader errors instead of losing them
            io_task.result()

        stderr_tail = stderr_buffer.decode("utf-8", errors="replace")
        stdout = b"".join(stdout_chunks).decode("utf-8", errors="replace")

        if failure_reason is not None:
            log.warning(
                f"media_process_{failure_reason}",
                operation=operation,
                timeout=timeout,
                stderr=stderr_tail[-500:],
            )
            return _result(
                success=False,
                failure_reason=failure_reason,
                stderr_tail=stderr_tail,
                stdout=stdout,
            )

        exit_code = process.returncode
        if exit_code != 0:
            log.error(
                "media_process_failed",
                operation=operation,
                exit_code=exit_code,
                stderr=stderr_tail[-500:],
            )
            return _result(
                success=False,
                failure_reason="exit_code",
                exit_code=exit_code,
                stderr_tail=stderr_tail,
                stdout=stdout,
            )

        result = _result(success=True, exit_code=0, stderr_tail=stderr_tail, stdout=stdout)
        log.info(
            "media_process_completed",
            operation=operation,
            duration_seconds=result.duration_seconds,
        )
        return result

    async def _kill(self, process: asyncio.subprocess.Process, operation: str) -> None:
        """Terminate the child process, escalating to SIGKILL after the grace period."""
        if process.returncode is not None:
            return
        with suppress(ProcessLookupError):
            process.terminate()
        try:
            await asyncio.wait_for(process.wait(), self.kill_grace_seconds)
        except asyncio.TimeoutError:
            log.warning("media_process_force_killed", operation=operation, pid=process.pid)
            with suppress(ProcessLookupError):
                process.kill()
            await process.wait()

    async def run_ffmpeg(
        self,
        operation: str,
        args: list[str],
        **kwargs: Any,
    ) -> MediaOperationResult:
        """Run ffmpeg with ``-y`` prepended and raise on any failure.

        Args:
            operation: Logical operation name.
            args: ffmpeg arguments (without ``-y``).
            **kwargs: Forwarded to ``run()``.

        Returns:
            Successful MediaOperationResult.

        Raises:
            MediaTimeoutError: If the timeout elapsed.
            MediaCancelledError: If the cancellation signal fired.
            MediaProcessError: If ffmpeg exited non-zero or could not start.
        """
        result = await self.run(operation, ["-y", *args], **kwargs)
        raise_for_result(result, kwargs.get("timeout_seconds") or self.default_timeout)
        return result

    async def probe(
        self,
        path: str,
        *,
        timeout_seconds: float = 30.0,
        cancel_event: asyncio.Event | None = None,
    ) -> dict[str, Any]:
        """Run ffprobe and return its parsed JSON output.

        Args:
            path: Local path or URL (``file://`` and ``gs://`` are converted).
            timeout_seconds: Probe timeout.
            cancel_event: Job-level cancellation signal.

        Returns:
            ffprobe JSON as dict with ``format`` and ``streams`` keys.

        Raises:
            MediaProcessError: If ffprobe fails or its output is not JSON.
        """
        args = [
            "-v",
            "quiet",
            "-print_format",
            "json",
            "-show_format",
            "-show_streams",
            convert_media_url(path),
        ]
        result = await self.run(
            "probe",
            args,
            timeout_seconds=timeout_seconds,
            cancel_event=cancel_event,
            binary=self.ffprobe_path,
        )
        raise_for_result(result, timeout_seconds)
        try:
            data: dict[str, Any] = json.loads(result.stdout)
        except json.JSONDecodeError as e:
            raise MediaProcessError(
                "probe",
                result.exit_code,
                result.stdout[-500:],
                message=f"ffprobe output could not be parsed for {path}",
            ) from e
        return data


def raise_for_result(result: MediaOperationResult, timeout_seconds: float) -> None:
    """Raise the matching media exception for a failed result.

    Raises:
        MediaTimeoutError, MediaCancelledError, MediaProcessError
    """
    if result.success:
        return
    if result.failure_reason == "timeout":
        raise MediaTimeoutError(result.operation, timeout_seconds, result.stderr_tail)
    if result.failure_reason == "cancelled":
        raise MediaCancelledError(result.operation, result.stderr_tail)
    if result.failure_reason == "spawn_error":
        raise MediaProcessError(
            result.operation,
            None,
            result.stderr_tail,
            message=f"{result.operation} could not start: {result.stderr_tail}",
        )
    raise MediaProcessError(result.operation, result.exit_code, result.stderr_tail)
