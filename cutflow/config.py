"""Configuration management for the orchestration core.

This module provides centralized configuration loading from environment variables.
Getters read the environment on every call unless cached with ``lru_cache``,
so tests can override values with ``monkeypatch.setenv``.

Environment Variables:
    DATABASE_URL: Database connection URL (required by the worker)
    WORKSPACE_ROOT: Base directory for per-job temporary files (default: ./workspace)
    OUTPUT_DIR: Directory receiving published final videos (default: ./output)
    FFMPEG_PATH / FFPROBE_PATH: Media binaries (default: ffmpeg / ffprobe)
    MAX_CONCURRENT_JOBS: Admission queue capacity (default: 1)
    DEFAULT_MAX_CONCURRENT_SCENES: Scene fan-out width when a job sets none (default: 3)
    SCENE_CONCURRENCY_HARD_CAP: System-wide bound on scene fan-out (default: 8)

Usage:
    from cutflow.config import get_database_url, get_max_concurrent_jobs

    db_url = get_database_url()  # Raises if DATABASE_URL not set
    capacity = get_max_concurrent_jobs()  # 1 unless overridden
"""

import os
from functools import lru_cache

import structlog

log = structlog.get_logger(__name__)

# Defaults used when the environment does not override them
DEFAULT_MAX_CONCURRENT_SCENES = 3
DEFAULT_SCENE_CONCURRENCY_HARD_CAP = 8
DEFAULT_NARRATION_BATCH_SIZE = 5
DEFAULT_MEDIA_TIMEOUT_SECONDS = 600
DEFAULT_STEP_WATCHDOG_SECONDS = 3600
DEFAULT_HEARTBEAT_STALE_SECONDS = 1800


def _read_int(name: str, default: int, minimum: int, maximum: int) -> int:
    """Read an integer env var, clamped to [minimum, maximum].

    Invalid values fall back to the default with a warning.
    """
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    try:
        value = int(raw)
    except ValueError:
        log.warning("invalid_int_config", name=name, value=raw, using_default=default)
        return default
    return max(minimum, min(maximum, value))


def _read_bool(name: str, default: bool) -> bool:
    raw = os.getenv(name)
    if raw is None or raw.strip() == "":
        return default
    return raw.strip().lower() not in ("0", "false", "no", "off")


@lru_cache
def get_database_url() -> str:
    """Get database URL from environment.

    Converts postgresql:// to postgresql+asyncpg:// for async SQLAlchemy.
    SQLite URLs (``sqlite+aiosqlite://``) are passed through unchanged.

    Environment Variable:
        DATABASE_URL: Database connection URL

    Returns:
        Database URL with an async driver.

    Raises:
        ValueError: If DATABASE_URL not set.
    """
    url = os.getenv("DATABASE_URL")
    if not url:
        raise ValueError("DATABASE_URL environment variable is required")

    if url.startswith("postgresql://"):
        url = url.replace("postgresql://", "postgresql+asyncpg://", 1)

    return url


def get_workspace_root() -> str:
    """Get workspace root directory from environment.

    Environment Variable:
        WORKSPACE_ROOT: Base path for per-job files (default: "./workspace")

    Returns:
        Directory path string.
    """
    return os.getenv("WORKSPACE_ROOT", "./workspace")


def get_output_dir() -> str:
    """Get directory where finished videos are published.

    Environment Variable:
        OUTPUT_DIR: Output directory (default: "./output")
    """
    return os.getenv("OUTPUT_DIR", "./output")


def get_ffmpeg_path() -> str:
    return os.getenv("FFMPEG_PATH", "ffmpeg")


def get_ffprobe_path() -> str:
    return os.getenv("FFPROBE_PATH", "ffprobe")


def get_media_default_timeout() -> int:
    """Get default per-invocation media timeout in seconds.

    Environment Variable:
        MEDIA_DEFAULT_TIMEOUT_SECONDS: Timeout (default: 600)

    Returns:
        Timeout in seconds (minimum 10, maximum 7200).
    """
    return _read_int("MEDIA_DEFAULT_TIMEOUT_SECONDS", DEFAULT_MEDIA_TIMEOUT_SECONDS, 10, 7200)


def get_max_concurrent_jobs() -> int:
    """Get the admission queue capacity.

    Environment Variable:
        MAX_CONCURRENT_JOBS: Jobs allowed to run at once (default: 1)

    Returns:
        Capacity clamped to 1..4. Each job fans out its own media subprocesses,
        so the queue is kept to a small fixed number.
    """
    return _read_int("MAX_CONCURRENT_JOBS", 1, 1, 4)


def get_default_max_concurrent_scenes() -> int:
    """Get the scene fan-out width used when a job does not set one.

    Environment Variable:
        DEFAULT_MAX_CONCURRENT_SCENES: Default width (default: 3)
    """
    return _read_int("DEFAULT_MAX_CONCURRENT_SCENES", DEFAULT_MAX_CONCURRENT_SCENES, 1, 8)


def get_scene_concurrency_hard_cap() -> int:
    """Get the system-wide hard cap on concurrent scenes per job.

    No job configuration can exceed this value.

    Environment Variable:
        SCENE_CONCURRENCY_HARD_CAP: Hard cap (default: 8)

    Returns:
        Hard cap clamped to 1..8.
    """
    return _read_int(
        "SCENE_CONCURRENCY_HARD_CAP", DEFAULT_SCENE_CONCURRENCY_HARD_CAP, 1, 8
    )


def get_narration_batch_size() -> int:
    """Get how many scenes are sent per narration-generation request.

    Environment Variable:
        NARRATION_BATCH_SIZE: Scenes per request (default: 5)
    """
    return _read_int("NARRATION_BATCH_SIZE", DEFAULT_NARRATION_BATCH_SIZE, 1, 20)


def get_subtitle_enabled() -> bool:
    """Get the system default for subtitle burning.

    Job configuration takes precedence when it sets ``subtitle_enabled``.

    Environment Variable:
        SUBTITLE_ENABLED: "true"/"false" (default: true)
    """
    return _read_bool("SUBTITLE_ENABLED", True)


def get_subtitle_fonts_dir() -> str | None:
    """Get the fonts directory passed to the ASS subtitle filter, if any."""
    return os.getenv("SUBTITLE_FONTS_DIR") or None


def get_step_watchdog_seconds() -> int:
    """Get the wall-clock bound for a single sub-step.

    Environment Variable:
        STEP_WATCHDOG_SECONDS: Bound in seconds (default: 3600)

    Returns:
        Seconds, clamped to 60..86400.
    """
    return _read_int("STEP_WATCHDOG_SECONDS", DEFAULT_STEP_WATCHDOG_SECONDS, 60, 86400)


def get_heartbeat_stale_seconds() -> int:
    """Get the heartbeat age after which a processing job counts as a zombie.

    Environment Variable:
        HEARTBEAT_STALE_SECONDS: Age in seconds (default: 1800)
    """
    return _read_int("HEARTBEAT_STALE_SECONDS", DEFAULT_HEARTBEAT_STALE_SECONDS, 60, 86400)


def get_resume_interrupted_jobs() -> bool:
    """Whether the worker resumes zombie jobs (True) or fails them (False)."""
    return _read_bool("RESUME_INTERRUPTED_JOBS", True)


def get_worker_poll_interval() -> int:
    """Get the worker polling interval in seconds.

    Environment Variable:
        WORKER_POLL_INTERVAL_SECONDS: Interval (default: 5)

    Returns:
        Interval clamped to 1..300.
    """
    return _read_int("WORKER_POLL_INTERVAL_SECONDS", 5, 1, 300)


def get_client_import_path(kind: str) -> str | None:
    """Get the ``module:attribute`` import path of an external client.

    Args:
        kind: One of "analysis", "narration", "speech".

    Environment Variables:
        ANALYSIS_CLIENT, NARRATION_CLIENT, SPEECH_CLIENT

    Returns:
        Import path string, or None if not configured.
    """
    return os.getenv(f"{kind.upper()}_CLIENT") or None
