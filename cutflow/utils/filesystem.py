"""Filesystem path helpers for the per-job editing workspace.

This module provides standardized path construction functions that enforce
job isolation and a consistent directory structure for the editing pipeline.
Directory helpers create directories if they don't exist; file helpers only
build paths.

Security:
    All path helpers validate inputs to prevent path traversal attacks.
    Job IDs and scene keys must be alphanumeric with optional underscores/dashes.
    Resolved paths are verified to stay within the workspace root.

Architecture Pattern:
    {WORKSPACE_ROOT}/jobs/{job_id}/
    ├── sources/                 (downloaded input videos, bgm)
    ├── scenes/
    │   └── scene-{n}/
    │       ├── split.mp4
    │       ├── trimmed.mp4
    │       ├── looped.mp4 / speed_trim.mp4 / speed.mp4
    │       ├── merged.mp4 / reencoded.mp4
    │       ├── subtitle.ass / subtitled.mp4
    │       └── audio/narration-v{n}.mp3
    ├── concat.txt
    ├── concat.mp4
    └── with_bgm.mp4

Usage:
    from cutflow.utils.filesystem import get_scene_dir, scene_file

    scene_dir = get_scene_dir(root, job_id, "scene-3")  # auto-creates
    split = scene_file(root, job_id, "scene-3", "split.mp4")
"""

import re
import shutil
from pathlib import Path

JOBS_DIR_NAME = "jobs"
SCENES_DIR_NAME = "scenes"
SOURCES_DIR_NAME = "sources"
AUDIO_DIR_NAME = "audio"

# Validation pattern: alphanumeric, underscores, dashes only
_ID_PATTERN = re.compile(r"^[a-zA-Z0-9_-]+$")
_FILENAME_PATTERN = re.compile(r"^[a-zA-Z0-9_.-]+$")


def _validate_identifier(identifier: str, name: str) -> None:
    """Validate identifier to prevent path traversal attacks.

    Args:
        identifier: The identifier to validate (job_id or scene key)
        name: Human-readable name for error messages

    Raises:
        ValueError: If identifier is invalid or contains path traversal sequences
    """
    if not identifier:
        raise ValueError(f"{name} cannot be empty")

    if not _ID_PATTERN.match(identifier):
        raise ValueError(
            f"Invalid {name}: '{identifier}'. "
            f"Only alphanumeric characters, underscores, and dashes are allowed."
        )


def _validate_filename(filename: str) -> None:
    if not filename or filename in (".", "..") or not _FILENAME_PATTERN.match(filename):
        raise ValueError(f"Invalid filename: '{filename}'")


def _verify_path_in_workspace(path: Path, root: Path) -> None:
    """Verify that resolved path stays within the workspace root.

    Raises:
        ValueError: If resolved path escapes the workspace root
    """
    if not path.resolve().is_relative_to(root.resolve()):
        raise ValueError(f"Path traversal detected: {path} is outside workspace {root}")


def get_job_dir(root: Path | str, job_id: str, create: bool = True) -> Path:
    """Get the workspace directory of one job.

    Args:
        root: Workspace root directory.
        job_id: Job identifier.
        create: Create the directory when missing (default True).

    Returns:
        Path to ``{root}/jobs/{job_id}``.

    Raises:
        ValueError: If job_id is invalid or the path escapes the root.
    """
    _validate_identifier(job_id, "job_id")
    root = Path(root)
    path = root / JOBS_DIR_NAME / job_id
    _verify_path_in_workspace(path, root)
    if create:
        path.mkdir(parents=True, exist_ok=True)
    return path


def get_sources_dir(root: Path | str, job_id: str) -> Path:
    path = get_job_dir(root, job_id) / SOURCES_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_scene_dir(root: Path | str, job_id: str, scene_key: str) -> Path:
    """Get (and create) the directory of one scene, e.g. ``scenes/scene-3``."""
    _validate_identifier(scene_key, "scene_key")
    path = get_job_dir(root, job_id) / SCENES_DIR_NAME / scene_key
    path.mkdir(parents=True, exist_ok=True)
    return path


def get_scene_audio_dir(root: Path | str, job_id: str, scene_key: str) -> Path:
    path = get_scene_dir(root, job_id, scene_key) / AUDIO_DIR_NAME
    path.mkdir(parents=True, exist_ok=True)
    return path


def scene_file(root: Path | str, job_id: str, scene_key: str, filename: str) -> Path:
    """Build the path of a file inside a scene directory.

    Args:
        root: Workspace root directory.
        job_id: Job identifier.
        scene_key: Scene key such as "scene-1".
        filename: Bare file name ("segment.mp4", "subtitle.ass").

    Returns:
        Path to the file (the file itself is not created).
    """
    _validate_filename(filename)
    return get_scene_dir(root, job_id, scene_key) / filename


def job_file(root: Path | str, job_id: str, filename: str) -> Path:
    """Build the path of a job-level file (``final.mp4``, ``concat.txt``)."""
    _validate_filename(filename)
    return get_job_dir(root, job_id) / filename


def get_output_path(output_dir: Path | str, job_id: str, suffix: str = ".mp4") -> Path:
    """Get the published output path ``{output_dir}/{job_id}.mp4``."""
    _validate_identifier(job_id, "job_id")
    directory = Path(output_dir)
    directory.mkdir(parents=True, exist_ok=True)
    return directory / f"{job_id}{suffix}"


def cleanup_job_dir(root: Path | str, job_id: str) -> bool:
    """Delete a job's workspace directory.

    Returns:
        True if a directory was removed, False if there was nothing to remove.
    """
    path = get_job_dir(root, job_id, create=False)
    if not path.exists():
        return False
    shutil.rmtree(path)
    return True
