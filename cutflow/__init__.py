"""cutflow: orchestration core of an automated video-editing pipeline.

Jobs turn one to five source videos into a single narrated, edited video.
The package persists every sub-step attempt as an append-only step history,
runs scenes concurrently under a bounded fan-out, retries per an explicit
workflow policy, and admits jobs through a bounded single-flight queue.
Media work is delegated to ffmpeg/ffprobe subprocesses.
"""

from cutflow.models import Base, Job, JobState, SceneTask, StepRecord

__version__ = "0.1.0"

__all__ = [
    "Base",
    "Job",
    "JobState",
    "SceneTask",
    "StepRecord",
    "__version__",
]
