# Data factories for test data generation

from tests.support.factories.job_factory import (
    create_job,
    create_scene,
    create_source_videos,
    create_storyboard,
    insert_job,
)

__all__ = [
    "create_job",
    "create_scene",
    "create_source_videos",
    "create_storyboard",
    "insert_job",
]
