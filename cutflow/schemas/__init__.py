"""Pydantic schemas for job inputs and sub-step payloads."""

from cutflow.schemas.job import JobConfig, Storyboard, ValidatedScene, VideoInput
from cutflow.schemas.step_payloads import dump_payload, parse_step_output

__all__ = [
    "JobConfig",
    "Storyboard",
    "ValidatedScene",
    "VideoInput",
    "dump_payload",
    "parse_step_output",
]
