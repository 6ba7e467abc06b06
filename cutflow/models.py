"""SQLAlchemy 2.0 ORM models.

This module contains all SQLAlchemy models for the orchestration core.
All models use the Mapped[type] annotation pattern required by SQLAlchemy 2.0.

Tables:
    jobs                 Job: identity, status state machine, input, config, error
    job_step_history     StepRecord: append-only log of sub-step attempts
    job_current_state    JobState: single mutable checkpoint row per job
    job_scenes           SceneTask: per-scene unit of work

Append-Only Pattern:
    StepRecord rows are never updated. Each transition of an attempt appends a
    new row, and the latest row of an attempt is its effective status. Code
    that needs the effective view goes through ``cutflow.services.step_history``.
"""

import enum
import uuid
from datetime import datetime, timezone
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Enum,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column, validates

from cutflow.exceptions import InvalidStateTransitionError


def utcnow() -> datetime:
    """Get current UTC datetime (timezone-aware)."""
    return datetime.now(timezone.utc)


def new_id() -> str:
    return str(uuid.uuid4())


def _enum_column(enum_cls: type[enum.Enum], name: str) -> Enum:
    # values_callable stores enum.value (lowercase), not enum.name
    return Enum(
        enum_cls,
        native_enum=True,
        name=name,
        values_callable=lambda x: [e.value for e in x],
    )


class JobStatus(enum.Enum):
    """Job lifecycle.

    Flow:
        pending → processing → completed
        pending → failed (rejected or cancelled before start)
        processing → failed

    Terminal States:
        completed, failed
    """

    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class JobType(enum.Enum):
    SINGLE_VIDEO = "single_video"
    MULTI_VIDEO = "multi_video"


class StepStatus(enum.Enum):
    """Status of one StepRecord row."""

    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    SKIPPED = "skipped"


TERMINAL_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.FAILED, StepStatus.SKIPPED})
DONE_STEP_STATUSES = frozenset({StepStatus.COMPLETED, StepStatus.SKIPPED})


class SceneStatus(enum.Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""

    pass


class Job(Base):
    """An editing job driven through the pipeline by the Workflow Executor.

    Attributes:
        id: UUID string primary key.
        job_type: single_video or multi_video; selects the workflow.
        status: Lifecycle status, transitions enforced by ``@validates``.
        input_videos: JSON list of video inputs (1-5), see ``VideoInput``.
        config: JSON job configuration, see ``JobConfig``.
        error_message: Terminal error message (no stack traces).
        error_category: Classified category of the terminal error.
        error_metadata: Public classification details (category, guidance,
            is_retryable, error_type).
        created_at / started_at / completed_at / updated_at: UTC timestamps.
    """

    __tablename__ = "jobs"

    # State machine: only transitions listed here are allowed
    VALID_TRANSITIONS = {
        JobStatus.PENDING: [JobStatus.PROCESSING, JobStatus.FAILED],
        JobStatus.PROCESSING: [JobStatus.COMPLETED, JobStatus.FAILED],
        JobStatus.COMPLETED: [],  # Terminal
        JobStatus.FAILED: [],  # Terminal
    }

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    job_type: Mapped[JobType] = mapped_column(
        _enum_column(JobType, "jobtype"),
        nullable=False,
        default=JobType.SINGLE_VIDEO,
    )
    status: Mapped[JobStatus] = mapped_column(
        _enum_column(JobStatus, "jobstatus"),
        nullable=False,
        default=JobStatus.PENDING,
        index=True,
    )
    input_videos: Mapped[list[dict[str, Any]]] = mapped_column(JSON, nullable=False, default=list)
    config: Mapped[dict[str, Any]] = mapped_column(JSON, nullable=False, default=dict)

    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_category: Mapped[str | None] = mapped_column(String(20), nullable=True)
    error_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (Index("ix_jobs_status_created_at", "status", "created_at"),)

    @validates("status")
    def validate_status_change(self, key: str, value: JobStatus) -> JobStatus:
        """Validate status transition before committing to database.

        Raises:
            InvalidStateTransitionError: If the transition is not listed in
                VALID_TRANSITIONS.

        Note:
            Validation is skipped on initial creation (status is None).
        """
        if self.status is None:
            return value

        if value == self.status:
            return value

        allowed_transitions = self.VALID_TRANSITIONS.get(self.status, [])
        if value not in allowed_transitions:
            raise InvalidStateTransitionError(
                f"Invalid transition: {self.status.value} → {value.value}",
                from_status=self.status,
                to_status=value,
            )
        return value

    @property
    def video_count(self) -> int:
        return len(self.input_videos or [])

    def __repr__(self) -> str:
        return f"<Job(id={self.id!r}, type={self.job_type.value}, status={self.status.value})>"


class StepRecord(Base):
    """One append-only row of the step history.

    Key: (job_id, stage_id, sub_step_id, scene_id). An attempt appends a
    ``running`` row, then a terminal row. At most one attempt per key is
    effectively running; the store marks stale running attempts failed
    before a new attempt starts.

    Attributes:
        id: Autoincrement primary key, also the append order.
        job_id: Owning job.
        stage_id: Major stage id ("analysis", "process_scenes", ...).
        sub_step_id: Sub-step id ("split_scenes", "merge_audio_video", ...).
        scene_id: Scene key ("scene-3") for per-scene sub-steps, else None.
        status: Status of this row.
        attempt: Attempt number (1-based, increasing across resumes).
        started_at / completed_at: Attempt timestamps.
        duration_ms: Attempt duration on terminal rows.
        input_data / output_data: Validated step payloads (JSON).
        error_message: Failure message on failed rows.
        error_metadata: Classification plus stack trace for diagnostics.
    """

    __tablename__ = "job_step_history"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    stage_id: Mapped[str] = mapped_column(String(50), nullable=False)
    sub_step_id: Mapped[str] = mapped_column(String(50), nullable=False)
    scene_id: Mapped[str | None] = mapped_column(String(50), nullable=True)
    status: Mapped[StepStatus] = mapped_column(_enum_column(StepStatus, "stepstatus"), nullable=False)
    attempt: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    started_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    duration_ms: Mapped[int | None] = mapped_column(Integer, nullable=True)
    input_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    output_data: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    error_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )

    __table_args__ = (
        Index("ix_step_history_job_id_id", "job_id", "id"),
        Index("ix_step_history_key", "job_id", "stage_id", "sub_step_id", "scene_id"),
    )

    @property
    def key(self) -> tuple[str, str, str | None]:
        return (self.stage_id, self.sub_step_id, self.scene_id)

    def __repr__(self) -> str:
        scene = f", scene={self.scene_id}" if self.scene_id else ""
        return (
            f"<StepRecord({self.stage_id}.{self.sub_step_id}{scene}, "
            f"attempt={self.attempt}, status={self.status.value})>"
        )


class JobState(Base):
    """Mutable checkpoint row, one per job.

    Used for fast progress queries and as the recovery hint for jobs whose
    step history is missing. ``processed_scenes`` is incremented in SQL so
    concurrent scene completions do not lose updates.
    """

    __tablename__ = "job_current_state"

    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), primary_key=True
    )
    current_stage: Mapped[str | None] = mapped_column(String(50), nullable=True)
    current_sub_step: Mapped[str | None] = mapped_column(String(50), nullable=True)
    total_scenes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    processed_scenes: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    step_context: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    final_video_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    final_video_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)
    stopped_by_user: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    heartbeat_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    def __repr__(self) -> str:
        return (
            f"<JobState(job={self.job_id!r}, at={self.current_stage}.{self.current_sub_step}, "
            f"scenes={self.processed_scenes}/{self.total_scenes})>"
        )


class SceneTask(Base):
    """Per-scene unit of work inside the process-scenes stage.

    Created from the analysis storyboards; mutated by each per-scene
    sub-step; never deleted, only marked completed/failed (or skipped by
    storyboard validation).
    """

    __tablename__ = "job_scenes"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=new_id)
    job_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("jobs.id", ondelete="CASCADE"), nullable=False
    )
    scene_index: Mapped[int] = mapped_column(Integer, nullable=False)
    scene_key: Mapped[str] = mapped_column(String(50), nullable=False)

    source_video_index: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    source_start: Mapped[float] = mapped_column(Float, nullable=False)
    source_end: Mapped[float] = mapped_column(Float, nullable=False)
    duration_seconds: Mapped[float] = mapped_column(Float, nullable=False)
    use_original_audio: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    description: Mapped[str | None] = mapped_column(Text, nullable=True)
    narration_script: Mapped[str | None] = mapped_column(Text, nullable=True)

    narration_v1: Mapped[str | None] = mapped_column(Text, nullable=True)
    narration_v2: Mapped[str | None] = mapped_column(Text, nullable=True)
    narration_v3: Mapped[str | None] = mapped_column(Text, nullable=True)

    is_skipped: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    skip_reason: Mapped[str | None] = mapped_column(Text, nullable=True)

    split_video_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    selected_audio_path: Mapped[str | None] = mapped_column(String(500), nullable=True)
    audio_duration: Mapped[float | None] = mapped_column(Float, nullable=True)
    speed_factor: Mapped[float | None] = mapped_column(Float, nullable=True)
    final_video_path: Mapped[str | None] = mapped_column(String(500), nullable=True)

    status: Mapped[SceneStatus] = mapped_column(
        _enum_column(SceneStatus, "scenestatus"), nullable=False, default=SceneStatus.PENDING
    )
    failure_reason: Mapped[str | None] = mapped_column(Text, nullable=True)
    result_metadata: Mapped[dict[str, Any] | None] = mapped_column(JSON, nullable=True)

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow
    )

    __table_args__ = (UniqueConstraint("job_id", "scene_index", name="uq_job_scenes_index"),)

    @property
    def narrations(self) -> list[str]:
        """Non-empty narration candidates in version order."""
        return [n for n in (self.narration_v1, self.narration_v2, self.narration_v3) if n]

    def __repr__(self) -> str:
        return f"<SceneTask({self.scene_key}, job={self.job_id!r}, status={self.status.value})>"
