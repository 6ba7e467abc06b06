"""Persistence contract: step history, checkpoint, scenes and job rows.

This module implements the repository the Workflow Executor writes through.
Each write is a short transaction that commits before the caller proceeds,
so a crash between a write and the next sub-step is recoverable by replaying
from the last terminal record.

Key Responsibilities:
- StepHistoryStore: append-only StepRecord log; attempt bookkeeping
  (increasing attempt numbers, stale ``running`` attempts closed with a
  "step restarted" failure before a new attempt starts)
- JobStateStore: the single mutable checkpoint row (current stage/sub-step,
  scene counters, final outputs, stopped-by-user flag, heartbeat)
- SceneStore: SceneTask rows of a job
- JobStore: Job status transitions and terminal error fields
- JobRepository: bundles the stores behind one lock

Concurrency:
    Scene fan-out writes from several tasks at once. All stores of one
    repository share an ``asyncio.Lock`` so transactions never interleave on
    a shared connection, and ``processed_scenes`` is incremented in SQL.

Usage:
    repo = JobRepository(session_factory)
    attempt = await repo.history.start_attempt(job_id, "extract_scenes", "split_scenes")
    await repo.history.complete_attempt(attempt, output_data={...})
"""

import asyncio
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from dataclasses import dataclass
from datetime import datetime
from typing import Any

from sqlalchemy import delete, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cutflow.exceptions import JobNotFoundError
from cutflow.models import (
    Job,
    JobState,
    JobStatus,
    SceneTask,
    StepRecord,
    StepStatus,
    utcnow,
)
from cutflow.schemas.job import ValidatedScene
from cutflow.services.step_registry import StepKey, latest_by_key
from cutflow.utils.logging import get_logger

log = get_logger(__name__)

STEP_RESTARTED_MESSAGE = "step restarted"


@dataclass(frozen=True)
class StepAttempt:
    """Handle for an attempt whose ``running`` row has been appended."""

    job_id: str
    stage_id: str
    sub_step_id: str
    scene_id: str | None
    attempt: int
    started_at: datetime
    record_id: int
    input_data: dict[str, Any] | None = None

    @property
    def key(self) -> StepKey:
        return (self.stage_id, self.sub_step_id, self.scene_id)


class _Store:
    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        lock: asyncio.Lock | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._lock = lock or asyncio.Lock()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            async with self._session_factory() as db, db.begin():
                yield db

    @asynccontextmanager
    async def _read(self) -> AsyncIterator[AsyncSession]:
        async with self._lock:
            async with self._session_factory() as db:
                yield db


def _key_filter(job_id: str, stage_id: str, sub_step_id: str, scene_id: str | None) -> list[Any]:
    scene_clause = StepRecord.scene_id.is_(None) if scene_id is None else StepRecord.scene_id == scene_id
    return [
        StepRecord.job_id == job_id,
        StepRecord.stage_id == stage_id,
        StepRecord.sub_step_id == sub_step_id,
        scene_clause,
    ]


async def _upsert_state(db: AsyncSession, job_id: str, fields: dict[str, Any]) -> JobState:
    state = await db.get(JobState, job_id)
    if state is None:
        state = JobState(job_id=job_id)
        db.add(state)
    for name, value in fields.items():
        setattr(state, name, value)
    return state


def _elapsed_ms(started_at: datetime, ended_at: datetime) -> int:
    return max(int((ended_at - started_at).total_seconds() * 1000), 0)


class StepHistoryStore(_Store):
    """Append-only store of StepRecord rows."""

    async def append(self, record: StepRecord) -> int:
        """Append one record and return its id."""
        async with self._transaction() as db:
            db.add(record)
            await db.flush()
            return record.id

    async def query_by_job(self, job_id: str) -> list[StepRecord]:
        """Return every record of a job in append order."""
        async with self._read() as db:
            result = await db.execute(
                select(StepRecord).where(StepRecord.job_id == job_id).order_by(StepRecord.id)
            )
            return list(result.scalars().all())

    async def latest_records(self, job_id: str) -> dict[StepKey, StepRecord]:
        """Return the effective (latest) record of every key."""
        return latest_by_key(await self.query_by_job(job_id))

    async def start_attempt(
        self,
        job_id: str,
        stage_id: str,
        sub_step_id: str,
        scene_id: str | None = None,
        *,
        input_data: dict[str, Any] | None = None,
        checkpoint: dict[str, Any] | None = None,
    ) -> StepAttempt:
        """Append a ``running`` row for the next attempt of a key.

        If the key's latest row is still ``running`` (the process died during
        that attempt), a ``failed`` row with message "step restarted" is
        appended first so at most one attempt is effectively running.

        Args:
            job_id: Job id.
            stage_id: Major stage id.
            sub_step_id: Sub-step id.
            scene_id: Scene key for per-scene sub-steps.
            input_data: Optional validated input payload.
            checkpoint: JobState fields updated in the same transaction.

        Returns:
            StepAttempt handle used to close the attempt.
        """
        now = utcnow()
        async with self._transaction() as db:
            filters = _key_filter(job_id, stage_id, sub_step_id, scene_id)
            latest = (
                await db.execute(
                    select(StepRecord).where(*filters).order_by(StepRecord.id.desc()).limit(1)
                )
            ).scalar_one_or_none()
            max_attempt = (
                await db.execute(select(func.max(StepRecord.attempt)).where(*filters))
            ).scalar_one_or_none() or 0

            if latest is not None and latest.status == StepStatus.RUNNING:
                db.add(
                    StepRecord(
                        job_id=job_id,
                        stage_id=stage_id,
                        sub_step_id=sub_step_id,
                        scene_id=scene_id,
                        status=StepStatus.FAILED,
                        attempt=latest.attempt,
                        started_at=latest.started_at,
                        completed_at=now,
                        error_message=STEP_RESTARTED_MESSAGE,
                    )
                )
                log.warning(
                    "stale_running_attempt_closed",
                    job_id=job_id,
                    stage=stage_id,
                    sub_step=sub_step_id,
                    scene_id=scene_id,
                    attempt=latest.attempt,
                )

            record = StepRecord(
                job_id=job_id,
                stage_id=stage_id,
                sub_step_id=sub_step_id,
                scene_id=scene_id,
                status=StepStatus.RUNNING,
                attempt=max_attempt + 1,
                started_at=now,
                input_data=input_data,
            )
            db.add(record)
            if checkpoint:
                await _upsert_state(db, job_id, {**checkpoint, "heartbeat_at": now})
            await db.flush()

            return StepAttempt(
                job_id=job_id,
                stage_id=stage_id,
                sub_step_id=sub_step_id,
                scene_id=scene_id,
                attempt=record.attempt,
                started_at=now,
                record_id=record.id,
                input_data=input_data,
            )

    async def _close(
        self,
        attempt: StepAttempt,
        status: StepStatus,
        *,
        output_data: dict[str, Any] | None = None,
        error_message: str | None = None,
        error_metadata: dict[str, Any] | None = None,
    ) -> int:
        now = utcnow()
        record = StepRecord(
            job_id=attempt.job_id,
            stage_id=attempt.stage_id,
            sub_step_id=attempt.sub_step_id,
            scene_id=attempt.scene_id,
            status=status,
            attempt=attempt.attempt,
            started_at=attempt.started_at,
            completed_at=now,
            duration_ms=_elapsed_ms(attempt.started_at, now),
            input_data=attempt.input_data,
            output_data=output_data,
            error_message=error_message,
            error_metadata=error_metadata,
        )
        async with self._transaction() as db:
            db.add(record)
            await _upsert_state(db, attempt.job_id, {"heartbeat_at": now})
            await db.flush()
            return record.id

    async def complete_attempt(
        self, attempt: StepAttempt, output_data: dict[str, Any] | None = None
    ) -> int:
        return await self._close(attempt, StepStatus.COMPLETED, output_data=output_data)

    async def skip_attempt(
        self, attempt: StepAttempt, output_data: dict[str, Any] | None = None
    ) -> int:
        """Close an attempt whose precondition does not apply to this job."""
        return await self._close(attempt, StepStatus.SKIPPED, output_data=output_data)

    async def fail_attempt(
        self,
        attempt: StepAttempt,
        error_message: str,
        error_metadata: dict[str, Any] | None = None,
    ) -> int:
        return await self._close(
            attempt,
            StepStatus.FAILED,
            error_message=error_message,
            error_metadata=error_metadata,
        )

    async def record_skipped(
        self,
        job_id: str,
        stage_id: str,
        sub_step_id: str,
        scene_id: str | None = None,
        output_data: dict[str, Any] | None = None,
    ) -> StepAttempt:
        """Append a running/skipped pair for a sub-step that does not apply."""
        attempt = await self.start_attempt(job_id, stage_id, sub_step_id, scene_id)
        await self.skip_attempt(attempt, output_data)
        return attempt


class JobStateStore(_Store):
    """Single mutable checkpoint row per job."""

    async def get(self, job_id: str) -> JobState | None:
        async with self._read() as db:
            return await db.get(JobState, job_id)

    async def upsert(self, job_id: str, **fields: Any) -> None:
        """Create or partially update the checkpoint row."""
        async with self._transaction() as db:
            await _upsert_state(db, job_id, fields)

    async def increment_processed(self, job_id: str, by: int = 1) -> None:
        """Atomically add to ``processed_scenes``."""
        async with self._transaction() as db:
            await db.execute(
                update(JobState)
                .where(JobState.job_id == job_id)
                .values(processed_scenes=JobState.processed_scenes + by, heartbeat_at=utcnow())
            )

    async def mark_stopped_by_user(self, job_id: str) -> None:
        async with self._transaction() as db:
            await _upsert_state(db, job_id, {"stopped_by_user": True})


class SceneStore(_Store):
    """SceneTask rows of a job."""

    async def replace_scenes(self, job_id: str, scenes: list[ValidatedScene]) -> list[SceneTask]:
        """Replace all scene rows of a job with freshly validated scenes."""
        async with self._transaction() as db:
            await db.execute(delete(SceneTask).where(SceneTask.job_id == job_id))
            rows = [
                SceneTask(
                    job_id=job_id,
                    scene_index=scene.scene_index,
                    scene_key=scene.scene_key,
                    source_video_index=scene.source_video_index,
                    source_start=scene.start,
                    source_end=scene.end,
                    duration_seconds=scene.duration_seconds,
                    use_original_audio=scene.use_original_audio,
                    description=scene.description,
                    narration_script=scene.narration,
                    is_skipped=scene.is_skipped,
                    skip_reason=scene.skip_reason,
                )
                for scene in scenes
            ]
            db.add_all(rows)
            return rows

    async def list_scenes(self, job_id: str, *, include_skipped: bool = False) -> list[SceneTask]:
        """Return scenes ordered by index (validation-skipped ones excluded by default)."""
        async with self._read() as db:
            query = select(SceneTask).where(SceneTask.job_id == job_id)
            if not include_skipped:
                query = query.where(SceneTask.is_skipped.is_(False))
            result = await db.execute(query.order_by(SceneTask.scene_index))
            return list(result.scalars().all())

    async def get_scene(self, job_id: str, scene_key: str) -> SceneTask | None:
        async with self._read() as db:
            result = await db.execute(
                select(SceneTask).where(
                    SceneTask.job_id == job_id, SceneTask.scene_key == scene_key
                )
            )
            return result.scalar_one_or_none()

    async def update_scene(self, job_id: str, scene_key: str, **fields: Any) -> None:
        """Partially update one scene row."""
        async with self._transaction() as db:
            await db.execute(
                update(SceneTask)
                .where(SceneTask.job_id == job_id, SceneTask.scene_key == scene_key)
                .values(**fields, updated_at=utcnow())
            )


class JobStore(_Store):
    """Job rows: status transitions and terminal error fields."""

    async def get(self, job_id: str) -> Job:
        """Load a job.

        Raises:
            JobNotFoundError: If no job has this id.
        """
        async with self._read() as db:
            job = await db.get(Job, job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        return job

    async def mark_processing(self, job_id: str) -> Job:
        """Move a pending job to processing; a processing job (resume) is left as is."""
        async with self._transaction() as db:
            job = await db.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status == JobStatus.PENDING:
                job.status = JobStatus.PROCESSING
                job.started_at = utcnow()
                job.error_message = None
                job.error_category = None
                job.error_metadata = None
            else:
                # Raises InvalidStateTransitionError for terminal jobs
                job.status = JobStatus.PROCESSING
            return job

    async def mark_completed(self, job_id: str) -> None:
        async with self._transaction() as db:
            job = await db.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            job.status = JobStatus.COMPLETED
            job.completed_at = utcnow()

    async def mark_failed(
        self,
        job_id: str,
        error_message: str,
        error_category: str | None = None,
        error_metadata: dict[str, Any] | None = None,
    ) -> bool:
        """Fail a job and store its public error fields.

        Returns:
            True if the job was failed, False if it was already terminal.
        """
        async with self._transaction() as db:
            job = await db.get(Job, job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                log.warning("job_already_terminal", job_id=job_id, status=job.status.value)
                return False
            job.status = JobStatus.FAILED
            job.error_message = error_message
            job.error_category = error_category
            job.error_metadata = error_metadata
            job.completed_at = utcnow()
            return True

    async def list_by_status(self, status: JobStatus, limit: int | None = None) -> list[Job]:
        """Jobs with ``status``, oldest first."""
        async with self._read() as db:
            query = select(Job).where(Job.status == status).order_by(Job.created_at, Job.id)
            if limit is not None:
                query = query.limit(limit)
            result = await db.execute(query)
            return list(result.scalars().all())


class JobRepository:
    """Bundle of stores sharing one session factory and one lock.

    Example:
        >>> repo = JobRepository(session_factory)
        >>> job = await repo.jobs.get(job_id)
        >>> records = await repo.history.query_by_job(job_id)
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]) -> None:
        self.session_factory = session_factory
        lock = asyncio.Lock()
        self.history = StepHistoryStore(session_factory, lock)
        self.state = JobStateStore(session_factory, lock)
        self.scenes = SceneStore(session_factory, lock)
        self.jobs = JobStore(session_factory, lock)
