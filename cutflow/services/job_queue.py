"""Job Admission Queue: single-flight gate for running jobs.

At most ``max_concurrent_jobs`` jobs may be running at once. Admission is a
point-in-time decision: ``enqueue`` either starts the job immediately or
raises ``QueueFullError`` synchronously. Nothing is buffered; the caller
decides what to do with a rejected job (delete it, or mark it failed).

The queue is an explicitly constructed service passed to the worker, never a
module-level singleton. Its running set is guarded by a ``threading.Lock`` so
that ``get_status`` can be called from other threads (e.g. a health probe)
while the event loop admits and releases jobs.

Slot Release:
    The slot of a job is released in the ``finally`` of its task, so it is
    freed on completion, terminal failure, cancellation, and even when the
    runner itself raises.

Usage:
    queue = JobAdmissionQueue(executor.run, max_concurrent_jobs=1)
    try:
        queue.enqueue(job.id)
    except QueueFullError:
        await jobs.mark_failed(job.id, "Rejected: queue full", "system", {})
"""

import asyncio
import threading
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from typing import Any

from cutflow.config import get_max_concurrent_jobs
from cutflow.exceptions import JobAlreadyRunningError, QueueFullError
from cutflow.services.workflows import WorkflowSpec
from cutflow.utils.logging import get_logger

log = get_logger(__name__)

JobRunner = Callable[..., Awaitable[Any]]


@dataclass(frozen=True)
class QueueStatus:
    running: int
    max_concurrent: int
    job_ids: tuple[str, ...] = ()

    @property
    def can_create(self) -> bool:
        return self.running < self.max_concurrent


@dataclass
class _RunningJob:
    task: asyncio.Task[Any]
    cancel_event: asyncio.Event


class JobAdmissionQueue:
    """Bounded running set of jobs.

    Args:
        runner: Coroutine function called as
            ``runner(job_id, cancel_event, workflow=workflow)``; normally
            ``WorkflowExecutor.run``.
        max_concurrent_jobs: Capacity, defaults to MAX_CONCURRENT_JOBS.
    """

    def __init__(self, runner: JobRunner, max_concurrent_jobs: int | None = None) -> None:
        capacity = max_concurrent_jobs if max_concurrent_jobs is not None else get_max_concurrent_jobs()
        if capacity < 1:
            raise ValueError(f"max_concurrent_jobs must be >= 1, got {capacity}")
        self._runner = runner
        self._max_concurrent = capacity
        self._running: dict[str, _RunningJob] = {}
        self._lock = threading.Lock()

    @property
    def max_concurrent(self) -> int:
        return self._max_concurrent

    def enqueue(self, job_id: str, workflow: WorkflowSpec | None = None) -> asyncio.Task[Any]:
        """Admit ``job_id`` and start running it.

        Must be called from within a running event loop.

        Returns:
            The task running the job.

        Raises:
            JobAlreadyRunningError: If the job is already in the running set.
            QueueFullError: If the running set is full (``str(err) == "QUEUE_FULL"``).
        """
        with self._lock:
            if job_id in self._running:
                raise JobAlreadyRunningError(job_id)
            if len(self._running) >= self._max_concurrent:
                log.warning(
                    "job_admission_rejected",
                    job_id=job_id,
                    running=len(self._running),
                    max_concurrent=self._max_concurrent,
                )
                raise QueueFullError(len(self._running), self._max_concurrent)
            cancel_event = asyncio.Event()
            task = asyncio.get_running_loop().create_task(
                self._run(job_id, cancel_event, workflow), name=f"job-{job_id}"
            )
            self._running[job_id] = _RunningJob(task, cancel_event)
            running = len(self._running)

        log.info(
            "job_admitted",
            job_id=job_id,
            running=running,
            max_concurrent=self._max_concurrent,
            workflow=workflow.name if workflow else None,
        )
        return task

    async def _run(
        self, job_id: str, cancel_event: asyncio.Event, workflow: WorkflowSpec | None
    ) -> Any:
        try:
            return await self._runner(job_id, cancel_event, workflow=workflow)
        except Exception as e:
            log.error(
                "job_runner_crashed",
                job_id=job_id,
                error=str(e),
                error_type=type(e).__name__,
            )
            raise
        finally:
            with self._lock:
                self._running.pop(job_id, None)
                running = len(self._running)
            log.info("job_slot_released", job_id=job_id, running=running)

    def cancel(self, job_id: str) -> bool:
        """Signal cancellation to a running job.

        Returns:
            False when the job is not running.
        """
        with self._lock:
            entry = self._running.get(job_id)
        if entry is None:
            return False
        entry.cancel_event.set()
        log.info("job_cancel_requested", job_id=job_id)
        return True

    def is_running(self, job_id: str) -> bool:
        with self._lock:
            return job_id in self._running

    def get_status(self) -> QueueStatus:
        with self._lock:
            return QueueStatus(
                running=len(self._running),
                max_concurrent=self._max_concurrent,
                job_ids=tuple(self._running),
            )

    async def wait(self, job_id: str) -> Any:
        """Wait for a running job's task; returns None if it is not running."""
        with self._lock:
            entry = self._running.get(job_id)
        if entry is None:
            return None
        return await entry.task

    async def drain(self, *, cancel: bool = False) -> None:
        """Wait for every running job, optionally signalling cancellation first."""
        with self._lock:
            entries = list(self._running.values())
        if cancel:
            for entry in entries:
                entry.cancel_event.set()
        if entries:
            await asyncio.gather(*(e.task for e in entries), return_exceptions=True)

    async def shutdown(self) -> None:
        """Cancel every running task and wait for it to unwind.

        Unlike ``cancel``, the jobs' cancel events are left unset: the tasks
        die with CancelledError, their jobs stay ``processing`` and zombie
        recovery resumes them on the next start.
        """
        with self._lock:
            entries = list(self._running.values())
        for entry in entries:
            entry.task.cancel()
        if entries:
            await asyncio.gather(*(e.task for e in entries), return_exceptions=True)
        log.info("job_queue_shutdown", cancelled=len(entries))
