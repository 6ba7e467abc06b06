"""Worker process entry point for the cutflow editing pipeline.

The worker owns the admission queue and the workflow executor of one
process. It polls the job store for pending jobs, admits them while the
queue has room, and recovers jobs left ``processing`` by a previous process.

Architecture Pattern:
    - Separate Process: one worker per machine, jobs run as asyncio tasks
    - Async Execution: all database operations use async/await patterns
    - Short Transactions: every status change and step record commits alone
    - Graceful Shutdown: SIGTERM/SIGINT stop polling, cancel running jobs
      (they stay ``processing`` and are resumed by the next worker)

Zombie Recovery:
    A ``processing`` job not running in this process whose JobState
    heartbeat is older than HEARTBEAT_STALE_SECONDS is resumed (default) or
    failed with an "interrupted" message when RESUME_INTERRUPTED_JOBS=false.

Usage:
    Local Development:
        ANALYSIS_CLIENT=mypkg.clients:Analysis \\
        NARRATION_CLIENT=mypkg.clients:Narration \\
        SPEECH_CLIENT=mypkg.clients:Speech \\
        python -m cutflow.worker

    Installed:
        cutflow-worker
"""

import asyncio
import contextlib
import importlib
import signal
import sys
from datetime import datetime, timedelta, timezone
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from cutflow import config
from cutflow.clients.downloader import HttpDownloader
from cutflow.clients.protocols import AnalysisClient, NarrationClient, SpeechClient
from cutflow.database import create_engine_and_factory, init_models
from cutflow.exceptions import ConfigurationError, JobAlreadyRunningError, QueueFullError
from cutflow.models import Job, JobStatus, utcnow
from cutflow.services.job_queue import JobAdmissionQueue
from cutflow.services.step_history import JobRepository
from cutflow.services.workflow_executor import WorkflowExecutor
from cutflow.utils.logging import get_logger

log = get_logger(__name__)

INTERRUPTED_MESSAGE = "Job interrupted: worker stopped while it was processing"

_CLIENT_PROTOCOLS: dict[str, type] = {
    "analysis": AnalysisClient,
    "narration": NarrationClient,
    "speech": SpeechClient,
}


def load_client(kind: str) -> Any:
    """Build the external client configured for ``kind``.

    The environment variable (``ANALYSIS_CLIENT`` etc.) holds a
    ``module:attribute`` path to a zero-argument factory or class.

    Raises:
        ConfigurationError: If the path is missing, cannot be imported, or
            the built object does not implement the client protocol.
    """
    env_name = f"{kind.upper()}_CLIENT"
    path = config.get_client_import_path(kind)
    if not path:
        raise ConfigurationError(f"{env_name} environment variable not set")

    module_name, _, attribute = path.partition(":")
    if not module_name or not attribute:
        raise ConfigurationError(f"{env_name} must look like 'module:attribute', got {path!r}")
    try:
        module = importlib.import_module(module_name)
    except ImportError as e:
        raise ConfigurationError(f"{env_name}: cannot import {module_name}: {e}") from e
    try:
        factory = getattr(module, attribute)
    except AttributeError as e:
        raise ConfigurationError(f"{env_name}: {module_name} has no attribute {attribute}") from e

    client = factory()
    if not isinstance(client, _CLIENT_PROTOCOLS[kind]):
        raise ConfigurationError(
            f"{env_name}: {path} does not implement {_CLIENT_PROTOCOLS[kind].__name__}"
        )
    return client


def _as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes even for timezone-aware columns
    return value if value.tzinfo else value.replace(tzinfo=timezone.utc)


class Worker:
    """Polling loop around one admission queue.

    Args:
        session_factory: Async session factory of the job store.
        queue: Admission queue whose runner is ``WorkflowExecutor.run``.
        poll_interval: Seconds between polls (default WORKER_POLL_INTERVAL_SECONDS).
        heartbeat_stale_seconds: Zombie threshold (default HEARTBEAT_STALE_SECONDS).
        resume_interrupted: Resume (True) or fail (False) zombie jobs
            (default RESUME_INTERRUPTED_JOBS).
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        queue: JobAdmissionQueue,
        *,
        poll_interval: float | None = None,
        heartbeat_stale_seconds: float | None = None,
        resume_interrupted: bool | None = None,
    ) -> None:
        self.repo = JobRepository(session_factory)
        self.queue = queue
        self.poll_interval = (
            poll_interval if poll_interval is not None else config.get_worker_poll_interval()
        )
        self.heartbeat_stale_seconds = (
            heartbeat_stale_seconds
            if heartbeat_stale_seconds is not None
            else config.get_heartbeat_stale_seconds()
        )
        self.resume_interrupted = (
            resume_interrupted
            if resume_interrupted is not None
            else config.get_resume_interrupted_jobs()
        )
        self._shutdown = asyncio.Event()

    @property
    def shutdown_requested(self) -> bool:
        return self._shutdown.is_set()

    def request_shutdown(self, signum: int | None = None) -> None:
        """Stop polling; running jobs are cancelled when the loop exits."""
        log.info(
            "shutdown_signal_received",
            signal=signum,
            signal_name=signal.Signals(signum).name if signum else None,
        )
        self._shutdown.set()

    async def _last_seen(self, job: Job) -> datetime | None:
        state = await self.repo.state.get(job.id)
        seen = (state.heartbeat_at if state else None) or job.started_at or job.updated_at
        return _as_utc(seen) if seen else None

    async def recover_zombies(self) -> int:
        """Resume or fail stale ``processing`` jobs not running here.

        Returns:
            Number of jobs resumed or failed.
        """
        stale_before = utcnow() - timedelta(seconds=self.heartbeat_stale_seconds)
        recovered = 0
        for job in await self.repo.jobs.list_by_status(JobStatus.PROCESSING):
            if self.queue.is_running(job.id):
                continue
            last_seen = await self._last_seen(job)
            if last_seen is not None and last_seen > stale_before:
                continue

            if not self.resume_interrupted:
                await self.repo.jobs.mark_failed(
                    job.id, INTERRUPTED_MESSAGE, "system", {"interrupted": True}
                )
                log.warning("zombie_job_failed", job_id=job.id, last_seen=last_seen)
                recovered += 1
                continue

            try:
                self.queue.enqueue(job.id)
            except QueueFullError:
                log.info("zombie_resume_deferred", job_id=job.id, reason="queue_full")
                break
            except JobAlreadyRunningError:
                continue
            log.warning("zombie_job_resumed", job_id=job.id, last_seen=last_seen)
            recovered += 1
        return recovered

    async def poll_once(self) -> int:
        """Recover zombies, then admit pending jobs oldest-first while there is room.

        Returns:
            Number of pending jobs admitted.
        """
        await self.recover_zombies()
        status = self.queue.get_status()
        free = status.max_concurrent - status.running
        if free <= 0:
            return 0

        admitted = 0
        for job in await self.repo.jobs.list_by_status(JobStatus.PENDING, limit=free):
            try:
                self.queue.enqueue(job.id)
            except QueueFullError:
                # Only a race with a zombie resume gets here; the job stays pending
                # for the next tick instead of being failed (DESIGN.md, queue full)
                log.info("job_admission_deferred", job_id=job.id, reason="queue_full")
                break
            except JobAlreadyRunningError:
                continue
            admitted += 1
        return admitted

    async def run(self) -> None:
        """Poll until shutdown is requested, then cancel running jobs."""
        log.info(
            "worker_started",
            poll_interval=self.poll_interval,
            max_concurrent_jobs=self.queue.max_concurrent,
            resume_interrupted=self.resume_interrupted,
        )
        try:
            while not self._shutdown.is_set():
                try:
                    await self.poll_once()
                except Exception as e:
                    # Store outages are transient; the next tick tries again
                    log.exception("worker_poll_failed", error=str(e), error_type=type(e).__name__)
                with contextlib.suppress(asyncio.TimeoutError):
                    await asyncio.wait_for(self._shutdown.wait(), timeout=self.poll_interval)
        finally:
            await self.queue.shutdown()
            log.info("worker_shutdown")


async def worker_main_loop() -> None:
    """Build the executor, queue and worker from configuration and run them."""
    analysis = load_client("analysis")
    narration = load_client("narration")
    speech = load_client("speech")

    engine, session_factory = create_engine_and_factory()
    downloader = HttpDownloader()
    try:
        await init_models(engine)
        executor = WorkflowExecutor(
            session_factory,
            analysis_client=analysis,
            narration_client=narration,
            speech_client=speech,
            downloader=downloader,
            watchdog_seconds=config.get_step_watchdog_seconds(),
        )
        queue = JobAdmissionQueue(executor.run)
        worker = Worker(session_factory, queue)

        loop = asyncio.get_running_loop()
        for signum in (signal.SIGTERM, signal.SIGINT):
            loop.add_signal_handler(signum, worker.request_shutdown, signum)

        await worker.run()
    finally:
        await downloader.close()
        await engine.dispose()
        log.info("database_connections_closed")


def main() -> None:
    """Worker process entry point.

    Exit Codes:
        0: Successful shutdown (SIGTERM/SIGINT received)
        1: Fatal error (configuration invalid, database unreachable)
    """
    try:
        asyncio.run(worker_main_loop())
    except ConfigurationError as e:
        log.error("configuration_load_failed", error=str(e))
        sys.exit(1)
    except KeyboardInterrupt:
        log.info("worker_interrupted_by_user")
    except Exception as e:
        log.exception("worker_fatal_error", error=str(e), error_type=type(e).__name__)
        sys.exit(1)
    log.info("worker_exited_successfully")


if __name__ == "__main__":
    main()
