"""Workflow Executor: drives one job through its stage plan.

This module implements the coordinating task of a running job. It walks the
stage plan from ``step_registry.get_stages``, runs each sub-step through the
attempt loop below, fans the per-scene sub-steps out with the scene
concurrency controller, and ends the job completed or failed.

Attempt Loop (per sub-step, per scene for per-scene sub-steps):
    1. Skip the key if its latest record is completed/skipped (resume),
       reusing the stored payload
    2. Append a ``running`` record (checkpoint and heartbeat in the same
       transaction)
    3. Run the action under the stuck-step watchdog
    4. Append ``completed``/``skipped`` with the output payload, or
       ``failed`` with the message and error metadata (stack included)
    5. On failure, retry per the workflow's RetryPolicy when the classifier
       says the error is retryable (tenacity drives the loop and backoff)

Failure Semantics:
    - Cancellation (job cancel event) fails the job with "Job stopped by user"
    - StepWatchdogError is never retried and fails the job
    - Anything else fails the job after retries with the classified category;
      the stack stays in the step record, the job row gets the public fields

``run()`` never raises: it returns the final JobStatus so the admission
queue can always release the job's slot.

Usage:
    executor = WorkflowExecutor(
        session_factory,
        analysis_client=analysis,
        narration_client=narration,
        speech_client=speech,
    )
    status = await executor.run(job_id, cancel_event)
"""

import asyncio
import contextlib
import functools
import time
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, replace
from pathlib import Path
from typing import Any

from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from tenacity import (
    AsyncRetrying,
    RetryCallState,
    retry_if_exception,
    stop_after_attempt,
    stop_any,
    wait_exponential,
)

from cutflow import config
from cutflow.clients.downloader import HttpDownloader
from cutflow.clients.protocols import AnalysisClient, NarrationClient, SpeechClient
from cutflow.exceptions import (
    InvalidStateTransitionError,
    JobCancelledError,
    JobNotFoundError,
    MediaCancelledError,
    SceneProcessingError,
    StepWatchdogError,
)
from cutflow.models import DONE_STEP_STATUSES, Job, JobStatus, SceneStatus, SceneTask, StepStatus
from cutflow.schemas.job import JobConfig, VideoInput
from cutflow.schemas.step_payloads import SceneStepSummary, dump_payload, parse_step_output
from cutflow.services.error_classifier import (
    build_error_metadata,
    classify,
    is_never_retried,
    public_error_metadata,
)
from cutflow.services.legacy_checkpoint import infer_completed_stages
from cutflow.services.media_service import MediaService
from cutflow.services.pipeline_steps import (
    STAGE_ACTIONS,
    JobRun,
    PipelineClients,
    Skipped,
    summarize_scene_loop,
)
from cutflow.services.scene_concurrency import resolve_scene_concurrency, run_bounded
from cutflow.services.scene_processing import (
    SCENE_ACTIONS,
    SceneWork,
    applicable_sub_steps,
    apply_output,
)
from cutflow.services.step_history import JobRepository
from cutflow.services.step_registry import (
    STAGE_IDS,
    Stage,
    StepContext,
    format_step_label,
    get_stages,
    latest_by_key,
)
from cutflow.services.workflows import RetryPolicy, WorkflowSpec, workflow_for
from cutflow.utils.logging import StructuredLogger, get_logger
from cutflow.utils.media_executor import MediaProcessExecutor

log = get_logger(__name__)

STOPPED_BY_USER_MESSAGE = "Job stopped by user"

MediaFactory = Callable[[str, asyncio.Event], MediaService]
Sleep = Callable[[float], Awaitable[None]]

_LOOP_END_POLICY = RetryPolicy(max_attempts=1, delay_seconds=0.0)


@dataclass(frozen=True)
class SceneOutcome:
    scene_key: str
    failure_reason: str | None = None

    @property
    def ok(self) -> bool:
        return self.failure_reason is None


def _stop_on_category_cap(retry_state: RetryCallState) -> bool:
    """Stop early when the error's category caps attempts (system errors)."""
    if retry_state.outcome is None or not retry_state.outcome.failed:
        return False
    error = retry_state.outcome.exception()
    if error is None:
        return False
    cap = classify(error).max_attempts
    return cap is not None and retry_state.attempt_number >= cap


def _error_message(error: BaseException) -> str:
    return str(error) or type(error).__name__


class WorkflowExecutor:
    """Runs jobs: one call to ``run`` per admitted job.

    Args:
        session_factory: Async session factory of the job store.
        analysis_client: Storyboard analysis client.
        narration_client: Narration candidate client.
        speech_client: Text-to-speech client.
        media_factory: Builds the MediaService of a job from
            ``(job_id, cancel_event)``; defaults to a real ffmpeg-backed one.
        downloader: Downloader for remote inputs (default HttpDownloader).
        workflow: Force one workflow for every job (default: by job type).
        sleep: Backoff sleep override (tests pass a no-op); by default the
            backoff wakes up early when the job is cancelled.
        workspace_root: Job workspace root (default WORKSPACE_ROOT).
        output_dir: Published outputs directory (default OUTPUT_DIR).
        watchdog_seconds: Override of the workflow's stuck-step bound.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        analysis_client: AnalysisClient,
        narration_client: NarrationClient,
        speech_client: SpeechClient,
        media_factory: MediaFactory | None = None,
        downloader: HttpDownloader | None = None,
        workflow: WorkflowSpec | None = None,
        sleep: Sleep | None = None,
        workspace_root: str | Path | None = None,
        output_dir: str | Path | None = None,
        watchdog_seconds: float | None = None,
    ) -> None:
        self.repo = JobRepository(session_factory)
        self.clients = PipelineClients(
            analysis=analysis_client,
            narration=narration_client,
            speech=speech_client,
            downloader=downloader or HttpDownloader(),
        )
        self.media_factory = media_factory or self._default_media_factory
        self.workflow = workflow
        self._sleep = sleep
        self.workspace_root = Path(workspace_root or config.get_workspace_root())
        self.output_dir = Path(output_dir or config.get_output_dir())
        self.watchdog_seconds = watchdog_seconds
        self._media_executor: MediaProcessExecutor | None = None

    def _default_media_factory(self, job_id: str, cancel_event: asyncio.Event) -> MediaService:
        if self._media_executor is None:
            self._media_executor = MediaProcessExecutor()
        return MediaService(
            self._media_executor,
            job_id=job_id,
            cancel_event=cancel_event,
            fonts_dir=config.get_subtitle_fonts_dir(),
        )

    # ------------------------------------------------------------------
    # Job lifecycle
    # ------------------------------------------------------------------

    async def run(
        self,
        job_id: str,
        cancel_event: asyncio.Event | None = None,
        *,
        workflow: WorkflowSpec | None = None,
    ) -> JobStatus:
        """Execute (or resume) a job to a terminal state.

        Returns:
            The job's final status. Never raises for job failures; task
            cancellation (worker shutdown) propagates and leaves the job
            ``processing`` for zombie recovery.
        """
        cancel_event = cancel_event or asyncio.Event()
        job_log = log.bind(job_id=job_id)

        try:
            job = await self.repo.jobs.mark_processing(job_id)
        except JobNotFoundError:
            job_log.error("job_not_found")
            return JobStatus.FAILED
        except InvalidStateTransitionError as e:
            job_log.warning("job_not_runnable", status=e.from_status.value)
            return e.from_status

        spec = workflow or self.workflow or workflow_for(job.job_type)
        started = time.monotonic()
        job_log.info(
            "job_started",
            workflow=spec.name,
            job_type=job.job_type.value,
            video_count=len(job.input_videos or []),
        )

        try:
            run = await self._build_run(job, spec, cancel_event, job_log)
            await self._execute(run, spec)
            if cancel_event.is_set():
                raise JobCancelledError()
            await self.repo.jobs.mark_completed(job_id)
        except Exception as e:
            return await self._fail_job(job_id, e, cancel_event, job_log)

        job_log.info("job_completed", duration_seconds=round(time.monotonic() - started, 2))
        return JobStatus.COMPLETED

    async def _fail_job(
        self,
        job_id: str,
        error: Exception,
        cancel_event: asyncio.Event,
        job_log: StructuredLogger,
    ) -> JobStatus:
        try:
            if cancel_event.is_set() or isinstance(error, JobCancelledError):
                await self.repo.state.mark_stopped_by_user(job_id)
                await self.repo.jobs.mark_failed(
                    job_id, STOPPED_BY_USER_MESSAGE, None, {"stopped_by_user": True}
                )
                job_log.info("job_stopped_by_user")
                return JobStatus.FAILED

            classified = classify(error)
            metadata = public_error_metadata(build_error_metadata(error, classified))
            await self.repo.jobs.mark_failed(
                job_id, _error_message(error), classified.category.value, metadata
            )
            job_log.error(
                "job_failed",
                error=_error_message(error),
                error_type=type(error).__name__,
                category=classified.category.value,
            )
        except Exception as e:
            # The store itself is failing; nothing more can be recorded
            job_log.exception(
                "job_failure_not_recorded",
                error=str(e),
                original_error=_error_message(error),
            )
        return JobStatus.FAILED

    async def _build_run(
        self,
        job: Job,
        spec: WorkflowSpec,
        cancel_event: asyncio.Event,
        job_log: StructuredLogger,
    ) -> JobRun:
        job_config = JobConfig.model_validate(job.config or {})
        videos = [
            VideoInput(url=v) if isinstance(v, str) else VideoInput.model_validate(v)
            for v in job.input_videos or []
        ]
        if not videos:
            raise ValueError("Invalid video input: job has no input videos")

        state = await self.repo.state.get(job.id)
        context = StepContext.from_dict(state.step_context if state else None)
        context = replace(
            context,
            video_count=len(videos),
            platform=job_config.platform,
            has_bgm=bool(job_config.bgm_url),
        )
        await self.repo.state.upsert(job.id, step_context=context.to_dict())

        subtitle_enabled = (
            job_config.subtitle_enabled
            if job_config.subtitle_enabled is not None
            else config.get_subtitle_enabled()
        )
        run = JobRun(
            job_id=job.id,
            job_type=job.job_type,
            videos=videos,
            config=job_config,
            repo=self.repo,
            media=self.media_factory(job.id, cancel_event),
            clients=self.clients,
            workspace_root=self.workspace_root,
            output_dir=self.output_dir,
            cancel_event=cancel_event,
            context=context,
            scene_concurrency=resolve_scene_concurrency(job_config.max_concurrent_scenes),
            narration_batch_size=config.get_narration_batch_size(),
            subtitle_enabled=subtitle_enabled,
            log=job_log,
        )
        await self._load_history(run)
        return run

    async def _load_history(self, run: JobRun) -> None:
        """Collect done keys and their payloads; apply the legacy shim if needed."""
        history = await self.repo.history.query_by_job(run.job_id)
        if not history:
            if await self._apply_legacy_checkpoint(run):
                history = await self.repo.history.query_by_job(run.job_id)

        for key, record in latest_by_key(history).items():
            if record.status not in DONE_STEP_STATUSES:
                continue
            try:
                payload = parse_step_output(record.output_data, scene_level=key[2] is not None)
            except ValidationError as e:
                run.log.warning(
                    "stored_payload_invalid",
                    stage=key[0],
                    sub_step=key[1],
                    scene_id=key[2],
                    error=str(e)[:300],
                )
                continue
            run.done[key] = payload
            if key[2] is None and payload is not None:
                run.outputs[key[1]] = payload

        if run.done:
            run.log.info("job_resumed", done_keys=len(run.done))

    async def _apply_legacy_checkpoint(self, run: JobRun) -> bool:
        state = await self.repo.state.get(run.job_id)
        scenes = await self.repo.scenes.list_scenes(run.job_id)
        completed = infer_completed_stages(state, scenes)
        if not completed:
            return False
        plan = {stage.id: stage for stage in get_stages(run.context)}
        for stage_id in completed:
            for sub_step in plan[stage_id].sub_steps:
                await self.repo.history.record_skipped(run.job_id, stage_id, sub_step.id)
        run.log.info("legacy_checkpoint_applied", stages=completed)
        return True

    # ------------------------------------------------------------------
    # Plan traversal
    # ------------------------------------------------------------------

    async def _execute(self, run: JobRun, spec: WorkflowSpec) -> None:
        for stage_id in STAGE_IDS:
            # Re-planned per stage: validation fills in scene facts
            stage = next(s for s in get_stages(run.context) if s.id == stage_id)
            run.log.info("stage_started", stage=stage_id, sub_steps=len(stage.sub_steps))
            if stage_id == "process_scenes":
                await self._process_scenes(run, spec, stage)
            else:
                for sub_step in stage.sub_steps:
                    await self._run_stage_step(run, spec, stage.id, sub_step.id)

    async def _run_stage_step(
        self, run: JobRun, spec: WorkflowSpec, stage_id: str, sub_step_id: str
    ) -> Any:
        action = STAGE_ACTIONS[sub_step_id]
        payload = await self._run_sub_step(
            run,
            spec,
            stage_id,
            sub_step_id,
            functools.partial(action, run),
            policy=spec.policy_for(sub_step_id),
        )
        if payload is not None:
            run.outputs[sub_step_id] = payload
        return payload

    # ------------------------------------------------------------------
    # Attempt loop
    # ------------------------------------------------------------------

    def _should_retry(self, run: JobRun, error: BaseException) -> bool:
        # CancelledError (worker shutdown) is a BaseException and must propagate
        if not isinstance(error, Exception):
            return False
        if is_never_retried(error) or run.cancel_event.is_set():
            return False
        return classify(error).is_retryable

    def _sleep_for(self, run: JobRun) -> Sleep:
        if self._sleep is not None:
            return self._sleep

        async def interruptible_sleep(seconds: float) -> None:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(run.cancel_event.wait(), timeout=seconds)

        return interruptible_sleep

    def _retrying(self, run: JobRun, policy: RetryPolicy, what: str) -> AsyncRetrying:
        def before_sleep(retry_state: RetryCallState) -> None:
            error = retry_state.outcome.exception() if retry_state.outcome else None
            run.log.warning(
                "retry_scheduled",
                target=what,
                attempt=retry_state.attempt_number,
                max_attempts=policy.max_attempts,
                delay=retry_state.next_action.sleep if retry_state.next_action else None,
                error=str(error)[:300] if error else None,
            )

        return AsyncRetrying(
            stop=stop_any(stop_after_attempt(policy.max_attempts), _stop_on_category_cap),
            wait=wait_exponential(
                multiplier=policy.delay_seconds,
                exp_base=policy.backoff,
                max=policy.max_delay_seconds,
            ),
            retry=retry_if_exception(lambda e: self._should_retry(run, e)),
            sleep=self._sleep_for(run),
            before_sleep=before_sleep,
            reraise=True,
        )

    async def _with_watchdog(
        self, spec: WorkflowSpec, sub_step_id: str, action: Callable[[], Awaitable[Any]]
    ) -> Any:
        limit = self.watchdog_seconds or spec.step_watchdog_seconds
        task = asyncio.ensure_future(action())
        try:
            done, _ = await asyncio.wait({task}, timeout=limit)
        except asyncio.CancelledError:
            task.cancel()
            raise
        if task in done:
            return task.result()

        task.cancel()
        with contextlib.suppress(asyncio.CancelledError, Exception):
            await task
        raise StepWatchdogError(sub_step_id, limit)

    async def _run_sub_step(
        self,
        run: JobRun,
        spec: WorkflowSpec,
        stage_id: str,
        sub_step_id: str,
        action: Callable[[], Awaitable[Any]],
        *,
        policy: RetryPolicy,
        scene_id: str | None = None,
    ) -> Any:
        key = (stage_id, sub_step_id, scene_id)
        if key in run.done:
            run.log.debug("sub_step_reused", stage=stage_id, sub_step=sub_step_id, scene_id=scene_id)
            return run.done[key]

        label = format_step_label(stage_id, sub_step_id, run.context)
        checkpoint = (
            None if scene_id else {"current_stage": stage_id, "current_sub_step": sub_step_id}
        )

        async for attempt in self._retrying(run, policy, sub_step_id):
            with attempt:
                if run.cancel_event.is_set():
                    raise JobCancelledError()
                handle = await self.repo.history.start_attempt(
                    run.job_id, stage_id, sub_step_id, scene_id, checkpoint=checkpoint
                )
                run.log.info(
                    "sub_step_started", step=label, scene_id=scene_id, attempt=handle.attempt
                )
                started = time.monotonic()
                try:
                    result = await self._with_watchdog(spec, sub_step_id, action)
                except Exception as e:
                    metadata = build_error_metadata(e)
                    await self.repo.history.fail_attempt(handle, _error_message(e), metadata)
                    run.log.warning(
                        "sub_step_failed",
                        step=label,
                        scene_id=scene_id,
                        attempt=handle.attempt,
                        error=_error_message(e)[:500],
                        error_type=type(e).__name__,
                        category=metadata["category"],
                    )
                    raise

                elapsed = round(time.monotonic() - started, 2)
                if isinstance(result, Skipped):
                    payload = result.output
                    await self.repo.history.skip_attempt(handle, dump_payload(payload))
                    run.log.info(
                        "sub_step_skipped", step=label, scene_id=scene_id, reason=result.reason
                    )
                else:
                    payload = result
                    await self.repo.history.complete_attempt(handle, dump_payload(payload))
                    run.log.info(
                        "sub_step_completed", step=label, scene_id=scene_id, duration_seconds=elapsed
                    )
                run.done[key] = payload
                return payload

        raise RuntimeError(f"Attempt loop of {sub_step_id} ended without an outcome")

    # ------------------------------------------------------------------
    # Scene fan-out
    # ------------------------------------------------------------------

    async def _process_scenes(self, run: JobRun, spec: WorkflowSpec, stage: Stage) -> None:
        # A closed loop is final, even with failed scenes left behind
        if (stage.id, "scene_loop_end", None) in run.done:
            run.log.debug("scene_loop_reused", stage=stage.id)
            return

        await self._run_stage_step(run, spec, stage.id, "scene_loop_start")

        per_scene = [s.id for s in stage.sub_steps if s.per_scene]
        failure = await self._fan_out(run, spec, stage.id, per_scene)
        await self._record_scene_summaries(run, spec, stage.id, per_scene)

        async def finish_loop() -> Any:
            if failure is not None:
                raise failure
            return await summarize_scene_loop(run)

        await self._run_sub_step(
            run, spec, stage.id, "scene_loop_end", finish_loop, policy=_LOOP_END_POLICY
        )

    async def _fan_out(
        self, run: JobRun, spec: WorkflowSpec, stage_id: str, per_scene: list[str]
    ) -> SceneProcessingError | None:
        """Process pending scenes in rounds governed by the scene loop policy.

        Returns:
            The final SceneProcessingError when failures remain and partial
            success is not allowed (or every scene failed), else None.
        """
        try:
            async for attempt in self._retrying(run, spec.scene_loop_policy, "scene_loop"):
                with attempt:
                    await self._fan_out_round(run, spec, stage_id, per_scene)
        except SceneProcessingError as e:
            if spec.allow_partial_scene_success and len(e.failures) < e.total:
                run.log.warning(
                    "scene_partial_success",
                    failed=len(e.failures),
                    total=e.total,
                    failed_scenes=list(e.failures),
                )
                return None
            return e
        return None

    async def _fan_out_round(
        self, run: JobRun, spec: WorkflowSpec, stage_id: str, per_scene: list[str]
    ) -> None:
        scenes = await self.repo.scenes.list_scenes(run.job_id)
        pending = [s for s in scenes if s.status != SceneStatus.COMPLETED]
        if not pending:
            return
        run.log.info(
            "scene_fan_out_started",
            pending=len(pending),
            total=len(scenes),
            concurrency=run.scene_concurrency,
        )
        outcomes = await run_bounded(
            pending,
            run.scene_concurrency,
            lambda scene: self._run_scene(run, spec, stage_id, per_scene, scene),
            cancel_event=run.cancel_event,
        )
        failures = {o.scene_key: o.failure_reason for o in outcomes if not o.ok}
        if failures:
            raise SceneProcessingError(failures, len(scenes))  # type: ignore[arg-type]

    async def _run_scene(
        self,
        run: JobRun,
        spec: WorkflowSpec,
        stage_id: str,
        per_scene: list[str],
        scene: SceneTask,
    ) -> SceneOutcome:
        """Run one scene's sub-steps; a scene failure is returned, not raised."""
        key = scene.scene_key
        await self.repo.scenes.update_scene(
            run.job_id, key, status=SceneStatus.PROCESSING, failure_reason=None
        )
        applicable = applicable_sub_steps(scene)
        try:
            work = SceneWork.from_scene(scene)
            for sub_step_id in per_scene:
                if sub_step_id not in applicable:
                    await self._skip_scene_step(run, stage_id, sub_step_id, key)
                    continue
                payload = await self._run_sub_step(
                    run,
                    spec,
                    stage_id,
                    sub_step_id,
                    functools.partial(SCENE_ACTIONS[sub_step_id], run, work),
                    policy=spec.policy_for(sub_step_id, per_scene=True),
                    scene_id=key,
                )
                apply_output(work, payload)
        except (JobCancelledError, StepWatchdogError, MediaCancelledError):
            raise
        except Exception as e:
            reason = _error_message(e)
            await self.repo.scenes.update_scene(
                run.job_id, key, status=SceneStatus.FAILED, failure_reason=reason
            )
            run.log.warning("scene_failed", scene_id=key, error=reason[:500])
            return SceneOutcome(key, reason)

        await self.repo.scenes.update_scene(
            run.job_id,
            key,
            status=SceneStatus.COMPLETED,
            final_video_path=work.video_path,
            failure_reason=None,
            result_metadata={
                "duration": work.video_duration,
                "speed_factor": work.match.adjusted_speed_factor if work.match else None,
            },
        )
        await self.repo.state.increment_processed(run.job_id)
        run.log.info("scene_completed", scene_id=key)
        return SceneOutcome(key)

    async def _skip_scene_step(
        self, run: JobRun, stage_id: str, sub_step_id: str, scene_key: str
    ) -> None:
        key = (stage_id, sub_step_id, scene_key)
        if key in run.done:
            return
        await self.repo.history.record_skipped(run.job_id, stage_id, sub_step_id, scene_key)
        run.done[key] = None

    async def _record_scene_summaries(
        self, run: JobRun, spec: WorkflowSpec, stage_id: str, per_scene: list[str]
    ) -> None:
        """Write the stage-level aggregate record of each per-scene sub-step."""
        latest = await self.repo.history.latest_records(run.job_id)
        scenes = await self.repo.scenes.list_scenes(run.job_id)
        for sub_step_id in per_scene:
            key = (stage_id, sub_step_id, None)
            if key in run.done:
                continue
            counts: Counter[StepStatus] = Counter(
                latest[(stage_id, sub_step_id, s.scene_key)].status
                for s in scenes
                if (stage_id, sub_step_id, s.scene_key) in latest
            )
            summary = SceneStepSummary(
                kind=sub_step_id,  # type: ignore[arg-type]
                completed=counts[StepStatus.COMPLETED],
                failed=counts[StepStatus.FAILED],
                skipped=counts[StepStatus.SKIPPED],
            )
            handle = await self.repo.history.start_attempt(
                run.job_id,
                stage_id,
                sub_step_id,
                checkpoint={"current_stage": stage_id, "current_sub_step": sub_step_id},
            )
            if summary.failed and not spec.allow_partial_scene_success:
                await self.repo.history.fail_attempt(
                    handle,
                    f"{summary.failed} of {len(scenes)} scenes failed",
                    {"summary": dump_payload(summary)},
                )
                continue
            if summary.completed == 0 and summary.failed == 0:
                await self.repo.history.skip_attempt(handle, dump_payload(summary))
            else:
                await self.repo.history.complete_attempt(handle, dump_payload(summary))
            run.done[key] = summary
