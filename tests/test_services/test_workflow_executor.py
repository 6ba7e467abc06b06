"""Tests for the WorkflowExecutor.

Every test drives a real executor over an in-memory SQLite store with fake
clients and a fake media executor underneath the real MediaService, so the
stage actions, step history and scene bookkeeping all run for real.

Test Coverage:
- Full single-video run: completed job, published output, 100% progress
- Multi-video run where one scene keeps timing out: per-scene retries,
  scene-loop rounds, classified job failure, queue slot released
- Partial scene success when the workflow allows it, kept on resume
- Transient errors retried with the policy backoff, configuration errors not retried
- Resume after a crash reuses completed sub-steps and closes stale attempts
- User cancellation and the stuck-step watchdog
- Legacy checkpoint inference for jobs without step history
- Missing and terminal jobs
"""

import asyncio
import contextlib
import dataclasses
from pathlib import Path

import pytest

from cutflow.exceptions import ConfigurationError, MediaProcessError, MediaTimeoutError
from cutflow.models import JobStatus, JobType, SceneStatus, StepStatus
from cutflow.services.job_queue import JobAdmissionQueue
from cutflow.services.media_service import MediaService
from cutflow.services.step_registry import StepContext, progress
from cutflow.services.workflow_executor import STOPPED_BY_USER_MESSAGE, WorkflowExecutor
from cutflow.services.workflows import SINGLE_VIDEO_WORKFLOW, RetryPolicy
from tests.support.factories import (
    create_scene,
    create_source_videos,
    create_storyboard,
    insert_job,
)
from tests.support.fakes import (
    FakeAnalysisClient,
    FakeDownloader,
    FakeMediaExecutor,
    FakeNarrationClient,
    FakeSpeechClient,
    no_sleep,
)


class BlockingSpeechClient(FakeSpeechClient):
    """Blocks the first synthesis whose text mentions ``block_on``.

    Without a ``release`` event the call blocks until its task is cancelled.
    """

    def __init__(self, block_on: str, release: asyncio.Event | None = None) -> None:
        super().__init__()
        self.block_on = block_on
        self.release = release
        self.reached = asyncio.Event()

    async def synthesize(self, text, output_path, *, voice_id=None):
        if self.block_on in text and not self.reached.is_set():
            self.reached.set()
            await (self.release or asyncio.Event()).wait()
        return await super().synthesize(text, output_path, voice_id=voice_id)


class FlakyAnalysisClient(FakeAnalysisClient):
    """Raises the given errors on the first analyze calls, then succeeds."""

    def __init__(self, storyboards, errors: list[Exception]) -> None:
        super().__init__(storyboards)
        self.errors = list(errors)

    async def analyze(self, request):
        self.requests.append(request)
        if self.errors:
            raise self.errors.pop(0)
        return list(self.storyboards)


def build_executor(
    session_factory,
    tmp_path: Path,
    *,
    media: FakeMediaExecutor,
    analysis: FakeAnalysisClient,
    narration: FakeNarrationClient | None = None,
    speech: FakeSpeechClient | None = None,
    sleep=no_sleep,
    **kwargs,
) -> WorkflowExecutor:
    return WorkflowExecutor(
        session_factory,
        analysis_client=analysis,
        narration_client=narration or FakeNarrationClient(),
        speech_client=speech or FakeSpeechClient(),
        media_factory=lambda job_id, cancel_event: MediaService(
            media, job_id=job_id, cancel_event=cancel_event  # type: ignore[arg-type]
        ),
        downloader=FakeDownloader(),  # type: ignore[arg-type]
        sleep=sleep,
        workspace_root=tmp_path / "workspace",
        output_dir=tmp_path / "output",
        **kwargs,
    )


def records_for(history, sub_step_id: str, scene_id: str | None = None):
    return [r for r in history if r.sub_step_id == sub_step_id and r.scene_id == scene_id]


def single_video_storyboards():
    return [create_storyboard(1, 0, 10), create_storyboard(2, 10, 20), create_storyboard(3, 20, 30)]


@pytest.mark.asyncio
class TestSuccessfulRun:
    """Test a job that runs every stage to completion."""

    async def test_single_video_job_completes_and_publishes(self, session_factory, repo, tmp_path):
        """Test dubbed and original-audio scenes, subtitles and background music."""
        sources = create_source_videos(tmp_path / "sources")
        bgm = tmp_path / "bgm.mp3"
        bgm.write_bytes(b"music")
        job = await insert_job(
            session_factory,
            input_videos=sources,
            config={"bgm_url": str(bgm), "original_audio_scene_count": 1},
        )
        media = FakeMediaExecutor(durations={sources[0]: 60.0})
        narration = FakeNarrationClient()
        speech = FakeSpeechClient()
        executor = build_executor(
            session_factory,
            tmp_path,
            media=media,
            analysis=FakeAnalysisClient(
                [create_storyboard(1, 0, 10), create_storyboard(2, 10, 20, use_original_audio=True)]
            ),
            narration=narration,
            speech=speech,
        )

        status = await executor.run(job.id)

        assert status == JobStatus.COMPLETED
        stored = await repo.jobs.get(job.id)
        assert stored.status == JobStatus.COMPLETED
        assert stored.error_message is None

        output = tmp_path / "output" / f"{job.id}.mp4"
        assert output.exists()
        state = await repo.state.get(job.id)
        assert state.final_video_path == str(output)
        assert state.processed_scenes == 2

        # Only the dubbed scene gets narrations, speech and subtitles
        assert narration.batches == [["scene-1"]]
        assert len(speech.requests) == 3
        assert len(media.operations("split")) == 2
        assert len(media.operations("merge_audio_video")) == 1
        assert len(media.operations("burn_subtitle")) == 1
        assert len(media.operations("reencode")) == 1
        assert len(media.operations("add_bgm")) == 1

        history = await repo.history.query_by_job(job.id)
        skipped = records_for(history, "synthesize_audio", "scene-2")
        assert skipped[-1].status == StepStatus.SKIPPED
        assert progress(history, StepContext.from_dict(state.step_context)) == 100.0

    async def test_transient_analysis_error_is_retried(self, session_factory, repo, tmp_path):
        """Test that a connection error is retried and the second attempt succeeds."""
        job = await insert_job(session_factory, input_videos=create_source_videos(tmp_path))
        analysis = FlakyAnalysisClient(
            [create_storyboard(1, 0, 5)], [ConnectionError("connection reset by peer")]
        )
        executor = build_executor(
            session_factory, tmp_path, media=FakeMediaExecutor(), analysis=analysis
        )

        assert await executor.run(job.id) == JobStatus.COMPLETED

        history = await repo.history.query_by_job(job.id)
        records = records_for(history, "analyze_video")
        assert [r.status for r in records] == [
            StepStatus.RUNNING,
            StepStatus.FAILED,
            StepStatus.RUNNING,
            StepStatus.COMPLETED,
        ]
        assert [r.attempt for r in records] == [1, 1, 2, 2]
        assert records[1].error_metadata["category"] == "retryable"
        assert "stack" in records[1].error_metadata

    async def test_backoff_follows_step_policy(self, session_factory, repo, tmp_path):
        """Test the exponential delay before each retry, capped at the policy maximum."""
        job = await insert_job(session_factory, input_videos=create_source_videos(tmp_path))
        analysis = FlakyAnalysisClient(
            [create_storyboard(1, 0, 5)],
            [ConnectionError("connection reset by peer") for _ in range(3)],
        )
        workflow = dataclasses.replace(
            SINGLE_VIDEO_WORKFLOW,
            step_policies={
                "analyze_video": RetryPolicy(
                    max_attempts=4, delay_seconds=2.0, backoff=3.0, max_delay_seconds=10.0
                )
            },
        )
        delays: list[float] = []

        async def record_sleep(seconds: float) -> None:
            delays.append(seconds)

        executor = build_executor(
            session_factory,
            tmp_path,
            media=FakeMediaExecutor(),
            analysis=analysis,
            sleep=record_sleep,
            workflow=workflow,
        )

        assert await executor.run(job.id) == JobStatus.COMPLETED

        assert delays == [2.0, 6.0, 10.0]
        history = await repo.history.query_by_job(job.id)
        assert records_for(history, "analyze_video")[-1].attempt == 4


@pytest.mark.asyncio
class TestSceneFailures:
    """Test per-scene failures, scene-loop rounds and partial success."""

    async def test_scene_timeout_fails_multi_video_job(self, session_factory, repo, tmp_path):
        """Test a scene whose merge keeps timing out across both scene-loop rounds."""
        sources = create_source_videos(tmp_path / "sources", 2)
        job = await insert_job(
            session_factory, input_videos=sources, config={"max_concurrent_scenes": 2}
        )
        media = FakeMediaExecutor(
            durations={path: 60.0 for path in sources},
            failures={
                ("merge_audio_video", "/scene-3/"): lambda: MediaTimeoutError(
                    "merge_audio_video", 60.0
                )
            },
        )
        speech = FakeSpeechClient()
        executor = build_executor(
            session_factory,
            tmp_path,
            media=media,
            speech=speech,
            analysis=FakeAnalysisClient(
                [
                    create_storyboard(1, 0, 10, "video-1"),
                    create_storyboard(2, 10, 20, "video-1"),
                    create_storyboard(3, 0, 10, "video-2"),
                    create_storyboard(4, 10, 20, "video-2"),
                ]
            ),
        )
        queue = JobAdmissionQueue(executor.run, max_concurrent_jobs=1)

        status = await queue.enqueue(job.id)

        assert status == JobStatus.FAILED
        assert queue.get_status().running == 0

        scenes = {s.scene_key: s for s in await repo.scenes.list_scenes(job.id)}
        assert scenes["scene-1"].status == SceneStatus.COMPLETED
        assert scenes["scene-2"].status == SceneStatus.COMPLETED
        assert scenes["scene-4"].status == SceneStatus.COMPLETED
        assert scenes["scene-3"].status == SceneStatus.FAILED
        assert "timed out" in scenes["scene-3"].failure_reason

        history = await repo.history.query_by_job(job.id)
        merge = records_for(history, "merge_audio_video", "scene-3")
        failed = [r for r in merge if r.status == StepStatus.FAILED]
        # Three attempts per round, two scene-loop rounds
        assert len(failed) == 6
        assert all("timed out" in r.error_message for r in failed)
        assert merge[-1].status == StepStatus.FAILED

        # The second round reuses the completed synthesis of scene-3
        assert len(speech.requests) == 12
        assert records_for(history, "scene_loop_end")[-1].status == StepStatus.FAILED
        assert records_for(history, "merge_audio_video")[-1].status == StepStatus.FAILED
        assert media.operations("concat") == []

        stored = await repo.jobs.get(job.id)
        assert stored.error_category == "retryable"
        assert stored.error_message.startswith("1 of 4 scenes failed; scene-3")
        assert "stack" not in stored.error_metadata
        state = await repo.state.get(job.id)
        assert state.processed_scenes == 3

    async def test_input_error_fails_scene_loop_once(self, session_factory, repo, tmp_path):
        """Test that a non-retryable scene error gets a single attempt and a single round."""
        sources = create_source_videos(tmp_path / "sources")
        job = await insert_job(session_factory, input_videos=sources)
        media = FakeMediaExecutor(
            durations={sources[0]: 60.0},
            failures={
                ("merge_audio_video", "/scene-2/"): lambda: MediaProcessError(
                    "merge_audio_video", 1, "", message="Invalid video stream in clip"
                )
            },
        )
        executor = build_executor(
            session_factory,
            tmp_path,
            media=media,
            analysis=FakeAnalysisClient(single_video_storyboards()),
        )

        assert await executor.run(job.id) == JobStatus.FAILED

        merge_paths = media.operations("merge_audio_video")
        assert sum(1 for paths in merge_paths if "/scene-2/" in paths[0]) == 1
        stored = await repo.jobs.get(job.id)
        assert stored.error_category == "input"

    async def test_partial_success_composes_remaining_scenes(self, session_factory, repo, tmp_path):
        """Test a workflow that tolerates failed scenes."""
        sources = create_source_videos(tmp_path / "sources")
        job = await insert_job(session_factory, input_videos=sources)
        media = FakeMediaExecutor(
            durations={sources[0]: 60.0},
            failures={
                ("merge_audio_video", "/scene-2/"): lambda: MediaProcessError(
                    "merge_audio_video", 1, "", message="Invalid video stream in clip"
                )
            },
        )
        lenient = dataclasses.replace(SINGLE_VIDEO_WORKFLOW, allow_partial_scene_success=True)
        executor = build_executor(
            session_factory,
            tmp_path,
            media=media,
            analysis=FakeAnalysisClient(single_video_storyboards()),
            workflow=lenient,
        )

        assert await executor.run(job.id) == JobStatus.COMPLETED

        scenes = {s.scene_key: s.status for s in await repo.scenes.list_scenes(job.id)}
        assert scenes == {
            "scene-1": SceneStatus.COMPLETED,
            "scene-2": SceneStatus.FAILED,
            "scene-3": SceneStatus.COMPLETED,
        }
        history = await repo.history.query_by_job(job.id)
        loop_end = records_for(history, "scene_loop_end")[-1]
        assert loop_end.status == StepStatus.COMPLETED
        assert loop_end.output_data["failed"] == 1
        assert loop_end.output_data["failed_scenes"] == {"scene-2": "Invalid video stream in clip"}
        assert records_for(history, "concatenate_scenes")[-1].output_data["scene_count"] == 2

    async def test_resume_after_partial_success_keeps_failed_scenes(
        self, session_factory, repo, tmp_path
    ):
        """Test that a closed scene loop is not reopened when compose is resumed."""
        sources = create_source_videos(tmp_path / "sources")
        job = await insert_job(session_factory, input_videos=sources)
        lenient = dataclasses.replace(SINGLE_VIDEO_WORKFLOW, allow_partial_scene_success=True)
        analysis = FakeAnalysisClient(single_video_storyboards())
        first_media = FakeMediaExecutor(
            durations={sources[0]: 60.0},
            failures={
                ("merge_audio_video", "/scene-2/"): lambda: MediaProcessError(
                    "merge_audio_video", 1, "", message="Invalid video stream in clip"
                ),
                ("concat", ""): asyncio.CancelledError,
            },
        )
        first = build_executor(
            session_factory, tmp_path, media=first_media, analysis=analysis, workflow=lenient
        )

        with contextlib.suppress(asyncio.CancelledError):
            await first.run(job.id)
        assert (await repo.jobs.get(job.id)).status == JobStatus.PROCESSING

        second_speech = FakeSpeechClient()
        second_media = FakeMediaExecutor(durations={sources[0]: 60.0})
        second = build_executor(
            session_factory,
            tmp_path,
            media=second_media,
            analysis=analysis,
            speech=second_speech,
            workflow=lenient,
        )

        assert await second.run(job.id) == JobStatus.COMPLETED

        assert second_media.operations("merge_audio_video") == []
        assert second_speech.requests == []
        assert len(second_media.operations("concat")) == 1
        scenes = {s.scene_key: s.status for s in await repo.scenes.list_scenes(job.id)}
        assert scenes["scene-2"] == SceneStatus.FAILED
        history = await repo.history.query_by_job(job.id)
        assert records_for(history, "merge_audio_video", "scene-2")[-1].status == StepStatus.FAILED
        assert [r.status for r in records_for(history, "scene_loop_end")] == [
            StepStatus.RUNNING,
            StepStatus.COMPLETED,
        ]


@pytest.mark.asyncio
class TestNonRetriedFailures:
    """Test failures that end the attempt loop immediately."""

    async def test_configuration_error_is_not_retried(self, session_factory, repo, tmp_path):
        """Test that a configuration error fails the job after one attempt."""
        job = await insert_job(session_factory, input_videos=create_source_videos(tmp_path))
        analysis = FlakyAnalysisClient(
            [create_storyboard(1, 0, 5)], [ConfigurationError("API key invalid")]
        )
        executor = build_executor(
            session_factory, tmp_path, media=FakeMediaExecutor(), analysis=analysis
        )

        assert await executor.run(job.id) == JobStatus.FAILED

        assert len(analysis.requests) == 1
        stored = await repo.jobs.get(job.id)
        assert stored.error_category == "config"
        assert stored.error_message == "API key invalid"
        assert stored.error_metadata["is_retryable"] is False

    async def test_missing_local_video_is_an_input_error(self, session_factory, repo, tmp_path):
        """Test a local input path that does not exist."""
        job = await insert_job(session_factory, input_videos=[str(tmp_path / "missing.mp4")])
        executor = build_executor(
            session_factory,
            tmp_path,
            media=FakeMediaExecutor(),
            analysis=FakeAnalysisClient([create_storyboard(1, 0, 5)]),
        )

        assert await executor.run(job.id) == JobStatus.FAILED

        history = await repo.history.query_by_job(job.id)
        failed = [r for r in records_for(history, "ensure_local_video") if r.status == StepStatus.FAILED]
        assert len(failed) == 1
        stored = await repo.jobs.get(job.id)
        assert stored.error_category == "input"

    async def test_stuck_step_trips_watchdog(self, session_factory, repo, tmp_path):
        """Test that a sub-step exceeding the watchdog fails once and is not retried."""
        job = await insert_job(session_factory, input_videos=create_source_videos(tmp_path))
        executor = build_executor(
            session_factory,
            tmp_path,
            media=FakeMediaExecutor(),
            analysis=FakeAnalysisClient([create_storyboard(1, 0, 5)], analyze_delay=5.0),
            watchdog_seconds=0.2,
        )

        assert await executor.run(job.id) == JobStatus.FAILED

        history = await repo.history.query_by_job(job.id)
        records = records_for(history, "analyze_video")
        assert [r.status for r in records] == [StepStatus.RUNNING, StepStatus.FAILED]
        assert "watchdog" in records[-1].error_message
        assert records[-1].error_metadata["error_type"] == "StepWatchdogError"
        stored = await repo.jobs.get(job.id)
        assert "exceeded watchdog limit" in stored.error_message


@pytest.mark.asyncio
class TestCancellationAndResume:
    """Test user cancellation and resuming an interrupted job."""

    async def test_cancel_stops_job_between_sub_steps(self, session_factory, repo, tmp_path):
        """Test that a cancel request ends the job as stopped by user."""
        sources = create_source_videos(tmp_path / "sources")
        job = await insert_job(
            session_factory, input_videos=sources, config={"max_concurrent_scenes": 1}
        )
        media = FakeMediaExecutor(durations={sources[0]: 60.0})
        speech = BlockingSpeechClient("scene-1", release=asyncio.Event())
        executor = build_executor(
            session_factory,
            tmp_path,
            media=media,
            speech=speech,
            analysis=FakeAnalysisClient(single_video_storyboards()),
        )
        queue = JobAdmissionQueue(executor.run, max_concurrent_jobs=1)

        task = queue.enqueue(job.id)
        await speech.reached.wait()
        assert queue.cancel(job.id) is True
        speech.release.set()
        status = await task

        assert status == JobStatus.FAILED
        stored = await repo.jobs.get(job.id)
        assert stored.error_message == STOPPED_BY_USER_MESSAGE
        assert stored.error_category is None
        assert stored.error_metadata == {"stopped_by_user": True}
        state = await repo.state.get(job.id)
        assert state.stopped_by_user is True
        assert media.operations("merge_audio_video") == []
        assert queue.get_status().running == 0

    async def test_resume_after_crash_reuses_completed_steps(self, session_factory, repo, tmp_path):
        """Test that a second run continues where an interrupted run stopped."""
        sources = create_source_videos(tmp_path / "sources")
        job = await insert_job(
            session_factory, input_videos=sources, config={"max_concurrent_scenes": 1}
        )
        analysis = FakeAnalysisClient(
            [create_storyboard(1, 0, 10), create_storyboard(2, 10, 20)]
        )
        first_speech = BlockingSpeechClient("scene-2")
        first = build_executor(
            session_factory,
            tmp_path,
            media=FakeMediaExecutor(durations={sources[0]: 60.0}),
            analysis=analysis,
            speech=first_speech,
        )

        crashed = asyncio.create_task(first.run(job.id))
        await first_speech.reached.wait()
        crashed.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await crashed
        assert (await repo.jobs.get(job.id)).status == JobStatus.PROCESSING

        second_speech = FakeSpeechClient()
        second_media = FakeMediaExecutor(durations={sources[0]: 60.0})
        second = build_executor(
            session_factory,
            tmp_path,
            media=second_media,
            analysis=analysis,
            speech=second_speech,
        )

        assert await second.run(job.id) == JobStatus.COMPLETED

        assert len(analysis.requests) == 1
        assert second_media.operations("split") == []
        assert all("scene-2" in text for text, _ in second_speech.requests)
        assert len(second_speech.requests) == 3

        history = await repo.history.query_by_job(job.id)
        records = records_for(history, "synthesize_audio", "scene-2")
        assert [r.status for r in records] == [
            StepStatus.RUNNING,
            StepStatus.FAILED,
            StepStatus.RUNNING,
            StepStatus.COMPLETED,
        ]
        assert records[1].error_message == "step restarted"

    async def test_legacy_checkpoint_skips_inferred_stages(self, session_factory, repo, tmp_path):
        """Test a job with scene rows and a checkpoint but no step history."""
        job = await insert_job(session_factory, status=JobStatus.PROCESSING)
        async with session_factory() as db, db.begin():
            for index in (1, 2):
                split = tmp_path / f"split-{index}.mp4"
                split.write_bytes(b"clip")
                db.add(
                    create_scene(
                        job.id,
                        index,
                        source_start=(index - 1) * 10.0,
                        narration_v1="First.",
                        narration_v2="Second.",
                        narration_v3="Third.",
                        split_video_path=str(split),
                    )
                )
        await repo.state.upsert(job.id, total_scenes=2, processed_scenes=0)
        analysis = FakeAnalysisClient([])
        narration = FakeNarrationClient()
        media = FakeMediaExecutor()
        executor = build_executor(
            session_factory, tmp_path, media=media, analysis=analysis, narration=narration
        )

        assert await executor.run(job.id) == JobStatus.COMPLETED

        assert analysis.prepare_calls == 0
        assert analysis.requests == []
        assert narration.batches == []
        assert media.operations("split") == []
        history = await repo.history.query_by_job(job.id)
        for sub_step_id in ("fetch_metadata", "batch_generate_narrations", "split_scenes"):
            assert records_for(history, sub_step_id)[-1].status == StepStatus.SKIPPED
        assert len(media.operations("merge_audio_video")) == 2


@pytest.mark.asyncio
class TestJobLookup:
    """Test jobs that cannot be run."""

    async def test_unknown_job_returns_failed(self, session_factory, tmp_path):
        """Test that a missing job id is reported as failed without raising."""
        executor = build_executor(
            session_factory, tmp_path, media=FakeMediaExecutor(), analysis=FakeAnalysisClient([])
        )

        assert await executor.run("no-such-job") == JobStatus.FAILED

    async def test_terminal_job_is_not_rerun(self, session_factory, repo, tmp_path):
        """Test that a completed job keeps its status and gets no history."""
        job = await insert_job(
            session_factory, status=JobStatus.COMPLETED, job_type=JobType.SINGLE_VIDEO
        )
        analysis = FakeAnalysisClient([])
        executor = build_executor(
            session_factory, tmp_path, media=FakeMediaExecutor(), analysis=analysis
        )

        assert await executor.run(job.id) == JobStatus.COMPLETED

        assert await repo.history.query_by_job(job.id) == []
        assert analysis.prepare_calls == 0
