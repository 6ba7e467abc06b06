"""Tests for the stage-level pipeline actions.

Test Coverage:
- analysis: metadata probing, analysis preparation/request, storyboard validation
  persisting scenes and the step context
- generate_narrations: batching, resume of partially generated batches, skip
- extract_scenes: grouping, remote download vs local inputs, resolution choice,
  splitting with reuse of existing clips
- compose: concatenation of completed scenes, bgm mixing, publishing
"""

from pathlib import Path

import pytest

from cutflow.models import SceneStatus
from cutflow.schemas.step_payloads import (
    AddBgmOutput,
    AnalyzeVideoOutput,
    ConcatenateScenesOutput,
    FetchMetadataOutput,
    PrepareAnalysisOutput,
    VideoMetadataPayload,
)
from cutflow.services import pipeline_steps as steps
from cutflow.utils.filesystem import get_sources_dir
from tests.support.factories import create_scene, create_storyboard
from tests.support.fakes import (
    FakeAnalysisClient,
    FakeDownloader,
    FakeMediaExecutor,
    FakeNarrationClient,
)
from tests.support.runs import add_scenes, make_run


def metadata(*sizes, duration=60.0):
    return FetchMetadataOutput(
        videos=[
            VideoMetadataPayload(
                index=i, url=f"/data/video-{i + 1}.mp4", duration=duration, width=w, height=h,
                has_audio=True,
            )
            for i, (w, h) in enumerate(sizes)
        ]
    )


@pytest.mark.asyncio
class TestAnalysisStage:
    """Test fetch_metadata, prepare_analysis, analyze_video and validate_storyboards."""

    async def test_fetch_metadata(self, job, repo, tmp_path):
        media = FakeMediaExecutor(durations={"/data/b.mp4": 33.0})
        run = make_run(job, repo, tmp_path, videos=["/data/a.mp4", "/data/b.mp4"], media=media)

        output = await steps.fetch_metadata(run)

        assert [v.duration for v in output.videos] == [10.0, 33.0]
        assert output.videos[1].width == 1080
        assert output.videos[1].has_audio is True

    async def test_fetch_metadata_rejects_empty_video(self, job, repo, tmp_path):
        media = FakeMediaExecutor(durations={"/data/clip.mp4": 0.0})
        run = make_run(job, repo, tmp_path, media=media)

        with pytest.raises(ValueError, match="duration invalid"):
            await steps.fetch_metadata(run)

    async def test_prepare_reference_count_mismatch(self, job, repo, tmp_path):
        class ShortPrepare(FakeAnalysisClient):
            async def prepare(self, videos, platform, *, cancel_event=None):
                return []

        run = make_run(job, repo, tmp_path, analysis=ShortPrepare([]))

        with pytest.raises(ValueError, match="0 references for 1 videos"):
            await steps.prepare_analysis(run)

    async def test_analyze_builds_request(self, job, repo, tmp_path):
        """Test that missing prior outputs are recomputed before the request."""
        analysis = FakeAnalysisClient([create_storyboard(1, 0, 5)])
        run = make_run(
            job, repo, tmp_path, analysis=analysis,
            config={"storyboard_count": 4, "script_outline": "intro then outro"},
        )

        output = await steps.analyze_video(run)

        request = analysis.requests[0]
        assert request.video_refs == ["ref-1"]
        assert request.storyboard_count == 4
        assert request.script_outline == "intro then outro"
        assert request.videos[0].duration == 10.0
        assert len(output.storyboards) == 1

    async def test_analyze_rejects_empty_result(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path)
        run.outputs["prepare_analysis"] = PrepareAnalysisOutput(platform="vertex", video_refs=["r"])

        with pytest.raises(ValueError, match="no storyboards"):
            await steps.analyze_video(run)

    async def test_validate_persists_scenes_and_context(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path, config={"original_audio_scene_count": 1})
        run.outputs["fetch_metadata"] = metadata((1080, 1920), duration=30.0)
        run.outputs["analyze_video"] = AnalyzeVideoOutput(
            storyboards=[
                create_storyboard(1, 0, 5),
                create_storyboard(2, 5, 9, use_original_audio=True),
                create_storyboard(3, 20, 45),
            ]
        )

        output = await steps.validate_storyboards(run)

        assert (output.valid_count, output.skipped_count, output.original_audio_count) == (2, 1, 1)
        assert [s.scene_key for s in await repo.scenes.list_scenes(job.id)] == ["scene-1", "scene-2"]
        assert len(await repo.scenes.list_scenes(job.id, include_skipped=True)) == 3
        assert run.context.total_scenes == 2
        assert run.context.has_original_audio is True
        state = await repo.state.get(job.id)
        assert state.total_scenes == 2
        assert state.step_context["original_scene_count"] == 1

    async def test_validate_requires_storyboards(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path)

        with pytest.raises(ValueError, match="analyze_video output not found"):
            await steps.validate_storyboards(run)


@pytest.mark.asyncio
class TestNarrationStage:
    """Test batch_generate_narrations."""

    async def test_batches_by_configured_size(self, job, repo, session_factory, tmp_path):
        narration = FakeNarrationClient()
        await add_scenes(
            session_factory,
            *[create_scene(job.id, i, narration_script=f"line {i}") for i in range(1, 8)],
            create_scene(job.id, 8, use_original_audio=True),
        )
        run = make_run(job, repo, tmp_path, narration=narration, narration_batch_size=5)

        output = await steps.batch_generate_narrations(run)

        assert [len(b) for b in narration.batches] == [5, 2]
        assert output.generated_scene_count == 7
        scene = await repo.scenes.get_scene(job.id, "scene-3")
        assert scene.narrations == [f"Narration {n} for scene-3." for n in (1, 2, 3)]

    async def test_only_missing_scenes_are_generated(self, job, repo, session_factory, tmp_path):
        narration = FakeNarrationClient()
        await add_scenes(
            session_factory,
            create_scene(job.id, 1, narration_v1="a", narration_v2="b", narration_v3="c"),
            create_scene(job.id, 2),
        )
        run = make_run(job, repo, tmp_path, narration=narration)

        output = await steps.batch_generate_narrations(run)

        assert narration.batches == [["scene-2"]]
        assert output.already_present == 1

    async def test_skipped_without_dubbed_scenes(self, job, repo, session_factory, tmp_path):
        await add_scenes(session_factory, create_scene(job.id, 1, use_original_audio=True))

        result = await steps.batch_generate_narrations(make_run(job, repo, tmp_path))

        assert isinstance(result, steps.Skipped)
        assert result.output.generated_scene_count == 0

    async def test_too_few_candidates(self, job, repo, session_factory, tmp_path):
        await add_scenes(session_factory, create_scene(job.id, 1))
        run = make_run(job, repo, tmp_path, narration=FakeNarrationClient(candidates_per_scene=2))

        with pytest.raises(ValueError, match="returned 2 candidates"):
            await steps.batch_generate_narrations(run)


@pytest.mark.asyncio
class TestExtractStage:
    """Test grouping, local inputs and splitting."""

    async def test_group_by_source(self, job, repo, session_factory, tmp_path):
        await add_scenes(
            session_factory,
            create_scene(job.id, 1, source_video_index=1),
            create_scene(job.id, 2, source_video_index=0),
            create_scene(job.id, 3, source_video_index=1),
        )

        output = await steps.group_by_source(make_run(job, repo, tmp_path))

        assert [(g.source_video_index, g.scene_keys) for g in output.groups] == [
            (0, ["scene-2"]),
            (1, ["scene-1", "scene-3"]),
        ]

    async def test_remote_inputs_are_downloaded_once(self, job, repo, tmp_path):
        local = tmp_path / "local.mp4"
        local.write_bytes(b"local")
        downloader = FakeDownloader()
        run = make_run(
            job, repo, tmp_path,
            videos=["https://cdn.example.com/a.mov?sig=1", f"file://{local}"],
            downloader=downloader,
        )

        first = await steps.ensure_local_video(run)
        second = await steps.ensure_local_video(run)

        target = get_sources_dir(run.workspace_root, job.id) / "video-1.mov"
        assert first.local_paths == [str(target), str(local)]
        assert first.downloaded_indexes == [0]
        assert second.downloaded_indexes == []
        assert len(downloader.downloads) == 1

    async def test_missing_local_input(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path, videos=[str(tmp_path / "absent.mp4")])

        with pytest.raises(ValueError, match="Invalid video file"):
            await steps.ensure_local_video(run)

    async def test_split_scenes(self, job, repo, session_factory, tmp_path):
        sources = [tmp_path / "a.mp4", tmp_path / "b.mp4"]
        for source in sources:
            source.write_bytes(b"src")
        media = FakeMediaExecutor()
        await add_scenes(
            session_factory,
            create_scene(job.id, 1, duration=4.0, source_start=2.0),
            create_scene(job.id, 2, duration=3.0, source_video_index=1),
        )
        run = make_run(job, repo, tmp_path, videos=[str(s) for s in sources], media=media)
        run.outputs["fetch_metadata"] = metadata((1920, 1080), (1920, 1080))

        output = await steps.split_scenes(run)

        assert (output.target_width, output.target_height, output.fps) == (1920, 1080, 30)
        assert len(media.operations("split")) == 2
        scene = await repo.scenes.get_scene(job.id, "scene-1")
        assert scene.split_video_path == run.scene_path("scene-1", "split.mp4")
        assert Path(scene.split_video_path).exists()

        await steps.split_scenes(run)
        assert len(media.operations("split")) == 2


class TestChooseTargetResolution:
    def test_most_common(self):
        videos = metadata((1920, 1080), (1080, 1920), (1080, 1920)).videos
        assert steps.choose_target_resolution(videos) == (1080, 1920)

    def test_tie_goes_to_first_seen(self):
        videos = metadata((1280, 720), (1080, 1920)).videos
        assert steps.choose_target_resolution(videos) == (1280, 720)

    def test_unknown_sizes_use_default(self):
        assert steps.choose_target_resolution(metadata((0, 0)).videos) == (1080, 1920)


@pytest.mark.asyncio
class TestComposeStage:
    """Test concatenate_scenes, add_bgm and publish_output."""

    async def test_concatenates_completed_scenes_in_order(self, job, repo, session_factory, tmp_path):
        media = FakeMediaExecutor()
        await add_scenes(
            session_factory,
            create_scene(job.id, 2, status=SceneStatus.COMPLETED, final_video_path="/ws/s2.mp4"),
            create_scene(job.id, 1, status=SceneStatus.COMPLETED, final_video_path="/ws/s1.mp4"),
            create_scene(job.id, 3, status=SceneStatus.FAILED),
        )
        run = make_run(job, repo, tmp_path, media=media)

        output = await steps.concatenate_scenes(run)

        assert output.scene_count == 2
        assert output.output_path == run.job_path("concat.mp4")
        listing = Path(run.job_path("concat.txt")).read_text(encoding="utf-8")
        assert listing.index("s1.mp4") < listing.index("s2.mp4")

    async def test_nothing_to_concatenate(self, job, repo, session_factory, tmp_path):
        await add_scenes(session_factory, create_scene(job.id, 1, status=SceneStatus.FAILED))

        with pytest.raises(ValueError, match="No completed scenes"):
            await steps.concatenate_scenes(make_run(job, repo, tmp_path))

    async def test_bgm_skipped_without_reference(self, job, repo, tmp_path):
        result = await steps.add_bgm(make_run(job, repo, tmp_path))
        assert isinstance(result, steps.Skipped)

    async def test_bgm_missing_local_file(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path, config={"bgm_url": str(tmp_path / "none.mp3")})

        with pytest.raises(ValueError, match="background music"):
            await steps.add_bgm(run)

    async def test_remote_bgm_is_downloaded_and_mixed(self, job, repo, tmp_path):
        media = FakeMediaExecutor()
        downloader = FakeDownloader()
        run = make_run(
            job, repo, tmp_path, media=media, downloader=downloader,
            config={"bgm_url": "https://cdn.example.com/music/calm.mp3"},
        )
        run.outputs["concatenate_scenes"] = ConcatenateScenesOutput(
            output_path=run.job_path("concat.mp4"), scene_count=2
        )

        output = await steps.add_bgm(run)

        assert downloader.downloads[0][1].name == "bgm.mp3"
        assert media.operations("add_bgm") == [[run.job_path("with_bgm.mp4")]]
        assert output.bgm_source == "https://cdn.example.com/music/calm.mp3"

    async def test_publish_copies_to_output_dir(self, job, repo, tmp_path):
        run = make_run(job, repo, tmp_path)
        mixed = Path(run.job_path("with_bgm.mp4"))
        mixed.write_bytes(b"final")
        run.outputs["add_bgm"] = AddBgmOutput(output_path=str(mixed), bgm_source="x")

        output = await steps.publish_output(run)

        published = tmp_path / "output" / f"{job.id}.mp4"
        assert output.output_path == str(published)
        assert published.read_bytes() == b"final"
        state = await repo.state.get(job.id)
        assert state.final_video_path == str(published)
        assert state.final_video_metadata["duration"] == 10.0
