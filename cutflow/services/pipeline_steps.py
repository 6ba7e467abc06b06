"""Stage-level pipeline actions.

Each function implements one stage-level sub-step of the plan built by
``step_registry.get_stages``. Actions receive the JobRun of the job, return
the sub-step's typed output payload (or ``Skipped`` when the sub-step's
precondition does not apply), and raise on failure. They never write
StepRecords and never retry: the WorkflowExecutor owns attempt bookkeeping,
retries, the watchdog and cancellation.

Actions read durable scene data from SceneTask rows and prior outputs from
``run.outputs``. When an earlier stage was inferred complete from a legacy
checkpoint its payload is absent, so the few outputs needed downstream
(video metadata, concatenated video path) are recomputed or derived from
workspace paths.

Stage Map:
    analysis             fetch_metadata, prepare_analysis, analyze_video,
                         validate_storyboards
    generate_narrations  batch_generate_narrations
    extract_scenes       group_by_source, ensure_local_video, split_scenes
    process_scenes       scene_loop_start, scene_loop_end (per-scene steps
                         live in scene_processing)
    compose              concatenate_scenes, add_bgm, publish_output
"""

import asyncio
import shutil
from collections import Counter
from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Any, TypeVar

from pydantic import BaseModel

from cutflow.clients.downloader import HttpDownloader
from cutflow.clients.protocols import (
    AnalysisClient,
    AnalysisRequest,
    NarrationClient,
    NarrationRequest,
    SpeechClient,
)
from cutflow.constants import (
    DEFAULT_TARGET_HEIGHT,
    DEFAULT_TARGET_WIDTH,
    NARRATION_CANDIDATE_COUNT,
    TARGET_FPS,
)
from cutflow.models import JobType, SceneStatus, SceneTask
from cutflow.schemas.job import JobConfig, VideoInput
from cutflow.schemas.step_payloads import (
    AddBgmOutput,
    AnalyzeVideoOutput,
    BatchGenerateNarrationsOutput,
    ConcatenateScenesOutput,
    EnsureLocalVideoOutput,
    FetchMetadataOutput,
    GroupBySourceOutput,
    PrepareAnalysisOutput,
    PublishOutputOutput,
    SceneLoopEndOutput,
    SceneLoopStartOutput,
    SourceGroup,
    SplitScenesOutput,
    SplitSegment,
    ValidateStoryboardsOutput,
    VideoMetadataPayload,
)
from cutflow.services.media_service import MediaService
from cutflow.services.scene_concurrency import run_bounded
from cutflow.services.step_history import JobRepository
from cutflow.services.step_registry import StepContext, StepKey
from cutflow.services.storyboard_validation import validate_storyboards as run_validation
from cutflow.utils.filesystem import (
    get_output_path,
    get_sources_dir,
    job_file,
    scene_file,
)
from cutflow.utils.logging import StructuredLogger, get_logger
from cutflow.utils.media_commands import convert_media_url, is_remote_url

log = get_logger(__name__)

P = TypeVar("P", bound=BaseModel)


@dataclass(frozen=True)
class Skipped:
    """Returned by an action whose precondition does not apply to the job."""

    reason: str
    output: BaseModel | None = None


@dataclass(frozen=True)
class PipelineClients:
    analysis: AnalysisClient
    narration: NarrationClient
    speech: SpeechClient
    downloader: HttpDownloader


@dataclass
class JobRun:
    """Everything one execution of a job needs, built by the executor."""

    job_id: str
    job_type: JobType
    videos: list[VideoInput]
    config: JobConfig
    repo: JobRepository
    media: MediaService
    clients: PipelineClients
    workspace_root: Path
    output_dir: Path
    cancel_event: asyncio.Event
    context: StepContext
    scene_concurrency: int
    narration_batch_size: int
    subtitle_enabled: bool
    log: StructuredLogger = field(default_factory=lambda: log)
    outputs: dict[str, Any] = field(default_factory=dict)
    done: dict[StepKey, Any] = field(default_factory=dict)

    def output(self, sub_step_id: str, model: type[P]) -> P | None:
        """Return a prior stage-level output if present and of the expected type."""
        value = self.outputs.get(sub_step_id)
        return value if isinstance(value, model) else None

    def scene_path(self, scene_key: str, filename: str) -> str:
        return str(scene_file(self.workspace_root, self.job_id, scene_key, filename))

    def job_path(self, filename: str) -> str:
        return str(job_file(self.workspace_root, self.job_id, filename))


# ---------------------------------------------------------------------------
# analysis
# ---------------------------------------------------------------------------


async def fetch_metadata(run: JobRun) -> FetchMetadataOutput:
    """Probe every input video."""
    videos = []
    for index, video in enumerate(run.videos):
        metadata = await run.media.probe(video.url)
        if metadata.duration <= 0:
            raise ValueError(f"Video {index + 1} duration invalid: {metadata.duration}")
        videos.append(
            VideoMetadataPayload(
                index=index,
                url=video.url,
                duration=metadata.duration,
                width=metadata.video.width if metadata.video else 0,
                height=metadata.video.height if metadata.video else 0,
                fps=metadata.video.fps if metadata.video else 0.0,
                has_audio=metadata.has_audio,
                codec=metadata.video.codec if metadata.video else None,
                size=metadata.size,
            )
        )
        run.log.info(
            "video_metadata_fetched",
            video_index=index,
            duration=metadata.duration,
            has_audio=metadata.has_audio,
        )
    return FetchMetadataOutput(videos=videos)


async def _video_metadata(run: JobRun) -> list[VideoMetadataPayload]:
    existing = run.output("fetch_metadata", FetchMetadataOutput)
    if existing is None:
        existing = await fetch_metadata(run)
        run.outputs["fetch_metadata"] = existing
    return existing.videos


async def prepare_analysis(run: JobRun) -> PrepareAnalysisOutput:
    refs = await run.clients.analysis.prepare(
        run.videos, run.config.platform, cancel_event=run.cancel_event
    )
    if len(refs) != len(run.videos):
        raise ValueError(
            f"Analysis preparation returned {len(refs)} references for {len(run.videos)} videos"
        )
    return PrepareAnalysisOutput(platform=run.config.platform, video_refs=list(refs))


async def analyze_video(run: JobRun) -> AnalyzeVideoOutput:
    prepared = run.output("prepare_analysis", PrepareAnalysisOutput)
    if prepared is None:
        prepared = await prepare_analysis(run)
    request = AnalysisRequest(
        video_refs=prepared.video_refs,
        videos=await _video_metadata(run),
        platform=run.config.platform,
        storyboard_count=run.config.storyboard_count,
        original_audio_scene_count=run.config.original_audio_scene_count,
        script_outline=run.config.script_outline,
    )
    storyboards = await run.clients.analysis.analyze(request)
    if not storyboards:
        raise ValueError("Analysis returned no storyboards")
    run.log.info("storyboards_generated", count=len(storyboards))
    return AnalyzeVideoOutput(storyboards=storyboards)


async def validate_storyboards(run: JobRun) -> ValidateStoryboardsOutput:
    """Validate storyboards, persist scene rows and update the step context."""
    analysis = run.output("analyze_video", AnalyzeVideoOutput)
    if analysis is None:
        raise ValueError("Storyboards missing: analyze_video output not found")
    videos = await _video_metadata(run)
    result = run_validation(
        analysis.storyboards,
        [v.duration for v in videos],
        expected_count=run.config.storyboard_count,
        expected_original_audio_count=run.config.original_audio_scene_count,
    )
    for warning in result.warnings:
        run.log.warning("storyboard_validation_warning", message=warning)

    await run.repo.scenes.replace_scenes(run.job_id, result.scenes)

    valid = result.valid_scenes
    run.context = replace(
        run.context,
        has_original_audio=result.original_audio_count > 0,
        total_scenes=len(valid),
        original_scene_count=result.original_audio_count,
    )
    await run.repo.state.upsert(
        run.job_id,
        total_scenes=len(valid),
        processed_scenes=0,
        step_context=run.context.to_dict(),
    )
    return ValidateStoryboardsOutput(
        scenes=result.scenes,
        warnings=result.warnings,
        valid_count=len(valid),
        skipped_count=len(result.skipped_scenes),
        original_audio_count=result.original_audio_count,
    )


# ---------------------------------------------------------------------------
# generate_narrations
# ---------------------------------------------------------------------------


async def batch_generate_narrations(run: JobRun) -> BatchGenerateNarrationsOutput | Skipped:
    """Generate three narration candidates for every dubbed scene lacking them.

    Each batch is persisted before the next one starts, so a retried attempt
    only regenerates the scenes that are still missing candidates.
    """
    scenes = await run.repo.scenes.list_scenes(run.job_id)
    dubbed = [s for s in scenes if not s.use_original_audio]
    missing = [s for s in dubbed if len(s.narrations) < NARRATION_CANDIDATE_COUNT]
    already = len(dubbed) - len(missing)

    if not dubbed:
        return Skipped(
            "no dubbed scenes",
            BatchGenerateNarrationsOutput(generated_scene_count=0, batch_count=0),
        )

    size = run.narration_batch_size
    batches = [missing[i : i + size] for i in range(0, len(missing), size)]
    for number, batch in enumerate(batches, start=1):
        requests = [
            NarrationRequest(
                scene_key=s.scene_key,
                duration_seconds=s.duration_seconds,
                description=s.description,
                narration_script=s.narration_script,
                script_outline=run.config.script_outline,
            )
            for s in batch
        ]
        generated = await run.clients.narration.generate(requests)
        for scene in batch:
            candidates = [c.strip() for c in generated.get(scene.scene_key, []) if c and c.strip()]
            if len(candidates) < NARRATION_CANDIDATE_COUNT:
                raise ValueError(
                    f"Narration generation returned {len(candidates)} candidates for "
                    f"{scene.scene_key}, expected {NARRATION_CANDIDATE_COUNT}"
                )
            await run.repo.scenes.update_scene(
                run.job_id,
                scene.scene_key,
                narration_v1=candidates[0],
                narration_v2=candidates[1],
                narration_v3=candidates[2],
            )
        run.log.info("narration_batch_generated", batch=number, batches=len(batches), scenes=len(batch))

    return BatchGenerateNarrationsOutput(
        generated_scene_count=len(missing),
        batch_count=len(batches),
        already_present=already,
    )


# ---------------------------------------------------------------------------
# extract_scenes
# ---------------------------------------------------------------------------


async def group_by_source(run: JobRun) -> GroupBySourceOutput:
    scenes = await run.repo.scenes.list_scenes(run.job_id)
    groups: dict[int, list[str]] = {}
    for scene in scenes:
        groups.setdefault(scene.source_video_index, []).append(scene.scene_key)
    return GroupBySourceOutput(
        groups=[SourceGroup(source_video_index=i, scene_keys=keys) for i, keys in sorted(groups.items())]
    )


def _source_suffix(url: str) -> str:
    suffix = Path(convert_media_url(url).split("?")[0]).suffix
    return suffix if suffix and len(suffix) <= 5 else ".mp4"


async def ensure_local_video(run: JobRun) -> EnsureLocalVideoOutput:
    """Download remote inputs into the job workspace; local files are used in place."""
    local_paths: list[str] = []
    downloaded: list[int] = []
    for index, video in enumerate(run.videos):
        if is_remote_url(video.url):
            target = get_sources_dir(run.workspace_root, run.job_id) / (
                f"video-{index + 1}{_source_suffix(video.url)}"
            )
            if not target.exists():
                await run.clients.downloader.download(
                    video.url, target, cancel_event=run.cancel_event
                )
                downloaded.append(index)
            local_paths.append(str(target))
        else:
            path = Path(convert_media_url(video.url))
            if not path.is_file():
                raise ValueError(f"Invalid video file: {path} does not exist")
            local_paths.append(str(path))
    return EnsureLocalVideoOutput(local_paths=local_paths, downloaded_indexes=downloaded)


def choose_target_resolution(videos: list[VideoMetadataPayload]) -> tuple[int, int]:
    """Most frequent input resolution; 1080x1920 when none is known.

    Ties go to the resolution seen first.
    """
    sizes = [(v.width, v.height) for v in videos if v.width > 0 and v.height > 0]
    if not sizes:
        return DEFAULT_TARGET_WIDTH, DEFAULT_TARGET_HEIGHT
    return Counter(sizes).most_common(1)[0][0]


async def split_scenes(run: JobRun) -> SplitScenesOutput:
    """Cut every scene out of its source, normalised to one resolution and 30 fps."""
    local = run.output("ensure_local_video", EnsureLocalVideoOutput)
    if local is None:
        local = await ensure_local_video(run)
    videos = await _video_metadata(run)
    width, height = choose_target_resolution(videos)
    scenes = await run.repo.scenes.list_scenes(run.job_id)

    async def split_one(scene: SceneTask) -> SplitSegment:
        output_path = run.scene_path(scene.scene_key, "split.mp4")
        if scene.split_video_path and Path(scene.split_video_path).exists():
            return SplitSegment(
                scene_key=scene.scene_key, path=scene.split_video_path, duration=scene.duration_seconds
            )
        await run.media.split(
            local.local_paths[scene.source_video_index],
            scene.source_start,
            scene.duration_seconds,
            output_path,
            target_width=width,
            target_height=height,
            has_audio=videos[scene.source_video_index].has_audio,
        )
        await run.repo.scenes.update_scene(run.job_id, scene.scene_key, split_video_path=output_path)
        return SplitSegment(scene_key=scene.scene_key, path=output_path, duration=scene.duration_seconds)

    segments = await run_bounded(
        scenes, run.scene_concurrency, split_one, cancel_event=run.cancel_event
    )
    run.log.info("scenes_split", count=len(segments), width=width, height=height)
    return SplitScenesOutput(segments=segments, target_width=width, target_height=height, fps=TARGET_FPS)


def target_resolution(run: JobRun) -> tuple[int, int]:
    """Resolution the scenes were split at (defaults when unknown)."""
    split = run.output("split_scenes", SplitScenesOutput)
    if split is not None:
        return split.target_width, split.target_height
    metadata = run.output("fetch_metadata", FetchMetadataOutput)
    if metadata is not None:
        return choose_target_resolution(metadata.videos)
    return DEFAULT_TARGET_WIDTH, DEFAULT_TARGET_HEIGHT


# ---------------------------------------------------------------------------
# process_scenes (loop bookends)
# ---------------------------------------------------------------------------


async def scene_loop_start(run: JobRun) -> SceneLoopStartOutput:
    scenes = await run.repo.scenes.list_scenes(run.job_id)
    completed = sum(1 for s in scenes if s.status == SceneStatus.COMPLETED)
    await run.repo.state.upsert(run.job_id, total_scenes=len(scenes), processed_scenes=completed)
    return SceneLoopStartOutput(
        total_scenes=len(scenes),
        pending_scenes=len(scenes) - completed,
        concurrency=run.scene_concurrency,
    )


async def summarize_scene_loop(run: JobRun) -> SceneLoopEndOutput:
    scenes = await run.repo.scenes.list_scenes(run.job_id)
    failed = {s.scene_key: s.failure_reason or "failed" for s in scenes if s.status == SceneStatus.FAILED}
    return SceneLoopEndOutput(
        completed=sum(1 for s in scenes if s.status == SceneStatus.COMPLETED),
        failed=len(failed),
        failed_scenes=failed,
    )


# ---------------------------------------------------------------------------
# compose
# ---------------------------------------------------------------------------


async def concatenate_scenes(run: JobRun) -> ConcatenateScenesOutput:
    """Concatenate the final clips of successful scenes, ordered by index."""
    scenes = await run.repo.scenes.list_scenes(run.job_id)
    clips = [
        s.final_video_path for s in scenes if s.status == SceneStatus.COMPLETED and s.final_video_path
    ]
    if not clips:
        raise ValueError("No completed scenes to concatenate")
    output_path = run.job_path("concat.mp4")
    await run.media.concat(clips, output_path, list_path=run.job_path("concat.txt"))
    duration = await run.media.duration(output_path)
    return ConcatenateScenesOutput(output_path=output_path, scene_count=len(clips), duration=duration)


def _composed_video(run: JobRun) -> str:
    concat = run.output("concatenate_scenes", ConcatenateScenesOutput)
    return concat.output_path if concat else run.job_path("concat.mp4")


async def add_bgm(run: JobRun) -> AddBgmOutput | Skipped:
    bgm_url = run.config.bgm_url
    if not bgm_url:
        return Skipped("no background music configured")
    if is_remote_url(bgm_url):
        bgm_path = get_sources_dir(run.workspace_root, run.job_id) / f"bgm{_source_suffix(bgm_url)}"
        if not bgm_path.exists():
            await run.clients.downloader.download(bgm_url, bgm_path, cancel_event=run.cancel_event)
    else:
        bgm_path = Path(convert_media_url(bgm_url))
        if not bgm_path.is_file():
            raise ValueError(f"Invalid file: background music {bgm_path} does not exist")

    video_path = _composed_video(run)
    duration = await run.media.duration(video_path)
    output_path = run.job_path("with_bgm.mp4")
    await run.media.mix_bgm(video_path, str(bgm_path), output_path, duration=duration)
    return AddBgmOutput(output_path=output_path, bgm_source=bgm_url)


async def publish_output(run: JobRun) -> PublishOutputOutput:
    """Copy the composed video to OUTPUT_DIR and record the final outputs."""
    bgm = run.output("add_bgm", AddBgmOutput)
    source = bgm.output_path if bgm else _composed_video(run)
    target = get_output_path(run.output_dir, run.job_id)
    await asyncio.to_thread(shutil.copyfile, source, target)

    metadata = await run.media.probe(str(target))
    output = PublishOutputOutput(
        output_path=str(target),
        duration=metadata.duration,
        width=metadata.video.width if metadata.video else 0,
        height=metadata.video.height if metadata.video else 0,
        size=metadata.size,
    )
    await run.repo.state.upsert(
        run.job_id,
        final_video_path=str(target),
        final_video_metadata=output.model_dump(mode="json", exclude={"kind"}),
    )
    run.log.info("final_video_published", path=str(target), duration=metadata.duration)
    return output


StageAction = Callable[[JobRun], Awaitable[Any]]

STAGE_ACTIONS: dict[str, StageAction] = {
    "fetch_metadata": fetch_metadata,
    "prepare_analysis": prepare_analysis,
    "analyze_video": analyze_video,
    "validate_storyboards": validate_storyboards,
    "batch_generate_narrations": batch_generate_narrations,
    "group_by_source": group_by_source,
    "ensure_local_video": ensure_local_video,
    "split_scenes": split_scenes,
    "scene_loop_start": scene_loop_start,
    "concatenate_scenes": concatenate_scenes,
    "add_bgm": add_bgm,
    "publish_output": publish_output,
}
