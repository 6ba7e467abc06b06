"""Per-scene pipeline of the process-scenes stage.

Every scene walks the per-scene sub-steps of the stage plan in order. Which
sub-steps actually run depends on the scene:

    dubbed scenes          synthesize_audio → trim_jumpcuts → select_best_match
                           → adjust_video_speed → merge_audio_video → burn_subtitle
    original-audio scenes  trim_jumpcuts → reencode_original_audio

Sub-steps of the plan that do not apply to a scene are recorded as skipped
for that scene. Each action returns the sub-step's payload; ``apply_output``
folds a payload into the scene's SceneWork. The executor calls
``apply_output`` both for freshly produced payloads and for payloads reused
from history on resume, so a resumed scene continues from exactly the state
its completed sub-steps left behind.
"""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any

from cutflow.exceptions import MediaProcessError
from cutflow.models import SceneTask
from cutflow.schemas.step_payloads import (
    AdjustVideoSpeedOutput,
    AudioCandidate,
    BurnSubtitleOutput,
    MergeAudioVideoOutput,
    ReencodeOriginalAudioOutput,
    SelectBestMatchOutput,
    SynthesizeAudioOutput,
    TrimJumpcutsOutput,
)
from cutflow.services.audio_matcher import select_best_audio_match
from cutflow.services.pipeline_steps import JobRun, Skipped, target_resolution
from cutflow.utils.filesystem import get_scene_audio_dir
from cutflow.utils.subtitles import generate_segmented_ass, split_into_segments, write_subtitle_file

DUBBED_SUB_STEPS = (
    "synthesize_audio",
    "trim_jumpcuts",
    "select_best_match",
    "adjust_video_speed",
    "merge_audio_video",
    "burn_subtitle",
)
ORIGINAL_AUDIO_SUB_STEPS = ("trim_jumpcuts", "reencode_original_audio")


@dataclass
class SceneWork:
    """Mutable state of one scene while its sub-steps run."""

    scene: SceneTask
    video_path: str
    video_duration: float
    candidates: list[AudioCandidate] = field(default_factory=list)
    match: SelectBestMatchOutput | None = None

    @property
    def scene_key(self) -> str:
        return self.scene.scene_key

    @classmethod
    def from_scene(cls, scene: SceneTask) -> "SceneWork":
        if not scene.split_video_path:
            raise ValueError(f"Split video missing for {scene.scene_key}")
        return cls(scene=scene, video_path=scene.split_video_path, video_duration=scene.duration_seconds)


def applicable_sub_steps(scene: SceneTask) -> tuple[str, ...]:
    return ORIGINAL_AUDIO_SUB_STEPS if scene.use_original_audio else DUBBED_SUB_STEPS


def apply_output(work: SceneWork, payload: Any) -> None:
    """Fold a sub-step payload into the scene state."""
    if isinstance(payload, SynthesizeAudioOutput):
        work.candidates = list(payload.candidates)
    elif isinstance(payload, TrimJumpcutsOutput):
        work.video_path = payload.output_path
        work.video_duration = payload.new_duration
    elif isinstance(payload, SelectBestMatchOutput):
        work.match = payload
    elif isinstance(payload, AdjustVideoSpeedOutput | ReencodeOriginalAudioOutput):
        work.video_path = payload.output_path
    elif isinstance(payload, MergeAudioVideoOutput):
        work.video_path = payload.output_path
        work.video_duration = payload.duration
    elif isinstance(payload, BurnSubtitleOutput) and payload.enabled:
        work.video_path = payload.output_path


def _require_match(work: SceneWork) -> SelectBestMatchOutput:
    if work.match is None:
        raise ValueError(f"No audio match selected for {work.scene_key}")
    return work.match


async def synthesize_audio(run: JobRun, work: SceneWork) -> SynthesizeAudioOutput:
    """Render every narration candidate and probe its duration."""
    narrations = work.scene.narrations
    if not narrations:
        raise ValueError(f"Narration candidates missing for {work.scene_key}")
    audio_dir = get_scene_audio_dir(run.workspace_root, run.job_id, work.scene_key)
    candidates = []
    for version, text in enumerate(narrations, start=1):
        path = await run.clients.speech.synthesize(
            text, audio_dir / f"narration-v{version}.mp3", voice_id=run.config.voice_id
        )
        try:
            duration = await run.media.duration(str(path))
        except MediaProcessError as e:
            # One unreadable candidate must not sink the others
            run.log.warning(
                "audio_candidate_probe_failed",
                scene_id=work.scene_key,
                version=version,
                error=str(e)[:300],
            )
            duration = None
        candidates.append(AudioCandidate(version=version, path=str(path), duration=duration))
    return SynthesizeAudioOutput(candidates=candidates)


async def trim_jumpcuts(run: JobRun, work: SceneWork) -> TrimJumpcutsOutput:
    """Remove neighbouring-shot frames at the clip edges."""
    analysis = await run.media.analyze_jumpcuts(work.video_path, work.video_duration)
    if not analysis.needs_trim:
        return TrimJumpcutsOutput(
            output_path=work.video_path,
            original_duration=work.video_duration,
            new_duration=work.video_duration,
            skipped=True,
        )
    output_path = run.scene_path(work.scene_key, "trimmed.mp4")
    await run.media.trim(work.video_path, output_path, analysis.trim_start, analysis.new_duration)
    return TrimJumpcutsOutput(
        output_path=output_path,
        trimmed_start=analysis.trim_start,
        trimmed_end=analysis.trim_end,
        original_duration=analysis.original_duration,
        new_duration=analysis.new_duration,
    )


async def select_best_match(run: JobRun, work: SceneWork) -> SelectBestMatchOutput:
    best = select_best_audio_match(work.video_duration, work.candidates)
    audio_duration = float(best.candidate.duration or 0.0)
    await run.repo.scenes.update_scene(
        run.job_id,
        work.scene_key,
        selected_audio_path=best.candidate.path,
        audio_duration=audio_duration,
        speed_factor=best.adjusted_speed_factor,
    )
    return SelectBestMatchOutput(
        version=best.candidate.version,
        audio_path=best.candidate.path,
        audio_duration=audio_duration,
        video_duration=work.video_duration,
        speed_factor=best.speed_factor,
        adjusted_speed_factor=best.adjusted_speed_factor,
        loop_count=best.loop_count,
        need_trim=best.need_trim,
        trim_to_duration=best.trim_to_duration,
    )


async def adjust_video_speed(run: JobRun, work: SceneWork) -> AdjustVideoSpeedOutput:
    """Loop or trim the clip when needed, then change its speed (video only)."""
    match = _require_match(work)
    source = work.video_path
    duration = work.video_duration

    if match.loop_count > 1:
        duration = work.video_duration * match.loop_count
        source = await run.media.loop(
            source, match.loop_count, duration, run.scene_path(work.scene_key, "looped.mp4")
        )
    elif match.need_trim and match.trim_to_duration:
        duration = match.trim_to_duration
        source = await run.media.trim(
            source, run.scene_path(work.scene_key, "speed_trim.mp4"), 0.0, duration
        )

    output_path = run.scene_path(work.scene_key, "speed.mp4")
    await run.media.adjust_speed(source, output_path, match.adjusted_speed_factor, duration=duration)
    return AdjustVideoSpeedOutput(
        output_path=output_path,
        speed_factor=match.adjusted_speed_factor,
        looped=match.loop_count > 1,
        trimmed=match.need_trim,
    )


async def merge_audio_video(run: JobRun, work: SceneWork) -> MergeAudioVideoOutput:
    match = _require_match(work)
    output_path = run.scene_path(work.scene_key, "merged.mp4")
    await run.media.merge(
        work.video_path, match.audio_path, output_path, audio_duration=match.audio_duration
    )
    return MergeAudioVideoOutput(output_path=output_path, duration=match.audio_duration)


async def burn_subtitle(run: JobRun, work: SceneWork) -> BurnSubtitleOutput | Skipped:
    if not run.subtitle_enabled:
        return Skipped(
            "subtitles disabled",
            BurnSubtitleOutput(output_path=work.video_path, enabled=False),
        )
    match = _require_match(work)
    narrations = work.scene.narrations
    text = narrations[match.version - 1] if 0 < match.version <= len(narrations) else None
    if not text:
        return Skipped(
            "no narration text",
            BurnSubtitleOutput(output_path=work.video_path, enabled=False),
        )

    width, height = target_resolution(run)
    segments = split_into_segments(text, match.audio_duration)
    subtitle_path = write_subtitle_file(
        generate_segmented_ass(segments, width, height),
        Path(run.scene_path(work.scene_key, "subtitle.ass")),
    )
    output_path = run.scene_path(work.scene_key, "subtitled.mp4")
    await run.media.burn_subtitles(
        work.video_path, str(subtitle_path), output_path, duration=work.video_duration
    )
    return BurnSubtitleOutput(output_path=output_path, segment_count=len(segments))


async def reencode_original_audio(run: JobRun, work: SceneWork) -> ReencodeOriginalAudioOutput:
    output_path = run.scene_path(work.scene_key, "reencoded.mp4")
    await run.media.reencode(work.video_path, output_path, duration=work.video_duration)
    return ReencodeOriginalAudioOutput(output_path=output_path)


SceneAction = Callable[[JobRun, SceneWork], Awaitable[Any]]

SCENE_ACTIONS: dict[str, SceneAction] = {
    "synthesize_audio": synthesize_audio,
    "trim_jumpcuts": trim_jumpcuts,
    "select_best_match": select_best_match,
    "adjust_video_speed": adjust_video_speed,
    "merge_audio_video": merge_audio_video,
    "burn_subtitle": burn_subtitle,
    "reencode_original_audio": reencode_original_audio,
}
