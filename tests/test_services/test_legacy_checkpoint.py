"""Tests for stage inference from a legacy checkpoint."""

from cutflow.models import JobState, SceneTask
from cutflow.services.legacy_checkpoint import infer_completed_stages


def scene(index: int, *, narrations: int = 3, split: bool = True, original: bool = False) -> SceneTask:
    texts = [f"Narration {n}" for n in range(1, narrations + 1)] + [None, None, None]
    return SceneTask(
        job_id="job-1",
        scene_index=index,
        scene_key=f"scene-{index}",
        source_start=0.0,
        source_end=5.0,
        duration_seconds=5.0,
        use_original_audio=original,
        narration_v1=texts[0],
        narration_v2=texts[1],
        narration_v3=texts[2],
        split_video_path=f"/ws/scene-{index}/split.mp4" if split else None,
    )


class TestInferCompletedStages:
    """Test inference of leading completed stages."""

    def test_nothing_known(self):
        assert infer_completed_stages(None, []) == []

    def test_total_scenes_alone_implies_analysis(self):
        """Test that a checkpoint with a scene count but no rows only completes analysis."""
        assert infer_completed_stages(JobState(total_scenes=3, processed_scenes=0), []) == [
            "analysis"
        ]

    def test_narrations_required_for_dubbed_scenes_only(self):
        """Test that original-audio scenes need no narration candidates."""
        scenes = [scene(1), scene(2, narrations=0, original=True)]
        state = JobState(total_scenes=2, processed_scenes=0)

        assert infer_completed_stages(state, scenes) == [
            "analysis",
            "generate_narrations",
            "extract_scenes",
        ]

    def test_incomplete_narrations_stop_inference(self):
        """Test that later evidence never counts when an earlier stage is incomplete."""
        scenes = [scene(1), scene(2, narrations=2)]
        state = JobState(total_scenes=2, processed_scenes=2, final_video_path="/out/final.mp4")

        assert infer_completed_stages(state, scenes) == ["analysis"]

    def test_missing_split_stops_at_narrations(self):
        scenes = [scene(1), scene(2, split=False)]
        state = JobState(total_scenes=2, processed_scenes=0)

        assert infer_completed_stages(state, scenes) == ["analysis", "generate_narrations"]

    def test_fully_processed_and_published(self):
        scenes = [scene(1), scene(2)]
        state = JobState(total_scenes=2, processed_scenes=2, final_video_path="/out/final.mp4")

        assert infer_completed_stages(state, scenes) == [
            "analysis",
            "generate_narrations",
            "extract_scenes",
            "process_scenes",
            "compose",
        ]

    def test_processed_without_output_stops_before_compose(self):
        scenes = [scene(1)]
        state = JobState(total_scenes=1, processed_scenes=1)

        assert infer_completed_stages(state, scenes)[-1] == "process_scenes"
