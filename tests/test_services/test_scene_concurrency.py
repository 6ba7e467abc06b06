"""Tests for the scene concurrency controller."""

import asyncio

import pytest

from cutflow.exceptions import JobCancelledError
from cutflow.services.scene_concurrency import resolve_scene_concurrency, run_bounded


class Tracker:
    """Records how many calls are in flight at once."""

    def __init__(self, delay: float = 0.01) -> None:
        self.delay = delay
        self.active = 0
        self.peak = 0
        self.started: list[int] = []

    async def __call__(self, item: int) -> int:
        self.started.append(item)
        self.active += 1
        self.peak = max(self.peak, self.active)
        try:
            await asyncio.sleep(self.delay)
            if item < 0:
                raise ValueError(f"bad item {item}")
            return item * 10
        finally:
            self.active -= 1


class TestResolveSceneConcurrency:
    """Test clamping of the per-job scene concurrency."""

    @pytest.mark.parametrize(
        ("requested", "hard_cap", "expected"),
        [(3, 8, 3), (20, 8, 8), (0, 8, 1), (-2, 8, 1), (5, 0, 1)],
    )
    def test_clamped_to_range(self, requested, hard_cap, expected):
        assert resolve_scene_concurrency(requested, hard_cap=hard_cap) == expected

    def test_defaults_from_environment(self, monkeypatch):
        """Test that missing values come from the system defaults."""
        monkeypatch.setenv("DEFAULT_MAX_CONCURRENT_SCENES", "4")
        monkeypatch.setenv("SCENE_CONCURRENCY_HARD_CAP", "2")

        assert resolve_scene_concurrency() == 2
        assert resolve_scene_concurrency(None, hard_cap=8) == 4


@pytest.mark.asyncio
class TestRunBounded:
    """Test bounded execution."""

    async def test_results_in_input_order_within_bound(self):
        tracker = Tracker()

        results = await run_bounded([1, 2, 3, 4, 5], 2, tracker)

        assert results == [10, 20, 30, 40, 50]
        assert tracker.peak <= 2

    async def test_concurrency_one_is_sequential(self):
        tracker = Tracker()

        await run_bounded([1, 2, 3], 1, tracker)

        assert tracker.peak == 1
        assert tracker.started == [1, 2, 3]

    async def test_failure_finishes_batch_then_stops(self):
        """Test that the rest of the failing batch settles and no later batch starts."""
        tracker = Tracker()

        with pytest.raises(ValueError, match="bad item -2"):
            await run_bounded([1, -2, 3, 4, 5], 3, tracker)

        assert tracker.started == [1, -2, 3]
        assert tracker.active == 0

    async def test_cancel_checked_before_each_batch(self):
        """Test that a set cancel signal stops the next batch."""
        cancel = asyncio.Event()

        async def cancel_after_first(item: int) -> int:
            cancel.set()
            return item

        with pytest.raises(JobCancelledError):
            await run_bounded([1, 2, 3], 1, cancel_after_first, cancel_event=cancel)

    async def test_empty_items(self):
        assert await run_bounded([], 3, Tracker()) == []
