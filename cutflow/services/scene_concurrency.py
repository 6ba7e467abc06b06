"""Scene Concurrency Controller.

Runs per-scene work with a bounded number of scenes in flight. Items are
processed in batches of ``concurrency``: a batch is started with
``asyncio.gather(..., return_exceptions=True)`` and the next batch starts only
after every item of the current batch has settled. Batching (rather than a
sliding semaphore window) keeps cancellation checks and error reporting
deterministic: the cancel signal is checked before each batch, and when an
item fails the remaining items of the same batch still run to completion
before the first error is re-raised.

Usage:
    limit = resolve_scene_concurrency(job_config.max_concurrent_scenes)
    results = await run_bounded(scenes, limit, process_scene, cancel_event=cancel)
"""

import asyncio
from collections.abc import Awaitable, Callable, Sequence
from typing import TypeVar

from cutflow.config import get_default_max_concurrent_scenes, get_scene_concurrency_hard_cap
from cutflow.exceptions import JobCancelledError
from cutflow.utils.logging import get_logger

log = get_logger(__name__)

T = TypeVar("T")
R = TypeVar("R")


def resolve_scene_concurrency(requested: int | None = None, hard_cap: int | None = None) -> int:
    """Clamp a per-job scene concurrency to [1, hard cap].

    Args:
        requested: Value from the job config, None for the system default.
        hard_cap: System cap, defaults to SCENE_CONCURRENCY_HARD_CAP.

    Example:
        >>> resolve_scene_concurrency(20, hard_cap=8)
        8
        >>> resolve_scene_concurrency(0)
        1
    """
    cap = hard_cap if hard_cap is not None else get_scene_concurrency_hard_cap()
    value = requested if requested is not None else get_default_max_concurrent_scenes()
    return max(1, min(int(value), max(1, cap)))


def _batches(items: Sequence[T], size: int) -> list[Sequence[T]]:
    return [items[i : i + size] for i in range(0, len(items), size)]


async def run_bounded(
    items: Sequence[T],
    concurrency: int,
    fn: Callable[[T], Awaitable[R]],
    *,
    cancel_event: asyncio.Event | None = None,
) -> list[R]:
    """Run ``fn`` over ``items`` with at most ``concurrency`` in flight.

    Results are returned in input order. If any item raises, the rest of its
    batch settles, no further batch starts, and the first error (in input
    order) is re-raised.

    Raises:
        JobCancelledError: If ``cancel_event`` is set before a batch starts.
    """
    batches = _batches(items, max(1, concurrency))
    results: list[R] = []
    for number, batch in enumerate(batches, start=1):
        if cancel_event is not None and cancel_event.is_set():
            log.info(
                "scene_batch_cancelled",
                batch=number,
                batches=len(batches),
                completed_items=len(results),
            )
            raise JobCancelledError()
        log.debug("scene_batch_started", batch=number, batches=len(batches), size=len(batch))
        outcomes = await asyncio.gather(*(fn(item) for item in batch), return_exceptions=True)
        for outcome in outcomes:
            if isinstance(outcome, BaseException):
                raise outcome
            results.append(outcome)
    return results
