"""Cached batch scheduling: one warm-up task, then fixed concurrency windows."""

from __future__ import annotations

import asyncio
import logging
from typing import Any, Awaitable, Callable, Sequence, TypeVar
from uuid import uuid4

T = TypeVar("T")
Task = Callable[[str], Awaitable[T]]

LOGGER = logging.getLogger("pipeline_forge.batch")


def divide(items: Sequence[T], capacity: int) -> list[list[T]]:
    """Split items into consecutive chunks of at most `capacity` elements."""
    if capacity < 1:
        raise ValueError("capacity must be >= 1")
    return [list(items[start : start + capacity]) for start in range(0, len(items), capacity)]


def plan_windows(count: int, concurrency: int) -> list[list[int]]:
    """Return the task indices of every window `run_all` will join.

    The input is cut into windows of `concurrency` tasks. Index 0 is awaited
    on its own before anything else starts, so it never appears in a window.
    The first window is therefore one short: ten tasks at concurrency three
    run as 3, 3, 3, 1 counting task 0 with its window, not 1, 3, 3, 3.
    """
    windows = [[index for index in window if index != 0] for window in divide(range(count), concurrency)]
    return [window for window in windows if window]


async def _join(awaitables: list[Awaitable[T]]) -> list[T]:
    futures = [asyncio.ensure_future(item) for item in awaitables]
    try:
        return list(await asyncio.gather(*futures))
    except BaseException:
        for future in futures:
            future.cancel()
        raise


async def run_all(tasks: Sequence[Task[T]], concurrency: int, cache_key: str | None = None) -> list[T]:
    """Run tasks sharing one cache key and return results in input order.

    The first task warms the shared cache alone. The others run in windows
    that are fully joined before the next window starts. The first failure
    cancels its window and propagates.
    """
    if concurrency < 1:
        raise ValueError("concurrency must be >= 1")
    if not tasks:
        return []

    key = cache_key or str(uuid4())
    results: list[Any] = [None] * len(tasks)
    results[0] = await tasks[0](key)

    windows = plan_windows(len(tasks), concurrency)
    for window_number, window in enumerate(windows, start=1):
        LOGGER.debug(
            "batch_window cache_key=%s window=%d/%d size=%d",
            key,
            window_number,
            len(windows),
            len(window),
        )
        values = await _join([tasks[index](key) for index in window])
        for index, value in zip(window, values):
            results[index] = value
    return results


async def execute_cached_batch(ctx: Any, tasks: Sequence[Task[T]], cache_key: str | None = None) -> list[T]:
    """Run tasks with the concurrency configured on the pipeline context."""
    return await run_all(tasks, ctx.settings.concurrency, cache_key)


def tolerant(task: Task[T], fallback: T, *, label: str = "task") -> Task[T]:
    """Wrap a task so that an exception becomes `fallback` instead of aborting the batch."""

    async def wrapped(cache_key: str) -> T:
        try:
            return await task(cache_key)
        except Exception:
            LOGGER.warning("batch_task_failed label=%s cache_key=%s", label, cache_key, exc_info=True)
            return fallback

    return wrapped
