"""
concurrency.py — Bounded fan-out for independent per-checkpoint work.
"""

from __future__ import annotations
import asyncio
from typing import Awaitable, Callable, List, Sequence, TypeVar

T = TypeVar("T")
R = TypeVar("R")


async def bounded_gather(
    items: Sequence[T],
    worker: Callable[[T], Awaitable[R]],
    limit: int,
) -> List[R]:
    """
    Run ``worker`` over ``items`` with at most ``limit`` in flight.

    Results come back in input order. On the first failure every
    outstanding task is cancelled and the failure of the earliest item
    (in input order) among those that failed is raised. Cancelling the
    caller cancels every task before returning.
    """
    if not items:
        return []
    semaphore = asyncio.Semaphore(limit)

    async def run(item: T) -> R:
        async with semaphore:
            return await worker(item)

    tasks = [asyncio.ensure_future(run(item)) for item in items]
    try:
        await asyncio.wait(tasks, return_when=asyncio.FIRST_EXCEPTION)
    finally:
        pending = [t for t in tasks if not t.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

    for task in tasks:
        if not task.cancelled() and task.exception() is not None:
            raise task.exception()  # type: ignore[misc]
    return [task.result() for task in tasks]
