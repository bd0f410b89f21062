"""Fire-and-forget tasks: scheduled, never awaited by the request path."""

import asyncio
from typing import Awaitable

import structlog

logger = structlog.get_logger()

# Strong references so pending tasks aren't garbage collected mid-flight
_pending: set[asyncio.Task] = set()


def fire_and_forget(coro: Awaitable, name: str) -> asyncio.Task:
    task = asyncio.ensure_future(coro)
    _pending.add(task)

    def _done(t: asyncio.Task):
        _pending.discard(t)
        if t.cancelled():
            return
        exc = t.exception()
        if exc is not None:
            logger.warning("background_task_failed", task=name, error=str(exc))

    task.add_done_callback(_done)
    return task


async def drain(timeout: float = 5.0):
    """Wait for outstanding tasks (shutdown, tests)."""
    if _pending:
        await asyncio.wait(list(_pending), timeout=timeout)
