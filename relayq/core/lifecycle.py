"""Helpers shared by the background loops (workers, scheduler, sweeper, relay)."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Optional

from relayq.core.errors import ShutdownTimeoutError


async def sleep_or_stop(stop_event: asyncio.Event, seconds: float) -> bool:
    """Sleep up to ``seconds``; return True early if ``stop_event`` is set."""
    if seconds <= 0:
        return stop_event.is_set()
    try:
        await asyncio.wait_for(stop_event.wait(), timeout=seconds)
    except asyncio.TimeoutError:
        return False
    return True


async def wait_stopped(
    task: Optional[asyncio.Task],
    timeout: Optional[float],
    component: str,
) -> None:
    """Wait for a loop task that was asked to stop.

    Cancels the task and raises ``ShutdownTimeoutError`` if it is still
    running after ``timeout`` seconds. ``None`` waits indefinitely.
    """
    if task is None or task.done():
        return
    if timeout is None:
        await task
        return
    try:
        await asyncio.wait_for(asyncio.shield(task), timeout=timeout)
    except asyncio.TimeoutError:
        task.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await task
        raise ShutdownTimeoutError(component, timeout) from None
