"""Visibility sweeper.

Jobs stay in the processing set while a worker holds them. A worker that
dies never acks, so a periodic sweep hands jobs past their visibility
deadline back to the queue as a failed attempt (retry_count increments,
terminal once retries are exhausted). Default cadence is one minute.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional, Sequence

from relayq.core.job_queue.core import DEFAULT_QUEUE, JobQueue
from relayq.core.lifecycle import sleep_or_stop, wait_stopped

logger = logging.getLogger(__name__)


class VisibilitySweeper:
    """Periodically requeues processing jobs whose deadline passed."""

    def __init__(
        self,
        queue: JobQueue,
        queue_names: Sequence[str] = (DEFAULT_QUEUE,),
        interval: float = 60.0,
    ):
        self._queue = queue
        self._queue_names = list(queue_names)
        self._interval = interval
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def run_once(self) -> int:
        """Sweep every configured queue once. Returns the number requeued."""
        total = 0
        for queue_name in self._queue_names:
            total += await self._queue.requeue_expired(queue_name)
        return total

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._sweep_loop())
        logger.info(f"Visibility sweeper started (interval={self._interval}s)")

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await wait_stopped(self._task, timeout, "visibility sweeper")
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Visibility sweeper stopped")

    async def _sweep_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Visibility sweep error: {e}")

            if await sleep_or_stop(self._stop_event, self._interval):
                break
