"""Background runtime wiring.

Builds the long-running components from ``Settings`` and starts and stops
them together:
- ``WorkerPool`` over a ``RedisJobQueue``
- ``JobScheduler`` persisted in a ``RedisScheduleStore``
- ``VisibilitySweeper`` for abandoned jobs
- ``OutboxRelay`` when an outbox service and a bus are supplied
"""

from __future__ import annotations

import logging
from typing import Any, List, Optional

from relayq.core.config import Settings
from relayq.core.errors import ShutdownTimeoutError
from relayq.core.inbox import InboxService
from relayq.core.job_queue.backends import RedisJobQueue
from relayq.core.job_queue.core import (
    DEFAULT_QUEUE,
    HandlerRegistry,
    Job,
    JobPayload,
    JobPriority,
    JobQueue,
    create_job,
)
from relayq.core.job_queue.sweeper import VisibilitySweeper
from relayq.core.job_queue.worker import WorkerConfig, WorkerPool, setup_signal_handlers
from relayq.core.message_bus import MessageBus
from relayq.core.outbox import OutboxService
from relayq.core.outbox.relay import OutboxRelay
from relayq.core.tasks.maintenance import MessageCleanupHandler, OutboxProcessingHandler
from relayq.core.tasks.scheduler import JobScheduler, RedisScheduleStore, ScheduleStore

logger = logging.getLogger(__name__)


class BackgroundRuntime:
    """Owns the queue, workers, scheduler, sweeper and relay of one process."""

    def __init__(
        self,
        settings: Settings,
        redis_client: Any = None,
        registry: Optional[HandlerRegistry] = None,
        outbox_service: Optional[OutboxService] = None,
        inbox_service: Optional[InboxService] = None,
        bus: Optional[MessageBus] = None,
        queue: Optional[JobQueue] = None,
        schedule_store: Optional[ScheduleStore] = None,
        run_relay_loop: bool = True,
    ):
        if queue is None:
            if redis_client is None:
                raise ValueError("redis_client is required when no queue is given")
            queue = RedisJobQueue.from_settings(redis_client, settings)
        if schedule_store is None and redis_client is not None:
            schedule_store = RedisScheduleStore(redis_client, key_prefix=settings.REDIS_KEY_PREFIX)

        self.settings = settings
        self.queue = queue
        self.pool = WorkerPool(
            queue,
            worker_count=settings.WORKER_COUNT,
            registry=registry,
            config=WorkerConfig.from_settings(settings),
        )
        self.scheduler = JobScheduler(
            queue,
            store=schedule_store,
            tick_interval=settings.SCHEDULER_TICK_SECONDS,
        )
        self.sweeper = VisibilitySweeper(
            queue,
            queue_names=settings.WORKER_QUEUES,
            interval=settings.VISIBILITY_SWEEP_INTERVAL_SECONDS,
        )

        self.relay: Optional[OutboxRelay] = None
        if outbox_service is not None and bus is not None:
            self.relay = OutboxRelay.from_settings(outbox_service, bus, settings)
            self.pool.register_handler(OutboxProcessingHandler(self.relay))
        if outbox_service is not None or inbox_service is not None:
            self.pool.register_handler(MessageCleanupHandler(outbox_service, inbox_service))
        self._run_relay_loop = run_relay_loop and self.relay is not None
        self._running = False

    @property
    def is_running(self) -> bool:
        return self._running

    def create_job(
        self,
        payload: JobPayload,
        priority: Optional[JobPriority] = None,
        max_retries: Optional[int] = None,
        queue_name: str = DEFAULT_QUEUE,
        job_type: Optional[str] = None,
    ) -> Job:
        """``create_job`` with ``max_retries`` defaulting to ``MAX_RETRIES``."""
        if max_retries is None:
            max_retries = self.settings.MAX_RETRIES
        return create_job(
            payload,
            priority=priority,
            max_retries=max_retries,
            queue_name=queue_name,
            job_type=job_type,
        )

    async def submit(self, payload: JobPayload, **kwargs: Any) -> Job:
        """Create a job from ``payload`` and enqueue it."""
        job = self.create_job(payload, **kwargs)
        await self.queue.enqueue(job)
        return job

    async def start(self) -> None:
        if self._running:
            return
        await self.scheduler.start()
        await self.pool.start()
        await self.sweeper.start()
        if self._run_relay_loop:
            await self.relay.start()
        self._running = True
        logger.info(
            f"Runtime started: {self.settings.WORKER_COUNT} workers on "
            f"{', '.join(self.settings.WORKER_QUEUES)}"
        )

    async def stop(self, timeout: Optional[float] = 30.0) -> None:
        """Stop every component, then raise the first shutdown timeout if any."""
        if not self._running:
            return
        self._running = False

        errors: List[ShutdownTimeoutError] = []
        components = [self.relay, self.scheduler, self.sweeper, self.pool]
        for component in components:
            if component is None:
                continue
            try:
                await component.stop(timeout)
            except ShutdownTimeoutError as e:
                logger.error(str(e))
                errors.append(e)

        logger.info("Runtime stopped")
        if errors:
            raise errors[0]

    def install_signal_handlers(self, timeout: Optional[float] = 30.0) -> None:
        setup_signal_handlers(self, timeout)


__all__ = ["BackgroundRuntime"]
