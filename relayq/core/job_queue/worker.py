"""Job Queue Worker.

Provides worker implementation:
- Job processing loop with ack/nack
- Graceful shutdown
- Worker pool with a shared handler registry
"""

from __future__ import annotations

import asyncio
import logging
import signal
import time
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import Any, Callable, Dict, List, Optional

from relayq.core.errors import HandlerNotFoundError, RelayError, ShutdownTimeoutError
from relayq.core.job_queue.core import (
    DEFAULT_QUEUE,
    HandlerRegistry,
    Job,
    JobHandler,
    JobQueue,
    JobStatus,
)
from relayq.core.lifecycle import wait_stopped
from relayq.core.logging.structured import clear_job_context, set_job_context
from relayq.utils import metrics

logger = logging.getLogger(__name__)


class WorkerState(Enum):
    STOPPED = "stopped"
    RUNNING = "running"
    STOPPING = "stopping"


@dataclass
class WorkerConfig:
    """Worker configuration."""
    queue_names: List[str] = field(default_factory=lambda: [DEFAULT_QUEUE])
    dequeue_timeout_seconds: Optional[float] = None
    job_timeout_seconds: Optional[float] = None
    error_backoff_seconds: float = 1.0

    @classmethod
    def from_settings(cls, settings: Any) -> "WorkerConfig":
        return cls(
            queue_names=list(settings.WORKER_QUEUES),
            dequeue_timeout_seconds=settings.DEQUEUE_TIMEOUT_SECONDS,
            job_timeout_seconds=settings.JOB_TIMEOUT_SECONDS,
        )


@dataclass
class WorkerStats:
    """Worker statistics."""
    started_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    jobs_processed: int = 0
    jobs_succeeded: int = 0
    jobs_failed: int = 0
    jobs_retried: int = 0

    @property
    def uptime_seconds(self) -> float:
        return (datetime.now(timezone.utc) - self.started_at).total_seconds()


@dataclass
class WorkerPoolStats:
    """Aggregated pool statistics."""
    active_workers: int = 0
    total_jobs_processed: int = 0
    successful_jobs: int = 0
    failed_jobs: int = 0


class Worker:
    """Single execution loop: dequeue, dispatch to a handler, ack or nack."""

    def __init__(
        self,
        worker_id: str,
        queue: JobQueue,
        registry: HandlerRegistry,
        config: Optional[WorkerConfig] = None,
    ):
        self._id = worker_id
        self._queue = queue
        self._registry = registry
        self._config = config or WorkerConfig()

        self._state = WorkerState.STOPPED
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._stats = WorkerStats()

    @property
    def id(self) -> str:
        return self._id

    @property
    def state(self) -> WorkerState:
        return self._state

    @property
    def stats(self) -> WorkerStats:
        return self._stats

    @property
    def is_running(self) -> bool:
        return self._state == WorkerState.RUNNING

    async def start(self) -> None:
        """Start the processing loop in the background."""
        if self._state != WorkerState.STOPPED:
            return

        self._state = WorkerState.RUNNING
        self._stop_event = asyncio.Event()
        self._stats = WorkerStats()
        self._task = asyncio.create_task(self._processor_loop(), name=self._id)
        logger.info(f"Worker {self._id} started for queues: {self._config.queue_names}")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop after the in-flight job, if any, has been acked or nacked."""
        if self._state == WorkerState.STOPPED:
            return

        self._state = WorkerState.STOPPING
        if self._stop_event:
            self._stop_event.set()

        try:
            await wait_stopped(self._task, timeout, f"worker {self._id}")
        finally:
            self._task = None
            self._state = WorkerState.STOPPED
            logger.info(f"Worker {self._id} stopped")

    async def _processor_loop(self) -> None:
        """Main processing loop."""
        set_job_context(worker_id=self._id)
        while not self._stop_event.is_set():
            try:
                await self.process_next()
            except Exception as e:
                logger.exception(f"Worker {self._id} loop error: {e}")
                await asyncio.sleep(self._config.error_backoff_seconds)

    async def process_next(self) -> bool:
        """Run one dequeue/dispatch iteration. Returns True if a job was handled."""
        try:
            job = await self._queue.dequeue(
                *self._config.queue_names,
                timeout=self._config.dequeue_timeout_seconds,
            )
        except RelayError as e:
            logger.error(f"Worker {self._id} dequeue error: {e}")
            await asyncio.sleep(self._config.error_backoff_seconds)
            return False

        if job is None:
            return False

        await self._process_job(job)
        return True

    async def _process_job(self, job: Job) -> None:
        """Process a single job."""
        set_job_context(job_id=job.id, worker_id=self._id)
        self._stats.jobs_processed += 1
        start = time.perf_counter()

        try:
            handler = self._registry.get(job.type)
            if handler is None:
                await self._handle_failure(job, None, HandlerNotFoundError(job.type))
                return

            timeout = self._config.job_timeout_seconds
            try:
                if timeout:
                    result = await asyncio.wait_for(handler.execute(job), timeout=timeout)
                else:
                    result = await handler.execute(job)
            except asyncio.TimeoutError:
                await self._handle_failure(
                    job, handler, TimeoutError(f"Job timed out after {timeout}s")
                )
            except Exception as e:
                await self._handle_failure(job, handler, e)
            else:
                await self._handle_success(job, handler, result)
        finally:
            metrics.job_duration_seconds.labels(
                job_type=job.type, queue=job.queue_name
            ).observe(time.perf_counter() - start)
            clear_job_context()

    async def _handle_success(self, job: Job, handler: JobHandler, result: Any) -> None:
        try:
            await self._queue.ack_job(job)
        except RelayError as e:
            # left in processing; the visibility sweeper hands it back
            logger.error(f"Worker {self._id} failed to ack job {job.id}: {e}")
            return

        self._stats.jobs_succeeded += 1
        metrics.jobs_processed_total.labels(
            job_type=job.type, queue=job.queue_name, status="success"
        ).inc()
        logger.debug(f"Worker {self._id} completed job {job.id}")
        await handler.on_success(job, result)

    async def _handle_failure(
        self,
        job: Job,
        handler: Optional[JobHandler],
        error: BaseException,
    ) -> None:
        logger.error(f"Job {job.id} ({job.type}) failed on {self._id}: {error}")

        try:
            await self._queue.nack_job(job, error)
        except RelayError as e:
            logger.error(f"Worker {self._id} failed to nack job {job.id}: {e}")
            return

        self._stats.jobs_failed += 1
        metrics.jobs_processed_total.labels(
            job_type=job.type, queue=job.queue_name, status="failure"
        ).inc()
        if job.status == JobStatus.RETRYING:
            self._stats.jobs_retried += 1
            metrics.job_retries_total.labels(job_type=job.type, queue=job.queue_name).inc()

        if handler is not None:
            await handler.on_failure(job, error)


class WorkerPool:
    """Fixed set of workers sharing one queue and handler registry."""

    def __init__(
        self,
        queue: JobQueue,
        worker_count: int = 3,
        registry: Optional[HandlerRegistry] = None,
        config: Optional[WorkerConfig] = None,
    ):
        if worker_count < 1:
            raise ValueError(f"worker_count must be >= 1, got {worker_count}")

        self._queue = queue
        self._worker_count = worker_count
        self._registry = registry or HandlerRegistry()
        self._config = config or WorkerConfig()
        self._workers: List[Worker] = []
        self._finished = WorkerPoolStats()
        self._running = False

    @property
    def registry(self) -> HandlerRegistry:
        return self._registry

    @property
    def workers(self) -> List[Worker]:
        return list(self._workers)

    @property
    def is_running(self) -> bool:
        return self._running

    def register_handler(self, handler: JobHandler) -> None:
        """Register a handler; every current and future worker sees it."""
        self._registry.register(handler)

    def register_function(self, job_type: str, func: Callable[[Job], Any]) -> None:
        self._registry.register_function(job_type, func)

    async def start(self) -> None:
        """Start all workers."""
        if self._running:
            return

        self._running = True
        self._workers = [
            Worker(f"worker-{i}", self._queue, self._registry, self._config)
            for i in range(1, self._worker_count + 1)
        ]
        for worker in self._workers:
            await worker.start()

        metrics.active_workers.set(len(self._workers))
        logger.info(f"Worker pool started with {len(self._workers)} workers")

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Stop all workers in parallel, bounded by ``timeout``."""
        if not self._running:
            return

        logger.info("Stopping worker pool")
        results = await asyncio.gather(
            *[worker.stop(timeout) for worker in self._workers],
            return_exceptions=True,
        )

        for worker in self._workers:
            self._finished.total_jobs_processed += worker.stats.jobs_processed
            self._finished.successful_jobs += worker.stats.jobs_succeeded
            self._finished.failed_jobs += worker.stats.jobs_failed
        self._workers = []
        self._running = False
        metrics.active_workers.set(0)

        errors = [r for r in results if isinstance(r, BaseException)]
        if any(isinstance(e, ShutdownTimeoutError) for e in errors):
            raise ShutdownTimeoutError("worker pool", timeout)
        if errors:
            raise errors[0]
        logger.info("Worker pool stopped")

    def get_stats(self) -> WorkerPoolStats:
        stats = WorkerPoolStats(
            active_workers=sum(1 for w in self._workers if w.is_running),
            total_jobs_processed=self._finished.total_jobs_processed,
            successful_jobs=self._finished.successful_jobs,
            failed_jobs=self._finished.failed_jobs,
        )
        for worker in self._workers:
            stats.total_jobs_processed += worker.stats.jobs_processed
            stats.successful_jobs += worker.stats.jobs_succeeded
            stats.failed_jobs += worker.stats.jobs_failed
        return stats

    def get_worker_stats(self) -> Dict[str, WorkerStats]:
        return {worker.id: worker.stats for worker in self._workers}


def setup_signal_handlers(target: Any, timeout: Optional[float] = 30.0) -> None:
    """Stop ``target`` (anything with ``async stop(timeout)``) on SIGTERM/SIGINT."""
    loop = asyncio.get_running_loop()

    def signal_handler():
        logger.info("Received shutdown signal")
        asyncio.create_task(target.stop(timeout))

    for sig in (signal.SIGTERM, signal.SIGINT):
        try:
            loop.add_signal_handler(sig, signal_handler)
        except NotImplementedError:
            # Windows doesn't support add_signal_handler
            pass
