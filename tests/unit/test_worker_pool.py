"""Tests for Worker, WorkerPool and VisibilitySweeper."""

from __future__ import annotations

import asyncio

import pytest


def _worker(queue, registry, **config):
    from relayq.core.job_queue import Worker, WorkerConfig

    config.setdefault("dequeue_timeout_seconds", 0)
    return Worker("worker-test", queue, registry, WorkerConfig(**config))


async def _wait_for(predicate, timeout: float = 2.0) -> None:
    deadline = asyncio.get_running_loop().time() + timeout
    while not predicate():
        if asyncio.get_running_loop().time() > deadline:
            raise AssertionError("condition not met in time")
        await asyncio.sleep(0.01)


class TestWorkerDispatch:
    """Tests for a single worker iteration."""

    @pytest.mark.asyncio
    async def test_success_acks_and_calls_hook(self, clock):
        from relayq.core.job_queue import (
            HandlerRegistry,
            InMemoryJobQueue,
            Job,
            JobHandler,
            JobStatus,
        )

        class RecordingHandler(JobHandler):
            def __init__(self):
                self.successes = []

            @property
            def job_type(self) -> str:
                return "email"

            async def execute(self, job):
                return {"sent": job.id}

            async def on_success(self, job, result):
                self.successes.append(result)

        queue = InMemoryJobQueue(clock=clock, dequeue_timeout=0)
        registry = HandlerRegistry()
        handler = RecordingHandler()
        registry.register(handler)
        job = Job(type="email")
        await queue.enqueue(job)

        worker = _worker(queue, registry)
        assert await worker.process_next() is True

        assert (await queue.get_job(job.id)).status == JobStatus.COMPLETED
        assert handler.successes == [{"sent": job.id}]
        assert worker.stats.jobs_succeeded == 1

    @pytest.mark.asyncio
    async def test_empty_queue(self, clock):
        from relayq.core.job_queue import HandlerRegistry, InMemoryJobQueue

        worker = _worker(InMemoryJobQueue(clock=clock), HandlerRegistry())

        assert await worker.process_next() is False
        assert worker.stats.jobs_processed == 0

    @pytest.mark.asyncio
    async def test_handler_error_nacks_for_retry(self, clock):
        from relayq.core.job_queue import HandlerRegistry, InMemoryJobQueue, Job, JobStatus

        def fail(job):
            raise RuntimeError("downstream unavailable")

        queue = InMemoryJobQueue(clock=clock, dequeue_timeout=0)
        registry = HandlerRegistry()
        registry.register_function("email", fail)
        job = Job(type="email")
        await queue.enqueue(job)

        worker = _worker(queue, registry)
        await worker.process_next()

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.RETRYING
        assert stored.last_error == "downstream unavailable"
        assert worker.stats.jobs_failed == 1
        assert worker.stats.jobs_retried == 1

    @pytest.mark.asyncio
    async def test_missing_handler_fails_job(self, clock):
        from relayq.core.job_queue import HandlerRegistry, InMemoryJobQueue, Job, JobStatus

        queue = InMemoryJobQueue(clock=clock, dequeue_timeout=0)
        job = Job(type="unknown", max_retries=5)
        await queue.enqueue(job)

        worker = _worker(queue, HandlerRegistry())
        await worker.process_next()

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.FAILED
        assert "No handler registered" in stored.last_error

    @pytest.mark.asyncio
    async def test_job_timeout_counts_as_failure(self, clock):
        from relayq.core.job_queue import HandlerRegistry, InMemoryJobQueue, Job, JobStatus

        async def slow(job):
            await asyncio.sleep(5)

        queue = InMemoryJobQueue(clock=clock, dequeue_timeout=0)
        registry = HandlerRegistry()
        registry.register_function("slow", slow)
        job = Job(type="slow")
        await queue.enqueue(job)

        worker = _worker(queue, registry, job_timeout_seconds=0.05)
        await worker.process_next()

        stored = await queue.get_job(job.id)
        assert stored.status == JobStatus.RETRYING
        assert "timed out" in stored.last_error

    @pytest.mark.asyncio
    async def test_dequeue_error_is_logged_not_raised(self):
        from unittest.mock import AsyncMock, MagicMock

        from relayq.core.errors import StoreUnavailableError
        from relayq.core.job_queue import HandlerRegistry

        queue = MagicMock()
        queue.dequeue = AsyncMock(side_effect=StoreUnavailableError("redis down"))

        worker = _worker(queue, HandlerRegistry(), error_backoff_seconds=0)

        assert await worker.process_next() is False


class TestWorkerPool:
    """Tests for WorkerPool lifecycle."""

    def test_worker_count_validated(self):
        from relayq.core.job_queue import InMemoryJobQueue, WorkerPool

        with pytest.raises(ValueError):
            WorkerPool(InMemoryJobQueue(), worker_count=0)

    @pytest.mark.asyncio
    async def test_pool_processes_jobs_and_stops(self):
        from relayq.core.job_queue import InMemoryJobQueue, Job, WorkerConfig, WorkerPool

        queue = InMemoryJobQueue(dequeue_timeout=0.01)
        pool = WorkerPool(queue, worker_count=3, config=WorkerConfig())
        seen = []
        pool.register_function("email", lambda job: seen.append(job.id))

        jobs = [Job(type="email") for _ in range(6)]
        for job in jobs:
            await queue.enqueue(job)

        await pool.start()
        assert pool.is_running
        assert len(pool.workers) == 3

        await _wait_for(lambda: len(seen) == 6)
        await pool.stop(timeout=2)

        stats = pool.get_stats()
        assert sorted(seen) == sorted(j.id for j in jobs)
        assert stats.total_jobs_processed == 6
        assert stats.successful_jobs == 6
        assert stats.active_workers == 0
        assert not pool.is_running

    @pytest.mark.asyncio
    async def test_handler_registered_after_start_is_visible(self):
        from relayq.core.job_queue import InMemoryJobQueue, Job, WorkerPool

        queue = InMemoryJobQueue(dequeue_timeout=0.01)
        pool = WorkerPool(queue, worker_count=1)
        await pool.start()

        done = asyncio.Event()
        pool.register_function("late", lambda job: done.set())
        await queue.enqueue(Job(type="late"))

        await asyncio.wait_for(done.wait(), timeout=2)
        await pool.stop(timeout=2)

    @pytest.mark.asyncio
    async def test_stop_timeout_raises(self):
        from relayq.core.errors import ShutdownTimeoutError
        from relayq.core.job_queue import InMemoryJobQueue, Job, WorkerPool

        started = asyncio.Event()

        async def stuck(job):
            started.set()
            await asyncio.sleep(10)

        queue = InMemoryJobQueue(dequeue_timeout=0.01)
        pool = WorkerPool(queue, worker_count=1)
        pool.register_function("stuck", stuck)
        await queue.enqueue(Job(type="stuck"))
        await pool.start()
        await asyncio.wait_for(started.wait(), timeout=2)

        with pytest.raises(ShutdownTimeoutError):
            await pool.stop(timeout=0.05)

        assert not pool.is_running


class TestVisibilitySweeper:
    """Tests for VisibilitySweeper."""

    @pytest.mark.asyncio
    async def test_run_once_sweeps_each_queue(self, clock):
        from relayq.core.job_queue import InMemoryJobQueue, Job, VisibilitySweeper

        queue = InMemoryJobQueue(clock=clock, processing_timeout=10, dequeue_timeout=0)
        await queue.enqueue(Job(type="email"))
        await queue.enqueue(Job(type="email", queue_name="mail"))
        await queue.dequeue("default", "mail")
        await queue.dequeue("default", "mail")

        sweeper = VisibilitySweeper(queue, queue_names=["default", "mail"])
        assert await sweeper.run_once() == 0

        clock.advance(10)
        assert await sweeper.run_once() == 2

    @pytest.mark.asyncio
    async def test_start_stop(self, clock):
        from relayq.core.job_queue import InMemoryJobQueue, VisibilitySweeper

        sweeper = VisibilitySweeper(InMemoryJobQueue(clock=clock), interval=0.01)

        await sweeper.start()
        assert sweeper.is_running
        await sweeper.stop(timeout=1)
        assert not sweeper.is_running
