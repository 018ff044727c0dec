"""Tests for RedisJobQueue against the in-process Redis fake."""

from __future__ import annotations

from unittest.mock import AsyncMock, MagicMock

import pytest


def _queue(fake_redis, clock, **kwargs):
    from relayq.core.job_queue import RedisJobQueue

    return RedisJobQueue(fake_redis, clock=clock, dequeue_timeout=0, **kwargs)


def _fail_first(fake_redis, command):
    """Make the first call of ``command`` raise a connection error."""
    from redis.exceptions import ConnectionError as RedisConnectionError

    real = getattr(fake_redis.state, command)
    calls = []

    async def flaky(*args, **kwargs):
        calls.append(args)
        if len(calls) == 1:
            raise RedisConnectionError("connection reset")
        return real(*args, **kwargs)

    setattr(fake_redis, command, flaky)
    return calls


class TestRedisKeyLayout:
    """Tests for the Redis key layout."""

    @pytest.mark.asyncio
    async def test_enqueue_writes_record_and_priority_list(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobPriority

        queue = _queue(fake_redis, clock)
        job = Job(type="email", priority=JobPriority.HIGH)

        await queue.enqueue(job)

        state = fake_redis.state
        assert state.lists["job:queue:default:2"] == [job.id]
        assert "job:data:" + job.id in state.strings
        assert state.ttls["job:data:" + job.id] == 7 * 86400
        assert state.hashes["job:stats:default"]["enqueued"] == "1"
        assert fake_redis.pipelines == 1

    @pytest.mark.asyncio
    async def test_custom_prefix(self, fake_redis, clock):
        from relayq.core.job_queue import Job

        queue = _queue(fake_redis, clock, key_prefix="app:")
        job = Job(type="email")

        await queue.enqueue(job)

        assert queue.key_prefix == "app:"
        assert "app:data:" + job.id in fake_redis.state.strings


class TestRedisDequeue:
    """Tests for claiming jobs."""

    @pytest.mark.asyncio
    async def test_priority_then_fifo(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobPriority

        queue = _queue(fake_redis, clock)
        first = Job(type="email")
        second = Job(type="email")
        urgent = Job(type="email", priority=JobPriority.CRITICAL)
        for job in (first, second, urgent):
            await queue.enqueue(job)

        order = [(await queue.dequeue()).id for _ in range(3)]

        assert order == [urgent.id, first.id, second.id]
        assert await queue.dequeue() is None

    @pytest.mark.asyncio
    async def test_claim_sets_deadline_and_processing(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock, processing_timeout=30, visibility_grace=60)
        job = Job(type="email")
        await queue.enqueue(job)

        claimed = await queue.dequeue()

        state = fake_redis.state
        assert claimed.status == JobStatus.PROCESSING
        assert state.lists["job:processing:default"] == [job.id]
        assert state.zsets["job:deadlines:default"][job.id] == clock.now + 30
        assert state.ttls["job:data:" + job.id] == 90

    @pytest.mark.asyncio
    async def test_deleted_record_is_skipped(self, fake_redis, clock):
        from relayq.core.job_queue import Job

        queue = _queue(fake_redis, clock)
        orphan = Job(type="email")
        live = Job(type="email")
        await queue.enqueue(orphan)
        await queue.enqueue(live)
        del fake_redis.state.strings["job:data:" + orphan.id]

        claimed = await queue.dequeue()

        assert claimed.id == live.id
        assert fake_redis.state.lists["job:processing:default"] == [live.id]

    @pytest.mark.asyncio
    async def test_redis_error_wrapped(self, clock):
        from redis.exceptions import ConnectionError as RedisConnectionError

        from relayq.core.errors import StoreUnavailableError
        from relayq.core.job_queue import Job, RedisJobQueue

        redis = MagicMock()
        pipe = MagicMock()
        pipe.execute = AsyncMock(side_effect=RedisConnectionError("refused"))
        redis.pipeline.return_value = pipe
        redis.zrangebyscore = AsyncMock(side_effect=RedisConnectionError("refused"))
        queue = RedisJobQueue(redis, clock=clock, dequeue_timeout=0)

        with pytest.raises(StoreUnavailableError):
            await queue.enqueue(Job(type="email"))
        with pytest.raises(StoreUnavailableError):
            await queue.dequeue()


class TestRedisRetry:
    """Tests for nack, delayed release and visibility sweeping."""

    @pytest.mark.asyncio
    async def test_backoff_scenario(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock)
        await queue.enqueue(Job(type="email", max_retries=2))

        job = await queue.dequeue()
        await queue.nack_job(job, RuntimeError("smtp down"))
        assert fake_redis.state.zsets["job:delayed:default"][job.id] == clock.now + 1
        assert fake_redis.state.lists["job:processing:default"] == []

        clock.advance(1)
        job = await queue.dequeue()
        await queue.nack_job(job, RuntimeError("smtp down"))
        assert fake_redis.state.zsets["job:delayed:default"][job.id] == clock.now + 2

        clock.advance(2)
        job = await queue.dequeue()
        await queue.nack_job(job, RuntimeError("smtp down"))

        stored = await queue.get_job(job.id)
        stats = await queue.get_stats()
        assert stored.status == JobStatus.FAILED
        assert stored.retry_count == 2
        assert fake_redis.state.lists["job:failed:default"] == [job.id]
        assert stats.failed_count == 1
        assert stats.retried_total == 2
        assert stats.by_type["failed:email"] == 1

    @pytest.mark.asyncio
    async def test_enqueue_at_and_promotion(self, fake_redis, clock):
        from datetime import timedelta

        from relayq.core.job_queue import Job
        from relayq.utils.clock import utc_now

        queue = _queue(fake_redis, clock)
        job = Job(type="report")
        await queue.enqueue_at(job, utc_now(clock) + timedelta(seconds=60))

        assert await queue.get_queue_size() == 1
        assert await queue.dequeue() is None

        clock.advance(60)
        released = await queue.dequeue()

        assert released.id == job.id
        assert fake_redis.state.zsets["job:delayed:default"] == {}

    @pytest.mark.asyncio
    async def test_requeue_expired(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock, processing_timeout=5)
        await queue.enqueue(Job(type="email"))
        job = await queue.dequeue()

        clock.advance(5)
        requeued = await queue.requeue_expired()

        stored = await queue.get_job(job.id)
        assert requeued == 1
        assert stored.status == JobStatus.RETRYING
        assert stored.retry_count == 1
        assert fake_redis.state.lists["job:processing:default"] == []
        assert job.id in fake_redis.state.zsets["job:delayed:default"]

    @pytest.mark.asyncio
    async def test_requeue_expired_drops_missing_record(self, fake_redis, clock):
        from relayq.core.job_queue import Job

        queue = _queue(fake_redis, clock, processing_timeout=5)
        await queue.enqueue(Job(type="email"))
        job = await queue.dequeue()
        del fake_redis.state.strings["job:data:" + job.id]

        clock.advance(5)

        assert await queue.requeue_expired() == 0
        assert fake_redis.state.lists["job:processing:default"] == []
        assert fake_redis.state.zsets["job:deadlines:default"] == {}


class TestRedisPartialFailures:
    """A command failing between two writes never loses a job."""

    @pytest.mark.asyncio
    async def test_failed_read_after_claim_is_requeued(self, fake_redis, clock):
        from relayq.core.errors import StoreUnavailableError
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock, processing_timeout=30)
        job = Job(type="email")
        await queue.enqueue(job)
        _fail_first(fake_redis, "get")

        with pytest.raises(StoreUnavailableError):
            await queue.dequeue()

        state = fake_redis.state
        assert state.lists["job:processing:default"] == [job.id]
        assert state.zsets["job:deadlines:default"][job.id] == clock.now + 30

        clock.advance(30)
        assert await queue.requeue_expired() == 1
        clock.advance(1)
        claimed = await queue.dequeue()

        assert claimed.id == job.id
        assert claimed.status == JobStatus.PROCESSING
        assert claimed.retry_count == 1

    @pytest.mark.asyncio
    async def test_failed_read_during_promotion_keeps_delayed_id(self, fake_redis, clock):
        from datetime import timedelta

        from relayq.core.errors import StoreUnavailableError
        from relayq.core.job_queue import Job
        from relayq.utils.clock import utc_now

        queue = _queue(fake_redis, clock)
        job = Job(type="report")
        await queue.enqueue_at(job, utc_now(clock) + timedelta(seconds=10))
        clock.advance(10)
        _fail_first(fake_redis, "get")

        with pytest.raises(StoreUnavailableError):
            await queue.dequeue()

        assert job.id in fake_redis.state.zsets["job:delayed:default"]
        assert (await queue.dequeue()).id == job.id
        assert fake_redis.state.zsets["job:delayed:default"] == {}

    @pytest.mark.asyncio
    async def test_promotion_drops_id_without_record(self, fake_redis, clock):
        from datetime import timedelta

        from relayq.core.job_queue import Job
        from relayq.utils.clock import utc_now

        queue = _queue(fake_redis, clock)
        job = Job(type="report")
        await queue.enqueue_at(job, utc_now(clock) + timedelta(seconds=10))
        del fake_redis.state.strings["job:data:" + job.id]
        clock.advance(10)

        assert await queue.dequeue() is None
        assert fake_redis.state.zsets["job:delayed:default"] == {}
        assert await queue.get_queue_size() == 0

    @pytest.mark.asyncio
    async def test_failed_read_during_sweep_keeps_deadline(self, fake_redis, clock):
        from relayq.core.errors import StoreUnavailableError
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock, processing_timeout=5)
        await queue.enqueue(Job(type="email"))
        job = await queue.dequeue()
        clock.advance(5)
        _fail_first(fake_redis, "get")

        with pytest.raises(StoreUnavailableError):
            await queue.requeue_expired()

        assert job.id in fake_redis.state.zsets["job:deadlines:default"]
        assert await queue.requeue_expired() == 1
        assert (await queue.get_job(job.id)).status == JobStatus.RETRYING
        assert fake_redis.state.zsets["job:deadlines:default"] == {}

    @pytest.mark.asyncio
    async def test_sweep_skips_completed_record(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock, processing_timeout=5)
        await queue.enqueue(Job(type="email"))
        job = await queue.dequeue()
        await queue.ack_job(job)
        # a deadline left behind by a concurrent claim
        fake_redis.state.zadd("job:deadlines:default", {job.id: clock.now})

        assert await queue.requeue_expired() == 0
        assert (await queue.get_job(job.id)).status == JobStatus.COMPLETED
        assert fake_redis.state.zsets["job:deadlines:default"] == {}
        assert "job:delayed:default" not in fake_redis.state.zsets


class TestRedisAdmin:
    """Tests for ack, listing, retry and delete."""

    @pytest.mark.asyncio
    async def test_ack(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock)
        await queue.enqueue(Job(type="email"))
        job = await queue.dequeue()

        await queue.ack_job(job)

        state = fake_redis.state
        assert (await queue.get_job(job.id)).status == JobStatus.COMPLETED
        assert state.lists["job:completed:default"] == [job.id]
        assert state.ttls["job:completed:default"] == 86400
        assert state.zsets["job:deadlines:default"] == {}

    @pytest.mark.asyncio
    async def test_pending_jobs_oldest_first(self, fake_redis, clock):
        from relayq.core.job_queue import Job

        queue = _queue(fake_redis, clock)
        jobs = [Job(type="email") for _ in range(3)]
        for job in jobs:
            await queue.enqueue(job)

        pending = await queue.get_pending_jobs(limit=2)

        assert [j.id for j in pending] == [jobs[0].id, jobs[1].id]

    @pytest.mark.asyncio
    async def test_retry_failed_job(self, fake_redis, clock):
        from relayq.core.job_queue import Job, JobStatus

        queue = _queue(fake_redis, clock)
        await queue.enqueue(Job(type="email", max_retries=0))
        job = await queue.dequeue()
        await queue.nack_job(job, RuntimeError("boom"))

        retried = await queue.retry_job(job.id)

        assert retried.status == JobStatus.PENDING
        assert fake_redis.state.lists["job:failed:default"] == []
        assert (await queue.get_stats()).requeued_total == 1
        assert (await queue.dequeue()).id == job.id

    @pytest.mark.asyncio
    async def test_delete_removes_everywhere(self, fake_redis, clock):
        from relayq.core.job_queue import Job

        queue = _queue(fake_redis, clock)
        job = Job(type="email")
        await queue.enqueue(job)

        await queue.delete_job(job.id)
        await queue.delete_job(job.id)

        assert await queue.get_job(job.id) is None
        assert await queue.get_queue_size() == 0
