"""Job Queue Backends.

Provides queue implementations:
- In-memory queue (testing, single process)
- Redis-based queue (production)

Both backends share the same semantics: one FIFO per (queue, priority),
a delayed set scored by release time, a processing set with visibility
deadlines, failed and completed lists, and per-queue counters.
"""

from __future__ import annotations

import asyncio
import logging
import time
from collections import Counter, defaultdict, deque
from datetime import datetime, timedelta
from typing import Any, Deque, Dict, List, Optional, Tuple

from redis.exceptions import RedisError

from relayq.core.errors import (
    InvalidJobStateError,
    JobNotFoundError,
    StoreUnavailableError,
    VisibilityTimeoutError,
)
from relayq.core.job_queue.core import (
    DEFAULT_QUEUE,
    Job,
    JobPriority,
    JobQueue,
    JobStatus,
    QueueStats,
    RetryPolicy,
)
from relayq.utils import metrics
from relayq.utils.clock import Clock, to_timestamp, utc_now

logger = logging.getLogger(__name__)

RECORD_TTL_SECONDS = 7 * 86400
FAILED_TTL_SECONDS = 7 * 86400
COMPLETED_TTL_SECONDS = 86400
POLL_INTERVAL_SECONDS = 0.1

# KEYS: queue list, processing list, deadlines zset. ARGV: visibility deadline.
# A claimed id never sits in processing without a deadline.
LUA_CLAIM = """
local job_id = redis.call('RPOP', KEYS[1])
if not job_id then
    return false
end
redis.call('LPUSH', KEYS[2], job_id)
redis.call('ZADD', KEYS[3], ARGV[1], job_id)
return job_id
"""

# KEYS: delayed zset, target queue list. ARGV: job id.
LUA_PROMOTE = """
if redis.call('ZREM', KEYS[1], ARGV[1]) == 1 then
    redis.call('LPUSH', KEYS[2], ARGV[1])
    return 1
end
return 0
"""


def _error_text(error: BaseException) -> str:
    return str(error) or type(error).__name__


def _record_enqueued(job: Job) -> None:
    metrics.jobs_enqueued_total.labels(
        job_type=job.type,
        queue=job.queue_name,
        priority=job.priority.name.lower(),
    ).inc()


def _decode(value: Any) -> Any:
    if isinstance(value, bytes):
        return value.decode()
    return value


class InMemoryJobQueue(JobQueue):
    """In-memory job queue for testing."""

    def __init__(
        self,
        retry_policy: Optional[RetryPolicy] = None,
        processing_timeout: float = 600.0,
        dequeue_timeout: float = 1.0,
        clock: Clock = time.time,
    ):
        self._retry_policy = retry_policy or RetryPolicy()
        self._processing_timeout = processing_timeout
        self._dequeue_timeout = dequeue_timeout
        self._clock = clock

        # Records are kept as JSON so callers never share state with the queue
        self._records: Dict[str, str] = {}
        self._pending: Dict[Tuple[str, JobPriority], Deque[str]] = defaultdict(deque)
        self._delayed: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._processing: Dict[str, Dict[str, float]] = defaultdict(dict)
        self._failed: Dict[str, List[str]] = defaultdict(list)
        self._completed: Dict[str, List[str]] = defaultdict(list)
        self._stats: Dict[str, Counter] = defaultdict(Counter)
        self._lock: Optional[asyncio.Lock] = None

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    def _load(self, job_id: str) -> Optional[Job]:
        raw = self._records.get(job_id)
        return Job.from_json(raw) if raw is not None else None

    def _save(self, job: Job) -> None:
        self._records[job.id] = job.to_json()

    async def enqueue(self, job: Job) -> None:
        raw = job.to_json()
        async with self._get_lock():
            self._records[job.id] = raw
            self._pending[(job.queue_name, job.priority)].append(job.id)
            self._stats[job.queue_name]["enqueued"] += 1
        _record_enqueued(job)
        logger.debug(f"Enqueued job {job.id} ({job.type}) to {job.queue_name}")

    async def enqueue_at(self, job: Job, at: datetime) -> None:
        job.scheduled_at = at
        raw = job.to_json()
        async with self._get_lock():
            self._records[job.id] = raw
            self._delayed[job.queue_name][job.id] = to_timestamp(at)
            self._stats[job.queue_name]["scheduled"] += 1
        _record_enqueued(job)
        logger.debug(f"Scheduled job {job.id} ({job.type}) for {at.isoformat()}")

    async def dequeue(
        self,
        *queue_names: str,
        timeout: Optional[float] = None,
    ) -> Optional[Job]:
        queues = queue_names or (DEFAULT_QUEUE,)
        timeout = self._dequeue_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        while True:
            async with self._get_lock():
                for queue_name in queues:
                    self._promote_due(queue_name)

                job = self._claim_next(queues)
                if job is not None:
                    return job

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    def _claim_next(self, queues: Tuple[str, ...]) -> Optional[Job]:
        for priority in JobPriority.descending():
            for queue_name in queues:
                pending = self._pending.get((queue_name, priority))
                while pending:
                    job_id = pending.popleft()
                    job = self._load(job_id)
                    if job is None:
                        continue
                    job.status = JobStatus.PROCESSING
                    self._save(job)
                    self._processing[queue_name][job_id] = (
                        self._clock() + self._processing_timeout
                    )
                    logger.debug(f"Dequeued job {job.id} from {queue_name}")
                    return job
        return None

    def _promote_due(self, queue_name: str) -> None:
        """Move delayed jobs whose release time passed onto their priority list."""
        delayed = self._delayed.get(queue_name)
        if not delayed:
            return
        now = self._clock()
        due = sorted(
            (score, job_id) for job_id, score in delayed.items() if score <= now
        )
        for _, job_id in due:
            del delayed[job_id]
            job = self._load(job_id)
            if job is None:
                continue
            self._pending[(queue_name, job.priority)].append(job_id)

    async def ack_job(self, job: Job) -> None:
        async with self._get_lock():
            self._processing[job.queue_name].pop(job.id, None)
            self._delayed[job.queue_name].pop(job.id, None)
            job.status = JobStatus.COMPLETED
            job.processed_at = utc_now(self._clock)
            self._save(job)
            self._completed[job.queue_name].insert(0, job.id)
            self._stats[job.queue_name]["completed"] += 1
            self._stats[job.queue_name][f"completed:{job.type}"] += 1
        logger.debug(f"Job {job.id} completed")

    async def nack_job(self, job: Job, error: BaseException) -> None:
        async with self._get_lock():
            self._nack_locked(job, error)

    def _nack_locked(self, job: Job, error: BaseException) -> None:
        queue_name = job.queue_name
        self._processing[queue_name].pop(job.id, None)
        job.last_error = _error_text(error)

        if self._retry_policy.should_retry(job, error):
            delay = self._retry_policy.delay_for(job.retry_count)
            job.retry_count += 1
            job.status = JobStatus.RETRYING
            job.scheduled_at = utc_now(self._clock) + timedelta(seconds=delay)
            self._save(job)
            self._delayed[queue_name][job.id] = to_timestamp(job.scheduled_at)
            self._stats[queue_name]["retried"] += 1
            logger.info(
                f"Job {job.id} failed (attempt {job.retry_count}/{job.max_retries}), "
                f"retrying in {delay}s: {job.last_error}"
            )
        else:
            job.status = JobStatus.FAILED
            job.processed_at = utc_now(self._clock)
            self._save(job)
            self._failed[queue_name].insert(0, job.id)
            self._stats[queue_name]["failed"] += 1
            self._stats[queue_name][f"failed:{job.type}"] += 1
            logger.warning(f"Job {job.id} failed permanently: {job.last_error}")

    async def get_job(self, job_id: str) -> Optional[Job]:
        async with self._get_lock():
            return self._load(job_id)

    async def get_queue_size(self, queue_name: str = DEFAULT_QUEUE) -> int:
        async with self._get_lock():
            size = sum(
                len(self._pending.get((queue_name, p), ())) for p in JobPriority
            ) + len(self._delayed.get(queue_name, {}))
        metrics.queue_size.labels(queue=queue_name).set(size)
        return size

    async def get_pending_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        jobs: List[Job] = []
        async with self._get_lock():
            for priority in JobPriority.descending():
                for job_id in self._pending.get((queue_name, priority), ()):
                    job = self._load(job_id)
                    if job is not None:
                        jobs.append(job)
                    if len(jobs) >= limit:
                        return jobs
        return jobs

    async def get_failed_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")
        async with self._get_lock():
            jobs = [
                job for job in (self._load(i) for i in self._failed.get(queue_name, ()))
                if job is not None
            ]
        jobs.sort(key=lambda j: j.priority.value, reverse=True)
        return jobs[:limit]

    async def delete_job(self, job_id: str) -> None:
        async with self._get_lock():
            job = self._load(job_id)
            if job is None:
                return
            queue_name = job.queue_name
            for priority in JobPriority:
                pending = self._pending.get((queue_name, priority))
                if pending and job_id in pending:
                    pending.remove(job_id)
            self._delayed[queue_name].pop(job_id, None)
            self._processing[queue_name].pop(job_id, None)
            if job_id in self._failed[queue_name]:
                self._failed[queue_name].remove(job_id)
            if job_id in self._completed[queue_name]:
                self._completed[queue_name].remove(job_id)
            del self._records[job_id]
        logger.debug(f"Deleted job {job_id}")

    async def retry_job(self, job_id: str) -> Job:
        async with self._get_lock():
            job = self._load(job_id)
            if job is None:
                raise JobNotFoundError(job_id)
            if job.status != JobStatus.FAILED:
                raise InvalidJobStateError(job_id, job.status.value, JobStatus.FAILED.value)

            if job_id in self._failed[job.queue_name]:
                self._failed[job.queue_name].remove(job_id)
            job.retry_count = 0
            job.last_error = None
            job.processed_at = None
            job.status = JobStatus.PENDING
            self._save(job)
            self._pending[(job.queue_name, job.priority)].append(job_id)
            self._stats[job.queue_name]["requeued"] += 1
        logger.info(f"Failed job {job_id} re-enqueued")
        return job

    async def get_stats(self, queue_name: str = DEFAULT_QUEUE) -> QueueStats:
        async with self._get_lock():
            counters = self._stats[queue_name]
            return QueueStats(
                queue_name=queue_name,
                pending_count=sum(
                    len(self._pending.get((queue_name, p), ())) for p in JobPriority
                ),
                delayed_count=len(self._delayed.get(queue_name, {})),
                processing_count=len(self._processing.get(queue_name, {})),
                completed_count=counters["completed"],
                failed_count=counters["failed"],
                enqueued_total=counters["enqueued"] + counters["scheduled"],
                retried_total=counters["retried"],
                requeued_total=counters["requeued"],
                by_type={k: v for k, v in counters.items() if ":" in k},
            )

    async def requeue_expired(self, queue_name: str = DEFAULT_QUEUE) -> int:
        requeued = 0
        async with self._get_lock():
            now = self._clock()
            processing = self._processing.get(queue_name, {})
            expired = [job_id for job_id, deadline in processing.items() if deadline <= now]
            for job_id in expired:
                del processing[job_id]
                job = self._load(job_id)
                if job is None:
                    logger.warning(f"Expired job {job_id} has no record, dropping")
                    continue
                self._nack_locked(job, VisibilityTimeoutError(job_id))
                requeued += 1
        if requeued:
            metrics.jobs_requeued_total.labels(queue=queue_name).inc(requeued)
        return requeued


class RedisJobQueue(JobQueue):
    """Redis-based job queue.

    Key layout (``key_prefix`` defaults to ``job:``)::

        queue:{queue}:{priority}   list, LPUSH on enqueue, oldest at the right
        delayed:{queue}            zset scored by release time
        processing:{queue}         list of claimed ids
        deadlines:{queue}          zset of claimed ids scored by visibility deadline
        failed:{queue}             list, TTL 7 days
        completed:{queue}          list, TTL 24 hours
        data:{job_id}              JSON record, TTL 7 days
        stats:{queue}              hash of counters

    Claiming and promotion run as Lua scripts so an id is never left between
    two structures when a later command fails.
    """

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = "job:",
        retry_policy: Optional[RetryPolicy] = None,
        processing_timeout: float = 600.0,
        visibility_grace: float = 300.0,
        dequeue_timeout: float = 1.0,
        clock: Clock = time.time,
    ):
        self._redis = redis_client
        self._prefix = key_prefix
        self._retry_policy = retry_policy or RetryPolicy()
        self._processing_timeout = processing_timeout
        # the record outlives its deadline so the sweeper can still requeue it
        self._visibility_grace = visibility_grace
        self._dequeue_timeout = dequeue_timeout
        self._clock = clock
        self._claim_script = redis_client.register_script(LUA_CLAIM)
        self._promote_script = redis_client.register_script(LUA_PROMOTE)

    @classmethod
    def from_settings(cls, redis_client: Any, settings: Any, **kwargs: Any) -> "RedisJobQueue":
        return cls(
            redis_client,
            key_prefix=settings.REDIS_KEY_PREFIX,
            retry_policy=RetryPolicy(
                base_delay=settings.RETRY_DELAY_BASE_SECONDS,
                max_delay=settings.RETRY_DELAY_MAX_SECONDS,
            ),
            processing_timeout=settings.PROCESSING_TIMEOUT_SECONDS,
            dequeue_timeout=settings.DEQUEUE_TIMEOUT_SECONDS,
            **kwargs,
        )

    @property
    def key_prefix(self) -> str:
        return self._prefix

    def _queue_key(self, queue_name: str, priority: JobPriority) -> str:
        return f"{self._prefix}queue:{queue_name}:{priority.value}"

    def _delayed_key(self, queue_name: str) -> str:
        return f"{self._prefix}delayed:{queue_name}"

    def _processing_key(self, queue_name: str) -> str:
        return f"{self._prefix}processing:{queue_name}"

    def _deadlines_key(self, queue_name: str) -> str:
        return f"{self._prefix}deadlines:{queue_name}"

    def _failed_key(self, queue_name: str) -> str:
        return f"{self._prefix}failed:{queue_name}"

    def _completed_key(self, queue_name: str) -> str:
        return f"{self._prefix}completed:{queue_name}"

    def _data_key(self, job_id: str) -> str:
        return f"{self._prefix}data:{job_id}"

    def _stats_key(self, queue_name: str) -> str:
        return f"{self._prefix}stats:{queue_name}"

    async def _load(self, job_id: str) -> Optional[Job]:
        raw = await self._redis.get(self._data_key(job_id))
        if raw is None:
            return None
        return Job.from_json(raw)

    async def enqueue(self, job: Job) -> None:
        raw = job.to_json()
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(self._data_key(job.id), raw, ex=RECORD_TTL_SECONDS)
            pipe.lpush(self._queue_key(job.queue_name, job.priority), job.id)
            pipe.hincrby(self._stats_key(job.queue_name), "enqueued", 1)
            await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Failed to enqueue job {job.id}: {e}") from e

        _record_enqueued(job)
        logger.debug(f"Enqueued job {job.id} ({job.type}) to {job.queue_name}")

    async def enqueue_at(self, job: Job, at: datetime) -> None:
        job.scheduled_at = at
        raw = job.to_json()
        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.set(self._data_key(job.id), raw, ex=RECORD_TTL_SECONDS)
            pipe.zadd(self._delayed_key(job.queue_name), {job.id: to_timestamp(at)})
            pipe.hincrby(self._stats_key(job.queue_name), "scheduled", 1)
            await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Failed to schedule job {job.id}: {e}") from e

        _record_enqueued(job)
        logger.debug(f"Scheduled job {job.id} ({job.type}) for {at.isoformat()}")

    async def dequeue(
        self,
        *queue_names: str,
        timeout: Optional[float] = None,
    ) -> Optional[Job]:
        queues = queue_names or (DEFAULT_QUEUE,)
        timeout = self._dequeue_timeout if timeout is None else timeout
        deadline = time.monotonic() + timeout

        while True:
            try:
                for queue_name in queues:
                    await self._promote_due(queue_name)

                for priority in JobPriority.descending():
                    for queue_name in queues:
                        job = await self._claim(queue_name, priority)
                        if job is not None:
                            return job
            except (RedisError, OSError) as e:
                raise StoreUnavailableError(f"Dequeue failed: {e}") from e

            remaining = deadline - time.monotonic()
            if remaining <= 0:
                return None
            await asyncio.sleep(min(POLL_INTERVAL_SECONDS, remaining))

    async def _claim(self, queue_name: str, priority: JobPriority) -> Optional[Job]:
        processing_key = self._processing_key(queue_name)
        deadlines_key = self._deadlines_key(queue_name)

        while True:
            job_id = await self._claim_script(
                keys=[self._queue_key(queue_name, priority), processing_key, deadlines_key],
                args=[self._clock() + self._processing_timeout],
            )
            if job_id is None:
                return None
            job_id = _decode(job_id)

            # the deadline is already set, a failure below is recovered by requeue_expired
            job = await self._load(job_id)
            if job is None:
                # record deleted while queued
                pipe = self._redis.pipeline(transaction=True)
                pipe.lrem(processing_key, 1, job_id)
                pipe.zrem(deadlines_key, job_id)
                await pipe.execute()
                continue

            job.status = JobStatus.PROCESSING
            await self._redis.set(
                self._data_key(job_id),
                job.to_json(),
                ex=int(self._processing_timeout + self._visibility_grace),
            )

            logger.debug(f"Dequeued job {job.id} from {queue_name}")
            return job

    async def _promote_due(self, queue_name: str) -> None:
        """Move delayed jobs whose release time passed onto their priority list.

        The record is read before the id leaves the delayed set, and the move
        itself is one script, so concurrent promoters never push an id twice
        and a failed read leaves the id for the next pass. Ids whose record
        was deleted are dropped.
        """
        delayed_key = self._delayed_key(queue_name)
        due = await self._redis.zrangebyscore(delayed_key, "-inf", self._clock())

        for job_id in due:
            job_id = _decode(job_id)
            job = await self._load(job_id)
            if job is None:
                await self._redis.zrem(delayed_key, job_id)
                continue
            await self._promote_script(
                keys=[delayed_key, self._queue_key(queue_name, job.priority)],
                args=[job_id],
            )

    async def ack_job(self, job: Job) -> None:
        queue_name = job.queue_name
        job.status = JobStatus.COMPLETED
        job.processed_at = utc_now(self._clock)
        raw = job.to_json()

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.lrem(self._processing_key(queue_name), 1, job.id)
            pipe.zrem(self._deadlines_key(queue_name), job.id)
            pipe.zrem(self._delayed_key(queue_name), job.id)
            pipe.set(self._data_key(job.id), raw, ex=RECORD_TTL_SECONDS)
            pipe.lpush(self._completed_key(queue_name), job.id)
            pipe.expire(self._completed_key(queue_name), COMPLETED_TTL_SECONDS)
            pipe.hincrby(self._stats_key(queue_name), "completed", 1)
            pipe.hincrby(self._stats_key(queue_name), f"completed:{job.type}", 1)
            await pipe.execute()
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Failed to ack job {job.id}: {e}") from e

        logger.debug(f"Job {job.id} completed")

    async def nack_job(self, job: Job, error: BaseException) -> None:
        queue_name = job.queue_name
        job.last_error = _error_text(error)

        try:
            pipe = self._redis.pipeline(transaction=True)
            pipe.lrem(self._processing_key(queue_name), 1, job.id)
            pipe.zrem(self._deadlines_key(queue_name), job.id)

            if self._retry_policy.should_retry(job, error):
                delay = self._retry_policy.delay_for(job.retry_count)
                job.retry_count += 1
                job.status = JobStatus.RETRYING
                job.scheduled_at = utc_now(self._clock) + timedelta(seconds=delay)
                pipe.set(self._data_key(job.id), job.to_json(), ex=RECORD_TTL_SECONDS)
                pipe.zadd(
                    self._delayed_key(queue_name),
                    {job.id: to_timestamp(job.scheduled_at)},
                )
                pipe.hincrby(self._stats_key(queue_name), "retried", 1)
                await pipe.execute()
                logger.info(
                    f"Job {job.id} failed (attempt {job.retry_count}/{job.max_retries}), "
                    f"retrying in {delay}s: {job.last_error}"
                )
            else:
                job.status = JobStatus.FAILED
                job.processed_at = utc_now(self._clock)
                pipe.set(self._data_key(job.id), job.to_json(), ex=RECORD_TTL_SECONDS)
                pipe.lpush(self._failed_key(queue_name), job.id)
                pipe.expire(self._failed_key(queue_name), FAILED_TTL_SECONDS)
                pipe.hincrby(self._stats_key(queue_name), "failed", 1)
                pipe.hincrby(self._stats_key(queue_name), f"failed:{job.type}", 1)
                await pipe.execute()
                logger.warning(f"Job {job.id} failed permanently: {job.last_error}")
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Failed to nack job {job.id}: {e}") from e

    async def get_job(self, job_id: str) -> Optional[Job]:
        try:
            return await self._load(job_id)
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Failed to load job {job_id}: {e}") from e

    async def get_queue_size(self, queue_name: str = DEFAULT_QUEUE) -> int:
        size = 0
        for priority in JobPriority:
            size += await self._redis.llen(self._queue_key(queue_name, priority))
        size += await self._redis.zcard(self._delayed_key(queue_name))
        metrics.queue_size.labels(queue=queue_name).set(size)
        return size

    async def get_pending_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        jobs: List[Job] = []
        for priority in JobPriority.descending():
            ids = await self._redis.lrange(self._queue_key(queue_name, priority), 0, -1)
            # LPUSH puts the newest at the head
            for job_id in reversed(ids):
                job = await self._load(_decode(job_id))
                if job is not None:
                    jobs.append(job)
                if len(jobs) >= limit:
                    return jobs
        return jobs

    async def get_failed_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        if limit <= 0:
            raise ValueError(f"limit must be positive, got {limit}")

        ids = await self._redis.lrange(self._failed_key(queue_name), 0, -1)
        jobs: List[Job] = []
        for job_id in ids:
            job = await self._load(_decode(job_id))
            if job is not None:
                jobs.append(job)
        jobs.sort(key=lambda j: j.priority.value, reverse=True)
        return jobs[:limit]

    async def delete_job(self, job_id: str) -> None:
        job = await self._load(job_id)
        if job is None:
            await self._redis.delete(self._data_key(job_id))
            return

        queue_name = job.queue_name
        pipe = self._redis.pipeline(transaction=True)
        for priority in JobPriority:
            pipe.lrem(self._queue_key(queue_name, priority), 0, job_id)
        pipe.zrem(self._delayed_key(queue_name), job_id)
        pipe.lrem(self._processing_key(queue_name), 0, job_id)
        pipe.zrem(self._deadlines_key(queue_name), job_id)
        pipe.lrem(self._failed_key(queue_name), 0, job_id)
        pipe.lrem(self._completed_key(queue_name), 0, job_id)
        pipe.delete(self._data_key(job_id))
        await pipe.execute()
        logger.debug(f"Deleted job {job_id}")

    async def retry_job(self, job_id: str) -> Job:
        job = await self._load(job_id)
        if job is None:
            raise JobNotFoundError(job_id)
        if job.status != JobStatus.FAILED:
            raise InvalidJobStateError(job_id, job.status.value, JobStatus.FAILED.value)

        job.retry_count = 0
        job.last_error = None
        job.processed_at = None
        job.status = JobStatus.PENDING

        pipe = self._redis.pipeline(transaction=True)
        pipe.lrem(self._failed_key(job.queue_name), 0, job_id)
        pipe.set(self._data_key(job_id), job.to_json(), ex=RECORD_TTL_SECONDS)
        pipe.lpush(self._queue_key(job.queue_name, job.priority), job_id)
        pipe.hincrby(self._stats_key(job.queue_name), "requeued", 1)
        await pipe.execute()

        logger.info(f"Failed job {job_id} re-enqueued")
        return job

    async def get_stats(self, queue_name: str = DEFAULT_QUEUE) -> QueueStats:
        raw = await self._redis.hgetall(self._stats_key(queue_name))
        counters = {_decode(k): int(_decode(v)) for k, v in raw.items()}

        pending = 0
        for priority in JobPriority:
            pending += await self._redis.llen(self._queue_key(queue_name, priority))

        return QueueStats(
            queue_name=queue_name,
            pending_count=pending,
            delayed_count=await self._redis.zcard(self._delayed_key(queue_name)),
            processing_count=await self._redis.llen(self._processing_key(queue_name)),
            completed_count=counters.get("completed", 0),
            failed_count=counters.get("failed", 0),
            enqueued_total=counters.get("enqueued", 0) + counters.get("scheduled", 0),
            retried_total=counters.get("retried", 0),
            requeued_total=counters.get("requeued", 0),
            by_type={k: v for k, v in counters.items() if ":" in k},
        )

    async def requeue_expired(self, queue_name: str = DEFAULT_QUEUE) -> int:
        deadlines_key = self._deadlines_key(queue_name)

        requeued = 0
        try:
            expired = await self._redis.zrangebyscore(deadlines_key, "-inf", self._clock())
            for job_id in expired:
                job_id = _decode(job_id)
                # the deadline stays until the nack pipeline removes it
                job = await self._load(job_id)
                if job is None or job.status in (JobStatus.COMPLETED, JobStatus.FAILED):
                    pipe = self._redis.pipeline(transaction=True)
                    pipe.lrem(self._processing_key(queue_name), 1, job_id)
                    pipe.zrem(deadlines_key, job_id)
                    await pipe.execute()
                    if job is None:
                        logger.warning(f"Expired job {job_id} has no record, dropping")
                    continue
                await self.nack_job(job, VisibilityTimeoutError(job_id))
                requeued += 1
        except (RedisError, OSError) as e:
            raise StoreUnavailableError(f"Requeue of expired jobs failed: {e}") from e

        if requeued:
            metrics.jobs_requeued_total.labels(queue=queue_name).inc(requeued)
            logger.info(f"Requeued {requeued} expired jobs from {queue_name}")
        return requeued
