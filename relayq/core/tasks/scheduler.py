"""Job Scheduler Implementation.

Holds one-shot jobs with absolute release times and recurring jobs with a
fixed interval. A single loop, ticking every second by default, hands due
jobs to the queue. Both maps are mirrored in a ``ScheduleStore`` so a
restarted scheduler recovers its pending schedules.
"""

from __future__ import annotations

import asyncio
import json
import logging
import re
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Awaitable, Dict, List, Optional, Set, Tuple, Union

from relayq.core.errors import InvalidIntervalError, ScheduleNotFoundError, SerializationError
from relayq.core.job_queue.core import Job, JobQueue
from relayq.core.lifecycle import sleep_or_stop, wait_stopped
from relayq.utils import metrics
from relayq.utils.clock import Clock, isoformat, parse_datetime, utc_now

logger = logging.getLogger(__name__)

_DURATION_UNITS = {
    "ns": 1e-9,
    "us": 1e-6,
    "µs": 1e-6,
    "ms": 1e-3,
    "s": 1.0,
    "m": 60.0,
    "h": 3600.0,
}
_DURATION_PART = re.compile(r"(\d+(?:\.\d*)?|\.\d+)(ns|us|µs|ms|s|m|h)")


def parse_interval(expr: Union[str, timedelta, int, float]) -> timedelta:
    """Parse a positive duration such as ``"30s"``, ``"1h30m"`` or ``"500ms"``.

    Numbers are taken as seconds. Zero, negative and malformed values raise
    ``InvalidIntervalError``.
    """
    if isinstance(expr, timedelta):
        seconds = expr.total_seconds()
    elif isinstance(expr, (int, float)) and not isinstance(expr, bool):
        seconds = float(expr)
    elif isinstance(expr, str):
        text = expr.strip()
        sign = 1.0
        if text[:1] in ("+", "-"):
            sign = -1.0 if text[0] == "-" else 1.0
            text = text[1:]
        if not text:
            raise InvalidIntervalError(f"Invalid interval: {expr!r}")

        seconds = 0.0
        pos = 0
        while pos < len(text):
            match = _DURATION_PART.match(text, pos)
            if match is None:
                raise InvalidIntervalError(f"Invalid interval: {expr!r}")
            seconds += float(match.group(1)) * _DURATION_UNITS[match.group(2)]
            pos = match.end()
        seconds *= sign
    else:
        raise InvalidIntervalError(f"Unsupported interval type: {type(expr).__name__}")

    if seconds <= 0:
        raise InvalidIntervalError(f"Interval must be positive: {expr!r}")
    return timedelta(seconds=seconds)


@dataclass
class IntervalRecurrence:
    """Fixed-interval recurrence."""

    interval: timedelta

    def next_after(self, moment: datetime) -> datetime:
        return moment + self.interval

    def to_dict(self) -> Dict[str, Any]:
        return {"kind": "interval", "interval_seconds": self.interval.total_seconds()}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "IntervalRecurrence":
        return cls(interval=timedelta(seconds=float(data["interval_seconds"])))


@dataclass
class ScheduledJobInfo:
    """A one-shot job waiting for its release time."""

    job: Job
    scheduled_at: datetime

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "scheduled_at": self.scheduled_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "ScheduledJobInfo":
        return cls(
            job=Job.from_dict(data["job"]),
            scheduled_at=parse_datetime(data["scheduled_at"]),
        )


@dataclass
class RecurringJobInfo:
    """A template job re-enqueued as a fresh clone every interval."""

    job: Job
    recurrence: IntervalRecurrence
    next_run: datetime
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    last_run: Optional[datetime] = None

    @property
    def interval(self) -> timedelta:
        return self.recurrence.interval

    def to_dict(self) -> Dict[str, Any]:
        return {
            "job": self.job.to_dict(),
            "recurrence": self.recurrence.to_dict(),
            "next_run": self.next_run.isoformat(),
            "created_at": self.created_at.isoformat(),
            "last_run": isoformat(self.last_run),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "RecurringJobInfo":
        return cls(
            job=Job.from_dict(data["job"]),
            recurrence=IntervalRecurrence.from_dict(data["recurrence"]),
            next_run=parse_datetime(data["next_run"]),
            created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
            last_run=parse_datetime(data.get("last_run")),
        )


class ScheduleStore(ABC):
    """Persistent mirror of the scheduler maps."""

    @abstractmethod
    async def save_scheduled(self, info: ScheduledJobInfo) -> None:
        pass

    @abstractmethod
    async def save_recurring(self, info: RecurringJobInfo) -> None:
        pass

    @abstractmethod
    async def delete_scheduled(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def delete_recurring(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def load_all(self) -> Tuple[List[ScheduledJobInfo], List[RecurringJobInfo]]:
        pass


class InMemoryScheduleStore(ScheduleStore):
    """In-process mirror, kept as JSON like the Redis store."""

    def __init__(self):
        self._scheduled: Dict[str, str] = {}
        self._recurring: Dict[str, str] = {}

    async def save_scheduled(self, info: ScheduledJobInfo) -> None:
        self._scheduled[info.job.id] = json.dumps(info.to_dict())

    async def save_recurring(self, info: RecurringJobInfo) -> None:
        self._recurring[info.job.id] = json.dumps(info.to_dict())

    async def delete_scheduled(self, job_id: str) -> None:
        self._scheduled.pop(job_id, None)

    async def delete_recurring(self, job_id: str) -> None:
        self._recurring.pop(job_id, None)

    async def load_all(self) -> Tuple[List[ScheduledJobInfo], List[RecurringJobInfo]]:
        return (
            [ScheduledJobInfo.from_dict(json.loads(v)) for v in self._scheduled.values()],
            [RecurringJobInfo.from_dict(json.loads(v)) for v in self._recurring.values()],
        )


class RedisScheduleStore(ScheduleStore):
    """Mirror under ``{prefix}scheduled:{id}`` and ``{prefix}recurring:{id}``."""

    def __init__(self, redis_client: Any, key_prefix: str = "job:"):
        self._redis = redis_client
        self._prefix = key_prefix

    def _scheduled_key(self, job_id: str) -> str:
        return f"{self._prefix}scheduled:{job_id}"

    def _recurring_key(self, job_id: str) -> str:
        return f"{self._prefix}recurring:{job_id}"

    async def save_scheduled(self, info: ScheduledJobInfo) -> None:
        await self._redis.set(self._scheduled_key(info.job.id), json.dumps(info.to_dict()))

    async def save_recurring(self, info: RecurringJobInfo) -> None:
        await self._redis.set(self._recurring_key(info.job.id), json.dumps(info.to_dict()))

    async def delete_scheduled(self, job_id: str) -> None:
        await self._redis.delete(self._scheduled_key(job_id))

    async def delete_recurring(self, job_id: str) -> None:
        await self._redis.delete(self._recurring_key(job_id))

    async def load_all(self) -> Tuple[List[ScheduledJobInfo], List[RecurringJobInfo]]:
        scheduled = await self._load_matching(f"{self._prefix}scheduled:*", ScheduledJobInfo)
        recurring = await self._load_matching(f"{self._prefix}recurring:*", RecurringJobInfo)
        return scheduled, recurring

    async def _load_matching(self, pattern: str, info_cls: Any) -> List[Any]:
        entries = []
        async for key in self._redis.scan_iter(match=pattern):
            raw = await self._redis.get(key)
            if raw is None:
                continue
            if isinstance(raw, bytes):
                raw = raw.decode()
            try:
                entries.append(info_cls.from_dict(json.loads(raw)))
            except (ValueError, KeyError, SerializationError) as e:
                logger.error(f"Skipping unreadable schedule entry {key!r}: {e}")
        return entries


class JobScheduler:
    """Promotes one-shot and recurring jobs into the queue."""

    def __init__(
        self,
        queue: JobQueue,
        store: Optional[ScheduleStore] = None,
        tick_interval: float = 1.0,
        clock: Clock = time.time,
    ):
        self._queue = queue
        self._store = store or InMemoryScheduleStore()
        self._tick_interval = tick_interval
        self._clock = clock

        self._scheduled: Dict[str, ScheduledJobInfo] = {}
        self._recurring: Dict[str, RecurringJobInfo] = {}
        self._lock: Optional[asyncio.Lock] = None
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None
        self._background: Set[asyncio.Task] = set()

    def _get_lock(self) -> asyncio.Lock:
        if self._lock is None:
            self._lock = asyncio.Lock()
        return self._lock

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    async def schedule(self, job: Job, at: datetime) -> ScheduledJobInfo:
        """Release ``job`` to the queue at ``at``."""
        if at.tzinfo is None:
            at = at.replace(tzinfo=timezone.utc)
        job.scheduled_at = at
        info = ScheduledJobInfo(job=job, scheduled_at=at)

        async with self._get_lock():
            self._scheduled[job.id] = info
        await self._store.save_scheduled(info)

        logger.info(f"Scheduled job {job.id} ({job.type}) for {at.isoformat()}")
        return info

    async def schedule_batch(self, jobs: List[Job], at: datetime) -> List[ScheduledJobInfo]:
        return [await self.schedule(job, at) for job in jobs]

    async def schedule_recurring(
        self,
        job: Job,
        interval: Union[str, timedelta, int, float],
    ) -> RecurringJobInfo:
        """Enqueue a fresh clone of ``job`` every ``interval``."""
        recurrence = IntervalRecurrence(parse_interval(interval))
        now = utc_now(self._clock)
        info = RecurringJobInfo(
            job=job,
            recurrence=recurrence,
            next_run=recurrence.next_after(now),
            created_at=now,
        )

        async with self._get_lock():
            self._recurring[job.id] = info
        await self._store.save_recurring(info)

        logger.info(
            f"Scheduled recurring job {job.id} ({job.type}) every {recurrence.interval}"
        )
        return info

    async def cancel(self, job_id: str) -> None:
        """Remove a one-shot or recurring entry."""
        async with self._get_lock():
            if self._scheduled.pop(job_id, None) is not None:
                mirror = self._store.delete_scheduled(job_id)
            elif self._recurring.pop(job_id, None) is not None:
                mirror = self._store.delete_recurring(job_id)
            else:
                raise ScheduleNotFoundError(job_id)
        await mirror
        logger.info(f"Cancelled scheduled job {job_id}")

    def get_scheduled_jobs(self) -> List[Job]:
        """Jobs from both maps; recurring entries contribute their template."""
        return [info.job for info in self._scheduled.values()] + [
            info.job for info in self._recurring.values()
        ]

    def get_scheduled_info(self, job_id: str) -> Optional[Union[ScheduledJobInfo, RecurringJobInfo]]:
        return self._scheduled.get(job_id) or self._recurring.get(job_id)

    def get_jobs_by_schedule_time(self, start: datetime, end: datetime) -> List[Job]:
        """Jobs due within ``[start, end]``, earliest first."""
        due: List[Tuple[datetime, Job]] = [
            (info.scheduled_at, info.job)
            for info in self._scheduled.values()
            if start <= info.scheduled_at <= end
        ]
        due.extend(
            (info.next_run, info.job)
            for info in self._recurring.values()
            if start <= info.next_run <= end
        )
        due.sort(key=lambda item: item[0])
        return [job for _, job in due]

    async def start(self) -> None:
        """Load persisted schedules and start the tick loop."""
        if self.is_running:
            return

        scheduled, recurring = await self._store.load_all()
        async with self._get_lock():
            for info in scheduled:
                self._scheduled.setdefault(info.job.id, info)
            for info in recurring:
                self._recurring.setdefault(info.job.id, info)

        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop())
        logger.info(
            f"Job scheduler started ({len(self._scheduled)} scheduled, "
            f"{len(self._recurring)} recurring)"
        )

    async def stop(self, timeout: Optional[float] = None) -> None:
        """Signal the loop to exit and wait for it."""
        if self._stop_event is None:
            return

        self._stop_event.set()
        try:
            await wait_stopped(self._task, timeout, "job scheduler")
        finally:
            self._task = None
            self._stop_event = None

        await self.flush()
        logger.info("Job scheduler stopped")

    async def _run_loop(self) -> None:
        """Main scheduler loop."""
        while not self._stop_event.is_set():
            try:
                await self.tick()
            except Exception as e:
                logger.error(f"Scheduler error: {e}")

            if await sleep_or_stop(self._stop_event, self._tick_interval):
                break

    async def tick(self) -> int:
        """Promote every due entry once. Returns the number enqueued."""
        promoted = 0
        async with self._get_lock():
            now = utc_now(self._clock)

            due = sorted(
                (info for info in self._scheduled.values() if info.scheduled_at <= now),
                key=lambda info: info.scheduled_at,
            )
            for info in due:
                try:
                    await self._queue.enqueue(info.job)
                except Exception as e:
                    logger.error(f"Failed to enqueue scheduled job {info.job.id}: {e}")
                    continue
                del self._scheduled[info.job.id]
                self._spawn(self._store.delete_scheduled(info.job.id))
                metrics.scheduled_jobs_promoted_total.labels(kind="scheduled").inc()
                promoted += 1

            for info in list(self._recurring.values()):
                if info.next_run > now:
                    continue
                run = info.job.clone()
                try:
                    await self._queue.enqueue(run)
                except Exception as e:
                    logger.error(f"Failed to enqueue recurring job {info.job.id}: {e}")
                    continue
                info.last_run = now
                info.next_run = info.recurrence.next_after(now)
                self._spawn(self._store.save_recurring(info))
                metrics.scheduled_jobs_promoted_total.labels(kind="recurring").inc()
                promoted += 1

        if promoted:
            logger.debug(f"Scheduler promoted {promoted} jobs")
        return promoted

    def _spawn(self, coro: Awaitable[None]) -> None:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._on_background_done)

    def _on_background_done(self, task: asyncio.Task) -> None:
        self._background.discard(task)
        if not task.cancelled() and task.exception() is not None:
            logger.error(f"Schedule mirror update failed: {task.exception()}")

    async def flush(self) -> None:
        """Wait for pending mirror updates."""
        if self._background:
            await asyncio.gather(*list(self._background), return_exceptions=True)
