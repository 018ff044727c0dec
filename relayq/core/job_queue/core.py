"""Job Queue Core.

Provides job queue primitives:
- Job definition and wire encoding
- Queue interface
- Priority and retry policy
- Handler registry
"""

from __future__ import annotations

import asyncio
import copy
import json
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, fields
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Callable, ClassVar, Dict, List, Optional, Type, TypeVar, Union

from relayq.core.errors import ErrorKind, InvalidPayloadError, SerializationError, error_kind
from relayq.utils.clock import Clock, isoformat, parse_datetime, utc_now

DEFAULT_QUEUE = "default"


class JobStatus(Enum):
    """Status of a job."""
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    RETRYING = "retrying"


class JobPriority(Enum):
    """Job priority levels, dequeued highest first."""
    LOW = 0
    NORMAL = 1
    HIGH = 2
    CRITICAL = 3

    @classmethod
    def descending(cls) -> List["JobPriority"]:
        return sorted(cls, key=lambda p: p.value, reverse=True)


# Payloads

_PAYLOAD_TYPES: Dict[str, Type["JobPayload"]] = {}

P = TypeVar("P", bound="JobPayload")


def register_payload(cls: Type[P]) -> Type[P]:
    """Class decorator registering a payload dataclass under its kind."""
    if not cls.kind:
        raise ValueError(f"{cls.__name__} must define a kind")
    _PAYLOAD_TYPES[cls.kind] = cls
    return cls


def payload_types() -> Dict[str, Type["JobPayload"]]:
    return dict(_PAYLOAD_TYPES)


@dataclass
class JobPayload:
    """Base class for typed job payloads.

    Subclasses set ``kind`` (the job type string) and ``default_priority``,
    declare their fields as dataclass fields and override ``validate``.
    """

    kind: ClassVar[str] = ""
    default_priority: ClassVar[JobPriority] = JobPriority.NORMAL

    def validate(self) -> None:
        pass

    def to_dict(self) -> Dict[str, Any]:
        return {f.name: copy.deepcopy(getattr(self, f.name)) for f in fields(self)}

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "JobPayload":
        """Build the payload; keys the kind does not declare are rejected."""
        names = {f.name for f in fields(cls)}
        unknown = sorted(set(data) - names)
        if unknown:
            raise InvalidPayloadError(
                f"Unknown fields for {cls.kind or cls.__name__} payload: {', '.join(unknown)}"
            )
        return cls(**data)


@dataclass
class GenericPayload(JobPayload):
    """Untyped mapping payload for job types without a registered class."""

    data: Dict[str, Any] = field(default_factory=dict)

    def to_dict(self) -> Dict[str, Any]:
        return copy.deepcopy(self.data)

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "GenericPayload":
        return cls(data=dict(data))


def decode_payload(job_type: str, data: Dict[str, Any]) -> JobPayload:
    payload_cls = _PAYLOAD_TYPES.get(job_type, GenericPayload)
    return payload_cls.from_dict(data)


# Job


@dataclass
class Job:
    """A unit of background work."""
    type: str
    payload: Union[JobPayload, Dict[str, Any]] = field(default_factory=dict)
    priority: JobPriority = JobPriority.NORMAL
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: JobStatus = JobStatus.PENDING
    max_retries: int = 3
    retry_count: int = 0
    queue_name: str = DEFAULT_QUEUE
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    scheduled_at: Optional[datetime] = None
    processed_at: Optional[datetime] = None
    last_error: Optional[str] = None

    def __post_init__(self) -> None:
        if not self.type:
            raise ValueError("Job type is required")
        if isinstance(self.payload, dict):
            self.payload = decode_payload(self.type, self.payload)
        if self.max_retries < 0:
            raise ValueError(f"max_retries must be >= 0, got {self.max_retries}")
        if not 0 <= self.retry_count <= self.max_retries:
            raise ValueError(
                f"retry_count {self.retry_count} outside [0, {self.max_retries}]"
            )

    @property
    def is_terminal(self) -> bool:
        return self.status in (JobStatus.COMPLETED, JobStatus.FAILED)

    @property
    def can_retry(self) -> bool:
        return self.retry_count < self.max_retries

    def clone(self) -> "Job":
        """Fresh pending copy with a new id, used for recurring runs."""
        return Job(
            type=self.type,
            payload=copy.deepcopy(self.payload),
            priority=self.priority,
            max_retries=self.max_retries,
            queue_name=self.queue_name,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "type": self.type,
            "payload": self.payload.to_dict(),
            "priority": self.priority.value,
            "status": self.status.value,
            "max_retries": self.max_retries,
            "retry_count": self.retry_count,
            "queue_name": self.queue_name,
            "created_at": self.created_at.isoformat(),
            "scheduled_at": isoformat(self.scheduled_at),
            "processed_at": isoformat(self.processed_at),
            "last_error": self.last_error,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "Job":
        try:
            return cls(
                id=data["id"],
                type=data["type"],
                payload=decode_payload(data["type"], data.get("payload") or {}),
                priority=JobPriority(data.get("priority", 1)),
                status=JobStatus(data.get("status", "pending")),
                max_retries=data.get("max_retries", 3),
                retry_count=data.get("retry_count", 0),
                queue_name=data.get("queue_name", DEFAULT_QUEUE),
                created_at=parse_datetime(data.get("created_at")) or datetime.now(timezone.utc),
                scheduled_at=parse_datetime(data.get("scheduled_at")),
                processed_at=parse_datetime(data.get("processed_at")),
                last_error=data.get("last_error"),
            )
        except (KeyError, TypeError, ValueError) as e:
            raise SerializationError(f"Invalid job record: {e}") from e

    def to_json(self) -> str:
        try:
            return json.dumps(self.to_dict())
        except (TypeError, ValueError) as e:
            raise SerializationError(f"Job {self.id} is not serializable: {e}") from e

    @classmethod
    def from_json(cls, raw: Union[str, bytes]) -> "Job":
        if isinstance(raw, bytes):
            raw = raw.decode()
        try:
            data = json.loads(raw)
        except ValueError as e:
            raise SerializationError(f"Invalid job JSON: {e}") from e
        return cls.from_dict(data)


def create_job(
    payload: JobPayload,
    priority: Optional[JobPriority] = None,
    max_retries: int = 3,
    queue_name: str = DEFAULT_QUEUE,
    job_type: Optional[str] = None,
) -> Job:
    """Validate a payload and wrap it in a pending job.

    ``job_type`` is only needed for ``GenericPayload`` or to override the
    payload's kind; the priority defaults to the kind's default.
    """
    payload.validate()
    kind = job_type or payload.kind
    if not kind:
        raise ValueError("job_type is required for payloads without a kind")
    return Job(
        type=kind,
        payload=payload,
        priority=priority or payload.default_priority,
        max_retries=max_retries,
        queue_name=queue_name,
    )


# Retry policy


@dataclass
class RetryPolicy:
    """Exponential backoff: delay_n = min(base * 2**n, max_delay).

    ``should_retry`` compares ``retry_count < max_retries`` before the queue
    increments the count, so ``max_retries`` counts retries, not attempts.
    A job with ``max_retries=2`` that always fails runs three times, waits
    1 s and then 2 s between runs, and ends ``failed`` with
    ``retry_count == 2``.
    """
    base_delay: float = 1.0
    max_delay: float = 300.0

    def delay_for(self, attempt: int) -> float:
        return min(self.base_delay * (2 ** attempt), self.max_delay)

    def should_retry(self, job: Job, error: BaseException) -> bool:
        if error_kind(error) in (ErrorKind.UNRECOVERABLE, ErrorKind.POISONED):
            return False
        return job.can_retry


# Queue interface


@dataclass
class QueueStats:
    """Statistics for a queue."""
    queue_name: str
    pending_count: int = 0
    delayed_count: int = 0
    processing_count: int = 0
    completed_count: int = 0
    failed_count: int = 0
    enqueued_total: int = 0
    retried_total: int = 0
    requeued_total: int = 0
    by_type: Dict[str, int] = field(default_factory=dict)


class JobQueue(ABC):
    """Abstract base class for job queues."""

    _clock: Clock = time.time

    @abstractmethod
    async def enqueue(self, job: Job) -> None:
        """Store the job and make it available to workers."""
        pass

    @abstractmethod
    async def enqueue_at(self, job: Job, at: datetime) -> None:
        """Store the job and release it at an absolute time."""
        pass

    async def enqueue_delayed(
        self,
        job: Job,
        delay: Union[float, timedelta],
    ) -> None:
        """Store the job and release it after ``delay``."""
        seconds = delay.total_seconds() if isinstance(delay, timedelta) else float(delay)
        if seconds < 0:
            raise ValueError(f"delay must be >= 0, got {seconds}")
        await self.enqueue_at(job, utc_now(self._clock) + timedelta(seconds=seconds))

    @abstractmethod
    async def dequeue(
        self,
        *queue_names: str,
        timeout: Optional[float] = None,
    ) -> Optional[Job]:
        """Claim the next job from the listed queues."""
        pass

    @abstractmethod
    async def ack_job(self, job: Job) -> None:
        """Mark a claimed job as completed."""
        pass

    @abstractmethod
    async def nack_job(self, job: Job, error: BaseException) -> None:
        """Record a failed attempt; retry or fail the job."""
        pass

    @abstractmethod
    async def get_job(self, job_id: str) -> Optional[Job]:
        pass

    @abstractmethod
    async def get_queue_size(self, queue_name: str = DEFAULT_QUEUE) -> int:
        """Pending plus delayed jobs."""
        pass

    @abstractmethod
    async def get_pending_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        pass

    @abstractmethod
    async def get_failed_jobs(
        self,
        queue_name: str = DEFAULT_QUEUE,
        limit: int = 100,
    ) -> List[Job]:
        pass

    @abstractmethod
    async def delete_job(self, job_id: str) -> None:
        pass

    @abstractmethod
    async def retry_job(self, job_id: str) -> Job:
        """Re-enqueue a failed job with its retry counters reset."""
        pass

    @abstractmethod
    async def get_stats(self, queue_name: str = DEFAULT_QUEUE) -> QueueStats:
        pass

    @abstractmethod
    async def requeue_expired(self, queue_name: str = DEFAULT_QUEUE) -> int:
        """Hand back processing jobs whose visibility deadline passed."""
        pass


# Handlers


class JobHandler(ABC):
    """Abstract base class for job handlers."""

    @property
    @abstractmethod
    def job_type(self) -> str:
        """Job type this handler executes."""
        pass

    @abstractmethod
    async def execute(self, job: Job) -> Any:
        """Run the job; raising marks the attempt failed."""
        pass

    async def on_success(self, job: Job, result: Any) -> None:
        """Called after the job was acknowledged."""
        pass

    async def on_failure(self, job: Job, error: BaseException) -> None:
        """Called after a failed attempt was handed back to the queue."""
        pass


class FunctionHandler(JobHandler):
    """Job handler from a function."""

    def __init__(
        self,
        job_type: str,
        func: Callable[[Job], Any],
    ):
        self._job_type = job_type
        self._func = func

    @property
    def job_type(self) -> str:
        return self._job_type

    async def execute(self, job: Job) -> Any:
        if asyncio.iscoroutinefunction(self._func):
            return await self._func(job)
        return self._func(job)


class HandlerRegistry:
    """Registry for job handlers, shared by all workers of a pool."""

    def __init__(self):
        self._handlers: Dict[str, JobHandler] = {}

    def register(self, handler: JobHandler) -> None:
        """Register a handler."""
        self._handlers[handler.job_type] = handler

    def register_function(
        self,
        job_type: str,
        func: Callable[[Job], Any],
    ) -> None:
        """Register a function as handler."""
        self._handlers[job_type] = FunctionHandler(job_type, func)

    def get(self, job_type: str) -> Optional[JobHandler]:
        return self._handlers.get(job_type)

    def handler(self, job_type: str):
        """Decorator to register a function as handler."""
        def decorator(func: Callable[[Job], Any]):
            self.register_function(job_type, func)
            return func
        return decorator

    @property
    def handlers(self) -> Dict[str, JobHandler]:
        return self._handlers.copy()

    def __contains__(self, job_type: str) -> bool:
        return job_type in self._handlers

    def __len__(self) -> int:
        return len(self._handlers)
