"""Idempotency Module.

Provides the lightweight deduplication variant used by consumers:
- Per-consumer, TTL-bounded records of handled message ids
- Atomic create-if-absent keyed by (message_id, consumer_id)
- Expired records are ignored by lookups and reclaimed by a sweep

SQL-backed storage lives in ``relayq.core.persistence.sql``.
"""

from __future__ import annotations

import asyncio
import json
import logging
import math
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from typing import Any, Dict, Optional, Tuple, Union

from relayq.utils.clock import Clock, parse_datetime, utc_now

logger = logging.getLogger(__name__)

TTL = Union[timedelta, float, int]


def ttl_seconds(ttl: TTL) -> float:
    seconds = ttl.total_seconds() if isinstance(ttl, timedelta) else float(ttl)
    if seconds <= 0:
        raise ValueError(f"ttl must be positive, got {seconds}")
    return seconds


@dataclass
class DeduplicationRecord:
    """Marks (message_id, consumer_id) as handled until ``expires_at``."""

    message_id: str
    consumer_id: str
    event_type: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    processed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    expires_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @classmethod
    def new(
        cls,
        message_id: str,
        consumer_id: str,
        event_type: str,
        ttl: TTL,
        now: datetime,
    ) -> "DeduplicationRecord":
        return cls(
            message_id=message_id,
            consumer_id=consumer_id,
            event_type=event_type,
            processed_at=now,
            created_at=now,
            expires_at=now + timedelta(seconds=ttl_seconds(ttl)),
        )

    def is_expired(self, now: datetime) -> bool:
        return now >= self.expires_at

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "consumer_id": self.consumer_id,
            "event_type": self.event_type,
            "processed_at": self.processed_at.isoformat(),
            "created_at": self.created_at.isoformat(),
            "expires_at": self.expires_at.isoformat(),
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DeduplicationRecord":
        return cls(
            id=data["id"],
            message_id=data["message_id"],
            consumer_id=data["consumer_id"],
            event_type=data.get("event_type", ""),
            processed_at=parse_datetime(data["processed_at"]),
            created_at=parse_datetime(data["created_at"]),
            expires_at=parse_datetime(data["expires_at"]),
        )


class DeduplicationStore(ABC):
    """Abstract deduplication store."""

    @abstractmethod
    async def create_if_not_exists(
        self,
        message_id: str,
        consumer_id: str,
        event_type: str,
        ttl: TTL,
    ) -> bool:
        """Insert a record; False if a live record already exists."""
        pass

    @abstractmethod
    async def exists(self, message_id: str, consumer_id: str) -> bool:
        """True only for records that have not expired."""
        pass

    @abstractmethod
    async def get(self, message_id: str, consumer_id: str) -> Optional[DeduplicationRecord]:
        pass

    @abstractmethod
    async def delete(self, message_id: str, consumer_id: str) -> bool:
        pass

    @abstractmethod
    async def delete_expired(self) -> int:
        """Remove expired records, returning how many were removed."""
        pass


class InMemoryDeduplicationStore(DeduplicationStore):
    """In-memory deduplication store."""

    def __init__(self, clock: Clock = time.time):
        self._records: Dict[Tuple[str, str], DeduplicationRecord] = {}
        self._clock = clock
        self._lock = asyncio.Lock()

    async def create_if_not_exists(
        self,
        message_id: str,
        consumer_id: str,
        event_type: str,
        ttl: TTL,
    ) -> bool:
        async with self._lock:
            now = utc_now(self._clock)
            key = (message_id, consumer_id)
            existing = self._records.get(key)
            if existing is not None and not existing.is_expired(now):
                return False
            # an expired record is replaced
            self._records[key] = DeduplicationRecord.new(
                message_id, consumer_id, event_type, ttl, now
            )
            return True

    async def exists(self, message_id: str, consumer_id: str) -> bool:
        return await self.get(message_id, consumer_id) is not None

    async def get(self, message_id: str, consumer_id: str) -> Optional[DeduplicationRecord]:
        async with self._lock:
            record = self._records.get((message_id, consumer_id))
            if record is None or record.is_expired(utc_now(self._clock)):
                return None
            return replace(record)

    async def delete(self, message_id: str, consumer_id: str) -> bool:
        async with self._lock:
            return self._records.pop((message_id, consumer_id), None) is not None

    async def delete_expired(self) -> int:
        async with self._lock:
            now = utc_now(self._clock)
            expired = [k for k, v in self._records.items() if v.is_expired(now)]
            for key in expired:
                del self._records[key]
            return len(expired)


class RedisDeduplicationStore(DeduplicationStore):
    """Redis store relying on ``SET NX PX`` for atomicity and key TTL for expiry."""

    def __init__(
        self,
        redis_client: Any,
        key_prefix: str = "dedup:",
        clock: Clock = time.time,
    ):
        self._redis = redis_client
        self._prefix = key_prefix
        self._clock = clock

    def _key(self, message_id: str, consumer_id: str) -> str:
        return f"{self._prefix}{consumer_id}:{message_id}"

    async def create_if_not_exists(
        self,
        message_id: str,
        consumer_id: str,
        event_type: str,
        ttl: TTL,
    ) -> bool:
        record = DeduplicationRecord.new(
            message_id, consumer_id, event_type, ttl, utc_now(self._clock)
        )
        created = await self._redis.set(
            self._key(message_id, consumer_id),
            json.dumps(record.to_dict()),
            nx=True,
            px=max(1, math.ceil(ttl_seconds(ttl) * 1000)),
        )
        return bool(created)

    async def exists(self, message_id: str, consumer_id: str) -> bool:
        return bool(await self._redis.exists(self._key(message_id, consumer_id)))

    async def get(self, message_id: str, consumer_id: str) -> Optional[DeduplicationRecord]:
        raw = await self._redis.get(self._key(message_id, consumer_id))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode()
        return DeduplicationRecord.from_dict(json.loads(raw))

    async def delete(self, message_id: str, consumer_id: str) -> bool:
        return bool(await self._redis.delete(self._key(message_id, consumer_id)))

    async def delete_expired(self) -> int:
        # Redis expires keys itself
        return 0


__all__ = [
    "DeduplicationRecord",
    "DeduplicationStore",
    "InMemoryDeduplicationStore",
    "RedisDeduplicationStore",
    "ttl_seconds",
]
