"""Transactional Outbox Module.

Events are written to the outbox in the same transaction as the business
change that produced them, then published by ``OutboxRelay``:
- Pending rows are published oldest first
- Failed rows are retried until ``max_retries`` is reached
- Processed rows are retained until cleanup
"""

from __future__ import annotations

import asyncio
import json
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Dict, List, Optional

from relayq.core.errors import DuplicateRecordError, MessageNotFoundError, SerializationError
from relayq.core.persistence.transaction import NO_TRANSACTION, Transaction, stage_in_memory
from relayq.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)


class OutboxStatus(str, Enum):
    """Outbox row status."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"


@dataclass
class OutboxMessage:
    """An event awaiting publication."""

    event_type: str
    aggregate_id: str
    payload: bytes
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    message_id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: OutboxStatus = OutboxStatus.PENDING
    retries: int = 0
    max_retries: int = 3
    error: Optional[str] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    failed_at: Optional[datetime] = None

    @property
    def can_retry(self) -> bool:
        return self.status == OutboxStatus.FAILED and self.retries < self.max_retries

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "message_id": self.message_id,
            "event_type": self.event_type,
            "aggregate_id": self.aggregate_id,
            "status": self.status.value,
            "retries": self.retries,
            "max_retries": self.max_retries,
            "error": self.error,
            "created_at": self.created_at.isoformat(),
            "processed_at": self.processed_at.isoformat() if self.processed_at else None,
            "failed_at": self.failed_at.isoformat() if self.failed_at else None,
        }


class OutboxStore(ABC):
    """Abstract outbox store."""

    @abstractmethod
    async def insert(self, tx: Transaction, message: OutboxMessage) -> None:
        """Insert within ``tx``; duplicate id or message_id raises DuplicateRecordError."""
        pass

    @abstractmethod
    async def get(self, id: str) -> Optional[OutboxMessage]:
        pass

    @abstractmethod
    async def list_pending(self, limit: int) -> List[OutboxMessage]:
        """Pending rows, oldest first."""
        pass

    @abstractmethod
    async def list_retryable(
        self,
        limit: int,
        failed_before: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        """Failed rows with retries left, oldest first."""
        pass

    @abstractmethod
    async def mark_processed(self, id: str, at: datetime) -> bool:
        pass

    @abstractmethod
    async def mark_failed(self, id: str, error: str, at: datetime) -> Optional[OutboxMessage]:
        """Record a failure and bump ``retries``; None if the row is missing."""
        pass

    @abstractmethod
    async def delete_processed_before(self, cutoff: datetime) -> int:
        pass


class InMemoryOutboxStore(OutboxStore):
    """In-memory outbox store, transactional through ``InMemoryTransaction``."""

    def __init__(self):
        self._messages: Dict[str, OutboxMessage] = {}
        self._by_message_id: Dict[str, str] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._messages)

    async def insert(self, tx: Transaction, message: OutboxMessage) -> None:
        row = replace(message)

        def check() -> None:
            if row.id in self._messages or row.message_id in self._by_message_id:
                raise DuplicateRecordError(f"Outbox message {row.message_id} already exists")

        def apply() -> None:
            self._messages[row.id] = row
            self._by_message_id[row.message_id] = row.id

        async with self._lock:
            stage_in_memory(tx, apply, check)

    async def get(self, id: str) -> Optional[OutboxMessage]:
        async with self._lock:
            row = self._messages.get(id)
            return replace(row) if row else None

    async def list_pending(self, limit: int) -> List[OutboxMessage]:
        async with self._lock:
            rows = [m for m in self._messages.values() if m.status == OutboxStatus.PENDING]
            rows.sort(key=lambda m: m.created_at)
            return [replace(m) for m in rows[:limit]]

    async def list_retryable(
        self,
        limit: int,
        failed_before: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        async with self._lock:
            rows = [
                m
                for m in self._messages.values()
                if m.can_retry
                and (failed_before is None or (m.failed_at and m.failed_at <= failed_before))
            ]
            rows.sort(key=lambda m: m.created_at)
            return [replace(m) for m in rows[:limit]]

    async def mark_processed(self, id: str, at: datetime) -> bool:
        async with self._lock:
            row = self._messages.get(id)
            if row is None:
                return False
            row.status = OutboxStatus.PROCESSED
            row.processed_at = at
            row.updated_at = at
            row.error = None
            return True

    async def mark_failed(self, id: str, error: str, at: datetime) -> Optional[OutboxMessage]:
        async with self._lock:
            row = self._messages.get(id)
            if row is None:
                return None
            row.status = OutboxStatus.FAILED
            row.retries += 1
            row.error = error
            row.failed_at = at
            row.updated_at = at
            return replace(row)

    async def delete_processed_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                m
                for m in self._messages.values()
                if m.status == OutboxStatus.PROCESSED
                and m.processed_at is not None
                and m.processed_at < cutoff
            ]
            for row in stale:
                del self._messages[row.id]
                self._by_message_id.pop(row.message_id, None)
            return len(stale)


def encode_payload(payload: Any) -> bytes:
    """Bytes pass through; anything else is JSON encoded."""
    if isinstance(payload, (bytes, bytearray)):
        return bytes(payload)
    try:
        return json.dumps(payload).encode("utf-8")
    except (TypeError, ValueError) as e:
        raise SerializationError(f"Cannot serialize outbox payload: {e}") from e


class OutboxService:
    """Stores events and tracks their publication state."""

    def __init__(
        self,
        store: OutboxStore,
        max_retries: int = 3,
        clock: Clock = time.time,
    ):
        self.store = store
        self.max_retries = max_retries
        self._clock = clock

    @classmethod
    def from_settings(cls, store: OutboxStore, settings: Any, **kwargs: Any) -> "OutboxService":
        return cls(store, max_retries=settings.MAX_RETRIES, **kwargs)

    def now(self) -> datetime:
        return utc_now(self._clock)

    async def store_message(
        self,
        tx: Transaction,
        event_type: str,
        aggregate_id: str,
        payload: Any,
    ) -> OutboxMessage:
        """Serialize ``payload`` and insert a pending row within ``tx``."""
        now = self.now()
        message = OutboxMessage(
            event_type=event_type,
            aggregate_id=aggregate_id,
            payload=encode_payload(payload),
            max_retries=self.max_retries,
            created_at=now,
            updated_at=now,
        )
        await self.store.insert(tx, message)
        logger.debug(f"Stored outbox message {message.message_id} ({event_type})")
        return message

    async def store_message_with_id(
        self,
        tx: Transaction,
        message: OutboxMessage,
    ) -> OutboxMessage:
        """Insert a caller-built message, keeping its ids."""
        await self.store.insert(tx, message)
        return message

    async def get_message(self, id: str) -> Optional[OutboxMessage]:
        return await self.store.get(id)

    async def get_pending_messages(self, limit: int = 10) -> List[OutboxMessage]:
        return await self.store.list_pending(limit)

    async def mark_as_processed(self, id: str) -> None:
        if not await self.store.mark_processed(id, self.now()):
            raise MessageNotFoundError(id)

    async def mark_as_failed(self, id: str, error: str) -> OutboxMessage:
        message = await self.store.mark_failed(id, error, self.now())
        if message is None:
            raise MessageNotFoundError(id)
        if not message.can_retry:
            logger.warning(
                f"Outbox message {message.message_id} exhausted retries "
                f"({message.retries}/{message.max_retries}): {error}"
            )
        return message

    async def retry_failed_messages(
        self,
        limit: int = 10,
        min_age: Optional[timedelta] = None,
    ) -> List[OutboxMessage]:
        """Failed rows with retries left, optionally only those failed at least ``min_age`` ago."""
        failed_before = self.now() - min_age if min_age is not None else None
        return await self.store.list_retryable(limit, failed_before)

    async def cleanup_old_messages(self, older_than_days: int = 7) -> int:
        cutoff = self.now() - timedelta(days=older_than_days)
        deleted = await self.store.delete_processed_before(cutoff)
        if deleted:
            logger.info(f"Deleted {deleted} processed outbox messages older than {older_than_days}d")
        return deleted


def in_memory_outbox(clock: Clock = time.time, max_retries: int = 3) -> OutboxService:
    return OutboxService(InMemoryOutboxStore(), max_retries=max_retries, clock=clock)


__all__ = [
    "NO_TRANSACTION",
    "OutboxStatus",
    "OutboxMessage",
    "OutboxStore",
    "InMemoryOutboxStore",
    "OutboxService",
    "encode_payload",
    "in_memory_outbox",
]
