"""Inbox Module.

Consumer-side record of handled messages, keyed by (message_id, consumer_id):
- Full-state inbox rows (Received -> Processed | Ignored) joined to the
  consumer's transaction
- Lightweight TTL-bounded deduplication via ``DeduplicationStore``

A redelivery that finds a Received row (a consumer crashed between insert
and mark) follows ``ReceivedPolicy``: SKIP logs an operator warning, RETRY
runs the business logic again.
"""

from __future__ import annotations

import asyncio
import logging
import time
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field, replace
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Awaitable, Callable, Dict, Optional, Tuple, Union

from relayq.core.errors import DuplicateRecordError
from relayq.core.idempotency import TTL, DeduplicationStore
from relayq.core.persistence.transaction import (
    NO_TRANSACTION,
    NoTransaction,
    Transaction,
    stage_in_memory,
)
from relayq.utils.clock import Clock, utc_now
from relayq.utils.metrics import inbox_stale_received_total

logger = logging.getLogger(__name__)

BusinessLogic = Callable[[Transaction], Awaitable[None]]
IdempotentLogic = Callable[[], Awaitable[None]]


class InboxStatus(str, Enum):
    """Inbox row status."""

    RECEIVED = "received"
    PROCESSED = "processed"
    IGNORED = "ignored"


class ReceivedPolicy(str, Enum):
    """What a redelivery does when it finds a Received row."""

    SKIP = "skip"
    RETRY = "retry"


@dataclass
class InboxMessage:
    """A message seen by one consumer."""

    message_id: str
    consumer_id: str
    event_type: str = ""
    id: str = field(default_factory=lambda: str(uuid.uuid4()))
    status: InboxStatus = InboxStatus.RECEIVED
    received_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    processed_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    updated_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))

    @property
    def is_settled(self) -> bool:
        return self.status in (InboxStatus.PROCESSED, InboxStatus.IGNORED)


class InboxStore(ABC):
    """Abstract inbox store."""

    @abstractmethod
    async def get(self, message_id: str, consumer_id: str) -> Optional[InboxMessage]:
        pass

    @abstractmethod
    async def insert(self, tx: Transaction, message: InboxMessage) -> None:
        """Insert within ``tx``; an existing key raises DuplicateRecordError."""
        pass

    @abstractmethod
    async def mark_processed(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        pass

    @abstractmethod
    async def mark_ignored(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        pass

    @abstractmethod
    async def delete(self, tx: Transaction, message_id: str, consumer_id: str) -> None:
        pass

    @abstractmethod
    async def delete_processed_before(self, cutoff: datetime) -> int:
        pass


class InMemoryInboxStore(InboxStore):
    """In-memory inbox store, transactional through ``InMemoryTransaction``."""

    def __init__(self):
        self._messages: Dict[Tuple[str, str], InboxMessage] = {}
        self._lock = asyncio.Lock()

    def __len__(self) -> int:
        return len(self._messages)

    async def get(self, message_id: str, consumer_id: str) -> Optional[InboxMessage]:
        async with self._lock:
            row = self._messages.get((message_id, consumer_id))
            return replace(row) if row else None

    async def insert(self, tx: Transaction, message: InboxMessage) -> None:
        row = replace(message)
        key = (row.message_id, row.consumer_id)

        def check() -> None:
            if key in self._messages:
                raise DuplicateRecordError(
                    f"Inbox message {row.message_id} already recorded for {row.consumer_id}"
                )

        def apply() -> None:
            self._messages[key] = row

        async with self._lock:
            stage_in_memory(tx, apply, check)

    async def _set_status(
        self,
        tx: Transaction,
        message_id: str,
        consumer_id: str,
        status: InboxStatus,
        at: datetime,
    ) -> None:
        key = (message_id, consumer_id)

        def apply() -> None:
            row = self._messages.get(key)
            if row is None:
                logger.debug(f"Inbox row {message_id}/{consumer_id} missing, not marked {status.value}")
                return
            row.status = status
            row.processed_at = at
            row.updated_at = at

        async with self._lock:
            stage_in_memory(tx, apply)

    async def mark_processed(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        await self._set_status(tx, message_id, consumer_id, InboxStatus.PROCESSED, at)

    async def mark_ignored(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        await self._set_status(tx, message_id, consumer_id, InboxStatus.IGNORED, at)

    async def delete(self, tx: Transaction, message_id: str, consumer_id: str) -> None:
        key = (message_id, consumer_id)

        def apply() -> None:
            self._messages.pop(key, None)

        async with self._lock:
            stage_in_memory(tx, apply)

    async def delete_processed_before(self, cutoff: datetime) -> int:
        async with self._lock:
            stale = [
                key
                for key, row in self._messages.items()
                if row.is_settled and row.processed_at is not None and row.processed_at < cutoff
            ]
            for key in stale:
                del self._messages[key]
            return len(stale)


class InboxService:
    """Inbox and deduplication checks around consumer business logic."""

    def __init__(
        self,
        inbox_store: InboxStore,
        dedup_store: DeduplicationStore,
        received_policy: Union[ReceivedPolicy, str] = ReceivedPolicy.SKIP,
        default_ttl: TTL = timedelta(hours=24),
        clock: Clock = time.time,
    ):
        self.inbox_store = inbox_store
        self.dedup_store = dedup_store
        self.received_policy = ReceivedPolicy(received_policy)
        self.default_ttl = default_ttl
        self._clock = clock

    @classmethod
    def from_settings(
        cls,
        inbox_store: InboxStore,
        dedup_store: DeduplicationStore,
        settings,
        **kwargs,
    ) -> "InboxService":
        return cls(
            inbox_store,
            dedup_store,
            received_policy=settings.INBOX_RECEIVED_POLICY,
            default_ttl=timedelta(seconds=settings.DEDUP_DEFAULT_TTL_SECONDS),
            **kwargs,
        )

    def now(self) -> datetime:
        return utc_now(self._clock)

    # Inbox pattern

    async def process_with_inbox(
        self,
        tx: Transaction,
        message_id: str,
        event_type: str,
        consumer_id: str,
    ) -> bool:
        """Record the message as Received; False if it must not be processed."""
        existing = await self.inbox_store.get(message_id, consumer_id)
        if existing is not None:
            if existing.is_settled:
                return False
            if self.received_policy == ReceivedPolicy.SKIP:
                logger.warning(
                    f"Message {message_id} for {consumer_id} is still Received "
                    f"since {existing.received_at.isoformat()}; skipping redelivery"
                )
                inbox_stale_received_total.labels(consumer=consumer_id).inc()
                return False
            logger.info(f"Reprocessing stale Received message {message_id} for {consumer_id}")
            return True

        now = self.now()
        message = InboxMessage(
            message_id=message_id,
            consumer_id=consumer_id,
            event_type=event_type,
            received_at=now,
            created_at=now,
            updated_at=now,
        )
        try:
            await self.inbox_store.insert(tx, message)
        except DuplicateRecordError:
            # Lost a race with a concurrent delivery
            if isinstance(tx, NoTransaction):
                return False
            raise
        return True

    async def mark_as_processed(
        self,
        message_id: str,
        consumer_id: str,
        tx: Transaction = NO_TRANSACTION,
    ) -> None:
        await self.inbox_store.mark_processed(tx, message_id, consumer_id, self.now())

    async def mark_as_ignored(
        self,
        message_id: str,
        consumer_id: str,
        tx: Transaction = NO_TRANSACTION,
    ) -> None:
        await self.inbox_store.mark_ignored(tx, message_id, consumer_id, self.now())

    async def process_with_inbox_pattern(
        self,
        tx: Transaction,
        message_id: str,
        event_type: str,
        consumer_id: str,
        business_logic: BusinessLogic,
    ) -> bool:
        """Check, run ``business_logic(tx)`` and mark processed in one transaction.

        Returns True when the business logic ran.
        """
        if not await self.process_with_inbox(tx, message_id, event_type, consumer_id):
            return False

        try:
            await business_logic(tx)
        except Exception:
            if isinstance(tx, NoTransaction):
                # Release the row so a redelivery is processed
                await self.inbox_store.delete(tx, message_id, consumer_id)
            raise

        await self.mark_as_processed(message_id, consumer_id, tx)
        return True

    async def is_message_processed(self, message_id: str, consumer_id: str) -> bool:
        message = await self.inbox_store.get(message_id, consumer_id)
        return message is not None and message.is_settled

    async def cleanup_old_inbox_messages(self, older_than_days: int = 30) -> int:
        cutoff = self.now() - timedelta(days=older_than_days)
        deleted = await self.inbox_store.delete_processed_before(cutoff)
        if deleted:
            logger.info(f"Deleted {deleted} inbox messages older than {older_than_days}d")
        return deleted

    # Deduplication

    async def process_with_idempotency(
        self,
        message_id: str,
        event_type: str,
        consumer_id: str,
        ttl: Optional[TTL],
        business_logic: IdempotentLogic,
    ) -> bool:
        """Run ``business_logic`` once per TTL window. Returns True when it ran."""
        created = await self.dedup_store.create_if_not_exists(
            message_id,
            consumer_id,
            event_type,
            ttl if ttl is not None else self.default_ttl,
        )
        if not created:
            return False

        try:
            await business_logic()
        except Exception:
            await self.dedup_store.delete(message_id, consumer_id)
            raise
        return True

    async def is_message_duplicate(self, message_id: str, consumer_id: str) -> bool:
        return await self.dedup_store.exists(message_id, consumer_id)

    async def cleanup_expired_deduplication_records(self) -> int:
        deleted = await self.dedup_store.delete_expired()
        if deleted:
            logger.info(f"Deleted {deleted} expired deduplication records")
        return deleted


__all__ = [
    "InboxStatus",
    "ReceivedPolicy",
    "InboxMessage",
    "InboxStore",
    "InMemoryInboxStore",
    "InboxService",
    "BusinessLogic",
    "IdempotentLogic",
]
