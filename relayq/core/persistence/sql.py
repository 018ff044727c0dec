"""SQLAlchemy-backed outbox, inbox and deduplication stores.

Tables:
- ``outbox_messages``: unique ``id`` and ``message_id``, index on
  ``(status, created_at)``
- ``inbox_messages``: unique ``(message_id, consumer_id)``
- ``message_deduplication``: unique ``(message_id, consumer_id)``, index on
  ``expires_at``

Stores take an ``async_sessionmaker``. Writes join a ``SQLAlchemyTransaction``
(flushed into the caller's session) or, with ``NO_TRANSACTION``, run in a
session of their own that commits immediately. Unique violations surface as
``DuplicateRecordError``; other database errors as ``StoreUnavailableError``.
"""

from __future__ import annotations

import logging
import time
from contextlib import asynccontextmanager
from datetime import datetime, timezone
from typing import AsyncIterator, List, Optional

from sqlalchemy import (
    CheckConstraint,
    DateTime,
    Index,
    Integer,
    LargeBinary,
    String,
    Text,
    UniqueConstraint,
    delete,
    func,
    select,
    update,
)
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

from relayq.core.errors import DuplicateRecordError, StoreUnavailableError
from relayq.core.idempotency import TTL, DeduplicationRecord, DeduplicationStore
from relayq.core.inbox import InboxMessage, InboxStatus, InboxStore
from relayq.core.outbox import OutboxMessage, OutboxStatus, OutboxStore
from relayq.core.persistence.transaction import (
    NoTransaction,
    SQLAlchemyTransaction,
    Transaction,
)
from relayq.utils.clock import Clock, utc_now

logger = logging.getLogger(__name__)

NO_SYNC = {"synchronize_session": False}


class UTCDateTime(TypeDecorator):
    """Stores UTC and always returns timezone-aware datetimes."""

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_bind_param(self, value, dialect):
        if value is None:
            return None
        if value.tzinfo is None:
            return value.replace(tzinfo=timezone.utc)
        return value.astimezone(timezone.utc)

    def process_result_value(self, value, dialect):
        if value is not None and value.tzinfo is None:
            value = value.replace(tzinfo=timezone.utc)
        return value


class Base(DeclarativeBase):
    """Declarative base for the messaging tables."""

    pass


class OutboxRow(Base):
    __tablename__ = "outbox_messages"
    __table_args__ = (
        CheckConstraint(
            "status IN ('pending', 'processed', 'failed')",
            name="ck_outbox_messages_status",
        ),
        Index("ix_outbox_messages_status_created_at", "status", "created_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(255), unique=True, nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    aggregate_id: Mapped[str] = mapped_column(String(255), nullable=False)
    payload: Mapped[bytes] = mapped_column(LargeBinary, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    retries: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_retries: Mapped[int] = mapped_column(Integer, nullable=False, default=3)
    error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    failed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)

    @classmethod
    def from_domain(cls, message: OutboxMessage) -> "OutboxRow":
        return cls(
            id=message.id,
            message_id=message.message_id,
            event_type=message.event_type,
            aggregate_id=message.aggregate_id,
            payload=message.payload,
            status=message.status.value,
            retries=message.retries,
            max_retries=message.max_retries,
            error=message.error,
            created_at=message.created_at,
            updated_at=message.updated_at,
            processed_at=message.processed_at,
            failed_at=message.failed_at,
        )

    def to_domain(self) -> OutboxMessage:
        return OutboxMessage(
            id=self.id,
            message_id=self.message_id,
            event_type=self.event_type,
            aggregate_id=self.aggregate_id,
            payload=self.payload,
            status=OutboxStatus(self.status),
            retries=self.retries,
            max_retries=self.max_retries,
            error=self.error,
            created_at=self.created_at,
            updated_at=self.updated_at,
            processed_at=self.processed_at,
            failed_at=self.failed_at,
        )


class InboxRow(Base):
    __tablename__ = "inbox_messages"
    __table_args__ = (
        UniqueConstraint("message_id", "consumer_id", name="uq_inbox_messages_message_consumer"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    received_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    processed_at: Mapped[Optional[datetime]] = mapped_column(UTCDateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    @classmethod
    def from_domain(cls, message: InboxMessage) -> "InboxRow":
        return cls(
            id=message.id,
            message_id=message.message_id,
            consumer_id=message.consumer_id,
            event_type=message.event_type,
            status=message.status.value,
            received_at=message.received_at,
            processed_at=message.processed_at,
            created_at=message.created_at,
            updated_at=message.updated_at,
        )

    def to_domain(self) -> InboxMessage:
        return InboxMessage(
            id=self.id,
            message_id=self.message_id,
            consumer_id=self.consumer_id,
            event_type=self.event_type,
            status=InboxStatus(self.status),
            received_at=self.received_at,
            processed_at=self.processed_at,
            created_at=self.created_at,
            updated_at=self.updated_at,
        )


class DeduplicationRow(Base):
    __tablename__ = "message_deduplication"
    __table_args__ = (
        UniqueConstraint(
            "message_id", "consumer_id", name="uq_message_deduplication_message_consumer"
        ),
        Index("ix_message_deduplication_expires_at", "expires_at"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    message_id: Mapped[str] = mapped_column(String(255), nullable=False)
    consumer_id: Mapped[str] = mapped_column(String(255), nullable=False)
    event_type: Mapped[str] = mapped_column(String(255), nullable=False)
    processed_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)
    expires_at: Mapped[datetime] = mapped_column(UTCDateTime, nullable=False)

    def to_domain(self) -> DeduplicationRecord:
        return DeduplicationRecord(
            id=self.id,
            message_id=self.message_id,
            consumer_id=self.consumer_id,
            event_type=self.event_type,
            processed_at=self.processed_at,
            created_at=self.created_at,
            expires_at=self.expires_at,
        )


async def create_schema(engine: AsyncEngine) -> None:
    """Create the messaging tables and indexes if they do not exist."""
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)


@asynccontextmanager
async def session_scope(
    session_factory: async_sessionmaker[AsyncSession],
    tx: Transaction,
) -> AsyncIterator[AsyncSession]:
    """Session for a write: the caller's, or a fresh one committed on exit."""
    if isinstance(tx, SQLAlchemyTransaction):
        yield tx.session
    elif isinstance(tx, NoTransaction):
        async with session_factory() as session:
            async with session.begin():
                yield session
    else:
        raise TypeError(f"SQL stores cannot join {type(tx).__name__}")


@asynccontextmanager
async def translate_errors(action: str) -> AsyncIterator[None]:
    try:
        yield
    except IntegrityError as e:
        raise DuplicateRecordError(f"{action}: {e.orig}") from e
    except SQLAlchemyError as e:
        raise StoreUnavailableError(f"{action}: {e}") from e


class SQLOutboxStore(OutboxStore):
    """Outbox rows in ``outbox_messages``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    async def insert(self, tx: Transaction, message: OutboxMessage) -> None:
        async with translate_errors(f"insert outbox message {message.message_id}"):
            async with session_scope(self._session_factory, tx) as session:
                session.add(OutboxRow.from_domain(message))
                await session.flush()

    async def get(self, id: str) -> Optional[OutboxMessage]:
        async with translate_errors(f"get outbox message {id}"):
            async with self._session_factory() as session:
                row = await session.get(OutboxRow, id)
                return row.to_domain() if row else None

    async def list_pending(self, limit: int) -> List[OutboxMessage]:
        stmt = (
            select(OutboxRow)
            .where(OutboxRow.status == OutboxStatus.PENDING.value)
            .order_by(OutboxRow.created_at)
            .limit(limit)
        )
        async with translate_errors("list pending outbox messages"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row.to_domain() for row in result.scalars().all()]

    async def list_retryable(
        self,
        limit: int,
        failed_before: Optional[datetime] = None,
    ) -> List[OutboxMessage]:
        stmt = select(OutboxRow).where(
            OutboxRow.status == OutboxStatus.FAILED.value,
            OutboxRow.retries < OutboxRow.max_retries,
        )
        if failed_before is not None:
            stmt = stmt.where(OutboxRow.failed_at <= failed_before)
        stmt = stmt.order_by(OutboxRow.created_at).limit(limit)

        async with translate_errors("list retryable outbox messages"):
            async with self._session_factory() as session:
                result = await session.execute(stmt)
                return [row.to_domain() for row in result.scalars().all()]

    async def mark_processed(self, id: str, at: datetime) -> bool:
        stmt = (
            update(OutboxRow)
            .where(OutboxRow.id == id)
            .values(
                status=OutboxStatus.PROCESSED.value,
                processed_at=at,
                updated_at=at,
                error=None,
            )
            .execution_options(**NO_SYNC)
        )
        async with translate_errors(f"mark outbox message {id} processed"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount > 0

    async def mark_failed(self, id: str, error: str, at: datetime) -> Optional[OutboxMessage]:
        stmt = (
            update(OutboxRow)
            .where(OutboxRow.id == id)
            .values(
                status=OutboxStatus.FAILED.value,
                retries=OutboxRow.retries + 1,
                error=error,
                failed_at=at,
                updated_at=at,
            )
            .execution_options(**NO_SYNC)
        )
        async with translate_errors(f"mark outbox message {id} failed"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    if result.rowcount == 0:
                        return None
                    row = (
                        await session.execute(select(OutboxRow).where(OutboxRow.id == id))
                    ).scalar_one()
                    return row.to_domain()

    async def delete_processed_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(OutboxRow)
            .where(
                OutboxRow.status == OutboxStatus.PROCESSED.value,
                OutboxRow.processed_at < cutoff,
            )
            .execution_options(**NO_SYNC)
        )
        async with translate_errors("delete processed outbox messages"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount


class SQLInboxStore(InboxStore):
    """Inbox rows in ``inbox_messages``."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self._session_factory = session_factory

    @staticmethod
    def _key(message_id: str, consumer_id: str):
        return (InboxRow.message_id == message_id, InboxRow.consumer_id == consumer_id)

    async def get(self, message_id: str, consumer_id: str) -> Optional[InboxMessage]:
        stmt = select(InboxRow).where(*self._key(message_id, consumer_id))
        async with translate_errors(f"get inbox message {message_id}"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                return row.to_domain() if row else None

    async def insert(self, tx: Transaction, message: InboxMessage) -> None:
        async with translate_errors(f"insert inbox message {message.message_id}"):
            async with session_scope(self._session_factory, tx) as session:
                session.add(InboxRow.from_domain(message))
                await session.flush()

    async def _set_status(
        self,
        tx: Transaction,
        message_id: str,
        consumer_id: str,
        status: InboxStatus,
        at: datetime,
    ) -> None:
        stmt = (
            update(InboxRow)
            .where(*self._key(message_id, consumer_id))
            .values(status=status.value, processed_at=at, updated_at=at)
            .execution_options(**NO_SYNC)
        )
        async with translate_errors(f"mark inbox message {message_id} {status.value}"):
            async with session_scope(self._session_factory, tx) as session:
                await session.execute(stmt)

    async def mark_processed(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        await self._set_status(tx, message_id, consumer_id, InboxStatus.PROCESSED, at)

    async def mark_ignored(
        self, tx: Transaction, message_id: str, consumer_id: str, at: datetime
    ) -> None:
        await self._set_status(tx, message_id, consumer_id, InboxStatus.IGNORED, at)

    async def delete(self, tx: Transaction, message_id: str, consumer_id: str) -> None:
        stmt = (
            delete(InboxRow)
            .where(*self._key(message_id, consumer_id))
            .execution_options(**NO_SYNC)
        )
        async with translate_errors(f"delete inbox message {message_id}"):
            async with session_scope(self._session_factory, tx) as session:
                await session.execute(stmt)

    async def delete_processed_before(self, cutoff: datetime) -> int:
        stmt = (
            delete(InboxRow)
            .where(
                InboxRow.status.in_([InboxStatus.PROCESSED.value, InboxStatus.IGNORED.value]),
                InboxRow.processed_at < cutoff,
            )
            .execution_options(**NO_SYNC)
        )
        async with translate_errors("delete processed inbox messages"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount


class SQLDeduplicationStore(DeduplicationStore):
    """Deduplication records in ``message_deduplication``."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        clock: Clock = time.time,
    ):
        self._session_factory = session_factory
        self._clock = clock

    @staticmethod
    def _key(message_id: str, consumer_id: str):
        return (
            DeduplicationRow.message_id == message_id,
            DeduplicationRow.consumer_id == consumer_id,
        )

    async def create_if_not_exists(
        self,
        message_id: str,
        consumer_id: str,
        event_type: str,
        ttl: TTL,
    ) -> bool:
        now = utc_now(self._clock)
        record = DeduplicationRecord.new(message_id, consumer_id, event_type, ttl, now)
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    # An expired record for the key is replaced
                    await session.execute(
                        delete(DeduplicationRow)
                        .where(
                            *self._key(message_id, consumer_id),
                            DeduplicationRow.expires_at <= now,
                        )
                        .execution_options(**NO_SYNC)
                    )
                    session.add(
                        DeduplicationRow(
                            id=record.id,
                            message_id=record.message_id,
                            consumer_id=record.consumer_id,
                            event_type=record.event_type,
                            processed_at=record.processed_at,
                            created_at=record.created_at,
                            expires_at=record.expires_at,
                        )
                    )
        except IntegrityError:
            return False
        except SQLAlchemyError as e:
            raise StoreUnavailableError(f"create deduplication record {message_id}: {e}") from e
        return True

    async def exists(self, message_id: str, consumer_id: str) -> bool:
        stmt = (
            select(func.count())
            .select_from(DeduplicationRow)
            .where(
                *self._key(message_id, consumer_id),
                DeduplicationRow.expires_at > utc_now(self._clock),
            )
        )
        async with translate_errors(f"check deduplication record {message_id}"):
            async with self._session_factory() as session:
                return (await session.execute(stmt)).scalar_one() > 0

    async def get(self, message_id: str, consumer_id: str) -> Optional[DeduplicationRecord]:
        stmt = select(DeduplicationRow).where(
            *self._key(message_id, consumer_id),
            DeduplicationRow.expires_at > utc_now(self._clock),
        )
        async with translate_errors(f"get deduplication record {message_id}"):
            async with self._session_factory() as session:
                row = (await session.execute(stmt)).scalar_one_or_none()
                return row.to_domain() if row else None

    async def delete(self, message_id: str, consumer_id: str) -> bool:
        stmt = (
            delete(DeduplicationRow)
            .where(*self._key(message_id, consumer_id))
            .execution_options(**NO_SYNC)
        )
        async with translate_errors(f"delete deduplication record {message_id}"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount > 0

    async def delete_expired(self) -> int:
        stmt = (
            delete(DeduplicationRow)
            .where(DeduplicationRow.expires_at <= utc_now(self._clock))
            .execution_options(**NO_SYNC)
        )
        async with translate_errors("delete expired deduplication records"):
            async with self._session_factory() as session:
                async with session.begin():
                    result = await session.execute(stmt)
                    return result.rowcount


__all__ = [
    "Base",
    "UTCDateTime",
    "OutboxRow",
    "InboxRow",
    "DeduplicationRow",
    "create_schema",
    "session_scope",
    "translate_errors",
    "SQLOutboxStore",
    "SQLInboxStore",
    "SQLDeduplicationStore",
]
