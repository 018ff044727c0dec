"""Transaction handles passed to outbox and inbox stores.

A store call either joins the caller's transaction or, given
``NO_TRANSACTION``, applies immediately in its own unit of work:

- ``NoTransaction``: no enclosing transaction.
- ``InMemoryTransaction``: buffers in-memory writes; commit validates every
  staged write, then applies them all, so a failed check applies nothing.
- ``SQLAlchemyTransaction``: wraps an ``AsyncSession``; writes are flushed
  into the session and become visible on commit.

Stores reject transaction kinds they cannot join with ``TypeError``.
"""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, List, Optional, Tuple

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

Check = Callable[[], None]
Apply = Callable[[], None]


class Transaction(ABC):
    """begin / commit / rollback, usable as ``async with``."""

    @abstractmethod
    async def begin(self) -> None:
        pass

    @abstractmethod
    async def commit(self) -> None:
        pass

    @abstractmethod
    async def rollback(self) -> None:
        pass

    @property
    def is_active(self) -> bool:
        return False

    async def __aenter__(self) -> "Transaction":
        await self.begin()
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if exc_type is not None:
            await self.rollback()
        else:
            await self.commit()


class NoTransaction(Transaction):
    """Marker for calls made outside any transaction."""

    async def begin(self) -> None:
        pass

    async def commit(self) -> None:
        pass

    async def rollback(self) -> None:
        pass

    def execute(self, apply: Apply, check: Optional[Check] = None) -> None:
        if check is not None:
            check()
        apply()

    def __repr__(self) -> str:
        return "NO_TRANSACTION"


NO_TRANSACTION = NoTransaction()


class InMemoryTransaction(Transaction):
    """Buffered unit of work over in-memory stores."""

    def __init__(self):
        self._ops: List[Tuple[Optional[Check], Apply]] = []
        self._active = False

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def pending_operations(self) -> int:
        return len(self._ops)

    async def begin(self) -> None:
        self._ops = []
        self._active = True

    def execute(self, apply: Apply, check: Optional[Check] = None) -> None:
        """Stage a write; ``check`` runs at commit and may raise to abort."""
        if not self._active:
            # implicit begin, mirroring session autobegin
            self._active = True
        self._ops.append((check, apply))

    async def commit(self) -> None:
        ops, self._ops = self._ops, []
        self._active = False
        for check, _ in ops:
            if check is not None:
                check()
        for _, apply in ops:
            apply()

    async def rollback(self) -> None:
        if self._ops:
            logger.debug(f"Rolling back {len(self._ops)} staged operations")
        self._ops = []
        self._active = False


class SQLAlchemyTransaction(Transaction):
    """Caller-owned ``AsyncSession`` shared by business code and stores."""

    def __init__(self, session: AsyncSession):
        self._session = session

    @property
    def session(self) -> AsyncSession:
        return self._session

    @property
    def is_active(self) -> bool:
        return self._session.in_transaction()

    async def begin(self) -> None:
        if not self._session.in_transaction():
            await self._session.begin()

    async def execute(self, statement: Any) -> Any:
        return await self._session.execute(statement)

    async def commit(self) -> None:
        await self._session.commit()

    async def rollback(self) -> None:
        await self._session.rollback()


def stage_in_memory(tx: Transaction, apply: Apply, check: Optional[Check] = None) -> None:
    """Apply now (no transaction) or stage into an ``InMemoryTransaction``."""
    if isinstance(tx, (NoTransaction, InMemoryTransaction)):
        tx.execute(apply, check)
        return
    raise TypeError(f"In-memory stores cannot join {type(tx).__name__}")
