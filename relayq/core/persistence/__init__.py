"""Persistence layer: transaction handles and SQL-backed messaging stores.

SQL stores live in ``relayq.core.persistence.sql``.
"""

from relayq.core.persistence.transaction import (
    Transaction,
    NoTransaction,
    NO_TRANSACTION,
    InMemoryTransaction,
    SQLAlchemyTransaction,
    stage_in_memory,
)

__all__ = [
    "Transaction",
    "NoTransaction",
    "NO_TRANSACTION",
    "InMemoryTransaction",
    "SQLAlchemyTransaction",
    "stage_in_memory",
]
