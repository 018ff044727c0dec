"""Time helpers.

Stores and queues accept a ``clock`` callable returning unix seconds so tests
can drive time explicitly.
"""

from __future__ import annotations

import time
from datetime import datetime, timezone
from typing import Callable, Optional

Clock = Callable[[], float]


def utc_now(clock: Clock = time.time) -> datetime:
    """Timezone-aware UTC now, read from ``clock``."""
    return datetime.fromtimestamp(clock(), tz=timezone.utc)


def to_timestamp(value: datetime) -> float:
    # naive datetimes are taken as UTC
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.timestamp()


def isoformat(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def parse_datetime(value: Optional[str]) -> Optional[datetime]:
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    parsed = datetime.fromisoformat(value)
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed
