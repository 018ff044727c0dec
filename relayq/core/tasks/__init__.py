"""Scheduling and maintenance tasks."""

from relayq.core.tasks.scheduler import (
    parse_interval,
    IntervalRecurrence,
    ScheduledJobInfo,
    RecurringJobInfo,
    ScheduleStore,
    InMemoryScheduleStore,
    RedisScheduleStore,
    JobScheduler,
)
from relayq.core.tasks.maintenance import (
    OutboxProcessingHandler,
    MessageCleanupHandler,
)

__all__ = [
    "parse_interval",
    "IntervalRecurrence",
    "ScheduledJobInfo",
    "RecurringJobInfo",
    "ScheduleStore",
    "InMemoryScheduleStore",
    "RedisScheduleStore",
    "JobScheduler",
    "OutboxProcessingHandler",
    "MessageCleanupHandler",
]
