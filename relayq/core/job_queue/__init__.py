"""Job Queue Module.

Provides durable background job processing:
- Priority-based queues with delayed release
- Retry with exponential backoff
- Visibility timeouts and sweeping
- Worker pool management
"""

from relayq.core.job_queue.core import (
    DEFAULT_QUEUE,
    JobStatus,
    JobPriority,
    JobPayload,
    GenericPayload,
    Job,
    create_job,
    register_payload,
    RetryPolicy,
    JobQueue,
    QueueStats,
    JobHandler,
    FunctionHandler,
    HandlerRegistry,
)
from relayq.core.job_queue.payloads import (
    EmailPayload,
    EmailTemplatePayload,
    FileProcessingPayload,
    ImageResizePayload,
    DataCleanupPayload,
    UserCleanupPayload,
    NotificationPayload,
    OutboxProcessingPayload,
    MessageCleanupPayload,
)
from relayq.core.job_queue.backends import (
    InMemoryJobQueue,
    RedisJobQueue,
)
from relayq.core.job_queue.worker import (
    WorkerState,
    WorkerConfig,
    WorkerStats,
    WorkerPoolStats,
    Worker,
    WorkerPool,
    setup_signal_handlers,
)
from relayq.core.job_queue.sweeper import VisibilitySweeper

__all__ = [
    # Core
    "DEFAULT_QUEUE",
    "JobStatus",
    "JobPriority",
    "JobPayload",
    "GenericPayload",
    "Job",
    "create_job",
    "register_payload",
    "RetryPolicy",
    "JobQueue",
    "QueueStats",
    "JobHandler",
    "FunctionHandler",
    "HandlerRegistry",
    # Payloads
    "EmailPayload",
    "EmailTemplatePayload",
    "FileProcessingPayload",
    "ImageResizePayload",
    "DataCleanupPayload",
    "UserCleanupPayload",
    "NotificationPayload",
    "OutboxProcessingPayload",
    "MessageCleanupPayload",
    # Backends
    "InMemoryJobQueue",
    "RedisJobQueue",
    # Worker
    "WorkerState",
    "WorkerConfig",
    "WorkerStats",
    "WorkerPoolStats",
    "Worker",
    "WorkerPool",
    "setup_signal_handlers",
    "VisibilitySweeper",
]
