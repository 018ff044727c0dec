"""Typed job payloads.

Each job kind is a dataclass registered under its type string; records on
the wire carry ``{"type": kind, "payload": {...}}`` and are decoded back
into the registered class. Unknown kinds decode to ``GenericPayload``.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

from relayq.core.errors import InvalidPayloadError
from relayq.core.job_queue.core import JobPayload, JobPriority, register_payload


def _require(value: Any, message: str) -> None:
    if value is None or value == "" or value == [] or value == {}:
        raise InvalidPayloadError(message)


@register_payload
@dataclass
class EmailPayload(JobPayload):
    kind = "email"

    to: str = ""
    subject: str = ""
    body: str = ""

    def validate(self) -> None:
        _require(self.to, "email recipient is required")
        _require(self.subject, "email subject is required")
        _require(self.body, "email body is required")


@register_payload
@dataclass
class EmailTemplatePayload(JobPayload):
    kind = "email_template"

    to: str = ""
    template: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        _require(self.to, "email recipient is required")
        _require(self.template, "email template is required")


@register_payload
@dataclass
class FileProcessingPayload(JobPayload):
    kind = "file_processing"

    file_path: str = ""
    operation: str = ""
    params: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        _require(self.file_path, "file path is required")
        _require(self.operation, "file operation is required")


@register_payload
@dataclass
class ImageResizePayload(JobPayload):
    kind = "image_resize"
    default_priority = JobPriority.HIGH

    image_path: str = ""
    width: int = 0
    height: int = 0
    quality: int = 85

    def validate(self) -> None:
        _require(self.image_path, "file path is required")
        if self.width <= 0 or self.height <= 0:
            raise InvalidPayloadError(
                f"resize dimensions must be positive, got {self.width}x{self.height}"
            )
        if not 1 <= self.quality <= 100:
            raise InvalidPayloadError(f"quality must be in 1..100, got {self.quality}")


@register_payload
@dataclass
class DataCleanupPayload(JobPayload):
    kind = "data_cleanup"
    default_priority = JobPriority.LOW

    table: str = ""
    condition: Dict[str, Any] = field(default_factory=dict)
    older_than: Optional[str] = None

    def validate(self) -> None:
        _require(self.table, "table name is required for data cleanup")


@register_payload
@dataclass
class UserCleanupPayload(JobPayload):
    kind = "user_cleanup"
    default_priority = JobPriority.HIGH

    user_id: str = ""
    actions: List[str] = field(default_factory=list)

    def validate(self) -> None:
        _require(self.user_id, "user ID is required for user cleanup")
        _require(self.actions, "cleanup actions are required")


@register_payload
@dataclass
class NotificationPayload(JobPayload):
    kind = "notification"
    default_priority = JobPriority.HIGH

    user_id: str = ""
    title: str = ""
    message: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    def validate(self) -> None:
        _require(self.user_id, "user ID is required")
        _require(self.title, "notification title is required")
        _require(self.message, "notification message is required")


@register_payload
@dataclass
class OutboxProcessingPayload(JobPayload):
    """Runs one outbox relay pass as a job."""

    kind = "outbox_processing"
    default_priority = JobPriority.HIGH

    batch_size: Optional[int] = None
    include_retries: bool = True

    def validate(self) -> None:
        if self.batch_size is not None and self.batch_size <= 0:
            raise InvalidPayloadError(f"batch_size must be positive, got {self.batch_size}")


@register_payload
@dataclass
class MessageCleanupPayload(JobPayload):
    """Purges processed outbox/inbox rows and expired dedup records."""

    kind = "message_cleanup"
    default_priority = JobPriority.LOW

    outbox_older_than_days: int = 7
    inbox_older_than_days: int = 30
    purge_expired_deduplication: bool = True

    def validate(self) -> None:
        if self.outbox_older_than_days < 0 or self.inbox_older_than_days < 0:
            raise InvalidPayloadError("retention days must be >= 0")


__all__ = [
    "EmailPayload",
    "EmailTemplatePayload",
    "FileProcessingPayload",
    "ImageResizePayload",
    "DataCleanupPayload",
    "UserCleanupPayload",
    "NotificationPayload",
    "OutboxProcessingPayload",
    "MessageCleanupPayload",
]
