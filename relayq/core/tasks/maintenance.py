"""Job handlers for messaging maintenance.

Registered with a worker pool, they let the outbox relay and the retention
cleanup run as (recurring) scheduled jobs instead of dedicated loops.
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

from relayq.core.inbox import InboxService
from relayq.core.job_queue.core import Job, JobHandler
from relayq.core.job_queue.payloads import MessageCleanupPayload, OutboxProcessingPayload
from relayq.core.outbox import OutboxService
from relayq.core.outbox.relay import OutboxRelay

logger = logging.getLogger(__name__)


class OutboxProcessingHandler(JobHandler):
    """Runs one relay pass per ``outbox_processing`` job."""

    def __init__(self, relay: OutboxRelay):
        self._relay = relay

    @property
    def job_type(self) -> str:
        return OutboxProcessingPayload.kind

    async def execute(self, job: Job) -> Dict[str, int]:
        payload = job.payload
        batch_size: Optional[int] = getattr(payload, "batch_size", None)
        include_retries = getattr(payload, "include_retries", True)

        result = await self._relay.process_pending(batch_size)
        if include_retries:
            result = result + await self._relay.retry_failed(batch_size)

        if result.total:
            logger.info(
                f"Outbox job {job.id}: published={result.published} failed={result.failed}"
            )
        return {"published": result.published, "failed": result.failed}


class MessageCleanupHandler(JobHandler):
    """Applies retention to outbox, inbox and deduplication records."""

    def __init__(
        self,
        outbox_service: Optional[OutboxService] = None,
        inbox_service: Optional[InboxService] = None,
    ):
        self._outbox = outbox_service
        self._inbox = inbox_service

    @property
    def job_type(self) -> str:
        return MessageCleanupPayload.kind

    async def execute(self, job: Job) -> Dict[str, Any]:
        payload = job.payload
        if not isinstance(payload, MessageCleanupPayload):
            payload = MessageCleanupPayload()

        deleted: Dict[str, Any] = {"outbox": 0, "inbox": 0, "deduplication": 0}
        if self._outbox is not None:
            deleted["outbox"] = await self._outbox.cleanup_old_messages(
                payload.outbox_older_than_days
            )
        if self._inbox is not None:
            deleted["inbox"] = await self._inbox.cleanup_old_inbox_messages(
                payload.inbox_older_than_days
            )
            if payload.purge_expired_deduplication:
                deleted["deduplication"] = (
                    await self._inbox.cleanup_expired_deduplication_records()
                )

        logger.info(f"Message cleanup job {job.id}: {deleted}")
        return deleted


__all__ = ["OutboxProcessingHandler", "MessageCleanupHandler"]
