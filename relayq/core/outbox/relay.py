"""Outbox relay: publishes stored events to the message bus.

Rows are published oldest first. A successful publish marks the row
processed; a failed publish marks it failed and bumps ``retries``. Failed
rows become eligible again once ``retry_delay`` has passed since the
failure, until ``max_retries`` is reached.

Delivery is at-least-once: if marking a row processed fails after the
publish succeeded, the row is published again later and consumers drop the
duplicate by ``message_id``.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from relayq.core.lifecycle import sleep_or_stop, wait_stopped
from relayq.core.message_bus import MessageBus
from relayq.core.message_bus.envelope import MessageEnvelope
from relayq.core.outbox import OutboxMessage, OutboxService
from relayq.utils.metrics import outbox_messages_published_total, outbox_publish_failures_total

logger = logging.getLogger(__name__)


class TopicResolver:
    """Maps event types to bus topics by prefix; the longest prefix wins."""

    DEFAULT_MAPPING: Dict[str, str] = {
        "user.": "users.events",
        "auth.": "auth.events",
    }
    DEFAULT_TOPIC = "default.events"

    def __init__(
        self,
        mapping: Optional[Dict[str, str]] = None,
        default_topic: str = DEFAULT_TOPIC,
    ):
        merged = dict(self.DEFAULT_MAPPING)
        merged.update(mapping or {})
        self._prefixes = sorted(merged.items(), key=lambda item: len(item[0]), reverse=True)
        self.default_topic = default_topic

    def resolve(self, event_type: str) -> str:
        for prefix, topic in self._prefixes:
            if event_type.startswith(prefix):
                return topic
        return self.default_topic

    __call__ = resolve


@dataclass
class RelayResult:
    """Outcome of one relay pass."""

    published: int = 0
    failed: int = 0

    def __add__(self, other: "RelayResult") -> "RelayResult":
        return RelayResult(self.published + other.published, self.failed + other.failed)

    @property
    def total(self) -> int:
        return self.published + self.failed


class OutboxRelay:
    """Polls the outbox and publishes rows to the bus."""

    def __init__(
        self,
        service: OutboxService,
        bus: MessageBus,
        batch_size: int = 10,
        retry_delay: float = 5.0,
        poll_interval: float = 1.0,
        topic_resolver: Optional[TopicResolver] = None,
    ):
        self._service = service
        self._bus = bus
        self._batch_size = batch_size
        self._retry_delay = retry_delay
        self._poll_interval = poll_interval
        self._resolver = topic_resolver or TopicResolver()
        self._stop_event: Optional[asyncio.Event] = None
        self._task: Optional[asyncio.Task] = None

    @classmethod
    def from_settings(cls, service: OutboxService, bus: MessageBus, settings) -> "OutboxRelay":
        return cls(
            service,
            bus,
            batch_size=settings.OUTBOX_BATCH_SIZE,
            retry_delay=settings.OUTBOX_RETRY_DELAY_SECONDS,
            poll_interval=settings.OUTBOX_POLL_INTERVAL_SECONDS,
            topic_resolver=TopicResolver(settings.TOPIC_MAPPING),
        )

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    @property
    def topic_resolver(self) -> TopicResolver:
        return self._resolver

    async def process_pending(self, limit: Optional[int] = None) -> RelayResult:
        messages = await self._service.get_pending_messages(limit or self._batch_size)
        return await self._publish_all(messages)

    async def retry_failed(self, limit: Optional[int] = None) -> RelayResult:
        messages = await self._service.retry_failed_messages(
            limit or self._batch_size,
            min_age=timedelta(seconds=self._retry_delay),
        )
        if messages:
            logger.info(f"Retrying {len(messages)} failed outbox messages")
        return await self._publish_all(messages)

    async def run_once(self, limit: Optional[int] = None) -> RelayResult:
        """One pending pass followed by one retry pass."""
        pending = await self.process_pending(limit)
        retried = await self.retry_failed(limit)
        return pending + retried

    async def _publish_all(self, messages: List[OutboxMessage]) -> RelayResult:
        result = RelayResult()
        # Sequential to keep created_at order within the batch
        for message in messages:
            if await self._publish(message):
                result.published += 1
            else:
                result.failed += 1
        return result

    async def _publish(self, message: OutboxMessage) -> bool:
        topic = self._resolver.resolve(message.event_type)
        envelope = MessageEnvelope.from_outbox(message)

        try:
            await self._bus.publish(topic, envelope.to_bytes())
        except Exception as e:
            logger.error(f"Failed to publish outbox message {message.message_id} to {topic}: {e}")
            outbox_publish_failures_total.labels(topic=topic).inc()
            await self._service.mark_as_failed(message.id, str(e))
            return False

        outbox_messages_published_total.labels(topic=topic).inc()
        try:
            await self._service.mark_as_processed(message.id)
        except Exception as e:
            logger.error(
                f"Published outbox message {message.message_id} but could not mark it processed: {e}"
            )
        return True

    async def start(self) -> None:
        if self.is_running:
            return
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._relay_loop())
        logger.info("Outbox relay started")

    async def stop(self, timeout: Optional[float] = None) -> None:
        if self._stop_event is None:
            return
        self._stop_event.set()
        try:
            await wait_stopped(self._task, timeout, "outbox relay")
        finally:
            self._task = None
            self._stop_event = None
        logger.info("Outbox relay stopped")

    async def _relay_loop(self) -> None:
        while not self._stop_event.is_set():
            try:
                await self.run_once()
            except Exception as e:
                logger.error(f"Outbox relay error: {e}")

            if await sleep_or_stop(self._stop_event, self._poll_interval):
                break


__all__ = ["TopicResolver", "RelayResult", "OutboxRelay"]
