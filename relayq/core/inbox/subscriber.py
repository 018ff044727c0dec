"""Idempotent subscriber.

Wraps a bus subscription so the user handler sees each logical message at
most once per consumer. Each delivery is decoded into a ``MessageEnvelope``
and routed through either the inbox pattern or TTL deduplication. Handler
errors propagate unchanged so the bus redelivers; nothing is marked
processed in that case.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import Awaitable, Callable, Optional

from relayq.core.inbox import InboxService
from relayq.core.logging.structured import message_id_var
from relayq.core.message_bus import BusMessage, MessageBus, MessageCallback, Subscription
from relayq.core.message_bus.envelope import MessageEnvelope
from relayq.core.persistence.transaction import NO_TRANSACTION, Transaction
from relayq.utils.metrics import messages_deduplicated_total

logger = logging.getLogger(__name__)

EnvelopeHandler = Callable[[MessageEnvelope, Transaction], Awaitable[None]]
TransactionFactory = Callable[[], Transaction]


@dataclass
class IdempotencyOptions:
    """How the subscriber recognizes messages it already handled."""

    consumer_id: str
    use_inbox_pattern: bool = False
    deduplication_ttl: timedelta = timedelta(hours=24)

    def __post_init__(self):
        if not self.consumer_id:
            raise ValueError("consumer_id is required")


class IdempotentSubscriber:
    """Subscribes handlers behind inbox or deduplication checks.

    Handlers are called as ``handler(envelope, tx)``. With the inbox
    pattern, ``transaction_factory`` supplies the transaction the inbox row
    is written in and ``tx`` is that same transaction, so business writes
    made through it commit together with the row when the handler returns
    and roll back with it when the handler raises. Without a factory, and
    in deduplication mode, ``tx`` is ``NO_TRANSACTION``.
    """

    def __init__(
        self,
        bus: MessageBus,
        inbox_service: InboxService,
        options: IdempotencyOptions,
        transaction_factory: Optional[TransactionFactory] = None,
    ):
        self._bus = bus
        self._inbox = inbox_service
        self._options = options
        self._transaction_factory = transaction_factory

    @property
    def options(self) -> IdempotencyOptions:
        return self._options

    async def subscribe(self, topic: str, handler: EnvelopeHandler) -> Subscription:
        return await self._bus.subscribe(topic, self.wrap(handler))

    async def queue_subscribe(
        self,
        topic: str,
        group: str,
        handler: EnvelopeHandler,
    ) -> Subscription:
        return await self._bus.queue_subscribe(topic, group, self.wrap(handler))

    def wrap(self, handler: EnvelopeHandler) -> MessageCallback:
        """Return a bus callback running ``handler`` at most once per message."""

        async def callback(message: BusMessage) -> None:
            await self.handle(message, handler)

        return callback

    async def handle(self, message: BusMessage, handler: EnvelopeHandler) -> bool:
        """Process one delivery. Returns True when ``handler`` ran."""
        envelope = MessageEnvelope.from_bytes(message.data)
        token = message_id_var.set(envelope.id)
        try:
            if self._options.use_inbox_pattern:
                ran = await self._handle_with_inbox(envelope, handler)
                mode = "inbox"
            else:
                ran = await self._inbox.process_with_idempotency(
                    envelope.id,
                    envelope.event_type,
                    self._options.consumer_id,
                    self._options.deduplication_ttl,
                    lambda: handler(envelope, NO_TRANSACTION),
                )
                mode = "dedup"
        finally:
            message_id_var.reset(token)

        if not ran:
            logger.debug(
                f"Skipping duplicate message {envelope.id} ({envelope.event_type}) "
                f"for {self._options.consumer_id}"
            )
            messages_deduplicated_total.labels(
                consumer=self._options.consumer_id, mode=mode
            ).inc()
        return ran

    async def _handle_with_inbox(
        self,
        envelope: MessageEnvelope,
        handler: EnvelopeHandler,
    ) -> bool:
        async def business_logic(tx: Transaction) -> None:
            await handler(envelope, tx)

        if self._transaction_factory is None:
            return await self._inbox.process_with_inbox_pattern(
                NO_TRANSACTION,
                envelope.id,
                envelope.event_type,
                self._options.consumer_id,
                business_logic,
            )

        async with self._transaction_factory() as tx:
            return await self._inbox.process_with_inbox_pattern(
                tx,
                envelope.id,
                envelope.event_type,
                self._options.consumer_id,
                business_logic,
            )


__all__ = ["IdempotencyOptions", "IdempotentSubscriber", "EnvelopeHandler"]
