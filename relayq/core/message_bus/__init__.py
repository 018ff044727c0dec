"""Message Bus Module.

At-least-once pub/sub transport used by the outbox relay and consumers:
- Fan-out subscriptions and competing-consumer queue groups
- Redelivery of messages whose handler raised
- Dead letters once delivery attempts are exhausted
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Awaitable, Callable, Dict, List, Optional

from relayq.core.errors import PublishError

logger = logging.getLogger(__name__)


@dataclass
class BusMessage:
    """A single delivery of a published message."""

    topic: str
    data: bytes
    delivery_attempt: int = 1
    id: str = field(default_factory=lambda: str(uuid.uuid4()))


MessageCallback = Callable[[BusMessage], Awaitable[None]]


@dataclass
class DeadLetter:
    """A message whose handler kept failing."""

    topic: str
    data: bytes
    subscription_id: str
    error: str
    attempts: int
    failed_at: datetime = field(default_factory=lambda: datetime.now(timezone.utc))


class Subscription:
    """Handle returned by ``subscribe`` and ``queue_subscribe``."""

    def __init__(
        self,
        topic: str,
        handler: MessageCallback,
        group: Optional[str] = None,
        on_unsubscribe: Optional[Callable[["Subscription"], Awaitable[None]]] = None,
    ):
        self.id = str(uuid.uuid4())
        self.topic = topic
        self.handler = handler
        self.group = group
        self.active = True
        self._on_unsubscribe = on_unsubscribe

    async def unsubscribe(self) -> None:
        if not self.active:
            return
        self.active = False
        if self._on_unsubscribe is not None:
            await self._on_unsubscribe(self)

    def __repr__(self) -> str:
        group = f", group={self.group!r}" if self.group else ""
        return f"Subscription(topic={self.topic!r}{group})"


class MessageBus(ABC):
    """Abstract message bus."""

    @abstractmethod
    async def publish(self, topic: str, data: bytes) -> None:
        """Publish ``data``; raises PublishError if the bus refuses it."""
        pass

    @abstractmethod
    async def subscribe(self, topic: str, handler: MessageCallback) -> Subscription:
        """Every subscription receives every message on ``topic``."""
        pass

    @abstractmethod
    async def queue_subscribe(
        self,
        topic: str,
        group: str,
        handler: MessageCallback,
    ) -> Subscription:
        """Members of ``group`` compete; each message goes to one member."""
        pass

    @abstractmethod
    async def close(self) -> None:
        pass


class InMemoryMessageBus(MessageBus):
    """In-process bus delivering synchronously within ``publish``.

    A handler that raises gets the message again, up to ``max_deliveries``
    attempts, after which it is recorded in ``dead_letters``. Handler
    failures never reach the publisher.
    """

    def __init__(self, max_deliveries: int = 3):
        if max_deliveries < 1:
            raise ValueError("max_deliveries must be at least 1")
        self._max_deliveries = max_deliveries
        self._subscriptions: Dict[str, List[Subscription]] = {}
        self._groups: Dict[str, Dict[str, List[Subscription]]] = {}
        self._cursors: Dict[str, int] = {}
        self._dead_letters: List[DeadLetter] = []
        self._lock = asyncio.Lock()
        self._closed = False
        self.published: List[BusMessage] = []

    @property
    def dead_letters(self) -> List[DeadLetter]:
        return list(self._dead_letters)

    @property
    def subscription_count(self) -> int:
        plain = sum(len(subs) for subs in self._subscriptions.values())
        grouped = sum(
            len(members) for groups in self._groups.values() for members in groups.values()
        )
        return plain + grouped

    async def publish(self, topic: str, data: bytes) -> None:
        if self._closed:
            raise PublishError(f"Message bus is closed, cannot publish to {topic}")

        async with self._lock:
            self.published.append(BusMessage(topic=topic, data=data))
            targets = list(self._subscriptions.get(topic, []))
            for group, members in self._groups.get(topic, {}).items():
                if not members:
                    continue
                cursor_key = f"{topic}\x00{group}"
                index = self._cursors.get(cursor_key, 0) % len(members)
                self._cursors[cursor_key] = index + 1
                targets.append(members[index])

        if not targets:
            logger.debug(f"No subscribers for topic {topic}")

        for subscription in targets:
            await self._deliver(subscription, topic, data)

    async def _deliver(self, subscription: Subscription, topic: str, data: bytes) -> None:
        last_error: Optional[BaseException] = None
        for attempt in range(1, self._max_deliveries + 1):
            if not subscription.active:
                return
            try:
                await subscription.handler(
                    BusMessage(topic=topic, data=data, delivery_attempt=attempt)
                )
                return
            except Exception as e:
                last_error = e
                logger.warning(
                    f"Handler for {subscription!r} failed on attempt "
                    f"{attempt}/{self._max_deliveries}: {e}"
                )

        logger.error(f"Dead-lettering message on {topic} for {subscription!r}: {last_error}")
        self._dead_letters.append(
            DeadLetter(
                topic=topic,
                data=data,
                subscription_id=subscription.id,
                error=str(last_error),
                attempts=self._max_deliveries,
            )
        )

    async def subscribe(self, topic: str, handler: MessageCallback) -> Subscription:
        subscription = Subscription(topic, handler, on_unsubscribe=self._remove)
        async with self._lock:
            self._subscriptions.setdefault(topic, []).append(subscription)
        logger.info(f"Subscribed {subscription.id} to {topic}")
        return subscription

    async def queue_subscribe(
        self,
        topic: str,
        group: str,
        handler: MessageCallback,
    ) -> Subscription:
        subscription = Subscription(topic, handler, group=group, on_unsubscribe=self._remove)
        async with self._lock:
            self._groups.setdefault(topic, {}).setdefault(group, []).append(subscription)
        logger.info(f"Subscribed {subscription.id} to {topic} in group {group}")
        return subscription

    async def _remove(self, subscription: Subscription) -> None:
        async with self._lock:
            if subscription.group is None:
                subs = self._subscriptions.get(subscription.topic, [])
            else:
                subs = self._groups.get(subscription.topic, {}).get(subscription.group, [])
            if subscription in subs:
                subs.remove(subscription)
        logger.info(f"Unsubscribed {subscription.id}")

    async def close(self) -> None:
        self._closed = True
        async with self._lock:
            subscriptions = [s for subs in self._subscriptions.values() for s in subs]
            subscriptions += [
                s
                for groups in self._groups.values()
                for members in groups.values()
                for s in members
            ]
        for subscription in subscriptions:
            subscription.active = False
        self._subscriptions.clear()
        self._groups.clear()


__all__ = [
    "BusMessage",
    "MessageCallback",
    "DeadLetter",
    "Subscription",
    "MessageBus",
    "InMemoryMessageBus",
]
