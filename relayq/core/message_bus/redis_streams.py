"""Redis Streams message bus.

Each topic is a stream. Every subscription reads through a consumer group:
fan-out subscriptions get a private group, queue subscriptions share the
group named by the caller. Entries are XACKed only after the handler
returns; failed entries stay pending and are re-claimed once idle for
``claim_idle_ms``. After ``max_deliveries`` failed attempts an entry is
copied to ``<stream>:dead`` and acknowledged.
"""

from __future__ import annotations

import asyncio
import contextlib
import logging
import time
import uuid
from typing import Any, Dict, List, Optional, Tuple

from redis.exceptions import RedisError, ResponseError

from relayq.core.errors import PublishError
from relayq.core.message_bus import BusMessage, MessageBus, MessageCallback, Subscription

logger = logging.getLogger(__name__)


def _text(value: Any) -> str:
    return value.decode() if isinstance(value, bytes) else str(value)


class RedisStreamMessageBus(MessageBus):
    """Message bus over Redis Streams consumer groups."""

    def __init__(
        self,
        redis_client: Any,
        stream_prefix: str = "bus:",
        block_ms: int = 1000,
        batch_size: int = 10,
        claim_idle_ms: int = 30000,
        max_deliveries: int = 5,
        maxlen: Optional[int] = 100000,
        error_backoff: float = 1.0,
    ):
        self._redis = redis_client
        self._prefix = stream_prefix
        self._block_ms = block_ms
        self._batch_size = batch_size
        self._claim_idle_ms = claim_idle_ms
        self._max_deliveries = max_deliveries
        self._maxlen = maxlen
        self._error_backoff = error_backoff
        self._tasks: Dict[str, asyncio.Task] = {}
        self._subscriptions: Dict[str, Subscription] = {}
        self._private_groups: Dict[str, str] = {}
        self._attempts: Dict[Tuple[str, str], int] = {}
        self._closed = False

    def stream_key(self, topic: str) -> str:
        return f"{self._prefix}{topic}"

    async def publish(self, topic: str, data: bytes) -> None:
        if self._closed:
            raise PublishError(f"Message bus is closed, cannot publish to {topic}")
        try:
            await self._redis.xadd(
                self.stream_key(topic),
                {"data": data},
                maxlen=self._maxlen,
                approximate=True,
            )
        except RedisError as e:
            raise PublishError(f"Failed to publish to {topic}: {e}") from e

    async def subscribe(self, topic: str, handler: MessageCallback) -> Subscription:
        group = f"sub-{uuid.uuid4().hex}"
        return await self._start(topic, group, handler, private=True)

    async def queue_subscribe(
        self,
        topic: str,
        group: str,
        handler: MessageCallback,
    ) -> Subscription:
        return await self._start(topic, group, handler, private=False)

    async def _start(
        self,
        topic: str,
        group: str,
        handler: MessageCallback,
        private: bool,
    ) -> Subscription:
        stream = self.stream_key(topic)
        await self._ensure_group(stream, group)

        subscription = Subscription(
            topic,
            handler,
            group=None if private else group,
            on_unsubscribe=self._stop,
        )
        consumer = f"consumer-{subscription.id}"
        self._subscriptions[subscription.id] = subscription
        if private:
            self._private_groups[subscription.id] = group
        self._tasks[subscription.id] = asyncio.create_task(
            self._read_loop(subscription, stream, group, consumer)
        )
        logger.info(f"Subscribed {subscription.id} to {stream} (group={group})")
        return subscription

    async def _ensure_group(self, stream: str, group: str) -> None:
        try:
            await self._redis.xgroup_create(stream, group, id="$", mkstream=True)
        except ResponseError as e:
            if "BUSYGROUP" not in str(e):
                raise

    async def _read_loop(
        self,
        subscription: Subscription,
        stream: str,
        group: str,
        consumer: str,
    ) -> None:
        last_claim = time.monotonic()
        while subscription.active:
            try:
                if (time.monotonic() - last_claim) * 1000 >= self._claim_idle_ms:
                    last_claim = time.monotonic()
                    await self._claim_stale(subscription, stream, group, consumer)

                response = await self._redis.xreadgroup(
                    group,
                    consumer,
                    {stream: ">"},
                    count=self._batch_size,
                    block=self._block_ms,
                )
                for _, entries in response or []:
                    for entry_id, fields in entries:
                        await self._handle_entry(subscription, stream, group, entry_id, fields)
            except RedisError as e:
                logger.error(f"Stream read error on {stream}: {e}")
                await asyncio.sleep(self._error_backoff)

    async def _claim_stale(
        self,
        subscription: Subscription,
        stream: str,
        group: str,
        consumer: str,
    ) -> None:
        result = await self._redis.xautoclaim(
            stream,
            group,
            consumer,
            min_idle_time=self._claim_idle_ms,
            start_id="0-0",
            count=self._batch_size,
        )
        entries: List[Any] = result[1] if result and len(result) > 1 else []
        for entry_id, fields in entries:
            await self._handle_entry(subscription, stream, group, entry_id, fields)

    async def _handle_entry(
        self,
        subscription: Subscription,
        stream: str,
        group: str,
        entry_id: Any,
        fields: Dict[Any, Any],
    ) -> bool:
        """Deliver one entry. Returns True once the entry is acknowledged."""
        entry = _text(entry_id)
        key = (group, entry)
        attempt = self._attempts.get(key, 0) + 1
        self._attempts[key] = attempt

        data = fields.get(b"data", fields.get("data", b""))
        if isinstance(data, str):
            data = data.encode("utf-8")

        try:
            await subscription.handler(
                BusMessage(topic=subscription.topic, data=data, delivery_attempt=attempt, id=entry)
            )
        except Exception as e:
            if attempt < self._max_deliveries:
                logger.warning(
                    f"Handler failed for {stream} entry {entry} "
                    f"(attempt {attempt}/{self._max_deliveries}): {e}"
                )
                return False
            logger.error(f"Dead-lettering {stream} entry {entry} after {attempt} attempts: {e}")
            await self._redis.xadd(
                f"{stream}:dead",
                {"data": data, "group": group, "entry_id": entry, "error": str(e)},
            )

        await self._redis.xack(stream, group, entry_id)
        self._attempts.pop(key, None)
        return True

    async def _stop(self, subscription: Subscription) -> None:
        task = self._tasks.pop(subscription.id, None)
        if task is not None:
            task.cancel()
            with contextlib.suppress(asyncio.CancelledError):
                await task
        self._subscriptions.pop(subscription.id, None)

        group = self._private_groups.pop(subscription.id, None)
        if group is not None:
            try:
                await self._redis.xgroup_destroy(self.stream_key(subscription.topic), group)
            except RedisError as e:
                logger.warning(f"Could not remove consumer group {group}: {e}")
        logger.info(f"Unsubscribed {subscription.id}")

    async def close(self) -> None:
        self._closed = True
        for subscription in list(self._subscriptions.values()):
            await subscription.unsubscribe()


__all__ = ["RedisStreamMessageBus"]
