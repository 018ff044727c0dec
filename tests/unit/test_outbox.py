"""Tests for the outbox service, relay, topic routing and wire envelope."""

from __future__ import annotations

import json
from datetime import timedelta
from unittest.mock import AsyncMock, MagicMock

import pytest


class TestOutboxService:
    """Tests for OutboxService over the in-memory store."""

    @pytest.mark.asyncio
    async def test_store_message_serializes_payload(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, OutboxStatus, in_memory_outbox

        service = in_memory_outbox(clock=clock)

        message = await service.store_message(
            NO_TRANSACTION, "user.created", "u-1", {"email": "a@example.com"}
        )

        stored = await service.get_message(message.id)
        assert stored.status == OutboxStatus.PENDING
        assert json.loads(stored.payload) == {"email": "a@example.com"}
        assert stored.message_id == message.message_id
        assert stored.created_at == service.now()

    @pytest.mark.asyncio
    async def test_bytes_payload_kept_verbatim(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox

        service = in_memory_outbox(clock=clock)

        message = await service.store_message(NO_TRANSACTION, "blob", "b-1", b"\x00\xff")

        assert (await service.get_message(message.id)).payload == b"\x00\xff"

    @pytest.mark.asyncio
    async def test_unserializable_payload(self, clock):
        from relayq.core.errors import SerializationError
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox

        service = in_memory_outbox(clock=clock)

        with pytest.raises(SerializationError):
            await service.store_message(NO_TRANSACTION, "x", "1", {"bad": object()})

    @pytest.mark.asyncio
    async def test_duplicate_message_id_rejected(self, clock):
        from relayq.core.errors import DuplicateRecordError
        from relayq.core.outbox import NO_TRANSACTION, OutboxMessage, in_memory_outbox

        service = in_memory_outbox(clock=clock)
        first = OutboxMessage(event_type="x", aggregate_id="1", payload=b"{}", message_id="m-1")
        second = OutboxMessage(event_type="x", aggregate_id="1", payload=b"{}", message_id="m-1")
        await service.store_message_with_id(NO_TRANSACTION, first)

        with pytest.raises(DuplicateRecordError):
            await service.store_message_with_id(NO_TRANSACTION, second)

    @pytest.mark.asyncio
    async def test_pending_oldest_first(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox

        service = in_memory_outbox(clock=clock)
        ids = []
        for n in range(3):
            ids.append((await service.store_message(NO_TRANSACTION, "x", str(n), n)).id)
            clock.advance(1)

        pending = await service.get_pending_messages(limit=2)

        assert [m.id for m in pending] == ids[:2]

    @pytest.mark.asyncio
    async def test_mark_missing_raises(self, clock):
        from relayq.core.errors import MessageNotFoundError
        from relayq.core.outbox import in_memory_outbox

        service = in_memory_outbox(clock=clock)

        with pytest.raises(MessageNotFoundError):
            await service.mark_as_processed("missing")
        with pytest.raises(MessageNotFoundError):
            await service.mark_as_failed("missing", "boom")

    @pytest.mark.asyncio
    async def test_failure_accounting_and_exhaustion(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, OutboxStatus, in_memory_outbox

        service = in_memory_outbox(clock=clock, max_retries=2)
        message = await service.store_message(NO_TRANSACTION, "x", "1", {})

        failed = await service.mark_as_failed(message.id, "broker down")
        assert failed.status == OutboxStatus.FAILED
        assert failed.retries == 1
        assert failed.can_retry
        assert [m.id for m in await service.retry_failed_messages()] == [message.id]

        exhausted = await service.mark_as_failed(message.id, "broker down")
        assert exhausted.retries == 2
        assert not exhausted.can_retry
        assert await service.retry_failed_messages() == []

    @pytest.mark.asyncio
    async def test_from_settings_uses_max_retries(self, clock):
        from relayq.core.config import load_settings
        from relayq.core.outbox import NO_TRANSACTION, InMemoryOutboxStore, OutboxService

        service = OutboxService.from_settings(
            InMemoryOutboxStore(), load_settings(MAX_RETRIES=1), clock=clock
        )
        message = await service.store_message(NO_TRANSACTION, "x", "1", {})

        exhausted = await service.mark_as_failed(message.id, "broker down")

        assert service.max_retries == 1
        assert message.max_retries == 1
        assert not exhausted.can_retry
        assert await service.retry_failed_messages() == []

    @pytest.mark.asyncio
    async def test_retry_respects_min_age(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox

        service = in_memory_outbox(clock=clock)
        message = await service.store_message(NO_TRANSACTION, "x", "1", {})
        await service.mark_as_failed(message.id, "boom")

        assert await service.retry_failed_messages(min_age=timedelta(seconds=5)) == []
        clock.advance(5)
        assert len(await service.retry_failed_messages(min_age=timedelta(seconds=5))) == 1

    @pytest.mark.asyncio
    async def test_cleanup_removes_old_processed_only(self, clock):
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox

        service = in_memory_outbox(clock=clock)
        old = await service.store_message(NO_TRANSACTION, "x", "1", {})
        pending = await service.store_message(NO_TRANSACTION, "x", "2", {})
        await service.mark_as_processed(old.id)

        clock.advance(8 * 86400)
        fresh = await service.store_message(NO_TRANSACTION, "x", "3", {})
        await service.mark_as_processed(fresh.id)

        assert await service.cleanup_old_messages(older_than_days=7) == 1
        assert await service.get_message(old.id) is None
        assert await service.get_message(pending.id) is not None
        assert await service.get_message(fresh.id) is not None


class TestTopicResolver:
    """Tests for TopicResolver."""

    def test_default_mapping(self):
        from relayq.core.outbox.relay import TopicResolver

        resolver = TopicResolver()

        assert resolver("user.created") == "users.events"
        assert resolver("auth.login") == "auth.events"
        assert resolver("order.placed") == "default.events"

    def test_longest_prefix_wins(self):
        from relayq.core.outbox.relay import TopicResolver

        resolver = TopicResolver({"user.admin.": "admin.events"}, default_topic="misc")

        assert resolver.resolve("user.admin.created") == "admin.events"
        assert resolver.resolve("user.created") == "users.events"
        assert resolver.resolve("billing.charged") == "misc"


class TestOutboxRelay:
    """Tests for OutboxRelay."""

    @pytest.mark.asyncio
    async def test_publishes_envelope_and_marks_processed(self, clock):
        from relayq.core.message_bus import InMemoryMessageBus
        from relayq.core.message_bus.envelope import MessageEnvelope
        from relayq.core.outbox import NO_TRANSACTION, OutboxStatus, in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        service = in_memory_outbox(clock=clock)
        bus = InMemoryMessageBus()
        relay = OutboxRelay(service, bus)
        message = await service.store_message(
            NO_TRANSACTION, "user.created", "u-1", {"email": "a@example.com"}
        )

        result = await relay.run_once()

        assert result.published == 1
        assert result.failed == 0
        assert bus.published[0].topic == "users.events"
        envelope = MessageEnvelope.from_bytes(bus.published[0].data)
        assert envelope.id == message.message_id
        assert envelope.payload_json() == {"email": "a@example.com"}
        assert (await service.get_message(message.id)).status == OutboxStatus.PROCESSED

    @pytest.mark.asyncio
    async def test_publish_failure_then_retry(self, clock):
        from relayq.core.errors import PublishError
        from relayq.core.outbox import NO_TRANSACTION, OutboxStatus, in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        service = in_memory_outbox(clock=clock)
        bus = MagicMock()
        bus.publish = AsyncMock(side_effect=[PublishError("broker down"), None])
        relay = OutboxRelay(service, bus, retry_delay=5)
        message = await service.store_message(NO_TRANSACTION, "order.placed", "o-1", {})

        first = await relay.run_once()
        failed = await service.get_message(message.id)
        assert first.failed == 1
        assert failed.status == OutboxStatus.FAILED
        assert failed.retries == 1
        assert failed.error == "broker down"

        # not yet past the retry delay
        assert (await relay.run_once()).total == 0

        clock.advance(5)
        second = await relay.run_once()

        assert second.published == 1
        assert (await service.get_message(message.id)).status == OutboxStatus.PROCESSED
        assert bus.publish.await_count == 2

    @pytest.mark.asyncio
    async def test_mark_processed_failure_still_counts_published(self, clock):
        from relayq.core.errors import StoreUnavailableError
        from relayq.core.message_bus import InMemoryMessageBus
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        service = in_memory_outbox(clock=clock)
        await service.store_message(NO_TRANSACTION, "x", "1", {})
        service.mark_as_processed = AsyncMock(side_effect=StoreUnavailableError("db down"))
        relay = OutboxRelay(service, InMemoryMessageBus())

        result = await relay.process_pending()

        assert result.published == 1

    @pytest.mark.asyncio
    async def test_batch_size_limits_pass(self, clock):
        from relayq.core.message_bus import InMemoryMessageBus
        from relayq.core.outbox import NO_TRANSACTION, in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        service = in_memory_outbox(clock=clock)
        for n in range(5):
            await service.store_message(NO_TRANSACTION, "x", str(n), n)
            clock.advance(1)
        bus = InMemoryMessageBus()
        relay = OutboxRelay(service, bus, batch_size=2)

        assert (await relay.process_pending()).published == 2
        assert (await relay.process_pending(limit=10)).published == 3
        assert [json.loads(m.data)["aggregate_id"] for m in bus.published] == [
            "0", "1", "2", "3", "4"
        ]

    @pytest.mark.asyncio
    async def test_from_settings(self):
        from relayq.core.config import Settings
        from relayq.core.message_bus import InMemoryMessageBus
        from relayq.core.outbox import in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        settings = Settings(TOPIC_MAPPING={"order.": "orders.events"})

        relay = OutboxRelay.from_settings(in_memory_outbox(), InMemoryMessageBus(), settings)

        assert relay.topic_resolver("order.placed") == "orders.events"
        assert relay.topic_resolver("user.created") == "users.events"

    @pytest.mark.asyncio
    async def test_start_stop(self, clock):
        from relayq.core.message_bus import InMemoryMessageBus
        from relayq.core.outbox import in_memory_outbox
        from relayq.core.outbox.relay import OutboxRelay

        relay = OutboxRelay(in_memory_outbox(clock=clock), InMemoryMessageBus(), poll_interval=0.01)

        await relay.start()
        assert relay.is_running
        await relay.stop(timeout=1)
        assert not relay.is_running


class TestMessageEnvelope:
    """Tests for the wire envelope."""

    def test_json_payload_nested(self):
        from relayq.core.message_bus.envelope import MessageEnvelope

        envelope = MessageEnvelope(
            id="m-1", event_type="user.created", aggregate_id="u-1", payload=b'{"a": 1}'
        )

        data = envelope.to_dict()

        assert data["payload"] == {"a": 1}
        assert "payload_encoding" not in data["metadata"]
        assert set(data) == {"id", "event_type", "aggregate_id", "payload", "timestamp", "metadata"}
        assert MessageEnvelope.from_bytes(envelope.to_bytes()).payload == b'{"a": 1}'

    def test_binary_payload_base64(self):
        from relayq.core.message_bus.envelope import BASE64_ENCODING, MessageEnvelope

        envelope = MessageEnvelope(id="m-1", event_type="blob", aggregate_id="b", payload=b"\xff\x00")

        data = envelope.to_dict()
        restored = MessageEnvelope.from_bytes(envelope.to_bytes())

        assert data["metadata"]["payload_encoding"] == BASE64_ENCODING
        assert restored.payload == b"\xff\x00"
        assert "payload_encoding" not in restored.metadata

    @pytest.mark.parametrize(
        "payload",
        [b'{"name":"alice"}', b'{"name": "alice"}\n', b'{"b": 1, "a": 2.50}', b'"caf\xc3\xa9"'],
    )
    def test_payload_bytes_survive_wire(self, payload):
        from relayq.core.message_bus.envelope import BASE64_ENCODING, MessageEnvelope

        envelope = MessageEnvelope(id="m-1", event_type="x", aggregate_id="1", payload=payload)

        data = envelope.to_dict()
        restored = MessageEnvelope.from_bytes(envelope.to_bytes())

        assert restored.payload == payload
        assert data["metadata"]["payload_encoding"] == BASE64_ENCODING
        assert restored.payload_json() == envelope.payload_json()

    def test_from_outbox_uses_message_id(self):
        from relayq.core.message_bus.envelope import MessageEnvelope
        from relayq.core.outbox import OutboxMessage

        message = OutboxMessage(event_type="x", aggregate_id="1", payload=b"{}", retries=2)

        envelope = MessageEnvelope.from_outbox(message)

        assert envelope.id == message.message_id
        assert envelope.metadata == {"outbox_row_id": message.id, "retry_count": 2}
        assert envelope.timestamp == message.created_at

    @pytest.mark.parametrize(
        "raw",
        [
            b"not json",
            b"[1, 2]",
            b'{"event_type": "x"}',
            b'{"id": "m-1"}',
            b'{"id": "m-1", "event_type": "x", "metadata": "flat"}',
            b'{"id": "m-1", "event_type": "x", "payload": "%%%",'
            b' "metadata": {"payload_encoding": "base64"}}',
            b'{"id": "m-1", "event_type": "x", "timestamp": "yesterday"}',
        ],
    )
    def test_malformed(self, raw):
        from relayq.core.errors import MalformedEnvelopeError
        from relayq.core.message_bus.envelope import MessageEnvelope

        with pytest.raises(MalformedEnvelopeError):
            MessageEnvelope.from_bytes(raw)

    def test_payload_json_rejects_binary(self):
        from relayq.core.errors import MalformedEnvelopeError
        from relayq.core.message_bus.envelope import MessageEnvelope

        envelope = MessageEnvelope(id="m-1", event_type="x", aggregate_id="", payload=b"\xff")

        with pytest.raises(MalformedEnvelopeError):
            envelope.payload_json()
