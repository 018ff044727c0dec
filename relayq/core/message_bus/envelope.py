"""Wire envelope carried on the bus for outbox events.

JSON shape::

    {"id", "event_type", "aggregate_id", "payload", "timestamp", "metadata"}

``id`` is the outbox ``message_id`` and stays stable across republishes.
``payload`` is nested JSON when the stored bytes are exactly what
``json.dumps`` produces for their value, so decoding gives the same bytes
back. Any other payload, including JSON in another spacing, is a base64
string with ``metadata["payload_encoding"] == "base64"``.
"""

from __future__ import annotations

import base64
import binascii
import json
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any, Dict

from relayq.core.errors import MalformedEnvelopeError
from relayq.utils.clock import parse_datetime

if TYPE_CHECKING:
    from relayq.core.outbox import OutboxMessage

BASE64_ENCODING = "base64"

_NOT_NESTED = object()


def _nested_payload(payload: bytes) -> Any:
    try:
        value = json.loads(payload)
    except (ValueError, UnicodeDecodeError):
        return _NOT_NESTED
    if json.dumps(value).encode("utf-8") != payload:
        return _NOT_NESTED
    return value


@dataclass
class MessageEnvelope:
    """Event as published by the outbox relay."""

    id: str
    event_type: str
    aggregate_id: str
    payload: bytes
    timestamp: datetime = field(default_factory=lambda: datetime.now(timezone.utc))
    metadata: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def from_outbox(cls, message: "OutboxMessage") -> "MessageEnvelope":
        return cls(
            id=message.message_id,
            event_type=message.event_type,
            aggregate_id=message.aggregate_id,
            payload=message.payload,
            timestamp=message.created_at,
            metadata={"outbox_row_id": message.id, "retry_count": message.retries},
        )

    def payload_json(self) -> Any:
        """Decode the payload as JSON."""
        try:
            return json.loads(self.payload)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedEnvelopeError(f"Envelope {self.id} payload is not JSON: {e}") from e

    def to_dict(self) -> Dict[str, Any]:
        metadata = dict(self.metadata)
        payload = _nested_payload(self.payload)
        if payload is _NOT_NESTED:
            payload = base64.b64encode(self.payload).decode("ascii")
            metadata["payload_encoding"] = BASE64_ENCODING
        else:
            metadata.pop("payload_encoding", None)
        return {
            "id": self.id,
            "event_type": self.event_type,
            "aggregate_id": self.aggregate_id,
            "payload": payload,
            "timestamp": self.timestamp.isoformat(),
            "metadata": metadata,
        }

    def to_bytes(self) -> bytes:
        return json.dumps(self.to_dict()).encode("utf-8")

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "MessageEnvelope":
        if not isinstance(data, dict):
            raise MalformedEnvelopeError("Envelope must be a JSON object")
        for key in ("id", "event_type"):
            if not isinstance(data.get(key), str) or not data[key]:
                raise MalformedEnvelopeError(f"Envelope is missing '{key}'")

        metadata = data.get("metadata") or {}
        if not isinstance(metadata, dict):
            raise MalformedEnvelopeError("Envelope metadata must be an object")
        metadata = dict(metadata)

        raw = data.get("payload")
        if metadata.pop("payload_encoding", None) == BASE64_ENCODING:
            try:
                payload = base64.b64decode(raw, validate=True)
            except (TypeError, binascii.Error) as e:
                raise MalformedEnvelopeError(f"Envelope {data['id']} has invalid base64 payload") from e
        else:
            payload = json.dumps(raw).encode("utf-8")

        try:
            timestamp = parse_datetime(data.get("timestamp")) or datetime.now(timezone.utc)
        except (TypeError, ValueError) as e:
            raise MalformedEnvelopeError(f"Envelope {data['id']} has invalid timestamp") from e

        return cls(
            id=data["id"],
            event_type=data["event_type"],
            aggregate_id=data.get("aggregate_id") or "",
            payload=payload,
            timestamp=timestamp,
            metadata=metadata,
        )

    @classmethod
    def from_bytes(cls, data: bytes) -> "MessageEnvelope":
        try:
            decoded = json.loads(data)
        except (ValueError, UnicodeDecodeError) as e:
            raise MalformedEnvelopeError(f"Envelope is not valid JSON: {e}") from e
        return cls.from_dict(decoded)


__all__ = ["MessageEnvelope", "BASE64_ENCODING"]
