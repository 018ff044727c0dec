"""Error taxonomy shared by the queue and messaging layers.

Every error raised by relayq carries an ``ErrorKind`` so callers can match
on the failure class instead of the concrete type. Lower-level errors are
wrapped with ``raise ... from exc``; the original stays on ``__cause__``.
"""

from __future__ import annotations

from enum import Enum
from typing import Optional


class ErrorKind(str, Enum):
    TRANSIENT = "transient"
    RETRYABLE = "retryable"
    UNRECOVERABLE = "unrecoverable"
    DUPLICATE = "duplicate"
    POISONED = "poisoned"


class RelayError(Exception):
    """Base error for relayq."""

    kind: ErrorKind = ErrorKind.RETRYABLE

    def __init__(self, message: str, kind: Optional[ErrorKind] = None):
        super().__init__(message)
        self.message = message
        if kind is not None:
            self.kind = kind

    @property
    def is_retryable(self) -> bool:
        return self.kind in (ErrorKind.TRANSIENT, ErrorKind.RETRYABLE)


# Transient: store or bus unavailable, timeouts


class StoreUnavailableError(RelayError):
    """Backing store could not be reached or rejected the operation."""

    kind = ErrorKind.TRANSIENT


class PublishError(RelayError):
    """Message bus refused or failed a publish."""

    kind = ErrorKind.TRANSIENT


class ShutdownTimeoutError(RelayError):
    """A component did not stop within the allotted time."""

    kind = ErrorKind.TRANSIENT

    def __init__(self, component: str, timeout: float):
        super().__init__(f"{component} did not stop within {timeout}s")
        self.component = component
        self.timeout = timeout


# Unrecoverable: fail immediately, keep for inspection


class SerializationError(RelayError):
    """Value could not be encoded or decoded."""

    kind = ErrorKind.UNRECOVERABLE


class InvalidPayloadError(RelayError):
    """Job payload failed validation for its kind."""

    kind = ErrorKind.UNRECOVERABLE


class HandlerNotFoundError(RelayError):
    kind = ErrorKind.UNRECOVERABLE

    def __init__(self, job_type: str):
        super().__init__(f"No handler registered for job type: {job_type}")
        self.job_type = job_type


class MalformedEnvelopeError(RelayError):
    kind = ErrorKind.UNRECOVERABLE


class InvalidIntervalError(RelayError):
    kind = ErrorKind.UNRECOVERABLE


# Retryable


class VisibilityTimeoutError(RelayError):
    """A dequeued job was not acknowledged before its deadline."""

    kind = ErrorKind.RETRYABLE

    def __init__(self, job_id: str):
        super().__init__(f"Visibility timeout expired for job {job_id}")
        self.job_id = job_id


# Lookup and state errors


class JobNotFoundError(RelayError):
    kind = ErrorKind.UNRECOVERABLE

    def __init__(self, job_id: str):
        super().__init__(f"Job not found: {job_id}")
        self.job_id = job_id


class InvalidJobStateError(RelayError):
    kind = ErrorKind.UNRECOVERABLE

    def __init__(self, job_id: str, state: str, expected: str):
        super().__init__(f"Job {job_id} is {state}, expected {expected}")
        self.job_id = job_id
        self.state = state
        self.expected = expected


class ScheduleNotFoundError(RelayError):
    kind = ErrorKind.UNRECOVERABLE

    def __init__(self, job_id: str):
        super().__init__(f"No scheduled or recurring job with id: {job_id}")
        self.job_id = job_id


class MessageNotFoundError(RelayError):
    kind = ErrorKind.UNRECOVERABLE

    def __init__(self, message_id: str):
        super().__init__(f"Outbox message not found: {message_id}")
        self.message_id = message_id


class AlreadyRunningError(RelayError):
    kind = ErrorKind.UNRECOVERABLE


class NotRunningError(RelayError):
    kind = ErrorKind.UNRECOVERABLE


# Duplicate


class DuplicateRecordError(RelayError):
    """Insert violated a uniqueness constraint."""

    kind = ErrorKind.DUPLICATE


def error_kind(exc: BaseException) -> ErrorKind:
    """Return the error kind for any exception.

    Plain exceptions raised by user handlers count as retryable business
    failures; timeouts count as transient.
    """
    if isinstance(exc, RelayError):
        return exc.kind
    if isinstance(exc, (TimeoutError, ConnectionError)):
        return ErrorKind.TRANSIENT
    return ErrorKind.RETRYABLE


__all__ = [
    "ErrorKind",
    "RelayError",
    "StoreUnavailableError",
    "PublishError",
    "ShutdownTimeoutError",
    "SerializationError",
    "InvalidPayloadError",
    "HandlerNotFoundError",
    "MalformedEnvelopeError",
    "InvalidIntervalError",
    "VisibilityTimeoutError",
    "JobNotFoundError",
    "InvalidJobStateError",
    "ScheduleNotFoundError",
    "MessageNotFoundError",
    "AlreadyRunningError",
    "NotRunningError",
    "DuplicateRecordError",
    "error_kind",
]
