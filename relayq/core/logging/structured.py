"""JSON log lines for workers, relays and subscribers.

Each line carries the service and environment, the source location, any
job/worker/message ids bound to the current context, record extras and
exception details.
"""

from __future__ import annotations

import json
import logging
import sys
import traceback
from contextvars import ContextVar
from datetime import datetime, timezone
from typing import Any, Dict, Optional, Union

# Context variables set by workers and subscribers
job_id_var: ContextVar[Optional[str]] = ContextVar("job_id", default=None)
worker_id_var: ContextVar[Optional[str]] = ContextVar("worker_id", default=None)
message_id_var: ContextVar[Optional[str]] = ContextVar("message_id", default=None)

_CONTEXT_VARS = (
    ("job_id", job_id_var),
    ("worker_id", worker_id_var),
    ("message_id", message_id_var),
)

# LogRecord attributes that are not user-supplied extras
_RESERVED_ATTRS = frozenset(
    vars(logging.LogRecord("", 0, "", 0, "", (), None)).keys()
) | {"message", "asctime", "extra_fields"}


class StructuredFormatter(logging.Formatter):
    """JSON formatter for structured logging."""

    def __init__(
        self,
        service_name: str = "relayq",
        environment: str = "production",
        include_stack_trace: bool = True,
    ):
        super().__init__()
        self.service_name = service_name
        self.environment = environment
        self.include_stack_trace = include_stack_trace

    def format(self, record: logging.LogRecord) -> str:
        log_entry: Dict[str, Any] = {
            "timestamp": datetime.now(timezone.utc).isoformat(),
            "level": record.levelname,
            "logger": record.name,
            "message": record.getMessage(),
            "service": self.service_name,
            "environment": self.environment,
        }

        log_entry["location"] = {
            "file": record.pathname,
            "line": record.lineno,
            "function": record.funcName,
        }

        for key, var in _CONTEXT_VARS:
            value = var.get()
            if value:
                log_entry[key] = value

        # logger.info(..., extra={...}) lands on the record as attributes
        extra = {
            k: v for k, v in record.__dict__.items()
            if k not in _RESERVED_ATTRS and not k.startswith("_")
        }
        if hasattr(record, "extra_fields"):
            extra.update(record.extra_fields)
        if extra:
            log_entry["extra"] = extra

        if record.exc_info and self.include_stack_trace:
            log_entry["exception"] = {
                "type": record.exc_info[0].__name__ if record.exc_info[0] else None,
                "message": str(record.exc_info[1]) if record.exc_info[1] else None,
                "stacktrace": traceback.format_exception(*record.exc_info),
            }

        return json.dumps(log_entry, default=str)


def setup_structured_logging(
    service_name: str = "relayq",
    environment: str = "production",
    level: Union[int, str] = logging.INFO,
    json_output: bool = True,
) -> None:
    """Configure root logging for a worker process."""
    root_logger = logging.getLogger()
    root_logger.setLevel(level)

    for handler in root_logger.handlers[:]:
        root_logger.removeHandler(handler)

    console_handler = logging.StreamHandler(sys.stdout)
    console_handler.setLevel(level)

    if json_output:
        formatter: logging.Formatter = StructuredFormatter(
            service_name=service_name,
            environment=environment,
        )
    else:
        formatter = logging.Formatter(
            "%(asctime)s - %(name)s - %(levelname)s - %(message)s"
        )

    console_handler.setFormatter(formatter)
    root_logger.addHandler(console_handler)


def configure_from_settings(settings: Any) -> None:
    """Apply LOG_* values from a Settings object."""
    setup_structured_logging(
        service_name=settings.SERVICE_NAME,
        environment=settings.ENVIRONMENT,
        level=settings.LOG_LEVEL.upper(),
        json_output=settings.LOG_JSON,
    )


def set_job_context(
    job_id: Optional[str] = None,
    worker_id: Optional[str] = None,
) -> None:
    if job_id is not None:
        job_id_var.set(job_id)
    if worker_id is not None:
        worker_id_var.set(worker_id)


def clear_job_context() -> None:
    job_id_var.set(None)
    message_id_var.set(None)
