"""Prometheus metrics for the job queue and messaging layers.

All metric objects are defined at import time; exposition is left to the
embedding application.
"""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram

# Job queue
jobs_enqueued_total = Counter(
    "relayq_jobs_enqueued_total",
    "Jobs accepted by the queue",
    ["job_type", "queue", "priority"],
)
jobs_processed_total = Counter(
    "relayq_jobs_processed_total",
    "Jobs processed by workers",
    ["job_type", "queue", "status"],
)
job_retries_total = Counter(
    "relayq_job_retries_total",
    "Job executions that failed and were handed back to the queue",
    ["job_type", "queue"],
)
job_duration_seconds = Histogram(
    "relayq_job_duration_seconds",
    "Handler execution duration",
    ["job_type", "queue"],
    buckets=[0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 120.0],
)
queue_size = Gauge(
    "relayq_queue_size",
    "Pending plus delayed jobs per queue",
    ["queue"],
)
active_workers = Gauge(
    "relayq_active_workers",
    "Workers currently running in the pool",
)
jobs_requeued_total = Counter(
    "relayq_jobs_requeued_total",
    "Processing jobs returned to the queue after a visibility timeout",
    ["queue"],
)
scheduled_jobs_promoted_total = Counter(
    "relayq_scheduled_jobs_promoted_total",
    "Scheduled and recurring jobs handed to the queue",
    ["kind"],
)

# Outbox / inbox
outbox_messages_published_total = Counter(
    "relayq_outbox_messages_published_total",
    "Outbox rows published to the bus",
    ["topic"],
)
outbox_publish_failures_total = Counter(
    "relayq_outbox_publish_failures_total",
    "Outbox publish attempts that failed",
    ["topic"],
)
messages_deduplicated_total = Counter(
    "relayq_messages_deduplicated_total",
    "Deliveries skipped because the message was already handled",
    ["consumer", "mode"],
)
inbox_stale_received_total = Counter(
    "relayq_inbox_stale_received_total",
    "Deliveries that found a Received inbox row that was never marked processed",
    ["consumer"],
)


__all__ = [
    "jobs_enqueued_total",
    "jobs_processed_total",
    "job_retries_total",
    "job_duration_seconds",
    "queue_size",
    "active_workers",
    "jobs_requeued_total",
    "scheduled_jobs_promoted_total",
    "outbox_messages_published_total",
    "outbox_publish_failures_total",
    "messages_deduplicated_total",
    "inbox_stale_received_total",
]
