"""Prometheus metrics.

Emission is fire-and-forget: nothing here should ever fail a delivery.
"""

from prometheus_client import Counter, Histogram, Summary

# Processing duration buckets, milliseconds
PROCESSING_DURATION_HISTOGRAM_BUCKETS = (10, 100, 500, 1000, 2000, 3000, 5000, 10000, 30000, 60000)

# =============================================================================
# SQS queue metrics
# =============================================================================

sqs_received = Counter(
    "sqs_queue_received_total",
    "Messages received from the queue",
    ["queue"],
)

sqs_sent = Counter(
    "sqs_queue_sent_total",
    "Messages sent to the queue",
    ["queue"],
)

sqs_completed = Counter(
    "sqs_queue_success_total",
    "Messages processed successfully",
    ["queue"],
)

sqs_failed = Counter(
    "sqs_queue_failed_total",
    "Message deliveries that failed",
    ["queue"],
)

sqs_deleted = Counter(
    "sqs_queue_deleted_total",
    "Messages deleted from the queue",
    ["queue"],
)

# Rollups (count/sum) of the processing time
sqs_duration = Summary(
    "sqs_queue_duration_ms",
    "Message processing time in milliseconds",
    ["queue"],
)

# Fixed-bucket distribution of the same processing time
sqs_duration_histogram = Histogram(
    "sqs_queue_duration_ms_histogram",
    "Message processing time in milliseconds (fixed buckets)",
    ["queue"],
    buckets=PROCESSING_DURATION_HISTOGRAM_BUCKETS,
)

# =============================================================================
# Webhook / sync metrics
# =============================================================================

webhooks_failed = Counter(
    "webhooks_failed_total",
    "Webhooks whose processing failed and won't be retried",
    ["name"],
)

sync_status = Counter(
    "sync_status_total",
    "Backfill syncs reaching a terminal status",
    ["status"],
)

full_sync_duration = Histogram(
    "sync_full_duration_seconds",
    "Total duration of a backfill sync",
    buckets=(60, 300, 900, 1800, 3600, 4 * 3600, 12 * 3600, 24 * 3600, 72 * 3600),
)


def record_processed(queue: str, duration_ms: float) -> None:
    sqs_completed.labels(queue=queue).inc()
    sqs_duration.labels(queue=queue).observe(duration_ms)
    sqs_duration_histogram.labels(queue=queue).observe(duration_ms)


def emit_webhook_failed_metrics(name: str) -> None:
    webhooks_failed.labels(name=name).inc()
