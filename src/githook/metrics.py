"""
Prometheus metrics for githook.

This module defines the metrics collected while receiving webhooks, running
build pipelines and notifying the chat channel.
"""

from prometheus_client import Counter, Histogram, Info
import time


# Webhook reception metrics
webhooks_received_total = Counter(
    'githook_webhooks_received_total',
    'Total number of webhooks received',
    ['event_type']  # event_type = push|ping|other
)

webhook_processing_duration_seconds = Histogram(
    'githook_webhook_processing_duration_seconds',
    'Time spent processing webhooks, including the pipeline they start',
    ['event_type']
)

webhook_processing_errors_total = Counter(
    'githook_webhook_processing_errors_total',
    'Total number of webhook processing errors',
    ['event_type', 'error_type']
)

webhooks_rejected_total = Counter(
    'githook_webhooks_rejected_total',
    'Deliveries dropped before a pipeline started',
    ['reason']  # reason = signature|payload|repository|ref
)

# Pipeline metrics
pipelines_total = Counter(
    'githook_pipelines_total',
    'Total number of pipelines that reached a terminal state',
    ['app', 'status']  # status = failed|completed|completed_with_warnings
)

pipeline_duration_seconds = Histogram(
    'githook_pipeline_duration_seconds',
    'Time spent running a pipeline task graph',
    ['app']
)

action_duration_seconds = Histogram(
    'githook_action_duration_seconds',
    'Wall-clock duration of individual pipeline actions',
    ['app', 'action']
)

action_failures_total = Counter(
    'githook_action_failures_total',
    'Total number of failed pipeline actions',
    ['app', 'action', 'error_type']
)

# Notification metrics
notification_errors_total = Counter(
    'githook_notification_errors_total',
    'Total number of chat notifications that could not be delivered',
    ['error_type']
)

# Application info
app_info = Info(
    'githook_app',
    'Githook application information'
)


class MetricsContext:
    """Context manager for timing operations and handling errors with metrics."""

    def __init__(self, histogram, error_counter, labels=None, error_labels=None):
        self.histogram = histogram
        self.error_counter = error_counter
        self.labels = labels or []
        self.error_labels = error_labels or []
        self.start_time = None

    def __enter__(self):
        self.start_time = time.time()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        if self.start_time is not None:
            duration = time.time() - self.start_time
            self.histogram.labels(*self.labels).observe(duration)

        if exc_type is not None:
            error_type = exc_type.__name__
            self.error_counter.labels(*self.error_labels, error_type).inc()

        return False  # Don't suppress exceptions


def track_webhook_processing(event_type: str):
    """Context manager for tracking webhook processing metrics."""
    return MetricsContext(
        webhook_processing_duration_seconds,
        webhook_processing_errors_total,
        labels=[event_type],
        error_labels=[event_type]
    )
