"""
Prometheus metrics for order fulfillment monitoring.

Tracks:
- Payment verification outcomes and duration
- Order transitions
- Order lock acquisitions
- Notification queue throughput and depth
- Reconciliation runs and consistency gauges
- Security incidents
- Webhook events
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment verification metrics
payment_verifications_total = Counter(
    "payment_verifications_total",
    "Total payment verifications",
    ["outcome"],  # verified, already_processed, amount_mismatch, not_found, lock_conflict, error
)

payment_verification_duration_seconds = Histogram(
    "payment_verification_duration_seconds",
    "Payment verification duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Order state machine metrics
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions",
    ["from_status", "to_status"],
)

order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total rejected order transitions",
    ["reason"],  # invalid_transition, precondition_failed
)

# Lock metrics
order_lock_operations_total = Counter(
    "order_lock_operations_total",
    "Total order lock operations",
    ["operation", "status"],  # acquire/release/force_release, acquired/renewed/conflict/...
)

order_lock_hold_seconds = Histogram(
    "order_lock_hold_seconds",
    "How long order locks were held before release",
    buckets=(0.01, 0.05, 0.1, 0.5, 1.0, 5.0, 30.0, 300.0),
)

# Notification metrics
notifications_enqueued_total = Counter(
    "notifications_enqueued_total",
    "Total notification enqueue calls",
    ["event_type", "result"],  # created, deduplicated
)

notifications_delivered_total = Counter(
    "notifications_delivered_total",
    "Total notification delivery outcomes",
    ["status"],  # sent, retry, failed
)

notification_queue_depth = Gauge(
    "notification_queue_depth",
    "Number of queued notification events",
)

notification_stale_queued = Gauge(
    "notification_stale_queued",
    "Queued notification events older than the staleness threshold",
)

# Reconciliation / health metrics
reconciliation_orders_processed_total = Counter(
    "reconciliation_orders_processed_total",
    "Total orders examined by reconciliation",
)

reconciliation_orders_updated_total = Counter(
    "reconciliation_orders_updated_total",
    "Total orders healed by reconciliation",
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation batch duration in seconds",
    buckets=(0.1, 0.5, 1.0, 5.0, 10.0, 30.0, 60.0),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation run",
)

inconsistent_orders = Gauge(
    "inconsistent_orders",
    "Orders with a successful ledger row but payment_status != paid",
)

unprocessed_transactions = Gauge(
    "unprocessed_transactions",
    "Successful ledger rows with no processed_at",
)

# Security metrics
security_incidents_total = Counter(
    "security_incidents_total",
    "Total security incidents recorded",
    ["incident_type", "severity"],
)

# Webhook metrics
webhook_events_received_total = Counter(
    "webhook_events_received_total",
    "Total webhook events received",
    ["event_type"],
)

webhook_events_processed_total = Counter(
    "webhook_events_processed_total",
    "Total webhook events processed",
    ["event_type", "status"],  # success, failed, ignored, rejected
)

webhook_processing_duration_seconds = Histogram(
    "webhook_processing_duration_seconds",
    "Webhook processing duration in seconds",
    ["event_type"],
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_verification(outcome: str, duration_seconds: float) -> None:
        """Record a payment verification outcome."""
        payment_verifications_total.labels(outcome=outcome).inc()
        payment_verification_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_transition(from_status: str, to_status: str) -> None:
        """Record an applied order transition."""
        order_transitions_total.labels(from_status=from_status, to_status=to_status).inc()

    @staticmethod
    def record_transition_rejected(reason: str) -> None:
        """Record a rejected order transition."""
        order_transitions_rejected_total.labels(reason=reason).inc()

    @staticmethod
    def record_lock_operation(operation: str, status: str, held_seconds: float = 0) -> None:
        """Record an order lock operation."""
        order_lock_operations_total.labels(operation=operation, status=status).inc()
        if held_seconds > 0:
            order_lock_hold_seconds.observe(held_seconds)

    @staticmethod
    def record_notification_enqueued(event_type: str, result: str) -> None:
        """Record an enqueue call."""
        notifications_enqueued_total.labels(event_type=event_type, result=result).inc()

    @staticmethod
    def record_notification_delivery(status: str) -> None:
        """Record a delivery outcome."""
        notifications_delivered_total.labels(status=status).inc()

    @staticmethod
    def set_queue_depth(depth: int, stale: int) -> None:
        """Set notification queue gauges."""
        notification_queue_depth.set(depth)
        notification_stale_queued.set(stale)

    @staticmethod
    def record_reconciliation(processed: int, updated: int, duration_seconds: float) -> None:
        """Record a reconciliation batch."""
        reconciliation_orders_processed_total.inc(processed)
        reconciliation_orders_updated_total.inc(updated)
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())

    @staticmethod
    def set_consistency_gauges(inconsistent: int, unprocessed: int) -> None:
        """Set health snapshot gauges."""
        inconsistent_orders.set(inconsistent)
        unprocessed_transactions.set(unprocessed)

    @staticmethod
    def record_security_incident(incident_type: str, severity: str) -> None:
        """Record a persisted security incident."""
        security_incidents_total.labels(incident_type=incident_type, severity=severity).inc()

    @staticmethod
    def record_webhook_event(event_type: str, status: str, duration_seconds: float) -> None:
        """Record webhook event processing."""
        webhook_events_received_total.labels(event_type=event_type).inc()
        webhook_events_processed_total.labels(event_type=event_type, status=status).inc()
        webhook_processing_duration_seconds.labels(event_type=event_type).observe(
            duration_seconds
        )


# Export singleton instance
metrics = MetricsCollector()
