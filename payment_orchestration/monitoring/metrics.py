"""
Prometheus metrics for payment orchestration monitoring.

Tracks:
- Payment requests by provider, payment type and outcome
- Provider call duration and errors
- Idempotent replays
- Refunds and captures
- Webhook ingestion
- Reconciliation sweeps
"""
import time

from prometheus_client import Counter, Gauge, Histogram

# Payment metrics
payment_requests_total = Counter(
    "payment_requests_total",
    "Total number of payment requests",
    # outcome: accepted, rejected, error, replay, precondition_failed
    ["provider", "payment_type", "outcome"],
)

payment_processing_duration_seconds = Histogram(
    "payment_processing_duration_seconds",
    "End-to-end payment processing duration in seconds",
    ["payment_type"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

idempotent_replays_total = Counter(
    "idempotent_replays_total",
    "Requests answered from an existing transaction",
    ["source"],  # lookup, race
)

# Provider metrics
provider_requests_total = Counter(
    "provider_requests_total",
    "Total provider API calls",
    ["provider", "operation", "status"],  # ok, timeout, error
)

provider_call_duration_seconds = Histogram(
    "provider_call_duration_seconds",
    "Provider API call duration in seconds",
    ["provider", "operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 30.0),
)

# Refund / capture metrics
refunds_total = Counter(
    "refunds_total",
    "Total refund attempts",
    ["provider", "outcome"],
)

captures_total = Counter(
    "captures_total",
    "Total capture attempts",
    ["provider", "outcome"],
)

# Webhook metrics
webhook_events_total = Counter(
    "webhook_events_total",
    "Total webhook events received",
    ["provider", "outcome"],  # success, duplicate, no_handler, invalid_signature, error
)

# Reconciliation metrics
reconciliation_resolved_total = Counter(
    "reconciliation_resolved_total",
    "Transactions moved to a final status by reconciliation",
    ["status"],
)

reconciliation_duration_seconds = Histogram(
    "reconciliation_duration_seconds",
    "Reconciliation sweep duration in seconds",
    buckets=(1, 5, 10, 30, 60, 120, 300),
)

reconciliation_last_run_timestamp = Gauge(
    "reconciliation_last_run_timestamp",
    "Timestamp of last reconciliation sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_payment_request(provider: str, payment_type: str, outcome: str) -> None:
        """Record a payment request outcome."""
        payment_requests_total.labels(
            provider=provider, payment_type=payment_type, outcome=outcome
        ).inc()

    @staticmethod
    def record_payment_duration(payment_type: str, duration_seconds: float) -> None:
        """Record payment processing duration."""
        payment_processing_duration_seconds.labels(payment_type=payment_type).observe(
            duration_seconds
        )

    @staticmethod
    def record_idempotent_replay(source: str) -> None:
        """Record a request answered from an existing transaction."""
        idempotent_replays_total.labels(source=source).inc()

    @staticmethod
    def record_provider_call(
        provider: str, operation: str, status: str, duration_seconds: float
    ) -> None:
        """Record a provider API call."""
        provider_requests_total.labels(
            provider=provider, operation=operation, status=status
        ).inc()
        provider_call_duration_seconds.labels(provider=provider, operation=operation).observe(
            duration_seconds
        )

    @staticmethod
    def record_refund(provider: str, outcome: str) -> None:
        refunds_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_capture(provider: str, outcome: str) -> None:
        captures_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_webhook_event(provider: str, outcome: str) -> None:
        """Record webhook event ingestion."""
        webhook_events_total.labels(provider=provider, outcome=outcome).inc()

    @staticmethod
    def record_reconciliation_resolved(status: str) -> None:
        reconciliation_resolved_total.labels(status=status).inc()

    @staticmethod
    def record_reconciliation_run(duration_seconds: float) -> None:
        """Record a reconciliation sweep."""
        reconciliation_duration_seconds.observe(duration_seconds)
        reconciliation_last_run_timestamp.set(time.time())


# Export singleton instance
metrics = MetricsCollector()
