"""
Prometheus metrics for payment reconciliation monitoring.

Tracks:
- API requests by operation and outcome
- Provider calls, latency and circuit breaker state
- Webhook callbacks by outcome
- Rate limit rejections
- Terminal transitions and side effect dispatches
- Receipt delivery and outbox depth
"""
from prometheus_client import Counter, Gauge, Histogram

# API metrics
api_requests_total = Counter(
    "payments_api_requests_total",
    "Total payment API requests",
    ["operation", "outcome"],
)

# Provider metrics
provider_requests_total = Counter(
    "payments_provider_requests_total",
    "Total payment provider API requests",
    ["operation", "outcome"],  # operation: initiate_checkout, query_status
)

provider_request_duration_seconds = Histogram(
    "payments_provider_request_duration_seconds",
    "Payment provider call duration in seconds",
    ["operation"],
    buckets=(0.1, 0.25, 0.5, 0.75, 1.0, 2.5, 5.0, 7.5, 10.0, 15.0),
)

provider_circuit_breaker_state = Gauge(
    "payments_provider_circuit_breaker_state",
    "Provider circuit breaker state (0=closed, 1=open, 2=half_open)",
)

# Webhook metrics
webhook_callbacks_total = Counter(
    "payments_webhook_callbacks_total",
    "Total provider callbacks received",
    ["outcome"],  # completed, pending, failed, not_found, rejected, error
)

webhook_processing_duration_seconds = Histogram(
    "payments_webhook_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Rate limiting
rate_limit_rejections_total = Counter(
    "payments_rate_limit_rejections_total",
    "Requests rejected by the rate limiter",
    ["scope"],
)

# Lifecycle metrics
payment_transitions_total = Counter(
    "payments_transitions_total",
    "Terminal transitions applied to the ledger",
    ["status", "source"],
)

transition_races_lost_total = Counter(
    "payments_transition_races_lost_total",
    "Conditional updates that found the payment already terminal",
)

side_effect_dispatches_total = Counter(
    "payments_side_effect_dispatches_total",
    "Side effect dispatches on the completed edge",
    ["effect"],
)

# Receipt / outbox metrics
receipt_deliveries_total = Counter(
    "payments_receipt_deliveries_total",
    "Receipt email delivery attempts",
    ["outcome"],  # sent, skipped, failed, abandoned
)

outbox_queue_depth = Gauge(
    "payments_outbox_queue_depth",
    "Number of undelivered events in the outbox",
)

outbox_processing_duration_seconds = Histogram(
    "payments_outbox_processing_duration_seconds",
    "Outbox batch processing duration in seconds",
    buckets=(0.1, 0.5, 1.0, 2.5, 5.0, 10.0),
)

# Sweep metrics
abandoned_sweep_last_run_timestamp = Gauge(
    "payments_abandoned_sweep_last_run_timestamp",
    "Timestamp of the last pending payment sweep",
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_api_request(operation: str, outcome: str) -> None:
        """Record an API request."""
        api_requests_total.labels(operation=operation, outcome=outcome).inc()

    @staticmethod
    def record_provider_call(operation: str, outcome: str, duration_seconds: float) -> None:
        """Record a provider API call."""
        provider_requests_total.labels(operation=operation, outcome=outcome).inc()
        provider_request_duration_seconds.labels(operation=operation).observe(duration_seconds)

    @staticmethod
    def set_circuit_breaker_state(state: str) -> None:
        """Set circuit breaker state."""
        state_map = {"closed": 0, "open": 1, "half_open": 2}
        provider_circuit_breaker_state.set(state_map.get(state, 0))

    @staticmethod
    def record_webhook_callback(outcome: str, duration_seconds: float) -> None:
        """Record callback processing."""
        webhook_callbacks_total.labels(outcome=outcome).inc()
        webhook_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_rate_limited(scope: str) -> None:
        rate_limit_rejections_total.labels(scope=scope).inc()

    @staticmethod
    def record_transition(status: str, source: str) -> None:
        payment_transitions_total.labels(status=status, source=source).inc()

    @staticmethod
    def record_transition_race_lost() -> None:
        transition_races_lost_total.inc()

    @staticmethod
    def record_side_effect(effect: str) -> None:
        side_effect_dispatches_total.labels(effect=effect).inc()

    @staticmethod
    def record_receipt_delivery(outcome: str) -> None:
        receipt_deliveries_total.labels(outcome=outcome).inc()

    @staticmethod
    def set_outbox_queue_depth(depth: int) -> None:
        """Set outbox queue depth."""
        outbox_queue_depth.set(depth)

    @staticmethod
    def record_outbox_batch(duration_seconds: float) -> None:
        outbox_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_sweep_run(timestamp: float) -> None:
        abandoned_sweep_last_run_timestamp.set(timestamp)


# Export singleton instance
metrics = MetricsCollector()
