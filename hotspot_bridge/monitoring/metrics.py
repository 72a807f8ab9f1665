"""
Prometheus metrics for the payment-to-access pipeline.

Tracks:
- STK push requests by outcome
- Provider call duration
- Callbacks by outcome (success, failed, duplicate, unknown)
- Pull queue depth and polls
- Voucher redemptions
"""
from prometheus_client import Counter, Gauge, Histogram

# STK push metrics
stk_push_requests_total = Counter(
    "stk_push_requests_total",
    "Total STK push initiation requests",
    ["status"],  # accepted, invalid, gateway_unavailable
)

gateway_request_duration_seconds = Histogram(
    "gateway_request_duration_seconds",
    "Payment provider call duration in seconds",
    buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0),
)

# Callback metrics
callbacks_total = Counter(
    "callbacks_total",
    "Total payment callbacks received",
    ["outcome"],
)

callback_processing_duration_seconds = Histogram(
    "callback_processing_duration_seconds",
    "Callback processing duration in seconds",
    buckets=(0.005, 0.01, 0.05, 0.1, 0.25, 0.5, 1.0),
)

# Pull queue metrics
pull_queue_depth = Gauge(
    "pull_queue_depth",
    "Number of approved customers waiting for the access controller",
)

pull_queue_polls_total = Counter(
    "pull_queue_polls_total",
    "Total access controller polls",
    ["result"],  # entry, empty, error
)

# Voucher metrics
voucher_redemptions_total = Counter(
    "voucher_redemptions_total",
    "Total voucher redemption attempts",
    ["status"],  # redeemed, rejected, released
)


class MetricsCollector:
    """Helper class for collecting metrics."""

    @staticmethod
    def record_stk_push(status: str) -> None:
        stk_push_requests_total.labels(status=status).inc()

    @staticmethod
    def record_gateway_duration(duration_seconds: float) -> None:
        gateway_request_duration_seconds.observe(duration_seconds)

    @staticmethod
    def record_callback(outcome: str, duration_seconds: float) -> None:
        callbacks_total.labels(outcome=outcome).inc()
        callback_processing_duration_seconds.observe(duration_seconds)

    @staticmethod
    def set_queue_depth(depth: int) -> None:
        pull_queue_depth.set(depth)

    @staticmethod
    def record_poll(result: str) -> None:
        pull_queue_polls_total.labels(result=result).inc()

    @staticmethod
    def record_voucher_redemption(status: str) -> None:
        voucher_redemptions_total.labels(status=status).inc()


# Export singleton instance
metrics = MetricsCollector()
