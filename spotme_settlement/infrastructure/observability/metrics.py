"""Prometheus metrics for checkout modes, settlements, webhooks and gateway health"""

from decimal import Decimal

from prometheus_client import Counter, Histogram

# Checkout metrics
checkout_counter = Counter(
    "spotme_checkout_total",
    "Checkouts started",
    ["mode", "outcome"],  # gateway|direct, created|replayed|failed
)

contribution_amount_histogram = Histogram(
    "spotme_contribution_amount_dollars",
    "Settled contribution amounts",
    buckets=[1, 5, 10, 25, 50, 100, 250, 1000, 10000],
)

# Settlement metrics
settlement_counter = Counter(
    "spotme_settlement_total",
    "Settlement attempts",
    ["mode", "outcome"],  # outcome: applied | duplicate
)

ledger_clamp_counter = Counter(
    "spotme_ledger_clamp_total",
    "Contributions clamped at the need goal",
)

ledger_conflict_counter = Counter(
    "spotme_ledger_conflict_total",
    "Optimistic concurrency conflicts on need updates",
)

# Webhook metrics
webhook_event_counter = Counter(
    "spotme_webhook_events_total",
    "Inbound gateway events",
    ["event_type", "outcome"],
)

# Retry metrics
payment_retry_counter = Counter(
    "spotme_payment_retries_total",
    "Payment retry attempts",
    ["outcome"],  # created | direct | rejected | transient | cap_exceeded
)

# Gateway metrics
gateway_latency_histogram = Histogram(
    "spotme_gateway_latency_seconds",
    "Payment gateway response time",
    ["operation"],
    buckets=[0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0],
)

gateway_failures_counter = Counter(
    "spotme_gateway_failures_total",
    "Failed payment gateway calls",
    ["kind"],
)

# Service health
request_duration_histogram = Histogram(
    "http_request_duration_seconds",
    "HTTP request latency",
    ["method", "endpoint", "status"],
)


def record_settlement(mode: str, applied: bool, amount: Decimal) -> None:
    """Record a settlement outcome; only applied settlements count toward amounts"""
    settlement_counter.labels(mode=mode, outcome="applied" if applied else "duplicate").inc()
    if applied:
        contribution_amount_histogram.observe(float(amount))
