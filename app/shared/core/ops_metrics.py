"""
Operational metrics for webhook ingestion.

Prometheus counters and histograms for delivery outcomes, processing latency,
subscription transitions and best-effort notification failures.
"""

from prometheus_client import Counter, Histogram

WEBHOOK_DELIVERIES_TOTAL = Counter(
    "ledgerline_webhook_deliveries_total",
    "Webhook deliveries by provider and outcome",
    ["provider", "outcome"],
)

WEBHOOK_PROCESSING_SECONDS = Histogram(
    "ledgerline_webhook_processing_seconds",
    "End-to-end webhook processing latency (verification through commit)",
    ["provider"],
    buckets=(0.01, 0.05, 0.1, 0.25, 0.5, 1, 2.5, 5, 10, 30),
)

SUBSCRIPTION_TRANSITIONS_TOTAL = Counter(
    "ledgerline_subscription_transitions_total",
    "Subscription state transitions applied by the engine",
    ["provider", "transition"],
)

NOTIFICATION_FAILURES_TOTAL = Counter(
    "ledgerline_notification_failures_total",
    "Best-effort domain notifications whose listener raised",
    ["event"],
)

SECURITY_CONTEXT_SWITCH_SECONDS = Histogram(
    "ledgerline_security_context_switch_seconds",
    "Latency in seconds to apply an authorization scope to a transaction",
    ["scope"],
    buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1),
)

API_ERRORS_TOTAL = Counter(
    "ledgerline_api_errors_total",
    "API error responses by path, method and status code",
    ["path", "method", "status_code"],
)
