"""
Prometheus metrics: order transitions (API + worker), payment reconciliation, webhook intake.
"""
from prometheus_client import Counter, Gauge, generate_latest

# Transition authority
order_transitions_total = Counter(
    "order_transitions_total",
    "Total order status transitions applied",
    ["from_status", "to_status"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected",
    ["reason"],
)
orders_created_total = Counter(
    "orders_created_total",
    "Total orders created",
    ["payment_method"],
)

# Reconciliation
payment_reconciliations_total = Counter(
    "payment_reconciliations_total",
    "Total reconcile calls that reached an outcome",
    ["outcome"],
)
payment_provider_errors_total = Counter(
    "payment_provider_errors_total",
    "Total provider calls that timed out or failed",
    ["operation"],
)
payment_polls_exhausted_total = Counter(
    "payment_polls_exhausted_total",
    "Total polling loops that hit the attempt cap with the payment still pending",
)
payment_watchers_active = Gauge(
    "payment_watchers_active",
    "Polling loops currently running in this process",
)

# Webhook intake
webhook_notifications_total = Counter(
    "webhook_notifications_total",
    "Total provider notifications received",
    ["result"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
