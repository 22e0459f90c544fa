"""
Prometheus metrics: orders placed, lifecycle transitions applied/rejected, version conflicts, payments.
"""
from prometheus_client import Counter, generate_latest

orders_placed_total = Counter(
    "orders_placed_total",
    "Total orders placed and submitted for verification",
    ["payment_method"],
)

order_transitions_total = Counter(
    "order_transitions_total",
    "Total order lifecycle transitions applied",
    ["action"],
)
order_transitions_rejected_total = Counter(
    "order_transitions_rejected_total",
    "Total transition requests rejected as invalid for the order's current status",
    ["current_status", "action"],
)
order_version_conflicts_total = Counter(
    "order_version_conflicts_total",
    "Total writes refused because the order changed since it was read",
)

payments_recorded_total = Counter(
    "payments_recorded_total",
    "Total payment records stored from the payment processor",
    ["type", "status"],
)


def get_metrics_content_type():
    return "text/plain; charset=utf-8; version=0.0.4"


def get_metrics_bytes():
    return generate_latest()
