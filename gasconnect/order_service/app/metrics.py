"""Prometheus metrics for the order engine."""

from __future__ import annotations

from typing import Final

from prometheus_client import Counter, Histogram

# Order lifecycle ---------------------------------------------------------------------------
ORDERS_CREATED_TOTAL: Final = Counter(
    "gasconnect_orders_created_total",
    "Orders committed by the orchestrator.",
    labelnames=("order_type",),
)

ORDER_CREATION_FAILURES_TOTAL: Final = Counter(
    "gasconnect_order_creation_failures_total",
    "Order creation attempts that were rolled back.",
    labelnames=("reason",),
)

ORDER_CREATION_LATENCY_SECONDS: Final = Histogram(
    "gasconnect_order_creation_latency_seconds",
    "Time taken to validate, price, reserve and commit an order.",
    buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1, 2, 5),
)

ORDER_TRANSITIONS_TOTAL: Final = Counter(
    "gasconnect_order_transitions_total",
    "Committed order status transitions.",
    labelnames=("to_status",),
)

# Inventory ledger ---------------------------------------------------------------------------
INVENTORY_OPERATIONS_TOTAL: Final = Counter(
    "gasconnect_inventory_operations_total",
    "Inventory ledger mutations by operation.",
    labelnames=("operation",),
)

INVENTORY_REJECTIONS_TOTAL: Final = Counter(
    "gasconnect_inventory_rejections_total",
    "Reservations or decrements refused for lack of stock.",
)

REAPER_RECLAIMED_UNITS_TOTAL: Final = Counter(
    "gasconnect_reaper_reclaimed_units_total",
    "Units returned to stock by the reservation reaper.",
)

# Pricing and events --------------------------------------------------------------------------
PRICING_RESOLUTIONS_TOTAL: Final = Counter(
    "gasconnect_pricing_resolutions_total",
    "Unit prices resolved, by the source that answered.",
    labelnames=("source",),
)

EVENT_PUBLISH_FAILURES_TOTAL: Final = Counter(
    "gasconnect_event_publish_failures_total",
    "Domain events dropped after exhausting publish retries.",
    labelnames=("routing_key",),
)
