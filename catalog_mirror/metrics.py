"""Prometheus metrics for the catalog mirror."""

import time

from prometheus_client import Counter, Gauge, Histogram, Info

# Application info
app_info = Info("catalog_mirror", "Catalog mirror application info")
app_info.info({"version": "0.1.0", "name": "catalog-mirror"})

# Sync metrics
sync_runs_total = Counter(
    "catalog_sync_runs_total",
    "Total number of reconciliation cycles",
    ["trigger", "status"],
)

sync_items_total = Counter(
    "catalog_sync_items_total",
    "Mirrored products touched by reconciliation",
    ["action"],
)

sync_duration_seconds = Histogram(
    "catalog_sync_duration_seconds",
    "Time spent in one reconciliation cycle",
    buckets=[0.5, 1.0, 2.0, 5.0, 10.0, 30.0, 60.0, 120.0, 300.0, 600.0],
)

sync_last_success_timestamp = Gauge(
    "catalog_sync_last_success_timestamp",
    "Timestamp of the last successful reconciliation cycle",
)

upstream_fetch_errors_total = Counter(
    "catalog_upstream_fetch_errors_total",
    "Failed upstream catalog page fetches",
    ["error_type"],
)

sync_lock_skipped_total = Counter(
    "catalog_sync_lock_skipped_total",
    "Sync triggers skipped because another cycle held the lock",
    ["trigger", "reason"],
)

# Order metrics
orders_placed_total = Counter(
    "orders_placed_total",
    "Total number of orders placed",
)

orders_cancelled_total = Counter(
    "orders_cancelled_total",
    "Total number of orders cancelled with stock restored",
)

order_rejections_total = Counter(
    "order_rejections_total",
    "Order placements rejected before any write",
    ["reason"],
)


def record_sync_result(trigger: str, result) -> None:
    """Record the outcome of one reconciliation cycle."""
    status = result.state.value
    sync_runs_total.labels(trigger=trigger, status=status).inc()
    sync_duration_seconds.observe(result.duration_seconds)
    if status == "done":
        sync_items_total.labels(action="created").inc(result.created)
        sync_items_total.labels(action="updated").inc(result.updated)
        sync_items_total.labels(action="deleted").inc(result.deleted)
        sync_items_total.labels(action="error").inc(result.errors)
        sync_last_success_timestamp.set(time.time())


def record_upstream_error(error_type: str) -> None:
    """Record a failed upstream fetch."""
    upstream_fetch_errors_total.labels(error_type=error_type).inc()


def record_sync_lock_skipped(trigger: str, reason: str) -> None:
    sync_lock_skipped_total.labels(trigger=trigger, reason=reason).inc()


def record_order_placed() -> None:
    orders_placed_total.inc()


def record_order_cancelled() -> None:
    orders_cancelled_total.inc()


def record_order_rejected(reason: str) -> None:
    order_rejections_total.labels(reason=reason).inc()
