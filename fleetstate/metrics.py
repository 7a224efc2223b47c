"""Prometheus metrics for the fleet datastore.

- Result ingestion (rows inserted, rows dropped at the per-query cap)
- Label membership reconciliation (rows upserted/deleted)
- Transaction retries and failures per logical operation
- Orphan membership sweep
- Background monitor restarts

Rows dropped at the cap are not errors; this counter is the only signal
that a query report is full.
"""
from __future__ import annotations

from prometheus_client import (
    CONTENT_TYPE_LATEST,
    REGISTRY,
    Counter,
    generate_latest,
)

# --- Query result ingestion ---

query_result_rows_inserted = Counter(
    "fleetstate_query_result_rows_inserted_total",
    "Query result rows written",
    ["operation"],
)

query_result_rows_dropped = Counter(
    "fleetstate_query_result_rows_dropped_total",
    "Query result rows discarded because the query report was full",
    ["operation"],
)

# --- Label membership ---

label_membership_changes = Counter(
    "fleetstate_label_membership_changes_total",
    "Label membership rows touched by reconciliation",
    ["change"],  # upserted, deleted
)

orphan_memberships_removed = Counter(
    "fleetstate_orphan_label_memberships_removed_total",
    "Label membership rows removed because their label or host is gone",
)

# --- Transactions ---

transaction_retries = Counter(
    "fleetstate_transaction_retries_total",
    "Transactions re-run after a deadlock or serialization failure",
    ["operation"],
)

transaction_failures = Counter(
    "fleetstate_transaction_failures_total",
    "Transactions that gave up and raised to the caller",
    ["operation"],
)

# --- Background monitors ---

monitor_restarts = Counter(
    "fleetstate_monitor_restarts_total",
    "Background monitor crashes caught by the supervisor",
    ["monitor"],
)


def record_rows_inserted(operation: str, count: int) -> None:
    if count:
        query_result_rows_inserted.labels(operation=operation).inc(count)


def record_rows_dropped(operation: str, count: int) -> None:
    if count:
        query_result_rows_dropped.labels(operation=operation).inc(count)


def record_membership_changes(upserted: int, deleted: int) -> None:
    if upserted:
        label_membership_changes.labels(change="upserted").inc(upserted)
    if deleted:
        label_membership_changes.labels(change="deleted").inc(deleted)


def record_transaction_retry(operation: str) -> None:
    transaction_retries.labels(operation=operation).inc()


def record_transaction_failure(operation: str) -> None:
    transaction_failures.labels(operation=operation).inc()


def record_monitor_restart(monitor: str) -> None:
    monitor_restarts.labels(monitor=monitor).inc()


def get_metrics() -> tuple[bytes, str]:
    """Return (exposition payload, content type) for a /metrics response."""
    return generate_latest(REGISTRY), CONTENT_TYPE_LATEST
