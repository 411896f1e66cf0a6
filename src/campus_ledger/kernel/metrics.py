"""
Prometheus metrics collection for Campus Ledger.

Provides observability into identifier allocation, ledger mutations,
scholarship payouts and enrollment transfers.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram, start_http_server

# ============================================================================
# Identifier Metrics
# ============================================================================

identifiers_allocated_total = Counter(
    "campus_identifiers_allocated_total",
    "Total number of sequential identifiers issued",
    ["namespace"],
)

degraded_identifiers_total = Counter(
    "campus_degraded_identifiers_total",
    "Total number of timestamp-derived fallback identifiers issued",
    ["namespace"],
)

# ============================================================================
# Store Metrics
# ============================================================================

write_conflicts_total = Counter(
    "campus_write_conflicts_total",
    "Total number of optimistic write precondition failures",
    ["operation", "collection"],
)

documents_committed_total = Counter(
    "campus_documents_committed_total",
    "Total number of documents written by committed transactions",
    ["collection"],
)

# ============================================================================
# Ledger Metrics
# ============================================================================

ledger_transactions_total = Counter(
    "campus_ledger_transactions_total",
    "Total number of ledger transactions applied",
    ["type"],
)

duplicate_events_total = Counter(
    "campus_duplicate_events_total",
    "Total number of duplicate source events absorbed",
    ["collection"],
)

source_events_total = Counter(
    "campus_source_events_total",
    "Total number of source events recorded by outcome",
    ["status"],
)

budget_alerts_total = Counter(
    "campus_budget_alerts_total",
    "Total number of budget alerts raised",
    ["alert_type"],
)

budget_utilization_ratio = Gauge(
    "campus_budget_utilization_ratio",
    "Budget utilization ratio (spent/allocated)",
    ["budget_id"],
)

# ============================================================================
# Scholarship, Admissions & Payroll Metrics
# ============================================================================

disbursements_total = Counter(
    "campus_disbursements_total",
    "Total number of disbursement processing attempts by outcome",
    ["status"],
)

enrollments_total = Counter(
    "campus_enrollments_total",
    "Total number of enrollment transfers by outcome",
    ["outcome"],  # created, existing, invalid, failed
)

payroll_batches_processed_total = Counter(
    "campus_payroll_batches_processed_total",
    "Total number of payroll batches paid",
    ["status"],
)

notifications_dispatched_total = Counter(
    "campus_notifications_dispatched_total",
    "Total number of change notifications handled by the ingestion watcher",
    ["collection", "status"],
)

# ============================================================================
# Operation Timing
# ============================================================================

operation_duration_seconds = Histogram(
    "campus_operation_duration_seconds",
    "Duration of public operations in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

operations_total = Counter(
    "campus_operations_total",
    "Total number of public operations processed",
    ["operation", "status"],  # status: success, failure
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_operation(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator to track operation duration and outcome.

    Args:
        operation: Name of the operation being tracked

    Returns:
        Decorated function that tracks duration
    """

    def decorator(func: Callable[P, R]) -> Callable[P, R]:
        @wraps(func)
        def wrapper(*args: P.args, **kwargs: P.kwargs) -> R:
            start = time.perf_counter()
            status = "success"
            try:
                return func(*args, **kwargs)
            except Exception:
                status = "failure"
                raise
            finally:
                duration = time.perf_counter() - start
                operation_duration_seconds.labels(operation=operation).observe(duration)
                operations_total.labels(operation=operation, status=status).inc()

        return wrapper

    return decorator


def start_metrics_server(port: int = 9090) -> None:
    """
    Start Prometheus metrics HTTP server.

    Args:
        port: Port to listen on (default: 9090)
    """
    start_http_server(port)


def update_budget_utilization(budget_id: str, utilization: float) -> None:
    """Publish the latest utilization ratio of a budget account"""
    budget_utilization_ratio.labels(budget_id=budget_id).set(utilization)
