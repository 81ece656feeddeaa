"""
Prometheus metrics collection for the Public Works Ledger.

Provides observability into status transitions, ledger writes, alert
issuance and notification delivery.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Histogram, start_http_server

# ============================================================================
# Lifecycle Metrics
# ============================================================================

status_transitions_total = Counter(
    "pwl_status_transitions_total",
    "Total number of accepted project status transitions",
    ["from_status", "to_status"],
)

status_transitions_rejected_total = Counter(
    "pwl_status_transitions_rejected_total",
    "Total number of rejected project status transitions",
    ["reason"],  # reason: invalid, conflict, reopen_limit
)

# ============================================================================
# Ledger Metrics
# ============================================================================

expenses_mutated_total = Counter(
    "pwl_expenses_mutated_total",
    "Total number of expense writes",
    ["operation"],  # operation: record, update, delete
)

line_recomputations_total = Counter(
    "pwl_line_recomputations_total",
    "Total number of budget line executed-amount recomputations",
)

budget_versions_created_total = Counter(
    "pwl_budget_versions_created_total",
    "Total number of budget versions created",
)

# ============================================================================
# Alert Metrics
# ============================================================================

alerts_issued_total = Counter(
    "pwl_alerts_issued_total",
    "Total number of alerts created",
    ["alert_type", "severity"],
)

alerts_suppressed_total = Counter(
    "pwl_alerts_suppressed_total",
    "Total number of duplicate alerts suppressed by an existing ACTIVE alert",
    ["alert_type"],
)

alert_evaluation_failures_total = Counter(
    "pwl_alert_evaluation_failures_total",
    "Total number of alert evaluations that failed after a committed write",
)

# ============================================================================
# Notification Metrics
# ============================================================================

notifications_sent_total = Counter(
    "pwl_notifications_sent_total",
    "Total number of notifications delivered",
    ["kind"],  # kind: status_change, alert
)

notifications_failed_total = Counter(
    "pwl_notifications_failed_total",
    "Total number of notifications that failed after all retries",
    ["kind"],
)

# ============================================================================
# Operation Timing
# ============================================================================

operation_duration_seconds = Histogram(
    "pwl_operation_duration_seconds",
    "Duration of ledger operations in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0),
)

operations_total = Counter(
    "pwl_operations_total",
    "Total number of ledger operations",
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
        operation: Operation name used as the metric label
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
