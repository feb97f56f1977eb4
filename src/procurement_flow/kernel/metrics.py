"""
Prometheus metrics for the procurement orchestration core.

Counts what the engine does (tasks spawned, joins fired, requests closed)
so a stalled join or a pile of unassignable tasks is visible from outside.
"""

import time
from collections.abc import Callable
from functools import wraps
from typing import ParamSpec, TypeVar

from prometheus_client import Counter, Gauge, Histogram

# ============================================================================
# Journal Metrics
# ============================================================================

events_appended_total = Counter(
    "procurement_events_appended_total",
    "Total number of events appended to the process journal",
    ["stream_type", "event_type"],
)

stream_version_conflicts_total = Counter(
    "procurement_stream_version_conflicts_total",
    "Total number of optimistic locking version conflicts",
    ["stream_type"],
)

# ============================================================================
# Task Metrics
# ============================================================================

tasks_created_total = Counter(
    "procurement_tasks_created_total",
    "Total number of human tasks enqueued",
    ["activity"],
)

tasks_completed_total = Counter(
    "procurement_tasks_completed_total",
    "Total number of human tasks completed",
    ["activity"],
)

tasks_unassignable_total = Counter(
    "procurement_tasks_unassignable_total",
    "Tasks created without any resolved candidate",
    ["activity"],
)

pending_tasks = Gauge(
    "procurement_pending_tasks",
    "Human tasks currently waiting for an actor",
    ["activity"],
)

# ============================================================================
# Orchestration Metrics
# ============================================================================

fan_out_size = Histogram(
    "procurement_fan_out_size",
    "Number of parallel instances spawned per fan-out",
    ["activity"],
    buckets=(1, 2, 3, 5, 10, 20, 50, 100),
)

fan_out_joins_total = Counter(
    "procurement_fan_out_joins_total",
    "Total number of join barriers released",
    ["activity"],
)

requests_finished_total = Counter(
    "procurement_requests_finished_total",
    "Requests that reached a terminal state",
    ["outcome"],  # Completed, Aborted
)

operation_duration_seconds = Histogram(
    "procurement_operation_duration_seconds",
    "Duration of engine operations in seconds",
    ["operation"],
    buckets=(0.005, 0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.5),
)

operations_total = Counter(
    "procurement_operations_total",
    "Engine operations by outcome",
    ["operation", "status"],  # status: success, failure
)

# ============================================================================
# Helper Functions
# ============================================================================

P = ParamSpec("P")
R = TypeVar("R")


def track_operation_duration(operation: str) -> Callable[[Callable[P, R]], Callable[P, R]]:
    """
    Decorator recording duration and outcome of an engine operation.

    Args:
        operation: Operation label (e.g. "start_request", "execute_task")
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
                operation_duration_seconds.labels(operation=operation).observe(
                    time.perf_counter() - start
                )
                operations_total.labels(operation=operation, status=status).inc()

        return wrapper

    return decorator
