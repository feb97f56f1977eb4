"""
Test infrastructure components: logging, metrics, retry.

These tests verify the production hardening infrastructure works correctly.
"""

import sqlite3
import threading
from datetime import datetime, timezone

import pytest
import structlog

from procurement_flow.engine import ProcurementEngine
from procurement_flow.kernel.errors import StreamVersionConflict
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.logging import (
    LogOperation,
    configure_logging,
    get_correlation_id,
    get_logger,
    redact_context,
    set_correlation_id,
)
from procurement_flow.kernel.metrics import (
    events_appended_total,
    fan_out_joins_total,
    fan_out_size,
    operations_total,
    pending_tasks,
    requests_finished_total,
    stream_version_conflicts_total,
    tasks_created_total,
    track_operation_duration,
)
from procurement_flow.kernel.retry import retry_on_sqlite_lock

QUOTATION = "Complete quotation"
REVIEW = "Review quotations & select supplier"


def make_event(event_id: str, version: int, command_id: str = "cmd-1") -> Event:
    return Event(
        event_id=event_id,
        stream_id="case-1",
        stream_type="ProcessInstance",
        version=version,
        command_id=command_id,
        event_type="TaskCreated",
        occurred_at=datetime(2025, 1, 15, 12, 0, tzinfo=timezone.utc),
        actor_id="helen.kelly",
        payload={"task_id": "task-1"},
    )


class TestLoggingFramework:
    """Test structured logging framework."""

    def test_configure_logging_console(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        assert get_logger(__name__) is not None

    def test_configure_logging_json(self) -> None:
        configure_logging(json_output=True, log_level="DEBUG")
        assert get_logger(__name__) is not None

    def test_correlation_id(self) -> None:
        cid = get_correlation_id()
        assert len(cid) > 0
        assert get_correlation_id() == cid

        set_correlation_id("request-start-123")
        assert get_correlation_id() == "request-start-123"

    def test_identities_and_prices_are_redacted(self) -> None:
        redacted = redact_context(
            {"actor": "giovanna.almeida", "price": "500", "task_id": "task-1"}
        )

        assert redacted == {
            "actor": "***REDACTED***",
            "price": "***REDACTED***",
            "task_id": "task-1",
        }

    def test_operation_scope_binds_safe_context(self) -> None:
        logger = get_logger(__name__)

        with LogOperation(logger, "execute_task", task_id="task-1", actor="helen.kelly"):
            bound = structlog.contextvars.get_contextvars()
            outer_cid = get_correlation_id()
            with LogOperation(logger, "nested"):
                assert get_correlation_id() == outer_cid

        assert bound["task_id"] == "task-1"
        assert bound["operation"] == "execute_task"
        assert "actor" not in bound
        assert "task_id" not in structlog.contextvars.get_contextvars()

    def test_each_top_level_operation_gets_its_own_correlation_id(self) -> None:
        logger = get_logger(__name__)
        seen = []

        def call() -> None:
            with LogOperation(logger, "start_request"):
                seen.append(get_correlation_id())

        # Threads start without a correlation id, like separate external calls
        for _ in range(2):
            worker = threading.Thread(target=call)
            worker.start()
            worker.join()

        assert len(set(seen)) == 2

    def test_log_operation_reraises(self) -> None:
        configure_logging(json_output=False, log_level="INFO")
        logger = get_logger(__name__)

        with LogOperation(logger, "noop", task_id="task-1"):
            pass
        with pytest.raises(ValueError):
            with LogOperation(logger, "failing_operation", actor="helen.kelly"):
                raise ValueError("Test error")


class TestMetrics:
    """Test Prometheus metrics collection."""

    def test_events_appended_metric(self, event_store: SQLiteEventStore) -> None:
        counter = events_appended_total.labels(
            stream_type="ProcessInstance", event_type="TaskCreated"
        )
        before = counter._value.get()

        event_store.append("case-1", 0, [make_event("evt-1", 1)])

        assert counter._value.get() == before + 1

    def test_version_conflict_metric(self, event_store: SQLiteEventStore) -> None:
        conflicts = stream_version_conflicts_total.labels(stream_type="ProcessInstance")
        event_store.append("case-1", 0, [make_event("evt-1", 1)])
        before = conflicts._value.get()

        with pytest.raises(StreamVersionConflict):
            event_store.append("case-1", 0, [make_event("evt-2", 1, command_id="cmd-2")])

        assert conflicts._value.get() == before + 1

    def test_request_lifecycle_metrics(
        self, engine: ProcurementEngine, supplier_ids: dict[str, int]
    ) -> None:
        created = tasks_created_total.labels(activity=QUOTATION)
        joins = fan_out_joins_total.labels(activity=QUOTATION)
        completed = requests_finished_total.labels(outcome="Completed")
        sizes = fan_out_size.labels(activity=QUOTATION)
        created_before = created._value.get()
        joins_before = joins._value.get()
        completed_before = completed._value.get()
        sizes_before = sizes._sum.get()

        acme = supplier_ids["Acme Inc."]
        engine.start_request("helen.kelly", "Laptops", "", [acme, supplier_ids["Duff Co."]])
        assert created._value.get() == created_before + 2
        assert sizes._sum.get() == sizes_before + 2

        for task in engine.list_pending_tasks(QUOTATION):
            engine.execute_task(
                task.task_id, next(iter(task.candidates)), {"hasSupplierAccepted": False}
            )
        assert joins._value.get() == joins_before + 1
        assert pending_tasks.labels(activity=REVIEW)._value.get() >= 1

        review = engine.list_pending_tasks(REVIEW)[0]
        engine.execute_task(review.task_id, "helen.kelly", {"selectedSupplierId": str(acme)})
        assert completed._value.get() == completed_before + 1

    def test_track_operation_duration(self) -> None:
        success = operations_total.labels(operation="demo", status="success")
        failure = operations_total.labels(operation="demo", status="failure")
        success_before = success._value.get()
        failure_before = failure._value.get()

        @track_operation_duration("demo")
        def demo(fail: bool) -> str:
            if fail:
                raise RuntimeError("boom")
            return "ok"

        assert demo(False) == "ok"
        with pytest.raises(RuntimeError):
            demo(True)

        assert success._value.get() == success_before + 1
        assert failure._value.get() == failure_before + 1


class TestRetryLogic:
    """Test retry logic with exponential backoff."""

    def test_retry_decorator(self) -> None:
        call_count = 0

        @retry_on_sqlite_lock(max_attempts=3, min_wait_ms=1, max_wait_ms=5)
        def flaky() -> str:
            nonlocal call_count
            call_count += 1
            if call_count < 2:
                raise sqlite3.OperationalError("database is locked")
            return "success"

        assert flaky() == "success"
        assert call_count == 2

    def test_retry_gives_up(self) -> None:
        call_count = 0

        @retry_on_sqlite_lock(max_attempts=2, min_wait_ms=1, max_wait_ms=5)
        def always_locked() -> None:
            nonlocal call_count
            call_count += 1
            raise sqlite3.OperationalError("database is locked")

        with pytest.raises(sqlite3.OperationalError):
            always_locked()
        assert call_count == 2

    def test_other_operational_errors_are_not_retried(self) -> None:
        call_count = 0

        @retry_on_sqlite_lock(max_attempts=3, min_wait_ms=1, max_wait_ms=5)
        def broken() -> None:
            nonlocal call_count
            call_count += 1
            raise sqlite3.OperationalError("no such table: business_objects")

        with pytest.raises(sqlite3.OperationalError):
            broken()
        assert call_count == 1
