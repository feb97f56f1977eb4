"""
Pytest configuration and shared fixtures

Fun fact: The name "conftest" comes from pytest's configuration testing
framework. Files named conftest.py are automatically discovered and their
fixtures are available to all tests in the same directory and subdirectories!
"""

import tempfile
from collections.abc import Callable
from datetime import datetime, timezone
from pathlib import Path
from typing import Iterator

import pytest

from procurement_flow.engine import ProcurementEngine
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.ids import SequentialIdFactory
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.kernel.time import TestTimeProvider
from procurement_flow.store.domain_store import SQLiteDomainStore
from procurement_flow.workflow.fanout import FanOutOrchestrator
from procurement_flow.workflow.tasks import TaskQueue

QUOTATION = "Complete quotation"
REVIEW = "Review quotations & select supplier"


@pytest.fixture
def temp_db() -> Iterator[Path]:
    """Provide a temporary database file that's cleaned up after test"""
    with tempfile.NamedTemporaryFile(suffix=".db", delete=False) as f:
        db_path = Path(f.name)

    yield db_path

    # Cleanup (WAL mode leaves two companion files)
    for path in (db_path, Path(f"{db_path}-wal"), Path(f"{db_path}-shm")):
        if path.exists():
            path.unlink()


@pytest.fixture
def event_store(temp_db: Path) -> SQLiteEventStore:
    """Provide a fresh event store for each test"""
    return SQLiteEventStore(temp_db)


@pytest.fixture
def domain_store(temp_db: Path) -> SQLiteDomainStore:
    """Provide a fresh domain store for each test"""
    return SQLiteDomainStore(temp_db)


@pytest.fixture
def test_time() -> TestTimeProvider:
    """
    Provide a controllable time provider for deterministic tests

    Default time: 2025-01-15 12:00:00 UTC
    """
    return TestTimeProvider(datetime(2025, 1, 15, 12, 0, 0, tzinfo=timezone.utc))


@pytest.fixture
def policy() -> WorkflowPolicy:
    """Provide the default workflow policy"""
    return WorkflowPolicy()


@pytest.fixture
def journal(event_store: SQLiteEventStore, test_time: TestTimeProvider) -> ProcessJournal:
    return ProcessJournal(event_store, test_time, SequentialIdFactory("evt"))


@pytest.fixture
def task_queue(journal: ProcessJournal) -> TaskQueue:
    return TaskQueue(journal)


@pytest.fixture
def orchestrator(task_queue: TaskQueue, journal: ProcessJournal) -> FanOutOrchestrator:
    return FanOutOrchestrator(task_queue, journal, SequentialIdFactory("task"))


# =============================================================================
# Engine Fixtures
# =============================================================================


@pytest.fixture
def make_engine(
    temp_db: Path, test_time: TestTimeProvider
) -> Callable[..., ProcurementEngine]:
    """
    Factory opening an engine on the shared test database

    Calling it twice simulates a restart: the second engine rebuilds from
    whatever the first one persisted.
    """

    def _make(policy: WorkflowPolicy | None = None) -> ProcurementEngine:
        return ProcurementEngine(temp_db, policy=policy, time_provider=test_time)

    return _make


@pytest.fixture
def engine(make_engine: Callable[..., ProcurementEngine]) -> ProcurementEngine:
    """Engine with the sample suppliers, users and account managers loaded"""
    engine = make_engine()
    engine.initialize_sample_data()
    return engine


@pytest.fixture
def supplier_ids(engine: ProcurementEngine) -> dict[str, int]:
    """Sample supplier name -> persistence id"""
    return {s.name: s.persistence_id for s in engine.find_suppliers()}
