"""
Tests for the multi-instance fan-out and its join

The join must fire exactly once, the instant the last instance reports,
whatever the order, whatever the duplicates, whatever the threads.

Fun fact: Barrier synchronisation is named after the starting gate in horse
racing - nobody leaves until everybody is in!
"""

import itertools
import threading

import pytest

from procurement_flow.kernel.errors import (
    InvalidFanOutCardinality,
    TaskUnassignable,
    UnknownFanOutInstance,
)
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.ids import SequentialIdFactory
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.workflow.fanout import FanOutOrchestrator
from procurement_flow.workflow.models import HumanTask, TaskInput
from procurement_flow.workflow.tasks import TaskQueue

QUOTATION = "Complete quotation"


def bind(seed: int) -> TaskInput:
    return TaskInput(binding={"quotation_id": seed}, candidates=frozenset({f"manager-{seed}"}))


def noop(task: HumanTask, data: dict) -> None:
    pass


def spawn(orchestrator: FanOutOrchestrator, journal: ProcessJournal, seeds: list[int]):
    with journal.transaction("case-1", "ProcessInstance"):
        return orchestrator.spawn_fan_out(1, QUOTATION, seeds, bind, noop)


def report(orchestrator: FanOutOrchestrator, journal: ProcessJournal, handle, index: int) -> bool:
    with journal.transaction("case-1", "ProcessInstance"):
        return orchestrator.report_instance_complete(handle, index)


def test_spawn_creates_one_task_per_seed(
    orchestrator: FanOutOrchestrator, task_queue: TaskQueue, journal: ProcessJournal
) -> None:
    handle = spawn(orchestrator, journal, [10, 20, 30])

    tasks = task_queue.find(QUOTATION)
    assert len(tasks) == 3
    assert len({t.task_id for t in tasks}) == 3
    assert [t.binding["quotation_id"] for t in tasks] == [10, 20, 30]
    assert [t.instance_index for t in tasks] == [0, 1, 2]
    assert {t.handle_id for t in tasks} == {handle.handle_id}
    assert handle.remaining() == 3
    assert orchestrator.instance_task_id(1, QUOTATION, 1) == tasks[1].task_id


def test_empty_seeds_are_rejected(
    orchestrator: FanOutOrchestrator, task_queue: TaskQueue, journal: ProcessJournal,
    event_store: SQLiteEventStore,
) -> None:
    with pytest.raises(InvalidFanOutCardinality):
        spawn(orchestrator, journal, [])

    assert task_queue.find(QUOTATION) == []
    assert orchestrator.get_handle(1, QUOTATION) is None
    assert event_store.count_events() == 0


def test_failing_bind_leaves_no_trace(
    orchestrator: FanOutOrchestrator, task_queue: TaskQueue, journal: ProcessJournal
) -> None:
    def strict_bind(seed: int) -> TaskInput:
        if seed == 2:
            raise TaskUnassignable(QUOTATION, f"seed {seed}")
        return bind(seed)

    with pytest.raises(TaskUnassignable):
        with journal.transaction("case-1", "ProcessInstance"):
            orchestrator.spawn_fan_out(1, QUOTATION, [1, 2, 3], strict_bind, noop)

    assert task_queue.find(QUOTATION) == []
    assert orchestrator.get_handle(1, QUOTATION) is None


def test_same_activity_cannot_fan_out_twice(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal
) -> None:
    spawn(orchestrator, journal, [1])
    with pytest.raises(ValueError):
        spawn(orchestrator, journal, [2])


@pytest.mark.parametrize("order", list(itertools.permutations(range(3))))
def test_join_fires_once_in_any_order(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal, order: tuple[int, ...]
) -> None:
    handle = spawn(orchestrator, journal, [1, 2, 3])
    fired = []
    handle.on_all_complete(lambda: fired.append(handle.remaining()))

    results = [report(orchestrator, journal, handle, i) for i in order]

    assert results == [False, False, True]
    assert fired == [0]
    assert handle.is_joined


def test_duplicate_report_is_absorbed(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    handle = spawn(orchestrator, journal, [1, 2])
    fired = []
    handle.on_all_complete(lambda: fired.append(True))

    report(orchestrator, journal, handle, 0)
    version = event_store.get_stream_version("case-1")
    assert report(orchestrator, journal, handle, 0) is False

    assert handle.remaining() == 1
    assert fired == []
    assert event_store.get_stream_version("case-1") == version

    report(orchestrator, journal, handle, 1)
    report(orchestrator, journal, handle, 1)
    assert fired == [True]


@pytest.mark.parametrize("index", [-1, 3, 99])
def test_out_of_range_report_is_rejected(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal, index: int
) -> None:
    handle = spawn(orchestrator, journal, [1, 2, 3])

    with pytest.raises(UnknownFanOutInstance) as exc_info:
        report(orchestrator, journal, handle, index)

    assert exc_info.value.seed_count == 3
    assert handle.remaining() == 3


def test_late_registration_fires_immediately_once(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal
) -> None:
    handle = spawn(orchestrator, journal, [1])
    report(orchestrator, journal, handle, 0)

    fired = []
    handle.on_all_complete(lambda: fired.append(True))
    assert fired == [True]

    report(orchestrator, journal, handle, 0)
    assert fired == [True]


def test_second_pending_registration_is_rejected(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal
) -> None:
    handle = spawn(orchestrator, journal, [1, 2])
    handle.on_all_complete(lambda: None)

    with pytest.raises(ValueError):
        handle.on_all_complete(lambda: None)


def test_concurrent_reports_fire_join_once(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal
) -> None:
    seeds = list(range(20))
    handle = spawn(orchestrator, journal, seeds)
    fired = []
    handle.on_all_complete(lambda: fired.append(True))

    barrier = threading.Barrier(len(seeds) * 2)
    errors: list[Exception] = []

    def worker(index: int, attempt: int) -> None:
        barrier.wait()
        try:
            # Each worker writes its own stream, so only the join is contended
            with journal.transaction(f"worker-{index}-{attempt}", "ProcessInstance"):
                orchestrator.report_instance_complete(handle, index)
        except Exception as e:  # pragma: no cover - surfaced by the assertion below
            errors.append(e)

    threads = [
        threading.Thread(target=worker, args=(i, attempt))
        for i in seeds
        for attempt in (1, 2)
    ]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert errors == []
    assert fired == [True]
    assert handle.remaining() == 0


def test_rebuild_restores_join_state_without_firing(
    orchestrator: FanOutOrchestrator, journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    handle = spawn(orchestrator, journal, [1, 2, 3])
    report(orchestrator, journal, handle, 2)

    queue = TaskQueue(journal)
    rebuilt = FanOutOrchestrator(queue, journal, SequentialIdFactory("other"))
    for event in event_store.load_all_events():
        queue.apply_event(event)
        rebuilt.apply_event(event)

    restored = rebuilt.get_handle(1, QUOTATION)
    assert restored.completed_indices == frozenset({2})
    assert restored.remaining() == 2
    assert rebuilt.instance_task_id(1, QUOTATION, 0) == orchestrator.instance_task_id(
        1, QUOTATION, 0
    )

    fired = []
    restored.on_all_complete(lambda: fired.append(True))
    report(rebuilt, journal, restored, 0)
    report(rebuilt, journal, restored, 1)
    assert fired == [True]
