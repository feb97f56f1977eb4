"""
Tests for the process journal (one transaction per external call)
"""

import sqlite3

import pytest

from procurement_flow.kernel.errors import EventStoreError
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.journal import ProcessJournal


def test_events_are_appended_on_clean_exit(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    with journal.transaction("case-1", "ProcessInstance", actor_id="helen.kelly") as tx:
        first = journal.record("ProcessInstanceStarted", {"case_id": 1})
        second = journal.record("TaskCreated", {"task_id": "t-1"})
        # Nothing is visible until the transaction closes
        assert event_store.count_events() == 0

    assert (first.version, second.version) == (1, 2)
    assert first.command_id == second.command_id == tx.command_id
    assert first.actor_id == "helen.kelly"
    assert [e.event_type for e in event_store.load_stream("case-1")] == [
        "ProcessInstanceStarted",
        "TaskCreated",
    ]


def test_nothing_is_appended_when_the_body_raises(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    with pytest.raises(RuntimeError):
        with journal.transaction("case-1", "ProcessInstance"):
            journal.record("TaskCreated", {"task_id": "t-1"})
            raise RuntimeError("refused")

    assert event_store.count_events() == 0
    assert not journal.in_transaction()


def test_versions_continue_from_stream_head(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    with journal.transaction("case-1", "ProcessInstance"):
        journal.record("A", {})
    with journal.transaction("case-1", "ProcessInstance"):
        event = journal.record("B", {})

    assert event.version == 2
    assert event_store.get_stream_version("case-1") == 2


def test_record_outside_transaction_fails(journal: ProcessJournal) -> None:
    with pytest.raises(EventStoreError):
        journal.record("TaskCreated", {})


def test_nested_transactions_are_rejected(journal: ProcessJournal) -> None:
    with journal.transaction("case-1", "ProcessInstance"):
        with pytest.raises(EventStoreError):
            with journal.transaction("case-2", "ProcessInstance"):
                pass


def test_empty_transaction_appends_nothing(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    with journal.transaction("case-1", "ProcessInstance"):
        pass

    assert event_store.get_stream_version("case-1") == 0


def test_staged_writes_commit_with_the_events(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    with sqlite3.connect(event_store.db_path) as conn:
        conn.execute("CREATE TABLE notes (text TEXT)")

    def write_note(conn: sqlite3.Connection) -> None:
        conn.execute("INSERT INTO notes VALUES ('hello')")

    with journal.transaction("case-1", "ProcessInstance") as tx:
        journal.record("NoteTaken", {})
        tx.stage(("notes", 1), "hello", write_note)
        assert tx.staged_value(("notes", 1)) == "hello"

    with sqlite3.connect(event_store.db_path) as conn:
        assert conn.execute("SELECT text FROM notes").fetchall() == [("hello",)]


def test_staged_writes_need_an_event(journal: ProcessJournal) -> None:
    with pytest.raises(EventStoreError):
        with journal.transaction("case-1", "ProcessInstance") as tx:
            tx.stage(("notes", 1), "hello", lambda conn: None)


def test_rollback_hooks_undo_in_reverse_order(journal: ProcessJournal) -> None:
    undone: list[str] = []
    committed: list[str] = []

    with pytest.raises(RuntimeError):
        with journal.transaction("case-1", "ProcessInstance"):
            journal.record("TaskCreated", {"task_id": "t-1"})
            journal.on_rollback(lambda: undone.append("first"))
            journal.on_rollback(lambda: undone.append("second"))
            journal.after_commit(lambda: committed.append("metrics"))
            raise RuntimeError("refused")

    assert undone == ["second", "first"]
    assert committed == []


def test_failed_append_rolls_back(
    journal: ProcessJournal, event_store: SQLiteEventStore, monkeypatch: pytest.MonkeyPatch
) -> None:
    undone: list[str] = []
    committed: list[str] = []

    def disk_error(*args, **kwargs):
        raise sqlite3.OperationalError("disk I/O error")

    monkeypatch.setattr(event_store, "append", disk_error)

    with pytest.raises(sqlite3.OperationalError):
        with journal.transaction("case-1", "ProcessInstance"):
            journal.record("TaskCreated", {"task_id": "t-1"})
            journal.on_rollback(lambda: undone.append("task"))
            journal.after_commit(lambda: committed.append("metrics"))

    assert undone == ["task"]
    assert committed == []
    assert not journal.in_transaction()


def test_commit_hooks_run_after_append(
    journal: ProcessJournal, event_store: SQLiteEventStore
) -> None:
    versions: list[int] = []

    with journal.transaction("case-1", "ProcessInstance"):
        journal.record("TaskCreated", {"task_id": "t-1"})
        journal.after_commit(lambda: versions.append(event_store.get_stream_version("case-1")))

    assert versions == [1]


def test_hooks_need_an_open_transaction(journal: ProcessJournal) -> None:
    with pytest.raises(EventStoreError):
        journal.on_rollback(lambda: None)
    with pytest.raises(EventStoreError):
        journal.after_commit(lambda: None)
