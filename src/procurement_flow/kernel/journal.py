"""
Process journal - buffers the effects of one external call

Each external call (start a request, execute a task) touches exactly one
process instance stream. Components record events as they mutate their
in-memory state, and the domain store stages its document writes here
instead of writing them straight away. When the call finishes, the events
and the staged writes go to SQLite in one transaction, so either every
effect of the call is persisted or none is.

If the call raises, or the commit itself fails, the rollback hooks run in
reverse order and put the in-memory state back the way the call found it.

The open transaction is tracked in a context variable, the same way the
logging layer tracks correlation ids, so the task queue and the fan-out
orchestrator can record without threading a transaction through every
callback signature.
"""

import contextvars
import sqlite3
from collections.abc import Callable
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any, Iterator

from procurement_flow.kernel.errors import EventStoreError
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.ids import DefaultIdFactory, IdFactory
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.time import TimeProvider

logger = get_logger(__name__)

Hook = Callable[[], None]
SideWrite = Callable[[sqlite3.Connection], None]


@dataclass
class StagedWrite:
    """A write deferred to the commit, plus the value reads should see until then"""

    value: Any
    write: SideWrite


@dataclass
class JournalTransaction:
    """Effects recorded so far for one stream within one external call"""

    stream_id: str
    stream_type: str
    command_id: str
    actor_id: str | None
    base_version: int
    events: list[Event] = field(default_factory=list)
    staged: dict[tuple[Any, ...], StagedWrite] = field(default_factory=dict)
    rollback_hooks: list[Hook] = field(default_factory=list)
    commit_hooks: list[Hook] = field(default_factory=list)

    @property
    def next_version(self) -> int:
        return self.base_version + len(self.events) + 1

    def stage(self, key: tuple[Any, ...], value: Any, write: SideWrite) -> None:
        """Defer a write; a later write under the same key replaces it"""
        self.staged[key] = StagedWrite(value, write)

    def staged_value(self, key: tuple[Any, ...]) -> Any | None:
        staged = self.staged.get(key)
        return staged.value if staged is not None else None

    def roll_back(self) -> None:
        for hook in reversed(self.rollback_hooks):
            hook()
        self.rollback_hooks.clear()


_active_transaction: contextvars.ContextVar[JournalTransaction | None] = (
    contextvars.ContextVar("active_journal_transaction", default=None)
)


def current_transaction() -> JournalTransaction | None:
    """The transaction open in this context, if any"""
    return _active_transaction.get()


class ProcessJournal:
    """
    Unit of work over the event store

    Usage:
        with journal.transaction("case-1", "ProcessInstance", actor_id="helen.kelly"):
            journal.record("TaskCreated", {...})
            journal.on_rollback(lambda: tasks.pop("task-1"))
    """

    def __init__(
        self,
        event_store: SQLiteEventStore,
        time_provider: TimeProvider,
        id_factory: IdFactory | None = None,
    ) -> None:
        self.event_store = event_store
        self.time_provider = time_provider
        self.id_factory = id_factory or DefaultIdFactory()

    @contextmanager
    def transaction(
        self,
        stream_id: str,
        stream_type: str,
        actor_id: str | None = None,
        command_id: str | None = None,
    ) -> Iterator[JournalTransaction]:
        """
        Open a transaction on a stream; commit its effects on clean exit

        Nothing is written if the body raises. Nested transactions are not
        supported - one external call writes one stream.

        Raises:
            EventStoreError: If a transaction is already open, or writes were
                staged without any event to carry them
        """
        if _active_transaction.get() is not None:
            raise EventStoreError(
                f"A journal transaction is already open; cannot open one on {stream_id}"
            )

        tx = JournalTransaction(
            stream_id=stream_id,
            stream_type=stream_type,
            command_id=command_id or self.id_factory.generate(),
            actor_id=actor_id,
            base_version=self.event_store.get_stream_version(stream_id),
        )
        token = _active_transaction.set(tx)
        try:
            yield tx
        except BaseException:
            _active_transaction.reset(token)
            tx.roll_back()
            raise
        _active_transaction.reset(token)

        try:
            self._commit(tx)
        except BaseException:
            logger.error(
                "Journal commit failed, rolling back in-memory state",
                stream_id=tx.stream_id,
                event_count=len(tx.events),
            )
            tx.roll_back()
            raise

        for hook in tx.commit_hooks:
            hook()

    def _commit(self, tx: JournalTransaction) -> None:
        if not tx.events:
            if tx.staged:
                raise EventStoreError(
                    f"{len(tx.staged)} staged writes on {tx.stream_id} without an event"
                )
            return
        self.event_store.append(
            tx.stream_id,
            tx.base_version,
            tx.events,
            side_writes=[staged.write for staged in tx.staged.values()],
        )
        logger.debug(
            "Journal transaction committed",
            stream_id=tx.stream_id,
            event_count=len(tx.events),
            staged_writes=len(tx.staged),
        )

    def _require_transaction(self, what: str) -> JournalTransaction:
        tx = _active_transaction.get()
        if tx is None:
            raise EventStoreError(f"Cannot {what} outside a journal transaction")
        return tx

    def record(self, event_type: str, payload: dict[str, Any]) -> Event:
        """
        Record an event in the open transaction

        Raises:
            EventStoreError: If no transaction is open in this context
        """
        tx = self._require_transaction(f"record {event_type}")

        event = Event(
            event_id=self.id_factory.generate(),
            stream_id=tx.stream_id,
            stream_type=tx.stream_type,
            event_type=event_type,
            occurred_at=self.time_provider.now(),
            command_id=tx.command_id,
            actor_id=tx.actor_id,
            payload=payload,
            version=tx.next_version,
        )
        tx.events.append(event)
        return event

    def on_rollback(self, hook: Hook) -> None:
        """Undo an in-memory change if the open transaction does not commit"""
        self._require_transaction("register a rollback hook").rollback_hooks.append(hook)

    def after_commit(self, hook: Hook) -> None:
        """Run hook once the open transaction has committed"""
        self._require_transaction("register a commit hook").commit_hooks.append(hook)

    def in_transaction(self) -> bool:
        return _active_transaction.get() is not None
