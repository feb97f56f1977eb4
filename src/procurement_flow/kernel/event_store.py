"""
SQLite process journal - append-only event log with optimistic locking

The journal is where the orchestration core keeps its own bookkeeping:
which tasks exist, which fan-out instances reported, where each process
instance sits in its state machine. Business records (requests, quotations)
live in the domain store; this log is what lets the engine stop and resume
between two human actions without holding a thread.

Fun fact: Double-entry bookkeeping journals from 15th-century Venice were
bound books precisely so pages could not be removed - an append-only log
long before anyone wrote a WAL!
"""

import sqlite3
from collections.abc import Callable, Sequence
from contextlib import contextmanager
from pathlib import Path
from typing import Iterator

from procurement_flow.kernel.errors import EventStoreError, StreamVersionConflict
from procurement_flow.kernel.events import EVENT_COLUMNS, Event
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.metrics import (
    events_appended_total,
    stream_version_conflicts_total,
)
from procurement_flow.kernel.retry import retry_on_sqlite_lock

logger = get_logger(__name__)

_COLUMNS = ", ".join(EVENT_COLUMNS)
_PLACEHOLDERS = ", ".join("?" for _ in EVENT_COLUMNS)


class SQLiteEventStore:
    """
    SQLite-based process journal

    Schema:
    - events table, ordered globally by an autoincrement position
    - UNIQUE(stream_id, version) enforces one writer per stream version
    - indices on (stream_id, version), stream_type and command_id
    """

    def __init__(self, db_path: str | Path) -> None:
        self.db_path = Path(db_path)
        self._initialize_schema()

    def _initialize_schema(self) -> None:
        with self._connect() as conn:
            conn.execute("PRAGMA journal_mode=WAL")
            conn.execute("PRAGMA synchronous=NORMAL")
            conn.execute("""
                CREATE TABLE IF NOT EXISTS events (
                    position INTEGER PRIMARY KEY AUTOINCREMENT,
                    event_id TEXT NOT NULL UNIQUE,
                    stream_id TEXT NOT NULL,
                    stream_type TEXT NOT NULL,
                    version INTEGER NOT NULL,
                    command_id TEXT NOT NULL,
                    event_type TEXT NOT NULL,
                    occurred_at TEXT NOT NULL,
                    actor_id TEXT,
                    payload_json TEXT NOT NULL,

                    UNIQUE(stream_id, version)
                )
            """)
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream "
                "ON events(stream_id, version)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_stream_type ON events(stream_type)"
            )
            conn.execute(
                "CREATE INDEX IF NOT EXISTS idx_events_command ON events(command_id)"
            )
            conn.commit()

    @contextmanager
    def _connect(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path), timeout=5.0)
        conn.row_factory = sqlite3.Row
        try:
            yield conn
        finally:
            conn.close()

    @retry_on_sqlite_lock()
    def append(
        self,
        stream_id: str,
        expected_version: int,
        events: list[Event],
        side_writes: Sequence[Callable[[sqlite3.Connection], None]] = (),
    ) -> list[Event]:
        """
        Append events to a stream in one transaction

        A command already recorded on this stream is not applied twice: its
        original events are returned instead, so a retried external call is
        harmless.

        Args:
            stream_id: Process instance stream
            expected_version: Version the caller last observed
            events: Events with consecutive versions starting at expected_version + 1
            side_writes: Writes to other tables that must commit together with
                the events (run on the same connection, after the insert)

        Returns:
            The appended events (or the previously recorded ones)

        Raises:
            StreamVersionConflict: If another writer advanced the stream
            EventStoreError: On malformed batches or database errors
        """
        if not events:
            return []

        for offset, event in enumerate(events, start=1):
            if event.stream_id != stream_id:
                raise EventStoreError(
                    f"Event {event.event_id} belongs to {event.stream_id}, not {stream_id}"
                )
            if event.version != expected_version + offset:
                raise EventStoreError(
                    f"Event {event.event_id} has version {event.version}, "
                    f"expected {expected_version + offset}"
                )

        with self._connect() as conn:
            try:
                # Take the write lock before reading the version so the check
                # and the insert are one atomic step across processes.
                conn.execute("BEGIN IMMEDIATE")

                recorded = self._events_for_command(
                    conn, stream_id, events[0].command_id
                )
                if recorded:
                    conn.rollback()
                    logger.info(
                        "Command already recorded, returning original events",
                        stream_id=stream_id,
                        command_id=events[0].command_id,
                    )
                    return recorded

                current_version = self._get_stream_version(conn, stream_id)
                if current_version != expected_version:
                    conn.rollback()
                    stream_version_conflicts_total.labels(
                        stream_type=events[0].stream_type
                    ).inc()
                    raise StreamVersionConflict(
                        stream_id, expected_version, current_version
                    )

                conn.executemany(
                    f"INSERT INTO events ({_COLUMNS}) VALUES ({_PLACEHOLDERS})",
                    [event.to_row() for event in events],
                )
                for write in side_writes:
                    write(conn)
                conn.commit()

            except sqlite3.IntegrityError as e:
                conn.rollback()
                current = self._get_stream_version(conn, stream_id)
                raise StreamVersionConflict(stream_id, expected_version, current) from e

        for event in events:
            events_appended_total.labels(
                stream_type=event.stream_type, event_type=event.event_type
            ).inc()
        return events

    def load_stream(self, stream_id: str) -> list[Event]:
        """Load all events of one stream in version order"""
        with self._connect() as conn:
            cursor = conn.execute(
                f"SELECT {_COLUMNS} FROM events "
                "WHERE stream_id = ? ORDER BY version ASC",
                (stream_id,),
            )
            return [Event.from_row(row) for row in cursor.fetchall()]

    def load_all_events(self, stream_type: str | None = None) -> list[Event]:
        """
        Load events in append order (for rebuilding in-memory state)

        Args:
            stream_type: Restrict to one stream type, or None for everything
        """
        query = f"SELECT {_COLUMNS} FROM events"
        params: tuple = ()
        if stream_type:
            query += " WHERE stream_type = ?"
            params = (stream_type,)
        query += " ORDER BY position ASC"

        with self._connect() as conn:
            cursor = conn.execute(query, params)
            return [Event.from_row(row) for row in cursor.fetchall()]

    def get_stream_version(self, stream_id: str) -> int:
        """Current version of a stream (0 if the stream doesn't exist)"""
        with self._connect() as conn:
            return self._get_stream_version(conn, stream_id)

    def list_streams(self, stream_type: str) -> list[str]:
        """Stream ids of a given type, in order of first appearance"""
        with self._connect() as conn:
            cursor = conn.execute(
                "SELECT stream_id FROM events WHERE stream_type = ? "
                "GROUP BY stream_id ORDER BY MIN(position)",
                (stream_type,),
            )
            return [row["stream_id"] for row in cursor.fetchall()]

    def count_events(self) -> int:
        with self._connect() as conn:
            return conn.execute("SELECT COUNT(*) FROM events").fetchone()[0]

    def _get_stream_version(self, conn: sqlite3.Connection, stream_id: str) -> int:
        row = conn.execute(
            "SELECT MAX(version) FROM events WHERE stream_id = ?",
            (stream_id,),
        ).fetchone()
        return row[0] if row[0] is not None else 0

    def _events_for_command(
        self, conn: sqlite3.Connection, stream_id: str, command_id: str
    ) -> list[Event]:
        cursor = conn.execute(
            f"SELECT {_COLUMNS} FROM events "
            "WHERE stream_id = ? AND command_id = ? ORDER BY version ASC",
            (stream_id, command_id),
        )
        return [Event.from_row(row) for row in cursor.fetchall()]
