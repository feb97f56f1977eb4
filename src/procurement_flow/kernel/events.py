"""
Journal events

Every change the orchestration core makes to a process instance - a task
spawned, a quotation completed, a join fired - is recorded as an immutable
event on the instance's stream. Replaying the journal rebuilds the task
queue, the fan-out arena and the instance registry.

Event types written by the engine:
    ProcessInstanceStarted, TaskCreated, TaskCompleted, FanOutSpawned,
    FanOutInstanceCompleted, FanOutJoined, QuotationCompleted,
    ReviewRequested, RequestCompleted, RequestAborted
"""

import json
import sqlite3
from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

# Column order shared by INSERT and SELECT statements
EVENT_COLUMNS = (
    "event_id",
    "stream_id",
    "stream_type",
    "version",
    "command_id",
    "event_type",
    "occurred_at",
    "actor_id",
    "payload_json",
)


class Event(BaseModel):
    """
    A recorded fact about one process instance

    stream_id + version gives optimistic locking per instance; command_id
    groups the events of one external call so a retried call is recognised.
    """

    event_id: str
    stream_id: str = Field(..., description="e.g. 'case-12'")
    stream_type: str = Field(..., description="e.g. 'ProcessInstance'")
    event_type: str
    occurred_at: datetime
    command_id: str
    version: int = Field(..., ge=1, description="Stream version after this event")
    actor_id: str | None = Field(default=None, description="None for system effects")
    payload: dict[str, Any] = Field(default_factory=dict)

    model_config = {"frozen": True}

    def to_row(self) -> tuple[Any, ...]:
        """Values in EVENT_COLUMNS order"""
        return (
            self.event_id,
            self.stream_id,
            self.stream_type,
            self.version,
            self.command_id,
            self.event_type,
            self.occurred_at.isoformat(),
            self.actor_id,
            json.dumps(self.payload),
        )

    @classmethod
    def from_row(cls, row: sqlite3.Row) -> "Event":
        return cls(
            event_id=row["event_id"],
            stream_id=row["stream_id"],
            stream_type=row["stream_type"],
            version=row["version"],
            command_id=row["command_id"],
            event_type=row["event_type"],
            occurred_at=datetime.fromisoformat(row["occurred_at"]),
            actor_id=row["actor_id"],
            payload=json.loads(row["payload_json"]),
        )
