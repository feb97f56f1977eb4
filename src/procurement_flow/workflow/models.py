"""
Workflow Models - human tasks and their bindings

A human task is a unit of work waiting for an external actor. It carries the
identities allowed to execute it, the slice of domain data it is about, and
(once done) the input the actor submitted.
"""

from datetime import datetime
from enum import Enum
from typing import Any

from pydantic import BaseModel, Field


class TaskStatus(str, Enum):
    """
    Human task lifecycle

    PENDING → COMPLETED, exactly once.
    """

    PENDING = "PENDING"
    COMPLETED = "COMPLETED"


class TaskInput(BaseModel):
    """What a fan-out seed turns into: the task's binding and its candidates"""

    binding: dict[str, Any] = Field(
        ..., description="Domain projection the task is bound to (e.g. quotation_id)"
    )
    candidates: frozenset[str] = Field(
        default_factory=frozenset, description="Identities allowed to execute the task"
    )
    unassignable: bool = Field(
        default=False, description="True when candidate resolution came back empty"
    )

    model_config = {"frozen": True}


class HumanTask(BaseModel):
    """
    A pending or completed human task

    Tasks spawned by a fan-out carry the handle id and their seed index;
    single-instance tasks (the review) leave both unset.
    """

    task_id: str = Field(..., description="Unique task identifier")
    process_instance_id: int = Field(..., description="Owning process instance (case id)")
    activity: str = Field(..., description="Activity name, e.g. 'Complete quotation'")
    binding: dict[str, Any] = Field(default_factory=dict)
    candidates: frozenset[str] = Field(default_factory=frozenset)
    unassignable: bool = Field(default=False)
    handle_id: str | None = Field(default=None, description="Fan-out handle, if spawned by one")
    instance_index: int | None = Field(default=None, ge=0)
    status: TaskStatus = Field(default=TaskStatus.PENDING)
    created_at: datetime
    completed_at: datetime | None = None
    completed_by: str | None = None
    submitted_input: dict[str, Any] | None = None

    @property
    def is_pending(self) -> bool:
        return self.status == TaskStatus.PENDING

    def ref(self) -> "TaskRef":
        """Read-only view handed to callers"""
        return TaskRef(
            task_id=self.task_id,
            process_instance_id=self.process_instance_id,
            activity=self.activity,
            binding=dict(self.binding),
            candidates=self.candidates,
            unassignable=self.unassignable,
            instance_index=self.instance_index,
            status=self.status,
        )


class TaskRef(BaseModel):
    """Immutable reference to a task, returned by list_pending_tasks"""

    task_id: str
    process_instance_id: int
    activity: str
    binding: dict[str, Any]
    candidates: frozenset[str]
    unassignable: bool = False
    instance_index: int | None = None
    status: TaskStatus = TaskStatus.PENDING

    model_config = {"frozen": True}
