"""
Task Queue - pending human tasks and their completion callbacks

Tasks surface in creation order per activity name, which is what lets a
caller pair "this task" with "that supplier" deterministically. Each task is
bound at enqueue time to one completion callback; completing a task is
single-shot.

Fun fact: The first "ticket" queues were the numbered paper slips handed out
at Swedish pharmacies in the 1960s - first come, first served, no queue
jumping. Our tasks keep the same manners!
"""

import threading
from collections.abc import Callable
from datetime import datetime
from functools import partial
from typing import Any

from procurement_flow.kernel.errors import (
    TaskAlreadyCompleted,
    TaskNotFound,
    WorkflowError,
)
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.metrics import (
    pending_tasks,
    tasks_completed_total,
    tasks_created_total,
    tasks_unassignable_total,
)
from procurement_flow.workflow.models import HumanTask, TaskStatus

logger = get_logger(__name__)

# on_complete(task, submitted_input) - raises to refuse the completion
CompletionCallback = Callable[[HumanTask, dict[str, Any]], None]
TaskFilter = Callable[[HumanTask], bool]


class TaskQueue:
    """
    In-memory task queue backed by the process journal

    State changes are recorded as TaskCreated / TaskCompleted events and
    rebuilt with apply_event on restart. Completion callbacks are not
    persisted; the owner re-binds them after a rebuild.
    """

    def __init__(self, journal: ProcessJournal) -> None:
        self._journal = journal
        self._tasks: dict[str, HumanTask] = {}
        self._callbacks: dict[str, CompletionCallback] = {}
        self._lock = threading.Lock()

    # ========================================================================
    # Commands
    # ========================================================================

    def enqueue(self, task: HumanTask, on_complete: CompletionCallback) -> HumanTask:
        """
        Add a pending task and bind its completion callback

        The task is dropped again if the enclosing journal transaction does
        not commit.

        Raises:
            ValueError: If a task with the same id already exists
        """
        with self._lock:
            if task.task_id in self._tasks:
                raise ValueError(f"Task {task.task_id} already enqueued")

        event = self._journal.record(
            "TaskCreated",
            {
                "task_id": task.task_id,
                "process_instance_id": task.process_instance_id,
                "activity": task.activity,
                "binding": task.binding,
                "candidates": sorted(task.candidates),
                "unassignable": task.unassignable,
                "handle_id": task.handle_id,
                "instance_index": task.instance_index,
                "created_at": task.created_at.isoformat(),
            },
        )
        self.apply_event(event)
        self._callbacks[task.task_id] = on_complete
        self._journal.on_rollback(partial(self._forget, task.task_id))
        self._journal.after_commit(partial(self._count_created, task))

        if task.unassignable:
            logger.warning(
                "Task created without resolved candidates",
                task_id=task.task_id,
                activity=task.activity,
                process_instance_id=task.process_instance_id,
            )
        else:
            logger.info(
                "Task enqueued",
                task_id=task.task_id,
                activity=task.activity,
                process_instance_id=task.process_instance_id,
            )
        return self._tasks[task.task_id]

    def bind_callback(self, task_id: str, on_complete: CompletionCallback) -> None:
        """Re-bind the completion callback of a rebuilt pending task"""
        if task_id not in self._tasks:
            raise TaskNotFound(task_id)
        self._callbacks[task_id] = on_complete

    def complete(
        self, task_id: str, submitted_input: dict[str, Any], actor: str | None = None
    ) -> HumanTask:
        """
        Complete a task and run its callback

        The task is claimed atomically first, so two concurrent completions
        of the same task cannot both get through. If the callback refuses the
        input (raises), or the journal transaction fails to commit, the claim
        is released and the task stays pending.

        Raises:
            TaskNotFound: Unknown task id
            TaskAlreadyCompleted: Task was completed before
            WorkflowError: No callback bound to the task
        """
        with self._lock:
            task = self._tasks.get(task_id)
            if task is None:
                raise TaskNotFound(task_id)
            if not task.is_pending:
                raise TaskAlreadyCompleted(task_id)
            callback = self._callbacks.get(task_id)
            if callback is None:
                raise WorkflowError(f"No completion callback bound to task {task_id}")
            # Claim
            task.status = TaskStatus.COMPLETED

        try:
            event = self._journal.record(
                "TaskCompleted",
                {
                    "task_id": task_id,
                    "completed_by": actor,
                    "submitted_input": submitted_input,
                    "completed_at": self._journal.time_provider.now().isoformat(),
                },
            )
            callback(task, submitted_input)
        except Exception:
            self._reopen(task)
            raise

        self.apply_event(event)
        self._journal.on_rollback(partial(self._reopen, task))
        self._journal.after_commit(partial(self._count_completed, task.activity))
        return task

    def _forget(self, task_id: str) -> None:
        with self._lock:
            self._tasks.pop(task_id, None)
            self._callbacks.pop(task_id, None)

    def _reopen(self, task: HumanTask) -> None:
        with self._lock:
            task.status = TaskStatus.PENDING
            task.completed_by = None
            task.completed_at = None
            task.submitted_input = None

    @staticmethod
    def _count_created(task: HumanTask) -> None:
        tasks_created_total.labels(activity=task.activity).inc()
        pending_tasks.labels(activity=task.activity).inc()
        if task.unassignable:
            tasks_unassignable_total.labels(activity=task.activity).inc()

    @staticmethod
    def _count_completed(activity: str) -> None:
        tasks_completed_total.labels(activity=activity).inc()
        pending_tasks.labels(activity=activity).dec()

    # ========================================================================
    # Queries
    # ========================================================================

    def get(self, task_id: str) -> HumanTask:
        task = self._tasks.get(task_id)
        if task is None:
            raise TaskNotFound(task_id)
        return task

    def _snapshot(self) -> list[HumanTask]:
        with self._lock:
            return list(self._tasks.values())

    def find(
        self,
        activity_name: str,
        task_filter: TaskFilter | None = None,
        include_completed: bool = False,
    ) -> list[HumanTask]:
        """
        Tasks of one activity in creation order

        The filter runs on a snapshot, outside the queue lock, so it may be
        slow or call back into the queue.

        Args:
            activity_name: Activity to look for
            task_filter: Optional predicate applied to each task
            include_completed: Also return completed tasks
        """
        return [
            task
            for task in self._snapshot()
            if task.activity == activity_name
            and (include_completed or task.is_pending)
            and (task_filter is None or task_filter(task))
        ]

    def candidates_of(self, task_id: str) -> frozenset[str]:
        return self.get(task_id).candidates

    def has_callback(self, task_id: str) -> bool:
        return task_id in self._callbacks

    # ========================================================================
    # Event application
    # ========================================================================

    def apply_event(self, event: Event) -> None:
        if event.event_type == "TaskCreated":
            self._apply_task_created(event)
        elif event.event_type == "TaskCompleted":
            self._apply_task_completed(event)

    def _apply_task_created(self, event: Event) -> None:
        payload = event.payload
        task = HumanTask(
            task_id=payload["task_id"],
            process_instance_id=payload["process_instance_id"],
            activity=payload["activity"],
            binding=payload["binding"],
            candidates=frozenset(payload["candidates"]),
            unassignable=payload.get("unassignable", False),
            handle_id=payload.get("handle_id"),
            instance_index=payload.get("instance_index"),
            created_at=payload["created_at"],
        )
        with self._lock:
            self._tasks[task.task_id] = task

    def _apply_task_completed(self, event: Event) -> None:
        payload = event.payload
        with self._lock:
            task = self._tasks.get(payload["task_id"])
            if task is None:
                return
            task.status = TaskStatus.COMPLETED
            task.completed_by = payload.get("completed_by")
            task.completed_at = datetime.fromisoformat(payload["completed_at"])
            task.submitted_input = payload.get("submitted_input")

    def refresh_metrics(self) -> None:
        """Reset the pending gauge from current state (after a rebuild)"""
        counts: dict[str, int] = {}
        for task in self._snapshot():
            counts.setdefault(task.activity, 0)
            if task.is_pending:
                counts[task.activity] += 1
        for activity, count in counts.items():
            pending_tasks.labels(activity=activity).set(count)
