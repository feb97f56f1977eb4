"""
Multi-Instance Activity Orchestrator - fan-out over N seeds, join on N reports

One activity template is instantiated once per seed (one "Complete quotation"
per supplier). Instances live in an arena indexed by
(process_instance_id, activity, seed_index); the join state is the set of
completed indices kept on the handle. The join fires exactly once, the
instant that set covers every seed, in whatever order the reports arrive.

Fun fact: The fork/join pattern was described by Melvin Conway in 1963 - the
same Conway whose "law" says systems mirror the organisations that build
them. Fittingly, ours mirrors a purchasing department!
"""

import threading
from collections.abc import Callable, Sequence
from functools import partial
from typing import TypeVar

from procurement_flow.kernel.errors import InvalidFanOutCardinality, UnknownFanOutInstance
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.ids import DefaultIdFactory, IdFactory
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.metrics import fan_out_joins_total, fan_out_size
from procurement_flow.workflow.models import HumanTask, TaskInput
from procurement_flow.workflow.tasks import CompletionCallback, TaskQueue

logger = get_logger(__name__)

S = TypeVar("S")
JoinCallback = Callable[[], None]


def make_handle_id(process_instance_id: int, activity: str) -> str:
    return f"{process_instance_id}:{activity}"


class FanOutHandle:
    """
    Join bookkeeping for one fan-out

    The completed set and the callback slot are guarded by a per-handle lock:
    "mark instance complete" and "are all complete?" happen as one step.
    """

    def __init__(self, process_instance_id: int, activity: str, seed_count: int) -> None:
        self.process_instance_id = process_instance_id
        self.activity = activity
        self.seed_count = seed_count
        self.handle_id = make_handle_id(process_instance_id, activity)
        self._completed: set[int] = set()
        self._callback: JoinCallback | None = None
        self._callback_invoked = False
        self._lock = threading.Lock()

    def remaining(self) -> int:
        with self._lock:
            return self.seed_count - len(self._completed)

    @property
    def is_joined(self) -> bool:
        with self._lock:
            return len(self._completed) == self.seed_count

    @property
    def completed_indices(self) -> frozenset[int]:
        with self._lock:
            return frozenset(self._completed)

    def on_all_complete(self, callback: JoinCallback) -> None:
        """
        Register the join callback

        Registered after the join already happened, the callback runs right
        away. Either way it runs at most once.

        Raises:
            ValueError: If a callback is already waiting on this handle
        """
        with self._lock:
            if self._callback is not None and not self._callback_invoked:
                raise ValueError(f"Fan-out {self.handle_id} already has a join callback")
            self._callback = callback
            self._callback_invoked = False
            run_now = len(self._completed) == self.seed_count
            if run_now:
                self._callback_invoked = True

        if run_now:
            callback()

    def _mark_complete(self, instance_index: int) -> JoinCallback | None:
        """
        Add an index; return the callback to run if this report released the join

        Caller holds self._lock.
        """
        self._completed.add(instance_index)
        if len(self._completed) == self.seed_count and self._callback is not None:
            if not self._callback_invoked:
                self._callback_invoked = True
                return self._callback
        return None

    def __repr__(self) -> str:
        return (
            f"FanOutHandle({self.handle_id!r}, "
            f"completed={len(self._completed)}/{self.seed_count})"
        )


class FanOutOrchestrator:
    """
    Spawns parallel task instances and releases the join

    Usage:
        handle = orchestrator.spawn_fan_out(case_id, "Complete quotation",
                                            quotations, bind, on_task_complete)
        handle.on_all_complete(lambda: ...)
        ...
        orchestrator.report_instance_complete(handle, task.instance_index)
    """

    def __init__(
        self,
        task_queue: TaskQueue,
        journal: ProcessJournal,
        id_factory: IdFactory | None = None,
    ) -> None:
        self._task_queue = task_queue
        self._journal = journal
        self._id_factory = id_factory or DefaultIdFactory()
        self._handles: dict[str, FanOutHandle] = {}
        # (process_instance_id, activity, seed_index) -> task_id
        self._instances: dict[tuple[int, str, int], str] = {}
        # Guards both maps; handles carry their own lock for the join
        self._lock = threading.Lock()

    def spawn_fan_out(
        self,
        process_instance_id: int,
        activity_template: str,
        seeds: Sequence[S],
        bind: Callable[[S], TaskInput],
        on_task_complete: CompletionCallback,
    ) -> FanOutHandle:
        """
        Create one task per seed and return the join handle

        Every seed is bound before anything is recorded, so a failing bind
        (e.g. an unassignable task under a strict policy) leaves no trace.

        Raises:
            InvalidFanOutCardinality: If seeds is empty
            ValueError: If this activity was already fanned out for the instance
        """
        if len(seeds) == 0:
            raise InvalidFanOutCardinality(process_instance_id, activity_template)

        handle_id = make_handle_id(process_instance_id, activity_template)
        with self._lock:
            spawned = handle_id in self._handles
        if spawned:
            raise ValueError(f"Fan-out {handle_id} already spawned")

        inputs = [bind(seed) for seed in seeds]

        self.apply_event(
            self._journal.record(
                "FanOutSpawned",
                {
                    "handle_id": handle_id,
                    "process_instance_id": process_instance_id,
                    "activity": activity_template,
                    "seed_count": len(inputs),
                },
            )
        )
        self._journal.on_rollback(partial(self._discard, handle_id))

        now = self._journal.time_provider.now()
        for index, task_input in enumerate(inputs):
            task = HumanTask(
                task_id=self._id_factory.generate(),
                process_instance_id=process_instance_id,
                activity=activity_template,
                binding=task_input.binding,
                candidates=task_input.candidates,
                unassignable=task_input.unassignable,
                handle_id=handle_id,
                instance_index=index,
                created_at=now,
            )
            self._task_queue.enqueue(task, on_task_complete)
            with self._lock:
                self._instances[(process_instance_id, activity_template, index)] = task.task_id

        self._journal.after_commit(
            partial(fan_out_size.labels(activity=activity_template).observe, len(inputs))
        )
        logger.info(
            "Fan-out spawned",
            handle_id=handle_id,
            process_instance_id=process_instance_id,
            seed_count=len(inputs),
        )
        return self._handles[handle_id]

    def report_instance_complete(self, handle: FanOutHandle, instance_index: int) -> bool:
        """
        Report one instance as complete

        Re-reporting an index is a no-op. Returns True if this report
        released the join.

        Raises:
            UnknownFanOutInstance: If instance_index is outside [0, seed_count)
        """
        if not 0 <= instance_index < handle.seed_count:
            raise UnknownFanOutInstance(handle.handle_id, instance_index, handle.seed_count)

        with handle._lock:
            if instance_index in handle._completed:
                logger.debug(
                    "Duplicate fan-out report absorbed",
                    handle_id=handle.handle_id,
                    instance_index=instance_index,
                )
                return False

            self._journal.record(
                "FanOutInstanceCompleted",
                {"handle_id": handle.handle_id, "instance_index": instance_index},
            )
            callback = handle._mark_complete(instance_index)
            self._journal.on_rollback(
                partial(self._unmark, handle, instance_index, callback is not None)
            )
            joined = len(handle._completed) == handle.seed_count
            if joined:
                self._journal.record(
                    "FanOutJoined",
                    {"handle_id": handle.handle_id, "seed_count": handle.seed_count},
                )

        if joined:
            self._journal.after_commit(fan_out_joins_total.labels(activity=handle.activity).inc)
            logger.info(
                "Fan-out joined",
                handle_id=handle.handle_id,
                process_instance_id=handle.process_instance_id,
            )
        if callback is not None:
            callback()
        return joined

    @staticmethod
    def _unmark(handle: FanOutHandle, instance_index: int, released: bool) -> None:
        with handle._lock:
            handle._completed.discard(instance_index)
            if released:
                handle._callback_invoked = False

    def _discard(self, handle_id: str) -> None:
        with self._lock:
            handle = self._handles.pop(handle_id, None)
            if handle is None:
                return
            owner = (handle.process_instance_id, handle.activity)
            for key in [key for key in self._instances if key[:2] == owner]:
                del self._instances[key]

    def get_handle(self, process_instance_id: int, activity: str) -> FanOutHandle | None:
        return self._handles.get(make_handle_id(process_instance_id, activity))

    def instance_task_id(
        self, process_instance_id: int, activity: str, seed_index: int
    ) -> str | None:
        return self._instances.get((process_instance_id, activity, seed_index))

    # ========================================================================
    # Event application
    # ========================================================================

    def apply_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == "FanOutSpawned":
            handle = FanOutHandle(
                payload["process_instance_id"],
                payload["activity"],
                payload["seed_count"],
            )
            with self._lock:
                self._handles[handle.handle_id] = handle
        elif event.event_type == "TaskCreated" and payload.get("handle_id"):
            key = (
                payload["process_instance_id"],
                payload["activity"],
                payload["instance_index"],
            )
            with self._lock:
                self._instances[key] = payload["task_id"]
        elif event.event_type == "FanOutInstanceCompleted":
            handle = self._handles.get(payload["handle_id"])
            if handle is not None:
                with handle._lock:
                    handle._completed.add(payload["instance_index"])
