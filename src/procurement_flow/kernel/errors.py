"""
Custom exceptions for the procurement orchestration core

Every failure a caller can trigger is a subclass of WorkflowError, raised
synchronously from the violating operation. Nothing here is swallowed: the
only absorbed condition (a duplicate join report) is not an error at all.

Fun fact: The word "bug" in its engineering sense predates computers - Thomas
Edison used it in 1878 to describe little faults in his inventions!
"""


class WorkflowError(Exception):
    """Base exception for all procurement workflow errors"""

    pass


# Event store errors


class EventStoreError(WorkflowError):
    """Base class for event store errors"""

    pass


class StreamVersionConflict(EventStoreError):
    """
    Raised when stream version doesn't match expected (optimistic locking)

    Another writer advanced the process instance stream - reload and retry.
    """

    def __init__(
        self, stream_id: str, expected_version: int, actual_version: int
    ) -> None:
        self.stream_id = stream_id
        self.expected_version = expected_version
        self.actual_version = actual_version
        super().__init__(
            f"Stream {stream_id} version mismatch: "
            f"expected {expected_version}, got {actual_version}"
        )


# Fan-out / join errors


class InvalidFanOutCardinality(WorkflowError):
    """Raised when a fan-out is requested over an empty seed collection"""

    def __init__(self, process_instance_id: int, activity: str) -> None:
        self.process_instance_id = process_instance_id
        self.activity = activity
        super().__init__(
            f"Cannot spawn '{activity}' for case {process_instance_id}: "
            "at least one seed is required"
        )


class UnknownFanOutInstance(WorkflowError):
    """Raised when a completion is reported for an index outside the fan-out"""

    def __init__(self, handle_id: str, instance_index: int, seed_count: int) -> None:
        self.handle_id = handle_id
        self.instance_index = instance_index
        self.seed_count = seed_count
        super().__init__(
            f"Fan-out {handle_id} has no instance {instance_index} "
            f"(valid range: 0..{seed_count - 1})"
        )


# Task errors


class TaskNotFound(WorkflowError):
    """Raised when a task id is unknown to the task queue"""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} not found")


class TaskAlreadyCompleted(WorkflowError):
    """Raised on a second completion of a single-shot human task"""

    def __init__(self, task_id: str) -> None:
        self.task_id = task_id
        super().__init__(f"Task {task_id} has already been completed")


class TaskUnassignable(WorkflowError):
    """Raised when no identity is authorized to execute a spawned task"""

    def __init__(self, activity: str, binding: str) -> None:
        self.activity = activity
        self.binding = binding
        super().__init__(
            f"No candidate can execute '{activity}' bound to {binding}"
        )


class ActorNotCandidate(WorkflowError):
    """Raised when an identity outside the candidate set executes a task"""

    def __init__(self, task_id: str, actor: str) -> None:
        self.task_id = task_id
        self.actor = actor
        super().__init__(f"Actor {actor} is not a candidate for task {task_id}")


class ContractViolation(WorkflowError):
    """Raised when a task input does not satisfy the activity's contract"""

    def __init__(self, activity: str, details: str) -> None:
        self.activity = activity
        self.details = details
        super().__init__(f"Invalid input for '{activity}': {details}")


# Process instance errors


class ProcessInstanceNotFound(WorkflowError):
    """Raised when a process instance (case) does not exist"""

    def __init__(self, case_id: int) -> None:
        self.case_id = case_id
        super().__init__(f"Process instance {case_id} not found")


class RequestNotFound(WorkflowError):
    """Raised when a procurement request id does not exist"""

    def __init__(self, request_id: int) -> None:
        self.request_id = request_id
        super().__init__(f"Procurement request {request_id} not found")


class InvalidStateTransition(WorkflowError):
    """
    Raised when a transition is attempted from the wrong state

    The state machine never reverses and never takes a transition twice.
    """

    def __init__(self, case_id: int, current_state: str, transition: str) -> None:
        self.case_id = case_id
        self.current_state = current_state
        self.transition = transition
        super().__init__(
            f"Case {case_id} is {current_state} - cannot {transition}"
        )


class SupplierNotFound(WorkflowError):
    """Raised when a supplier id does not resolve to a Supplier record"""

    def __init__(self, supplier_id: str) -> None:
        self.supplier_id = supplier_id
        super().__init__(f"Supplier {supplier_id} not found")


class InvalidSupplierSelection(WorkflowError):
    """
    Raised when the review selects a supplier that was never invited

    The request stays pending for review so the reviewer can correct it.
    """

    def __init__(self, case_id: int, supplier_id: str) -> None:
        self.case_id = case_id
        self.supplier_id = supplier_id
        super().__init__(
            f"Supplier {supplier_id} was not invited to quote on case {case_id}"
        )
