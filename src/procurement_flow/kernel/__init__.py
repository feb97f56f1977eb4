"""
Kernel - Core infrastructure of the workflow engine

Append-only journal, injectable time and ids, structured logging, metrics
and the error taxonomy every other module builds upon.

Fun fact: Operating system kernels got their name from the nut analogy - the
kernel is the soft core inside the shell. Ours is small on purpose!
"""

from procurement_flow.kernel.errors import (
    ActorNotCandidate,
    ContractViolation,
    EventStoreError,
    InvalidFanOutCardinality,
    InvalidStateTransition,
    InvalidSupplierSelection,
    ProcessInstanceNotFound,
    RequestNotFound,
    StreamVersionConflict,
    SupplierNotFound,
    TaskAlreadyCompleted,
    TaskNotFound,
    TaskUnassignable,
    UnknownFanOutInstance,
    WorkflowError,
)
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.ids import IdFactory, SequentialIdFactory, generate_id
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.kernel.time import RealTimeProvider, TestTimeProvider, TimeProvider

__all__ = [
    # IDs
    "IdFactory",
    "SequentialIdFactory",
    "generate_id",
    # Time
    "TimeProvider",
    "RealTimeProvider",
    "TestTimeProvider",
    # Events & policy
    "Event",
    "WorkflowPolicy",
    # Errors
    "WorkflowError",
    "EventStoreError",
    "StreamVersionConflict",
    "InvalidFanOutCardinality",
    "UnknownFanOutInstance",
    "TaskNotFound",
    "TaskAlreadyCompleted",
    "TaskUnassignable",
    "ActorNotCandidate",
    "ContractViolation",
    "ProcessInstanceNotFound",
    "RequestNotFound",
    "InvalidStateTransition",
    "SupplierNotFound",
    "InvalidSupplierSelection",
]
