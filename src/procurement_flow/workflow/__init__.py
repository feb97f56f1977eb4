"""
Workflow - human tasks and multi-instance fan-out

Generic primitives with no knowledge of procurement: a task queue with
single-shot completion and a fan-out orchestrator with an atomic join.
"""

from procurement_flow.workflow.fanout import FanOutHandle, FanOutOrchestrator
from procurement_flow.workflow.models import HumanTask, TaskInput, TaskRef, TaskStatus
from procurement_flow.workflow.tasks import TaskQueue

__all__ = [
    "FanOutHandle",
    "FanOutOrchestrator",
    "HumanTask",
    "TaskInput",
    "TaskQueue",
    "TaskRef",
    "TaskStatus",
]
