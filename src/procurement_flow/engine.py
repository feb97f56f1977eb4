"""
ProcurementEngine - Main façade class

This is the caller-facing boundary of the procurement workflow. It wires the
journal, the domain store, the task queue, the fan-out orchestrator and the
request state machine together, and hides event replay behind a plain API.

Example:
    >>> from procurement_flow import ProcurementEngine
    >>> engine = ProcurementEngine("procurement.db")
    >>> engine.initialize_sample_data()
    >>> acme = engine.domain_store.find_supplier_by_name("Acme Inc.")
    >>> handle = engine.start_request("helen.kelly", "Laptops", "10 laptops", [acme.persistence_id])
    >>> task = engine.list_pending_tasks("Complete quotation")[0]
    >>> engine.execute_task(task.task_id, "giovanna.almeida",
    ...                     {"hasSupplierAccepted": True, "price": "500", "comments": ""})
    >>> review = engine.list_pending_tasks("Review quotations & select supplier")[0]
    >>> engine.execute_task(review.task_id, "helen.kelly",
    ...                     {"selectedSupplierId": str(acme.persistence_id)})
    >>> engine.get_request_status(handle.request_id)
    <RequestStatus.COMPLETED: 'Completed'>
"""

from collections.abc import Callable
from pathlib import Path
from typing import Any

from pydantic import BaseModel

from procurement_flow.kernel.errors import ActorNotCandidate, RequestNotFound, TaskAlreadyCompleted
from procurement_flow.kernel.event_store import SQLiteEventStore
from procurement_flow.kernel.ids import DefaultIdFactory, IdFactory
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.kernel.logging import LogOperation, get_logger
from procurement_flow.kernel.metrics import track_operation_duration
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.kernel.time import RealTimeProvider, TimeProvider
from procurement_flow.procurement.candidates import CandidateResolver
from procurement_flow.procurement.invariants import parse_contract
from procurement_flow.procurement.models import (
    Quotation,
    QuotationInput,
    Request,
    RequestStatus,
    ReviewInput,
    Supplier,
)
from procurement_flow.procurement.process import STREAM_TYPE, ProcurementProcess
from procurement_flow.procurement.sample_data import SampleDataSummary, initialize_sample_data
from procurement_flow.store.domain_store import SQLiteDomainStore
from procurement_flow.workflow.fanout import FanOutOrchestrator
from procurement_flow.workflow.models import TaskRef
from procurement_flow.workflow.tasks import TaskQueue

logger = get_logger(__name__)


class RequestHandle(BaseModel):
    """What start_request hands back: the case and its Request record"""

    case_id: int
    request_id: int

    model_config = {"frozen": True}


class ProcurementEngine:
    """
    Procurement workflow main façade

    Provides a unified API for:
    - Starting procurement requests
    - Listing and executing human tasks
    - Reading request status and business data
    """

    def __init__(
        self,
        sqlite_path: str | Path,
        policy: WorkflowPolicy | None = None,
        time_provider: TimeProvider | None = None,
        id_factory: IdFactory | None = None,
    ) -> None:
        """
        Initialize the engine and resume every unfinished request

        Args:
            sqlite_path: Path to SQLite database (journal and domain store)
            policy: Workflow policy (uses defaults if None)
            time_provider: Time provider (uses real time if None)
            id_factory: Task/event id generator (UUIDv7-like if None)
        """
        self.sqlite_path = Path(sqlite_path)
        self.policy = policy or WorkflowPolicy()
        self.time_provider = time_provider or RealTimeProvider()
        self.id_factory = id_factory or DefaultIdFactory()

        # Initialize infrastructure
        self.event_store = SQLiteEventStore(self.sqlite_path)
        self.domain_store = SQLiteDomainStore(self.sqlite_path)
        self.journal = ProcessJournal(self.event_store, self.time_provider, self.id_factory)

        # Initialize workflow components
        self.task_queue = TaskQueue(self.journal)
        self.orchestrator = FanOutOrchestrator(self.task_queue, self.journal, self.id_factory)
        self.resolver = CandidateResolver(self.domain_store, self.policy)
        self.process = ProcurementProcess(
            self.domain_store,
            self.task_queue,
            self.orchestrator,
            self.resolver,
            self.journal,
            self.policy,
            self.id_factory,
        )

        # Rebuild in-memory state from the journal
        self._rebuild()

    def _rebuild(self) -> None:
        """Replay the journal into every component, then re-bind callbacks"""
        events = self.event_store.load_all_events(STREAM_TYPE)
        for event in events:
            self.task_queue.apply_event(event)
            self.orchestrator.apply_event(event)
            self.process.apply_event(event)
        self.process.rebind_after_rebuild()
        self.task_queue.refresh_metrics()
        if events:
            logger.info(
                "Engine state rebuilt",
                event_count=len(events),
                process_instances=len(self.process.instances()),
            )

    # ========================================================================
    # Setup
    # ========================================================================

    def initialize_sample_data(self) -> SampleDataSummary:
        """Load the demo suppliers, users and account managers (idempotent)"""
        with LogOperation(logger, "initialize_sample_data"):
            return initialize_sample_data(self.domain_store)

    # ========================================================================
    # Requests
    # ========================================================================

    @track_operation_duration("start_request")
    def start_request(
        self,
        created_by: str,
        summary: str,
        description: str,
        supplier_ids: list[int],
        storage_url: str | None = None,
    ) -> RequestHandle:
        """
        Start a procurement request

        Args:
            created_by: Username of the requester (gets the review task)
            summary: Short title
            description: Free text
            supplier_ids: Suppliers to invite, one quotation task each
            storage_url: Opaque document location

        Returns:
            RequestHandle with the case id and the Request persistence id
        """
        with LogOperation(
            logger,
            "start_request",
            created_by=created_by,
            supplier_count=len(supplier_ids),
        ):
            user = self.domain_store.find_user(created_by)
            display_name = user.display_name if user is not None else created_by
            instance = self.process.start(
                created_by,
                display_name,
                summary,
                description,
                list(supplier_ids),
                storage_url=storage_url,
            )
            return RequestHandle(case_id=instance.case_id, request_id=instance.request_id)

    def get_request_status(self, request_id: int) -> RequestStatus:
        return self.get_request(request_id).status

    def get_request(self, request_id: int) -> Request:
        request = self.domain_store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def get_quotations(self, request_id: int) -> list[Quotation]:
        """Quotations of a request, in supplier invitation order"""
        self.get_request(request_id)
        return self.domain_store.query_quotations(request_id)

    def is_process_completed(self, case_id: int) -> bool:
        return self.process.is_completed(case_id)

    def find_suppliers(
        self, start: int = 0, count: int = 100, typed: bool = True
    ) -> list[Supplier] | list[dict[str, Any]]:
        """
        Page through suppliers

        Args:
            typed: Return Supplier models (True) or plain dicts (False)
        """
        if typed:
            return self.domain_store.suppliers.find(start, count)
        return self.domain_store.untyped_dao(Supplier).find(start, count)

    # ========================================================================
    # Tasks
    # ========================================================================

    def list_pending_tasks(
        self,
        activity_name: str,
        task_filter: Callable[[TaskRef], bool] | None = None,
        candidate: str | None = None,
    ) -> list[TaskRef]:
        """
        Pending tasks of one activity, in creation order

        Args:
            activity_name: e.g. "Complete quotation"
            task_filter: Optional predicate on the task reference
            candidate: Only tasks this identity may execute
        """
        refs = [task.ref() for task in self.task_queue.find(activity_name)]
        if candidate is not None:
            refs = [ref for ref in refs if candidate in ref.candidates]
        if task_filter is not None:
            refs = [ref for ref in refs if task_filter(ref)]
        return refs

    def get_task(self, task_id: str) -> TaskRef:
        return self.task_queue.get(task_id).ref()

    def get_task_binding(self, task_id: str) -> Quotation | Request:
        """The business record a task is bound to (quotation or request)"""
        task = self.task_queue.get(task_id)
        if "quotation_id" in task.binding:
            quotation = self.domain_store.get_quotation(task.binding["quotation_id"])
            if quotation is not None:
                return quotation
        return self.get_request(task.binding["request_id"])

    @track_operation_duration("execute_task")
    def execute_task(
        self, task_id: str, actor: str, task_input: dict[str, Any]
    ) -> TaskRef:
        """
        Execute a human task on behalf of actor

        The input is checked against the activity's contract and the actor
        against the task's candidates before anything changes.

        Raises:
            TaskNotFound: Unknown task id
            TaskAlreadyCompleted: Task was executed before
            ActorNotCandidate: Actor may not execute this task (when enforced)
            ContractViolation: Input does not satisfy the activity's contract
            InvalidSupplierSelection: Review names an uninvited supplier
        """
        with LogOperation(logger, "execute_task", task_id=task_id, actor=actor):
            task = self.task_queue.get(task_id)
            if not task.is_pending:
                raise TaskAlreadyCompleted(task_id)
            if self.policy.enforce_candidates and actor not in task.candidates:
                raise ActorNotCandidate(task_id, actor)

            normalized = self._validate_input(task.activity, task_input)
            completed = self.process.execute(task_id, actor, normalized)
            return completed.ref()

    def _validate_input(self, activity: str, task_input: dict[str, Any]) -> dict[str, Any]:
        if activity == self.policy.quotation_activity:
            return parse_contract(QuotationInput, activity, task_input).model_dump(mode="json")
        if activity == self.policy.review_activity:
            return parse_contract(ReviewInput, activity, task_input).model_dump(mode="json")
        return dict(task_input)
