"""
Procurement Process - the request state machine

Created → QuotationsPending → ReviewPending → {Completed | Aborted}

Starting a request persists the Request and one Pending Quotation per
invited supplier, fans out one "Complete quotation" task per Quotation and
waits on the join. When every quotation is in, a single review task goes
back to the requester; the review either selects an invited supplier
(Completed) or nobody (Aborted).

Every transition of one case runs under that case's lock and inside one
journal transaction on the case stream: validate, then commit.

Fun fact: Finite state machines were formalised by Mealy and Moore in the
1950s while designing telephone switching circuits - a procurement request
is, after all, just a very slow phone call!
"""

import threading
from dataclasses import dataclass, field, replace
from decimal import Decimal
from enum import Enum
from functools import partial
from typing import Any

from procurement_flow.kernel.errors import (
    ContractViolation,
    InvalidFanOutCardinality,
    InvalidStateTransition,
    ProcessInstanceNotFound,
    RequestNotFound,
)
from procurement_flow.kernel.events import Event
from procurement_flow.kernel.ids import DefaultIdFactory, IdFactory
from procurement_flow.kernel.journal import ProcessJournal
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.metrics import requests_finished_total
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.kernel.time import today
from procurement_flow.procurement.candidates import CandidateResolver
from procurement_flow.procurement.invariants import (
    parse_contract,
    resolve_selection,
    validate_price,
    validate_summary,
    validate_supplier_ids,
    validate_transition,
)
from procurement_flow.procurement.models import (
    Quotation,
    QuotationInput,
    QuotationStatus,
    Request,
    RequestStatus,
    ReviewInput,
)
from procurement_flow.store.domain_store import SQLiteDomainStore
from procurement_flow.workflow.fanout import FanOutOrchestrator
from procurement_flow.workflow.models import HumanTask
from procurement_flow.workflow.tasks import TaskQueue

logger = get_logger(__name__)

STREAM_TYPE = "ProcessInstance"


def case_stream_id(case_id: int) -> str:
    return f"case-{case_id}"


class ProcessState(str, Enum):
    """
    Internal process instance states

    CREATED is transient: an instance is only ever observed once its
    quotations exist.
    """

    CREATED = "Created"
    QUOTATIONS_PENDING = "QuotationsPending"
    REVIEW_PENDING = "ReviewPending"
    COMPLETED = "Completed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (ProcessState.COMPLETED, ProcessState.ABORTED)


@dataclass
class ProcessInstance:
    """Orchestration state of one case (the business data lives in the domain store)"""

    case_id: int
    request_id: int
    requester: str
    supplier_ids: list[int]
    quotation_ids: list[int]
    state: ProcessState = ProcessState.CREATED
    review_task_id: str | None = None
    selected_supplier_id: int | None = None

    @property
    def stream_id(self) -> str:
        return case_stream_id(self.case_id)


@dataclass
class _CaseLocks:
    guard: threading.Lock = field(default_factory=threading.Lock)
    by_case: dict[int, threading.RLock] = field(default_factory=dict)


class ProcurementProcess:
    """
    Procurement request state machine

    Usage:
        instance = process.start("helen.kelly", "Helen Kelly", "Laptops", "...", [1, 3])
        process.execute(task_id, "giovanna.almeida", {"hasSupplierAccepted": True, ...})
    """

    def __init__(
        self,
        domain_store: SQLiteDomainStore,
        task_queue: TaskQueue,
        orchestrator: FanOutOrchestrator,
        resolver: CandidateResolver,
        journal: ProcessJournal,
        policy: WorkflowPolicy,
        id_factory: IdFactory | None = None,
    ) -> None:
        self._domain_store = domain_store
        self._task_queue = task_queue
        self._orchestrator = orchestrator
        self._resolver = resolver
        self._journal = journal
        self._policy = policy
        self._id_factory = id_factory or DefaultIdFactory()
        self._instances: dict[int, ProcessInstance] = {}
        self._locks = _CaseLocks()
        self._last_case_id = 0

    def lock_for(self, case_id: int) -> threading.RLock:
        """The lock serializing every transition of one case"""
        with self._locks.guard:
            return self._locks.by_case.setdefault(case_id, threading.RLock())

    def _allocate_case_id(self) -> int:
        with self._locks.guard:
            self._last_case_id += 1
            return self._last_case_id

    def _release_case_id(self, case_id: int) -> None:
        with self._locks.guard:
            if self._last_case_id == case_id:
                self._last_case_id -= 1

    # ========================================================================
    # Transitions
    # ========================================================================

    def start(
        self,
        requester: str,
        created_by: str,
        summary: str,
        description: str,
        supplier_ids: list[int],
        storage_url: str | None = None,
    ) -> ProcessInstance:
        """
        Start a procurement request

        Args:
            requester: Username of the starting identity (review candidate)
            created_by: Display name stored on the Request
            summary: Short request title
            description: Free text
            supplier_ids: Suppliers invited to quote, in task order
            storage_url: Opaque document location, passed through

        Raises:
            InvalidFanOutCardinality: Empty supplier list under the "reject" policy
            SupplierNotFound: An id does not resolve to a Supplier
            TaskUnassignable: A supplier has no account manager under the "reject" policy
            ContractViolation: Blank summary or duplicate supplier ids
        """
        summary = validate_summary(summary)
        supplier_ids = validate_supplier_ids(supplier_ids)
        if not supplier_ids and self._policy.empty_supplier_list == "reject":
            raise InvalidFanOutCardinality(
                self._last_case_id + 1, self._policy.quotation_activity
            )

        suppliers = self._domain_store.find_suppliers_by_ids(supplier_ids)
        for supplier in suppliers:
            self._resolver.ensure_assignable(supplier.persistence_id)

        case_id = self._allocate_case_id()
        with self.lock_for(case_id):
            with self._journal.transaction(
                case_stream_id(case_id), STREAM_TYPE, actor_id=requester
            ):
                self._journal.on_rollback(partial(self._release_case_id, case_id))
                request = self._domain_store.requests.persist(
                    Request(
                        case_id=case_id,
                        summary=summary,
                        description=description,
                        creation_date=today(self._journal.time_provider),
                        created_by=created_by,
                        storage_url=storage_url,
                    )
                )
                quotations = [
                    self._domain_store.quotations.persist(
                        Quotation(
                            request_id=request.persistence_id,
                            supplier_id=supplier.persistence_id,
                        )
                    )
                    for supplier in suppliers
                ]
                self._apply_recorded(
                    "ProcessInstanceStarted",
                    {
                        "case_id": case_id,
                        "request_id": request.persistence_id,
                        "requester": requester,
                        "supplier_ids": [s.persistence_id for s in suppliers],
                        "quotation_ids": [q.persistence_id for q in quotations],
                    },
                )
                instance = self._instances[case_id]

                if quotations:
                    handle = self._orchestrator.spawn_fan_out(
                        case_id,
                        self._policy.quotation_activity,
                        quotations,
                        self._resolver.quotation_task_input,
                        self._on_quotation_task_complete,
                    )
                    handle.on_all_complete(partial(self._on_quotations_joined, case_id))
                else:
                    logger.info("No supplier invited, skipping to review", case_id=case_id)
                    self._enter_review(instance)

        logger.info(
            "Procurement request started",
            case_id=case_id,
            request_id=instance.request_id,
            supplier_count=len(suppliers),
        )
        return instance

    def execute(
        self, task_id: str, actor: str | None, submitted_input: dict[str, Any]
    ) -> HumanTask:
        """
        Complete a task of this process on behalf of actor

        Runs the task's completion callback under the case lock, inside one
        journal transaction. A refused input leaves the task pending and
        nothing persisted.
        """
        task = self._task_queue.get(task_id)
        with self.lock_for(task.process_instance_id):
            with self._journal.transaction(
                case_stream_id(task.process_instance_id), STREAM_TYPE, actor_id=actor
            ):
                return self._task_queue.complete(task_id, submitted_input, actor)

    def complete_quotation_task(
        self,
        case_id: int,
        quotation_id: int,
        has_supplier_accepted: bool,
        price: Decimal | None,
        comments: str | None,
    ) -> Quotation:
        """
        Record a supplier's quotation and report it to the join

        Called outside a journal transaction, this completes the quotation's
        bound task instead, so the task and the quotation never diverge.

        Raises:
            InvalidStateTransition: Case is not waiting for quotations, or the
                quotation was already completed
            ContractViolation: Negative price or a quotation of another case
        """
        activity = self._policy.quotation_activity
        instance = self.get_instance(case_id)
        if instance.state != ProcessState.QUOTATIONS_PENDING:
            raise InvalidStateTransition(case_id, instance.state.value, "complete quotation")
        if not self._journal.in_transaction() and quotation_id in instance.quotation_ids:
            task_id = self._orchestrator.instance_task_id(
                case_id, activity, instance.quotation_ids.index(quotation_id)
            )
            if task_id is not None:
                self.execute(
                    task_id,
                    None,
                    {
                        "has_supplier_accepted": has_supplier_accepted,
                        "price": str(price) if price is not None else None,
                        "comments": comments or "",
                    },
                )
                return self._domain_store.get_quotation(quotation_id)

        if quotation_id not in instance.quotation_ids:
            raise ContractViolation(
                activity, f"quotation {quotation_id} does not belong to case {case_id}"
            )
        validate_price(activity, price)

        quotation = self._domain_store.get_quotation(quotation_id)
        if quotation is None or quotation.status == QuotationStatus.COMPLETED:
            raise InvalidStateTransition(
                case_id, f"quotation {quotation_id} completed", "complete quotation"
            )
        handle = self._orchestrator.get_handle(case_id, activity)
        if handle is None:
            raise InvalidStateTransition(case_id, instance.state.value, "complete quotation")

        quotation = self._domain_store.quotations.persist(
            quotation.model_copy(
                update={
                    "status": QuotationStatus.COMPLETED,
                    "has_supplier_accepted": has_supplier_accepted,
                    "proposed_price": price,
                    "comments": comments,
                }
            )
        )
        self._journal.record(
            "QuotationCompleted",
            {
                "case_id": case_id,
                "quotation_id": quotation_id,
                "supplier_id": quotation.supplier_id,
                "has_supplier_accepted": has_supplier_accepted,
                "price": str(price) if price is not None else None,
            },
        )
        logger.info(
            "Quotation completed",
            case_id=case_id,
            quotation_id=quotation_id,
            remaining=handle.remaining() - 1,
        )
        self._orchestrator.report_instance_complete(
            handle, instance.quotation_ids.index(quotation_id)
        )
        return quotation

    def complete_review_task(
        self, case_id: int, selected_supplier_id: str | None
    ) -> RequestStatus:
        """
        Apply the reviewer's decision

        A selection naming an invited supplier completes the request; no
        selection aborts it. Both set the completion date to today.

        Raises:
            InvalidStateTransition: Case is not waiting for review
            InvalidSupplierSelection: Uninvited supplier under the "reject" policy
        """
        instance = self.get_instance(case_id)
        if instance.state != ProcessState.REVIEW_PENDING:
            raise InvalidStateTransition(case_id, instance.state.value, "complete review")
        if not self._journal.in_transaction() and instance.review_task_id is not None:
            self.execute(
                instance.review_task_id,
                None,
                {"selected_supplier_id": selected_supplier_id},
            )
            return self._require_request(instance.request_id).status

        selected = resolve_selection(
            case_id,
            selected_supplier_id,
            instance.supplier_ids,
            self._policy.unmatched_selection,
        )
        if selected is None and selected_supplier_id and selected_supplier_id.strip():
            logger.warning(
                "Uninvited supplier selected, aborting per policy",
                case_id=case_id,
                selected_supplier_id=selected_supplier_id,
            )

        request = self._require_request(instance.request_id)
        completion_date = today(self._journal.time_provider)

        if selected is None:
            validate_transition(case_id, request.status, RequestStatus.ABORTED, "abort request")
            self._save_request(
                request, status=RequestStatus.ABORTED, completion_date=completion_date
            )
            self._apply_recorded(
                "RequestAborted",
                {"case_id": case_id, "completion_date": completion_date.isoformat()},
            )
            outcome = RequestStatus.ABORTED
        else:
            validate_transition(
                case_id, request.status, RequestStatus.COMPLETED, "complete request"
            )
            self._save_request(
                request,
                status=RequestStatus.COMPLETED,
                completion_date=completion_date,
                selected_supplier_id=selected,
            )
            self._apply_recorded(
                "RequestCompleted",
                {
                    "case_id": case_id,
                    "selected_supplier_id": selected,
                    "completion_date": completion_date.isoformat(),
                },
            )
            outcome = RequestStatus.COMPLETED

        self._journal.after_commit(requests_finished_total.labels(outcome=outcome.value).inc)
        logger.info(
            "Procurement request finished",
            case_id=case_id,
            outcome=outcome.value,
            selected_supplier_id=selected,
        )
        return outcome

    # ========================================================================
    # Callbacks
    # ========================================================================

    def _on_quotation_task_complete(
        self, task: HumanTask, submitted_input: dict[str, Any]
    ) -> None:
        quotation_input = parse_contract(QuotationInput, task.activity, submitted_input)
        self.complete_quotation_task(
            task.process_instance_id,
            task.binding["quotation_id"],
            quotation_input.has_supplier_accepted,
            quotation_input.price,
            quotation_input.comments,
        )

    def _on_review_task_complete(
        self, task: HumanTask, submitted_input: dict[str, Any]
    ) -> None:
        review_input = parse_contract(ReviewInput, task.activity, submitted_input)
        self.complete_review_task(task.process_instance_id, review_input.selected_supplier_id)

    def _on_quotations_joined(self, case_id: int) -> None:
        instance = self.get_instance(case_id)
        if instance.state != ProcessState.QUOTATIONS_PENDING:
            raise InvalidStateTransition(case_id, instance.state.value, "join quotations")
        self._enter_review(instance)

    def _enter_review(self, instance: ProcessInstance) -> None:
        request = self._require_request(instance.request_id)
        validate_transition(
            instance.case_id, request.status, RequestStatus.REVIEW_PENDING, "request review"
        )
        request = self._save_request(request, status=RequestStatus.REVIEW_PENDING)

        task_input = self._resolver.review_task_input(request, instance.requester)
        task = HumanTask(
            task_id=self._id_factory.generate(),
            process_instance_id=instance.case_id,
            activity=self._policy.review_activity,
            binding=task_input.binding,
            candidates=task_input.candidates,
            created_at=self._journal.time_provider.now(),
        )
        self._apply_recorded(
            "ReviewRequested",
            {"case_id": instance.case_id, "review_task_id": task.task_id},
        )
        self._task_queue.enqueue(task, self._on_review_task_complete)
        logger.info("Quotations joined, review requested", case_id=instance.case_id)

    # ========================================================================
    # Rebuild
    # ========================================================================

    def _apply_recorded(self, event_type: str, payload: dict[str, Any]) -> None:
        """Record an event on the open transaction and apply it until rollback"""
        case_id = payload["case_id"]
        before = self._instances.get(case_id)
        snapshot = replace(before) if before is not None else None
        self.apply_event(self._journal.record(event_type, payload))
        self._journal.on_rollback(partial(self._restore, case_id, snapshot))

    def _restore(self, case_id: int, snapshot: ProcessInstance | None) -> None:
        with self._locks.guard:
            if snapshot is None:
                self._instances.pop(case_id, None)
            else:
                vars(self._instances[case_id]).update(vars(snapshot))

    def apply_event(self, event: Event) -> None:
        payload = event.payload
        if event.event_type == "ProcessInstanceStarted":
            case_id = payload["case_id"]
            instance = ProcessInstance(
                case_id=case_id,
                request_id=payload["request_id"],
                requester=payload["requester"],
                supplier_ids=list(payload["supplier_ids"]),
                quotation_ids=list(payload["quotation_ids"]),
                state=ProcessState.QUOTATIONS_PENDING,
            )
            with self._locks.guard:
                self._instances[case_id] = instance
                self._last_case_id = max(self._last_case_id, case_id)
        elif event.event_type == "ReviewRequested":
            instance = self._instances[payload["case_id"]]
            instance.state = ProcessState.REVIEW_PENDING
            instance.review_task_id = payload["review_task_id"]
        elif event.event_type == "RequestCompleted":
            instance = self._instances[payload["case_id"]]
            instance.state = ProcessState.COMPLETED
            instance.selected_supplier_id = payload["selected_supplier_id"]
        elif event.event_type == "RequestAborted":
            self._instances[payload["case_id"]].state = ProcessState.ABORTED

    def rebind_after_rebuild(self) -> None:
        """
        Re-attach completion callbacks lost with the previous process

        Pending tasks get their callback back; fan-outs that have not joined
        get their join callback back.
        """
        for task in self._task_queue.find(self._policy.quotation_activity):
            self._task_queue.bind_callback(task.task_id, self._on_quotation_task_complete)
        for task in self._task_queue.find(self._policy.review_activity):
            self._task_queue.bind_callback(task.task_id, self._on_review_task_complete)

        for instance in self.instances():
            if instance.state != ProcessState.QUOTATIONS_PENDING:
                continue
            handle = self._orchestrator.get_handle(
                instance.case_id, self._policy.quotation_activity
            )
            if handle is not None and not handle.is_joined:
                handle.on_all_complete(partial(self._on_quotations_joined, instance.case_id))

    # ========================================================================
    # Queries
    # ========================================================================

    def get_instance(self, case_id: int) -> ProcessInstance:
        instance = self._instances.get(case_id)
        if instance is None:
            raise ProcessInstanceNotFound(case_id)
        return instance

    def instances(self) -> list[ProcessInstance]:
        with self._locks.guard:
            return list(self._instances.values())

    def is_completed(self, case_id: int) -> bool:
        return self.get_instance(case_id).state.is_terminal

    def _require_request(self, request_id: int) -> Request:
        request = self._domain_store.get_request(request_id)
        if request is None:
            raise RequestNotFound(request_id)
        return request

    def _save_request(self, request: Request, **changes: Any) -> Request:
        updated = Request.model_validate({**request.model_dump(), **changes})
        return self._domain_store.requests.persist(updated)
