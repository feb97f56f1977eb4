"""
Candidate Resolver - who may execute a task

A quotation task may be executed by the account managers of its supplier;
the review task only by the requester. Resolution is a pure lookup in the
domain store's account-manager directory.
"""

from procurement_flow.kernel.errors import TaskUnassignable
from procurement_flow.kernel.logging import get_logger
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.procurement.models import Quotation, Request
from procurement_flow.store.domain_store import SQLiteDomainStore
from procurement_flow.workflow.models import TaskInput

logger = get_logger(__name__)


class CandidateResolver:
    """Maps bound domain data to the identities allowed to act on it"""

    def __init__(self, domain_store: SQLiteDomainStore, policy: WorkflowPolicy) -> None:
        self._domain_store = domain_store
        self._policy = policy

    def resolve_candidates(self, quotation: Quotation) -> frozenset[str]:
        """Account managers of the quotation's supplier (may be empty)"""
        return self.candidates_for_supplier(quotation.supplier_id)

    def candidates_for_supplier(self, supplier_id: int) -> frozenset[str]:
        return frozenset(self._domain_store.candidates_for_supplier(supplier_id))

    def ensure_assignable(self, supplier_id: int) -> None:
        """
        Fail early when the policy rejects unassignable tasks

        Raises:
            TaskUnassignable: No account manager and unassignable_task == "reject"
        """
        if self._policy.unassignable_task != "reject":
            return
        if not self.candidates_for_supplier(supplier_id):
            raise TaskUnassignable(
                self._policy.quotation_activity, f"supplier {supplier_id}"
            )

    def quotation_task_input(self, quotation: Quotation) -> TaskInput:
        """
        Bind a quotation to its "Complete quotation" task

        With no account manager, the task is flagged unassignable and handed
        to the fallback pool, unless the policy rejects it outright.

        Raises:
            TaskUnassignable: No candidates and unassignable_task == "reject"
        """
        binding = {
            "quotation_id": quotation.persistence_id,
            "request_id": quotation.request_id,
            "supplier_id": quotation.supplier_id,
        }
        candidates = self.resolve_candidates(quotation)
        if candidates:
            return TaskInput(binding=binding, candidates=candidates)

        if self._policy.unassignable_task == "reject":
            raise TaskUnassignable(
                self._policy.quotation_activity, f"quotation {quotation.persistence_id}"
            )
        logger.warning(
            "No account manager for supplier, using fallback pool",
            supplier_id=quotation.supplier_id,
            fallback_size=len(self._policy.fallback_candidates),
        )
        return TaskInput(
            binding=binding,
            candidates=frozenset(self._policy.fallback_candidates),
            unassignable=True,
        )

    def review_task_input(self, request: Request, requester: str) -> TaskInput:
        """The review goes back to whoever started the request"""
        return TaskInput(
            binding={"request_id": request.persistence_id, "case_id": request.case_id},
            candidates=frozenset({requester}),
        )
