"""
Procurement Invariants

Pure validation functions for the request lifecycle. Nothing here touches
storage: callers validate first, then commit.

Fun fact: Medieval trade fairs in Champagne had "wardens of the fair" whose
only job was to check that contracts followed the rules before the seals
were applied - validate, then commit, eight centuries ago!
"""

from collections.abc import Sequence
from decimal import Decimal
from typing import Any, TypeVar

from pydantic import BaseModel, ValidationError

from procurement_flow.kernel.errors import (
    ContractViolation,
    InvalidStateTransition,
    InvalidSupplierSelection,
)
from procurement_flow.procurement.models import RequestStatus

START_ACTIVITY = "Start procurement request"

ContractT = TypeVar("ContractT", bound=BaseModel)

# Allowed request status moves; terminal states have none
ALLOWED_TRANSITIONS: dict[RequestStatus, frozenset[RequestStatus]] = {
    RequestStatus.QUOTATIONS_PENDING: frozenset({RequestStatus.REVIEW_PENDING}),
    RequestStatus.REVIEW_PENDING: frozenset(
        {RequestStatus.COMPLETED, RequestStatus.ABORTED}
    ),
    RequestStatus.COMPLETED: frozenset(),
    RequestStatus.ABORTED: frozenset(),
}


def validate_transition(
    case_id: int, current: RequestStatus, target: RequestStatus, transition: str
) -> None:
    """
    Check a request status move against the transition graph

    Raises:
        InvalidStateTransition: If target is not reachable from current
    """
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidStateTransition(case_id, current.value, transition)


def validate_supplier_ids(supplier_ids: Sequence[int]) -> list[int]:
    """
    Check the invited supplier list (emptiness is a policy decision, not checked here)

    Raises:
        ContractViolation: On duplicate or non-positive ids
    """
    seen: set[int] = set()
    for supplier_id in supplier_ids:
        if supplier_id < 1:
            raise ContractViolation(
                START_ACTIVITY, f"supplier id must be positive, got {supplier_id}"
            )
        if supplier_id in seen:
            raise ContractViolation(
                START_ACTIVITY, f"supplier {supplier_id} is invited more than once"
            )
        seen.add(supplier_id)
    return list(supplier_ids)


def validate_summary(summary: str) -> str:
    if not summary or not summary.strip():
        raise ContractViolation(START_ACTIVITY, "summary cannot be empty")
    return summary.strip()


def validate_price(activity: str, price: Decimal | None) -> None:
    if price is not None and price < 0:
        raise ContractViolation(activity, f"price must be >= 0, got {price}")


def resolve_selection(
    case_id: int,
    selected_supplier_id: str | None,
    invited_supplier_ids: Sequence[int],
    unmatched_policy: str = "reject",
) -> int | None:
    """
    Map the reviewer's selection to an invited supplier

    Returns:
        The selected supplier id, or None when the request should abort

    Raises:
        InvalidSupplierSelection: Selection names no invited supplier and
            the policy is "reject"
    """
    if selected_supplier_id is None or not selected_supplier_id.strip():
        return None

    text = selected_supplier_id.strip()
    # Persistence ids are plain ASCII digits; "²" or "٣" name no supplier
    if text.isascii() and text.isdigit() and int(text) in invited_supplier_ids:
        return int(text)

    if unmatched_policy == "abort":
        return None
    raise InvalidSupplierSelection(case_id, text)


def parse_contract(model: type[ContractT], activity: str, submitted_input: Any) -> ContractT:
    """
    Validate a task input against its contract model

    Raises:
        ContractViolation: With every failing field listed
    """
    try:
        return model.model_validate(submitted_input)
    except ValidationError as e:
        details = "; ".join(
            f"{'.'.join(str(part) for part in err['loc']) or 'input'}: {err['msg']}"
            for err in e.errors()
        )
        raise ContractViolation(activity, details) from e
