"""
Tests for procurement models, task input contracts and invariants
"""

from datetime import date
from decimal import Decimal

import pytest
from pydantic import ValidationError

from procurement_flow.kernel.errors import (
    ContractViolation,
    InvalidStateTransition,
    InvalidSupplierSelection,
)
from procurement_flow.procurement.invariants import (
    parse_contract,
    resolve_selection,
    validate_price,
    validate_summary,
    validate_supplier_ids,
    validate_transition,
)
from procurement_flow.procurement.models import (
    QuotationInput,
    Request,
    RequestStatus,
    ReviewInput,
)

QUOTATION = "Complete quotation"


def make_request(**overrides) -> Request:
    fields = {
        "case_id": 1,
        "summary": "Laptops",
        "creation_date": date(2025, 1, 15),
        "created_by": "Helen Kelly",
    }
    fields.update(overrides)
    return Request(**fields)


class TestRequestModel:
    def test_new_request_is_pending_for_quotations(self) -> None:
        request = make_request()
        assert request.status == RequestStatus.QUOTATIONS_PENDING
        assert request.status.value == "Pending for quotations"
        assert request.completion_date is None

    def test_terminal_status_requires_completion_date(self) -> None:
        with pytest.raises(ValidationError):
            make_request(status=RequestStatus.ABORTED)

    def test_completion_date_only_on_terminal_status(self) -> None:
        with pytest.raises(ValidationError):
            make_request(completion_date=date(2025, 1, 15))

    def test_selected_supplier_only_when_completed(self) -> None:
        with pytest.raises(ValidationError):
            make_request(
                status=RequestStatus.ABORTED,
                completion_date=date(2025, 1, 15),
                selected_supplier_id=1,
            )
        completed = make_request(
            status=RequestStatus.COMPLETED,
            completion_date=date(2025, 1, 15),
            selected_supplier_id=1,
        )
        assert completed.status.is_terminal


class TestContracts:
    def test_quotation_input_accepts_form_names(self) -> None:
        parsed = QuotationInput.model_validate(
            {"hasSupplierAccepted": True, "price": "500", "comments": "ok"}
        )
        assert parsed.has_supplier_accepted is True
        assert parsed.price == Decimal("500")

    def test_declined_quotation_may_omit_price(self) -> None:
        parsed = QuotationInput.model_validate({"has_supplier_accepted": False})
        assert parsed.price is None

    @pytest.mark.parametrize(
        "data",
        [
            {"hasSupplierAccepted": True},
            {"hasSupplierAccepted": True, "price": "-1"},
            {"hasSupplierAccepted": True, "price": "abc"},
            {"price": "10"},
        ],
    )
    def test_invalid_quotation_input(self, data: dict) -> None:
        with pytest.raises(ContractViolation) as exc_info:
            parse_contract(QuotationInput, QUOTATION, data)
        assert exc_info.value.activity == QUOTATION

    @pytest.mark.parametrize("raw", [None, "", "   "])
    def test_blank_selection_means_nobody(self, raw) -> None:
        assert ReviewInput.model_validate({"selectedSupplierId": raw}).selected_supplier_id is None

    def test_numeric_selection_is_kept_as_text(self) -> None:
        assert ReviewInput.model_validate({"selectedSupplierId": 3}).selected_supplier_id == "3"


class TestInvariants:
    def test_transition_graph(self) -> None:
        validate_transition(1, RequestStatus.QUOTATIONS_PENDING, RequestStatus.REVIEW_PENDING, "t")
        validate_transition(1, RequestStatus.REVIEW_PENDING, RequestStatus.ABORTED, "t")

        with pytest.raises(InvalidStateTransition):
            validate_transition(1, RequestStatus.QUOTATIONS_PENDING, RequestStatus.COMPLETED, "t")
        with pytest.raises(InvalidStateTransition):
            validate_transition(1, RequestStatus.COMPLETED, RequestStatus.REVIEW_PENDING, "t")

    def test_duplicate_supplier_ids(self) -> None:
        assert validate_supplier_ids([3, 1]) == [3, 1]
        with pytest.raises(ContractViolation):
            validate_supplier_ids([1, 3, 1])
        with pytest.raises(ContractViolation):
            validate_supplier_ids([0])

    def test_summary_is_required(self) -> None:
        assert validate_summary("  Laptops ") == "Laptops"
        with pytest.raises(ContractViolation):
            validate_summary("   ")

    def test_negative_price(self) -> None:
        validate_price(QUOTATION, Decimal("0"))
        validate_price(QUOTATION, None)
        with pytest.raises(ContractViolation):
            validate_price(QUOTATION, Decimal("-0.01"))

    def test_selection_of_invited_supplier(self) -> None:
        assert resolve_selection(1, "3", [1, 3]) == 3
        assert resolve_selection(1, " 1 ", [1, 3]) == 1

    def test_empty_selection_aborts(self) -> None:
        assert resolve_selection(1, None, [1, 3]) is None
        assert resolve_selection(1, "", [1, 3]) is None

    # "\u00b2" and "\u0661" are Unicode digits that int() rejects or reads as 1
    @pytest.mark.parametrize("selected", ["2", "Acme Inc.", "-1", "\u00b2", "\u0661"])
    def test_uninvited_selection(self, selected: str) -> None:
        with pytest.raises(InvalidSupplierSelection):
            resolve_selection(1, selected, [1, 3])
        assert resolve_selection(1, selected, [1, 3], unmatched_policy="abort") is None
