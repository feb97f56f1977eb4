"""
Tests for the CandidateResolver
"""

import pytest

from procurement_flow.kernel.errors import TaskUnassignable
from procurement_flow.kernel.policy import WorkflowPolicy
from procurement_flow.procurement.candidates import CandidateResolver
from procurement_flow.procurement.models import Quotation, Supplier
from procurement_flow.procurement.sample_data import initialize_sample_data
from procurement_flow.store.domain_store import SQLiteDomainStore


@pytest.fixture
def sample_store(domain_store: SQLiteDomainStore) -> SQLiteDomainStore:
    initialize_sample_data(domain_store)
    return domain_store


@pytest.fixture
def orphan_supplier(sample_store: SQLiteDomainStore) -> Supplier:
    """A supplier nobody manages"""
    return sample_store.persist(Supplier(name="Orphan Ltd."))


def test_account_managers_are_candidates(sample_store: SQLiteDomainStore) -> None:
    resolver = CandidateResolver(sample_store, WorkflowPolicy())
    acme = sample_store.find_supplier_by_name("Acme Inc.")
    donut = sample_store.find_supplier_by_name("Donut Co.")

    assert resolver.resolve_candidates(
        Quotation(request_id=1, supplier_id=acme.persistence_id)
    ) == frozenset({"giovanna.almeida"})
    assert resolver.resolve_candidates(
        Quotation(request_id=1, supplier_id=donut.persistence_id)
    ) == frozenset({"patrick.gardenier"})


def test_quotation_task_input_binds_the_quotation(sample_store: SQLiteDomainStore) -> None:
    resolver = CandidateResolver(sample_store, WorkflowPolicy())
    quotation = Quotation(persistence_id=5, request_id=2, supplier_id=1)

    task_input = resolver.quotation_task_input(quotation)

    assert task_input.binding == {"quotation_id": 5, "request_id": 2, "supplier_id": 1}
    assert task_input.candidates == frozenset({"giovanna.almeida"})
    assert not task_input.unassignable


def test_unassignable_task_is_flagged_with_fallback_pool(
    sample_store: SQLiteDomainStore, orphan_supplier: Supplier
) -> None:
    resolver = CandidateResolver(
        sample_store, WorkflowPolicy(fallback_candidates=["walter.bates"])
    )
    quotation = Quotation(persistence_id=1, request_id=1, supplier_id=orphan_supplier.persistence_id)

    assert resolver.resolve_candidates(quotation) == frozenset()
    task_input = resolver.quotation_task_input(quotation)

    assert task_input.unassignable
    assert task_input.candidates == frozenset({"walter.bates"})


def test_unassignable_task_rejected_by_policy(
    sample_store: SQLiteDomainStore, orphan_supplier: Supplier
) -> None:
    resolver = CandidateResolver(sample_store, WorkflowPolicy(unassignable_task="reject"))
    quotation = Quotation(persistence_id=1, request_id=1, supplier_id=orphan_supplier.persistence_id)

    with pytest.raises(TaskUnassignable):
        resolver.quotation_task_input(quotation)
    with pytest.raises(TaskUnassignable):
        resolver.ensure_assignable(orphan_supplier.persistence_id)


def test_ensure_assignable_is_lenient_when_flagging(
    sample_store: SQLiteDomainStore, orphan_supplier: Supplier
) -> None:
    resolver = CandidateResolver(sample_store, WorkflowPolicy())
    resolver.ensure_assignable(orphan_supplier.persistence_id)
