"""
Sample procurement data

Three suppliers, their account managers and the users of the demo
organisation. Loading twice changes nothing.
"""

from dataclasses import dataclass

from procurement_flow.kernel.logging import get_logger
from procurement_flow.procurement.models import Supplier, SupplierAccountManager, User
from procurement_flow.store.domain_store import SQLiteDomainStore

logger = get_logger(__name__)

SAMPLE_SUPPLIERS = ["Acme Inc.", "Duff Co.", "Donut Co."]

SAMPLE_USERS = {
    "walter.bates": "Walter Bates",
    "helen.kelly": "Helen Kelly",
    "giovanna.almeida": "Giovanna Almeida",
    "daniela.angelo": "Daniela Angelo",
    "patrick.gardenier": "Patrick Gardenier",
}

# username -> supplier name
SAMPLE_ACCOUNT_MANAGERS = {
    "giovanna.almeida": "Acme Inc.",
    "daniela.angelo": "Duff Co.",
    "patrick.gardenier": "Donut Co.",
}


@dataclass
class SampleDataSummary:
    suppliers_created: int = 0
    users_created: int = 0
    account_managers_created: int = 0

    @property
    def total_created(self) -> int:
        return self.suppliers_created + self.users_created + self.account_managers_created


def initialize_sample_data(domain_store: SQLiteDomainStore) -> SampleDataSummary:
    """Create whatever part of the sample data is missing"""
    summary = SampleDataSummary()

    for name in SAMPLE_SUPPLIERS:
        if domain_store.find_supplier_by_name(name) is None:
            domain_store.persist(
                Supplier(name=name, description=f"Sample description for {name}")
            )
            summary.suppliers_created += 1

    for username, display_name in SAMPLE_USERS.items():
        if domain_store.find_user(username) is None:
            domain_store.persist(User(username=username, display_name=display_name))
            summary.users_created += 1

    for username, supplier_name in SAMPLE_ACCOUNT_MANAGERS.items():
        supplier = domain_store.find_supplier_by_name(supplier_name)
        existing = domain_store.account_managers.query_single(
            supplier_id=supplier.persistence_id, username=username
        )
        if existing is None:
            domain_store.persist(
                SupplierAccountManager(supplier_id=supplier.persistence_id, username=username)
            )
            summary.account_managers_created += 1

    logger.info(
        "Sample data initialized",
        suppliers_created=summary.suppliers_created,
        users_created=summary.users_created,
        account_managers_created=summary.account_managers_created,
    )
    return summary
