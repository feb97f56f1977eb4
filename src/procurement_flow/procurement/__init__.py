"""
Procurement Module

The procurement request process: suppliers quote in parallel, the requester
reviews and selects. The state machine lives in procurement.process; only
the models are re-exported here so the domain store can import them freely.
"""

from procurement_flow.procurement.models import (
    Quotation,
    QuotationInput,
    QuotationStatus,
    Request,
    RequestStatus,
    ReviewInput,
    Supplier,
    SupplierAccountManager,
    User,
)

__all__ = [
    "Quotation",
    "QuotationInput",
    "QuotationStatus",
    "Request",
    "RequestStatus",
    "ReviewInput",
    "Supplier",
    "SupplierAccountManager",
    "User",
]
