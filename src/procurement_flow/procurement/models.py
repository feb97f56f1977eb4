"""
Procurement Domain Models

Suppliers, requests and quotations as they are persisted in the domain
store, plus the input contracts of the two human tasks.

Fun fact: The oldest surviving purchase order is a Sumerian clay tablet from
around 2000 BC ordering copper from a merchant named Ea-nasir. His customer
complained about the quality - supplier review is as old as writing!
"""

from datetime import date
from decimal import Decimal
from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class RequestStatus(str, Enum):
    """
    Observable procurement request states

    Finite state machine:
    (Created) → QUOTATIONS_PENDING → REVIEW_PENDING → COMPLETED
                                                   ↘ ABORTED

    "Created" is transient and never persisted: quotations exist before the
    request becomes visible.
    """

    QUOTATIONS_PENDING = "Pending for quotations"
    REVIEW_PENDING = "Pending for review"
    COMPLETED = "Completed"
    ABORTED = "Aborted"

    @property
    def is_terminal(self) -> bool:
        return self in (RequestStatus.COMPLETED, RequestStatus.ABORTED)


class QuotationStatus(str, Enum):
    """Quotation lifecycle: PENDING → COMPLETED, exactly once"""

    PENDING = "Pending"
    COMPLETED = "Completed"


class Supplier(BaseModel):
    """A supplier that can be invited to quote (read-only for the workflow)"""

    persistence_id: int | None = Field(default=None, description="Domain store id")
    name: str = Field(..., min_length=1)
    description: str = ""


class User(BaseModel):
    """Identity directory entry"""

    persistence_id: int | None = None
    username: str = Field(..., min_length=1)
    display_name: str = Field(..., min_length=1)


class SupplierAccountManager(BaseModel):
    """Authorizes a user to act on behalf of a supplier"""

    persistence_id: int | None = None
    supplier_id: int
    username: str = Field(..., min_length=1)


class Request(BaseModel):
    """
    A procurement request

    Invariants:
    - completion_date is set iff the status is terminal
    - selected_supplier_id is set iff the status is COMPLETED
    """

    persistence_id: int | None = None
    case_id: int = Field(..., ge=1, description="Process instance driving this request")
    summary: str
    description: str = ""
    creation_date: date
    created_by: str = Field(..., description="Display name of the requester")
    status: RequestStatus = RequestStatus.QUOTATIONS_PENDING
    completion_date: date | None = None
    selected_supplier_id: int | None = None
    storage_url: str | None = Field(default=None, description="Opaque, passed through")

    @model_validator(mode="after")
    def check_terminal_fields(self) -> "Request":
        if self.status.is_terminal != (self.completion_date is not None):
            raise ValueError(
                f"completion_date must be set exactly when the request is terminal "
                f"(status={self.status.value})"
            )
        if (self.status == RequestStatus.COMPLETED) != (self.selected_supplier_id is not None):
            raise ValueError("selected_supplier_id must be set exactly when completed")
        return self


class Quotation(BaseModel):
    """One supplier's answer to one request"""

    persistence_id: int | None = None
    request_id: int
    supplier_id: int
    status: QuotationStatus = QuotationStatus.PENDING
    has_supplier_accepted: bool = False
    proposed_price: Decimal | None = Field(default=None, ge=0)
    comments: str | None = None


# ============================================================================
# Task input contracts
# ============================================================================


class QuotationInput(BaseModel):
    """
    Input of a "Complete quotation" task

    Accepts both snake_case and the camelCase names used by task forms
    (hasSupplierAccepted, price, comments). A supplier who accepts must
    quote a price; a declining supplier may omit it.
    """

    has_supplier_accepted: bool = Field(..., alias="hasSupplierAccepted")
    price: Decimal | None = Field(default=None, ge=0)
    comments: str = ""

    model_config = {"populate_by_name": True, "frozen": True}

    @model_validator(mode="after")
    def accepted_quotation_has_price(self) -> "QuotationInput":
        if self.has_supplier_accepted and self.price is None:
            raise ValueError("price is required when the supplier accepts")
        return self


class ReviewInput(BaseModel):
    """
    Input of the "Review quotations & select supplier" task

    An absent or blank selection means "select nobody" and aborts the request.
    """

    selected_supplier_id: str | None = Field(default=None, alias="selectedSupplierId")

    model_config = {"populate_by_name": True, "frozen": True}

    @field_validator("selected_supplier_id", mode="before")
    @classmethod
    def normalize_selection(cls, v: object) -> str | None:
        if v is None:
            return None
        text = str(v).strip()
        return text or None
