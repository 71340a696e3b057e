"""Shared Pydantic request and response models for API endpoints.

Routers import from here so the OpenAPI document describes one model per
resource.  ``from_attributes`` lets responses be built straight from
SQLAlchemy rows.
"""

from __future__ import annotations

from datetime import datetime
from typing import Any

from pydantic import BaseModel, ConfigDict, Field
from storypress_core.models import CreditOperation
from storypress_core.order_status import CustomerStatus

# ---------------------------------------------------------------------------
# Orders and books
# ---------------------------------------------------------------------------


class OrderResponse(BaseModel):
    """An order as operators see it."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    user_id: str
    story_id: str | None = None
    payment_status: str
    amount_cents: int
    currency: str
    stripe_checkout_session_id: str | None = None
    stripe_payment_intent_id: str | None = None
    shipping_name: str | None = None
    shipping_email: str | None = None
    shipping_phone: str | None = None
    shipping_address: dict[str, Any] | None = None
    created_at: datetime
    updated_at: datetime


class BookResponse(BaseModel):
    """A book's print files and print status."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    order_id: str
    pdf_url: str | None = None
    print_status: str
    vendor_job_id: str | None = None
    tracking_url: str | None = None
    created_at: datetime
    updated_at: datetime


class AuditEventResponse(BaseModel):
    """One audit log entry."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    kind: str
    subject_id: str
    description: str = ""
    status: str
    payload: dict[str, Any] | None = None
    error_message: str | None = None
    idempotency_key: str | None = None
    created_at: datetime
    updated_at: datetime


class OrderDetailResponse(BaseModel):
    """Response for ``GET /admin/orders/{order_id}``."""

    order: OrderResponse
    book: BookResponse | None = None
    payment_status: CustomerStatus
    fulfillment_status: CustomerStatus
    history: list[AuditEventResponse] = Field(default_factory=list)


class RetryProcessingResponse(BaseModel):
    """Response for ``POST /admin/orders/{order_id}/retry-processing``."""

    order_id: str
    job_id: str
    audit_event_id: str


class ManualStatusRequest(BaseModel):
    """Request body for ``POST /admin/books/{book_id}/manual-status``."""

    status: str = Field(..., min_length=1, max_length=64)
    vendor_job_id: str | None = Field(default=None, max_length=128)
    tracking_url: str | None = Field(default=None, max_length=2048)


class FinalPageResponse(BaseModel):
    """A final-page version after approval."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    scene_id: str
    image_url: str | None = None
    version: int
    is_approved: bool
    created_at: datetime


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class ConsumeCreditRequest(BaseModel):
    """Request body for ``POST /credits/{user_id}/consume``."""

    operation: CreditOperation


class LedgerEntryResponse(BaseModel):
    """One credit ledger row."""

    model_config = ConfigDict(from_attributes=True)

    id: str
    entry_type: str
    amount_cents: int
    starter_balance_after_cents: int
    paid_balance_after_cents: int
    order_id: str | None = None
    idempotency_key: str | None = None
    metadata: dict[str, Any] | None = Field(default=None, validation_alias="metadata_json")
    created_at: datetime


class LedgerResponse(BaseModel):
    """Response for ``GET /credits/{user_id}/ledger``."""

    user_id: str
    entries: list[LedgerEntryResponse] = Field(default_factory=list)
    total: int = 0
