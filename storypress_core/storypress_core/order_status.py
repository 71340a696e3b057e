"""Customer-facing labels for payment and fulfillment states."""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel

from storypress_core.models import PaymentStatus
from storypress_core.print_status import PrintStatus


class StatusTone(str, Enum):
    NEUTRAL = "neutral"
    SUCCESS = "success"
    WARNING = "warning"
    DANGER = "danger"


class CustomerStatus(BaseModel):
    """A short label, one sentence of detail and a display tone."""

    label: str
    detail: str
    tone: StatusTone


_PAYMENT_LABELS: dict[PaymentStatus, CustomerStatus] = {
    PaymentStatus.PAID: CustomerStatus(
        label="Paid",
        detail="Your payment was received successfully.",
        tone=StatusTone.SUCCESS,
    ),
    PaymentStatus.FAILED: CustomerStatus(
        label="Payment failed",
        detail="Payment failed. Try checkout again with a different method.",
        tone=StatusTone.DANGER,
    ),
    PaymentStatus.EXPIRED: CustomerStatus(
        label="Checkout expired",
        detail="Your checkout session expired before payment completed.",
        tone=StatusTone.WARNING,
    ),
}

_PENDING_PAYMENT = CustomerStatus(
    label="Pending payment",
    detail="Waiting for payment confirmation.",
    tone=StatusTone.WARNING,
)

_SUBMITTED = CustomerStatus(
    label="Submitted to print",
    detail="Your book has been submitted to the print partner.",
    tone=StatusTone.NEUTRAL,
)
_NEEDS_ATTENTION = CustomerStatus(
    label="Needs attention",
    detail="There is an issue with fulfillment. We are reviewing it.",
    tone=StatusTone.DANGER,
)

_FULFILLMENT_LABELS: dict[PrintStatus, CustomerStatus] = {
    PrintStatus.PENDING_GENERATION: CustomerStatus(
        label="Processing",
        detail="We are preparing your final pages and print files.",
        tone=StatusTone.NEUTRAL,
    ),
    PrintStatus.PDF_READY: CustomerStatus(
        label="Files ready",
        detail="Your print-ready files are complete and queued for print.",
        tone=StatusTone.NEUTRAL,
    ),
    PrintStatus.SUBMITTED_MANUAL: _SUBMITTED,
    PrintStatus.SUBMITTED_API: _SUBMITTED,
    PrintStatus.IN_PRODUCTION: CustomerStatus(
        label="In production",
        detail="Your book is currently being printed.",
        tone=StatusTone.NEUTRAL,
    ),
    PrintStatus.SHIPPED: CustomerStatus(
        label="Shipped",
        detail="Your book is on the way.",
        tone=StatusTone.SUCCESS,
    ),
    PrintStatus.DELIVERED: CustomerStatus(
        label="Delivered",
        detail="Your book was delivered.",
        tone=StatusTone.SUCCESS,
    ),
    PrintStatus.ERRORED: _NEEDS_ATTENTION,
    PrintStatus.FAILED: _NEEDS_ATTENTION,
}

_QUEUED = CustomerStatus(
    label="Queued",
    detail="Your order is in queue for fulfillment.",
    tone=StatusTone.NEUTRAL,
)


def customer_payment_status(status: str | None) -> CustomerStatus:
    """Label for an order's ``payment_status``; unknown values read as pending."""
    try:
        return _PAYMENT_LABELS.get(PaymentStatus(status), _PENDING_PAYMENT)
    except ValueError:
        return _PENDING_PAYMENT


def customer_fulfillment_status(print_status: str | None) -> CustomerStatus:
    """Label for a book's ``print_status``; ``draft`` and unknown values read as queued."""
    try:
        return _FULFILLMENT_LABELS.get(PrintStatus(print_status), _QUEUED)
    except ValueError:
        return _QUEUED
