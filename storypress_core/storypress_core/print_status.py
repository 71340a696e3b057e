"""Internal print-status state machine and vendor status mapping."""

from __future__ import annotations

import re
from enum import Enum


class PrintStatus(str, Enum):
    """Lifecycle of a book from generation to delivery.

    ``pending_generation`` and ``errored`` are owned by the fulfillment
    orchestrator; the remaining states are vendor-facing.
    """

    PENDING_GENERATION = "pending_generation"
    ERRORED = "errored"
    DRAFT = "draft"
    PDF_READY = "pdf_ready"
    SUBMITTED_MANUAL = "submitted_manual"
    SUBMITTED_API = "submitted_api"
    IN_PRODUCTION = "in_production"
    SHIPPED = "shipped"
    DELIVERED = "delivered"
    FAILED = "failed"


# Evaluated in order; the first rule with a matching substring wins.
_VENDOR_STATUS_RULES: tuple[tuple[tuple[str, ...], PrintStatus], ...] = (
    (("error", "failed"), PrintStatus.FAILED),
    (("delivered",), PrintStatus.DELIVERED),
    (("shipped", "in_transit"), PrintStatus.SHIPPED),
    (("printing", "production", "manufacturing"), PrintStatus.IN_PRODUCTION),
)

_WHITESPACE_RE = re.compile(r"\s+")


def map_vendor_status(raw_status: str | None) -> PrintStatus:
    """Map the vendor's free-text job status onto :class:`PrintStatus`.

    Matching is case-insensitive substring matching after runs of
    whitespace collapse to ``_``, so "In Transit" meets the ``in_transit``
    rule.  Anything that does not match a rule, including an empty status,
    is ``submitted_api``.

    >>> map_vendor_status("In Production")
    <PrintStatus.IN_PRODUCTION: 'in_production'>
    >>> map_vendor_status("")
    <PrintStatus.SUBMITTED_API: 'submitted_api'>
    """
    text = _WHITESPACE_RE.sub("_", (raw_status or "").lower())
    for needles, status in _VENDOR_STATUS_RULES:
        if any(needle in text for needle in needles):
            return status
    return PrintStatus.SUBMITTED_API


def normalize_manual_status(raw_status: str) -> PrintStatus:
    """Normalize an operator-entered status such as ``"In Production"``.

    Raises
    ------
    ValueError
        If the normalized text is not a known print status.
    """
    normalized = _WHITESPACE_RE.sub("_", raw_status.strip().lower())
    try:
        return PrintStatus(normalized)
    except ValueError:
        allowed = ", ".join(s.value for s in PrintStatus)
        raise ValueError(f"Unknown print status {raw_status!r}; expected one of: {allowed}") from None
