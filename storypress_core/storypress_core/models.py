"""Enumerations shared by the state layer and the API services."""

from __future__ import annotations

from enum import Enum


class PaymentStatus(str, Enum):
    """Lifecycle of an order's payment.

    ``pending`` is the only state that may transition; ``paid``, ``failed``
    and ``expired`` are terminal.
    """

    PENDING = "pending"
    PAID = "paid"
    FAILED = "failed"
    EXPIRED = "expired"


class RecordStatus(str, Enum):
    """Status vocabulary for idempotency keys and audit events."""

    PENDING = "pending"
    RUNNING = "running"
    SUCCESS = "success"
    FAILED = "failed"


class LedgerEntryType(str, Enum):
    """Kinds of credit ledger entries."""

    STARTER_GRANT = "starter_grant"
    GENERATION_DEBIT = "generation_debit"
    PAID_GRANT = "paid_grant"


class CreditOperation(str, Enum):
    """Generation steps that consume starter credits."""

    CHARACTER_GENERATION = "character_generation"
    FINAL_PAGE_GENERATION = "final_page_generation"


class JobStatus(str, Enum):
    """States of a durable background job."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    DEAD = "dead"


class AssetType(str, Enum):
    """Generated asset types referenced by the fulfillment pipeline."""

    BOOK_PDF_INTERIOR = "book_pdf_interior"
    BOOK_PDF_COVER = "book_pdf_cover"
    FINAL_COVER_IMAGE = "final_cover_image"
    STORY_COVER = "story_cover"
    SPREAD_IMAGE = "spread_image"
