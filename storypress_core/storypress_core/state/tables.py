"""SQLAlchemy 2.0 ORM table definitions for the StoryPress state store.

All tables use the ``Mapped`` / ``mapped_column`` declaration style.  The
``Base`` declarative base is exported for ``create_all`` in local mode and
for the repository layer.
"""

from __future__ import annotations

import uuid
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import (
    JSON,
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy.types import TypeDecorator

# Cross-dialect JSON type: JSONB on PostgreSQL, plain JSON (TEXT) on SQLite.
_JsonType = JSONB().with_variant(JSON(), "sqlite")


class UTCDateTime(TypeDecorator):
    """Timezone-aware ``DateTime`` that always yields UTC-aware values.

    SQLite drops tzinfo on the way back; ordering by ``created_at`` in
    Python must never compare naive and aware datetimes.
    """

    impl = DateTime(timezone=True)
    cache_ok = True

    def process_result_value(self, value: datetime | None, dialect: Any) -> datetime | None:
        if value is not None and value.tzinfo is None:
            return value.replace(tzinfo=UTC)
        return value


def _utcnow() -> datetime:
    """Return the current UTC timestamp (timezone-aware)."""
    return datetime.now(UTC)


def _new_id() -> str:
    return uuid.uuid4().hex


# ---------------------------------------------------------------------------
# Declarative base
# ---------------------------------------------------------------------------


class Base(DeclarativeBase):
    """Shared declarative base for all StoryPress tables."""


# ---------------------------------------------------------------------------
# Users and stories (content pipeline owns writes except lazy user creation)
# ---------------------------------------------------------------------------


class UserTable(Base):
    """Customer account."""

    __tablename__ = "users"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    email: Mapped[str] = mapped_column(String(320), nullable=False)
    role: Mapped[str] = mapped_column(String(32), nullable=False, default="customer")
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)


class StoryTable(Base):
    """A personalized story authored by the content pipeline."""

    __tablename__ = "stories"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    title: Mapped[str | None] = mapped_column(String(512), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_stories_user", "user_id"),)


class StorySceneTable(Base):
    """One scene (spread) of a story."""

    __tablename__ = "story_scenes"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    story_id: Mapped[str] = mapped_column(String(64), ForeignKey("stories.id"), nullable=False)
    scene_number: Mapped[int] = mapped_column(Integer, nullable=False)
    text: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (UniqueConstraint("story_id", "scene_number", name="uq_story_scene_number"),)


class FinalPageTable(Base):
    """A versioned illustrated page for a scene.

    At most one version per scene is approved at any time; the approve
    operation in :class:`~storypress_core.state.repository.StoryRepository`
    clears sibling approvals first.
    """

    __tablename__ = "final_pages"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    scene_id: Mapped[str] = mapped_column(String(64), ForeignKey("story_scenes.id"), nullable=False)
    image_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    version: Mapped[int] = mapped_column(Integer, nullable=False, default=1)
    is_approved: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (
        UniqueConstraint("scene_id", "version", name="uq_final_page_scene_version"),
        CheckConstraint("version >= 1", name="ck_final_page_version_positive"),
        Index("ix_final_pages_scene", "scene_id"),
    )


class GeneratedAssetTable(Base):
    """Append-only record of a produced file and its storage location."""

    __tablename__ = "generated_assets"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    type: Mapped[str] = mapped_column(String(64), nullable=False)
    entity_id: Mapped[str] = mapped_column(String(64), nullable=False)
    storage_url: Mapped[str] = mapped_column(String(2048), nullable=False)
    mime_type: Mapped[str | None] = mapped_column(String(128), nullable=True)
    file_size_bytes: Mapped[int | None] = mapped_column(Integer, nullable=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_generated_assets_entity_type", "entity_id", "type", "created_at"),)


# ---------------------------------------------------------------------------
# Orders and books
# ---------------------------------------------------------------------------


class OrderTable(Base):
    """A customer's payment record for one book."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), nullable=False)
    story_id: Mapped[str | None] = mapped_column(String(64), ForeignKey("stories.id"), nullable=True)
    payment_status: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    currency: Mapped[str] = mapped_column(String(8), nullable=False, default="usd")
    stripe_checkout_session_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    stripe_payment_intent_id: Mapped[str | None] = mapped_column(String(256), nullable=True)
    shipping_name: Mapped[str | None] = mapped_column(String(256), nullable=True)
    shipping_email: Mapped[str | None] = mapped_column(String(320), nullable=True)
    shipping_phone: Mapped[str | None] = mapped_column(String(64), nullable=True)
    shipping_address: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        Index("ix_orders_user_status", "user_id", "payment_status"),
        Index("ix_orders_story", "story_id", "created_at"),
        Index("ix_orders_checkout_session", "stripe_checkout_session_id"),
        Index("ix_orders_payment_intent", "stripe_payment_intent_id"),
    )


class BookTable(Base):
    """Fulfillment record for an order: PDF location and print status."""

    __tablename__ = "books"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    order_id: Mapped[str] = mapped_column(String(64), ForeignKey("orders.id"), nullable=False, unique=True)
    pdf_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    print_status: Mapped[str] = mapped_column(String(32), nullable=False, default="draft")
    vendor_job_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    tracking_url: Mapped[str | None] = mapped_column(String(2048), nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class UserCreditsTable(Base):
    """Materialized per-user balance, kept in lock-step with the ledger."""

    __tablename__ = "user_credits"

    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), primary_key=True)
    starter_credits_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    paid_credits_cents: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("starter_credits_cents >= 0", name="ck_user_credits_starter_non_negative"),
        CheckConstraint("paid_credits_cents >= 0", name="ck_user_credits_paid_non_negative"),
    )


class CreditLedgerEntryTable(Base):
    """Append-only credit transaction; the source of truth for balances."""

    __tablename__ = "credit_ledger_entries"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    user_id: Mapped[str] = mapped_column(String(64), ForeignKey("users.id"), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    entry_type: Mapped[str] = mapped_column(String(32), nullable=False)
    amount_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    starter_balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    paid_balance_after_cents: Mapped[int] = mapped_column(Integer, nullable=False)
    idempotency_key: Mapped[str | None] = mapped_column(String(256), nullable=True, unique=True)
    metadata_json: Mapped[dict[str, Any] | None] = mapped_column("metadata", _JsonType, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)

    __table_args__ = (Index("ix_credit_ledger_user_created", "user_id", "created_at"),)


# ---------------------------------------------------------------------------
# Idempotency keys and audit events
# ---------------------------------------------------------------------------


class IdempotencyKeyTable(Base):
    """Insert-or-fail gate for at-most-once work."""

    __tablename__ = "idempotency_keys"

    key: Mapped[str] = mapped_column(String(256), primary_key=True)
    scope: Mapped[str] = mapped_column(String(64), nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="running")
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)


class AuditEventTable(Base):
    """Operational history of pipeline work, optionally tied to an idempotency key."""

    __tablename__ = "audit_events"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    kind: Mapped[str] = mapped_column(String(64), nullable=False)
    subject_id: Mapped[str] = mapped_column(String(256), nullable=False)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    payload: Mapped[dict[str, Any] | None] = mapped_column(_JsonType, nullable=True)
    error_message: Mapped[str | None] = mapped_column(Text, nullable=True)
    idempotency_key: Mapped[str | None] = mapped_column(
        String(256), ForeignKey("idempotency_keys.key"), nullable=True
    )
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_audit_events_kind_subject", "kind", "subject_id", "created_at"),)


# ---------------------------------------------------------------------------
# Durable jobs
# ---------------------------------------------------------------------------


class JobTable(Base):
    """At-least-once background job."""

    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True, default=_new_id)
    name: Mapped[str] = mapped_column(String(128), nullable=False)
    payload: Mapped[dict[str, Any]] = mapped_column(_JsonType, nullable=False)
    status: Mapped[str] = mapped_column(String(16), nullable=False, default="queued")
    attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    max_attempts: Mapped[int] = mapped_column(Integer, nullable=False, default=5)
    run_after: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    locked_at: Mapped[datetime | None] = mapped_column(UTCDateTime(), nullable=True)
    last_error: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(UTCDateTime(), default=_utcnow, onupdate=_utcnow, nullable=False)

    __table_args__ = (Index("ix_jobs_status_run_after", "status", "run_after"),)
