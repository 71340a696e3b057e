"""Initial StoryPress schema: content, orders, books, credits, audit and jobs.

Revision ID: 001
Revises:
Create Date: 2026-09-28 00:00:00.000000+00:00

"""

from __future__ import annotations

from collections.abc import Sequence

import sqlalchemy as sa
from alembic import op
from sqlalchemy.dialects import postgresql

revision: str = "001"
down_revision: str | None = None
branch_labels: str | Sequence[str] | None = None
depends_on: str | Sequence[str] | None = None

_Json = sa.JSON().with_variant(postgresql.JSONB(), "postgresql")
_Timestamp = sa.DateTime(timezone=True)
_NOW = sa.text("CURRENT_TIMESTAMP")


def _created_at() -> sa.Column:
    return sa.Column("created_at", _Timestamp, nullable=False, server_default=_NOW)


def _updated_at() -> sa.Column:
    return sa.Column("updated_at", _Timestamp, nullable=False, server_default=_NOW)


def upgrade() -> None:
    op.create_table(
        "users",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("email", sa.String(320), nullable=False),
        sa.Column("role", sa.String(32), nullable=False, server_default="customer"),
        _created_at(),
    )

    op.create_table(
        "stories",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("title", sa.String(512), nullable=True),
        _created_at(),
    )
    op.create_index("ix_stories_user", "stories", ["user_id"])

    op.create_table(
        "story_scenes",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("story_id", sa.String(64), sa.ForeignKey("stories.id"), nullable=False),
        sa.Column("scene_number", sa.Integer(), nullable=False),
        sa.Column("text", sa.Text(), nullable=False, server_default=""),
        sa.UniqueConstraint("story_id", "scene_number", name="uq_story_scene_number"),
    )

    op.create_table(
        "final_pages",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("scene_id", sa.String(64), sa.ForeignKey("story_scenes.id"), nullable=False),
        sa.Column("image_url", sa.String(2048), nullable=True),
        sa.Column("version", sa.Integer(), nullable=False, server_default="1"),
        sa.Column("is_approved", sa.Boolean(), nullable=False, server_default=sa.false()),
        _created_at(),
        sa.UniqueConstraint("scene_id", "version", name="uq_final_page_scene_version"),
        sa.CheckConstraint("version >= 1", name="ck_final_page_version_positive"),
    )
    op.create_index("ix_final_pages_scene", "final_pages", ["scene_id"])

    op.create_table(
        "generated_assets",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("type", sa.String(64), nullable=False),
        sa.Column("entity_id", sa.String(64), nullable=False),
        sa.Column("storage_url", sa.String(2048), nullable=False),
        sa.Column("mime_type", sa.String(128), nullable=True),
        sa.Column("file_size_bytes", sa.Integer(), nullable=True),
        sa.Column("metadata", _Json, nullable=True),
        _created_at(),
    )
    op.create_index("ix_generated_assets_entity_type", "generated_assets", ["entity_id", "type", "created_at"])

    op.create_table(
        "orders",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), nullable=False),
        sa.Column("story_id", sa.String(64), sa.ForeignKey("stories.id"), nullable=True),
        sa.Column("payment_status", sa.String(16), nullable=False, server_default="pending"),
        sa.Column("amount_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("currency", sa.String(8), nullable=False, server_default="usd"),
        sa.Column("stripe_checkout_session_id", sa.String(256), nullable=True),
        sa.Column("stripe_payment_intent_id", sa.String(256), nullable=True),
        sa.Column("shipping_name", sa.String(256), nullable=True),
        sa.Column("shipping_email", sa.String(320), nullable=True),
        sa.Column("shipping_phone", sa.String(64), nullable=True),
        sa.Column("shipping_address", _Json, nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_orders_user_status", "orders", ["user_id", "payment_status"])
    op.create_index("ix_orders_story", "orders", ["story_id", "created_at"])
    op.create_index("ix_orders_checkout_session", "orders", ["stripe_checkout_session_id"])
    op.create_index("ix_orders_payment_intent", "orders", ["stripe_payment_intent_id"])

    op.create_table(
        "books",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("order_id", sa.String(64), sa.ForeignKey("orders.id"), nullable=False, unique=True),
        sa.Column("pdf_url", sa.String(2048), nullable=True),
        sa.Column("print_status", sa.String(32), nullable=False, server_default="draft"),
        sa.Column("vendor_job_id", sa.String(128), nullable=True),
        sa.Column("tracking_url", sa.String(2048), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "user_credits",
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), primary_key=True),
        sa.Column("starter_credits_cents", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("paid_credits_cents", sa.Integer(), nullable=False, server_default="0"),
        _updated_at(),
        sa.CheckConstraint("starter_credits_cents >= 0", name="ck_user_credits_starter_non_negative"),
        sa.CheckConstraint("paid_credits_cents >= 0", name="ck_user_credits_paid_non_negative"),
    )

    op.create_table(
        "credit_ledger_entries",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("user_id", sa.String(64), sa.ForeignKey("users.id"), nullable=False),
        sa.Column("order_id", sa.String(64), nullable=True),
        sa.Column("entry_type", sa.String(32), nullable=False),
        sa.Column("amount_cents", sa.Integer(), nullable=False),
        sa.Column("starter_balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("paid_balance_after_cents", sa.Integer(), nullable=False),
        sa.Column("idempotency_key", sa.String(256), nullable=True, unique=True),
        sa.Column("metadata", _Json, nullable=True),
        _created_at(),
    )
    op.create_index("ix_credit_ledger_user_created", "credit_ledger_entries", ["user_id", "created_at"])

    op.create_table(
        "idempotency_keys",
        sa.Column("key", sa.String(256), primary_key=True),
        sa.Column("scope", sa.String(64), nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="running"),
        sa.Column("error_message", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )

    op.create_table(
        "audit_events",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("kind", sa.String(64), nullable=False),
        sa.Column("subject_id", sa.String(256), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(16), nullable=False),
        sa.Column("payload", _Json, nullable=True),
        sa.Column("error_message", sa.Text(), nullable=True),
        sa.Column("idempotency_key", sa.String(256), sa.ForeignKey("idempotency_keys.key"), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_audit_events_kind_subject", "audit_events", ["kind", "subject_id", "created_at"])

    op.create_table(
        "jobs",
        sa.Column("id", sa.String(64), primary_key=True),
        sa.Column("name", sa.String(128), nullable=False),
        sa.Column("payload", _Json, nullable=False),
        sa.Column("status", sa.String(16), nullable=False, server_default="queued"),
        sa.Column("attempts", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("max_attempts", sa.Integer(), nullable=False, server_default="5"),
        sa.Column("run_after", _Timestamp, nullable=False, server_default=_NOW),
        sa.Column("locked_at", _Timestamp, nullable=True),
        sa.Column("last_error", sa.Text(), nullable=True),
        _created_at(),
        _updated_at(),
    )
    op.create_index("ix_jobs_status_run_after", "jobs", ["status", "run_after"])


def downgrade() -> None:
    for table in (
        "jobs",
        "audit_events",
        "idempotency_keys",
        "credit_ledger_entries",
        "user_credits",
        "books",
        "orders",
        "generated_assets",
        "final_pages",
        "story_scenes",
        "stories",
        "users",
    ):
        op.drop_table(table)
