"""Operational audit log for the fulfillment pipeline.

Wraps :class:`AuditEventRepository` with well-known event kinds and a
start/finish interface.  The audit log is history for operators; it is
never consulted to decide whether work may run (that is the job of
:mod:`storypress_api.services.idempotency`).
"""

from __future__ import annotations

import logging
from typing import Any

from sqlalchemy.ext.asyncio import AsyncSession
from storypress_core.models import RecordStatus
from storypress_core.state.repository import AuditEventRepository
from storypress_core.state.tables import AuditEventTable

logger = logging.getLogger(__name__)


# ---------------------------------------------------------------------------
# Kind constants
# ---------------------------------------------------------------------------


class AuditKind:
    """Well-known audit event kinds."""

    STRIPE_WEBHOOK_EVENT = "stripe_webhook_event"
    ORDER_FULFILLMENT = "order_fulfillment"
    ORDER_FULFILLMENT_RETRY = "order_fulfillment_retry"
    PRINT_SUBMIT = "print_submit"
    PRINT_STATUS_REFRESH = "print_status_refresh"
    PRINT_STATUS_MANUAL = "print_status_manual"
    EMAIL_NOTIFICATION = "email_notification"


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class AuditService:
    """Thin wrapper around :class:`AuditEventRepository`.

    Parameters
    ----------
    session:
        The async database session for the current unit of work.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._repo = AuditEventRepository(session)

    async def start(
        self,
        kind: str,
        subject_id: str,
        description: str = "",
        *,
        payload: dict[str, Any] | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Open a ``running`` audit event and return its id."""
        return await self._repo.create(
            kind=kind,
            subject_id=subject_id,
            status=RecordStatus.RUNNING.value,
            description=description,
            payload=payload,
            idempotency_key=idempotency_key,
        )

    async def finish(
        self,
        event_id: str,
        status: RecordStatus,
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
    ) -> None:
        """Move a running event to its terminal *status*."""
        await self._repo.update_status(event_id, status=status.value, payload=payload, error_message=error)

    async def record(
        self,
        kind: str,
        subject_id: str,
        status: RecordStatus,
        description: str = "",
        *,
        payload: dict[str, Any] | None = None,
        error: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Write a single event that is already settled."""
        return await self._repo.create(
            kind=kind,
            subject_id=subject_id,
            status=status.value,
            description=description,
            payload=payload,
            error_message=error,
            idempotency_key=idempotency_key,
        )

    async def history(
        self,
        *,
        kind: str | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditEventTable]:
        return await self._repo.query(kind=kind, subject_id=subject_id, limit=limit)
