"""Idempotency-key gate for at-most-once side effects.

A key is reserved with a single ``INSERT ... ON CONFLICT DO NOTHING``;
the affected-row count decides ownership.  No read-before-write and no
lock: concurrent callers with the same key are serialized by the unique
index, and exactly one of them sees ``True``.
"""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncSession
from storypress_core.models import RecordStatus
from storypress_core.state.repository import IdempotencyKeyRepository

logger = logging.getLogger(__name__)


class IdempotencyScope:
    """Namespaces for idempotency keys."""

    STRIPE_EVENT = "stripe_event"
    EMAIL = "email"


def stripe_event_key(event_id: str) -> str:
    return f"stripe:{event_id}"


def email_milestone_key(order_id: str, milestone: str) -> str:
    return f"email:{order_id}:{milestone}"


class IdempotencyService:
    """Reserve and settle idempotency keys within the caller's transaction."""

    def __init__(self, session: AsyncSession) -> None:
        self._repo = IdempotencyKeyRepository(session)

    async def reserve(self, key: str, *, scope: str) -> bool:
        """Claim *key*.  ``False`` means the work was already attempted."""
        acquired = await self._repo.reserve(key, scope=scope)
        if not acquired:
            logger.info("Idempotency key already reserved: %s", key)
        return acquired

    async def complete(self, key: str, status: RecordStatus, *, error: str | None = None) -> None:
        await self._repo.set_status(key, status.value, error_message=error)
