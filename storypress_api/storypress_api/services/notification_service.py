"""Milestone emails for order fulfillment.

Each (order, milestone) pair gets at most one email.  The slot is claimed
by reserving the idempotency key ``email:{order_id}:{milestone}`` and
committing *before* contacting the email provider, so a crash mid-send
can never lead to a second email.  The price of that guarantee is that a
failed send is terminal: the slot cannot be reused and an operator has to
follow up by hand.
"""

from __future__ import annotations

import logging
from enum import Enum
from typing import Literal

import httpx
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.errors import EmailDeliveryError
from storypress_core.models import RecordStatus
from storypress_core.print_status import PrintStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import CreditRepository, OrderRepository, StoryRepository

from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.idempotency import IdempotencyScope, IdempotencyService, email_milestone_key

logger = logging.getLogger(__name__)

RESEND_API_URL = "https://api.resend.com/emails"


class Milestone(str, Enum):
    """Customer-visible fulfillment events that earn one email each."""

    PROCESSING_COMPLETE = "processing_complete"
    PRINTING = "printing"
    SHIPPED = "shipped"


_STATUS_MILESTONES: dict[PrintStatus, Milestone] = {
    PrintStatus.IN_PRODUCTION: Milestone.PRINTING,
    PrintStatus.SHIPPED: Milestone.SHIPPED,
}


class EmailMessage(BaseModel):
    subject: str
    text: str


class NotificationResult(BaseModel):
    """What happened to one milestone email request."""

    order_id: str
    milestone: Milestone
    status: Literal["sent", "skipped", "failed"]
    reason: str | None = None


def build_milestone_email(
    milestone: Milestone,
    *,
    story_title: str | None,
    tracking_url: str | None = None,
) -> EmailMessage:
    """Return the subject and plain-text body for *milestone*."""
    title = story_title or "your book"
    if milestone == Milestone.PROCESSING_COMPLETE:
        return EmailMessage(
            subject=f"Your book is ready: {title}",
            text=(
                f"Great news! We have finished preparing {title} for print.\n\n"
                "We will let you know as soon as it goes into production."
            ),
        )
    if milestone == Milestone.PRINTING:
        return EmailMessage(
            subject=f"Now printing: {title}",
            text=f"{title} is now being printed. We will email you again when it ships.",
        )
    lines = [f"{title} is on its way!"]
    if tracking_url:
        lines.append(f"Track your package: {tracking_url}")
    lines.append("Thank you for creating with us.")
    return EmailMessage(subject=f"Your book has shipped: {title}", text="\n\n".join(lines))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------


class ResendEmailTransport:
    """Send transactional email through the Resend HTTP API.

    Parameters
    ----------
    api_key:
        Resend API key.  An empty key leaves the transport unconfigured.
    sender:
        ``From`` address.
    http_client:
        Optional pre-configured ``httpx.AsyncClient``.  If *None*, a new
        client is created and owned by this instance.
    """

    def __init__(
        self,
        api_key: str,
        sender: str,
        *,
        http_client: httpx.AsyncClient | None = None,
        timeout: float = 15.0,
        api_url: str = RESEND_API_URL,
    ) -> None:
        self._api_key = api_key
        self._sender = sender
        self._api_url = api_url
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout)

    @property
    def configured(self) -> bool:
        return bool(self._api_key and self._sender)

    async def send(self, *, to: str, subject: str, text: str) -> str | None:
        """Send one email and return the provider message id.

        Raises
        ------
        EmailDeliveryError
            If the provider rejects the request or cannot be reached.
        """
        try:
            response = await self._client.post(
                self._api_url,
                headers={"Authorization": f"Bearer {self._api_key}"},
                json={"from": self._sender, "to": [to], "subject": subject, "text": text},
            )
        except httpx.HTTPError as exc:
            raise EmailDeliveryError(f"Email provider unreachable: {exc}") from exc
        if response.status_code >= 400:
            raise EmailDeliveryError(f"Email provider returned HTTP {response.status_code}: {response.text[:500]}")
        try:
            return response.json().get("id")
        except ValueError:
            return None

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Dispatcher
# ---------------------------------------------------------------------------


class NotificationDispatcher:
    """At-most-once milestone email sender.

    Parameters
    ----------
    session_factory:
        Factory for the short reservation and settlement transactions.
    transport:
        Email transport; when unconfigured, slots are consumed without
        sending.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        transport: ResendEmailTransport,
    ) -> None:
        self._session_factory = session_factory
        self._transport = transport

    async def send_order_milestone_email(
        self,
        order_id: str,
        milestone: Milestone,
        *,
        tracking_url: str | None = None,
    ) -> NotificationResult:
        """Send the *milestone* email for *order_id* at most once.

        A repeated call for the same pair returns ``skipped`` with reason
        ``duplicate`` and writes nothing.  Delivery failures are recorded
        as ``failed`` and returned, never raised.
        """
        key = email_milestone_key(order_id, milestone.value)

        async with session_scope(self._session_factory) as session:
            order = await OrderRepository(session).get(order_id)
            if order is None:
                logger.warning("Milestone %s requested for unknown order=%s", milestone.value, order_id)
                return NotificationResult(
                    order_id=order_id, milestone=milestone, status="skipped", reason="order_not_found"
                )

            if not await IdempotencyService(session).reserve(key, scope=IdempotencyScope.EMAIL):
                return NotificationResult(order_id=order_id, milestone=milestone, status="skipped", reason="duplicate")

            story = await StoryRepository(session).get(order.story_id) if order.story_id else None
            user = await CreditRepository(session).get_user(order.user_id)
            recipient = order.shipping_email or (user.email if user is not None else None)
            if recipient and recipient.endswith("@placeholder.local"):
                recipient = None
            event_id = await AuditService(session).start(
                AuditKind.EMAIL_NOTIFICATION,
                order_id,
                f"{milestone.value} email",
                payload={"milestone": milestone.value},
                idempotency_key=key,
            )

        if not self._transport.configured:
            return await self._settle(event_id, key, order_id, milestone, "skipped", reason="not_configured")
        if not recipient:
            return await self._settle(event_id, key, order_id, milestone, "skipped", reason="no_recipient")

        message = build_milestone_email(
            milestone,
            story_title=story.title if story is not None else None,
            tracking_url=tracking_url,
        )
        try:
            message_id = await self._transport.send(to=recipient, subject=message.subject, text=message.text)
        except EmailDeliveryError as exc:
            logger.error("Milestone email %s for order=%s failed: %s", milestone.value, order_id, exc)
            return await self._settle(event_id, key, order_id, milestone, "failed", reason=str(exc))

        logger.info("Sent %s email for order=%s", milestone.value, order_id)
        return await self._settle(event_id, key, order_id, milestone, "sent", message_id=message_id)

    async def notify_print_status_change(
        self,
        order_id: str,
        previous: PrintStatus | str | None,
        current: PrintStatus | str,
        *,
        tracking_url: str | None = None,
    ) -> NotificationResult | None:
        """Send the milestone implied by a print-status transition, if any."""
        current_status = PrintStatus(current)
        if previous is not None and PrintStatus(previous) == current_status:
            return None
        milestone = _STATUS_MILESTONES.get(current_status)
        if milestone is None:
            return None
        return await self.send_order_milestone_email(order_id, milestone, tracking_url=tracking_url)

    async def _settle(
        self,
        event_id: str,
        key: str,
        order_id: str,
        milestone: Milestone,
        outcome: Literal["sent", "skipped", "failed"],
        *,
        reason: str | None = None,
        message_id: str | None = None,
    ) -> NotificationResult:
        status = RecordStatus.FAILED if outcome == "failed" else RecordStatus.SUCCESS
        payload: dict[str, str] = {"outcome": outcome}
        if reason and outcome == "skipped":
            payload["skipped"] = reason
        if message_id:
            payload["message_id"] = message_id
        async with session_scope(self._session_factory) as session:
            error = reason if outcome == "failed" else None
            await IdempotencyService(session).complete(key, status, error=error)
            await AuditService(session).finish(event_id, status, payload=payload, error=error)
        return NotificationResult(order_id=order_id, milestone=milestone, status=outcome, reason=reason)
