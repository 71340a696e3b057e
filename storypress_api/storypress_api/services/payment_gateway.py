"""Stripe payment event gateway.

Turns verified Stripe webhook deliveries into order state.  Stripe
delivers at least once, so every event is gated by the idempotency key
``stripe:{event.id}``.  The key is reserved in the same transaction as the
state change it protects:

* a duplicate delivery finds the key and returns without side effects;
* a failure rolls back the state change *and* the reservation, so the
  provider's redelivery gets a clean second attempt.
"""

from __future__ import annotations

import json
import logging
from collections.abc import Awaitable, Callable
from typing import Any

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.models import PaymentStatus, RecordStatus
from storypress_core.print_status import PrintStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import BookRepository, OrderRepository

from storypress_api.config import APISettings
from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.credit_service import CreditLedger
from storypress_api.services.idempotency import IdempotencyScope, IdempotencyService, stripe_event_key
from storypress_api.services.job_queue import JobQueue

logger = logging.getLogger(__name__)

_EventHandler = Callable[[AsyncSession, dict[str, Any]], Awaitable[dict[str, Any]]]


class WebhookVerificationError(ValueError):
    """The webhook request could not be authenticated or parsed."""


class WebhookOutcome(BaseModel):
    """Response body for a processed delivery."""

    received: bool = True
    duplicate: bool | None = None
    ignored: bool | None = None


def _text_or_none(value: Any) -> str | None:
    if isinstance(value, str) and value.strip():
        return value.strip()
    return None


def _shipping_fields(checkout_session: dict[str, Any]) -> dict[str, Any]:
    """Extract shipping contact columns from a Checkout Session.

    ``shipping_details`` wins over ``customer_details`` for the name and
    address; the email falls back to ``customer_email``.
    """
    customer = checkout_session.get("customer_details") or {}
    shipping = checkout_session.get("shipping_details") or {}
    address = shipping.get("address") or customer.get("address")
    return {
        "shipping_name": _text_or_none(shipping.get("name")) or _text_or_none(customer.get("name")),
        "shipping_email": (
            _text_or_none(customer.get("email")) or _text_or_none(checkout_session.get("customer_email"))
        ),
        "shipping_phone": _text_or_none(customer.get("phone")),
        "shipping_address": dict(address) if address else None,
    }


def _object_id(value: Any) -> str | None:
    """Return the id of a Stripe reference that may be expanded."""
    if isinstance(value, dict):
        return _text_or_none(value.get("id"))
    return _text_or_none(value)


class PaymentEventGateway:
    """Verify and apply Stripe webhook events.

    Parameters
    ----------
    session_factory:
        Factory for the processing transaction and the failure audit.
    settings:
        Supplies the webhook secret, credit amounts and the
        auto-generation switch.
    """

    def __init__(self, session_factory: async_sessionmaker[AsyncSession], settings: APISettings) -> None:
        self._session_factory = session_factory
        self._settings = settings
        self._handlers: dict[str, _EventHandler] = {
            "checkout.session.completed": self._on_checkout_completed,
            "checkout.session.expired": self._on_checkout_expired,
            "payment_intent.payment_failed": self._on_payment_failed,
        }

    def _get_stripe(self) -> Any:
        """Lazily import the Stripe library."""
        import stripe

        return stripe

    def verify(self, payload: bytes, signature: str | None) -> dict[str, Any]:
        """Authenticate a delivery and return the event as a plain dict.

        Raises
        ------
        WebhookVerificationError
            The signature header is missing or invalid, or the payload is
            not a Stripe event.
        """
        if not signature:
            raise WebhookVerificationError("Missing stripe-signature header")
        secret = self._settings.stripe_webhook_secret.get_secret_value()
        if not secret:
            raise WebhookVerificationError("Stripe webhook secret is not configured")

        stripe = self._get_stripe()
        try:
            stripe.Webhook.construct_event(payload=payload, sig_header=signature, secret=secret)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        except stripe.SignatureVerificationError as exc:
            logger.warning("Stripe webhook signature verification failed: %s", exc)
            raise WebhookVerificationError("Signature verification failed") from exc

        try:
            event = json.loads(payload)
        except ValueError as exc:
            raise WebhookVerificationError("Invalid payload") from exc
        if not isinstance(event, dict) or not event.get("id"):
            raise WebhookVerificationError("Event has no id")
        return event

    async def handle_event(self, event: dict[str, Any]) -> WebhookOutcome:
        """Apply a verified event exactly once.

        Raises
        ------
        Exception
            Whatever the event handler raised, after the processing
            transaction has been rolled back and a ``failed`` audit entry
            written in its own transaction.
        """
        event_id = str(event["id"])
        event_type = str(event.get("type", ""))
        data_object = (event.get("data") or {}).get("object") or {}
        key = stripe_event_key(event_id)
        handler = self._handlers.get(event_type)

        try:
            async with session_scope(self._session_factory) as session:
                idempotency = IdempotencyService(session)
                if not await idempotency.reserve(key, scope=IdempotencyScope.STRIPE_EVENT):
                    logger.info("Duplicate Stripe event %s (%s)", event_id, event_type)
                    return WebhookOutcome(duplicate=True)

                if handler is None:
                    summary: dict[str, Any] = {"ignored": True}
                    logger.debug("Unhandled Stripe event type: %s", event_type)
                else:
                    summary = await handler(session, data_object)

                await idempotency.complete(key, RecordStatus.SUCCESS)
                await AuditService(session).record(
                    AuditKind.STRIPE_WEBHOOK_EVENT,
                    event_id,
                    RecordStatus.SUCCESS,
                    event_type,
                    payload={"livemode": event.get("livemode"), "created": event.get("created"), **summary},
                    idempotency_key=key,
                )
        except Exception as exc:
            logger.exception("Stripe event %s (%s) failed", event_id, event_type)
            async with session_scope(self._session_factory) as session:
                await AuditService(session).record(
                    AuditKind.STRIPE_WEBHOOK_EVENT,
                    event_id,
                    RecordStatus.FAILED,
                    event_type,
                    error=str(exc) or exc.__class__.__name__,
                )
            raise

        if handler is None:
            return WebhookOutcome(ignored=True)
        return WebhookOutcome()

    # -- event handlers -------------------------------------------------------

    async def _on_checkout_completed(self, session: AsyncSession, checkout: dict[str, Any]) -> dict[str, Any]:
        checkout_session_id = _text_or_none(checkout.get("id"))
        metadata = checkout.get("metadata") or {}
        order_id = _text_or_none(metadata.get("orderId")) or _text_or_none(metadata.get("order_id"))

        orders = OrderRepository(session)
        order = await orders.get(order_id) if order_id else None
        if order is None and checkout_session_id:
            order = await orders.get_by_checkout_session(checkout_session_id)
        if order is None:
            logger.warning(
                "checkout.session.completed for unknown order (metadata=%s, session=%s)",
                order_id,
                checkout_session_id,
            )
            return {"outcome": "order_not_found", "order_id": order_id}

        transitioned = await orders.mark_paid(
            order.id,
            checkout_session_id=checkout_session_id,
            payment_intent_id=_object_id(checkout.get("payment_intent")),
            shipping=_shipping_fields(checkout),
        )
        order = await orders.get(order.id)
        assert order is not None  # noqa: S101
        if order.payment_status != PaymentStatus.PAID.value:
            logger.warning(
                "Ignoring checkout completion for order=%s in status %s",
                order.id,
                order.payment_status,
            )
            return {"outcome": "not_pending", "order_id": order.id}

        book, created = await BookRepository(session).ensure_for_order(
            order.id, print_status=PrintStatus.PENDING_GENERATION.value
        )
        grant = await CreditLedger(session, self._settings).grant_paid_reroll_credits(order.user_id, order.id)

        job_id: str | None = None
        if transitioned and self._settings.auto_generate_after_payment:
            job_id = await JobQueue(session, max_attempts=self._settings.job_max_attempts).enqueue_order_paid(order.id)

        logger.info(
            "Order=%s paid (transitioned=%s book=%s created=%s credits_granted=%s)",
            order.id,
            transitioned,
            book.id,
            created,
            grant.granted,
        )
        return {
            "outcome": "paid",
            "order_id": order.id,
            "book_id": book.id,
            "transitioned": transitioned,
            "credits_granted": grant.granted,
            "job_id": job_id,
        }

    async def _on_checkout_expired(self, session: AsyncSession, checkout: dict[str, Any]) -> dict[str, Any]:
        checkout_session_id = _text_or_none(checkout.get("id"))
        if not checkout_session_id:
            return {"outcome": "no_session_id"}
        updated = await OrderRepository(session).mark_expired_by_checkout_session(checkout_session_id)
        logger.info("Checkout session %s expired (orders updated=%d)", checkout_session_id, updated)
        return {"outcome": "expired", "orders_updated": updated}

    async def _on_payment_failed(self, session: AsyncSession, intent: dict[str, Any]) -> dict[str, Any]:
        payment_intent_id = _text_or_none(intent.get("id"))
        if not payment_intent_id:
            return {"outcome": "no_payment_intent_id"}
        updated = await OrderRepository(session).mark_failed_by_payment_intent(payment_intent_id)
        logger.info("Payment intent %s failed (orders updated=%d)", payment_intent_id, updated)
        return {"outcome": "failed", "orders_updated": updated}
