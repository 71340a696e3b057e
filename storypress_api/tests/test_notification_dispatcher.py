"""Tests for storypress_api/services/notification_service.py

Covers:
- One email per (order, milestone), also under concurrent calls
- Recipient fallback from shipping email to the user's email
- Placeholder addresses are never emailed
- Unconfigured transport and provider failures consume the slot
- Print-status transitions map onto milestones
- Milestone email content
"""

from __future__ import annotations

import asyncio

import pytest
from storypress_core.models import PaymentStatus
from storypress_core.print_status import PrintStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import IdempotencyKeyRepository

from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.notification_service import (
    Milestone,
    NotificationDispatcher,
    ResendEmailTransport,
    build_milestone_email,
)


async def _email_events(session_factory, order_id: str = "order-1"):
    async with session_scope(session_factory) as session:
        return await AuditService(session).history(kind=AuditKind.EMAIL_NOTIFICATION, subject_id=order_id)


class TestSendMilestone:
    @pytest.mark.asyncio
    async def test_sends_once(self, notifier: NotificationDispatcher, session_factory, seed, fake_resend):
        await seed.paid_order_with_story()

        first = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED, tracking_url="https://t.test/1")
        second = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED)

        assert first.status == "sent"
        assert second.status == "skipped"
        assert second.reason == "duplicate"
        assert len(fake_resend.sent) == 1
        sent = fake_resend.sent[0]
        assert sent["from"] == "StoryPress <books@storypress.test>"
        assert sent["to"] == ["reader@example.com"]
        assert "https://t.test/1" in sent["text"]

        events = await _email_events(session_factory)
        assert len(events) == 1
        assert events[0].status == "success"
        assert events[0].payload == {"milestone": "shipped", "outcome": "sent", "message_id": "msg-1"}
        assert events[0].idempotency_key == "email:order-1:shipped"

    @pytest.mark.asyncio
    async def test_concurrent_calls_send_once(self, notifier: NotificationDispatcher, seed, fake_resend):
        await seed.paid_order_with_story()

        results = await asyncio.gather(
            *(notifier.send_order_milestone_email("order-1", Milestone.PRINTING) for _ in range(4))
        )

        assert sorted(r.status for r in results) == ["sent", "skipped", "skipped", "skipped"]
        assert len(fake_resend.sent) == 1

    @pytest.mark.asyncio
    async def test_each_milestone_has_its_own_slot(self, notifier: NotificationDispatcher, seed, fake_resend):
        await seed.paid_order_with_story()

        for milestone in Milestone:
            await notifier.send_order_milestone_email("order-1", milestone)

        assert len(fake_resend.sent) == 3

    @pytest.mark.asyncio
    async def test_falls_back_to_user_email(self, notifier: NotificationDispatcher, seed, fake_resend):
        await seed.user(email="parent@example.com")
        await seed.story()
        await seed.order(status=PaymentStatus.PAID, shipping_email=None)

        result = await notifier.send_order_milestone_email("order-1", Milestone.PROCESSING_COMPLETE)

        assert result.status == "sent"
        assert fake_resend.sent[0]["to"] == ["parent@example.com"]

    @pytest.mark.asyncio
    async def test_placeholder_address_is_not_a_recipient(
        self, notifier: NotificationDispatcher, session_factory, seed, fake_resend
    ):
        await seed.user(email="user-1@placeholder.local")
        await seed.story()
        await seed.order(status=PaymentStatus.PAID, shipping_email=None)

        result = await notifier.send_order_milestone_email("order-1", Milestone.PROCESSING_COMPLETE)

        assert result.status == "skipped"
        assert result.reason == "no_recipient"
        assert fake_resend.sent == []
        events = await _email_events(session_factory)
        assert events[0].payload["skipped"] == "no_recipient"

    @pytest.mark.asyncio
    async def test_unknown_order(self, notifier: NotificationDispatcher, session_factory):
        result = await notifier.send_order_milestone_email("order-missing", Milestone.SHIPPED)

        assert result.status == "skipped"
        assert result.reason == "order_not_found"
        async with session_scope(session_factory) as session:
            assert await IdempotencyKeyRepository(session).get("email:order-missing:shipped") is None


class TestUndeliverable:
    @pytest.mark.asyncio
    async def test_unconfigured_transport_consumes_slot(self, session_factory, seed, fake_resend):
        await seed.paid_order_with_story()
        notifier = NotificationDispatcher(session_factory, ResendEmailTransport("", ""))

        first = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED)
        second = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED)

        assert (first.status, first.reason) == ("skipped", "not_configured")
        assert second.reason == "duplicate"
        events = await _email_events(session_factory)
        assert len(events) == 1
        assert events[0].payload["skipped"] == "not_configured"

    @pytest.mark.asyncio
    async def test_provider_failure_is_terminal(
        self, notifier: NotificationDispatcher, session_factory, seed, fake_resend
    ):
        await seed.paid_order_with_story()
        fake_resend.fail = True

        failed = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED)
        fake_resend.fail = False
        retried = await notifier.send_order_milestone_email("order-1", Milestone.SHIPPED)

        assert failed.status == "failed"
        assert "HTTP 500" in (failed.reason or "")
        assert retried.reason == "duplicate"
        assert fake_resend.sent == []

        async with session_scope(session_factory) as session:
            key = await IdempotencyKeyRepository(session).get("email:order-1:shipped")
        assert key.status == "failed"
        events = await _email_events(session_factory)
        assert events[0].status == "failed"
        assert "HTTP 500" in events[0].error_message


class TestPrintStatusChanges:
    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("previous", "current", "expected"),
        [
            (PrintStatus.SUBMITTED_API, PrintStatus.IN_PRODUCTION, "printing"),
            (PrintStatus.IN_PRODUCTION, PrintStatus.SHIPPED, "shipped"),
            (None, PrintStatus.SHIPPED, "shipped"),
        ],
    )
    async def test_transition_sends_milestone(
        self, notifier: NotificationDispatcher, seed, previous, current, expected
    ):
        await seed.paid_order_with_story()

        result = await notifier.notify_print_status_change("order-1", previous, current)

        assert result is not None
        assert result.milestone.value == expected
        assert result.status == "sent"

    @pytest.mark.asyncio
    @pytest.mark.parametrize(
        ("previous", "current"),
        [
            (PrintStatus.SHIPPED, PrintStatus.SHIPPED),
            (PrintStatus.PDF_READY, PrintStatus.SUBMITTED_API),
            (PrintStatus.SHIPPED, PrintStatus.DELIVERED),
            (PrintStatus.SUBMITTED_API, PrintStatus.FAILED),
        ],
    )
    async def test_other_transitions_send_nothing(
        self, notifier: NotificationDispatcher, seed, fake_resend, previous, current
    ):
        await seed.paid_order_with_story()

        assert await notifier.notify_print_status_change("order-1", previous, current) is None
        assert fake_resend.sent == []


class TestEmailContent:
    def test_processing_complete(self):
        message = build_milestone_email(Milestone.PROCESSING_COMPLETE, story_title="Dragon Days")
        assert message.subject == "Your book is ready: Dragon Days"

    def test_shipped_without_tracking(self):
        message = build_milestone_email(Milestone.SHIPPED, story_title=None)
        assert message.subject == "Your book has shipped: your book"
        assert "Track your package" not in message.text

    def test_printing(self):
        message = build_milestone_email(Milestone.PRINTING, story_title="Dragon Days")
        assert message.subject == "Now printing: Dragon Days"
