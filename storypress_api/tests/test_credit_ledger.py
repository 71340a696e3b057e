"""Tests for storypress_api/services/credit_service.py

Covers:
- Starter pack granted exactly once, also under concurrent first touch
- Debits succeed only while the starter balance covers them
- Concurrent debits never overdraw
- Paid-order holders generate for free
- Paid reroll grant is exactly-once per order
- Ledger entries always sum to the cached balances
"""

from __future__ import annotations

import asyncio

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.models import CreditOperation, LedgerEntryType, PaymentStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import CreditRepository

from storypress_api.config import APISettings
from storypress_api.services.credit_service import ConsumeResult, CreditLedger

Factory = async_sessionmaker[AsyncSession]


async def _consume(factory: Factory, settings: APISettings, user_id: str = "user-1") -> ConsumeResult:
    async with session_scope(factory) as session:
        return await CreditLedger(session, settings).consume_generation_credit(
            user_id, CreditOperation.FINAL_PAGE_GENERATION
        )


async def _balances_and_sum(factory: Factory, user_id: str = "user-1") -> tuple[tuple[int, int], int]:
    async with session_scope(factory) as session:
        repo = CreditRepository(session)
        balances = await repo.get_balances(user_id)
        assert balances is not None
        return balances, await repo.ledger_sum(user_id)


class TestStarterCredits:
    @pytest.mark.asyncio
    async def test_snapshot_grants_starter_pack_once(self, session_factory: Factory, test_settings: APISettings):
        for _ in range(2):
            async with session_scope(session_factory) as session:
                snapshot = await CreditLedger(session, test_settings).snapshot("user-1")

        assert snapshot.starter_credits_cents == 20
        assert snapshot.paid_credits_cents == 0
        assert snapshot.total_credits_cents == 20
        assert snapshot.has_paid_order is False
        assert snapshot.costs_cents == {"character_generation": 4, "final_page_generation": 4}

        async with session_scope(session_factory) as session:
            entries = await CreditLedger(session, test_settings).history("user-1")
        assert [e.entry_type for e in entries] == [LedgerEntryType.STARTER_GRANT.value]

    @pytest.mark.asyncio
    async def test_concurrent_first_touch_grants_once(self, session_factory: Factory, test_settings: APISettings):
        async def _touch() -> None:
            async with session_scope(session_factory) as session:
                await CreditLedger(session, test_settings).ensure_starter_credits("user-1")

        await asyncio.gather(*(_touch() for _ in range(4)))

        balances, ledger_sum = await _balances_and_sum(session_factory)
        assert balances == (20, 0)
        assert ledger_sum == 20

    @pytest.mark.asyncio
    async def test_placeholder_user_is_created(self, session_factory: Factory, test_settings: APISettings):
        async with session_scope(session_factory) as session:
            await CreditLedger(session, test_settings).ensure_starter_credits("user-9")
            user = await CreditRepository(session).get_user("user-9")
        assert user is not None
        assert user.email == "user-9@placeholder.local"


class TestConsume:
    @pytest.mark.asyncio
    async def test_debits_until_balance_runs_out(self, session_factory: Factory, test_settings: APISettings):
        settings = test_settings.model_copy(update={"starter_credits_cents": 8})

        first = await _consume(session_factory, settings)
        second = await _consume(session_factory, settings)
        third = await _consume(session_factory, settings)

        assert (first.ok, first.source, first.charged_cents, first.remaining_starter_cents) == (True, "starter", 4, 4)
        assert (second.ok, second.remaining_starter_cents) == (True, 0)
        assert third.ok is False
        assert third.source is None
        assert third.remaining_starter_cents == 0
        assert third.message is not None
        assert "Remaining: $0.00" in third.message

    @pytest.mark.asyncio
    async def test_concurrent_debits_never_overdraw(self, session_factory: Factory, test_settings: APISettings):
        settings = test_settings.model_copy(update={"starter_credits_cents": 8})

        results = await asyncio.gather(*(_consume(session_factory, settings) for _ in range(3)))

        assert sorted(r.ok for r in results) == [False, True, True]
        failed = next(r for r in results if not r.ok)
        assert failed.remaining_starter_cents == 0
        balances, ledger_sum = await _balances_and_sum(session_factory)
        assert balances == (0, 0)
        assert ledger_sum == 0

    @pytest.mark.asyncio
    async def test_paid_order_generates_for_free(self, session_factory: Factory, test_settings: APISettings, seed):
        await seed.user()
        await seed.story()
        await seed.order(status=PaymentStatus.PAID)

        result = await _consume(session_factory, test_settings)

        assert result == ConsumeResult(ok=True, source="paid")
        async with session_scope(session_factory) as session:
            assert await CreditRepository(session).get_balances("user-1") is None


class TestPaidGrant:
    @pytest.mark.asyncio
    async def test_grant_is_exactly_once_per_order(self, session_factory: Factory, test_settings: APISettings):
        async with session_scope(session_factory) as session:
            first = await CreditLedger(session, test_settings).grant_paid_reroll_credits("user-1", "order-1")
        async with session_scope(session_factory) as session:
            second = await CreditLedger(session, test_settings).grant_paid_reroll_credits("user-1", "order-1")

        assert first.granted is True
        assert first.amount_cents == 20
        assert first.paid_credits_cents == 20
        assert second.granted is False
        assert second.paid_credits_cents == 20

        balances, ledger_sum = await _balances_and_sum(session_factory)
        assert balances == (20, 20)
        assert ledger_sum == 40

    @pytest.mark.asyncio
    async def test_concurrent_grants_for_one_order(self, session_factory: Factory, test_settings: APISettings):
        async def _grant() -> bool:
            async with session_scope(session_factory) as session:
                result = await CreditLedger(session, test_settings).grant_paid_reroll_credits("user-1", "order-1")
                return result.granted

        results = await asyncio.gather(*(_grant() for _ in range(3)))

        assert sorted(results) == [False, False, True]
        balances, _ = await _balances_and_sum(session_factory)
        assert balances == (20, 20)

    @pytest.mark.asyncio
    async def test_explicit_amount_overrides_default(self, session_factory: Factory, test_settings: APISettings):
        async with session_scope(session_factory) as session:
            result = await CreditLedger(session, test_settings).grant_paid_reroll_credits(
                "user-1", "order-2", amount_cents=50
            )
        assert result.amount_cents == 50
        assert result.paid_credits_cents == 50

    @pytest.mark.asyncio
    async def test_ledger_matches_balances_after_mixed_activity(
        self, session_factory: Factory, test_settings: APISettings
    ):
        await _consume(session_factory, test_settings)
        await _consume(session_factory, test_settings)
        async with session_scope(session_factory) as session:
            await CreditLedger(session, test_settings).grant_paid_reroll_credits("user-1", "order-1")

        (starter, paid), ledger_sum = await _balances_and_sum(session_factory)
        assert (starter, paid) == (12, 20)
        assert ledger_sum == starter + paid

        async with session_scope(session_factory) as session:
            entries = await CreditLedger(session, test_settings).history("user-1")
        assert sorted(e.entry_type for e in entries) == [
            "generation_debit",
            "generation_debit",
            "paid_grant",
            "starter_grant",
        ]
