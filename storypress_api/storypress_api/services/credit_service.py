"""Credit ledger: per-user generation balances backed by an append-only ledger.

Balances in ``user_credits`` are a cache.  Every change to them happens
in the same transaction that appends the matching
``credit_ledger_entries`` row, so for every user the sum of ledger
``amount_cents`` equals ``starter + paid`` at every commit.

The debit path is the hot spot for concurrent requests.  It is a single
conditional UPDATE whose affected-row count is the only success signal.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from storypress_core.models import CreditOperation, LedgerEntryType
from storypress_core.state.repository import CreditRepository, OrderRepository
from storypress_core.state.tables import CreditLedgerEntryTable

from storypress_api.config import APISettings

logger = logging.getLogger(__name__)


def placeholder_email(user_id: str) -> str:
    return f"{user_id}@placeholder.local"


def paid_credit_key(order_id: str) -> str:
    return f"paid-credit:{order_id}"


def format_cents(cents: int) -> str:
    return f"${cents / 100:.2f}"


# ---------------------------------------------------------------------------
# Result models
# ---------------------------------------------------------------------------


class ConsumeResult(BaseModel):
    """Outcome of a generation-credit debit."""

    ok: bool
    source: Literal["paid", "starter"] | None = None
    charged_cents: int = 0
    remaining_starter_cents: int = 0
    message: str | None = None


class GrantResult(BaseModel):
    """Outcome of a paid-credit grant."""

    granted: bool
    amount_cents: int
    paid_credits_cents: int


class CreditSnapshot(BaseModel):
    """Current balances plus the price list, for display."""

    user_id: str
    starter_credits_cents: int
    paid_credits_cents: int
    total_credits_cents: int
    has_paid_order: bool
    costs_cents: dict[str, int]


# ---------------------------------------------------------------------------
# Service
# ---------------------------------------------------------------------------


class CreditLedger:
    """Starter/paid credit accounting for one unit of work.

    Parameters
    ----------
    session:
        Session whose transaction covers every balance change and ledger
        append made through this instance.  The caller commits.
    settings:
        Supplies the starter bonus, per-operation costs and the default
        paid grant.
    """

    def __init__(self, session: AsyncSession, settings: APISettings) -> None:
        self._session = session
        self._settings = settings
        self._credits = CreditRepository(session)
        self._orders = OrderRepository(session)

    def cost_for(self, operation: CreditOperation) -> int:
        """Return the starter-credit cost of *operation* in cents."""
        if operation == CreditOperation.CHARACTER_GENERATION:
            return self._settings.credit_cost_character_cents
        return self._settings.credit_cost_final_page_cents

    async def ensure_starter_credits(self, user_id: str) -> tuple[int, int]:
        """Create the user and their starter balance on first touch.

        The balance row is inserted with ``ON CONFLICT DO NOTHING``; only
        the caller whose insert lands appends the ``starter_grant`` entry,
        so concurrent first touches never double-grant.

        Returns
        -------
        tuple[int, int]
            ``(starter_cents, paid_cents)`` after the call.
        """
        await self._credits.ensure_user(user_id, email=placeholder_email(user_id))
        starter = self._settings.starter_credits_cents
        if await self._credits.create_balance(user_id, starter_cents=starter):
            await self._credits.append_entry(
                user_id=user_id,
                entry_type=LedgerEntryType.STARTER_GRANT.value,
                amount_cents=starter,
                starter_after=starter,
                paid_after=0,
                metadata={"reason": "signup_starter_pack"},
            )
            logger.info("Granted %d starter credit cents to user=%s", starter, user_id)

        balances = await self._credits.get_balances(user_id)
        assert balances is not None  # noqa: S101
        return balances

    async def consume_generation_credit(self, user_id: str, operation: CreditOperation) -> ConsumeResult:
        """Charge one generation step to the user's starter balance.

        Users with any paid order generate for free (``source="paid"``).
        Otherwise the cost is subtracted with a single conditional UPDATE;
        zero affected rows means the balance did not cover it.
        """
        if await self._orders.has_paid_order(user_id):
            return ConsumeResult(ok=True, source="paid")

        await self.ensure_starter_credits(user_id)
        cost = self.cost_for(operation)

        if not await self._credits.debit_starter(user_id, cost):
            balances = await self._credits.get_balances(user_id)
            remaining = balances[0] if balances else 0
            logger.info(
                "Insufficient starter credits user=%s operation=%s remaining=%d",
                user_id,
                operation.value,
                remaining,
            )
            return ConsumeResult(
                ok=False,
                remaining_starter_cents=remaining,
                message=(
                    f"Insufficient starter credits. Remaining: {format_cents(remaining)}. "
                    "Please purchase before generating more content."
                ),
            )

        balances = await self._credits.get_balances(user_id)
        assert balances is not None  # noqa: S101
        starter_after, paid_after = balances
        await self._credits.append_entry(
            user_id=user_id,
            entry_type=LedgerEntryType.GENERATION_DEBIT.value,
            amount_cents=-cost,
            starter_after=starter_after,
            paid_after=paid_after,
            metadata={"operation": operation.value},
        )
        return ConsumeResult(
            ok=True,
            source="starter",
            charged_cents=cost,
            remaining_starter_cents=starter_after,
        )

    async def grant_paid_reroll_credits(
        self,
        user_id: str,
        order_id: str,
        amount_cents: int | None = None,
    ) -> GrantResult:
        """Grant the post-purchase reroll pack once per order.

        The ledger's unique ``idempotency_key`` makes the grant
        exactly-once.  The balance increment and the ledger append run in a
        SAVEPOINT, so a concurrent duplicate that trips the unique index
        rolls back both and is reported as a no-op.
        """
        amount = amount_cents if amount_cents and amount_cents > 0 else self._settings.paid_reroll_credits_cents
        key = paid_credit_key(order_id)

        await self.ensure_starter_credits(user_id)
        if await self._credits.entry_exists(key):
            return await self._grant_result(user_id, granted=False, amount=amount)

        try:
            async with self._session.begin_nested():
                await self._credits.credit_paid(user_id, amount)
                balances = await self._credits.get_balances(user_id)
                assert balances is not None  # noqa: S101
                await self._credits.append_entry(
                    user_id=user_id,
                    order_id=order_id,
                    entry_type=LedgerEntryType.PAID_GRANT.value,
                    amount_cents=amount,
                    starter_after=balances[0],
                    paid_after=balances[1],
                    idempotency_key=key,
                    metadata={"reason": "post_purchase_reroll_pack"},
                )
        except IntegrityError:
            logger.info("Paid credit grant for order=%s already recorded concurrently", order_id)
            return await self._grant_result(user_id, granted=False, amount=amount)

        logger.info("Granted %d paid credit cents to user=%s order=%s", amount, user_id, order_id)
        return await self._grant_result(user_id, granted=True, amount=amount)

    async def snapshot(self, user_id: str) -> CreditSnapshot:
        """Return current balances, creating the starter balance if needed."""
        starter, paid = await self.ensure_starter_credits(user_id)
        return CreditSnapshot(
            user_id=user_id,
            starter_credits_cents=starter,
            paid_credits_cents=paid,
            total_credits_cents=starter + paid,
            has_paid_order=await self._orders.has_paid_order(user_id),
            costs_cents={op.value: self.cost_for(op) for op in CreditOperation},
        )

    async def history(self, user_id: str, *, limit: int = 100) -> list[CreditLedgerEntryTable]:
        return await self._credits.list_entries(user_id, limit=limit)

    async def _grant_result(self, user_id: str, *, granted: bool, amount: int) -> GrantResult:
        balances = await self._credits.get_balances(user_id)
        return GrantResult(
            granted=granted,
            amount_cents=amount,
            paid_credits_cents=balances[1] if balances else 0,
        )
