"""Repository layer wrapping SQLAlchemy async sessions.

Each repository encapsulates the queries for one aggregate.  All methods
are async and expect an ``AsyncSession`` bound to either the PostgreSQL
or the SQLite engine.  Repositories flush but never commit; transaction
boundaries belong to the caller.
"""

from __future__ import annotations

import logging
from datetime import UTC, datetime
from typing import Any

from sqlalchemy import func, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from storypress_core.models import JobStatus, PaymentStatus, RecordStatus
from storypress_core.state.tables import (
    AuditEventTable,
    BookTable,
    CreditLedgerEntryTable,
    FinalPageTable,
    GeneratedAssetTable,
    IdempotencyKeyTable,
    JobTable,
    OrderTable,
    StorySceneTable,
    StoryTable,
    UserCreditsTable,
    UserTable,
    _new_id,
)

logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(UTC)


async def _dialect_insert_nothing(
    session: AsyncSession,
    table: Any,
    values: dict[str, Any],
    index_elements: list[str],
) -> Any:
    """Dialect-aware insert with ``ON CONFLICT DO NOTHING``.

    Parameters
    ----------
    session:
        The active async session.
    table:
        The SQLAlchemy table class to insert into.
    values:
        Column-value mapping for the row to insert.
    index_elements:
        Column names for conflict detection.

    Returns
    -------
    The execution result from ``session.execute()``.  ``rowcount`` is 1
    when the row was inserted and 0 when it already existed.
    """
    bind = session.get_bind()
    dialect_name = getattr(getattr(bind, "dialect", None), "name", "")

    stmt: Any
    if "postgresql" in str(dialect_name):
        from sqlalchemy.dialects.postgresql import insert as _pg_insert

        stmt = _pg_insert(table).values(**values)
    else:
        from sqlalchemy.dialects.sqlite import insert as _sqlite_insert

        stmt = _sqlite_insert(table).values(**values)
    stmt = stmt.on_conflict_do_nothing(index_elements=index_elements)
    return await session.execute(stmt)


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


class OrderRepository:
    """Order lookups and payment-status transitions.

    Every transition is a conditional UPDATE guarded by
    ``payment_status = 'pending'`` so a terminal status is never
    overwritten, whatever order events arrive in.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, order_id: str) -> OrderTable | None:
        return await self._session.get(OrderTable, order_id, populate_existing=True)

    async def get_by_checkout_session(self, checkout_session_id: str) -> OrderTable | None:
        stmt = (
            select(OrderTable)
            .where(OrderTable.stripe_checkout_session_id == checkout_session_id)
            .order_by(OrderTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def latest_for_story(self, story_id: str) -> OrderTable | None:
        stmt = (
            select(OrderTable)
            .where(OrderTable.story_id == story_id)
            .order_by(OrderTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def has_paid_order(self, user_id: str) -> bool:
        stmt = (
            select(OrderTable.id)
            .where(
                OrderTable.user_id == user_id,
                OrderTable.payment_status == PaymentStatus.PAID.value,
            )
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def mark_paid(
        self,
        order_id: str,
        *,
        checkout_session_id: str | None,
        payment_intent_id: str | None,
        shipping: dict[str, Any] | None = None,
    ) -> bool:
        """Move a pending order to ``paid``.

        Returns ``True`` when the row transitioned, ``False`` when the
        order was not pending (already paid, failed or expired).
        """
        values: dict[str, Any] = {
            "payment_status": PaymentStatus.PAID.value,
            "updated_at": _utcnow(),
        }
        if checkout_session_id:
            values["stripe_checkout_session_id"] = checkout_session_id
        if payment_intent_id:
            values["stripe_payment_intent_id"] = payment_intent_id
        for key, value in (shipping or {}).items():
            if value is not None:
                values[key] = value

        stmt = (
            update(OrderTable)
            .where(
                OrderTable.id == order_id,
                OrderTable.payment_status == PaymentStatus.PENDING.value,
            )
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def mark_expired_by_checkout_session(self, checkout_session_id: str) -> int:
        stmt = (
            update(OrderTable)
            .where(
                OrderTable.stripe_checkout_session_id == checkout_session_id,
                OrderTable.payment_status == PaymentStatus.PENDING.value,
            )
            .values(payment_status=PaymentStatus.EXPIRED.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]

    async def mark_failed_by_payment_intent(self, payment_intent_id: str) -> int:
        stmt = (
            update(OrderTable)
            .where(
                OrderTable.stripe_payment_intent_id == payment_intent_id,
                OrderTable.payment_status == PaymentStatus.PENDING.value,
            )
            .values(payment_status=PaymentStatus.FAILED.value, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        await self._session.flush()
        return result.rowcount or 0  # type: ignore[attr-defined]


# ---------------------------------------------------------------------------
# Books
# ---------------------------------------------------------------------------


class BookRepository:
    """Book creation and print-state updates."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, book_id: str) -> BookTable | None:
        return await self._session.get(BookTable, book_id, populate_existing=True)

    async def get_by_order(self, order_id: str) -> BookTable | None:
        stmt = select(BookTable).where(BookTable.order_id == order_id).execution_options(populate_existing=True)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()

    async def ensure_for_order(self, order_id: str, *, print_status: str) -> tuple[BookTable, bool]:
        """Return the order's book, creating it with *print_status* if absent.

        The unique ``order_id`` column makes creation insert-or-nothing,
        so concurrent callers converge on one row.

        Returns
        -------
        tuple[BookTable, bool]
            The book and whether this call created it.
        """
        now = _utcnow()
        result = await _dialect_insert_nothing(
            self._session,
            BookTable,
            values={
                "id": _new_id(),
                "order_id": order_id,
                "print_status": print_status,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["order_id"],
        )
        await self._session.flush()
        created = (result.rowcount or 0) > 0  # type: ignore[attr-defined]
        book = await self.get_by_order(order_id)
        assert book is not None  # noqa: S101
        return book, created

    async def update(self, book_id: str, **values: Any) -> None:
        values["updated_at"] = _utcnow()
        stmt = (
            update(BookTable)
            .where(BookTable.id == book_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Stories, scenes and final pages
# ---------------------------------------------------------------------------


class StoryRepository:
    """Read access to story content plus final-page approval."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def get(self, story_id: str) -> StoryTable | None:
        return await self._session.get(StoryTable, story_id)

    async def list_scenes(self, story_id: str) -> list[StorySceneTable]:
        stmt = (
            select(StorySceneTable)
            .where(StorySceneTable.story_id == story_id)
            .order_by(StorySceneTable.scene_number.asc())
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def final_pages_by_scene(self, scene_ids: list[str]) -> dict[str, list[FinalPageTable]]:
        """Return every saved final-page version, grouped by scene id."""
        grouped: dict[str, list[FinalPageTable]] = {scene_id: [] for scene_id in scene_ids}
        if not scene_ids:
            return grouped
        stmt = select(FinalPageTable).where(FinalPageTable.scene_id.in_(scene_ids))
        result = await self._session.execute(stmt)
        for page in result.scalars().all():
            grouped.setdefault(page.scene_id, []).append(page)
        return grouped

    async def approve_final_page(self, final_page_id: str) -> FinalPageTable:
        """Approve one version after unapproving all of its siblings.

        Raises
        ------
        LookupError
            If the final page does not exist.
        """
        page = await self._session.get(FinalPageTable, final_page_id)
        if page is None:
            raise LookupError(f"Final page {final_page_id} not found")

        await self._session.execute(
            update(FinalPageTable)
            .where(FinalPageTable.scene_id == page.scene_id, FinalPageTable.id != final_page_id)
            .values(is_approved=False)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(
            update(FinalPageTable)
            .where(FinalPageTable.id == final_page_id)
            .values(is_approved=True)
            .execution_options(synchronize_session=False)
        )
        await self._session.flush()
        await self._session.refresh(page)
        return page


# ---------------------------------------------------------------------------
# Generated assets
# ---------------------------------------------------------------------------


class AssetRepository:
    """Append-only generated asset history."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def add(
        self,
        *,
        asset_type: str,
        entity_id: str,
        storage_url: str,
        mime_type: str | None = None,
        file_size_bytes: int | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> GeneratedAssetTable:
        row = GeneratedAssetTable(
            id=_new_id(),
            type=asset_type,
            entity_id=entity_id,
            storage_url=storage_url,
            mime_type=mime_type,
            file_size_bytes=file_size_bytes,
            metadata_json=metadata,
            created_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def latest(self, entity_id: str, asset_type: str) -> GeneratedAssetTable | None:
        """Return the most recently created asset of *asset_type* for *entity_id*."""
        stmt = (
            select(GeneratedAssetTable)
            .where(
                GeneratedAssetTable.entity_id == entity_id,
                GeneratedAssetTable.type == asset_type,
            )
            .order_by(GeneratedAssetTable.created_at.desc())
            .limit(1)
        )
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Credits
# ---------------------------------------------------------------------------


class CreditRepository:
    """Balance cache and ledger rows for the credit ledger.

    Balance reads select columns rather than entities so they always see
    the values written by the conditional UPDATEs in this transaction.
    """

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def ensure_user(self, user_id: str, *, email: str, role: str = "customer") -> bool:
        result = await _dialect_insert_nothing(
            self._session,
            UserTable,
            values={"id": user_id, "email": email, "role": role, "created_at": _utcnow()},
            index_elements=["id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_user(self, user_id: str) -> UserTable | None:
        return await self._session.get(UserTable, user_id)

    async def create_balance(self, user_id: str, *, starter_cents: int) -> bool:
        """Insert the balance row; ``False`` when it already existed."""
        result = await _dialect_insert_nothing(
            self._session,
            UserCreditsTable,
            values={
                "user_id": user_id,
                "starter_credits_cents": starter_cents,
                "paid_credits_cents": 0,
                "updated_at": _utcnow(),
            },
            index_elements=["user_id"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get_balances(self, user_id: str) -> tuple[int, int] | None:
        """Return ``(starter_cents, paid_cents)`` or ``None``."""
        stmt = select(
            UserCreditsTable.starter_credits_cents,
            UserCreditsTable.paid_credits_cents,
        ).where(UserCreditsTable.user_id == user_id)
        result = await self._session.execute(stmt)
        row = result.one_or_none()
        if row is None:
            return None
        return int(row[0]), int(row[1])

    async def debit_starter(self, user_id: str, cost_cents: int) -> bool:
        """Atomically subtract *cost_cents* if the starter balance covers it.

        The affected-row count is the only success signal; there is no
        read-then-write window.
        """
        stmt = (
            update(UserCreditsTable)
            .where(
                UserCreditsTable.user_id == user_id,
                UserCreditsTable.starter_credits_cents >= cost_cents,
            )
            .values(
                starter_credits_cents=UserCreditsTable.starter_credits_cents - cost_cents,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def credit_paid(self, user_id: str, amount_cents: int) -> None:
        stmt = (
            update(UserCreditsTable)
            .where(UserCreditsTable.user_id == user_id)
            .values(
                paid_credits_cents=UserCreditsTable.paid_credits_cents + amount_cents,
                updated_at=_utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def entry_exists(self, idempotency_key: str) -> bool:
        stmt = select(CreditLedgerEntryTable.id).where(CreditLedgerEntryTable.idempotency_key == idempotency_key)
        result = await self._session.execute(stmt)
        return result.scalar_one_or_none() is not None

    async def append_entry(
        self,
        *,
        user_id: str,
        entry_type: str,
        amount_cents: int,
        starter_after: int,
        paid_after: int,
        order_id: str | None = None,
        idempotency_key: str | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> CreditLedgerEntryTable:
        row = CreditLedgerEntryTable(
            id=_new_id(),
            user_id=user_id,
            order_id=order_id,
            entry_type=entry_type,
            amount_cents=amount_cents,
            starter_balance_after_cents=starter_after,
            paid_balance_after_cents=paid_after,
            idempotency_key=idempotency_key,
            metadata_json=metadata,
            created_at=_utcnow(),
        )
        self._session.add(row)
        await self._session.flush()
        return row

    async def list_entries(self, user_id: str, *, limit: int = 100) -> list[CreditLedgerEntryTable]:
        stmt = (
            select(CreditLedgerEntryTable)
            .where(CreditLedgerEntryTable.user_id == user_id)
            .order_by(CreditLedgerEntryTable.created_at.desc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def ledger_sum(self, user_id: str) -> int:
        stmt = select(func.coalesce(func.sum(CreditLedgerEntryTable.amount_cents), 0)).where(
            CreditLedgerEntryTable.user_id == user_id
        )
        result = await self._session.execute(stmt)
        return int(result.scalar_one())


# ---------------------------------------------------------------------------
# Idempotency keys
# ---------------------------------------------------------------------------


class IdempotencyKeyRepository:
    """Insert-or-fail reservation of idempotency keys."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def reserve(self, key: str, *, scope: str, status: str = RecordStatus.RUNNING.value) -> bool:
        """Insert *key*; ``True`` means this caller owns it."""
        now = _utcnow()
        result = await _dialect_insert_nothing(
            self._session,
            IdempotencyKeyTable,
            values={
                "key": key,
                "scope": scope,
                "status": status,
                "created_at": now,
                "updated_at": now,
            },
            index_elements=["key"],
        )
        await self._session.flush()
        return (result.rowcount or 0) > 0  # type: ignore[attr-defined]

    async def get(self, key: str) -> IdempotencyKeyTable | None:
        return await self._session.get(IdempotencyKeyTable, key, populate_existing=True)

    async def set_status(self, key: str, status: str, *, error_message: str | None = None) -> None:
        stmt = (
            update(IdempotencyKeyTable)
            .where(IdempotencyKeyTable.key == key)
            .values(status=status, error_message=error_message, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
        await self._session.flush()


# ---------------------------------------------------------------------------
# Audit events
# ---------------------------------------------------------------------------


class AuditEventRepository:
    """Operational history of pipeline work."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def create(
        self,
        *,
        kind: str,
        subject_id: str,
        status: str,
        description: str = "",
        payload: dict[str, Any] | None = None,
        error_message: str | None = None,
        idempotency_key: str | None = None,
    ) -> str:
        """Write an audit event and return its id."""
        now = _utcnow()
        row = AuditEventTable(
            id=_new_id(),
            kind=kind,
            subject_id=subject_id,
            description=description,
            status=status,
            payload=payload,
            error_message=error_message,
            idempotency_key=idempotency_key,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row.id

    async def get(self, event_id: str) -> AuditEventTable | None:
        return await self._session.get(AuditEventTable, event_id, populate_existing=True)

    async def update_status(
        self,
        event_id: str,
        *,
        status: str,
        payload: dict[str, Any] | None = None,
        error_message: str | None = None,
    ) -> None:
        """Set the terminal status, merging *payload* into the stored payload."""
        row = await self.get(event_id)
        if row is None:
            raise LookupError(f"Audit event {event_id} not found")
        row.status = status
        if payload:
            row.payload = {**(row.payload or {}), **payload}
        if error_message is not None:
            row.error_message = error_message
        row.updated_at = _utcnow()
        await self._session.flush()

    async def query(
        self,
        *,
        kind: str | None = None,
        subject_id: str | None = None,
        limit: int = 50,
    ) -> list[AuditEventTable]:
        stmt = select(AuditEventTable)
        if kind is not None:
            stmt = stmt.where(AuditEventTable.kind == kind)
        if subject_id is not None:
            stmt = stmt.where(AuditEventTable.subject_id == subject_id)
        stmt = stmt.order_by(AuditEventTable.created_at.desc()).limit(limit)
        result = await self._session.execute(stmt)
        return list(result.scalars().all())


# ---------------------------------------------------------------------------
# Jobs
# ---------------------------------------------------------------------------


class JobRepository:
    """Durable job rows for the at-least-once runner."""

    def __init__(self, session: AsyncSession) -> None:
        self._session = session

    async def enqueue(
        self,
        name: str,
        payload: dict[str, Any],
        *,
        max_attempts: int = 5,
        run_after: datetime | None = None,
    ) -> str:
        now = _utcnow()
        row = JobTable(
            id=_new_id(),
            name=name,
            payload=payload,
            status=JobStatus.QUEUED.value,
            attempts=0,
            max_attempts=max_attempts,
            run_after=run_after or now,
            created_at=now,
            updated_at=now,
        )
        self._session.add(row)
        await self._session.flush()
        return row.id

    async def get(self, job_id: str) -> JobTable | None:
        return await self._session.get(JobTable, job_id, populate_existing=True)

    async def due_ids(self, *, now: datetime, stale_before: datetime, limit: int = 10) -> list[str]:
        """Return ids of queued jobs that are due plus running jobs whose lock expired."""
        stmt = (
            select(JobTable.id)
            .where(
                ((JobTable.status == JobStatus.QUEUED.value) & (JobTable.run_after <= now))
                | ((JobTable.status == JobStatus.RUNNING.value) & (JobTable.locked_at < stale_before))
            )
            .order_by(JobTable.run_after.asc())
            .limit(limit)
        )
        result = await self._session.execute(stmt)
        return list(result.scalars().all())

    async def claim(self, job_id: str, *, now: datetime, stale_before: datetime) -> bool:
        """Mark *job_id* running if it is still claimable; rowcount decides.

        Every successful claim counts as an attempt, including the reclaim
        of a running job whose lock expired.  An expired job that has
        already used ``max_attempts`` is retired as dead instead of being
        claimed again, and ``False`` is returned.
        """
        stale = (JobTable.status == JobStatus.RUNNING.value) & (JobTable.locked_at < stale_before)
        retire = (
            update(JobTable)
            .where(JobTable.id == job_id, stale, JobTable.attempts >= JobTable.max_attempts)
            .values(
                status=JobStatus.DEAD.value,
                locked_at=None,
                last_error="Lock expired on the final attempt",
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        retired = await self._session.execute(retire)
        if (retired.rowcount or 0) == 1:  # type: ignore[attr-defined]
            logger.warning("Job id=%s retired: lock expired after its final attempt", job_id)
            return False

        stmt = (
            update(JobTable)
            .where(
                JobTable.id == job_id,
                ((JobTable.status == JobStatus.QUEUED.value) & (JobTable.run_after <= now)) | stale,
            )
            .values(
                status=JobStatus.RUNNING.value,
                attempts=JobTable.attempts + 1,
                locked_at=now,
                updated_at=now,
            )
            .execution_options(synchronize_session=False)
        )
        result = await self._session.execute(stmt)
        return (result.rowcount or 0) == 1  # type: ignore[attr-defined]

    async def mark_done(self, job_id: str) -> None:
        stmt = (
            update(JobTable)
            .where(JobTable.id == job_id)
            .values(status=JobStatus.DONE.value, locked_at=None, updated_at=_utcnow())
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)

    async def mark_failed(self, job_id: str, *, error: str, retry_at: datetime | None) -> None:
        """Record the failure of the claimed attempt; ``retry_at=None`` retires the job as dead."""
        values: dict[str, Any] = {
            "last_error": error,
            "locked_at": None,
            "updated_at": _utcnow(),
        }
        if retry_at is None:
            values["status"] = JobStatus.DEAD.value
        else:
            values["status"] = JobStatus.QUEUED.value
            values["run_after"] = retry_at
        stmt = (
            update(JobTable)
            .where(JobTable.id == job_id)
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        await self._session.execute(stmt)
