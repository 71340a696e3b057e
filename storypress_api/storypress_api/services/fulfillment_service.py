"""Fulfillment orchestrator for paid orders.

Runs as the handler of the ``order.paid`` background job.  The job runner
delivers at least once and retries anything that raises, so outcomes are
split three ways:

* **skipped**: the order cannot be fulfilled (missing, no story, not
  paid).  Returned, never raised, so it is not retried.
* **waiting_for_assets**: assembly reported :class:`AssetsNotReady`.
  Returned as success; a later delivery of the same job (after content
  generation finishes) completes the pipeline.
* **failure**: anything else.  The book is marked ``errored`` and the
  exception propagates so the runner retries with backoff.
"""

from __future__ import annotations

import logging
from typing import Literal

from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.errors import AssetsNotReady
from storypress_core.models import PaymentStatus, RecordStatus
from storypress_core.print_status import PrintStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import BookRepository, OrderRepository

from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.book_assembly import BookAssemblyService
from storypress_api.services.notification_service import Milestone, NotificationDispatcher

logger = logging.getLogger(__name__)


class FulfillmentResult(BaseModel):
    """Outcome of one orchestrator run."""

    ok: bool
    order_id: str
    stage: Literal["complete", "waiting_for_assets"] | None = None
    reason: Literal["order_or_story_missing", "order_not_paid"] | None = None
    book_id: str | None = None
    note: str | None = None
    interior_url: str | None = None
    cover_url: str | None = None


class FulfillmentOrchestrator:
    """Sequence book assembly for a paid order.

    Parameters
    ----------
    session_factory:
        Factory for the short transactions before and after assembly.
    assembly:
        Produces the print files.
    notifier:
        Sends the ``processing_complete`` milestone on success.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        assembly: BookAssemblyService,
        notifier: NotificationDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._assembly = assembly
        self._notifier = notifier

    async def process_paid_order(self, order_id: str) -> FulfillmentResult:
        """Turn a paid order into print files.

        Safe to call any number of times for the same order.

        Raises
        ------
        Exception
            Any error other than :class:`AssetsNotReady`, after the book
            has been marked ``errored`` and the audit event ``failed``.
        """
        async with session_scope(self._session_factory) as session:
            order = await OrderRepository(session).get(order_id)
            if order is None or not order.story_id:
                logger.info("Skipping fulfillment for order=%s: order or story missing", order_id)
                return FulfillmentResult(ok=False, order_id=order_id, reason="order_or_story_missing")
            if order.payment_status != PaymentStatus.PAID.value:
                logger.info("Skipping fulfillment for order=%s: status=%s", order_id, order.payment_status)
                return FulfillmentResult(ok=False, order_id=order_id, reason="order_not_paid")

            story_id = order.story_id
            books = BookRepository(session)
            book, _ = await books.ensure_for_order(order_id, print_status=PrintStatus.PENDING_GENERATION.value)
            await books.update(book.id, print_status=PrintStatus.PENDING_GENERATION.value)
            book_id = book.id
            event_id = await AuditService(session).start(
                AuditKind.ORDER_FULFILLMENT,
                order_id,
                "Generate print files for paid order",
                payload={"stage": "queued", "order_id": order_id, "story_id": story_id, "book_id": book_id},
            )

        try:
            files = await self._assembly.generate_print_files(story_id, book_id=book_id)
        except AssetsNotReady as exc:
            note = str(exc)
            async with session_scope(self._session_factory) as session:
                await AuditService(session).finish(
                    event_id,
                    RecordStatus.SUCCESS,
                    payload={"stage": "waiting_for_assets", "note": note},
                )
            logger.info("Order=%s waiting for assets: %s", order_id, note)
            return FulfillmentResult(
                ok=True,
                order_id=order_id,
                stage="waiting_for_assets",
                book_id=book_id,
                note=note,
            )
        except Exception as exc:
            logger.exception("Fulfillment failed for order=%s", order_id)
            async with session_scope(self._session_factory) as session:
                await BookRepository(session).update(book_id, print_status=PrintStatus.ERRORED.value)
                await AuditService(session).finish(
                    event_id,
                    RecordStatus.FAILED,
                    payload={"stage": "failed"},
                    error=str(exc) or exc.__class__.__name__,
                )
            raise

        async with session_scope(self._session_factory) as session:
            await AuditService(session).finish(
                event_id,
                RecordStatus.SUCCESS,
                payload={"stage": "complete", "interior_url": files.interior_url, "cover_url": files.cover_url},
            )
        logger.info("Fulfillment complete for order=%s book=%s", order_id, book_id)

        await self._notifier.send_order_milestone_email(order_id, Milestone.PROCESSING_COMPLETE)
        return FulfillmentResult(
            ok=True,
            order_id=order_id,
            stage="complete",
            book_id=book_id,
            interior_url=files.interior_url,
            cover_url=files.cover_url,
        )
