"""Operator endpoints: order inspection, fulfillment retries and print workflow.

Every route requires the ``X-Admin-Token`` header.  Routes that drive a
factory-based service look up what they need in a short transaction of
their own and close it before the service runs, so no request-scoped
transaction is held across vendor, storage or email calls.
"""

from __future__ import annotations

import logging
from typing import Any

from fastapi import APIRouter, Depends, HTTPException
from storypress_core.errors import AssetsNotReady, BookAssemblyError, PreflightFailed, PrintVendorError, StorageError
from storypress_core.models import PaymentStatus, RecordStatus
from storypress_core.order_status import customer_fulfillment_status, customer_payment_status
from storypress_core.state.database import session_scope
from storypress_core.state.repository import BookRepository, OrderRepository, StoryRepository

from storypress_api.dependencies import (
    AssemblyDep,
    PrintVendorDep,
    SessionDep,
    SessionFactoryDep,
    SettingsDep,
    require_admin_token,
)
from storypress_api.schemas import (
    AuditEventResponse,
    BookResponse,
    FinalPageResponse,
    ManualStatusRequest,
    OrderDetailResponse,
    OrderResponse,
    RetryProcessingResponse,
)
from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.book_assembly import PrintFiles
from storypress_api.services.job_queue import JobQueue
from storypress_api.services.print_vendor import PreflightReport, PrintStatusUpdate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/admin", tags=["admin"], dependencies=[Depends(require_admin_token)])

_HISTORY_LIMIT = 50


# ---------------------------------------------------------------------------
# Orders
# ---------------------------------------------------------------------------


@router.get("/orders/{order_id}", response_model=OrderDetailResponse)
async def get_order(order_id: str, session: SessionDep) -> OrderDetailResponse:
    """Return an order, its book, customer-facing labels and audit history."""
    order = await OrderRepository(session).get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    book = await BookRepository(session).get_by_order(order_id)

    audit = AuditService(session)
    events = await audit.history(subject_id=order_id, limit=_HISTORY_LIMIT)
    if book is not None:
        events.extend(await audit.history(subject_id=book.id, limit=_HISTORY_LIMIT))
    events.sort(key=lambda event: event.created_at, reverse=True)

    return OrderDetailResponse(
        order=OrderResponse.model_validate(order),
        book=BookResponse.model_validate(book) if book is not None else None,
        payment_status=customer_payment_status(order.payment_status),
        fulfillment_status=customer_fulfillment_status(book.print_status if book is not None else None),
        history=[AuditEventResponse.model_validate(event) for event in events[:_HISTORY_LIMIT]],
    )


@router.post("/orders/{order_id}/retry-processing", response_model=RetryProcessingResponse)
async def retry_processing(order_id: str, session: SessionDep, settings: SettingsDep) -> RetryProcessingResponse:
    """Queue the paid-order pipeline again for *order_id*."""
    order = await OrderRepository(session).get(order_id)
    if order is None:
        raise HTTPException(status_code=404, detail=f"Order {order_id} not found")
    if order.payment_status != PaymentStatus.PAID.value:
        raise HTTPException(
            status_code=409,
            detail=f"Order {order_id} is {order.payment_status}; only paid orders can be processed",
        )

    job_id = await JobQueue(session, max_attempts=settings.job_max_attempts).enqueue_order_paid(order_id)
    event_id = await AuditService(session).record(
        AuditKind.ORDER_FULFILLMENT_RETRY,
        order_id,
        RecordStatus.SUCCESS,
        "Manual fulfillment retry",
        payload={"job_id": job_id},
    )
    logger.info("Fulfillment retry queued for order=%s job=%s", order_id, job_id)
    return RetryProcessingResponse(order_id=order_id, job_id=job_id, audit_event_id=event_id)


# ---------------------------------------------------------------------------
# Books
# ---------------------------------------------------------------------------


@router.get("/books/{book_id}/preflight", response_model=PreflightReport)
async def preflight(book_id: str, vendor: PrintVendorDep) -> PreflightReport:
    return await vendor.preflight(book_id)


@router.post("/books/{book_id}/generate-pdf", response_model=PrintFiles)
async def generate_pdf(book_id: str, session_factory: SessionFactoryDep, assembly: AssemblyDep) -> PrintFiles:
    """Assemble print files for the book's story.

    Returns 409 with the reason when the story is not ready yet.
    """
    async with session_scope(session_factory) as session:
        book = await BookRepository(session).get(book_id)
        if book is None:
            raise HTTPException(status_code=404, detail=f"Book {book_id} not found")
        order = await OrderRepository(session).get(book.order_id)
        if order is None or not order.story_id:
            raise HTTPException(status_code=409, detail="Book is not linked to an order with a story")
        story_id = order.story_id

    try:
        return await assembly.generate_print_files(story_id, book_id=book_id)
    except AssetsNotReady as exc:
        raise HTTPException(
            status_code=409,
            detail={"message": str(exc), "missing_scenes": exc.missing_scenes},
        ) from exc
    except (BookAssemblyError, StorageError) as exc:
        logger.error("PDF generation failed for book=%s: %s", book_id, exc)
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/books/{book_id}/submit", response_model=PrintStatusUpdate)
async def submit_to_print(book_id: str, vendor: PrintVendorDep) -> PrintStatusUpdate:
    """Create a print job for the book."""
    try:
        return await vendor.submit(book_id)
    except PreflightFailed as exc:
        raise HTTPException(status_code=409, detail={"blockers": exc.blockers}) from exc
    except PrintVendorError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/books/{book_id}/refresh", response_model=PrintStatusUpdate)
async def refresh_print_status(book_id: str, vendor: PrintVendorDep) -> PrintStatusUpdate:
    """Poll the vendor for the book's print job status."""
    try:
        return await vendor.refresh(book_id)
    except PrintVendorError as exc:
        raise HTTPException(status_code=502, detail=str(exc)) from exc


@router.post("/books/{book_id}/manual-status", response_model=PrintStatusUpdate)
async def manual_status(book_id: str, body: ManualStatusRequest, vendor: PrintVendorDep) -> PrintStatusUpdate:
    return await vendor.update_manual_status(
        book_id,
        body.status,
        vendor_job_id=body.vendor_job_id,
        tracking_url=body.tracking_url,
    )


# ---------------------------------------------------------------------------
# Final pages
# ---------------------------------------------------------------------------


@router.post("/final-pages/{final_page_id}/approve", response_model=FinalPageResponse)
async def approve_final_page(final_page_id: str, session: SessionDep) -> Any:
    """Approve one final-page version; its siblings are unapproved first."""
    page = await StoryRepository(session).approve_final_page(final_page_id)
    logger.info("Approved final page=%s (scene=%s version=%d)", page.id, page.scene_id, page.version)
    return FinalPageResponse.model_validate(page)
