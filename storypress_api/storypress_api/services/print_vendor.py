"""Print vendor adapter: Lulu print-on-demand API.

:class:`LuluClient` speaks HTTP to the vendor.  Every call starts with a
fresh OAuth2 client-credentials token exchange; tokens are never cached
across calls.  :class:`PrintVendorService` owns the book-side workflow
(preflight, submit, refresh, manual status updates) and fans status
transitions out to the notification dispatcher.

No database transaction is open while the vendor is being called: each
workflow reads state, commits, calls the vendor, then writes the outcome
in a fresh transaction.  A crash between those steps leaves the audit
event ``running`` and the book unchanged, so the operator simply retries.
"""

from __future__ import annotations

import json
import logging
import time
from typing import Any

import httpx
from pydantic import BaseModel, Field, ValidationError, computed_field
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.errors import PreflightFailed, PrintVendorConfigError, PrintVendorError
from storypress_core.models import AssetType, PaymentStatus, RecordStatus
from storypress_core.print_status import PrintStatus, map_vendor_status, normalize_manual_status
from storypress_core.state.database import session_scope
from storypress_core.state.repository import AssetRepository, BookRepository, OrderRepository, StoryRepository

from storypress_api.config import APISettings
from storypress_api.services.audit_service import AuditKind, AuditService
from storypress_api.services.notification_service import NotificationDispatcher

logger = logging.getLogger(__name__)

_DEFAULT_PROOF_TITLE = "Internal QA proof"


# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class ShippingAddress(BaseModel):
    """Destination for printed books, as the vendor expects it."""

    name: str = Field(..., min_length=1)
    street1: str = Field(..., min_length=1)
    city: str = Field(..., min_length=1)
    postcode: str = Field(..., min_length=1)
    country_code: str = Field(..., min_length=2)
    street2: str | None = None
    state_code: str | None = None
    phone_number: str | None = None

    def to_payload(self) -> dict[str, str]:
        return self.model_dump(exclude_none=True)


class PrintJob(BaseModel):
    """Normalized vendor print job."""

    job_id: str
    raw_status: str = ""
    status: PrintStatus
    tracking_url: str | None = None


class PreflightReport(BaseModel):
    """Blockers refuse submission; warnings are informational."""

    book_id: str
    blockers: list[str] = Field(default_factory=list)
    warnings: list[str] = Field(default_factory=list)
    interior_url: str | None = None
    cover_url: str | None = None

    @computed_field  # type: ignore[prop-decorator]
    @property
    def ok(self) -> bool:
        return not self.blockers


class PrintStatusUpdate(BaseModel):
    """Outcome of a submit, refresh or manual update."""

    book_id: str
    previous_status: PrintStatus
    print_status: PrintStatus
    vendor_job_id: str | None = None
    tracking_url: str | None = None


def _error_message(response: httpx.Response) -> str:
    """Extract the vendor's error text from ``detail``, ``message`` or ``errors[0]``."""
    try:
        body = response.json()
    except ValueError:
        return response.text[:500] or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        for field in ("detail", "message"):
            if isinstance(body.get(field), str) and body[field]:
                return body[field]
        errors = body.get("errors")
        if isinstance(errors, list) and errors:
            first = errors[0]
            if isinstance(first, dict):
                return str(first.get("message") or first.get("detail") or first)
            return str(first)
    return f"HTTP {response.status_code}"


def _json_body(response: httpx.Response) -> dict[str, Any]:
    """Decode a successful vendor response, which must be a JSON object."""
    try:
        body = response.json()
    except ValueError as exc:
        raise PrintVendorError("Print vendor returned invalid JSON", status_code=response.status_code) from exc
    if not isinstance(body, dict):
        raise PrintVendorError("Print vendor returned invalid JSON", status_code=response.status_code)
    return body


def _parse_job(body: dict[str, Any]) -> PrintJob:
    job_id = body.get("id") or body.get("print_job_id")
    if job_id is None:
        raise PrintVendorError("Print vendor response did not include a job id")
    status = body.get("status")
    if isinstance(status, dict):
        raw_status = str(status.get("name") or "")
    else:
        raw_status = str(status or "")
    tracking = body.get("tracking_url") or body.get("trackingUrl")
    return PrintJob(
        job_id=str(job_id),
        raw_status=raw_status,
        status=map_vendor_status(raw_status),
        tracking_url=tracking or None,
    )


# ---------------------------------------------------------------------------
# HTTP client
# ---------------------------------------------------------------------------


class LuluClient:
    """Async client for the Lulu print API.

    Parameters
    ----------
    settings:
        Supplies credentials, URLs, contact, package and shipping config.
    http_client:
        Optional pre-configured ``httpx.AsyncClient``.  If *None*, a new
        client is created and owned by this instance.
    """

    def __init__(self, settings: APISettings, *, http_client: httpx.AsyncClient | None = None) -> None:
        self._settings = settings
        self._base_url = settings.lulu_api_base_url.rstrip("/")
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=settings.lulu_timeout)

    def shipping_address(self) -> ShippingAddress:
        """Parse the configured shipping address.

        Raises
        ------
        PrintVendorConfigError
            If the JSON is missing, malformed or lacks required fields.
        """
        raw = self._settings.lulu_shipping_address_json
        if not raw:
            raise PrintVendorConfigError(["lulu_shipping_address_json is not set"])
        try:
            return ShippingAddress.model_validate(json.loads(raw))
        except json.JSONDecodeError as exc:
            raise PrintVendorConfigError([f"lulu_shipping_address_json is not valid JSON: {exc.msg}"]) from exc
        except ValidationError as exc:
            missing = ", ".join(".".join(str(p) for p in err["loc"]) for err in exc.errors())
            raise PrintVendorConfigError([f"lulu_shipping_address_json is missing or invalid: {missing}"]) from exc

    def config_errors(self) -> list[str]:
        """Return every missing or invalid vendor setting."""
        errors: list[str] = []
        if not self._settings.lulu_client_key:
            errors.append("lulu_client_key is not set")
        if not self._settings.lulu_client_secret.get_secret_value():
            errors.append("lulu_client_secret is not set")
        if not self._settings.lulu_contact_email:
            errors.append("lulu_contact_email is not set")
        if not self._settings.lulu_pod_package_id:
            errors.append("lulu_pod_package_id is not set")
        try:
            self.shipping_address()
        except PrintVendorConfigError as exc:
            errors.extend(exc.errors)
        return errors

    async def get_access_token(self) -> str:
        """Exchange client credentials for a bearer token (never cached)."""
        errors = self.config_errors()
        if errors:
            raise PrintVendorConfigError(errors)
        response = await self._request(
            "POST",
            self._settings.resolved_lulu_auth_url,
            data={"grant_type": "client_credentials"},
            auth=(self._settings.lulu_client_key, self._settings.lulu_client_secret.get_secret_value()),
        )
        token = _json_body(response).get("access_token")
        if not token:
            raise PrintVendorError("Print vendor token response did not include access_token")
        return str(token)

    async def create_print_job(
        self,
        *,
        external_id: str,
        title: str,
        interior_url: str,
        cover_url: str,
    ) -> PrintJob:
        """Create a one-line-item print job and return it normalized."""
        token = await self.get_access_token()
        payload = {
            "contact_email": self._settings.lulu_contact_email,
            "external_id": external_id,
            "shipping_level": self._settings.lulu_shipping_level,
            "shipping_address": self.shipping_address().to_payload(),
            "line_items": [
                {
                    "external_id": f"{external_id}-item-1",
                    "title": title,
                    "quantity": 1,
                    "pod_package_id": self._settings.lulu_pod_package_id,
                    "cover": cover_url,
                    "interior": interior_url,
                }
            ],
        }
        response = await self._request(
            "POST",
            f"{self._base_url}/print-jobs/",
            json=payload,
            headers={"Authorization": f"Bearer {token}"},
        )
        return _parse_job(_json_body(response))

    async def get_print_job(self, job_id: str) -> PrintJob:
        token = await self.get_access_token()
        response = await self._request(
            "GET",
            f"{self._base_url}/print-jobs/{job_id}/",
            headers={"Authorization": f"Bearer {token}"},
        )
        return _parse_job(_json_body(response))

    async def _request(self, method: str, url: str, **kwargs: Any) -> httpx.Response:
        try:
            response = await self._client.request(method, url, **kwargs)
        except httpx.HTTPError as exc:
            raise PrintVendorError(f"Print vendor request failed: {exc}") from exc
        if response.status_code >= 400:
            raise PrintVendorError(_error_message(response), status_code=response.status_code)
        return response

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


# ---------------------------------------------------------------------------
# Book workflow
# ---------------------------------------------------------------------------


class PrintVendorService:
    """Submit books to the print vendor and track their status.

    Parameters
    ----------
    session_factory:
        Factory for the short transactions around each vendor call.
    client:
        The vendor HTTP client.
    notifier:
        Receives every print-status transition.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        client: LuluClient,
        notifier: NotificationDispatcher,
    ) -> None:
        self._session_factory = session_factory
        self._client = client
        self._notifier = notifier

    async def preflight(self, book_id: str) -> PreflightReport:
        """Compute submission blockers and warnings from live state."""
        async with session_scope(self._session_factory) as session:
            return await self._preflight(session, book_id)

    async def submit(self, book_id: str) -> PrintStatusUpdate:
        """Submit *book_id* as a new print job.

        Raises
        ------
        PreflightFailed
            If preflight reports any blocker.
        PrintVendorError
            If the vendor rejects the job or cannot be reached.
        """
        async with session_scope(self._session_factory) as session:
            report = await self._preflight(session, book_id)
            if not report.ok:
                raise PreflightFailed(report.blockers)
            book = await BookRepository(session).get(book_id)
            assert book is not None  # noqa: S101
            order = await OrderRepository(session).get(book.order_id)
            story = await StoryRepository(session).get(order.story_id) if order and order.story_id else None
            previous = PrintStatus(book.print_status)
            order_id = book.order_id
            external_id = f"book-{book_id}-{int(time.time() * 1000)}"
            title = story.title if story is not None and story.title else _DEFAULT_PROOF_TITLE
            event_id = await AuditService(session).start(
                AuditKind.PRINT_SUBMIT,
                book_id,
                "Submit print job",
                payload={
                    "external_id": external_id,
                    "interior_url": report.interior_url,
                    "cover_url": report.cover_url,
                },
            )

        try:
            job = await self._client.create_print_job(
                external_id=external_id,
                title=title,
                interior_url=report.interior_url or "",
                cover_url=report.cover_url or "",
            )
        except PrintVendorError as exc:
            await self._fail(event_id, exc)
            raise

        update = await self._apply_job(book_id, previous, job, event_id)
        logger.info("Submitted book=%s job=%s status=%s", book_id, job.job_id, job.status.value)
        await self._notify(order_id, update)
        return update

    async def refresh(self, book_id: str) -> PrintStatusUpdate:
        """Poll the vendor for the book's job and record the mapped status.

        Raises
        ------
        LookupError
            If the book does not exist.
        ValueError
            If the book has no vendor job id.
        PrintVendorError
            If the vendor call fails.
        """
        async with session_scope(self._session_factory) as session:
            book = await BookRepository(session).get(book_id)
            if book is None:
                raise LookupError(f"Book {book_id} not found")
            if not book.vendor_job_id:
                raise ValueError(f"Book {book_id} has no print job to refresh")
            job_id = book.vendor_job_id
            order_id = book.order_id
            previous = PrintStatus(book.print_status)
            event_id = await AuditService(session).start(
                AuditKind.PRINT_STATUS_REFRESH,
                book_id,
                "Refresh print job status",
                payload={"vendor_job_id": job_id},
            )

        try:
            job = await self._client.get_print_job(job_id)
        except PrintVendorError as exc:
            await self._fail(event_id, exc)
            raise

        update = await self._apply_job(book_id, previous, job, event_id)
        await self._notify(order_id, update)
        return update

    async def update_manual_status(
        self,
        book_id: str,
        status: str,
        *,
        vendor_job_id: str | None = None,
        tracking_url: str | None = None,
    ) -> PrintStatusUpdate:
        """Record a status entered by an operator (e.g. for manual orders)."""
        next_status = normalize_manual_status(status)
        async with session_scope(self._session_factory) as session:
            books = BookRepository(session)
            book = await books.get(book_id)
            if book is None:
                raise LookupError(f"Book {book_id} not found")
            previous = PrintStatus(book.print_status)
            values: dict[str, Any] = {"print_status": next_status.value}
            if vendor_job_id is not None:
                values["vendor_job_id"] = vendor_job_id or None
            if tracking_url is not None:
                values["tracking_url"] = tracking_url or None
            await books.update(book_id, **values)
            book = await books.get(book_id)
            assert book is not None  # noqa: S101
            await AuditService(session).record(
                AuditKind.PRINT_STATUS_MANUAL,
                book_id,
                RecordStatus.SUCCESS,
                "Manual print status update",
                payload={"previous": previous.value, "next": next_status.value},
            )
            update = PrintStatusUpdate(
                book_id=book_id,
                previous_status=previous,
                print_status=next_status,
                vendor_job_id=book.vendor_job_id,
                tracking_url=book.tracking_url,
            )
            order_id = book.order_id

        await self._notify(order_id, update)
        return update

    # -- Helpers ---------------------------------------------------------------

    async def _preflight(self, session: AsyncSession, book_id: str) -> PreflightReport:
        report = PreflightReport(book_id=book_id)
        book = await BookRepository(session).get(book_id)
        if book is None:
            report.blockers.append("Book not found")
            return report

        report.blockers.extend(self._client.config_errors())

        assets = AssetRepository(session)
        interior = await assets.latest(book_id, AssetType.BOOK_PDF_INTERIOR.value)
        cover = await assets.latest(book_id, AssetType.BOOK_PDF_COVER.value)
        if interior is None:
            report.blockers.append("Missing interior PDF asset")
        else:
            report.interior_url = interior.storage_url
        if cover is None:
            report.blockers.append("Missing cover PDF asset")
        else:
            report.cover_url = cover.storage_url

        order = await OrderRepository(session).get(book.order_id)
        if order is None:
            report.blockers.append("Book is not linked to an order")
        elif order.payment_status != PaymentStatus.PAID.value:
            report.warnings.append(f"Order payment status is {order.payment_status}, not paid")
        if book.vendor_job_id:
            report.warnings.append(
                f"Book already has print job {book.vendor_job_id}; submitting creates another job"
            )
        if not book.pdf_url:
            report.warnings.append("Book has no pdf_url recorded")
        return report

    async def _apply_job(
        self,
        book_id: str,
        previous: PrintStatus,
        job: PrintJob,
        event_id: str,
    ) -> PrintStatusUpdate:
        async with session_scope(self._session_factory) as session:
            await BookRepository(session).update(
                book_id,
                vendor_job_id=job.job_id,
                print_status=job.status.value,
                tracking_url=job.tracking_url,
            )
            await AuditService(session).finish(
                event_id,
                RecordStatus.SUCCESS,
                payload={
                    "vendor_job_id": job.job_id,
                    "vendor_status": job.raw_status,
                    "print_status": job.status.value,
                    "tracking_url": job.tracking_url,
                },
            )
        return PrintStatusUpdate(
            book_id=book_id,
            previous_status=previous,
            print_status=job.status,
            vendor_job_id=job.job_id,
            tracking_url=job.tracking_url,
        )

    async def _fail(self, event_id: str, exc: Exception) -> None:
        logger.error("Print vendor call failed: %s", exc)
        async with session_scope(self._session_factory) as session:
            await AuditService(session).finish(event_id, RecordStatus.FAILED, error=str(exc))

    async def _notify(self, order_id: str, update: PrintStatusUpdate) -> None:
        if update.previous_status == update.print_status:
            return
        await self._notifier.notify_print_status_change(
            order_id,
            update.previous_status,
            update.print_status,
            tracking_url=update.tracking_url,
        )
