"""Shared fixtures for StoryPress API tests.

Every test gets its own SQLite file, real services wired against it, and
``httpx.MockTransport`` fakes standing in for the print vendor, the email
provider and the image host.  The FastAPI app is built with dependency
overrides pointing at the same objects, so route tests and service tests
observe the same database.
"""

from __future__ import annotations

import hashlib
import hmac
import io
import json
import re
import time
from collections.abc import AsyncGenerator, Callable
from datetime import UTC, datetime, timedelta
from typing import Any

import httpx
import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from PIL import Image
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from storypress_core.book.renderer import BookRenderer
from storypress_core.models import AssetType, PaymentStatus
from storypress_core.state.database import make_session_factory, session_scope
from storypress_core.state.sqlite_adapter import create_local_tables, get_local_engine
from storypress_core.state.tables import (
    BookTable,
    FinalPageTable,
    GeneratedAssetTable,
    OrderTable,
    StorySceneTable,
    StoryTable,
    UserTable,
)

from storypress_api.config import APISettings
from storypress_api.dependencies import (
    get_book_renderer,
    get_email_transport,
    get_image_fetcher,
    get_lulu_client,
    get_object_storage,
    get_session_factory,
    get_settings,
)
from storypress_api.main import create_app
from storypress_api.services.book_assembly import BookAssemblyService, ImageFetcher
from storypress_api.services.fulfillment_service import FulfillmentOrchestrator
from storypress_api.services.notification_service import NotificationDispatcher, ResendEmailTransport
from storypress_api.services.payment_gateway import PaymentEventGateway
from storypress_api.services.print_vendor import LuluClient, PrintVendorService
from storypress_api.services.storage import LocalObjectStorage

Factory = async_sessionmaker[AsyncSession]

ADMIN_TOKEN = "test-admin-token"
WEBHOOK_SECRET = "whsec_test_secret"
LULU_BASE_URL = "https://api.sandbox.lulu.com"
FILES_BASE_URL = "https://files.test/books"
IMAGE_HOST = "https://images.test"

SHIPPING_ADDRESS: dict[str, str] = {
    "name": "StoryPress QA",
    "street1": "101 Proof Lane",
    "city": "Raleigh",
    "state_code": "NC",
    "postcode": "27601",
    "country_code": "US",
    "phone_number": "+1 919 555 0100",
}


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------


@pytest.fixture()
def test_settings(tmp_path) -> APISettings:
    """Return fully configured settings pointing at a per-test database."""
    return APISettings(
        database_url=f"sqlite+aiosqlite:///{tmp_path / 'state.db'}",
        platform_env="dev",
        admin_api_token=ADMIN_TOKEN,
        stripe_webhook_secret=WEBHOOK_SECRET,
        auto_generate_after_payment=True,
        starter_credits_cents=20,
        credit_cost_character_cents=4,
        credit_cost_final_page_cents=4,
        paid_reroll_credits_cents=20,
        lulu_client_key="lulu-key",
        lulu_client_secret="lulu-secret",
        lulu_api_base_url=LULU_BASE_URL,
        lulu_contact_email="print-ops@storypress.test",
        lulu_pod_package_id="0850X0850FCPRESS080CW444GXX",
        lulu_shipping_address_json=json.dumps(SHIPPING_ADDRESS),
        resend_api_key="re_test_key",
        email_from="StoryPress <books@storypress.test>",
        storage_local_path=str(tmp_path / "files"),
        storage_public_base_url=FILES_BASE_URL,
        job_runner_enabled=False,
        job_max_attempts=3,
        job_retry_base_delay=1.0,
    )


@pytest.fixture()
def admin_headers() -> dict[str, str]:
    return {"X-Admin-Token": ADMIN_TOKEN}


# ---------------------------------------------------------------------------
# Database
# ---------------------------------------------------------------------------


@pytest_asyncio.fixture()
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    engine = get_local_engine(tmp_path / "state.db")
    await create_local_tables(engine)
    yield engine
    await engine.dispose()


@pytest_asyncio.fixture()
async def session_factory(engine: AsyncEngine) -> Factory:
    return make_session_factory(engine)


class Seeder:
    """Insert realistic rows in foreign-key order."""

    def __init__(self, factory: Factory) -> None:
        self._factory = factory

    async def user(self, user_id: str = "user-1", email: str = "parent@example.com") -> str:
        async with session_scope(self._factory) as session:
            session.add(UserTable(id=user_id, email=email, role="customer"))
        return user_id

    async def story(
        self,
        story_id: str = "story-1",
        *,
        user_id: str = "user-1",
        title: str | None = "The Moon Garden",
        scenes: int = 3,
        missing: tuple[int, ...] = (),
    ) -> str:
        """Create a story with one final page per scene, except *missing*."""
        async with session_scope(self._factory) as session:
            session.add(StoryTable(id=story_id, user_id=user_id, title=title))
            await session.flush()
            for number in range(1, scenes + 1):
                scene_id = f"{story_id}-scene-{number}"
                session.add(
                    StorySceneTable(
                        id=scene_id,
                        story_id=story_id,
                        scene_number=number,
                        text=f"Scene {number} of the adventure.",
                    )
                )
                await session.flush()
                if number in missing:
                    continue
                session.add(
                    FinalPageTable(
                        id=f"{scene_id}-v1",
                        scene_id=scene_id,
                        version=1,
                        is_approved=False,
                        image_url=f"{IMAGE_HOST}/{story_id}/scene-{number}.png",
                    )
                )
        return story_id

    async def order(
        self,
        order_id: str = "order-1",
        *,
        user_id: str = "user-1",
        story_id: str | None = "story-1",
        status: PaymentStatus = PaymentStatus.PENDING,
        checkout_session_id: str | None = "cs_test_1",
        payment_intent_id: str | None = "pi_test_1",
        shipping_email: str | None = "reader@example.com",
    ) -> str:
        async with session_scope(self._factory) as session:
            session.add(
                OrderTable(
                    id=order_id,
                    user_id=user_id,
                    story_id=story_id,
                    payment_status=status.value,
                    amount_cents=3999,
                    currency="usd",
                    stripe_checkout_session_id=checkout_session_id,
                    stripe_payment_intent_id=payment_intent_id,
                    shipping_email=shipping_email,
                )
            )
        return order_id

    async def book(
        self,
        book_id: str = "book-1",
        *,
        order_id: str = "order-1",
        print_status: str = "pdf_ready",
        pdf_url: str | None = f"{FILES_BASE_URL}/interior.pdf",
        vendor_job_id: str | None = None,
    ) -> str:
        async with session_scope(self._factory) as session:
            session.add(
                BookTable(
                    id=book_id,
                    order_id=order_id,
                    print_status=print_status,
                    pdf_url=pdf_url,
                    vendor_job_id=vendor_job_id,
                )
            )
        return book_id

    async def print_assets(self, book_id: str = "book-1") -> None:
        async with session_scope(self._factory) as session:
            for asset_type, name in (
                (AssetType.BOOK_PDF_INTERIOR, "interior"),
                (AssetType.BOOK_PDF_COVER, "cover"),
            ):
                session.add(
                    GeneratedAssetTable(
                        type=asset_type.value,
                        entity_id=book_id,
                        storage_url=f"{FILES_BASE_URL}/{book_id}-{name}.pdf",
                        mime_type="application/pdf",
                    )
                )

    async def cover_image(self, story_id: str = "story-1", *, age: timedelta = timedelta()) -> str:
        url = f"{IMAGE_HOST}/{story_id}/cover.png"
        async with session_scope(self._factory) as session:
            session.add(
                GeneratedAssetTable(
                    type=AssetType.FINAL_COVER_IMAGE.value,
                    entity_id=story_id,
                    storage_url=url,
                    mime_type="image/png",
                    created_at=datetime.now(UTC) - age,
                )
            )
        return url

    async def paid_order_with_story(self, *, missing: tuple[int, ...] = (), scenes: int = 3) -> str:
        await self.user()
        await self.story(scenes=scenes, missing=missing)
        return await self.order(status=PaymentStatus.PAID)


@pytest.fixture()
def seed(session_factory: Factory) -> Seeder:
    return Seeder(session_factory)


# ---------------------------------------------------------------------------
# External service fakes
# ---------------------------------------------------------------------------


@pytest.fixture(scope="session")
def png_bytes() -> bytes:
    buffer = io.BytesIO()
    Image.new("RGB", (64, 64), color=(120, 170, 220)).save(buffer, format="PNG")
    return buffer.getvalue()


class FakeLuluAPI:
    """In-memory stand-in for the Lulu token and print-job endpoints.

    ``error`` makes the job endpoints reject requests; ``html_body`` makes
    them answer 200 with a non-JSON page.
    """

    def __init__(self) -> None:
        self.requests: list[httpx.Request] = []
        self.tokens_issued = 0
        self.created_jobs: list[dict[str, Any]] = []
        self.job_id = 4242
        self.create_status: dict[str, Any] | str = {"name": "CREATED"}
        self.job_status: dict[str, Any] | str = {"name": "IN_PRODUCTION"}
        self.tracking_url: str | None = None
        self.error: tuple[int, dict[str, Any]] | None = None
        self.html_body: str | None = None

    @property
    def job_requests(self) -> list[httpx.Request]:
        return [r for r in self.requests if "/print-jobs/" in r.url.path]

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if request.url.path.endswith("/openid-connect/token"):
            self.tokens_issued += 1
            return httpx.Response(200, json={"access_token": f"token-{self.tokens_issued}", "expires_in": 3600})

        if self.error is not None:
            status_code, body = self.error
            return httpx.Response(status_code, json=body)

        if self.html_body is not None:
            return httpx.Response(200, text=self.html_body, headers={"Content-Type": "text/html"})

        if request.method == "POST" and request.url.path == "/print-jobs/":
            body = json.loads(request.content)
            self.created_jobs.append(body)
            return httpx.Response(
                201,
                json={"id": self.job_id, "external_id": body["external_id"], "status": self.create_status},
            )

        match = re.fullmatch(r"/print-jobs/([^/]+)/", request.url.path)
        if request.method == "GET" and match:
            payload: dict[str, Any] = {"id": match.group(1), "status": self.job_status}
            if self.tracking_url:
                payload["tracking_url"] = self.tracking_url
            return httpx.Response(200, json=payload)

        return httpx.Response(404, json={"detail": "Not found."})


class FakeResend:
    """Records outgoing emails; set ``fail`` to make the provider reject them."""

    def __init__(self) -> None:
        self.sent: list[dict[str, Any]] = []
        self.fail = False

    def handler(self, request: httpx.Request) -> httpx.Response:
        if self.fail:
            return httpx.Response(500, json={"message": "provider unavailable"})
        body = json.loads(request.content)
        self.sent.append(body)
        return httpx.Response(200, json={"id": f"msg-{len(self.sent)}"})


@pytest.fixture()
def fake_lulu() -> FakeLuluAPI:
    return FakeLuluAPI()


@pytest.fixture()
def fake_resend() -> FakeResend:
    return FakeResend()


@pytest_asyncio.fixture()
async def lulu_client(test_settings: APISettings, fake_lulu: FakeLuluAPI) -> AsyncGenerator[LuluClient, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_lulu.handler)) as http_client:
        yield LuluClient(test_settings, http_client=http_client)


@pytest_asyncio.fixture()
async def email_transport(
    test_settings: APISettings, fake_resend: FakeResend
) -> AsyncGenerator[ResendEmailTransport, None]:
    async with httpx.AsyncClient(transport=httpx.MockTransport(fake_resend.handler)) as http_client:
        yield ResendEmailTransport(
            test_settings.resend_api_key.get_secret_value(),
            test_settings.email_from,
            http_client=http_client,
        )


@pytest.fixture()
def image_requests() -> list[str]:
    return []


@pytest_asyncio.fixture()
async def image_fetcher(png_bytes: bytes, image_requests: list[str]) -> AsyncGenerator[ImageFetcher, None]:
    def _handler(request: httpx.Request) -> httpx.Response:
        image_requests.append(str(request.url))
        if request.url.host != "images.test" or "broken" in request.url.path:
            return httpx.Response(404)
        return httpx.Response(200, content=png_bytes, headers={"Content-Type": "image/png"})

    async with httpx.AsyncClient(transport=httpx.MockTransport(_handler)) as http_client:
        yield ImageFetcher(http_client=http_client)


@pytest.fixture()
def object_storage(test_settings: APISettings) -> LocalObjectStorage:
    return LocalObjectStorage(test_settings.storage_local_path, test_settings.storage_public_base_url)


@pytest.fixture()
def renderer() -> BookRenderer:
    return BookRenderer()


# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


@pytest.fixture()
def notifier(session_factory: Factory, email_transport: ResendEmailTransport) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, email_transport)


@pytest.fixture()
def assembly(
    session_factory: Factory,
    object_storage: LocalObjectStorage,
    image_fetcher: ImageFetcher,
    renderer: BookRenderer,
) -> BookAssemblyService:
    return BookAssemblyService(session_factory, storage=object_storage, image_fetcher=image_fetcher, renderer=renderer)


@pytest.fixture()
def orchestrator(
    session_factory: Factory,
    assembly: BookAssemblyService,
    notifier: NotificationDispatcher,
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(session_factory, assembly, notifier)


@pytest.fixture()
def print_vendor(
    session_factory: Factory,
    lulu_client: LuluClient,
    notifier: NotificationDispatcher,
) -> PrintVendorService:
    return PrintVendorService(session_factory, lulu_client, notifier)


@pytest.fixture()
def gateway(session_factory: Factory, test_settings: APISettings) -> PaymentEventGateway:
    return PaymentEventGateway(session_factory, test_settings)


# ---------------------------------------------------------------------------
# Stripe signatures
# ---------------------------------------------------------------------------


def _stripe_signature(payload: bytes, secret: str, timestamp: int | None = None) -> str:
    """Build a ``stripe-signature`` header the way Stripe signs deliveries."""
    ts = int(time.time()) if timestamp is None else timestamp
    signed = f"{ts}.".encode() + payload
    digest = hmac.new(secret.encode("utf-8"), signed, hashlib.sha256).hexdigest()
    return f"t={ts},v1={digest}"


@pytest.fixture()
def sign_stripe() -> Callable[..., str]:
    def _sign(payload: bytes, secret: str = WEBHOOK_SECRET, timestamp: int | None = None) -> str:
        return _stripe_signature(payload, secret, timestamp)

    return _sign


@pytest.fixture()
def stripe_event() -> Callable[..., dict[str, Any]]:
    """Return a factory for Stripe event envelopes."""

    def _event(event_type: str, data_object: dict[str, Any], event_id: str = "evt_test_1") -> dict[str, Any]:
        return {
            "id": event_id,
            "object": "event",
            "type": event_type,
            "livemode": False,
            "created": 1718000000,
            "api_version": "2024-06-20",
            "data": {"object": data_object},
        }

    return _event


@pytest.fixture()
def checkout_completed(stripe_event: Callable[..., dict[str, Any]]) -> Callable[..., dict[str, Any]]:
    def _completed(
        order_id: str | None = "order-1",
        *,
        event_id: str = "evt_test_1",
        session_id: str = "cs_test_1",
    ) -> dict[str, Any]:
        return stripe_event(
            "checkout.session.completed",
            {
                "id": session_id,
                "object": "checkout.session",
                "payment_intent": "pi_test_1",
                "payment_status": "paid",
                "metadata": {"orderId": order_id} if order_id else {},
                "customer_details": {
                    "name": "Ada Reader",
                    "email": "ada@example.com",
                    "phone": "+1 555 0100",
                    "address": {"line1": "1 Main St", "city": "Springfield", "country": "US"},
                },
                "shipping_details": {
                    "name": "Ada Reader",
                    "address": {"line1": "9 Elm St", "city": "Shelbyville", "country": "US"},
                },
            },
            event_id=event_id,
        )

    return _completed


# ---------------------------------------------------------------------------
# FastAPI app and HTTP client
# ---------------------------------------------------------------------------


@pytest.fixture()
def app(
    test_settings: APISettings,
    session_factory: Factory,
    lulu_client: LuluClient,
    email_transport: ResendEmailTransport,
    image_fetcher: ImageFetcher,
    object_storage: LocalObjectStorage,
    renderer: BookRenderer,
):
    """Create the FastAPI app with every dependency pointed at test objects."""
    application = create_app()
    application.dependency_overrides[get_settings] = lambda: test_settings
    application.dependency_overrides[get_session_factory] = lambda: session_factory
    application.dependency_overrides[get_lulu_client] = lambda: lulu_client
    application.dependency_overrides[get_email_transport] = lambda: email_transport
    application.dependency_overrides[get_image_fetcher] = lambda: image_fetcher
    application.dependency_overrides[get_object_storage] = lambda: object_storage
    application.dependency_overrides[get_book_renderer] = lambda: renderer
    return application


@pytest_asyncio.fixture()
async def client(app) -> AsyncGenerator[AsyncClient, None]:
    """Yield an async httpx client bound to the test app via ASGITransport."""
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as ac:
        yield ac
