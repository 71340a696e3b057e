"""FastAPI dependency injection for settings, sessions, external clients and services."""

from __future__ import annotations

import hmac
import logging
from collections.abc import AsyncGenerator
from typing import Annotated

from fastapi import Depends, Header, HTTPException
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker
from storypress_core.book.renderer import BookRenderer
from storypress_core.state.database import get_engine, make_session_factory

from storypress_api.config import APISettings, StorageBackend, load_api_settings
from storypress_api.services.book_assembly import BookAssemblyService, ImageFetcher
from storypress_api.services.fulfillment_service import FulfillmentOrchestrator
from storypress_api.services.notification_service import NotificationDispatcher, ResendEmailTransport
from storypress_api.services.payment_gateway import PaymentEventGateway
from storypress_api.services.print_vendor import LuluClient, PrintVendorService
from storypress_api.services.storage import LocalObjectStorage, ObjectStorage, S3ObjectStorage

logger = logging.getLogger(__name__)

# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

_settings_cache: APISettings | None = None


def get_settings() -> APISettings:
    """Return the cached :class:`APISettings` singleton."""
    global _settings_cache  # noqa: PLW0603
    if _settings_cache is None:
        _settings_cache = load_api_settings()
    return _settings_cache


SettingsDep = Annotated[APISettings, Depends(get_settings)]

# ---------------------------------------------------------------------------
# Database session
# ---------------------------------------------------------------------------

_engine: AsyncEngine | None = None
_session_factory: async_sessionmaker[AsyncSession] | None = None


def init_engine(settings: APISettings) -> AsyncEngine:
    """Create and cache the global async engine."""
    global _engine, _session_factory  # noqa: PLW0603
    _engine = get_engine(settings.database_url)
    _session_factory = make_session_factory(_engine)
    return _engine


async def dispose_engine() -> None:
    """Dispose the global engine pool (call during shutdown)."""
    global _engine, _session_factory  # noqa: PLW0603
    if _engine is not None:
        await _engine.dispose()
        _engine = None
        _session_factory = None


def get_session_factory() -> async_sessionmaker[AsyncSession]:
    """Return the global async session factory.

    Services that call external systems take the factory rather than a
    session so they can commit before and after each network call.
    """
    if _session_factory is None:
        raise RuntimeError(
            "Database engine has not been initialised. Ensure init_engine() is called during application startup."
        )
    return _session_factory


SessionFactoryDep = Annotated[async_sessionmaker[AsyncSession], Depends(get_session_factory)]


async def get_db_session(
    session_factory: SessionFactoryDep,
) -> AsyncGenerator[AsyncSession, None]:
    """Yield an ``AsyncSession`` for one request.

    The session commits on clean exit and rolls back on exception.
    """
    session = session_factory()
    try:
        yield session
        await session.commit()
    except Exception:
        await session.rollback()
        raise
    finally:
        await session.close()


SessionDep = Annotated[AsyncSession, Depends(get_db_session)]

# ---------------------------------------------------------------------------
# External clients
# ---------------------------------------------------------------------------

_lulu_client: LuluClient | None = None
_email_transport: ResendEmailTransport | None = None
_image_fetcher: ImageFetcher | None = None
_object_storage: ObjectStorage | None = None
_book_renderer: BookRenderer | None = None


def build_object_storage(settings: APISettings) -> ObjectStorage:
    """Return the storage backend selected by ``storage_backend``."""
    if settings.storage_backend == StorageBackend.S3:
        return S3ObjectStorage(
            settings.s3_bucket,
            settings.storage_public_base_url,
            endpoint_url=settings.s3_endpoint_url or None,
            region=settings.s3_region,
            access_key_id=settings.s3_access_key_id or None,
            secret_access_key=settings.s3_secret_access_key.get_secret_value() or None,
        )
    return LocalObjectStorage(settings.storage_local_path, settings.storage_public_base_url)


def init_clients(settings: APISettings) -> None:
    """Create and cache the vendor, email, storage and rendering clients."""
    global _lulu_client, _email_transport, _image_fetcher, _object_storage, _book_renderer  # noqa: PLW0603
    _lulu_client = LuluClient(settings)
    _email_transport = ResendEmailTransport(
        settings.resend_api_key.get_secret_value(),
        settings.email_from,
        timeout=settings.email_timeout,
    )
    _image_fetcher = ImageFetcher(timeout=settings.image_fetch_timeout)
    _object_storage = build_object_storage(settings)
    _book_renderer = BookRenderer()


async def dispose_clients() -> None:
    """Close the HTTP pools owned by the cached clients."""
    global _lulu_client, _email_transport, _image_fetcher, _object_storage, _book_renderer  # noqa: PLW0603
    if _lulu_client is not None:
        await _lulu_client.close()
    if _email_transport is not None:
        await _email_transport.close()
    if _image_fetcher is not None:
        await _image_fetcher.close()
    _lulu_client = None
    _email_transport = None
    _image_fetcher = None
    _object_storage = None
    _book_renderer = None


def _not_initialised(name: str) -> RuntimeError:
    return RuntimeError(f"{name} has not been initialised. Ensure init_clients() is called during application startup.")


def get_lulu_client() -> LuluClient:
    if _lulu_client is None:
        raise _not_initialised("LuluClient")
    return _lulu_client


def get_email_transport() -> ResendEmailTransport:
    if _email_transport is None:
        raise _not_initialised("ResendEmailTransport")
    return _email_transport


def get_image_fetcher() -> ImageFetcher:
    if _image_fetcher is None:
        raise _not_initialised("ImageFetcher")
    return _image_fetcher


def get_object_storage() -> ObjectStorage:
    if _object_storage is None:
        raise _not_initialised("ObjectStorage")
    return _object_storage


def get_book_renderer() -> BookRenderer:
    if _book_renderer is None:
        raise _not_initialised("BookRenderer")
    return _book_renderer


LuluClientDep = Annotated[LuluClient, Depends(get_lulu_client)]
EmailTransportDep = Annotated[ResendEmailTransport, Depends(get_email_transport)]
ImageFetcherDep = Annotated[ImageFetcher, Depends(get_image_fetcher)]
ObjectStorageDep = Annotated[ObjectStorage, Depends(get_object_storage)]
BookRendererDep = Annotated[BookRenderer, Depends(get_book_renderer)]

# ---------------------------------------------------------------------------
# Services
# ---------------------------------------------------------------------------


def get_notification_dispatcher(
    session_factory: SessionFactoryDep,
    transport: EmailTransportDep,
) -> NotificationDispatcher:
    return NotificationDispatcher(session_factory, transport)


NotifierDep = Annotated[NotificationDispatcher, Depends(get_notification_dispatcher)]


def get_book_assembly_service(
    session_factory: SessionFactoryDep,
    storage: ObjectStorageDep,
    image_fetcher: ImageFetcherDep,
    renderer: BookRendererDep,
) -> BookAssemblyService:
    return BookAssemblyService(session_factory, storage=storage, image_fetcher=image_fetcher, renderer=renderer)


AssemblyDep = Annotated[BookAssemblyService, Depends(get_book_assembly_service)]


def get_fulfillment_orchestrator(
    session_factory: SessionFactoryDep,
    assembly: AssemblyDep,
    notifier: NotifierDep,
) -> FulfillmentOrchestrator:
    return FulfillmentOrchestrator(session_factory, assembly, notifier)


OrchestratorDep = Annotated[FulfillmentOrchestrator, Depends(get_fulfillment_orchestrator)]


def get_print_vendor_service(
    session_factory: SessionFactoryDep,
    client: LuluClientDep,
    notifier: NotifierDep,
) -> PrintVendorService:
    return PrintVendorService(session_factory, client, notifier)


PrintVendorDep = Annotated[PrintVendorService, Depends(get_print_vendor_service)]


def get_payment_gateway(
    session_factory: SessionFactoryDep,
    settings: SettingsDep,
) -> PaymentEventGateway:
    return PaymentEventGateway(session_factory, settings)


PaymentGatewayDep = Annotated[PaymentEventGateway, Depends(get_payment_gateway)]


def build_fulfillment_orchestrator(session_factory: async_sessionmaker[AsyncSession]) -> FulfillmentOrchestrator:
    """Wire an orchestrator from the cached clients, outside request scope.

    Used by the background job runner.
    """
    notifier = NotificationDispatcher(session_factory, get_email_transport())
    assembly = BookAssemblyService(
        session_factory,
        storage=get_object_storage(),
        image_fetcher=get_image_fetcher(),
        renderer=get_book_renderer(),
    )
    return FulfillmentOrchestrator(session_factory, assembly, notifier)


# ---------------------------------------------------------------------------
# Admin authentication
# ---------------------------------------------------------------------------


def require_admin_token(
    settings: SettingsDep,
    x_admin_token: Annotated[str | None, Header()] = None,
) -> None:
    """Reject requests without the configured ``X-Admin-Token``.

    Returns 503 when no admin token is configured so that an unset secret
    never opens the admin surface.
    """
    expected = settings.admin_api_token.get_secret_value()
    if not expected:
        raise HTTPException(status_code=503, detail="Admin API is not configured")
    if not x_admin_token or not hmac.compare_digest(x_admin_token.encode("utf-8"), expected.encode("utf-8")):
        logger.warning("Rejected admin request with invalid token")
        raise HTTPException(status_code=401, detail="Invalid admin token")


AdminDep = Annotated[None, Depends(require_admin_token)]
