"""Book assembly: turn a story's final pages into interior and cover PDFs.

The pipeline is split into short steps so that no database transaction
is open while images are downloaded or PDFs are uploaded:

1. Load scenes, final-page versions and cover candidates; select the
   canonical page per scene (:mod:`storypress_core.book.selection`).
2. Fetch image bytes over HTTP.
3. Render both PDFs with :class:`~storypress_core.book.renderer.BookRenderer`.
4. Upload to object storage.
5. Append asset rows and repoint ``Book.pdf_url`` in one transaction.

Re-running the pipeline appends new asset rows; history is never deleted.
"""

from __future__ import annotations

import asyncio
import logging
import time

import httpx
from pydantic import BaseModel
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker
from storypress_core.book.renderer import BookRenderer
from storypress_core.book.selection import (
    CoverCandidate,
    PageCandidate,
    SceneInput,
    Spread,
    select_cover_hero,
    select_spreads,
)
from storypress_core.errors import BookAssemblyError
from storypress_core.models import AssetType
from storypress_core.print_status import PrintStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import (
    AssetRepository,
    BookRepository,
    OrderRepository,
    StoryRepository,
)

from storypress_api.services.storage import ObjectStorage

logger = logging.getLogger(__name__)

_PDF_MIME = "application/pdf"
_DEFAULT_TITLE = "Untitled story"


class PrintFiles(BaseModel):
    """Result of a successful assembly."""

    book_id: str
    story_id: str
    interior_url: str
    cover_url: str
    interior_asset_id: str
    cover_asset_id: str
    spread_count: int


class _AssemblyPlan(BaseModel):
    book_id: str
    title: str
    spreads: list[Spread]
    hero_url: str | None


class ImageFetcher:
    """Download illustration bytes over HTTP.

    Parameters
    ----------
    http_client:
        Optional pre-configured ``httpx.AsyncClient``.  If *None*, a new
        client is created and owned by this instance.
    timeout:
        Per-request timeout in seconds.
    """

    def __init__(self, *, http_client: httpx.AsyncClient | None = None, timeout: float = 30.0) -> None:
        self._owns_client = http_client is None
        self._client = http_client or httpx.AsyncClient(timeout=timeout, follow_redirects=True)

    async def fetch(self, url: str) -> bytes:
        try:
            response = await self._client.get(url)
        except httpx.HTTPError as exc:
            raise BookAssemblyError(f"Failed to fetch image {url}: {exc}") from exc
        if response.status_code >= 400:
            raise BookAssemblyError(f"Failed to fetch image {url}: HTTP {response.status_code}")
        return response.content

    async def close(self) -> None:
        if self._owns_client:
            await self._client.aclose()


class BookAssemblyService:
    """Produce print files for a story and record them against its book.

    Parameters
    ----------
    session_factory:
        Factory for the short-lived sessions used before and after the
        network-bound steps.
    storage:
        Destination for the rendered PDFs.
    image_fetcher:
        Downloads illustration bytes.
    renderer:
        Renders PDF bytes from spreads and the cover hero image.
    """

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        *,
        storage: ObjectStorage,
        image_fetcher: ImageFetcher,
        renderer: BookRenderer | None = None,
    ) -> None:
        self._session_factory = session_factory
        self._storage = storage
        self._image_fetcher = image_fetcher
        self._renderer = renderer or BookRenderer()

    async def generate_print_files(self, story_id: str, *, book_id: str | None = None) -> PrintFiles:
        """Render and store the interior and cover PDFs for *story_id*.

        Parameters
        ----------
        story_id:
            The story whose final pages are assembled.
        book_id:
            The book to attach the files to.  When omitted, the book of
            the story's most recent order is used (created as ``draft`` if
            needed).

        Returns
        -------
        PrintFiles
            Storage URLs and asset ids of the two new PDFs.

        Raises
        ------
        AssetsNotReady
            The story has no scenes or some scenes lack a final page.
        BookAssemblyError
            No order exists for the story, or an image could not be fetched.
        LookupError
            *book_id* or *story_id* does not exist.
        """
        plan = await self._plan(story_id, book_id)

        images = await self._fetch_images(plan)
        spread_images = [(spread, images[spread.image_url]) for spread in plan.spreads]
        hero_bytes = images.get(plan.hero_url) if plan.hero_url else None

        interior_pdf = await asyncio.to_thread(self._renderer.render_interior, plan.title, spread_images)
        cover_pdf = await asyncio.to_thread(self._renderer.render_cover, plan.title, hero_bytes)

        stamp = int(time.time() * 1000)
        interior = await self._storage.put(
            f"books/{story_id}/interior-{stamp}.pdf", interior_pdf, content_type=_PDF_MIME
        )
        cover = await self._storage.put(f"books/{story_id}/cover-{stamp}.pdf", cover_pdf, content_type=_PDF_MIME)

        async with session_scope(self._session_factory) as session:
            assets = AssetRepository(session)
            metadata = {"story_id": story_id, "book_id": plan.book_id, "source": "pipeline"}
            interior_asset = await assets.add(
                asset_type=AssetType.BOOK_PDF_INTERIOR.value,
                entity_id=plan.book_id,
                storage_url=interior.url,
                mime_type=_PDF_MIME,
                file_size_bytes=interior.size_bytes,
                metadata=metadata,
            )
            cover_asset = await assets.add(
                asset_type=AssetType.BOOK_PDF_COVER.value,
                entity_id=plan.book_id,
                storage_url=cover.url,
                mime_type=_PDF_MIME,
                file_size_bytes=cover.size_bytes,
                metadata=metadata,
            )
            await BookRepository(session).update(
                plan.book_id,
                pdf_url=interior.url,
                print_status=PrintStatus.PDF_READY.value,
            )

        logger.info(
            "Assembled book=%s story=%s spreads=%d interior=%s",
            plan.book_id,
            story_id,
            len(plan.spreads),
            interior.url,
        )
        return PrintFiles(
            book_id=plan.book_id,
            story_id=story_id,
            interior_url=interior.url,
            cover_url=cover.url,
            interior_asset_id=interior_asset.id,
            cover_asset_id=cover_asset.id,
            spread_count=len(plan.spreads),
        )

    async def _plan(self, story_id: str, book_id: str | None) -> _AssemblyPlan:
        """Load content and choose the spreads and cover hero."""
        async with session_scope(self._session_factory) as session:
            stories = StoryRepository(session)
            story = await stories.get(story_id)
            if story is None:
                raise LookupError(f"Story {story_id} not found")

            books = BookRepository(session)
            if book_id is not None:
                book = await books.get(book_id)
                if book is None:
                    raise LookupError(f"Book {book_id} not found")
            else:
                order = await OrderRepository(session).latest_for_story(story_id)
                if order is None:
                    raise BookAssemblyError(f"No order found for story {story_id}")
                book, _ = await books.ensure_for_order(order.id, print_status=PrintStatus.DRAFT.value)

            scenes = await stories.list_scenes(story_id)
            pages = await stories.final_pages_by_scene([scene.id for scene in scenes])
            scene_inputs = [
                SceneInput(
                    scene_number=scene.scene_number,
                    text=scene.text,
                    pages=[
                        PageCandidate(
                            version=page.version,
                            is_approved=page.is_approved,
                            created_at=page.created_at,
                            image_url=page.image_url,
                        )
                        for page in pages.get(scene.id, [])
                    ],
                )
                for scene in scenes
            ]
            spreads = select_spreads(scene_inputs)

            assets = AssetRepository(session)
            candidates: list[CoverCandidate] = []
            for asset_type in (AssetType.FINAL_COVER_IMAGE, AssetType.STORY_COVER):
                asset = await assets.latest(story_id, asset_type.value)
                if asset is not None:
                    candidates.append(
                        CoverCandidate(
                            asset_type=asset.type,
                            storage_url=asset.storage_url,
                            created_at=asset.created_at,
                        )
                    )

            return _AssemblyPlan(
                book_id=book.id,
                title=story.title or _DEFAULT_TITLE,
                spreads=spreads,
                hero_url=select_cover_hero(candidates, spreads),
            )

    async def _fetch_images(self, plan: _AssemblyPlan) -> dict[str, bytes]:
        urls = [spread.image_url for spread in plan.spreads]
        if plan.hero_url:
            urls.append(plan.hero_url)
        urls = list(dict.fromkeys(urls))
        contents = await asyncio.gather(*(self._image_fetcher.fetch(url) for url in urls))
        return dict(zip(urls, contents, strict=True))
