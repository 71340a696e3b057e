"""Tests for storypress_api/services/book_assembly.py

Covers:
- Rendering, storing and recording interior and cover PDFs
- Book resolution by id or by the story's latest order
- AssetsNotReady for stories with missing final pages or no scenes
- Image download failures
- Cover hero selection and append-only asset history
"""

from __future__ import annotations

from pathlib import Path

import pytest
from sqlalchemy import func, select, update
from storypress_core.errors import AssetsNotReady, BookAssemblyError
from storypress_core.models import AssetType, PaymentStatus
from storypress_core.state.database import session_scope
from storypress_core.state.repository import BookRepository
from storypress_core.state.tables import FinalPageTable, GeneratedAssetTable

from storypress_api.services.book_assembly import BookAssemblyService


async def _asset_count(session_factory, asset_type: AssetType) -> int:
    async with session_scope(session_factory) as session:
        result = await session.execute(
            select(func.count()).select_from(GeneratedAssetTable).where(GeneratedAssetTable.type == asset_type.value)
        )
        return int(result.scalar_one())


class TestGeneratePrintFiles:
    @pytest.mark.asyncio
    async def test_renders_and_records_files(
        self, assembly: BookAssemblyService, session_factory, seed, test_settings
    ):
        await seed.paid_order_with_story()
        await seed.book(print_status="pending_generation", pdf_url=None)

        files = await assembly.generate_print_files("story-1", book_id="book-1")

        assert files.book_id == "book-1"
        assert files.spread_count == 3
        key = files.interior_url.removeprefix(test_settings.storage_public_base_url + "/")
        stored = Path(test_settings.storage_local_path) / key
        assert stored.read_bytes().startswith(b"%PDF")
        cover_key = files.cover_url.removeprefix(test_settings.storage_public_base_url + "/")
        assert (Path(test_settings.storage_local_path) / cover_key).exists()

        async with session_scope(session_factory) as session:
            book = await BookRepository(session).get("book-1")
            interior = await session.get(GeneratedAssetTable, files.interior_asset_id)
        assert book.print_status == "pdf_ready"
        assert book.pdf_url == files.interior_url
        assert interior.entity_id == "book-1"
        assert interior.mime_type == "application/pdf"
        assert interior.file_size_bytes == stored.stat().st_size
        assert interior.metadata_json == {"story_id": "story-1", "book_id": "book-1", "source": "pipeline"}

    @pytest.mark.asyncio
    async def test_resolves_book_from_latest_order(self, assembly: BookAssemblyService, session_factory, seed):
        await seed.paid_order_with_story()

        files = await assembly.generate_print_files("story-1")

        async with session_scope(session_factory) as session:
            book = await BookRepository(session).get_by_order("order-1")
        assert book is not None
        assert files.book_id == book.id
        assert book.print_status == "pdf_ready"

    @pytest.mark.asyncio
    async def test_story_without_order(self, assembly: BookAssemblyService, seed):
        await seed.user()
        await seed.story()

        with pytest.raises(BookAssemblyError, match="No order found for story story-1"):
            await assembly.generate_print_files("story-1")

    @pytest.mark.asyncio
    async def test_unknown_story(self, assembly: BookAssemblyService):
        with pytest.raises(LookupError):
            await assembly.generate_print_files("story-missing")

    @pytest.mark.asyncio
    async def test_unknown_book(self, assembly: BookAssemblyService, seed):
        await seed.paid_order_with_story()
        with pytest.raises(LookupError):
            await assembly.generate_print_files("story-1", book_id="book-missing")

    @pytest.mark.asyncio
    async def test_rerun_appends_asset_history(self, assembly: BookAssemblyService, session_factory, seed):
        await seed.paid_order_with_story()

        await assembly.generate_print_files("story-1")
        await assembly.generate_print_files("story-1")

        assert await _asset_count(session_factory, AssetType.BOOK_PDF_INTERIOR) == 2
        assert await _asset_count(session_factory, AssetType.BOOK_PDF_COVER) == 2


class TestNotReady:
    @pytest.mark.asyncio
    async def test_missing_final_pages(self, assembly: BookAssemblyService, seed, image_requests):
        await seed.user()
        await seed.story(scenes=4, missing=(2, 4))
        await seed.order(status=PaymentStatus.PAID)

        with pytest.raises(AssetsNotReady) as exc_info:
            await assembly.generate_print_files("story-1")

        assert exc_info.value.missing_scenes == [2, 4]
        assert image_requests == []

    @pytest.mark.asyncio
    async def test_story_without_scenes(self, assembly: BookAssemblyService, seed):
        await seed.user()
        await seed.story(scenes=0)
        await seed.order(status=PaymentStatus.PAID)

        with pytest.raises(AssetsNotReady):
            await assembly.generate_print_files("story-1")


class TestImages:
    @pytest.mark.asyncio
    async def test_failed_download(self, assembly: BookAssemblyService, session_factory, seed):
        await seed.paid_order_with_story()
        async with session_scope(session_factory) as session:
            await session.execute(
                update(FinalPageTable)
                .where(FinalPageTable.scene_id == "story-1-scene-2")
                .values(image_url="https://images.test/broken.png")
            )

        with pytest.raises(BookAssemblyError, match="HTTP 404"):
            await assembly.generate_print_files("story-1")

        assert await _asset_count(session_factory, AssetType.BOOK_PDF_INTERIOR) == 0

    @pytest.mark.asyncio
    async def test_cover_asset_is_fetched_as_hero(self, assembly: BookAssemblyService, seed, image_requests):
        await seed.paid_order_with_story()
        cover_url = await seed.cover_image()

        await assembly.generate_print_files("story-1")

        assert cover_url in image_requests
        assert len(image_requests) == len(set(image_requests)) == 4
