"""Unit tests for the reportlab book renderer."""

from __future__ import annotations

import io

import pytest
from PIL import Image as PILImage
from storypress_core.book.renderer import BookRenderer
from storypress_core.book.selection import Spread


@pytest.fixture()
def png_bytes() -> bytes:
    buf = io.BytesIO()
    PILImage.new("RGB", (64, 48), color=(200, 120, 40)).save(buf, format="PNG")
    return buf.getvalue()


class TestBookRenderer:
    def test_interior_is_pdf_with_one_page_per_spread(self, png_bytes: bytes) -> None:
        spreads = [
            (Spread(scene_number=n, text=f"Scene {n} & friends <3", image_url=f"u{n}"), png_bytes) for n in (1, 2, 3)
        ]
        pdf = BookRenderer().render_interior("Maya's Moon", spreads)
        assert pdf.startswith(b"%PDF")
        assert b"/Count 3" in pdf

    def test_cover_with_hero(self, png_bytes: bytes) -> None:
        pdf = BookRenderer().render_cover("Maya's Moon", png_bytes)
        assert pdf.startswith(b"%PDF")
        assert b"/Count 1" in pdf

    def test_cover_without_hero(self) -> None:
        pdf = BookRenderer().render_cover("Untitled story", None)
        assert pdf.startswith(b"%PDF")

    def test_custom_page_size(self, png_bytes: bytes) -> None:
        renderer = BookRenderer(page_size=(600.0, 600.0), image_height_ratio=0.5)
        pdf = renderer.render_cover("Square", png_bytes)
        assert b"600" in pdf
