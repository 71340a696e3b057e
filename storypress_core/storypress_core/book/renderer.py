"""PDF rendering of book interiors and covers using reportlab.

The renderer works on image *bytes* that the caller has already fetched,
so it performs no I/O and can be swapped for a fake in tests.
"""

from __future__ import annotations

import io
import logging
from collections.abc import Sequence
from xml.sax.saxutils import escape

from reportlab.lib import colors
from reportlab.lib.enums import TA_CENTER
from reportlab.lib.styles import ParagraphStyle, getSampleStyleSheet
from reportlab.lib.units import inch
from reportlab.lib.utils import ImageReader
from reportlab.platypus import Image, PageBreak, Paragraph, SimpleDocTemplate, Spacer

from storypress_core.book.selection import Spread

logger = logging.getLogger(__name__)

# Square picture-book trim size.
PAGE_SIZE: tuple[float, float] = (8.5 * inch, 8.5 * inch)
_MARGIN = 0.5 * inch


class BookRenderer:
    """Render interior and cover PDFs for a picture book.

    Parameters
    ----------
    page_size:
        ``(width, height)`` in points.  Defaults to an 8.5in square.
    image_height_ratio:
        Fraction of the usable page height reserved for each spread's
        illustration; the remainder holds the scene text.
    """

    def __init__(
        self,
        *,
        page_size: tuple[float, float] = PAGE_SIZE,
        image_height_ratio: float = 0.72,
    ) -> None:
        self._page_size = page_size
        self._image_height_ratio = image_height_ratio
        styles = getSampleStyleSheet()
        self._title_style = ParagraphStyle(
            "BookTitle",
            parent=styles["Title"],
            fontSize=28,
            leading=34,
            alignment=TA_CENTER,
            textColor=colors.HexColor("#2b2d42"),
        )
        self._body_style = ParagraphStyle(
            "SceneText",
            parent=styles["Normal"],
            fontSize=13,
            leading=18,
            alignment=TA_CENTER,
        )

    # -- Public API ----------------------------------------------------------

    def render_interior(self, title: str, spreads: Sequence[tuple[Spread, bytes]]) -> bytes:
        """Render one page per spread: illustration above, scene text below."""
        buf = io.BytesIO()
        doc = self._document(buf, title)
        max_width = doc.width
        max_height = doc.height * self._image_height_ratio

        elements: list = []
        for index, (spread, image_bytes) in enumerate(spreads):
            if index > 0:
                elements.append(PageBreak())
            elements.append(self._image(image_bytes, max_width, max_height))
            elements.append(Spacer(1, 12))
            if spread.text:
                elements.append(Paragraph(escape(spread.text), self._body_style))

        doc.build(elements)
        logger.debug("Rendered interior PDF with %d spread(s)", len(spreads))
        return buf.getvalue()

    def render_cover(self, title: str, hero_image: bytes | None) -> bytes:
        """Render the cover: title plus the hero illustration when present."""
        buf = io.BytesIO()
        doc = self._document(buf, title)

        elements: list = [Paragraph(escape(title), self._title_style), Spacer(1, 18)]
        if hero_image is not None:
            elements.append(self._image(hero_image, doc.width, doc.height * self._image_height_ratio))

        doc.build(elements)
        return buf.getvalue()

    # -- Helpers ---------------------------------------------------------------

    def _document(self, buf: io.BytesIO, title: str) -> SimpleDocTemplate:
        return SimpleDocTemplate(
            buf,
            pagesize=self._page_size,
            leftMargin=_MARGIN,
            rightMargin=_MARGIN,
            topMargin=_MARGIN,
            bottomMargin=_MARGIN,
            title=title,
        )

    @staticmethod
    def _image(image_bytes: bytes, max_width: float, max_height: float) -> Image:
        """Build an ``Image`` flowable scaled to fit inside the given box."""
        width, height = ImageReader(io.BytesIO(image_bytes)).getSize()
        scale = min(max_width / width, max_height / height)
        return Image(io.BytesIO(image_bytes), width=width * scale, height=height * scale)
