"""Pure selection logic for print output.

Decides which saved final-page version represents each scene in the
printed book and which image becomes the cover hero.  Nothing here
touches the database or the network: callers load candidates, these
functions decide, and the result is deterministic for a given input.
"""

from __future__ import annotations

from collections.abc import Sequence
from datetime import datetime

from pydantic import BaseModel, Field

from storypress_core.errors import AssetsNotReady
from storypress_core.models import AssetType

# ---------------------------------------------------------------------------
# Value objects
# ---------------------------------------------------------------------------


class PageCandidate(BaseModel):
    """One saved final-page version for a scene."""

    version: int = Field(..., ge=1)
    is_approved: bool = False
    created_at: datetime
    image_url: str | None = None


class SceneInput(BaseModel):
    """A scene with all of its final-page versions."""

    scene_number: int
    text: str = ""
    pages: list[PageCandidate] = Field(default_factory=list)


class Spread(BaseModel):
    """A scene paired with its canonical image, ready for rendering."""

    scene_number: int
    text: str
    image_url: str


class CoverCandidate(BaseModel):
    """A generated image that may serve as the cover hero."""

    asset_type: str
    storage_url: str
    created_at: datetime


# ---------------------------------------------------------------------------
# Selection
# ---------------------------------------------------------------------------


def _recency_key(page: PageCandidate) -> tuple[datetime, int]:
    # Newest first; equal timestamps fall back to the higher version.
    return page.created_at, page.version


def select_canonical_page(pages: Sequence[PageCandidate]) -> PageCandidate | None:
    """Return the canonical version among *pages*.

    If any version is approved, the newest approved version wins.
    Otherwise the newest version overall wins.  Ties on ``created_at``
    are broken by the higher version number.
    """
    if not pages:
        return None
    approved = [page for page in pages if page.is_approved]
    pool = approved or list(pages)
    return max(pool, key=_recency_key)


def select_spreads(scenes: Sequence[SceneInput]) -> list[Spread]:
    """Return one spread per scene in scene-number order.

    Raises
    ------
    AssetsNotReady
        If there are no scenes, or if any scene's canonical version has
        no image.  The message lists the affected scene numbers.
    """
    if not scenes:
        raise AssetsNotReady("No scenes found. Generate story scenes first.")

    spreads: list[Spread] = []
    missing: list[int] = []
    for scene in sorted(scenes, key=lambda s: s.scene_number):
        canonical = select_canonical_page(scene.pages)
        if canonical is None or not canonical.image_url:
            missing.append(scene.scene_number)
            continue
        spreads.append(Spread(scene_number=scene.scene_number, text=scene.text, image_url=canonical.image_url))

    if missing:
        numbers = ", ".join(str(n) for n in missing)
        raise AssetsNotReady(
            f"Missing final pages for scene(s): {numbers}. Generate final pages first.",
            missing_scenes=missing,
        )
    return spreads


_COVER_PRIORITY: tuple[str, ...] = (
    AssetType.FINAL_COVER_IMAGE.value,
    AssetType.STORY_COVER.value,
)


def select_cover_hero(candidates: Sequence[CoverCandidate], spreads: Sequence[Spread] = ()) -> str | None:
    """Pick the cover hero image URL.

    Priority: newest personalized final cover, then newest storyboard
    cover sketch, then the first spread's image, then none.
    """
    for asset_type in _COVER_PRIORITY:
        matching = [c for c in candidates if c.asset_type == asset_type]
        if matching:
            return max(matching, key=lambda c: c.created_at).storage_url
    if spreads:
        return spreads[0].image_url
    return None
