"""Book assembly: canonical page selection and PDF rendering."""

from storypress_core.book.selection import (
    CoverCandidate,
    PageCandidate,
    SceneInput,
    Spread,
    select_canonical_page,
    select_cover_hero,
    select_spreads,
)

__all__ = [
    "CoverCandidate",
    "PageCandidate",
    "SceneInput",
    "Spread",
    "select_canonical_page",
    "select_cover_hero",
    "select_spreads",
]
