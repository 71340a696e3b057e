"""API router modules for the StoryPress fulfillment backend."""

from __future__ import annotations

from storypress_api.routers import admin, credits, health, webhooks

__all__ = [
    "admin",
    "credits",
    "health",
    "webhooks",
]
