"""Starlette middleware for the StoryPress API."""
