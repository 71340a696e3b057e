"""Core domain layer for the StoryPress fulfillment backend."""

__version__ = "0.1.0"
