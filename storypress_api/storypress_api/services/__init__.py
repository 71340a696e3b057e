"""Application services for the StoryPress API."""
