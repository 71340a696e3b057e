"""Exception hierarchy shared by the fulfillment pipeline.

Callers branch on exception *type*, never on message text.  In particular
:class:`AssetsNotReady` is the tagged "precondition not met" outcome of
book assembly that the orchestrator converts into a waiting result.
"""

from __future__ import annotations


class StoryPressError(Exception):
    """Base class for all domain errors."""


class BookAssemblyError(StoryPressError):
    """Raised when print files cannot be produced for a story."""


class AssetsNotReady(BookAssemblyError):
    """The story is not ready for assembly yet.

    Raised when the story has no scenes or when one or more scenes have no
    final page image.  Re-running assembly after content generation
    finishes is the expected recovery.
    """

    def __init__(self, message: str, *, missing_scenes: list[int] | None = None) -> None:
        super().__init__(message)
        self.missing_scenes: list[int] = list(missing_scenes or [])


class PrintVendorError(StoryPressError):
    """Raised when the print vendor API rejects a request or is unreachable."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class PrintVendorConfigError(PrintVendorError):
    """Raised when vendor credentials or shipping configuration are missing."""

    def __init__(self, errors: list[str]) -> None:
        super().__init__("Print vendor is not configured: " + "; ".join(errors))
        self.errors = errors


class PreflightFailed(StoryPressError):
    """Raised when a print submission is refused because of blockers."""

    def __init__(self, blockers: list[str]) -> None:
        super().__init__("Preflight failed: " + "; ".join(blockers))
        self.blockers = blockers


class EmailDeliveryError(StoryPressError):
    """Raised by an email transport when a send is rejected."""


class StorageError(StoryPressError):
    """Raised when an object cannot be written to durable storage."""
