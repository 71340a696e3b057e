"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from storypress_core.state.database import get_engine, make_session_factory, session_scope
from storypress_core.state.repository import (
    AssetRepository,
    AuditEventRepository,
    BookRepository,
    CreditRepository,
    IdempotencyKeyRepository,
    JobRepository,
    OrderRepository,
    StoryRepository,
)

__all__ = [
    "AssetRepository",
    "AuditEventRepository",
    "BookRepository",
    "CreditRepository",
    "IdempotencyKeyRepository",
    "JobRepository",
    "OrderRepository",
    "StoryRepository",
    "get_engine",
    "make_session_factory",
    "session_scope",
]
