"""State persistence layer (PostgreSQL in production, SQLite locally)."""

from cardboard_core.state.database import get_engine, get_session, get_session_factory
from cardboard_core.state.repository import (
    AccountRepository,
    BoardRepository,
    CardRepository,
    StorageUploadRepository,
    WebhookEventRepository,
)

__all__ = [
    "AccountRepository",
    "BoardRepository",
    "CardRepository",
    "StorageUploadRepository",
    "WebhookEventRepository",
    "get_engine",
    "get_session",
    "get_session_factory",
]
