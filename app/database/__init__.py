"""
Database Package
Engine and session management, declarative base and model mixins.
"""

from app.database.connection import (
    async_engine,
    async_session_factory,
    build_engine,
    build_session_factory,
    get_async_session,
    init_db,
    close_db,
)
from app.database.base import Base, TimestampMixin, UUIDMixin, ensure_utc, utcnow

__all__ = [
    # Connection
    "async_engine",
    "async_session_factory",
    "build_engine",
    "build_session_factory",
    "get_async_session",
    "init_db",
    "close_db",
    # Base classes
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    # Helpers
    "ensure_utc",
    "utcnow",
]
