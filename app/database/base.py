"""
Base Model Module
Declarative base, shared mixins and datetime helpers for all models.
"""

import re
import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import DateTime, Uuid, func
from sqlalchemy.orm import (
    DeclarativeBase,
    Mapped,
    declared_attr,
    mapped_column,
)


def utcnow() -> datetime:
    """Current time as a timezone-aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """
    Normalise a datetime read back from the database to aware UTC.

    Backends without timezone support (SQLite) return naive values,
    which are stored as UTC.
    """
    if value is None or value.tzinfo is not None:
        return value
    return value.replace(tzinfo=timezone.utc)


class Base(DeclarativeBase):
    """
    Base class for all SQLAlchemy models.

    Table names default to the pluralised snake_case class name:
        XeroConnection -> xero_connections
        XeroDataCache -> xero_data_caches
    """

    @declared_attr.directive
    def __tablename__(cls) -> str:
        name = re.sub(r"(?<!^)(?=[A-Z])", "_", cls.__name__).lower()
        if name.endswith(("s", "x", "ch", "sh")):
            return name + "es"
        if name.endswith("y") and name[-2] not in "aeiou":
            return name[:-1] + "ies"
        return name + "s"

    def __repr__(self) -> str:
        attrs = [
            f"{attr}={getattr(self, attr)!r}"
            for attr in ("company_id", "tenant_id", "resource_type", "status")
            if getattr(self, attr, None) is not None
        ]
        return f"<{self.__class__.__name__}({', '.join(attrs)})>"


class TimestampMixin:
    """
    Mixin that adds created_at and updated_at timestamps.

    Values are set client-side so they are loaded without a refresh
    under async sessions; the server defaults cover raw inserts.
    """

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
    )

    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        onupdate=utcnow,
        server_default=func.now(),
        nullable=False,
    )


class UUIDMixin:
    """Mixin that adds a UUID primary key (native on PostgreSQL, CHAR(32) elsewhere)."""

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4,
    )
