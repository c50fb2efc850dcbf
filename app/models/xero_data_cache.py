"""
Xero Data Cache Model
Last fetched payload per (company, tenant, resource type).
"""

from datetime import datetime, timezone
from typing import Any

from sqlalchemy import JSON, DateTime, Index, Integer, String, UniqueConstraint
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, TimestampMixin, UUIDMixin, ensure_utc


class XeroDataCache(Base, UUIDMixin, TimestampMixin):
    """
    Cached Xero response.

    A single row per key, overwritten on each successful fetch.
    Rows are never swept; they simply become stale after expires_at.

    Attributes:
        company_id: Owning company
        tenant_id: Xero tenant the data belongs to
        resource_type: Logical resource type (invoices, bas_data, ...)
        payload: Response data (JSON)
        cached_at: When the data was fetched
        expires_at: When the entry stops being served
    """

    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    tenant_id: Mapped[str] = mapped_column(String(255), nullable=False)
    resource_type: Mapped[str] = mapped_column(String(64), nullable=False)

    payload: Mapped[Any] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )

    cached_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    expires_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)

    __table_args__ = (
        UniqueConstraint(
            "company_id", "tenant_id", "resource_type",
            name="uq_xero_data_caches_key",
        ),
        Index("ix_xero_data_caches_company_id", "company_id"),
    )

    @property
    def is_fresh(self) -> bool:
        """Check if the entry can still be served."""
        return datetime.now(timezone.utc) < ensure_utc(self.expires_at)
