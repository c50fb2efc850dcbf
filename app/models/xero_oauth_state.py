"""
Xero OAuth State Model
One-time state tokens binding an authorization attempt to a company.
"""

from datetime import datetime, timedelta, timezone

from sqlalchemy import DateTime, Index, Integer, String
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, ensure_utc, utcnow

# 10 minutes is plenty for the user to complete the Xero consent screen
STATE_LIFETIME = timedelta(minutes=10)


class XeroOAuthState(Base):
    """
    Pending OAuth authorization request.

    Valid for STATE_LIFETIME from creation and deleted on first use.
    """

    __tablename__ = "xero_oauth_states"

    state: Mapped[str] = mapped_column(String(128), primary_key=True)
    company_id: Mapped[int] = mapped_column(Integer, nullable=False)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        nullable=False,
    )

    __table_args__ = (
        Index("ix_xero_oauth_states_company_id", "company_id"),
        Index("ix_xero_oauth_states_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<XeroOAuthState(company_id={self.company_id})>"

    @property
    def is_expired(self) -> bool:
        """Check if the state is older than STATE_LIFETIME."""
        return datetime.now(timezone.utc) > ensure_utc(self.created_at) + STATE_LIFETIME
