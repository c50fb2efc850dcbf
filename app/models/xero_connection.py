"""
Xero Connection Model
Per-company Xero client credentials, OAuth tokens and selected tenant.
"""

import logging
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, Optional

from pydantic import ValidationError
from sqlalchemy import JSON, DateTime, Index, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from app.database.base import Base, TimestampMixin, UUIDMixin, ensure_utc
from app.integrations.xero.schemas import Tenant

logger = logging.getLogger(__name__)

# Tokens expiring within this window are refreshed before use
REFRESH_BUFFER = timedelta(minutes=5)


class ConnectionStatus(str, Enum):
    """Status of the Xero connection."""

    NOT_CONFIGURED = "not_configured"
    CONNECTED = "connected"
    DISCONNECTED = "disconnected"
    EXPIRED = "expired"
    ERROR = "error"


class XeroConnection(Base, UUIDMixin, TimestampMixin):
    """
    Xero connection for one company.

    Client credentials and OAuth tokens are updated independently:
    clearing tokens (disconnect) never touches client_id/client_secret.

    Attributes:
        company_id: Owning company (unique)
        client_id: Xero app client ID
        client_secret: Xero app client secret (encrypted)
        redirect_uri: OAuth redirect URI registered with the Xero app
        access_token: Short-lived token for API calls (encrypted)
        refresh_token: Rotating refresh token (encrypted)
        token_expires_at: When access_token expires
        tenant_id: Selected Xero tenant
        organization_name: Name of the selected tenant
        authorized_tenants: JSON list of authorised tenants
        status: Connection status
        last_refreshed_at: When tokens were last refreshed
        last_error: Last refresh/exchange error message
    """

    company_id: Mapped[int] = mapped_column(
        Integer,
        unique=True,
        nullable=False,
    )

    # Client credentials
    client_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    client_secret: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    redirect_uri: Mapped[Optional[str]] = mapped_column(String(1024), nullable=True)

    # OAuth tokens
    access_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    refresh_token: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    token_expires_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )

    # Tenant selection
    tenant_id: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    organization_name: Mapped[Optional[str]] = mapped_column(String(255), nullable=True)
    authorized_tenants: Mapped[Optional[list[dict[str, Any]]]] = mapped_column(
        JSON().with_variant(JSONB(), "postgresql"),
        nullable=True,
    )

    status: Mapped[str] = mapped_column(
        String(20),
        default=ConnectionStatus.NOT_CONFIGURED.value,
        nullable=False,
    )

    last_refreshed_at: Mapped[Optional[datetime]] = mapped_column(
        DateTime(timezone=True),
        nullable=True,
    )
    last_error: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index("ix_xero_connections_company_id", "company_id"),
        Index("ix_xero_connections_status", "status"),
    )

    def __repr__(self) -> str:
        return f"<XeroConnection(company_id={self.company_id}, status={self.status!r})>"

    @property
    def tenants(self) -> list[Tenant]:
        """Authorised tenants, parsed from storage. Unparseable data yields []."""
        raw = self.authorized_tenants or []
        try:
            return [Tenant.model_validate(item) for item in raw]
        except (ValidationError, TypeError) as e:
            logger.warning(
                "Could not parse authorized tenants for company %s: %s",
                self.company_id,
                e,
            )
            return []

    @tenants.setter
    def tenants(self, value: list[Tenant]) -> None:
        self.authorized_tenants = [tenant.model_dump(mode="json") for tenant in value]

    @property
    def has_credentials(self) -> bool:
        """Check if client ID, secret and redirect URI are all stored."""
        return bool(self.client_id and self.client_secret and self.redirect_uri)

    @property
    def has_tokens(self) -> bool:
        """Check if an access token is stored."""
        return bool(self.access_token)

    @property
    def expires_at(self) -> Optional[datetime]:
        """Token expiry as an aware UTC datetime."""
        return ensure_utc(self.token_expires_at)

    @property
    def is_token_expired(self) -> bool:
        """Check if access token has expired (missing expiry counts as expired)."""
        if self.expires_at is None:
            return True
        return datetime.now(timezone.utc) >= self.expires_at

    @property
    def needs_refresh(self) -> bool:
        """
        Check if token needs refresh (expires within 5 minutes).
        Proactive refresh prevents mid-request expiration.
        """
        if self.expires_at is None:
            return True
        return datetime.now(timezone.utc) > (self.expires_at - REFRESH_BUFFER)

    def clear_tokens(self) -> None:
        """Drop tokens and tenant selection, keeping client credentials."""
        self.access_token = None
        self.refresh_token = None
        self.token_expires_at = None
        self.tenant_id = None
        self.organization_name = None
        self.authorized_tenants = []
