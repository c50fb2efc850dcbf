"""
Xero Integration Schemas
Value objects and request/response models for the Xero endpoints.
"""

from datetime import date, datetime
from typing import Any, Optional

from pydantic import BaseModel, Field

# Only this page size is served from or written to the cache
DEFAULT_PAGE_SIZE = 50


# =============================================================================
# Value Objects
# =============================================================================

class TenantMetadata(BaseModel):
    """Organisation details fetched from the Xero Organisation endpoint."""

    name: Optional[str] = None
    legal_name: Optional[str] = None
    country_code: Optional[str] = None
    tax_number: Optional[str] = None
    short_code: Optional[str] = None


class Tenant(BaseModel):
    """An authorised Xero organisation (tenant)."""

    id: str = Field(..., description="Xero tenant ID")
    name: Optional[str] = Field(None, description="Tenant display name")
    short_code: Optional[str] = Field(None, description="Xero tenant type, e.g. ORGANISATION")
    connection_id: Optional[str] = Field(None, description="Xero connection ID")
    metadata: Optional[TenantMetadata] = Field(
        None,
        description="Organisation details; absent when enrichment failed",
    )

    @classmethod
    def from_connection(cls, connection: dict[str, Any]) -> "Tenant":
        """Build a tenant from an entry of the Xero /connections response."""
        return cls(
            id=connection["tenantId"],
            name=connection.get("tenantName"),
            short_code=connection.get("tenantType"),
            connection_id=connection.get("id"),
        )


class ValidToken(BaseModel):
    """Access token guaranteed unexpired at the time it was handed out."""

    access_token: str
    refresh_token: Optional[str] = None
    tenant_id: Optional[str] = None
    organization_name: Optional[str] = None
    expires_at: datetime


class FetchOptions(BaseModel):
    """Query options for a catalog fetch."""

    page: int = Field(1, ge=1)
    page_size: int = Field(DEFAULT_PAGE_SIZE, ge=1)
    date_from: Optional[date] = None
    date_to: Optional[date] = None
    where: Optional[str] = None
    order: Optional[str] = None
    filters: dict[str, Any] = Field(default_factory=dict)

    @property
    def is_unfiltered(self) -> bool:
        """Whether the request is the plain default first page (cacheable)."""
        return (
            self.page == 1
            and self.page_size == DEFAULT_PAGE_SIZE
            and not self.where
            and not self.filters
            and self.date_from is None
            and self.date_to is None
        )


class InvoiceFilters(BaseModel):
    """Invoice search criteria translated into a Xero where clause."""

    date_from: Optional[date] = None
    date_to: Optional[date] = None
    statuses: list[str] = Field(default_factory=list)
    invoice_type: Optional[str] = Field(None, description="ACCREC or ACCPAY")
    overdue_only: bool = False
    contact_id: Optional[str] = None
    contact_name: Optional[str] = None
    invoice_number: Optional[str] = None
    reference: Optional[str] = None
    min_total: Optional[float] = None
    max_total: Optional[float] = None
    sort_by: Optional[str] = Field(None, description="Xero field name, e.g. Date")
    sort_order: str = Field("DESC", description="ASC or DESC")


class ReportPeriod(BaseModel):
    """Inclusive date range for BAS/FAS reports."""

    from_date: date
    to_date: date


# =============================================================================
# Request Models
# =============================================================================

class XeroSettingsRequest(BaseModel):
    """Per-company Xero app credentials."""

    client_id: str = Field(..., min_length=1, description="Xero app client ID")
    client_secret: Optional[str] = Field(
        None,
        description="Xero app client secret; omit to keep the stored one",
    )
    redirect_uri: str = Field(..., min_length=1, description="OAuth redirect URI")


class XeroCallbackRequest(BaseModel):
    """OAuth callback parameters posted by the frontend."""

    code: str = Field(..., description="Authorization code from Xero")
    state: str = Field(..., description="State token for CSRF validation")


# =============================================================================
# Response Models
# =============================================================================

class XeroSettingsResponse(BaseModel):
    """Stored credentials; the client secret is never returned."""

    client_id: Optional[str] = None
    redirect_uri: Optional[str] = None
    has_client_secret: bool = False
    configured: bool = False
    created_at: Optional[datetime] = None
    updated_at: Optional[datetime] = None


class XeroAuthURLResponse(BaseModel):
    """Response containing Xero authorization URL."""

    authorization_url: str = Field(
        ...,
        description="URL to redirect user to for Xero authorization"
    )
    state: str = Field(
        ...,
        description="State token for CSRF protection"
    )


class XeroCallbackResponse(BaseModel):
    """Response after successful OAuth callback."""

    success: bool = Field(..., description="Whether connection was successful")
    message: str = Field(..., description="Status message")
    company_id: int = Field(..., description="Company that owns the connection")
    tenant_id: str = Field(..., description="Selected (primary) Xero tenant ID")
    organization_name: Optional[str] = Field(None, description="Xero organization name")
    tenants: list[Tenant] = Field(default_factory=list)
    token_expires_at: datetime


class XeroConnectionStatus(BaseModel):
    """Xero connection status for a company."""

    connected: bool = Field(..., description="Whether Xero is usable right now")
    connection_status: str = Field(
        ...,
        description="not_configured, connected, disconnected, expired or error",
    )
    has_credentials: bool = False
    tenant_id: Optional[str] = None
    primary_organization: Optional[Tenant] = None
    tenants: list[Tenant] = Field(default_factory=list)
    token_expires_at: Optional[datetime] = None
    last_refreshed_at: Optional[datetime] = None
    last_error: Optional[str] = None


class XeroTenantsResponse(BaseModel):
    """Authorised tenants and the current selection."""

    tenants: list[Tenant] = Field(default_factory=list)
    selected_tenant_id: Optional[str] = None


class XeroDisconnectResponse(BaseModel):
    """Response after disconnecting Xero."""

    success: bool
    message: str


class XeroRefreshResponse(BaseModel):
    """Response after token refresh."""

    success: bool
    message: str
    expires_at: Optional[datetime] = None


class XeroDataResponse(BaseModel):
    """Envelope for fetched Xero data."""

    success: bool = True
    resource_type: str
    tenant_id: str
    cached: bool = False
    data: Any = None
    pagination: Optional[dict[str, Any]] = None


class CacheClearResponse(BaseModel):
    """Result of a cache clear."""

    success: bool = True
    cleared: int
