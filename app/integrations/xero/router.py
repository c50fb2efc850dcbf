"""
Xero Integration Router
API endpoints for Xero settings, OAuth 2.0 flow and data fetching.

Service errors (app.integrations.xero.exceptions) propagate to the
application-level handler, which renders them with their stable codes.
"""

import logging
from datetime import date
from typing import Optional

from fastapi import APIRouter, Depends, Query, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from app.auth.dependencies import CompanyIdentity, get_current_company, get_optional_company
from app.auth.rate_limit import limiter
from app.config import settings
from app.database import get_async_session
from app.integrations.xero.data_fetcher import XeroDataFetcher
from app.integrations.xero.data_service import XeroDataService
from app.integrations.xero.exceptions import InvalidStateError, TokenExchangeFailedError
from app.integrations.xero.oauth import XeroOAuth
from app.integrations.xero.reports import BASReportAssembler, FASReportAssembler
from app.integrations.xero.schemas import (
    CacheClearResponse,
    FetchOptions,
    InvoiceFilters,
    XeroAuthURLResponse,
    XeroCallbackRequest,
    XeroCallbackResponse,
    XeroConnectionStatus,
    XeroDataResponse,
    XeroDisconnectResponse,
    XeroRefreshResponse,
    XeroSettingsRequest,
    XeroSettingsResponse,
    XeroTenantsResponse,
)
from app.integrations.xero.service import XeroService

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/integrations/xero", tags=["Xero Integration"])


# =============================================================================
# Dependencies
# =============================================================================

def get_xero_oauth() -> XeroOAuth:
    """Dependency to get the Xero OAuth client."""
    return XeroOAuth(settings.xero_config())


def get_xero_fetcher() -> XeroDataFetcher:
    """Dependency to get the Xero data fetcher."""
    return XeroDataFetcher(settings.xero_config())


async def get_xero_service(
    db: AsyncSession = Depends(get_async_session),
    oauth: XeroOAuth = Depends(get_xero_oauth),
) -> XeroService:
    """Dependency to get XeroService instance."""
    return XeroService(db, oauth=oauth)


async def get_data_service(
    xero_service: XeroService = Depends(get_xero_service),
    fetcher: XeroDataFetcher = Depends(get_xero_fetcher),
) -> XeroDataService:
    """Dependency to get XeroDataService instance."""
    return XeroDataService(xero_service.db, xero_service=xero_service, fetcher=fetcher)


# =============================================================================
# Settings
# =============================================================================

@router.get(
    "/settings",
    response_model=XeroSettingsResponse,
    summary="Get Xero app credentials",
    description="Read stored client ID and redirect URI. The client secret is never returned.",
)
async def get_xero_settings(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroSettingsResponse:
    return await xero_service.get_settings(company.company_id)


@router.post(
    "/settings",
    response_model=XeroSettingsResponse,
    summary="Save Xero app credentials",
)
async def save_xero_settings(
    payload: XeroSettingsRequest,
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroSettingsResponse:
    """
    Create or update the company's Xero app credentials.

    Changing credentials on a connected company drops its tokens.
    """
    await xero_service.save_settings(
        company.company_id,
        client_id=payload.client_id,
        redirect_uri=payload.redirect_uri,
        client_secret=payload.client_secret,
    )
    return await xero_service.get_settings(company.company_id)


@router.delete(
    "/settings",
    status_code=status.HTTP_204_NO_CONTENT,
    summary="Delete Xero app credentials",
)
async def delete_xero_settings(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> None:
    await xero_service.delete_settings(company.company_id)


# =============================================================================
# OAuth Flow
# =============================================================================

@router.get(
    "/auth-url",
    response_model=XeroAuthURLResponse,
    summary="Start Xero OAuth flow",
    description="Generate authorization URL to redirect user to Xero for consent.",
)
@limiter.limit("10/minute")
async def get_auth_url(
    request: Request,
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroAuthURLResponse:
    """
    Initiate Xero OAuth 2.0 authorization flow.

    Frontend should redirect user to authorization_url.
    """
    return await xero_service.generate_auth_url(company.company_id)


@router.get(
    "/callback",
    response_model=XeroCallbackResponse,
    summary="Handle Xero OAuth redirect",
    description="Process Xero OAuth callback, exchange code for tokens.",
)
@limiter.limit("20/minute")
async def xero_callback(
    request: Request,
    code: Optional[str] = Query(None, description="Authorization code from Xero"),
    state: Optional[str] = Query(None, description="State token for CSRF validation"),
    error: Optional[str] = Query(None, description="Error reported by Xero"),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroCallbackResponse:
    """
    Handle OAuth 2.0 redirect from Xero.

    No auth required: the state parameter identifies the company.
    """
    if error:
        raise TokenExchangeFailedError(
            f"Xero authorization was not completed: {error}",
            upstream_error=error,
        )
    if not code or not state:
        raise InvalidStateError("Missing authorization code or state.")

    return await xero_service.handle_callback(code, state)


@router.post(
    "/callback",
    response_model=XeroCallbackResponse,
    summary="Complete Xero OAuth flow",
    description="Exchange an authorization code relayed by the frontend.",
)
@limiter.limit("20/minute")
async def xero_callback_post(
    request: Request,
    payload: XeroCallbackRequest,
    company: Optional[CompanyIdentity] = Depends(get_optional_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroCallbackResponse:
    """
    Complete the OAuth flow from a frontend-relayed callback.

    If a bearer token is sent, its company must own the state.
    """
    return await xero_service.handle_callback(
        payload.code,
        payload.state,
        company_id_hint=company.company_id if company else None,
    )


# =============================================================================
# Connection
# =============================================================================

@router.get(
    "/status",
    response_model=XeroConnectionStatus,
    summary="Get Xero connection status",
)
async def get_xero_status(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroConnectionStatus:
    return await xero_service.get_status(company.company_id)


@router.get(
    "/tenants",
    response_model=XeroTenantsResponse,
    summary="List authorised Xero organisations",
)
async def get_xero_tenants(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroTenantsResponse:
    return await xero_service.list_tenants(company.company_id)


@router.get(
    "/connections",
    response_model=XeroTenantsResponse,
    summary="List authorised Xero organisations (alias of /tenants)",
)
async def get_xero_connections(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroTenantsResponse:
    return await xero_service.list_tenants(company.company_id)


@router.delete(
    "/disconnect",
    response_model=XeroDisconnectResponse,
    summary="Disconnect Xero",
    description="Clear tokens and tenants. Client credentials are kept.",
)
async def disconnect_xero(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroDisconnectResponse:
    await xero_service.disconnect(company.company_id)
    return XeroDisconnectResponse(success=True, message="Xero disconnected successfully")


@router.post(
    "/refresh-token",
    response_model=XeroRefreshResponse,
    summary="Refresh Xero tokens",
)
async def refresh_xero_token(
    company: CompanyIdentity = Depends(get_current_company),
    xero_service: XeroService = Depends(get_xero_service),
) -> XeroRefreshResponse:
    """Force a token refresh. A failure means the user must reconnect."""
    connection = await xero_service.refresh(company.company_id, force=True)
    return XeroRefreshResponse(
        success=True,
        message="Tokens refreshed successfully",
        expires_at=connection.expires_at,
    )


# =============================================================================
# Data
# =============================================================================

@router.get(
    "/data/{resource_type}",
    response_model=XeroDataResponse,
    summary="Fetch a Xero resource",
)
async def get_xero_data(
    resource_type: str,
    tenant_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    where: Optional[str] = Query(None, description="Xero where expression"),
    order: Optional[str] = Query(None, description='e.g. "Date DESC"'),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    options = FetchOptions(
        page=page,
        page_size=page_size,
        date_from=date_from,
        date_to=date_to,
        where=where,
        order=order,
    )
    return await data_service.get_data(
        company.company_id,
        resource_type,
        tenant_id=tenant_id,
        options=options,
        use_cache=use_cache,
    )


@router.get(
    "/invoices",
    response_model=XeroDataResponse,
    summary="Search invoices",
)
async def get_xero_invoices(
    tenant_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    status_filter: Optional[str] = Query(
        None, alias="status", description="Comma-separated statuses, e.g. AUTHORISED,PAID"
    ),
    invoice_type: Optional[str] = Query(None, alias="type", description="ACCREC or ACCPAY"),
    overdue: bool = Query(False),
    contact_id: Optional[str] = Query(None),
    contact_name: Optional[str] = Query(None),
    invoice_number: Optional[str] = Query(None),
    reference: Optional[str] = Query(None),
    min_total: Optional[float] = Query(None),
    max_total: Optional[float] = Query(None),
    sort_by: Optional[str] = Query(None),
    sort_order: str = Query("DESC"),
    search: Optional[str] = Query(None),
    all_pages: bool = Query(False),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    filters = InvoiceFilters(
        date_from=date_from,
        date_to=date_to,
        statuses=status_filter.split(",") if status_filter else [],
        invoice_type=invoice_type,
        overdue_only=overdue,
        contact_id=contact_id,
        contact_name=contact_name,
        invoice_number=invoice_number,
        reference=reference,
        min_total=min_total,
        max_total=max_total,
        sort_by=sort_by,
        sort_order=sort_order,
    )
    return await data_service.get_invoices(
        company.company_id,
        filters=filters,
        tenant_id=tenant_id,
        page=page,
        page_size=page_size,
        search=search,
        all_pages=all_pages,
        use_cache=use_cache,
    )


@router.get(
    "/contacts",
    response_model=XeroDataResponse,
    summary="List contacts",
)
async def get_xero_contacts(
    tenant_id: Optional[str] = Query(None),
    page: int = Query(1, ge=1),
    page_size: int = Query(50, ge=1),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_contacts(
        company.company_id,
        tenant_id=tenant_id,
        page=page,
        page_size=page_size,
        use_cache=use_cache,
    )


@router.get(
    "/financial-summary",
    response_model=XeroDataResponse,
    summary="Revenue summary",
)
async def get_financial_summary(
    tenant_id: Optional[str] = Query(None),
    date_from: Optional[date] = Query(None),
    date_to: Optional[date] = Query(None),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_data(
        company.company_id,
        "financial-summary",
        tenant_id=tenant_id,
        options=FetchOptions(date_from=date_from, date_to=date_to),
        use_cache=use_cache,
    )


@router.get(
    "/dashboard",
    response_model=XeroDataResponse,
    summary="Dashboard snapshot",
)
async def get_dashboard(
    tenant_id: Optional[str] = Query(None),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_data(
        company.company_id,
        "dashboard-data",
        tenant_id=tenant_id,
        use_cache=use_cache,
    )


# =============================================================================
# BAS
# =============================================================================

@router.get("/bas-data", response_model=XeroDataResponse, summary="BAS figures for a period")
async def get_bas_data(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_bas_report(
        company.company_id, tenant_id, from_date, to_date, use_cache=use_cache
    )


@router.get("/bas-data/current", response_model=XeroDataResponse, summary="BAS for the current quarter")
async def get_current_bas_data(
    tenant_id: Optional[str] = Query(None),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_bas_report(company.company_id, tenant_id)


@router.get("/bas-data/summary", response_model=XeroDataResponse, summary="BAS headline figures")
async def get_bas_summary(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    response = await data_service.get_bas_report(company.company_id, tenant_id, from_date, to_date)
    response.data = BASReportAssembler.summarize(response.data)
    return response


@router.get(
    "/bas-data/calculation",
    response_model=XeroDataResponse,
    summary="Recalculate BAS from live data",
)
async def get_bas_calculation(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_bas_report(
        company.company_id, tenant_id, from_date, to_date, use_cache=False
    )


# =============================================================================
# FAS
# =============================================================================

@router.get("/fas-data", response_model=XeroDataResponse, summary="Fringe-benefit figures for a period")
async def get_fas_data(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    use_cache: bool = Query(True),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_fas_report(
        company.company_id, tenant_id, from_date, to_date, use_cache=use_cache
    )


@router.get("/fas-data/current", response_model=XeroDataResponse, summary="FAS for the current quarter")
async def get_current_fas_data(
    tenant_id: Optional[str] = Query(None),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_fas_report(company.company_id, tenant_id)


@router.get("/fas-data/summary", response_model=XeroDataResponse, summary="FAS headline figures")
async def get_fas_summary(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    response = await data_service.get_fas_report(company.company_id, tenant_id, from_date, to_date)
    response.data = FASReportAssembler.summarize(response.data)
    return response


@router.get(
    "/fas-data/calculation",
    response_model=XeroDataResponse,
    summary="Recalculate FAS from live data",
)
async def get_fas_calculation(
    tenant_id: Optional[str] = Query(None),
    from_date: Optional[date] = Query(None, alias="fromDate"),
    to_date: Optional[date] = Query(None, alias="toDate"),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_fas_report(
        company.company_id, tenant_id, from_date, to_date, use_cache=False
    )


@router.get(
    "/fas-data/categories",
    response_model=XeroDataResponse,
    summary="Accounts likely to carry fringe benefits",
)
async def get_fas_categories(
    tenant_id: Optional[str] = Query(None),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> XeroDataResponse:
    return await data_service.get_fbt_categories(company.company_id, tenant_id)


# =============================================================================
# Cache
# =============================================================================

@router.delete("/cache", response_model=CacheClearResponse, summary="Clear cached Xero data")
async def clear_xero_cache(
    tenant_id: Optional[str] = Query(None),
    resource_type: Optional[str] = Query(None),
    company: CompanyIdentity = Depends(get_current_company),
    data_service: XeroDataService = Depends(get_data_service),
) -> CacheClearResponse:
    cleared = await data_service.clear_cache(
        company.company_id, tenant_id=tenant_id, resource_type=resource_type
    )
    return CacheClearResponse(cleared=cleared)
