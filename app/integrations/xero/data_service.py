"""
Xero Data Service
Coordinates token lookup, tenant selection, caching and fetching for Xero data.

A request whose token Xero rejects (401) is refreshed and retried exactly
once; every other failure propagates to the caller unchanged.
"""

import asyncio
import logging
from datetime import date
from typing import Any, Awaitable, Callable, Optional, TypeVar

from sqlalchemy.ext.asyncio import AsyncSession

from app.integrations.xero.cache_service import CacheService
from app.integrations.xero.data_fetcher import MAX_PAGE_SIZE, XeroDataFetcher, supported_resource_types
from app.integrations.xero.exceptions import (
    NotConnectedError,
    UnauthorizedError,
    UnsupportedResourceTypeError,
)
from app.integrations.xero.reports import (
    BAS_STATUSES,
    BASReportAssembler,
    FASReportAssembler,
    identify_fbt_categories,
)
from app.integrations.xero.schemas import (
    DEFAULT_PAGE_SIZE,
    FetchOptions,
    InvoiceFilters,
    ReportPeriod,
    Tenant,
    XeroDataResponse,
)
from app.integrations.xero.service import XeroService
from app.integrations.xero.utils import (
    build_date_range_where,
    build_invoice_where,
    build_order,
    current_quarter_range,
    search_items,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def cache_key(resource_type: str) -> str:
    """Cache resource type for a logical type (dashes → underscores)."""
    return resource_type.replace("-", "_")


class XeroDataService:
    """
    Read-through access to Xero data for a company.

    Handles:
    - Tenant validation (falls back to the selected tenant)
    - Cache lookups for unfiltered requests
    - Exactly-one refresh-and-retry on 401
    - BAS/FAS report orchestration
    """

    def __init__(
        self,
        db: AsyncSession,
        xero_service: Optional[XeroService] = None,
        fetcher: Optional[XeroDataFetcher] = None,
    ):
        self.db = db
        self.xero_service = xero_service or XeroService(db)
        self.fetcher = fetcher or XeroDataFetcher(self.xero_service.config)
        self.cache = CacheService(db)

    async def resolve_tenant(self, company_id: int, tenant_id: Optional[str] = None) -> Tenant:
        """
        Pick the tenant for a request.

        Raises:
            NotConnectedError: If the company has no connection or tenant
        """
        connection = await self.xero_service.get_connection(company_id)
        if connection is None or not connection.has_tokens:
            raise NotConnectedError()
        return XeroService.resolve_tenant(connection, tenant_id)

    async def call_with_refresh(
        self,
        company_id: int,
        operation: Callable[[str], Awaitable[T]],
    ) -> T:
        """
        Run an operation with a valid access token.

        If Xero answers 401, the token is refreshed once and the operation
        retried once; a second 401 propagates as UnauthorizedError.

        Args:
            company_id: Company ID
            operation: Coroutine function taking the access token
        """
        token = await self.xero_service.get_valid_token(company_id)
        try:
            return await operation(token.access_token)
        except UnauthorizedError:
            logger.info("Xero rejected access token for company %s; refreshing once", company_id)

        await self.xero_service.refresh(company_id, rejected_access_token=token.access_token)
        token = await self.xero_service.get_valid_token(company_id)
        return await operation(token.access_token)

    async def _cached_or_fetch(
        self,
        company_id: int,
        tenant: Tenant,
        key: str,
        use_cache: bool,
        operation: Callable[[str], Awaitable[Any]],
    ) -> tuple[Any, bool]:
        """Serve from cache when allowed, otherwise fetch and store."""
        if use_cache:
            cached = await self.cache.get(company_id, tenant.id, key)
            if cached is not None:
                return cached, True

        payload = await self.call_with_refresh(company_id, operation)

        if use_cache:
            await self.cache.put(company_id, tenant.id, key, payload)
        return payload, False

    # =========================================================================
    # Generic catalog access
    # =========================================================================

    async def get_data(
        self,
        company_id: int,
        resource_type: str,
        tenant_id: Optional[str] = None,
        options: Optional[FetchOptions] = None,
        use_cache: bool = True,
    ) -> XeroDataResponse:
        """
        Fetch any catalog or composite resource type.

        Only unfiltered first pages at the default page size are read from or
        written to the cache.

        Raises:
            UnsupportedResourceTypeError: Unknown resource type
        """
        supported = supported_resource_types()
        if resource_type not in supported:
            raise UnsupportedResourceTypeError(resource_type, supported)

        options = options or FetchOptions()
        tenant = await self.resolve_tenant(company_id, tenant_id)

        payload, cached = await self._cached_or_fetch(
            company_id,
            tenant,
            cache_key(resource_type),
            use_cache and options.is_unfiltered,
            lambda token: self.fetcher.fetch(resource_type, token, tenant.id, options),
        )

        return XeroDataResponse(
            resource_type=resource_type,
            tenant_id=tenant.id,
            cached=cached,
            data=payload,
        )

    async def get_invoices(
        self,
        company_id: int,
        filters: Optional[InvoiceFilters] = None,
        tenant_id: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        search: Optional[str] = None,
        all_pages: bool = False,
        use_cache: bool = True,
    ) -> XeroDataResponse:
        """
        Fetch invoices with Xero-side filtering and local search.

        Args:
            company_id: Company ID
            filters: Invoice criteria (translated into a where clause)
            tenant_id: Requested tenant
            page: Page number (ignored with all_pages)
            page_size: Page size, capped at 1000
            search: Local search over number, reference and contact name
            all_pages: Follow pagination to the end
            use_cache: Allow cache use for unfiltered requests
        """
        filters = filters or InvoiceFilters()
        options = FetchOptions(
            page=page,
            page_size=min(page_size, MAX_PAGE_SIZE),
            where=build_invoice_where(filters),
            order=build_order(filters.sort_by, filters.sort_order),
        )
        tenant = await self.resolve_tenant(company_id, tenant_id)
        cacheable = use_cache and options.is_unfiltered and options.order is None and not search

        if all_pages:
            result = await self.call_with_refresh(
                company_id,
                lambda token: self.fetcher.fetch_all_pages("invoices", token, tenant.id, options),
            )
            return XeroDataResponse(
                resource_type="invoices",
                tenant_id=tenant.id,
                data=search_items(result["items"], search),
                pagination=result["pagination"],
            )

        # Same raw payload shape as get_data, so both share the "invoices" entry
        payload, cached = await self._cached_or_fetch(
            company_id,
            tenant,
            cache_key("invoices"),
            cacheable,
            lambda token: self.fetcher.fetch("invoices", token, tenant.id, options),
        )
        items = (payload or {}).get("Invoices") or []

        return XeroDataResponse(
            resource_type="invoices",
            tenant_id=tenant.id,
            cached=cached,
            data=search_items(items, search),
            pagination={
                "page": options.page,
                "page_size": options.page_size,
                "item_count": len(items),
            },
        )

    async def get_contacts(
        self,
        company_id: int,
        tenant_id: Optional[str] = None,
        page: int = 1,
        page_size: int = DEFAULT_PAGE_SIZE,
        use_cache: bool = True,
    ) -> XeroDataResponse:
        """Fetch a page of contacts."""
        response = await self.get_data(
            company_id,
            "contacts",
            tenant_id=tenant_id,
            options=FetchOptions(page=page, page_size=page_size),
            use_cache=use_cache,
        )
        response.data = (response.data or {}).get("Contacts", [])
        response.pagination = {"page": page, "page_size": min(page_size, MAX_PAGE_SIZE)}
        return response

    # =========================================================================
    # BAS / FAS
    # =========================================================================

    @staticmethod
    def resolve_period(from_date: Optional[date], to_date: Optional[date]) -> ReportPeriod:
        """Requested period, defaulting each missing end to the current quarter."""
        quarter_start, quarter_end = current_quarter_range()
        return ReportPeriod(
            from_date=from_date or quarter_start,
            to_date=to_date or quarter_end,
        )

    @staticmethod
    def _document_where(period: ReportPeriod, invoice_type: str) -> str:
        filters = InvoiceFilters(
            date_from=period.from_date,
            date_to=period.to_date,
            statuses=list(BAS_STATUSES),
            invoice_type=invoice_type,
        )
        return build_invoice_where(filters)

    async def _fetch_all(
        self, resource_type: str, token: str, tenant_id: str, where: str
    ) -> list[dict[str, Any]]:
        options = FetchOptions(page=1, page_size=MAX_PAGE_SIZE, where=where)
        result = await self.fetcher.fetch_all_pages(resource_type, token, tenant_id, options)
        return result["items"]

    async def get_bas_report(
        self,
        company_id: int,
        tenant_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        use_cache: bool = True,
    ) -> XeroDataResponse:
        """
        Assemble BAS figures from invoices and bills for the period.

        Only the default (current quarter) period is cached.
        """
        period = self.resolve_period(from_date, to_date)
        tenant = await self.resolve_tenant(company_id, tenant_id)
        cacheable = use_cache and from_date is None and to_date is None

        async def build(token: str) -> dict[str, Any]:
            invoices, bills = await asyncio.gather(
                self._fetch_all("invoices", token, tenant.id, self._document_where(period, "ACCREC")),
                self._fetch_all("invoices", token, tenant.id, self._document_where(period, "ACCPAY")),
            )
            return BASReportAssembler.assemble(invoices, bills, period)

        report, cached = await self._cached_or_fetch(
            company_id, tenant, "bas_data", cacheable, build
        )

        return XeroDataResponse(
            resource_type="bas-data",
            tenant_id=tenant.id,
            cached=cached,
            data=report,
        )

    async def get_fas_report(
        self,
        company_id: int,
        tenant_id: Optional[str] = None,
        from_date: Optional[date] = None,
        to_date: Optional[date] = None,
        use_cache: bool = True,
    ) -> XeroDataResponse:
        """
        Assemble fringe-benefit estimates from employee bills and bank transactions.

        Only the default (current quarter) period is cached.
        """
        period = self.resolve_period(from_date, to_date)
        tenant = await self.resolve_tenant(company_id, tenant_id)
        cacheable = use_cache and from_date is None and to_date is None

        bank_where = " AND ".join(
            build_date_range_where(period.from_date, period.to_date) + ['Status!="DELETED"']
        )

        async def build(token: str) -> dict[str, Any]:
            bills, bank_transactions = await asyncio.gather(
                self._fetch_all("invoices", token, tenant.id, self._document_where(period, "ACCPAY")),
                self._fetch_all("bank-transactions", token, tenant.id, bank_where),
            )
            return FASReportAssembler.assemble(bills, bank_transactions, period)

        report, cached = await self._cached_or_fetch(
            company_id, tenant, "fas_data", cacheable, build
        )

        return XeroDataResponse(
            resource_type="fas-data",
            tenant_id=tenant.id,
            cached=cached,
            data=report,
        )

    async def get_fbt_categories(
        self, company_id: int, tenant_id: Optional[str] = None
    ) -> XeroDataResponse:
        """Accounts that look like fringe-benefit expense or liability accounts."""
        tenant = await self.resolve_tenant(company_id, tenant_id)
        accounts = await self.call_with_refresh(
            company_id,
            lambda token: self.fetcher.fetch_items("accounts", token, tenant.id),
        )
        return XeroDataResponse(
            resource_type="fas-categories",
            tenant_id=tenant.id,
            data=identify_fbt_categories(accounts),
        )

    async def clear_cache(
        self,
        company_id: int,
        tenant_id: Optional[str] = None,
        resource_type: Optional[str] = None,
    ) -> int:
        """Clear cached data, optionally for one tenant and/or resource type."""
        return await self.cache.clear(
            company_id,
            tenant_id=tenant_id,
            resource_type=cache_key(resource_type) if resource_type else None,
        )
