"""
Xero Data Fetcher
Authenticated REST calls against the Xero Accounting API resource catalog.
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from decimal import Decimal
from typing import Any, AsyncIterator, Optional

import httpx

from app.config import XeroConfig
from app.integrations.xero.exceptions import (
    ForbiddenError,
    RateLimitedError,
    UnauthorizedError,
    UnsupportedResourceTypeError,
    UpstreamUnavailableError,
    UpstreamUnreachableError,
)
from app.integrations.xero.schemas import FetchOptions
from app.integrations.xero.utils import money, parse_amount, parse_retry_after

logger = logging.getLogger(__name__)

MAX_PAGE_SIZE = 1000
DEFAULT_MAX_PAGES = 50


@dataclass(frozen=True)
class ResourceSpec:
    """Where a logical resource type lives in the Xero API."""

    path: str
    response_key: str
    paginated: bool


RESOURCE_CATALOG: dict[str, ResourceSpec] = {
    "invoices": ResourceSpec("Invoices", "Invoices", True),
    "contacts": ResourceSpec("Contacts", "Contacts", True),
    "accounts": ResourceSpec("Accounts", "Accounts", False),
    "bank-transactions": ResourceSpec("BankTransactions", "BankTransactions", True),
    "items": ResourceSpec("Items", "Items", False),
    "tax-rates": ResourceSpec("TaxRates", "TaxRates", False),
    "tracking-categories": ResourceSpec("TrackingCategories", "TrackingCategories", False),
    "organization": ResourceSpec("Organisation", "Organisations", False),
    "purchase-orders": ResourceSpec("PurchaseOrders", "PurchaseOrders", True),
    "receipts": ResourceSpec("Receipts", "Receipts", True),
    "credit-notes": ResourceSpec("CreditNotes", "CreditNotes", True),
    "manual-journals": ResourceSpec("ManualJournals", "ManualJournals", True),
    "prepayments": ResourceSpec("Prepayments", "Prepayments", True),
    "overpayments": ResourceSpec("Overpayments", "Overpayments", True),
    "quotes": ResourceSpec("Quotes", "Quotes", True),
    "transactions": ResourceSpec("BankTransactions", "BankTransactions", True),
    "payments": ResourceSpec("Payments", "Payments", True),
    "journals": ResourceSpec("Journals", "Journals", True),
}

COMPOSITE_TYPES = ("financial-summary", "dashboard-data")


def supported_resource_types() -> list[str]:
    """All resource types accepted by fetch()."""
    return sorted(RESOURCE_CATALOG) + list(COMPOSITE_TYPES)


class XeroDataFetcher:
    """
    Fetches Xero resources over HTTP.

    Handles:
    - Resource type → API path mapping
    - Pagination, date range, where/order and extra filter parameters
    - Status code → error taxonomy mapping (no retries)
    - Client-side composites (financial summary, dashboard)
    """

    def __init__(self, config: XeroConfig, http_client: Optional[httpx.AsyncClient] = None):
        self.config = config
        self._http_client = http_client

    @asynccontextmanager
    async def _client(self) -> AsyncIterator[httpx.AsyncClient]:
        """Yield the injected client, or a short-lived one."""
        if self._http_client is not None:
            yield self._http_client
            return
        async with httpx.AsyncClient(timeout=self.config.fetch_timeout_seconds) as client:
            yield client

    @staticmethod
    def get_spec(resource_type: str) -> ResourceSpec:
        """
        Look up a catalog resource type.

        Raises:
            UnsupportedResourceTypeError: If the type is not in the catalog
        """
        spec = RESOURCE_CATALOG.get(resource_type)
        if spec is None:
            raise UnsupportedResourceTypeError(resource_type, supported_resource_types())
        return spec

    @staticmethod
    def build_params(spec: ResourceSpec, options: FetchOptions) -> dict[str, Any]:
        """Translate fetch options into Xero query parameters."""
        params: dict[str, Any] = {}

        if spec.paginated:
            params["page"] = options.page
            params["pageSize"] = min(options.page_size, MAX_PAGE_SIZE)

        if options.date_from:
            params["fromDate"] = options.date_from.isoformat()
        if options.date_to:
            params["toDate"] = options.date_to.isoformat()
        if options.where:
            params["where"] = options.where
        if options.order:
            params["order"] = options.order

        for key, value in options.filters.items():
            if value is not None:
                params[key] = value

        return params

    async def _get(
        self,
        path: str,
        access_token: str,
        tenant_id: str,
        params: Optional[dict[str, Any]] = None,
    ) -> dict[str, Any]:
        """
        Issue an authenticated GET and map failures.

        Raises:
            UnauthorizedError: 401
            ForbiddenError: 403
            RateLimitedError: 429, with Retry-After seconds
            UpstreamUnavailableError: 5xx or any other non-2xx
            UpstreamUnreachableError: Timeout or transport failure
        """
        url = f"{self.config.api_base_url}/{path}"
        try:
            async with self._client() as client:
                response = await client.get(
                    url,
                    params=params,
                    headers={
                        "Authorization": f"Bearer {access_token}",
                        "Xero-tenant-id": tenant_id,
                        "Accept": "application/json",
                    },
                )
        except httpx.TimeoutException as e:
            logger.error("Timed out fetching %s", path)
            raise UpstreamUnreachableError("Timed out waiting for the Xero API.") from e
        except httpx.TransportError as e:
            logger.error("Network error fetching %s: %s", path, e)
            raise UpstreamUnreachableError() from e

        status = response.status_code
        if status == 401:
            raise UnauthorizedError()
        if status == 403:
            raise ForbiddenError()
        if status == 429:
            retry_after = parse_retry_after(response.headers.get("Retry-After"))
            logger.warning("Xero rate limit hit on %s; retry after %ss", path, retry_after)
            raise RateLimitedError(retry_after=retry_after)
        if status >= 500:
            logger.error("Xero API error %s on %s", status, path)
            raise UpstreamUnavailableError(upstream_status=status, endpoint=path)
        if not response.is_success:
            raise UpstreamUnavailableError(
                f"Xero API request failed with status {status}",
                upstream_status=status,
                endpoint=path,
            )

        return response.json()

    async def fetch(
        self,
        resource_type: str,
        access_token: str,
        tenant_id: str,
        options: Optional[FetchOptions] = None,
    ) -> dict[str, Any]:
        """
        Fetch a resource type for a tenant.

        Args:
            resource_type: Catalog type (e.g. "invoices") or composite type
            access_token: Valid bearer token
            tenant_id: Xero tenant ID
            options: Pagination, date range and filter options

        Returns:
            Raw Xero payload (wrapped in its named key), or the computed
            result for composite types
        """
        options = options or FetchOptions()

        if resource_type == "financial-summary":
            return await self.fetch_financial_summary(access_token, tenant_id, options)
        if resource_type == "dashboard-data":
            return await self.fetch_dashboard_data(access_token, tenant_id)

        spec = self.get_spec(resource_type)
        params = self.build_params(spec, options)
        logger.debug("Fetching %s for tenant %s params=%s", resource_type, tenant_id, params)
        return await self._get(spec.path, access_token, tenant_id, params)

    async def fetch_items(
        self,
        resource_type: str,
        access_token: str,
        tenant_id: str,
        options: Optional[FetchOptions] = None,
    ) -> list[dict[str, Any]]:
        """Fetch a catalog resource and unwrap its item list."""
        spec = self.get_spec(resource_type)
        payload = await self.fetch(resource_type, access_token, tenant_id, options)
        return payload.get(spec.response_key) or []

    async def fetch_all_pages(
        self,
        resource_type: str,
        access_token: str,
        tenant_id: str,
        options: Optional[FetchOptions] = None,
        max_pages: int = DEFAULT_MAX_PAGES,
    ) -> dict[str, Any]:
        """
        Fetch every page of a paginated resource.

        Stops when a page returns fewer items than the page size, or after
        max_pages pages.

        Returns:
            {"items": [...], "pagination": {"pages_fetched", "item_count", "page_size"}}
        """
        options = options or FetchOptions()
        spec = self.get_spec(resource_type)
        page_size = min(options.page_size, MAX_PAGE_SIZE)

        if not spec.paginated:
            items = await self.fetch_items(resource_type, access_token, tenant_id, options)
            return {
                "items": items,
                "pagination": {"pages_fetched": 1, "item_count": len(items), "page_size": None},
            }

        items: list[dict[str, Any]] = []
        pages_fetched = 0
        page = options.page

        while pages_fetched < max_pages:
            page_options = options.model_copy(update={"page": page, "page_size": page_size})
            page_items = await self.fetch_items(resource_type, access_token, tenant_id, page_options)
            pages_fetched += 1
            items.extend(page_items)

            if len(page_items) < page_size:
                break
            page += 1
        else:
            logger.warning(
                "Stopped paging %s for tenant %s after %d pages",
                resource_type,
                tenant_id,
                max_pages,
            )

        return {
            "items": items,
            "pagination": {
                "pages_fetched": pages_fetched,
                "item_count": len(items),
                "page_size": page_size,
            },
        }

    async def fetch_financial_summary(
        self,
        access_token: str,
        tenant_id: str,
        options: Optional[FetchOptions] = None,
    ) -> dict[str, Any]:
        """
        Revenue totals over the invoices in the requested range.

        Returns:
            total_revenue, paid_revenue, outstanding_revenue and invoice_count
        """
        options = options or FetchOptions()
        result = await self.fetch_all_pages(
            "invoices",
            access_token,
            tenant_id,
            options.model_copy(update={"page": 1, "page_size": MAX_PAGE_SIZE}),
        )
        invoices = result["items"]

        total = sum((parse_amount(inv.get("Total")) for inv in invoices), Decimal("0"))
        paid = sum((parse_amount(inv.get("AmountPaid")) for inv in invoices), Decimal("0"))

        return {
            "total_revenue": money(total),
            "paid_revenue": money(paid),
            "outstanding_revenue": money(total - paid),
            "invoice_count": len(invoices),
        }

    async def fetch_dashboard_data(self, access_token: str, tenant_id: str) -> dict[str, Any]:
        """
        Combined snapshot for the dashboard.

        Invoices, contacts, accounts and organisation are fetched concurrently.
        """
        recent = FetchOptions(page=1, page_size=10)
        invoices, contacts, accounts, organisations = await asyncio.gather(
            self.fetch_items("invoices", access_token, tenant_id, recent),
            self.fetch_items("contacts", access_token, tenant_id, recent),
            self.fetch_items("accounts", access_token, tenant_id),
            self.fetch_items("organization", access_token, tenant_id),
        )

        total_amount = sum((parse_amount(inv.get("Total")) for inv in invoices), Decimal("0"))

        return {
            "summary": {
                "total_invoices": len(invoices),
                "total_contacts": len(contacts),
                "total_accounts": len(accounts),
                "total_amount": money(total_amount),
                "paid_invoices": sum(
                    1 for inv in invoices if parse_amount(inv.get("AmountPaid")) > 0
                ),
                "overdue_invoices": sum(1 for inv in invoices if inv.get("Status") == "OVERDUE"),
            },
            "recent_invoices": invoices[:5],
            "recent_contacts": contacts[:5],
            "accounts": accounts[:10],
            "organization": organisations[0] if organisations else None,
        }
