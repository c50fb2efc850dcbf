"""Tests for the Xero data fetcher."""
from datetime import date

import httpx
import pytest

from app.integrations.xero.data_fetcher import (
    RESOURCE_CATALOG,
    XeroDataFetcher,
    supported_resource_types,
)
from app.integrations.xero.exceptions import (
    ForbiddenError,
    RateLimitedError,
    UnauthorizedError,
    UnsupportedResourceTypeError,
    UpstreamUnavailableError,
    UpstreamUnreachableError,
)
from app.integrations.xero.schemas import FetchOptions

TENANT = "tenant-1"


class TestCatalog:
    def test_supported_types(self):
        supported = supported_resource_types()
        assert len(RESOURCE_CATALOG) == 18
        assert "financial-summary" in supported
        assert "dashboard-data" in supported

    def test_organisation_path_and_key(self):
        spec = RESOURCE_CATALOG["organization"]
        assert (spec.path, spec.response_key) == ("Organisation", "Organisations")

    def test_transactions_alias_bank_transactions(self):
        assert RESOURCE_CATALOG["transactions"] == RESOURCE_CATALOG["bank-transactions"]

    def test_build_params(self):
        options = FetchOptions(
            page=2,
            page_size=5000,
            date_from=date(2024, 1, 1),
            where='Status=="PAID"',
            order="Date DESC",
            filters={"includeArchived": "true", "ignored": None},
        )
        params = XeroDataFetcher.build_params(RESOURCE_CATALOG["invoices"], options)
        assert params == {
            "page": 2,
            "pageSize": 1000,
            "fromDate": "2024-01-01",
            "where": 'Status=="PAID"',
            "order": "Date DESC",
            "includeArchived": "true",
        }

    def test_unpaginated_resources_omit_page(self):
        params = XeroDataFetcher.build_params(RESOURCE_CATALOG["accounts"], FetchOptions())
        assert "page" not in params


class TestFetch:
    async def test_sends_auth_and_tenant_headers(self, fetcher, fake_xero):
        fake_xero.data["Invoices"] = [{"InvoiceID": "inv-1"}]

        payload = await fetcher.fetch("invoices", "token-abc", TENANT)

        assert payload == {"Invoices": [{"InvoiceID": "inv-1"}]}
        request = fake_xero.calls_to("Invoices")[0]
        assert request.headers["Authorization"] == "Bearer token-abc"
        assert request.headers["Xero-tenant-id"] == TENANT
        assert request.url.params["page"] == "1"

    async def test_unknown_type_makes_no_call(self, fetcher, fake_xero):
        with pytest.raises(UnsupportedResourceTypeError) as exc_info:
            await fetcher.fetch("payroll", "token", TENANT)
        assert "invoices" in exc_info.value.supported
        assert fake_xero.calls == []

    async def test_organization_items(self, fetcher):
        items = await fetcher.fetch_items("organization", "token", TENANT)
        assert items[0]["Name"] == f"Org {TENANT}"


class TestErrorMapping:
    """Each upstream failure maps to one error, with no retries."""

    @pytest.mark.parametrize(
        "status_code, error",
        [
            (401, UnauthorizedError),
            (403, ForbiddenError),
            (500, UpstreamUnavailableError),
            (503, UpstreamUnavailableError),
            (404, UpstreamUnavailableError),
        ],
    )
    async def test_status_codes(self, fetcher, fake_xero, status_code, error):
        fake_xero.queue("Contacts", status_code, json={})
        with pytest.raises(error):
            await fetcher.fetch("contacts", "token", TENANT)
        assert len(fake_xero.calls_to("Contacts")) == 1

    async def test_rate_limit_carries_retry_after(self, fetcher, fake_xero):
        fake_xero.queue("Invoices", 429, headers={"Retry-After": "42"})

        with pytest.raises(RateLimitedError) as exc_info:
            await fetcher.fetch("invoices", "token", TENANT)

        assert exc_info.value.retry_after == 42
        assert len(fake_xero.calls_to("Invoices")) == 1

    async def test_rate_limit_default_retry_after(self, fetcher, fake_xero):
        fake_xero.queue("Invoices", 429)
        with pytest.raises(RateLimitedError) as exc_info:
            await fetcher.fetch("invoices", "token", TENANT)
        assert exc_info.value.retry_after == 60

    async def test_upstream_status_is_kept(self, fetcher, fake_xero):
        fake_xero.queue("Accounts", 502, json={})
        with pytest.raises(UpstreamUnavailableError) as exc_info:
            await fetcher.fetch("accounts", "token", TENANT)
        assert exc_info.value.upstream_status == 502
        assert exc_info.value.endpoint == "Accounts"

    async def test_timeout_is_unreachable(self, xero_config):
        def handler(request):
            raise httpx.ReadTimeout("timed out", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = XeroDataFetcher(xero_config, http_client=client)
            with pytest.raises(UpstreamUnreachableError):
                await fetcher.fetch("invoices", "token", TENANT)

    async def test_connection_error_is_unreachable(self, xero_config):
        def handler(request):
            raise httpx.ConnectError("refused", request=request)

        async with httpx.AsyncClient(transport=httpx.MockTransport(handler)) as client:
            fetcher = XeroDataFetcher(xero_config, http_client=client)
            with pytest.raises(UpstreamUnreachableError):
                await fetcher.fetch("accounts", "token", TENANT)


class TestPagination:
    async def test_follows_pages_until_short_page(self, fetcher, fake_xero):
        def pages(request):
            page = int(request.url.params["page"])
            size = 2 if page < 3 else 1
            return [{"InvoiceID": f"{page}-{i}"} for i in range(size)]

        fake_xero.data["Invoices"] = pages

        result = await fetcher.fetch_all_pages(
            "invoices", "token", TENANT, FetchOptions(page_size=2)
        )

        assert [item["InvoiceID"] for item in result["items"]] == ["1-0", "1-1", "2-0", "2-1", "3-0"]
        assert result["pagination"] == {"pages_fetched": 3, "item_count": 5, "page_size": 2}

    async def test_max_pages_bound(self, fetcher, fake_xero):
        fake_xero.data["Invoices"] = lambda request: [{"InvoiceID": "x"}]

        result = await fetcher.fetch_all_pages(
            "invoices", "token", TENANT, FetchOptions(page_size=1), max_pages=4
        )

        assert result["pagination"]["pages_fetched"] == 4
        assert len(fake_xero.calls_to("Invoices")) == 4


class TestComposites:
    async def test_financial_summary(self, fetcher, fake_xero):
        fake_xero.data["Invoices"] = [
            {"Total": "1000", "AmountPaid": "400"},
            {"Total": 250.5, "AmountPaid": 250.5},
        ]

        summary = await fetcher.fetch("financial-summary", "token", TENANT)

        assert summary == {
            "total_revenue": 1250.5,
            "paid_revenue": 650.5,
            "outstanding_revenue": 600.0,
            "invoice_count": 2,
        }
        assert fake_xero.calls_to("Invoices")[0].url.params["pageSize"] == "1000"

    async def test_dashboard_data(self, fetcher, fake_xero):
        fake_xero.data["Invoices"] = [
            {"Total": "100", "AmountPaid": "100", "Status": "PAID"},
            {"Total": "50", "AmountPaid": "0", "Status": "OVERDUE"},
        ]
        fake_xero.data["Contacts"] = [{"Name": "Acme"}]
        fake_xero.data["Accounts"] = [{"Code": "200"}, {"Code": "400"}]

        dashboard = await fetcher.fetch("dashboard-data", "token", TENANT)

        assert dashboard["summary"] == {
            "total_invoices": 2,
            "total_contacts": 1,
            "total_accounts": 2,
            "total_amount": 150.0,
            "paid_invoices": 1,
            "overdue_invoices": 1,
        }
        assert dashboard["organization"]["Name"] == f"Org {TENANT}"
