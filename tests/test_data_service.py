"""Tests for cached, refresh-aware Xero data access."""
from datetime import date, timedelta

import pytest

from app.integrations.xero.exceptions import (
    NotConnectedError,
    RateLimitedError,
    UnauthorizedError,
    UnsupportedResourceTypeError,
)
from app.integrations.xero.schemas import FetchOptions, InvoiceFilters
from tests.conftest import TENANT_ID


@pytest.fixture
async def connected(db_session, make_connection):
    return await make_connection(
        db_session,
        tenants=[{"id": TENANT_ID, "name": "Acme"}, {"id": "tenant-2", "name": "Second"}],
    )


class TestGetData:
    async def test_fetch_then_cache_hit(self, data_service, connected, fake_xero):
        fake_xero.data["Contacts"] = [{"Name": "Acme"}]

        first = await data_service.get_data(1, "contacts")
        second = await data_service.get_data(1, "contacts")

        assert first.cached is False
        assert second.cached is True
        assert second.data == {"Contacts": [{"Name": "Acme"}]}
        assert len(fake_xero.calls_to("Contacts")) == 1

    async def test_use_cache_false_always_fetches(self, data_service, connected, fake_xero):
        await data_service.get_data(1, "contacts")
        response = await data_service.get_data(1, "contacts", use_cache=False)
        assert response.cached is False
        assert len(fake_xero.calls_to("Contacts")) == 2

    async def test_filtered_requests_bypass_cache(self, data_service, connected, fake_xero):
        await data_service.get_data(1, "invoices")
        await data_service.get_data(1, "invoices", options=FetchOptions(page=2))
        await data_service.get_data(1, "invoices", options=FetchOptions(date_from=date(2024, 1, 1)))

        assert len(fake_xero.calls_to("Invoices")) == 3

    async def test_composite_types_are_cached_under_underscored_key(
        self, data_service, connected, xero_service
    ):
        await data_service.get_data(1, "financial-summary")
        assert await xero_service.cache.get(1, TENANT_ID, "financial_summary") is not None

    async def test_unsupported_type_checked_first(self, data_service, fake_xero):
        with pytest.raises(UnsupportedResourceTypeError):
            await data_service.get_data(1, "payroll")
        assert fake_xero.calls == []

    async def test_not_connected(self, data_service):
        with pytest.raises(NotConnectedError):
            await data_service.get_data(1, "contacts")

    async def test_requested_tenant_is_used(self, data_service, connected, fake_xero):
        response = await data_service.get_data(1, "accounts", tenant_id="tenant-2")
        assert response.tenant_id == "tenant-2"
        assert fake_xero.calls_to("Accounts")[0].headers["Xero-tenant-id"] == "tenant-2"

    async def test_unknown_tenant_falls_back_to_selected(self, data_service, connected):
        response = await data_service.get_data(1, "accounts", tenant_id="not-mine")
        assert response.tenant_id == TENANT_ID

    async def test_rate_limit_propagates_without_retry(self, data_service, connected, fake_xero):
        fake_xero.queue("Contacts", 429, headers={"Retry-After": "30"})

        with pytest.raises(RateLimitedError) as exc_info:
            await data_service.get_data(1, "contacts")

        assert exc_info.value.retry_after == 30
        assert len(fake_xero.calls_to("Contacts")) == 1
        assert fake_xero.refresh_grants == []


class TestRefreshOnUnauthorized:
    async def test_single_refresh_and_retry(self, data_service, connected, fake_xero):
        fake_xero.queue("Contacts", 401, json={})
        fake_xero.data["Contacts"] = [{"Name": "Acme"}]

        response = await data_service.get_data(1, "contacts")

        assert response.data == {"Contacts": [{"Name": "Acme"}]}
        assert len(fake_xero.refresh_grants) == 1
        calls = fake_xero.calls_to("Contacts")
        assert [c.headers["Authorization"] for c in calls] == ["Bearer access-0", "Bearer access-1"]

    async def test_second_unauthorized_propagates(self, data_service, connected, fake_xero):
        fake_xero.queue("Contacts", 401, json={})
        fake_xero.queue("Contacts", 401, json={})

        with pytest.raises(UnauthorizedError):
            await data_service.get_data(1, "contacts")

        assert len(fake_xero.refresh_grants) == 1
        assert len(fake_xero.calls_to("Contacts")) == 2


class TestInvoices:
    async def test_filters_reach_xero(self, data_service, connected, fake_xero):
        filters = InvoiceFilters(statuses=["PAID"], sort_by="Date", sort_order="ASC")

        await data_service.get_invoices(1, filters=filters, page=3, page_size=25)

        params = fake_xero.calls_to("Invoices")[0].url.params
        assert params["where"] == 'Status=="PAID"'
        assert params["order"] == "Date ASC"
        assert params["page"] == "3"
        assert params["pageSize"] == "25"

    async def test_local_search(self, data_service, connected, fake_xero):
        fake_xero.data["Invoices"] = [
            {"InvoiceNumber": "INV-1", "Contact": {"Name": "Acme"}},
            {"InvoiceNumber": "INV-2", "Contact": {"Name": "Globex"}},
        ]

        response = await data_service.get_invoices(1, search="globex")

        assert [i["InvoiceNumber"] for i in response.data] == ["INV-2"]
        assert response.pagination["item_count"] == 2

    async def test_all_pages(self, data_service, connected, fake_xero):
        fake_xero.data["Invoices"] = (
            lambda request: [{"InvoiceID": "x"}] * (2 if request.url.params["page"] == "1" else 1)
        )

        response = await data_service.get_invoices(1, page_size=2, all_pages=True)

        assert len(response.data) == 3
        assert response.pagination["pages_fetched"] == 2

    async def test_unfiltered_first_page_is_cached(self, data_service, connected, fake_xero):
        await data_service.get_invoices(1)
        response = await data_service.get_invoices(1)
        assert response.cached is True
        assert len(fake_xero.calls_to("Invoices")) == 1

    async def test_invoice_list_reads_raw_cache_entry(self, data_service, connected, fake_xero):
        fake_xero.data["Invoices"] = [{"InvoiceNumber": "INV-1"}]

        await data_service.get_data(1, "invoices")
        response = await data_service.get_invoices(1)

        assert response.cached is True
        assert response.data == [{"InvoiceNumber": "INV-1"}]
        assert response.pagination == {"page": 1, "page_size": 50, "item_count": 1}
        assert len(fake_xero.calls_to("Invoices")) == 1

    async def test_raw_data_reads_invoice_list_cache_entry(
        self, data_service, connected, fake_xero
    ):
        fake_xero.data["Invoices"] = [{"InvoiceNumber": "INV-1"}]

        await data_service.get_invoices(1)
        response = await data_service.get_data(1, "invoices")

        assert response.cached is True
        assert response.data == {"Invoices": [{"InvoiceNumber": "INV-1"}]}
        assert len(fake_xero.calls_to("Invoices")) == 1

    async def test_all_pages_bypasses_cache(self, data_service, connected, fake_xero):
        await data_service.get_invoices(1)
        response = await data_service.get_invoices(1, all_pages=True)

        assert response.cached is False
        assert len(fake_xero.calls_to("Invoices")) == 2


class TestContacts:
    async def test_unwraps_contacts(self, data_service, connected, fake_xero):
        fake_xero.data["Contacts"] = [{"Name": "Acme"}]
        response = await data_service.get_contacts(1, page_size=5000)
        assert response.data == [{"Name": "Acme"}]
        assert response.pagination == {"page": 1, "page_size": 1000}

    async def test_custom_page_size_is_not_cached(self, data_service, connected, fake_xero):
        fake_xero.data["Contacts"] = lambda request: [
            {"Name": f"Contact {i}"} for i in range(int(request.url.params["pageSize"]))
        ]

        small = await data_service.get_contacts(1, page_size=2)
        default = await data_service.get_contacts(1)

        assert small.cached is False
        assert default.cached is False
        assert len(default.data) == 50
        assert [c.url.params["pageSize"] for c in fake_xero.calls_to("Contacts")] == ["2", "50"]

    async def test_default_page_size_is_cached(self, data_service, connected, fake_xero):
        await data_service.get_contacts(1)
        response = await data_service.get_contacts(1, page_size=50)

        assert response.cached is True
        assert len(fake_xero.calls_to("Contacts")) == 1


class TestReports:
    async def test_bas_report(self, data_service, connected, fake_xero):
        def invoices(request):
            if 'Type=="ACCREC"' in request.url.params["where"]:
                return [{"Total": "110", "TotalTax": "10"}]
            return [{"Total": "55", "TotalTax": "5"}]

        fake_xero.data["Invoices"] = invoices

        response = await data_service.get_bas_report(
            1, from_date=date(2024, 7, 1), to_date=date(2024, 9, 30)
        )

        assert response.resource_type == "bas-data"
        assert response.data["net_gst"] == 5.0
        wheres = [c.url.params["where"] for c in fake_xero.calls_to("Invoices")]
        assert all("DateTime(2024, 7, 1)" in w for w in wheres)
        assert all('(Status=="AUTHORISED" OR Status=="PAID")' in w for w in wheres)

    async def test_default_period_is_cached(self, data_service, connected, fake_xero):
        first = await data_service.get_bas_report(1)
        second = await data_service.get_bas_report(1)
        assert (first.cached, second.cached) == (False, True)
        assert len(fake_xero.calls_to("Invoices")) == 2

    async def test_explicit_period_is_not_cached(self, data_service, connected, fake_xero):
        await data_service.get_bas_report(1, from_date=date(2024, 7, 1))
        await data_service.get_bas_report(1, from_date=date(2024, 7, 1))
        assert len(fake_xero.calls_to("Invoices")) == 4

    async def test_fas_report(self, data_service, connected, fake_xero):
        fake_xero.data["Invoices"] = [{
            "Contact": {"IsEmployee": True},
            "LineItems": [{"Description": "Car lease", "LineAmount": "100"}],
        }]
        fake_xero.data["BankTransactions"] = [{"Contact": {"IsEmployee": True}, "Total": "50"}]

        response = await data_service.get_fas_report(1, to_date=date(2024, 9, 30))

        assert response.data["total_fringe_benefits"] == 150.0
        assert response.data["estimated_fbt"] == 70.5
        bank_where = fake_xero.calls_to("BankTransactions")[0].url.params["where"]
        assert 'Status!="DELETED"' in bank_where

    async def test_fbt_categories(self, data_service, connected, fake_xero):
        fake_xero.data["Accounts"] = [
            {"Code": "420", "Name": "Motor Vehicle Expenses"},
            {"Code": "200", "Name": "Sales"},
        ]
        response = await data_service.get_fbt_categories(1)
        assert [a["code"] for a in response.data] == ["420"]

    def test_resolve_period_defaults_to_quarter(self):
        from app.integrations.xero.data_service import XeroDataService
        from app.integrations.xero.utils import current_quarter_range

        period = XeroDataService.resolve_period(None, date(2030, 1, 1))
        assert period.from_date == current_quarter_range()[0]
        assert period.to_date == date(2030, 1, 1)


class TestClearCache:
    async def test_clear_by_logical_type(self, data_service, connected, xero_service):
        await data_service.get_data(1, "financial-summary")
        await data_service.get_data(1, "contacts")

        cleared = await data_service.clear_cache(1, resource_type="financial-summary")

        assert cleared == 1
        assert await xero_service.cache.get(1, TENANT_ID, "contacts") is not None
