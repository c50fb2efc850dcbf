"""Tests for Xero query builders and amount helpers."""
from datetime import date
from decimal import Decimal

from app.integrations.xero.schemas import InvoiceFilters
from app.integrations.xero.utils import (
    build_date_range_where,
    build_invoice_where,
    build_order,
    build_status_where,
    current_quarter_range,
    escape_filter_value,
    format_xero_date,
    money,
    parse_amount,
    parse_retry_after,
    search_items,
)


class TestWhereBuilders:
    def test_format_xero_date(self):
        assert format_xero_date(date(2024, 7, 1)) == "DateTime(2024, 7, 1)"
        assert format_xero_date(date(2024, 9, 30), end_of_day=True) == "DateTime(2024, 9, 30, 23, 59, 59)"

    def test_date_range_is_inclusive(self):
        assert build_date_range_where(date(2024, 7, 1), date(2024, 9, 30)) == [
            "Date >= DateTime(2024, 7, 1)",
            "Date <= DateTime(2024, 9, 30, 23, 59, 59)",
        ]
        assert build_date_range_where(None, None) == []

    def test_status_clauses(self):
        assert build_status_where(["paid"]) == 'Status=="PAID"'
        assert build_status_where(["AUTHORISED", " paid "]) == '(Status=="AUTHORISED" OR Status=="PAID")'
        assert build_status_where(["", "  "]) is None

    def test_escape_quotes(self):
        assert escape_filter_value('Bob "The Builder"') == 'Bob \\"The Builder\\"'

    def test_invoice_where_combines_with_and(self):
        filters = InvoiceFilters(
            date_from=date(2024, 1, 1),
            statuses=["AUTHORISED"],
            invoice_type="accrec",
            overdue_only=True,
            contact_name="Acme",
            min_total=100,
        )
        assert build_invoice_where(filters) == (
            'Date >= DateTime(2024, 1, 1) AND Status=="AUTHORISED" AND Type=="ACCREC" '
            'AND IsOverdue==true AND Contact.Name.Contains("Acme") AND Total>=100.0'
        )

    def test_invoice_where_empty(self):
        assert build_invoice_where(InvoiceFilters()) is None

    def test_order(self):
        assert build_order("Date", "asc") == "Date ASC"
        assert build_order("Date", "sideways") == "Date DESC"
        assert build_order("Date; DROP", "ASC") is None
        assert build_order(None) is None


class TestSearchItems:
    items = [
        {"InvoiceNumber": "INV-001", "Reference": "Q3 retainer", "Contact": {"Name": "Acme"}},
        {"InvoiceNumber": "INV-002", "Reference": None, "Contact": {"Name": "Globex"}},
    ]

    def test_matches_number_reference_and_contact(self):
        assert search_items(self.items, "inv-002") == [self.items[1]]
        assert search_items(self.items, "retainer") == [self.items[0]]
        assert search_items(self.items, "GLOBEX") == [self.items[1]]

    def test_empty_term_returns_all(self):
        assert search_items(self.items, None) == self.items


class TestQuarterRange:
    def test_quarters(self):
        assert current_quarter_range(date(2024, 2, 29)) == (date(2024, 1, 1), date(2024, 3, 31))
        assert current_quarter_range(date(2024, 8, 15)) == (date(2024, 7, 1), date(2024, 9, 30))
        assert current_quarter_range(date(2024, 12, 31)) == (date(2024, 10, 1), date(2024, 12, 31))


class TestAmounts:
    def test_parse_amount(self):
        assert parse_amount("1,234.50") == Decimal("1234.50")
        assert parse_amount(10) == Decimal("10")
        assert parse_amount(None) == Decimal("0")
        assert parse_amount("n/a") == Decimal("0")

    def test_money_rounds_half_up(self):
        assert money(Decimal("10.005")) == 10.01


class TestRetryAfter:
    def test_parses_seconds(self):
        assert parse_retry_after("17") == 17

    def test_defaults_to_sixty(self):
        assert parse_retry_after(None) == 60
        assert parse_retry_after("Wed, 21 Oct 2015 07:28:00 GMT") == 60

    def test_non_finite_values_default(self):
        assert parse_retry_after("inf") == 60
        assert parse_retry_after("nan") == 60
