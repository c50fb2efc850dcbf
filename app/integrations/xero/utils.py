"""
Xero Integration Utilities
Query-syntax builders and amount helpers shared by the fetcher and reports.
"""

import logging
import re
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal, InvalidOperation, ROUND_HALF_UP
from typing import Any, Optional

from app.integrations.xero.schemas import InvoiceFilters

logger = logging.getLogger(__name__)

_FIELD_NAME = re.compile(r"^[A-Za-z][A-Za-z0-9.]*$")

DEFAULT_RETRY_AFTER_SECONDS = 60


def format_xero_date(value: date, end_of_day: bool = False) -> str:
    """
    Format a date in Xero where-clause syntax.

    Examples:
        date(2024, 7, 1) -> DateTime(2024, 7, 1)
        date(2024, 9, 30), end_of_day -> DateTime(2024, 9, 30, 23, 59, 59)
    """
    if end_of_day:
        return f"DateTime({value.year}, {value.month}, {value.day}, 23, 59, 59)"
    return f"DateTime({value.year}, {value.month}, {value.day})"


def escape_filter_value(value: str) -> str:
    """Escape a string literal for embedding in a Xero where clause."""
    return value.replace("\\", "\\\\").replace('"', '\\"')


def build_date_range_where(
    date_from: Optional[date], date_to: Optional[date], field: str = "Date"
) -> list[str]:
    """Where-clause fragments for an inclusive date range."""
    clauses = []
    if date_from:
        clauses.append(f"{field} >= {format_xero_date(date_from)}")
    if date_to:
        clauses.append(f"{field} <= {format_xero_date(date_to, end_of_day=True)}")
    return clauses


def build_status_where(statuses: list[str]) -> Optional[str]:
    """OR together status equality clauses, e.g. (Status=="PAID" OR ...)."""
    cleaned = [s.strip().upper() for s in statuses if s and s.strip()]
    if not cleaned:
        return None
    clauses = [f'Status=="{escape_filter_value(s)}"' for s in cleaned]
    if len(clauses) == 1:
        return clauses[0]
    return "(" + " OR ".join(clauses) + ")"


def build_invoice_where(filters: InvoiceFilters) -> Optional[str]:
    """
    Translate invoice filters into a Xero where expression.

    Args:
        filters: Invoice search criteria

    Returns:
        Clauses joined with AND, or None when no filter is set
    """
    clauses = build_date_range_where(filters.date_from, filters.date_to)

    status_clause = build_status_where(filters.statuses)
    if status_clause:
        clauses.append(status_clause)

    if filters.invoice_type:
        clauses.append(f'Type=="{escape_filter_value(filters.invoice_type.upper())}"')
    if filters.overdue_only:
        clauses.append("IsOverdue==true")
    if filters.contact_id:
        clauses.append(f'Contact.ContactID==Guid("{escape_filter_value(filters.contact_id)}")')
    if filters.contact_name:
        clauses.append(f'Contact.Name.Contains("{escape_filter_value(filters.contact_name)}")')
    if filters.invoice_number:
        clauses.append(f'InvoiceNumber=="{escape_filter_value(filters.invoice_number)}"')
    if filters.reference:
        clauses.append(f'Reference.Contains("{escape_filter_value(filters.reference)}")')
    if filters.min_total is not None:
        clauses.append(f"Total>={filters.min_total}")
    if filters.max_total is not None:
        clauses.append(f"Total<={filters.max_total}")

    return " AND ".join(clauses) if clauses else None


def build_order(sort_by: Optional[str], sort_order: str = "DESC") -> Optional[str]:
    """Build a Xero order parameter ("Field ASC|DESC"); invalid fields are ignored."""
    if not sort_by or not _FIELD_NAME.match(sort_by):
        return None
    direction = "ASC" if (sort_order or "").upper() == "ASC" else "DESC"
    return f"{sort_by} {direction}"


def search_items(items: list[dict[str, Any]], term: Optional[str]) -> list[dict[str, Any]]:
    """
    Case-insensitive local search over invoice number, reference and contact name.
    """
    if not term:
        return items
    needle = term.lower()

    def matches(item: dict[str, Any]) -> bool:
        contact = item.get("Contact") or {}
        haystack = (
            item.get("InvoiceNumber"),
            item.get("Reference"),
            contact.get("Name"),
        )
        return any(needle in str(value).lower() for value in haystack if value)

    return [item for item in items if matches(item)]


def current_quarter_range(today: Optional[date] = None) -> tuple[date, date]:
    """First and last day of the calendar quarter containing today."""
    today = today or datetime.now(timezone.utc).date()
    start_month = 3 * ((today.month - 1) // 3) + 1
    start = date(today.year, start_month, 1)
    if start_month == 10:
        end = date(today.year, 12, 31)
    else:
        end = date(today.year, start_month + 3, 1) - timedelta(days=1)
    return start, end


def parse_amount(value: Any) -> Decimal:
    """Parse a Xero amount (number or numeric string); unparseable values are zero."""
    if value is None or value == "":
        return Decimal("0")
    try:
        return Decimal(str(value).replace(",", ""))
    except InvalidOperation:
        logger.warning("Failed to parse amount %r, using 0", value)
        return Decimal("0")


def money(value: Decimal) -> float:
    """Round to cents for JSON output."""
    return float(value.quantize(Decimal("0.01"), rounding=ROUND_HALF_UP))


def parse_retry_after(value: Optional[str]) -> int:
    """
    Parse a Retry-After header value in seconds.

    Falls back to 60 seconds when the header is missing or not an integer.
    """
    if value:
        try:
            return max(int(float(value)), 0)
        except (ValueError, OverflowError):
            logger.debug("Unparseable Retry-After header %r", value)
    return DEFAULT_RETRY_AFTER_SECONDS
