"""
BAS/FAS Report Assemblers
Derive Business Activity Statement and fringe-benefit summaries from Xero transactions.

These are best-effort estimates from keyword classification, not
compliance-grade tax calculations.
"""

import logging
from decimal import Decimal
from typing import Any, Optional

from app.integrations.xero.schemas import ReportPeriod
from app.integrations.xero.utils import money, parse_amount

logger = logging.getLogger(__name__)

# Flat FBT rate applied to the grossed-down benefit total
FBT_RATE = Decimal("0.47")

# Keyword → bucket, checked in order; first match wins
FBT_CATEGORY_KEYWORDS: tuple[tuple[str, tuple[str, ...]], ...] = (
    ("motor_vehicles", ("motor", "car", "vehicle")),
    ("entertainment", ("entertain",)),
    ("meals", ("meal", "food")),
    ("accommodation", ("accommodat", "hotel", "travel")),
)

FBT_BUCKETS = tuple(name for name, _ in FBT_CATEGORY_KEYWORDS) + ("other",)

FBT_ACCOUNT_KEYWORDS = (
    "fringe", "benefit", "fbt", "motor", "vehicle", "car", "entertainment",
    "meal", "accommodation", "travel", "employee", "staff", "company", "corporate",
)

BAS_STATUSES = ("AUTHORISED", "PAID")


def _total(items: list[dict[str, Any]], field: str) -> Decimal:
    return sum((parse_amount(item.get(field)) for item in items), Decimal("0"))


def _is_employee_contact(item: dict[str, Any]) -> bool:
    contact = item.get("Contact") or {}
    return bool(contact.get("IsEmployee"))


def classify_fbt_line(account_code: Optional[str], description: Optional[str]) -> str:
    """
    Bucket a line item by keyword match on its account code and description.

    Examples:
        ("420", "Company car lease") -> motor_vehicles
        ("493", "Client entertainment") -> entertainment
        ("400", "Office chairs") -> other
    """
    text = f"{account_code or ''} {description or ''}".lower()
    for bucket, keywords in FBT_CATEGORY_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return bucket
    return "other"


def identify_fbt_categories(accounts: list[dict[str, Any]]) -> list[dict[str, Any]]:
    """
    Accounts whose name, description or code suggests fringe-benefit spending.

    Returns:
        List of {code, name, type, matched_keywords}
    """
    matches = []
    for account in accounts:
        text = " ".join(
            str(account.get(field) or "") for field in ("Name", "Description", "Code")
        ).lower()
        matched = [keyword for keyword in FBT_ACCOUNT_KEYWORDS if keyword in text]
        if matched:
            matches.append({
                "account_id": account.get("AccountID"),
                "code": account.get("Code"),
                "name": account.get("Name"),
                "type": account.get("Type"),
                "matched_keywords": matched,
            })
    return matches


class BASReportAssembler:
    """
    Builds GST figures for a Business Activity Statement.

    Sales come from ACCREC invoices, purchases from ACCPAY bills;
    both restricted to AUTHORISED/PAID documents by the caller.
    """

    @staticmethod
    def assemble(
        invoices: list[dict[str, Any]],
        bills: list[dict[str, Any]],
        period: ReportPeriod,
    ) -> dict[str, Any]:
        """
        Args:
            invoices: Sales invoices (ACCREC) for the period
            bills: Purchase bills (ACCPAY) for the period
            period: Reporting period

        Returns:
            G1/1A/G11/1B figures, net GST and source counts
        """
        total_sales = _total(invoices, "Total")
        gst_on_sales = _total(invoices, "TotalTax")
        total_purchases = _total(bills, "Total")
        gst_on_purchases = _total(bills, "TotalTax")
        net_gst = gst_on_sales - gst_on_purchases

        return {
            "period": period.model_dump(mode="json"),
            "G1_total_sales": money(total_sales),
            "1A_gst_on_sales": money(gst_on_sales),
            "G11_non_capital_purchases": money(total_purchases),
            "1B_gst_on_purchases": money(gst_on_purchases),
            "net_gst": money(net_gst),
            "gst_payable": net_gst > 0,
            "invoice_count": len(invoices),
            "bill_count": len(bills),
        }

    @staticmethod
    def summarize(report: dict[str, Any]) -> dict[str, Any]:
        """Headline figures for the BAS summary endpoint."""
        return {
            "period": report["period"],
            "total_sales": report["G1_total_sales"],
            "total_gst": report["1A_gst_on_sales"],
            "net_gst": report["net_gst"],
            "has_data": bool(report["invoice_count"] or report["bill_count"]),
        }


class FASReportAssembler:
    """
    Estimates fringe-benefit spending from employee-linked transactions.

    Bills to employee contacts are bucketed per line item by keyword;
    positive employee bank transactions count as "other".
    """

    @staticmethod
    def assemble(
        bills: list[dict[str, Any]],
        bank_transactions: list[dict[str, Any]],
        period: ReportPeriod,
    ) -> dict[str, Any]:
        """
        Args:
            bills: ACCPAY bills for the period
            bank_transactions: Bank transactions for the period
            period: Reporting period

        Returns:
            Bucket totals, total fringe benefits and estimated FBT
        """
        buckets = {name: Decimal("0") for name in FBT_BUCKETS}

        employee_bills = [bill for bill in bills if _is_employee_contact(bill)]
        for bill in employee_bills:
            for line in bill.get("LineItems") or []:
                bucket = classify_fbt_line(line.get("AccountCode"), line.get("Description"))
                buckets[bucket] += parse_amount(line.get("LineAmount"))

        employee_transactions = [
            txn for txn in bank_transactions if _is_employee_contact(txn)
        ]
        for txn in employee_transactions:
            amount = parse_amount(txn.get("Total"))
            if amount > 0:
                buckets["other"] += amount

        total = sum(buckets.values(), Decimal("0"))
        logger.debug(
            "FAS assembled from %d employee bills and %d employee transactions",
            len(employee_bills),
            len(employee_transactions),
        )

        return {
            "period": period.model_dump(mode="json"),
            "categories": {name: money(value) for name, value in buckets.items()},
            "total_fringe_benefits": money(total),
            "fbt_rate": float(FBT_RATE),
            "estimated_fbt": money(total * FBT_RATE),
            "employee_bill_count": len(employee_bills),
            "employee_transaction_count": len(employee_transactions),
        }

    @staticmethod
    def summarize(report: dict[str, Any]) -> dict[str, Any]:
        """Headline figures for the FAS summary endpoint."""
        return {
            "period": report["period"],
            "total_fringe_benefits": report["total_fringe_benefits"],
            "estimated_fbt": report["estimated_fbt"],
            "has_data": bool(
                report["employee_bill_count"] or report["employee_transaction_count"]
            ),
        }
