"""
Downloadable statements.

CSV layout:

    Invoice Number, Status, Issued, Due Date
    <blank>
    Line Item | Quantity | Unit Price (USD) | Total (USD) | Category
    ...
    <blank>
    Subtotal / Tax / Total
    [Usage Breakdown section when the invoice carries usage details]

Every cell is quoted and embedded quotes are doubled.
"""
import csv
import io
from decimal import Decimal
from typing import Iterable, List, Optional

from core.billing.line_items import line_quantity, line_amount_cents, sorted_lines
from core.billing.money import cents_to_currency, coerce_cents, dollars_to_cents, to_decimal
from core.models.billing import Invoice, InvoiceLineItem


def _format_quantity(value: float) -> str:
    quantity = Decimal(str(value))
    return str(int(quantity)) if quantity == quantity.to_integral_value() else str(quantity.normalize())


def _dollars_cell(value) -> str:
    dollars = to_decimal(value)
    if dollars is None:
        return ""
    return cents_to_currency(dollars_to_cents(dollars))


def statement_rows(invoice: Invoice, line_items: Iterable[InvoiceLineItem]) -> List[List[str]]:
    total_cents = coerce_cents(invoice.total_cents)
    subtotal_cents = coerce_cents(invoice.subtotal_cents, default=total_cents)

    rows: List[List[str]] = [
        ["Invoice Number", invoice.invoice_number or invoice.id],
        ["Status", invoice.status or "unknown"],
        ["Issued", invoice.created_at.isoformat() if invoice.created_at else ""],
        ["Due Date", invoice.due_date.isoformat() if invoice.due_date else ""],
        [],
        ["Line Item", "Quantity", "Unit Price (USD)", "Total (USD)", "Category"],
    ]

    for item in sorted_lines(line_items):
        rows.append([
            item.description or item.line_type or "Service",
            _format_quantity(line_quantity(item)),
            cents_to_currency(item.unit_price_cents or 0),
            cents_to_currency(line_amount_cents(item)),
            item.line_type or "",
        ])

    rows.append([])
    rows.append(["Subtotal", "", "", cents_to_currency(subtotal_cents)])
    rows.append(["Tax", "", "", cents_to_currency(coerce_cents(invoice.tax_cents))])
    rows.append(["Total", "", "", cents_to_currency(total_cents)])

    usage_details = (invoice.portal_payload or {}).get("usageDetails")
    if isinstance(usage_details, list) and usage_details:
        rows.append([])
        rows.append(["Usage Breakdown"])
        rows.append(["Tool", "Billed Amount (USD)", "Raw Cost (USD)", "Markup (%)", "Description"])
        for detail in usage_details:
            if not isinstance(detail, dict):
                continue
            markup = detail.get("markupPercent")
            rows.append([
                detail.get("toolName") or "Usage",
                _dollars_cell(detail.get("billedAmount")),
                _dollars_cell(detail.get("rawCost")),
                "" if markup is None else str(markup),
                detail.get("description") or "",
            ])

    return rows


def build_statement_csv(invoice: Invoice, line_items: Optional[Iterable[InvoiceLineItem]] = None) -> str:
    items = invoice.line_items if line_items is None else line_items
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerows(statement_rows(invoice, items))
    return buffer.getvalue().rstrip("\n")


def statement_filename(invoice: Invoice) -> str:
    return f"invoice-{invoice.invoice_number or invoice.id}.csv"
