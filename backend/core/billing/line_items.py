"""
Invoice line-item model.

Both manually added lines and usage-derived lines go through here so that
amounts, fallbacks and append ordering follow one set of rules:

- amount_cents is authoritative for display
- when amount_cents is missing, round(quantity x unit_price_cents) is used
- a new line is created with amount_cents == round(quantity x unit_price_cents)
- appended lines go after every existing line
"""
from typing import Any, Dict, Iterable, Optional

from core.billing.money import to_decimal, round_cents, coerce_cents
from core.errors import ValidationFailed
from core.models.billing import InvoiceLineItem, PendingInvoiceItem
from core.models.portal import PortalLineItem

# Manually appended lines start at this sort order so generated lines
# (0..n) always come first.
APPEND_SORT_OFFSET = 100


def line_quantity(item: InvoiceLineItem) -> float:
    quantity = to_decimal(item.quantity)
    if quantity is None or quantity == 0:
        return 1.0
    return float(quantity)


def line_unit_cents(item: InvoiceLineItem) -> int:
    if item.unit_price_cents is not None:
        return int(item.unit_price_cents)
    if item.amount_cents is not None:
        return int(item.amount_cents)
    return 0


def line_amount_cents(item: InvoiceLineItem) -> int:
    """The amount to display and bill for a line."""
    if item.amount_cents is not None:
        return int(item.amount_cents)
    quantity = to_decimal(line_quantity(item))
    return round_cents(quantity * line_unit_cents(item))


def compute_amount_cents(quantity, unit_price_cents) -> int:
    q = to_decimal(quantity)
    unit = to_decimal(unit_price_cents)
    if q is None or unit is None:
        raise ValidationFailed("quantity and unit price must be numbers.")
    return round_cents(q * unit)


def check_line_consistency(item: InvoiceLineItem) -> None:
    """Reject a line whose stored amount disagrees with quantity x unit price."""
    if item.amount_cents is None or item.unit_price_cents is None:
        return
    expected = compute_amount_cents(line_quantity(item), item.unit_price_cents)
    if expected != item.amount_cents:
        raise ValidationFailed(
            f"Line amount {item.amount_cents} does not match quantity x unit price ({expected})."
        )


def next_sort_order(existing: Iterable[InvoiceLineItem]) -> int:
    existing = list(existing)
    if not existing:
        return APPEND_SORT_OFFSET
    highest = max(item.sort_order for item in existing)
    return max(highest + 1, len(existing) + APPEND_SORT_OFFSET)


def build_line_item(
    invoice_id: str,
    description: str,
    quantity,
    unit_price_cents,
    existing: Iterable[InvoiceLineItem] = (),
    line_type: str = "project",
    metadata: Optional[Dict[str, Any]] = None,
) -> InvoiceLineItem:
    """Create a new line appended after `existing`."""
    description = (description or "").strip()
    if not description:
        raise ValidationFailed("description cannot be empty.")
    q = to_decimal(quantity)
    if q is None or q <= 0:
        raise ValidationFailed("quantity must be greater than 0.")
    unit = coerce_cents(unit_price_cents, default=-1)
    if unit <= 0:
        raise ValidationFailed("unitPriceCents must be positive.")

    item = InvoiceLineItem(
        invoice_id=invoice_id,
        description=description,
        quantity=float(q),
        unit_price_cents=unit,
        amount_cents=compute_amount_cents(q, unit),
        line_type=line_type,
        sort_order=next_sort_order(existing),
        metadata=metadata or {},
    )
    check_line_consistency(item)
    return item


def line_item_from_pending(invoice_id: Optional[str], pending: PendingInvoiceItem, sort_order: int) -> InvoiceLineItem:
    """Fold a pending charge into an invoice line. Non-positive quantities bill as 1."""
    quantity = pending.quantity if pending.quantity and pending.quantity > 0 else 1
    item = InvoiceLineItem(
        invoice_id=invoice_id,
        description=pending.description or "Service line item",
        quantity=quantity,
        unit_price_cents=pending.unit_price_cents,
        amount_cents=compute_amount_cents(quantity, pending.unit_price_cents),
        line_type="usage" if pending.source_type == "usage" else "project",
        sort_order=sort_order,
        metadata={
            **(pending.metadata or {}),
            "pending_item_id": pending.id,
            "source_type": pending.source_type,
        },
        pending_source_item_id=pending.id,
    )
    check_line_consistency(item)
    return item


def to_portal_line(item: InvoiceLineItem, default_label: str = "Line item") -> PortalLineItem:
    return PortalLineItem(
        id=item.id,
        description=item.description or item.line_type or default_label,
        quantity=line_quantity(item),
        unit_price_cents=line_unit_cents(item),
        total_cents=line_amount_cents(item),
        category=item.line_type,
        metadata=item.metadata,
    )


def sorted_lines(items: Iterable[InvoiceLineItem]) -> list:
    return sorted(items, key=lambda item: item.sort_order)
