"""
Draft invoice builder.

Folds a billing period's pending charges, optional manual lines and the
project retainer into one draft invoice that is mirrored to Stripe:

    1. sync the Stripe customer, create the Stripe draft and its items
                                        (failure: Stripe draft deleted, nothing local written)
    2. insert invoices                  (failure: Stripe draft deleted)
    3. insert invoice_line_items        (failure: invoice row and Stripe draft deleted)
    4. mark the pending items billed    (failures are logged; the invoice stands)

Without explicit pendingItemIds, the pending charges imported into the
billing period are used.
"""
import secrets
import string
from datetime import date, datetime, time, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from core.billing.line_items import (
    build_line_item, line_amount_cents, line_item_from_pending, line_quantity,
)
from core.billing.money import HUNDRED, coerce_cents
from core.billing.stripe_mirror import PaymentMirror
from core.database import DATASTORE_ERRORS, execute_or_fail, first_row
from core.errors import NotFound, UpstreamFailure, ValidationFailed
from core.models.billing import (
    DraftInvoiceCreate, Invoice, InvoiceLineItem, ManualLine, PendingInvoiceItem,
)

LOG_TAG = "invoices/draft"

INVOICE_NUMBER_ALPHABET = string.ascii_uppercase + string.digits


def generate_invoice_number(now: Optional[datetime] = None) -> str:
    """INV-YYYYMM-XXXX with a random suffix."""
    now = now or datetime.now(timezone.utc)
    suffix = "".join(secrets.choice(INVOICE_NUMBER_ALPHABET) for _ in range(4))
    return f"INV-{now:%Y%m}-{suffix}"


def due_date_timestamp(due: date) -> int:
    """Midnight UTC of the due date, as Stripe expects it."""
    return int(datetime.combine(due, time(), tzinfo=timezone.utc).timestamp())


def period_label(period: dict) -> str:
    return f"{period.get('period_start')} → {period.get('period_end')}"


# ─────────────────────────────────────────────────────────────────────────────
# LOADING
# ─────────────────────────────────────────────────────────────────────────────

def load_draft_targets(db, user_id: str, billing_period_id: str) -> Tuple[dict, dict, dict]:
    """Billing period, its project and the client to bill. All owned by the caller."""
    period = first_row(execute_or_fail(
        db.table("billing_periods").select("*").eq("id", billing_period_id).eq("created_by", user_id).limit(1),
        LOG_TAG, "Unable to load billing period.", period=billing_period_id,
    ))
    if not period:
        raise NotFound("Billing period not found.")

    project = first_row(execute_or_fail(
        db.table("projects").select("id, name, client_id, base_retainer_cents, stripe_customer_id").eq(
            "id", period["project_id"]
        ).eq("created_by", user_id).limit(1),
        LOG_TAG, "Unable to load project.", project=period["project_id"],
    ))
    if not project:
        raise NotFound("Client project not found.")

    client_id = period.get("client_id") or project.get("client_id")
    if not client_id:
        raise ValidationFailed("Client is missing for this project.")

    client = first_row(execute_or_fail(
        db.table("clients").select("id, name, company_name, email, stripe_customer_id").eq(
            "id", client_id
        ).eq("created_by", user_id).limit(1),
        LOG_TAG, "Unable to load client record.", client=client_id,
    ))
    if not client:
        raise NotFound("Client not found.")
    return period, project, client


def select_pending_items(
    db,
    user_id: str,
    project_id: str,
    period_id: str,
    pending_item_ids: Iterable[str] = (),
) -> List[PendingInvoiceItem]:
    """
    The pending charges to bill: the given ids (all of them must still be
    pending and belong to the project), otherwise the charges imported into
    the billing period.
    """
    ids = list(dict.fromkeys(value.strip() for value in pending_item_ids if value and value.strip()))
    query = db.table("pending_invoice_items").select("*").eq("created_by", user_id).eq("status", "pending")

    if ids:
        result = execute_or_fail(
            query.in_("id", ids), LOG_TAG, "Unable to load pending items.", period=period_id,
        )
        rows = result.data or []
        if len(rows) != len(ids):
            raise ValidationFailed("One or more pending items are missing or already billed.")
        if any(row.get("project_id") != project_id for row in rows):
            raise ValidationFailed("Pending items must belong to the billing period project.")
        return [PendingInvoiceItem(**row) for row in rows]

    result = execute_or_fail(
        query.eq("project_id", project_id).order("created_at"),
        LOG_TAG, "Unable to load pending items.", period=period_id,
    )
    return [
        PendingInvoiceItem(**row)
        for row in result.data or []
        if (row.get("metadata") or {}).get("billing_period_id") == period_id
    ]


# ─────────────────────────────────────────────────────────────────────────────
# LINES
# ─────────────────────────────────────────────────────────────────────────────

def retainer_line(project: dict) -> Optional[InvoiceLineItem]:
    cents = coerce_cents(project.get("base_retainer_cents"))
    if cents <= 0:
        return None
    return InvoiceLineItem(
        description=f"{project.get('name') or 'Client'} Monthly Retainer",
        quantity=1,
        unit_price_cents=cents,
        amount_cents=cents,
        line_type="base_subscription",
        sort_order=0,
        metadata={"source": "retainer"},
    )


def build_draft_lines(
    project: dict,
    pending_items: Iterable[PendingInvoiceItem],
    manual_lines: Iterable[ManualLine] = (),
    include_retainer: bool = False,
) -> List[InvoiceLineItem]:
    """Retainer first, then pending charges in order, then manual lines appended after them."""
    lines: List[InvoiceLineItem] = []
    if include_retainer:
        retainer = retainer_line(project)
        if retainer:
            lines.append(retainer)

    for pending in pending_items:
        lines.append(line_item_from_pending(None, pending, sort_order=len(lines)))

    for manual in manual_lines:
        lines.append(build_line_item(
            None,
            manual.description,
            manual.quantity,
            manual.unit_price_cents,
            lines,
            line_type="project",
            metadata={"manual_entry": True},
        ))
    return lines


def stripe_item_args(line: InvoiceLineItem) -> Tuple[int, int]:
    """(unit amount, quantity) for Stripe. Fractional quantities go over as one item of the line amount."""
    quantity = line_quantity(line)
    if float(quantity).is_integer():
        return int(line.unit_price_cents), int(quantity)
    return line_amount_cents(line), 1


def usage_portal_payload(pending_items: Iterable[PendingInvoiceItem], period: dict) -> Optional[dict]:
    """usageDetails for the client portal, one entry per usage charge. None when there is no usage."""
    details = []
    for item in pending_items:
        if item.source_type != "usage":
            continue
        metadata = item.metadata or {}
        cents = line_amount_cents(line_item_from_pending(None, item, sort_order=0))
        dollars = float(Decimal(cents) / HUNDRED)
        details.append({
            "toolName": metadata.get("metric_type") or "Usage",
            "billedAmount": dollars,
            "rawCost": dollars,
            "markupPercent": 0,
            "quantity": metadata.get("total_rows") or item.quantity,
            "description": item.description,
        })
    if not details:
        return None
    return {"usageDetails": details, "periodLabel": period_label(period)}


# ─────────────────────────────────────────────────────────────────────────────
# STRIPE
# ─────────────────────────────────────────────────────────────────────────────

def sync_customer(db, mirror: PaymentMirror, user_id: str, client: dict, project: dict) -> str:
    """Resolve the client's Stripe customer and store it on the client when it changed."""
    stored = client.get("stripe_customer_id") or project.get("stripe_customer_id")
    customer_id = mirror.ensure_customer(
        stored,
        name=(client.get("name") or "").strip() or (client.get("company_name") or "").strip() or None,
        email=client.get("email"),
        metadata={"client_id": client["id"], "project_id": project["id"]},
    )
    if customer_id != client.get("stripe_customer_id"):
        execute_or_fail(
            db.table("clients").update({
                "stripe_customer_id": customer_id,
                "updated_at": datetime.now(timezone.utc).isoformat(),
            }).eq("id", client["id"]).eq("created_by", user_id),
            LOG_TAG, "Unable to store Stripe customer.", client=client["id"],
        )
    return customer_id


def mirror_draft(
    mirror: PaymentMirror,
    customer_id: str,
    lines: List[InvoiceLineItem],
    period: dict,
    data: DraftInvoiceCreate,
    pending_items: List[PendingInvoiceItem],
) -> str:
    """Create the Stripe draft with one invoice item per line. Returns the Stripe invoice id."""
    metadata = {
        "billing_period_id": period["id"],
        "project_id": period["project_id"],
        "include_retainer": "true" if data.include_retainer else "false",
    }
    if pending_items:
        metadata["pending_item_ids"] = ",".join(item.id for item in pending_items)
    if data.memo:
        metadata["memo"] = data.memo

    stripe_invoice_id = mirror.create_draft_invoice(
        customer_id,
        description=f"Services {period_label(period)}",
        collection_method=data.collection_method,
        due_date=due_date_timestamp(data.due_date) if data.collection_method == "send_invoice" else None,
        metadata=metadata,
    )

    try:
        for line in lines:
            unit_amount, quantity = stripe_item_args(line)
            item_metadata = {"line_type": line.line_type, "billing_period_id": period["id"]}
            if line.pending_source_item_id:
                item_metadata["pending_item_id"] = line.pending_source_item_id
            if (line.metadata or {}).get("manual_entry"):
                item_metadata["manual_entry"] = "true"
            mirror.add_line_item(
                customer_id, stripe_invoice_id, line.description, unit_amount,
                quantity=quantity, metadata=item_metadata,
            )
    except UpstreamFailure:
        mirror.delete_draft_invoice(stripe_invoice_id)
        raise
    return stripe_invoice_id


# ─────────────────────────────────────────────────────────────────────────────
# PERSISTENCE
# ─────────────────────────────────────────────────────────────────────────────

def build_invoice_row(
    user_id: str,
    period: dict,
    client: dict,
    customer_id: str,
    stripe_invoice_id: str,
    lines: List[InvoiceLineItem],
    pending_items: List[PendingInvoiceItem],
    data: DraftInvoiceCreate,
) -> dict:
    subtotal = sum(line_amount_cents(line) for line in lines)
    manual_count = sum(1 for line in lines if (line.metadata or {}).get("manual_entry"))
    metadata = {
        "pending_item_ids": [item.id for item in pending_items],
        "pending_item_count": len(pending_items),
        "manual_line_count": manual_count,
        "include_retainer": any(line.line_type == "base_subscription" for line in lines),
    }
    if data.memo:
        metadata["memo"] = data.memo
    return {
        "invoice_number": generate_invoice_number(),
        "project_id": period["project_id"],
        "client_id": client["id"],
        "billing_period_id": period["id"],
        "stripe_invoice_id": stripe_invoice_id,
        "stripe_customer_id": customer_id,
        "subtotal_cents": subtotal,
        "tax_cents": 0,
        "total_cents": subtotal,
        # Nothing is paid on a draft
        "net_amount_cents": 0,
        "collection_method": data.collection_method,
        "due_date": data.due_date.isoformat() if data.collection_method == "send_invoice" else None,
        "status": "draft",
        "metadata": metadata,
        "created_by": user_id,
    }


def build_line_rows(invoice_id: str, lines: List[InvoiceLineItem], period_id: str, user_id: str) -> List[dict]:
    rows = []
    for line in lines:
        row = line.model_dump(exclude={"id"})
        row["invoice_id"] = invoice_id
        row["metadata"] = {**(line.metadata or {}), "billing_period_id": period_id}
        row["created_by"] = user_id
        rows.append(row)
    return rows


def _discard_invoice(db, invoice_id: str, mirror: PaymentMirror, stripe_invoice_id: str) -> None:
    try:
        db.table("invoices").delete().eq("id", invoice_id).execute()
    except DATASTORE_ERRORS as e:
        print(f"[{LOG_TAG}] cleanup failed invoice={invoice_id} error={e}")
    mirror.delete_draft_invoice(stripe_invoice_id)


def mark_pending_billed(
    db,
    user_id: str,
    invoice_id: str,
    pending_items: List[PendingInvoiceItem],
    saved_lines: List[InvoiceLineItem],
) -> int:
    """Flag billed charges with the invoice and line they ended up on. Returns how many were updated."""
    line_by_pending: Dict[str, Optional[str]] = {
        line.pending_source_item_id: line.id for line in saved_lines if line.pending_source_item_id
    }
    updated_at = datetime.now(timezone.utc).isoformat()
    updated = 0
    for item in pending_items:
        try:
            db.table("pending_invoice_items").update({
                "status": "billed",
                "billed_invoice_id": invoice_id,
                "billed_invoice_line_item_id": line_by_pending.get(item.id),
                "updated_at": updated_at,
            }).eq("id", item.id).eq("created_by", user_id).execute()
            updated += 1
        except DATASTORE_ERRORS as e:
            print(f"[{LOG_TAG}] failed to mark pending item billed item={item.id} invoice={invoice_id} error={e}")
    return updated


def build_draft_invoice(db, mirror: PaymentMirror, *, user_id: str, data: DraftInvoiceCreate) -> Invoice:
    """
    Build, mirror and persist a draft invoice.

    Raises:
        ValidationFailed: bad selection, nothing to bill, missing due date
        NotFound: period, project or client not owned by the caller
        UpstreamFailure: Stripe or the datastore failed; see the module docstring
            for what is cleaned up
    """
    if data.collection_method == "send_invoice" and data.due_date is None:
        raise ValidationFailed('dueDate is required when collectionMethod is "send_invoice".')

    period, project, client = load_draft_targets(db, user_id, data.billing_period_id)
    pending_items = select_pending_items(
        db, user_id, project["id"], period["id"], data.pending_item_ids
    )
    lines = build_draft_lines(project, pending_items, data.manual_lines, data.include_retainer)
    if not lines:
        raise ValidationFailed("Select pending items, add manual lines, or include the retainer.")

    customer_id = sync_customer(db, mirror, user_id, client, project)
    stripe_invoice_id = mirror_draft(mirror, customer_id, lines, period, data, pending_items)

    invoice_row = build_invoice_row(
        user_id, period, client, customer_id, stripe_invoice_id, lines, pending_items, data
    )
    try:
        invoice = first_row(execute_or_fail(
            db.table("invoices").insert(invoice_row),
            LOG_TAG, "Failed to persist invoice.", period=period["id"], stripe_invoice=stripe_invoice_id,
        ))
        if not invoice:
            raise UpstreamFailure("Failed to persist invoice.")
    except UpstreamFailure:
        mirror.delete_draft_invoice(stripe_invoice_id)
        raise

    try:
        saved = execute_or_fail(
            db.table("invoice_line_items").insert(build_line_rows(invoice["id"], lines, period["id"], user_id)),
            LOG_TAG, "Failed to persist invoice line items.", invoice=invoice["id"],
        )
    except UpstreamFailure:
        _discard_invoice(db, invoice["id"], mirror, stripe_invoice_id)
        raise
    saved_lines = sorted(
        (InvoiceLineItem(**row) for row in saved.data or []), key=lambda line: line.sort_order
    )

    portal_payload = usage_portal_payload(pending_items, period)
    if portal_payload:
        try:
            db.table("invoices").update({"portal_payload": portal_payload}).eq("id", invoice["id"]).execute()
            invoice["portal_payload"] = portal_payload
        except DATASTORE_ERRORS as e:
            print(f"[{LOG_TAG}] failed to set portal payload invoice={invoice['id']} error={e}")

    billed = mark_pending_billed(db, user_id, invoice["id"], pending_items, saved_lines)
    print(
        f"[{LOG_TAG}] created invoice={invoice['id']} stripe_invoice={stripe_invoice_id} "
        f"lines={len(saved_lines)} pending_billed={billed} total_cents={invoice_row['total_cents']}"
    )

    result = Invoice(**invoice)
    result.line_items = saved_lines
    return result
