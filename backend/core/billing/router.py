"""
Billing back-office routes.

Routes:
- /import-usage: CSV usage import (usage event + pending charge)
- /usage-events: Usage events of a billing period
- /pending-items: Pending charge management
- /invoices/draft: Draft invoice from pending charges
- /invoices/{invoice_id}/line-items: Draft invoice editing
- /invoices/{invoice_id}/portal: Share link and portal payload
- /invoices/{invoice_id}: Draft invoice deletion
- /billing-periods: Billing period management

Handlers are plain functions: the Supabase and Stripe clients block, so
FastAPI runs them in its threadpool.
"""
import uuid
from datetime import datetime, timezone
from typing import List, Optional, Union
from fastapi import APIRouter, File, Form, Header, Query, UploadFile

from core.auth import require_auth_user
from core.billing.aggregator import aggregate_usage_rows
from core.billing.csv_parser import parse_usage_csv_text
from core.billing.drafts import build_draft_invoice
from core.billing.line_items import build_line_item
from core.billing.materializer import load_import_targets, materialize_charge
from core.billing.money import coerce_cents, to_decimal
from core.billing.stripe_mirror import get_payment_mirror
from core.database import get_supabase_admin, execute_or_fail, first_row
from core.dates import parse_timestamp
from core.errors import NotFound, UpstreamFailure, UsageRejected, ValidationFailed
from core.models import (
    BillingPeriod, BillingPeriodCreate, DraftInvoiceCreate, ImportUsageResponse, ImportTotals, ImportedProject,
    Invoice, InvoicePortalUpdate, LineItemCreate, PendingInvoiceItem, PendingItemBatch, PendingItemCreate,
    PendingItemUpdate, UsageEvent,
)
from core.portal.invoices import load_line_items

router = APIRouter()

PENDING_STATUSES = ("pending", "billed", "voided")


# ─────────────────────────────────────────────────────────────────────────────
# USAGE IMPORT
# ─────────────────────────────────────────────────────────────────────────────

@router.post("/import-usage")
def import_usage(
    project_id: str = Form(..., alias="projectId"),
    billing_period_id: str = Form(..., alias="billingPeriodId"),
    file: UploadFile = File(...),
    authorization: Optional[str] = Header(None),
) -> ImportUsageResponse:
    """
    Import a usage CSV for a project's billing period.

    The whole file becomes one usage event and one pending invoice item.
    Row problems are returned as warnings; a file without a single billable
    row is rejected.
    """
    user = require_auth_user(authorization)

    try:
        csv_text = file.file.read().decode("utf-8-sig")
    except UnicodeDecodeError:
        raise ValidationFailed("file must be UTF-8 encoded text.")

    parsed = parse_usage_csv_text(csv_text)
    print(f"[import-usage] user={user.id} project={project_id} period={billing_period_id} "
          f"rows={len(parsed.rows)} errors={len(parsed.errors)}")

    if not parsed.rows:
        raise UsageRejected("No usage rows detected in file.", warnings=parsed.errors)

    db = get_supabase_admin()
    project, period = load_import_targets(db, user.id, project_id, billing_period_id)

    aggregate = aggregate_usage_rows(parsed.rows, warnings=parsed.errors)
    _, pending_item = materialize_charge(
        db, user_id=user.id, project=project, period=period, aggregate=aggregate
    )

    return ImportUsageResponse(
        imported=aggregate.valid_rows,
        warnings=aggregate.warnings,
        totals=ImportTotals(cost_cents=aggregate.total_cost_cents, tokens=aggregate.total_tokens),
        project=ImportedProject(id=project["id"], name=project.get("name")),
        pending_item=pending_item,
    )


@router.get("/usage-events")
def list_usage_events(
    billing_period_id: str = Query(..., alias="billingPeriodId"),
    authorization: Optional[str] = Header(None),
) -> dict:
    """Usage events recorded for a billing period, newest first."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    result = execute_or_fail(
        db.table("usage_events").select("*").eq(
            "billing_period_id", billing_period_id
        ).eq("created_by", user.id).order("event_date", desc=True),
        "usage-events", "Unable to load usage events.", period=billing_period_id,
    )
    return {"events": [UsageEvent(**row) for row in result.data or []]}


# ─────────────────────────────────────────────────────────────────────────────
# PENDING ITEMS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/pending-items")
def list_pending_items(
    project_id: Optional[str] = Query(None, alias="projectId"),
    client_id: Optional[str] = Query(None, alias="clientId"),
    status: str = Query("pending"),
    limit: int = Query(100, ge=1, le=500),
    authorization: Optional[str] = Header(None),
) -> dict:
    """Pending charges of the caller. status: pending (default), billed, voided or all."""
    user = require_auth_user(authorization)
    if status != "all" and status not in PENDING_STATUSES:
        raise ValidationFailed("status must be one of pending, billed, voided, all.")

    db = get_supabase_admin()
    query = db.table("pending_invoice_items").select("*").eq("created_by", user.id)
    if project_id:
        query = query.eq("project_id", project_id)
    if client_id:
        query = query.eq("client_id", client_id)
    if status != "all":
        query = query.eq("status", status)

    result = execute_or_fail(
        query.order("created_at", desc=True).limit(limit),
        "pending-items", "Unable to load pending items.", user=user.id,
    )
    return {"items": [PendingInvoiceItem(**row) for row in result.data or []]}


def _normalize_quantity(raw) -> float:
    """Missing, unparseable or non-positive quantities default to 1."""
    quantity = to_decimal(raw)
    if quantity is None or quantity <= 0:
        return 1.0
    return float(quantity)


def _owned_projects(db, user_id: str, project_ids: List[str]) -> dict:
    result = execute_or_fail(
        db.table("projects").select("id, client_id").in_("id", project_ids).eq("created_by", user_id),
        "pending-items", "Unable to load projects.", user=user_id,
    )
    return {row["id"]: row for row in result.data or []}


def _ensure_owned_client(db, user_id: str, client_id: str) -> None:
    result = execute_or_fail(
        db.table("clients").select("id").eq("id", client_id).eq("created_by", user_id).limit(1),
        "pending-items", "Unable to load client.", client=client_id,
    )
    if not first_row(result):
        raise ValidationFailed("Client not found or inaccessible.")


@router.post("/pending-items", status_code=201)
def create_pending_items(
    data: Union[PendingItemBatch, PendingItemCreate],
    authorization: Optional[str] = Header(None),
) -> dict:
    """Queue one or more manual charges."""
    user = require_auth_user(authorization)
    items = data.items if isinstance(data, PendingItemBatch) else [data]
    if not items:
        raise ValidationFailed("No pending items supplied.")

    db = get_supabase_admin()
    project_ids = sorted({item.project_id for item in items})
    projects = _owned_projects(db, user.id, project_ids)
    if len(projects) != len(project_ids):
        raise ValidationFailed("One or more projects are invalid or inaccessible.")

    rows = []
    for item in items:
        unit_price_cents = coerce_cents(item.unit_price_cents, default=0)
        if unit_price_cents <= 0:
            raise ValidationFailed("unitPriceCents must be positive.")
        description = item.description.strip()
        if not description:
            raise ValidationFailed("description cannot be empty.")
        rows.append({
            "created_by": user.id,
            "project_id": item.project_id,
            "client_id": item.client_id or projects[item.project_id].get("client_id"),
            "source_type": item.source_type or "manual",
            "source_ref_id": item.source_ref_id,
            "description": description,
            "quantity": _normalize_quantity(item.quantity),
            "unit_price_cents": unit_price_cents,
            "status": "pending",
            "metadata": item.metadata or {},
        })

    result = execute_or_fail(
        db.table("pending_invoice_items").insert(rows),
        "pending-items", "Unable to create pending items.", user=user.id, count=len(rows),
    )
    print(f"[pending-items] user={user.id} created={len(result.data or [])}")
    return {"items": [PendingInvoiceItem(**row) for row in result.data or []]}


@router.patch("/pending-items/{item_id}")
def update_pending_item(
    item_id: str,
    data: PendingItemUpdate,
    authorization: Optional[str] = Header(None),
) -> PendingInvoiceItem:
    """Edit a pending charge. Only the supplied fields change."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    fields = data.model_dump(exclude_unset=True)
    if "description" in fields:
        description = (fields["description"] or "").strip()
        if not description:
            raise ValidationFailed("description cannot be empty.")
        fields["description"] = description
    if "unit_price_cents" in fields:
        unit_price_cents = coerce_cents(fields["unit_price_cents"], default=0)
        if unit_price_cents <= 0:
            raise ValidationFailed("unitPriceCents must be positive.")
        fields["unit_price_cents"] = unit_price_cents
    if fields.get("client_id"):
        _ensure_owned_client(db, user.id, fields["client_id"])

    fields = {key: value for key, value in fields.items() if value is not None}
    if not fields:
        raise ValidationFailed("No valid fields to update.")
    fields["updated_at"] = datetime.now(timezone.utc).isoformat()

    result = execute_or_fail(
        db.table("pending_invoice_items").update(fields).eq("id", item_id).eq("created_by", user.id),
        "pending-items", "Unable to update pending item.", item=item_id,
    )
    row = first_row(result)
    if not row:
        raise NotFound("Pending item not found.")
    return PendingInvoiceItem(**row)


@router.delete("/pending-items/{item_id}")
def delete_pending_item(item_id: str, authorization: Optional[str] = Header(None)) -> dict:
    """Delete a pending charge. A usage charge takes its usage event with it."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    result = execute_or_fail(
        db.table("pending_invoice_items").select("id, source_type, source_ref_id, metadata").eq(
            "id", item_id
        ).eq("created_by", user.id).limit(1),
        "pending-items", "Unable to load pending item.", item=item_id,
    )
    item = first_row(result)
    if not item:
        raise NotFound("Pending item not found.")

    execute_or_fail(
        db.table("pending_invoice_items").delete().eq("id", item_id).eq("created_by", user.id),
        "pending-items", "Unable to delete pending item.", item=item_id,
    )

    usage_event_id = None
    if item.get("source_type") == "usage":
        usage_event_id = item.get("source_ref_id") or (item.get("metadata") or {}).get("usage_event_id")
    if usage_event_id:
        execute_or_fail(
            db.table("usage_events").delete().eq("id", usage_event_id).eq("created_by", user.id),
            "pending-items", "Unable to delete usage event.", item=item_id, usage_event=usage_event_id,
        )

    print(f"[pending-items] deleted item={item_id} usage_event={usage_event_id}")
    return {"ok": True}


# ─────────────────────────────────────────────────────────────────────────────
# DRAFT INVOICES
# ─────────────────────────────────────────────────────────────────────────────

def _load_owned_invoice(db, invoice_id: str, user_id: str) -> Invoice:
    result = execute_or_fail(
        db.table("invoices").select("*").eq("id", invoice_id).eq("created_by", user_id).limit(1),
        "invoices", "Unable to load invoice.", invoice=invoice_id,
    )
    row = first_row(result)
    if not row:
        raise NotFound("Invoice not found.")
    return Invoice(**row)


@router.post("/invoices/{invoice_id}/line-items")
def add_invoice_line_item(
    invoice_id: str,
    data: LineItemCreate,
    authorization: Optional[str] = Header(None),
) -> Invoice:
    """
    Append a line to a draft invoice.

    The Stripe invoice item is created first; the local line is written only
    once Stripe has accepted it.
    """
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    invoice = _load_owned_invoice(db, invoice_id, user.id)
    if not invoice.is_draft:
        raise ValidationFailed("Only draft invoices can be edited.")
    if not invoice.stripe_invoice_id or not invoice.stripe_customer_id:
        raise ValidationFailed("Invoice is not linked to Stripe.")

    mirror = get_payment_mirror()
    if mirror is None:
        raise UpstreamFailure("Payment processor is not configured.")

    existing = load_line_items(db, invoice.id)
    line = build_line_item(
        invoice.id,
        data.description,
        data.quantity,
        data.unit_price_cents,
        existing,
        line_type="project",
        metadata={"added_manually": True},
    )

    mirror.add_line_item(
        invoice.stripe_customer_id,
        invoice.stripe_invoice_id,
        line.description,
        line.unit_price_cents,
        quantity=data.quantity,
        metadata={"invoice_id": invoice.id, "line_type": "project", "added_manually": "true"},
    )

    row = line.model_dump(exclude={"id"})
    row["created_by"] = user.id
    result = execute_or_fail(
        db.table("invoice_line_items").insert(row),
        "invoices", "Line item was added in Stripe but could not be saved.", invoice=invoice.id,
    )
    saved = first_row(result)
    print(f"[invoices] added line item invoice={invoice.id} line={saved['id'] if saved else None} "
          f"amount_cents={line.amount_cents}")

    invoice.line_items = load_line_items(db, invoice.id)
    return invoice


@router.delete("/invoices/{invoice_id}")
def delete_invoice(invoice_id: str, authorization: Optional[str] = Header(None)) -> dict:
    """Delete a draft invoice. The Stripe draft is removed on a best-effort basis."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    invoice = _load_owned_invoice(db, invoice_id, user.id)
    if not invoice.is_draft:
        raise ValidationFailed("Only draft invoices can be deleted.")

    if invoice.stripe_invoice_id:
        mirror = get_payment_mirror()
        if mirror is not None:
            mirror.delete_draft_invoice(invoice.stripe_invoice_id)

    execute_or_fail(
        db.table("invoice_line_items").delete().eq("invoice_id", invoice.id),
        "invoices", "Unable to delete invoice.", invoice=invoice.id,
    )
    execute_or_fail(
        db.table("invoices").delete().eq("id", invoice.id).eq("created_by", user.id),
        "invoices", "Unable to delete invoice.", invoice=invoice.id,
    )
    print(f"[invoices] deleted draft invoice={invoice.id}")
    return {"ok": True}


@router.post("/invoices/draft")
def create_draft_invoice(
    data: DraftInvoiceCreate,
    authorization: Optional[str] = Header(None),
) -> Invoice:
    """
    Fold a billing period's pending charges (or the selected ones), manual
    lines and the optional retainer into a new Stripe-backed draft invoice.
    """
    user = require_auth_user(authorization)

    mirror = get_payment_mirror()
    if mirror is None:
        raise UpstreamFailure("Payment processor is not configured.")

    db = get_supabase_admin()
    return build_draft_invoice(db, mirror, user_id=user.id, data=data)


@router.patch("/invoices/{invoice_id}/portal")
def update_invoice_portal(
    invoice_id: str,
    data: InvoicePortalUpdate,
    authorization: Optional[str] = Header(None),
) -> Invoice:
    """
    Client portal settings of an invoice: portal payload, share link and its
    expiry. Regenerating the share id without an expiry clears the old one.
    """
    user = require_auth_user(authorization)

    updates = {}
    if data.portal_payload is not None:
        updates["portal_payload"] = data.portal_payload
    if data.regenerate_share_id:
        updates["public_share_id"] = str(uuid.uuid4())
        if "expires_at" not in data.model_fields_set:
            updates["public_share_expires_at"] = None
    if "expires_at" in data.model_fields_set:
        if not data.expires_at:
            updates["public_share_expires_at"] = None
        else:
            expires_at = parse_timestamp(data.expires_at)
            if expires_at is None:
                raise ValidationFailed("expiresAt must be a valid date string.")
            updates["public_share_expires_at"] = expires_at.isoformat()
    if not updates:
        raise ValidationFailed("No changes provided.")
    updates["updated_at"] = datetime.now(timezone.utc).isoformat()

    db = get_supabase_admin()
    result = execute_or_fail(
        db.table("invoices").update(updates).eq("id", invoice_id).eq("created_by", user.id),
        "invoices/portal", "Unable to update invoice portal settings.", invoice=invoice_id,
    )
    row = first_row(result)
    if not row:
        raise NotFound("Invoice not found.")

    print(f"[invoices/portal] updated invoice={invoice_id} fields={sorted(updates)}")
    invoice = Invoice(**row)
    invoice.line_items = load_line_items(db, invoice.id)
    return invoice


# ─────────────────────────────────────────────────────────────────────────────
# BILLING PERIODS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/billing-periods")
def list_billing_periods(
    project_id: Optional[str] = Query(None, alias="projectId"),
    client_id: Optional[str] = Query(None, alias="clientId"),
    authorization: Optional[str] = Header(None),
) -> dict:
    """Billing periods of the caller, latest start first."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    query = db.table("billing_periods").select("*").eq("created_by", user.id)
    if project_id:
        query = query.eq("project_id", project_id)
    if client_id:
        query = query.eq("client_id", client_id)

    result = execute_or_fail(
        query.order("period_start", desc=True).limit(100),
        "billing-periods", "Unable to load billing periods.", user=user.id,
    )
    return {"periods": [BillingPeriod(**row) for row in result.data or []]}


@router.post("/billing-periods", status_code=201)
def create_billing_period(
    data: BillingPeriodCreate,
    authorization: Optional[str] = Header(None),
) -> dict:
    """Open a billing period for a project. The client defaults to the project's."""
    user = require_auth_user(authorization)
    if data.period_end < data.period_start:
        raise ValidationFailed("periodEnd must be after periodStart.")

    db = get_supabase_admin()
    project = first_row(execute_or_fail(
        db.table("projects").select("id, client_id").eq("id", data.project_id).eq("created_by", user.id).limit(1),
        "billing-periods", "Unable to load project.", project=data.project_id,
    ))
    if not project:
        raise NotFound("Project not found.")

    if data.client_id:
        client = first_row(execute_or_fail(
            db.table("clients").select("id").eq("id", data.client_id).eq("created_by", user.id).limit(1),
            "billing-periods", "Unable to load client.", client=data.client_id,
        ))
        if not client:
            raise NotFound("Client not found.")

    project_client_id = project.get("client_id")
    client_id = data.client_id or project_client_id
    if project_client_id and client_id != project_client_id:
        raise ValidationFailed("Client does not match selected project.")
    if not client_id:
        raise ValidationFailed("Select a client for this billing period.")

    result = execute_or_fail(
        db.table("billing_periods").insert({
            "project_id": project["id"],
            "client_id": client_id,
            "period_start": data.period_start.isoformat(),
            "period_end": data.period_end.isoformat(),
            "status": "draft",
            "notes": data.notes,
            "created_by": user.id,
        }),
        "billing-periods", "Failed to create billing period.", project=project["id"],
    )
    period = first_row(result)
    if not period:
        raise UpstreamFailure("Failed to create billing period.")
    print(f"[billing-periods] created period={period['id']} project={project['id']}")
    return {"period": BillingPeriod(**period)}


@router.delete("/billing-periods/{period_id}")
def delete_billing_period(period_id: str, authorization: Optional[str] = Header(None)) -> dict:
    """Delete a billing period with its imported usage and the pending charges queued from it."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    period = first_row(execute_or_fail(
        db.table("billing_periods").select("id").eq("id", period_id).eq("created_by", user.id).limit(1),
        "billing-periods", "Unable to load billing period.", period=period_id,
    ))
    if not period:
        raise NotFound("Billing period not found.")

    events = execute_or_fail(
        db.table("usage_events").select("id").eq("billing_period_id", period_id).eq("created_by", user.id),
        "billing-periods", "Unable to inspect usage for period.", period=period_id,
    )
    usage_ids = [row["id"] for row in events.data or []]

    if usage_ids:
        execute_or_fail(
            db.table("pending_invoice_items").delete().eq("created_by", user.id).eq(
                "source_type", "usage"
            ).in_("source_ref_id", usage_ids),
            "billing-periods", "Unable to delete pending items for period.", period=period_id,
        )
        execute_or_fail(
            db.table("usage_events").delete().eq("created_by", user.id).in_("id", usage_ids),
            "billing-periods", "Unable to delete usage events for period.", period=period_id,
        )

    execute_or_fail(
        db.table("billing_periods").delete().eq("id", period_id).eq("created_by", user.id),
        "billing-periods", "Unable to delete billing period.", period=period_id,
    )
    print(f"[billing-periods] deleted period={period_id} usage_events={len(usage_ids)}")
    return {"ok": True}
