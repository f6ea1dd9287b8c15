"""
Client portal routes.

Routes:
- /client-portal/memberships: Clients the caller can open
- /client-portal/invoices: Invoice list and detail
- /client-portal/usage: Usage breakdown and time series
- /client-portal/statements/{invoice_id}/download: PDF redirect or CSV statement
- /public-invoices/{share_id}: Anonymous share-link view

Every client-scoped read goes through ClientAccessResolver first: membership
(or share link), then the portal-enabled gate.
"""
from typing import Optional, Tuple
from fastapi import APIRouter, Header, Query
from fastapi.responses import RedirectResponse, Response

from config import settings
from core.auth import get_auth_user, require_auth_user
from core.billing.stripe_mirror import get_payment_mirror
from core.database import get_supabase_admin, execute_or_fail, first_row
from core.errors import Forbidden, NotFound, Unauthorized, ValidationFailed
from core.models import (
    AuthUser, Invoice, MembershipList, PortalInvoiceDetail, PortalInvoiceList,
    PublicInvoiceView, UsageReport,
)
from core.portal.access import ClientAccessResolver, PortalAccess
from core.portal.invoices import (
    load_invoice, load_line_items, list_client_invoices, load_project_name,
    invoice_summary, invoice_detail, public_invoice_view,
)
from core.portal.statements import build_statement_csv, statement_filename
from core.portal.usage_report import (
    GROUP_BY_METRIC, GROUP_BY_PROJECT, build_usage_report, empty_usage_report, resolve_date_range,
)

router = APIRouter()

MAX_INVOICE_LIMIT = 200


def _authorize_invoice(
    db,
    invoice_id: str,
    user: Optional[AuthUser],
    share_id: Optional[str],
) -> Tuple[Invoice, PortalAccess]:
    """Load an invoice and check the caller may read its client."""
    if user is None and not share_id:
        raise Unauthorized()

    invoice = load_invoice(db, invoice_id)
    resolver = ClientAccessResolver(db)
    if share_id:
        access = resolver.authorize(user, share_id=share_id)
    else:
        access = resolver.authorize(user, client_id=invoice.client_id)

    if access.client_id != invoice.client_id:
        raise Forbidden()
    return invoice, access


# ─────────────────────────────────────────────────────────────────────────────
# MEMBERSHIPS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/client-portal/memberships")
def list_memberships(authorization: Optional[str] = Header(None)) -> MembershipList:
    """Clients the caller belongs to or owns."""
    user = require_auth_user(authorization)
    db = get_supabase_admin()

    clients = ClientAccessResolver(db).membership_summaries(user.id)
    print(f"[client-portal memberships] user={user.id} clients={len(clients)}")
    return MembershipList(clients=clients)


# ─────────────────────────────────────────────────────────────────────────────
# INVOICES
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/client-portal/invoices")
def list_invoices(
    client_id: Optional[str] = Query(None, alias="clientId"),
    share_id: Optional[str] = Query(None, alias="shareId"),
    status: Optional[str] = Query(None),
    limit: Optional[int] = Query(None),
    authorization: Optional[str] = Header(None),
) -> PortalInvoiceList:
    """Invoices of one client, newest first. status is a comma-separated filter."""
    user = get_auth_user(authorization)
    db = get_supabase_admin()

    access = ClientAccessResolver(db).authorize(user, client_id=client_id, share_id=share_id)

    statuses = [s.strip() for s in (status or "").split(",") if s.strip()]
    if limit is None:
        limit = settings.portal_invoice_limit
    limit = max(1, min(limit, MAX_INVOICE_LIMIT))

    invoices = list_client_invoices(db, access.client_id, statuses or None, limit)
    return PortalInvoiceList(invoices=[invoice_summary(invoice) for invoice in invoices])


@router.get("/client-portal/invoices/{invoice_id}")
def get_invoice(
    invoice_id: str,
    share_id: Optional[str] = Query(None, alias="shareId"),
    authorization: Optional[str] = Header(None),
) -> PortalInvoiceDetail:
    """Invoice with its line items and Stripe payment history."""
    user = get_auth_user(authorization)
    db = get_supabase_admin()

    invoice, access = _authorize_invoice(db, invoice_id, user, share_id)

    line_items = load_line_items(db, invoice.id)
    payments = []
    mirror = get_payment_mirror()
    if mirror is not None and invoice.stripe_invoice_id:
        payments = mirror.list_payments(invoice.stripe_invoice_id)
    project_name = load_project_name(db, invoice.project_id)

    print(f"[client-portal invoices] invoice={invoice.id} client={access.client_id} "
          f"role={access.role} via_share={access.via_share}")
    return invoice_detail(invoice, line_items, payments, project_name)


# ─────────────────────────────────────────────────────────────────────────────
# USAGE
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/client-portal/usage")
def get_usage(
    client_id: Optional[str] = Query(None, alias="clientId"),
    share_id: Optional[str] = Query(None, alias="shareId"),
    start_date: Optional[str] = Query(None, alias="startDate"),
    end_date: Optional[str] = Query(None, alias="endDate"),
    group_by: str = Query(GROUP_BY_METRIC, alias="groupBy"),
    authorization: Optional[str] = Header(None),
) -> UsageReport:
    """Usage of a client's projects in a date range (last 30 days by default)."""
    user = get_auth_user(authorization)
    db = get_supabase_admin()

    access = ClientAccessResolver(db).authorize(user, client_id=client_id, share_id=share_id)

    if group_by not in (GROUP_BY_METRIC, GROUP_BY_PROJECT):
        raise ValidationFailed("groupBy must be metric or project.")
    start, end = resolve_date_range(start_date, end_date, settings.usage_default_days)

    projects = execute_or_fail(
        db.table("projects").select("id, name").eq("client_id", access.client_id),
        "client-portal usage", "Unable to load usage.", client=access.client_id,
    )
    project_names = {row["id"]: row.get("name") for row in projects.data or []}
    if not project_names:
        return empty_usage_report()

    events = execute_or_fail(
        db.table("usage_events").select(
            "id, project_id, event_date, metric_type, quantity, unit_price_cents, description, metadata"
        ).in_("project_id", list(project_names)).gte("event_date", start).lte(
            "event_date", end
        ).order("event_date", desc=True).limit(settings.usage_max_events),
        "client-portal usage", "Unable to load usage.", client=access.client_id,
    )
    rows = events.data or []
    print(f"[client-portal usage] client={access.client_id} range={start}..{end} events={len(rows)}")
    return build_usage_report(rows, project_names, group_by)


# ─────────────────────────────────────────────────────────────────────────────
# STATEMENTS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/client-portal/statements/{invoice_id}/download", response_model=None)
def download_statement(
    invoice_id: str,
    kind: str = Query("pdf", alias="type"),
    share_id: Optional[str] = Query(None, alias="shareId"),
    authorization: Optional[str] = Header(None),
    x_client_portal_download: Optional[str] = Header(None),
):
    """
    type=pdf: redirect to the Stripe PDF, or return {"url": ...} when the
    X-Client-Portal-Download header is "1". type=csv: statement attachment.
    """
    kind = (kind or "").lower()
    if kind not in ("pdf", "csv"):
        raise ValidationFailed("Unsupported statement type.")

    user = get_auth_user(authorization)
    db = get_supabase_admin()
    invoice, _ = _authorize_invoice(db, invoice_id, user, share_id)

    if kind == "pdf":
        if not invoice.stripe_pdf_url:
            raise NotFound("PDF not available for this invoice.")
        if x_client_portal_download == "1":
            return {"url": invoice.stripe_pdf_url}
        return RedirectResponse(invoice.stripe_pdf_url, status_code=302)

    csv_text = build_statement_csv(invoice, load_line_items(db, invoice.id))
    return Response(
        content=csv_text,
        media_type="text/csv; charset=utf-8",
        headers={"Content-Disposition": f'attachment; filename="{statement_filename(invoice)}"'},
    )


# ─────────────────────────────────────────────────────────────────────────────
# PUBLIC SHARE LINKS
# ─────────────────────────────────────────────────────────────────────────────

@router.get("/public-invoices/{share_id}")
def get_public_invoice(share_id: str) -> PublicInvoiceView:
    """Anonymous invoice view behind an unexpired share link."""
    db = get_supabase_admin()

    access = ClientAccessResolver(db).authorize(None, share_id=share_id)
    invoice = load_invoice(db, share_id, by_share_id=True)

    client = execute_or_fail(
        db.table("clients").select("id, name, company_name").eq("id", access.client_id).limit(1),
        "public-invoices", "Unable to load invoice.", share=share_id,
    )
    line_items = load_line_items(db, invoice.id)
    return public_invoice_view(invoice, first_row(client), line_items)
