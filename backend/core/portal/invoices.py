"""
Invoice read models for the client portal and public share links.
"""
from typing import Any, Dict, List, Optional

from core.billing.line_items import to_portal_line, sorted_lines
from core.billing.money import coerce_cents
from core.database import DATASTORE_ERRORS, first_row
from core.errors import NotFound, UpstreamFailure
from core.models.billing import Invoice, InvoiceLineItem
from core.models.portal import (
    PortalInvoiceSummary, PortalInvoiceDetail, PublicInvoiceView, PaymentRecord
)

LOG_TAG = "[client-portal invoices]"


# ─────────────────────────────────────────────────────────────────────────────
# LOADING
# ─────────────────────────────────────────────────────────────────────────────

def load_invoice(db, invoice_id: str, *, by_share_id: bool = False) -> Invoice:
    column = "public_share_id" if by_share_id else "id"
    try:
        result = db.table("invoices").select("*").eq(column, invoice_id).limit(1).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} Failed to load invoice {column}={invoice_id} error={e}")
        raise UpstreamFailure("Unable to load invoice.") from e

    row = first_row(result)
    if not row:
        raise NotFound("Invoice not found.")
    return Invoice(**row)


def load_line_items(db, invoice_id: str) -> List[InvoiceLineItem]:
    try:
        result = db.table("invoice_line_items").select("*").eq(
            "invoice_id", invoice_id
        ).order("sort_order").execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} Failed to load line items invoice={invoice_id} error={e}")
        raise UpstreamFailure("Unable to load invoice.") from e
    return [InvoiceLineItem(**row) for row in result.data or []]


def list_client_invoices(db, client_id: str, statuses: Optional[List[str]], limit: int) -> List[Invoice]:
    query = db.table("invoices").select("*").eq("client_id", client_id)
    if statuses:
        query = query.in_("status", statuses)
    try:
        result = query.order("created_at", desc=True).limit(limit).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} Failed to load invoices client={client_id} error={e}")
        raise UpstreamFailure("Unable to load invoices.") from e
    return [Invoice(**row) for row in result.data or []]


def load_project_name(db, project_id: Optional[str]) -> Optional[str]:
    if not project_id:
        return None
    try:
        result = db.table("projects").select("name").eq("id", project_id).limit(1).execute()
    except DATASTORE_ERRORS as e:
        print(f"{LOG_TAG} Failed to load project name project={project_id} error={e}")
        return None
    row = first_row(result)
    return row.get("name") if row else None


# ─────────────────────────────────────────────────────────────────────────────
# SHAPING
# ─────────────────────────────────────────────────────────────────────────────

def amount_due_cents(invoice: Invoice) -> int:
    total = coerce_cents(invoice.total_cents)
    net = coerce_cents(invoice.net_amount_cents)
    return max(0, total - net)


def parse_portal_payload(raw: Any) -> Dict[str, Any]:
    """Keep only well-formed portal payload sections."""
    if not isinstance(raw, dict):
        return {}
    payload: Dict[str, Any] = {}
    for key in ("usageDetails", "shadowItems"):
        if isinstance(raw.get(key), list):
            payload[key] = raw[key]
    if isinstance(raw.get("shadowSummary"), dict):
        payload["shadowSummary"] = raw["shadowSummary"]
    for key in ("aiNotes", "voiceScript", "periodLabel"):
        if isinstance(raw.get(key), str):
            payload[key] = raw[key]
    if isinstance(raw.get("roadmapUpdates"), list):
        payload["roadmapUpdates"] = [
            item for item in raw["roadmapUpdates"] if isinstance(item, str) and item.strip()
        ]
    return payload


def _iso(value) -> Optional[str]:
    return value.isoformat() if value else None


def invoice_summary(invoice: Invoice) -> PortalInvoiceSummary:
    total = coerce_cents(invoice.total_cents)
    return PortalInvoiceSummary(
        id=invoice.id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        created_at=_iso(invoice.created_at),
        due_date=_iso(invoice.due_date),
        subtotal_cents=coerce_cents(invoice.subtotal_cents, default=total),
        tax_cents=coerce_cents(invoice.tax_cents),
        total_cents=total,
        amount_due_cents=amount_due_cents(invoice),
        public_share_id=invoice.public_share_id,
        public_share_expires_at=_iso(invoice.public_share_expires_at),
        hosted_url=invoice.stripe_hosted_url,
        pdf_url=invoice.stripe_pdf_url,
    )


def invoice_detail(
    invoice: Invoice,
    line_items: List[InvoiceLineItem],
    payments: List[PaymentRecord],
    project_name: Optional[str] = None,
) -> PortalInvoiceDetail:
    summary = invoice_summary(invoice)
    return PortalInvoiceDetail(
        **summary.model_dump(),
        net_amount_cents=coerce_cents(invoice.net_amount_cents),
        portal_payload=invoice.portal_payload or {},
        metadata=invoice.metadata or {},
        project_name=project_name,
        line_items=[to_portal_line(item) for item in sorted_lines(line_items)],
        payments=payments,
    )


def public_invoice_view(
    invoice: Invoice,
    client: Optional[dict],
    line_items: List[InvoiceLineItem],
) -> PublicInvoiceView:
    summary = invoice_summary(invoice)
    client = client or {}
    return PublicInvoiceView(
        id=invoice.id,
        share_id=invoice.public_share_id,
        invoice_number=invoice.invoice_number,
        status=invoice.status,
        due_date=summary.due_date,
        created_at=summary.created_at,
        subtotal_cents=summary.subtotal_cents,
        tax_cents=summary.tax_cents,
        total_cents=summary.total_cents,
        amount_due_cents=summary.amount_due_cents,
        hosted_url=invoice.stripe_hosted_url,
        pdf_url=invoice.stripe_pdf_url,
        client_name=client.get("name") or "Client",
        client_company=client.get("company_name"),
        portal_payload=parse_portal_payload(invoice.portal_payload),
        line_items=[to_portal_line(item, "Service line item") for item in sorted_lines(line_items)],
    )
