"""
Client portal models - memberships and the read views handed to external
users. Field names are serialized in camelCase for the portal frontend.
"""
from typing import Optional, List, Dict, Any
from pydantic import BaseModel
from pydantic.alias_generators import to_camel


class PortalModel(BaseModel):
    class Config:
        alias_generator = to_camel
        populate_by_name = True


# ═══════════════════════════════════════════════════════════════════════════
# MEMBERSHIP
# ═══════════════════════════════════════════════════════════════════════════

class ClientPortalMembership(PortalModel):
    """(client, role) pair, explicit or implied by ownership."""
    client_id: str
    role: str  # 'viewer', 'admin'


class MembershipSummary(PortalModel):
    id: str
    name: str
    company_name: Optional[str] = None
    role: str
    portal_enabled: bool


class MembershipList(PortalModel):
    clients: List[MembershipSummary]


# ═══════════════════════════════════════════════════════════════════════════
# INVOICES
# ═══════════════════════════════════════════════════════════════════════════

class PortalLineItem(PortalModel):
    id: Optional[str] = None
    description: str
    quantity: float
    unit_price_cents: int
    total_cents: int
    category: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None


class PaymentRecord(PortalModel):
    id: str
    amount_cents: int
    status: str
    processed_at: Optional[str] = None
    method: Optional[str] = None
    receipt_url: Optional[str] = None


class PortalInvoiceSummary(PortalModel):
    id: str
    invoice_number: Optional[str] = None
    status: str
    created_at: Optional[str] = None
    due_date: Optional[str] = None
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    amount_due_cents: int
    public_share_id: Optional[str] = None
    public_share_expires_at: Optional[str] = None
    hosted_url: Optional[str] = None
    pdf_url: Optional[str] = None


class PortalInvoiceList(PortalModel):
    invoices: List[PortalInvoiceSummary]


class PortalInvoiceDetail(PortalInvoiceSummary):
    net_amount_cents: int = 0
    portal_payload: Dict[str, Any] = {}
    metadata: Dict[str, Any] = {}
    project_name: Optional[str] = None
    line_items: List[PortalLineItem] = []
    payments: List[PaymentRecord] = []


class PublicInvoiceView(PortalModel):
    """Anonymous share-link view of a single invoice."""
    id: str
    share_id: str
    invoice_number: Optional[str] = None
    status: str
    due_date: Optional[str] = None
    created_at: Optional[str] = None
    subtotal_cents: int
    tax_cents: int
    total_cents: int
    amount_due_cents: int
    hosted_url: Optional[str] = None
    pdf_url: Optional[str] = None
    currency: str = "USD"
    client_name: str
    client_company: Optional[str] = None
    portal_payload: Dict[str, Any] = {}
    line_items: List[PortalLineItem] = []


# ═══════════════════════════════════════════════════════════════════════════
# USAGE
# ═══════════════════════════════════════════════════════════════════════════

class UsageSummary(PortalModel):
    total_cost_cents: int
    total_quantity: float
    total_events: int


class UsageBreakdownEntry(PortalModel):
    metric_type: str
    total_quantity: float
    raw_cost_cents: int
    events: int


class UsageTimeseriesPoint(PortalModel):
    date: str
    total_cost_cents: int
    total_quantity: float


class PortalUsageEvent(PortalModel):
    id: str
    event_date: Optional[str] = None
    metric_type: Optional[str] = None
    quantity: float
    unit_price_cents: int
    description: Optional[str] = None
    metadata: Optional[Dict[str, Any]] = None
    project_id: Optional[str] = None
    project_name: Optional[str] = None
    raw_cost_cents: int


class UsageReport(PortalModel):
    summary: UsageSummary
    breakdown: List[UsageBreakdownEntry]
    timeseries: List[UsageTimeseriesPoint]
    events: List[PortalUsageEvent]
