"""
Billing models - usage rows, aggregates, usage events, pending items,
invoices and their line items.

Money is carried as integer cents everywhere it is persisted. Dollar values
only appear transiently (CSV input, aggregate totals) and are Decimal.
"""
from datetime import date, datetime
from decimal import Decimal
from typing import Optional, List, Dict, Any, Union
from pydantic import BaseModel, Field


# ═══════════════════════════════════════════════════════════════════════════
# USAGE INGESTION
# ═══════════════════════════════════════════════════════════════════════════

class UsageRow(BaseModel):
    """One parsed CSV record. Transient, lives for a single import."""
    client_name: str
    date: str
    metric_type: str
    quantity: Decimal
    unit_price: Decimal
    description: str
    total_cost: Optional[Decimal] = None
    total_tokens: Optional[Decimal] = None
    line_number: int  # 1-based, the header is line 1


class UsageCsvParseResult(BaseModel):
    """Parser output. Row-level problems are in `errors`, never raised."""
    rows: List[UsageRow] = []
    errors: List[str] = []
    header: List[str] = []


class UsageAggregate(BaseModel):
    """A batch of usage rows reduced to one chargeable total."""
    total_cost_cents: int
    total_cost_dollars: Decimal
    total_quantity: Decimal
    total_tokens: int
    valid_rows: int
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    metric_type: str
    description: str
    warnings: List[str] = []


class UsageEvent(BaseModel):
    """Durable record of one import batch. Never updated."""
    id: str
    project_id: str
    billing_period_id: Optional[str] = None
    event_date: date
    metric_type: str
    quantity: float
    unit_price_cents: int
    description: Optional[str] = None
    metadata: Dict[str, Any] = {}
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class PendingInvoiceItem(BaseModel):
    """A charge queued for a future invoice."""
    id: str
    client_id: Optional[str] = None
    project_id: str
    source_type: str  # 'usage', 'task', 'manual'
    source_ref_id: Optional[str] = None
    description: str
    quantity: float = 1
    unit_price_cents: int
    status: str = "pending"  # 'pending', 'billed', 'voided'
    metadata: Optional[Dict[str, Any]] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class PendingItemCreate(BaseModel):
    """Manually queue a charge."""
    project_id: str = Field(..., alias="projectId", min_length=1)
    client_id: Optional[str] = Field(None, alias="clientId")
    source_type: str = Field("manual", alias="sourceType")
    source_ref_id: Optional[str] = Field(None, alias="sourceRefId")
    description: str = Field(..., min_length=1, max_length=1000)
    quantity: Optional[Union[float, str]] = None
    unit_price_cents: Union[float, str] = Field(..., alias="unitPriceCents")
    metadata: Optional[Dict[str, Any]] = None

    class Config:
        populate_by_name = True


class PendingItemBatch(BaseModel):
    items: List[PendingItemCreate]


class PendingItemUpdate(BaseModel):
    """Partial update of a pending item. Unset fields are left alone."""
    description: Optional[str] = Field(None, max_length=1000)
    quantity: Optional[float] = Field(None, gt=0)
    unit_price_cents: Optional[float] = Field(None, alias="unitPriceCents", gt=0)
    status: Optional[str] = Field(None, pattern="^(pending|billed|voided)$")
    metadata: Optional[Dict[str, Any]] = None
    client_id: Optional[str] = Field(None, alias="clientId")

    class Config:
        populate_by_name = True


class ImportTotals(BaseModel):
    cost_cents: int
    tokens: int


class ImportedProject(BaseModel):
    id: str
    name: Optional[str] = None


class ImportUsageResponse(BaseModel):
    """Result of a successful usage import."""
    imported: int
    warnings: List[str]
    totals: ImportTotals
    project: ImportedProject
    pending_item: PendingInvoiceItem = Field(..., alias="pendingItem")

    class Config:
        populate_by_name = True


# ═══════════════════════════════════════════════════════════════════════════
# INVOICES
# ═══════════════════════════════════════════════════════════════════════════

class InvoiceLineItem(BaseModel):
    """
    A billable line. `amount_cents` is authoritative when present;
    otherwise quantity x unit_price_cents is used (see core.billing.line_items).
    """
    id: Optional[str] = None
    invoice_id: Optional[str] = None
    description: Optional[str] = None
    quantity: Optional[float] = 1
    unit_price_cents: Optional[int] = None
    amount_cents: Optional[int] = None
    line_type: Optional[str] = None  # 'project', 'usage', ...
    sort_order: int = 0
    metadata: Optional[Dict[str, Any]] = None
    pending_source_item_id: Optional[str] = None

    class Config:
        from_attributes = True


class Invoice(BaseModel):
    """Invoice record. Only 'draft' invoices may change."""
    id: str
    client_id: Optional[str] = None
    project_id: Optional[str] = None
    billing_period_id: Optional[str] = None
    invoice_number: Optional[str] = None
    status: str = "draft"  # 'draft', 'open', 'paid', 'void', 'uncollectible'
    due_date: Optional[date] = None
    created_at: Optional[datetime] = None
    subtotal_cents: Optional[int] = None
    tax_cents: Optional[int] = None
    total_cents: Optional[int] = None
    net_amount_cents: Optional[int] = None
    public_share_id: Optional[str] = None
    public_share_expires_at: Optional[datetime] = None
    portal_payload: Optional[Dict[str, Any]] = None
    metadata: Optional[Dict[str, Any]] = None
    stripe_invoice_id: Optional[str] = None
    stripe_customer_id: Optional[str] = None
    stripe_hosted_url: Optional[str] = None
    stripe_pdf_url: Optional[str] = None
    collection_method: Optional[str] = None
    created_by: Optional[str] = None
    line_items: List[InvoiceLineItem] = []

    class Config:
        from_attributes = True

    @property
    def is_draft(self) -> bool:
        return self.status == "draft"


class LineItemCreate(BaseModel):
    """Add a line to a draft invoice."""
    description: str = Field(..., min_length=1, max_length=500)
    quantity: int = Field(1, ge=1)
    unit_price_cents: int = Field(..., alias="unitPriceCents", gt=0)

    class Config:
        populate_by_name = True


class InvoicePortalUpdate(BaseModel):
    """
    Share-link and portal settings of an invoice. `expiresAt` may be sent as
    null to clear the expiry; leaving it out keeps the current one.
    """
    portal_payload: Optional[Dict[str, Any]] = Field(None, alias="portalPayload")
    regenerate_share_id: bool = Field(False, alias="regenerateShareId")
    expires_at: Optional[str] = Field(None, alias="expiresAt")

    class Config:
        populate_by_name = True


class ManualLine(BaseModel):
    description: str = Field(..., min_length=1, max_length=500)
    quantity: float = Field(1, gt=0)
    unit_price_cents: int = Field(..., alias="unitPriceCents", gt=0)

    class Config:
        populate_by_name = True


class DraftInvoiceCreate(BaseModel):
    """Build a draft invoice for a billing period."""
    billing_period_id: str = Field(..., alias="billingPeriodId", min_length=1)
    pending_item_ids: List[str] = Field([], alias="pendingItemIds")
    manual_lines: List[ManualLine] = Field([], alias="manualLines")
    include_retainer: bool = Field(False, alias="includeRetainer")
    memo: Optional[str] = Field(None, max_length=500)
    collection_method: str = Field(
        "charge_automatically", alias="collectionMethod",
        pattern="^(charge_automatically|send_invoice)$",
    )
    due_date: Optional[date] = Field(None, alias="dueDate")

    class Config:
        populate_by_name = True


# ═══════════════════════════════════════════════════════════════════════════
# BILLING PERIODS
# ═══════════════════════════════════════════════════════════════════════════

class BillingPeriod(BaseModel):
    """A project's billing window. Usage imports and draft invoices attach to one."""
    id: str
    project_id: str
    client_id: Optional[str] = None
    period_start: Optional[date] = None
    period_end: Optional[date] = None
    status: str = "draft"
    notes: Optional[str] = None
    created_by: Optional[str] = None

    class Config:
        from_attributes = True


class BillingPeriodCreate(BaseModel):
    project_id: str = Field(..., alias="projectId", min_length=1)
    period_start: date = Field(..., alias="periodStart")
    period_end: date = Field(..., alias="periodEnd")
    notes: Optional[str] = Field(None, max_length=2000)
    client_id: Optional[str] = Field(None, alias="clientId")

    class Config:
        populate_by_name = True
