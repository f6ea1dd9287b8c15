"""
Core Pydantic models shared across the billing back-office and client portal.
"""
from .user import AuthUser, FeatureList
from .billing import (
    UsageRow,
    UsageCsvParseResult,
    UsageAggregate,
    UsageEvent,
    PendingInvoiceItem,
    PendingItemCreate,
    PendingItemBatch,
    PendingItemUpdate,
    ImportTotals,
    ImportedProject,
    ImportUsageResponse,
    InvoiceLineItem,
    Invoice,
    LineItemCreate,
    InvoicePortalUpdate,
    ManualLine,
    DraftInvoiceCreate,
    BillingPeriod,
    BillingPeriodCreate,
)
from .portal import (
    ClientPortalMembership,
    MembershipSummary,
    MembershipList,
    PortalLineItem,
    PaymentRecord,
    PortalInvoiceSummary,
    PortalInvoiceList,
    PortalInvoiceDetail,
    PublicInvoiceView,
    UsageSummary,
    UsageBreakdownEntry,
    UsageTimeseriesPoint,
    PortalUsageEvent,
    UsageReport,
)

__all__ = [
    # User
    "AuthUser", "FeatureList",
    # Usage ingestion
    "UsageRow", "UsageCsvParseResult", "UsageAggregate", "UsageEvent",
    "PendingInvoiceItem", "PendingItemCreate", "PendingItemBatch", "PendingItemUpdate",
    "ImportTotals", "ImportedProject", "ImportUsageResponse",
    # Invoices
    "InvoiceLineItem", "Invoice", "LineItemCreate", "InvoicePortalUpdate", "ManualLine", "DraftInvoiceCreate",
    # Billing periods
    "BillingPeriod", "BillingPeriodCreate",
    # Portal
    "ClientPortalMembership", "MembershipSummary", "MembershipList",
    "PortalLineItem", "PaymentRecord", "PortalInvoiceSummary", "PortalInvoiceList",
    "PortalInvoiceDetail", "PublicInvoiceView",
    "UsageSummary", "UsageBreakdownEntry", "UsageTimeseriesPoint", "PortalUsageEvent",
    "UsageReport",
]
