"""
Usage breakdown and time series for the client portal.

Each event's cost is round_half_up(quantity x unit_price_cents), rounded per
event. Imported batches are stored as a single event of quantity 1 whose unit
price is the batch total, so their cost here equals the cents recorded at
import time.
"""
from collections import OrderedDict
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional, Tuple

from core.billing.money import to_decimal, round_cents, coerce_cents
from core.dates import parse_day
from core.errors import ValidationFailed
from core.models.portal import (
    UsageReport, UsageSummary, UsageBreakdownEntry, UsageTimeseriesPoint, PortalUsageEvent
)

GROUP_BY_METRIC = "metric"
GROUP_BY_PROJECT = "project"


def parse_date_param(value: Optional[str]) -> Optional[date]:
    if not value:
        return None
    parsed = parse_day(value)
    if parsed is None:
        raise ValidationFailed("Invalid date range.")
    return parsed


def resolve_date_range(
    start: Optional[str],
    end: Optional[str],
    default_days: int = 30,
    today: Optional[date] = None,
) -> Tuple[str, str]:
    """(start, end) as ISO dates; defaults to the last `default_days` days."""
    today = today or datetime.now(timezone.utc).date()
    end_date = parse_date_param(end) or today
    start_date = parse_date_param(start) or (today - timedelta(days=default_days))
    if start_date > end_date:
        raise ValidationFailed("Invalid date range.")
    return start_date.isoformat(), end_date.isoformat()


def event_cost_cents(quantity: Decimal, unit_price_cents: Decimal) -> int:
    return round_cents(quantity * unit_price_cents)


def to_portal_event(row: dict, project_names: Dict[str, str]) -> PortalUsageEvent:
    quantity = to_decimal(row.get("quantity")) or Decimal(0)
    unit_cents = to_decimal(row.get("unit_price_cents")) or Decimal(0)
    event_date = row.get("event_date")
    return PortalUsageEvent(
        id=str(row["id"]),
        event_date=str(event_date) if event_date else None,
        metric_type=row.get("metric_type"),
        quantity=float(quantity),
        unit_price_cents=coerce_cents(unit_cents),
        description=row.get("description"),
        metadata=row.get("metadata"),
        project_id=row.get("project_id"),
        project_name=project_names.get(row.get("project_id")),
        raw_cost_cents=event_cost_cents(quantity, unit_cents),
    )


def build_usage_report(
    rows: Iterable[dict],
    project_names: Optional[Dict[str, str]] = None,
    group_by: str = GROUP_BY_METRIC,
) -> UsageReport:
    """
    Summarize usage events.

    breakdown: one entry per metric type (or project name when grouping by
    project), highest cost first. timeseries: one point per day, oldest first.
    """
    project_names = project_names or {}
    events = [to_portal_event(row, project_names) for row in rows]

    breakdown: Dict[str, dict] = OrderedDict()
    daily: Dict[str, dict] = {}
    total_cents = 0
    total_quantity = Decimal(0)

    for event in events:
        quantity = to_decimal(event.quantity) or Decimal(0)
        total_cents += event.raw_cost_cents
        total_quantity += quantity

        if group_by == GROUP_BY_PROJECT and event.project_name:
            key = event.project_name
        else:
            key = event.metric_type or "usage"
        entry = breakdown.setdefault(key, {"quantity": Decimal(0), "cents": 0, "events": 0})
        entry["quantity"] += quantity
        entry["cents"] += event.raw_cost_cents
        entry["events"] += 1

        day = daily.setdefault(event.event_date or "unknown", {"quantity": Decimal(0), "cents": 0})
        day["quantity"] += quantity
        day["cents"] += event.raw_cost_cents

    breakdown_entries: List[UsageBreakdownEntry] = sorted(
        (
            UsageBreakdownEntry(
                metric_type=key,
                total_quantity=float(value["quantity"]),
                raw_cost_cents=value["cents"],
                events=value["events"],
            )
            for key, value in breakdown.items()
        ),
        key=lambda entry: entry.raw_cost_cents,
        reverse=True,
    )

    timeseries = [
        UsageTimeseriesPoint(date=day, total_cost_cents=value["cents"], total_quantity=float(value["quantity"]))
        for day, value in sorted(daily.items())
    ]

    return UsageReport(
        summary=UsageSummary(
            total_cost_cents=total_cents,
            total_quantity=float(total_quantity),
            total_events=len(events),
        ),
        breakdown=breakdown_entries,
        timeseries=timeseries,
        events=events,
    )


def empty_usage_report() -> UsageReport:
    return build_usage_report([])
