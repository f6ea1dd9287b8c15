"""
Usage aggregator.

Reduces a batch of UsageRows to one UsageAggregate. Bad rows become warnings;
the batch is rejected only when nothing billable survives.
"""
from datetime import date
from decimal import Decimal
from typing import Iterable, List, Optional

from core.billing.money import MAX_ROW_COST_DOLLARS, dollars_to_cents
from core.dates import parse_day
from core.errors import UsageRejected
from core.models.billing import UsageRow, UsageAggregate

DEFAULT_METRIC_TYPE = "ai_usage"


def parse_usage_date(value: str) -> Optional[date]:
    """Accept an ISO date or an ISO datetime. Returns None when unparsable."""
    return parse_day(value)


def row_cost_dollars(row: UsageRow) -> Optional[Decimal]:
    """
    Cost of one row in dollars: an explicit total_cost wins, otherwise
    unit_price x quantity. Zero or negative cost is invalid, not free.
    """
    cost = row.total_cost if row.total_cost is not None else row.unit_price * row.quantity
    if not cost.is_finite() or cost <= 0:
        return None
    return cost


def row_tokens(row: UsageRow) -> Decimal:
    if row.total_tokens is not None:
        return row.total_tokens
    if "token" in row.metric_type.lower():
        return row.quantity
    return Decimal(0)


def describe_batch(first: Optional[date], last: Optional[date], valid_rows: int, total_tokens: int) -> str:
    start = first.isoformat() if first else None
    end = last.isoformat() if last else None
    if start and end:
        range_segment = f"{start} → {end}"
    else:
        range_segment = start or end or "usage"
    token_segment = f"{total_tokens:,} tokens" if total_tokens > 0 else "cost import"
    return f"AI usage {range_segment} ({valid_rows} rows; {token_segment})"


def aggregate_usage_rows(rows: Iterable[UsageRow], warnings: Iterable[str] = ()) -> UsageAggregate:
    """
    Aggregate parsed rows into one monetary total.

    Dollar costs are summed exactly and rounded to cents once for the whole
    batch. `warnings` (typically the parser's errors) are carried into the
    result ahead of the aggregation warnings.

    Raises UsageRejected when no row survives or the total rounds to <= 0.
    """
    collected: List[str] = list(warnings)
    total_dollars = Decimal(0)
    total_quantity = Decimal(0)
    total_tokens = Decimal(0)
    valid_rows = 0
    first_date: Optional[date] = None
    last_date: Optional[date] = None
    metric_types = set()

    for row in rows:
        parsed_date = parse_usage_date(row.date)
        if parsed_date is None:
            collected.append(f'Row {row.line_number}: invalid date "{row.date}".')
            continue

        cost = row_cost_dollars(row)
        if cost is None:
            collected.append(f"Row {row.line_number}: missing or invalid cost.")
            continue
        if cost > MAX_ROW_COST_DOLLARS:
            collected.append(f"Row {row.line_number}: cost is out of range.")
            continue

        total_dollars += cost
        total_quantity += row.quantity
        total_tokens += row_tokens(row)
        valid_rows += 1
        metric_types.add(row.metric_type or DEFAULT_METRIC_TYPE)

        if first_date is None or parsed_date < first_date:
            first_date = parsed_date
        if last_date is None or parsed_date > last_date:
            last_date = parsed_date

    total_cents = dollars_to_cents(total_dollars)
    if valid_rows == 0 or total_cents <= 0:
        raise UsageRejected(warnings=collected)

    tokens = int(round(total_tokens))
    metric_type = metric_types.pop() if len(metric_types) == 1 else DEFAULT_METRIC_TYPE

    return UsageAggregate(
        total_cost_cents=total_cents,
        total_cost_dollars=total_dollars,
        total_quantity=total_quantity,
        total_tokens=tokens,
        valid_rows=valid_rows,
        first_date=first_date,
        last_date=last_date,
        metric_type=metric_type,
        description=describe_batch(first_date, last_date, valid_rows, tokens),
        warnings=collected,
    )
