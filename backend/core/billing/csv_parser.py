"""
Usage CSV parser.

Turns raw delimited text into typed UsageRows. Malformed rows are skipped and
reported in `errors`; the only hard stop is a file with no lines at all.
"""
import csv
from decimal import Decimal
from typing import Dict, List, Optional

from core.billing.money import to_decimal
from core.models.billing import UsageRow, UsageCsvParseResult

REQUIRED_HEADERS = (
    "client_name",
    "date",
    "metric_type",
    "quantity",
    "unit_price",
    "description",
)

# Recognized when present, never required.
OPTIONAL_HEADERS = ("total_cost", "total_tokens")

EMPTY_FILE_ERROR = "CSV file is empty."


def normalize_header(cell: str) -> str:
    return cell.strip().lower()


def split_csv_line(line: str, delimiter: str = ",") -> List[str]:
    """
    Split one line into cells. Quoted cells may contain the delimiter and
    `""` inside quotes is a literal quote.
    """
    return next(csv.reader([line], delimiter=delimiter), [])


def _parse_number(raw: str) -> Optional[Decimal]:
    # An empty cell counts as 0; the aggregator rejects zero-cost rows.
    if raw == "":
        return Decimal(0)
    return to_decimal(raw)


def parse_usage_csv_text(csv_text: str, delimiter: str = ",") -> UsageCsvParseResult:
    """
    Parse usage CSV text.

    Row numbers in errors are 1-based line numbers with the header as line 1.
    """
    rows: List[UsageRow] = []
    errors: List[str] = []

    sanitized = csv_text.replace("\r\n", "\n").strip()
    lines = sanitized.split("\n") if sanitized else []

    if not lines:
        return UsageCsvParseResult(rows=[], errors=[EMPTY_FILE_ERROR], header=[])

    header = [normalize_header(cell) for cell in split_csv_line(lines[0], delimiter)]

    for required in REQUIRED_HEADERS:
        if required not in header:
            errors.append(f'Missing required column "{required}".')

    for index, line in enumerate(lines[1:], start=2):
        if not line.strip():
            continue

        cells = split_csv_line(line, delimiter)
        record: Dict[str, str] = {}
        for position, column in enumerate(header):
            record[column] = cells[position].strip() if position < len(cells) else ""

        client_name = record.get("client_name", "")
        metric_type = record.get("metric_type", "")
        description = record.get("description", "")
        if not client_name and not metric_type and not description:
            continue

        quantity = _parse_number(record.get("quantity", ""))
        if quantity is None:
            errors.append(f"Row {index}: quantity must be a number.")
            continue

        unit_price = _parse_number(record.get("unit_price", ""))
        if unit_price is None:
            errors.append(f"Row {index}: unit_price must be a number.")
            continue

        optional = {
            column: to_decimal(record[column])
            for column in OPTIONAL_HEADERS
            if record.get(column)
        }
        unreadable = [column for column, value in optional.items() if value is None]
        if unreadable:
            errors.append(f"Row {index}: {unreadable[0]} must be a number.")
            continue

        rows.append(UsageRow(
            client_name=client_name,
            date=record.get("date", ""),
            metric_type=metric_type,
            quantity=quantity,
            unit_price=unit_price,
            description=description,
            total_cost=optional.get("total_cost"),
            total_tokens=optional.get("total_tokens"),
            line_number=index,
        ))

    return UsageCsvParseResult(rows=rows, errors=errors, header=header)
