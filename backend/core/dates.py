"""
Date and timestamp parsing for values coming from CSV files, query strings
and the datastore.

Postgres emits timestamps with a trailing `Z` or with trimmed fractional
seconds (`.12345+00:00`); both are parsed through pydantic rather than
`datetime.fromisoformat`.
"""
from datetime import date, datetime, timezone
from typing import Optional

from pydantic import TypeAdapter, ValidationError

_DATETIME = TypeAdapter(datetime)


def _looks_numeric(value: str) -> bool:
    # pydantic reads bare numbers as unix timestamps
    return value.strip().lstrip("+-").replace(".", "", 1).isdigit()


def parse_timestamp(value) -> Optional[datetime]:
    """Timezone-aware datetime, or None when unparsable. Naive values are read as UTC."""
    if not value or (isinstance(value, str) and _looks_numeric(value)):
        return None
    try:
        parsed = _DATETIME.validate_python(value)
    except ValidationError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def parse_day(value) -> Optional[date]:
    """An ISO date, or the calendar date of an ISO datetime. None when unparsable."""
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    value = (value or "").strip()
    if not value or _looks_numeric(value):
        return None
    try:
        return date.fromisoformat(value)
    except ValueError:
        pass
    try:
        return _DATETIME.validate_python(value).date()
    except ValidationError:
        return None
