"""Tests for timestamp and date parsing."""

from datetime import date, datetime, timezone

import pytest

from core.dates import parse_day, parse_timestamp


class TestParseTimestamp:
    @pytest.mark.parametrize("value", [
        "2024-05-01T12:00:00Z",
        "2024-05-01T12:00:00+00:00",
        "2024-05-01T12:00:00.000000Z",
        "2024-05-01 12:00:00+00:00",
    ])
    def test_postgres_formats(self, value):
        assert parse_timestamp(value) == datetime(2024, 5, 1, 12, tzinfo=timezone.utc)

    def test_trimmed_fraction(self):
        assert parse_timestamp("2024-05-01T12:00:00.12345+00:00").microsecond == 123450

    def test_naive_is_utc(self):
        assert parse_timestamp("2024-05-01T12:00:00").tzinfo is not None

    @pytest.mark.parametrize("value", [None, "", "soon", "1714564800"])
    def test_unparsable(self, value):
        assert parse_timestamp(value) is None


class TestParseDay:
    def test_date_and_datetime_strings(self):
        assert parse_day("2024-05-01") == date(2024, 5, 1)
        assert parse_day(" 2024-05-01T23:59:59.5Z ") == date(2024, 5, 1)

    def test_instances_pass_through(self):
        assert parse_day(date(2024, 5, 1)) == date(2024, 5, 1)
        assert parse_day(datetime(2024, 5, 1, 8)) == date(2024, 5, 1)

    def test_unparsable(self):
        assert parse_day("05/01/2024") is None
        assert parse_day(None) is None
