"""Tests for the usage CSV parser."""

from decimal import Decimal

from core.billing.csv_parser import EMPTY_FILE_ERROR, parse_usage_csv_text, split_csv_line


HEADER = "client_name,date,metric_type,quantity,unit_price,description"


class TestSplitCsvLine:
    def test_plain_cells(self):
        assert split_csv_line("a,b,c") == ["a", "b", "c"]

    def test_quoted_cell_keeps_delimiter(self):
        assert split_csv_line('Acme,"Usage, January",3') == ["Acme", "Usage, January", "3"]

    def test_doubled_quote_is_literal(self):
        assert split_csv_line('"say ""hi""",x') == ['say "hi"', "x"]

    def test_custom_delimiter(self):
        assert split_csv_line("a;b;c", delimiter=";") == ["a", "b", "c"]


class TestParseUsageCsv:
    def test_good_file_yields_one_row_per_data_line(self):
        text = "\n".join([
            HEADER,
            "Acme,2024-01-01,tokens,1000,0.002,AI usage",
            "Acme,2024-01-02,tokens,500,0.002,AI usage",
            "Acme,2024-01-03,images,4,0.04,Image generation",
        ])
        result = parse_usage_csv_text(text)

        assert result.errors == []
        assert len(result.rows) == 3
        assert result.header == HEADER.split(",")

    def test_row_values_are_typed(self):
        result = parse_usage_csv_text(f"{HEADER}\nAcme,2024-01-01,tokens,1000,0.002,AI usage")
        row = result.rows[0]

        assert row.client_name == "Acme"
        assert row.date == "2024-01-01"
        assert row.quantity == Decimal("1000")
        assert row.unit_price == Decimal("0.002")
        assert row.total_cost is None
        assert row.line_number == 2

    def test_empty_file_yields_exactly_one_error(self):
        for text in ("", "   ", "\n\n"):
            result = parse_usage_csv_text(text)
            assert result.rows == []
            assert result.errors == [EMPTY_FILE_ERROR]

    def test_missing_required_columns_are_reported(self):
        result = parse_usage_csv_text("client_name,date,quantity\nAcme,2024-01-01,3")

        assert 'Missing required column "metric_type".' in result.errors
        assert 'Missing required column "unit_price".' in result.errors
        assert 'Missing required column "description".' in result.errors

    def test_headers_are_case_and_space_insensitive(self):
        text = " Client_Name , DATE ,Metric_Type,Quantity,Unit_Price,Description\nAcme,2024-01-01,tokens,1,1,x"
        result = parse_usage_csv_text(text)

        assert result.errors == []
        assert len(result.rows) == 1

    def test_non_numeric_quantity_skips_row_with_error(self):
        text = "\n".join([
            HEADER,
            "Acme,2024-01-01,tokens,lots,0.002,AI usage",
            "Acme,2024-01-02,tokens,500,0.002,AI usage",
        ])
        result = parse_usage_csv_text(text)

        assert result.errors == ["Row 2: quantity must be a number."]
        assert [row.line_number for row in result.rows] == [3]

    def test_non_numeric_unit_price_skips_row_with_error(self):
        result = parse_usage_csv_text(f"{HEADER}\nAcme,2024-01-01,tokens,10,cheap,AI usage")

        assert result.rows == []
        assert result.errors == ["Row 2: unit_price must be a number."]

    def test_blank_and_placeholder_rows_are_ignored(self):
        text = "\n".join([
            HEADER,
            "",
            ",2024-01-01,,1,1,",
            "Acme,2024-01-02,tokens,5,0.01,AI usage",
        ])
        result = parse_usage_csv_text(text)

        assert result.errors == []
        assert len(result.rows) == 1
        assert result.rows[0].line_number == 4

    def test_crlf_line_endings(self):
        text = f"{HEADER}\r\nAcme,2024-01-01,tokens,1,1,x\r\nAcme,2024-01-02,tokens,1,1,y\r\n"
        result = parse_usage_csv_text(text)

        assert len(result.rows) == 2
        assert result.rows[1].description == "y"

    def test_optional_columns_are_read(self):
        text = f"{HEADER},total_cost,total_tokens\nAcme,2024-01-01,chat,1,1,x,2.50,1200"
        row = parse_usage_csv_text(text).rows[0]

        assert row.total_cost == Decimal("2.50")
        assert row.total_tokens == Decimal("1200")

    def test_unreadable_optional_column_skips_row(self):
        text = f"{HEADER},total_cost\nAcme,2024-01-01,chat,1,1,x,1e30\nAcme,2024-01-02,chat,1,1,y,2"
        result = parse_usage_csv_text(text)

        assert result.errors == ["Row 2: total_cost must be a number."]
        assert [row.line_number for row in result.rows] == [3]

    def test_short_row_fills_missing_cells(self):
        result = parse_usage_csv_text(f"{HEADER}\nAcme,2024-01-01,tokens,3")
        row = result.rows[0]

        assert row.unit_price == Decimal(0)
        assert row.description == ""

    def test_parsing_is_deterministic(self):
        text = "\n".join([
            HEADER,
            "Acme,2024-01-01,tokens,1000,0.002,AI usage",
            "Acme,2024-01-02,tokens,x,0.002,AI usage",
        ])
        assert parse_usage_csv_text(text) == parse_usage_csv_text(text)
