"""
Tests for CSV ingestion: delimiter detection, column aliases, row recovery.
"""

import csv
from datetime import datetime

import pytest

import sys
from pathlib import Path
sys.path.insert(0, str(Path(__file__).parent.parent))

from config_manager import RiskAnalysisConfig
from csv_ingest import (
    IngestionError,
    RobustCsvReader,
    build_column_specs,
    decode_upload,
    detect_delimiter,
    header_index,
    parse_report_date,
    read_application_records,
    resolve_columns,
)


@pytest.fixture
def specs():
    """Column specs built from the default alias table."""
    ra = RiskAnalysisConfig()
    return build_column_specs(ra.column_aliases, ra.required_columns)


class TestDecoding:
    """Tests for upload decoding."""

    def test_bom_stripped(self):
        assert decode_upload("\ufeffiin,doc".encode('utf-8')) == "iin,doc"

    def test_invalid_utf8_replaced(self):
        assert decode_upload(b"D\xff") == "D\ufffd"

    def test_text_passthrough(self):
        assert decode_upload("iin;doc") == "iin;doc"


class TestDelimiterDetection:
    """Semicolon only when the header does not split on commas."""

    def test_comma(self):
        assert detect_delimiter("iin,doc,status\n1,2,3") == ","

    def test_semicolon(self):
        assert detect_delimiter("iin;doc;status\n1;2;3") == ";"

    def test_comma_wins_when_both_present(self):
        assert detect_delimiter("iin,doc;x\n") == ","

    def test_single_column_without_semicolon(self):
        assert detect_delimiter("iin\n1") == ","

    def test_crlf_header(self):
        assert detect_delimiter("iin;doc\r\n1;2\r\n") == ";"


class TestColumnResolution:
    """Tests for alias-based column resolution."""

    def test_case_insensitive_and_trimmed(self, specs):
        columns = resolve_columns([" IIN/BIN ", "DOC_NUMBER", "Status "], specs)
        assert columns['identifier'] == 0
        assert columns['document'] == 1
        assert columns['status'] == 2

    def test_first_alias_in_list_wins(self, specs):
        # 'iin' comes before 'bin' in the alias list
        columns = resolve_columns(["bin", "iin", "doc", "status"], specs)
        assert columns['identifier'] == 1

    def test_optional_columns_absent(self, specs):
        columns = resolve_columns(["iin", "doc", "status"], specs)
        assert 'application_id' not in columns
        assert 'report_date' not in columns

    def test_missing_required_column_lists_aliases(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            resolve_columns(["iin", "status"], specs)
        error = exc_info.value
        assert error.code == "MISSING_COLUMN"
        assert error.field == "document"
        assert "doc, document, doc_number, document_number" in str(error)

    def test_duplicate_header_last_wins(self):
        assert header_index(["IIN", "doc", "iin"])['iin'] == 2


class TestReadApplicationRecords:
    """Tests for the full ingestion pass."""

    def test_basic_rows(self, specs):
        data = b"iin,doc,status\n123,D1,Approved\n456,D2,Rejected\n"
        result = read_application_records(data, specs)

        assert result.delimiter == ","
        assert [r.identifier for r in result.records] == ["123", "456"]
        assert result.records[0].document_number == "D1"
        assert result.records[1].status == "Rejected"

    def test_bom_and_semicolon(self, specs):
        data = "\ufeffIIN;Doc;Status\n123;D1;ok\n".encode('utf-8')
        result = read_application_records(data, specs)

        assert result.delimiter == ";"
        assert len(result.records) == 1
        assert result.records[0].identifier == "123"
        assert result.records[0].document_number == "D1"

    def test_cells_trimmed(self, specs):
        data = b"iin,doc,status\n  123 ,  D1 , Approved  \n"
        record = read_application_records(data, specs).records[0]
        assert (record.identifier, record.document_number, record.status) == ("123", "D1", "Approved")

    def test_optional_columns(self, specs):
        data = (
            b"iin,doc,status,appid,date,org,user,reject,reason\n"
            b"123,D1,Rejected,APP-1,01.03.2024,ACME,jdoe,no license,manual\n"
        )
        record = read_application_records(data, specs).records[0]

        assert record.application_id == "APP-1"
        assert record.report_date == datetime(2024, 3, 1)
        assert record.organization == "ACME"
        assert record.user_name == "jdoe"
        assert record.reject_reason == "no license"
        assert record.reason == "manual"

    def test_ragged_rows_skipped(self, specs):
        data = b"iin,doc,status\n1,D1,ok\n2\n3,D3,ok,extra\n4,D4,ok\n"
        result = read_application_records(data, specs)

        assert [r.identifier for r in result.records] == ["1", "4"]
        assert result.malformed_rows == 2

    def test_rows_without_identifier_dropped(self, specs):
        data = b"iin,doc,status\n,D1,ok\n   ,D2,ok\n789,D3,ok\n"
        result = read_application_records(data, specs)

        assert [r.identifier for r in result.records] == ["789"]
        assert result.dropped_rows == 2

    def test_blank_lines_ignored(self, specs):
        data = b"iin,doc,status\n\n123,D1,ok\n\n"
        result = read_application_records(data, specs)
        assert len(result.records) == 1
        assert result.dropped_rows == 0

    def test_malformed_row_skipped(self, specs):
        oversized = "x" * (csv.field_size_limit() + 10)
        data = f"iin,doc,status\n1,D1,ok\n2,{oversized},ok\n3,D3,ok\n".encode('utf-8')
        result = read_application_records(data, specs)

        assert [r.identifier for r in result.records] == ["1", "3"]
        assert result.malformed_rows == 1

    def test_text_after_closing_quote_skipped(self, specs):
        data = b'iin,doc,status\n1,D1,ok\n2,"D2"x,ok\n3,D3,ok\n'
        result = read_application_records(data, specs)

        assert [(r.identifier, r.document_number) for r in result.records] == [("1", "D1"), ("3", "D3")]
        assert result.malformed_rows == 1

    def test_unterminated_quote_does_not_swallow_later_rows(self, specs):
        data = b'iin,doc,status\n1,D1,ok\n2,"D2,ok\n3,D3,ok\n4,D4,ok\n'
        result = read_application_records(data, specs)

        assert [r.identifier for r in result.records] == ["1", "3", "4"]
        assert result.malformed_rows == 1

    def test_malformed_header(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b'iin,"doc,status\n1,D1,ok\n', specs)
        assert exc_info.value.code == "MALFORMED_HEADER"

    def test_empty_file(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b"", specs)
        assert exc_info.value.code == "EMPTY_HEADER"

    def test_blank_header(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b" , ,\n1,2,3\n", specs)
        assert exc_info.value.code == "EMPTY_HEADER"

    def test_header_only(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b"iin,doc,status\n", specs)
        assert exc_info.value.code == "NO_VALID_ROWS"

    def test_no_row_with_identifier(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b"iin,doc,status\n,D1,ok\n", specs)
        assert exc_info.value.code == "NO_VALID_ROWS"

    def test_missing_column(self, specs):
        with pytest.raises(IngestionError) as exc_info:
            read_application_records(b"iin,doc\n1,D1\n", specs)
        assert exc_info.value.code == "MISSING_COLUMN"
        assert exc_info.value.field == "status"


class TestRobustCsvReader:
    """Tests for the tolerant reader used by both pipelines."""

    def test_header_then_rows(self):
        reader = RobustCsvReader(b"a,b\n1,2\n3,4\n")
        assert reader.read_header() == ["a", "b"]
        assert list(reader) == [["1", "2"], ["3", "4"]]

    def test_quoted_delimiter(self):
        reader = RobustCsvReader(b'a;b\n"x;y";2\n')
        reader.read_header()
        assert list(reader) == [["x;y", "2"]]

    def test_quoted_field_with_escaped_quote(self):
        reader = RobustCsvReader(b'a,b\n"say ""hi""",2\n')
        reader.read_header()
        assert list(reader) == [['say "hi"', "2"]]

    def test_records_are_single_lines(self):
        reader = RobustCsvReader(b'a,b\n"first,x\nsecond"\n3,4\n')
        reader.read_header()

        assert list(reader) == [["3", "4"]]
        # the unterminated quote and the one-field tail are both rejected
        assert reader.malformed_rows == 2

    def test_crlf_and_blank_lines(self):
        reader = RobustCsvReader(b"a,b\r\n\r\n1,2\r\n")
        assert reader.read_header() == ["a", "b"]
        assert list(reader) == [["1", "2"]]
        assert reader.malformed_rows == 0


class TestReportDate:
    """Tests for report date parsing."""

    @pytest.mark.parametrize("value,expected", [
        ("2024-03-01", datetime(2024, 3, 1)),
        ("2024-03-01 10:15:00", datetime(2024, 3, 1, 10, 15)),
        ("01.03.2024", datetime(2024, 3, 1)),
        ("01.03.2024 10:15", datetime(2024, 3, 1, 10, 15)),
    ])
    def test_known_formats(self, value, expected):
        assert parse_report_date(value) == expected

    def test_unknown_format(self):
        assert parse_report_date("yesterday") is None

    def test_empty(self):
        assert parse_report_date("") is None
