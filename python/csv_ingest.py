"""
Tabular ingestion for CSV uploads

Turns raw upload bytes into typed rows:
- strips a UTF-8 byte order mark
- detects ';' vs ',' delimiters from the header line
- resolves logical columns against alias lists (case-insensitive, trimmed)
- skips rows the CSV parser rejects or whose width differs from the header,
  and drops rows without the key column

Used by both the risk analysis pipeline and the IMEI verification pipeline.
"""

import csv
import logging
import re
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Dict, Iterable, Iterator, List, Mapping, Optional, Sequence, Tuple, Union

from identifiers import clean_field, normalize_identifier

logger = logging.getLogger(__name__)

UTF8_BOM = '\ufeff'

LINE_BREAK = re.compile(r'\r\n|\r|\n')

REPORT_DATE_FORMATS = (
    "%Y-%m-%d",
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%dT%H:%M:%S",
    "%d.%m.%Y",
    "%d.%m.%Y %H:%M:%S",
    "%d.%m.%Y %H:%M",
    "%d/%m/%Y",
)


class IngestionError(ValueError):
    """Raised when an upload cannot be ingested at all

    Attributes:
        code: Error code for programmatic handling
        field: Logical column or input that caused the failure
        suggestion: How to fix the source file
    """
    def __init__(self, message: str, code: str = "INGESTION_ERROR", field: str = "file", suggestion: str = ""):
        self.code = code
        self.field = field
        self.suggestion = suggestion
        super().__init__(message)


@dataclass(frozen=True)
class ColumnSpec:
    """A logical column and the header names accepted for it"""
    name: str
    aliases: Tuple[str, ...]
    required: bool = False


@dataclass(frozen=True)
class ApplicationRecord:
    """One ingested application row"""
    identifier: str
    application_id: str = ""
    document_number: str = ""
    status: str = ""
    reject_reason: str = ""
    reason: str = ""
    organization: str = ""
    user_name: str = ""
    report_date: Optional[datetime] = None


@dataclass
class IngestResult:
    """Application records parsed from one upload"""
    records: List[ApplicationRecord]
    delimiter: str
    columns: Dict[str, int] = field(default_factory=dict)
    malformed_rows: int = 0
    dropped_rows: int = 0


def build_column_specs(
    aliases: Mapping[str, Sequence[str]],
    required: Iterable[str]
) -> Tuple[ColumnSpec, ...]:
    """Build immutable column specs from an alias table."""
    required = set(required)
    return tuple(
        ColumnSpec(
            name=name,
            aliases=tuple(a.strip().lower() for a in names),
            required=name in required
        )
        for name, names in aliases.items()
    )


def decode_upload(data: Union[bytes, str]) -> str:
    """Decode upload bytes as UTF-8 and strip a leading BOM."""
    if isinstance(data, (bytes, bytearray)):
        text = bytes(data).decode('utf-8', errors='replace')
    else:
        text = data
    if text.startswith(UTF8_BOM):
        text = text[len(UTF8_BOM):]
    return text


def detect_delimiter(text: str) -> str:
    """
    Pick the column delimiter from the first line.

    Semicolon is chosen only when comma-splitting the header yields a single
    field and the line contains a ';'.
    """
    first_line = text.split('\n', 1)[0].rstrip('\r')
    try:
        fields = next(csv.reader([first_line], delimiter=','), [])
    except csv.Error:
        return ','
    if len(fields) == 1 and ';' in first_line:
        return ';'
    return ','


class RobustCsvReader:
    """
    CSV reader tolerant of messy marketplace/customs exports.

    Every physical line is one record. Iterating yields parsed records; lines
    the parser rejects (broken quoting, a quote left open at end of line, an
    oversized field) and records whose field count differs from the header are
    counted in `malformed_rows` and skipped. Blank lines are ignored.
    """

    def __init__(self, data: Union[bytes, str]):
        text = decode_upload(data)
        self.delimiter = detect_delimiter(text)
        self._lines = enumerate(LINE_BREAK.split(text), start=1)
        self.field_count: Optional[int] = None
        self.malformed_rows = 0

    def _parse(self, line: str) -> List[str]:
        # strict: text after a closing quote and unterminated quotes raise csv.Error
        reader = csv.reader([line], delimiter=self.delimiter, skipinitialspace=True, strict=True)
        return next(reader, [])

    def _skip(self, line_num: int, reason: Any) -> None:
        self.malformed_rows += 1
        logger.debug("Skipping malformed CSV row at line %d: %s", line_num, reason)

    def __iter__(self) -> Iterator[List[str]]:
        for line_num, line in self._lines:
            if not line.strip():
                continue
            try:
                record = self._parse(line)
            except csv.Error as e:
                self._skip(line_num, e)
                continue
            if self.field_count is not None and len(record) != self.field_count:
                self._skip(line_num, f"expected {self.field_count} fields, got {len(record)}")
                continue
            yield record

    def read_header(self) -> List[str]:
        """Read the header record, failing on an empty file or blank header."""
        for _, line in self._lines:
            if not line.strip():
                continue
            try:
                record = self._parse(line)
            except csv.Error as e:
                raise IngestionError(
                    f"CSV header could not be parsed: {e}",
                    code="MALFORMED_HEADER",
                    field="header",
                    suggestion="Check the quoting of the column names in the first line"
                )
            if not any(cell.strip() for cell in record):
                raise IngestionError(
                    "CSV header row is empty",
                    code="EMPTY_HEADER",
                    field="header",
                    suggestion="The first line of the file must contain column names"
                )
            self.field_count = len(record)
            return record
        raise IngestionError(
            "CSV file is empty",
            code="EMPTY_HEADER",
            field="header",
            suggestion="Upload a file with a header line and at least one data row"
        )


def header_index(header: Sequence[str]) -> Dict[str, int]:
    """Map lower-cased, trimmed header names to their column index."""
    index = {}
    for i, name in enumerate(header):
        # later duplicates win
        index[name.strip().lower()] = i
    return index


def resolve_columns(header: Sequence[str], specs: Sequence[ColumnSpec]) -> Dict[str, int]:
    """
    Resolve logical columns to header positions.

    The first alias present in the header wins. Optional columns that are
    absent are left out of the result.

    Raises:
        IngestionError: If a required column matches none of its aliases
    """
    index = header_index(header)
    resolved = {}
    for spec in specs:
        for alias in spec.aliases:
            if alias in index:
                resolved[spec.name] = index[alias]
                break
        else:
            if spec.required:
                tried = ", ".join(spec.aliases)
                raise IngestionError(
                    f"CSV missing required column: {spec.name} (tried: {tried})",
                    code="MISSING_COLUMN",
                    field=spec.name,
                    suggestion=f"Add a column named one of: {tried}"
                )
    return resolved


def cell(record: Sequence[str], index: Optional[int]) -> str:
    """Trimmed cell value, or empty string when the column is absent."""
    if index is None or index < 0 or index >= len(record):
        return ""
    return clean_field(record[index])


def parse_report_date(value: str) -> Optional[datetime]:
    """Parse a report date in one of the export formats; unknown formats give None."""
    value = clean_field(value)
    if not value:
        return None
    for fmt in REPORT_DATE_FORMATS:
        try:
            return datetime.strptime(value, fmt)
        except ValueError:
            continue
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        logger.debug("Unrecognized report date format: %r", value[:40])
        return None


def read_application_records(data: Union[bytes, str], specs: Sequence[ColumnSpec]) -> IngestResult:
    """
    Parse a risk analysis upload into ApplicationRecords.

    Args:
        data: Raw upload bytes or decoded text
        specs: Logical column specs (identifier, document, status, ...)

    Returns:
        IngestResult with the records in file order

    Raises:
        IngestionError: On an empty header, a missing required column, or
            when no row carries an identifier
    """
    reader = RobustCsvReader(data)
    header = reader.read_header()
    columns = resolve_columns(header, specs)

    records = []
    dropped = 0
    for record in reader:
        identifier = normalize_identifier(cell(record, columns.get('identifier')))
        if not identifier:
            dropped += 1
            continue
        records.append(ApplicationRecord(
            identifier=identifier,
            application_id=cell(record, columns.get('application_id')),
            document_number=cell(record, columns.get('document')),
            status=cell(record, columns.get('status')),
            reject_reason=cell(record, columns.get('reject_reason')),
            reason=cell(record, columns.get('reason')),
            organization=cell(record, columns.get('organization')),
            user_name=cell(record, columns.get('user_name')),
            report_date=parse_report_date(cell(record, columns.get('report_date')))
        ))

    if not records:
        raise IngestionError(
            "CSV contains no valid data rows",
            code="NO_VALID_ROWS",
            field="identifier",
            suggestion="Every data row needs a non-empty IIN/BIN value"
        )

    logger.info(
        "Ingested %d application rows (delimiter=%r, malformed=%d, dropped=%d)",
        len(records), reader.delimiter, reader.malformed_rows, dropped
    )
    return IngestResult(
        records=records,
        delimiter=reader.delimiter,
        columns=columns,
        malformed_rows=reader.malformed_rows,
        dropped_rows=dropped
    )
