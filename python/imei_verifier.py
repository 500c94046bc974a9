"""
IMEI Reconciliation Engine

Reconciles the IMEI columns of a device CSV against text extracted from a
customs declaration. Each IMEI cell is normalized to its 14-character form and
looked up in the declaration:

- found:    the 14-character value occurs anywhere in the text (substring)
- matched:  the first 15-digit token in the text starting with that value,
            or a placeholder when the prefix only occurs inside other text

The substring rule is deliberately broader than the displayed 15-digit match:
an IMEI embedded in a longer digit run still counts as found.
"""

import logging
import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence, Tuple, Union

from config_manager import ImeiConfig
from csv_ingest import IngestionError, RobustCsvReader, cell
from identifiers import normalize_imei

logger = logging.getLogger(__name__)

REPORT_BANNER = (
    "=========================================\n"
    "        IMEI VERIFICATION REPORT\n"
    "=========================================\n\n"
)


@dataclass
class ImeiMatchResult:
    """Outcome for one IMEI cell"""
    row_number: int
    column: str
    imei14: str
    matched_sequence: str
    found: bool

    def to_dict(self) -> Dict[str, Any]:
        return {
            'csv_line': self.row_number,
            'column': self.column,
            'imei_14': self.imei14,
            'matched_imei': self.matched_sequence,
            'found': self.found
        }


@dataclass
class ImeiColumnStats:
    """Per-column tallies; found + missing == total"""
    column: str
    total: int = 0
    found: int = 0
    missing: int = 0

    def record(self, found: bool) -> None:
        self.total += 1
        if found:
            self.found += 1
        else:
            self.missing += 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            'column': self.column,
            'total': self.total,
            'found': self.found,
            'missing': self.missing
        }


@dataclass
class ImeiVerificationReport:
    """Full reconciliation result for one CSV/declaration pair"""
    results: List[ImeiMatchResult] = field(default_factory=list)
    column_stats: List[ImeiColumnStats] = field(default_factory=list)
    malformed_rows: int = 0

    @property
    def total_imeis(self) -> int:
        return len(self.results)

    @property
    def total_found(self) -> int:
        return sum(1 for r in self.results if r.found)

    @property
    def total_missing(self) -> int:
        return self.total_imeis - self.total_found

    @property
    def missing(self) -> List[ImeiMatchResult]:
        return [r for r in self.results if not r.found]

    def to_dict(self) -> Dict[str, Any]:
        return {
            'total_imeis': self.total_imeis,
            'total_found': self.total_found,
            'total_missing': self.total_missing,
            'column_stats': [s.to_dict() for s in self.column_stats],
            'results': [r.to_dict() for r in self.results]
        }


def generate_text_report(report: ImeiVerificationReport) -> str:
    """
    Render the plain-text report.

    Sections: banner, totals, statistics by column (CSV header order),
    missing details (only when something is missing), full mapping.
    """
    lines = [REPORT_BANNER]
    lines.append(f"Total IMEIs processed: {report.total_imeis}\n")
    lines.append(f"Total Found in PDF: {report.total_found}\n")
    lines.append(f"Total Missing: {report.total_missing}\n\n")

    lines.append("--- STATISTICS BY COLUMN ---\n")
    for stats in report.column_stats:
        lines.append(f"{stats.column}: {stats.total} processed ({stats.found} found, {stats.missing} missing)\n")
    lines.append("\n")

    missing = report.missing
    if missing:
        lines.append("--- MISSING IMEI DETAILS ---\n")
        for r in missing:
            lines.append(f"Line {r.row_number} [{r.column}]: {r.imei14} (Missing)\n")
        lines.append("\n")

    lines.append("--- FULL MAPPING ---\n")
    for r in report.results:
        if r.found:
            lines.append(f"Line {r.row_number} [{r.column}]: {r.imei14} -> MATCHED: {r.matched_sequence}\n")
        else:
            lines.append(f"Line {r.row_number} [{r.column}]: {r.imei14} -> MISSING\n")

    return "".join(lines)


class ImeiVerifier:
    """
    Matches CSV IMEIs against declaration text.

    Usage:
        verifier = ImeiVerifier(config.imei)
        report = verifier.analyze(csv_bytes, declaration_text)
        print(generate_text_report(report))
    """

    def __init__(self, config: Optional[ImeiConfig] = None):
        self.config = config or ImeiConfig()
        self.columns = frozenset(c.strip().lower() for c in self.config.columns)
        self._candidate_pattern = re.compile(
            r'\b\d{%d}\b' % self.config.candidate_length, re.ASCII
        )

    def extract_candidates(self, text: str) -> List[str]:
        """All standalone digit runs of candidate length, in text order."""
        return self._candidate_pattern.findall(text or "")

    def imei_columns(self, header: Sequence[str]) -> List[Tuple[int, str]]:
        """
        (index, name) of recognised IMEI columns in header order.

        Names are matched case-insensitively but reported as written (trimmed),
        so `IMEI` and `imei` stay separate columns in the stats.
        """
        found = []
        for i, name in enumerate(header):
            name = name.strip()
            if name.lower() in self.columns:
                found.append((i, name))
        return found

    def match(self, imei14: str, text: str, candidates: Sequence[str]) -> Tuple[bool, str]:
        """
        Look up one normalized IMEI.

        Returns:
            (found, matched_sequence); matched_sequence is "" when not found
        """
        if imei14 not in text:
            return False, ""
        for candidate in candidates:
            if candidate.startswith(imei14):
                return True, candidate
        return True, self.config.placeholder

    def analyze(self, csv_data: Union[bytes, str], text: str) -> ImeiVerificationReport:
        """
        Reconcile every IMEI cell of the CSV against the declaration text.

        Row numbers are 1-based with the header as line 1; only records the
        parser accepted advance the counter.

        Raises:
            IngestionError: On an empty header or when no IMEI column exists
        """
        text = text or ""
        reader = RobustCsvReader(csv_data)
        header = reader.read_header()
        columns = self.imei_columns(header)
        if not columns:
            raise IngestionError(
                "No IMEI columns found in CSV",
                code="NO_IMEI_COLUMNS",
                field="header",
                suggestion="Name IMEI columns one of: " + ", ".join(self.config.columns)
            )

        candidates = self.extract_candidates(text)
        logger.debug("Declaration text: %d characters, %d candidate IMEIs", len(text), len(candidates))

        stats: Dict[str, ImeiColumnStats] = {}
        for _, name in columns:
            stats.setdefault(name, ImeiColumnStats(column=name))

        report = ImeiVerificationReport(column_stats=list(stats.values()))
        line = 1
        for record in reader:
            line += 1
            for index, name in columns:
                imei14 = normalize_imei(
                    cell(record, index),
                    length=self.config.imei_length,
                    require_digits=self.config.require_digits
                )
                if imei14 is None:
                    continue
                found, matched = self.match(imei14, text, candidates)
                report.results.append(ImeiMatchResult(
                    row_number=line,
                    column=name,
                    imei14=imei14,
                    matched_sequence=matched,
                    found=found
                ))
                stats[name].record(found)

        report.malformed_rows = reader.malformed_rows
        logger.info(
            "IMEI verification: processed=%d found=%d missing=%d columns=%s",
            report.total_imeis, report.total_found, report.total_missing,
            ",".join(stats.keys())
        )
        return report
