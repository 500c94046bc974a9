"""
Anomaly Detector for bulk application uploads

Computes three independent anomaly classes over a sequence of
ApplicationRecords (one upload batch, or rows read back from the archive):

1. Document reuse     - one document number used by more than one distinct IIN/BIN
2. Identifier frequency - IIN/BINs with many applications, tiered yellow/red
3. Flip-flop status   - one IIN/BIN seen with more than one distinct status

The detector is stateless: thresholds and keyword tables are injected at
construction and never mutated. Every flag list is emitted in an explicit,
documented sort order so identical input always yields identical output.

A keyword-based flip-flop variant (approved-like vs rejected-like statuses
grouped by document) is provided for the historical archive reports.
"""

import logging
from dataclasses import dataclass, field
from enum import Enum as PyEnum
from typing import Any, Dict, Iterable, List, Optional, Sequence, Tuple

from csv_ingest import ApplicationRecord

logger = logging.getLogger(__name__)


class RiskTier(str, PyEnum):
    """Risk classification of an IIN/BIN"""
    GREEN = "green"
    YELLOW = "yellow"
    RED = "red"


# ============================================
# FLAGS
# ============================================

@dataclass
class DocumentReuseFlag:
    """A document number shared by several distinct identifiers"""
    document_number: str
    identifiers: List[str]

    @property
    def count(self) -> int:
        return len(self.identifiers)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_number': self.document_number,
            'identifiers': list(self.identifiers),
            'count': self.count
        }


@dataclass
class FrequencyFlag:
    """An identifier with an unusually high number of applications"""
    identifier: str
    count: int
    tier: RiskTier

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'count': self.count,
            'tier': self.tier.value
        }


@dataclass
class FlipFlopFlag:
    """An identifier recorded with contradictory statuses"""
    identifier: str
    statuses: List[str]
    application_ids: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            'identifier': self.identifier,
            'statuses': list(self.statuses),
            'application_ids': list(self.application_ids)
        }


@dataclass
class KeywordFlipFlopFlag:
    """A document with both approved-like and rejected-like statuses"""
    document_number: str
    approved_count: int
    rejected_count: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_number': self.document_number,
            'approved_count': self.approved_count,
            'rejected_count': self.rejected_count
        }


@dataclass
class AnomalyReport:
    """Result of one detector run"""
    document_reuse: List[DocumentReuseFlag]
    frequency: List[FrequencyFlag]
    flip_flop: List[FlipFlopFlag]
    total_rows: int
    unique_identifiers: int

    def to_dict(self) -> Dict[str, Any]:
        return {
            'document_reuse': [f.to_dict() for f in self.document_reuse],
            'frequency': [f.to_dict() for f in self.frequency],
            'flip_flop': [f.to_dict() for f in self.flip_flop],
            'summary': {
                'total_rows': self.total_rows,
                'unique_identifiers': self.unique_identifiers,
                'document_reuse_count': len(self.document_reuse),
                'frequency_count': len(self.frequency),
                'flip_flop_count': len(self.flip_flop)
            }
        }


# ============================================
# DETECTOR
# ============================================

class AnomalyDetector:
    """
    Set-based anomaly detection over application records.

    Usage:
        detector = AnomalyDetector(yellow_threshold=5, red_threshold=10)
        report = detector.analyze(records)
    """

    def __init__(
        self,
        yellow_threshold: int = 5,
        red_threshold: int = 10,
        approved_keywords: Sequence[str] = (),
        rejected_keywords: Sequence[str] = ()
    ):
        if yellow_threshold < 1 or red_threshold <= yellow_threshold:
            raise ValueError(
                f"Invalid thresholds: yellow={yellow_threshold}, red={red_threshold} "
                "(need 1 <= yellow < red)"
            )
        self.yellow_threshold = yellow_threshold
        self.red_threshold = red_threshold
        self.approved_keywords: Tuple[str, ...] = tuple(k.lower() for k in approved_keywords)
        self.rejected_keywords: Tuple[str, ...] = tuple(k.lower() for k in rejected_keywords)

    @classmethod
    def from_config(cls, config) -> 'AnomalyDetector':
        """Build a detector from a ConfigManager."""
        ra = config.risk_analysis
        return cls(
            yellow_threshold=ra.yellow_threshold,
            red_threshold=ra.red_threshold,
            approved_keywords=ra.approved_keywords,
            rejected_keywords=ra.rejected_keywords
        )

    def classify_frequency(self, count: int) -> Optional[RiskTier]:
        """Tier for an application count; red supersedes yellow."""
        if count >= self.red_threshold:
            return RiskTier.RED
        if count >= self.yellow_threshold:
            return RiskTier.YELLOW
        return None

    def analyze(self, records: Iterable[ApplicationRecord]) -> AnomalyReport:
        """
        Run all three detectors in a single pass over the records.

        Args:
            records: Application records in input order

        Returns:
            AnomalyReport with sorted flag lists and summary counts
        """
        # document -> distinct identifiers; statuses keep first-appearance order
        doc_identifiers: Dict[str, Dict[str, None]] = {}
        counts: Dict[str, int] = {}
        statuses: Dict[str, Dict[str, None]] = {}
        app_ids: Dict[str, List[str]] = {}
        total_rows = 0

        for record in records:
            total_rows += 1
            identifier = record.identifier

            counts[identifier] = counts.get(identifier, 0) + 1

            if record.document_number:
                doc_identifiers.setdefault(record.document_number, {})[identifier] = None

            statuses.setdefault(identifier, {})[record.status] = None
            ids = app_ids.setdefault(identifier, [])
            if record.application_id:
                ids.append(record.application_id)

        report = AnomalyReport(
            document_reuse=self._document_reuse_flags(doc_identifiers),
            frequency=self._frequency_flags(counts),
            flip_flop=self._flip_flop_flags(statuses, app_ids),
            total_rows=total_rows,
            unique_identifiers=len(counts)
        )
        logger.info(
            "Anomaly analysis: rows=%d identifiers=%d document_reuse=%d frequency=%d flip_flop=%d",
            report.total_rows, report.unique_identifiers,
            len(report.document_reuse), len(report.frequency), len(report.flip_flop)
        )
        return report

    def _document_reuse_flags(self, doc_identifiers: Dict[str, Dict[str, None]]) -> List[DocumentReuseFlag]:
        flags = [
            DocumentReuseFlag(document_number=doc, identifiers=sorted(identifiers))
            for doc, identifiers in doc_identifiers.items()
            if len(identifiers) > 1
        ]
        # count desc, then document number
        flags.sort(key=lambda f: (-f.count, f.document_number))
        return flags

    def _frequency_flags(self, counts: Dict[str, int]) -> List[FrequencyFlag]:
        flags = []
        for identifier, count in counts.items():
            tier = self.classify_frequency(count)
            if tier is not None:
                flags.append(FrequencyFlag(identifier=identifier, count=count, tier=tier))
        # count desc, then identifier
        flags.sort(key=lambda f: (-f.count, f.identifier))
        return flags

    def _flip_flop_flags(
        self,
        statuses: Dict[str, Dict[str, None]],
        app_ids: Dict[str, List[str]]
    ) -> List[FlipFlopFlag]:
        flags = [
            FlipFlopFlag(
                identifier=identifier,
                statuses=list(seen),
                application_ids=list(app_ids.get(identifier, []))
            )
            for identifier, seen in statuses.items()
            if len(seen) > 1
        ]
        # distinct status count desc, then identifier
        flags.sort(key=lambda f: (-len(f.statuses), f.identifier))
        return flags

    # ----------------------------------------
    # Keyword variant (historical archive)
    # ----------------------------------------

    def classify_status(self, status: str) -> Tuple[bool, bool]:
        """
        (approved, rejected) keyword hits for a free-text status.

        Matching is a case-insensitive substring test against each keyword
        table on its own, so one status can hit both.
        """
        text = (status or "").lower()
        if not text:
            return False, False
        return (
            any(k in text for k in self.approved_keywords),
            any(k in text for k in self.rejected_keywords),
        )

    def detect_keyword_flip_flop(
        self,
        rows: Iterable[Tuple[str, str]],
        limit: Optional[int] = None
    ) -> List[KeywordFlipFlopFlag]:
        """
        Find documents with both approved-like and rejected-like statuses.

        Args:
            rows: (document_number, status) pairs; empty documents are ignored
            limit: Maximum number of flags returned

        Returns:
            Flags sorted by total classified statuses desc, then document
        """
        tallies: Dict[str, List[int]] = {}
        for document, status in rows:
            if not document:
                continue
            approved, rejected = self.classify_status(status)
            tally = tallies.setdefault(document, [0, 0])
            tally[0] += approved
            tally[1] += rejected

        flags = [
            KeywordFlipFlopFlag(document_number=doc, approved_count=a, rejected_count=r)
            for doc, (a, r) in tallies.items()
            if a > 0 and r > 0
        ]
        flags.sort(key=lambda f: (-(f.approved_count + f.rejected_count), f.document_number))
        if limit is not None:
            flags = flags[:limit]
        return flags
