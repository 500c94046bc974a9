"""
Database-backed Risk Analysis Service for ATS Verify

Runs the bulk upload pipeline against a session:

    upload bytes -> ingest -> archive (risk_raw_data) -> detect -> auto-flag

and serves the historical reports computed over the archive, plus manual
risk profile management. The service never commits; the caller owns the
transaction (FastAPI endpoint or session_scope).

Usage:
    with db_provider.session_scope() as session:
        service = RiskAnalysisService(session, config)
        result = service.analyze_upload(csv_bytes, flagged_by="analyst-7")
"""

import logging
import uuid
from dataclasses import dataclass
from typing import Any, Dict, List, Optional, Union
from uuid import UUID

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from anomaly_detector import AnomalyDetector, AnomalyReport
from config_manager import ConfigManager, get_config
from csv_ingest import build_column_specs, read_application_records
from database.models import RiskProfile, RiskLevel, AuditAction
from database.repositories import (
    RepositoryError,
    RiskProfileRepository,
    RiskRawDataRepository,
    AuditRepository
)
from log_utils import mask_identifier, sanitize_for_logging

logger = logging.getLogger(__name__)

RESOURCE_RISK_PROFILE = "risk_profile"
RESOURCE_RISK_UPLOAD = "risk_upload"


@dataclass
class RiskAnalysisResult:
    """Outcome of one analyzed upload"""
    report: AnomalyReport
    batch_id: str
    archived: int = 0
    auto_flagged: int = 0
    flag_failures: int = 0
    malformed_rows: int = 0
    dropped_rows: int = 0
    delimiter: str = ","

    def to_dict(self) -> Dict[str, Any]:
        data = self.report.to_dict()
        data['summary'].update({
            'batch_id': self.batch_id,
            'archived': self.archived,
            'auto_flagged': self.auto_flagged,
            'flag_failures': self.flag_failures,
            'malformed_rows': self.malformed_rows,
            'dropped_rows': self.dropped_rows,
            'delimiter': self.delimiter
        })
        return data


def frequency_reason(count: int) -> str:
    return f"auto-flagged: {count} applications detected"


def document_reuse_reason(document_number: str, count: int) -> str:
    return f"auto-flagged: document {document_number} used by {count} different IIN/BINs"


class RiskAnalysisService:
    """
    Bulk risk analysis and risk profile management.

    Follows the dependency injection pattern for testability: the session
    and configuration are supplied by the caller.
    """

    def __init__(self, session: Session, config: Optional[ConfigManager] = None):
        """
        Initialize the risk analysis service.

        Args:
            session: SQLAlchemy database session
            config: Optional ConfigManager instance (global config if None)
        """
        self.session = session
        self.config = config or get_config()
        self.detector = AnomalyDetector.from_config(self.config)
        self._profiles = RiskProfileRepository(session)
        self._raw_data = RiskRawDataRepository(session)
        self._audit = AuditRepository(session)

    # ----------------------------------------
    # Bulk upload
    # ----------------------------------------

    def analyze_upload(self, data: Union[bytes, str], flagged_by: str = "") -> RiskAnalysisResult:
        """
        Analyze a bulk application CSV and auto-flag risky identifiers.

        Archive and flag writes are best-effort: each runs in its own
        SAVEPOINT, failures are logged and excluded from the counts, and the
        anomaly report is always returned.

        Args:
            data: Raw upload bytes
            flagged_by: Actor recorded on auto-flagged profiles

        Returns:
            RiskAnalysisResult

        Raises:
            IngestionError: If the upload cannot be ingested at all
        """
        ra = self.config.risk_analysis
        specs = build_column_specs(ra.column_aliases, ra.required_columns)
        ingest = read_application_records(data, specs)
        batch_id = uuid.uuid4()

        archived = 0
        if ra.archive_uploads:
            archived = self._archive(ingest.records, batch_id, flagged_by)

        report = self.detector.analyze(ingest.records)
        flagged, failures = self._auto_flag(report, flagged_by)

        result = RiskAnalysisResult(
            report=report,
            batch_id=str(batch_id),
            archived=archived,
            auto_flagged=flagged,
            flag_failures=failures,
            malformed_rows=ingest.malformed_rows,
            dropped_rows=ingest.dropped_rows,
            delimiter=ingest.delimiter
        )

        self._audit.log(
            action=AuditAction.ANALYZE,
            resource_type=RESOURCE_RISK_UPLOAD,
            resource_id=str(batch_id),
            actor_id=flagged_by or None,
            details={
                'total_rows': report.total_rows,
                'unique_identifiers': report.unique_identifiers,
                'archived': archived,
                'auto_flagged': flagged,
                'flag_failures': failures
            }
        )

        logger.info(
            "Risk upload %s analyzed: rows=%d archived=%d auto_flagged=%d failures=%d",
            batch_id, report.total_rows, archived, flagged, failures
        )
        return result

    def _archive(self, records, batch_id: UUID, uploaded_by: str) -> int:
        try:
            with self.session.begin_nested():
                return self._raw_data.bulk_insert(
                    records,
                    batch_id=batch_id,
                    uploaded_by=uploaded_by,
                    chunk_size=self.config.risk_analysis.bulk_insert_chunk_size
                )
        except (SQLAlchemyError, RepositoryError) as e:
            logger.error("Failed to archive upload %s: %s", batch_id, e)
            return 0

    def _auto_flag(self, report: AnomalyReport, flagged_by: str):
        """
        Write auto-flags: frequency tiers first, then document reuse as yellow.

        Later writes overwrite earlier ones, so an identifier in both lists
        ends up yellow with the document reuse reason.

        Returns:
            (successful writes, failed writes)
        """
        flagged = 0
        failures = 0

        for flag in report.frequency:
            if self._flag(flag.identifier, flag.tier, flagged_by, frequency_reason(flag.count)):
                flagged += 1
            else:
                failures += 1

        for reuse in report.document_reuse:
            reason = document_reuse_reason(reuse.document_number, reuse.count)
            for identifier in reuse.identifiers:
                if self._flag(identifier, RiskLevel.YELLOW, flagged_by, reason):
                    flagged += 1
                else:
                    failures += 1

        return flagged, failures

    def _flag(self, identifier: str, risk_level: RiskLevel, flagged_by: str, reason: str) -> bool:
        try:
            with self.session.begin_nested():
                profile = self._profiles.upsert(identifier, risk_level, flagged_by, reason)
                self._audit.log(
                    action=AuditAction.AUTO_FLAG,
                    resource_type=RESOURCE_RISK_PROFILE,
                    resource_id=str(profile.id),
                    actor_id=flagged_by or None,
                    details={'risk_level': risk_level.value, 'reason': reason}
                )
            return True
        except (SQLAlchemyError, RepositoryError) as e:
            logger.warning(
                "Auto-flag failed for %s (%s): %s",
                mask_identifier(identifier), risk_level.value, sanitize_for_logging(str(e))
            )
            return False

    # ----------------------------------------
    # Historical reports
    # ----------------------------------------

    def get_analytics_reports(self) -> Dict[str, Any]:
        """
        Historical reports over every archived upload.

        Each report is capped at risk_analysis.report_limit entries.
        """
        ra = self.config.risk_analysis
        limit = ra.report_limit
        flip_flop = self.detector.detect_keyword_flip_flop(
            self._raw_data.iter_document_statuses(),
            limit=limit
        )
        return {
            'document_usage': self._raw_data.document_usage(limit=limit),
            'document_reuse': self._raw_data.document_identifier_reuse(limit=limit),
            'identifier_frequency': self._raw_data.identifier_frequency(
                threshold=ra.historical_frequency_threshold,
                limit=limit
            ),
            'flip_flop': [f.to_dict() for f in flip_flop],
            'total_archived': self._raw_data.count(),
            'limit': limit
        }

    # ----------------------------------------
    # Manual management
    # ----------------------------------------

    def flag(
        self,
        identifier: str,
        risk_level: RiskLevel,
        flagged_by: str = "",
        comment: str = ""
    ) -> RiskProfile:
        """
        Manually set the risk tier of an identifier.

        Raises:
            RepositoryError: If the identifier is empty
        """
        profile = self._profiles.upsert(identifier, risk_level, flagged_by, comment)
        self._audit.log(
            action=AuditAction.MANUAL_FLAG,
            resource_type=RESOURCE_RISK_PROFILE,
            resource_id=str(profile.id),
            actor_id=flagged_by or None,
            details={'risk_level': profile.risk_level.value, 'comment': comment}
        )
        logger.info("Risk profile %s set to %s by %s",
                    mask_identifier(profile.iin_bin), profile.risk_level.value,
                    sanitize_for_logging(flagged_by) or "<anonymous>")
        return profile

    def get_profile(self, identifier: str) -> Optional[RiskProfile]:
        return self._profiles.get(identifier)

    def list_profiles(
        self,
        risk_level: Optional[RiskLevel] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[RiskProfile]:
        return self._profiles.list_all(risk_level=risk_level, offset=offset, limit=limit)

    def count_profiles(self, risk_level: Optional[RiskLevel] = None) -> int:
        return self._profiles.count(risk_level=risk_level)

    def delete_profile(self, profile_id: UUID, actor: str = "") -> RiskProfile:
        """
        Delete a risk profile by record id.

        Raises:
            EntityNotFoundError: If no profile has this id
        """
        profile = self._profiles.delete(profile_id)
        self._audit.log(
            action=AuditAction.DELETE,
            resource_type=RESOURCE_RISK_PROFILE,
            resource_id=str(profile_id),
            actor_id=actor or None,
            details={'iin_bin': profile.iin_bin}
        )
        logger.info("Risk profile %s deleted", profile_id)
        return profile
