"""
Repository Pattern for ATS Verify Database Operations

Provides clean data access layer with proper typing and error handling.
Implements the Repository pattern for separation of concerns.
"""

import logging
import uuid
from typing import Any, Dict, Iterator, List, Optional, Sequence, Tuple
from uuid import UUID
from datetime import datetime, timezone

from sqlalchemy import select, func, and_, insert
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.orm import Session

from csv_ingest import ApplicationRecord
from identifiers import normalize_identifier
from log_utils import mask_identifier
from database.models import (
    RiskProfile,
    RiskRawData,
    AuditLog,
    RiskLevel,
    AuditAction
)

logger = logging.getLogger(__name__)


class RepositoryError(Exception):
    """Base exception for repository errors."""
    pass


class EntityNotFoundError(RepositoryError):
    """Raised when an entity is not found."""
    pass


# Identifiers that never count towards historical frequency
_PLACEHOLDER_IDENTIFIERS = ('', '0')


# ============================================
# RISK PROFILE REPOSITORY
# ============================================

class RiskProfileRepository:
    """Repository for IIN/BIN risk profiles."""

    def __init__(self, session: Session):
        self.session = session

    def _dialect_insert(self):
        dialect = self.session.get_bind().dialect.name
        if dialect == 'postgresql':
            return postgresql.insert
        if dialect == 'sqlite':
            return sqlite.insert
        return None

    def upsert(
        self,
        identifier: str,
        risk_level: RiskLevel,
        flagged_by: str = "",
        comment: str = ""
    ) -> RiskProfile:
        """
        Create or overwrite the risk profile of an identifier.

        Runs as a single INSERT ... ON CONFLICT DO UPDATE on PostgreSQL and
        SQLite, so concurrent writers for the same identifier never create a
        second row; the last committed write wins.

        Args:
            identifier: IIN/BIN
            risk_level: Tier to assign
            flagged_by: Opaque actor string
            comment: Reason for the flag

        Returns:
            The stored RiskProfile

        Raises:
            RepositoryError: If the identifier is empty
        """
        identifier = normalize_identifier(identifier)
        if not identifier:
            raise RepositoryError("Risk profile identifier must not be empty")

        risk_level = RiskLevel(risk_level)
        now = datetime.now(timezone.utc)
        dialect_insert = self._dialect_insert()

        if dialect_insert is None:
            profile = self.get(identifier)
            if profile is None:
                profile = RiskProfile(iin_bin=identifier, created_at=now)
                self.session.add(profile)
            profile.risk_level = risk_level
            profile.flagged_by = flagged_by or ""
            profile.comment = comment or ""
            profile.updated_at = now
            self.session.flush()
            return profile

        stmt = dialect_insert(RiskProfile).values(
            id=uuid.uuid4(),
            iin_bin=identifier,
            risk_level=risk_level,
            flagged_by=flagged_by or "",
            comment=comment or "",
            created_at=now,
            updated_at=now
        )
        stmt = stmt.on_conflict_do_update(
            index_elements=[RiskProfile.iin_bin],
            set_={
                'risk_level': stmt.excluded.risk_level,
                'flagged_by': stmt.excluded.flagged_by,
                'comment': stmt.excluded.comment,
                'updated_at': stmt.excluded.updated_at
            }
        )
        self.session.execute(stmt)
        logger.debug("Upserted risk profile %s -> %s", mask_identifier(identifier), risk_level.value)
        return self.get(identifier)

    def get(self, identifier: str) -> Optional[RiskProfile]:
        """
        Get the risk profile of an identifier.

        Returns:
            RiskProfile or None
        """
        query = (
            select(RiskProfile)
            .where(RiskProfile.iin_bin == normalize_identifier(identifier))
            .execution_options(populate_existing=True)
        )
        return self.session.execute(query).scalar_one_or_none()

    def get_by_id(self, profile_id: UUID) -> Optional[RiskProfile]:
        """Get a risk profile by record id."""
        return self.session.get(RiskProfile, profile_id)

    def list_all(
        self,
        risk_level: Optional[RiskLevel] = None,
        offset: int = 0,
        limit: Optional[int] = None
    ) -> List[RiskProfile]:
        """
        List risk profiles, most recently updated first.

        Args:
            risk_level: Optional tier filter
            offset: Pagination offset
            limit: Maximum results (all when None)
        """
        query = select(RiskProfile)
        if risk_level is not None:
            query = query.where(RiskProfile.risk_level == RiskLevel(risk_level))
        query = query.order_by(RiskProfile.updated_at.desc(), RiskProfile.iin_bin).offset(offset)
        if limit is not None:
            query = query.limit(limit)
        return list(self.session.execute(query).scalars().all())

    def count(self, risk_level: Optional[RiskLevel] = None) -> int:
        """Number of profiles, optionally of one tier."""
        query = select(func.count()).select_from(RiskProfile)
        if risk_level is not None:
            query = query.where(RiskProfile.risk_level == RiskLevel(risk_level))
        return self.session.execute(query).scalar_one()

    def count_by_level(self) -> Dict[str, int]:
        """Get profile counts by risk level."""
        query = select(
            RiskProfile.risk_level,
            func.count(RiskProfile.id)
        ).group_by(RiskProfile.risk_level)
        result = self.session.execute(query)
        return {str(row[0].value): row[1] for row in result}

    def delete(self, profile_id: UUID) -> RiskProfile:
        """
        Delete a risk profile by record id.

        Returns:
            The deleted profile (detached)

        Raises:
            EntityNotFoundError: If no profile has this id
        """
        profile = self.get_by_id(profile_id)
        if profile is None:
            raise EntityNotFoundError("risk profile not found")
        self.session.delete(profile)
        self.session.flush()
        return profile


# ============================================
# RAW DATA (ARCHIVE) REPOSITORY
# ============================================

class RiskRawDataRepository:
    """Repository for archived application rows and historical reports."""

    def __init__(self, session: Session):
        self.session = session

    def bulk_insert(
        self,
        records: Sequence[ApplicationRecord],
        batch_id: Optional[UUID] = None,
        uploaded_by: str = "",
        chunk_size: int = 5000
    ) -> int:
        """
        Archive application records in fixed-size chunks.

        All chunks run in the caller's transaction; nothing is committed here.

        Returns:
            Number of rows inserted
        """
        if chunk_size < 1:
            raise RepositoryError(f"chunk_size must be >= 1, got {chunk_size}")

        batch_id = batch_id or uuid.uuid4()
        now = datetime.now(timezone.utc)
        inserted = 0

        for start in range(0, len(records), chunk_size):
            chunk = records[start:start + chunk_size]
            rows = [
                {
                    'id': uuid.uuid4(),
                    'batch_id': batch_id,
                    'iin_bin': r.identifier,
                    'application_id': r.application_id,
                    'document_number': r.document_number,
                    'status': r.status,
                    'reject_reason': r.reject_reason,
                    'reason': r.reason,
                    'organization': r.organization,
                    'user_name': r.user_name,
                    'report_date': r.report_date,
                    'uploaded_by': uploaded_by or "",
                    'created_at': now
                }
                for r in chunk
            ]
            self.session.execute(insert(RiskRawData), rows)
            inserted += len(rows)
            logger.debug("Archived chunk of %d rows (batch %s)", len(rows), batch_id)

        return inserted

    def count(self) -> int:
        return self.session.execute(select(func.count()).select_from(RiskRawData)).scalar_one()

    def iter_document_statuses(self, batch_size: int = 1000) -> Iterator[Tuple[str, str]]:
        """Stream (document_number, status) for rows with a document."""
        query = (
            select(RiskRawData.document_number, RiskRawData.status)
            .where(RiskRawData.document_number != '')
            .execution_options(yield_per=batch_size)
        )
        for row in self.session.execute(query):
            yield row[0], row[1]

    def document_usage(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Documents used in more than one application row.

        Sorted by usage count desc, then document number. last_used is the
        latest report date, falling back to the archive time.
        """
        usage = func.count().label('usage_count')
        last_used = func.max(func.coalesce(RiskRawData.report_date, RiskRawData.created_at))
        query = (
            select(RiskRawData.document_number, usage, last_used)
            .where(RiskRawData.document_number != '')
            .group_by(RiskRawData.document_number)
            .having(func.count() > 1)
            .order_by(usage.desc(), RiskRawData.document_number)
            .limit(limit)
        )
        return [
            {
                'document_number': row[0],
                'usage_count': row[1],
                'last_used': row[2].isoformat() if row[2] else None
            }
            for row in self.session.execute(query)
        ]

    def document_identifier_reuse(self, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Documents shared by more than one distinct identifier.

        Sorted by distinct identifier count desc, then document number;
        identifiers within an entry are sorted.
        """
        distinct_ids = func.count(RiskRawData.iin_bin.distinct()).label('identifier_count')
        query = (
            select(RiskRawData.document_number, distinct_ids)
            .where(RiskRawData.document_number != '')
            .group_by(RiskRawData.document_number)
            .having(func.count(RiskRawData.iin_bin.distinct()) > 1)
            .order_by(distinct_ids.desc(), RiskRawData.document_number)
            .limit(limit)
        )
        top = [(row[0], row[1]) for row in self.session.execute(query)]
        if not top:
            return []

        members: Dict[str, List[str]] = {doc: [] for doc, _ in top}
        id_query = (
            select(RiskRawData.document_number, RiskRawData.iin_bin)
            .where(RiskRawData.document_number.in_(list(members)))
            .distinct()
            .order_by(RiskRawData.document_number, RiskRawData.iin_bin)
        )
        for doc, identifier in self.session.execute(id_query):
            members[doc].append(identifier)

        return [
            {'document_number': doc, 'identifiers': members[doc], 'count': count}
            for doc, count in top
        ]

    def identifier_frequency(self, threshold: int = 5, limit: int = 100) -> List[Dict[str, Any]]:
        """
        Identifiers with more than `threshold` archived applications.

        Empty and placeholder ('0') identifiers are excluded. Sorted by count
        desc, then identifier.
        """
        applications = func.count().label('application_count')
        query = (
            select(RiskRawData.iin_bin, applications)
            .where(RiskRawData.iin_bin.not_in(_PLACEHOLDER_IDENTIFIERS))
            .group_by(RiskRawData.iin_bin)
            .having(func.count() > threshold)
            .order_by(applications.desc(), RiskRawData.iin_bin)
            .limit(limit)
        )
        return [
            {'identifier': row[0], 'count': row[1]}
            for row in self.session.execute(query)
        ]


# ============================================
# AUDIT REPOSITORY
# ============================================

class AuditRepository:
    """Repository for audit log operations."""

    def __init__(self, session: Session):
        self.session = session

    def log(
        self,
        action: AuditAction,
        resource_type: str,
        resource_id: Optional[str] = None,
        actor_id: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
        success: bool = True,
        error_message: Optional[str] = None
    ) -> AuditLog:
        """
        Create an audit log entry.

        Args:
            action: Type of action
            resource_type: Type of resource affected
            resource_id: ID of resource
            actor_id: Actor identity as supplied by the caller
            details: Additional details
            success: Whether action succeeded
            error_message: Error if failed

        Returns:
            Created AuditLog
        """
        log = AuditLog(
            action=action,
            resource_type=resource_type,
            resource_id=resource_id,
            actor_id=actor_id,
            details=details,
            success=success,
            error_message=error_message
        )

        self.session.add(log)
        self.session.flush()
        return log

    def search(
        self,
        action: Optional[AuditAction] = None,
        resource_type: Optional[str] = None,
        actor_id: Optional[str] = None,
        offset: int = 0,
        limit: int = 100
    ) -> Tuple[List[AuditLog], int]:
        """
        Search audit logs with filters.

        Returns:
            Tuple of (logs list, total count)
        """
        conditions = []

        if action:
            conditions.append(AuditLog.action == action)
        if resource_type:
            conditions.append(AuditLog.resource_type == resource_type)
        if actor_id:
            conditions.append(AuditLog.actor_id == actor_id)

        count_query = select(func.count()).select_from(AuditLog)
        if conditions:
            count_query = count_query.where(and_(*conditions))
        total = self.session.execute(count_query).scalar_one()

        query = select(AuditLog)
        if conditions:
            query = query.where(and_(*conditions))
        query = query.order_by(AuditLog.timestamp.desc()).offset(offset).limit(limit)

        logs = list(self.session.execute(query).scalars().all())
        return logs, total
