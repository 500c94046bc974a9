"""
SQLAlchemy ORM Models for ATS Verify risk analysis

Tables:
1. iin_bin_risks - One risk profile per IIN/BIN (green/yellow/red)
2. risk_raw_data - Archive of every ingested application row
3. audit_logs - Trail of risk profile writes and analysis runs

Column types are the portable SQLAlchemy ones (Uuid, JSON) so the same schema
runs on PostgreSQL in production and SQLite in unit tests.
"""

import uuid
from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict, Optional

from sqlalchemy import (
    String, Boolean, DateTime, Text, Index, Enum, JSON, Uuid
)
from sqlalchemy.orm import declarative_base, Mapped, mapped_column
from sqlalchemy.sql import func

from anomaly_detector import RiskTier

# Base class for all models
Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


# ============================================
# ENUMS
# ============================================

# Stored by value ('green', 'yellow', 'red')
RiskLevel = RiskTier


class AuditAction(str, PyEnum):
    """Type of audit action"""
    ANALYZE = "ANALYZE"
    AUTO_FLAG = "AUTO_FLAG"
    MANUAL_FLAG = "MANUAL_FLAG"
    DELETE = "DELETE"


def _enum_values(enum_cls):
    return [member.value for member in enum_cls]


# ============================================
# MIXIN CLASSES
# ============================================

class TimestampMixin:
    """Mixin for created_at and updated_at timestamps"""
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        onupdate=utcnow,
        nullable=False
    )


# ============================================
# RISK MODELS
# ============================================

class RiskProfile(Base, TimestampMixin):
    """
    Risk tier assigned to an IIN/BIN.

    At most one row per identifier; re-flagging overwrites tier, comment and
    actor (last write wins).
    """
    __tablename__ = "iin_bin_risks"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    iin_bin: Mapped[str] = mapped_column(
        String(64),
        nullable=False,
        unique=True
    )

    risk_level: Mapped[RiskLevel] = mapped_column(
        Enum(RiskLevel, name="risk_level", values_callable=_enum_values),
        nullable=False,
        index=True
    )

    # Opaque actor string supplied by the caller
    flagged_by: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    comment: Mapped[str] = mapped_column(Text, nullable=False, default="")

    __table_args__ = (
        Index('ix_risk_updated_at', 'updated_at'),
    )

    def to_dict(self) -> Dict[str, Any]:
        return {
            'id': str(self.id),
            'iin_bin': self.iin_bin,
            'risk_level': self.risk_level.value if self.risk_level else None,
            'flagged_by': self.flagged_by,
            'comment': self.comment,
            'created_at': self.created_at.isoformat() if self.created_at else None,
            'updated_at': self.updated_at.isoformat() if self.updated_at else None
        }

    def __repr__(self) -> str:
        return f"<RiskProfile(iin_bin='{self.iin_bin}', risk_level={self.risk_level})>"


class RiskRawData(Base):
    """
    Archived application row from a risk analysis upload.

    Append-only; rows from one upload share a batch_id.
    """
    __tablename__ = "risk_raw_data"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    batch_id: Mapped[uuid.UUID] = mapped_column(Uuid(as_uuid=True), nullable=False, index=True)

    iin_bin: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    application_id: Mapped[str] = mapped_column(String(100), nullable=False, default="")
    document_number: Mapped[str] = mapped_column(String(200), nullable=False, default="", index=True)
    status: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    reject_reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    reason: Mapped[str] = mapped_column(Text, nullable=False, default="")
    organization: Mapped[str] = mapped_column(String(500), nullable=False, default="")
    user_name: Mapped[str] = mapped_column(String(200), nullable=False, default="")
    report_date: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)

    uploaded_by: Mapped[str] = mapped_column(String(200), nullable=False, default="")

    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False
    )

    def __repr__(self) -> str:
        return f"<RiskRawData(iin_bin='{self.iin_bin}', document='{self.document_number}')>"


# ============================================
# AUDIT MODELS
# ============================================

class AuditLog(Base):
    """
    Audit trail of risk profile writes and analysis runs.

    Immutable - no updates or deletes allowed.
    """
    __tablename__ = "audit_logs"

    id: Mapped[uuid.UUID] = mapped_column(
        Uuid(as_uuid=True),
        primary_key=True,
        default=uuid.uuid4
    )

    # Timestamp (no updated_at - audit logs are immutable)
    timestamp: Mapped[datetime] = mapped_column(
        DateTime(timezone=True),
        default=utcnow,
        server_default=func.now(),
        nullable=False,
        index=True
    )

    action: Mapped[AuditAction] = mapped_column(
        Enum(AuditAction, name="audit_action"),
        nullable=False,
        index=True
    )

    # Resource being acted upon
    resource_type: Mapped[str] = mapped_column(String(100), nullable=False, index=True)
    resource_id: Mapped[Optional[str]] = mapped_column(String(100), nullable=True)

    # Actor information
    actor_id: Mapped[Optional[str]] = mapped_column(String(200), nullable=True, index=True)

    details: Mapped[Optional[dict]] = mapped_column(JSON, nullable=True)

    success: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    error_message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)

    __table_args__ = (
        Index('ix_audit_resource', 'resource_type', 'resource_id'),
    )

    def __repr__(self) -> str:
        return f"<AuditLog(id={self.id}, action={self.action}, resource='{self.resource_type}')>"
