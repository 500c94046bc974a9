"""
Pydantic request/response schemas for the ATS Verify API

Mirrors the to_dict() output of the risk analysis and IMEI verification
results for API validation and OpenAPI docs.
"""

from typing import List, Optional

from pydantic import BaseModel, Field, field_validator

from database.models import RiskLevel


# ============================================
# RISK ANALYSIS
# ============================================

class DocumentReuseFlagResponse(BaseModel):
    """Document number shared by several distinct IIN/BINs."""
    document_number: str
    identifiers: List[str] = Field(default_factory=list, description="Distinct IIN/BINs, sorted")
    count: int = Field(..., ge=2, description="Number of distinct IIN/BINs")


class FrequencyFlagResponse(BaseModel):
    """IIN/BIN with many applications in the upload."""
    identifier: str
    count: int = Field(..., ge=1, description="Application rows for this IIN/BIN")
    tier: RiskLevel = Field(..., description="yellow or red")


class FlipFlopFlagResponse(BaseModel):
    """IIN/BIN recorded with more than one distinct status."""
    identifier: str
    statuses: List[str] = Field(default_factory=list, description="Distinct statuses in first-seen order")
    application_ids: List[str] = Field(default_factory=list, description="Application IDs in upload order")


class AnalysisSummary(BaseModel):
    """Counts for one analyzed upload."""
    total_rows: int = Field(..., ge=0)
    unique_identifiers: int = Field(..., ge=0)
    document_reuse_count: int = Field(..., ge=0)
    frequency_count: int = Field(..., ge=0)
    flip_flop_count: int = Field(..., ge=0)
    batch_id: str = Field(..., description="Archive batch identifier (UUID)")
    archived: int = Field(default=0, ge=0, description="Rows written to the archive")
    auto_flagged: int = Field(default=0, ge=0, description="Successful risk profile writes")
    flag_failures: int = Field(default=0, ge=0, description="Risk profile writes that failed")
    malformed_rows: int = Field(default=0, ge=0, description="Rows the CSV parser rejected")
    dropped_rows: int = Field(default=0, ge=0, description="Rows without an IIN/BIN")
    delimiter: str = Field(default=",", description="Detected CSV delimiter")


class RiskAnalysisResponse(BaseModel):
    """Response schema for bulk risk analysis."""
    document_reuse: List[DocumentReuseFlagResponse] = Field(default_factory=list)
    frequency: List[FrequencyFlagResponse] = Field(default_factory=list)
    flip_flop: List[FlipFlopFlagResponse] = Field(default_factory=list)
    summary: AnalysisSummary
    processing_time_ms: int = Field(..., ge=0, description="Processing time in milliseconds")


class DocumentUsageEntry(BaseModel):
    """Archived document used in more than one application."""
    document_number: str
    usage_count: int = Field(..., ge=2)
    last_used: Optional[str] = Field(default=None, description="Latest report date (ISO 8601)")


class IdentifierFrequencyEntry(BaseModel):
    """Archived IIN/BIN above the historical frequency threshold."""
    identifier: str
    count: int = Field(..., ge=1)


class KeywordFlipFlopEntry(BaseModel):
    """Archived document with both approved-like and rejected-like statuses."""
    document_number: str
    approved_count: int = Field(..., ge=1)
    rejected_count: int = Field(..., ge=1)


class RiskReportsResponse(BaseModel):
    """Historical reports over the upload archive."""
    document_usage: List[DocumentUsageEntry] = Field(default_factory=list)
    document_reuse: List[DocumentReuseFlagResponse] = Field(default_factory=list)
    identifier_frequency: List[IdentifierFrequencyEntry] = Field(default_factory=list)
    flip_flop: List[KeywordFlipFlopEntry] = Field(default_factory=list)
    total_archived: int = Field(..., ge=0, description="Rows in the archive")
    limit: int = Field(..., ge=1, description="Maximum entries per report")


# ============================================
# RISK PROFILES
# ============================================

class RiskProfileResponse(BaseModel):
    """Stored risk profile of an IIN/BIN."""
    id: str = Field(..., description="Profile record ID (UUID)")
    iin_bin: str
    risk_level: RiskLevel
    flagged_by: str = ""
    comment: str = ""
    created_at: Optional[str] = None
    updated_at: Optional[str] = None


class RiskProfileListResponse(BaseModel):
    """Risk profiles, most recently updated first."""
    total: int = Field(..., ge=0)
    profiles: List[RiskProfileResponse] = Field(default_factory=list)


class RiskFlagRequest(BaseModel):
    """Request schema for manually flagging an IIN/BIN."""
    iin_bin: str = Field(..., min_length=1, max_length=64, description="IIN/BIN to flag")
    risk_level: RiskLevel = Field(..., description="green, yellow or red")
    comment: str = Field(default="", max_length=2000, description="Reason for the flag")

    @field_validator('iin_bin')
    @classmethod
    def strip_identifier(cls, v: str) -> str:
        """Reject whitespace-only identifiers."""
        v = v.strip()
        if not v:
            raise ValueError("iin_bin must not be blank")
        return v


class DeleteResponse(BaseModel):
    """Response schema for profile deletion."""
    deleted: bool = True
    id: str


# ============================================
# IMEI VERIFICATION
# ============================================

class ImeiMatchResponse(BaseModel):
    """Outcome for one IMEI cell."""
    csv_line: int = Field(..., ge=2, description="CSV line (header is line 1)")
    column: str
    imei_14: str = Field(..., description="Normalized 14-character IMEI")
    matched_imei: str = Field(default="", description="15-digit match, placeholder, or empty when missing")
    found: bool


class ImeiColumnStatsResponse(BaseModel):
    """Per-column tallies."""
    column: str
    total: int = Field(..., ge=0)
    found: int = Field(..., ge=0)
    missing: int = Field(..., ge=0)


class ImeiReportResponse(BaseModel):
    """Response schema for IMEI verification."""
    total_imeis: int = Field(..., ge=0)
    total_found: int = Field(..., ge=0)
    total_missing: int = Field(..., ge=0)
    column_stats: List[ImeiColumnStatsResponse] = Field(default_factory=list)
    results: List[ImeiMatchResponse] = Field(default_factory=list)
    processing_time_ms: int = Field(..., ge=0, description="Processing time in milliseconds")


# ============================================
# SYSTEM
# ============================================

class HealthResponse(BaseModel):
    """Response schema for health check endpoint."""
    status: str = Field(default="healthy", description="Service status")
    database: str = Field(..., description="Database status: connected or unavailable")
    algorithm_version: str = Field(..., description="Algorithm version")
    algorithm_name: str = Field(default="", description="Algorithm name")
    uptime_seconds: Optional[int] = Field(default=None, description="Server uptime in seconds")
    error_message: Optional[str] = Field(default=None, description="Error detail when unhealthy")


class ErrorDetail(BaseModel):
    """Detailed error information."""
    code: str = Field(..., description="Error code for programmatic handling")
    message: str = Field(..., description="Human-readable error message")
    field: Optional[str] = Field(default=None, description="Field that caused error")
    suggestion: Optional[str] = Field(default=None, description="How to fix the error")
    timestamp: str = Field(..., description="Error timestamp (ISO 8601)")


class ErrorResponse(BaseModel):
    """Standardized error response format."""
    error: ErrorDetail
