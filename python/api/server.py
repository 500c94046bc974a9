"""
FastAPI ATS Verify API Server

Provides REST API endpoints for bulk risk analysis, risk profile management
and IMEI-to-declaration verification.

Usage:
    uvicorn api.server:app --reload --port 8000
"""

import os
import time
import logging
from datetime import datetime, timezone
from typing import Optional
from uuid import UUID

from fastapi import FastAPI, HTTPException, UploadFile, File, Form, Query, Header, Depends, Security
from fastapi.responses import PlainTextResponse
from fastapi.security import APIKeyHeader
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from api.models import (
    RiskAnalysisResponse,
    RiskReportsResponse,
    RiskProfileResponse,
    RiskProfileListResponse,
    RiskFlagRequest,
    DeleteResponse,
    ImeiReportResponse,
    HealthResponse,
    ErrorResponse,
)
from api.middleware import (
    setup_cors,
    setup_exception_handlers,
    RequestLoggingMiddleware,
)
from config_manager import get_config, ConfigManager, ConfigurationError
from csv_ingest import decode_upload
from database.connection import get_db, get_db_provider, init_db, close_db, DatabaseSessionProvider
from database.models import RiskLevel
from database.repositories import EntityNotFoundError
from database.risk_analysis_service import RiskAnalysisService
from imei_verifier import ImeiVerifier, generate_text_report
from log_utils import setup_logging, sanitize_for_logging

logger = logging.getLogger(__name__)

# Environment variables with defaults
API_HOST = os.getenv("API_HOST", "127.0.0.1")
API_PORT = int(os.getenv("API_PORT", "8000"))
CONFIG_PATH = os.getenv("CONFIG_PATH", "config.yaml")
API_KEY = os.getenv("API_KEY", "")  # Required for authenticated endpoints
DB_CREATE_TABLES = os.getenv("DB_CREATE_TABLES", "false").lower() == "true"

# Global state
_config: Optional[ConfigManager] = None
_startup_time: Optional[datetime] = None

# API Key security scheme
api_key_header = APIKeyHeader(name="X-API-Key", auto_error=False)

# Upload read size
UPLOAD_CHUNK_SIZE = 8192


async def verify_api_key(api_key: Optional[str] = Security(api_key_header)) -> str:
    """Verify API key for protected endpoints.

    If API_KEY environment variable is not set, authentication is disabled.
    """
    if not API_KEY:
        # API key not configured - allow all requests (development mode)
        return "dev-mode"

    if not api_key:
        raise HTTPException(
            status_code=401, detail="Missing API key. Provide X-API-Key header."
        )

    if api_key != API_KEY:
        raise HTTPException(status_code=403, detail="Invalid API key")

    return api_key


def get_config_instance() -> ConfigManager:
    """Dependency to get the config instance."""
    global _config
    if _config is None:
        _config = get_config(CONFIG_PATH)
    return _config


def get_actor(x_actor_id: Optional[str] = Header(default=None, alias="X-Actor-ID")) -> str:
    """Dependency resolving the acting user from the X-Actor-ID header."""
    return sanitize_for_logging(x_actor_id or "", max_length=200)


def get_risk_service(
    db: Session = Depends(get_db),
    config: ConfigManager = Depends(get_config_instance),
) -> RiskAnalysisService:
    """Dependency to get a RiskAnalysisService bound to the request session."""
    return RiskAnalysisService(db, config)


async def read_upload(file: UploadFile, max_size_mb: int, allowed_content_types) -> bytes:
    """Read an uploaded file into memory, enforcing type and size limits.

    Raises:
        HTTPException: 400 for a non-text upload, 413 when too large
    """
    content_type = (file.content_type or "").lower()
    if content_type and content_type not in allowed_content_types:
        if "csv" not in content_type and not content_type.startswith("text/"):
            raise HTTPException(status_code=400, detail="File must be a CSV or plain text")

    max_size_bytes = max_size_mb * 1024 * 1024
    chunks = []
    total_size = 0
    while True:
        chunk = await file.read(UPLOAD_CHUNK_SIZE)
        if not chunk:
            break
        total_size += len(chunk)
        if total_size > max_size_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File too large. Maximum size is {max_size_mb}MB",
            )
        chunks.append(chunk)
    return b"".join(chunks)


def _profile_response(profile) -> RiskProfileResponse:
    return RiskProfileResponse(**profile.to_dict())


# Create FastAPI application
app = FastAPI(
    title="ATS Verify API",
    description="Bulk risk analysis of applications and IMEI verification against customs declarations",
    version="1.0.0",
    docs_url="/api/docs",
    redoc_url="/api/redoc",
    openapi_url="/api/openapi.json",
)

# Setup middleware
setup_cors(app)
app.add_middleware(RequestLoggingMiddleware)
setup_exception_handlers(app)


@app.on_event("startup")
async def startup():
    """Load configuration and connect to the database on startup."""
    global _config, _startup_time

    try:
        _config = get_config(CONFIG_PATH)
    except ConfigurationError as e:
        logger.error("Configuration error: %s", e)
        raise

    setup_logging(_config.logging)
    logger.info("Starting ATS Verify API (config: %s)", _config.config_path)

    try:
        provider = init_db(database=_config.database)
        if DB_CREATE_TABLES:
            provider.create_tables()
    except SQLAlchemyError as e:
        # Health endpoint reports the database as unavailable
        logger.error("Database initialization failed: %s", e)

    _startup_time = datetime.now(timezone.utc)
    logger.info("API ready")


@app.on_event("shutdown")
async def shutdown():
    """Cleanup on shutdown."""
    logger.info("Shutting down ATS Verify API...")
    close_db()


# ============================================
# RISK ANALYSIS
# ============================================

@app.post(
    "/api/v1/risks/analyze",
    response_model=RiskAnalysisResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid CSV"},
        401: {"model": ErrorResponse, "description": "Missing API key"},
        403: {"model": ErrorResponse, "description": "Invalid API key"},
        413: {"model": ErrorResponse, "description": "File too large"},
        500: {"model": ErrorResponse, "description": "Internal server error"},
    },
    summary="Analyze a bulk application CSV",
    description="Detect document reuse, high-frequency IIN/BINs and flip-flop statuses; auto-flag risky IIN/BINs",
)
async def analyze_risks(
    file: UploadFile = File(..., description="CSV with IIN/BIN, document and status columns"),
    service: RiskAnalysisService = Depends(get_risk_service),
    config: ConfigManager = Depends(get_config_instance),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Analyze an uploaded CSV and persist auto-flags.

    Requires API key authentication via X-API-Key header.
    """
    start_time = time.time()
    data = await read_upload(file, config.upload.max_upload_size_mb, config.upload.allowed_content_types)

    result = service.analyze_upload(data, flagged_by=actor)
    service.session.commit()

    processing_time_ms = int((time.time() - start_time) * 1000)
    return RiskAnalysisResponse(**result.to_dict(), processing_time_ms=processing_time_ms)


@app.get(
    "/api/v1/risks/reports",
    response_model=RiskReportsResponse,
    summary="Historical risk reports",
    description="Document usage, document reuse, IIN/BIN frequency and flip-flop reports over all archived uploads",
)
async def risk_reports(
    service: RiskAnalysisService = Depends(get_risk_service),
    api_key: str = Depends(verify_api_key),
):
    """Return historical reports computed over the upload archive."""
    return RiskReportsResponse(**service.get_analytics_reports())


@app.get(
    "/api/v1/risks",
    response_model=RiskProfileListResponse,
    summary="List risk profiles",
    description="Risk profiles, most recently updated first",
)
async def list_risks(
    risk_level: Optional[RiskLevel] = Query(default=None, description="Filter by tier"),
    offset: int = Query(default=0, ge=0),
    limit: int = Query(default=100, ge=1, le=1000),
    service: RiskAnalysisService = Depends(get_risk_service),
    api_key: str = Depends(verify_api_key),
):
    """List stored risk profiles."""
    profiles = service.list_profiles(risk_level=risk_level, offset=offset, limit=limit)
    return RiskProfileListResponse(
        total=service.count_profiles(risk_level=risk_level),
        profiles=[_profile_response(p) for p in profiles],
    )


@app.get(
    "/api/v1/risks/{identifier}",
    response_model=RiskProfileResponse,
    responses={404: {"model": ErrorResponse, "description": "No profile for this IIN/BIN"}},
    summary="Get a risk profile",
)
async def get_risk(
    identifier: str,
    service: RiskAnalysisService = Depends(get_risk_service),
    api_key: str = Depends(verify_api_key),
):
    """Return the risk profile of one IIN/BIN."""
    profile = service.get_profile(identifier)
    if profile is None:
        raise EntityNotFoundError("risk profile not found")
    return _profile_response(profile)


@app.post(
    "/api/v1/risks",
    response_model=RiskProfileResponse,
    responses={
        400: {"model": ErrorResponse, "description": "Invalid identifier"},
        422: {"model": ErrorResponse, "description": "Validation error"},
    },
    summary="Flag an IIN/BIN",
    description="Create or overwrite the risk profile of an IIN/BIN",
)
async def flag_risk(
    request: RiskFlagRequest,
    service: RiskAnalysisService = Depends(get_risk_service),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Manually set the risk tier of an IIN/BIN."""
    profile = service.flag(
        request.iin_bin,
        request.risk_level,
        flagged_by=actor,
        comment=request.comment,
    )
    service.session.commit()
    return _profile_response(profile)


@app.delete(
    "/api/v1/risks/{profile_id}",
    response_model=DeleteResponse,
    responses={404: {"model": ErrorResponse, "description": "Profile not found"}},
    summary="Delete a risk profile",
)
async def delete_risk(
    profile_id: UUID,
    service: RiskAnalysisService = Depends(get_risk_service),
    actor: str = Depends(get_actor),
    api_key: str = Depends(verify_api_key),
):
    """Delete a risk profile by record id."""
    service.delete_profile(profile_id, actor=actor)
    service.session.commit()
    return DeleteResponse(deleted=True, id=str(profile_id))


# ============================================
# IMEI VERIFICATION
# ============================================

@app.post(
    "/api/v1/imei/analyze",
    response_model=ImeiReportResponse,
    responses={
        200: {"content": {"text/plain": {}}, "description": "JSON report, or text report when format=text"},
        400: {"model": ErrorResponse, "description": "Invalid CSV or missing declaration"},
        413: {"model": ErrorResponse, "description": "File too large"},
    },
    summary="Verify IMEIs against a declaration",
    description="Match the IMEI columns of a CSV against text extracted from a customs declaration",
)
async def analyze_imei(
    csv_file: UploadFile = File(..., description="CSV with imei/imei1..imei4/imei_number columns"),
    declaration: Optional[UploadFile] = File(default=None, description="Declaration text (.txt)"),
    declaration_text: Optional[str] = Form(default=None, description="Declaration text"),
    report_format: str = Query(default="json", alias="format", pattern="^(json|text)$", description="json or text"),
    config: ConfigManager = Depends(get_config_instance),
    api_key: str = Depends(verify_api_key),
):
    """Reconcile CSV IMEIs with the declaration text.

    The declaration is given either as an uploaded text file or as a form
    field. With format=text the plain-text report is returned as a download.
    """
    start_time = time.time()
    upload = config.upload

    csv_data = await read_upload(csv_file, upload.max_upload_size_mb, upload.allowed_content_types)

    if declaration is not None:
        text = decode_upload(
            await read_upload(declaration, upload.max_declaration_size_mb, upload.allowed_content_types)
        )
    elif declaration_text is not None:
        text = declaration_text
    else:
        raise HTTPException(
            status_code=400,
            detail="Provide the declaration as a 'declaration' file or 'declaration_text' field",
        )

    report = ImeiVerifier(config.imei).analyze(csv_data, text)

    if report_format == "text":
        return PlainTextResponse(
            generate_text_report(report),
            headers={"Content-Disposition": 'attachment; filename="imei_report.txt"'},
        )

    processing_time_ms = int((time.time() - start_time) * 1000)
    return ImeiReportResponse(**report.to_dict(), processing_time_ms=processing_time_ms)


# ============================================
# SYSTEM
# ============================================

@app.get(
    "/api/v1/health",
    response_model=HealthResponse,
    summary="Health check",
    description="Check service and database health",
)
async def health_check(
    config: ConfigManager = Depends(get_config_instance),
    db_provider: DatabaseSessionProvider = Depends(get_db_provider),
):
    """Return health status. Always returns HTTP 200."""
    uptime_seconds = None
    if _startup_time:
        uptime_seconds = int((datetime.now(timezone.utc) - _startup_time).total_seconds())

    database_ok = db_provider.health_check()
    return HealthResponse(
        status="healthy" if database_ok else "degraded",
        database="connected" if database_ok else "unavailable",
        algorithm_version=config.algorithm.version,
        algorithm_name=config.algorithm.name,
        uptime_seconds=uptime_seconds,
    )


# Root redirect to docs
@app.get("/", include_in_schema=False)
async def root():
    """Redirect root to API documentation."""
    from fastapi.responses import RedirectResponse

    return RedirectResponse(url="/api/docs")


def main() -> None:
    """Run the API with uvicorn."""
    import uvicorn

    uvicorn.run(app, host=API_HOST, port=API_PORT)


if __name__ == "__main__":
    main()
