"""
FastAPI Middleware for the ATS Verify API

Request tracing (X-Request-ID, X-Processing-Time-MS), CORS for the analyst
web client, and the mapping from domain exceptions to the standard error body:

    {"error": {"code", "message", "field", "suggestion", "timestamp"}}
"""

import os
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Callable, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from csv_ingest import IngestionError
from database.repositories import RepositoryError, EntityNotFoundError
from log_utils import sanitize_for_logging

logger = logging.getLogger(__name__)

# Vite / CRA dev servers of the analyst client
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

EXPOSED_HEADERS = ["X-Request-ID", "X-Processing-Time-MS", "Content-Disposition"]


def setup_cors(app: FastAPI) -> None:
    """Allow the analyst client origins (CORS_ORIGINS, comma-separated)."""
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "DELETE", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=EXPOSED_HEADERS,
    )


def _request_id(request: Request) -> str:
    return getattr(request.state, "request_id", "unknown")


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Tags every request with an id and logs method, path, status and timing."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = sanitize_for_logging(
            request.headers.get("X-Request-ID") or uuid.uuid4().hex, max_length=64
        )
        request.state.request_id = request_id

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "%s %s failed after %dms: %s [request_id=%s]",
                request.method,
                sanitize_for_logging(request.url.path),
                int((time.perf_counter() - started) * 1000),
                sanitize_for_logging(str(exc)),
                request_id,
            )
            raise

        elapsed_ms = int((time.perf_counter() - started) * 1000)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed_ms)

        logger.info(
            "%s %s -> %d in %dms [request_id=%s]",
            request.method,
            sanitize_for_logging(request.url.path),
            response.status_code,
            elapsed_ms,
            request_id,
        )
        return response


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    field: Optional[str] = None,
    suggestion: Optional[str] = None,
) -> JSONResponse:
    """Build the standard error body; field and suggestion only when known."""
    error = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if field:
        error["field"] = field
    if suggestion:
        error["suggestion"] = suggestion

    return JSONResponse(status_code=status_code, content={"error": error})


def _describe_domain_error(exc: Exception) -> dict:
    """HTTP status, code and details for a domain exception."""
    if isinstance(exc, IngestionError):
        return dict(status_code=400, code=exc.code, field=exc.field, suggestion=exc.suggestion)
    if isinstance(exc, EntityNotFoundError):
        return dict(status_code=404, code="NOT_FOUND")
    if isinstance(exc, RepositoryError):
        return dict(status_code=400, code="INVALID_REQUEST")
    return dict(status_code=503, code="CONFIGURATION_ERROR")


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Rejected input, unknown profiles and broken configuration."""
    details = _describe_domain_error(exc)
    logger.warning(
        "Rejected with %s: %s [request_id=%s]",
        details["code"],
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )

    message = str(exc)
    if isinstance(exc, ConfigurationError):
        message = "Service configuration is invalid. Please contact administrator."

    return create_error_response(message=message, **details)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Pydantic/query validation failures, reported against the first bad field."""
    errors = exc.errors()
    first = errors[0] if errors else {}
    location = [str(part) for part in first.get("loc", ()) if part not in ("body", "query", "path")]

    return create_error_response(
        code="VALIDATION_ERROR",
        message=first.get("msg", "Invalid request"),
        status_code=422,
        field=".".join(location) or None,
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    logger.warning(
        "HTTP %d: %s [request_id=%s]",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        _request_id(request),
    )
    return create_error_response(
        code=f"HTTP_{exc.status_code}",
        message=exc.detail if isinstance(exc.detail, str) else str(exc.detail),
        status_code=exc.status_code,
    )


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Anything unexpected: log it, never leak internals to the client."""
    logger.exception(
        "Unhandled %s [request_id=%s]",
        type(exc).__name__,
        _request_id(request),
    )
    return create_error_response(
        code="INTERNAL_ERROR",
        message="An unexpected error occurred. Please try again later.",
        status_code=500,
    )


def setup_exception_handlers(app: FastAPI) -> None:
    for exc_class in (IngestionError, RepositoryError, ConfigurationError):
        app.add_exception_handler(exc_class, domain_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
