"""
FastAPI Middleware for the Compliance Validation API

Provides CORS configuration, request logging and the mapping of engine
results and exceptions onto the standardized ``{"error": {...}}`` body.
"""

import os
import re
import time
import uuid
import logging
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from compliance.exceptions import ConcurrencyError
from compliance.results import (
    ErrorCodes,
    NOT_FOUND_CODES,
    STATE_CONFLICT_CODES,
    ValidationResult,
)
from config_manager import ConfigurationError
from database.repositories import (
    DuplicateEntityError,
    EntityNotFoundError,
    InvalidEntityError,
    RepositoryError,
)

logger = logging.getLogger(__name__)

# Back-office frontends on localhost
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:5173",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:5173",
]

MAX_LOG_LENGTH = 500

GENERIC_ERROR_MESSAGE = "An unexpected error occurred. Please try again later."


def sanitize_for_logging(text: str) -> str:
    """Strip control characters from user-provided text and truncate it.

    Account numbers, licence numbers and paths reach the logs verbatim, so
    embedded newlines could otherwise forge log records.
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:MAX_LOG_LENGTH]


def setup_cors(app: FastAPI) -> None:
    """Configure CORS from the comma-separated CORS_ORIGINS variable."""
    configured = [o.strip() for o in os.getenv("CORS_ORIGINS", "").split(",") if o.strip()]

    app.add_middleware(
        CORSMiddleware,
        allow_origins=configured or DEFAULT_CORS_ORIGINS,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Logs one line per request and tags the response with a correlation id."""

    async def dispatch(self, request: Request, call_next: Callable):
        started = time.perf_counter()
        request_id = request.headers.get("X-Request-ID") or uuid.uuid4().hex
        request.state.request_id = request_id

        method = request.method
        path = sanitize_for_logging(request.url.path)
        safe_id = sanitize_for_logging(request_id)

        try:
            response = await call_next(request)
        except Exception as exc:
            logger.error(
                "%s %s failed after %dms: %s (request_id=%s)",
                method, path, _elapsed_ms(started), sanitize_for_logging(str(exc)), safe_id,
            )
            raise

        elapsed = _elapsed_ms(started)
        response.headers["X-Request-ID"] = request_id
        response.headers["X-Processing-Time-MS"] = str(elapsed)

        logger.info("%s %s -> %d in %dms (request_id=%s)", method, path, response.status_code, elapsed, safe_id)
        return response


def _elapsed_ms(started: float) -> int:
    return int((time.perf_counter() - started) * 1000)


def create_error_response(
    code: str,
    message: str,
    status_code: int = 500,
    violations: Optional[List[Dict[str, Any]]] = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        code: Error code for programmatic handling
        message: Human-readable message
        status_code: HTTP status code
        violations: Every violation of a failed engine result (optional)

    Returns:
        JSONResponse with the ``{"error": {...}}`` body
    """
    error_detail: Dict[str, Any] = {
        "code": code,
        "message": message,
        "timestamp": datetime.now(timezone.utc).isoformat(),
    }
    if violations:
        error_detail["violations"] = violations

    return JSONResponse(status_code=status_code, content={"error": error_detail})


def status_code_for(error_code: str) -> int:
    """HTTP status for a failed engine result."""
    if error_code in NOT_FOUND_CODES:
        return 404
    if error_code in STATE_CONFLICT_CODES:
        return 409
    if error_code == ErrorCodes.VALIDATION_ERROR:
        return 422
    return 400


def result_error_response(result: ValidationResult) -> JSONResponse:
    """Standardized error response for a failed engine result.

    The first violation decides the status code and error code; the full
    list travels along under ``violations``.
    """
    first = result.first_error()
    return create_error_response(
        code=first.error_code,
        message=first.message,
        status_code=status_code_for(first.error_code),
        violations=[v.to_dict() for v in result.violations],
    )


def _request_id(request: Request) -> str:
    return sanitize_for_logging(getattr(request.state, "request_id", "unknown"))


async def domain_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Map concurrency and repository errors onto 404/409/422 responses.

    Args:
        request: FastAPI request object
        exc: ConcurrencyError or RepositoryError that was raised

    Returns:
        Standardized error response
    """
    logger.warning(
        "%s on %s: %s (request_id=%s)",
        type(exc).__name__,
        sanitize_for_logging(request.url.path),
        sanitize_for_logging(str(exc)),
        _request_id(request),
    )

    if isinstance(exc, ConcurrencyError):
        return create_error_response(
            code="CONCURRENCY_CONFLICT",
            message="The record was modified by another request. Reload and retry.",
            status_code=409,
        )
    if isinstance(exc, EntityNotFoundError):
        return create_error_response(code="NOT_FOUND", message=str(exc), status_code=404)
    if isinstance(exc, DuplicateEntityError):
        return create_error_response(code=ErrorCodes.DUPLICATE_ENTITY, message=str(exc), status_code=409)
    if isinstance(exc, InvalidEntityError):
        return create_error_response(code=ErrorCodes.VALIDATION_ERROR, message=str(exc), status_code=422)

    return create_error_response(code=ErrorCodes.INTERNAL_ERROR, message=GENERIC_ERROR_MESSAGE)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Last-resort handler; the exception text never reaches the client."""
    logger.exception(
        "Unhandled %s on %s (request_id=%s)",
        type(exc).__name__,
        sanitize_for_logging(request.url.path),
        _request_id(request),
    )

    if isinstance(exc, ConfigurationError):
        return create_error_response(
            code="CONFIGURATION_ERROR",
            message="Service configuration is invalid. Please contact administrator.",
            status_code=503,
        )

    return create_error_response(code=ErrorCodes.INTERNAL_ERROR, message=GENERIC_ERROR_MESSAGE)


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Wrap HTTPException (API key failures) in the standard body."""
    detail = exc.detail if isinstance(exc.detail, str) else str(exc.detail)
    logger.warning(
        "HTTP %d on %s: %s (request_id=%s)",
        exc.status_code,
        sanitize_for_logging(request.url.path),
        sanitize_for_logging(detail),
        _request_id(request),
    )
    return create_error_response(code=f"HTTP_{exc.status_code}", message=detail, status_code=exc.status_code)


def setup_exception_handlers(app: FastAPI) -> None:
    """Register the handlers; domain errors first, the catch-all last."""
    app.add_exception_handler(ConcurrencyError, domain_exception_handler)
    app.add_exception_handler(RepositoryError, domain_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(Exception, global_exception_handler)
