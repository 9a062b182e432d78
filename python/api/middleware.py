"""
FastAPI Middleware for the Driver Compliance API

Provides CORS configuration, request logging, and global error handling.
All errors are returned as ``{success: false, error, details?}``; details are
included only when APP_ENV=development.
"""

import os
import re
import time
import logging
from typing import Any, Callable, List, Optional

from fastapi import FastAPI, Request, HTTPException
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse
from starlette.middleware.base import BaseHTTPMiddleware

from config_manager import ConfigurationError
from database.connection import TenantScopeError
from database.repositories import EntityNotFoundError

logger = logging.getLogger(__name__)

# Default allowed origins for localhost development
DEFAULT_CORS_ORIGINS = [
    "http://localhost:3000",
    "http://localhost:8000",
    "http://127.0.0.1:3000",
    "http://127.0.0.1:8000",
]


def is_development() -> bool:
    return os.getenv("APP_ENV", "").lower() == "development"


def sanitize_for_logging(text: str) -> str:
    """Sanitize request data for safe logging, preventing log injection

    Removes newlines, carriage returns, and other control characters
    that could be used to inject fake log entries.
    """
    if not text:
        return ''
    sanitized = re.sub(r'[\r\n\x00-\x1f\x7f-\x9f]', ' ', str(text))
    sanitized = re.sub(r'\s+', ' ', sanitized).strip()
    return sanitized[:500]


def setup_cors(app: FastAPI, origins: Optional[List[str]] = None) -> None:
    """Configure CORS middleware for the application.

    Origins can be overridden via the CORS_ORIGINS environment variable
    (comma-separated list of allowed origins).
    """
    cors_origins_env = os.getenv("CORS_ORIGINS", "")
    if cors_origins_env:
        allowed_origins = [origin.strip() for origin in cors_origins_env.split(",")]
    else:
        allowed_origins = origins or DEFAULT_CORS_ORIGINS

    app.add_middleware(
        CORSMiddleware,
        allow_origins=allowed_origins,
        allow_credentials=True,
        allow_methods=["GET", "POST", "OPTIONS"],
        allow_headers=["*"],
        expose_headers=["X-Request-ID", "X-Processing-Time-MS"],
    )


class RequestLoggingMiddleware(BaseHTTPMiddleware):
    """Middleware for logging all requests with sanitized inputs."""

    async def dispatch(self, request: Request, call_next: Callable):
        """Process request and log details."""
        start_time = time.time()
        request_id = request.headers.get("X-Request-ID", str(time.time_ns()))

        request.state.request_id = request_id
        request.state.start_time = start_time

        logger.info(
            "Request: method=%s path=%s tenant=%s request_id=%s",
            request.method,
            sanitize_for_logging(str(request.url.path)),
            sanitize_for_logging(request.headers.get("X-Tenant-ID", "-")),
            request_id,
        )

        try:
            response = await call_next(request)

            processing_time_ms = int((time.time() - start_time) * 1000)
            response.headers["X-Request-ID"] = request_id
            response.headers["X-Processing-Time-MS"] = str(processing_time_ms)

            logger.info(
                "Response: status=%d processing_time_ms=%d request_id=%s",
                response.status_code,
                processing_time_ms,
                request_id,
            )
            return response

        except Exception as exc:
            processing_time_ms = int((time.time() - start_time) * 1000)
            logger.error(
                "Request failed: error=%s processing_time_ms=%d request_id=%s",
                sanitize_for_logging(str(exc)),
                processing_time_ms,
                request_id,
            )
            raise


def create_error_response(
    error: str,
    status_code: int = 500,
    details: Any = None,
) -> JSONResponse:
    """Create a standardized error response.

    Args:
        error: Human-readable message
        status_code: HTTP status code
        details: Extra information, dropped outside development

    Returns:
        JSONResponse with the error envelope
    """
    content = {"success": False, "error": error}
    if details is not None and is_development():
        content["details"] = details
    return JSONResponse(status_code=status_code, content=content)


async def global_exception_handler(request: Request, exc: Exception) -> JSONResponse:
    """Global exception handler for unhandled errors.

    Sanitizes error messages to prevent information leakage.
    """
    request_id = getattr(request.state, "request_id", "unknown")

    logger.error(
        "Unhandled exception: type=%s message=%s request_id=%s",
        type(exc).__name__,
        sanitize_for_logging(str(exc)),
        request_id,
    )

    return create_error_response(
        "An unexpected error occurred. Please try again later.",
        status_code=500,
        details=str(exc),
    )


async def http_exception_handler(request: Request, exc: HTTPException) -> JSONResponse:
    """Handler for HTTP exceptions."""
    request_id = getattr(request.state, "request_id", "unknown")

    logger.warning(
        "HTTP exception: status=%d detail=%s request_id=%s",
        exc.status_code,
        sanitize_for_logging(str(exc.detail)),
        request_id,
    )

    content = {
        "success": False,
        "error": exc.detail if isinstance(exc.detail, str) else str(exc.detail),
    }
    return JSONResponse(status_code=exc.status_code, content=content, headers=exc.headers)


async def validation_exception_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    """Handler for request validation errors. Field errors are always returned."""
    errors = [
        {"field": ".".join(str(p) for p in err.get("loc", ())), "message": err.get("msg", "")}
        for err in exc.errors()
    ]
    return JSONResponse(
        status_code=422,
        content={"success": False, "error": "Invalid request", "details": errors},
    )


async def tenant_scope_exception_handler(request: Request, exc: TenantScopeError) -> JSONResponse:
    logger.warning(f"Invalid tenant context: {sanitize_for_logging(str(exc))}")
    return JSONResponse(status_code=400, content={"success": False, "error": str(exc)})


async def configuration_exception_handler(request: Request, exc: ConfigurationError) -> JSONResponse:
    logger.error(f"Configuration error: {sanitize_for_logging(str(exc))}")
    return create_error_response(
        "Service configuration is invalid. Please contact administrator.",
        status_code=503,
        details=str(exc),
    )


async def not_found_exception_handler(request: Request, exc: EntityNotFoundError) -> JSONResponse:
    return JSONResponse(status_code=404, content={"success": False, "error": str(exc)})


def setup_exception_handlers(app: FastAPI) -> None:
    """Configure exception handlers for the application."""
    app.add_exception_handler(Exception, global_exception_handler)
    app.add_exception_handler(HTTPException, http_exception_handler)
    app.add_exception_handler(RequestValidationError, validation_exception_handler)
    app.add_exception_handler(TenantScopeError, tenant_scope_exception_handler)
    app.add_exception_handler(EntityNotFoundError, not_found_exception_handler)
    app.add_exception_handler(ConfigurationError, configuration_exception_handler)
