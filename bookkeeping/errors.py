"""Application error hierarchy and FastAPI exception handlers.

Every error the API surfaces is rendered as::

    {"error": {"message", "code", "status_code", "timestamp", "request_id", "details"}}

``details`` is only included outside production-like environments.
"""
from datetime import datetime, timezone
from typing import Any, Dict, Optional
import logging

from fastapi import FastAPI, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError, NoResultFound, SQLAlchemyError

from bookkeeping.config import settings


logger = logging.getLogger(__name__)


# ============================================================================
# ERROR HIERARCHY
# ============================================================================

class AppError(Exception):
    """Base class for errors that map onto an HTTP response."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: str = "INTERNAL_ERROR",
        details: Optional[Any] = None,
    ):
        super().__init__(message)
        self.message = message
        self.status_code = status_code
        self.code = code
        self.details = details

    @property
    def headers(self) -> Dict[str, str]:
        return {}


class ValidationError(AppError):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, 400, "VALIDATION_ERROR", details)


class AuthenticationError(AppError):
    def __init__(self, message: str = "Authentication required", details: Optional[Any] = None):
        super().__init__(message, 401, "AUTHENTICATION_ERROR", details)


class AuthorizationError(AppError):
    def __init__(self, message: str = "Insufficient permissions", details: Optional[Any] = None):
        super().__init__(message, 403, "AUTHORIZATION_ERROR", details)


class NotFoundError(AppError):
    def __init__(self, resource: str, details: Optional[Any] = None):
        super().__init__(f"{resource} not found", 404, "NOT_FOUND", details)
        self.resource = resource


class ConflictError(AppError):
    def __init__(self, message: str, details: Optional[Any] = None):
        super().__init__(message, 409, "CONFLICT", details)


class RateLimitError(AppError):
    def __init__(
        self,
        message: str = "Rate limit exceeded",
        retry_after: Optional[int] = None,
        details: Optional[Any] = None,
    ):
        super().__init__(message, 429, "RATE_LIMIT_ERROR", details)
        self.retry_after = retry_after

    @property
    def headers(self) -> Dict[str, str]:
        if self.retry_after is None:
            return {}
        return {"Retry-After": str(self.retry_after)}


class ExternalServiceError(AppError):
    def __init__(self, service: str, message: Optional[str] = None, details: Optional[Any] = None):
        super().__init__(
            message or f"External service error: {service}",
            503,
            "EXTERNAL_SERVICE_ERROR",
            details,
        )
        self.service = service


# ============================================================================
# RESPONSE ENVELOPE
# ============================================================================

def error_body(
    request: Optional[Request],
    message: str,
    code: str,
    status_code: int,
    details: Optional[Any] = None,
) -> Dict[str, Any]:
    request_id = getattr(request.state, "request_id", None) if request is not None else None
    body: Dict[str, Any] = {
        "message": message,
        "code": code,
        "status_code": status_code,
        "timestamp": datetime.now(timezone.utc).isoformat(),
        "request_id": request_id,
    }
    if details is not None and settings.is_development:
        body["details"] = details
    return {"error": body}


def map_database_error(exc: SQLAlchemyError) -> AppError:
    """Translate a SQLAlchemy exception into an AppError."""
    if isinstance(exc, IntegrityError):
        text = str(exc.orig).lower() if exc.orig is not None else str(exc).lower()
        if "unique" in text or "duplicate" in text:
            return AppError("Unique constraint violation", 400, "DATABASE_ERROR")
        if "foreign key" in text:
            return AppError("Foreign key constraint violation", 400, "DATABASE_ERROR")
        return AppError("Database integrity error", 400, "DATABASE_ERROR")
    if isinstance(exc, NoResultFound):
        return NotFoundError("Record")
    return AppError("Database operation failed", 500, "DATABASE_ERROR")


# ============================================================================
# HANDLERS
# ============================================================================

async def app_error_handler(request: Request, exc: AppError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error(f"{exc.code}: {exc.message}")
    else:
        logger.warning(f"{exc.code}: {exc.message}")
    return JSONResponse(
        status_code=exc.status_code,
        content=error_body(request, exc.message, exc.code, exc.status_code, exc.details),
        headers=exc.headers,
    )


async def validation_error_handler(request: Request, exc: RequestValidationError) -> JSONResponse:
    return JSONResponse(
        status_code=400,
        content=error_body(request, "Validation failed", "VALIDATION_ERROR", 400, jsonable_encoder(exc.errors())),
    )


async def database_error_handler(request: Request, exc: SQLAlchemyError) -> JSONResponse:
    logger.error(f"Database error: {exc}")
    return await app_error_handler(request, map_database_error(exc))


async def unhandled_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception(f"Unhandled error: {exc}")
    message = str(exc) if settings.is_development else "Internal server error"
    return JSONResponse(
        status_code=500,
        content=error_body(request, message, "INTERNAL_ERROR", 500),
    )


def register_exception_handlers(app: FastAPI) -> None:
    app.add_exception_handler(AppError, app_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.add_exception_handler(SQLAlchemyError, database_error_handler)
    app.add_exception_handler(Exception, unhandled_error_handler)
