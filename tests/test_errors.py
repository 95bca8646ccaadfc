"""
Tests for the error hierarchy, the response envelope and database error mapping.
"""

import pytest
from unittest.mock import MagicMock
from sqlalchemy.exc import IntegrityError, NoResultFound, OperationalError

from bookkeeping.errors import (
    AppError,
    AuthenticationError,
    ConflictError,
    ExternalServiceError,
    NotFoundError,
    RateLimitError,
    ValidationError,
    error_body,
    map_database_error,
)


class TestErrorHierarchy:
    """Status codes and codes of each error type."""

    @pytest.mark.parametrize("error, status, code", [
        (ValidationError("bad"), 400, "VALIDATION_ERROR"),
        (AuthenticationError(), 401, "AUTHENTICATION_ERROR"),
        (NotFoundError("Budget"), 404, "NOT_FOUND"),
        (ConflictError("busy"), 409, "CONFLICT"),
        (RateLimitError(), 429, "RATE_LIMIT_ERROR"),
        (ExternalServiceError("Xero"), 503, "EXTERNAL_SERVICE_ERROR"),
    ])
    def test_status_and_code(self, error, status, code):
        assert isinstance(error, AppError)
        assert error.status_code == status
        assert error.code == code

    def test_not_found_message(self):
        assert NotFoundError("Checkpoint").message == "Checkpoint not found"

    def test_rate_limit_retry_after_header(self):
        assert RateLimitError(retry_after=30).headers == {"Retry-After": "30"}
        assert RateLimitError().headers == {}

    def test_external_service_default_message(self):
        assert ExternalServiceError("Xero").message == "External service error: Xero"


class TestErrorBody:
    """The JSON envelope returned for every error."""

    def test_includes_request_id_and_details_in_development(self):
        request = MagicMock()
        request.state.request_id = "req-1"

        body = error_body(request, "Nope", "VALIDATION_ERROR", 400, {"field": "x"})["error"]

        assert body["message"] == "Nope"
        assert body["status_code"] == 400
        assert body["request_id"] == "req-1"
        assert body["details"] == {"field": "x"}
        assert "timestamp" in body

    def test_without_request(self):
        body = error_body(None, "Boom", "INTERNAL_ERROR", 500)["error"]
        assert body["request_id"] is None
        assert "details" not in body


class TestMapDatabaseError:
    """SQLAlchemy exceptions become AppErrors."""

    def test_unique_violation(self):
        exc = IntegrityError("INSERT", {}, Exception("duplicate key value violates unique constraint"))
        error = map_database_error(exc)
        assert error.status_code == 400
        assert error.message == "Unique constraint violation"

    def test_foreign_key_violation(self):
        exc = IntegrityError("INSERT", {}, Exception("violates foreign key constraint"))
        assert map_database_error(exc).message == "Foreign key constraint violation"

    def test_no_result(self):
        assert isinstance(map_database_error(NoResultFound()), NotFoundError)

    def test_other_errors_are_500(self):
        exc = OperationalError("SELECT", {}, Exception("connection refused"))
        error = map_database_error(exc)
        assert error.status_code == 500
        assert error.message == "Database operation failed"
