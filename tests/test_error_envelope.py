"""Error envelope shape and exception classification.

Every failure leaves the API as::

    {"success": false, "error": {"message": "...", "code": "...", "trace": "..."}}

with ``trace`` only present outside production.
"""

import pytest
from fastapi import FastAPI, Query
from fastapi.testclient import TestClient
from pydantic import ValidationError as PydanticValidationError
from structlog.testing import capture_logs

from taskvault.api import error_handling
from taskvault.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    build_error_body,
    classify_exception,
    format_validation_errors,
    register_exception_handlers,
)
from taskvault.api.schemas import ErrorBody, ErrorEnvelope
from taskvault.config import Environment, Settings
from taskvault.service.errors import (
    AuthenticationError,
    ConflictError,
    ForbiddenError,
    InvalidCredentialsError,
    InvalidRefreshTokenError,
    InvalidTokenError,
    MissingRefreshTokenError,
    NotFoundError,
    ServerError,
    TokenExpiredError,
    ValidationError,
)
from taskvault.storage.errors import ConstraintViolation, InvalidIdentifier


class TestErrorModels:
    def test_error_body_requires_message_and_code(self):
        with pytest.raises(PydanticValidationError):
            ErrorBody(message="boom")
        with pytest.raises(PydanticValidationError):
            ErrorBody(code="SERVER_ERROR")

    def test_envelope_omits_trace_when_unset(self):
        envelope = ErrorEnvelope(error=ErrorBody(message="nope", code="FORBIDDEN"))
        dumped = envelope.model_dump(exclude_none=True)

        assert dumped == {"success": False, "error": {"message": "nope", "code": "FORBIDDEN"}}

    def test_status_code_mapping_defaults_to_server_error(self):
        assert _STATUS_TO_CODE[404] == "RESOURCE_NOT_FOUND"
        assert _error_code_for_status(401) == "NOT_AUTHORIZED"
        assert _error_code_for_status(418) == "SERVER_ERROR"


class TestClassifyException:
    @pytest.mark.parametrize(
        "exc, expected",
        [
            (ValidationError("Please add a title"), (400, "VALIDATION_ERROR", "Please add a title")),
            (MissingRefreshTokenError(), (400, "VALIDATION_ERROR", "No refresh token provided")),
            (ConflictError(), (400, "DUPLICATE_VALUE", "Duplicate field value entered")),
            (AuthenticationError(), (401, "NOT_AUTHORIZED", "Not authorized to access this route")),
            (InvalidCredentialsError(), (401, "INVALID_CREDENTIALS", "Invalid credentials")),
            (InvalidRefreshTokenError(), (401, "INVALID_REFRESH_TOKEN", "Invalid or expired refresh token")),
            (InvalidTokenError(), (401, "INVALID_TOKEN", "Invalid token")),
            (TokenExpiredError(), (401, "TOKEN_EXPIRED", "Token expired")),
            (ForbiddenError("Not authorized to update this task"), (403, "FORBIDDEN", "Not authorized to update this task")),
            (NotFoundError(), (404, "RESOURCE_NOT_FOUND", "Resource not found")),
            (ServerError(), (500, "SERVER_ERROR", "Server Error")),
        ],
    )
    def test_service_errors_carry_their_own_classification(self, exc, expected):
        assert classify_exception(exc) == expected

    def test_malformed_identifier_is_not_found(self):
        exc = InvalidIdentifier("abc", "task")

        assert classify_exception(exc) == (404, "RESOURCE_NOT_FOUND", "Resource not found")

    def test_storage_uniqueness_is_duplicate_value(self):
        exc = ConstraintViolation("email already exists", {"field": "email"})

        assert classify_exception(exc) == (400, "DUPLICATE_VALUE", "Duplicate field value entered")

    def test_unknown_exception_is_server_error(self):
        status, code, message = classify_exception(RuntimeError("db exploded"))

        assert (status, code) == (500, "SERVER_ERROR")
        assert message == "db exploded"

    def test_explicit_status_override(self):
        exc = ValidationError("gone", status_code=410, error_code="GONE")

        assert classify_exception(exc) == (410, "GONE", "gone")


class TestBuildErrorBody:
    def test_production_masks_server_errors(self):
        status, body = build_error_body(RuntimeError("password=hunter2"), production=True)

        assert status == 500
        assert body.message == "Server Error"
        assert body.trace is None

    def test_production_keeps_client_error_messages(self):
        status, body = build_error_body(NotFoundError("Task not found"), production=True)

        assert status == 404
        assert body.message == "Task not found"
        assert body.trace is None

    def test_development_includes_trace(self):
        try:
            raise RuntimeError("kaboom")
        except RuntimeError as exc:
            status, body = build_error_body(exc, production=False)

        assert status == 500
        assert body.message == "kaboom"
        assert "RuntimeError: kaboom" in body.trace
        assert "Traceback" in body.trace


class TestFormatValidationErrors:
    def test_value_errors_drop_pydantic_prefix(self):
        message = format_validation_errors(
            [{"type": "value_error", "loc": ("body", "email"), "msg": "Value error, Please add a valid email"}]
        )

        assert message == "Please add a valid email"

    def test_other_errors_are_prefixed_with_location(self):
        message = format_validation_errors(
            [
                {"type": "missing", "loc": ("body", "title"), "msg": "Field required"},
                {"type": "string_too_short", "loc": ("body", "password"), "msg": "too short"},
            ]
        )

        assert message == "title: Field required, password: too short"

    def test_empty_list_has_fallback(self):
        assert format_validation_errors([]) == "Invalid request"


def _build_app() -> FastAPI:
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/forbidden")
    async def forbidden():
        raise ForbiddenError("Not authorized to delete this task")

    @app.get("/missing/{item_id}")
    async def missing(item_id: str):
        raise InvalidIdentifier(item_id, "task")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/crash")
    async def crash():
        raise RuntimeError("connection reset by peer")

    @app.get("/paged")
    async def paged(page: int = Query(1, ge=1)):
        return {"page": page}

    return app


@pytest.fixture
def envelope_client():
    return TestClient(_build_app(), raise_server_exceptions=False)


def _production_settings() -> Settings:
    return Settings(environment=Environment.PRODUCTION, jwt_secret="x" * 40)


class TestEnvelopeOverHttp:
    def test_service_error_envelope(self, envelope_client):
        response = envelope_client.get("/forbidden")

        assert response.status_code == 403
        body = response.json()
        assert body["success"] is False
        assert body["error"]["code"] == "FORBIDDEN"
        assert body["error"]["message"] == "Not authorized to delete this task"

    def test_malformed_id_is_404(self, envelope_client):
        response = envelope_client.get("/missing/not-an-id")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    def test_duplicate_is_400(self, envelope_client):
        response = envelope_client.get("/duplicate")

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "DUPLICATE_VALUE"

    def test_request_validation_is_400(self, envelope_client):
        response = envelope_client.get("/paged", params={"page": 0})

        assert response.status_code == 400
        assert response.json()["error"]["code"] == "VALIDATION_ERROR"
        assert response.json()["error"]["message"].startswith("page:")

    def test_unknown_route_uses_envelope(self, envelope_client):
        response = envelope_client.get("/does-not-exist")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "RESOURCE_NOT_FOUND"

    def test_unhandled_exception_includes_trace_outside_production(self, envelope_client):
        response = envelope_client.get("/crash")

        assert response.status_code == 500
        error = response.json()["error"]
        assert error["code"] == "SERVER_ERROR"
        assert error["message"] == "connection reset by peer"
        assert "RuntimeError" in error["trace"]

    def test_unhandled_exception_masked_in_production(self, envelope_client, monkeypatch):
        monkeypatch.setattr(error_handling, "get_settings", _production_settings)

        response = envelope_client.get("/crash")

        assert response.status_code == 500
        assert response.json() == {
            "success": False,
            "error": {"message": "Server Error", "code": "SERVER_ERROR"},
        }

    def test_client_errors_have_no_trace_in_production(self, envelope_client, monkeypatch):
        monkeypatch.setattr(error_handling, "get_settings", _production_settings)

        response = envelope_client.get("/forbidden")

        assert "trace" not in response.json()["error"]


class TestErrorLogging:
    def test_server_errors_log_at_error_with_stack(self, envelope_client):
        with capture_logs() as logs:
            envelope_client.get("/crash")

        entry = next(e for e in logs if e["event"] == "unhandled_exception")
        assert entry["log_level"] == "error"
        assert entry["path"] == "/crash"
        assert entry["method"] == "GET"
        assert isinstance(entry["exc_info"], RuntimeError)

    def test_client_errors_log_at_warning_without_stack(self, envelope_client):
        with capture_logs() as logs:
            envelope_client.get("/missing/not-an-id")

        entry = next(e for e in logs if e["event"] == "invalid_identifier")
        assert entry["log_level"] == "warning"
        assert entry["path"] == "/missing/not-an-id"
        assert entry["status_code"] == 404
        assert "exc_info" not in entry

    def test_each_failure_is_logged_once(self, envelope_client):
        with capture_logs() as logs:
            envelope_client.get("/forbidden")

        assert [e["event"] for e in logs] == ["service_error"]
