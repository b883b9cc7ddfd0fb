"""Tests for the error envelope format and exception handlers.

Error responses share one envelope:
{
    "status": "error",
    "error": {
        "code": "<stable_code>",
        "message": "<human_readable>",
        "details": <object|array|null>
    },
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import BaseModel, ValidationError

from tenantgate.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    register_exception_handlers,
)
from tenantgate.api.routes import _failure_error, _http_error
from tenantgate.api.schemas import Envelope, ErrorBody
from tenantgate.service import errors as service_errors
from tenantgate.service.errors import AuthFailure, Failure, NotFoundError
from tenantgate.storage.errors import ConstraintViolation, StorageError


class TestErrorBody:
    """Tests for the ErrorBody Pydantic model."""

    def test_error_body_required_fields(self):
        error = ErrorBody(code="unauthorized", message="Invalid credentials")
        assert error.code == "unauthorized"
        assert error.message == "Invalid credentials"
        assert error.details is None

    def test_error_body_with_details_list(self):
        error = ErrorBody(
            code="validation_error",
            message="Multiple errors",
            details=[{"field": "email"}, {"field": "password"}],
        )
        assert len(error.details) == 2

    def test_error_body_missing_code_raises(self):
        with pytest.raises(ValidationError):
            ErrorBody(message="Error occurred")

    def test_error_body_rejects_unknown_code(self):
        """Only stable codes may appear in an envelope."""
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    @pytest.mark.parametrize("kind", list(AuthFailure))
    def test_every_auth_failure_code_is_accepted(self, kind):
        assert ErrorBody(code=kind.code, message=kind.message).code == kind.code


class TestEnvelope:
    """Tests for the Envelope model."""

    def test_envelope_ok_status(self):
        envelope = Envelope(status="ok", data={"session_id": "123"})

        assert envelope.status == "ok"
        assert envelope.data == {"session_id": "123"}
        assert envelope.error is None

    def test_envelope_request_id_auto_generated(self):
        envelope = Envelope(status="ok")

        assert len(envelope.request_id) == 36

    def test_envelope_invalid_status_raises(self):
        with pytest.raises(ValidationError):
            Envelope(status="pending")

    def test_envelope_error_serialization(self):
        envelope = Envelope(
            status="error",
            error=ErrorBody(
                code="rate_limited", message="Too many requests", details={"retry_after": 60}
            ),
            request_id="test-req-123",
        )
        dumped = envelope.model_dump()

        assert dumped["error"]["code"] == "rate_limited"
        assert dumped["error"]["details"]["retry_after"] == 60
        assert dumped["request_id"] == "test-req-123"
        assert dumped["data"] is None


class TestErrorCodeMapping:
    """Tests for HTTP status to error code mapping."""

    @pytest.mark.parametrize(
        "status, code",
        [
            (400, "validation_error"),
            (401, "unauthorized"),
            (403, "forbidden"),
            (404, "not_found"),
            (409, "conflict"),
            (422, "validation_error"),
            (429, "rate_limited"),
            (500, "server_error"),
            (503, "storage_error"),
        ],
    )
    def test_status_maps_to_code(self, status, code):
        assert _error_code_for_status(status) == code

    def test_unknown_status_defaults_to_server_error(self):
        assert _error_code_for_status(418) == "server_error"
        assert _error_code_for_status(999) == "server_error"

    def test_mapped_codes_are_all_valid(self):
        for code in _STATUS_TO_CODE.values():
            ErrorBody(code=code, message="x")


class TestFailureMapping:
    """Tests for turning service Failures into HTTP errors."""

    @pytest.mark.parametrize(
        "kind, status",
        [
            (AuthFailure.INVALID_CREDENTIALS, 401),
            (AuthFailure.ACCOUNT_LOCKED, 423),
            (AuthFailure.NO_ACTIVE_COMPANIES, 403),
            (AuthFailure.NO_PENDING_MFA, 401),
            (AuthFailure.CODE_EXPIRED, 410),
            (AuthFailure.INVALID_CODE, 401),
            (AuthFailure.COMPANY_ACCESS_DENIED, 403),
            (AuthFailure.SESSION_NOT_FOUND, 404),
            (AuthFailure.STORAGE_ERROR, 503),
        ],
    )
    def test_failure_status(self, kind, status):
        exc = _failure_error(Failure(kind))

        assert exc.status_code == status
        assert exc.detail["error"]["code"] == kind.code
        assert exc.detail["error"]["message"] == kind.message

    def test_failure_detail_is_passed_through(self):
        exc = _failure_error(Failure(AuthFailure.CODE_EXPIRED, detail="request a new code"))

        assert exc.detail["error"]["details"] == {"detail": "request a new code"}

    def test_http_error_shape(self):
        exc = _http_error("not_found", "missing", 404)

        assert exc.detail == {
            "status": "error",
            "error": {"code": "not_found", "message": "missing"},
        }


class TestErrorResponseFactory:
    """Tests for the _error_response helper."""

    def test_error_response_basic(self):
        response = _error_response(401, "Invalid credentials")

        data = json.loads(response.body.decode())
        assert response.status_code == 401
        assert data["status"] == "error"
        assert data["error"]["code"] == "unauthorized"
        assert data["request_id"]

    def test_error_response_custom_code(self):
        response = _error_response(410, "expired", code="code_expired")

        assert json.loads(response.body.decode())["error"]["code"] == "code_expired"


@pytest.fixture
def handler_client():
    """A bare app with the handlers installed and routes that raise."""
    app = FastAPI()
    register_exception_handlers(app)

    class Body(BaseModel):
        value: int

    @app.get("/storage")
    async def storage():
        raise StorageError("connection refused to db.internal:5432", {"host": "db.internal"})

    @app.get("/constraint")
    async def constraint():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/service")
    async def service():
        raise NotFoundError("thing not found", detail={"id": "42"})

    @app.get("/raise/{name}")
    async def raise_named(name: str):
        raise getattr(service_errors, name)(f"{name} raised")

    @app.get("/boom")
    async def boom():
        raise RuntimeError("kaboom")

    @app.get("/http")
    async def http():
        raise _http_error("rate_limited", "slow down", 429)

    @app.post("/validate")
    async def validate(body: Body):
        return {"ok": True}

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    """Tests for the installed exception handlers."""

    def test_storage_error_hides_internals(self, handler_client):
        response = handler_client.get("/storage")

        body = response.json()
        assert response.status_code == 503
        assert body["error"]["code"] == "storage_error"
        assert "db.internal" not in response.text

    def test_constraint_violation_is_conflict(self, handler_client):
        response = handler_client.get("/constraint")

        assert response.status_code == 409
        assert response.json()["error"] == {
            "code": "conflict",
            "message": "email already exists",
            "details": {"field": "email"},
        }

    def test_service_error(self, handler_client):
        response = handler_client.get("/service")

        assert response.status_code == 404
        assert response.json()["error"]["code"] == "not_found"
        assert response.json()["error"]["details"] == {"id": "42"}

    @pytest.mark.parametrize(
        "name, status, code",
        [
            ("ValidationError", 400, "validation_error"),
            ("AuthenticationError", 401, "unauthorized"),
            ("ForbiddenError", 403, "forbidden"),
            ("ConflictError", 409, "conflict"),
            ("RateLimitedError", 429, "rate_limited"),
            ("ServerError", 500, "server_error"),
        ],
    )
    def test_service_error_subclasses(self, handler_client, name, status, code):
        response = handler_client.get(f"/raise/{name}")

        assert response.status_code == status
        assert response.json()["error"]["code"] == code
        assert response.json()["error"]["message"] == f"{name} raised"

    def test_uncaught_exception(self, handler_client):
        response = handler_client.get("/boom")

        assert response.status_code == 500
        assert response.json()["error"]["code"] == "server_error"
        assert "kaboom" not in response.text

    def test_http_exception_keeps_envelope(self, handler_client):
        response = handler_client.get("/http")

        assert response.status_code == 429
        assert response.json()["error"]["code"] == "rate_limited"

    def test_request_validation_is_400(self, handler_client):
        response = handler_client.post("/validate", json={"value": "not-a-number"})

        body = response.json()
        assert response.status_code == 400
        assert body["error"]["code"] == "validation_error"
        assert body["error"]["details"][0]["loc"] == ["body", "value"]
