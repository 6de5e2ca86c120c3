"""Tests for the error envelope and the exception handlers.

Error responses share one shape:
{
    "status": "error",
    "error": {"code": "<stable_code>", "message": "...", "details": <object|array|null>},
    "request_id": "<uuid>"
}
"""

import json

import pytest
from fastapi import FastAPI
from fastapi.testclient import TestClient
from pydantic import ValidationError

from authguard.api.error_handling import (
    _STATUS_TO_CODE,
    _error_code_for_status,
    _error_response,
    rate_limit_headers,
    register_exception_handlers,
)
from authguard.api.routes import _http_error
from authguard.api.schemas import Envelope, ErrorBody
from authguard.service.errors import (
    CaptchaRequired,
    InvalidToken,
    InvariantViolation,
    LimitExceeded,
    ServerError,
)
from authguard.storage.errors import ConstraintViolation, StoreUnavailable
from authguard.storage.models import RateLimitResult

BLOCKED = RateLimitResult(
    allowed=False, remaining_points=0, ms_before_next=120_000, consumed_points=6, limit=5
)


@pytest.fixture
def client():
    app = FastAPI()
    register_exception_handlers(app)

    @app.get("/store-down")
    async def store_down():
        raise StoreUnavailable("connection refused")

    @app.get("/ip-limited")
    async def ip_limited():
        raise LimitExceeded(result=BLOCKED)

    @app.get("/email-limited")
    async def email_limited():
        raise LimitExceeded(result=BLOCKED, expose_headers=False)

    @app.get("/captcha")
    async def captcha():
        raise CaptchaRequired()

    @app.get("/invariant")
    async def invariant():
        raise InvariantViolation("Cannot revoke the active signing key", detail={"key_id": "k1"})

    @app.get("/bad-token")
    async def bad_token():
        raise InvalidToken("Invalid or expired unlock token")

    @app.get("/duplicate")
    async def duplicate():
        raise ConstraintViolation("email already exists", {"field": "email"})

    @app.get("/server")
    async def server():
        raise ServerError("no active signing key available")

    @app.get("/http")
    async def http():
        raise _http_error("forbidden", "admin access required", status_code=403)

    @app.get("/boom")
    async def boom():
        raise RuntimeError("unexpected")

    return TestClient(app, raise_server_exceptions=False)


class TestErrorBody:
    """Tests for the ErrorBody model."""

    def test_defense_codes_accepted(self):
        for code in ("captcha_required", "invalid_token", "invariant_violation", "service_unavailable"):
            assert ErrorBody(code=code, message="x").code == code

    def test_unknown_code_rejected(self):
        with pytest.raises(ValidationError):
            ErrorBody(code="teapot", message="short and stout")

    def test_details_may_be_list(self):
        body = ErrorBody(code="validation_error", message="bad", details=[{"loc": ["email"]}])

        assert body.details == [{"loc": ["email"]}]


class TestEnvelope:
    def test_request_id_generated(self):
        assert len(Envelope(status="ok").request_id) == 36

    def test_invalid_status_rejected(self):
        with pytest.raises(ValidationError):
            Envelope(status="success")


class TestErrorCodeMapping:
    """Tests for the status to code fallback used by _error_response."""

    def test_known_statuses(self):
        assert _error_code_for_status(401) == "unauthorized"
        assert _error_code_for_status(422) == "validation_error"
        assert _error_code_for_status(429) == "rate_limited"
        assert _error_code_for_status(503) == "service_unavailable"

    def test_unknown_status_is_server_error(self):
        assert _error_code_for_status(418) == "server_error"

    def test_every_mapped_code_is_valid(self):
        for code in set(_STATUS_TO_CODE.values()):
            ErrorBody(code=code, message="x")

    def test_error_response_shape(self):
        response = _error_response(404, "Not found")

        data = json.loads(response.body.decode())
        assert data["status"] == "error"
        assert data["error"] == {"code": "not_found", "message": "Not found", "details": None}
        assert data["data"] is None


class TestRateLimitHeaders:
    def test_headers_for_blocked_result(self):
        headers = rate_limit_headers(BLOCKED, blocked=True)

        assert headers["X-RateLimit-Limit"] == "5"
        assert headers["X-RateLimit-Remaining"] == "0"
        assert headers["Retry-After"] == "120"
        assert "X-RateLimit-Reset" in headers

    def test_no_retry_after_when_admitted(self):
        result = RateLimitResult(
            allowed=True, remaining_points=3, ms_before_next=60_000, consumed_points=2, limit=5
        )

        headers = rate_limit_headers(result)

        assert headers["X-RateLimit-Remaining"] == "3"
        assert "Retry-After" not in headers


class TestExceptionHandlers:
    """Tests for how each exception family is rendered."""

    def test_store_unavailable_is_503(self, client):
        resp = client.get("/store-down")

        assert resp.status_code == 503
        assert resp.json()["error"]["code"] == "service_unavailable"
        # Connection details stay in the logs
        assert "connection refused" not in resp.text

    def test_ip_limit_exposes_headers(self, client):
        resp = client.get("/ip-limited")

        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "120"
        assert resp.json()["error"]["details"] == {"retryAfter": 120}

    def test_email_limit_hides_headers(self, client):
        resp = client.get("/email-limited")

        assert resp.status_code == 429
        assert "Retry-After" not in resp.headers
        assert "X-RateLimit-Remaining" not in resp.headers
        assert resp.json()["error"]["details"] is None

    def test_captcha_required(self, client):
        resp = client.get("/captcha")

        assert resp.status_code == 403
        assert resp.json()["error"] == {
            "code": "captcha_required",
            "message": "Too many failed attempts. Please complete the CAPTCHA.",
            "details": {"captchaRequired": True},
        }

    def test_invariant_violation(self, client):
        resp = client.get("/invariant")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invariant_violation"
        assert resp.json()["error"]["details"] == {"key_id": "k1"}

    def test_invalid_token(self, client):
        resp = client.get("/bad-token")

        assert resp.status_code == 400
        assert resp.json()["error"]["code"] == "invalid_token"

    def test_constraint_violation_is_conflict(self, client):
        resp = client.get("/duplicate")

        assert resp.status_code == 409
        assert resp.json()["error"]["code"] == "conflict"

    def test_server_error(self, client):
        resp = client.get("/server")

        assert resp.status_code == 500
        assert resp.json()["error"]["code"] == "server_error"

    def test_http_error_envelope_passthrough(self, client):
        resp = client.get("/http")

        assert resp.status_code == 403
        assert resp.json()["error"]["code"] == "forbidden"
        assert resp.json()["error"]["message"] == "admin access required"

    def test_uncaught_exception(self, client):
        resp = client.get("/boom")

        assert resp.status_code == 500
        assert resp.json()["error"] == {
            "code": "server_error",
            "message": "internal server error",
            "details": None,
        }
