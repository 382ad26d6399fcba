"""Tests for the ``{success, error}`` response envelope and exception mapping."""

import json

import pytest
from fastapi.testclient import TestClient

from uniportal.api.error_handling import _error_response
from uniportal.api.schemas import Envelope
from uniportal.app import create_app
from uniportal.service.errors import (
    ForbiddenError,
    OtpVerificationError,
    RateLimitedError,
    UpstreamUnavailableError,
)
from uniportal.service.otp import OTP_EXPIRED


class TestEnvelope:
    def test_success_drops_empty_fields(self):
        assert Envelope(success=True).render() == {"success": True}

    def test_requires_mfa_uses_camel_case(self):
        rendered = Envelope(success=True, requires_mfa=True, message="sent").render()
        assert rendered == {"success": True, "requiresMfa": True, "message": "sent"}

    def test_error_shape(self):
        rendered = Envelope(success=False, error="Invalid credentials").render()
        assert rendered == {"success": False, "error": "Invalid credentials"}


class TestErrorResponseFactory:
    def test_details_hidden_outside_development(self, runtime):
        resp = _error_response(401, "Invalid credentials", {"code": "unauthorized"})
        assert resp.status_code == 401
        assert json.loads(resp.body) == {"success": False, "error": "Invalid credentials"}

    def test_details_shown_in_development(self, runtime):
        runtime.settings.app_env = "development"
        resp = _error_response(401, "Invalid credentials", {"code": "unauthorized"})
        assert json.loads(resp.body) == {
            "success": False,
            "error": "Invalid credentials",
            "details": {"code": "unauthorized"},
        }

    def test_headers_passed_through(self, runtime):
        resp = _error_response(429, "slow down", headers={"Retry-After": "12"})
        assert resp.headers["Retry-After"] == "12"


def test_otp_error_carries_ledger_reason():
    exc = OtpVerificationError(OTP_EXPIRED)
    assert exc.status_code == 400
    assert exc.error_code == "otp_expired"
    assert exc.message == "Code expired."


@pytest.fixture
def boom_client():
    app = create_app()

    @app.get("/boom/unavailable")
    async def unavailable():
        raise UpstreamUnavailableError()

    @app.get("/boom/forbidden")
    async def forbidden():
        raise ForbiddenError("forbidden")

    @app.get("/boom/throttled")
    async def throttled():
        raise RateLimitedError(detail={"retry_after": 17})

    @app.get("/boom/crash")
    async def crash():
        raise RuntimeError("SELECT password_hash FROM users failed at /var/lib/pg")

    return TestClient(app, raise_server_exceptions=False)


class TestExceptionHandlers:
    def test_upstream_unavailable_is_503(self, boom_client):
        resp = boom_client.get("/boom/unavailable")
        assert resp.status_code == 503
        assert resp.json() == {
            "success": False,
            "error": "Service temporarily unavailable. Please try again.",
        }

    def test_forbidden(self, boom_client):
        resp = boom_client.get("/boom/forbidden")
        assert resp.status_code == 403
        assert resp.json() == {"success": False, "error": "forbidden"}

    def test_rate_limited_sets_retry_after(self, boom_client):
        resp = boom_client.get("/boom/throttled")
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "17"

    def test_rate_limited_details_in_development(self, boom_client, runtime):
        runtime.settings.app_env = "development"
        body = boom_client.get("/boom/throttled").json()
        assert body["details"] == {"code": "rate_limited", "retry_after": 17}

    def test_uncaught_exception_is_generic_500(self, boom_client):
        resp = boom_client.get("/boom/crash")
        assert resp.status_code == 500
        assert resp.json() == {"success": False, "error": "Request failed"}

    def test_uncaught_exception_details_are_sanitized(self, boom_client, runtime):
        runtime.settings.app_env = "development"
        body = boom_client.get("/boom/crash").json()
        assert body["error"] == "Request failed"
        assert "password_hash" not in body["details"]
        assert "/var/lib/pg" not in body["details"]

    def test_unknown_route_uses_envelope(self, boom_client):
        resp = boom_client.get("/no/such/page")
        assert resp.status_code == 404
        assert resp.json() == {"success": False, "error": "Not Found"}
