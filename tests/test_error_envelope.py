"""Tests for the JSON error shapes and the app-level middleware."""

import json

import pytest
from fastapi.middleware.cors import CORSMiddleware
from fastapi.testclient import TestClient

from schoolgate.api.error_handling import service_error_response
from schoolgate.app import app
from schoolgate.service.errors import (
    AccountLockedError,
    AuthenticationError,
    ChildAccessDeniedError,
    ChildIdInvalidError,
    DependencyUnavailableError,
    NotFoundError,
    RateLimitedError,
)


def _body(response):
    return json.loads(response.body)


class TestServiceErrorResponse:
    def test_plain_error_shape(self):
        resp = service_error_response(AuthenticationError("Access token required"))
        assert resp.status_code == 401
        assert _body(resp) == {"error": "Access token required"}

    def test_locked_and_not_found(self):
        assert service_error_response(AccountLockedError("locked")).status_code == 423
        assert service_error_response(NotFoundError("gone")).status_code == 404

    def test_child_errors_use_success_envelope(self):
        denied = service_error_response(ChildAccessDeniedError())
        assert denied.status_code == 403
        assert _body(denied) == {
            "success": False,
            "message": "Invalid child ID or access denied",
        }
        invalid = service_error_response(ChildIdInvalidError("Invalid child ID"))
        assert invalid.status_code == 400
        assert _body(invalid) == {"success": False, "message": "Invalid child ID"}

    def test_rate_limit_shape(self):
        resp = service_error_response(
            RateLimitedError(
                "Too many user requests. Please try again later.",
                limit_type="user",
                limit=500,
                retry_after=120,
            )
        )
        assert resp.status_code == 429
        assert resp.headers["Retry-After"] == "120"
        assert _body(resp) == {
            "error": "Too many user requests. Please try again later.",
            "type": "user",
            "limit": 500,
            "retryAfter": 120,
        }

    def test_rate_limit_shape_with_current(self):
        resp = service_error_response(
            RateLimitedError(
                "File limit exceeded. You can upload 100 files per hour.",
                limit_type="file_upload_files",
                limit=100,
                retry_after=60,
                current=98,
            )
        )
        assert _body(resp)["current"] == 98

    def test_server_errors_are_generic(self):
        resp = service_error_response(
            DependencyUnavailableError("connection refused to db-01:5432")
        )
        assert resp.status_code == 500
        assert _body(resp) == {"error": "Internal server error"}


class TestAppHandlers:
    @pytest.fixture
    def client(self):
        return TestClient(app, raise_server_exceptions=False)

    def test_uncaught_exception_is_generic_500(self, client, runtime, school, monkeypatch):
        def boom(principal):
            raise RuntimeError("secret stack detail")

        monkeypatch.setattr(runtime.auth, "get_profile", boom)
        headers = {"Authorization": f"Bearer {runtime.codec.sign(school['student'].id)}"}
        resp = client.get("/api/user/profile", headers=headers)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}
        assert "secret" not in resp.text

    def test_dependency_failure_is_generic_500(self, client, runtime, school, monkeypatch):
        def unavailable(principal):
            raise DependencyUnavailableError("pool exhausted")

        monkeypatch.setattr(runtime.auth, "get_profile", unavailable)
        headers = {"Authorization": f"Bearer {runtime.codec.sign(school['student'].id)}"}
        resp = client.get("/api/user/profile", headers=headers)
        assert resp.status_code == 500
        assert resp.json() == {"error": "Internal server error"}

    def test_malformed_body_is_400(self, client, school):
        resp = client.post(
            "/api/auth/send-otp",
            content=b"{not json",
            headers={"Content-Type": "application/json"},
        )
        assert resp.status_code == 400
        assert "error" in resp.json()

    def test_unknown_route_is_404(self, client):
        resp = client.get("/api/nope")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Not Found"}

    def test_request_id_is_echoed(self, client, school):
        resp = client.get("/api/user/profile", headers={"X-Request-ID": "req-123"})
        assert resp.headers["X-Request-ID"] == "req-123"

    def test_request_id_is_generated(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Request-ID"]

    def test_security_headers(self, client):
        resp = client.get("/health")
        assert resp.headers["X-Content-Type-Options"] == "nosniff"
        assert resp.headers["X-Frame-Options"] == "DENY"
        assert "no-store" in resp.headers["Cache-Control"]


class TestHealth:
    def test_health_reports_dependencies(self):
        with TestClient(app) as client:
            resp = client.get("/health")
        assert resp.status_code == 200
        body = resp.json()
        assert body["status"] == "healthy"
        assert body["checks"]["store"] == {"status": "healthy", "type": "MemoryStore"}
        assert body["checks"]["cache"] == {"status": "healthy", "type": "MemoryCache"}
        assert body["timestamp"]


class TestCors:
    def test_quota_headers_are_exposed(self):
        cors = next(m for m in app.user_middleware if m.cls is CORSMiddleware)
        exposed = set(cors.kwargs["expose_headers"])
        assert {
            "Retry-After",
            "X-RateLimit-Remaining",
            "X-FileUpload-Requests-Remaining",
            "X-FileUpload-Files-Remaining",
            "X-FileUpload-Size-Remaining",
        } <= exposed
