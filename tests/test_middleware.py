"""Tests for pure ASGI middleware (middleware.py).

Tests each middleware in isolation using Starlette test utilities.
"""

import os
from unittest.mock import patch

from starlette.applications import Starlette
from starlette.requests import Request
from starlette.responses import JSONResponse
from starlette.routing import Route
from starlette.testclient import TestClient


def _ok_app(request: Request) -> JSONResponse:
    """Simple handler that returns 200 OK."""
    return JSONResponse({"ok": True})


def _error_app(request: Request):
    """Handler that raises an unhandled exception."""
    raise RuntimeError("Intentional test error")


def _client(middleware, path="/test", handler=_ok_app, methods=None, **kwargs):
    app = Starlette(routes=[Route(path, handler, methods=methods or ["GET"])])
    app.add_middleware(middleware)
    return TestClient(app, **kwargs)


class TestRequestLoggingMiddleware:
    def test_adds_request_id_header(self):
        """Response includes X-Request-ID header."""
        from src.api.middleware import RequestLoggingMiddleware

        resp = _client(RequestLoggingMiddleware).get("/test")
        assert "x-request-id" in resp.headers

    def test_preserves_existing_request_id(self):
        """If client sends X-Request-ID, it is preserved."""
        from src.api.middleware import RequestLoggingMiddleware

        resp = _client(RequestLoggingMiddleware).get("/test", headers={"X-Request-ID": "custom-id-42"})
        assert resp.headers["x-request-id"] == "custom-id-42"

    def test_adds_response_time_header(self):
        """Response includes X-Response-Time-Ms header."""
        from src.api.middleware import RequestLoggingMiddleware

        resp = _client(RequestLoggingMiddleware).get("/test")
        ms = float(resp.headers["x-response-time-ms"])
        assert ms >= 0

    def test_emits_access_log_line(self):
        """One JSON access line per request, with method, path and status."""
        import json

        from src.api.middleware import RequestLoggingMiddleware, _access_logger

        with patch.object(_access_logger, "info") as info:
            _client(RequestLoggingMiddleware).get("/test")
        record = json.loads(info.call_args.args[0])
        assert record["method"] == "GET"
        assert record["path"] == "/test"
        assert record["status"] == 200


class TestErrorHandlingMiddleware:
    def test_returns_500_json_on_unhandled_exception(self):
        """Unhandled exceptions return structured 500 JSON."""
        from src.api.middleware import ErrorHandlingMiddleware

        client = _client(ErrorHandlingMiddleware, "/error", _error_app, raise_server_exceptions=False)
        resp = client.get("/error")
        assert resp.status_code == 500
        data = resp.json()
        assert data["error"]["code"] == "internal_error"
        assert "Intentional" not in data["error"]["message"]

    def test_passes_through_normal_requests(self):
        """Normal requests pass through without modification."""
        from src.api.middleware import ErrorHandlingMiddleware

        resp = _client(ErrorHandlingMiddleware).get("/test")
        assert resp.status_code == 200
        assert resp.json() == {"ok": True}


class TestSecurityHeadersMiddleware:
    def test_all_security_headers_present(self):
        """All expected security headers are set on responses."""
        from src.api.middleware import SecurityHeadersMiddleware

        resp = _client(SecurityHeadersMiddleware).get("/test")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "DENY"
        assert resp.headers["referrer-policy"] == "no-referrer"
        assert "max-age=" in resp.headers["strict-transport-security"]
        assert "default-src 'none'" in resp.headers["content-security-policy"]


class TestApiKeyMiddleware:
    def test_disabled_without_configured_key(self):
        from src.api.middleware import ApiKeyMiddleware

        resp = _client(ApiKeyMiddleware).get("/test")
        assert resp.status_code == 200

    def test_rejects_missing_key(self):
        from src.api.middleware import ApiKeyMiddleware

        with patch.dict(os.environ, {"API_KEY": "s3cret"}):
            resp = _client(ApiKeyMiddleware).get("/test")
        assert resp.status_code == 401
        assert resp.json()["error"]["code"] == "unauthorized"

    def test_rejects_wrong_key(self):
        from src.api.middleware import ApiKeyMiddleware

        with patch.dict(os.environ, {"API_KEY": "s3cret"}):
            resp = _client(ApiKeyMiddleware).get("/test", headers={"X-API-Key": "nope"})
        assert resp.status_code == 401

    def test_accepts_valid_key(self):
        from src.api.middleware import ApiKeyMiddleware

        with patch.dict(os.environ, {"API_KEY": "s3cret"}):
            resp = _client(ApiKeyMiddleware).get("/test", headers={"X-API-Key": "s3cret"})
        assert resp.status_code == 200

    def test_health_is_public(self):
        from src.api.middleware import ApiKeyMiddleware

        with patch.dict(os.environ, {"API_KEY": "s3cret"}):
            resp = _client(ApiKeyMiddleware, "/health").get("/health")
        assert resp.status_code == 200


class TestRequestBodyLimitMiddleware:
    def test_rejects_oversized_body(self):
        from src.api.middleware import RequestBodyLimitMiddleware

        with patch.dict(os.environ, {"MAX_REQUEST_BODY_SIZE": "100"}):
            client = _client(RequestBodyLimitMiddleware, methods=["POST"])
            resp = client.post("/test", content=b"x" * 101)
        assert resp.status_code == 413
        assert resp.json()["error"]["code"] == "payload_too_large"

    def test_allows_body_within_limit(self):
        from src.api.middleware import RequestBodyLimitMiddleware

        with patch.dict(os.environ, {"MAX_REQUEST_BODY_SIZE": "100"}):
            client = _client(RequestBodyLimitMiddleware, methods=["POST"])
            resp = client.post("/test", content=b"x" * 100)
        assert resp.status_code == 200

    def test_rejects_invalid_content_length(self):
        from src.api.middleware import RequestBodyLimitMiddleware

        client = _client(RequestBodyLimitMiddleware, methods=["POST"])
        resp = client.post("/test", headers={"Content-Length": "abc"})
        assert resp.status_code == 400

    def test_rejects_chunked_body(self):
        from src.api.middleware import RequestBodyLimitMiddleware

        def chunks():
            yield b"x" * 10

        client = _client(RequestBodyLimitMiddleware, methods=["POST"])
        resp = client.post("/test", content=chunks())
        assert resp.status_code == 411

    def test_get_without_body_passes(self):
        from src.api.middleware import RequestBodyLimitMiddleware

        resp = _client(RequestBodyLimitMiddleware).get("/test")
        assert resp.status_code == 200
