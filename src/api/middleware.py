"""Pure ASGI middleware for the compliance gateway API.

Uses raw ASGI middleware (NOT BaseHTTPMiddleware). Provides request
logging, error handling, security headers, API-key auth and a request body
size limit.
"""

import asyncio
import hmac
import json
import logging
import time
import uuid

from starlette.types import ASGIApp, Message, Receive, Scope, Send

from src.config import get_settings

from .errors import ErrorCode, error_response

logger = logging.getLogger(__name__)

# Paths that never require an API key (health checks).
_PUBLIC_PATHS = frozenset({"/health"})


def _get_access_logger() -> logging.Logger:
    """Return a logger configured for structured JSON output."""
    log = logging.getLogger("compliance.access")
    if not log.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(message)s"))
        log.addHandler(handler)
        log.setLevel(logging.INFO)
        log.propagate = False
    return log


_access_logger = _get_access_logger()


async def _send_json(send: Send, status: int, body_dict: dict, extra_headers: list | None = None) -> None:
    body = json.dumps(body_dict).encode()
    await send(
        {
            "type": "http.response.start",
            "status": status,
            "headers": [
                (b"content-type", b"application/json"),
                (b"content-length", str(len(body)).encode()),
                *(extra_headers or []),
            ],
        }
    )
    await send({"type": "http.response.body", "body": body})


class RequestLoggingMiddleware:
    """Pure ASGI middleware for structured request logging.

    Injects X-Request-ID, emits a JSON log line per request,
    and adds X-Response-Time-Ms header.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        request_id = headers.get(b"x-request-id", b"").decode() or str(uuid.uuid4())[:8]
        start_time = time.monotonic()
        method = scope.get("method", "?")
        path = scope.get("path", "/")

        status_code: int | None = None

        async def send_wrapper(message: Message) -> None:
            nonlocal status_code
            if message["type"] == "http.response.start":
                status_code = message.get("status", 0)
                duration_ms = (time.monotonic() - start_time) * 1000
                extra_headers = [
                    (b"x-request-id", request_id.encode()),
                    (b"x-response-time-ms", f"{duration_ms:.1f}".encode()),
                ]
                message["headers"] = list(message.get("headers", [])) + extra_headers
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        finally:
            duration_ms = (time.monotonic() - start_time) * 1000
            _access_logger.info(
                json.dumps(
                    {
                        "severity": "INFO",
                        "request_id": request_id,
                        "method": method,
                        "path": path,
                        "status": status_code,
                        "duration_ms": round(duration_ms, 1),
                    }
                )
            )


class ErrorHandlingMiddleware:
    """Catch unhandled exceptions and return a structured 500 JSON body.

    Prevents stack traces from leaking to clients.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        response_started = False

        async def send_wrapper(message: Message) -> None:
            nonlocal response_started
            if message["type"] == "http.response.start":
                response_started = True
            await send(message)

        try:
            await self.app(scope, receive, send_wrapper)
        except asyncio.CancelledError:
            logger.info(
                "Client disconnected: %s %s",
                scope.get("method", "?"),
                scope.get("path", "/"),
            )
        except Exception:
            logger.exception(
                "Unhandled exception on %s %s",
                scope.get("method", "?"),
                scope.get("path", "/"),
            )
            if not response_started:
                await _send_json(
                    send,
                    500,
                    error_response(ErrorCode.INTERNAL_ERROR, "An unexpected error occurred."),
                )


class SecurityHeadersMiddleware:
    """Add security headers to every HTTP response."""

    HEADERS = [
        (b"x-content-type-options", b"nosniff"),
        (b"x-frame-options", b"DENY"),
        (b"referrer-policy", b"no-referrer"),
        (b"strict-transport-security", b"max-age=31536000; includeSubDomains"),
        (b"content-security-policy", b"default-src 'none'; frame-ancestors 'none'"),
    ]

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                message["headers"] = list(message.get("headers", [])) + list(self.HEADERS)
            await send(message)

        await self.app(scope, receive, send_wrapper)


class ApiKeyMiddleware:
    """Require ``X-API-Key`` on every route except health checks.

    Disabled when ``API_KEY`` is empty (local development). The key is read
    per request so rotated settings take effect without a restart.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or scope.get("path", "/") in _PUBLIC_PATHS:
            await self.app(scope, receive, send)
            return

        expected = get_settings().API_KEY.get_secret_value()
        if not expected:
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        provided = headers.get(b"x-api-key", b"").decode()
        if provided and hmac.compare_digest(provided, expected):
            await self.app(scope, receive, send)
            return

        logger.warning("Rejected request without valid API key: %s", scope.get("path", "/"))
        await _send_json(send, 401, error_response(ErrorCode.UNAUTHORIZED, "Invalid or missing API key."))


class RequestBodyLimitMiddleware:
    """Reject requests whose ``Content-Length`` exceeds ``MAX_REQUEST_BODY_SIZE``.

    Chunked uploads (``Transfer-Encoding`` without ``Content-Length``) are
    rejected with 411 since their size cannot be checked up front.
    """

    _BODY_METHODS = frozenset({"POST", "PUT", "PATCH", "DELETE"})

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        headers = dict(scope.get("headers", []))
        content_length = headers.get(b"content-length")
        if content_length is None:
            if scope.get("method") in self._BODY_METHODS and headers.get(b"transfer-encoding"):
                await _send_json(
                    send,
                    411,
                    error_response(ErrorCode.VALIDATION_ERROR, "Content-Length required."),
                )
                return
            await self.app(scope, receive, send)
            return

        try:
            declared = int(content_length)
        except ValueError:
            declared = -1
        if declared < 0:
            await _send_json(send, 400, error_response(ErrorCode.VALIDATION_ERROR, "Invalid Content-Length."))
            return
        if declared > get_settings().MAX_REQUEST_BODY_SIZE:
            await _send_json(send, 413, error_response(ErrorCode.PAYLOAD_TOO_LARGE, "Request body too large."))
            return

        await self.app(scope, receive, send)
