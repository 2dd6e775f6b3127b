import ipaddress
import json
import logging
import time
import uuid
from contextvars import ContextVar

from sqlalchemy import event
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from cms.config import settings

api_logger = logging.getLogger("cms.api")

MASK = "***MASKED***"

# Checked in order; the first valid IP wins.
CLIENT_IP_HEADERS: tuple[str, ...] = (
    "cf-connecting-ip",
    "true-client-ip",
    "x-forwarded-for",
    "x-real-ip",
    "x-client-ip",
    "x-forwarded",
    "x-cluster-client-ip",
)

# ---------------------------------------------------------------------------
# Per-request context variable
# ---------------------------------------------------------------------------

query_count_var: ContextVar[int] = ContextVar("query_count", default=0)


def install_query_counter(engine) -> None:
    """
    Register a ``before_cursor_execute`` listener on *engine* that
    increments ``query_count_var`` for every SQL statement, including
    those issued by eager-loading strategies.

    Must be called once per engine.
    """
    sync_engine = engine.sync_engine

    @event.listens_for(sync_engine, "before_cursor_execute")
    def _count_query(conn, cursor, statement, parameters, context, executemany):
        query_count_var.set(query_count_var.get() + 1)


# ---------------------------------------------------------------------------
# Client IP resolution
# ---------------------------------------------------------------------------

def _valid_ip(value: str) -> str | None:
    value = value.strip()
    try:
        ipaddress.ip_address(value)
    except ValueError:
        return None
    return value


def client_ip_from_scope(scope: Scope) -> str | None:
    """
    Return the originating client IP for an ASGI *scope*.

    Proxy/CDN headers are consulted first (only the left-most entry of
    ``X-Forwarded-For``), falling back to the socket peer address.
    """
    headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
    for name in CLIENT_IP_HEADERS:
        raw = headers.get(name)
        if not raw:
            continue
        if name == "x-forwarded-for":
            raw = raw.split(",")[0]
        ip = _valid_ip(raw)
        if ip:
            return ip
    client = scope.get("client")
    if client:
        return client[0]
    return None


def get_client_ip(request) -> str | None:
    return client_ip_from_scope(request.scope)


# ---------------------------------------------------------------------------
# Masking helpers (API logger)
# ---------------------------------------------------------------------------

def mask_headers(headers: dict[str, str], masked: list[str] | None = None) -> dict[str, str]:
    masked_keys = {k.lower() for k in (masked if masked is not None else settings.API_LOGGER_MASKED_HEADERS)}
    return {k: (MASK if k.lower() in masked_keys else v) for k, v in headers.items()}


def mask_body(body, masked: list[str] | None = None):
    """Recursively replace values whose key is in the masked list."""
    masked_keys = {k.lower() for k in (masked if masked is not None else settings.API_LOGGER_MASKED_BODY_KEYS)}

    def _mask(value):
        if isinstance(value, dict):
            return {
                k: (MASK if str(k).lower() in masked_keys else _mask(v))
                for k, v in value.items()
            }
        if isinstance(value, list):
            return [_mask(v) for v in value]
        return value

    return _mask(body)


# Bodies of any other content type (uploads, binaries) are never buffered.
_LOGGABLE_CONTENT_TYPES: tuple[str, ...] = ("application/json", "text/")


def _loggable(content_type: str) -> bool:
    return any(t in content_type for t in _LOGGABLE_CONTENT_TYPES)


def _decode_body(raw: bytes, content_type: str):
    if not raw:
        return None
    if "application/json" in content_type:
        try:
            return json.loads(raw)
        except ValueError:
            # Truncated at the buffer cap
            return raw[:512].decode("utf-8", "replace")
    return raw[:512].decode("utf-8", "replace")


# ---------------------------------------------------------------------------
# Middleware (pure ASGI; avoids BaseHTTPMiddleware ContextVar isolation)
# ---------------------------------------------------------------------------

class TimingMiddleware:
    """
    Adds ``X-Response-Time-Ms`` and ``X-Query-Count`` diagnostic headers.

    Being pure ASGI, it runs the inner app in the same task, so the
    ``ContextVar`` mutations made by the query counter are visible here.
    """

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        query_count_var.set(0)
        start = time.perf_counter()

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                duration_ms = round((time.perf_counter() - start) * 1000, 2)
                headers = list(message.get("headers", []))
                headers.append((b"x-response-time-ms", str(duration_ms).encode()))
                headers.append((b"x-query-count", str(query_count_var.get()).encode()))
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


class SecurityHeadersMiddleware:
    """Adds browser hardening headers to every HTTP response."""

    API_CSP = (
        "default-src 'self'; script-src 'none'; style-src 'none'; "
        "img-src 'self' data: https:; font-src 'self' data:; "
        "connect-src 'self'; frame-ancestors 'none';"
    )
    DOCS_CSP = (
        "default-src 'self'; script-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; "
        "style-src 'self' 'unsafe-inline' https://cdn.jsdelivr.net; img-src 'self' data: https:; "
        "font-src 'self' data:; connect-src 'self'; frame-ancestors 'self';"
    )
    DOCS_PATHS = ("/docs", "/redoc", "/openapi.json")

    def __init__(self, app: ASGIApp) -> None:
        self.app = app

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http":
            await self.app(scope, receive, send)
            return

        path = scope.get("path", "")
        csp = self.DOCS_CSP if path.startswith(self.DOCS_PATHS) else self.API_CSP
        secure = scope.get("scheme") == "https" and settings.APP_ENV != "local"

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                headers = list(message.get("headers", []))
                headers.extend([
                    (b"x-frame-options", b"SAMEORIGIN"),
                    (b"x-content-type-options", b"nosniff"),
                    (b"x-xss-protection", b"1; mode=block"),
                    (b"referrer-policy", b"strict-origin-when-cross-origin"),
                    (b"content-security-policy", csp.encode()),
                    (b"permissions-policy", b"geolocation=(), microphone=(), camera=()"),
                ])
                if secure:
                    headers.append(
                        (b"strict-transport-security", b"max-age=31536000; includeSubDomains; preload")
                    )
                message["headers"] = headers
            await send(message)

        await self.app(scope, receive, send_wrapper)


class ApiLoggerMiddleware:
    """
    Logs one structured line per API request on the ``cms.api`` logger.

    Captures request id (``X-Request-Id`` or a generated one), the
    authenticated user id (published by the auth dependency on
    ``request.state``), client IP, method, URI, masked headers and
    bodies, status and duration. Only JSON and text bodies are captured,
    up to ``API_LOGGER_MAX_BODY_BYTES`` each. The request id is echoed
    back in the ``X-Request-Id`` response header.
    """

    def __init__(self, app: ASGIApp, enabled: bool | None = None) -> None:
        self.app = app
        self.enabled = settings.API_LOGGER_ENABLED if enabled is None else enabled

    async def __call__(self, scope: Scope, receive: Receive, send: Send) -> None:
        if scope["type"] != "http" or not self.enabled:
            await self.app(scope, receive, send)
            return

        headers = {k.decode("latin-1").lower(): v.decode("latin-1") for k, v in scope.get("headers", [])}
        request_id = headers.get("x-request-id") or f"req_{uuid.uuid4().hex}"
        state = scope.setdefault("state", {})
        start = time.perf_counter()
        max_bytes = settings.API_LOGGER_MAX_BODY_BYTES
        request_type = headers.get("content-type", "")
        request_body = bytearray()
        response_body = bytearray()
        response_meta: dict = {"status": 500, "content_type": ""}

        def _capture(buffer: bytearray, chunk: bytes) -> None:
            room = max_bytes - len(buffer)
            if room > 0:
                buffer.extend(chunk[:room])

        async def receive_wrapper() -> Message:
            message = await receive()
            if message["type"] == "http.request" and _loggable(request_type):
                _capture(request_body, message.get("body", b""))
            return message

        async def send_wrapper(message: Message) -> None:
            if message["type"] == "http.response.start":
                response_meta["status"] = message["status"]
                out_headers = list(message.get("headers", []))
                for key, value in out_headers:
                    if key.lower() == b"content-type":
                        response_meta["content_type"] = value.decode("latin-1")
                out_headers.append((b"x-request-id", request_id.encode()))
                message["headers"] = out_headers
            elif message["type"] == "http.response.body" and _loggable(response_meta["content_type"]):
                _capture(response_body, message.get("body", b""))
            await send(message)

        try:
            await self.app(scope, receive_wrapper, send_wrapper)
        finally:
            query = scope.get("query_string", b"").decode("latin-1")
            entry = {
                "request_id": request_id,
                "user_id": state.get("user_id"),
                "ip": client_ip_from_scope(scope),
                "method": scope.get("method"),
                "uri": scope.get("path", "") + (f"?{query}" if query else ""),
                "headers": mask_headers(headers),
                "body": mask_body(_decode_body(bytes(request_body), request_type)),
                "response_status": response_meta["status"],
                "response_body": mask_body(_decode_body(bytes(response_body), response_meta["content_type"])),
                "duration_ms": round((time.perf_counter() - start) * 1000, 2),
            }
            api_logger.info("API request %s", json.dumps(entry, default=str), extra={"context": entry})
