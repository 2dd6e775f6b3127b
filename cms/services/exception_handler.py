"""
Exception handler service: one place that turns any exception into the
JSON error envelope and decides how (and whether) to log it.

Design notes
------------
- Status codes come from a fixed lookup (``determine_status_code``);
  anything unrecognised is a 500 and never leaks its message.
- Validation failures are expected client errors and are not logged.
  Missing records and authentication failures log at WARNING, the rest
  at ERROR with the traceback.
- Log context never contains secrets: keys listed in ``SENSITIVE_KEYS``
  are replaced before the record is emitted.
"""
import json
import logging
from typing import Any

from fastapi import FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from sqlalchemy.exc import IntegrityError
from starlette.exceptions import HTTPException as StarletteHTTPException
from starlette.types import ASGIApp, Message, Receive, Scope, Send

from cms.config import settings
from cms.exceptions import (
    AppError,
    AuthenticationError,
    AuthorizationError,
    NotFoundError,
    ValidationError,
)
from cms.middleware import get_client_ip
from cms.responses import api_error

logger = logging.getLogger(__name__)

REDACTED = "***REDACTED***"

SENSITIVE_KEYS: frozenset[str] = frozenset(
    {"password", "password_confirmation", "current_password", "token", "secret", "api_key"}
)

MODEL_NOT_FOUND_MESSAGES: dict[str, str] = {
    "Article": "Article not found.",
    "User": "User not found.",
    "Comment": "Comment not found.",
    "Category": "Category not found.",
    "Tag": "Tag not found.",
    "Media": "Media not found.",
    "NewsletterSubscriber": "Newsletter subscriber not found.",
    "Notification": "Notification not found.",
    "Role": "Role not found.",
    "Permission": "Permission not found.",
}

NOT_FOUND_MESSAGE = "Resource not found."
UNAUTHENTICATED_MESSAGE = "Unauthenticated."
FORBIDDEN_MESSAGE = "This action is unauthorized."
VALIDATION_MESSAGE = "The given data was invalid."
CONFLICT_MESSAGE = "The given data conflicts with an existing record."
SERVER_ERROR_MESSAGE = "Something went wrong."


def _format_loc(loc: tuple) -> str:
    parts = [str(p) for p in loc if p not in ("body", "query", "path", "header", "form", "cookie")]
    return ".".join(parts) or "request"


def validation_errors(exc: RequestValidationError) -> dict[str, list[str]]:
    """Collapse pydantic error entries to ``{field: [messages]}``."""
    errors: dict[str, list[str]] = {}
    for err in exc.errors():
        msg = err.get("msg", "Invalid value.")
        # "Value error, <msg>" comes from model validators
        if msg.startswith("Value error, "):
            msg = msg[len("Value error, "):]
        errors.setdefault(_format_loc(tuple(err.get("loc", ()))), []).append(msg)
    return errors


class ExceptionHandlerService:
    def handle(
        self,
        exc: Exception,
        request: Request | None = None,
        custom_message: str | None = None,
        context: str | None = None,
    ) -> JSONResponse:
        """Log *exc* per policy and render the error envelope."""
        status_code = self.determine_status_code(exc)
        if self.should_log(exc):
            self.log_exception(exc, request, context)

        message = custom_message or self.determine_message(exc, status_code)
        errors = None
        if isinstance(exc, ValidationError):
            errors = exc.errors or None
        elif isinstance(exc, RequestValidationError):
            errors = validation_errors(exc)
            first = next(iter(errors.values()), [None])[0]
            if custom_message is None and first:
                message = first
        return api_error(message, status_code, error=errors)

    # ------------------------------------------------------------------
    # Classification
    # ------------------------------------------------------------------

    def determine_status_code(self, exc: Exception) -> int:
        if isinstance(exc, AuthenticationError):
            return 401
        if isinstance(exc, NotFoundError):
            return 404
        if isinstance(exc, AuthorizationError):
            return 403
        if isinstance(exc, (ValidationError, RequestValidationError, IntegrityError)):
            return 422
        if isinstance(exc, AppError):
            return exc.status_code
        if isinstance(exc, StarletteHTTPException):
            return exc.status_code
        return 500

    def determine_message(self, exc: Exception, status_code: int) -> str:
        if isinstance(exc, NotFoundError):
            if exc.message != exc.default_message:
                return exc.message
            return MODEL_NOT_FOUND_MESSAGES.get(exc.model or "", NOT_FOUND_MESSAGE)
        if isinstance(exc, AppError):
            return exc.message
        if isinstance(exc, RequestValidationError):
            return VALIDATION_MESSAGE
        if isinstance(exc, IntegrityError):
            return CONFLICT_MESSAGE
        if isinstance(exc, StarletteHTTPException):
            if status_code == 404:
                return NOT_FOUND_MESSAGE
            return exc.detail if isinstance(exc.detail, str) else SERVER_ERROR_MESSAGE
        return SERVER_ERROR_MESSAGE

    def should_log(self, exc: Exception) -> bool:
        return not isinstance(exc, (ValidationError, RequestValidationError))

    def log_level(self, exc: Exception) -> int:
        if isinstance(exc, (NotFoundError, AuthenticationError)):
            return logging.WARNING
        if isinstance(exc, StarletteHTTPException) and exc.status_code < 500:
            return logging.WARNING
        return logging.ERROR

    # ------------------------------------------------------------------
    # Logging
    # ------------------------------------------------------------------

    def build_log_message(self, exc: Exception, context: str | None = None) -> str:
        prefix = f"{context}: " if context else ""
        if isinstance(exc, NotFoundError):
            return f"{prefix}{exc.model or 'Model'} not found"
        if isinstance(exc, AuthenticationError):
            return f"{prefix}Authentication failed"
        if isinstance(exc, AuthorizationError):
            return f"{prefix}Authorization failed"
        return f"{prefix}Exception occurred"

    def build_log_context(
        self, exc: Exception, request: Request | None = None, context: str | None = None
    ) -> dict[str, Any]:
        log_context: dict[str, Any] = {}
        if context is not None:
            log_context["context"] = context

        if request is not None:
            route = request.scope.get("route")
            log_context["request"] = {
                "method": request.method,
                "url": str(request.url),
                "ip": get_client_ip(request),
                "user_agent": request.headers.get("user-agent"),
                "route": getattr(route, "name", None),
                "route_params": dict(request.path_params),
                "input": self.sanitize(dict(request.query_params)),
            }
            user = getattr(request.state, "user", None)
            if user:
                log_context["user"] = user

        log_context["environment"] = {"app_env": settings.APP_ENV, "app_debug": settings.DEBUG}

        previous = exc.__cause__ or exc.__context__
        if previous is not None:
            log_context["previous_exception"] = {
                "class": type(previous).__name__,
                "message": str(previous),
            }
        return log_context

    def log_exception(self, exc: Exception, request: Request | None = None, context: str | None = None) -> None:
        level = self.log_level(exc)
        log_context = self.build_log_context(exc, request, context)
        logger.log(
            level,
            "%s %s",
            self.build_log_message(exc, context),
            json.dumps(log_context, default=str),
            extra={"context": log_context},
            exc_info=exc if level >= logging.ERROR else None,
        )

    def sanitize(self, data: dict[str, Any]) -> dict[str, Any]:
        """Return a copy of *data* with sensitive values redacted (recursively)."""
        clean: dict[str, Any] = {}
        for key, value in data.items():
            if str(key).lower() in SENSITIVE_KEYS:
                clean[key] = REDACTED
            elif isinstance(value, dict):
                clean[key] = self.sanitize(value)
            else:
                clean[key] = value
        return clean


exception_handler = ExceptionHandlerService()


# ---------------------------------------------------------------------------
# FastAPI wiring
# ---------------------------------------------------------------------------

async def _handle(request: Request, exc: Exception) -> JSONResponse:
    return exception_handler.handle(exc, request)


class UnhandledExceptionMiddleware:
    """
    Renders exceptions no handler claimed as the generic 500 envelope.

    Installed innermost, so the CORS, security and request-id middleware
    still decorate the error response. Once the response has started
    the exception is re-raised for the server to deal with.
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
        except Exception as exc:
            if response_started:
                raise
            response = exception_handler.handle(exc, Request(scope))
            await response(scope, receive, send)


def setup_exception_handlers(app: FastAPI) -> None:
    """
    Route every exception type the API renders through the service.

    Call before adding the other middleware so the 500 renderer sits
    inside them.
    """
    app.add_exception_handler(AppError, _handle)
    app.add_exception_handler(RequestValidationError, _handle)
    app.add_exception_handler(StarletteHTTPException, _handle)
    app.add_exception_handler(IntegrityError, _handle)
    app.add_middleware(UnhandledExceptionMiddleware)
    logger.debug("Exception handlers registered")
