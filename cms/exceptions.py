"""
Domain exceptions raised by the service layer.

Routers never catch these; the global handler registered in
``cms.main`` turns them into the JSON error envelope through
``cms.services.exception_handler``.
"""


class AppError(Exception):
    """Base class for every error the API renders deliberately."""

    status_code: int = 500
    default_message: str = "Something went wrong."

    def __init__(self, message: str | None = None) -> None:
        self.message = message or self.default_message
        super().__init__(self.message)


class NotFoundError(AppError):
    """A lookup by id / slug / token found nothing.  *model* names the entity."""

    status_code = 404
    default_message = "Resource not found."

    def __init__(self, model: str | None = None, message: str | None = None) -> None:
        self.model = model
        super().__init__(message)


class AuthenticationError(AppError):
    status_code = 401
    default_message = "Unauthenticated."


class AuthorizationError(AppError):
    status_code = 403
    default_message = "This action is unauthorized."


class ValidationError(AppError):
    """Business-rule validation failure with per-field messages."""

    status_code = 422
    default_message = "The given data was invalid."

    def __init__(self, errors: dict[str, list[str]] | None = None, message: str | None = None) -> None:
        self.errors = errors or {}
        if message is None and self.errors:
            first = next(iter(self.errors.values()))
            message = first[0] if first else None
        super().__init__(message)
