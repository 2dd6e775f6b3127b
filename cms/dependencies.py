from fastapi import Depends, Request
from fastapi.security import HTTPAuthorizationCredentials, HTTPBearer
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.exceptions import AuthenticationError, AuthorizationError
from cms.models import User
from cms.permissions import get_cached_roles, has_any_permission
from cms.services import auth_service

bearer_scheme = HTTPBearer(auto_error=False)


async def _publish_user(request: Request, db: AsyncSession, user: User) -> None:
    # Read by the API logger and the exception handler.
    request.state.user_id = user.id
    request.state.user = {
        "id": user.id,
        "email": user.email,
        "roles": await get_cached_roles(db, user.id),
    }


async def get_current_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User:
    """Resolve the bearer access token or raise 401."""
    if credentials is None or not credentials.credentials:
        raise AuthenticationError()
    user = await auth_service.authenticate(db, credentials.credentials)
    await _publish_user(request, db, user)
    return user


async def get_optional_user(
    request: Request,
    credentials: HTTPAuthorizationCredentials | None = Depends(bearer_scheme),
    db: AsyncSession = Depends(get_db),
) -> User | None:
    """Like ``get_current_user`` but anonymous requests (or bad tokens) yield None."""
    if credentials is None or not credentials.credentials:
        return None
    try:
        user = await auth_service.authenticate(db, credentials.credentials)
    except (AuthenticationError, AuthorizationError):
        return None
    await _publish_user(request, db, user)
    return user


def require_permission(*permissions: str):
    """
    Dependency factory: the current user must hold at least one of
    *permissions*, otherwise 403.

    Usage::

        @router.post("", dependencies=[Depends(require_permission("manage_tags"))])
    """

    async def _check(
        user: User = Depends(get_current_user),
        db: AsyncSession = Depends(get_db),
    ) -> User:
        if not await has_any_permission(db, user.id, list(permissions)):
            raise AuthorizationError()
        return user

    return _check


def request_path(request: Request) -> str:
    """Absolute URL of the current endpoint without its query string (pagination ``meta.path``)."""
    return str(request.url.replace(query=""))
