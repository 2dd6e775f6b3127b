"""
Authentication service — registration, opaque bearer tokens and
password resets.

Design notes
------------
- Tokens are random strings handed to the client once; only their
  SHA-256 digest is stored, so a database leak does not leak sessions.
- Login issues a short-lived access token (ability ``access-api``) and a
  long-lived refresh token (ability ``refresh-token``), replacing any
  tokens the user already had.
- ``forgot_password`` answers identically whether or not the email is
  registered so the endpoint cannot be used to enumerate accounts.
"""
import logging
from datetime import timedelta

from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms.config import settings
from cms.enums import TokenAbility
from cms.events import PasswordResetRequested, UserRegistered, bus
from cms.exceptions import AuthenticationError, AuthorizationError, ValidationError
from cms.models import PasswordResetToken, PersonalAccessToken, User
from cms.permissions import clear_user_cache
from cms.schemas import RegisterRequest
from cms.security import generate_token, hash_password, hash_token, tokens_match, verify_password
from cms.services import user_service
from cms.utils import as_utc, isoformat, utcnow

logger = logging.getLogger(__name__)

ACCESS_TOKEN_NAME = "access_token"
REFRESH_TOKEN_NAME = "refresh_token"


# ---------------------------------------------------------------------------
# Token helpers
# ---------------------------------------------------------------------------

async def _issue_token(
    db: AsyncSession, user_id: int, name: str, ability: TokenAbility, minutes: int
) -> tuple[str, PersonalAccessToken]:
    plain = generate_token(64)
    token = PersonalAccessToken(
        user_id=user_id,
        name=name,
        token_hash=hash_token(plain),
        abilities=[ability.value],
        expires_at=utcnow() + timedelta(minutes=minutes),
    )
    db.add(token)
    await db.flush()
    return plain, token


async def _delete_tokens(db: AsyncSession, user_id: int, name: str | None = None) -> None:
    stmt = delete(PersonalAccessToken).where(PersonalAccessToken.user_id == user_id)
    if name is not None:
        stmt = stmt.where(PersonalAccessToken.name == name)
    await db.execute(stmt)


async def _find_token(db: AsyncSession, plain: str) -> PersonalAccessToken | None:
    result = await db.execute(
        select(PersonalAccessToken).where(PersonalAccessToken.token_hash == hash_token(plain))
    )
    return result.scalar_one_or_none()


def _is_expired(token: PersonalAccessToken) -> bool:
    return token.expires_at is not None and as_utc(token.expires_at) <= utcnow()


def _ensure_active(user: User) -> None:
    if user.banned_at is not None:
        raise AuthorizationError("Your account has been banned.")
    if user.blocked_at is not None:
        raise AuthorizationError("Your account has been blocked.")


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def register(db: AsyncSession, data: RegisterRequest) -> User:
    """Create an account with the default subscriber role."""
    email = data.email.lower()
    existing = await db.execute(select(User.id).where(User.email == email))
    if existing.scalar_one_or_none() is not None:
        raise ValidationError({"email": ["The email has already been taken."]})

    user = User(name=data.name, email=email, password=hash_password(data.password))
    db.add(user)
    await db.flush()
    await user_service.assign_default_role(db, user.id)

    await bus.dispatch(db, UserRegistered(user_id=user.id))
    logger.info("User registered: id=%s", user.id)
    return user


async def login(db: AsyncSession, email: str, password: str) -> dict:
    """Verify credentials and return a fresh access/refresh token pair."""
    result = await db.execute(select(User).where(User.email == email.lower()))
    user = result.scalar_one_or_none()
    if user is None or not verify_password(password, user.password):
        raise AuthenticationError("Invalid credentials.")
    _ensure_active(user)

    await _delete_tokens(db, user.id)
    access_plain, access = await _issue_token(
        db, user.id, ACCESS_TOKEN_NAME, TokenAbility.ACCESS_API, settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    refresh_plain, refresh = await _issue_token(
        db, user.id, REFRESH_TOKEN_NAME, TokenAbility.REFRESH_TOKEN, settings.REFRESH_TOKEN_EXPIRE_MINUTES
    )
    logger.info("User logged in: id=%s", user.id)
    return {
        "access_token": access_plain,
        "refresh_token": refresh_plain,
        "token_type": "Bearer",
        "access_token_expires_at": isoformat(access.expires_at),
        "refresh_token_expires_at": isoformat(refresh.expires_at),
        "user": await user_service.get_user_payload(db, user.id),
    }


async def refresh_access_token(db: AsyncSession, refresh_token: str) -> dict:
    """Exchange a valid refresh token for a new access token."""
    token = await _find_token(db, refresh_token)
    if token is None or TokenAbility.REFRESH_TOKEN.value not in (token.abilities or []):
        raise AuthenticationError("Invalid refresh token.")
    if _is_expired(token):
        raise AuthenticationError("Refresh token has expired.")

    await _delete_tokens(db, token.user_id, ACCESS_TOKEN_NAME)
    access_plain, access = await _issue_token(
        db, token.user_id, ACCESS_TOKEN_NAME, TokenAbility.ACCESS_API, settings.ACCESS_TOKEN_EXPIRE_MINUTES
    )
    token.last_used_at = utcnow()
    await db.flush()
    return {
        "access_token": access_plain,
        "token_type": "Bearer",
        "access_token_expires_at": isoformat(access.expires_at),
    }


async def logout(db: AsyncSession, user_id: int) -> None:
    """Revoke every token of *user_id*."""
    await _delete_tokens(db, user_id)
    await db.flush()
    logger.info("User logged out: id=%s", user_id)


async def authenticate(db: AsyncSession, plain_token: str) -> User:
    """Resolve an access token to its active user or raise 401/403."""
    token = await _find_token(db, plain_token)
    if token is None or TokenAbility.ACCESS_API.value not in (token.abilities or []):
        raise AuthenticationError()
    if _is_expired(token):
        raise AuthenticationError("Access token has expired.")

    user = await db.get(User, token.user_id)
    if user is None:
        raise AuthenticationError()
    _ensure_active(user)
    token.last_used_at = utcnow()
    return user


async def forgot_password(db: AsyncSession, email: str) -> None:
    email = email.lower()
    result = await db.execute(select(User.id).where(User.email == email))
    if result.scalar_one_or_none() is None:
        logger.info("Password reset requested for unknown email")
        return

    plain = generate_token(64)
    existing = await db.get(PasswordResetToken, email)
    if existing is None:
        db.add(PasswordResetToken(email=email, token=hash_token(plain), created_at=utcnow()))
    else:
        existing.token = hash_token(plain)
        existing.created_at = utcnow()
    await db.flush()
    await bus.dispatch(db, PasswordResetRequested(email=email, token=plain))


async def reset_password(db: AsyncSession, email: str, token: str, password: str) -> None:
    """Set a new password from a reset token and revoke all sessions."""
    email = email.lower()
    invalid = ValidationError({"token": ["This password reset token is invalid."]})

    record = await db.get(PasswordResetToken, email)
    if record is None or not tokens_match(token, record.token):
        raise invalid
    expires_at = as_utc(record.created_at) + timedelta(minutes=settings.PASSWORD_RESET_EXPIRE_MINUTES)
    if expires_at <= utcnow():
        raise invalid

    result = await db.execute(select(User).where(User.email == email))
    user = result.scalar_one_or_none()
    if user is None:
        raise invalid

    user.password = hash_password(password)
    await db.delete(record)
    await _delete_tokens(db, user.id)
    await db.flush()
    await clear_user_cache(user.id)
    logger.info("Password reset for user id=%s", user.id)
