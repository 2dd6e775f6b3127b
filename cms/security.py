"""Password hashing and opaque token helpers."""
import hashlib
import secrets

from argon2 import PasswordHasher, exceptions as argon_exc

_ph = PasswordHasher()


def hash_password(password: str) -> str:
    return _ph.hash(password)


def verify_password(password: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    try:
        return _ph.verify(stored_hash, password)
    except (argon_exc.VerifyMismatchError, argon_exc.VerificationError, argon_exc.InvalidHashError):
        return False


def generate_token(length: int = 64) -> str:
    """Return a URL-safe random token of exactly *length* characters."""
    return secrets.token_urlsafe(length)[:length]


def hash_token(token: str) -> str:
    """Deterministic SHA-256 digest used to store and look up tokens."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


def tokens_match(token: str, stored_hash: str | None) -> bool:
    if not stored_hash:
        return False
    return secrets.compare_digest(hash_token(token), stored_hash)
