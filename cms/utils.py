"""Small helpers shared by services: clock, slugs and LIKE patterns."""
import re
import unicodedata
from datetime import datetime, timezone

_SLUG_STRIP_RE = re.compile(r"[^\w\s-]")
_SLUG_SPACE_RE = re.compile(r"[\s_]+")
_SLUG_DASH_RE = re.compile(r"-+")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime | None) -> datetime | None:
    """
    Return *value* as an aware UTC datetime.

    Some drivers (SQLite) hand back naive datetimes even for
    ``DateTime(timezone=True)`` columns; everything is stored in UTC so
    a missing tzinfo can safely be read as UTC.
    """
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def isoformat(value: datetime | None) -> str | None:
    value = as_utc(value)
    return value.isoformat() if value else None


def slugify(text: str) -> str:
    """Return a URL-safe, lowercase ASCII slug derived from *text*."""
    text = unicodedata.normalize("NFKD", text).encode("ascii", "ignore").decode("ascii")
    text = _SLUG_STRIP_RE.sub("", text.lower().strip())
    text = _SLUG_SPACE_RE.sub("-", text)
    return _SLUG_DASH_RE.sub("-", text).strip("-")


def escape_like(term: str) -> str:
    """Escape LIKE wildcards so user input is matched literally (escape char ``\\``)."""
    return term.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")


def like_pattern(term: str) -> str:
    return f"%{escape_like(term.strip())}%"
