import enum
import json
import logging
from typing import Any, Awaitable, Callable

import redis.asyncio as redis

from cms.config import settings

logger = logging.getLogger(__name__)


class CacheKey(str, enum.Enum):
    """
    Named cache entries.  Each member's TTL is read from the matching
    ``CACHE_TTL_<NAME>`` setting, falling back to ``CACHE_DEFAULT_TTL``.
    """

    TAGS = "tags:list"
    CATEGORIES = "categories:list"
    ARTICLE_BY_SLUG = "article_by_slug"
    ARTICLE_BY_ID = "article_by_id"
    USER_ROLES = "user_roles"
    USER_PERMISSIONS = "user_permissions"
    ALL_ROLES = "all_roles_with_permissions"
    ALL_PERMISSIONS = "all_permissions"

    @property
    def ttl(self) -> int:
        return getattr(settings, f"CACHE_TTL_{self.name}", settings.CACHE_DEFAULT_TTL)


def ttl_for(key: CacheKey | str) -> int:
    """Return the TTL (seconds) configured for *key*."""
    if isinstance(key, CacheKey):
        return key.ttl
    try:
        return CacheKey(key).ttl
    except ValueError:
        return settings.CACHE_DEFAULT_TTL


def build_key(key: CacheKey | str, suffix: Any = None) -> str:
    base = key.value if isinstance(key, CacheKey) else key
    return f"{base}:{suffix}" if suffix is not None else base


class CacheManager:
    """
    Cache-aside manager backed by Redis.

    All public methods are safe to call even when Redis is unavailable:
    reads behave as misses and writes are skipped, so the application
    degrades gracefully without raising exceptions to callers.
    """

    def __init__(self) -> None:
        self._redis: redis.Redis | None = None
        self._hits: int = 0
        self._misses: int = 0

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def connect(self) -> None:
        """Open the connection pool.  Called once at application startup."""
        self._redis = redis.from_url(
            settings.REDIS_URL,
            decode_responses=True,
            socket_connect_timeout=2,
            socket_timeout=2,
        )
        try:
            await self._redis.ping()
            logger.info("Redis connected: %s", settings.REDIS_URL)
        except Exception as exc:  # pragma: no cover
            logger.warning("Redis ping failed, cache degraded: %s", exc)

    async def disconnect(self) -> None:
        """Close the connection pool.  Called once at application shutdown."""
        if self._redis:
            await self._redis.aclose()
            self._redis = None

    async def ping(self) -> bool:
        if not self._redis:
            return False
        try:
            return bool(await self._redis.ping())
        except Exception as exc:
            logger.debug("Cache PING error: %s", exc)
            return False

    # ------------------------------------------------------------------
    # Core cache operations
    # ------------------------------------------------------------------

    async def get(self, key: str) -> Any:
        """Return the cached value for *key*, or None on a miss / error."""
        if not self._redis:
            self._misses += 1
            return None
        try:
            data = await self._redis.get(key)
            if data is not None:
                self._hits += 1
                return json.loads(data)
            self._misses += 1
            return None
        except Exception as exc:
            logger.debug("Cache GET error for key=%r: %s", key, exc)
            self._misses += 1
            return None

    async def set(self, key: str, value: Any, ttl: int | None = None) -> None:
        """Persist *value* under *key* with an optional TTL (seconds)."""
        if not self._redis:
            return
        try:
            serialised = json.dumps(value, default=str)
            await self._redis.set(key, serialised, ex=ttl)
        except Exception as exc:
            logger.debug("Cache SET error for key=%r: %s", key, exc)

    async def delete(self, *keys: str) -> None:
        if not self._redis or not keys:
            return
        try:
            await self._redis.delete(*keys)
        except Exception as exc:
            logger.debug("Cache DELETE error for keys=%r: %s", keys, exc)

    async def increment(self, key: str, initial: int = 1) -> int | None:
        """
        Atomically increment the integer counter at *key*.

        A missing counter is first seeded with *initial* (``SET NX``) so
        the first increment yields ``initial + 1``.  The counter never
        expires.  Returns the new value, or None when Redis is down.
        """
        if not self._redis:
            return None
        try:
            await self._redis.set(key, initial, nx=True)
            return int(await self._redis.incr(key))
        except Exception as exc:
            logger.warning("Cache INCR error for key=%r: %s", key, exc)
            return None

    # ------------------------------------------------------------------
    # Named-key helpers
    # ------------------------------------------------------------------

    async def remember(
        self,
        key: CacheKey | str,
        loader: Callable[[], Awaitable[Any]],
        suffix: Any = None,
        ttl: int | None = None,
    ) -> Any:
        """
        Return the cached value for *key* (plus optional *suffix*), or
        await *loader*, store its result and return it.

        *loader* must return JSON-serialisable data.  A None result is
        not cached.
        """
        full_key = build_key(key, suffix)
        cached = await self.get(full_key)
        if cached is not None:
            return cached
        value = await loader()
        if value is not None:
            await self.set(full_key, value, ttl=ttl if ttl is not None else ttl_for(key))
        return value

    async def forget(self, key: CacheKey | str, suffix: Any = None) -> None:
        await self.delete(build_key(key, suffix))

    async def invalidate_article(self, article_id: int | None = None, slug: str | None = None) -> None:
        """Drop the by-id and by-slug detail entries of one article."""
        keys = []
        if article_id is not None:
            keys.append(build_key(CacheKey.ARTICLE_BY_ID, article_id))
        if slug:
            keys.append(build_key(CacheKey.ARTICLE_BY_SLUG, slug))
        await self.delete(*keys)

    # ------------------------------------------------------------------
    # Observability
    # ------------------------------------------------------------------

    @property
    def stats(self) -> dict:
        """Return a snapshot of hit/miss counters."""
        total = self._hits + self._misses
        return {
            "hits": self._hits,
            "misses": self._misses,
            "hit_rate": round(self._hits / total * 100, 1) if total > 0 else 0.0,
        }


# Module-level singleton shared across all request handlers.
cache = CacheManager()
