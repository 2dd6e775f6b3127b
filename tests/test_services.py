"""
Direct tests of the building blocks shared by the services: the cache
manager, the permission cache, the event bus, transaction hooks, the
exception renderer, log formatting and the small pure helpers.  No HTTP round trip involved.
"""
import json
import logging
import sys

import pytest
from fastapi.exceptions import RequestValidationError
from pydantic import ValidationError as PydanticValidationError
from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import CacheKey, build_key, cache, ttl_for
from cms.config import settings
from cms.database import after_commit, after_rollback, run_hooks
from cms.enums import UserRole
from cms.events import ArticleApproved, ArticleEvent, EventBus
from cms.exceptions import AuthorizationError, NotFoundError, ValidationError
from cms.logging_config import JsonFormatter
from cms.middleware import client_ip_from_scope, mask_body, mask_headers
from cms.models import Tag
from cms.pagination import pagination_meta
from cms.permissions import (
    CACHE_VERSION_KEY,
    bump_cache_version,
    get_cache_version,
    has_all_permissions,
    has_all_roles,
    has_any_role,
    has_permission,
    has_role,
)
from cms.schemas import PageQuery
from cms.security import generate_token, hash_password, hash_token, tokens_match, verify_password
from cms.services.exception_handler import REDACTED, ExceptionHandlerService
from cms.utils import escape_like, like_pattern, slugify


def _body(response) -> dict:
    return json.loads(response.body)


# ---------------------------------------------------------------------------
# CacheManager
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_remember_loads_once_and_stores_ttl():
    calls = []

    async def loader():
        calls.append(1)
        return ["python", "fastapi"]

    first = await cache.remember(CacheKey.TAGS, loader)
    second = await cache.remember(CacheKey.TAGS, loader)
    assert first == second == ["python", "fastapi"]
    assert len(calls) == 1
    assert cache._redis.ttls[CacheKey.TAGS.value] == settings.CACHE_TTL_TAGS


@pytest.mark.asyncio
async def test_remember_does_not_cache_none():
    async def loader():
        return None

    assert await cache.remember(CacheKey.ARTICLE_BY_SLUG, loader, suffix="missing") is None
    assert build_key(CacheKey.ARTICLE_BY_SLUG, "missing") not in cache._redis.store


def test_ttl_for_unknown_key_uses_default():
    assert ttl_for("something:else") == settings.CACHE_DEFAULT_TTL
    assert ttl_for(CacheKey.CATEGORIES.value) == CacheKey.CATEGORIES.ttl


@pytest.mark.asyncio
async def test_invalidate_article_drops_both_keys():
    await cache.set(build_key(CacheKey.ARTICLE_BY_ID, 7), {"id": 7})
    await cache.set(build_key(CacheKey.ARTICLE_BY_SLUG, "hello"), {"id": 7})
    await cache.invalidate_article(7, "hello")
    assert cache._redis.store == {}


@pytest.mark.asyncio
async def test_cache_without_redis_degrades_to_misses():
    cache._redis = None
    await cache.set("k", 1)
    assert await cache.get("k") is None
    assert await cache.increment("counter") is None
    assert await cache.ping() is False


# ---------------------------------------------------------------------------
# Permission cache
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_cache_version_bumps_monotonically():
    start = await get_cache_version()
    assert await bump_cache_version() == start + 1
    assert await bump_cache_version() == start + 2
    assert await get_cache_version() == start + 2
    assert CACHE_VERSION_KEY not in cache._redis.ttls


@pytest.mark.asyncio
async def test_permission_lookups_are_cached_per_version(db_session: AsyncSession, make_user):
    editor = await make_user(UserRole.EDITOR)
    assert await has_permission(db_session, editor.id, "edit_others_posts")
    version = await get_cache_version()
    assert not await has_permission(db_session, editor.id, "approve_posts")
    assert f"user_permissions:{editor.id}_v{version}" in cache._redis.store

    await bump_cache_version()
    assert await has_role(db_session, editor.id, UserRole.EDITOR)
    assert f"user_roles:{editor.id}_v{version + 1}" in cache._redis.store


@pytest.mark.asyncio
async def test_role_matrix(db_session: AsyncSession, make_user):
    author = await make_user(UserRole.AUTHOR)
    contributor = await make_user(UserRole.CONTRIBUTOR)
    subscriber = await make_user()

    assert await has_permission(db_session, author.id, "publish_posts")
    assert not await has_permission(db_session, author.id, "edit_others_posts")
    assert not await has_permission(db_session, contributor.id, "publish_posts")
    assert await has_permission(db_session, contributor.id, "upload_media")
    assert await has_permission(db_session, subscriber.id, "like_posts")
    assert not await has_permission(db_session, subscriber.id, "create_posts")
    assert await has_any_role(db_session, subscriber.id, ["editor", UserRole.SUBSCRIBER])
    assert not await has_all_roles(db_session, subscriber.id, ["editor", UserRole.SUBSCRIBER])
    assert await has_all_permissions(db_session, author.id, ["upload_media", "delete_media"])
    assert not await has_all_permissions(db_session, author.id, ["upload_media", "manage_media"])


# ---------------------------------------------------------------------------
# EventBus
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_failing_listener_does_not_stop_the_others(db_session: AsyncSession):
    bus = EventBus()
    seen = []

    async def broken(db, event):
        raise RuntimeError("listener exploded")

    async def recorder(db, event):
        seen.append(event.article_id)

    bus.subscribe(ArticleApproved, broken)
    bus.subscribe(ArticleApproved, recorder)
    await bus.dispatch(db_session, ArticleApproved(article_id=5, title="T", slug="t", author_id=1))
    assert seen == [5]


@pytest.mark.asyncio
async def test_base_class_subscribers_receive_subclass_events(db_session: AsyncSession):
    bus = EventBus()
    seen = []

    async def any_article(db, event):
        seen.append(type(event).__name__)

    bus.subscribe(ArticleEvent, any_article)
    bus.subscribe(ArticleEvent, any_article)
    await bus.dispatch(db_session, ArticleApproved(article_id=1, title="T", slug="t", author_id=1))
    assert seen == ["ArticleApproved"]


@pytest.mark.asyncio
async def test_failing_listener_writes_are_rolled_back_alone(db_session: AsyncSession):
    bus = EventBus()

    async def half_done(db, event):
        db.add(Tag(name="Orphan", slug="orphan"))
        await db.flush()
        raise RuntimeError("mail server down")

    bus.subscribe(ArticleApproved, half_done)
    db_session.add(Tag(name="Kept", slug="kept"))
    await db_session.flush()

    await bus.dispatch(db_session, ArticleApproved(article_id=1, title="T", slug="t", author_id=1))
    await db_session.commit()

    names = (await db_session.execute(select(Tag.name))).scalars().all()
    assert names == ["Kept"]


# ---------------------------------------------------------------------------
# Transaction hooks
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_transaction_hooks_follow_the_outcome(db_session: AsyncSession):
    ran = []
    after_commit(db_session, lambda: ran.append("commit"))
    after_rollback(db_session, lambda: ran.append("rollback"))

    await run_hooks(db_session, committed=False)
    assert ran == ["rollback"]
    # Both queues are drained by the first run.
    await run_hooks(db_session, committed=True)
    assert ran == ["rollback"]


@pytest.mark.asyncio
async def test_failing_transaction_hook_is_logged_not_raised(db_session: AsyncSession, caplog):
    ran = []

    def broken():
        raise OSError("read-only filesystem")

    after_commit(db_session, broken)
    after_commit(db_session, lambda: ran.append("second"))
    await run_hooks(db_session, committed=True)
    assert ran == ["second"]
    assert "Transaction hook" in caplog.text


# ---------------------------------------------------------------------------
# ExceptionHandlerService
# ---------------------------------------------------------------------------

def test_status_codes_and_messages():
    service = ExceptionHandlerService()

    not_found = _body(service.handle(NotFoundError("NewsletterSubscriber")))
    assert not_found["message"] == "Newsletter subscriber not found."
    assert not_found["status"] is False

    forbidden = service.handle(AuthorizationError("You cannot ban yourself."))
    assert forbidden.status_code == 403
    assert _body(forbidden)["message"] == "You cannot ban yourself."

    invalid = service.handle(ValidationError({"slug": ["The slug has already been taken."]}))
    assert invalid.status_code == 422
    assert _body(invalid) == {
        "status": False,
        "message": "The slug has already been taken.",
        "data": None,
        "error": {"slug": ["The slug has already been taken."]},
    }

    conflict = service.handle(IntegrityError("INSERT", {}, Exception("UNIQUE constraint failed")))
    assert conflict.status_code == 422

    crash = service.handle(RuntimeError("database password is hunter2"))
    assert crash.status_code == 500
    assert _body(crash)["message"] == "Something went wrong."


def test_request_validation_errors_are_flattened():
    exc = RequestValidationError([
        {"loc": ("body", "email"), "msg": "Value error, The email is invalid.", "type": "value_error"},
        {"loc": ("query", "per_page"), "msg": "Input should be less than or equal to 100", "type": "less_than_equal"},
    ])
    body = _body(ExceptionHandlerService().handle(exc))
    assert body["message"] == "The email is invalid."
    assert body["error"] == {
        "email": ["The email is invalid."],
        "per_page": ["Input should be less than or equal to 100"],
    }


def test_sanitize_redacts_nested_secrets():
    clean = ExceptionHandlerService().sanitize(
        {"email": "a@b.c", "Password": "x", "nested": {"token": "t", "page": 2}}
    )
    assert clean == {"email": "a@b.c", "Password": REDACTED, "nested": {"token": REDACTED, "page": 2}}


def test_log_context_records_previous_exception():
    service = ExceptionHandlerService()
    try:
        try:
            raise KeyError("inner")
        except KeyError as inner:
            raise RuntimeError("outer") from inner
    except RuntimeError as exc:
        context = service.build_log_context(exc, context="import")
    assert context["context"] == "import"
    assert context["previous_exception"]["class"] == "KeyError"
    assert set(context["environment"]) == {"app_env", "app_debug"}


# ---------------------------------------------------------------------------
# Pure helpers
# ---------------------------------------------------------------------------

def test_pagination_meta():
    assert pagination_meta(5, 2, 2, 2, "http://test/api/v1/articles") == {
        "current_page": 2,
        "from": 3,
        "last_page": 3,
        "per_page": 2,
        "to": 4,
        "total": 5,
        "path": "http://test/api/v1/articles",
    }
    empty = pagination_meta(0, 1, 15, 0)
    assert empty["from"] is None and empty["to"] is None
    assert empty["last_page"] == 1


def test_page_query_uses_configured_page_sizes():
    assert PageQuery().per_page == settings.DEFAULT_PAGE_SIZE
    assert PageQuery(per_page=settings.MAX_PAGE_SIZE).per_page == settings.MAX_PAGE_SIZE
    with pytest.raises(PydanticValidationError):
        PageQuery(per_page=settings.MAX_PAGE_SIZE + 1)


def test_slugify():
    assert slugify("  Hello, World!  ") == "hello-world"
    assert slugify("Crème brûlée -- recipe") == "creme-brulee-recipe"
    assert slugify("snake_case words") == "snake-case-words"


def test_like_patterns_escape_wildcards():
    assert escape_like("100%_off\\") == "100\\%\\_off\\\\"
    assert like_pattern("  cats ") == "%cats%"


def test_password_hashing():
    stored = hash_password("correct horse")
    assert stored != "correct horse"
    assert verify_password("correct horse", stored)
    assert not verify_password("wrong", stored)
    assert not verify_password("anything", None)
    assert not verify_password("anything", "not-a-hash")


def test_tokens():
    token = generate_token()
    assert len(token) == 64
    assert generate_token(40) != generate_token(40)
    assert len(hash_token(token)) == 64
    assert tokens_match(token, hash_token(token))
    assert not tokens_match(token, hash_token("other"))
    assert not tokens_match(token, None)


def test_client_ip_prefers_proxy_headers():
    scope = {
        "headers": [(b"x-forwarded-for", b"203.0.113.9, 10.0.0.1")],
        "client": ("127.0.0.1", 5000),
    }
    assert client_ip_from_scope(scope) == "203.0.113.9"
    bogus = {"headers": [(b"x-real-ip", b"not-an-ip")], "client": ("127.0.0.1", 5000)}
    assert client_ip_from_scope(bogus) == "127.0.0.1"


def test_masking_helpers():
    assert mask_headers({"Authorization": "Bearer x", "Accept": "json"}, ["authorization"]) == {
        "Authorization": "***MASKED***",
        "Accept": "json",
    }
    assert mask_body({"user": {"password": "p"}, "items": [{"token": "t"}]}, ["password", "token"]) == {
        "user": {"password": "***MASKED***"},
        "items": [{"token": "***MASKED***"}],
    }


# ---------------------------------------------------------------------------
# Logging
# ---------------------------------------------------------------------------

def test_exception_log_line_renders_its_context(caplog):
    caplog.set_level(logging.WARNING, logger="cms.services.exception_handler")
    ExceptionHandlerService().handle(NotFoundError("Article"), context="article lookup")

    record = caplog.records[-1]
    assert record.levelno == logging.WARNING
    message = record.getMessage()
    assert message.startswith("article lookup: Article not found ")
    assert '"context": "article lookup"' in message
    assert '"app_env"' in message


def test_json_formatter_emits_one_valid_object_per_line():
    formatter = JsonFormatter(datefmt="%Y-%m-%d %H:%M:%S")
    record = logging.LogRecord(
        "cms.api", logging.INFO, __file__, 10, 'said "hi"\nthen %s', ("left",), None
    )
    line = formatter.format(record)
    assert "\n" not in line
    entry = json.loads(line)
    assert entry["message"] == 'said "hi"\nthen left'
    assert entry["level"] == "INFO"
    assert entry["logger"] == "cms.api"
    assert entry["line"] == 10

    try:
        raise ValueError("boom")
    except ValueError:
        failed = logging.LogRecord("cms", logging.ERROR, __file__, 20, "failed", (), sys.exc_info())
    assert "ValueError: boom" in json.loads(formatter.format(failed))["exception"]
