"""
Comment endpoint tests: reader comments, ownership, reporting and the
admin moderation queue.
"""
import pytest
from httpx import AsyncClient

from cms.cache import CacheKey, build_key, cache
from cms.enums import CommentStatus, UserRole
from cms.events import CommentReported, bus
from cms.models import Comment, Notification

ADMIN_BASE = "/api/v1/admin/comments"


async def _comment(client: AsyncClient, slug: str, headers: dict, content: str = "Nice post!", **extra):
    return await client.post(
        f"/api/v1/articles/{slug}/comments", json={"content": content, **extra}, headers=headers
    )


# ---------------------------------------------------------------------------
# Creating
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_subscriber_comment_starts_pending(async_client: AsyncClient, make_user, make_article, auth_headers):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Open For Comments")

    resp = await _comment(async_client, "open-for-comments", await auth_headers(reader))
    assert resp.status_code == 201
    data = resp.json()["data"]
    assert data["status"] == CommentStatus.PENDING.value
    assert data["approved_at"] is None
    assert data["user"]["id"] == reader.id

    # Pending comments are not public.
    public = await async_client.get("/api/v1/articles/open-for-comments/comments")
    assert public.json()["data"]["comments"] == []


@pytest.mark.asyncio
async def test_moderator_comment_is_approved_and_notifies_author(
    async_client: AsyncClient, make_user, make_article, auth_headers, admin, admin_headers
):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Moderated Post")

    resp = await _comment(async_client, "moderated-post", admin_headers, "Welcome aboard")
    data = resp.json()["data"]
    assert data["status"] == CommentStatus.APPROVED.value
    assert data["approved_at"] is not None

    inbox = await async_client.get("/api/v1/user/notifications", headers=await auth_headers(author))
    messages = [n["message"] for n in inbox.json()["data"]["notifications"]]
    assert [m["title"] for m in messages] == ["New comment"]
    assert messages[0]["comment_id"] == data["id"]


@pytest.mark.asyncio
async def test_approved_comment_invalidates_cached_article(
    async_client: AsyncClient, make_user, make_article, admin_headers
):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Counted")

    await async_client.get("/api/v1/articles/counted")
    assert await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "counted")) is not None

    await _comment(async_client, "counted", admin_headers)
    assert await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "counted")) is None
    detail = await async_client.get("/api/v1/articles/counted")
    assert detail.json()["data"]["comments_count"] == 1


@pytest.mark.asyncio
async def test_reply_parent_must_belong_to_same_article(
    async_client: AsyncClient, make_user, make_article, auth_headers
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "First")
    await make_article(author, "Second")
    headers = await auth_headers(reader)

    parent = (await _comment(async_client, "first", headers, "Parent")).json()["data"]

    ok = await _comment(async_client, "first", headers, "Reply", parent_comment_id=parent["id"])
    assert ok.status_code == 201
    assert ok.json()["data"]["parent_comment_id"] == parent["id"]

    wrong = await _comment(async_client, "second", headers, "Reply", parent_comment_id=parent["id"])
    assert wrong.status_code == 422
    assert wrong.json()["error"]["parent_comment_id"] == ["The parent comment must belong to the same article."]


@pytest.mark.asyncio
async def test_comment_requires_authentication(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Members Only")
    resp = await async_client.post("/api/v1/articles/members-only/comments", json={"content": "hi"})
    assert resp.status_code == 401


@pytest.mark.asyncio
async def test_empty_comment_is_422(async_client: AsyncClient, make_user, make_article, auth_headers):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Strict")
    resp = await _comment(async_client, "strict", await auth_headers(author), "")
    assert resp.status_code == 422
    assert "content" in resp.json()["error"]


# ---------------------------------------------------------------------------
# Own comments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_own_comments_update_and_delete(async_client: AsyncClient, make_user, make_article, auth_headers):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    stranger = await make_user()
    await make_article(author, "Editable")
    headers = await auth_headers(reader)
    stranger_headers = await auth_headers(stranger)

    comment = (await _comment(async_client, "editable", headers, "Frist")).json()["data"]

    own = await async_client.get("/api/v1/comments/own", headers=headers)
    assert [c["id"] for c in own.json()["data"]["comments"]] == [comment["id"]]

    denied = await async_client.put(
        f"/api/v1/comments/{comment['id']}", json={"content": "Vandalised"}, headers=stranger_headers
    )
    assert denied.status_code == 403

    updated = await async_client.put(f"/api/v1/comments/{comment['id']}", json={"content": "First"}, headers=headers)
    assert updated.status_code == 200
    assert updated.json()["data"]["content"] == "First"

    assert (await async_client.delete(f"/api/v1/comments/{comment['id']}", headers=stranger_headers)).status_code == 403
    deleted = await async_client.delete(f"/api/v1/comments/{comment['id']}", headers=headers)
    assert deleted.status_code == 200

    missing = await async_client.put(f"/api/v1/comments/{comment['id']}", json={"content": "x"}, headers=headers)
    assert missing.status_code == 404
    assert missing.json()["message"] == "Comment not found."


@pytest.mark.asyncio
async def test_report_comment_notifies_administrators(
    async_client: AsyncClient, make_user, make_article, auth_headers, admin_headers
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Heated")
    comment = (await _comment(async_client, "heated", await auth_headers(author), "Hot take")).json()["data"]

    resp = await async_client.post(
        f"/api/v1/comments/{comment['id']}/report", json={"reason": "Rude"}, headers=await auth_headers(reader)
    )
    assert resp.status_code == 200

    inbox = await async_client.get("/api/v1/user/notifications", headers=admin_headers)
    notification = inbox.json()["data"]["notifications"][0]
    assert notification["message"]["title"] == "Comment reported"
    assert notification["message"]["priority"] == "high"

    queue = await async_client.get(ADMIN_BASE, params={"has_reports": True}, headers=admin_headers)
    reported = queue.json()["data"]["comments"]
    assert [c["id"] for c in reported] == [comment["id"]]
    assert reported[0]["report_count"] == 1
    assert reported[0]["report_reason"] == "Rude"


@pytest.mark.asyncio
async def test_report_survives_a_listener_whose_flush_fails(
    async_client: AsyncClient, make_user, make_article, auth_headers, admin_headers, monkeypatch
):
    async def broken_listener(db, event):
        # No type: NOT NULL violation on flush
        db.add(Notification(message={"title": "Half written"}))
        await db.flush()

    monkeypatch.setitem(
        bus._subscribers, CommentReported, [broken_listener, *bus._subscribers[CommentReported]]
    )
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Fragile")
    comment = (await _comment(async_client, "fragile", await auth_headers(author), "Hot take")).json()["data"]

    resp = await async_client.post(
        f"/api/v1/comments/{comment['id']}/report", json={"reason": "Spam"}, headers=await auth_headers(reader)
    )
    assert resp.status_code == 200

    # The listener after the broken one still ran.
    inbox = await async_client.get("/api/v1/user/notifications", headers=admin_headers)
    titles = [n["message"]["title"] for n in inbox.json()["data"]["notifications"]]
    assert "Comment reported" in titles
    assert "Half written" not in titles

    queue = await async_client.get(ADMIN_BASE, params={"has_reports": True}, headers=admin_headers)
    assert queue.json()["data"]["comments"][0]["report_count"] == 1


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_moderation_queue_requires_permission(async_client: AsyncClient, make_user, auth_headers):
    author = await make_user(UserRole.AUTHOR)
    resp = await async_client.get(ADMIN_BASE, headers=await auth_headers(author))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_approve_pending_comment(
    async_client: AsyncClient, make_user, make_article, auth_headers, admin, admin_headers
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Queue")
    reader_headers = await auth_headers(reader)
    comment = (await _comment(async_client, "queue", reader_headers)).json()["data"]

    pending = await async_client.get(ADMIN_BASE, params={"status": "pending"}, headers=admin_headers)
    assert [c["id"] for c in pending.json()["data"]["comments"]] == [comment["id"]]

    resp = await async_client.post(
        f"{ADMIN_BASE}/{comment['id']}/approve", json={"admin_note": "Looks fine"}, headers=admin_headers
    )
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["status"] == CommentStatus.APPROVED.value
    assert data["approved_by"] == admin.id
    assert data["admin_note"] == "Looks fine"

    public = await async_client.get("/api/v1/articles/queue/comments")
    assert [c["id"] for c in public.json()["data"]["comments"]] == [comment["id"]]

    inbox = await async_client.get("/api/v1/user/notifications", headers=reader_headers)
    assert [n["message"]["title"] for n in inbox.json()["data"]["notifications"]] == ["Comment approved"]


@pytest.mark.asyncio
async def test_admin_delete_comment(
    async_client: AsyncClient, make_user, make_article, auth_headers, admin_headers, db_session
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Cleanup")
    comment = (await _comment(async_client, "cleanup", await auth_headers(reader))).json()["data"]

    resp = await async_client.request(
        "DELETE", f"{ADMIN_BASE}/{comment['id']}", json={"reason": "Off topic"}, headers=admin_headers
    )
    assert resp.status_code == 200
    assert await db_session.get(Comment, comment["id"]) is None
