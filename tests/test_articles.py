"""
Public article endpoint tests: listing and filtering, detail caching,
threaded comments and like/dislike reactions.
"""
from datetime import timedelta

import pytest
from httpx import AsyncClient
from sqlalchemy import insert

from cms.cache import CacheKey, build_key, cache
from cms.enums import ArticleStatus, CommentStatus, UserRole
from cms.models import Category, Comment, Tag, article_categories, article_tags
from cms.utils import utcnow


# ---------------------------------------------------------------------------
# Listing
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_list_articles_empty(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/articles")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["articles"] == []
    assert data["meta"]["total"] == 0
    assert data["meta"]["last_page"] == 1
    assert data["meta"]["from"] is None


@pytest.mark.asyncio
async def test_list_articles_only_shows_live_published(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Live Article")
    await make_article(author, "Draft Article", status=ArticleStatus.DRAFT)
    await make_article(
        author,
        "Scheduled Article",
        status=ArticleStatus.PUBLISHED,
        published_at=utcnow() + timedelta(days=1),
    )
    await make_article(author, "Archived Article", status=ArticleStatus.ARCHIVED)

    resp = await async_client.get("/api/v1/articles")
    data = resp.json()["data"]
    assert [a["title"] for a in data["articles"]] == ["Live Article"]
    assert data["meta"]["total"] == 1
    # The list view carries no body.
    assert "content_markdown" not in data["articles"][0]


@pytest.mark.asyncio
async def test_list_articles_pagination_meta(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    for i in range(5):
        await make_article(author, f"Post {i}", published_at=utcnow() - timedelta(hours=i + 1))

    resp = await async_client.get("/api/v1/articles", params={"page": 2, "per_page": 2})
    data = resp.json()["data"]
    assert [a["title"] for a in data["articles"]] == ["Post 2", "Post 3"]
    meta = data["meta"]
    assert meta["current_page"] == 2
    assert meta["per_page"] == 2
    assert meta["total"] == 5
    assert meta["last_page"] == 3
    assert meta["from"] == 3
    assert meta["to"] == 4
    assert meta["path"] == "http://test/api/v1/articles"


@pytest.mark.asyncio
async def test_list_articles_per_page_is_capped(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/articles", params={"per_page": 500})
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_search_matches_literal_wildcards(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Discount 100% off")
    await make_article(author, "Discount 100 dollars")

    resp = await async_client.get("/api/v1/articles", params={"search": "100%"})
    titles = [a["title"] for a in resp.json()["data"]["articles"]]
    assert titles == ["Discount 100% off"]


@pytest.mark.asyncio
async def test_filter_by_category_and_tag_slugs(
    async_client: AsyncClient, make_user, make_article, session_factory
):
    author = await make_user(UserRole.AUTHOR)
    python_post = await make_article(author, "Python Post")
    other_post = await make_article(author, "Other Post")
    async with session_factory() as session:
        category = Category(name="Programming", slug="programming")
        tag = Tag(name="python", slug="python")
        session.add_all([category, tag])
        await session.flush()
        await session.execute(insert(article_categories).values(article_id=python_post.id, category_id=category.id))
        await session.execute(insert(article_tags).values(article_id=python_post.id, tag_id=tag.id))
        await session.commit()

    by_category = await async_client.get("/api/v1/articles", params={"category_slugs": ["programming"]})
    assert [a["id"] for a in by_category.json()["data"]["articles"]] == [python_post.id]

    by_tag = await async_client.get("/api/v1/articles", params={"tag_slugs": ["python"]})
    article = by_tag.json()["data"]["articles"][0]
    assert article["id"] == python_post.id
    assert article["tags"] == [{"id": tag.id, "name": "python", "slug": "python"}]
    assert article["categories"][0]["slug"] == "programming"

    everything = await async_client.get("/api/v1/articles")
    assert {a["id"] for a in everything.json()["data"]["articles"]} == {python_post.id, other_post.id}


@pytest.mark.asyncio
async def test_sort_by_title_ascending(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    for title in ("Bravo", "Alpha", "Charlie"):
        await make_article(author, title)
    resp = await async_client.get("/api/v1/articles", params={"sort_by": "title", "sort_direction": "asc"})
    assert [a["title"] for a in resp.json()["data"]["articles"]] == ["Alpha", "Bravo", "Charlie"]


# ---------------------------------------------------------------------------
# Detail
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_show_article_by_slug_is_cached(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR, name="Author Name")
    article = await make_article(author, "Cached Article")

    resp = await async_client.get("/api/v1/articles/cached-article")
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["id"] == article.id
    assert data["content_markdown"] == "Body of Cached Article"
    assert data["author"]["name"] == "Author Name"
    assert data["authors"][0]["role"] == "main"
    assert data["comments_count"] == 0

    cached = await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "cached-article"))
    assert cached["id"] == article.id


@pytest.mark.asyncio
async def test_show_unpublished_article_is_404(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Secret Draft", status=ArticleStatus.DRAFT)

    resp = await async_client.get("/api/v1/articles/secret-draft")
    assert resp.status_code == 404
    assert resp.json()["message"] == "Article not found."
    # Misses are not cached.
    assert await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "secret-draft")) is None


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_article_comments_are_threaded(
    async_client: AsyncClient, make_user, make_article, session_factory
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    article = await make_article(author, "Discussed")
    now = utcnow()
    async with session_factory() as session:
        top = Comment(article_id=article.id, user_id=reader.id, content="Top", status=CommentStatus.APPROVED,
                      created_at=now - timedelta(minutes=10))
        session.add(top)
        await session.flush()
        session.add_all([
            Comment(article_id=article.id, user_id=author.id, parent_comment_id=top.id, content=f"Reply {i}",
                    status=CommentStatus.APPROVED, created_at=now - timedelta(minutes=9 - i))
            for i in range(4)
        ])
        session.add(Comment(article_id=article.id, user_id=reader.id, content="Pending",
                            status=CommentStatus.PENDING))
        await session.commit()
        top_id = top.id

    resp = await async_client.get("/api/v1/articles/discussed/comments", params={"replies_per_page": 2})
    assert resp.status_code == 200
    data = resp.json()["data"]
    assert data["meta"]["total"] == 1
    comment = data["comments"][0]
    assert comment["content"] == "Top"
    assert comment["replies_count"] == 4
    assert [r["content"] for r in comment["replies"]] == ["Reply 0", "Reply 1"]

    replies = await async_client.get("/api/v1/articles/discussed/comments", params={"parent_id": top_id})
    assert replies.json()["data"]["meta"]["total"] == 4


@pytest.mark.asyncio
async def test_comments_of_missing_article_is_404(async_client: AsyncClient):
    resp = await async_client.get("/api/v1/articles/nope/comments")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_like_is_idempotent_and_switches_to_dislike(
    async_client: AsyncClient, make_user, make_article, auth_headers
):
    author = await make_user(UserRole.AUTHOR)
    reader = await make_user()
    await make_article(author, "Reactable")
    headers = await auth_headers(reader)

    first = await async_client.post("/api/v1/articles/reactable/like", headers=headers)
    assert first.status_code == 200
    assert first.json()["data"]["likes_count"] == 1

    second = await async_client.post("/api/v1/articles/reactable/like", headers=headers)
    assert second.json()["data"]["likes_count"] == 1

    switched = await async_client.post("/api/v1/articles/reactable/dislike", headers=headers)
    data = switched.json()["data"]
    assert data["reaction"] == "dislike"
    assert data["likes_count"] == 0
    assert data["dislikes_count"] == 1


@pytest.mark.asyncio
async def test_anonymous_reactions_are_keyed_by_ip(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Popular")

    await async_client.post("/api/v1/articles/popular/like", headers={"X-Forwarded-For": "203.0.113.5"})
    await async_client.post("/api/v1/articles/popular/like", headers={"X-Forwarded-For": "203.0.113.5"})
    resp = await async_client.post("/api/v1/articles/popular/like", headers={"X-Forwarded-For": "203.0.113.9"})
    assert resp.json()["data"]["likes_count"] == 2


@pytest.mark.asyncio
async def test_reaction_invalidates_cached_detail(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Fresh Counts")

    await async_client.get("/api/v1/articles/fresh-counts")
    assert await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "fresh-counts")) is not None

    await async_client.post("/api/v1/articles/fresh-counts/like")
    assert await cache.get(build_key(CacheKey.ARTICLE_BY_SLUG, "fresh-counts")) is None
    detail = await async_client.get("/api/v1/articles/fresh-counts")
    assert detail.json()["data"]["likes_count"] == 1


@pytest.mark.asyncio
async def test_cannot_react_to_draft(async_client: AsyncClient, make_user, make_article):
    author = await make_user(UserRole.AUTHOR)
    await make_article(author, "Not Yet", status=ArticleStatus.DRAFT)
    resp = await async_client.post("/api/v1/articles/not-yet/like")
    assert resp.status_code == 404


# ---------------------------------------------------------------------------
# Taxonomy reads
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_public_categories_and_tags(async_client: AsyncClient, session_factory):
    async with session_factory() as session:
        session.add_all([Category(name="News", slug="news"), Tag(name="fastapi", slug="fastapi")])
        await session.commit()

    categories = await async_client.get("/api/v1/categories")
    assert [c["slug"] for c in categories.json()["data"]] == ["news"]
    tags = await async_client.get("/api/v1/tags")
    assert [t["slug"] for t in tags.json()["data"]] == ["fastapi"]
