"""
Article service — public read side of the Article aggregate.

Design notes
------------
- Only articles that are ``published`` *and* whose ``published_at`` has
  passed are visible here; everything else is a 404.
- Detail reads go through the cache-aside pattern keyed by slug
  (``CacheKey.ARTICLE_BY_SLUG``).  Moderation and management writes
  invalidate the entry via ``cache.invalidate_article``.
- Relationships are loaded with ``selectinload`` only, so the same
  statements can be fed to ``paginate`` (a ``joinedload`` on a
  collection would inflate the COUNT).  Counts (comments, likes,
  dislikes) are fetched in one grouped query per page.
"""
import logging

from sqlalchemy import Select, and_, asc, delete, desc, func, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.cache import CacheKey, cache
from cms.enums import ArticleReactionType, ArticleStatus, CommentStatus
from cms.events import ArticleDisliked, ArticleLiked, bus
from cms.exceptions import NotFoundError, ValidationError
from cms.models import Article, ArticleAuthor, ArticleLike, Category, Comment, Media, Tag
from cms.pagination import paginate
from cms.schemas import ArticleCommentsQuery, ArticleFilter
from cms.services.user_service import user_summary
from cms.utils import isoformat, like_pattern, utcnow

logger = logging.getLogger(__name__)

# Columns that are safe to sort by; guards against arbitrary attribute access.
_SORTABLE_COLUMNS: frozenset[str] = frozenset({"published_at", "created_at", "title"})


# ---------------------------------------------------------------------------
# Loading helpers (shared with the management / moderation services)
# ---------------------------------------------------------------------------

def with_relationships(stmt: Select) -> Select:
    """Attach the eager loads every article payload needs."""
    return stmt.options(
        selectinload(Article.author),
        selectinload(Article.approver),
        selectinload(Article.updater),
        selectinload(Article.featured_media),
        selectinload(Article.categories),
        selectinload(Article.tags),
        selectinload(Article.author_links).selectinload(ArticleAuthor.user),
    ).execution_options(populate_existing=True)


def published_clause():
    return and_(Article.status == ArticleStatus.PUBLISHED, Article.published_at <= utcnow())


async def article_counts(db: AsyncSession, article_ids: list[int]) -> dict[int, dict]:
    """Approved-comment, like and dislike counts for *article_ids*."""
    counts = {aid: {"comments_count": 0, "likes_count": 0, "dislikes_count": 0} for aid in article_ids}
    if not article_ids:
        return counts

    rows = await db.execute(
        select(Comment.article_id, func.count(Comment.id))
        .where(Comment.article_id.in_(article_ids), Comment.status == CommentStatus.APPROVED)
        .group_by(Comment.article_id)
    )
    for article_id, total in rows.all():
        counts[article_id]["comments_count"] = total

    rows = await db.execute(
        select(ArticleLike.article_id, ArticleLike.type, func.count(ArticleLike.id))
        .where(ArticleLike.article_id.in_(article_ids))
        .group_by(ArticleLike.article_id, ArticleLike.type)
    )
    for article_id, reaction, total in rows.all():
        key = "likes_count" if reaction == ArticleReactionType.LIKE else "dislikes_count"
        counts[article_id][key] = total
    return counts


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def _media_to_dict(media: Media | None) -> dict | None:
    if media is None:
        return None
    return {"id": media.id, "name": media.name, "url": media.url, "alt_text": media.alt_text}


def _term_to_dict(term: Category | Tag) -> dict:
    return {"id": term.id, "name": term.name, "slug": term.slug}


def article_to_dict(article: Article, counts: dict | None = None, detail: bool = False) -> dict:
    """
    Serialise an Article with its loaded relationships.

    The list view omits the article body; ``detail=True`` includes it.
    """
    data = {
        "id": article.id,
        "slug": article.slug,
        "title": article.title,
        "subtitle": article.subtitle,
        "excerpt": article.excerpt,
        "status": article.status.value,
        "published_at": isoformat(article.published_at),
        "meta_title": article.meta_title,
        "meta_description": article.meta_description,
        "is_featured": article.is_featured,
        "featured_at": isoformat(article.featured_at),
        "is_pinned": article.is_pinned,
        "pinned_at": isoformat(article.pinned_at),
        "report_count": article.report_count,
        "last_reported_at": isoformat(article.last_reported_at),
        "report_reason": article.report_reason,
        "featured_media": _media_to_dict(article.featured_media),
        "author": user_summary(article.author),
        "approver": user_summary(article.approver),
        "updater": user_summary(article.updater),
        "categories": [_term_to_dict(c) for c in article.categories],
        "tags": [_term_to_dict(t) for t in article.tags],
        "authors": [
            {**user_summary(link.user), "role": link.role.value}
            for link in article.author_links
            if link.user is not None
        ],
        "created_at": isoformat(article.created_at),
        "updated_at": isoformat(article.updated_at),
    }
    if detail:
        data["content_markdown"] = article.content_markdown
        data["content_html"] = article.content_html
    data.update(counts or {"comments_count": 0, "likes_count": 0, "dislikes_count": 0})
    return data


async def _get_published_article(db: AsyncSession, slug: str) -> Article:
    result = await db.execute(select(Article).where(Article.slug == slug, published_clause()))
    article = result.scalar_one_or_none()
    if article is None:
        raise NotFoundError("Article")
    return article


# ---------------------------------------------------------------------------
# Public service functions
# ---------------------------------------------------------------------------

async def get_articles(db: AsyncSession, filters: ArticleFilter, path: str | None = None) -> dict:
    """Paginated list of live articles."""
    stmt = with_relationships(select(Article).where(published_clause()))

    if filters.search:
        pattern = like_pattern(filters.search)
        stmt = stmt.where(
            or_(
                Article.title.ilike(pattern, escape="\\"),
                Article.subtitle.ilike(pattern, escape="\\"),
                Article.excerpt.ilike(pattern, escape="\\"),
                Article.content_markdown.ilike(pattern, escape="\\"),
            )
        )
    if filters.category_slugs:
        stmt = stmt.where(Article.categories.any(Category.slug.in_(filters.category_slugs)))
    if filters.tag_slugs:
        stmt = stmt.where(Article.tags.any(Tag.slug.in_(filters.tag_slugs)))
    if filters.author_id is not None:
        stmt = stmt.where(Article.created_by == filters.author_id)
    if filters.published_after:
        stmt = stmt.where(Article.published_at >= filters.published_after)
    if filters.published_before:
        stmt = stmt.where(Article.published_at <= filters.published_before)

    sort_col = getattr(Article, filters.sort_by) if filters.sort_by in _SORTABLE_COLUMNS else Article.published_at
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(Article.id))

    articles, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    counts = await article_counts(db, [a.id for a in articles])
    return {"articles": [article_to_dict(a, counts[a.id]) for a in articles], "meta": meta}


async def get_article_by_slug(db: AsyncSession, slug: str) -> dict:
    """Live article detail, cached by slug."""

    async def _load() -> dict | None:
        result = await db.execute(
            with_relationships(select(Article).where(Article.slug == slug, published_clause()))
        )
        article = result.scalar_one_or_none()
        if article is None:
            return None
        counts = await article_counts(db, [article.id])
        return article_to_dict(article, counts[article.id], detail=True)

    data = await cache.remember(CacheKey.ARTICLE_BY_SLUG, _load, suffix=slug)
    if data is None:
        raise NotFoundError("Article")
    return data


def _comment_to_dict(comment: Comment) -> dict:
    return {
        "id": comment.id,
        "article_id": comment.article_id,
        "parent_comment_id": comment.parent_comment_id,
        "content": comment.content,
        "status": comment.status.value,
        "user": user_summary(comment.user),
        "created_at": isoformat(comment.created_at),
        "updated_at": isoformat(comment.updated_at),
    }


async def get_article_comments(
    db: AsyncSession, slug: str, query: ArticleCommentsQuery, path: str | None = None
) -> dict:
    """
    Approved comments of a live article, one level at a time.

    Without ``parent_id`` the page holds top-level comments; with it, the
    direct replies of that comment.  Each comment carries its first
    ``replies_per_page`` approved replies and a ``replies_count``.
    """
    article = await _get_published_article(db, slug)

    stmt = (
        select(Comment)
        .options(selectinload(Comment.user))
        .where(Comment.article_id == article.id, Comment.status == CommentStatus.APPROVED)
        .order_by(desc(Comment.created_at), desc(Comment.id))
    )
    if query.parent_id is None:
        stmt = stmt.where(Comment.parent_comment_id.is_(None))
    else:
        stmt = stmt.where(Comment.parent_comment_id == query.parent_id)

    comments, meta = await paginate(db, stmt, query.page, query.per_page, path)
    ids = [c.id for c in comments]

    replies_count: dict[int, int] = {}
    replies: dict[int, list[dict]] = {cid: [] for cid in ids}
    if ids:
        rows = await db.execute(
            select(Comment.parent_comment_id, func.count(Comment.id))
            .where(Comment.parent_comment_id.in_(ids), Comment.status == CommentStatus.APPROVED)
            .group_by(Comment.parent_comment_id)
        )
        replies_count = dict(rows.all())

        if query.replies_per_page:
            result = await db.execute(
                select(Comment)
                .options(selectinload(Comment.user))
                .where(Comment.parent_comment_id.in_(ids), Comment.status == CommentStatus.APPROVED)
                .order_by(asc(Comment.created_at), asc(Comment.id))
            )
            for reply in result.scalars().all():
                bucket = replies[reply.parent_comment_id]
                if len(bucket) < query.replies_per_page:
                    bucket.append(_comment_to_dict(reply))

    items = []
    for comment in comments:
        data = _comment_to_dict(comment)
        data["replies"] = replies[comment.id]
        data["replies_count"] = replies_count.get(comment.id, 0)
        items.append(data)
    return {"comments": items, "meta": meta}


# ---------------------------------------------------------------------------
# Reactions
# ---------------------------------------------------------------------------

async def _react(
    db: AsyncSession,
    slug: str,
    reaction: ArticleReactionType,
    user_id: int | None,
    ip_address: str | None,
) -> dict:
    if (user_id is None) == (ip_address is None):
        raise ValidationError({"user": ["Exactly one of user or IP address is required."]})
    article = await _get_published_article(db, slug)

    reactor = ArticleLike.user_id == user_id if user_id is not None else and_(
        ArticleLike.user_id.is_(None), ArticleLike.ip_address == ip_address
    )
    existing = (
        await db.execute(select(ArticleLike).where(ArticleLike.article_id == article.id, reactor))
    ).scalars().all()

    if not any(r.type == reaction for r in existing):
        await db.execute(
            delete(ArticleLike).where(
                ArticleLike.article_id == article.id, reactor, ArticleLike.type == reaction.opposite
            )
        )
        db.add(ArticleLike(article_id=article.id, user_id=user_id, ip_address=ip_address, type=reaction))
        await db.flush()

        event_cls = ArticleLiked if reaction == ArticleReactionType.LIKE else ArticleDisliked
        await bus.dispatch(db, event_cls(article_id=article.id, user_id=user_id, ip_address=ip_address))
        await cache.invalidate_article(article.id, article.slug)

    counts = (await article_counts(db, [article.id]))[article.id]
    return {
        "article_id": article.id,
        "reaction": reaction.value,
        "likes_count": counts["likes_count"],
        "dislikes_count": counts["dislikes_count"],
    }


async def like_article(
    db: AsyncSession, slug: str, user_id: int | None = None, ip_address: str | None = None
) -> dict:
    return await _react(db, slug, ArticleReactionType.LIKE, user_id, ip_address)


async def dislike_article(
    db: AsyncSession, slug: str, user_id: int | None = None, ip_address: str | None = None
) -> dict:
    return await _react(db, slug, ArticleReactionType.DISLIKE, user_id, ip_address)
