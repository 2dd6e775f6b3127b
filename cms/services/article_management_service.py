"""
Article management service — the authoring side of the Article aggregate
(admin dashboard listing, create, update).

Design notes
------------
- Users without ``edit_others_posts`` only ever see and touch articles
  they created; the restriction is applied in the query, not after it.
- The initial status is derived from ``published_at``: none -> draft,
  future -> scheduled, past -> published.  Published and scheduled
  articles record the creator as approver.
- Pivot rows (categories, tags, authors) are written with Core
  statements and the article is then reloaded with ``populate_existing``
  so the returned payload reflects the new links.
"""
import logging

from sqlalchemy import asc, delete, desc, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import CacheKey, cache
from cms.enums import ArticleAuthorRole, ArticleStatus
from cms.events import ArticleCreated, ArticleUpdated, bus
from cms.exceptions import AuthorizationError, NotFoundError, ValidationError
from cms.models import (
    Article,
    ArticleAuthor,
    Category,
    Media,
    Tag,
    User,
    article_categories,
    article_tags,
)
from cms.pagination import paginate
from cms.permissions import has_permission
from cms.schemas import ArticleCreate, ArticleManagementFilter, ArticleUpdate
from cms.services.article_service import article_counts, article_to_dict, with_relationships
from cms.utils import as_utc, like_pattern, slugify, utcnow

logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS: frozenset[str] = frozenset(
    {"created_at", "updated_at", "published_at", "title", "status", "report_count"}
)


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

async def load_article(db: AsyncSession, article_id: int) -> Article:
    """Fetch an article with every relationship the payload needs, or 404."""
    result = await db.execute(with_relationships(select(Article).where(Article.id == article_id)))
    article = result.scalar_one_or_none()
    if article is None:
        raise NotFoundError("Article")
    return article


async def serialize(db: AsyncSession, article: Article) -> dict:
    counts = await article_counts(db, [article.id])
    return article_to_dict(article, counts[article.id], detail=True)


async def can_manage_others(db: AsyncSession, user: User) -> bool:
    return await has_permission(db, user.id, "edit_others_posts")


async def ensure_can_manage(db: AsyncSession, article: Article, user: User) -> None:
    """Owners may always manage their article; others need ``edit_others_posts``."""
    if article.created_by != user.id and not await can_manage_others(db, user):
        raise AuthorizationError()


async def _unique_slug(db: AsyncSession, source: str, explicit: bool, exclude_id: int | None = None) -> str:
    base = slugify(source)
    if not base:
        raise ValidationError({"slug": ["The slug could not be generated from the title."]})

    async def taken(candidate: str) -> bool:
        stmt = select(Article.id).where(Article.slug == candidate)
        if exclude_id is not None:
            stmt = stmt.where(Article.id != exclude_id)
        return (await db.execute(stmt)).scalar_one_or_none() is not None

    if not await taken(base):
        return base
    if explicit:
        raise ValidationError({"slug": ["The slug has already been taken."]})
    suffix = 2
    while await taken(f"{base}-{suffix}"):
        suffix += 1
    return f"{base}-{suffix}"


async def _ensure_ids_exist(db: AsyncSession, model, ids: list[int], field: str) -> list[int]:
    ids = list(dict.fromkeys(ids))
    if not ids:
        return ids
    found = set((await db.execute(select(model.id).where(model.id.in_(ids)))).scalars().all())
    missing = [i for i in ids if i not in found]
    if missing:
        raise ValidationError({field: [f"The selected {field} {missing[0]} is invalid."]})
    return ids


async def _sync_terms(db: AsyncSession, article_id: int, table, column: str, ids: list[int]) -> None:
    await db.execute(delete(table).where(table.c.article_id == article_id))
    if ids:
        await db.execute(insert(table), [{"article_id": article_id, column: i} for i in ids])


def _initial_status(published_at) -> ArticleStatus:
    if published_at is None:
        return ArticleStatus.DRAFT
    return ArticleStatus.SCHEDULED if as_utc(published_at) > utcnow() else ArticleStatus.PUBLISHED


def _event_kwargs(article: Article, actor: User) -> dict:
    return {
        "article_id": article.id,
        "title": article.title,
        "slug": article.slug,
        "author_id": article.created_by,
        "actor_id": actor.id,
    }


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def get_articles(
    db: AsyncSession, filters: ArticleManagementFilter, user: User, path: str | None = None
) -> dict:
    stmt = with_relationships(select(Article))

    if not await can_manage_others(db, user):
        stmt = stmt.where(Article.created_by == user.id)

    if filters.search:
        pattern = like_pattern(filters.search)
        stmt = stmt.where(
            or_(
                Article.title.ilike(pattern, escape="\\"),
                Article.content_markdown.ilike(pattern, escape="\\"),
                Article.excerpt.ilike(pattern, escape="\\"),
            )
        )
    if filters.status is not None:
        stmt = stmt.where(Article.status == filters.status)
    if filters.author_id is not None:
        stmt = stmt.where(Article.created_by == filters.author_id)
    if filters.category_id is not None:
        stmt = stmt.where(Article.categories.any(Category.id == filters.category_id))
    if filters.tag_id is not None:
        stmt = stmt.where(Article.tags.any(Tag.id == filters.tag_id))
    if filters.is_featured is not None:
        stmt = stmt.where(Article.is_featured.is_(filters.is_featured))
    if filters.is_pinned is not None:
        stmt = stmt.where(Article.is_pinned.is_(filters.is_pinned))
    if filters.has_reports is not None:
        stmt = stmt.where(Article.report_count > 0 if filters.has_reports else Article.report_count == 0)
    if filters.created_after:
        stmt = stmt.where(Article.created_at >= filters.created_after)
    if filters.created_before:
        stmt = stmt.where(Article.created_at <= filters.created_before)
    if filters.published_after:
        stmt = stmt.where(Article.published_at >= filters.published_after)
    if filters.published_before:
        stmt = stmt.where(Article.published_at <= filters.published_before)

    sort_col = getattr(Article, filters.sort_by) if filters.sort_by in _SORTABLE_COLUMNS else Article.created_at
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(Article.id))

    articles, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    counts = await article_counts(db, [a.id for a in articles])
    return {"articles": [article_to_dict(a, counts[a.id]) for a in articles], "meta": meta}


async def get_article_by_id(db: AsyncSession, article_id: int, user: User) -> dict:
    """Article detail (any status), cached by id."""
    article = await db.get(Article, article_id)
    if article is None:
        raise NotFoundError("Article")
    await ensure_can_manage(db, article, user)

    async def _load() -> dict:
        return await serialize(db, await load_article(db, article_id))

    return await cache.remember(CacheKey.ARTICLE_BY_ID, _load, suffix=article_id)


async def create_article(db: AsyncSession, data: ArticleCreate, creator: User) -> dict:
    slug = await _unique_slug(db, data.slug or data.title, explicit=bool(data.slug))
    category_ids = await _ensure_ids_exist(db, Category, data.category_ids, "category_ids")
    tag_ids = await _ensure_ids_exist(db, Tag, data.tag_ids, "tag_ids")
    author_ids = await _ensure_ids_exist(db, User, [a.user_id for a in data.authors], "authors")
    if data.featured_media_id is not None:
        await _ensure_ids_exist(db, Media, [data.featured_media_id], "featured_media_id")

    published_at = as_utc(data.published_at)
    status = _initial_status(published_at)
    article = Article(
        slug=slug,
        title=data.title,
        subtitle=data.subtitle,
        excerpt=data.excerpt,
        content_markdown=data.content_markdown,
        content_html=data.content_html,
        featured_media_id=data.featured_media_id,
        status=status,
        published_at=published_at,
        meta_title=data.meta_title,
        meta_description=data.meta_description,
        created_by=creator.id,
        approved_by=creator.id if status != ArticleStatus.DRAFT else None,
    )
    db.add(article)
    await db.flush()

    await _sync_terms(db, article.id, article_categories, "category_id", category_ids)
    await _sync_terms(db, article.id, article_tags, "tag_id", tag_ids)

    roles = {a.user_id: a.role for a in data.authors if a.user_id in author_ids}
    if ArticleAuthorRole.MAIN not in roles.values():
        roles[creator.id] = ArticleAuthorRole.MAIN
    db.add_all(ArticleAuthor(article_id=article.id, user_id=uid, role=role) for uid, role in roles.items())
    await db.flush()

    article = await load_article(db, article.id)
    await bus.dispatch(db, ArticleCreated(**_event_kwargs(article, creator)))
    logger.info("Article created: id=%s status=%s by=%s", article.id, status.value, creator.id)
    return await serialize(db, article)


async def update_article(db: AsyncSession, article_id: int, data: ArticleUpdate, editor: User) -> dict:
    article = await db.get(Article, article_id)
    if article is None:
        raise NotFoundError("Article")
    await ensure_can_manage(db, article, editor)
    old_slug = article.slug

    update_data = data.model_dump(exclude_unset=True)
    category_ids = update_data.pop("category_ids", None)
    tag_ids = update_data.pop("tag_ids", None)

    if update_data.get("slug"):
        update_data["slug"] = await _unique_slug(db, update_data["slug"], explicit=True, exclude_id=article_id)
    if update_data.get("featured_media_id") is not None:
        await _ensure_ids_exist(db, Media, [update_data["featured_media_id"]], "featured_media_id")

    for field, value in update_data.items():
        if field in ("title", "slug", "content_markdown") and value is None:
            continue
        setattr(article, field, value)
    article.updated_by = editor.id

    if category_ids is not None:
        category_ids = await _ensure_ids_exist(db, Category, category_ids, "category_ids")
        await _sync_terms(db, article_id, article_categories, "category_id", category_ids)
    if tag_ids is not None:
        tag_ids = await _ensure_ids_exist(db, Tag, tag_ids, "tag_ids")
        await _sync_terms(db, article_id, article_tags, "tag_id", tag_ids)
    await db.flush()

    await cache.invalidate_article(article_id, old_slug)
    if article.slug != old_slug:
        await cache.invalidate_article(slug=article.slug)

    article = await load_article(db, article_id)
    await bus.dispatch(db, ArticleUpdated(**_event_kwargs(article, editor)))
    return await serialize(db, article)


async def authorize_article_action(db: AsyncSession, article_id: int, user: User) -> None:
    """404 for an unknown article, 403 when *user* may not act on someone else's."""
    article = await db.get(Article, article_id)
    if article is None:
        raise NotFoundError("Article")
    await ensure_can_manage(db, article, user)
