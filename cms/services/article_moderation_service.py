"""
Article moderation service — status transitions, featuring, pinning and
reports.

Every operation follows the same sequence: mutate the row, flush,
invalidate the by-id / by-slug cache entries, reload with relationships,
then dispatch the matching domain event.
"""
import logging
from typing import Callable

from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import cache
from cms.enums import ArticleStatus
from cms.events import (
    ArticleApproved,
    ArticleArchived,
    ArticleDeleted,
    ArticleFeatured,
    ArticlePinned,
    ArticleRejected,
    ArticleReported,
    ArticleReportsCleared,
    ArticleRestored,
    ArticleRestoredFromTrash,
    ArticleTrashed,
    ArticleUnfeatured,
    ArticleUnpinned,
    bus,
)
from cms.exceptions import NotFoundError
from cms.models import Article, User
from cms.services.article_management_service import load_article, serialize
from cms.utils import utcnow

logger = logging.getLogger(__name__)


async def _get_article(db: AsyncSession, article_id: int) -> Article:
    article = await db.get(Article, article_id)
    if article is None:
        raise NotFoundError("Article")
    return article


async def _transition(
    db: AsyncSession,
    article_id: int,
    actor: User | None,
    mutate: Callable[[Article], None],
    event_cls: type,
    touch: bool = True,
    **event_extra,
) -> dict:
    article = await _get_article(db, article_id)
    mutate(article)
    if touch and actor is not None:
        article.updated_by = actor.id
    await db.flush()
    await cache.invalidate_article(article.id, article.slug)

    article = await load_article(db, article_id)
    await bus.dispatch(
        db,
        event_cls(
            article_id=article.id,
            title=article.title,
            slug=article.slug,
            author_id=article.created_by,
            actor_id=actor.id if actor else None,
            **event_extra,
        ),
    )
    logger.info("Article %s: %s", article_id, event_cls.__name__)
    return await serialize(db, article)


async def approve_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.status = ArticleStatus.PUBLISHED
        article.approved_by = actor.id
        article.published_at = utcnow()

    return await _transition(db, article_id, actor, mutate, ArticleApproved)


async def reject_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.status = ArticleStatus.DRAFT
        article.approved_by = actor.id

    return await _transition(db, article_id, actor, mutate, ArticleRejected)


def _set_status(status: ArticleStatus) -> Callable[[Article], None]:
    def mutate(article: Article) -> None:
        article.status = status

    return mutate


async def archive_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    return await _transition(db, article_id, actor, _set_status(ArticleStatus.ARCHIVED), ArticleArchived)


async def restore_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    return await _transition(db, article_id, actor, _set_status(ArticleStatus.PUBLISHED), ArticleRestored)


async def trash_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    return await _transition(db, article_id, actor, _set_status(ArticleStatus.TRASHED), ArticleTrashed)


async def restore_from_trash(db: AsyncSession, article_id: int, actor: User) -> dict:
    return await _transition(
        db, article_id, actor, _set_status(ArticleStatus.DRAFT), ArticleRestoredFromTrash
    )


async def delete_article(db: AsyncSession, article_id: int, actor: User) -> None:
    """Hard delete; the event is dispatched after the row is gone."""
    article = await _get_article(db, article_id)
    event = ArticleDeleted(
        article_id=article.id,
        title=article.title,
        slug=article.slug,
        author_id=article.created_by,
        actor_id=actor.id,
    )
    await db.delete(article)
    await db.flush()
    await cache.invalidate_article(event.article_id, event.slug)
    await bus.dispatch(db, event)
    logger.info("Article %s deleted by %s", article_id, actor.id)


async def feature_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    """Toggle the featured flag."""
    article = await _get_article(db, article_id)
    if article.is_featured:
        return await unfeature_article(db, article_id, actor)

    def mutate(a: Article) -> None:
        a.is_featured = True
        a.featured_at = utcnow()

    return await _transition(db, article_id, actor, mutate, ArticleFeatured)


async def unfeature_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.is_featured = False
        article.featured_at = None

    return await _transition(db, article_id, actor, mutate, ArticleUnfeatured)


async def pin_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.is_pinned = True
        article.pinned_at = utcnow()

    return await _transition(db, article_id, actor, mutate, ArticlePinned)


async def unpin_article(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.is_pinned = False
        article.pinned_at = None

    return await _transition(db, article_id, actor, mutate, ArticleUnpinned)


async def report_article(db: AsyncSession, article_id: int, reason: str | None, actor: User | None = None) -> dict:
    def mutate(article: Article) -> None:
        article.report_count = (article.report_count or 0) + 1
        article.last_reported_at = utcnow()
        article.report_reason = reason

    # Reporting is not an edit; updated_by is left alone.
    return await _transition(db, article_id, actor, mutate, ArticleReported, touch=False, reason=reason)


async def clear_reports(db: AsyncSession, article_id: int, actor: User) -> dict:
    def mutate(article: Article) -> None:
        article.report_count = 0
        article.last_reported_at = None
        article.report_reason = None

    return await _transition(db, article_id, actor, mutate, ArticleReportsCleared)
