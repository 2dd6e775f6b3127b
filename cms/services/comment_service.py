"""
Comment service — reader comments and their moderation.

Design notes
------------
- Replies must belong to the same article as their parent comment.
- New comments start ``pending`` unless the author holds
  ``approve_comments``, in which case they are approved immediately.
- Owners may always edit/delete their own comments; anyone else needs
  ``edit_comments`` / ``delete_comments``.  Reporting is open to every
  authenticated user.
"""
import logging

from sqlalchemy import asc, desc, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.cache import cache
from cms.enums import CommentStatus
from cms.events import CommentApproved, CommentCreated, CommentDeleted, CommentReported, bus
from cms.exceptions import AuthorizationError, NotFoundError, ValidationError
from cms.models import Article, Comment, User
from cms.pagination import paginate
from cms.permissions import has_permission
from cms.schemas import ApproveCommentRequest, CommentCreate, CommentFilter, PageQuery
from cms.services.article_service import published_clause
from cms.services.user_service import user_summary
from cms.utils import isoformat, like_pattern, utcnow

logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "updated_at", "report_count", "status"})


def comment_to_dict(comment: Comment, admin: bool = False) -> dict:
    data = {
        "id": comment.id,
        "article_id": comment.article_id,
        "parent_comment_id": comment.parent_comment_id,
        "content": comment.content,
        "status": comment.status.value,
        "user": user_summary(comment.user),
        "approved_at": isoformat(comment.approved_at),
        "created_at": isoformat(comment.created_at),
        "updated_at": isoformat(comment.updated_at),
    }
    if admin:
        data.update({
            "approved_by": comment.approved_by,
            "report_count": comment.report_count,
            "last_reported_at": isoformat(comment.last_reported_at),
            "report_reason": comment.report_reason,
            "moderator_notes": comment.moderator_notes,
            "admin_note": comment.admin_note,
        })
    return data


async def _load_comment(db: AsyncSession, comment_id: int) -> Comment:
    result = await db.execute(
        select(Comment)
        .where(Comment.id == comment_id)
        .options(selectinload(Comment.user))
        .execution_options(populate_existing=True)
    )
    comment = result.scalar_one_or_none()
    if comment is None:
        raise NotFoundError("Comment")
    return comment


async def _invalidate_article(db: AsyncSession, article_id: int) -> None:
    """Cached article details embed the approved-comment count."""
    slug = (await db.execute(select(Article.slug).where(Article.id == article_id))).scalar_one_or_none()
    await cache.invalidate_article(article_id, slug)


def _event_kwargs(comment: Comment, actor: User | None) -> dict:
    return {
        "comment_id": comment.id,
        "article_id": comment.article_id,
        "user_id": comment.user_id,
        "actor_id": actor.id if actor else None,
    }


# ---------------------------------------------------------------------------
# Reader operations
# ---------------------------------------------------------------------------

async def create_comment(db: AsyncSession, slug: str, data: CommentCreate, user: User) -> dict:
    article = (
        await db.execute(select(Article).where(Article.slug == slug, published_clause()))
    ).scalar_one_or_none()
    if article is None:
        raise NotFoundError("Article")

    if data.parent_comment_id is not None:
        parent = await db.get(Comment, data.parent_comment_id)
        if parent is None or parent.article_id != article.id:
            raise ValidationError(
                {"parent_comment_id": ["The parent comment must belong to the same article."]}
            )

    approved = await has_permission(db, user.id, "approve_comments")
    now = utcnow()
    comment = Comment(
        article_id=article.id,
        user_id=user.id,
        parent_comment_id=data.parent_comment_id,
        content=data.content,
        status=CommentStatus.APPROVED if approved else CommentStatus.PENDING,
        approved_at=now if approved else None,
        approved_by=user.id if approved else None,
    )
    db.add(comment)
    await db.flush()

    if approved:
        await _invalidate_article(db, article.id)

    comment = await _load_comment(db, comment.id)
    await bus.dispatch(db, CommentCreated(**_event_kwargs(comment, user), approved=approved))
    logger.info("Comment %s created on article %s (%s)", comment.id, article.id, comment.status.value)
    return comment_to_dict(comment)


async def update_comment(db: AsyncSession, comment_id: int, content: str, actor: User) -> dict:
    comment = await _load_comment(db, comment_id)
    if comment.user_id != actor.id and not await has_permission(db, actor.id, "edit_comments"):
        raise AuthorizationError()
    comment.content = content
    await db.flush()
    return comment_to_dict(await _load_comment(db, comment_id))


async def delete_own_comment(db: AsyncSession, comment_id: int, actor: User) -> None:
    comment = await _load_comment(db, comment_id)
    if comment.user_id != actor.id and not await has_permission(db, actor.id, "delete_comments"):
        raise AuthorizationError()
    event = CommentDeleted(**_event_kwargs(comment, actor))
    await db.delete(comment)
    await db.flush()
    await _invalidate_article(db, event.article_id)
    await bus.dispatch(db, event)


async def report_comment(db: AsyncSession, comment_id: int, reason: str | None, actor: User) -> dict:
    comment = await _load_comment(db, comment_id)
    comment.report_count = (comment.report_count or 0) + 1
    comment.last_reported_at = utcnow()
    comment.report_reason = reason
    await db.flush()
    await bus.dispatch(db, CommentReported(**_event_kwargs(comment, actor), reason=reason))
    return comment_to_dict(await _load_comment(db, comment_id))


async def get_own_comments(db: AsyncSession, user: User, query: PageQuery, path: str | None = None) -> dict:
    stmt = (
        select(Comment)
        .options(selectinload(Comment.user))
        .where(Comment.user_id == user.id)
        .order_by(desc(Comment.created_at), desc(Comment.id))
    )
    comments, meta = await paginate(db, stmt, query.page, query.per_page, path)
    return {"comments": [comment_to_dict(c) for c in comments], "meta": meta}


# ---------------------------------------------------------------------------
# Moderation
# ---------------------------------------------------------------------------

async def get_comments(db: AsyncSession, filters: CommentFilter, path: str | None = None) -> dict:
    stmt = select(Comment).options(selectinload(Comment.user))

    if filters.status is not None:
        stmt = stmt.where(Comment.status == filters.status)
    if filters.search:
        stmt = stmt.where(Comment.content.ilike(like_pattern(filters.search), escape="\\"))
    if filters.user_id is not None:
        stmt = stmt.where(Comment.user_id == filters.user_id)
    if filters.article_id is not None:
        stmt = stmt.where(Comment.article_id == filters.article_id)
    if filters.parent_comment_id is not None:
        stmt = stmt.where(Comment.parent_comment_id == filters.parent_comment_id)
    if filters.approved_by is not None:
        stmt = stmt.where(Comment.approved_by == filters.approved_by)
    if filters.has_reports is not None:
        stmt = stmt.where(Comment.report_count > 0 if filters.has_reports else Comment.report_count == 0)

    sort_col = getattr(Comment, filters.sort_by) if filters.sort_by in _SORTABLE_COLUMNS else Comment.created_at
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(Comment.id))

    comments, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"comments": [comment_to_dict(c, admin=True) for c in comments], "meta": meta}


async def approve_comment(db: AsyncSession, comment_id: int, data: ApproveCommentRequest, approver: User) -> dict:
    comment = await _load_comment(db, comment_id)
    comment.status = CommentStatus.APPROVED
    comment.approved_at = utcnow()
    comment.approved_by = approver.id
    if data.admin_note is not None:
        comment.admin_note = data.admin_note
    if data.moderator_notes is not None:
        comment.moderator_notes = data.moderator_notes
    await db.flush()
    await _invalidate_article(db, comment.article_id)

    comment = await _load_comment(db, comment_id)
    await bus.dispatch(db, CommentApproved(**_event_kwargs(comment, approver)))
    return comment_to_dict(comment, admin=True)


async def delete_comment(db: AsyncSession, comment_id: int, reason: str | None, actor: User) -> None:
    comment = await _load_comment(db, comment_id)
    logger.info("Comment %s deleted by %s: %s", comment_id, actor.id, reason or "no reason given")
    event = CommentDeleted(**_event_kwargs(comment, actor), reason=reason)
    await db.delete(comment)
    await db.flush()
    await _invalidate_article(db, event.article_id)
    await bus.dispatch(db, event)
