"""
User notification service — a user's own inbox.

Every operation is scoped to the caller; touching another user's row is
a 403 rather than a 404 so ownership errors are explicit.
"""
from sqlalchemy import desc, func, select, update
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.exceptions import AuthorizationError, NotFoundError
from cms.models import Notification, User, UserNotification
from cms.pagination import paginate
from cms.schemas import UserNotificationFilter
from cms.utils import isoformat, utcnow


def user_notification_to_dict(row: UserNotification) -> dict:
    notification = row.notification
    return {
        "id": row.id,
        "notification_id": row.notification_id,
        "type": notification.type.value if notification else None,
        "message": notification.message if notification else None,
        "is_read": row.is_read,
        "read_at": isoformat(row.read_at),
        "created_at": isoformat(row.created_at),
    }


async def _get_owned(db: AsyncSession, user: User, user_notification_id: int) -> UserNotification:
    result = await db.execute(
        select(UserNotification)
        .where(UserNotification.id == user_notification_id)
        .options(selectinload(UserNotification.notification))
        .execution_options(populate_existing=True)
    )
    row = result.scalar_one_or_none()
    if row is None:
        raise NotFoundError("Notification")
    if row.user_id != user.id:
        raise AuthorizationError()
    return row


async def get_user_notifications(
    db: AsyncSession, user: User, filters: UserNotificationFilter, path: str | None = None
) -> dict:
    stmt = (
        select(UserNotification)
        .options(selectinload(UserNotification.notification))
        .where(UserNotification.user_id == user.id)
    )
    if filters.is_read is not None:
        stmt = stmt.where(UserNotification.is_read.is_(filters.is_read))
    if filters.type is not None:
        stmt = stmt.where(
            UserNotification.notification_id.in_(select(Notification.id).where(Notification.type == filters.type))
        )
    if filters.created_after:
        stmt = stmt.where(UserNotification.created_at >= filters.created_after)
    if filters.created_before:
        stmt = stmt.where(UserNotification.created_at <= filters.created_before)
    stmt = stmt.order_by(desc(UserNotification.created_at), desc(UserNotification.id))

    rows, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"notifications": [user_notification_to_dict(r) for r in rows], "meta": meta}


async def get_unread_count(db: AsyncSession, user: User) -> int:
    return (
        await db.execute(
            select(func.count(UserNotification.id)).where(
                UserNotification.user_id == user.id, UserNotification.is_read.is_(False)
            )
        )
    ).scalar_one()


async def mark_as_read(db: AsyncSession, user: User, user_notification_id: int) -> dict:
    row = await _get_owned(db, user, user_notification_id)
    if not row.is_read:
        row.is_read = True
        row.read_at = utcnow()
        await db.flush()
    return user_notification_to_dict(row)


async def mark_all_as_read(db: AsyncSession, user: User) -> int:
    """Mark every unread notification of *user* as read; returns how many changed."""
    result = await db.execute(
        update(UserNotification)
        .where(UserNotification.user_id == user.id, UserNotification.is_read.is_(False))
        .values(is_read=True, read_at=utcnow(), updated_at=utcnow())
        .execution_options(synchronize_session=False)
    )
    await db.flush()
    return result.rowcount or 0


async def delete_notification(db: AsyncSession, user: User, user_notification_id: int) -> None:
    row = await _get_owned(db, user, user_notification_id)
    await db.delete(row)
    await db.flush()
