"""
Notification service — admin-authored and system notifications.

Design notes
------------
- A notification is stored once, with one ``NotificationAudience`` row
  per target (everyone, a role, or a single user), and then fanned out
  to ``UserNotification`` rows for every matching user.  Per-user read
  state lives on those rows only.
- Fan-out skips users that already hold the notification, so a user
  matched by several audiences receives it once.
- ``notify_user`` / ``notify_role`` are the entry points used by the
  domain-event listeners.
"""
import logging

from sqlalchemy import String, asc, cast, desc, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.enums import NotificationAudienceType, NotificationType, UserRole
from cms.events import NotificationCreated, bus
from cms.exceptions import NotFoundError, ValidationError
from cms.models import Notification, NotificationAudience, Role, User, UserNotification, user_roles
from cms.pagination import paginate
from cms.schemas import NotificationCreate, NotificationFilter
from cms.utils import isoformat, like_pattern

logger = logging.getLogger(__name__)


def _audience_to_dict(audience: NotificationAudience) -> dict:
    return {"type": audience.audience_type.value, "id": audience.audience_id}


def notification_to_dict(notification: Notification, recipients: int | None = None) -> dict:
    data = {
        "id": notification.id,
        "type": notification.type.value,
        "message": notification.message,
        "audiences": [_audience_to_dict(a) for a in notification.audiences],
        "created_at": isoformat(notification.created_at),
        "updated_at": isoformat(notification.updated_at),
    }
    if recipients is not None:
        data["recipients_count"] = recipients
    return data


async def _load_notification(db: AsyncSession, notification_id: int) -> Notification:
    result = await db.execute(
        select(Notification)
        .where(Notification.id == notification_id)
        .options(selectinload(Notification.audiences))
        .execution_options(populate_existing=True)
    )
    notification = result.scalar_one_or_none()
    if notification is None:
        raise NotFoundError("Notification")
    return notification


async def _recipient_count(db: AsyncSession, notification_id: int) -> int:
    return (
        await db.execute(
            select(func.count(UserNotification.id)).where(UserNotification.notification_id == notification_id)
        )
    ).scalar_one()


# ---------------------------------------------------------------------------
# Creation and fan-out
# ---------------------------------------------------------------------------

async def _store(
    db: AsyncSession,
    type_: NotificationType,
    message: dict,
    audiences: list[tuple[NotificationAudienceType, int | None]],
) -> Notification:
    notification = Notification(type=type_, message=message)
    db.add(notification)
    await db.flush()
    db.add_all(
        NotificationAudience(notification_id=notification.id, audience_type=kind, audience_id=target)
        for kind, target in audiences
    )
    await db.flush()
    return notification


async def distribute(db: AsyncSession, notification_id: int) -> int:
    """Create a UserNotification for every user matched by the audiences; returns rows added."""
    audiences = (
        await db.execute(select(NotificationAudience).where(NotificationAudience.notification_id == notification_id))
    ).scalars().all()

    everyone = any(a.audience_type == NotificationAudienceType.ALL for a in audiences)
    conditions = []
    for audience in audiences:
        if audience.audience_type == NotificationAudienceType.ROLE:
            conditions.append(
                User.id.in_(select(user_roles.c.user_id).where(user_roles.c.role_id == audience.audience_id))
            )
        elif audience.audience_type == NotificationAudienceType.USER:
            conditions.append(User.id == audience.audience_id)
    if not everyone and not conditions:
        return 0

    already = select(UserNotification.user_id).where(UserNotification.notification_id == notification_id)
    stmt = select(User.id).where(User.id.not_in(already))
    if not everyone:
        stmt = stmt.where(or_(*conditions))
    user_ids = (await db.execute(stmt)).scalars().all()

    if user_ids:
        await db.execute(
            insert(UserNotification),
            [{"user_id": uid, "notification_id": notification_id, "is_read": False} for uid in user_ids],
        )
        await db.flush()
    logger.info("Notification %s distributed to %d user(s)", notification_id, len(user_ids))
    return len(user_ids)


async def _role_id(db: AsyncSession, role: str) -> int | None:
    return (await db.execute(select(Role.id).where(Role.name == role))).scalar_one_or_none()


async def create_notification(db: AsyncSession, data: NotificationCreate) -> dict:
    audiences: list[tuple[NotificationAudienceType, int | None]] = []
    for name in dict.fromkeys(data.audiences):
        if name == "all_users":
            audiences.append((NotificationAudienceType.ALL, None))
        elif name == "administrators":
            role_id = await _role_id(db, UserRole.ADMINISTRATOR.value)
            if role_id is None:
                raise ValidationError({"audiences": ["The administrator role does not exist."]})
            audiences.append((NotificationAudienceType.ROLE, role_id))
        elif name == "specific_users":
            user_ids = list(dict.fromkeys(data.user_ids or []))
            found = set((await db.execute(select(User.id).where(User.id.in_(user_ids)))).scalars().all())
            missing = [uid for uid in user_ids if uid not in found]
            if missing:
                raise ValidationError({"user_ids": [f"The selected user {missing[0]} is invalid."]})
            audiences.extend((NotificationAudienceType.USER, uid) for uid in user_ids)

    message = {"title": data.title, "body": data.body, "priority": data.priority}
    notification = await _store(db, data.type, message, audiences)
    await bus.dispatch(db, NotificationCreated(notification_id=notification.id))
    recipients = await distribute(db, notification.id)

    notification = await _load_notification(db, notification.id)
    return notification_to_dict(notification, recipients)


async def notify_user(
    db: AsyncSession,
    user_id: int,
    title: str,
    body: str,
    type_: NotificationType = NotificationType.SYSTEM_ALERT,
    priority: str = "normal",
    **extra,
) -> int:
    """Send a one-off notification to a single user; returns its id."""
    message = {"title": title, "body": body, "priority": priority, **extra}
    notification = await _store(db, type_, message, [(NotificationAudienceType.USER, user_id)])
    await distribute(db, notification.id)
    return notification.id


async def notify_role(
    db: AsyncSession,
    role: str,
    title: str,
    body: str,
    type_: NotificationType = NotificationType.SYSTEM_ALERT,
    priority: str = "normal",
    **extra,
) -> int | None:
    """Send a notification to every holder of *role*; None when the role is missing."""
    role_id = await _role_id(db, role)
    if role_id is None:
        logger.warning("Cannot notify role %r: role does not exist", role)
        return None
    message = {"title": title, "body": body, "priority": priority, **extra}
    notification = await _store(db, type_, message, [(NotificationAudienceType.ROLE, role_id)])
    await distribute(db, notification.id)
    return notification.id


# ---------------------------------------------------------------------------
# Admin reads
# ---------------------------------------------------------------------------

async def get_notifications(db: AsyncSession, filters: NotificationFilter, path: str | None = None) -> dict:
    stmt = select(Notification).options(selectinload(Notification.audiences))

    if filters.type is not None:
        stmt = stmt.where(Notification.type == filters.type)
    if filters.search:
        # message is JSON; search its serialised text.
        stmt = stmt.where(cast(Notification.message, String).ilike(like_pattern(filters.search), escape="\\"))
    if filters.created_after:
        stmt = stmt.where(Notification.created_at >= filters.created_after)
    if filters.created_before:
        stmt = stmt.where(Notification.created_at <= filters.created_before)

    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(Notification.created_at), order(Notification.id))

    notifications, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"notifications": [notification_to_dict(n) for n in notifications], "meta": meta}


async def get_notification_by_id(db: AsyncSession, notification_id: int) -> dict:
    notification = await _load_notification(db, notification_id)
    return notification_to_dict(notification, await _recipient_count(db, notification_id))


async def get_notification_stats(db: AsyncSession) -> dict:
    total = (await db.execute(select(func.count(Notification.id)))).scalar_one()
    by_type = dict(
        (await db.execute(select(Notification.type, func.count(Notification.id)).group_by(Notification.type))).all()
    )
    deliveries = (await db.execute(select(func.count(UserNotification.id)))).scalar_one()
    unread = (
        await db.execute(select(func.count(UserNotification.id)).where(UserNotification.is_read.is_(False)))
    ).scalar_one()
    return {
        "total": total,
        "by_type": {t.value: by_type.get(t, 0) for t in NotificationType},
        "deliveries": deliveries,
        "unread": unread,
        "read": deliveries - unread,
    }
