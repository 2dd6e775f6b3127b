"""
Domain-event listeners: in-app notifications and transactional mail.

``register_listeners`` is called once at startup.  Mail goes through
``mailer.send_email`` on a worker thread so SMTP latency never blocks
the event loop.
"""
import asyncio
import logging
from urllib.parse import urlencode

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cms import mailer
from cms.config import settings
from cms.enums import NotificationType, UserRole
from cms.events import (
    ArticleApproved,
    ArticleRejected,
    ArticleReported,
    CommentApproved,
    CommentCreated,
    CommentReported,
    EventBus,
    NewsletterSubscriberCreated,
    NewsletterUnsubscriptionRequested,
    PasswordResetRequested,
    UserBanned,
    UserBlocked,
    UserFollowed,
)
from cms.models import Article, User
from cms.services import notification_service

logger = logging.getLogger(__name__)


def frontend_link(path: str, **params) -> str:
    return f"{settings.FRONTEND_URL.rstrip('/')}/{path.lstrip('/')}?{urlencode(params)}"


async def _send_mail(subject: str, to_email: str, html_body: str, text_body: str) -> bool:
    return await asyncio.to_thread(mailer.send_email, subject, to_email, html_body, text_body)


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------

async def notify_article_approved(db: AsyncSession, event: ArticleApproved) -> None:
    await notification_service.notify_user(
        db,
        event.author_id,
        "Article approved",
        f'Your article "{event.title}" has been approved and published.',
        type_=NotificationType.ARTICLE_PUBLISHED,
        article_id=event.article_id,
    )


async def notify_article_rejected(db: AsyncSession, event: ArticleRejected) -> None:
    await notification_service.notify_user(
        db,
        event.author_id,
        "Article rejected",
        f'Your article "{event.title}" was sent back to draft.',
        article_id=event.article_id,
    )


async def notify_article_reported(db: AsyncSession, event: ArticleReported) -> None:
    await notification_service.notify_role(
        db,
        UserRole.ADMINISTRATOR.value,
        "Article reported",
        f'The article "{event.title}" was reported: {event.reason or "no reason given"}.',
        priority="high",
        article_id=event.article_id,
    )


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

async def notify_comment_created(db: AsyncSession, event: CommentCreated) -> None:
    if not event.approved:
        return
    article = await db.get(Article, event.article_id)
    if article is None or article.created_by == event.user_id:
        return
    await notification_service.notify_user(
        db,
        article.created_by,
        "New comment",
        f'Someone commented on your article "{article.title}".',
        type_=NotificationType.NEW_COMMENT,
        article_id=article.id,
        comment_id=event.comment_id,
    )


async def notify_comment_approved(db: AsyncSession, event: CommentApproved) -> None:
    await notification_service.notify_user(
        db,
        event.user_id,
        "Comment approved",
        "Your comment has been approved.",
        type_=NotificationType.NEW_COMMENT,
        article_id=event.article_id,
        comment_id=event.comment_id,
    )


async def notify_comment_reported(db: AsyncSession, event: CommentReported) -> None:
    await notification_service.notify_role(
        db,
        UserRole.ADMINISTRATOR.value,
        "Comment reported",
        f"Comment #{event.comment_id} was reported: {event.reason or 'no reason given'}.",
        priority="high",
        article_id=event.article_id,
        comment_id=event.comment_id,
    )


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

async def notify_user_banned(db: AsyncSession, event: UserBanned) -> None:
    await notification_service.notify_user(
        db, event.user_id, "Account banned", "Your account has been banned.", priority="high"
    )


async def notify_user_blocked(db: AsyncSession, event: UserBlocked) -> None:
    await notification_service.notify_user(
        db, event.user_id, "Account blocked", "Your account has been blocked.", priority="high"
    )


async def notify_user_followed(db: AsyncSession, event: UserFollowed) -> None:
    name = (await db.execute(select(User.name).where(User.id == event.follower_id))).scalar_one_or_none()
    await notification_service.notify_user(
        db,
        event.followed_id,
        "New follower",
        f"{name or 'Someone'} started following you.",
        follower_id=event.follower_id,
    )


# ---------------------------------------------------------------------------
# Mail
# ---------------------------------------------------------------------------

async def send_newsletter_verification(db: AsyncSession, event: NewsletterSubscriberCreated) -> None:
    link = frontend_link("newsletter/verify", email=event.email, token=event.token)
    await _send_mail(
        f"Confirm your {settings.APP_NAME} newsletter subscription",
        event.email,
        f'<p>Please confirm your subscription: <a href="{link}">{link}</a></p>',
        f"Please confirm your subscription: {link}",
    )


async def send_newsletter_unsubscribe(db: AsyncSession, event: NewsletterUnsubscriptionRequested) -> None:
    link = frontend_link("newsletter/unsubscribe", email=event.email, token=event.token)
    await _send_mail(
        f"Confirm your {settings.APP_NAME} newsletter unsubscription",
        event.email,
        f'<p>Confirm that you want to unsubscribe: <a href="{link}">{link}</a></p>',
        f"Confirm that you want to unsubscribe: {link}",
    )


async def send_password_reset(db: AsyncSession, event: PasswordResetRequested) -> None:
    link = frontend_link("reset-password", email=event.email, token=event.token)
    minutes = settings.PASSWORD_RESET_EXPIRE_MINUTES
    await _send_mail(
        f"{settings.APP_NAME} password reset",
        event.email,
        f'<p>Reset your password: <a href="{link}">{link}</a></p><p>This link expires in {minutes} minutes.</p>',
        f"Reset your password: {link}\nThis link expires in {minutes} minutes.",
    )


LISTENERS = [
    (ArticleApproved, notify_article_approved),
    (ArticleRejected, notify_article_rejected),
    (ArticleReported, notify_article_reported),
    (CommentCreated, notify_comment_created),
    (CommentApproved, notify_comment_approved),
    (CommentReported, notify_comment_reported),
    (UserBanned, notify_user_banned),
    (UserBlocked, notify_user_blocked),
    (UserFollowed, notify_user_followed),
    (NewsletterSubscriberCreated, send_newsletter_verification),
    (NewsletterUnsubscriptionRequested, send_newsletter_unsubscribe),
    (PasswordResetRequested, send_password_reset),
]


def register_listeners(bus: EventBus) -> None:
    for event_type, handler in LISTENERS:
        bus.subscribe(event_type, handler)
    logger.debug("Registered %d event listeners", len(LISTENERS))
