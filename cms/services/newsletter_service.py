"""
Newsletter service — double opt-in subscription and opt-out.

Design notes
------------
- Both subscribing and unsubscribing are confirmed by a 64-character
  token mailed to the address.  Only the token's SHA-256 digest is
  stored, together with an expiry (``NEWSLETTER_TOKEN_EXPIRE_MINUTES``).
- Subscribing an existing address re-issues a token; an unsubscribed
  or unverified address is reset to a fresh subscription.
- The plain token only ever travels inside the domain event that the
  mail listener consumes.
"""
import logging
from datetime import timedelta

from sqlalchemy import asc, desc, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from cms.config import settings
from cms.events import NewsletterSubscriberCreated, NewsletterUnsubscriptionRequested, bus
from cms.exceptions import NotFoundError, ValidationError
from cms.models import NewsletterSubscriber
from cms.pagination import paginate
from cms.schemas import SubscriberFilter
from cms.security import generate_token, hash_token, tokens_match
from cms.utils import as_utc, isoformat, like_pattern, utcnow

logger = logging.getLogger(__name__)

_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "email", "subscribed_at"})


def subscriber_to_dict(subscriber: NewsletterSubscriber) -> dict:
    return {
        "id": subscriber.id,
        "email": subscriber.email,
        "user_id": subscriber.user_id,
        "is_verified": subscriber.is_verified,
        "subscribed_at": isoformat(subscriber.subscribed_at),
        "unsubscribed_at": isoformat(subscriber.unsubscribed_at),
        "created_at": isoformat(subscriber.created_at),
        "updated_at": isoformat(subscriber.updated_at),
    }


def _issue_token(subscriber: NewsletterSubscriber) -> str:
    plain = generate_token(64)
    subscriber.verification_token = hash_token(plain)
    subscriber.verification_token_expires_at = utcnow() + timedelta(
        minutes=settings.NEWSLETTER_TOKEN_EXPIRE_MINUTES
    )
    return plain


def _token_valid(subscriber: NewsletterSubscriber, token: str) -> bool:
    if not tokens_match(token, subscriber.verification_token):
        return False
    expires_at = as_utc(subscriber.verification_token_expires_at)
    return expires_at is None or expires_at > utcnow()


async def _find_by_email(db: AsyncSession, email: str) -> NewsletterSubscriber | None:
    result = await db.execute(select(NewsletterSubscriber).where(NewsletterSubscriber.email == email.lower()))
    return result.scalar_one_or_none()


# ---------------------------------------------------------------------------
# Public flow
# ---------------------------------------------------------------------------

async def subscribe(db: AsyncSession, email: str, user_id: int | None = None) -> None:
    email = email.lower()
    subscriber = await _find_by_email(db, email)

    if subscriber is None:
        subscriber = NewsletterSubscriber(email=email, user_id=user_id, is_verified=False, subscribed_at=utcnow())
        db.add(subscriber)
    else:
        active = subscriber.is_verified and subscriber.unsubscribed_at is None
        if active:
            if user_id is not None:
                subscriber.user_id = user_id
        else:
            subscriber.user_id = user_id if user_id is not None else subscriber.user_id
            subscriber.unsubscribed_at = None
            subscriber.subscribed_at = utcnow()
        subscriber.is_verified = False

    token = _issue_token(subscriber)
    await db.flush()
    await bus.dispatch(db, NewsletterSubscriberCreated(subscriber_id=subscriber.id, email=email, token=token))
    logger.info("Newsletter subscription requested: id=%s", subscriber.id)


async def verify_subscription(db: AsyncSession, email: str, token: str) -> dict:
    subscriber = await _find_by_email(db, email)
    if subscriber is None or not _token_valid(subscriber, token):
        raise NotFoundError("NewsletterSubscriber")
    if subscriber.is_verified:
        return subscriber_to_dict(subscriber)

    subscriber.is_verified = True
    subscriber.verification_token = None
    subscriber.verification_token_expires_at = None
    await db.flush()
    logger.info("Newsletter subscriber verified: id=%s", subscriber.id)
    return subscriber_to_dict(subscriber)


async def unsubscribe(db: AsyncSession, email: str) -> None:
    subscriber = await _find_by_email(db, email)
    if subscriber is None:
        raise NotFoundError("NewsletterSubscriber")
    if subscriber.unsubscribed_at is not None:
        raise ValidationError({"email": ["This email is already unsubscribed."]})
    if not subscriber.is_verified:
        raise ValidationError({"email": ["This subscription has not been verified."]})

    token = _issue_token(subscriber)
    await db.flush()
    await bus.dispatch(
        db, NewsletterUnsubscriptionRequested(subscriber_id=subscriber.id, email=subscriber.email, token=token)
    )


async def verify_unsubscription(db: AsyncSession, email: str, token: str) -> dict:
    subscriber = await _find_by_email(db, email)
    if subscriber is None or not _token_valid(subscriber, token):
        raise NotFoundError("NewsletterSubscriber")

    subscriber.unsubscribed_at = utcnow()
    subscriber.verification_token = None
    subscriber.verification_token_expires_at = None
    await db.flush()
    logger.info("Newsletter subscriber unsubscribed: id=%s", subscriber.id)
    return subscriber_to_dict(subscriber)


# ---------------------------------------------------------------------------
# Admin
# ---------------------------------------------------------------------------

async def get_subscribers(db: AsyncSession, filters: SubscriberFilter, path: str | None = None) -> dict:
    stmt = select(NewsletterSubscriber)

    if filters.search:
        stmt = stmt.where(NewsletterSubscriber.email.ilike(like_pattern(filters.search), escape="\\"))
    if filters.status == "verified":
        stmt = stmt.where(NewsletterSubscriber.is_verified.is_(True), NewsletterSubscriber.unsubscribed_at.is_(None))
    elif filters.status == "unverified":
        stmt = stmt.where(NewsletterSubscriber.is_verified.is_(False))
    elif filters.status == "unsubscribed":
        stmt = stmt.where(NewsletterSubscriber.unsubscribed_at.is_not(None))
    if filters.subscribed_after:
        stmt = stmt.where(NewsletterSubscriber.created_at >= filters.subscribed_after)
    if filters.subscribed_before:
        stmt = stmt.where(NewsletterSubscriber.created_at <= filters.subscribed_before)

    sort_col = (
        getattr(NewsletterSubscriber, filters.sort_by)
        if filters.sort_by in _SORTABLE_COLUMNS
        else NewsletterSubscriber.created_at
    )
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(NewsletterSubscriber.id))

    subscribers, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"subscribers": [subscriber_to_dict(s) for s in subscribers], "meta": meta}


async def delete_subscriber(db: AsyncSession, subscriber_id: int) -> None:
    subscriber = await db.get(NewsletterSubscriber, subscriber_id)
    if subscriber is None:
        raise NotFoundError("NewsletterSubscriber")
    await db.delete(subscriber)
    await db.flush()


async def get_total_subscribers(db: AsyncSession) -> int:
    return (await db.execute(select(func.count(NewsletterSubscriber.id)))).scalar_one()
