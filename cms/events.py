"""
In-process domain events.

Services dispatch an event after each successful mutation; listeners
(``cms.listeners``) react by creating notifications or sending mail.
Handlers run inline, inside the caller's transaction, in subscription
order.  Each handler gets its own SAVEPOINT: a failing handler is logged,
its partial writes are rolled back, and the mutation that triggered it
still commits.
"""
import logging
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable

from sqlalchemy.ext.asyncio import AsyncSession

logger = logging.getLogger(__name__)

Handler = Callable[[AsyncSession, Any], Awaitable[None]]


class EventBus:
    def __init__(self) -> None:
        self._subscribers: dict[type, list[Handler]] = defaultdict(list)

    def subscribe(self, event_type: type, handler: Handler) -> None:
        if handler not in self._subscribers[event_type]:
            self._subscribers[event_type].append(handler)

    def handlers_for(self, event_type: type) -> list[Handler]:
        """Handlers registered for *event_type* or any of its base classes."""
        handlers: list[Handler] = []
        for klass in event_type.__mro__:
            handlers.extend(self._subscribers.get(klass, []))
        return handlers

    async def dispatch(self, db: AsyncSession, event: Any) -> None:
        logger.debug("Dispatching %s", type(event).__name__)
        for handler in self.handlers_for(type(event)):
            try:
                async with db.begin_nested():
                    await handler(db, event)
            except Exception:
                logger.exception(
                    "Listener %s failed for %s",
                    getattr(handler, "__name__", repr(handler)),
                    type(event).__name__,
                )


bus = EventBus()


# ---------------------------------------------------------------------------
# Articles
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class ArticleEvent:
    article_id: int
    title: str
    slug: str
    author_id: int
    actor_id: int | None = None


@dataclass(frozen=True)
class ArticleCreated(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleUpdated(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleApproved(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleRejected(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleArchived(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleRestored(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleTrashed(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleRestoredFromTrash(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleDeleted(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleFeatured(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleUnfeatured(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticlePinned(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleUnpinned(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleReported(ArticleEvent):
    reason: str | None = None


@dataclass(frozen=True)
class ArticleReportsCleared(ArticleEvent):
    pass


@dataclass(frozen=True)
class ArticleReacted:
    article_id: int
    user_id: int | None
    ip_address: str | None


@dataclass(frozen=True)
class ArticleLiked(ArticleReacted):
    pass


@dataclass(frozen=True)
class ArticleDisliked(ArticleReacted):
    pass


# ---------------------------------------------------------------------------
# Comments
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class CommentEvent:
    comment_id: int
    article_id: int
    user_id: int
    actor_id: int | None = None


@dataclass(frozen=True)
class CommentCreated(CommentEvent):
    approved: bool = False


@dataclass(frozen=True)
class CommentApproved(CommentEvent):
    pass


@dataclass(frozen=True)
class CommentReported(CommentEvent):
    reason: str | None = None


@dataclass(frozen=True)
class CommentDeleted(CommentEvent):
    reason: str | None = None


# ---------------------------------------------------------------------------
# Users
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class UserEvent:
    user_id: int
    actor_id: int | None = None


@dataclass(frozen=True)
class UserRegistered(UserEvent):
    pass


@dataclass(frozen=True)
class UserCreated(UserEvent):
    pass


@dataclass(frozen=True)
class UserUpdated(UserEvent):
    pass


@dataclass(frozen=True)
class UserDeleted(UserEvent):
    pass


@dataclass(frozen=True)
class UserBanned(UserEvent):
    pass


@dataclass(frozen=True)
class UserUnbanned(UserEvent):
    pass


@dataclass(frozen=True)
class UserBlocked(UserEvent):
    pass


@dataclass(frozen=True)
class UserUnblocked(UserEvent):
    pass


@dataclass(frozen=True)
class UserFollowed:
    follower_id: int
    followed_id: int


@dataclass(frozen=True)
class UserUnfollowed:
    follower_id: int
    followed_id: int


@dataclass(frozen=True)
class PasswordResetRequested:
    email: str
    token: str = field(repr=False)


# ---------------------------------------------------------------------------
# Newsletter, notifications, media
# ---------------------------------------------------------------------------

@dataclass(frozen=True)
class NewsletterSubscriberCreated:
    subscriber_id: int
    email: str
    token: str = field(repr=False)


@dataclass(frozen=True)
class NewsletterUnsubscriptionRequested:
    subscriber_id: int
    email: str
    token: str = field(repr=False)


@dataclass(frozen=True)
class NotificationCreated:
    notification_id: int


@dataclass(frozen=True)
class MediaUploaded:
    media_id: int
    uploaded_by: int | None


@dataclass(frozen=True)
class MediaDeleted:
    media_id: int
    path: str
