"""
User service — administration, social graph and profile operations for
the User aggregate.

Design notes
------------
- Admin actions against one's own account (delete, ban, unban, block,
  unblock) are refused with ``AuthorizationError`` before any write.
- Any change to a single user's roles clears that user's cached roles and
  permissions; changes to what a *role* grants are handled through the
  global version counter in ``cms.permissions``.
- Followers live in the ``user_followers`` association table and are
  manipulated with Core statements; there is no ORM collection to keep
  in sync.
"""
import logging

from sqlalchemy import and_, asc, delete, desc, exists, func, insert, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.enums import ArticleStatus, UserRole
from cms.events import (
    UserBanned,
    UserBlocked,
    UserCreated,
    UserDeleted,
    UserFollowed,
    UserUnbanned,
    UserUnblocked,
    UserUnfollowed,
    UserUpdated,
    bus,
)
from cms.exceptions import AuthorizationError, NotFoundError, ValidationError
from cms.models import Article, Role, User, user_followers, user_roles
from cms.pagination import paginate
from cms.permissions import (
    clear_user_cache,
    get_cached_permissions,
    get_cached_roles,
)
from cms.schemas import PageQuery, UpdateProfileRequest, UserCreate, UserFilter, UserUpdate
from cms.security import hash_password, verify_password
from cms.utils import isoformat, like_pattern, utcnow

logger = logging.getLogger(__name__)

_PROFILE_FIELDS = ("avatar_url", "bio", "twitter", "facebook", "linkedin", "github", "website")

_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "updated_at", "name", "email"})


# ---------------------------------------------------------------------------
# Serialisation helpers
# ---------------------------------------------------------------------------

def user_summary(user: User | None, include_email: bool = False) -> dict | None:
    """Public author card embedded in articles, comments and follower lists."""
    if user is None:
        return None
    data = {
        "id": user.id,
        "name": user.name,
        **{field: getattr(user, field) for field in _PROFILE_FIELDS},
    }
    if include_email:
        data["email"] = user.email
    return data


def user_to_dict(user: User, roles: list[str] | None = None) -> dict:
    """Full user record for admin views and ``/me``."""
    if roles is None:
        roles = [r.name for r in user.roles]
    return {
        "id": user.id,
        "name": user.name,
        "email": user.email,
        **{field: getattr(user, field) for field in _PROFILE_FIELDS},
        "roles": roles,
        "email_verified_at": isoformat(user.email_verified_at),
        "banned_at": isoformat(user.banned_at),
        "blocked_at": isoformat(user.blocked_at),
        "created_at": isoformat(user.created_at),
        "updated_at": isoformat(user.updated_at),
    }


# ---------------------------------------------------------------------------
# Internal helpers
# ---------------------------------------------------------------------------

async def _get_user(db: AsyncSession, user_id: int, with_roles: bool = False) -> User:
    stmt = select(User).where(User.id == user_id)
    if with_roles:
        stmt = stmt.options(selectinload(User.roles)).execution_options(populate_existing=True)
    user = (await db.execute(stmt)).scalar_one_or_none()
    if user is None:
        raise NotFoundError("User")
    return user


async def _ensure_email_available(db: AsyncSession, email: str, exclude_id: int | None = None) -> None:
    stmt = select(User.id).where(User.email == email)
    if exclude_id is not None:
        stmt = stmt.where(User.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        raise ValidationError({"email": ["The email has already been taken."]})


def _guard_self(actor: User, user_id: int, action: str) -> None:
    if actor.id == user_id:
        raise AuthorizationError(f"You cannot {action} yourself.")


async def _sync_roles(db: AsyncSession, user_id: int, role_ids: list[int]) -> None:
    role_ids = list(dict.fromkeys(role_ids))
    found = set((await db.execute(select(Role.id).where(Role.id.in_(role_ids)))).scalars().all())
    missing = [rid for rid in role_ids if rid not in found]
    if missing:
        raise ValidationError({"role_ids": [f"The selected role {missing[0]} is invalid."]})

    await db.execute(delete(user_roles).where(user_roles.c.user_id == user_id))
    if role_ids:
        await db.execute(insert(user_roles), [{"user_id": user_id, "role_id": rid} for rid in role_ids])
    await db.flush()
    await clear_user_cache(user_id)


async def assign_default_role(db: AsyncSession, user_id: int) -> None:
    role_id = (
        await db.execute(select(Role.id).where(Role.name == UserRole.SUBSCRIBER.value))
    ).scalar_one_or_none()
    if role_id is None:
        logger.warning("Default role %r missing; user %s has no role", UserRole.SUBSCRIBER.value, user_id)
        return
    await _sync_roles(db, user_id, [role_id])


async def get_user_payload(db: AsyncSession, user_id: int) -> dict:
    """User record plus cached roles and permissions (``/me``)."""
    user = await _get_user(db, user_id)
    data = user_to_dict(user, roles=await get_cached_roles(db, user_id))
    data["permissions"] = await get_cached_permissions(db, user_id)
    return data


# ---------------------------------------------------------------------------
# Admin operations
# ---------------------------------------------------------------------------

async def get_users(db: AsyncSession, filters: UserFilter, path: str | None = None) -> dict:
    stmt = select(User).options(selectinload(User.roles)).execution_options(populate_existing=True)

    if filters.search:
        pattern = like_pattern(filters.search)
        stmt = stmt.where(or_(User.name.ilike(pattern, escape="\\"), User.email.ilike(pattern, escape="\\")))
    if filters.role_id is not None:
        stmt = stmt.where(
            exists().where(and_(user_roles.c.user_id == User.id, user_roles.c.role_id == filters.role_id))
        )
    if filters.status == "banned":
        stmt = stmt.where(User.banned_at.is_not(None))
    elif filters.status == "blocked":
        stmt = stmt.where(User.blocked_at.is_not(None))
    elif filters.status == "active":
        stmt = stmt.where(User.banned_at.is_(None), User.blocked_at.is_(None))
    if filters.created_after:
        stmt = stmt.where(User.created_at >= filters.created_after)
    if filters.created_before:
        stmt = stmt.where(User.created_at <= filters.created_before)

    sort_col = getattr(User, filters.sort_by) if filters.sort_by in _SORTABLE_COLUMNS else User.created_at
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(User.id))

    users, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"users": [user_to_dict(u) for u in users], "meta": meta}


async def get_user_by_id(db: AsyncSession, user_id: int) -> dict:
    """Return a user with roles; warms the role/permission cache."""
    user = await _get_user(db, user_id, with_roles=True)
    await get_cached_roles(db, user_id)
    await get_cached_permissions(db, user_id)
    return user_to_dict(user)


async def create_user(db: AsyncSession, data: UserCreate, actor: User | None = None) -> dict:
    email = data.email.lower()
    await _ensure_email_available(db, email)

    user = User(
        name=data.name,
        email=email,
        password=hash_password(data.password),
        **data.model_dump(include=set(_PROFILE_FIELDS)),
    )
    db.add(user)
    await db.flush()

    if data.role_id is not None:
        await _sync_roles(db, user.id, [data.role_id])
    else:
        await assign_default_role(db, user.id)

    await bus.dispatch(db, UserCreated(user_id=user.id, actor_id=actor.id if actor else None))
    logger.info("User created: id=%s", user.id)
    return await get_user_by_id(db, user.id)


async def update_user(db: AsyncSession, user_id: int, data: UserUpdate, actor: User | None = None) -> dict:
    user = await _get_user(db, user_id)
    update_data = data.model_dump(exclude_unset=True)
    password = update_data.pop("password", None)
    role_id = update_data.pop("role_id", None)

    if "email" in update_data and update_data["email"] is not None:
        update_data["email"] = update_data["email"].lower()
        await _ensure_email_available(db, update_data["email"], exclude_id=user_id)

    for field, value in update_data.items():
        if field in ("name", "email") and value is None:
            continue
        setattr(user, field, value)
    if password:
        user.password = hash_password(password)
    await db.flush()

    if role_id is not None:
        await _sync_roles(db, user_id, [role_id])
    else:
        await clear_user_cache(user_id)

    await bus.dispatch(db, UserUpdated(user_id=user_id, actor_id=actor.id if actor else None))
    return await get_user_by_id(db, user_id)


async def delete_user(db: AsyncSession, user_id: int, actor: User) -> None:
    _guard_self(actor, user_id, "delete")
    user = await _get_user(db, user_id)
    await db.delete(user)
    await db.flush()
    await clear_user_cache(user_id)
    await bus.dispatch(db, UserDeleted(user_id=user_id, actor_id=actor.id))
    logger.info("User %s deleted by %s", user_id, actor.id)


async def ban_user(db: AsyncSession, user_id: int, actor: User) -> dict:
    _guard_self(actor, user_id, "ban")
    user = await _get_user(db, user_id)
    user.banned_at = utcnow()
    await db.flush()
    await bus.dispatch(db, UserBanned(user_id=user_id, actor_id=actor.id))
    logger.info("User %s banned by %s", user_id, actor.id)
    return await get_user_by_id(db, user_id)


async def unban_user(db: AsyncSession, user_id: int, actor: User) -> dict:
    _guard_self(actor, user_id, "unban")
    user = await _get_user(db, user_id)
    user.banned_at = None
    await db.flush()
    await bus.dispatch(db, UserUnbanned(user_id=user_id, actor_id=actor.id))
    return await get_user_by_id(db, user_id)


async def block_user(db: AsyncSession, user_id: int, actor: User) -> dict:
    _guard_self(actor, user_id, "block")
    user = await _get_user(db, user_id)
    user.blocked_at = utcnow()
    await db.flush()
    await bus.dispatch(db, UserBlocked(user_id=user_id, actor_id=actor.id))
    logger.info("User %s blocked by %s", user_id, actor.id)
    return await get_user_by_id(db, user_id)


async def unblock_user(db: AsyncSession, user_id: int, actor: User) -> dict:
    _guard_self(actor, user_id, "unblock")
    user = await _get_user(db, user_id)
    user.blocked_at = None
    await db.flush()
    await bus.dispatch(db, UserUnblocked(user_id=user_id, actor_id=actor.id))
    return await get_user_by_id(db, user_id)


async def assign_roles(db: AsyncSession, user_id: int, role_ids: list[int]) -> dict:
    await _get_user(db, user_id)
    await _sync_roles(db, user_id, role_ids)
    return await get_user_by_id(db, user_id)


# ---------------------------------------------------------------------------
# Social graph
# ---------------------------------------------------------------------------

async def _is_following(db: AsyncSession, follower_id: int, following_id: int) -> bool:
    stmt = select(user_followers.c.follower_id).where(
        user_followers.c.follower_id == follower_id,
        user_followers.c.following_id == following_id,
    )
    return (await db.execute(stmt)).first() is not None


async def follow_user(db: AsyncSession, follower: User, user_id: int) -> bool:
    """Follow *user_id*; returns False when already following."""
    if follower.id == user_id:
        raise AuthorizationError("You cannot follow yourself.")
    await _get_user(db, user_id)
    if await _is_following(db, follower.id, user_id):
        return False
    await db.execute(
        insert(user_followers).values(follower_id=follower.id, following_id=user_id, created_at=utcnow())
    )
    await db.flush()
    await bus.dispatch(db, UserFollowed(follower_id=follower.id, followed_id=user_id))
    return True


async def unfollow_user(db: AsyncSession, follower: User, user_id: int) -> bool:
    """Stop following *user_id*; returns False when not following."""
    await _get_user(db, user_id)
    if not await _is_following(db, follower.id, user_id):
        return False
    await db.execute(
        delete(user_followers).where(
            user_followers.c.follower_id == follower.id,
            user_followers.c.following_id == user_id,
        )
    )
    await db.flush()
    await bus.dispatch(db, UserUnfollowed(follower_id=follower.id, followed_id=user_id))
    return True


async def _follow_page(
    db: AsyncSession, user_id: int, query: PageQuery, followers: bool, path: str | None
) -> dict:
    await _get_user(db, user_id)
    if followers:
        join_col, filter_col = user_followers.c.follower_id, user_followers.c.following_id
    else:
        join_col, filter_col = user_followers.c.following_id, user_followers.c.follower_id
    stmt = (
        select(User)
        .join(user_followers, join_col == User.id)
        .where(filter_col == user_id)
        .order_by(desc(user_followers.c.created_at), desc(User.id))
    )
    users, meta = await paginate(db, stmt, query.page, query.per_page, path)
    key = "followers" if followers else "following"
    return {key: [user_summary(u) for u in users], "meta": meta}


async def get_followers(db: AsyncSession, user_id: int, query: PageQuery, path: str | None = None) -> dict:
    return await _follow_page(db, user_id, query, followers=True, path=path)


async def get_following(db: AsyncSession, user_id: int, query: PageQuery, path: str | None = None) -> dict:
    return await _follow_page(db, user_id, query, followers=False, path=path)


async def get_user_profile(db: AsyncSession, user_id: int, viewer: User | None = None) -> dict:
    """Public profile with follower / following / published-article counts."""
    user = await _get_user(db, user_id)
    followers_count = (
        await db.execute(select(func.count()).select_from(user_followers).where(user_followers.c.following_id == user_id))
    ).scalar_one()
    following_count = (
        await db.execute(select(func.count()).select_from(user_followers).where(user_followers.c.follower_id == user_id))
    ).scalar_one()
    articles_count = (
        await db.execute(
            select(func.count(Article.id)).where(
                Article.created_by == user_id, Article.status == ArticleStatus.PUBLISHED
            )
        )
    ).scalar_one()

    data = user_summary(user)
    data.update({
        "followers_count": followers_count,
        "following_count": following_count,
        "articles_count": articles_count,
        "joined_at": isoformat(user.created_at),
    })
    if viewer is not None and viewer.id != user_id:
        data["is_following"] = await _is_following(db, viewer.id, user_id)
    return data


async def update_profile(db: AsyncSession, user: User, data: UpdateProfileRequest) -> dict:
    update_data = data.model_dump(exclude_unset=True)
    password = update_data.pop("password", None)
    current_password = update_data.pop("current_password", None)
    update_data.pop("password_confirmation", None)

    if password:
        if not current_password or not verify_password(current_password, user.password):
            raise ValidationError({"current_password": ["The current password is incorrect."]})
        user.password = hash_password(password)

    if update_data.get("email"):
        update_data["email"] = update_data["email"].lower()
        await _ensure_email_available(db, update_data["email"], exclude_id=user.id)

    for field, value in update_data.items():
        if field in ("name", "email") and value is None:
            continue
        setattr(user, field, value)
    await db.flush()
    await clear_user_cache(user.id)
    return await get_user_payload(db, user.id)

