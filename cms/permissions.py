"""
Role / permission lookups with version-tagged caching.

Design notes
------------
- Per-user entries live under ``user_roles:{id}_v{version}`` and
  ``user_permissions:{id}_v{version}`` where *version* is the global
  counter stored at ``user_cache_version`` (missing counter reads as 1).
- Changing what a role grants bumps the counter instead of hunting down
  every affected user's keys: lookups immediately move to fresh keys and
  the stale ones simply age out through their TTL.
- A change that touches a single user (role assignment, profile update,
  deletion) only needs ``clear_user_cache`` for that user.
"""
import logging

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import CacheKey, cache
from cms.enums import UserRole
from cms.models import Permission, Role, role_permissions, user_roles

logger = logging.getLogger(__name__)

CACHE_VERSION_KEY = "user_cache_version"

# ---------------------------------------------------------------------------
# Role -> permission matrix
# ---------------------------------------------------------------------------

_USER_ADMIN = [
    "view_users", "create_users", "edit_users", "delete_users", "ban_users", "block_users",
    "restore_users", "assign_roles", "manage_roles", "manage_permissions", "view_user_activity",
    "register_user",
]
_PROFILE = ["edit_profile", "view_own_profile"]
_POSTS_BASE = ["view_posts", "report_posts", "like_posts", "dislike_posts"]
_POSTS_WRITE = ["create_posts", "edit_posts", "delete_posts", "view_own_posts"]
_POSTS_PUBLISH = ["publish_posts", "archive_posts", "restore_posts", "schedule_posts"]
_POSTS_OTHERS = ["edit_others_posts", "delete_others_posts", "feature_posts", "pin_posts"]
_COMMENTS_BASE = ["create_comments", "report_comments", "view_comments", "edit_own_comments", "delete_own_comments"]
_COMMENTS_MODERATE = ["comment_moderate", "approve_comments"]
_TAXONOMY = [
    "manage_categories", "create_categories", "edit_categories", "delete_categories", "view_categories",
    "manage_tags", "create_tags", "edit_tags", "delete_tags", "view_tags",
]
_NEWSLETTER_BASE = ["subscribe_newsletter", "unsubscribe_newsletter"]
_SOCIAL = ["follow_users", "unfollow_users", "view_user_profiles"]
_GENERAL = ["read", "access_api"]

ROLE_PERMISSIONS: dict[str, list[str]] = {
    UserRole.ADMINISTRATOR.value: [
        *_USER_ADMIN, *_PROFILE,
        *_POSTS_BASE, *_POSTS_WRITE, *_POSTS_PUBLISH, *_POSTS_OTHERS, "approve_posts", "trash_posts",
        *_COMMENTS_BASE, *_COMMENTS_MODERATE, "edit_comments", "delete_comments",
        *_TAXONOMY,
        *_NEWSLETTER_BASE, "view_newsletter_subscribers", "manage_newsletter_subscribers", "send_newsletter",
        "view_notifications", "manage_notifications", "send_notifications", "read_notifications",
        "delete_notifications",
        "upload_media", "delete_media", "manage_media", "view_media", "edit_media",
        "view_analytics", "manage_settings", "view_dashboard", "export_data",
        *_SOCIAL, "send_messages",
        "manage_options", *_GENERAL, "view_logs",
    ],
    UserRole.EDITOR.value: [
        "view_users", *_PROFILE,
        *_POSTS_BASE, *_POSTS_WRITE, *_POSTS_PUBLISH, *_POSTS_OTHERS, "trash_posts",
        *_COMMENTS_BASE, *_COMMENTS_MODERATE, "edit_comments", "delete_comments",
        *_TAXONOMY,
        *_NEWSLETTER_BASE, "view_newsletter_subscribers",
        "view_notifications", "read_notifications",
        "upload_media", "delete_media", "manage_media", "view_media", "edit_media",
        "view_analytics", "view_dashboard",
        *_SOCIAL, *_GENERAL,
    ],
    UserRole.AUTHOR.value: [
        *_PROFILE,
        *_POSTS_BASE, *_POSTS_WRITE, *_POSTS_PUBLISH, "trash_posts",
        *_COMMENTS_BASE, "edit_comments", "delete_comments",
        *_NEWSLETTER_BASE,
        "upload_media", "view_media", "delete_media", "edit_media",
        *_SOCIAL, *_GENERAL,
    ],
    UserRole.CONTRIBUTOR.value: [
        *_PROFILE,
        *_POSTS_BASE, *_POSTS_WRITE, "trash_posts",
        *_COMMENTS_BASE, "edit_comments", "delete_comments",
        *_NEWSLETTER_BASE,
        "upload_media", "view_media",
        *_SOCIAL, *_GENERAL,
    ],
    UserRole.SUBSCRIBER.value: [
        *_PROFILE,
        *_POSTS_BASE,
        *_COMMENTS_BASE,
        *_NEWSLETTER_BASE,
        *_SOCIAL, *_GENERAL,
    ],
}

ALL_PERMISSIONS: list[str] = list(dict.fromkeys(ROLE_PERMISSIONS[UserRole.ADMINISTRATOR.value]))


# ---------------------------------------------------------------------------
# Version counter
# ---------------------------------------------------------------------------

async def get_cache_version() -> int:
    value = await cache.get(CACHE_VERSION_KEY)
    try:
        return int(value) if value is not None else 1
    except (TypeError, ValueError):
        return 1


async def bump_cache_version() -> int | None:
    """Invalidate every user's cached roles and permissions at once."""
    version = await cache.increment(CACHE_VERSION_KEY, initial=1)
    logger.info("User role/permission cache version bumped to %s", version)
    return version


def _user_key(key: CacheKey, user_id: int, version: int) -> str:
    return f"{key.value}:{user_id}_v{version}"


async def clear_user_cache(user_id: int) -> None:
    """Forget one user's cached roles and permissions (current version)."""
    version = await get_cache_version()
    await cache.delete(
        _user_key(CacheKey.USER_ROLES, user_id, version),
        _user_key(CacheKey.USER_PERMISSIONS, user_id, version),
    )


async def forget_global_caches() -> None:
    await cache.forget(CacheKey.ALL_ROLES)
    await cache.forget(CacheKey.ALL_PERMISSIONS)


# ---------------------------------------------------------------------------
# Cached lookups
# ---------------------------------------------------------------------------

async def get_cached_roles(db: AsyncSession, user_id: int) -> list[str]:
    version = await get_cache_version()

    async def _load() -> list[str]:
        rows = await db.execute(
            select(Role.name)
            .join(user_roles, user_roles.c.role_id == Role.id)
            .where(user_roles.c.user_id == user_id)
            .order_by(Role.name)
        )
        return list(rows.scalars().all())

    return await cache.remember(
        _user_key(CacheKey.USER_ROLES, user_id, version), _load, ttl=CacheKey.USER_ROLES.ttl
    )


async def get_cached_permissions(db: AsyncSession, user_id: int) -> list[str]:
    version = await get_cache_version()

    async def _load() -> list[str]:
        rows = await db.execute(
            select(Permission.name)
            .join(role_permissions, role_permissions.c.permission_id == Permission.id)
            .join(user_roles, user_roles.c.role_id == role_permissions.c.role_id)
            .where(user_roles.c.user_id == user_id)
            .distinct()
            .order_by(Permission.name)
        )
        return list(rows.scalars().all())

    return await cache.remember(
        _user_key(CacheKey.USER_PERMISSIONS, user_id, version), _load, ttl=CacheKey.USER_PERMISSIONS.ttl
    )


async def has_permission(db: AsyncSession, user_id: int, permission: str) -> bool:
    return permission in await get_cached_permissions(db, user_id)


async def has_any_permission(db: AsyncSession, user_id: int, permissions: list[str]) -> bool:
    granted = set(await get_cached_permissions(db, user_id))
    return any(p in granted for p in permissions)


async def has_all_permissions(db: AsyncSession, user_id: int, permissions: list[str]) -> bool:
    granted = set(await get_cached_permissions(db, user_id))
    return all(p in granted for p in permissions)


async def has_role(db: AsyncSession, user_id: int, role: str | UserRole) -> bool:
    name = role.value if isinstance(role, UserRole) else role
    return name in await get_cached_roles(db, user_id)


async def has_any_role(db: AsyncSession, user_id: int, roles: list[str | UserRole]) -> bool:
    held = set(await get_cached_roles(db, user_id))
    return any((r.value if isinstance(r, UserRole) else r) in held for r in roles)


async def has_all_roles(db: AsyncSession, user_id: int, roles: list[str | UserRole]) -> bool:
    held = set(await get_cached_roles(db, user_id))
    return all((r.value if isinstance(r, UserRole) else r) in held for r in roles)


# ---------------------------------------------------------------------------
# Seeding
# ---------------------------------------------------------------------------

async def seed_roles_and_permissions(db: AsyncSession) -> dict[str, Role]:
    """
    Idempotently create every role and permission and wire up the
    matrix above.  Returns roles keyed by name.
    """
    existing_perms = {p.name: p for p in (await db.execute(select(Permission))).scalars().all()}
    for name in ALL_PERMISSIONS:
        if name not in existing_perms:
            perm = Permission(name=name, slug=name.replace("_", "-"))
            db.add(perm)
            existing_perms[name] = perm

    existing_roles = {r.name: r for r in (await db.execute(select(Role))).scalars().all()}
    for role_enum in UserRole:
        if role_enum.value not in existing_roles:
            role = Role(name=role_enum.value, slug=role_enum.value)
            db.add(role)
            existing_roles[role_enum.value] = role
    await db.flush()

    linked = {
        tuple(row)
        for row in (await db.execute(select(role_permissions.c.role_id, role_permissions.c.permission_id))).all()
    }
    rows = []
    for role_name, perm_names in ROLE_PERMISSIONS.items():
        role_id = existing_roles[role_name].id
        for perm_name in dict.fromkeys(perm_names):
            pair = (role_id, existing_perms[perm_name].id)
            if pair not in linked:
                rows.append({"role_id": pair[0], "permission_id": pair[1]})
                linked.add(pair)
    if rows:
        await db.execute(role_permissions.insert(), rows)
    await db.flush()

    await bump_cache_version()
    await forget_global_caches()
    logger.info("Seeded %d roles and %d permissions", len(existing_roles), len(existing_perms))
    return existing_roles
