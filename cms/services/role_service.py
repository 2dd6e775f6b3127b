"""
Role service — cached role/permission catalogues and role changes.

Changing what a role grants (or removing a role) bumps the global
role/permission cache version so every user's cached lookups are
recomputed on next access.
"""
import logging

from sqlalchemy import delete, insert, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.cache import CacheKey, cache
from cms.exceptions import NotFoundError, ValidationError
from cms.models import Permission, Role, role_permissions
from cms.permissions import bump_cache_version, forget_global_caches

logger = logging.getLogger(__name__)


def _permission_to_dict(permission: Permission) -> dict:
    return {"id": permission.id, "name": permission.name, "slug": permission.slug}


def _role_to_dict(role: Role) -> dict:
    return {
        "id": role.id,
        "name": role.name,
        "slug": role.slug,
        "permissions": [_permission_to_dict(p) for p in sorted(role.permissions, key=lambda p: p.name)],
    }


async def _get_role(db: AsyncSession, role_id: int) -> Role:
    result = await db.execute(
        select(Role)
        .where(Role.id == role_id)
        .options(selectinload(Role.permissions))
        .execution_options(populate_existing=True)
    )
    role = result.scalar_one_or_none()
    if role is None:
        raise NotFoundError("Role")
    return role


async def get_all_roles(db: AsyncSession) -> list[dict]:
    async def _load() -> list[dict]:
        result = await db.execute(
            select(Role)
            .options(selectinload(Role.permissions))
            .order_by(Role.id)
            .execution_options(populate_existing=True)
        )
        return [_role_to_dict(r) for r in result.scalars().all()]

    return await cache.remember(CacheKey.ALL_ROLES, _load)


async def get_all_permissions(db: AsyncSession) -> list[dict]:
    async def _load() -> list[dict]:
        result = await db.execute(select(Permission).order_by(Permission.name))
        return [_permission_to_dict(p) for p in result.scalars().all()]

    return await cache.remember(CacheKey.ALL_PERMISSIONS, _load)


async def sync_role_permissions(db: AsyncSession, role_id: int, permission_ids: list[int]) -> dict:
    """Replace the permission set of *role_id*."""
    await _get_role(db, role_id)
    permission_ids = list(dict.fromkeys(permission_ids))
    if permission_ids:
        found = set(
            (await db.execute(select(Permission.id).where(Permission.id.in_(permission_ids)))).scalars().all()
        )
        missing = [pid for pid in permission_ids if pid not in found]
        if missing:
            raise ValidationError({"permission_ids": [f"The selected permission {missing[0]} is invalid."]})

    await db.execute(delete(role_permissions).where(role_permissions.c.role_id == role_id))
    if permission_ids:
        await db.execute(
            insert(role_permissions),
            [{"role_id": role_id, "permission_id": pid} for pid in permission_ids],
        )
    await db.flush()

    await bump_cache_version()
    await forget_global_caches()
    logger.info("Role %s permissions synced (%d)", role_id, len(permission_ids))
    return _role_to_dict(await _get_role(db, role_id))


async def delete_role(db: AsyncSession, role_id: int) -> None:
    role = await _get_role(db, role_id)
    await db.delete(role)
    await db.flush()
    await bump_cache_version()
    await forget_global_caches()
    logger.info("Role %s deleted", role_id)
