from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.models import User
from cms.responses import api_success
from cms.schemas import AssignRolesRequest, UserCreate, UserFilter, UserUpdate
from cms.services import user_service

router = APIRouter(prefix="/api/v1/admin/users", tags=["admin: users"])


@router.get("", dependencies=[Depends(require_permission("view_users"))])
async def list_users(
    request: Request,
    filters: Annotated[UserFilter, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.get_users(db, filters, request_path(request)))


@router.post("", status_code=201)
async def create_user(
    data: UserCreate,
    actor: User = Depends(require_permission("create_users")),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.create_user(db, data, actor)
    return api_success(user, "User created successfully.", status_code=201)


@router.get("/{user_id}", dependencies=[Depends(require_permission("view_users"))])
async def show_user(user_id: int, db: AsyncSession = Depends(get_db)):
    return api_success(await user_service.get_user_by_id(db, user_id))


@router.put("/{user_id}")
async def update_user(
    user_id: int,
    data: UserUpdate,
    actor: User = Depends(require_permission("edit_users")),
    db: AsyncSession = Depends(get_db),
):
    user = await user_service.update_user(db, user_id, data, actor)
    return api_success(user, "User updated successfully.")


@router.delete("/{user_id}")
async def delete_user(
    user_id: int,
    actor: User = Depends(require_permission("delete_users")),
    db: AsyncSession = Depends(get_db),
):
    await user_service.delete_user(db, user_id, actor)
    return api_success(None, "User deleted successfully.")


@router.post("/{user_id}/ban")
async def ban_user(
    user_id: int,
    actor: User = Depends(require_permission("ban_users")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.ban_user(db, user_id, actor), "User banned successfully.")


@router.post("/{user_id}/unban")
async def unban_user(
    user_id: int,
    actor: User = Depends(require_permission("ban_users")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.unban_user(db, user_id, actor), "User unbanned successfully.")


@router.post("/{user_id}/block")
async def block_user(
    user_id: int,
    actor: User = Depends(require_permission("block_users")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.block_user(db, user_id, actor), "User blocked successfully.")


@router.post("/{user_id}/unblock")
async def unblock_user(
    user_id: int,
    actor: User = Depends(require_permission("block_users")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.unblock_user(db, user_id, actor), "User unblocked successfully.")


@router.put("/{user_id}/roles", dependencies=[Depends(require_permission("assign_roles"))])
async def assign_roles(user_id: int, data: AssignRolesRequest, db: AsyncSession = Depends(get_db)):
    user = await user_service.assign_roles(db, user_id, data.role_ids)
    return api_success(user, "Roles assigned successfully.")
