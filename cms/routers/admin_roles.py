from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import require_permission
from cms.responses import api_success
from cms.schemas import SyncPermissionsRequest
from cms.services import role_service

router = APIRouter(prefix="/api/v1/admin", tags=["admin: roles"])


@router.get("/roles", dependencies=[Depends(require_permission("manage_roles"))])
async def list_roles(db: AsyncSession = Depends(get_db)):
    return api_success(await role_service.get_all_roles(db))


@router.get("/permissions", dependencies=[Depends(require_permission("manage_roles", "manage_permissions"))])
async def list_permissions(db: AsyncSession = Depends(get_db)):
    return api_success(await role_service.get_all_permissions(db))


@router.put("/roles/{role_id}/permissions", dependencies=[Depends(require_permission("manage_permissions"))])
async def sync_permissions(role_id: int, data: SyncPermissionsRequest, db: AsyncSession = Depends(get_db)):
    role = await role_service.sync_role_permissions(db, role_id, data.permission_ids)
    return api_success(role, "Role permissions updated successfully.")


@router.delete("/roles/{role_id}", dependencies=[Depends(require_permission("manage_roles"))])
async def delete_role(role_id: int, db: AsyncSession = Depends(get_db)):
    await role_service.delete_role(db, role_id)
    return api_success(None, "Role deleted successfully.")
