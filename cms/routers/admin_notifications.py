from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.responses import api_success
from cms.schemas import NotificationCreate, NotificationFilter
from cms.services import notification_service

router = APIRouter(prefix="/api/v1/admin/notifications", tags=["admin: notifications"])


@router.get("", dependencies=[Depends(require_permission("view_notifications"))])
async def list_notifications(
    request: Request,
    filters: Annotated[NotificationFilter, Query()],
    db: AsyncSession = Depends(get_db),
):
    page = await notification_service.get_notifications(db, filters, request_path(request))
    page["stats"] = await notification_service.get_notification_stats(db)
    return api_success(page)


@router.post("", status_code=201, dependencies=[Depends(require_permission("send_notifications"))])
async def create_notification(data: NotificationCreate, db: AsyncSession = Depends(get_db)):
    notification = await notification_service.create_notification(db, data)
    return api_success(notification, "Notification created successfully.", status_code=201)


@router.get("/{notification_id}", dependencies=[Depends(require_permission("view_notifications"))])
async def show_notification(notification_id: int, db: AsyncSession = Depends(get_db)):
    return api_success(await notification_service.get_notification_by_id(db, notification_id))
