from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_current_user, request_path
from cms.models import User
from cms.responses import api_success
from cms.schemas import UserNotificationFilter
from cms.services import user_notification_service

router = APIRouter(prefix="/api/v1/user/notifications", tags=["notifications"])


@router.get("")
async def list_notifications(
    request: Request,
    filters: Annotated[UserNotificationFilter, Query()],
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    page = await user_notification_service.get_user_notifications(db, user, filters, request_path(request))
    return api_success(page)


@router.get("/unread-count")
async def unread_count(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    count = await user_notification_service.get_unread_count(db, user)
    return api_success({"unread_count": count})


@router.post("/read-all")
async def mark_all_read(user: User = Depends(get_current_user), db: AsyncSession = Depends(get_db)):
    updated = await user_notification_service.mark_all_as_read(db, user)
    return api_success({"updated": updated}, "All notifications marked as read.")


@router.post("/{notification_id}/read")
async def mark_read(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    row = await user_notification_service.mark_as_read(db, user, notification_id)
    return api_success(row, "Notification marked as read.")


@router.delete("/{notification_id}")
async def delete_notification(
    notification_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await user_notification_service.delete_notification(db, user, notification_id)
    return api_success(None, "Notification deleted successfully.")
