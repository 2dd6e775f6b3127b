from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.responses import api_success
from cms.schemas import SubscriberFilter
from cms.services import newsletter_service

router = APIRouter(prefix="/api/v1/admin/newsletter", tags=["admin: newsletter"])


@router.get("/subscribers", dependencies=[Depends(require_permission("view_newsletter_subscribers"))])
async def list_subscribers(
    request: Request,
    filters: Annotated[SubscriberFilter, Query()],
    db: AsyncSession = Depends(get_db),
):
    page = await newsletter_service.get_subscribers(db, filters, request_path(request))
    page["total_subscribers"] = await newsletter_service.get_total_subscribers(db)
    return api_success(page)


@router.delete(
    "/subscribers/{subscriber_id}",
    dependencies=[Depends(require_permission("manage_newsletter_subscribers"))],
)
async def delete_subscriber(subscriber_id: int, db: AsyncSession = Depends(get_db)):
    await newsletter_service.delete_subscriber(db, subscriber_id)
    return api_success(None, "Subscriber deleted successfully.")
