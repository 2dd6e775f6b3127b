from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_current_user, request_path
from cms.models import User
from cms.responses import api_success
from cms.schemas import CommentUpdate, PageQuery, ReportRequest
from cms.services import comment_service

router = APIRouter(prefix="/api/v1/comments", tags=["comments"])


@router.get("/own")
async def own_comments(
    request: Request,
    query: Annotated[PageQuery, Query()],
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await comment_service.get_own_comments(db, user, query, request_path(request)))


@router.put("/{comment_id}")
async def update_comment(
    comment_id: int,
    data: CommentUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.update_comment(db, comment_id, data.content, user)
    return api_success(comment, "Comment updated successfully.")


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await comment_service.delete_own_comment(db, comment_id, user)
    return api_success(None, "Comment deleted successfully.")


@router.post("/{comment_id}/report")
async def report_comment(
    comment_id: int,
    data: ReportRequest | None = None,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.report_comment(db, comment_id, data.reason if data else None, user)
    return api_success(comment, "Comment reported successfully.")
