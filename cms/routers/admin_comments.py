from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.models import User
from cms.responses import api_success
from cms.schemas import ApproveCommentRequest, CommentFilter, DeleteCommentRequest
from cms.services import comment_service

router = APIRouter(prefix="/api/v1/admin/comments", tags=["admin: comments"])


@router.get("", dependencies=[Depends(require_permission("comment_moderate"))])
async def list_comments(
    request: Request,
    filters: Annotated[CommentFilter, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await comment_service.get_comments(db, filters, request_path(request)))


@router.post("/{comment_id}/approve")
async def approve_comment(
    comment_id: int,
    data: ApproveCommentRequest | None = None,
    user: User = Depends(require_permission("approve_comments")),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.approve_comment(db, comment_id, data or ApproveCommentRequest(), user)
    return api_success(comment, "Comment approved successfully.")


@router.delete("/{comment_id}")
async def delete_comment(
    comment_id: int,
    data: DeleteCommentRequest | None = None,
    user: User = Depends(require_permission("delete_comments")),
    db: AsyncSession = Depends(get_db),
):
    await comment_service.delete_comment(db, comment_id, data.reason if data else None, user)
    return api_success(None, "Comment deleted successfully.")
