from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_current_user, get_optional_user, request_path
from cms.models import User
from cms.responses import api_success
from cms.schemas import PageQuery
from cms.services import user_service

router = APIRouter(prefix="/api/v1/users", tags=["users"])


@router.get("/{user_id}/profile")
async def user_profile(
    user_id: int,
    viewer: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.get_user_profile(db, user_id, viewer))


@router.get("/{user_id}/followers")
async def followers(
    user_id: int,
    request: Request,
    query: Annotated[PageQuery, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.get_followers(db, user_id, query, request_path(request)))


@router.get("/{user_id}/following")
async def following(
    user_id: int,
    request: Request,
    query: Annotated[PageQuery, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await user_service.get_following(db, user_id, query, request_path(request)))


@router.post("/{user_id}/follow")
async def follow(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    followed = await user_service.follow_user(db, user, user_id)
    message = "User followed successfully." if followed else "You are already following this user."
    return api_success({"following": True}, message)


@router.delete("/{user_id}/follow")
async def unfollow(
    user_id: int,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    unfollowed = await user_service.unfollow_user(db, user, user_id)
    message = "User unfollowed successfully." if unfollowed else "You are not following this user."
    return api_success({"following": False}, message)
