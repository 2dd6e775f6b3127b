from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import get_current_user, get_optional_user, request_path
from cms.middleware import get_client_ip
from cms.models import User
from cms.responses import api_success
from cms.schemas import ArticleCommentsQuery, ArticleFilter, CommentCreate
from cms.services import article_service, category_service, comment_service, tag_service

router = APIRouter(prefix="/api/v1", tags=["articles"])


def _reactor(request: Request, user: User | None) -> dict:
    if user is not None:
        return {"user_id": user.id}
    return {"ip_address": get_client_ip(request) or "unknown"}


@router.get("/articles")
async def list_articles(
    request: Request,
    filters: Annotated[ArticleFilter, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await article_service.get_articles(db, filters, request_path(request)))


@router.get("/articles/{slug}")
async def show_article(slug: str, db: AsyncSession = Depends(get_db)):
    return api_success(await article_service.get_article_by_slug(db, slug))


@router.get("/articles/{slug}/comments")
async def article_comments(
    slug: str,
    request: Request,
    query: Annotated[ArticleCommentsQuery, Query()],
    db: AsyncSession = Depends(get_db),
):
    return api_success(await article_service.get_article_comments(db, slug, query, request_path(request)))


@router.post("/articles/{slug}/comments", status_code=201)
async def create_comment(
    slug: str,
    data: CommentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    comment = await comment_service.create_comment(db, slug, data, user)
    return api_success(comment, "Comment created successfully.", status_code=201)


@router.post("/articles/{slug}/like")
async def like_article(
    slug: str,
    request: Request,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    result = await article_service.like_article(db, slug, **_reactor(request, user))
    return api_success(result, "Article liked successfully.")


@router.post("/articles/{slug}/dislike")
async def dislike_article(
    slug: str,
    request: Request,
    user: User | None = Depends(get_optional_user),
    db: AsyncSession = Depends(get_db),
):
    result = await article_service.dislike_article(db, slug, **_reactor(request, user))
    return api_success(result, "Article disliked successfully.")


@router.get("/categories", tags=["taxonomy"])
async def list_categories(db: AsyncSession = Depends(get_db)):
    return api_success(await category_service.get_all_categories(db))


@router.get("/tags", tags=["taxonomy"])
async def list_tags(db: AsyncSession = Depends(get_db)):
    return api_success(await tag_service.get_all_tags(db))
