from typing import Annotated

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.models import User
from cms.responses import api_success
from cms.schemas import ArticleCreate, ArticleManagementFilter, ArticleUpdate, ReportRequest
from cms.services import article_management_service, article_moderation_service

router = APIRouter(prefix="/api/v1/admin/articles", tags=["admin: articles"])


@router.get("")
async def list_articles(
    request: Request,
    filters: Annotated[ArticleManagementFilter, Query()],
    user: User = Depends(require_permission("view_posts")),
    db: AsyncSession = Depends(get_db),
):
    page = await article_management_service.get_articles(db, filters, user, request_path(request))
    return api_success(page)


@router.post("", status_code=201)
async def create_article(
    data: ArticleCreate,
    user: User = Depends(require_permission("create_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_management_service.create_article(db, data, user)
    return api_success(article, "Article created successfully.", status_code=201)


@router.get("/{article_id}")
async def show_article(
    article_id: int,
    user: User = Depends(require_permission("view_posts")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await article_management_service.get_article_by_id(db, article_id, user))


@router.put("/{article_id}")
async def update_article(
    article_id: int,
    data: ArticleUpdate,
    user: User = Depends(require_permission("edit_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_management_service.update_article(db, article_id, data, user)
    return api_success(article, "Article updated successfully.")


@router.delete("/{article_id}")
async def delete_article(
    article_id: int,
    user: User = Depends(require_permission("delete_posts")),
    db: AsyncSession = Depends(get_db),
):
    await article_management_service.authorize_article_action(db, article_id, user)
    await article_moderation_service.delete_article(db, article_id, user)
    return api_success(None, "Article deleted permanently.")


# --- Moderation actions ---

@router.post("/{article_id}/approve")
async def approve(
    article_id: int,
    user: User = Depends(require_permission("approve_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.approve_article(db, article_id, user)
    return api_success(article, "Article approved successfully.")


@router.post("/{article_id}/reject")
async def reject(
    article_id: int,
    user: User = Depends(require_permission("approve_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.reject_article(db, article_id, user)
    return api_success(article, "Article rejected successfully.")


@router.post("/{article_id}/archive")
async def archive(
    article_id: int,
    user: User = Depends(require_permission("archive_posts")),
    db: AsyncSession = Depends(get_db),
):
    await article_management_service.authorize_article_action(db, article_id, user)
    article = await article_moderation_service.archive_article(db, article_id, user)
    return api_success(article, "Article archived successfully.")


@router.post("/{article_id}/restore")
async def restore(
    article_id: int,
    user: User = Depends(require_permission("restore_posts")),
    db: AsyncSession = Depends(get_db),
):
    await article_management_service.authorize_article_action(db, article_id, user)
    article = await article_moderation_service.restore_article(db, article_id, user)
    return api_success(article, "Article restored successfully.")


@router.post("/{article_id}/trash")
async def trash(
    article_id: int,
    user: User = Depends(require_permission("trash_posts")),
    db: AsyncSession = Depends(get_db),
):
    await article_management_service.authorize_article_action(db, article_id, user)
    article = await article_moderation_service.trash_article(db, article_id, user)
    return api_success(article, "Article moved to trash.")


@router.post("/{article_id}/restore-from-trash")
async def restore_from_trash(
    article_id: int,
    user: User = Depends(require_permission("trash_posts")),
    db: AsyncSession = Depends(get_db),
):
    await article_management_service.authorize_article_action(db, article_id, user)
    article = await article_moderation_service.restore_from_trash(db, article_id, user)
    return api_success(article, "Article restored from trash.")


@router.post("/{article_id}/feature")
async def feature(
    article_id: int,
    user: User = Depends(require_permission("feature_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.feature_article(db, article_id, user)
    message = "Article featured successfully." if article["is_featured"] else "Article unfeatured successfully."
    return api_success(article, message)


@router.post("/{article_id}/unfeature")
async def unfeature(
    article_id: int,
    user: User = Depends(require_permission("feature_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.unfeature_article(db, article_id, user)
    return api_success(article, "Article unfeatured successfully.")


@router.post("/{article_id}/pin")
async def pin(
    article_id: int,
    user: User = Depends(require_permission("pin_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.pin_article(db, article_id, user)
    return api_success(article, "Article pinned successfully.")


@router.post("/{article_id}/unpin")
async def unpin(
    article_id: int,
    user: User = Depends(require_permission("pin_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.unpin_article(db, article_id, user)
    return api_success(article, "Article unpinned successfully.")


@router.post("/{article_id}/report")
async def report(
    article_id: int,
    data: ReportRequest | None = None,
    user: User = Depends(require_permission("report_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.report_article(db, article_id, data.reason if data else None, user)
    return api_success(article, "Article reported successfully.")


@router.post("/{article_id}/clear-reports")
async def clear_reports(
    article_id: int,
    user: User = Depends(require_permission("approve_posts", "edit_others_posts")),
    db: AsyncSession = Depends(get_db),
):
    article = await article_moderation_service.clear_reports(db, article_id, user)
    return api_success(article, "Article reports cleared successfully.")
