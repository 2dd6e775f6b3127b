from typing import Annotated

from fastapi import APIRouter, Depends, File, Form, Query, Request, UploadFile
from sqlalchemy.ext.asyncio import AsyncSession

from cms.config import settings
from cms.database import get_db
from cms.dependencies import request_path, require_permission
from cms.models import User
from cms.responses import api_success
from cms.schemas import MediaFilter, MediaMetadataUpdate, UploadMediaData
from cms.services import media_service

router = APIRouter(prefix="/api/v1/media", tags=["media"])


@router.get("")
async def media_library(
    request: Request,
    filters: Annotated[MediaFilter, Query()],
    user: User = Depends(require_permission("view_media")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await media_service.get_media_library(db, filters, user, request_path(request)))


@router.post("", status_code=201)
async def upload_media(
    file: UploadFile = File(...),
    name: str | None = Form(None),
    alt_text: str | None = Form(None),
    caption: str | None = Form(None),
    description: str | None = Form(None),
    user: User = Depends(require_permission("upload_media")),
    db: AsyncSession = Depends(get_db),
):
    meta = UploadMediaData(name=name, alt_text=alt_text, caption=caption, description=description)
    # At most one byte past the limit
    data = await file.read(settings.MEDIA_MAX_FILE_SIZE + 1)
    media = await media_service.upload_media(db, data, file.filename or "file", file.content_type, meta, user)
    return api_success(media, "Media uploaded successfully.", status_code=201)


@router.get("/{media_id}")
async def show_media(
    media_id: int,
    user: User = Depends(require_permission("view_media")),
    db: AsyncSession = Depends(get_db),
):
    return api_success(await media_service.get_media_by_id(db, media_id, user))


@router.put("/{media_id}")
async def update_media(
    media_id: int,
    data: MediaMetadataUpdate,
    user: User = Depends(require_permission("edit_media", "manage_media")),
    db: AsyncSession = Depends(get_db),
):
    media = await media_service.update_media_metadata(db, media_id, data, user)
    return api_success(media, "Media updated successfully.")


@router.delete("/{media_id}")
async def delete_media(
    media_id: int,
    user: User = Depends(require_permission("delete_media", "manage_media")),
    db: AsyncSession = Depends(get_db),
):
    await media_service.delete_media(db, media_id, user)
    return api_success(None, "Media deleted successfully.")
