"""
Media service — uploads and the media library.

Design notes
------------
- Files are written under ``settings.MEDIA_ROOT`` at
  ``media/YYYY/MM/{slug}-{timestamp}-{random8}.{ext}`` and served from
  ``settings.MEDIA_URL``.
- Uploads are checked against the size limit and the MIME allow-list
  before anything touches the disk.
- Disk work follows the request transaction: a written upload is removed
  again if the transaction rolls back, and a deleted record's file is
  only unlinked once the delete commits.
- Image dimensions are read with Pillow when the payload is a raster
  image it understands; anything else simply has no dimensions.
- Users without ``manage_media`` only see, update and delete their own
  uploads; the library is filtered to them and another user's item is
  a 403.
"""
import asyncio
import io
import logging
import secrets
import string
from functools import partial
from pathlib import Path, PurePosixPath

from PIL import Image, UnidentifiedImageError
from sqlalchemy import asc, desc, or_, select
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.orm import selectinload

from cms.config import settings
from cms.database import after_commit, after_rollback
from cms.enums import MediaType
from cms.events import MediaDeleted, MediaUploaded, bus
from cms.exceptions import AuthorizationError, NotFoundError, ValidationError
from cms.models import Media, User
from cms.pagination import paginate
from cms.permissions import has_permission
from cms.schemas import MediaFilter, MediaMetadataUpdate, UploadMediaData
from cms.services.user_service import user_summary
from cms.utils import isoformat, like_pattern, slugify, utcnow

logger = logging.getLogger(__name__)

ALLOWED_MIME_TYPES: dict[MediaType, frozenset[str]] = {
    MediaType.IMAGE: frozenset({
        "image/jpeg", "image/jpg", "image/png", "image/gif", "image/webp", "image/svg+xml",
    }),
    MediaType.VIDEO: frozenset({
        "video/mp4", "video/mpeg", "video/quicktime", "video/x-msvideo", "video/webm",
    }),
    MediaType.DOCUMENT: frozenset({
        "application/pdf",
        "application/msword",
        "application/vnd.openxmlformats-officedocument.wordprocessingml.document",
        "application/vnd.ms-excel",
        "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet",
        "text/plain",
    }),
}

_SORTABLE_COLUMNS: frozenset[str] = frozenset({"created_at", "name", "size"})
_RANDOM_ALPHABET = string.ascii_letters + string.digits


def media_to_dict(media: Media) -> dict:
    return {
        "id": media.id,
        "name": media.name,
        "file_name": media.file_name,
        "mime_type": media.mime_type,
        "disk": media.disk,
        "path": media.path,
        "url": media.url,
        "size": media.size,
        "type": media.type.value,
        "alt_text": media.alt_text,
        "caption": media.caption,
        "description": media.description,
        "metadata": media.metadata_ or {},
        "uploaded_by": media.uploaded_by,
        "uploader": user_summary(media.uploader),
        "created_at": isoformat(media.created_at),
        "updated_at": isoformat(media.updated_at),
    }


def media_type_for(mime_type: str) -> MediaType | None:
    for media_type, allowed in ALLOWED_MIME_TYPES.items():
        if mime_type in allowed:
            return media_type
    return None


def build_file_name(original_name: str) -> str:
    """``{slug}-{unix timestamp}-{8 random chars}.{ext}`` for *original_name*."""
    path = PurePosixPath(original_name)
    base = slugify(path.stem) or "file"
    random_part = "".join(secrets.choice(_RANDOM_ALPHABET) for _ in range(8))
    extension = path.suffix.lstrip(".").lower()
    name = f"{base}-{int(utcnow().timestamp())}-{random_part}"
    return f"{name}.{extension}" if extension else name


def extract_metadata(data: bytes, media_type: MediaType) -> dict:
    if media_type != MediaType.IMAGE:
        return {}
    try:
        with Image.open(io.BytesIO(data)) as image:
            width, height = image.size
    except (UnidentifiedImageError, OSError, ValueError):
        return {}
    return {"width": width, "height": height, "dimensions": f"{width}x{height}"}


def _absolute(path: str) -> Path:
    return Path(settings.MEDIA_ROOT) / path


def _write_file(path: str, data: bytes) -> None:
    target = _absolute(path)
    target.parent.mkdir(parents=True, exist_ok=True)
    target.write_bytes(data)


def _remove_file(path: str) -> None:
    _absolute(path).unlink(missing_ok=True)


async def _load_media(db: AsyncSession, media_id: int) -> Media:
    result = await db.execute(
        select(Media)
        .where(Media.id == media_id)
        .options(selectinload(Media.uploader))
        .execution_options(populate_existing=True)
    )
    media = result.scalar_one_or_none()
    if media is None:
        raise NotFoundError("Media")
    return media


async def _ensure_can_manage(db: AsyncSession, media: Media, user: User) -> None:
    if media.uploaded_by != user.id and not await has_permission(db, user.id, "manage_media"):
        raise AuthorizationError()


# ---------------------------------------------------------------------------
# Service functions
# ---------------------------------------------------------------------------

async def upload_media(
    db: AsyncSession,
    data: bytes,
    filename: str,
    content_type: str | None,
    meta: UploadMediaData,
    user: User,
) -> dict:
    if not data:
        raise ValidationError({"file": ["The file is empty."]})
    if len(data) > settings.MEDIA_MAX_FILE_SIZE:
        raise ValidationError({"file": ["The file size exceeds the allowed limit."]})
    mime_type = (content_type or "").split(";")[0].strip().lower()
    media_type = media_type_for(mime_type)
    if media_type is None:
        raise ValidationError({"file": ["The file type is not allowed."]})

    now = utcnow()
    file_name = build_file_name(filename or "file")
    path = f"media/{now:%Y}/{now:%m}/{file_name}"
    await asyncio.to_thread(_write_file, path, data)
    after_rollback(db, partial(_remove_file, path))

    media = Media(
        name=meta.name or filename or file_name,
        file_name=file_name,
        mime_type=mime_type,
        disk="public",
        path=path,
        url=f"{settings.MEDIA_URL.rstrip('/')}/{path}",
        size=len(data),
        type=media_type,
        alt_text=meta.alt_text,
        caption=meta.caption,
        description=meta.description,
        metadata_=extract_metadata(data, media_type),
        uploaded_by=user.id,
    )
    db.add(media)
    await db.flush()

    media = await _load_media(db, media.id)
    await bus.dispatch(db, MediaUploaded(media_id=media.id, uploaded_by=user.id))
    logger.info("Media uploaded: id=%s path=%s size=%d", media.id, path, media.size)
    return media_to_dict(media)


async def get_media_library(
    db: AsyncSession, filters: MediaFilter, user: User, path: str | None = None
) -> dict:
    stmt = select(Media).options(selectinload(Media.uploader))

    if not await has_permission(db, user.id, "manage_media"):
        stmt = stmt.where(Media.uploaded_by == user.id)

    if filters.type is not None:
        stmt = stmt.where(Media.type == filters.type)
    if filters.uploaded_by is not None:
        stmt = stmt.where(Media.uploaded_by == filters.uploaded_by)
    if filters.search:
        pattern = like_pattern(filters.search)
        stmt = stmt.where(
            or_(
                Media.name.ilike(pattern, escape="\\"),
                Media.file_name.ilike(pattern, escape="\\"),
                Media.alt_text.ilike(pattern, escape="\\"),
            )
        )

    sort_col = getattr(Media, filters.sort_by) if filters.sort_by in _SORTABLE_COLUMNS else Media.created_at
    order = desc if filters.sort_direction == "desc" else asc
    stmt = stmt.order_by(order(sort_col), order(Media.id))

    items, meta = await paginate(db, stmt, filters.page, filters.per_page, path)
    return {"media": [media_to_dict(m) for m in items], "meta": meta}


async def get_media_by_id(db: AsyncSession, media_id: int, user: User) -> dict:
    media = await _load_media(db, media_id)
    await _ensure_can_manage(db, media, user)
    return media_to_dict(media)


async def update_media_metadata(db: AsyncSession, media_id: int, data: MediaMetadataUpdate, user: User) -> dict:
    media = await _load_media(db, media_id)
    await _ensure_can_manage(db, media, user)
    for field, value in data.model_dump(exclude_unset=True).items():
        if field == "name" and value is None:
            continue
        setattr(media, field, value)
    await db.flush()
    return media_to_dict(await _load_media(db, media_id))


async def delete_media(db: AsyncSession, media_id: int, user: User) -> None:
    media = await _load_media(db, media_id)
    await _ensure_can_manage(db, media, user)
    path = media.path
    await db.delete(media)
    await db.flush()
    after_commit(db, partial(_remove_file, path))
    await bus.dispatch(db, MediaDeleted(media_id=media_id, path=path))
    logger.info("Media %s deleted by %s", media_id, user.id)
