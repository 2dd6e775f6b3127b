"""
Tag service — CRUD for tags.

The full tag list is served from the cache (``CacheKey.TAGS``); every
write forgets that entry.
"""
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import CacheKey, cache
from cms.exceptions import NotFoundError, ValidationError
from cms.models import Tag
from cms.schemas import TagCreate, TagUpdate
from cms.utils import isoformat, slugify


def tag_to_dict(tag: Tag) -> dict:
    return {
        "id": tag.id,
        "name": tag.name,
        "slug": tag.slug,
        "created_at": isoformat(tag.created_at),
        "updated_at": isoformat(tag.updated_at),
    }


async def _get_tag(db: AsyncSession, tag_id: int) -> Tag:
    tag = await db.get(Tag, tag_id)
    if tag is None:
        raise NotFoundError("Tag")
    return tag


async def _ensure_unique_slug(db: AsyncSession, slug: str, exclude_id: int | None = None) -> None:
    stmt = select(Tag.id).where(Tag.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Tag.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        raise ValidationError({"slug": ["The slug has already been taken."]})


async def get_all_tags(db: AsyncSession) -> list[dict]:
    async def _load() -> list[dict]:
        result = await db.execute(select(Tag).order_by(Tag.name))
        return [tag_to_dict(t) for t in result.scalars().all()]

    return await cache.remember(CacheKey.TAGS, _load)


async def create_tag(db: AsyncSession, data: TagCreate) -> dict:
    slug = slugify(data.slug or data.name)
    if not slug:
        raise ValidationError({"slug": ["The slug could not be generated from the name."]})
    await _ensure_unique_slug(db, slug)
    tag = Tag(name=data.name, slug=slug)
    db.add(tag)
    await db.flush()
    await cache.forget(CacheKey.TAGS)
    return tag_to_dict(tag)


async def update_tag(db: AsyncSession, tag_id: int, data: TagUpdate) -> dict:
    tag = await _get_tag(db, tag_id)
    if data.name is not None:
        tag.name = data.name
    if data.slug is not None:
        slug = slugify(data.slug)
        if not slug:
            raise ValidationError({"slug": ["The slug must contain at least one letter or number."]})
        await _ensure_unique_slug(db, slug, exclude_id=tag_id)
        tag.slug = slug
    await db.flush()
    await cache.forget(CacheKey.TAGS)
    return tag_to_dict(tag)


async def delete_tag(db: AsyncSession, tag_id: int) -> None:
    tag = await _get_tag(db, tag_id)
    await db.delete(tag)
    await db.flush()
    await cache.forget(CacheKey.TAGS)
