"""
Category service — CRUD for the (self-referencing) category tree.

Design notes
------------
- The whole list is cached under ``CacheKey.CATEGORIES``; every write
  forgets it.
- A category's parent must exist and may not be the category itself or
  one of its descendants (that would create a cycle).
- Deleting a category either re-parents its children to its own parent
  or, with ``delete_children``, removes the entire subtree.
"""
import logging

from sqlalchemy import delete, select, update
from sqlalchemy.ext.asyncio import AsyncSession

from cms.cache import CacheKey, cache
from cms.exceptions import NotFoundError, ValidationError
from cms.models import Category
from cms.schemas import CategoryCreate, CategoryUpdate
from cms.utils import isoformat, slugify

logger = logging.getLogger(__name__)


def category_to_dict(category: Category) -> dict:
    return {
        "id": category.id,
        "name": category.name,
        "slug": category.slug,
        "description": category.description,
        "parent_id": category.parent_id,
        "created_at": isoformat(category.created_at),
        "updated_at": isoformat(category.updated_at),
    }


async def _get_category(db: AsyncSession, category_id: int) -> Category:
    category = await db.get(Category, category_id)
    if category is None:
        raise NotFoundError("Category")
    return category


async def _ensure_unique_slug(db: AsyncSession, slug: str, exclude_id: int | None = None) -> None:
    stmt = select(Category.id).where(Category.slug == slug)
    if exclude_id is not None:
        stmt = stmt.where(Category.id != exclude_id)
    if (await db.execute(stmt)).scalar_one_or_none() is not None:
        raise ValidationError({"slug": ["The slug has already been taken."]})


async def _descendant_ids(db: AsyncSession, category_id: int) -> set[int]:
    """Breadth-first walk of the subtree below *category_id* (exclusive)."""
    found: set[int] = set()
    frontier = [category_id]
    while frontier:
        rows = await db.execute(select(Category.id).where(Category.parent_id.in_(frontier)))
        frontier = [cid for cid in rows.scalars().all() if cid not in found]
        found.update(frontier)
    return found


async def _validate_parent(db: AsyncSession, parent_id: int | None, category_id: int | None = None) -> None:
    if parent_id is None:
        return
    if await db.get(Category, parent_id) is None:
        raise ValidationError({"parent_id": ["The selected parent category does not exist."]})
    if category_id is not None:
        if parent_id == category_id or parent_id in await _descendant_ids(db, category_id):
            raise ValidationError({"parent_id": ["A category cannot be nested under itself or its descendants."]})


async def get_all_categories(db: AsyncSession) -> list[dict]:
    async def _load() -> list[dict]:
        result = await db.execute(select(Category).order_by(Category.name))
        return [category_to_dict(c) for c in result.scalars().all()]

    return await cache.remember(CacheKey.CATEGORIES, _load)


async def create_category(db: AsyncSession, data: CategoryCreate) -> dict:
    slug = slugify(data.slug or data.name)
    if not slug:
        raise ValidationError({"slug": ["The slug could not be generated from the name."]})
    await _ensure_unique_slug(db, slug)
    await _validate_parent(db, data.parent_id)

    category = Category(name=data.name, slug=slug, description=data.description, parent_id=data.parent_id)
    db.add(category)
    await db.flush()
    await cache.forget(CacheKey.CATEGORIES)
    return category_to_dict(category)


async def update_category(db: AsyncSession, category_id: int, data: CategoryUpdate) -> dict:
    category = await _get_category(db, category_id)
    update_data = data.model_dump(exclude_unset=True)

    if "parent_id" in update_data:
        await _validate_parent(db, update_data["parent_id"], category_id)
        category.parent_id = update_data["parent_id"]
    if update_data.get("slug") is not None:
        slug = slugify(update_data["slug"])
        if not slug:
            raise ValidationError({"slug": ["The slug must contain at least one letter or number."]})
        await _ensure_unique_slug(db, slug, exclude_id=category_id)
        category.slug = slug
    if update_data.get("name"):
        category.name = update_data["name"]
    if "description" in update_data:
        category.description = update_data["description"]

    await db.flush()
    await cache.forget(CacheKey.CATEGORIES)
    return category_to_dict(category)


async def delete_category(db: AsyncSession, category_id: int, delete_children: bool = False) -> None:
    category = await _get_category(db, category_id)
    if delete_children:
        subtree = await _descendant_ids(db, category_id)
        if subtree:
            await db.execute(delete(Category).where(Category.id.in_(subtree)))
    else:
        await db.execute(
            update(Category).where(Category.parent_id == category_id).values(parent_id=category.parent_id)
        )
    await db.delete(category)
    await db.flush()
    await cache.forget(CacheKey.CATEGORIES)
    logger.info("Category %s deleted (children %s)", category_id, "deleted" if delete_children else "moved")
