from fastapi import APIRouter, Depends, Query
from sqlalchemy.ext.asyncio import AsyncSession

from cms.database import get_db
from cms.dependencies import require_permission
from cms.responses import api_success
from cms.schemas import CategoryCreate, CategoryUpdate, TagCreate, TagUpdate
from cms.services import category_service, tag_service

router = APIRouter(prefix="/api/v1/admin", tags=["admin: taxonomy"])


@router.post("/categories", status_code=201, dependencies=[Depends(require_permission("create_categories"))])
async def create_category(data: CategoryCreate, db: AsyncSession = Depends(get_db)):
    category = await category_service.create_category(db, data)
    return api_success(category, "Category created successfully.", status_code=201)


@router.put("/categories/{category_id}", dependencies=[Depends(require_permission("edit_categories"))])
async def update_category(category_id: int, data: CategoryUpdate, db: AsyncSession = Depends(get_db)):
    category = await category_service.update_category(db, category_id, data)
    return api_success(category, "Category updated successfully.")


@router.delete("/categories/{category_id}", dependencies=[Depends(require_permission("delete_categories"))])
async def delete_category(
    category_id: int,
    delete_children: bool = Query(False),
    db: AsyncSession = Depends(get_db),
):
    await category_service.delete_category(db, category_id, delete_children)
    return api_success(None, "Category deleted successfully.")


@router.post("/tags", status_code=201, dependencies=[Depends(require_permission("create_tags"))])
async def create_tag(data: TagCreate, db: AsyncSession = Depends(get_db)):
    tag = await tag_service.create_tag(db, data)
    return api_success(tag, "Tag created successfully.", status_code=201)


@router.put("/tags/{tag_id}", dependencies=[Depends(require_permission("edit_tags"))])
async def update_tag(tag_id: int, data: TagUpdate, db: AsyncSession = Depends(get_db)):
    tag = await tag_service.update_tag(db, tag_id, data)
    return api_success(tag, "Tag updated successfully.")


@router.delete("/tags/{tag_id}", dependencies=[Depends(require_permission("delete_tags"))])
async def delete_tag(tag_id: int, db: AsyncSession = Depends(get_db)):
    await tag_service.delete_tag(db, tag_id)
    return api_success(None, "Tag deleted successfully.")
