import math
from typing import Any

from sqlalchemy import Select, func, select
from sqlalchemy.ext.asyncio import AsyncSession


def pagination_meta(total: int, page: int, per_page: int, count: int, path: str | None = None) -> dict:
    """
    Build the ``meta`` block of a paginated payload.

    ``from``/``to`` are 1-based positions of the first and last item on
    the current page and are None for an empty page.
    """
    last_page = max(math.ceil(total / per_page), 1)
    start = (page - 1) * per_page + 1
    return {
        "current_page": page,
        "from": start if count else None,
        "last_page": last_page,
        "per_page": per_page,
        "to": start + count - 1 if count else None,
        "total": total,
        "path": path,
    }


async def paginate(
    db: AsyncSession, stmt: Select, page: int, per_page: int, path: str | None = None
) -> tuple[list[Any], dict]:
    """
    Run *stmt* for one page and return ``(rows, meta)``.

    Two statements are issued: a COUNT over the unpaginated query and the
    page itself.  *stmt* must not use ``joinedload`` on collections (the
    COUNT would see duplicated rows); use ``selectinload`` instead.
    """
    count_stmt = select(func.count()).select_from(stmt.order_by(None).subquery())
    total: int = (await db.execute(count_stmt)).scalar_one()

    result = await db.execute(stmt.offset((page - 1) * per_page).limit(per_page))
    rows = list(result.scalars().all())
    return rows, pagination_meta(total, page, per_page, len(rows), path)
