"""
Category and tag administration.
"""
import pytest
from httpx import AsyncClient

from cms.cache import CacheKey, build_key, cache
from cms.enums import UserRole


async def _category(client: AsyncClient, headers: dict, name: str, parent_id: int | None = None) -> dict:
    resp = await client.post(
        "/api/v1/admin/categories", json={"name": name, "parent_id": parent_id}, headers=headers
    )
    assert resp.status_code == 201
    return resp.json()["data"]


# ---------------------------------------------------------------------------
# Categories
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_create_category_generates_slug(async_client: AsyncClient, admin_headers):
    data = await _category(async_client, admin_headers, "Machine Learning")
    assert data["slug"] == "machine-learning"
    assert data["parent_id"] is None

    dupe = await async_client.post(
        "/api/v1/admin/categories", json={"name": "Machine Learning"}, headers=admin_headers
    )
    assert dupe.status_code == 422
    assert dupe.json()["error"]["slug"] == ["The slug has already been taken."]


@pytest.mark.asyncio
async def test_create_category_with_unknown_parent_is_422(async_client: AsyncClient, admin_headers):
    resp = await async_client.post(
        "/api/v1/admin/categories", json={"name": "Orphan", "parent_id": 999}, headers=admin_headers
    )
    assert resp.status_code == 422
    assert "parent_id" in resp.json()["error"]


@pytest.mark.asyncio
async def test_category_cannot_be_nested_under_its_descendant(async_client: AsyncClient, admin_headers):
    root = await _category(async_client, admin_headers, "Root")
    child = await _category(async_client, admin_headers, "Child", root["id"])
    grandchild = await _category(async_client, admin_headers, "Grandchild", child["id"])

    for parent in (root["id"], grandchild["id"]):
        resp = await async_client.put(
            f"/api/v1/admin/categories/{root['id']}", json={"parent_id": parent}, headers=admin_headers
        )
        assert resp.status_code == 422
        assert resp.json()["error"]["parent_id"] == [
            "A category cannot be nested under itself or its descendants."
        ]

    moved = await async_client.put(
        f"/api/v1/admin/categories/{grandchild['id']}", json={"parent_id": root["id"]}, headers=admin_headers
    )
    assert moved.json()["data"]["parent_id"] == root["id"]


@pytest.mark.asyncio
async def test_delete_category_reparents_children(async_client: AsyncClient, admin_headers):
    root = await _category(async_client, admin_headers, "Root")
    middle = await _category(async_client, admin_headers, "Middle", root["id"])
    leaf = await _category(async_client, admin_headers, "Leaf", middle["id"])

    resp = await async_client.delete(f"/api/v1/admin/categories/{middle['id']}", headers=admin_headers)
    assert resp.status_code == 200

    categories = {c["slug"]: c for c in (await async_client.get("/api/v1/categories")).json()["data"]}
    assert set(categories) == {"root", "leaf"}
    assert categories["leaf"]["parent_id"] == root["id"]
    assert leaf["id"] == categories["leaf"]["id"]


@pytest.mark.asyncio
async def test_delete_category_with_children(async_client: AsyncClient, admin_headers):
    root = await _category(async_client, admin_headers, "Root")
    child = await _category(async_client, admin_headers, "Child", root["id"])
    await _category(async_client, admin_headers, "Grandchild", child["id"])
    await _category(async_client, admin_headers, "Sibling")

    resp = await async_client.delete(
        f"/api/v1/admin/categories/{root['id']}", params={"delete_children": True}, headers=admin_headers
    )
    assert resp.status_code == 200

    remaining = (await async_client.get("/api/v1/categories")).json()["data"]
    assert [c["slug"] for c in remaining] == ["sibling"]


@pytest.mark.asyncio
async def test_category_writes_forget_cached_list(async_client: AsyncClient, admin_headers):
    await async_client.get("/api/v1/categories")
    assert await cache.get(build_key(CacheKey.CATEGORIES)) == []

    await _category(async_client, admin_headers, "Fresh")
    assert await cache.get(build_key(CacheKey.CATEGORIES)) is None


@pytest.mark.asyncio
async def test_author_cannot_manage_categories(async_client: AsyncClient, make_user, auth_headers):
    author = await make_user(UserRole.AUTHOR)
    resp = await async_client.post(
        "/api/v1/admin/categories", json={"name": "Mine"}, headers=await auth_headers(author)
    )
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Tags
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_tag_crud(async_client: AsyncClient, admin_headers):
    created = await async_client.post("/api/v1/admin/tags", json={"name": "Async IO"}, headers=admin_headers)
    assert created.status_code == 201
    tag = created.json()["data"]
    assert tag["slug"] == "async-io"

    updated = await async_client.put(
        f"/api/v1/admin/tags/{tag['id']}", json={"slug": "Asyncio"}, headers=admin_headers
    )
    assert updated.json()["data"]["slug"] == "asyncio"
    assert updated.json()["data"]["name"] == "Async IO"

    listed = await async_client.get("/api/v1/tags")
    assert [t["slug"] for t in listed.json()["data"]] == ["asyncio"]

    deleted = await async_client.delete(f"/api/v1/admin/tags/{tag['id']}", headers=admin_headers)
    assert deleted.status_code == 200
    assert (await async_client.get("/api/v1/tags")).json()["data"] == []

    missing = await async_client.delete(f"/api/v1/admin/tags/{tag['id']}", headers=admin_headers)
    assert missing.status_code == 404
    assert missing.json()["message"] == "Tag not found."


@pytest.mark.asyncio
async def test_duplicate_tag_slug_is_422(async_client: AsyncClient, admin_headers):
    await async_client.post("/api/v1/admin/tags", json={"name": "python"}, headers=admin_headers)
    resp = await async_client.post("/api/v1/admin/tags", json={"name": "Python"}, headers=admin_headers)
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_update_rejects_slugs_that_slugify_to_nothing(async_client: AsyncClient, admin_headers):
    category = await _category(async_client, admin_headers, "Databases")
    tag = (await async_client.post("/api/v1/admin/tags", json={"name": "SQL"}, headers=admin_headers)).json()["data"]

    for slug in ("", "!!!"):
        bad_category = await async_client.put(
            f"/api/v1/admin/categories/{category['id']}", json={"slug": slug}, headers=admin_headers
        )
        assert bad_category.status_code == 422
        assert bad_category.json()["error"] == {"slug": ["The slug must contain at least one letter or number."]}

        bad_tag = await async_client.put(f"/api/v1/admin/tags/{tag['id']}", json={"slug": slug}, headers=admin_headers)
        assert bad_tag.status_code == 422

    assert [c["slug"] for c in (await async_client.get("/api/v1/categories")).json()["data"]] == ["databases"]
    assert [t["slug"] for t in (await async_client.get("/api/v1/tags")).json()["data"]] == ["sql"]
