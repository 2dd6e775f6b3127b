"""
Admin-authored notifications, audience fan-out and the user inbox.
"""
import pytest
from httpx import AsyncClient

from cms.enums import UserRole

ADMIN_BASE = "/api/v1/admin/notifications"
INBOX = "/api/v1/user/notifications"


def _payload(**overrides) -> dict:
    payload = {
        "type": "system_alert",
        "title": "Maintenance",
        "body": "We will be down for ten minutes.",
        "audiences": ["all_users"],
    }
    payload.update(overrides)
    return payload


@pytest.mark.asyncio
async def test_broadcast_reaches_every_user(async_client: AsyncClient, admin_headers, make_user, auth_headers):
    reader = await make_user()
    await make_user(UserRole.AUTHOR)

    resp = await async_client.post(ADMIN_BASE, json=_payload(), headers=admin_headers)
    assert resp.status_code == 201
    data = resp.json()["data"]
    # admin + two users
    assert data["recipients_count"] == 3
    assert data["audiences"] == [{"type": "all", "id": None}]
    assert data["message"] == {"title": "Maintenance", "body": "We will be down for ten minutes.", "priority": "normal"}

    inbox = await async_client.get(INBOX, headers=await auth_headers(reader))
    notifications = inbox.json()["data"]["notifications"]
    assert len(notifications) == 1
    assert notifications[0]["is_read"] is False
    assert notifications[0]["type"] == "system_alert"


@pytest.mark.asyncio
async def test_overlapping_audiences_deliver_once(
    async_client: AsyncClient, admin, admin_headers, make_user
):
    reader = await make_user()
    await make_user()

    resp = await async_client.post(
        ADMIN_BASE,
        json=_payload(audiences=["administrators", "specific_users"], user_ids=[admin.id, reader.id]),
        headers=admin_headers,
    )
    assert resp.json()["data"]["recipients_count"] == 2


@pytest.mark.asyncio
async def test_specific_users_requires_ids(async_client: AsyncClient, admin_headers):
    resp = await async_client.post(ADMIN_BASE, json=_payload(audiences=["specific_users"]), headers=admin_headers)
    assert resp.status_code == 422
    assert resp.json()["message"] == "user_ids are required when targeting specific users."


@pytest.mark.asyncio
async def test_unknown_user_id_is_422(async_client: AsyncClient, admin_headers):
    resp = await async_client.post(
        ADMIN_BASE, json=_payload(audiences=["specific_users"], user_ids=[4040]), headers=admin_headers
    )
    assert resp.status_code == 422
    assert "user_ids" in resp.json()["error"]


@pytest.mark.asyncio
async def test_admin_list_show_and_stats(async_client: AsyncClient, admin_headers, make_user):
    await make_user()
    created = (await async_client.post(ADMIN_BASE, json=_payload(), headers=admin_headers)).json()["data"]
    await async_client.post(
        ADMIN_BASE, json=_payload(type="newsletter", title="Issue #1", audiences=["administrators"]),
        headers=admin_headers,
    )

    listing = await async_client.get(ADMIN_BASE, headers=admin_headers)
    data = listing.json()["data"]
    assert data["meta"]["total"] == 2
    assert data["stats"]["total"] == 2
    assert data["stats"]["by_type"]["newsletter"] == 1
    assert data["stats"]["deliveries"] == 3
    assert data["stats"]["unread"] == 3

    filtered = await async_client.get(ADMIN_BASE, params={"type": "newsletter"}, headers=admin_headers)
    assert [n["message"]["title"] for n in filtered.json()["data"]["notifications"]] == ["Issue #1"]

    show = await async_client.get(f"{ADMIN_BASE}/{created['id']}", headers=admin_headers)
    assert show.json()["data"]["recipients_count"] == 2


@pytest.mark.asyncio
async def test_editor_cannot_send_notifications(async_client: AsyncClient, make_user, auth_headers):
    editor = await make_user(UserRole.EDITOR)
    resp = await async_client.post(ADMIN_BASE, json=_payload(), headers=await auth_headers(editor))
    assert resp.status_code == 403


# ---------------------------------------------------------------------------
# Inbox
# ---------------------------------------------------------------------------

@pytest.mark.asyncio
async def test_inbox_read_state(async_client: AsyncClient, admin_headers, make_user, auth_headers):
    reader = await make_user()
    headers = await auth_headers(reader)
    for title in ("First", "Second", "Third"):
        await async_client.post(ADMIN_BASE, json=_payload(title=title), headers=admin_headers)

    count = await async_client.get(f"{INBOX}/unread-count", headers=headers)
    assert count.json()["data"] == {"unread_count": 3}

    inbox = (await async_client.get(INBOX, headers=headers)).json()["data"]["notifications"]
    first_id = inbox[0]["id"]
    read = await async_client.post(f"{INBOX}/{first_id}/read", headers=headers)
    assert read.json()["data"]["is_read"] is True
    assert read.json()["data"]["read_at"] is not None

    unread = await async_client.get(INBOX, params={"is_read": False}, headers=headers)
    assert unread.json()["data"]["meta"]["total"] == 2

    everything = await async_client.post(f"{INBOX}/read-all", headers=headers)
    assert everything.json()["data"] == {"updated": 2}
    count = await async_client.get(f"{INBOX}/unread-count", headers=headers)
    assert count.json()["data"]["unread_count"] == 0


@pytest.mark.asyncio
async def test_cannot_touch_someone_elses_notification(
    async_client: AsyncClient, admin_headers, make_user, auth_headers
):
    owner = await make_user()
    intruder = await make_user()
    await async_client.post(
        ADMIN_BASE, json=_payload(audiences=["specific_users"], user_ids=[owner.id]), headers=admin_headers
    )
    owner_headers = await auth_headers(owner)
    row_id = (await async_client.get(INBOX, headers=owner_headers)).json()["data"]["notifications"][0]["id"]

    intruder_headers = await auth_headers(intruder)
    assert (await async_client.post(f"{INBOX}/{row_id}/read", headers=intruder_headers)).status_code == 403
    assert (await async_client.delete(f"{INBOX}/{row_id}", headers=intruder_headers)).status_code == 403

    deleted = await async_client.delete(f"{INBOX}/{row_id}", headers=owner_headers)
    assert deleted.status_code == 200
    assert (await async_client.get(INBOX, headers=owner_headers)).json()["data"]["meta"]["total"] == 0


@pytest.mark.asyncio
async def test_inbox_requires_authentication(async_client: AsyncClient):
    assert (await async_client.get(INBOX)).status_code == 401
