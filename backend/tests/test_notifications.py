import datetime

import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod
from naksyetu.services import notification_center


@pytest.mark.asyncio
async def test_notifications_target_roles_and_users(client, admin, organizer, attendee, auth_headers):
    await notification_center.notify_admins("payout_request", "Someone wants money", "/admin/payouts")
    await notification_center.create_notification("listing_update", "Your listing is live", "/organizer/listings",
                                                  target_users=[str(organizer["_id"])])

    admin_items = (await client.get("/notifications", headers=auth_headers(admin))).json()
    assert [n["type"] for n in admin_items] == ["payout_request"]
    assert admin_items[0]["read"] is False

    organizer_items = (await client.get("/notifications", headers=auth_headers(organizer))).json()
    assert [n["message"] for n in organizer_items] == ["Your listing is live"]

    assert (await client.get("/notifications", headers=auth_headers(attendee))).json() == []


@pytest.mark.asyncio
async def test_mark_read(client, admin, attendee, auth_headers):
    await notification_center.notify_admins("payout_request", "First")
    note = await db_mod.db.notifications.find_one({"message": "First"})

    outsider = await client.post(f"/notifications/{note['_id']}/read", headers=auth_headers(attendee))
    assert outsider.status_code == 404

    resp = await client.post(f"/notifications/{note['_id']}/read", headers=auth_headers(admin))
    assert resp.status_code == 200
    assert resp.json() == {"status": "read"}
    items = (await client.get("/notifications", headers=auth_headers(admin))).json()
    assert items[0]["read"] is True

    missing = await client.post(f"/notifications/{ObjectId()}/read", headers=auth_headers(admin))
    assert missing.status_code == 404
    assert missing.json()["detail"] == "Notification not found."


@pytest.mark.asyncio
async def test_read_all_is_per_user(client, admin, super_admin, auth_headers):
    for message in ("One", "Two"):
        await notification_center.notify_admins("payout_request", message)

    resp = await client.post("/notifications/read-all", headers=auth_headers(admin))
    assert resp.json() == {"updated": 2}
    assert (await client.post("/notifications/read-all", headers=auth_headers(admin))).json() == {"updated": 0}

    other = (await client.get("/notifications", headers=auth_headers(super_admin))).json()
    assert [n["read"] for n in other] == [False, False]


@pytest.mark.asyncio
async def test_notifications_newest_first(client, admin, auth_headers):
    now = datetime.datetime.now(datetime.timezone.utc)
    for offset, message in ((2, "old"), (0, "new"), (1, "middle")):
        await db_mod.db.notifications.insert_one({
            "type": "new_order", "message": message, "target_roles": ["admin"], "target_users": [],
            "created_at": now - datetime.timedelta(minutes=offset), "read_by": [],
        })
    items = (await client.get("/notifications", headers=auth_headers(admin))).json()
    assert [n["message"] for n in items] == ["new", "middle", "old"]
