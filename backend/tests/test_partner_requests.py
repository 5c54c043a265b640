import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod


async def _apply(client, headers, role="organizer"):
    resp = await client.post("/partner-requests", json={"role": role}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_attendee_applies_and_admins_are_notified(client, attendee, admin, auth_headers):
    created = await _apply(client, auth_headers(attendee), role="Influencer")
    assert created["requested_role"] == "influencer"
    assert created["status"] == "pending"
    assert created["user"]["email"] == "fan@example.com"

    note = await db_mod.db.notifications.find_one({"type": "partner_request"})
    assert note["message"] == "JazzFan has requested to become a influencer."
    assert note["link"] == "/admin/requests"
    assert "admin" in note["target_roles"]

    mine = await client.get("/partner-requests/mine", headers=auth_headers(attendee))
    assert [r["id"] for r in mine.json()] == [created["id"]]

    pending = await client.get("/admin/partner-requests", headers=auth_headers(admin))
    assert pending.status_code == 200
    assert [r["id"] for r in pending.json()] == [created["id"]]


@pytest.mark.asyncio
async def test_second_pending_request_is_rejected(client, attendee, auth_headers):
    await _apply(client, auth_headers(attendee))

    again = await client.post("/partner-requests", json={"role": "club"}, headers=auth_headers(attendee))
    assert again.status_code == 400
    assert "pending partner request" in again.json()["detail"]
    assert await db_mod.db.partner_requests.count_documents({}) == 1


@pytest.mark.asyncio
async def test_only_partner_roles_can_be_requested(client, attendee, organizer, auth_headers):
    admin_role = await client.post("/partner-requests", json={"role": "admin"}, headers=auth_headers(attendee))
    assert admin_role.status_code == 400

    unknown = await client.post("/partner-requests", json={"role": "wizard"}, headers=auth_headers(attendee))
    assert unknown.status_code == 422

    same = await client.post("/partner-requests", json={"role": "organizer"}, headers=auth_headers(organizer))
    assert same.status_code == 400
    assert await db_mod.db.partner_requests.count_documents({}) == 0


@pytest.mark.asyncio
async def test_approval_grants_requested_role(client, attendee, admin, auth_headers):
    created = await _apply(client, auth_headers(attendee), role="club")

    resp = await client.post(f"/admin/partner-requests/{created['id']}/approve", headers=auth_headers(admin))
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "approved"
    assert "pending_user_id" not in resp.json()

    user = await db_mod.db.users.find_one({"_id": attendee["_id"]})
    assert user["role"] == "club"
    stored = await db_mod.db.partner_requests.find_one({"_id": ObjectId(created["id"])})
    assert stored["processor_id"] == str(admin["_id"])
    assert "pending_user_id" not in stored

    log = await db_mod.db.audit_logs.find_one({"action": "approve_partner_request"})
    assert log["target_type"] == "user"
    assert log["target_id"] == str(attendee["_id"])
    assert log["details"] == {"approved_role": "club"}

    note = await db_mod.db.notifications.find_one({"target_users": str(attendee["_id"])})
    assert note["message"] == "Your request to become a club was approved."

    twice = await client.post(f"/admin/partner-requests/{created['id']}/deny", headers=auth_headers(admin))
    assert twice.status_code == 400


@pytest.mark.asyncio
async def test_denial_keeps_role_and_allows_new_request(client, attendee, admin, auth_headers):
    created = await _apply(client, auth_headers(attendee))

    resp = await client.post(f"/admin/partner-requests/{created['id']}/deny", headers=auth_headers(admin))
    assert resp.status_code == 200, resp.text
    assert resp.json()["status"] == "rejected"

    user = await db_mod.db.users.find_one({"_id": attendee["_id"]})
    assert user["role"] == "attendee"
    log = await db_mod.db.audit_logs.find_one({"action": "deny_partner_request"})
    assert log["details"] == {"denied_role": "organizer"}

    pending = await client.get("/admin/partner-requests", headers=auth_headers(admin))
    assert pending.json() == []

    await _apply(client, auth_headers(attendee), role="influencer")
    assert await db_mod.db.partner_requests.count_documents({}) == 2


@pytest.mark.asyncio
async def test_partner_request_admin_routes_need_admin(client, attendee, organizer, auth_headers):
    created = await _apply(client, auth_headers(attendee))

    listing = await client.get("/admin/partner-requests", headers=auth_headers(organizer))
    assert listing.status_code == 403
    approve = await client.post(f"/admin/partner-requests/{created['id']}/approve", headers=auth_headers(attendee))
    assert approve.status_code == 403
    missing = await client.post(f"/admin/partner-requests/{ObjectId()}/approve", headers=auth_headers(organizer))
    assert missing.status_code == 403

    anonymous = await client.post("/partner-requests", json={"role": "club"})
    assert anonymous.status_code == 401
