import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod

AD = {
    "campaign_name": "Summer Sound Fest",
    "image_urls": ["https://cdn.example.com/fest.jpg"],
    "cta_text": "Get tickets",
    "cta_link": "https://naksyetu.test/events/fest",
    "priority": 3,
    "duration": "14d",
}


async def _submit(client, headers, **overrides):
    resp = await client.post("/ads", json={**AD, **overrides}, headers=headers)
    assert resp.status_code == 201, resp.text
    return resp.json()


@pytest.mark.asyncio
async def test_submitted_ad_waits_for_review(client, organizer, admin, auth_headers):
    ad = await _submit(client, auth_headers(organizer))
    assert ad["status"] == "pending"
    assert ad["clicks"] == 0
    assert ad["impressions"] == 0
    assert ad["is_adult_content"] is False

    note = await db_mod.db.notifications.find_one({"type": "ad_submission"})
    assert note["message"] == 'TheOrganizer submitted a new ad campaign "Summer Sound Fest" for review.'

    mine = await client.get("/ads/mine", headers=auth_headers(organizer))
    assert [a["id"] for a in mine.json()] == [ad["id"]]

    public = await client.get("/ads")
    assert public.json() == []

    queue = await client.get("/admin/ads", params={"status": "pending"}, headers=auth_headers(admin))
    assert [a["id"] for a in queue.json()] == [ad["id"]]


@pytest.mark.asyncio
async def test_ad_submission_validation(client, organizer, auth_headers):
    no_images = await client.post("/ads", json={**AD, "image_urls": []}, headers=auth_headers(organizer))
    assert no_images.status_code == 422

    blank_images = await client.post("/ads", json={**AD, "image_urls": ["  "]}, headers=auth_headers(organizer))
    assert blank_images.status_code == 400

    script_link = await client.post("/ads", json={**AD, "cta_link": "javascript:alert(1)"},
                                    headers=auth_headers(organizer))
    assert script_link.status_code == 400

    anonymous = await client.post("/ads", json=AD)
    assert anonymous.status_code == 401
    assert await db_mod.db.ad_submissions.count_documents({}) == 0


@pytest.mark.asyncio
async def test_admin_approval_publishes_ad(client, organizer, admin, auth_headers):
    low = await _submit(client, auth_headers(organizer), campaign_name="Low", priority=1)
    high = await _submit(client, auth_headers(organizer), campaign_name="High", priority=9)

    for ad in (low, high):
        resp = await client.patch(f"/admin/ads/{ad['id']}", json={"status": "Approved"}, headers=auth_headers(admin))
        assert resp.status_code == 200, resp.text
        assert resp.json()["status"] == "approved"

    public = await client.get("/ads")
    assert [a["campaign_name"] for a in public.json()] == ["High", "Low"]

    log = await db_mod.db.audit_logs.find_one({"action": "update_ad_status", "target_id": low["id"]})
    assert log["target_type"] == "ad"
    assert log["details"] == {"new_status": "approved"}
    note = await db_mod.db.notifications.find_one({"target_users": str(organizer["_id"])})
    assert note["link"] == "/advertising/dashboard"


@pytest.mark.asyncio
async def test_rejected_ad_is_hidden(client, organizer, admin, auth_headers):
    ad = await _submit(client, auth_headers(organizer))

    back_to_pending = await client.patch(f"/admin/ads/{ad['id']}", json={"status": "pending"},
                                         headers=auth_headers(admin))
    assert back_to_pending.status_code == 400

    rejected = await client.patch(f"/admin/ads/{ad['id']}", json={"status": "rejected"}, headers=auth_headers(admin))
    assert rejected.status_code == 200
    assert (await client.get("/ads")).json() == []

    forbidden = await client.patch(f"/admin/ads/{ad['id']}", json={"status": "approved"},
                                   headers=auth_headers(organizer))
    assert forbidden.status_code == 403
    missing = await client.patch(f"/admin/ads/{ObjectId()}", json={"status": "approved"}, headers=auth_headers(admin))
    assert missing.status_code == 404


@pytest.mark.asyncio
async def test_clicks_and_impressions_count_for_live_ads_only(client, organizer, admin, auth_headers):
    ad = await _submit(client, auth_headers(organizer))

    early = await client.post(f"/ads/{ad['id']}/click")
    assert early.status_code == 404

    await client.patch(f"/admin/ads/{ad['id']}", json={"status": "approved"}, headers=auth_headers(admin))
    for _ in range(2):
        assert (await client.post(f"/ads/{ad['id']}/click")).status_code == 202
    assert (await client.post(f"/ads/{ad['id']}/impression")).status_code == 202

    stored = await db_mod.db.ad_submissions.find_one({"_id": ObjectId(ad["id"])})
    assert stored["clicks"] == 2
    assert stored["impressions"] == 1

    bogus = await client.post("/ads/not-an-id/click")
    assert bogus.status_code == 404
