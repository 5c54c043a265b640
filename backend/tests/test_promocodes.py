import datetime

import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod
from naksyetu.services.promocodes import commission_for


async def _insert_promo(organizer, **overrides):
    now = datetime.datetime.now(datetime.timezone.utc)
    doc = {
        "organizer_id": str(organizer["_id"]),
        "code": "JAZZ10",
        "discount_type": "percentage",
        "discount_value": 10.0,
        "usage_limit": 0,
        "usage_count": 0,
        "revenue_generated": 0.0,
        "expires_at": None,
        "listing_type": "all",
        "listing_id": None,
        "listing_name": "All Events",
        "is_active": True,
        "created_at": now,
    }
    doc.update(overrides)
    await db_mod.db.promocodes.insert_one(doc)
    return doc


@pytest.mark.asyncio
async def test_create_promocode_uppercases_code(client, organizer, auth_headers):
    resp = await client.post("/organizer/promocodes", json={"code": " jazz10 ", "discount_value": 10},
                             headers=auth_headers(organizer))
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["code"] == "JAZZ10"
    assert body["discount_type"] == "percentage"
    assert body["usage_count"] == 0
    assert body["is_active"] is True
    assert body["listing_name"] == "All Events"

    log = await db_mod.db.audit_logs.find_one({"action": "create_promocode"})
    assert log["details"]["code"] == "JAZZ10"
    assert log["details"]["influencer_id"] == "N/A"


@pytest.mark.asyncio
async def test_duplicate_code_rejected(client, organizer, auth_headers):
    headers = auth_headers(organizer)
    assert (await client.post("/organizer/promocodes", json={"code": "DUP", "discount_value": 5},
                              headers=headers)).status_code == 201
    resp = await client.post("/organizer/promocodes", json={"code": "dup", "discount_value": 5}, headers=headers)
    assert resp.status_code == 400
    assert resp.json()["detail"] == "A promocode with this code already exists."


@pytest.mark.asyncio
async def test_percentage_over_100_rejected(client, organizer, auth_headers):
    resp = await client.post("/organizer/promocodes", json={"code": "HUGE", "discount_value": 150},
                             headers=auth_headers(organizer))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_invalid_discount_type_is_validation_error(client, organizer, auth_headers):
    resp = await client.post("/organizer/promocodes",
                             json={"code": "BAD", "discount_value": 5, "discount_type": "bogus"},
                             headers=auth_headers(organizer))
    assert resp.status_code == 422


@pytest.mark.asyncio
async def test_campaign_invitation_notifies_influencer(client, organizer, influencer, auth_headers, sent_emails):
    resp = await client.post("/organizer/promocodes", json={
        "code": "STAR15",
        "discount_type": "fixed",
        "discount_value": 150,
        "influencer_id": str(influencer["_id"]),
        "commission_type": "percentage",
        "commission_value": 10,
        "listing_name": "Nairobi Jazz Night",
    }, headers=auth_headers(organizer))
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["influencer_status"] == "pending"
    assert body["commission_type"] == "percentage"

    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == "inf@example.com"
    assert "Nairobi Jazz Night" in sent_emails[0]["subject"]

    notes = await client.get("/notifications", headers=auth_headers(influencer))
    assert [n["type"] for n in notes.json()] == ["partner_request"]


@pytest.mark.asyncio
async def test_campaign_code_unusable_until_accepted(client, organizer, influencer, auth_headers):
    promo = await _insert_promo(organizer, influencer_id=str(influencer["_id"]), influencer_status="pending",
                                commission_type="fixed", commission_value=50)
    resp = await client.post("/promocodes/validate", json={"code": "jazz10"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "This promocode is not ready yet."

    accepted = await client.post(f"/influencer/campaigns/{promo['_id']}/respond", json={"accept": True},
                                 headers=auth_headers(influencer))
    assert accepted.status_code == 200, accepted.text
    assert accepted.json()["influencer_status"] == "accepted"

    ok = await client.post("/promocodes/validate", json={"code": "jazz10"})
    assert ok.status_code == 200
    assert ok.json() == {"promocode_id": str(promo["_id"]), "code": "JAZZ10",
                         "discount_type": "percentage", "discount_value": 10.0}

    again = await client.post(f"/influencer/campaigns/{promo['_id']}/respond", json={"accept": False},
                              headers=auth_headers(influencer))
    assert again.status_code == 400


@pytest.mark.asyncio
async def test_only_named_influencer_can_respond(client, organizer, influencer, make_user, auth_headers):
    promo = await _insert_promo(organizer, influencer_id=str(influencer["_id"]), influencer_status="pending")
    other = await make_user("influencer", name="OtherStar")
    resp = await client.post(f"/influencer/campaigns/{promo['_id']}/respond", json={"accept": True},
                             headers=auth_headers(other))
    assert resp.status_code == 403


@pytest.mark.asyncio
async def test_validation_rule_order(client, organizer):
    listing_id = str(ObjectId())
    past = datetime.datetime.now(datetime.timezone.utc) - datetime.timedelta(days=1)

    # wrong listing is reported before inactivity
    await _insert_promo(organizer, code="ONLYTHIS", listing_id=listing_id, is_active=False)
    resp = await client.post("/promocodes/validate", json={"code": "ONLYTHIS", "listing_id": str(ObjectId())})
    assert resp.json()["detail"] == "This promocode is not valid for this event."
    resp = await client.post("/promocodes/validate", json={"code": "ONLYTHIS", "listing_id": listing_id})
    assert resp.json()["detail"] == "This promocode is no longer active."

    await _insert_promo(organizer, code="OLD", expires_at=past)
    resp = await client.post("/promocodes/validate", json={"code": "OLD"})
    assert resp.status_code == 400
    assert resp.json()["detail"] == "This promocode has expired."

    await _insert_promo(organizer, code="USEDUP", usage_limit=2, usage_count=2)
    resp = await client.post("/promocodes/validate", json={"code": "USEDUP"})
    assert resp.json()["detail"] == "This promocode has reached its usage limit."

    resp = await client.post("/promocodes/validate", json={"code": "NOPE"})
    assert resp.json()["detail"] == "This promocode is not valid."


@pytest.mark.asyncio
async def test_unlimited_usage_when_limit_zero(client, organizer):
    await _insert_promo(organizer, code="FOREVER", usage_limit=0, usage_count=500)
    resp = await client.post("/promocodes/validate", json={"code": "FOREVER"})
    assert resp.status_code == 200


@pytest.mark.asyncio
async def test_deactivate_promocode(client, organizer, make_user, auth_headers):
    promo = await _insert_promo(organizer)
    other = await make_user("organizer", name="Rival")
    denied = await client.delete(f"/organizer/promocodes/{promo['_id']}", headers=auth_headers(other))
    assert denied.status_code == 403

    resp = await client.delete(f"/organizer/promocodes/{promo['_id']}", headers=auth_headers(organizer))
    assert resp.status_code == 200
    assert resp.json()["is_active"] is False
    assert (await client.post("/promocodes/validate", json={"code": "JAZZ10"})).status_code == 400


@pytest.mark.asyncio
async def test_update_promocode_limit(client, organizer, auth_headers):
    promo = await _insert_promo(organizer)
    resp = await client.patch(f"/organizer/promocodes/{promo['_id']}", json={"usage_limit": 25},
                              headers=auth_headers(organizer))
    assert resp.status_code == 200
    stored = await db_mod.db.promocodes.find_one({"_id": promo["_id"]})
    assert stored["usage_limit"] == 25


@pytest.mark.asyncio
async def test_update_promocode_discount_validated(client, organizer, auth_headers):
    headers = auth_headers(organizer)
    created = await client.post("/organizer/promocodes", json={"code": "HALF", "discount_value": 50}, headers=headers)
    url = f"/organizer/promocodes/{created.json()['id']}"

    too_big = await client.patch(url, json={"discount_value": 250}, headers=headers)
    assert too_big.status_code == 400
    assert too_big.json()["detail"] == "A percentage discount cannot exceed 100."
    negative = await client.patch(url, json={"discount_value": -40}, headers=headers)
    assert negative.status_code == 400
    assert negative.json()["detail"] == "Discount value must be positive."
    stored = await db_mod.db.promocodes.find_one({"code": "HALF"})
    assert stored["discount_value"] == 50.0

    ok = await client.patch(url, json={"discount_value": 30}, headers=headers)
    assert ok.status_code == 200
    assert ok.json()["discount_value"] == 30.0


@pytest.mark.asyncio
async def test_fixed_discount_update_may_exceed_100(client, organizer, auth_headers):
    promo = await _insert_promo(organizer, code="FLAT", discount_type="fixed", discount_value=200.0)
    resp = await client.patch(f"/organizer/promocodes/{promo['_id']}", json={"discount_value": 500},
                              headers=auth_headers(organizer))
    assert resp.status_code == 200
    assert resp.json()["discount_value"] == 500.0


@pytest.mark.asyncio
async def test_campaign_requires_influencer_account(client, organizer, attendee, auth_headers):
    resp = await client.post("/organizer/promocodes", json={
        "code": "FANCODE", "discount_value": 10, "influencer_id": str(attendee["_id"]),
        "commission_type": "fixed", "commission_value": 50,
    }, headers=auth_headers(organizer))
    assert resp.status_code == 400
    assert resp.json()["detail"] == "This user is not an influencer."
    assert await db_mod.db.promocodes.count_documents({"code": "FANCODE"}) == 0


@pytest.mark.asyncio
async def test_organizer_list_includes_influencer_payout(client, organizer, influencer, auth_headers):
    await _insert_promo(organizer, influencer_id=str(influencer["_id"]), influencer_status="accepted",
                        commission_type="fixed", commission_value=100, usage_count=3)
    await _insert_promo(organizer, code="PLAIN")
    resp = await client.get("/organizer/promocodes", headers=auth_headers(organizer))
    assert resp.status_code == 200
    by_code = {p["code"]: p for p in resp.json()}
    assert by_code["JAZZ10"]["influencer_name"] == "StarPromoter"
    assert by_code["JAZZ10"]["influencer_payout"] == 300.0
    assert by_code["PLAIN"]["influencer_name"] == "N/A"


@pytest.mark.asyncio
async def test_user_coupons_skip_spent_codes(client, organizer, attendee, auth_headers):
    uid = str(attendee["_id"])
    await _insert_promo(organizer, code="MINE", user_id=uid)
    await _insert_promo(organizer, code="SPENT", user_id=uid, usage_limit=1, usage_count=1)
    await _insert_promo(organizer, code="OFF", user_id=uid, is_active=False)
    resp = await client.get("/users/me/coupons", headers=auth_headers(attendee))
    assert resp.status_code == 200
    assert [c["code"] for c in resp.json()] == ["MINE"]


@pytest.mark.asyncio
async def test_commission_for():
    assert commission_for({"commission_type": "fixed", "commission_value": 50, "usage_count": 4}) == 200.0
    assert commission_for({"commission_type": "percentage", "commission_value": 10,
                           "revenue_generated": 12345}) == 1234.5
    assert commission_for({"commission_type": "percentage", "commission_value": 0}) == 0.0
    assert commission_for({}) == 0.0
