import datetime

import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod
from naksyetu.services import payouts


async def _completed_order(organizer, total, processing_fee=0.0):
    await db_mod.db.orders.insert_one({
        "organizer_id": str(organizer["_id"]),
        "status": "completed",
        "total": total,
        "processing_fee": processing_fee,
        "created_at": datetime.datetime.now(datetime.timezone.utc),
    })


async def _campaign(organizer, influencer, **extra):
    doc = {
        "organizer_id": str(organizer["_id"]),
        "influencer_id": str(influencer["_id"]),
        "influencer_status": "accepted",
        "code": extra.pop("code", "STAR"),
        "listing_name": "Nairobi Jazz Night",
        "commission_type": "fixed",
        "commission_value": 100.0,
        "usage_count": 5,
        "revenue_generated": 5000.0,
        "is_active": True,
        **extra,
    }
    await db_mod.db.promocodes.insert_one(doc)
    return doc


@pytest.mark.asyncio
async def test_organizer_stats_arithmetic(client, organizer, influencer, auth_headers):
    await _completed_order(organizer, 10000.0, processing_fee=250.0)
    await _campaign(organizer, influencer)
    await db_mod.db.payout_requests.insert_one({
        "user_id": str(organizer["_id"]), "status": "pending", "amount_requested": 1000.0,
    })

    resp = await client.get("/organizer/payouts/stats", headers=auth_headers(organizer))
    assert resp.status_code == 200, resp.text
    stats = resp.json()
    assert stats["total_revenue"] == 10000.0
    assert stats["platform_fee"] == 500.0
    assert stats["influencer_payouts"] == 500.0
    assert stats["processing_fee"] == 0.0
    assert stats["net_revenue"] == 9000.0
    assert stats["pending_amount"] == 1000.0
    assert stats["available_for_payout"] == 8000.0
    assert [line["source_id"] for line in stats["earnings_audit"]] == [
        "total_revenue", "platform_fee", "influencer_payouts",
    ]


@pytest.mark.asyncio
async def test_organizer_pays_processing(client, organizer, auth_headers):
    await db_mod.db.config.insert_one({"_id": "site_settings", "processing_fee_payer": "organizer"})
    await _completed_order(organizer, 10000.0, processing_fee=250.0)
    stats = (await client.get("/organizer/payouts/stats", headers=auth_headers(organizer))).json()
    assert stats["processing_fee"] == 250.0
    assert stats["net_revenue"] == 9250.0
    assert stats["earnings_audit"][-1]["source_id"] == "processing_fee"


@pytest.mark.asyncio
async def test_influencer_stats(client, organizer, influencer, auth_headers):
    promo = await _campaign(organizer, influencer)
    await _campaign(organizer, influencer, code="PCT", commission_type="percentage", commission_value=10.0,
                    usage_count=2, revenue_generated=3000.0)
    await db_mod.db.promocode_clicks.insert_one({"promocode_id": str(promo["_id"])})

    resp = await client.get("/influencer/stats", headers=auth_headers(influencer))
    assert resp.status_code == 200
    stats = resp.json()
    assert stats["total_earnings"] == 800.0
    assert stats["tickets_sold"] == 7
    assert stats["total_clicks"] == 1
    assert stats["available_for_payout"] == 800.0
    assert sorted(line["amount"] for line in stats["earnings_audit"]) == [300.0, 500.0]


@pytest.mark.asyncio
async def test_organizer_payout_request(client, organizer, auth_headers):
    await _completed_order(organizer, 10000.0)
    headers = auth_headers(organizer)
    resp = await client.post("/organizer/payouts/request", json={"amount": 4000}, headers=headers)
    assert resp.status_code == 201, resp.text
    body = resp.json()
    assert body["status"] == "pending"
    assert body["amount_requested"] == 4000.0
    assert body["payout_details"] == {"full_name": "Jazz Co", "mpesa_number": "+254712345678"}

    stats = (await client.get("/organizer/payouts/stats", headers=headers)).json()
    assert stats["available_for_payout"] == 5500.0

    too_much = await client.post("/organizer/payouts/request", json={"amount": 6000}, headers=headers)
    assert too_much.status_code == 400
    assert too_much.json()["detail"] == "Requested amount exceeds available balance of Ksh 5500.00."

    history = await client.get("/organizer/payouts/history", headers=headers)
    assert len(history.json()) == 1

    note = await db_mod.db.notifications.find_one({"type": "payout_request"})
    assert sorted(note["target_roles"]) == ["admin", "super-admin"]


@pytest.mark.asyncio
async def test_payout_requires_complete_profile(client, make_user, auth_headers):
    organizer = await make_user("organizer", name="NoPhone", organizer_name="Org")
    resp = await client.post("/organizer/payouts/request", json={"amount": 10}, headers=auth_headers(organizer))
    assert resp.status_code == 400
    assert "organizer name and M-Pesa phone number" in resp.json()["detail"]

    influencer = await make_user("influencer", name="NoName", phone="+254722000999")
    resp = await client.post("/influencer/payouts/request", json={"amount": 10}, headers=auth_headers(influencer))
    assert resp.status_code == 400
    assert "full name and M-Pesa phone number" in resp.json()["detail"]


@pytest.mark.asyncio
async def test_payout_amount_must_be_positive(client, organizer, auth_headers):
    resp = await client.post("/organizer/payouts/request", json={"amount": 0}, headers=auth_headers(organizer))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_payout_idempotency_key(client, organizer, auth_headers):
    await _completed_order(organizer, 10000.0)
    headers = {**auth_headers(organizer), "Idempotency-Key": "payout-123"}
    first = await client.post("/organizer/payouts/request", json={"amount": 1000}, headers=headers)
    second = await client.post("/organizer/payouts/request", json={"amount": 1000}, headers=headers)
    assert first.status_code == second.status_code == 201
    assert first.json()["id"] == second.json()["id"]
    assert await db_mod.db.payout_requests.count_documents({"user_id": str(organizer["_id"])}) == 1


@pytest.mark.asyncio
async def test_idempotency_keys_are_per_user(client, organizer, make_user, auth_headers):
    other = await make_user("organizer", email="org2@example.com", name="SecondOrganizer",
                            organizer_name="Comedy Co", phone="+254711000222")
    await _completed_order(organizer, 10000.0)
    await _completed_order(other, 10000.0)

    first = await client.post("/organizer/payouts/request", json={"amount": 1000},
                              headers={**auth_headers(organizer), "Idempotency-Key": "k1"})
    second = await client.post("/organizer/payouts/request", json={"amount": 2000},
                               headers={**auth_headers(other), "Idempotency-Key": "k1"})
    assert first.status_code == 201, first.text
    assert second.status_code == 201, second.text
    assert first.json()["id"] != second.json()["id"]
    assert second.json()["amount_requested"] == 2000.0
    assert await db_mod.db.payout_requests.count_documents({"idempotency_key": "k1"}) == 2


@pytest.mark.asyncio
async def test_concurrent_duplicate_key_returns_first_request(organizer, monkeypatch):
    await _completed_order(organizer, 10000.0)
    real_stats = payouts.organizer_stats

    async def _stats_with_competing_insert(user_id):
        # another request with the same key lands between the lookup and the insert
        await db_mod.db.payout_requests.insert_one({
            "user_id": user_id, "idempotency_key": "race", "status": "pending", "amount_requested": 700.0,
        })
        return await real_stats(user_id)

    monkeypatch.setattr(payouts, "organizer_stats", _stats_with_competing_insert)
    result = await payouts.request_payout(organizer, "organizer", 700, idempotency_key="race")
    assert result["amount_requested"] == 700.0
    assert await db_mod.db.payout_requests.count_documents({"idempotency_key": "race"}) == 1


@pytest.mark.asyncio
async def test_influencer_payout_request(client, organizer, influencer, auth_headers):
    await _campaign(organizer, influencer)
    resp = await client.post("/influencer/payouts/request", json={"amount": 500}, headers=auth_headers(influencer))
    assert resp.status_code == 201, resp.text
    assert resp.json()["payout_details"]["full_name"] == "Star Promoter"
    assert resp.json()["user_role"] == "influencer"

    # wrong console
    denied = await client.post("/organizer/payouts/request", json={"amount": 1}, headers=auth_headers(influencer))
    assert denied.status_code == 403


async def _pending_request(user, amount=1000.0, role="organizer"):
    doc = {
        "user_id": str(user["_id"]),
        "user_role": role,
        "amount_requested": amount,
        "status": "pending",
        "requested_at": datetime.datetime.now(datetime.timezone.utc),
    }
    await db_mod.db.payout_requests.insert_one(doc)
    return doc


@pytest.mark.asyncio
async def test_partial_acceptance_bounds(client, organizer, super_admin, auth_headers, sent_emails):
    request = await _pending_request(organizer)
    url = f"/admin/payouts/{request['_id']}"
    headers = auth_headers(super_admin)

    missing = await client.patch(url, json={"status": "partially_accepted"}, headers=headers)
    assert missing.status_code == 400
    over = await client.patch(url, json={"status": "partially_accepted", "amount_disbursed": 1500}, headers=headers)
    assert over.status_code == 400
    zero = await client.patch(url, json={"status": "partially_accepted", "amount_disbursed": 0}, headers=headers)
    assert zero.status_code == 400

    ok = await client.patch(url, json={"status": "partially_accepted", "amount_disbursed": 600}, headers=headers)
    assert ok.status_code == 200, ok.text
    assert ok.json()["status"] == "partially_accepted"
    assert ok.json()["amount_disbursed"] == 600.0

    assert len(sent_emails) == 1
    assert sent_emails[0]["to"] == "org@example.com"
    log = await db_mod.db.audit_logs.find_one({"action": "update_payout_status"})
    assert log["details"]["amount_disbursed"] == 600.0


@pytest.mark.asyncio
async def test_only_pending_requests_can_be_decided(client, organizer, super_admin, auth_headers):
    request = await _pending_request(organizer)
    url = f"/admin/payouts/{request['_id']}"
    headers = auth_headers(super_admin)
    rejected = await client.patch(url, json={"status": "rejected"}, headers=headers)
    assert rejected.status_code == 200
    assert rejected.json()["rejection_reason"] == "No reason provided."
    assert rejected.json()["amount_disbursed"] == 0.0

    again = await client.patch(url, json={"status": "accepted"}, headers=headers)
    assert again.status_code == 400
    back_to_pending = await client.patch(url, json={"status": "pending"}, headers=headers)
    assert back_to_pending.status_code == 400


@pytest.mark.asyncio
async def test_accept_disburses_full_amount(client, organizer, super_admin, auth_headers):
    request = await _pending_request(organizer, amount=750.0)
    resp = await client.patch(f"/admin/payouts/{request['_id']}", json={"status": "ACCEPTED"},
                              headers=auth_headers(super_admin))
    assert resp.status_code == 200
    assert resp.json()["amount_disbursed"] == 750.0

    note = await db_mod.db.notifications.find_one({"type": "payout_update"})
    assert note["target_users"] == [str(organizer["_id"])]


@pytest.mark.asyncio
async def test_admin_cannot_decide_payouts(client, organizer, admin, auth_headers):
    request = await _pending_request(organizer)
    resp = await client.patch(f"/admin/payouts/{request['_id']}", json={"status": "accepted"},
                              headers=auth_headers(admin))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Super-admin required"

    listed = await client.get("/admin/payouts", headers=auth_headers(admin))
    assert listed.status_code == 200
    assert listed.json()[0]["user_name"] == "TheOrganizer"


@pytest.mark.asyncio
async def test_unknown_payout_request(client, super_admin, auth_headers):
    resp = await client.patch(f"/admin/payouts/{ObjectId()}", json={"status": "accepted"},
                              headers=auth_headers(super_admin))
    assert resp.status_code == 404
