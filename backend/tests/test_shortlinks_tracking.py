import json
from http.cookies import SimpleCookie

import pytest
from fastapi import HTTPException

from naksyetu import db as db_mod
from naksyetu.services import shortlinks


async def _insert_promo(organizer, influencer=None, code="JAZZ10"):
    doc = {
        "organizer_id": str(organizer["_id"]),
        "code": code,
        "discount_type": "percentage",
        "discount_value": 10.0,
        "usage_limit": 0,
        "usage_count": 0,
        "revenue_generated": 0.0,
        "listing_type": "event",
        "listing_id": None,
        "listing_name": "Nairobi Jazz Night",
        "is_active": True,
    }
    if influencer:
        doc.update({"influencer_id": str(influencer["_id"]), "influencer_status": "accepted",
                    "commission_type": "fixed", "commission_value": 50.0})
    await db_mod.db.promocodes.insert_one(doc)
    return doc


@pytest.mark.asyncio
async def test_organizer_tracking_link(client, organizer, make_listing, auth_headers):
    listing = await make_listing(organizer)
    resp = await client.post("/organizer/tracking-links",
                             json={"name": "Instagram bio", "listing_id": str(listing["_id"]), "listing_type": "event"},
                             headers=auth_headers(organizer))
    assert resp.status_code == 201, resp.text
    link = resp.json()
    assert link["clicks"] == 0
    assert link["purchases"] == 0
    assert link["promocode_id"] is None
    assert link["long_url"] == f"/events/{listing['_id']}?linkId={link['id']}"
    assert link["short_url"] == f"https://naksyetu.test/l/{link['short_id']}"
    assert len(link["short_id"]) == 6

    listed = await client.get("/organizer/tracking-links", headers=auth_headers(organizer))
    assert [item["id"] for item in listed.json()] == [link["id"]]


@pytest.mark.asyncio
async def test_tracking_link_requires_name(client, organizer, auth_headers):
    resp = await client.post("/organizer/tracking-links", json={"listing_id": "all"}, headers=auth_headers(organizer))
    assert resp.status_code == 400


@pytest.mark.asyncio
async def test_influencer_link_for_campaign(client, organizer, influencer, auth_headers):
    promo = await _insert_promo(organizer, influencer)
    resp = await client.post(f"/promocodes/{promo['_id']}/tracking-links", json={"name": "TikTok"},
                             headers=auth_headers(influencer))
    assert resp.status_code == 201, resp.text
    link = resp.json()
    assert link["promocode_id"] == str(promo["_id"])
    assert link["listing_id"] == "all"
    assert link["long_url"] == f"/events?linkId={link['id']}&coupon=JAZZ10"

    mine = await client.get("/influencer/tracking-links", headers=auth_headers(influencer))
    assert len(mine.json()) == 1
    per_code = await client.get(f"/promocodes/{promo['_id']}/tracking-links", headers=auth_headers(organizer))
    assert len(per_code.json()) == 1


@pytest.mark.asyncio
async def test_stranger_cannot_link_campaign(client, organizer, influencer, attendee, auth_headers):
    promo = await _insert_promo(organizer, influencer)
    resp = await client.post(f"/promocodes/{promo['_id']}/tracking-links", json={"name": "Spam"},
                             headers=auth_headers(attendee))
    assert resp.status_code == 403
    assert resp.json()["detail"] == "Permission denied."


@pytest.mark.asyncio
async def test_redirect_counts_click_and_sets_tracker(client, organizer, influencer, auth_headers):
    promo = await _insert_promo(organizer, influencer)
    created = await client.post(f"/promocodes/{promo['_id']}/tracking-links", json={"name": "TikTok"},
                                headers=auth_headers(influencer))
    link = created.json()

    resp = await client.get(f"/l/{link['short_id']}")
    assert resp.status_code == 307
    assert resp.headers["location"] == f"https://naksyetu.test/events?linkId={link['id']}&coupon=JAZZ10"
    tracker = json.loads(SimpleCookie(resp.headers["set-cookie"])["nak_tracker"].value)
    assert tracker == {"tracking_link_id": link["id"], "promocode_id": str(promo["_id"])}

    stored = await db_mod.db.tracking_links.find_one({"short_id": link["short_id"]})
    assert stored["clicks"] == 1
    assert await db_mod.db.promocode_clicks.count_documents({"promocode_id": str(promo["_id"])}) == 1


@pytest.mark.asyncio
async def test_unknown_short_id_redirects_to_not_found(client):
    resp = await client.get("/l/zzzzzz")
    assert resp.status_code == 307
    assert resp.headers["location"] == "https://naksyetu.test/not-found"


@pytest.mark.asyncio
async def test_short_id_collision_retries(monkeypatch):
    await db_mod.db.short_links.insert_one({"_id": "aaaaaa", "long_url": "/taken"})
    ids = iter(["aaaaaa", "bbbbbb"])
    monkeypatch.setattr(shortlinks, "generate_short_id", lambda length=None: next(ids))

    short_id = await shortlinks.create_short_link("/events")
    assert short_id == "bbbbbb"
    stored = await db_mod.db.short_links.find_one({"_id": "bbbbbb"})
    assert stored["long_url"] == "/events"


@pytest.mark.asyncio
async def test_short_id_exhaustion_is_503(monkeypatch):
    await db_mod.db.short_links.insert_one({"_id": "aaaaaa", "long_url": "/taken"})
    monkeypatch.setattr(shortlinks, "generate_short_id", lambda length=None: "aaaaaa")

    with pytest.raises(HTTPException) as excinfo:
        await shortlinks.create_short_link("/events")
    assert excinfo.value.status_code == 503


@pytest.mark.asyncio
async def test_generate_short_id_alphabet():
    short_id = shortlinks.generate_short_id(12)
    assert len(short_id) == 12
    assert set(short_id) <= set(shortlinks.SHORT_ID_ALPHABET)


@pytest.mark.asyncio
async def test_absolute_url():
    assert shortlinks.absolute_url("https://example.com/x") == "https://example.com/x"
    assert shortlinks.absolute_url("/events/1") == "https://naksyetu.test/events/1"
