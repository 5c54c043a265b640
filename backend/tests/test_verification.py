import datetime

import pytest
from bson.objectid import ObjectId

from naksyetu import db as db_mod


async def _insert_ticket(listing, status="valid", **extra):
    ticket_id = ObjectId()
    doc = {
        "_id": ticket_id,
        "order_id": str(ObjectId()),
        "user_id": None,
        "user_name": "Jazz Fan",
        "listing_id": str(listing["_id"]),
        "listing_type": "event",
        "ticket_type": "VIP",
        "qr_code": str(ticket_id),
        "status": status,
        "created_at": datetime.datetime.now(datetime.timezone.utc),
    }
    doc.update(extra)
    await db_mod.db.tickets.insert_one(doc)
    return doc


@pytest.fixture
async def gate(organizer, make_user, make_listing):
    event = await make_listing(organizer)
    verifier = await make_user("verifier", name="GateKeeper", assigned_events=[str(event["_id"])])
    return event, verifier


@pytest.mark.asyncio
async def test_scan_valid_ticket(client, gate, auth_headers):
    event, verifier = gate
    ticket = await _insert_ticket(event)
    resp = await client.post("/verify/scan", json={"ticket_id": str(ticket["_id"]), "event_id": str(event["_id"])},
                             headers=auth_headers(verifier))
    assert resp.status_code == 200
    assert resp.json() == {
        "success": True,
        "message": "Ticket successfully validated!",
        "data": {"event_name": "Nairobi Jazz Night", "attendee_name": "Jazz Fan", "ticket_type": "VIP"},
    }
    stored = await db_mod.db.tickets.find_one({"_id": ticket["_id"]})
    assert stored["status"] == "used"
    assert stored["validated_by"] == str(verifier["_id"])

    history = await client.get("/verify/history", headers=auth_headers(verifier))
    assert [h["status"] for h in history.json()] == ["success"]


@pytest.mark.asyncio
async def test_second_scan_reports_used(client, gate, auth_headers):
    event, verifier = gate
    ticket = await _insert_ticket(event)
    payload = {"ticket_id": ticket["qr_code"], "event_id": str(event["_id"])}
    await client.post("/verify/scan", json=payload, headers=auth_headers(verifier))
    again = await client.post("/verify/scan", json=payload, headers=auth_headers(verifier))
    assert again.status_code == 200
    assert again.json()["success"] is False
    assert again.json()["message"].startswith("This ticket has already been used at ")

    statuses = [h["status"] for h in (await client.get("/verify/history", headers=auth_headers(verifier))).json()]
    assert sorted(statuses) == ["error", "success"]


@pytest.mark.asyncio
async def test_ticket_for_other_event(client, organizer, gate, make_listing, auth_headers):
    event, verifier = gate
    other = await make_listing(organizer, name="Comedy Store")
    ticket = await _insert_ticket(other)
    resp = await client.post("/verify/scan", json={"ticket_id": ticket["qr_code"], "event_id": str(event["_id"])},
                             headers=auth_headers(verifier))
    assert resp.json() == {"success": False, "message": 'This ticket is for "Comedy Store", not the current event.'}


@pytest.mark.asyncio
async def test_unassigned_verifier_denied(client, organizer, make_user, make_listing, auth_headers):
    event = await make_listing(organizer)
    verifier = await make_user("verifier", name="Stranger")
    ticket = await _insert_ticket(event)
    resp = await client.post("/verify/scan", json={"ticket_id": ticket["qr_code"], "event_id": str(event["_id"])},
                             headers=auth_headers(verifier))
    assert resp.json()["success"] is False
    assert resp.json()["message"].startswith("Permission Denied.")
    stored = await db_mod.db.tickets.find_one({"_id": ticket["_id"]})
    assert stored["status"] == "valid"


@pytest.mark.asyncio
async def test_organizer_may_verify_without_assignment(client, organizer, make_listing, auth_headers):
    event = await make_listing(organizer)
    ticket = await _insert_ticket(event)
    resp = await client.post("/verify/scan", json={"ticket_id": ticket["qr_code"], "event_id": str(event["_id"])},
                             headers=auth_headers(organizer))
    assert resp.json()["success"] is True


@pytest.mark.asyncio
async def test_missing_and_unknown_tickets(client, gate, auth_headers):
    event, verifier = gate
    missing = await client.post("/verify/scan", json={"ticket_id": "  ", "event_id": str(event["_id"])},
                                headers=auth_headers(verifier))
    assert missing.json() == {"success": False, "message": "Invalid QR Code. Ticket ID is missing."}
    unknown = await client.post("/verify/scan", json={"ticket_id": "bogus", "event_id": str(event["_id"])},
                                headers=auth_headers(verifier))
    assert unknown.json() == {"success": False, "message": "Ticket not found. This QR code is invalid."}


@pytest.mark.asyncio
async def test_cancelled_ticket(client, gate, auth_headers):
    event, verifier = gate
    ticket = await _insert_ticket(event, status="cancelled")
    resp = await client.post("/verify/scan", json={"ticket_id": ticket["qr_code"], "event_id": str(event["_id"])},
                             headers=auth_headers(verifier))
    assert resp.json() == {"success": False, "message": "This ticket status is: cancelled."}


@pytest.mark.asyncio
async def test_assigned_events(client, gate, auth_headers):
    event, verifier = gate
    resp = await client.get("/verify/assigned-events", headers=auth_headers(verifier))
    assert resp.status_code == 200
    assert [e["id"] for e in resp.json()] == [str(event["_id"])]


@pytest.mark.asyncio
async def test_assign_verifier_by_username(client, organizer, make_user, make_listing, auth_headers):
    event = await make_listing(organizer)
    verifier = await make_user("verifier", name="DoorCrew")
    headers = auth_headers(organizer)
    resp = await client.post("/organizer/verifiers", json={"username": "doorcrew", "event_id": str(event["_id"])},
                             headers=headers)
    assert resp.status_code == 200, resp.text
    stored = await db_mod.db.users.find_one({"_id": verifier["_id"]})
    assert stored["assigned_events"] == [str(event["_id"])]

    duplicate = await client.post("/organizer/verifiers", json={"username": "DoorCrew", "event_id": str(event["_id"])},
                                  headers=headers)
    assert duplicate.status_code == 400


@pytest.mark.asyncio
async def test_assign_verifier_rules(client, organizer, attendee, make_user, make_listing, auth_headers):
    event = await make_listing(organizer)
    headers = auth_headers(organizer)
    not_verifier = await client.post("/organizer/verifiers", json={"username": "JazzFan", "event_id": str(event["_id"])},
                                     headers=headers)
    assert not_verifier.status_code == 400

    rival = await make_user("organizer", name="Rival")
    await make_user("verifier", name="DoorCrew")
    foreign = await client.post("/organizer/verifiers", json={"username": "DoorCrew", "event_id": str(event["_id"])},
                                headers=auth_headers(rival))
    assert foreign.status_code == 403
