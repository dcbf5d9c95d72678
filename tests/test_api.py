import asyncio

import pytest

from ticketdesk import config
from ticketdesk.security import mint_principal_token
from tests.helpers import ORG, create_event, organizer_auth, participant_auth, register

pytestmark = pytest.mark.asyncio


async def scan(client, event_id, org_id=ORG, headers=None, **body):
    r = await client.post(f"/organizer/events/{event_id}/scan", json=body,
                          headers={**organizer_auth(org_id), **(headers or {})})
    r.raise_for_status()
    return r.json()


async def test_register_then_scan_qr(client):
    event = await create_event(client, registration_limit=10)
    data = await register(client, event["event_id"], form_responses={"tshirt": "L"})
    assert data["status"] == "REGISTERED"
    ticket = data["ticket"]
    assert data["registration"]["ticket_id"] == ticket["ticket_id"]

    r1 = await scan(client, event["event_id"], qr_token=ticket["qr_token"])
    assert r1["status"] == "ACCEPTED"
    assert r1["reason_code"] == "SUCCESS"
    assert r1["participant"]["name"] == "Participant 1"

    r2 = await scan(client, event["event_id"], ticket_id=ticket["ticket_id"])
    assert r2["status"] == "REJECTED"
    assert r2["reason_code"] == "DUPLICATE_SCAN"


async def test_rejections_are_plain_responses(client):
    event = await create_event(client, registration_limit=1)
    await register(client, event["event_id"], n=1)

    again = await register(client, event["event_id"], n=1)
    assert again["status"] == "REJECTED"
    assert again["reason_code"] == "ALREADY_REGISTERED"

    full = await register(client, event["event_id"], n=2)
    assert full["reason_code"] == "CAPACITY_FULL"


async def test_draft_event_is_closed(client):
    event = await create_event(client, publish=False)
    data = await register(client, event["event_id"])
    assert data["reason_code"] == "REGISTRATION_CLOSED"


async def test_forged_and_missing_tickets(client):
    event = await create_event(client)
    forged = mint_principal_token("x", "participant", "not_the_secret")
    r = await scan(client, event["event_id"], qr_token=forged)
    assert r["reason_code"] == "INVALID_TOKEN"

    r = await scan(client, event["event_id"])
    assert r["reason_code"] == "MISSING_TICKET"

    r = await scan(client, event["event_id"], ticket_id="TKT-DEADBEEF")
    assert r["reason_code"] == "INVALID_TICKET"


async def test_scan_idempotency_returns_cached_response(client):
    event = await create_event(client)
    ticket = (await register(client, event["event_id"]))["ticket"]
    headers = {"Idempotency-Key": "gate-1-scan-42"}

    first = await scan(client, event["event_id"], headers=headers, ticket_id=ticket["ticket_id"])
    second = await scan(client, event["event_id"], headers=headers, ticket_id=ticket["ticket_id"])
    assert first["status"] == "ACCEPTED"
    assert second == first


async def test_idempotency_key_is_scoped_to_the_event(client):
    a = await create_event(client, name="A")
    b = await create_event(client, name="B")
    ticket_a = (await register(client, a["event_id"]))["ticket"]
    ticket_b = (await register(client, b["event_id"]))["ticket"]
    headers = {"Idempotency-Key": "gate-1-scan-1"}

    first = await scan(client, a["event_id"], headers=headers, ticket_id=ticket_a["ticket_id"])
    other = await scan(client, b["event_id"], headers=headers, ticket_id=ticket_b["ticket_id"])
    assert first["ticket_id"] == ticket_a["ticket_id"]
    assert other["status"] == "ACCEPTED"
    assert other["ticket_id"] == ticket_b["ticket_id"]
    assert other["decision_id"] != first["decision_id"]


async def test_scan_rate_limit(client, monkeypatch):
    monkeypatch.setattr("ticketdesk.organizer.SCAN_RATE_LIMIT_PER_MIN", 2)
    event = await create_event(client)

    results = [await scan(client, event["event_id"], ticket_id=f"TKT-{i:08d}") for i in range(3)]
    assert [r["reason_code"] for r in results] == ["INVALID_TICKET", "INVALID_TICKET", "RATE_LIMITED"]


async def test_concurrent_scans_accept_once(client):
    event = await create_event(client)
    ticket = (await register(client, event["event_id"]))["ticket"]

    results = await asyncio.gather(*[
        scan(client, event["event_id"], ticket_id=ticket["ticket_id"]) for _ in range(5)
    ])
    assert [r["status"] for r in results].count("ACCEPTED") == 1
    assert {r["reason_code"] for r in results} == {"SUCCESS", "DUPLICATE_SCAN"}


async def test_registration_queues_confirmation_email(client, redis):
    event = await create_event(client)
    await register(client, event["event_id"])

    entries = await redis.xrange(config.NOTIFICATION_STREAM)
    assert len(entries) == 1
    _, fields = entries[0]
    assert fields["kind"] == "email"
    assert fields["target"] == "p1@example.com"
    assert "data:image/png;base64," in fields["body"]


async def test_publish_posts_to_discord_webhook(client, redis):
    r = await client.put("/organizer/profile", json={"discord_webhook": "https://discord.example/hook"},
                         headers=organizer_auth())
    assert r.status_code == 200
    await create_event(client, name="Hackathon")

    entries = await redis.xrange(config.NOTIFICATION_STREAM)
    assert [fields["kind"] for _, fields in entries] == ["webhook"]
    assert "Hackathon" in entries[0][1]["payload"]


async def test_profile_webhook_must_be_a_url(client):
    r = await client.put("/organizer/profile", json={"discord_webhook": "http://[::1"}, headers=organizer_auth())
    assert r.status_code == 422

    r = await client.put("/organizer/profile", json={"discord_webhook": "https://discord.example/hook"},
                         headers=organizer_auth())
    assert r.json()["discord_webhook"] == "https://discord.example/hook"

    r = await client.put("/organizer/profile", json={"discord_webhook": ""}, headers=organizer_auth())
    assert r.json()["discord_webhook"] is None


async def test_gated_update_names_the_field(client):
    event = await create_event(client)
    r = await client.put(f"/organizer/events/{event['event_id']}", json={"event_type": "merchandise"},
                         headers=organizer_auth())
    assert r.status_code == 400
    assert r.json()["field"] == "event_type"

    r = await client.put(f"/organizer/events/{event['event_id']}", json={"venue": "Hall"},
                         headers=organizer_auth())
    assert r.status_code == 400
    assert r.json()["field"] == "venue"


async def test_other_organizers_see_nothing(client):
    event = await create_event(client)
    other = organizer_auth("org_2")
    assert (await client.get(f"/organizer/events/{event['event_id']}", headers=other)).status_code == 404
    r = await client.post(f"/organizer/events/{event['event_id']}/scan", json={"ticket_id": "x"}, headers=other)
    assert r.status_code == 404


async def test_auth_is_required(client):
    event = await create_event(client)
    r = await client.post(f"/events/{event['event_id']}/register", json={})
    assert r.status_code == 401

    r = await client.post(f"/events/{event['event_id']}/register", json={},
                          headers={"Authorization": "Bearer not-a-token"})
    assert r.status_code == 401

    expired = mint_principal_token("user_1", "participant", config.SECRET, ttl_minutes=-5)
    r = await client.get("/tickets/user/my", headers={"Authorization": f"Bearer {expired}"})
    assert r.status_code == 401
    assert r.json()["detail"] == "EXPIRED"

    r = await client.post("/organizer/events", json={}, headers=participant_auth())
    assert r.status_code == 403
    r = await client.post(f"/events/{event['event_id']}/register", json={}, headers=organizer_auth())
    assert r.status_code == 403


async def test_tickets_are_private(client):
    event = await create_event(client)
    ticket = (await register(client, event["event_id"]))["ticket"]

    mine = await client.get(f"/tickets/{ticket['ticket_id']}", headers=participant_auth(1))
    assert mine.status_code == 200
    assert mine.json()["qr_code"].startswith("data:image/png;base64,")

    theirs = await client.get(f"/tickets/{ticket['ticket_id']}", headers=participant_auth(2))
    assert theirs.status_code == 403

    listed = (await client.get("/tickets/user/my", headers=participant_auth(1))).json()
    assert [t["ticket_id"] for t in listed] == [ticket["ticket_id"]]


async def test_merch_order_approval_flow(client):
    event = await create_event(
        client,
        event_type="merchandise",
        registration_fee=499,
        merch_items=[{"size": "L", "color": "white", "stock": 3, "purchase_limit": 2}],
    )
    variant_id = event["merch_items"][0]["variant_id"]

    order = await register(client, event["event_id"], merch_selection={"variant_id": variant_id, "quantity": 2})
    assert order["status"] == "REGISTERED"
    assert order["ticket"] is None
    reg_id = order["registration"]["registration_id"]
    assert order["registration"]["payment_status"] == "pending"

    pending = (await client.get(f"/organizer/events/{event['event_id']}/payments", headers=organizer_auth())).json()
    assert [o["registration_id"] for o in pending] == [reg_id]

    r = await client.put(f"/organizer/payments/{reg_id}/approve", json={"note": "UPI ref 123"},
                         headers=organizer_auth())
    assert r.status_code == 200
    approved = r.json()
    assert approved["registration"]["payment_status"] == "approved"
    assert approved["ticket"]["ticket_id"]

    r = await client.put(f"/organizer/payments/{reg_id}/reject", json={}, headers=organizer_auth())
    assert r.status_code == 409

    detail = (await client.get(f"/organizer/events/{event['event_id']}", headers=organizer_auth())).json()
    assert detail["analytics"]["total_registrations"] == 1
    assert detail["analytics"]["revenue"] == 499
    assert detail["event"]["merch_items"][0]["stock"] == 1


async def test_cancel_and_attendance_export(client):
    event = await create_event(client)
    kept = await register(client, event["event_id"], n=1)
    dropped = await register(client, event["event_id"], n=2)

    r = await client.post(f"/registrations/{dropped['registration']['registration_id']}/cancel",
                          headers=participant_auth(1))
    assert r.status_code == 404
    r = await client.post(f"/registrations/{dropped['registration']['registration_id']}/cancel",
                          headers=participant_auth(2))
    assert r.json()["status"] == "cancelled"

    r = await client.put(f"/organizer/events/{event['event_id']}/manual-attendance",
                         json={"registration_id": kept["registration"]["registration_id"], "action": "mark"},
                         headers=organizer_auth())
    assert r.json()["registration"]["status"] == "attended"

    summary = (await client.get(f"/organizer/events/{event['event_id']}/attendance", headers=organizer_auth())).json()
    assert summary["total"] == 1
    assert summary["scanned_count"] == 1

    r = await client.get(f"/organizer/events/{event['event_id']}/attendance/export", headers=organizer_auth())
    assert r.headers["content-type"].startswith("text/csv")
    assert '"p2@example.com","","cancelled","Not scanned"' in r.text


async def test_health(client):
    r = await client.get("/health")
    assert r.json() == {"status": "ok"}
