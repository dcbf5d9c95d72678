from datetime import datetime, timedelta

import httpx

from ticketdesk import config, events
from ticketdesk.models import utcnow
from ticketdesk.registration import Participant
from ticketdesk.security import mint_principal_token

ORG = "org_1"


def event_fields(**overrides) -> dict:
    now = utcnow()
    fields = {
        "name": "Test Event",
        "event_type": "normal",
        "registration_deadline": now + timedelta(days=7),
        "start_date": now + timedelta(days=10),
        "end_date": now + timedelta(days=11),
    }
    fields.update(overrides)
    return fields


def published_event(db, organizer_id=ORG, **overrides):
    event = events.create_event(db, organizer_id, event_fields(**overrides))
    event, _ = events.update_event(db, event.id, organizer_id, {"status": "published"})
    return event


def merch_event(db, stock=2, purchase_limit=1, fee=0, **overrides):
    item = {"size": "M", "color": "black", "stock": stock, "purchase_limit": purchase_limit}
    return published_event(db, event_type="merchandise", registration_fee=fee, merch_items=[item], **overrides)


def participant(n=1, participant_type="iiit") -> Participant:
    return Participant(
        user_id=f"user_{n}",
        name=f"Participant {n}",
        email=f"p{n}@example.com",
        participant_type=participant_type,
    )


def auth(sub: str, role: str, **claims) -> dict:
    token = mint_principal_token(sub, role, config.SECRET, **claims)
    return {"Authorization": f"Bearer {token}"}


def organizer_auth(org_id: str = ORG) -> dict:
    return auth(org_id, "organizer")


def participant_auth(n: int = 1, participant_type: str = "iiit") -> dict:
    return auth(f"user_{n}", "participant", name=f"Participant {n}",
                email=f"p{n}@example.com", participant_type=participant_type)


def _jsonable(fields: dict) -> dict:
    return {k: v.isoformat() if isinstance(v, datetime) else v for k, v in fields.items()}


async def create_event(client: httpx.AsyncClient, org_id: str = ORG, publish: bool = True, **overrides) -> dict:
    r = await client.post("/organizer/events", json=_jsonable(event_fields(**overrides)), headers=organizer_auth(org_id))
    r.raise_for_status()
    event = r.json()
    if publish:
        r = await client.put(f"/organizer/events/{event['event_id']}", json={"status": "published"},
                             headers=organizer_auth(org_id))
        r.raise_for_status()
        event = r.json()
    return event


async def register(client: httpx.AsyncClient, event_id: str, n: int = 1, **body) -> dict:
    r = await client.post(f"/events/{event_id}/register", json=body, headers=participant_auth(n))
    r.raise_for_status()
    return r.json()
