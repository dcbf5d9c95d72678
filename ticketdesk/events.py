"""Event records, lifecycle transitions and state-gated edits."""
import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import notify
from .errors import EventValidationError, NotFound
from .models import (
  ELIGIBILITIES, EVENT_STATUSES, EVENT_TYPES, Event, MerchVariant, Organizer, as_utc,
)

logger = logging.getLogger(__name__)

EDITABLE_FIELDS = (
  "name", "description", "event_type", "eligibility",
  "registration_deadline", "start_date", "end_date",
  "registration_limit", "registration_fee", "tags",
  "custom_form", "merch_items", "status",
)

# Which fields an update may carry, per lifecycle state. Fields listed under
# "published" with extra rules are checked in _check_published.
EDIT_PERMISSIONS = {
  "draft": set(EDITABLE_FIELDS),
  "published": {"description", "status", "registration_deadline", "registration_limit"},
  "ongoing": {"status"},
  "completed": {"status"},
  "closed": set(),
}

TRANSITIONS = {
  "draft": {"published"},
  "published": {"ongoing", "closed"},
  "ongoing": {"completed", "closed"},
  "completed": set(),
  "closed": set(),
}

DATE_FIELDS = ("registration_deadline", "start_date", "end_date")


def get_organizer(db: Session, organizer_id: str, name: Optional[str] = None) -> Organizer:
    org = db.get(Organizer, organizer_id)
    if org is None:
        org = Organizer(id=organizer_id, name=name or organizer_id)
        db.add(org)
        db.flush()
    return org


def update_organizer(db: Session, organizer_id: str, name: Optional[str] = None,
                     discord_webhook: Optional[str] = None) -> Organizer:
    org = get_organizer(db, organizer_id, name)
    if name:
        org.name = name
    if discord_webhook is not None:
        org.discord_webhook = discord_webhook or None
    db.commit()
    return org


def get_event(db: Session, event_id: str) -> Event:
    event = db.get(Event, event_id)
    if event is None:
        raise NotFound("event")
    return event


def get_owned_event(db: Session, event_id: str, organizer_id: str) -> Event:
    event = db.get(Event, event_id)
    # same answer for "missing" and "someone else's"
    if event is None or event.organizer_id != organizer_id:
        raise NotFound("event")
    return event


def list_organizer_events(db: Session, organizer_id: str) -> list:
    return db.execute(
        select(Event).where(Event.organizer_id == organizer_id).order_by(Event.created_at.desc())
    ).scalars().all()


def _check_choice(field: str, value, choices):
    if value not in choices:
        raise EventValidationError(field, f"must be one of {', '.join(choices)}")


def _check_non_negative(field: str, value):
    if not isinstance(value, int) or value < 0:
        raise EventValidationError(field, "must be a non-negative integer")


def _build_variants(items: list) -> list:
    variants = []
    for i, item in enumerate(items or []):
        stock = item.get("stock", 0)
        purchase_limit = item.get("purchase_limit", 1)
        if not isinstance(stock, int) or stock < 0:
            raise EventValidationError("merch_items", f"variant {i}: stock must be >= 0")
        if not isinstance(purchase_limit, int) or purchase_limit < 1:
            raise EventValidationError("merch_items", f"variant {i}: purchase_limit must be >= 1")
        variants.append(MerchVariant(
            position=i,
            size=item.get("size"),
            color=item.get("color"),
            stock=stock,
            purchase_limit=purchase_limit,
        ))
    return variants


def _validate_values(fields: dict):
    if "event_type" in fields:
        _check_choice("event_type", fields["event_type"], EVENT_TYPES)
    if "eligibility" in fields:
        _check_choice("eligibility", fields["eligibility"], ELIGIBILITIES)
    if "status" in fields:
        _check_choice("status", fields["status"], EVENT_STATUSES)
    for f in ("registration_limit", "registration_fee"):
        if f in fields:
            _check_non_negative(f, fields[f])
    if "name" in fields and not (fields["name"] or "").strip():
        raise EventValidationError("name", "must not be empty")
    for f in DATE_FIELDS:
        if f in fields and not isinstance(fields[f], datetime):
            raise EventValidationError(f, "must be a datetime")


def create_event(db: Session, organizer_id: str, fields: dict) -> Event:
    for f in ("name", "event_type", "registration_deadline", "start_date", "end_date"):
        if fields.get(f) is None:
            raise EventValidationError(f, "is required")
    unknown = set(fields) - set(EDITABLE_FIELDS)
    if unknown:
        raise EventValidationError(sorted(unknown)[0], "is not an event field")
    _validate_values(fields)

    start, end = as_utc(fields["start_date"]), as_utc(fields["end_date"])
    if start > end:
        raise EventValidationError("end_date", "must not be before start_date")

    event_type = fields["event_type"]
    variants = _build_variants(fields.get("merch_items")) if event_type == "merchandise" else []
    get_organizer(db, organizer_id)
    event = Event(
        organizer_id=organizer_id,
        name=fields["name"].strip(),
        description=fields.get("description") or "",
        status="draft",
        event_type=event_type,
        eligibility=fields.get("eligibility") or "all",
        registration_deadline=as_utc(fields["registration_deadline"]),
        start_date=start,
        end_date=end,
        registration_limit=fields.get("registration_limit") or 0,
        registration_fee=fields.get("registration_fee") or 0,
        registration_count=0,
        tags=list(fields.get("tags") or []),
        custom_form=list(fields.get("custom_form") or []) if event_type == "normal" else [],
    )
    event.variants = variants
    db.add(event)
    db.commit()
    logger.info("event created id=%s organizer=%s type=%s", event.id, organizer_id, event_type)
    return event


def _check_transition(event: Event, new_status: str):
    if new_status == event.status:
        return
    if new_status not in TRANSITIONS[event.status]:
        raise EventValidationError("status", f"cannot move from {event.status} to {new_status}")


def _check_published(event: Event, updates: dict):
    if "registration_deadline" in updates:
        new = as_utc(updates["registration_deadline"])
        if new <= as_utc(event.registration_deadline):
            raise EventValidationError("registration_deadline", "can only be extended once published")

    if "registration_limit" in updates:
        new, current = updates["registration_limit"], event.registration_limit
        # 0 means unlimited, i.e. larger than any number
        shrinks = (current == 0 and new != 0) or (new != 0 and new < current)
        if shrinks:
            raise EventValidationError("registration_limit", "can only be increased once published")
        if new != 0 and new < event.registration_count:
            raise EventValidationError("registration_limit", "cannot be lower than current registrations")


def _apply_limit(db: Session, event: Event, new_limit: int):
    # Guarded on the live counter so a concurrent admission cannot overtake it
    stmt = update(Event).where(Event.id == event.id)
    if new_limit != 0:
        stmt = stmt.where(Event.registration_count <= new_limit)
    res = db.execute(stmt.values(registration_limit=new_limit).execution_options(synchronize_session=False))
    if res.rowcount != 1:
        raise EventValidationError("registration_limit", "cannot be lower than current registrations")


def update_event(db: Session, event_id: str, caller_org_id: str, updates: dict):
    """Apply an organizer's edit, all or nothing.

    Returns (event, notifications). Every field is checked against the
    permission table for the event's current state before anything is
    written.
    """
    event = get_owned_event(db, event_id, caller_org_id)
    db.refresh(event)
    state = event.status
    allowed = EDIT_PERMISSIONS[state]

    for f in updates:
        if f not in EDITABLE_FIELDS:
            raise EventValidationError(f, "is not an event field")
        if f not in allowed:
            if state == "closed":
                raise EventValidationError(f, "closed events cannot be edited")
            raise EventValidationError(f, f"cannot be changed while the event is {state}")

    _validate_values(updates)
    if "status" in updates:
        _check_transition(event, updates["status"])
    if state == "published":
        _check_published(event, updates)

    if state == "draft":
        start = as_utc(updates.get("start_date", event.start_date))
        end = as_utc(updates.get("end_date", event.end_date))
        if start > end:
            raise EventValidationError("end_date", "must not be before start_date")

    try:
        for f, value in updates.items():
            if f == "merch_items":
                continue
            if f == "registration_limit" and state != "draft":
                _apply_limit(db, event, value)
                continue
            if f in DATE_FIELDS:
                value = as_utc(value)
            setattr(event, f, value)

        if state == "draft":
            if "merch_items" in updates:
                event.variants = _build_variants(updates["merch_items"])
            if event.event_type == "normal":
                event.variants = []
            else:
                event.custom_form = []
        db.commit()
    except Exception:
        db.rollback()
        raise

    db.refresh(event)
    logger.info("event updated id=%s fields=%s", event.id, sorted(updates))

    notifications = []
    if updates.get("status") == "published" and state != "published":
        logger.info("event published id=%s", event.id)
        notifications.extend(_published_notifications(db, event))
    return event, notifications


def _published_notifications(db: Session, event: Event) -> list:
    org = db.get(Organizer, event.organizer_id)
    if org is None or not org.discord_webhook:
        return []
    content = (
        f"New event published: **{event.name}**\n"
        f"Type: {event.event_type}\n"
        f"Date: {as_utc(event.start_date).date().isoformat()}\n"
        f"Register before: {as_utc(event.registration_deadline).date().isoformat()}"
    )
    return [notify.webhook(org.discord_webhook, {"content": content})]


def to_dict(event: Event) -> dict:
    return {
        "event_id": event.id,
        "organizer_id": event.organizer_id,
        "name": event.name,
        "description": event.description,
        "status": event.status,
        "event_type": event.event_type,
        "eligibility": event.eligibility,
        "registration_deadline": as_utc(event.registration_deadline).isoformat(),
        "start_date": as_utc(event.start_date).isoformat(),
        "end_date": as_utc(event.end_date).isoformat(),
        "registration_limit": event.registration_limit,
        "registration_fee": event.registration_fee,
        "registration_count": event.registration_count,
        "tags": event.tags or [],
        "custom_form": event.custom_form or [],
        "merch_items": [
            {
                "variant_id": v.id,
                "size": v.size,
                "color": v.color,
                "stock": v.stock,
                "purchase_limit": v.purchase_limit,
            }
            for v in event.variants
        ],
    }
