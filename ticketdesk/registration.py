"""Admission pipeline.

A registration attempt walks the checks below in order and stops at the
first one that fails. Everything from the seat reservation onwards runs in
a single transaction: rolling it back returns whatever was reserved.
"""
import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional, Union

from sqlalchemy import case, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from . import ledger, notify, ticketing
from .errors import (
  ALREADY_REGISTERED, CAPACITY_FULL, DEADLINE_PASSED, INVALID_VARIANT, NOT_ELIGIBLE,
  OUT_OF_STOCK, PURCHASE_LIMIT_EXCEEDED, REGISTRATION_CLOSED,
  InvalidTransition, NotFound, Rejection,
)
from .models import Event, Registration, Ticket, as_utc, utcnow

logger = logging.getLogger(__name__)

OPEN_STATUSES = ("published", "ongoing")
LIVE_STATUSES = ("registered", "attended")
# A user whose order was rejected, or who cancelled, may order again
REVIVABLE_STATUSES = ("rejected", "cancelled")


@dataclass
class Participant:
    user_id: str
    name: str = ""
    email: str = ""
    participant_type: Optional[str] = None


@dataclass
class Admission:
    registration: Registration
    ticket: Optional[Ticket] = None
    notifications: list = field(default_factory=list)


def register_for_event(
    db: Session,
    event_id: str,
    participant: Participant,
    merch_selection: Optional[dict] = None,
    form_responses: Optional[dict] = None,
    now: Optional[datetime] = None,
) -> Union[Admission, Rejection]:
    now = as_utc(now or utcnow())
    for attempt in range(2):
        try:
            return _admit(db, event_id, participant, merch_selection or {}, form_responses or {}, now)
        except IntegrityError:
            db.rollback()
            if _find(db, event_id, participant.user_id, LIVE_STATUSES) is not None:
                logger.info("duplicate registration event=%s user=%s", event_id, participant.user_id)
                return Rejection(ALREADY_REGISTERED, "Already registered for this event")
            if attempt:
                raise
            logger.warning("admission collided on a unique index, retrying event=%s user=%s",
                           event_id, participant.user_id)
        except Exception:
            db.rollback()
            raise
    raise AssertionError("unreachable")


def _find(db: Session, event_id: str, user_id: str, statuses=None) -> Optional[Registration]:
    q = select(Registration).where(Registration.event_id == event_id, Registration.user_id == user_id)
    if statuses:
        q = q.where(Registration.status.in_(statuses))
    return db.execute(q).scalar_one_or_none()


def _reject(db: Session, reason: str, message: str, **context) -> Rejection:
    db.rollback()
    logger.info("registration rejected reason=%s %s", reason, context)
    return Rejection(reason, message, context)


def _admit(db, event_id, participant, selection, form_responses, now):
    event = db.get(Event, event_id)
    if event is None or event.status not in OPEN_STATUSES:
        return _reject(db, REGISTRATION_CLOSED, "Registration not open for this event", event_id=event_id)

    if now > as_utc(event.registration_deadline):
        return _reject(db, DEADLINE_PASSED, "Registration deadline has passed", event_id=event_id)

    if event.eligibility != "all" and participant.participant_type != event.eligibility:
        return _reject(db, NOT_ELIGIBLE, "You are not eligible for this event",
                       event_id=event_id, eligibility=event.eligibility)

    existing = _find(db, event.id, participant.user_id)
    if existing is not None and existing.status not in REVIVABLE_STATUSES:
        return _reject(db, ALREADY_REGISTERED, "Already registered for this event",
                       event_id=event_id, registration_id=existing.id)

    seat = ledger.reserve(db, ledger.SeatCounter(event.id), 1)
    if not seat.ok:
        return _reject(db, CAPACITY_FULL, "Registration limit reached", event_id=event_id)

    variant, quantity = None, 0
    if event.event_type == "merchandise":
        variant_id = selection.get("variant_id")
        variant = event.variant(variant_id) if variant_id else None
        if variant is None:
            return _reject(db, INVALID_VARIANT, "Please select a valid merchandise variant",
                           event_id=event_id, variant_id=variant_id)
        quantity = selection.get("quantity", 1)
        valid = isinstance(quantity, int) and not isinstance(quantity, bool)
        if not valid or quantity < 1 or quantity > variant.purchase_limit:
            return _reject(db, PURCHASE_LIMIT_EXCEEDED,
                           f"Exceeds purchase limit of {variant.purchase_limit}",
                           event_id=event_id, variant_id=variant.id, purchase_limit=variant.purchase_limit)
        stock = ledger.reserve(db, ledger.VariantStock(variant.id), quantity)
        if not stock.ok:
            # the rollback inside _reject also returns the seat reserved above
            return _reject(db, OUT_OF_STOCK, "Out of stock for selected variant",
                           event_id=event_id, variant_id=variant.id, remaining=stock.remaining)

    values = dict(
        participant_name=participant.name,
        participant_email=participant.email,
        participant_type=participant.participant_type,
        status="registered",
        form_responses=form_responses,
        variant_id=variant.id if variant else None,
        size=variant.size if variant else None,
        color=variant.color if variant else None,
        quantity=quantity,
        payment_status="pending" if event.requires_payment else "not_required",
        payment_reviewed_by=None,
        payment_reviewed_at=None,
        payment_note="",
        ticket_id=None,
        registered_at=now,
        attended_at=None,
    )

    if existing is None:
        reg = Registration(event_id=event.id, user_id=participant.user_id, **values)
        db.add(reg)
        # raises IntegrityError if a concurrent attempt inserted first
        db.flush()
    else:
        res = db.execute(
            update(Registration)
            .where(Registration.id == existing.id, Registration.status.in_(REVIVABLE_STATUSES))
            .values(**values)
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            return _reject(db, ALREADY_REGISTERED, "Already registered for this event", event_id=event_id)
        reg = existing
        db.refresh(reg)

    ticket = None
    if not event.requires_payment:
        ticket = ticketing.issue(db, reg, event.name, participant.name)
    db.commit()

    logger.info("registration admitted id=%s event=%s user=%s ticket=%s",
                reg.id, event.id, participant.user_id, reg.ticket_id)
    try:
        notifications = _admission_emails(event, reg, ticket)
    except Exception:
        logger.warning("could not build confirmation email for %s", reg.id, exc_info=True)
        notifications = []
    return Admission(registration=reg, ticket=ticket, notifications=notifications)


def _admission_emails(event: Event, reg: Registration, ticket: Optional[Ticket]) -> list:
    if not reg.participant_email:
        return []
    if ticket is None:
        body = (
            f"<p>Hi {reg.participant_name},</p>"
            f"<p>Your order for <strong>{event.name}</strong> was received and is awaiting payment review.</p>"
        )
        return [notify.email(reg.participant_email, "Order Received - " + event.name, body)]

    body = (
        f"<h2>Registration Confirmed!</h2>"
        f"<p>Hi {reg.participant_name},</p>"
        f"<p>You have successfully registered for <strong>{event.name}</strong>.</p>"
        f"<p><strong>Ticket ID:</strong> {ticket.ticket_id}</p>"
        f"<p><strong>Event Date:</strong> {as_utc(event.start_date).date().isoformat()}</p>"
        f"<img src=\"{ticketing.qr_data_url(ticket)}\" alt=\"QR Code\" />"
        f"<p>Please keep this ticket for entry.</p>"
    )
    return [notify.email(reg.participant_email, "Registration Confirmed - " + event.name, body)]


def get_registration(db: Session, registration_id: str) -> Registration:
    reg = db.get(Registration, registration_id)
    if reg is None:
        raise NotFound("registration")
    return reg


def cancel_registration(db: Session, registration_id: str, caller_id: str) -> Registration:
    """registered -> cancelled, by the registrant or the event's organizer.

    Gives back the seat and any reserved stock and voids the ticket.
    """
    reg = get_registration(db, registration_id)
    event = db.get(Event, reg.event_id)
    if caller_id not in (reg.user_id, event.organizer_id):
        raise NotFound("registration")

    try:
        res = db.execute(
            update(Registration)
            .where(Registration.id == reg.id, Registration.status == "registered")
            .values(
                status="cancelled",
                # a cancelled order is no longer waiting for review
                payment_status=case(
                    (Registration.payment_status == "pending", "cancelled"),
                    else_=Registration.payment_status,
                ),
                updated_at=utcnow(),
            )
            .execution_options(synchronize_session=False)
        )
        if res.rowcount != 1:
            db.rollback()
            raise InvalidTransition(f"cannot cancel a registration that is {reg.status}")

        ledger.release(db, ledger.SeatCounter(reg.event_id), 1)
        if reg.variant_id and reg.quantity:
            ledger.release(db, ledger.VariantStock(reg.variant_id), reg.quantity)
        ticketing.void(db, reg)
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    db.refresh(reg)
    logger.info("registration cancelled id=%s by=%s", reg.id, caller_id)
    return reg


def list_user_registrations(db: Session, user_id: str) -> list:
    return db.execute(
        select(Registration).where(Registration.user_id == user_id).order_by(Registration.registered_at.desc())
    ).scalars().all()


def to_dict(reg: Registration) -> dict:
    return {
        "registration_id": reg.id,
        "event_id": reg.event_id,
        "user_id": reg.user_id,
        "participant_name": reg.participant_name,
        "participant_email": reg.participant_email,
        "status": reg.status,
        "payment_status": reg.payment_status,
        "payment_note": reg.payment_note,
        "merch_selection": reg.merch_selection,
        "form_responses": reg.form_responses or {},
        "ticket_id": reg.ticket_id,
        "registered_at": str(reg.registered_at),
        "attended_at": str(reg.attended_at) if reg.attended_at else None,
    }
