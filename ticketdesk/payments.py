import logging
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from . import ledger, notify, ticketing
from .errors import InvalidTransition, NotFound
from .events import get_owned_event
from .models import Event, Registration, utcnow

logger = logging.getLogger(__name__)


def _pending_order(db: Session, registration_id: str, reviewer_id: str):
    reg = db.get(Registration, registration_id)
    if reg is None:
        raise NotFound("order")
    event = db.get(Event, reg.event_id)
    if event is None or event.organizer_id != reviewer_id:
        raise NotFound("order")
    return reg, event


def _claim(db: Session, reg: Registration, payment_status: str, reviewer_id: str, note: str, **extra):
    # Only one reviewer can move an order out of pending
    res = db.execute(
        update(Registration)
        .where(Registration.id == reg.id, Registration.payment_status == "pending")
        .where(Registration.status == "registered")
        .values(
            payment_status=payment_status,
            payment_reviewed_by=reviewer_id,
            payment_reviewed_at=utcnow(),
            payment_note=note,
            updated_at=utcnow(),
            **extra,
        )
        .execution_options(synchronize_session=False)
    )
    if res.rowcount != 1:
        db.rollback()
        raise InvalidTransition(f"order {reg.id} is not pending review (payment status {reg.payment_status})")
    db.refresh(reg)


def approve_payment(db: Session, registration_id: str, reviewer_id: str, note: Optional[str] = None):
    """pending -> approved; the ticket is issued in the same transaction.

    Returns (registration, ticket, notifications).
    """
    reg, event = _pending_order(db, registration_id, reviewer_id)
    try:
        _claim(db, reg, "approved", reviewer_id, note or "", status="registered")
        ticket = ticketing.issue(db, reg, event.name, reg.participant_name)
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info("payment approved registration=%s reviewer=%s ticket=%s", reg.id, reviewer_id, ticket.ticket_id)

    notifications = []
    if reg.participant_email:
        try:
            body = (
                f"<h2>Payment Approved - Order Confirmed!</h2>"
                f"<p>Hi {reg.participant_name},</p>"
                f"<p>Your payment for <strong>{event.name}</strong> has been approved.</p>"
                f"<p><strong>Ticket ID:</strong> {ticket.ticket_id}</p>"
                f"<p><strong>Item:</strong> {reg.size or '-'} / {reg.color or '-'} x {reg.quantity}</p>"
                f"<img src=\"{ticketing.qr_data_url(ticket)}\" alt=\"QR Code\" />"
                f"<p>Show this QR code for pickup.</p>"
            )
            notifications.append(notify.email(reg.participant_email, "Payment Approved - " + event.name, body))
        except Exception:
            logger.warning("could not build approval email for %s", reg.id, exc_info=True)
    return reg, ticket, notifications


def reject_payment(db: Session, registration_id: str, reviewer_id: str, note: Optional[str] = None):
    """pending -> rejected; reserved stock and the seat go back to the pool.

    Returns (registration, notifications).
    """
    reg, event = _pending_order(db, registration_id, reviewer_id)
    note = note or "Payment rejected"
    try:
        _claim(db, reg, "rejected", reviewer_id, note, status="rejected")
        # seat before stock, the same order admissions take them in
        ledger.release(db, ledger.SeatCounter(reg.event_id), 1)
        if reg.variant_id and reg.quantity:
            ledger.release(db, ledger.VariantStock(reg.variant_id), reg.quantity)
        db.commit()
    except InvalidTransition:
        raise
    except Exception:
        db.rollback()
        raise

    logger.info("payment rejected registration=%s reviewer=%s", reg.id, reviewer_id)

    notifications = []
    if reg.participant_email:
        body = (
            f"<p>Hi {reg.participant_name},</p>"
            f"<p>Your payment for <strong>{event.name}</strong> was rejected.</p>"
            f"<p>Reason: {note}</p>"
            f"<p>You can place a new order to try again.</p>"
        )
        notifications.append(notify.email(reg.participant_email, "Payment Rejected - " + event.name, body))
    return reg, notifications


def list_payment_orders(db: Session, event_id: str, organizer_id: str) -> list:
    event = get_owned_event(db, event_id, organizer_id)
    return db.execute(
        select(Registration)
        .where(Registration.event_id == event.id, Registration.payment_status != "not_required")
        .order_by(Registration.registered_at.desc())
    ).scalars().all()
