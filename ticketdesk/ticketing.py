import base64
import io
import logging
import uuid

import qrcode
from sqlalchemy import select
from sqlalchemy.orm import Session

from . import config
from .errors import AlreadyIssued, NotFound, TicketIdExhausted
from .models import Registration, Ticket
from .security import sign_qr_token

logger = logging.getLogger(__name__)


def _gen_ticket_id() -> str:
    # TKT-3F9A01BC, short enough to type in at a gate
    return "TKT-" + uuid.uuid4().hex[:8].upper()


def _free_ticket_id(db: Session) -> str:
    for _ in range(config.TICKET_ID_ATTEMPTS):
        candidate = _gen_ticket_id()
        taken = db.execute(select(Ticket.id).where(Ticket.ticket_id == candidate)).first()
        # voided ids still resolve at the gate, so they are never handed out again
        voided = db.execute(select(Registration.id).where(Registration.voided_ticket_id == candidate)).first()
        if not taken and not voided:
            return candidate
        logger.warning("ticket id collision on %s", candidate)
    raise TicketIdExhausted(f"no free ticket id after {config.TICKET_ID_ATTEMPTS} attempts")


def issue(db: Session, registration: Registration, event_name: str, participant_name: str) -> Ticket:
    """Create the ticket for an admitted registration.

    Runs inside the caller's transaction; the ticket and the registration's
    ticket_id become visible together on commit. The unique indexes on
    tickets.ticket_id and tickets.registration_id are the final guard.
    """
    if registration.ticket_id:
        raise AlreadyIssued(f"registration {registration.id} already has ticket {registration.ticket_id}")
    existing = db.execute(select(Ticket.ticket_id).where(Ticket.registration_id == registration.id)).scalar()
    if existing:
        raise AlreadyIssued(f"registration {registration.id} already has ticket {existing}")

    ticket_id = _free_ticket_id(db)
    ticket = Ticket(
        ticket_id=ticket_id,
        registration_id=registration.id,
        event_id=registration.event_id,
        user_id=registration.user_id,
        payload={
            "ticketId": ticket_id,
            "eventId": registration.event_id,
            "userId": registration.user_id,
            "eventName": event_name,
            "participant": participant_name,
        },
    )
    db.add(ticket)
    registration.ticket_id = ticket_id
    db.flush()
    return ticket


def void(db: Session, registration: Registration):
    if not registration.ticket_id:
        return
    ticket = db.execute(select(Ticket).where(Ticket.registration_id == registration.id)).scalar_one_or_none()
    if ticket is not None:
        db.delete(ticket)
    registration.voided_ticket_id = registration.ticket_id
    registration.ticket_id = None


def qr_payload(ticket: Ticket) -> dict:
    return dict(ticket.payload)


def qr_token(ticket: Ticket) -> str:
    return sign_qr_token(qr_payload(ticket), config.SECRET)


def qr_data_url(ticket: Ticket) -> str:
    """PNG QR code carrying the signed ticket token, as a data URL for emails."""
    qr = qrcode.QRCode(
        version=None,
        error_correction=qrcode.constants.ERROR_CORRECT_L,
        box_size=10,
        border=4,
    )
    qr.add_data(qr_token(ticket))
    qr.make(fit=True)
    img = qr.make_image(fill_color="black", back_color="white")

    buffered = io.BytesIO()
    img.save(buffered)
    return "data:image/png;base64," + base64.b64encode(buffered.getvalue()).decode("utf-8")


def get_ticket(db: Session, ticket_id: str) -> Ticket:
    ticket = db.execute(select(Ticket).where(Ticket.ticket_id == ticket_id)).scalar_one_or_none()
    if ticket is None:
        raise NotFound("ticket")
    return ticket


def list_user_tickets(db: Session, user_id: str) -> list:
    return db.execute(
        select(Ticket).where(Ticket.user_id == user_id).order_by(Ticket.created_at.desc())
    ).scalars().all()


def to_dict(ticket: Ticket) -> dict:
    return {
        "ticket_id": ticket.ticket_id,
        "registration_id": ticket.registration_id,
        "event_id": ticket.event_id,
        "user_id": ticket.user_id,
        "payload": qr_payload(ticket),
        "qr_token": qr_token(ticket),
        "created_at": str(ticket.created_at),
    }
