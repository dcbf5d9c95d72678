import csv
import io
import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session

from .errors import EventValidationError, InvalidTransition, NotFound
from .events import get_owned_event
from .models import Event, Registration, ScanLog, as_utc, utcnow

logger = logging.getLogger(__name__)

SUCCESS = "SUCCESS"
DUPLICATE_SCAN = "DUPLICATE_SCAN"
INVALID_TICKET = "INVALID_TICKET"
NOT_ADMITTED = "NOT_ADMITTED"


@dataclass
class ScanResult:
    outcome: str
    message: str
    ticket_id: Optional[str] = None
    participant: Optional[dict] = None
    checked_in_at: Optional[datetime] = None
    decision_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    @property
    def accepted(self) -> bool:
        return self.outcome == SUCCESS

    def to_dict(self) -> dict:
        return {
            "status": "ACCEPTED" if self.accepted else "REJECTED",
            "reason_code": self.outcome,
            "message": self.message,
            "ticket_id": self.ticket_id,
            "participant": self.participant,
            "checked_in_at": as_utc(self.checked_in_at).isoformat() if self.checked_in_at else None,
            "decision_id": self.decision_id,
        }


def _participant(reg: Registration) -> dict:
    return {
        "registration_id": reg.id,
        "user_id": reg.user_id,
        "name": reg.participant_name,
        "email": reg.participant_email,
        "ticket_id": reg.ticket_id,
    }


def _by_ticket(db: Session, event_id: str, ticket_id: str) -> Optional[Registration]:
    reg = db.execute(
        select(Registration).where(Registration.event_id == event_id, Registration.ticket_id == ticket_id)
    ).scalar_one_or_none()
    if reg is None:
        reg = db.execute(
            select(Registration).where(Registration.event_id == event_id, Registration.voided_ticket_id == ticket_id)
        ).scalars().first()
    return reg


def scan(db: Session, event_id: str, ticket_id: str, now: Optional[datetime] = None) -> ScanResult:
    """Check a ticket in at the gate.

    The registered -> attended flip is one guarded UPDATE, so when several
    devices scan the same code only one of them gets SUCCESS.
    """
    now = as_utc(now or utcnow())
    res = db.execute(
        update(Registration)
        .where(
            Registration.event_id == event_id,
            Registration.ticket_id == ticket_id,
            Registration.status == "registered",
        )
        .values(status="attended", attended_at=now, updated_at=now)
        .execution_options(synchronize_session=False)
    )
    if res.rowcount == 1:
        db.commit()
        reg = _by_ticket(db, event_id, ticket_id)
        db.refresh(reg)
        name = reg.participant_name or reg.user_id
        result = ScanResult(SUCCESS, f"Attendance marked for {name}", ticket_id, _participant(reg), now)
    else:
        db.rollback()
        reg = _by_ticket(db, event_id, ticket_id)
        if reg is None:
            # tickets of other events look exactly like unknown ones
            result = ScanResult(INVALID_TICKET, "Invalid ticket - not found for this event", ticket_id)
        elif reg.ticket_id != ticket_id:
            # voided by a cancellation; the registration may hold a newer ticket since
            if reg.status == "cancelled":
                message = "This registration has been cancelled"
            else:
                message = "This ticket has been voided"
            result = ScanResult(NOT_ADMITTED, message, ticket_id, _participant(reg))
        elif reg.status == "attended":
            name = reg.participant_name or reg.user_id
            result = ScanResult(
                DUPLICATE_SCAN,
                f"Already scanned - {name} was marked present at {as_utc(reg.attended_at).isoformat()}",
                ticket_id,
                _participant(reg),
                reg.attended_at,
            )
        else:
            result = ScanResult(NOT_ADMITTED, f"This registration has been {reg.status}", ticket_id, _participant(reg))

    logger.info("scan event=%s ticket=%s outcome=%s", event_id, ticket_id, result.outcome)
    _log_decision(db, event_id, result)
    return result


def _log_decision(db: Session, event_id: str, result: ScanResult):
    try:
        db.add(ScanLog(
            decision_id=result.decision_id,
            event_id=event_id,
            ticket_id=result.ticket_id,
            status="ACCEPTED" if result.accepted else "REJECTED",
            reason_code=result.outcome,
        ))
        db.commit()
    except SQLAlchemyError:
        db.rollback()
        logger.warning("could not write scan log decision=%s", result.decision_id, exc_info=True)


def reject_scan(db: Session, event_id: str, reason_code: str, message: str) -> ScanResult:
    """Record a scan that never reached a ticket lookup (bad token, rate limit)."""
    result = ScanResult(reason_code, message)
    _log_decision(db, event_id, result)
    return result


def manual_attendance(db: Session, registration_id: str, action: str, caller_org_id: str) -> Registration:
    """Organizer override: "mark" or "unmark" a known registration. Last write wins."""
    if action not in ("mark", "unmark"):
        raise EventValidationError("action", "must be mark or unmark")

    reg = db.get(Registration, registration_id)
    if reg is None:
        raise NotFound("registration")
    get_owned_event(db, reg.event_id, caller_org_id)

    if reg.status not in ("registered", "attended") or not reg.ticket_id:
        raise InvalidTransition(f"registration {reg.id} is not admitted")

    now = utcnow()
    if action == "mark":
        values = {"status": "attended", "attended_at": reg.attended_at or now}
    else:
        values = {"status": "registered", "attended_at": None}

    db.execute(
        update(Registration)
        .where(Registration.id == reg.id, Registration.status.in_(("registered", "attended")))
        .values(updated_at=now, **values)
        .execution_options(synchronize_session=False)
    )
    db.commit()
    db.refresh(reg)
    logger.info("manual attendance %s registration=%s by=%s", action, reg.id, caller_org_id)
    return reg


def attendance_summary(db: Session, event_id: str, organizer_id: str) -> dict:
    event = get_owned_event(db, event_id, organizer_id)
    regs = _admitted(db, event)
    scanned = [r for r in regs if r.status == "attended"]
    not_scanned = [r for r in regs if r.status == "registered"]
    return {
        "event_id": event.id,
        "total": len(regs),
        "scanned_count": len(scanned),
        "not_scanned_count": len(not_scanned),
        "scanned": [_participant(r) | {"attended_at": as_utc(r.attended_at).isoformat()} for r in scanned],
        "not_scanned": [_participant(r) for r in not_scanned],
    }


def _admitted(db: Session, event: Event) -> list:
    return db.execute(
        select(Registration)
        .where(
            Registration.event_id == event.id,
            Registration.status.in_(("registered", "attended")),
            Registration.ticket_id.is_not(None),
        )
        .order_by(Registration.registered_at)
    ).scalars().all()


def export_attendance_csv(db: Session, event_id: str, organizer_id: str) -> str:
    event = get_owned_event(db, event_id, organizer_id)
    regs = db.execute(
        select(Registration).where(Registration.event_id == event.id).order_by(Registration.registered_at)
    ).scalars().all()

    buf = io.StringIO()
    writer = csv.writer(buf, quoting=csv.QUOTE_ALL)
    writer.writerow(["Name", "Email", "Ticket ID", "Status", "Scanned At"])
    for r in regs:
        scanned_at = as_utc(r.attended_at).isoformat() if r.status == "attended" and r.attended_at else "Not scanned"
        writer.writerow([r.participant_name, r.participant_email, r.ticket_id or "", r.status, scanned_at])
    return buf.getvalue()
