from datetime import datetime
from typing import Literal, Optional, Union

from fastapi import APIRouter, BackgroundTasks, Depends, Header, Request
from fastapi.responses import Response
from pydantic import BaseModel, ConfigDict, Field, HttpUrl
from sqlalchemy import select
from sqlalchemy.orm import Session
from starlette.concurrency import run_in_threadpool

from . import checkin, events, notify, payments, registration, ticketing
from .config import SCAN_RATE_LIMIT_PER_MIN, SECRET
from .db import get_db
from .deps import Principal, get_redis, require_role
from .idempotency import get_cached_response, set_cached_response
from .models import Registration
from .rate_limit import token_bucket
from .security import verify_qr_token

router = APIRouter(prefix="/organizer", tags=["organizer"])

organizer_only = require_role("organizer")


# -------------------------
# Profile
# -------------------------
class ProfileReq(BaseModel):
    name: Optional[str] = None
    # "" clears the webhook
    discord_webhook: Optional[Union[HttpUrl, Literal[""]]] = None


@router.put("/profile")
def update_profile(req: ProfileReq, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    webhook = str(req.discord_webhook) if req.discord_webhook else req.discord_webhook
    org = events.update_organizer(db, principal.id, name=req.name, discord_webhook=webhook)
    return {"organizer_id": org.id, "name": org.name, "discord_webhook": org.discord_webhook}


# -------------------------
# Events
# -------------------------
class FormFieldReq(BaseModel):
    label: str
    field_type: str
    options: list[str] = Field(default_factory=list)
    required: bool = False
    order: int = 0


class MerchItemReq(BaseModel):
    size: Optional[str] = None
    color: Optional[str] = None
    stock: int = 0
    purchase_limit: int = 1


class CreateEventReq(BaseModel):
    name: str
    description: str = ""
    event_type: str
    eligibility: str = "all"
    registration_deadline: datetime
    start_date: datetime
    end_date: datetime
    registration_limit: int = 0
    registration_fee: int = 0
    tags: list[str] = Field(default_factory=list)
    custom_form: list[FormFieldReq] = Field(default_factory=list)
    merch_items: list[MerchItemReq] = Field(default_factory=list)


class UpdateEventReq(BaseModel):
    # unknown fields are passed through so the permission check can name them
    model_config = ConfigDict(extra="allow")

    name: Optional[str] = None
    description: Optional[str] = None
    event_type: Optional[str] = None
    eligibility: Optional[str] = None
    registration_deadline: Optional[datetime] = None
    start_date: Optional[datetime] = None
    end_date: Optional[datetime] = None
    registration_limit: Optional[int] = None
    registration_fee: Optional[int] = None
    tags: Optional[list[str]] = None
    custom_form: Optional[list[FormFieldReq]] = None
    merch_items: Optional[list[MerchItemReq]] = None
    status: Optional[str] = None


@router.post("/events", status_code=201)
def create_event(req: CreateEventReq, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    event = events.create_event(db, principal.id, req.model_dump())
    return events.to_dict(event)


@router.get("/events")
def list_events(principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    return [events.to_dict(e) for e in events.list_organizer_events(db, principal.id)]


@router.put("/events/{event_id}")
def update_event(
    event_id: str,
    req: UpdateEventReq,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(organizer_only),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
):
    event, notifications = events.update_event(db, event_id, principal.id, req.model_dump(exclude_unset=True))
    background_tasks.add_task(notify.enqueue, redis, notifications)
    return events.to_dict(event)


@router.get("/events/{event_id}")
def event_detail(event_id: str, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    event = events.get_owned_event(db, event_id, principal.id)
    regs = db.execute(
        select(Registration).where(Registration.event_id == event.id).order_by(Registration.registered_at.desc())
    ).scalars().all()
    admitted = [r for r in regs if r.status in ("registered", "attended") and r.ticket_id]
    return {
        "event": events.to_dict(event),
        "registrations": [registration.to_dict(r) for r in regs],
        "analytics": {
            "total_registrations": len(admitted),
            "attended": len([r for r in regs if r.status == "attended"]),
            "cancelled": len([r for r in regs if r.status == "cancelled"]),
            "pending_payment": len([r for r in regs if r.payment_status == "pending" and r.status == "registered"]),
            "revenue": len(admitted) * event.registration_fee,
        },
    }


# -------------------------
# Payment approvals
# -------------------------
class ReviewReq(BaseModel):
    note: Optional[str] = None


@router.get("/events/{event_id}/payments")
def payment_orders(event_id: str, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    return [registration.to_dict(r) for r in payments.list_payment_orders(db, event_id, principal.id)]


@router.put("/payments/{registration_id}/approve")
def approve_payment(
    registration_id: str,
    req: ReviewReq,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(organizer_only),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
):
    reg, ticket, notifications = payments.approve_payment(db, registration_id, principal.id, req.note)
    background_tasks.add_task(notify.enqueue, redis, notifications)
    return {"registration": registration.to_dict(reg), "ticket": ticketing.to_dict(ticket)}


@router.put("/payments/{registration_id}/reject")
def reject_payment(
    registration_id: str,
    req: ReviewReq,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(organizer_only),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
):
    reg, notifications = payments.reject_payment(db, registration_id, principal.id, req.note)
    background_tasks.add_task(notify.enqueue, redis, notifications)
    return {"registration": registration.to_dict(reg)}


# -------------------------
# Scan ticket (gate staff)
# -------------------------
class ScanReq(BaseModel):
    ticket_id: Optional[str] = None
    qr_token: Optional[str] = None


@router.post("/events/{event_id}/scan")
async def scan_ticket(
    event_id: str,
    req: ScanReq,
    request: Request,
    principal: Principal = Depends(organizer_only),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
    idempotency_key: str | None = Header(default=None, alias="Idempotency-Key"),
):
    """
    Gate scan endpoint:
    staff submit either the ticket id typed in by hand or the signed QR token.
    """
    await run_in_threadpool(events.get_owned_event, db, event_id, principal.id)
    ip = request.client.host if request.client else "unknown"

    # Idempotency, scoped to the event
    if idempotency_key:
        idempotency_key = f"{event_id}:{idempotency_key}"
        cached = await get_cached_response(redis, idempotency_key)
        if cached:
            return cached

    allowed = await token_bucket(redis, key=ip, capacity=SCAN_RATE_LIMIT_PER_MIN,
                                 refill_per_sec=SCAN_RATE_LIMIT_PER_MIN / 60)
    if not allowed:
        result = await run_in_threadpool(checkin.reject_scan, db, event_id, "RATE_LIMITED", "Too many scans, slow down")
        return await _finish(redis, idempotency_key, result.to_dict())

    ticket_id = req.ticket_id
    if req.qr_token:
        try:
            payload = verify_qr_token(req.qr_token, SECRET)
        except ValueError as e:
            result = await run_in_threadpool(checkin.reject_scan, db, event_id, str(e), "Unreadable or forged QR code")
            return await _finish(redis, idempotency_key, result.to_dict())
        ticket_id = payload["ticketId"]

    if not ticket_id:
        result = await run_in_threadpool(checkin.reject_scan, db, event_id, "MISSING_TICKET", "Ticket ID is required")
        return await _finish(redis, idempotency_key, result.to_dict())

    result = await run_in_threadpool(checkin.scan, db, event_id, ticket_id)
    return await _finish(redis, idempotency_key, result.to_dict())


async def _finish(redis, idempotency_key, resp: dict) -> dict:
    if idempotency_key:
        await set_cached_response(redis, idempotency_key, resp)
    return resp


# -------------------------
# Attendance
# -------------------------
class ManualAttendanceReq(BaseModel):
    registration_id: str
    action: str


@router.get("/events/{event_id}/attendance")
def attendance(event_id: str, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    return checkin.attendance_summary(db, event_id, principal.id)


@router.get("/events/{event_id}/attendance/export")
def export_attendance(event_id: str, principal: Principal = Depends(organizer_only), db: Session = Depends(get_db)):
    csv_text = checkin.export_attendance_csv(db, event_id, principal.id)
    return Response(
        content=csv_text,
        media_type="text/csv",
        headers={"Content-Disposition": f"attachment; filename={event_id}_attendance.csv"},
    )


@router.put("/events/{event_id}/manual-attendance")
def manual_attendance(
    event_id: str,
    req: ManualAttendanceReq,
    principal: Principal = Depends(organizer_only),
    db: Session = Depends(get_db),
):
    events.get_owned_event(db, event_id, principal.id)
    reg = checkin.manual_attendance(db, req.registration_id, req.action, principal.id)
    return {"message": "Attendance updated", "registration": registration.to_dict(reg)}
