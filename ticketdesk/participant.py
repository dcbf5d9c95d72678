from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, HTTPException
from pydantic import BaseModel, Field
from sqlalchemy.orm import Session

from . import notify, registration, ticketing
from .db import get_db
from .deps import Principal, get_principal, get_redis, require_role
from .errors import Rejection

router = APIRouter(tags=["participant"])

participant_only = require_role("participant")


# -------------------------
# Registration
# -------------------------
class MerchSelectionReq(BaseModel):
    variant_id: str
    quantity: int = Field(default=1, ge=1)


class RegisterReq(BaseModel):
    merch_selection: Optional[MerchSelectionReq] = None
    form_responses: dict = Field(default_factory=dict)


@router.post("/events/{event_id}/register")
def register_for_event(
    event_id: str,
    req: RegisterReq,
    background_tasks: BackgroundTasks,
    principal: Principal = Depends(participant_only),
    db: Session = Depends(get_db),
    redis=Depends(get_redis),
):
    result = registration.register_for_event(
        db,
        event_id,
        principal.as_participant(),
        merch_selection=req.merch_selection.model_dump() if req.merch_selection else None,
        form_responses=req.form_responses,
    )
    if isinstance(result, Rejection):
        return result.to_dict()

    # delivery happens after the response and can never undo the admission
    background_tasks.add_task(notify.enqueue, redis, result.notifications)
    return {
        "status": "REGISTERED",
        "registration": registration.to_dict(result.registration),
        "ticket": ticketing.to_dict(result.ticket) if result.ticket else None,
    }


@router.get("/events/my/registrations")
def my_registrations(principal: Principal = Depends(participant_only), db: Session = Depends(get_db)):
    return [registration.to_dict(r) for r in registration.list_user_registrations(db, principal.id)]


@router.post("/registrations/{registration_id}/cancel")
def cancel_registration(
    registration_id: str,
    principal: Principal = Depends(get_principal),
    db: Session = Depends(get_db),
):
    reg = registration.cancel_registration(db, registration_id, principal.id)
    return registration.to_dict(reg)


# -------------------------
# Tickets
# -------------------------
@router.get("/tickets/user/my")
def my_tickets(principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    return [ticketing.to_dict(t) for t in ticketing.list_user_tickets(db, principal.id)]


@router.get("/tickets/{ticket_id}")
def get_ticket(ticket_id: str, principal: Principal = Depends(get_principal), db: Session = Depends(get_db)):
    ticket = ticketing.get_ticket(db, ticket_id)
    # participants can only see their own tickets
    if principal.role == "participant" and ticket.user_id != principal.id:
        raise HTTPException(status_code=403, detail="Not authorized to view this ticket")
    return {**ticketing.to_dict(ticket), "qr_code": ticketing.qr_data_url(ticket)}
