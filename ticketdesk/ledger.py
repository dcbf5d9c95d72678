"""Capacity ledger: bounded counters that admissions reserve against.

Every reservation is a single conditional UPDATE, so the database decides
whether there is room. Two requests racing for the last seat both send the
same guarded statement and only one of them matches a row.
"""
import logging
from dataclasses import dataclass
from typing import Optional, Union

from sqlalchemy import or_, select, update
from sqlalchemy.orm import Session

from .models import Event, MerchVariant

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class SeatCounter:
    event_id: str


@dataclass(frozen=True)
class VariantStock:
    variant_id: str


Resource = Union[SeatCounter, VariantStock]


@dataclass
class Reservation:
    ok: bool
    # None when the resource is unbounded
    remaining: Optional[int]


def _check_amount(amount: int):
    if amount < 1:
        raise ValueError(f"amount must be positive, got {amount}")


def reserve(db: Session, resource: Resource, amount: int = 1) -> Reservation:
    _check_amount(amount)
    if isinstance(resource, SeatCounter):
        stmt = (
            update(Event)
            .where(Event.id == resource.event_id)
            .where(or_(
                Event.registration_limit == 0,
                Event.registration_count + amount <= Event.registration_limit,
            ))
            .values(registration_count=Event.registration_count + amount)
        )
    else:
        stmt = (
            update(MerchVariant)
            .where(MerchVariant.id == resource.variant_id)
            .where(MerchVariant.stock >= amount)
            .values(stock=MerchVariant.stock - amount)
        )

    res = db.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount != 1:
        logger.info("reservation denied resource=%s amount=%s", resource, amount)
        return Reservation(ok=False, remaining=remaining(db, resource))
    return Reservation(ok=True, remaining=remaining(db, resource))


def release(db: Session, resource: Resource, amount: int = 1):
    _check_amount(amount)
    if isinstance(resource, SeatCounter):
        stmt = (
            update(Event)
            .where(Event.id == resource.event_id)
            .where(Event.registration_count >= amount)
            .values(registration_count=Event.registration_count - amount)
        )
    else:
        stmt = (
            update(MerchVariant)
            .where(MerchVariant.id == resource.variant_id)
            .values(stock=MerchVariant.stock + amount)
        )

    res = db.execute(stmt.execution_options(synchronize_session=False))
    if res.rowcount != 1:
        # releasing more than was reserved means a caller double-released
        logger.error("release matched no row resource=%s amount=%s", resource, amount)


def remaining(db: Session, resource: Resource) -> Optional[int]:
    if isinstance(resource, SeatCounter):
        row = db.execute(
            select(Event.registration_limit, Event.registration_count).where(Event.id == resource.event_id)
        ).first()
        if row is None or row.registration_limit == 0:
            return None
        return row.registration_limit - row.registration_count

    return db.execute(select(MerchVariant.stock).where(MerchVariant.id == resource.variant_id)).scalar()
