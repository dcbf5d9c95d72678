import uuid
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import (
  JSON, CheckConstraint, DateTime, ForeignKey, Integer, String, UniqueConstraint, func,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base

EVENT_STATUSES = ("draft", "published", "ongoing", "completed", "closed")
EVENT_TYPES = ("normal", "merchandise")
ELIGIBILITIES = ("all", "iiit", "non-iiit")
REGISTRATION_STATUSES = ("registered", "cancelled", "rejected", "attended")
PAYMENT_STATUSES = ("not_required", "pending", "approved", "rejected", "cancelled")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # SQLite hands back naive datetimes; everything is stored as UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def _gen_id(prefix: str, size: int = 8) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:size]}"


class Organizer(Base):
    __tablename__ = "organizers"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: _gen_id("org"))
    name: Mapped[str] = mapped_column(String)
    discord_webhook: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())


class Event(Base):
    __tablename__ = "events"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: _gen_id("evt"))
    organizer_id: Mapped[str] = mapped_column(ForeignKey("organizers.id"), index=True)
    name: Mapped[str] = mapped_column(String, index=True)
    description: Mapped[str] = mapped_column(String, default="")
    status: Mapped[str] = mapped_column(String(16), default="draft", index=True)
    event_type: Mapped[str] = mapped_column(String(16))
    eligibility: Mapped[str] = mapped_column(String(16), default="all")
    registration_deadline: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    start_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    end_date: Mapped[datetime] = mapped_column(DateTime(timezone=True))
    registration_limit: Mapped[int] = mapped_column(Integer, default=0)
    registration_fee: Mapped[int] = mapped_column(Integer, default=0)
    # Only ever written by the capacity ledger
    registration_count: Mapped[int] = mapped_column(Integer, default=0)
    tags: Mapped[list] = mapped_column(JSON, default=list)
    custom_form: Mapped[list] = mapped_column(JSON, default=list)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), server_default=func.now(), onupdate=func.now()
    )

    variants: Mapped[list["MerchVariant"]] = relationship(
        back_populates="event",
        order_by="MerchVariant.position",
        cascade="all, delete-orphan",
        lazy="selectin",
    )

    __table_args__ = (
        CheckConstraint("registration_count >= 0", name="check_registration_count_non_negative"),
        CheckConstraint(
            "registration_limit = 0 OR registration_count <= registration_limit",
            name="check_registration_count_within_limit",
        ),
    )

    @property
    def requires_payment(self) -> bool:
        return self.event_type == "merchandise" and self.registration_fee > 0

    def variant(self, variant_id: str) -> Optional["MerchVariant"]:
        for v in self.variants:
            if v.id == variant_id:
                return v
        return None


class MerchVariant(Base):
    __tablename__ = "merch_variants"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: _gen_id("var"))
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id"), index=True)
    position: Mapped[int] = mapped_column(Integer, default=0)
    size: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    # Only ever written by the capacity ledger once the event is live
    stock: Mapped[int] = mapped_column(Integer, default=0)
    purchase_limit: Mapped[int] = mapped_column(Integer, default=1)

    event: Mapped[Event] = relationship(back_populates="variants")

    __table_args__ = (
        CheckConstraint("stock >= 0", name="check_variant_stock_non_negative"),
        CheckConstraint("purchase_limit >= 1", name="check_variant_purchase_limit_positive"),
    )


class Registration(Base):
    __tablename__ = "registrations"

    id: Mapped[str] = mapped_column(String, primary_key=True, default=lambda: _gen_id("reg", 12))
    event_id: Mapped[str] = mapped_column(ForeignKey("events.id"), index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    participant_name: Mapped[str] = mapped_column(String, default="")
    participant_email: Mapped[str] = mapped_column(String, default="")
    participant_type: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    status: Mapped[str] = mapped_column(String(16), default="registered", index=True)
    form_responses: Mapped[dict] = mapped_column(JSON, default=dict)

    variant_id: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    size: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    color: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    quantity: Mapped[int] = mapped_column(Integer, default=0)

    payment_status: Mapped[str] = mapped_column(String(16), default="not_required")
    payment_reviewed_by: Mapped[Optional[str]] = mapped_column(String, nullable=True)
    payment_reviewed_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    payment_note: Mapped[str] = mapped_column(String, default="")

    ticket_id: Mapped[Optional[str]] = mapped_column(String, unique=True, nullable=True)
    # last ticket voided by a cancellation, kept so the gate can still recognise it
    voided_ticket_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    registered_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
    attended_at: Mapped[Optional[datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow, onupdate=utcnow)

    __table_args__ = (UniqueConstraint("event_id", "user_id", name="uniq_registration_event_user"),)

    @property
    def merch_selection(self) -> Optional[dict]:
        if not self.variant_id:
            return None
        return {"variant_id": self.variant_id, "size": self.size, "color": self.color, "quantity": self.quantity}


class Ticket(Base):
    __tablename__ = "tickets"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ticket_id: Mapped[str] = mapped_column(String, unique=True, index=True)
    registration_id: Mapped[str] = mapped_column(ForeignKey("registrations.id"), unique=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    user_id: Mapped[str] = mapped_column(String, index=True)
    payload: Mapped[dict] = mapped_column(JSON)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)


class ScanLog(Base):
    __tablename__ = "scan_logs"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    decision_id: Mapped[str] = mapped_column(String, index=True)
    event_id: Mapped[str] = mapped_column(String, index=True)
    ticket_id: Mapped[Optional[str]] = mapped_column(String, index=True, nullable=True)
    status: Mapped[str] = mapped_column(String)
    reason_code: Mapped[str] = mapped_column(String)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), default=utcnow)
