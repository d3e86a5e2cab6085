from __future__ import annotations

"""
Core tables for sites, rooms, instructors, clients, 1:1 bookings, group class occurrences,
registrations, layered pricing, and instructor settlements.
"""

from datetime import datetime
from enum import Enum
from typing import Optional

from sqlalchemy import (
    Boolean,
    CheckConstraint,
    DateTime,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    text,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .database import Base
from .utils import utcnow


class BookingStatus(str, Enum):
    SCHEDULED = "scheduled"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class Attendance(str, Enum):
    ATTENDED = "attended"
    NO_SHOW = "no_show"


class OccurrenceStatus(str, Enum):
    SCHEDULED = "scheduled"
    CANCELLED = "cancelled"


class RegistrationStatus(str, Enum):
    BOOKED = "booked"
    WAITLIST = "waitlist"
    CANCELLED = "cancelled"
    NO_SHOW = "no_show"
    ATTENDED = "attended"


class SettlementStatus(str, Enum):
    DRAFT = "draft"
    FINALIZED = "finalized"
    PAID = "paid"


class SessionKind(str, Enum):
    BOOKING = "booking"
    REGISTRATION = "registration"


# Registrations that hold a seat
SEAT_HOLDING_STATUSES = (RegistrationStatus.BOOKED.value, RegistrationStatus.ATTENDED.value)


class Site(Base):
    __tablename__ = "sites"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)


class Room(Base):
    __tablename__ = "rooms"
    """Bookable physical resource."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    site_id: Mapped[str] = mapped_column(String(36), ForeignKey("sites.id"), nullable=False, index=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)

    site: Mapped[Site] = relationship(Site, lazy="joined", innerjoin=True)


class Instructor(Base):
    __tablename__ = "instructors"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    site_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("sites.id"), nullable=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)


class Client(Base):
    __tablename__ = "clients"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    full_name: Mapped[str] = mapped_column(String(255), nullable=False)
    email: Mapped[Optional[str]] = mapped_column(String(255), nullable=True, index=True)


class ClassTemplate(Base):
    __tablename__ = "class_templates"
    """Recurring class or 1:1 service definition; the pricing anchor for defaults and client overrides."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    title: Mapped[str] = mapped_column(String(255), nullable=False)
    default_capacity: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)


class Booking(Base):
    __tablename__ = "bookings"
    """1:1 session between an instructor and a client in a room."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    instructor_id: Mapped[str] = mapped_column(String(36), ForeignKey("instructors.id"), nullable=False, index=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    template_id: Mapped[Optional[str]] = mapped_column(String(36), ForeignKey("class_templates.id"), nullable=True)
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=BookingStatus.SCHEDULED.value, nullable=False)
    attendance: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint('"end" > start', name="ck_booking_end_after_start"),
        Index("ix_bookings_room_window", "room_id", "start", "end"),
        Index("ix_bookings_instructor_window", "instructor_id", "start", "end"),
        Index("ix_bookings_status", "status"),
    )


class ClassOccurrence(Base):
    __tablename__ = "class_occurrences"
    """One dated instance of a group class."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("class_templates.id"), nullable=False, index=True)
    instructor_id: Mapped[str] = mapped_column(String(36), ForeignKey("instructors.id"), nullable=False, index=True)
    room_id: Mapped[str] = mapped_column(String(36), ForeignKey("rooms.id"), nullable=False, index=True)
    start: Mapped[datetime] = mapped_column(DateTime, nullable=False, index=True)
    end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    capacity: Mapped[int] = mapped_column(Integer, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=OccurrenceStatus.SCHEDULED.value, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    template: Mapped[ClassTemplate] = relationship(ClassTemplate, lazy="joined", innerjoin=True)

    __table_args__ = (
        CheckConstraint('"end" > start', name="ck_occurrence_end_after_start"),
        CheckConstraint("capacity >= 0", name="ck_occurrence_capacity_non_negative"),
        Index("ix_occurrences_room_window", "room_id", "start", "end"),
        Index("ix_occurrences_instructor_window", "instructor_id", "start", "end"),
    )


class ClassRegistration(Base):
    __tablename__ = "class_registrations"
    """A client's claim on a seat (booked) or a place in line (waitlist) for an occurrence."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    occurrence_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("class_occurrences.id"), nullable=False, index=True
    )
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(16), nullable=False)
    booked_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    promoted_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    cancelled_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    # Status held right before cancellation; only a cancelled seat can be billable
    cancelled_from: Mapped[Optional[str]] = mapped_column(String(16), nullable=True)
    checked_in_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    occurrence: Mapped[ClassOccurrence] = relationship(ClassOccurrence, lazy="joined", innerjoin=True)

    __table_args__ = (
        Index("ix_registrations_queue", "occurrence_id", "status", "booked_at"),
        # At most one live registration per (client, occurrence)
        Index(
            "uq_registration_active_client",
            "occurrence_id",
            "client_id",
            unique=True,
            sqlite_where=text("status != 'cancelled'"),
            postgresql_where=text("status != 'cancelled'"),
        ),
    )


class ClientClassPricing(Base):
    __tablename__ = "client_class_pricing"
    """Client-specific price override, scoped either to one occurrence or to a whole template."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False, index=True)
    occurrence_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("class_occurrences.id"), nullable=True, index=True
    )
    template_id: Mapped[Optional[str]] = mapped_column(
        String(36), ForeignKey("class_templates.id"), nullable=True, index=True
    )
    entry_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    trainer_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint(
            "(occurrence_id IS NULL) != (template_id IS NULL)", name="ck_client_pricing_single_scope"
        ),
        CheckConstraint("entry_fee >= 0 AND trainer_fee >= 0", name="ck_client_pricing_non_negative"),
    )


class ClassPricingDefault(Base):
    __tablename__ = "class_pricing_defaults"

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    template_id: Mapped[str] = mapped_column(String(36), ForeignKey("class_templates.id"), nullable=False, index=True)
    entry_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    trainer_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    valid_from: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    valid_until: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    active: Mapped[bool] = mapped_column(Boolean, default=True, nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    __table_args__ = (
        CheckConstraint("entry_fee >= 0 AND trainer_fee >= 0", name="ck_pricing_default_non_negative"),
    )


class Settlement(Base):
    __tablename__ = "settlements"
    """Instructor payout statement; totals are the sum of its items."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    instructor_id: Mapped[str] = mapped_column(String(36), ForeignKey("instructors.id"), nullable=False, index=True)
    period_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    period_end: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    status: Mapped[str] = mapped_column(String(16), default=SettlementStatus.DRAFT.value, nullable=False, index=True)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    total_entry_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    total_trainer_fee: Mapped[int] = mapped_column(Integer, default=0, nullable=False)
    policy_json: Mapped[str] = mapped_column(Text, nullable=False)
    notes: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    created_by: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)
    finalized_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)
    paid_at: Mapped[Optional[datetime]] = mapped_column(DateTime, nullable=True)

    items: Mapped[list["SettlementItem"]] = relationship(
        "SettlementItem",
        back_populates="settlement",
        lazy="selectin",
        order_by="SettlementItem.session_start",
        cascade="all, delete-orphan",
    )

    __table_args__ = (
        CheckConstraint("period_end > period_start", name="ck_settlement_period"),
    )


class SettlementItem(Base):
    __tablename__ = "settlement_items"
    """Point-in-time fee snapshot for one billable session; never updated after insert."""

    id: Mapped[str] = mapped_column(String(36), primary_key=True)
    settlement_id: Mapped[str] = mapped_column(
        String(36), ForeignKey("settlements.id", ondelete="CASCADE"), nullable=False, index=True
    )
    session_kind: Mapped[str] = mapped_column(String(16), nullable=False)
    session_ref: Mapped[str] = mapped_column(String(36), nullable=False)
    occurrence_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    booking_id: Mapped[Optional[str]] = mapped_column(String(36), nullable=True)
    client_id: Mapped[str] = mapped_column(String(36), ForeignKey("clients.id"), nullable=False)
    session_start: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    entry_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    trainer_fee: Mapped[int] = mapped_column(Integer, nullable=False)
    currency: Mapped[str] = mapped_column(String(8), nullable=False)
    price_source: Mapped[str] = mapped_column(String(32), nullable=False)
    pricing_id: Mapped[str] = mapped_column(String(36), nullable=False)
    status_snapshot: Mapped[str] = mapped_column(String(16), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False)

    settlement: Mapped[Settlement] = relationship(Settlement, back_populates="items")

    __table_args__ = (
        # A session is billed at most once across all settlements
        UniqueConstraint("session_kind", "session_ref", name="uq_settlement_item_session"),
    )


class SystemLog(Base):
    __tablename__ = "system_log"
    """Append-only audit trail; doubles as the event feed for notification and calendar consumers."""

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    ts: Mapped[datetime] = mapped_column(DateTime, default=utcnow, nullable=False, index=True)
    actor: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    action: Mapped[str] = mapped_column(String(64), nullable=False, index=True)
    entity: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    entity_id: Mapped[Optional[str]] = mapped_column(String(64), nullable=True)
    status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    message: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    meta_json: Mapped[Optional[str]] = mapped_column(Text, nullable=True)


class ConfigEntry(Base):
    __tablename__ = "config"
    """Simple key/value settings store."""

    key: Mapped[str] = mapped_column(String(128), primary_key=True)
    value: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
