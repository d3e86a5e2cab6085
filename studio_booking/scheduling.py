from __future__ import annotations

"""
Admission of 1:1 bookings and class occurrences, plus the booking lifecycle.

Check-then-insert is a classic race, so every admission runs in one transaction: lock the
room and instructor rows (FOR UPDATE where the backend supports it), run the collision
guard, insert and flush, then run the guard again excluding the new row. A hit on the
second pass means a concurrent writer won; the whole transaction rolls back with Conflict.
"""

import logging
from datetime import datetime
from typing import Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .audit import record_event
from .collision import check_collision
from .database import atomic
from .errors import DomainError, InvalidStateTransition, NotFound
from .models import (
    Attendance,
    Booking,
    BookingStatus,
    ClassOccurrence,
    ClassRegistration,
    ClassTemplate,
    Client,
    Instructor,
    OccurrenceStatus,
    RegistrationStatus,
    Room,
)
from .utils import as_naive_utc, new_id, utcnow


logger = logging.getLogger(__name__)


def _lock_targets(db: Session, room_id: str, instructor_id: str) -> None:
    room = db.execute(select(Room).where(Room.id == room_id).with_for_update()).scalar_one_or_none()
    if room is None:
        raise NotFound("Room not found", details={"room_id": room_id})
    instructor = db.execute(
        select(Instructor).where(Instructor.id == instructor_id).with_for_update()
    ).scalar_one_or_none()
    if instructor is None:
        raise NotFound("Instructor not found", details={"instructor_id": instructor_id})


def _require(db: Session, model, key: Optional[str], label: str) -> None:
    if key is not None and db.get(model, key) is None:
        raise NotFound(f"{label} not found", details={f"{label.lower()}_id": key})


def get_booking(db: Session, booking_id: str) -> Booking:
    booking = db.get(Booking, booking_id)
    if booking is None:
        raise NotFound("Booking not found", details={"booking_id": booking_id})
    return booking


def get_occurrence(db: Session, occurrence_id: str) -> ClassOccurrence:
    occurrence = db.get(ClassOccurrence, occurrence_id)
    if occurrence is None:
        raise NotFound("Occurrence not found", details={"occurrence_id": occurrence_id})
    return occurrence


def schedule_booking(
    db: Session,
    instructor_id: str,
    client_id: str,
    room_id: str,
    start: datetime,
    end: datetime,
    template_id: Optional[str] = None,
) -> Booking:
    start, end = as_naive_utc(start), as_naive_utc(end)
    with atomic(db):
        _lock_targets(db, room_id, instructor_id)
        _require(db, Client, client_id, "Client")
        _require(db, ClassTemplate, template_id, "Template")
        check_collision(db, room_id, instructor_id, start, end)

        booking = Booking(
            id=new_id(),
            instructor_id=instructor_id,
            client_id=client_id,
            room_id=room_id,
            template_id=template_id,
            start=start,
            end=end,
            status=BookingStatus.SCHEDULED.value,
        )
        db.add(booking)
        db.flush()
        check_collision(db, room_id, instructor_id, start, end, exclude_booking_id=booking.id)
    logger.info("booking scheduled id=%s room=%s instructor=%s start=%s", booking.id, room_id, instructor_id, start)
    return booking


def reschedule_booking(db: Session, booking_id: str, start: datetime, end: datetime) -> Booking:
    start, end = as_naive_utc(start), as_naive_utc(end)
    with atomic(db):
        booking = get_booking(db, booking_id)
        if booking.status != BookingStatus.SCHEDULED.value:
            raise InvalidStateTransition(
                "Only scheduled bookings can be moved",
                details={"booking_id": booking.id, "status": booking.status},
            )
        _lock_targets(db, booking.room_id, booking.instructor_id)
        check_collision(db, booking.room_id, booking.instructor_id, start, end, exclude_booking_id=booking.id)
        booking.start = start
        booking.end = end
        db.flush()
        check_collision(db, booking.room_id, booking.instructor_id, start, end, exclude_booking_id=booking.id)
    return booking


def cancel_booking(db: Session, booking_id: str, now: Optional[datetime] = None) -> Booking:
    with atomic(db):
        booking = get_booking(db, booking_id)
        if booking.status != BookingStatus.SCHEDULED.value:
            raise InvalidStateTransition(
                f"Cannot cancel a {booking.status} booking",
                details={"booking_id": booking.id, "status": booking.status},
            )
        booking.status = BookingStatus.CANCELLED.value
        booking.cancelled_at = as_naive_utc(now) or utcnow()
        record_event(
            db,
            "booking.cancelled",
            "booking",
            booking.id,
            meta={"client_id": booking.client_id, "start": booking.start, "cancelled_at": booking.cancelled_at},
        )
    return booking


def check_in_booking(db: Session, booking_id: str, attended: bool, now: Optional[datetime] = None) -> Booking:
    outcome = Attendance.ATTENDED.value if attended else Attendance.NO_SHOW.value
    with atomic(db):
        booking = get_booking(db, booking_id)
        if booking.status == BookingStatus.COMPLETED.value:
            if booking.attendance == outcome:
                return booking
            raise InvalidStateTransition(
                "Attendance already recorded with a different outcome",
                details={"booking_id": booking.id, "attendance": booking.attendance, "requested": outcome},
            )
        if booking.status != BookingStatus.SCHEDULED.value:
            raise InvalidStateTransition(
                f"Cannot check in a {booking.status} booking",
                details={"booking_id": booking.id, "status": booking.status},
            )
        booking.status = BookingStatus.COMPLETED.value
        booking.attendance = outcome
        booking.checked_in_at = as_naive_utc(now) or utcnow()
    return booking


def schedule_occurrence(
    db: Session,
    template_id: str,
    instructor_id: str,
    room_id: str,
    start: datetime,
    end: datetime,
    capacity: Optional[int] = None,
) -> ClassOccurrence:
    start, end = as_naive_utc(start), as_naive_utc(end)
    with atomic(db):
        _lock_targets(db, room_id, instructor_id)
        template = db.get(ClassTemplate, template_id)
        if template is None:
            raise NotFound("Template not found", details={"template_id": template_id})
        seats = capacity if capacity is not None else template.default_capacity
        if seats is None or seats < 0:
            raise DomainError("Capacity is required when the template has no default capacity", code="CapacityRequired")
        check_collision(db, room_id, instructor_id, start, end)

        occurrence = ClassOccurrence(
            id=new_id(),
            template_id=template_id,
            instructor_id=instructor_id,
            room_id=room_id,
            start=start,
            end=end,
            capacity=seats,
            status=OccurrenceStatus.SCHEDULED.value,
        )
        db.add(occurrence)
        db.flush()
        check_collision(db, room_id, instructor_id, start, end, exclude_occurrence_id=occurrence.id)
    logger.info("occurrence scheduled id=%s template=%s start=%s capacity=%s", occurrence.id, template_id, start, seats)
    return occurrence


def cancel_occurrence(db: Session, occurrence_id: str, now: Optional[datetime] = None) -> ClassOccurrence:
    """Cancel the class and every live registration on it; nobody is promoted."""
    stamp = as_naive_utc(now) or utcnow()
    with atomic(db):
        occurrence = get_occurrence(db, occurrence_id)
        if occurrence.status == OccurrenceStatus.CANCELLED.value:
            raise InvalidStateTransition("Occurrence already cancelled", details={"occurrence_id": occurrence.id})
        occurrence.status = OccurrenceStatus.CANCELLED.value
        live = db.execute(
            select(ClassRegistration).where(
                ClassRegistration.occurrence_id == occurrence.id,
                ClassRegistration.status.in_([RegistrationStatus.BOOKED.value, RegistrationStatus.WAITLIST.value]),
            )
        ).scalars().all()
        for registration in live:
            registration.cancelled_from = registration.status
            registration.status = RegistrationStatus.CANCELLED.value
            registration.cancelled_at = stamp
        record_event(
            db,
            "occurrence.cancelled",
            "occurrence",
            occurrence.id,
            meta={"cancelled_registrations": [r.id for r in live]},
        )
    return occurrence
