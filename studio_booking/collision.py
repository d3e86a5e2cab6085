from __future__ import annotations

"""
Collision guard for rooms and instructors.

A request collides when any non-cancelled booking or class occurrence on the same room OR
with the same instructor overlaps it under half-open semantics:
``existing.start < new.end AND existing.end > new.start``. Back-to-back sessions are fine.

The guard only reads. Callers run it inside the transaction that inserts the session and
re-run it after the insert is flushed (see ``scheduling``).
"""

from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import and_, or_, select
from sqlalchemy.orm import Session

from .errors import Conflict
from .models import Booking, BookingStatus, ClassOccurrence, OccurrenceStatus


@dataclass(frozen=True)
class SessionRef:
    kind: str
    id: str
    dimension: str
    start: datetime
    end: datetime

    def as_dict(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "id": self.id,
            "dimension": self.dimension,
            "start": self.start.isoformat(),
            "end": self.end.isoformat(),
        }


def _overlapping(model, room_id: str, instructor_id: str, start: datetime, end: datetime):
    return and_(
        or_(model.room_id == room_id, model.instructor_id == instructor_id),
        model.start < end,
        model.end > start,
    )


def find_collision(
    db: Session,
    room_id: str,
    instructor_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[str] = None,
    exclude_occurrence_id: Optional[str] = None,
) -> Optional[SessionRef]:
    """Return the earliest clashing session, or None when the slot is free on both dimensions."""
    stmt = select(Booking).where(
        Booking.status != BookingStatus.CANCELLED.value,
        _overlapping(Booking, room_id, instructor_id, start, end),
    )
    if exclude_booking_id:
        stmt = stmt.where(Booking.id != exclude_booking_id)
    booking = db.execute(stmt.order_by(Booking.start, Booking.id).limit(1)).scalars().first()

    stmt = select(ClassOccurrence).where(
        ClassOccurrence.status != OccurrenceStatus.CANCELLED.value,
        _overlapping(ClassOccurrence, room_id, instructor_id, start, end),
    )
    if exclude_occurrence_id:
        stmt = stmt.where(ClassOccurrence.id != exclude_occurrence_id)
    occurrence = db.execute(stmt.order_by(ClassOccurrence.start, ClassOccurrence.id).limit(1)).scalars().first()

    candidates = []
    if booking is not None:
        candidates.append(("booking", booking))
    if occurrence is not None:
        candidates.append(("occurrence", occurrence))
    if not candidates:
        return None
    kind, hit = min(candidates, key=lambda pair: (pair[1].start, pair[0]))
    return SessionRef(
        kind=kind,
        id=hit.id,
        dimension="room" if hit.room_id == room_id else "instructor",
        start=hit.start,
        end=hit.end,
    )


def check_collision(
    db: Session,
    room_id: str,
    instructor_id: str,
    start: datetime,
    end: datetime,
    exclude_booking_id: Optional[str] = None,
    exclude_occurrence_id: Optional[str] = None,
) -> None:
    """Raise Conflict when the slot is taken on either dimension."""
    hit = find_collision(
        db,
        room_id,
        instructor_id,
        start,
        end,
        exclude_booking_id=exclude_booking_id,
        exclude_occurrence_id=exclude_occurrence_id,
    )
    if hit is None:
        return
    what = "Room" if hit.dimension == "room" else "Instructor"
    raise Conflict(
        f"{what} is already booked for this time slot",
        details={"with": hit.as_dict()},
    )
