from __future__ import annotations

"""
Capacity and waitlist management for group class occurrences.

Registration state machine::

    booked   -> cancelled | attended | no_show
    waitlist -> booked (promotion) | cancelled

cancelled, attended and no_show are terminal. Waitlist order is ``booked_at`` ascending
(registration id breaks exact ties) and promotion always takes the head of that queue.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import List, Optional

from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import record_event
from .database import atomic
from .errors import DuplicateRegistration, InvalidStateTransition, NotFound
from .models import (
    SEAT_HOLDING_STATUSES,
    ClassOccurrence,
    ClassRegistration,
    Client,
    OccurrenceStatus,
    RegistrationStatus,
)
from .utils import as_naive_utc, new_id, utcnow


logger = logging.getLogger(__name__)

_TERMINAL = {
    RegistrationStatus.CANCELLED.value,
    RegistrationStatus.ATTENDED.value,
    RegistrationStatus.NO_SHOW.value,
}


@dataclass
class Availability:
    capacity: int
    booked_count: int
    waitlist_count: int

    @property
    def available(self) -> int:
        return max(self.capacity - self.booked_count, 0)


@dataclass
class CancellationResult:
    registration: ClassRegistration
    promoted: Optional[ClassRegistration] = None


def _queue_order():
    return (ClassRegistration.booked_at.asc(), ClassRegistration.id.asc())


def _lock_occurrence(db: Session, occurrence_id: str) -> ClassOccurrence:
    occurrence = db.execute(
        select(ClassOccurrence).where(ClassOccurrence.id == occurrence_id).with_for_update()
    ).scalar_one_or_none()
    if occurrence is None:
        raise NotFound("Occurrence not found", details={"occurrence_id": occurrence_id})
    return occurrence


def _lock_registration(db: Session, registration_id: str) -> ClassRegistration:
    registration = db.execute(
        select(ClassRegistration).where(ClassRegistration.id == registration_id).with_for_update()
    ).scalar_one_or_none()
    if registration is None:
        raise InvalidStateTransition(
            "Registration does not exist", code="RegistrationNotFound", details={"registration_id": registration_id}
        )
    return registration


def _count(db: Session, occurrence_id: str, statuses) -> int:
    return db.execute(
        select(func.count())
        .select_from(ClassRegistration)
        .where(ClassRegistration.occurrence_id == occurrence_id, ClassRegistration.status.in_(list(statuses)))
    ).scalar_one()


def availability(db: Session, occurrence: ClassOccurrence) -> Availability:
    return Availability(
        capacity=occurrence.capacity,
        booked_count=_count(db, occurrence.id, SEAT_HOLDING_STATUSES),
        waitlist_count=_count(db, occurrence.id, [RegistrationStatus.WAITLIST.value]),
    )


def waitlist_position(db: Session, registration: ClassRegistration) -> Optional[int]:
    """1-based place in line, or None when the registration is not waiting."""
    if registration.status != RegistrationStatus.WAITLIST.value:
        return None
    queue = db.execute(
        select(ClassRegistration.id)
        .where(
            ClassRegistration.occurrence_id == registration.occurrence_id,
            ClassRegistration.status == RegistrationStatus.WAITLIST.value,
        )
        .order_by(*_queue_order())
    ).scalars().all()
    return queue.index(registration.id) + 1


def list_registrations(
    db: Session,
    occurrence_id: Optional[str] = None,
    client_id: Optional[str] = None,
    status: Optional[str] = None,
) -> List[ClassRegistration]:
    stmt = select(ClassRegistration)
    if occurrence_id:
        stmt = stmt.where(ClassRegistration.occurrence_id == occurrence_id)
    if client_id:
        stmt = stmt.where(ClassRegistration.client_id == client_id)
    if status:
        stmt = stmt.where(ClassRegistration.status == status)
    return list(db.execute(stmt.order_by(*_queue_order())).scalars().all())


def register(db: Session, occurrence_id: str, client_id: str, now: Optional[datetime] = None) -> ClassRegistration:
    """Take a seat if one is free, otherwise join the end of the waitlist."""
    with atomic(db):
        occurrence = _lock_occurrence(db, occurrence_id)
        # Queue order follows lock order
        stamp = as_naive_utc(now) or utcnow()
        if occurrence.status == OccurrenceStatus.CANCELLED.value:
            raise InvalidStateTransition(
                "Occurrence is cancelled", code="OccurrenceCancelled", details={"occurrence_id": occurrence_id}
            )
        if db.get(Client, client_id) is None:
            raise NotFound("Client not found", details={"client_id": client_id})

        existing = db.execute(
            select(ClassRegistration).where(
                ClassRegistration.occurrence_id == occurrence_id,
                ClassRegistration.client_id == client_id,
                ClassRegistration.status != RegistrationStatus.CANCELLED.value,
            )
        ).scalars().first()
        if existing is not None:
            raise DuplicateRegistration(
                "Client already holds a registration for this class",
                details={"registration_id": existing.id, "status": existing.status},
            )

        seats = availability(db, occurrence)
        # A no_show frees its seat for the next registrant; the waitlist only moves on cancellation
        status = RegistrationStatus.BOOKED if seats.available > 0 else RegistrationStatus.WAITLIST
        registration = ClassRegistration(
            id=new_id(),
            occurrence_id=occurrence_id,
            client_id=client_id,
            status=status.value,
            booked_at=stamp,
        )
        db.add(registration)
        try:
            db.flush()
        except IntegrityError as exc:
            raise DuplicateRegistration(
                "Client already holds a registration for this class",
                details={"occurrence_id": occurrence_id, "client_id": client_id},
            ) from exc

        if status is RegistrationStatus.BOOKED:
            # Re-validate against writers that committed between our count and our insert.
            # Ours is the only uncommitted seat, so committed holders keep theirs.
            if _count(db, occurrence_id, SEAT_HOLDING_STATUSES) > occurrence.capacity:
                registration.status = RegistrationStatus.WAITLIST.value
                db.flush()
    logger.info(
        "registration created id=%s occurrence=%s client=%s status=%s",
        registration.id,
        occurrence_id,
        client_id,
        registration.status,
    )
    return registration


def _promote_next(db: Session, occurrence: ClassOccurrence, stamp: datetime) -> Optional[ClassRegistration]:
    if availability(db, occurrence).available <= 0:
        return None
    head = db.execute(
        select(ClassRegistration)
        .where(
            ClassRegistration.occurrence_id == occurrence.id,
            ClassRegistration.status == RegistrationStatus.WAITLIST.value,
        )
        .order_by(*_queue_order())
        .limit(1)
        .with_for_update()
    ).scalars().first()
    if head is None:
        return None
    head.status = RegistrationStatus.BOOKED.value
    head.promoted_at = stamp
    record_event(
        db,
        "registration.promoted",
        "registration",
        head.id,
        meta={"occurrence_id": occurrence.id, "client_id": head.client_id, "starts_at": occurrence.start},
    )
    logger.info("waitlist promotion registration=%s occurrence=%s", head.id, occurrence.id)
    return head


def cancel_registration(db: Session, registration_id: str, now: Optional[datetime] = None) -> CancellationResult:
    """Cancel a booked or waitlisted registration; a freed seat goes to the head of the waitlist."""
    stamp = as_naive_utc(now) or utcnow()
    with atomic(db):
        registration = _lock_registration(db, registration_id)
        if registration.status in _TERMINAL:
            raise InvalidStateTransition(
                f"Cannot cancel a {registration.status} registration",
                details={"registration_id": registration.id, "status": registration.status},
            )
        freed_seat = registration.status == RegistrationStatus.BOOKED.value
        registration.cancelled_from = registration.status
        registration.status = RegistrationStatus.CANCELLED.value
        registration.cancelled_at = stamp
        record_event(
            db,
            "registration.cancelled",
            "registration",
            registration.id,
            meta={"occurrence_id": registration.occurrence_id, "client_id": registration.client_id},
        )
        db.flush()

        promoted = None
        if freed_seat:
            occurrence = _lock_occurrence(db, registration.occurrence_id)
            if occurrence.status != OccurrenceStatus.CANCELLED.value:
                promoted = _promote_next(db, occurrence, stamp)
    return CancellationResult(registration=registration, promoted=promoted)


def check_in(db: Session, registration_id: str, attended: bool, now: Optional[datetime] = None) -> ClassRegistration:
    """Record attendance. Repeating the same outcome is a no-op; a different one is refused."""
    outcome = RegistrationStatus.ATTENDED.value if attended else RegistrationStatus.NO_SHOW.value
    with atomic(db):
        registration = _lock_registration(db, registration_id)
        if registration.status == outcome:
            return registration
        if registration.status != RegistrationStatus.BOOKED.value:
            raise InvalidStateTransition(
                f"Cannot check in a {registration.status} registration",
                details={"registration_id": registration.id, "status": registration.status, "requested": outcome},
            )
        registration.status = outcome
        registration.checked_in_at = as_naive_utc(now) or utcnow()
    return registration
