from __future__ import annotations

import random
import threading
from datetime import datetime, timedelta

import pytest
from sqlalchemy import select
from sqlalchemy.orm import Session

from conftest import Studio, seed_studio
from studio_booking import scheduling
from studio_booking.collision import find_collision
from studio_booking.database import SessionLocal
from studio_booking.errors import Conflict, DomainError, InvalidStateTransition, NotFound
from studio_booking.models import Booking, BookingStatus, ClassOccurrence, OccurrenceStatus
from studio_booking.utils import intervals_overlap


T0 = datetime(2031, 3, 3, 9, 0)


def _book(db: Session, studio: Studio, start: datetime, minutes: int = 60, room: int = 0, instructor: int = 0):
    return scheduling.schedule_booking(
        db,
        instructor_id=studio.instructor_ids[instructor],
        client_id=studio.client_ids[0],
        room_id=studio.room_ids[room],
        start=start,
        end=start + timedelta(minutes=minutes),
    )


def test_intervals_overlap_is_half_open() -> None:
    a, b = T0, T0 + timedelta(hours=1)
    assert intervals_overlap(a, b, a + timedelta(minutes=30), b + timedelta(minutes=30))
    assert not intervals_overlap(a, b, b, b + timedelta(hours=1))
    assert not intervals_overlap(a, b, a - timedelta(hours=1), a)
    assert intervals_overlap(a, b, a - timedelta(hours=1), b + timedelta(hours=1))


def test_back_to_back_bookings_are_allowed(db: Session, studio: Studio) -> None:
    first = _book(db, studio, T0)
    second = _book(db, studio, first.end)
    assert second.start == first.end
    assert second.status == BookingStatus.SCHEDULED.value


def test_room_overlap_is_rejected_with_reference(db: Session, studio: Studio) -> None:
    first = _book(db, studio, T0)
    with pytest.raises(Conflict) as exc:
        _book(db, studio, T0 + timedelta(minutes=30), instructor=1)
    clash = exc.value.details["with"]
    assert clash["kind"] == "booking"
    assert clash["id"] == first.id
    assert clash["dimension"] == "room"
    assert "Room" in exc.value.message


def test_instructor_overlap_in_another_room_is_rejected(db: Session, studio: Studio) -> None:
    _book(db, studio, T0)
    with pytest.raises(Conflict) as exc:
        _book(db, studio, T0 + timedelta(minutes=15), room=1)
    assert exc.value.details["with"]["dimension"] == "instructor"
    assert exc.value.message.startswith("Instructor")


def test_failed_admission_leaves_nothing_behind(db: Session, studio: Studio) -> None:
    _book(db, studio, T0)
    with pytest.raises(Conflict):
        _book(db, studio, T0, room=1)
    rows = db.execute(select(Booking).where(Booking.instructor_id == studio.instructor_id)).scalars().all()
    assert len(rows) == 1


def test_occurrence_blocks_booking_and_cancelled_sessions_do_not(db: Session, studio: Studio) -> None:
    occurrence = scheduling.schedule_occurrence(
        db,
        template_id=studio.template_id,
        instructor_id=studio.instructor_id,
        room_id=studio.room_id,
        start=T0,
        end=T0 + timedelta(hours=1),
    )
    with pytest.raises(Conflict) as exc:
        _book(db, studio, T0 + timedelta(minutes=10), instructor=1)
    assert exc.value.details["with"]["kind"] == "occurrence"

    scheduling.cancel_occurrence(db, occurrence.id)
    booking = _book(db, studio, T0 + timedelta(minutes=10), instructor=1)
    scheduling.cancel_booking(db, booking.id)
    # Slot is free again once both sessions are cancelled
    assert find_collision(db, studio.room_id, studio.instructor_id, T0, T0 + timedelta(hours=2)) is None


def test_reschedule_runs_the_guard_and_ignores_itself(db: Session, studio: Studio) -> None:
    first = _book(db, studio, T0)
    second = _book(db, studio, T0 + timedelta(hours=2))

    moved = scheduling.reschedule_booking(db, first.id, T0 + timedelta(minutes=30), T0 + timedelta(minutes=90))
    assert moved.start == T0 + timedelta(minutes=30)

    with pytest.raises(Conflict):
        scheduling.reschedule_booking(db, first.id, second.start, second.end)
    db.refresh(first)
    assert first.start == T0 + timedelta(minutes=30)


def test_unknown_room_is_not_found(db: Session, studio: Studio) -> None:
    with pytest.raises(NotFound):
        scheduling.schedule_booking(
            db,
            instructor_id=studio.instructor_id,
            client_id=studio.client_ids[0],
            room_id="room_missing",
            start=T0,
            end=T0 + timedelta(hours=1),
        )


def test_booking_checkin_and_cancel_transitions(db: Session, studio: Studio) -> None:
    booking = _book(db, studio, T0)
    done = scheduling.check_in_booking(db, booking.id, attended=True)
    assert done.status == BookingStatus.COMPLETED.value
    assert done.attendance == "attended"
    # Same outcome again is a no-op, a different outcome is refused
    assert scheduling.check_in_booking(db, booking.id, attended=True).attendance == "attended"
    with pytest.raises(InvalidStateTransition):
        scheduling.check_in_booking(db, booking.id, attended=False)
    with pytest.raises(InvalidStateTransition):
        scheduling.cancel_booking(db, booking.id)


def test_occurrence_needs_capacity(db: Session) -> None:
    studio = seed_studio(db, default_capacity=None)
    with pytest.raises(DomainError) as exc:
        scheduling.schedule_occurrence(
            db,
            template_id=studio.template_id,
            instructor_id=studio.instructor_id,
            room_id=studio.room_id,
            start=T0,
            end=T0 + timedelta(hours=1),
        )
    assert exc.value.code == "CapacityRequired"


def test_random_admissions_never_leave_overlaps(db: Session) -> None:
    studio = seed_studio(db, rooms=3, instructors=3, clients=1)
    rng = random.Random(20240611)
    base = datetime(2032, 1, 5, 6, 0)
    for _ in range(120):
        start = base + timedelta(minutes=15 * rng.randint(0, 60))
        end = start + timedelta(minutes=15 * rng.randint(1, 8))
        room_id = rng.choice(studio.room_ids)
        instructor_id = rng.choice(studio.instructor_ids)
        try:
            if rng.random() < 0.5:
                scheduling.schedule_booking(
                    db,
                    instructor_id=instructor_id,
                    client_id=studio.client_ids[0],
                    room_id=room_id,
                    start=start,
                    end=end,
                )
            else:
                scheduling.schedule_occurrence(
                    db,
                    template_id=studio.template_id,
                    instructor_id=instructor_id,
                    room_id=room_id,
                    start=start,
                    end=end,
                )
        except Conflict:
            pass

    sessions = list(
        db.execute(
            select(Booking).where(
                Booking.room_id.in_(studio.room_ids), Booking.status != BookingStatus.CANCELLED.value
            )
        ).scalars()
    ) + list(
        db.execute(
            select(ClassOccurrence).where(
                ClassOccurrence.room_id.in_(studio.room_ids),
                ClassOccurrence.status != OccurrenceStatus.CANCELLED.value,
            )
        ).scalars()
    )
    assert sessions
    for i, a in enumerate(sessions):
        for b in sessions[i + 1 :]:
            if a.room_id == b.room_id or a.instructor_id == b.instructor_id:
                assert not intervals_overlap(a.start, a.end, b.start, b.end), (a.id, b.id)


def test_parallel_bookings_for_one_slot_admit_exactly_one(db: Session) -> None:
    studio = seed_studio(db, rooms=1, instructors=6, clients=1)
    start = datetime(2032, 6, 1, 7, 0)
    barrier = threading.Barrier(len(studio.instructor_ids))
    outcomes = []

    def worker(instructor_id: str) -> None:
        session = SessionLocal()
        try:
            barrier.wait()
            scheduling.schedule_booking(
                session,
                instructor_id=instructor_id,
                client_id=studio.client_ids[0],
                room_id=studio.room_id,
                start=start,
                end=start + timedelta(hours=1),
            )
            outcomes.append("ok")
        except Conflict:
            outcomes.append("conflict")
        except Exception as exc:  # noqa: BLE001
            outcomes.append(exc)
        finally:
            session.close()

    threads = [threading.Thread(target=worker, args=(iid,)) for iid in studio.instructor_ids]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(outcomes, key=str) == ["conflict"] * 5 + ["ok"]
    committed = db.execute(
        select(Booking).where(Booking.room_id == studio.room_id, Booking.status != BookingStatus.CANCELLED.value)
    ).scalars().all()
    assert len(committed) == 1
