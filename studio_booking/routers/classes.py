from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from .. import registrations, scheduling
from ..deps import get_db, require_token
from ..models import ClassOccurrence, ClassRegistration
from ..schemas import (
    CheckIn,
    OccurrenceAction,
    OccurrenceCreate,
    OccurrenceOut,
    RegistrationAction,
    RegistrationCancelOut,
    RegistrationCreate,
    RegistrationOut,
    RegistrationsListResponse,
)


router = APIRouter(prefix="/api", tags=["classes"], dependencies=[Depends(require_token)])


def _occurrence_out(db: Session, occurrence: ClassOccurrence) -> OccurrenceOut:
    seats = registrations.availability(db, occurrence)
    out = OccurrenceOut.model_validate(occurrence)
    out.booked_count = seats.booked_count
    out.available = seats.available
    out.waitlist_count = seats.waitlist_count
    return out


def _registration_out(db: Session, registration: ClassRegistration) -> RegistrationOut:
    out = RegistrationOut.model_validate(registration)
    out.waitlist_position = registrations.waitlist_position(db, registration)
    return out


@router.post("/occurrences.create", response_model=OccurrenceOut)
def occurrences_create(payload: OccurrenceCreate, db: Session = Depends(get_db)):
    occurrence = scheduling.schedule_occurrence(
        db,
        template_id=payload.template_id,
        instructor_id=payload.instructor_id,
        room_id=payload.room_id,
        start=payload.start,
        end=payload.end,
        capacity=payload.capacity,
    )
    return _occurrence_out(db, occurrence)


@router.post("/occurrences.cancel", response_model=OccurrenceOut)
def occurrences_cancel(payload: OccurrenceAction, db: Session = Depends(get_db)):
    return _occurrence_out(db, scheduling.cancel_occurrence(db, payload.id))


@router.get("/occurrences.get", response_model=OccurrenceOut)
def occurrences_get(id: str, db: Session = Depends(get_db)):
    return _occurrence_out(db, scheduling.get_occurrence(db, id))


@router.post("/registrations.create", response_model=RegistrationOut)
def registrations_create(payload: RegistrationCreate, db: Session = Depends(get_db)):
    registration = registrations.register(db, payload.occurrence_id, payload.client_id)
    return _registration_out(db, registration)


@router.post("/registrations.cancel", response_model=RegistrationCancelOut)
def registrations_cancel(payload: RegistrationAction, db: Session = Depends(get_db)):
    result = registrations.cancel_registration(db, payload.id)
    return {
        "registration": _registration_out(db, result.registration),
        "promoted": _registration_out(db, result.promoted) if result.promoted else None,
    }


@router.post("/registrations.checkin", response_model=RegistrationOut)
def registrations_checkin(payload: CheckIn, db: Session = Depends(get_db)):
    return _registration_out(db, registrations.check_in(db, payload.id, payload.attended))


@router.get("/registrations.list", response_model=RegistrationsListResponse)
def registrations_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    occurrence_id: Optional[str] = None,
    client_id: Optional[str] = None,
    status: Optional[str] = None,
):
    total = registrations.list_registrations(db, occurrence_id=occurrence_id, client_id=client_id, status=status)
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": [_registration_out(db, r) for r in items], "total": len(total)}
