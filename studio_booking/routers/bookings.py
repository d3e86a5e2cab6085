from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy import select
from sqlalchemy.orm import Session

from .. import scheduling
from ..deps import get_db, require_token
from ..models import Booking
from ..schemas import BookingAction, BookingCreate, BookingOut, BookingReschedule, BookingsListResponse, CheckIn


router = APIRouter(prefix="/api", tags=["bookings"], dependencies=[Depends(require_token)])


@router.post("/bookings.create", response_model=BookingOut)
def bookings_create(payload: BookingCreate, db: Session = Depends(get_db)):
    return scheduling.schedule_booking(
        db,
        instructor_id=payload.instructor_id,
        client_id=payload.client_id,
        room_id=payload.room_id,
        start=payload.start,
        end=payload.end,
        template_id=payload.template_id,
    )


@router.post("/bookings.reschedule", response_model=BookingOut)
def bookings_reschedule(payload: BookingReschedule, db: Session = Depends(get_db)):
    return scheduling.reschedule_booking(db, payload.id, payload.start, payload.end)


@router.post("/bookings.cancel", response_model=BookingOut)
def bookings_cancel(payload: BookingAction, db: Session = Depends(get_db)):
    return scheduling.cancel_booking(db, payload.id)


@router.post("/bookings.checkin", response_model=BookingOut)
def bookings_checkin(payload: CheckIn, db: Session = Depends(get_db)):
    return scheduling.check_in_booking(db, payload.id, payload.attended)


@router.get("/bookings.list", response_model=BookingsListResponse)
def bookings_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    instructor_id: Optional[str] = None,
    client_id: Optional[str] = None,
    room_id: Optional[str] = None,
    status: Optional[str] = None,
):
    stmt = select(Booking)
    if instructor_id:
        stmt = stmt.where(Booking.instructor_id == instructor_id)
    if client_id:
        stmt = stmt.where(Booking.client_id == client_id)
    if room_id:
        stmt = stmt.where(Booking.room_id == room_id)
    if status:
        stmt = stmt.where(Booking.status == status)

    total = db.execute(stmt.order_by(Booking.start.desc())).scalars().all()
    items = total[(page - 1) * page_size : page * page_size]
    return {"items": items, "total": len(total)}
