from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field, model_validator


class APIResponse(BaseModel):
    ok: bool = True
    message: Optional[str] = None


class _Window(BaseModel):
    start: datetime
    end: datetime

    @model_validator(mode="after")
    def _end_after_start(self):
        if self.end <= self.start:
            raise ValueError("end must be after start")
        return self


# Bookings (1:1)
class BookingCreate(_Window):
    instructor_id: str
    client_id: str
    room_id: str
    template_id: Optional[str] = None


class BookingReschedule(_Window):
    id: str


class BookingAction(BaseModel):
    id: str


class CheckIn(BaseModel):
    id: str
    attended: bool


class BookingOut(BaseModel):
    id: str
    instructor_id: str
    client_id: str
    room_id: str
    template_id: Optional[str] = None
    start: datetime
    end: datetime
    status: str
    attendance: Optional[str] = None
    cancelled_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None

    model_config = dict(from_attributes=True)


class BookingsListResponse(BaseModel):
    items: List[BookingOut]
    total: int


# Class occurrences and registrations
class OccurrenceCreate(_Window):
    template_id: str
    instructor_id: str
    room_id: str
    capacity: Optional[int] = Field(default=None, ge=0)


class OccurrenceAction(BaseModel):
    id: str


class OccurrenceOut(BaseModel):
    id: str
    template_id: str
    instructor_id: str
    room_id: str
    start: datetime
    end: datetime
    capacity: int
    status: str
    booked_count: int = 0
    available: int = 0
    waitlist_count: int = 0

    model_config = dict(from_attributes=True)


class RegistrationCreate(BaseModel):
    occurrence_id: str
    client_id: str


class RegistrationAction(BaseModel):
    id: str


class RegistrationOut(BaseModel):
    id: str
    occurrence_id: str
    client_id: str
    status: str
    booked_at: datetime
    promoted_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None
    checked_in_at: Optional[datetime] = None
    waitlist_position: Optional[int] = None

    model_config = dict(from_attributes=True)


class RegistrationCancelOut(BaseModel):
    registration: RegistrationOut
    promoted: Optional[RegistrationOut] = None


class RegistrationsListResponse(BaseModel):
    items: List[RegistrationOut]
    total: int


# Pricing
class PriceResolveRequest(BaseModel):
    client_id: str
    occurrence_id: Optional[str] = None
    template_id: Optional[str] = None
    at: Optional[datetime] = None

    @model_validator(mode="after")
    def _one_target(self):
        if (self.occurrence_id is None) == (self.template_id is None):
            raise ValueError("provide exactly one of occurrence_id or template_id")
        return self


class ResolvedPriceOut(BaseModel):
    entry_fee: int
    trainer_fee: int
    currency: str
    source: str
    pricing_id: str


class _PriceRow(BaseModel):
    entry_fee: int = Field(ge=0)
    trainer_fee: int = Field(ge=0)
    currency: str = Field(default="HUF", min_length=3, max_length=8)
    valid_from: datetime
    valid_until: Optional[datetime] = None
    active: bool = True


class ClientOverrideCreate(_PriceRow):
    client_id: str
    occurrence_id: Optional[str] = None
    template_id: Optional[str] = None


class TemplateDefaultCreate(_PriceRow):
    template_id: str


class PriceRowOut(BaseModel):
    id: str
    entry_fee: int
    trainer_fee: int
    currency: str
    valid_from: datetime
    valid_until: Optional[datetime] = None
    active: bool
    client_id: Optional[str] = None
    occurrence_id: Optional[str] = None
    template_id: Optional[str] = None

    model_config = dict(from_attributes=True)


# Settlements
class SettlementPeriod(BaseModel):
    instructor_id: str
    period_start: datetime
    period_end: datetime


class SettlementGenerate(SettlementPeriod):
    created_by: Optional[str] = None
    notes: Optional[str] = Field(default=None, max_length=1000)


class SettlementAction(BaseModel):
    id: str


class SettlementNotes(BaseModel):
    id: str
    notes: Optional[str] = Field(default=None, max_length=1000)


class SettlementItemAction(BaseModel):
    settlement_id: str
    item_id: str


class SettlementItemOut(BaseModel):
    id: str
    session_kind: str
    session_ref: str
    occurrence_id: Optional[str] = None
    booking_id: Optional[str] = None
    client_id: str
    session_start: datetime
    entry_fee: int
    trainer_fee: int
    currency: str
    price_source: str
    pricing_id: str
    status_snapshot: str

    model_config = dict(from_attributes=True)


class SettlementOut(BaseModel):
    id: str
    instructor_id: str
    period_start: datetime
    period_end: datetime
    status: str
    currency: str
    total_entry_fee: int
    total_trainer_fee: int
    policy: Dict[str, Any] = {}
    notes: Optional[str] = None
    created_by: Optional[str] = None
    created_at: datetime
    finalized_at: Optional[datetime] = None
    paid_at: Optional[datetime] = None
    items: List[SettlementItemOut] = []


class SettlementSummaryOut(BaseModel):
    id: str
    instructor_id: str
    period_start: datetime
    period_end: datetime
    status: str
    currency: str
    total_entry_fee: int
    total_trainer_fee: int
    items_count: int
    created_at: datetime


class SettlementsListResponse(BaseModel):
    items: List[SettlementSummaryOut]
    total: int


class PricingFailureOut(BaseModel):
    session_kind: str
    session_ref: str
    client_id: str
    occurrence_id: Optional[str] = None
    booking_id: Optional[str] = None
    template_id: Optional[str] = None
    reason: str
    message: str


class PreviewItemOut(BaseModel):
    session_kind: str
    session_ref: str
    client_id: str
    session_start: datetime
    status: str
    entry_fee: int
    trainer_fee: int
    currency: str
    price_source: str


class SettlementPreviewOut(BaseModel):
    instructor_id: str
    period_start: datetime
    period_end: datetime
    currency: Optional[str] = None
    total_entry_fee: int
    total_trainer_fee: int
    already_settled: int
    items: List[PreviewItemOut]
    failures: List[PricingFailureOut]


class SettlementGenerateOut(BaseModel):
    ok: bool = True
    message: Optional[str] = None
    settlement: Optional[SettlementOut] = None
    failures: List[PricingFailureOut] = []


# Policy
class PolicyOut(BaseModel):
    late_cancellation_hours: int
    no_show_charge_entry_fee: bool
    no_show_charge_trainer_fee: bool
    late_cancel_charge_entry_fee: bool
    late_cancel_charge_trainer_fee: bool


class PolicyUpdate(BaseModel):
    late_cancellation_hours: Optional[int] = Field(default=None, ge=0)
    no_show_charge_entry_fee: Optional[bool] = None
    no_show_charge_trainer_fee: Optional[bool] = None
    late_cancel_charge_entry_fee: Optional[bool] = None
    late_cancel_charge_trainer_fee: Optional[bool] = None


# Activity feed
class ActivityOut(BaseModel):
    id: int
    ts: datetime
    actor: Optional[str] = None
    action: str
    entity: Optional[str] = None
    entity_id: Optional[str] = None
    status: Optional[str] = None
    message: Optional[str] = None
    meta: Dict[str, Any] = {}


class ActivityListResponse(BaseModel):
    items: List[ActivityOut]
    total: int
