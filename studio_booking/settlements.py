from __future__ import annotations

"""
Settlement generation: turn an instructor's attended, no-show and cancelled sessions in a
period into an immutable payout statement.

Steps
- collect 1:1 bookings and class registrations whose session interval intersects
  [period_start, period_end)
- apply the inclusion policy (attended always; no-show and late cancellation per policy)
- drop sessions that already have a settlement item anywhere
- price each remaining session at its own start time
- persist header plus items in one transaction

Pricing gaps do not abort a run. They are collected and returned next to whatever did
resolve, so the operator can fix the gaps and run again; the next run only picks up the
sessions that are still unsettled.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Dict, List, Optional, Set, Tuple

from sqlalchemy import and_, or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import record_event
from .config import get_settings
from .database import atomic
from .errors import Conflict, DomainError, EmptyPeriod, GenerationCancelled, MissingPricing, NotFound
from .models import (
    Attendance,
    Booking,
    BookingStatus,
    ClassOccurrence,
    ClassRegistration,
    Instructor,
    OccurrenceStatus,
    RegistrationStatus,
    SessionKind,
    Settlement,
    SettlementItem,
    SettlementStatus,
)
from .policy import FeeShare, SettlementPolicy, load_policy
from .pricing import PriceTarget, ResolvedPrice, resolve_price, target_for_booking, target_for_occurrence
from .utils import as_naive_utc, new_id


logger = logging.getLogger(__name__)

ShouldCancel = Optional[Callable[[], bool]]


@dataclass(frozen=True)
class BillableSession:
    kind: str
    ref: str
    client_id: str
    start: datetime
    status: str
    cancelled_at: Optional[datetime]
    target: PriceTarget

    @property
    def key(self) -> Tuple[str, str]:
        return (self.kind, self.ref)


@dataclass
class PricingFailure:
    session_kind: str
    session_ref: str
    client_id: str
    occurrence_id: Optional[str]
    booking_id: Optional[str]
    template_id: Optional[str]
    reason: str
    message: str

    def as_dict(self) -> Dict[str, Any]:
        return {
            "session_kind": self.session_kind,
            "session_ref": self.session_ref,
            "client_id": self.client_id,
            "occurrence_id": self.occurrence_id,
            "booking_id": self.booking_id,
            "template_id": self.template_id,
            "reason": self.reason,
            "message": self.message,
        }


@dataclass
class PlannedItem:
    session: BillableSession
    price: ResolvedPrice
    share: FeeShare

    @property
    def entry_fee(self) -> int:
        return self.price.entry_fee if self.share.entry else 0

    @property
    def trainer_fee(self) -> int:
        return self.price.trainer_fee if self.share.trainer else 0


@dataclass
class SettlementPlan:
    instructor_id: str
    period_start: datetime
    period_end: datetime
    policy: SettlementPolicy
    currency: Optional[str] = None
    items: List[PlannedItem] = field(default_factory=list)
    failures: List[PricingFailure] = field(default_factory=list)
    already_settled: int = 0

    @property
    def total_entry_fee(self) -> int:
        return sum(item.entry_fee for item in self.items)

    @property
    def total_trainer_fee(self) -> int:
        return sum(item.trainer_fee for item in self.items)


@dataclass
class GenerationResult:
    settlement: Optional[Settlement]
    failures: List[PricingFailure] = field(default_factory=list)


def _failure(session: BillableSession, reason: str, message: str) -> PricingFailure:
    return PricingFailure(
        session_kind=session.kind,
        session_ref=session.ref,
        client_id=session.client_id,
        occurrence_id=session.target.occurrence_id,
        booking_id=session.target.booking_id,
        template_id=session.target.template_id,
        reason=reason,
        message=message,
    )


def _check_period(period_start: datetime, period_end: datetime) -> None:
    if period_end <= period_start:
        raise DomainError(
            "period_end must be after period_start",
            code="InvalidPeriod",
            details={"period_start": period_start.isoformat(), "period_end": period_end.isoformat()},
        )


def collect_sessions(
    db: Session, instructor_id: str, period_start: datetime, period_end: datetime
) -> List[BillableSession]:
    """Sessions with a settled outcome whose interval intersects [period_start, period_end)."""
    sessions: List[BillableSession] = []

    bookings = db.execute(
        select(Booking).where(
            Booking.instructor_id == instructor_id,
            Booking.start < period_end,
            Booking.end > period_start,
            or_(
                and_(
                    Booking.status == BookingStatus.COMPLETED.value,
                    Booking.attendance.in_([Attendance.ATTENDED.value, Attendance.NO_SHOW.value]),
                ),
                Booking.status == BookingStatus.CANCELLED.value,
            ),
        )
    ).scalars().all()
    for booking in bookings:
        status = booking.attendance if booking.status == BookingStatus.COMPLETED.value else booking.status
        sessions.append(
            BillableSession(
                kind=SessionKind.BOOKING.value,
                ref=booking.id,
                client_id=booking.client_id,
                start=booking.start,
                status=status,
                cancelled_at=booking.cancelled_at,
                target=target_for_booking(booking),
            )
        )

    rows = db.execute(
        select(ClassRegistration, ClassOccurrence)
        .join(ClassOccurrence, ClassRegistration.occurrence_id == ClassOccurrence.id)
        .where(
            ClassOccurrence.instructor_id == instructor_id,
            ClassOccurrence.status != OccurrenceStatus.CANCELLED.value,
            ClassOccurrence.start < period_end,
            ClassOccurrence.end > period_start,
            or_(
                ClassRegistration.status.in_([RegistrationStatus.ATTENDED.value, RegistrationStatus.NO_SHOW.value]),
                and_(
                    ClassRegistration.status == RegistrationStatus.CANCELLED.value,
                    ClassRegistration.cancelled_from == RegistrationStatus.BOOKED.value,
                ),
            ),
        )
    ).all()
    for registration, occurrence in rows:
        sessions.append(
            BillableSession(
                kind=SessionKind.REGISTRATION.value,
                ref=registration.id,
                client_id=registration.client_id,
                start=occurrence.start,
                status=registration.status,
                cancelled_at=registration.cancelled_at,
                target=target_for_occurrence(occurrence, registration.client_id),
            )
        )

    sessions.sort(key=lambda s: (s.start, s.kind, s.ref))
    return sessions


def settled_session_keys(db: Session, exclude_settlement_id: Optional[str] = None) -> Set[Tuple[str, str]]:
    stmt = select(SettlementItem.session_kind, SettlementItem.session_ref)
    if exclude_settlement_id:
        stmt = stmt.where(SettlementItem.settlement_id != exclude_settlement_id)
    return {(kind, ref) for kind, ref in db.execute(stmt).all()}


def plan_settlement(
    db: Session,
    instructor_id: str,
    period_start: datetime,
    period_end: datetime,
    policy: SettlementPolicy,
    exclude_settlement_id: Optional[str] = None,
    should_cancel: ShouldCancel = None,
) -> SettlementPlan:
    """Price every eligible session; raises EmptyPeriod when nothing is eligible."""
    plan = SettlementPlan(
        instructor_id=instructor_id,
        period_start=period_start,
        period_end=period_end,
        policy=policy,
    )
    settled = settled_session_keys(db, exclude_settlement_id)
    eligible = 0
    for session in collect_sessions(db, instructor_id, period_start, period_end):
        if should_cancel is not None and should_cancel():
            raise GenerationCancelled(
                "Settlement generation cancelled by operator",
                details={"instructor_id": instructor_id, "priced_so_far": len(plan.items)},
            )
        share = policy.share_for(session.status, session.start, session.cancelled_at)
        if share is None:
            continue
        if session.key in settled:
            plan.already_settled += 1
            continue
        eligible += 1
        try:
            price = resolve_price(db, session.target, session.start)
        except MissingPricing as exc:
            logger.warning(
                "missing pricing instructor=%s kind=%s ref=%s client=%s",
                instructor_id,
                session.kind,
                session.ref,
                session.client_id,
            )
            plan.failures.append(_failure(session, "missing_pricing", exc.message))
            continue
        if plan.currency is None:
            plan.currency = price.currency
        elif price.currency != plan.currency:
            plan.failures.append(
                _failure(
                    session,
                    "currency_mismatch",
                    f"Resolved currency {price.currency} differs from settlement currency {plan.currency}",
                )
            )
            continue
        plan.items.append(PlannedItem(session=session, price=price, share=share))

    if eligible == 0:
        raise EmptyPeriod(
            "No eligible sessions in period",
            details={
                "instructor_id": instructor_id,
                "period_start": period_start.isoformat(),
                "period_end": period_end.isoformat(),
                "already_settled": plan.already_settled,
            },
        )
    return plan


def _require_instructor(db: Session, instructor_id: str) -> None:
    if db.get(Instructor, instructor_id) is None:
        raise NotFound("Instructor not found", details={"instructor_id": instructor_id})


def _begin_run(db: Session) -> None:
    # Isolation can only be chosen before the transaction's first statement
    if not db.in_transaction():
        db.connection(execution_options={"isolation_level": get_settings().settlement_isolation_level})


def preview_settlement(
    db: Session, instructor_id: str, period_start: datetime, period_end: datetime
) -> SettlementPlan:
    period_start, period_end = as_naive_utc(period_start), as_naive_utc(period_end)
    _check_period(period_start, period_end)
    _require_instructor(db, instructor_id)
    return plan_settlement(db, instructor_id, period_start, period_end, load_policy(db))


def write_items(db: Session, settlement: Settlement, plan: SettlementPlan) -> None:
    for planned in plan.items:
        session = planned.session
        settlement.items.append(
            SettlementItem(
                id=new_id(),
                session_kind=session.kind,
                session_ref=session.ref,
                occurrence_id=session.target.occurrence_id,
                booking_id=session.target.booking_id,
                client_id=session.client_id,
                session_start=session.start,
                entry_fee=planned.entry_fee,
                trainer_fee=planned.trainer_fee,
                currency=planned.price.currency,
                price_source=planned.price.source,
                pricing_id=planned.price.pricing_id,
                status_snapshot=session.status,
            )
        )
    settlement.currency = plan.currency or get_settings().default_currency
    settlement.total_entry_fee = plan.total_entry_fee
    settlement.total_trainer_fee = plan.total_trainer_fee
    settlement.policy_json = plan.policy.model_dump_json()


def generate_settlement(
    db: Session,
    instructor_id: str,
    period_start: datetime,
    period_end: datetime,
    created_by: Optional[str] = None,
    notes: Optional[str] = None,
    should_cancel: ShouldCancel = None,
) -> GenerationResult:
    """Create a draft settlement for every unsettled, billable session in the period.

    Raises EmptyPeriod when no session is eligible. When sessions are eligible but none could
    be priced, nothing is written and the result carries only the failures.
    """
    period_start, period_end = as_naive_utc(period_start), as_naive_utc(period_end)
    _check_period(period_start, period_end)
    _begin_run(db)
    with atomic(db):
        _require_instructor(db, instructor_id)
        policy = load_policy(db)
        plan = plan_settlement(db, instructor_id, period_start, period_end, policy, should_cancel=should_cancel)
        if not plan.items:
            logger.warning(
                "settlement not created instructor=%s failures=%s", instructor_id, len(plan.failures)
            )
            return GenerationResult(settlement=None, failures=plan.failures)

        settlement = Settlement(
            id=new_id(),
            instructor_id=instructor_id,
            period_start=period_start,
            period_end=period_end,
            status=SettlementStatus.DRAFT.value,
            notes=notes,
            created_by=created_by,
        )
        write_items(db, settlement, plan)
        db.add(settlement)
        record_event(
            db,
            "settlement.generated",
            "settlement",
            settlement.id,
            actor=created_by,
            status=settlement.status,
            meta={
                "instructor_id": instructor_id,
                "items": len(plan.items),
                "failures": len(plan.failures),
                "total_trainer_fee": settlement.total_trainer_fee,
            },
        )
        try:
            db.flush()
        except IntegrityError as exc:
            raise Conflict(
                "Some sessions were settled by a concurrent run; retry generation",
                code="SessionAlreadySettled",
                details={"instructor_id": instructor_id},
            ) from exc
    logger.info(
        "settlement generated id=%s instructor=%s items=%s failures=%s entry=%s trainer=%s",
        settlement.id,
        instructor_id,
        len(plan.items),
        len(plan.failures),
        settlement.total_entry_fee,
        settlement.total_trainer_fee,
    )
    return GenerationResult(settlement=settlement, failures=plan.failures)
