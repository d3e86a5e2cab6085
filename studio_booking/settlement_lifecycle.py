from __future__ import annotations

"""
Settlement lifecycle: draft -> finalized -> paid, forward only.

draft      items may be regenerated or removed, the settlement may be deleted
finalized  items are locked; only the status may advance (notes stay editable)
paid       terminal; header and items are frozen

A session-level flush guard backs these rules for code that bypasses the functions below.
"""

import logging
from datetime import datetime
from typing import List, Optional

from sqlalchemy import event, inspect, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from .audit import record_event
from .database import atomic
from .errors import Conflict, InvalidStateTransition, NotFound, SettlementLocked
from .models import Settlement, SettlementItem, SettlementStatus
from .policy import load_policy
from .settlements import GenerationResult, ShouldCancel, plan_settlement, write_items
from .utils import as_naive_utc, utcnow


logger = logging.getLogger(__name__)

TRANSITIONS = {
    SettlementStatus.DRAFT.value: {SettlementStatus.FINALIZED.value},
    SettlementStatus.FINALIZED.value: {SettlementStatus.PAID.value},
    SettlementStatus.PAID.value: set(),
}

# Header columns frozen once a settlement leaves draft
_LOCKED_HEADER = {
    "instructor_id",
    "period_start",
    "period_end",
    "currency",
    "total_entry_fee",
    "total_trainer_fee",
    "policy_json",
}


def _changed_columns(obj) -> set:
    state = inspect(obj)
    return {attr.key for attr in state.mapper.column_attrs if state.attrs[attr.key].history.has_changes()}


def _stored_status(obj: Settlement) -> str:
    history = inspect(obj).attrs["status"].history
    if history.deleted:
        return history.deleted[0]
    return obj.status


@event.listens_for(Session, "before_flush")
def _guard_settlements(session: Session, flush_context, instances) -> None:
    for obj in session.dirty:
        if isinstance(obj, SettlementItem) and _changed_columns(obj):
            raise SettlementLocked("Settlement items are immutable once written", details={"item_id": obj.id})
        if isinstance(obj, Settlement):
            stored = _stored_status(obj)
            changed = _changed_columns(obj)
            if stored == SettlementStatus.PAID.value and changed:
                raise SettlementLocked("Paid settlements cannot be modified", details={"settlement_id": obj.id})
            if stored != SettlementStatus.DRAFT.value and changed & _LOCKED_HEADER:
                raise SettlementLocked(
                    "Settlement totals and period are locked", details={"settlement_id": obj.id}
                )
    for obj in session.deleted:
        if isinstance(obj, Settlement) and _stored_status(obj) != SettlementStatus.DRAFT.value:
            raise SettlementLocked("Only draft settlements can be deleted", details={"settlement_id": obj.id})


def _stored_settlement_status(connection, settlement_id: Optional[str]) -> Optional[str]:
    return connection.execute(
        select(Settlement.status).where(Settlement.id == settlement_id)
    ).scalar_one_or_none()


# Orphaned items are only known once the flush runs, so these check each row as it is written
@event.listens_for(SettlementItem, "before_insert")
def _guard_item_insert(mapper, connection, target: SettlementItem) -> None:
    stored = _stored_settlement_status(connection, target.settlement_id)
    if stored is not None and stored != SettlementStatus.DRAFT.value:
        raise SettlementLocked(
            "Items cannot be added to a finalized settlement",
            details={"settlement_id": target.settlement_id, "status": stored},
        )


@event.listens_for(SettlementItem, "before_delete")
def _guard_item_delete(mapper, connection, target: SettlementItem) -> None:
    stored = _stored_settlement_status(connection, target.settlement_id)
    if stored is not None and stored != SettlementStatus.DRAFT.value:
        raise SettlementLocked(
            "Items of a finalized settlement cannot be removed",
            details={"settlement_id": target.settlement_id, "item_id": target.id, "status": stored},
        )


def get_settlement(db: Session, settlement_id: str) -> Settlement:
    settlement = db.get(Settlement, settlement_id)
    if settlement is None:
        raise NotFound("Settlement not found", details={"settlement_id": settlement_id})
    return settlement


def _lock(db: Session, settlement_id: str) -> Settlement:
    settlement = db.execute(
        select(Settlement).where(Settlement.id == settlement_id).with_for_update()
    ).scalar_one_or_none()
    if settlement is None:
        raise NotFound("Settlement not found", details={"settlement_id": settlement_id})
    return settlement


def list_settlements(
    db: Session,
    instructor_id: Optional[str] = None,
    status: Optional[str] = None,
    period_from: Optional[datetime] = None,
    period_to: Optional[datetime] = None,
) -> List[Settlement]:
    stmt = select(Settlement)
    if instructor_id:
        stmt = stmt.where(Settlement.instructor_id == instructor_id)
    if status:
        stmt = stmt.where(Settlement.status == status)
    if period_from:
        stmt = stmt.where(Settlement.period_start >= as_naive_utc(period_from))
    if period_to:
        stmt = stmt.where(Settlement.period_end <= as_naive_utc(period_to))
    return list(db.execute(stmt.order_by(Settlement.created_at.desc())).scalars().all())


def ensure_items_editable(settlement: Settlement) -> None:
    if settlement.status != SettlementStatus.DRAFT.value:
        raise SettlementLocked(
            f"Settlement is {settlement.status}; items are locked",
            details={"settlement_id": settlement.id, "status": settlement.status},
        )


def _advance(db: Session, settlement_id: str, target: str, actor: Optional[str], now: Optional[datetime]) -> Settlement:
    stamp = as_naive_utc(now) or utcnow()
    with atomic(db):
        settlement = _lock(db, settlement_id)
        if target not in TRANSITIONS[settlement.status]:
            raise InvalidStateTransition(
                f"Cannot move settlement from {settlement.status} to {target}",
                details={"settlement_id": settlement.id, "status": settlement.status, "requested": target},
            )
        settlement.status = target
        if target == SettlementStatus.FINALIZED.value:
            settlement.finalized_at = stamp
        elif target == SettlementStatus.PAID.value:
            settlement.paid_at = stamp
        record_event(
            db,
            f"settlement.{target}",
            "settlement",
            settlement.id,
            actor=actor,
            status=target,
            meta={
                "instructor_id": settlement.instructor_id,
                "total_entry_fee": settlement.total_entry_fee,
                "total_trainer_fee": settlement.total_trainer_fee,
                "currency": settlement.currency,
            },
        )
    logger.info("settlement %s id=%s", target, settlement.id)
    return settlement


def finalize_settlement(
    db: Session, settlement_id: str, actor: Optional[str] = None, now: Optional[datetime] = None
) -> Settlement:
    return _advance(db, settlement_id, SettlementStatus.FINALIZED.value, actor, now)


def mark_settlement_paid(
    db: Session, settlement_id: str, actor: Optional[str] = None, now: Optional[datetime] = None
) -> Settlement:
    return _advance(db, settlement_id, SettlementStatus.PAID.value, actor, now)


def update_notes(db: Session, settlement_id: str, notes: Optional[str]) -> Settlement:
    with atomic(db):
        settlement = _lock(db, settlement_id)
        if settlement.status == SettlementStatus.PAID.value:
            raise SettlementLocked("Paid settlements cannot be modified", details={"settlement_id": settlement.id})
        settlement.notes = notes
    return settlement


def remove_item(db: Session, settlement_id: str, item_id: str) -> Settlement:
    """Drop one item from a draft and re-sum the totals; the session becomes unsettled again."""
    with atomic(db):
        settlement = _lock(db, settlement_id)
        ensure_items_editable(settlement)
        item = next((i for i in settlement.items if i.id == item_id), None)
        if item is None:
            raise NotFound("Settlement item not found", details={"settlement_id": settlement_id, "item_id": item_id})
        settlement.items.remove(item)
        settlement.total_entry_fee = sum(i.entry_fee for i in settlement.items)
        settlement.total_trainer_fee = sum(i.trainer_fee for i in settlement.items)
    return settlement


def delete_draft(db: Session, settlement_id: str, actor: Optional[str] = None) -> None:
    with atomic(db):
        settlement = _lock(db, settlement_id)
        ensure_items_editable(settlement)
        record_event(db, "settlement.deleted", "settlement", settlement.id, actor=actor)
        db.delete(settlement)


def regenerate_draft(db: Session, settlement_id: str, should_cancel: ShouldCancel = None) -> GenerationResult:
    """Recompute a draft in place with current pricing and policy.

    If nothing could be priced the draft is left as it was and only the failures are returned.
    EmptyPeriod propagates without touching the draft.
    """
    with atomic(db):
        settlement = _lock(db, settlement_id)
        ensure_items_editable(settlement)
        plan = plan_settlement(
            db,
            settlement.instructor_id,
            settlement.period_start,
            settlement.period_end,
            load_policy(db),
            exclude_settlement_id=settlement.id,
            should_cancel=should_cancel,
        )
        if not plan.items:
            return GenerationResult(settlement=settlement, failures=plan.failures)

        settlement.items.clear()
        db.flush()
        write_items(db, settlement, plan)
        record_event(
            db,
            "settlement.regenerated",
            "settlement",
            settlement.id,
            status=settlement.status,
            meta={"items": len(plan.items), "failures": len(plan.failures)},
        )
        try:
            db.flush()
        except IntegrityError as exc:
            raise Conflict(
                "Some sessions were settled by a concurrent run; retry regeneration",
                code="SessionAlreadySettled",
                details={"settlement_id": settlement.id},
            ) from exc
    return GenerationResult(settlement=settlement, failures=plan.failures)
