from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, BackgroundTasks, Depends, Query
from sqlalchemy.orm import Session

from .. import settlement_lifecycle as lifecycle
from ..deps import get_actor, get_db, require_token
from ..errors import EmptyPeriod
from ..models import Settlement
from ..policy import load_policy, save_policy
from ..schemas import (
    APIResponse,
    PolicyOut,
    PolicyUpdate,
    SettlementAction,
    SettlementGenerate,
    SettlementGenerateOut,
    SettlementItemAction,
    SettlementItemOut,
    SettlementNotes,
    SettlementOut,
    SettlementPeriod,
    SettlementPreviewOut,
    SettlementsListResponse,
)
from ..settlement_tasks import run_settlement_generation
from ..settlements import GenerationResult, generate_settlement, preview_settlement


router = APIRouter(prefix="/api", tags=["settlements"], dependencies=[Depends(require_token)])


def _settlement_out(settlement: Settlement) -> SettlementOut:
    return SettlementOut(
        id=settlement.id,
        instructor_id=settlement.instructor_id,
        period_start=settlement.period_start,
        period_end=settlement.period_end,
        status=settlement.status,
        currency=settlement.currency,
        total_entry_fee=settlement.total_entry_fee,
        total_trainer_fee=settlement.total_trainer_fee,
        policy=json.loads(settlement.policy_json) if settlement.policy_json else {},
        notes=settlement.notes,
        created_by=settlement.created_by,
        created_at=settlement.created_at,
        finalized_at=settlement.finalized_at,
        paid_at=settlement.paid_at,
        items=[SettlementItemOut.model_validate(i) for i in settlement.items],
    )


def _generation_out(result: GenerationResult) -> SettlementGenerateOut:
    failures = [f.as_dict() for f in result.failures]
    if result.settlement is None:
        return SettlementGenerateOut(
            ok=False, message="No session could be priced; nothing was written", failures=failures
        )
    message = f"{len(failures)} session(s) could not be priced" if failures else None
    return SettlementGenerateOut(message=message, settlement=_settlement_out(result.settlement), failures=failures)


def _empty_out(exc: EmptyPeriod) -> SettlementGenerateOut:
    return SettlementGenerateOut(message=exc.message, settlement=None, failures=[])


@router.post("/settlements.preview", response_model=SettlementPreviewOut)
def settlements_preview(payload: SettlementPeriod, db: Session = Depends(get_db)):
    try:
        plan = preview_settlement(db, payload.instructor_id, payload.period_start, payload.period_end)
    except EmptyPeriod as exc:
        return SettlementPreviewOut(
            instructor_id=payload.instructor_id,
            period_start=payload.period_start,
            period_end=payload.period_end,
            total_entry_fee=0,
            total_trainer_fee=0,
            already_settled=exc.details.get("already_settled", 0),
            items=[],
            failures=[],
        )
    items = [
        {
            "session_kind": p.session.kind,
            "session_ref": p.session.ref,
            "client_id": p.session.client_id,
            "session_start": p.session.start,
            "status": p.session.status,
            "entry_fee": p.entry_fee,
            "trainer_fee": p.trainer_fee,
            "currency": p.price.currency,
            "price_source": p.price.source,
        }
        for p in plan.items
    ]
    return SettlementPreviewOut(
        instructor_id=plan.instructor_id,
        period_start=plan.period_start,
        period_end=plan.period_end,
        currency=plan.currency,
        total_entry_fee=plan.total_entry_fee,
        total_trainer_fee=plan.total_trainer_fee,
        already_settled=plan.already_settled,
        items=items,
        failures=[f.as_dict() for f in plan.failures],
    )


@router.post("/settlements.generate", response_model=SettlementGenerateOut)
def settlements_generate(
    payload: SettlementGenerate, db: Session = Depends(get_db), actor: Optional[str] = Depends(get_actor)
):
    try:
        result = generate_settlement(
            db,
            payload.instructor_id,
            payload.period_start,
            payload.period_end,
            created_by=payload.created_by or actor,
            notes=payload.notes,
        )
    except EmptyPeriod as exc:
        return _empty_out(exc)
    return _generation_out(result)


@router.post("/settlements.generate_async", response_model=APIResponse)
def settlements_generate_async(
    payload: SettlementGenerate, background_tasks: BackgroundTasks, actor: Optional[str] = Depends(get_actor)
):
    background_tasks.add_task(
        run_settlement_generation,
        payload.instructor_id,
        payload.period_start,
        payload.period_end,
        created_by=payload.created_by or actor,
        notes=payload.notes,
    )
    return APIResponse(ok=True, message="Settlement generation queued")


@router.get("/settlements.get", response_model=SettlementOut)
def settlements_get(id: str, db: Session = Depends(get_db)):
    return _settlement_out(lifecycle.get_settlement(db, id))


@router.get("/settlements.list", response_model=SettlementsListResponse)
def settlements_list(
    db: Session = Depends(get_db),
    page: int = Query(default=1, ge=1),
    page_size: int = Query(default=50, ge=1, le=500),
    instructor_id: Optional[str] = None,
    status: Optional[str] = None,
    period_from: Optional[datetime] = None,
    period_to: Optional[datetime] = None,
):
    total = lifecycle.list_settlements(
        db, instructor_id=instructor_id, status=status, period_from=period_from, period_to=period_to
    )
    items = [
        {
            "id": s.id,
            "instructor_id": s.instructor_id,
            "period_start": s.period_start,
            "period_end": s.period_end,
            "status": s.status,
            "currency": s.currency,
            "total_entry_fee": s.total_entry_fee,
            "total_trainer_fee": s.total_trainer_fee,
            "items_count": len(s.items),
            "created_at": s.created_at,
        }
        for s in total[(page - 1) * page_size : page * page_size]
    ]
    return {"items": items, "total": len(total)}


@router.post("/settlements.finalize", response_model=SettlementOut)
def settlements_finalize(
    payload: SettlementAction, db: Session = Depends(get_db), actor: Optional[str] = Depends(get_actor)
):
    return _settlement_out(lifecycle.finalize_settlement(db, payload.id, actor=actor))


@router.post("/settlements.pay", response_model=SettlementOut)
def settlements_pay(
    payload: SettlementAction, db: Session = Depends(get_db), actor: Optional[str] = Depends(get_actor)
):
    return _settlement_out(lifecycle.mark_settlement_paid(db, payload.id, actor=actor))


@router.post("/settlements.notes", response_model=SettlementOut)
def settlements_notes(payload: SettlementNotes, db: Session = Depends(get_db)):
    return _settlement_out(lifecycle.update_notes(db, payload.id, payload.notes))


@router.post("/settlements.items.remove", response_model=SettlementOut)
def settlements_items_remove(payload: SettlementItemAction, db: Session = Depends(get_db)):
    return _settlement_out(lifecycle.remove_item(db, payload.settlement_id, payload.item_id))


@router.post("/settlements.delete", response_model=APIResponse)
def settlements_delete(
    payload: SettlementAction, db: Session = Depends(get_db), actor: Optional[str] = Depends(get_actor)
):
    lifecycle.delete_draft(db, payload.id, actor=actor)
    return APIResponse(ok=True, message="Draft deleted")


@router.post("/settlements.regenerate", response_model=SettlementGenerateOut)
def settlements_regenerate(payload: SettlementAction, db: Session = Depends(get_db)):
    try:
        result = lifecycle.regenerate_draft(db, payload.id)
    except EmptyPeriod as exc:
        return _empty_out(exc)
    return _generation_out(result)


@router.get("/policy.get", response_model=PolicyOut)
def policy_get(db: Session = Depends(get_db)):
    return load_policy(db).model_dump()


@router.post("/policy.set", response_model=PolicyOut)
def policy_set(payload: PolicyUpdate, db: Session = Depends(get_db)):
    return save_policy(db, **payload.model_dump(exclude_none=True)).model_dump()
