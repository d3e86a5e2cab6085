from __future__ import annotations

from fastapi import APIRouter, Depends
from sqlalchemy.orm import Session

from .. import pricing
from ..deps import get_db, require_token
from ..schemas import ClientOverrideCreate, PriceResolveRequest, PriceRowOut, ResolvedPriceOut, TemplateDefaultCreate
from ..utils import as_naive_utc


router = APIRouter(prefix="/api", tags=["pricing"], dependencies=[Depends(require_token)])


@router.post("/pricing.resolve", response_model=ResolvedPriceOut)
def pricing_resolve(payload: PriceResolveRequest, db: Session = Depends(get_db)):
    at = as_naive_utc(payload.at)
    if payload.occurrence_id:
        price = pricing.resolve_for_occurrence(db, payload.client_id, payload.occurrence_id, at)
    else:
        price = pricing.resolve_for_template(db, payload.client_id, payload.template_id, at)
    return price.as_dict()


@router.post("/pricing.overrides.create", response_model=PriceRowOut)
def pricing_overrides_create(payload: ClientOverrideCreate, db: Session = Depends(get_db)):
    return pricing.create_client_override(
        db,
        client_id=payload.client_id,
        entry_fee=payload.entry_fee,
        trainer_fee=payload.trainer_fee,
        currency=payload.currency,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        occurrence_id=payload.occurrence_id,
        template_id=payload.template_id,
        active=payload.active,
    )


@router.post("/pricing.defaults.create", response_model=PriceRowOut)
def pricing_defaults_create(payload: TemplateDefaultCreate, db: Session = Depends(get_db)):
    return pricing.create_template_default(
        db,
        template_id=payload.template_id,
        entry_fee=payload.entry_fee,
        trainer_fee=payload.trainer_fee,
        currency=payload.currency,
        valid_from=payload.valid_from,
        valid_until=payload.valid_until,
        active=payload.active,
    )
