from __future__ import annotations

"""
Layered price resolution.

Tiers are evaluated strictly in order and the first match wins:

1. client override scoped to the exact occurrence
2. client override scoped to the template
3. template default

A row matches when it is active and ``valid_from <= at <= valid_until`` (open-ended when
``valid_until`` is NULL). When several rows in one tier match, the latest ``valid_from``
wins; ``created_at`` and then id settle exact ties so the answer is always the same.
No match is a hard ``MissingPricing``; a zero fee is never invented.
"""

from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from .database import atomic
from .errors import DomainError, MissingPricing, NotFound
from .models import (
    Booking,
    ClassOccurrence,
    ClassPricingDefault,
    ClassTemplate,
    Client,
    ClientClassPricing,
)
from .utils import as_naive_utc, new_id, utcnow


class PriceSource(str, Enum):
    OCCURRENCE_OVERRIDE = "occurrence_override"
    TEMPLATE_OVERRIDE = "template_override"
    TEMPLATE_DEFAULT = "template_default"


@dataclass(frozen=True)
class PriceTarget:
    """What is being priced: a client in an occurrence, or a client on a template-based booking."""

    client_id: str
    template_id: Optional[str]
    occurrence_id: Optional[str] = None
    booking_id: Optional[str] = None


@dataclass(frozen=True)
class ResolvedPrice:
    entry_fee: int
    trainer_fee: int
    currency: str
    source: str
    pricing_id: str

    def as_dict(self) -> Dict[str, Any]:
        return asdict(self)


@dataclass(frozen=True)
class PriceTier:
    source: PriceSource
    model: Any
    scope: Callable[[PriceTarget], Optional[List[Any]]]


TIERS: Tuple[PriceTier, ...] = (
    PriceTier(
        PriceSource.OCCURRENCE_OVERRIDE,
        ClientClassPricing,
        lambda t: [
            ClientClassPricing.client_id == t.client_id,
            ClientClassPricing.occurrence_id == t.occurrence_id,
        ]
        if t.occurrence_id
        else None,
    ),
    PriceTier(
        PriceSource.TEMPLATE_OVERRIDE,
        ClientClassPricing,
        lambda t: [
            ClientClassPricing.client_id == t.client_id,
            ClientClassPricing.template_id == t.template_id,
        ]
        if t.template_id
        else None,
    ),
    PriceTier(
        PriceSource.TEMPLATE_DEFAULT,
        ClassPricingDefault,
        lambda t: [ClassPricingDefault.template_id == t.template_id] if t.template_id else None,
    ),
)


def _valid_at(model, at: datetime) -> List[Any]:
    return [
        model.active.is_(True),
        model.valid_from <= at,
        or_(model.valid_until.is_(None), model.valid_until >= at),
    ]


def resolve_price(db: Session, target: PriceTarget, at: datetime) -> ResolvedPrice:
    at = as_naive_utc(at)
    for tier in TIERS:
        scope = tier.scope(target)
        if scope is None:
            continue
        model = tier.model
        row = db.execute(
            select(model)
            .where(*scope, *_valid_at(model, at))
            .order_by(model.valid_from.desc(), model.created_at.desc(), model.id.desc())
            .limit(1)
        ).scalars().first()
        if row is not None:
            return ResolvedPrice(
                entry_fee=row.entry_fee,
                trainer_fee=row.trainer_fee,
                currency=row.currency,
                source=tier.source.value,
                pricing_id=row.id,
            )
    raise MissingPricing(
        "No pricing configuration found for this client and class",
        details={
            "client_id": target.client_id,
            "occurrence_id": target.occurrence_id,
            "booking_id": target.booking_id,
            "template_id": target.template_id,
            "at": at.isoformat(),
        },
    )


def target_for_occurrence(occurrence: ClassOccurrence, client_id: str) -> PriceTarget:
    return PriceTarget(client_id=client_id, template_id=occurrence.template_id, occurrence_id=occurrence.id)


def target_for_booking(booking: Booking) -> PriceTarget:
    return PriceTarget(client_id=booking.client_id, template_id=booking.template_id, booking_id=booking.id)


def resolve_for_occurrence(
    db: Session, client_id: str, occurrence_id: str, at: Optional[datetime] = None
) -> ResolvedPrice:
    occurrence = db.get(ClassOccurrence, occurrence_id)
    if occurrence is None:
        raise NotFound("Occurrence not found", details={"occurrence_id": occurrence_id})
    return resolve_price(db, target_for_occurrence(occurrence, client_id), at or occurrence.start)


def resolve_for_template(db: Session, client_id: str, template_id: str, at: Optional[datetime] = None) -> ResolvedPrice:
    return resolve_price(db, PriceTarget(client_id=client_id, template_id=template_id), at or utcnow())


def _check_window(valid_from: datetime, valid_until: Optional[datetime]) -> None:
    if valid_until is not None and valid_until < valid_from:
        raise DomainError(
            "valid_until must not be before valid_from",
            code="InvalidValidityWindow",
            details={"valid_from": valid_from.isoformat(), "valid_until": valid_until.isoformat()},
        )


def create_client_override(
    db: Session,
    client_id: str,
    entry_fee: int,
    trainer_fee: int,
    currency: str,
    valid_from: datetime,
    valid_until: Optional[datetime] = None,
    occurrence_id: Optional[str] = None,
    template_id: Optional[str] = None,
    active: bool = True,
) -> ClientClassPricing:
    if (occurrence_id is None) == (template_id is None):
        raise DomainError("Exactly one of occurrence_id or template_id is required", code="InvalidOverrideScope")
    valid_from, valid_until = as_naive_utc(valid_from), as_naive_utc(valid_until)
    _check_window(valid_from, valid_until)
    with atomic(db):
        if db.get(Client, client_id) is None:
            raise NotFound("Client not found", details={"client_id": client_id})
        if occurrence_id is not None and db.get(ClassOccurrence, occurrence_id) is None:
            raise NotFound("Occurrence not found", details={"occurrence_id": occurrence_id})
        if template_id is not None and db.get(ClassTemplate, template_id) is None:
            raise NotFound("Template not found", details={"template_id": template_id})
        row = ClientClassPricing(
            id=new_id(),
            client_id=client_id,
            occurrence_id=occurrence_id,
            template_id=template_id,
            entry_fee=entry_fee,
            trainer_fee=trainer_fee,
            currency=currency,
            valid_from=valid_from,
            valid_until=valid_until,
            active=active,
        )
        db.add(row)
    return row


def create_template_default(
    db: Session,
    template_id: str,
    entry_fee: int,
    trainer_fee: int,
    currency: str,
    valid_from: datetime,
    valid_until: Optional[datetime] = None,
    active: bool = True,
) -> ClassPricingDefault:
    valid_from, valid_until = as_naive_utc(valid_from), as_naive_utc(valid_until)
    _check_window(valid_from, valid_until)
    with atomic(db):
        if db.get(ClassTemplate, template_id) is None:
            raise NotFound("Template not found", details={"template_id": template_id})
        row = ClassPricingDefault(
            id=new_id(),
            template_id=template_id,
            entry_fee=entry_fee,
            trainer_fee=trainer_fee,
            currency=currency,
            valid_from=valid_from,
            valid_until=valid_until,
            active=active,
        )
        db.add(row)
    return row
