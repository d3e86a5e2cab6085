from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from conftest import Studio, add_client_price, add_default_price
from studio_booking import registrations, scheduling
from studio_booking import settlement_lifecycle as lifecycle
from studio_booking.errors import InvalidStateTransition, NotFound, SettlementLocked
from studio_booking.models import Settlement, SettlementItem
from studio_booking.settlements import generate_settlement
from studio_booking.utils import new_id


T0 = datetime(2032, 2, 9, 8, 0)
PERIOD = (datetime(2032, 2, 1), datetime(2032, 3, 1))


def _draft(db: Session, studio: Studio, attendees: int = 2) -> Settlement:
    add_default_price(db, studio.template_id, 5000, 3000)
    occurrence = scheduling.schedule_occurrence(
        db,
        template_id=studio.template_id,
        instructor_id=studio.instructor_id,
        room_id=studio.room_id,
        start=T0,
        end=T0 + timedelta(hours=1),
        capacity=5,
    )
    for client_id in studio.client_ids[:attendees]:
        reg = registrations.register(db, occurrence.id, client_id, now=T0 - timedelta(days=3))
        registrations.check_in(db, reg.id, attended=True)
    settlement = generate_settlement(db, studio.instructor_id, *PERIOD).settlement
    assert settlement is not None
    return settlement


def test_finalized_settlement_rejects_item_changes(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    finalized = lifecycle.finalize_settlement(db, settlement.id, actor="ops")
    assert finalized.status == "finalized"
    assert finalized.finalized_at is not None

    with pytest.raises(SettlementLocked):
        lifecycle.remove_item(db, settlement.id, settlement.items[0].id)

    # The flush guard also stops writes that bypass the lifecycle functions
    settlement.items[0].entry_fee = 1
    with pytest.raises(SettlementLocked):
        db.flush()
    db.rollback()

    db.refresh(settlement)
    settlement.total_trainer_fee = 0
    with pytest.raises(SettlementLocked):
        db.flush()
    db.rollback()

    db.refresh(settlement)
    settlement.items.remove(settlement.items[0])
    with pytest.raises(SettlementLocked):
        db.flush()
    db.rollback()

    db.refresh(settlement)
    template = settlement.items[0]
    db.add(
        SettlementItem(
            id=new_id(),
            settlement_id=settlement.id,
            session_kind="booking",
            session_ref=new_id(),
            client_id=template.client_id,
            session_start=template.session_start,
            entry_fee=99999,
            trainer_fee=0,
            currency=template.currency,
            price_source=template.price_source,
            pricing_id=template.pricing_id,
            status_snapshot=template.status_snapshot,
        )
    )
    with pytest.raises(SettlementLocked):
        db.flush()
    db.rollback()

    db.refresh(settlement)
    assert settlement.total_entry_fee == 10000
    assert [i.entry_fee for i in settlement.items] == [5000, 5000]


def test_transitions_only_move_forward(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    with pytest.raises(InvalidStateTransition):
        lifecycle.mark_settlement_paid(db, settlement.id)

    lifecycle.finalize_settlement(db, settlement.id)
    with pytest.raises(InvalidStateTransition):
        lifecycle.finalize_settlement(db, settlement.id)

    paid = lifecycle.mark_settlement_paid(db, settlement.id)
    assert paid.status == "paid"
    assert paid.paid_at is not None
    for step in (lifecycle.finalize_settlement, lifecycle.mark_settlement_paid):
        with pytest.raises(InvalidStateTransition):
            step(db, settlement.id)


def test_notes_stay_editable_until_paid(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    lifecycle.finalize_settlement(db, settlement.id)
    assert lifecycle.update_notes(db, settlement.id, "bank transfer pending").notes == "bank transfer pending"

    lifecycle.mark_settlement_paid(db, settlement.id)
    with pytest.raises(SettlementLocked):
        lifecycle.update_notes(db, settlement.id, "too late")


def test_remove_item_from_draft_recomputes_totals(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    removed = settlement.items[0]
    updated = lifecycle.remove_item(db, settlement.id, removed.id)
    assert len(updated.items) == 1
    assert updated.total_entry_fee == 5000
    assert updated.total_trainer_fee == 3000

    with pytest.raises(NotFound):
        lifecycle.remove_item(db, settlement.id, removed.id)


def test_deleting_a_draft_releases_its_sessions(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    lifecycle.delete_draft(db, settlement.id, actor="ops")
    with pytest.raises(NotFound):
        lifecycle.get_settlement(db, settlement.id)

    again = generate_settlement(db, studio.instructor_id, *PERIOD).settlement
    assert len(again.items) == 2

    lifecycle.finalize_settlement(db, again.id)
    with pytest.raises(SettlementLocked):
        lifecycle.delete_draft(db, again.id)


def test_regenerate_draft_picks_up_new_prices(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    add_client_price(db, studio.client_ids[0], 1000, 700, template_id=studio.template_id)

    result = lifecycle.regenerate_draft(db, settlement.id)
    assert result.settlement.id == settlement.id
    assert sorted(i.entry_fee for i in result.settlement.items) == [1000, 5000]
    assert result.settlement.total_trainer_fee == 3700

    lifecycle.finalize_settlement(db, settlement.id)
    with pytest.raises(SettlementLocked):
        lifecycle.regenerate_draft(db, settlement.id)


def test_list_filters_by_instructor_and_status(db: Session, studio: Studio) -> None:
    settlement = _draft(db, studio)
    assert [s.id for s in lifecycle.list_settlements(db, instructor_id=studio.instructor_id)] == [settlement.id]
    assert lifecycle.list_settlements(db, instructor_id=studio.instructor_id, status="paid") == []
