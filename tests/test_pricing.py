from __future__ import annotations

from datetime import datetime, timedelta

import pytest
from sqlalchemy.orm import Session

from conftest import Studio, add_client_price, add_default_price
from studio_booking import pricing, scheduling
from studio_booking.errors import DomainError, MissingPricing
from studio_booking.models import ClassOccurrence


T0 = datetime(2031, 9, 10, 10, 0)


def _occurrence(db: Session, studio: Studio) -> ClassOccurrence:
    return scheduling.schedule_occurrence(
        db,
        template_id=studio.template_id,
        instructor_id=studio.instructor_id,
        room_id=studio.room_id,
        start=T0,
        end=T0 + timedelta(hours=1),
        capacity=5,
    )


def test_occurrence_override_beats_template_default(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    add_default_price(db, studio.template_id, entry_fee=1500, trainer_fee=900)
    override = add_client_price(db, studio.client_ids[0], 1000, 600, occurrence_id=occurrence.id)

    price = pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id)
    assert (price.entry_fee, price.trainer_fee) == (1000, 600)
    assert price.source == pricing.PriceSource.OCCURRENCE_OVERRIDE.value
    assert price.pricing_id == override.id

    # Another client only sees the default
    other = pricing.resolve_for_occurrence(db, studio.client_ids[1], occurrence.id)
    assert other.entry_fee == 1500
    assert other.source == "template_default"


def test_template_override_sits_between_the_other_tiers(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    add_default_price(db, studio.template_id, 1500, 900)
    add_client_price(db, studio.client_ids[0], 1200, 700, template_id=studio.template_id)

    price = pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id)
    assert price.entry_fee == 1200
    assert price.source == "template_override"


def test_missing_pricing_is_a_hard_error(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    with pytest.raises(MissingPricing) as exc:
        pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id)
    details = exc.value.details
    assert details["client_id"] == studio.client_ids[0]
    assert details["occurrence_id"] == occurrence.id
    assert details["template_id"] == studio.template_id
    assert details["at"] == T0.isoformat()


def test_latest_valid_from_wins_within_a_tier(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    add_default_price(db, studio.template_id, 1000, 500, valid_from=datetime(2030, 1, 1))
    add_default_price(db, studio.template_id, 1800, 900, valid_from=datetime(2031, 6, 1))
    # Starts after the session, so it is not valid yet
    add_default_price(db, studio.template_id, 9999, 9999, valid_from=datetime(2032, 1, 1))

    price = pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id)
    assert price.entry_fee == 1800


def test_inactive_and_expired_rows_are_ignored(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    add_default_price(db, studio.template_id, 1500, 900)
    add_client_price(db, studio.client_ids[0], 100, 50, occurrence_id=occurrence.id, active=False)
    add_client_price(
        db,
        studio.client_ids[0],
        200,
        60,
        template_id=studio.template_id,
        valid_until=T0 - timedelta(days=1),
    )

    price = pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id)
    assert price.entry_fee == 1500


def test_valid_until_is_inclusive(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    add_client_price(db, studio.client_ids[0], 700, 300, occurrence_id=occurrence.id, valid_until=T0)
    assert pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id).entry_fee == 700


def test_resolution_is_deterministic(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    same_day = datetime(2031, 1, 1)
    add_default_price(db, studio.template_id, 1000, 500, valid_from=same_day)
    add_default_price(db, studio.template_id, 1100, 550, valid_from=same_day)

    answers = {pricing.resolve_for_occurrence(db, studio.client_ids[0], occurrence.id) for _ in range(5)}
    assert len(answers) == 1


def test_price_can_be_resolved_at_an_explicit_time(db: Session, studio: Studio) -> None:
    add_default_price(db, studio.template_id, 1000, 500, valid_from=datetime(2030, 1, 1), valid_until=datetime(2030, 12, 31))
    add_default_price(db, studio.template_id, 1300, 650, valid_from=datetime(2031, 1, 1))

    early = pricing.resolve_for_template(db, studio.client_ids[0], studio.template_id, at=datetime(2030, 6, 1))
    late = pricing.resolve_for_template(db, studio.client_ids[0], studio.template_id, at=datetime(2031, 6, 1))
    assert (early.entry_fee, late.entry_fee) == (1000, 1300)


def test_override_needs_exactly_one_scope(db: Session, studio: Studio) -> None:
    occurrence = _occurrence(db, studio)
    with pytest.raises(DomainError) as exc:
        pricing.create_client_override(
            db,
            client_id=studio.client_ids[0],
            entry_fee=1000,
            trainer_fee=500,
            currency="HUF",
            valid_from=datetime(2030, 1, 1),
            occurrence_id=occurrence.id,
            template_id=studio.template_id,
        )
    assert exc.value.code == "InvalidOverrideScope"

    with pytest.raises(DomainError) as exc:
        pricing.create_template_default(
            db,
            template_id=studio.template_id,
            entry_fee=1000,
            trainer_fee=500,
            currency="HUF",
            valid_from=datetime(2030, 1, 1),
            valid_until=datetime(2029, 1, 1),
        )
    assert exc.value.code == "InvalidValidityWindow"
