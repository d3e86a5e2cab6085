from __future__ import annotations

import sys
import uuid
from dataclasses import dataclass, field
from datetime import datetime
from pathlib import Path
from typing import Dict, Iterator, List, Optional

import pytest
from fastapi.testclient import TestClient
from sqlalchemy.orm import Session

# Ensure project root on path
ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from studio_booking.main import app
from studio_booking.config import get_settings
from studio_booking.database import Base, SessionLocal, engine
from studio_booking.models import (
    ClassPricingDefault,
    ClassTemplate,
    Client,
    ClientClassPricing,
    Instructor,
    Room,
    Site,
)
from studio_booking.rate_limit import _window_counts as _rate_counts


API_TOKEN = "dev-token"


def auth_headers() -> Dict[str, str]:
    return {"Authorization": f"Bearer {API_TOKEN}"}


def short_id(prefix: str) -> str:
    return f"{prefix}_{uuid.uuid4().hex[:10]}"


@dataclass
class Studio:
    """Ids of a freshly seeded, test-private site."""

    site_id: str
    room_ids: List[str]
    instructor_ids: List[str]
    client_ids: List[str]
    template_id: str
    extra: Dict[str, str] = field(default_factory=dict)

    @property
    def room_id(self) -> str:
        return self.room_ids[0]

    @property
    def instructor_id(self) -> str:
        return self.instructor_ids[0]


def seed_studio(
    db: Session,
    rooms: int = 2,
    instructors: int = 2,
    clients: int = 3,
    default_capacity: Optional[int] = 10,
) -> Studio:
    site_id = short_id("site")
    db.add(Site(id=site_id, name="Test Site"))
    db.flush()
    room_ids = [short_id("room") for _ in range(rooms)]
    for rid in room_ids:
        db.add(Room(id=rid, site_id=site_id, name=f"Room {rid[-4:]}"))
    instructor_ids = [short_id("instr") for _ in range(instructors)]
    for iid in instructor_ids:
        db.add(Instructor(id=iid, site_id=site_id, full_name=f"Instructor {iid[-4:]}"))
    client_ids = [short_id("cli") for _ in range(clients)]
    for cid in client_ids:
        db.add(Client(id=cid, full_name=f"Client {cid[-4:]}"))
    template_id = short_id("tpl")
    db.add(ClassTemplate(id=template_id, title="Pilates", default_capacity=default_capacity))
    db.commit()
    return Studio(site_id, room_ids, instructor_ids, client_ids, template_id)


def add_default_price(
    db: Session,
    template_id: str,
    entry_fee: int,
    trainer_fee: int,
    valid_from: datetime = datetime(2020, 1, 1),
    valid_until: Optional[datetime] = None,
    currency: str = "HUF",
    active: bool = True,
) -> ClassPricingDefault:
    row = ClassPricingDefault(
        id=short_id("pd"),
        template_id=template_id,
        entry_fee=entry_fee,
        trainer_fee=trainer_fee,
        currency=currency,
        valid_from=valid_from,
        valid_until=valid_until,
        active=active,
    )
    db.add(row)
    db.commit()
    return row


def add_client_price(
    db: Session,
    client_id: str,
    entry_fee: int,
    trainer_fee: int,
    occurrence_id: Optional[str] = None,
    template_id: Optional[str] = None,
    valid_from: datetime = datetime(2020, 1, 1),
    valid_until: Optional[datetime] = None,
    currency: str = "HUF",
    active: bool = True,
) -> ClientClassPricing:
    row = ClientClassPricing(
        id=short_id("pc"),
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
    db.commit()
    return row


@pytest.fixture()
def db() -> Iterator[Session]:
    Base.metadata.create_all(bind=engine)
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture()
def studio(db: Session) -> Studio:
    return seed_studio(db)


@pytest.fixture()
def client() -> TestClient:
    get_settings.cache_clear()  # type: ignore[attr-defined]
    _rate_counts.clear()
    Base.metadata.create_all(bind=engine)
    return TestClient(app)
