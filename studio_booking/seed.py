from __future__ import annotations

from datetime import datetime

from .config import get_settings
from .database import Base, engine, SessionLocal
from .models import ClassPricingDefault, ClassTemplate, Client, Instructor, Room, Site


def upsert_defaults() -> None:
    Base.metadata.create_all(bind=engine)
    currency = get_settings().default_currency
    db = SessionLocal()
    try:
        if not db.get(Site, "main_site"):
            db.add(Site(id="main_site", name="Main Studio"))
            db.flush()

        # Rooms
        for id_, name in [("room_a", "Room A"), ("room_b", "Room B")]:
            if not db.get(Room, id_):
                db.add(Room(id=id_, site_id="main_site", name=name))

        # Instructors
        for id_, name in [("instr_anna", "Anna Kovacs"), ("instr_bence", "Bence Nagy")]:
            if not db.get(Instructor, id_):
                db.add(Instructor(id=id_, site_id="main_site", full_name=name))

        if not db.get(Client, "client_demo"):
            db.add(Client(id="client_demo", full_name="Demo Client", email="demo@example.com"))

        # Templates with a default price each: (id, title, capacity, entry_fee, trainer_fee)
        defaults_templates = [
            ("pilates_mat", "Pilates Mat", 10, 2500, 1500),
            ("yoga_flow", "Yoga Flow", 12, 2500, 1500),
            ("personal_training", "Personal Training", None, 8000, 5000),
        ]
        for id_, title, capacity, entry_fee, trainer_fee in defaults_templates:
            if not db.get(ClassTemplate, id_):
                db.add(ClassTemplate(id=id_, title=title, default_capacity=capacity))
            price_id = f"default_{id_}"
            if not db.get(ClassPricingDefault, price_id):
                db.add(
                    ClassPricingDefault(
                        id=price_id,
                        template_id=id_,
                        entry_fee=entry_fee,
                        trainer_fee=trainer_fee,
                        currency=currency,
                        valid_from=datetime(2020, 1, 1),
                    )
                )

        db.commit()
    finally:
        db.close()


def main() -> None:
    upsert_defaults()
    print("Seed complete.")


if __name__ == "__main__":
    main()
