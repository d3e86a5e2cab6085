from __future__ import annotations

"""
Settlement inclusion policy.

Defaults come from ``Settings``; operators override individual values through ``ConfigEntry``
rows. The effective policy is copied onto each settlement when it is generated, so later
edits never change how an existing settlement reads.
"""

from datetime import datetime, timedelta
from typing import Dict, Optional

from pydantic import BaseModel, ConfigDict, Field
from sqlalchemy import select
from sqlalchemy.orm import Session

from .config import get_settings
from .database import atomic
from .models import Attendance, ConfigEntry, RegistrationStatus


CONFIG_KEYS: Dict[str, str] = {
    "late_cancellation_hours": "settlement.late_cancellation_hours",
    "no_show_charge_entry_fee": "settlement.no_show.charge_entry_fee",
    "no_show_charge_trainer_fee": "settlement.no_show.charge_trainer_fee",
    "late_cancel_charge_entry_fee": "settlement.late_cancel.charge_entry_fee",
    "late_cancel_charge_trainer_fee": "settlement.late_cancel.charge_trainer_fee",
}

_TRUE = {"1", "true", "yes", "on"}


class FeeShare(BaseModel):
    model_config = ConfigDict(frozen=True)

    entry: bool
    trainer: bool

    @property
    def any(self) -> bool:
        return self.entry or self.trainer


FULL_FEE = FeeShare(entry=True, trainer=True)


class SettlementPolicy(BaseModel):
    model_config = ConfigDict(frozen=True)

    late_cancellation_hours: int = Field(default=24, ge=0)
    no_show_charge_entry_fee: bool = True
    no_show_charge_trainer_fee: bool = False
    late_cancel_charge_entry_fee: bool = True
    late_cancel_charge_trainer_fee: bool = False

    def is_late_cancellation(self, session_start: datetime, cancelled_at: Optional[datetime]) -> bool:
        # Unknown cancellation time counts as early
        if cancelled_at is None:
            return False
        return session_start - cancelled_at < timedelta(hours=self.late_cancellation_hours)

    def share_for(
        self, status: str, session_start: datetime, cancelled_at: Optional[datetime] = None
    ) -> Optional[FeeShare]:
        """Fee components billable for a session outcome, or None when it is excluded."""
        if status == Attendance.ATTENDED.value:
            return FULL_FEE
        if status == Attendance.NO_SHOW.value:
            share = FeeShare(entry=self.no_show_charge_entry_fee, trainer=self.no_show_charge_trainer_fee)
        elif status == RegistrationStatus.CANCELLED.value:
            if not self.is_late_cancellation(session_start, cancelled_at):
                return None
            share = FeeShare(entry=self.late_cancel_charge_entry_fee, trainer=self.late_cancel_charge_trainer_fee)
        else:
            return None
        return share if share.any else None


def _coerce(field: str, raw: str):
    if field == "late_cancellation_hours":
        return int(raw)
    return raw.strip().lower() in _TRUE


def load_policy(db: Session) -> SettlementPolicy:
    settings = get_settings()
    values = {field: getattr(settings, field) for field in CONFIG_KEYS}
    rows = db.execute(select(ConfigEntry).where(ConfigEntry.key.in_(list(CONFIG_KEYS.values())))).scalars().all()
    by_key = {row.key: row.value for row in rows}
    for field, key in CONFIG_KEYS.items():
        raw = by_key.get(key)
        if raw is not None and raw != "":
            values[field] = _coerce(field, raw)
    return SettlementPolicy(**values)


def save_policy(db: Session, **changes) -> SettlementPolicy:
    """Persist overrides for the given policy fields and return the new effective policy."""
    unknown = set(changes) - set(CONFIG_KEYS)
    if unknown:
        raise KeyError(f"Unknown policy fields: {sorted(unknown)}")
    # Validate the merged result before writing anything
    merged = load_policy(db).model_copy(update=changes)
    SettlementPolicy.model_validate(merged.model_dump())
    with atomic(db):
        for field, value in changes.items():
            key = CONFIG_KEYS[field]
            entry = db.get(ConfigEntry, key)
            text_value = str(value).lower() if isinstance(value, bool) else str(value)
            if entry is None:
                db.add(ConfigEntry(key=key, value=text_value))
            else:
                entry.value = text_value
    return load_policy(db)
