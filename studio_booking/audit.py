from __future__ import annotations

"""
Append-only event records. Notification and calendar consumers read these after commit;
nothing here dispatches anything.
"""

import json
import logging
from datetime import datetime
from typing import Any, Dict, List, Optional

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import SystemLog


logger = logging.getLogger(__name__)


def record_event(
    db: Session,
    action: str,
    entity: str,
    entity_id: str,
    *,
    actor: Optional[str] = None,
    status: Optional[str] = None,
    message: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> SystemLog:
    """Stage an event row in the caller's transaction; it becomes visible only if that commits."""
    row = SystemLog(
        actor=actor,
        action=action,
        entity=entity,
        entity_id=entity_id,
        status=status,
        message=message,
        meta_json=json.dumps(meta, default=str, sort_keys=True) if meta else None,
    )
    db.add(row)
    logger.info("event action=%s entity=%s id=%s", action, entity, entity_id)
    return row


def list_events(
    db: Session,
    action: Optional[str] = None,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = 100,
) -> List[SystemLog]:
    stmt = select(SystemLog)
    if action:
        stmt = stmt.where(SystemLog.action == action)
    if entity_id:
        stmt = stmt.where(SystemLog.entity_id == entity_id)
    if since:
        stmt = stmt.where(SystemLog.ts >= since)
    return list(db.execute(stmt.order_by(SystemLog.id.asc()).limit(limit)).scalars().all())
