from __future__ import annotations

import json
from datetime import datetime
from typing import Optional

from fastapi import APIRouter, Depends, Query
from sqlalchemy.orm import Session

from ..audit import list_events
from ..deps import get_db, require_token
from ..schemas import ActivityListResponse
from ..utils import as_naive_utc


router = APIRouter(prefix="/api", tags=["activity"], dependencies=[Depends(require_token)])


@router.get("/activity.list", response_model=ActivityListResponse)
def activity_list(
    db: Session = Depends(get_db),
    action: Optional[str] = None,
    entity_id: Optional[str] = None,
    since: Optional[datetime] = None,
    limit: int = Query(default=100, ge=1, le=1000),
):
    rows = list_events(db, action=action, entity_id=entity_id, since=as_naive_utc(since), limit=limit)
    items = [
        {
            "id": r.id,
            "ts": r.ts,
            "actor": r.actor,
            "action": r.action,
            "entity": r.entity,
            "entity_id": r.entity_id,
            "status": r.status,
            "message": r.message,
            "meta": json.loads(r.meta_json) if r.meta_json else {},
        }
        for r in rows
    ]
    return {"items": items, "total": len(items)}
