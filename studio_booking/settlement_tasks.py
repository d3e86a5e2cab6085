from __future__ import annotations

"""
Background settlement generation.

Runs outside the request with its own session and retries transient database failures.
Retrying is safe because generation skips sessions that already carry a settlement item.
"""

import logging
import time
from datetime import datetime
from typing import Optional

from sqlalchemy.exc import OperationalError

from .audit import record_event
from .config import get_settings
from .database import SessionLocal
from .errors import DomainError
from .settlements import GenerationResult, generate_settlement


logger = logging.getLogger(__name__)


def run_settlement_generation(
    instructor_id: str,
    period_start: datetime,
    period_end: datetime,
    created_by: Optional[str] = None,
    notes: Optional[str] = None,
) -> Optional[GenerationResult]:
    settings = get_settings()
    attempts = settings.settlement_task_max_attempts
    for attempt in range(1, attempts + 1):
        db = SessionLocal()
        try:
            result = generate_settlement(
                db, instructor_id, period_start, period_end, created_by=created_by, notes=notes
            )
            logger.info(
                "background settlement done instructor=%s settlement=%s failures=%s attempt=%s",
                instructor_id,
                result.settlement.id if result.settlement else None,
                len(result.failures),
                attempt,
            )
            return result
        except OperationalError:
            logger.warning(
                "background settlement transient failure instructor=%s attempt=%s/%s",
                instructor_id,
                attempt,
                attempts,
                exc_info=True,
            )
            if attempt == attempts:
                raise
            time.sleep(settings.settlement_task_retry_delay_seconds * attempt)
        except DomainError as exc:
            # Domain outcomes are final; record them and stop
            logger.info("background settlement stopped instructor=%s code=%s", instructor_id, exc.code)
            db.rollback()
            record_event(
                db,
                "settlement.generation_failed",
                "instructor",
                instructor_id,
                actor=created_by,
                status=exc.code,
                message=exc.message,
                meta=exc.details,
            )
            db.commit()
            return None
        finally:
            db.close()
    return None
