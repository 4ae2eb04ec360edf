from __future__ import annotations

from typing import Any
from uuid import UUID
import logging

from ..core.clock import utcnow
from ..core.db import SessionLocal
from ..models.investigation_trace_event import InvestigationTraceEvent

logger = logging.getLogger(__name__)


def trace_investigation_step(
    investigation_id: UUID,
    *,
    phase: str,
    step: str | None = None,
    label: str,
    detail: str | None = None,
    meta: dict[str, Any] | None = None,
) -> None:
    """
    Best-effort, fire-and-forget trace writer.
    Failure must NEVER break the investigation run that emits it.

    Uses its own session, so call it after the caller's transaction is committed.
    """
    db = SessionLocal()
    try:
        evt = InvestigationTraceEvent(
            investigation_id=investigation_id,
            phase=phase,
            step=step,
            label=label,
            detail=detail,
            meta=meta or {},
            created_at=utcnow(),
        )
        db.add(evt)
        db.commit()
    except Exception:
        db.rollback()
        logger.exception(
            "Failed to write investigation trace event",
            extra={"investigation_id": str(investigation_id)},
        )
    finally:
        db.close()
