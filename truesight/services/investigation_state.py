"""
Pure lease/recovery state rules shared by the lease manager, intake and the
selector. The Python predicate and the SQL clause must agree.
"""
from __future__ import annotations

from datetime import datetime, timedelta

from sqlalchemy import and_, or_

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..models.investigation import InvestigationStatus
from ..models.investigation_run import InvestigationRun


def next_lease_expiry(now: datetime | None = None, settings: Settings | None = None) -> datetime:
    settings = settings or get_settings()
    return (now or utcnow()) + timedelta(seconds=settings.RUN_LEASE_TTL_SECONDS)


def next_recovery_after(now: datetime | None = None, settings: Settings | None = None) -> datetime:
    settings = settings or get_settings()
    return (now or utcnow()) + timedelta(seconds=settings.RUN_RECOVERY_GRACE_SECONDS)


def is_recoverable_run_state(run: InvestigationRun, now: datetime | None = None) -> bool:
    """
    A PROCESSING run may be forced back to PENDING when:
    - it is owned and the lease has expired (or has no expiry), or
    - it is unowned and its recovery cooldown has passed (or was never set).
    """
    now = now or utcnow()
    if run.lease_owner is not None:
        return run.lease_expires_at is None or run.lease_expires_at <= now
    return run.recover_after_at is None or run.recover_after_at <= now


def recoverable_run_clause(now: datetime):
    """SQL form of is_recoverable_run_state over InvestigationRun columns."""
    return or_(
        and_(
            InvestigationRun.lease_owner.is_not(None),
            or_(InvestigationRun.lease_expires_at.is_(None), InvestigationRun.lease_expires_at <= now),
        ),
        and_(
            InvestigationRun.lease_owner.is_(None),
            or_(InvestigationRun.recover_after_at.is_(None), InvestigationRun.recover_after_at <= now),
        ),
    )


def run_timing_for_status(status: InvestigationStatus, now: datetime | None = None) -> dict[str, datetime | None]:
    """Initial lifecycle timestamps for a run created alongside an investigation."""
    now = now or utcnow()
    return {
        "queued_at": now if status == InvestigationStatus.PENDING else None,
        "started_at": now if status == InvestigationStatus.PROCESSING else None,
        "heartbeat_at": now if status == InvestigationStatus.PROCESSING else None,
    }


def recovered_run_values(now: datetime | None = None) -> dict[str, datetime | None]:
    return {
        "lease_owner": None,
        "lease_expires_at": None,
        "recover_after_at": None,
        "heartbeat_at": None,
        "queued_at": now or utcnow(),
    }
