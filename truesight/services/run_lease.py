"""
Lease Manager for investigation runs.

All coordination happens through guarded UPDATEs on the run row; `rowcount`
tells the caller whether it won. There are no in-process locks, so any number
of workers (and intake requests) can race on the same run safely.
"""
from __future__ import annotations

import enum
import logging
import os
import socket
import threading
import uuid
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy import func, or_, select
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..core.db import SessionLocal
from ..models.investigation import Investigation, InvestigationStatus, TERMINAL_STATUSES
from ..models.investigation_run import InvestigationRun
from .investigation_state import next_lease_expiry, recoverable_run_clause, recovered_run_values

logger = logging.getLogger(__name__)


class ClaimResult(str, enum.Enum):
    CLAIMED = "CLAIMED"
    MISSING = "MISSING"
    TERMINAL = "TERMINAL"
    LEASE_HELD = "LEASE_HELD"


def make_worker_identity(hostname: str | None = None) -> str:
    """Unique per execution, so a redelivered task never mistakes an old lease for its own."""
    return f"{hostname or socket.gethostname()}:{os.getpid()}:{uuid.uuid4().hex[:8]}"


def _investigations_in(*statuses: InvestigationStatus):
    return select(Investigation.id).where(Investigation.status.in_(statuses))


def _run_investigation_id(db: Session, run_id: UUID) -> UUID | None:
    return db.query(InvestigationRun.investigation_id).filter(InvestigationRun.id == run_id).scalar()


def try_claim_lease(
    db: Session,
    run_id: UUID,
    worker_identity: str,
    settings: Settings | None = None,
) -> ClaimResult:
    now = utcnow()
    claimed = (
        db.query(InvestigationRun)
        .filter(
            InvestigationRun.id == run_id,
            or_(
                InvestigationRun.lease_owner.is_(None),
                InvestigationRun.lease_expires_at.is_(None),
                InvestigationRun.lease_expires_at <= now,
            ),
            InvestigationRun.investigation_id.in_(
                _investigations_in(InvestigationStatus.PENDING, InvestigationStatus.PROCESSING)
            ),
        )
        .update(
            {
                InvestigationRun.lease_owner: worker_identity,
                InvestigationRun.lease_expires_at: next_lease_expiry(now, settings),
                InvestigationRun.recover_after_at: None,
                InvestigationRun.started_at: func.coalesce(InvestigationRun.started_at, now),
                InvestigationRun.heartbeat_at: now,
            },
            synchronize_session=False,
        )
    )

    if claimed:
        investigation_id = _run_investigation_id(db, run_id)
        (
            db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PENDING)
            .update({Investigation.status: InvestigationStatus.PROCESSING}, synchronize_session=False)
        )
        db.commit()
        return ClaimResult.CLAIMED

    db.rollback()
    run = db.get(InvestigationRun, run_id)
    if run is None:
        return ClaimResult.MISSING
    investigation = db.get(Investigation, run.investigation_id)
    if investigation is None:
        return ClaimResult.MISSING
    if investigation.status in TERMINAL_STATUSES:
        return ClaimResult.TERMINAL
    return ClaimResult.LEASE_HELD


def heartbeat(
    db: Session,
    run_id: UUID,
    worker_identity: str,
    settings: Settings | None = None,
) -> bool:
    """Extend our own lease. False when the lease is no longer ours."""
    now = utcnow()
    renewed = (
        db.query(InvestigationRun)
        .filter(
            InvestigationRun.id == run_id,
            InvestigationRun.lease_owner == worker_identity,
            InvestigationRun.investigation_id.in_(_investigations_in(InvestigationStatus.PROCESSING)),
        )
        .update(
            {
                InvestigationRun.lease_expires_at: next_lease_expiry(now, settings),
                InvestigationRun.recover_after_at: None,
                InvestigationRun.heartbeat_at: now,
            },
            synchronize_session=False,
        )
    )
    db.commit()
    return bool(renewed)


def recover_run(db: Session, run_id: UUID, now: datetime | None = None) -> bool:
    """
    Force a stale PROCESSING run back to PENDING with its lease cleared.

    No-op (False) when the run is not PROCESSING or not recoverable any more.
    """
    now = now or utcnow()
    recovered = (
        db.query(InvestigationRun)
        .filter(
            InvestigationRun.id == run_id,
            recoverable_run_clause(now),
            InvestigationRun.investigation_id.in_(_investigations_in(InvestigationStatus.PROCESSING)),
        )
        .update(recovered_run_values(now), synchronize_session=False)
    )
    if not recovered:
        db.rollback()
        return False

    investigation_id = _run_investigation_id(db, run_id)
    flipped = (
        db.query(Investigation)
        .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PROCESSING)
        .update({Investigation.status: InvestigationStatus.PENDING}, synchronize_session=False)
    )
    if not flipped:
        db.rollback()
        return False

    db.commit()
    logger.info(
        "Recovered stale investigation run",
        extra={"run_id": str(run_id), "investigation_id": str(investigation_id), "step": "recover"},
    )
    return True


class RunHeartbeat:
    """
    Background thread renewing a run lease until `stop()` is called.

    The thread never exits on its own; the executor owns its lifetime and calls
    `stop()` exactly once on every exit path. Extra `stop()` calls are no-ops.
    """

    def __init__(
        self,
        run_id: UUID,
        worker_identity: str,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        interval_seconds: float | None = None,
        settings: Settings | None = None,
    ) -> None:
        self.settings = settings or get_settings()
        self.run_id = run_id
        self.worker_identity = worker_identity
        self.session_factory = session_factory
        self.interval_seconds = (
            interval_seconds if interval_seconds is not None else self.settings.RUN_HEARTBEAT_INTERVAL_SECONDS
        )
        self.lease_lost = False
        self.ticks = 0
        self._stop_event = threading.Event()
        self._thread: threading.Thread | None = None
        self._stopped = False

    def start(self) -> "RunHeartbeat":
        if self._thread is not None:
            return self
        self._thread = threading.Thread(
            target=self._loop,
            name=f"run-heartbeat-{self.run_id}",
            daemon=True,
        )
        self._thread.start()
        return self

    def stop(self) -> None:
        if self._stopped:
            return
        self._stopped = True
        self._stop_event.set()
        if self._thread is not None and self._thread is not threading.current_thread():
            self._thread.join(timeout=self.interval_seconds + 5.0)

    @property
    def stopped(self) -> bool:
        return self._stopped

    def _loop(self) -> None:
        while not self._stop_event.wait(self.interval_seconds):
            self.tick()

    def tick(self) -> bool:
        db = self.session_factory()
        try:
            renewed = heartbeat(db, self.run_id, self.worker_identity, self.settings)
            self.ticks += 1
            if not renewed and not self.lease_lost:
                self.lease_lost = True
                logger.warning(
                    "Lease no longer held; heartbeat is a no-op until stopped",
                    extra={"run_id": str(self.run_id), "worker": self.worker_identity},
                )
            return renewed
        except Exception:
            db.rollback()
            logger.exception(
                "Heartbeat failed",
                extra={"run_id": str(self.run_id), "worker": self.worker_identity},
            )
            return False
        finally:
            db.close()
