"""
Admission: periodic sweeps that put posts in front of the worker pool.

`run_selector` picks the most viewed posts whose latest content still needs an
investigation; `recover_stale_runs` returns abandoned PROCESSING runs to the
queue. Both go through the same guarded transitions as intake.
"""
from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy import and_, or_
from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..core.db import SessionLocal
from ..models.investigation import ContentProvenance, Investigation, InvestigationStatus
from ..models.investigation_run import InvestigationRun
from ..models.post import Post
from .content import (
    CanonicalContent,
    CanonicalFetchResult,
    ContentVersion,
    exceeds_word_limit,
    to_content_version,
)
from .intake import FetchCanonical, ensure_investigation_queued
from .investigation_state import recoverable_run_clause
from .queue import Enqueue, enqueue_investigation_run
from .run_lease import recover_run
from .store import InvestigationStore

logger = logging.getLogger(__name__)


def select_candidates(db: Session, *, budget: int, word_limit: int, now: datetime | None = None) -> list[Post]:
    """
    Posts whose latest content has no investigation, a PENDING one, or a
    PROCESSING one whose run is missing or recoverable. Most viewed first.
    """
    now = now or utcnow()
    return (
        db.query(Post)
        .outerjoin(
            Investigation,
            and_(Investigation.post_id == Post.id, Investigation.content_hash == Post.latest_content_hash),
        )
        .outerjoin(InvestigationRun, InvestigationRun.investigation_id == Investigation.id)
        .filter(
            Post.latest_content_hash.is_not(None),
            Post.latest_content_text.is_not(None),
            Post.word_count <= word_limit,
            or_(
                Investigation.id.is_(None),
                Investigation.status == InvestigationStatus.PENDING,
                and_(
                    Investigation.status == InvestigationStatus.PROCESSING,
                    or_(InvestigationRun.id.is_(None), recoverable_run_clause(now)),
                ),
            ),
        )
        .order_by(Post.unique_view_score.desc())
        .limit(budget)
        .all()
    )


def _canonical_for_candidate(
    store: InvestigationStore,
    post: Post,
    fetch_canonical: FetchCanonical | None,
) -> CanonicalContent:
    stored = ContentVersion(content_text=post.latest_content_text, content_hash=post.latest_content_hash)
    failure_reason = "canonical fetch not configured"

    if fetch_canonical is not None:
        try:
            result = fetch_canonical(post.platform, post.url, post.external_id)
        except Exception as e:
            logger.exception(
                "Canonical content fetch failed",
                extra={"post_id": str(post.id), "step": "canonical_fetch"},
            )
            result = CanonicalFetchResult(success=False, failure_reason=f"{type(e).__name__}: {e}"[:500])
        if result.success and result.content_text is not None:
            server = to_content_version(result.content_text)
            if server.content_hash != stored.content_hash:
                store.record_post_content(post.id, server)
            return CanonicalContent(
                content_text=server.content_text,
                content_hash=server.content_hash,
                provenance=ContentProvenance.SERVER_VERIFIED,
            )
        failure_reason = result.failure_reason or "canonical fetch failed"

    return CanonicalContent(
        content_text=stored.content_text,
        content_hash=stored.content_hash,
        provenance=ContentProvenance.CLIENT_FALLBACK,
        fetch_failure_reason=failure_reason,
    )


def run_selector(
    db: Session,
    *,
    fetch_canonical: FetchCanonical | None = None,
    enqueue: Enqueue = enqueue_investigation_run,
    settings: Settings | None = None,
) -> int:
    """Returns the number of runs handed to the queue."""
    settings = settings or get_settings()
    store = InvestigationStore(db)
    candidates = select_candidates(db, budget=settings.SELECTOR_BUDGET, word_limit=settings.WORD_COUNT_LIMIT)

    enqueued = 0
    for post in candidates:
        canonical = _canonical_for_candidate(store, post, fetch_canonical)
        if exceeds_word_limit(canonical.content_text, settings.WORD_COUNT_LIMIT):
            continue

        outcome = ensure_investigation_queued(
            db,
            post=post,
            canonical=canonical,
            reject_over_word_limit_on_create=False,
            enqueue=enqueue,
            settings=settings,
        )
        if outcome.enqueued:
            enqueued += 1

    logger.info(
        "Selector pass finished: %d candidates, %d enqueued",
        len(candidates),
        enqueued,
        extra={"step": "selector"},
    )
    return enqueued


def recover_stale_runs(
    db: Session,
    *,
    limit: int,
    enqueue: Enqueue = enqueue_investigation_run,
    now: datetime | None = None,
) -> int:
    """Recover up to `limit` abandoned PROCESSING runs and re-enqueue them."""
    now = now or utcnow()
    run_ids = [
        run_id
        for (run_id,) in (
            db.query(InvestigationRun.id)
            .join(Investigation, Investigation.id == InvestigationRun.investigation_id)
            .filter(Investigation.status == InvestigationStatus.PROCESSING, recoverable_run_clause(now))
            .order_by(InvestigationRun.updated_at.asc())
            .limit(limit)
            .all()
        )
    ]
    db.rollback()

    recovered = 0
    for run_id in run_ids:
        if recover_run(db, run_id, now):
            enqueue(run_id)
            recovered += 1
    if run_ids:
        logger.info("Stale run sweep recovered %d of %d runs", recovered, len(run_ids), extra={"step": "recover_sweep"})
    return recovered


@celery_app.task(name="truesight.services.selector.run_selector_task", bind=True)
def run_selector_task(self) -> int:
    db: Session = SessionLocal()
    try:
        return run_selector(db)
    finally:
        db.close()


@celery_app.task(name="truesight.services.selector.recover_stale_runs_task", bind=True)
def recover_stale_runs_task(self) -> int:
    db: Session = SessionLocal()
    try:
        return recover_stale_runs(db, limit=get_settings().STALE_RUN_SWEEP_BATCH_SIZE)
    finally:
        db.close()
