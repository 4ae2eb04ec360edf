"""
Intake convergence: the synchronous `investigate_now` entry point and the
queueing logic it shares with the selector.

Any number of concurrent callers for the same (post, content hash) end up on
one Investigation and one run. Creation collisions are resolved by the unique
constraints, not by locks; everything after that is a guarded transition.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ..core.config import Settings, get_settings
from ..models.claim import Claim
from ..models.investigation import ContentProvenance, Investigation, InvestigationStatus
from ..models.investigation_run import InvestigationRun
from ..models.post import Platform, Post
from .content import (
    CanonicalContent,
    CanonicalFetchResult,
    ContentVersion,
    build_content_diff,
    exceeds_word_limit,
    to_content_version,
    word_count,
)
from .investigation_state import is_recoverable_run_state
from .key_source import AttachResult, KeySourceMetadata, attach_key_source, get_key_source_metadata
from .queue import Enqueue, enqueue_investigation_run
from .run_lease import recover_run
from .store import InvestigationStore

logger = logging.getLogger(__name__)

# (platform, url, external_id) -> result of re-fetching the post from its origin
FetchCanonical = Callable[[Platform, str, str], CanonicalFetchResult]
OnPendingRun = Callable[[Investigation, InvestigationRun], None]


class InvestigationWordLimitError(Exception):
    def __init__(self, observed_word_count: int, limit: int) -> None:
        super().__init__(f"Post exceeds word count limit ({limit} words)")
        self.observed_word_count = observed_word_count
        self.limit = limit


class ContentMismatchError(Exception):
    """Server-fetched content does not match what the caller observed."""

    def __init__(self) -> None:
        super().__init__("CONTENT_MISMATCH")


class EmptyContentError(ValueError):
    pass


class InvestigationNotFoundError(Exception):
    pass


@dataclass
class InvestigateNowInput:
    platform: Platform
    external_id: str
    url: str
    observed_content_text: str
    author_name: str | None = None
    published_at: datetime | None = None
    media_urls: list[str] | None = None


@dataclass
class QueueOutcome:
    investigation: Investigation
    run: InvestigationRun
    created: bool
    enqueued: bool
    recovered: bool = False
    requeued: bool = False


@dataclass
class InvestigateNowResult:
    investigation_id: UUID
    post_id: UUID
    status: InvestigationStatus
    provenance: ContentProvenance
    claims: list[Claim] = field(default_factory=list)
    key_source: KeySourceMetadata | None = None
    key_attach_result: AttachResult | None = None


def ensure_investigation_queued(
    db: Session,
    *,
    post: Post,
    canonical: CanonicalContent,
    allow_requeue_failed: bool = False,
    reject_over_word_limit_on_create: bool = True,
    on_pending_run: OnPendingRun | None = None,
    enqueue: Enqueue = enqueue_investigation_run,
    settings: Settings | None = None,
) -> QueueOutcome:
    """
    Make sure an investigation exists for this content and, if it is PENDING,
    hand its run to the queue.

    - found with fresh server-verified content: provenance upgraded
    - missing: create PENDING + run (collisions converge onto the winner), with
      lineage to the latest COMPLETE investigation of an older version
    - FAILED: reset to PENDING when `allow_requeue_failed`
    - PROCESSING with a stale run: recover to PENDING
    - PROCESSING with a live lease, COMPLETE: returned as-is
    """
    settings = settings or get_settings()
    store = InvestigationStore(db)

    created = False
    investigation = store.find_investigation(post.id, canonical.content_hash)
    if investigation is None:
        if reject_over_word_limit_on_create and exceeds_word_limit(
            canonical.content_text, settings.WORD_COUNT_LIMIT
        ):
            raise InvestigationWordLimitError(word_count(canonical.content_text), settings.WORD_COUNT_LIMIT)

        parent = store.latest_complete_investigation(post.id, exclude_hash=canonical.content_hash)
        investigation, run, created = store.create_investigation(
            post_id=post.id,
            canonical=canonical,
            model=settings.LLM_MODEL,
            parent_investigation_id=parent.id if parent else None,
            content_diff=build_content_diff(parent.content_text, canonical.content_text) if parent else None,
        )
        if created:
            logger.info(
                "Created investigation",
                extra={"investigation_id": str(investigation.id), "run_id": str(run.id), "step": "intake"},
            )
    else:
        run = store.ensure_run(investigation)

    if (
        not created
        and canonical.provenance == ContentProvenance.SERVER_VERIFIED
        and investigation.provenance == ContentProvenance.CLIENT_FALLBACK
    ):
        store.upgrade_provenance(investigation.id)

    requeued = False
    if allow_requeue_failed and investigation.status == InvestigationStatus.FAILED:
        requeued = bool(store.requeue_failed(investigation.id))

    recovered = False
    if investigation.status == InvestigationStatus.PROCESSING and is_recoverable_run_state(run):
        recovered = recover_run(db, run.id)

    enqueued = False
    if investigation.status == InvestigationStatus.PENDING:
        if on_pending_run is not None:
            on_pending_run(investigation, run)
        enqueue(run.id)
        enqueued = True

    return QueueOutcome(
        investigation=investigation,
        run=run,
        created=created,
        enqueued=enqueued,
        recovered=recovered,
        requeued=requeued,
    )


def resolve_canonical_content(
    request: InvestigateNowInput,
    observed: ContentVersion,
    fetch_canonical: FetchCanonical | None,
) -> CanonicalContent:
    """
    Prefer server-fetched content; fall back to the caller's observation.

    Raises ContentMismatchError when the server copy differs from the observation.
    """
    if fetch_canonical is None:
        return CanonicalContent(
            content_text=observed.content_text,
            content_hash=observed.content_hash,
            provenance=ContentProvenance.CLIENT_FALLBACK,
            fetch_failure_reason="canonical fetch not configured",
        )

    try:
        result = fetch_canonical(request.platform, request.url, request.external_id)
    except Exception as e:
        logger.exception("Canonical content fetch failed", extra={"step": "canonical_fetch"})
        result = CanonicalFetchResult(success=False, failure_reason=f"{type(e).__name__}: {e}"[:500])

    if result.success and result.content_text is not None:
        server = to_content_version(result.content_text)
        if server.content_hash != observed.content_hash:
            raise ContentMismatchError()
        return CanonicalContent(
            content_text=server.content_text,
            content_hash=server.content_hash,
            provenance=ContentProvenance.SERVER_VERIFIED,
        )

    return CanonicalContent(
        content_text=observed.content_text,
        content_hash=observed.content_hash,
        provenance=ContentProvenance.CLIENT_FALLBACK,
        fetch_failure_reason=result.failure_reason or "canonical fetch failed",
    )


def investigate_now(
    db: Session,
    request: InvestigateNowInput,
    *,
    user_api_key: str | None = None,
    fetch_canonical: FetchCanonical | None = None,
    enqueue: Enqueue = enqueue_investigation_run,
    settings: Settings | None = None,
) -> InvestigateNowResult:
    settings = settings or get_settings()
    store = InvestigationStore(db)

    observed = to_content_version(request.observed_content_text)
    if not observed.content_text:
        raise EmptyContentError("Observed content is empty after normalisation")

    post = store.upsert_post(
        platform=request.platform,
        external_id=request.external_id,
        url=request.url,
        content=observed,
        author_name=request.author_name,
        published_at=request.published_at,
        media_urls=request.media_urls,
    )

    existing = store.find_investigation(post.id, observed.content_hash)
    if existing is not None and existing.status == InvestigationStatus.COMPLETE:
        return InvestigateNowResult(
            investigation_id=existing.id,
            post_id=post.id,
            status=existing.status,
            provenance=existing.provenance,
            claims=store.load_claims(existing.id),
        )

    canonical = resolve_canonical_content(request, observed, fetch_canonical)

    attach_results: list[AttachResult] = []

    def _attach_user_key(investigation: Investigation, run: InvestigationRun) -> None:
        if user_api_key:
            attach_results.append(attach_key_source(db, run.id, user_api_key, settings))

    outcome = ensure_investigation_queued(
        db,
        post=post,
        canonical=canonical,
        allow_requeue_failed=True,
        reject_over_word_limit_on_create=True,
        on_pending_run=_attach_user_key,
        enqueue=enqueue,
        settings=settings,
    )
    investigation, run = outcome.investigation, outcome.run

    # A live PROCESSING run never hits the pending hook but may still take a key
    if not attach_results and investigation.status == InvestigationStatus.PROCESSING:
        _attach_user_key(investigation, run)

    claims: list[Claim] = []
    if investigation.status == InvestigationStatus.COMPLETE:
        claims = store.load_claims(investigation.id)

    logger.info(
        "investigate_now resolved",
        extra={
            "investigation_id": str(investigation.id),
            "run_id": str(run.id),
            "step": f"intake:{investigation.status.value}",
        },
    )
    return InvestigateNowResult(
        investigation_id=investigation.id,
        post_id=post.id,
        status=investigation.status,
        provenance=investigation.provenance,
        claims=claims,
        key_source=get_key_source_metadata(db, run.id),
        key_attach_result=attach_results[0] if attach_results else None,
    )


def get_investigation_view(db: Session, investigation_id: UUID) -> tuple[Investigation, list[Claim]]:
    store = InvestigationStore(db)
    investigation = store.get_investigation(investigation_id)
    if investigation is None:
        raise InvestigationNotFoundError(str(investigation_id))
    claims = store.load_claims(investigation_id) if investigation.status == InvestigationStatus.COMPLETE else []
    return investigation, claims
