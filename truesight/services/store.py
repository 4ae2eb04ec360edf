"""
Job Store: guarded row updates over a SQLAlchemy session.

Every state-changing method names the expected prior state in its WHERE clause
and reports the affected-row count (or a bool derived from it). Zero rows means
another writer already moved the row on; callers treat that as a no-op, never
as an error. Each method commits (or rolls back) its own transaction.
"""
from __future__ import annotations

import logging
from datetime import datetime, timedelta
from typing import Any
from uuid import UUID

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from ..core.clock import utcnow
from ..core.config import Settings, get_settings
from ..models.claim import Claim, ClaimSource
from ..models.investigation import ContentProvenance, Investigation, InvestigationStatus
from ..models.investigation_attempt import AttemptOutcome, InvestigationAttempt
from ..models.investigation_run import InvestigationRun
from ..models.post import Platform, Post
from .content import CanonicalContent, ContentVersion, hash_content, word_count
from .investigator import AttemptAudit, InvestigatorExecutionError, InvestigatorOutput
from .investigation_state import run_timing_for_status
from .key_source import consume_key_source

logger = logging.getLogger(__name__)

_RELEASED_LEASE = {
    InvestigationRun.lease_owner: None,
    InvestigationRun.lease_expires_at: None,
}


class InvestigationStore:
    def __init__(self, db: Session) -> None:
        self.db = db

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def get_post(self, platform: Platform, external_id: str) -> Post | None:
        return (
            self.db.query(Post)
            .filter(Post.platform == platform, Post.external_id == external_id)
            .first()
        )

    # Investigation and run reads overwrite any copy already in the session;
    # other workers move these rows on concurrently.

    def get_investigation(self, investigation_id: UUID) -> Investigation | None:
        return self.db.get(Investigation, investigation_id, populate_existing=True)

    def find_investigation(self, post_id: UUID, content_hash: str) -> Investigation | None:
        return (
            self.db.query(Investigation)
            .filter(Investigation.post_id == post_id, Investigation.content_hash == content_hash)
            .populate_existing()
            .first()
        )

    def get_run(self, run_id: UUID) -> InvestigationRun | None:
        return self.db.get(InvestigationRun, run_id, populate_existing=True)

    def get_run_for_investigation(self, investigation_id: UUID) -> InvestigationRun | None:
        return (
            self.db.query(InvestigationRun)
            .filter(InvestigationRun.investigation_id == investigation_id)
            .populate_existing()
            .first()
        )

    def latest_complete_investigation(self, post_id: UUID, exclude_hash: str) -> Investigation | None:
        return (
            self.db.query(Investigation)
            .filter(
                Investigation.post_id == post_id,
                Investigation.status == InvestigationStatus.COMPLETE,
                Investigation.content_hash != exclude_hash,
            )
            .order_by(Investigation.checked_at.desc(), Investigation.created_at.desc())
            .first()
        )

    def load_claims(self, investigation_id: UUID) -> list[Claim]:
        return (
            self.db.query(Claim)
            .filter(Claim.investigation_id == investigation_id)
            .order_by(Claim.claim_order.asc())
            .all()
        )

    # ------------------------------------------------------------------
    # Convergent inserts
    # ------------------------------------------------------------------

    def upsert_post(
        self,
        *,
        platform: Platform,
        external_id: str,
        url: str,
        content: ContentVersion,
        author_name: str | None = None,
        published_at: datetime | None = None,
        media_urls: list[str] | None = None,
    ) -> Post:
        """
        Insert the post or converge onto the existing (platform, external_id) row,
        then record the observed content as its latest version.
        """
        post = self.get_post(platform, external_id)
        if post is None:
            post = Post(platform=platform, external_id=external_id, url=url)
            self._apply_post_fields(post, content, author_name, published_at, media_urls)
            self.db.add(post)
            try:
                self.db.commit()
                return post
            except IntegrityError:
                self.db.rollback()
                post = self.get_post(platform, external_id)
                if post is None:
                    raise

        post.url = url or post.url
        self._apply_post_fields(post, content, author_name, published_at, media_urls)
        self.db.commit()
        return post

    @staticmethod
    def _apply_post_fields(
        post: Post,
        content: ContentVersion,
        author_name: str | None,
        published_at: datetime | None,
        media_urls: list[str] | None,
    ) -> None:
        post.latest_content_hash = content.content_hash
        post.latest_content_text = content.content_text
        post.word_count = word_count(content.content_text)
        if author_name is not None:
            post.author_name = author_name
        if published_at is not None:
            post.published_at = published_at
        if media_urls is not None:
            post.media_urls = list(media_urls)

    def record_post_content(self, post_id: UUID, content: ContentVersion) -> int:
        updated = (
            self.db.query(Post)
            .filter(Post.id == post_id)
            .update(
                {
                    Post.latest_content_hash: content.content_hash,
                    Post.latest_content_text: content.content_text,
                    Post.word_count: word_count(content.content_text),
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated

    def create_investigation(
        self,
        *,
        post_id: UUID,
        canonical: CanonicalContent,
        model: str | None = None,
        parent_investigation_id: UUID | None = None,
        content_diff: str | None = None,
    ) -> tuple[Investigation, InvestigationRun, bool]:
        """
        Create a PENDING investigation and its run in one transaction.

        On a (post_id, content_hash) collision the loser rolls back and converges
        onto the winner's rows. Returns (investigation, run, created).
        """
        now = utcnow()
        investigation = Investigation(
            post_id=post_id,
            content_hash=canonical.content_hash,
            content_text=canonical.content_text,
            status=InvestigationStatus.PENDING,
            provenance=canonical.provenance,
            fetch_failure_reason=canonical.fetch_failure_reason,
            server_verified_at=now if canonical.provenance == ContentProvenance.SERVER_VERIFIED else None,
            parent_investigation_id=parent_investigation_id,
            content_diff=content_diff,
            model=model,
        )
        self.db.add(investigation)
        try:
            self.db.flush()
            run = InvestigationRun(
                investigation_id=investigation.id,
                **run_timing_for_status(InvestigationStatus.PENDING, now),
            )
            self.db.add(run)
            self.db.commit()
            return investigation, run, True
        except IntegrityError:
            self.db.rollback()

        existing = self.find_investigation(post_id, canonical.content_hash)
        if existing is None:
            raise RuntimeError(
                f"Investigation for post {post_id} collided but could not be re-read"
            )
        return existing, self.ensure_run(existing), False

    def ensure_run(self, investigation: Investigation) -> InvestigationRun:
        run = self.get_run_for_investigation(investigation.id)
        if run is not None:
            return run

        run = InvestigationRun(
            investigation_id=investigation.id,
            **run_timing_for_status(investigation.status),
        )
        self.db.add(run)
        try:
            self.db.commit()
            return run
        except IntegrityError:
            self.db.rollback()
            run = self.get_run_for_investigation(investigation.id)
            if run is None:
                raise
            return run

    # ------------------------------------------------------------------
    # Guarded transitions
    # ------------------------------------------------------------------

    def requeue_failed(self, investigation_id: UUID) -> int:
        """FAILED -> PENDING, clearing checked_at and resetting the run for a new delivery."""
        now = utcnow()
        updated = (
            self.db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.FAILED)
            .update(
                {Investigation.status: InvestigationStatus.PENDING, Investigation.checked_at: None},
                synchronize_session=False,
            )
        )
        if updated:
            (
                self.db.query(InvestigationRun)
                .filter(InvestigationRun.investigation_id == investigation_id)
                .update(
                    {
                        **_RELEASED_LEASE,
                        InvestigationRun.recover_after_at: None,
                        InvestigationRun.heartbeat_at: None,
                        InvestigationRun.completed_at: None,
                        InvestigationRun.queued_at: now,
                    },
                    synchronize_session=False,
                )
            )
        self.db.commit()
        return updated

    def mark_processing(self, investigation_id: UUID) -> int:
        updated = (
            self.db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PENDING)
            .update({Investigation.status: InvestigationStatus.PROCESSING}, synchronize_session=False)
        )
        self.db.commit()
        return updated

    def upgrade_provenance(self, investigation_id: UUID) -> int:
        """CLIENT_FALLBACK -> SERVER_VERIFIED once the server has fetched matching content."""
        updated = (
            self.db.query(Investigation)
            .filter(
                Investigation.id == investigation_id,
                Investigation.provenance == ContentProvenance.CLIENT_FALLBACK,
            )
            .update(
                {
                    Investigation.provenance: ContentProvenance.SERVER_VERIFIED,
                    Investigation.server_verified_at: utcnow(),
                    Investigation.fetch_failure_reason: None,
                },
                synchronize_session=False,
            )
        )
        self.db.commit()
        return updated

    def complete_investigation(
        self,
        *,
        run_id: UUID,
        investigation_id: UUID,
        attempt_number: int,
        output: InvestigatorOutput,
    ) -> bool:
        """
        PROCESSING -> COMPLETE with audit, claims, lease release and key consumption
        in one transaction. Returns False, writing nothing, if the guard misses.
        """
        now = utcnow()
        updated = (
            self.db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PROCESSING)
            .update(
                {
                    Investigation.status: InvestigationStatus.COMPLETE,
                    Investigation.checked_at: now,
                    Investigation.model_version: output.model_version,
                },
                synchronize_session=False,
            )
        )
        if not updated:
            self.db.rollback()
            return False

        self._upsert_attempt(investigation_id, attempt_number, AttemptOutcome.SUCCEEDED, output.attempt_audit)

        for order, result in enumerate(output.result.claims):
            claim = Claim(
                investigation_id=investigation_id,
                claim_order=order,
                text=result.text,
                context=result.context,
                summary=result.summary,
                reasoning=result.reasoning,
            )
            claim.sources = [
                ClaimSource(
                    url=source.url,
                    title=source.title,
                    snippet=source.snippet,
                    snapshot_text=source.snippet,
                    snapshot_hash=hash_content(source.snippet),
                    retrieved_at=now,
                )
                for source in result.sources
            ]
            self.db.add(claim)

        self._finish_run(run_id, now)
        consume_key_source(self.db, run_id)
        self.db.commit()
        return True

    def fail_investigation(
        self,
        *,
        run_id: UUID,
        investigation_id: UUID,
        attempt_number: int,
        error: BaseException,
    ) -> bool:
        """PROCESSING -> FAILED with a failed-attempt audit. False if the guard misses."""
        now = utcnow()
        updated = (
            self.db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PROCESSING)
            .update({Investigation.status: InvestigationStatus.FAILED}, synchronize_session=False)
        )
        if not updated:
            self.db.rollback()
            return False

        self._upsert_attempt(investigation_id, attempt_number, AttemptOutcome.FAILED, _audit_of(error), error)
        self._finish_run(run_id, now)
        consume_key_source(self.db, run_id)
        self.db.commit()
        return True

    def release_for_retry(
        self,
        *,
        run_id: UUID,
        investigation_id: UUID,
        worker_identity: str,
        attempt_number: int,
        error: BaseException,
        settings: Settings | None = None,
    ) -> bool:
        """
        Drop the lease but leave the investigation PROCESSING so the queue can
        redeliver. recover_after_at keeps recovery sweeps away until the
        redelivery has had a chance to claim it.
        """
        settings = settings or get_settings()
        now = utcnow()
        still_processing = (
            self.db.query(Investigation)
            .filter(Investigation.id == investigation_id, Investigation.status == InvestigationStatus.PROCESSING)
            .update({Investigation.updated_at: now}, synchronize_session=False)
        )
        released = 0
        if still_processing:
            released = (
                self.db.query(InvestigationRun)
                .filter(InvestigationRun.id == run_id, InvestigationRun.lease_owner == worker_identity)
                .update(
                    {
                        **_RELEASED_LEASE,
                        InvestigationRun.recover_after_at: now
                        + timedelta(seconds=settings.RUN_RECOVERY_GRACE_SECONDS),
                    },
                    synchronize_session=False,
                )
            )
        if not released:
            self.db.rollback()
            return False

        self._upsert_attempt(investigation_id, attempt_number, AttemptOutcome.FAILED, _audit_of(error), error)
        self.db.commit()
        return True

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _finish_run(self, run_id: UUID, now: datetime) -> None:
        (
            self.db.query(InvestigationRun)
            .filter(InvestigationRun.id == run_id)
            .update(
                {
                    **_RELEASED_LEASE,
                    InvestigationRun.recover_after_at: None,
                    InvestigationRun.completed_at: now,
                },
                synchronize_session=False,
            )
        )

    def _upsert_attempt(
        self,
        investigation_id: UUID,
        attempt_number: int,
        outcome: str,
        audit: AttemptAudit | None,
        error: BaseException | None = None,
    ) -> InvestigationAttempt:
        row = (
            self.db.query(InvestigationAttempt)
            .filter(
                InvestigationAttempt.investigation_id == investigation_id,
                InvestigationAttempt.attempt_number == attempt_number,
            )
            .first()
        )
        if row is None:
            row = InvestigationAttempt(investigation_id=investigation_id, attempt_number=attempt_number)
            self.db.add(row)

        values: dict[str, Any] = {"outcome": outcome, **_audit_values(audit)}
        if error is not None and not values.get("error_name"):
            cause = error.__cause__ if isinstance(error, InvestigatorExecutionError) and error.__cause__ else error
            values["error_name"] = type(cause).__name__
            values["error_message"] = str(cause)[:2000]
        for key, value in values.items():
            setattr(row, key, value)
        if row.started_at is None:
            row.started_at = utcnow()
        if row.completed_at is None:
            row.completed_at = utcnow()
        return row


def _audit_of(error: BaseException) -> AttemptAudit | None:
    return getattr(error, "attempt_audit", None)


def _audit_values(audit: AttemptAudit | None) -> dict[str, Any]:
    if audit is None:
        return {}
    return {
        "request_model": audit.request_model,
        "request_instructions": audit.request_instructions,
        "request_input": audit.request_input,
        "response_id": audit.response_id,
        "response_status": audit.response_status,
        "response_model_version": audit.response_model_version,
        "response_output_text": audit.response_output_text,
        "usage": audit.usage,
        "error_name": audit.error_name,
        "error_message": audit.error_message,
        "error_status_code": audit.error_status_code,
        "started_at": audit.started_at,
        "completed_at": audit.completed_at,
    }
