from __future__ import annotations

import enum
import logging
from functools import lru_cache
from typing import Callable
from uuid import UUID

from sqlalchemy.orm import Session

from ..core.celery_app import celery_app
from ..core.config import Settings, get_settings
from ..core.db import SessionLocal
from ..models.investigation import Investigation, InvestigationStatus
from .content import partition_media_urls
from .investigator import (
    ClaimSourceResult,
    InvestigationClaimResult,
    Investigator,
    InvestigatorInput,
    OpenAIInvestigator,
)
from .key_source import resolve_run_key
from .llm import LLMConfigurationError, build_llm_client, get_server_llm_client
from .retry_policy import classify_failure, decide_retry, format_error_for_log, retry_countdown
from .run_lease import ClaimResult, RunHeartbeat, make_worker_identity, try_claim_lease
from .store import InvestigationStore
from .tracing import trace_investigation_step

logger = logging.getLogger(__name__)

UserInvestigatorFactory = Callable[[str], Investigator]


class ExecutionOutcome(str, enum.Enum):
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    # Guarded commit lost: another worker or a recovery pass moved the run on
    DISCARDED = "DISCARDED"
    MISSING = "MISSING"
    TERMINAL = "TERMINAL"
    LEASE_HELD = "LEASE_HELD"


_CLAIM_NOOPS = {
    ClaimResult.MISSING: ExecutionOutcome.MISSING,
    ClaimResult.TERMINAL: ExecutionOutcome.TERMINAL,
    ClaimResult.LEASE_HELD: ExecutionOutcome.LEASE_HELD,
}


def default_user_investigator_factory(api_key: str) -> Investigator:
    return OpenAIInvestigator(build_llm_client(api_key), get_settings().LLM_MODEL)


class InvestigationExecutor:
    """
    Drives one delivery of an investigation run: claim, heartbeat, investigate,
    guarded commit. Only a retryable transient failure escapes `execute`; every
    other outcome is handled here and reported as an ExecutionOutcome.
    """

    def __init__(
        self,
        server_investigator: Investigator | None,
        user_investigator_factory: UserInvestigatorFactory = default_user_investigator_factory,
        *,
        session_factory: Callable[[], Session] = SessionLocal,
        settings: Settings | None = None,
        heartbeat_interval_seconds: float | None = None,
    ) -> None:
        self.server_investigator = server_investigator
        self.user_investigator_factory = user_investigator_factory
        self.session_factory = session_factory
        self.settings = settings or get_settings()
        self.heartbeat_interval_seconds = heartbeat_interval_seconds

    def execute(
        self,
        run_id: UUID,
        *,
        attempt_number: int,
        is_last_attempt: bool,
        worker_identity: str,
    ) -> ExecutionOutcome:
        db: Session = self.session_factory()
        heartbeat: RunHeartbeat | None = None
        log_extra = {"run_id": str(run_id), "worker": worker_identity, "attempt": attempt_number}
        try:
            claim = try_claim_lease(db, run_id, worker_identity, self.settings)
            if claim != ClaimResult.CLAIMED:
                logger.info("Run not claimed: %s", claim.value, extra={**log_extra, "step": "claim"})
                return _CLAIM_NOOPS[claim]

            store = InvestigationStore(db)
            run = store.get_run(run_id)
            investigation = store.get_investigation(run.investigation_id) if run else None
            if run is None or investigation is None:
                return ExecutionOutcome.MISSING
            investigation_id = investigation.id
            log_extra["investigation_id"] = str(investigation_id)

            if investigation.status != InvestigationStatus.PROCESSING:
                store.mark_processing(investigation_id)

            heartbeat = RunHeartbeat(
                run_id,
                worker_identity,
                session_factory=self.session_factory,
                interval_seconds=self.heartbeat_interval_seconds,
                settings=self.settings,
            ).start()

            trace_investigation_step(
                investigation_id,
                phase="RUN",
                step="run:claimed",
                label="Investigation picked up by a worker",
                meta={"attempt": attempt_number, "worker": worker_identity},
            )
            logger.info("Starting investigation", extra={**log_extra, "step": "start"})

            try:
                investigator = self._investigator_for_run(db, run_id)
                investigator_input = self.build_investigator_input(db, investigation)
                output = investigator.investigate(investigator_input)
            except Exception as e:
                return self._handle_failure(
                    db,
                    run_id=run_id,
                    investigation_id=investigation_id,
                    worker_identity=worker_identity,
                    error=e,
                    attempt_number=attempt_number,
                    is_last_attempt=is_last_attempt,
                )

            committed = store.complete_investigation(
                run_id=run_id,
                investigation_id=investigation_id,
                attempt_number=attempt_number,
                output=output,
            )
            if not committed:
                logger.info(
                    "Investigation no longer PROCESSING; discarding result",
                    extra={**log_extra, "step": "complete:discarded"},
                )
                return ExecutionOutcome.DISCARDED

            trace_investigation_step(
                investigation_id,
                phase="DONE",
                step="run:completed",
                label="Investigation completed",
                detail=f"{len(output.result.claims)} claims recorded.",
                meta={"model_version": output.model_version},
            )
            logger.info("Investigation completed", extra={**log_extra, "step": "completed"})
            return ExecutionOutcome.COMPLETED
        finally:
            if heartbeat is not None:
                heartbeat.stop()
            db.close()

    def _investigator_for_run(self, db: Session, run_id: UUID) -> Investigator:
        user_key = resolve_run_key(db, run_id, self.settings)
        if user_key:
            return self.user_investigator_factory(user_key)
        if self.server_investigator is None:
            raise LLMConfigurationError("No server OpenAI key configured and no user key attached")
        return self.server_investigator

    def build_investigator_input(self, db: Session, investigation: Investigation) -> InvestigatorInput:
        post = investigation.post
        image_urls, has_video = partition_media_urls(post.media_urls)

        old_claims: list[InvestigationClaimResult] = []
        if investigation.parent_investigation_id is not None:
            for claim in InvestigationStore(db).load_claims(investigation.parent_investigation_id):
                old_claims.append(
                    InvestigationClaimResult(
                        text=claim.text,
                        context=claim.context,
                        summary=claim.summary,
                        reasoning=claim.reasoning,
                        sources=[
                            ClaimSourceResult(url=s.url, title=s.title, snippet=s.snippet)
                            for s in claim.sources
                        ],
                    )
                )

        return InvestigatorInput(
            content_text=investigation.content_text,
            platform=post.platform.value,
            url=post.url,
            author_name=post.author_name,
            post_published_at=post.published_at.isoformat() if post.published_at else None,
            image_urls=image_urls,
            has_video=has_video,
            is_update=investigation.parent_investigation_id is not None,
            old_claims=old_claims,
            content_diff=investigation.content_diff,
        )

    def _handle_failure(
        self,
        db: Session,
        *,
        run_id: UUID,
        investigation_id: UUID,
        worker_identity: str,
        error: Exception,
        attempt_number: int,
        is_last_attempt: bool,
    ) -> ExecutionOutcome:
        decision = decide_retry(classify_failure(error), is_last_attempt)
        log_extra = {
            "run_id": str(run_id),
            "investigation_id": str(investigation_id),
            "worker": worker_identity,
            "attempt": attempt_number,
        }
        db.rollback()
        store = InvestigationStore(db)

        if store.get_investigation(investigation_id) is None:
            logger.warning("Investigation disappeared while running", extra={**log_extra, "step": "failed:missing"})
            return ExecutionOutcome.MISSING

        if decision.is_terminal:
            failed = store.fail_investigation(
                run_id=run_id,
                investigation_id=investigation_id,
                attempt_number=attempt_number,
                error=error,
            )
            if not failed:
                logger.info(
                    "Investigation no longer PROCESSING; discarding failure",
                    extra={**log_extra, "step": "failed:discarded"},
                )
                return ExecutionOutcome.DISCARDED
            logger.warning(
                "Investigation failed (%s): %s",
                decision.value,
                format_error_for_log(error),
                extra={**log_extra, "step": "failed"},
            )
            trace_investigation_step(
                investigation_id,
                phase="DONE",
                step="run:failed",
                label="Investigation failed",
                detail=format_error_for_log(error),
                meta={"decision": decision.value},
            )
            return ExecutionOutcome.FAILED

        released = store.release_for_retry(
            run_id=run_id,
            investigation_id=investigation_id,
            worker_identity=worker_identity,
            attempt_number=attempt_number,
            error=error,
            settings=self.settings,
        )
        if not released:
            logger.info(
                "Lease lost before retry could be scheduled; discarding failure",
                extra={**log_extra, "step": "retry:discarded"},
            )
            return ExecutionOutcome.DISCARDED

        logger.warning(
            "Transient investigation failure, retrying: %s",
            format_error_for_log(error),
            extra={**log_extra, "step": "retry"},
        )
        trace_investigation_step(
            investigation_id,
            phase="RUN",
            step="run:retry",
            label="Transient failure; investigation will be retried",
            detail=format_error_for_log(error),
            meta={"attempt": attempt_number},
        )
        raise error


@lru_cache(maxsize=1)
def get_executor() -> InvestigationExecutor:
    """Process-wide executor for the Celery worker."""
    settings = get_settings()
    server_investigator = None
    if settings.OPENAI_API_KEY:
        server_investigator = OpenAIInvestigator(get_server_llm_client(), settings.LLM_MODEL)
    return InvestigationExecutor(server_investigator, settings=settings)


@celery_app.task(name="truesight.services.orchestrator.run_investigation", bind=True, queue="investigations")
def run_investigation(self, run_id: str):
    settings = get_settings()
    attempt_number = self.request.retries + 1
    is_last_attempt = attempt_number >= settings.INVESTIGATION_MAX_ATTEMPTS

    try:
        outcome = get_executor().execute(
            UUID(run_id),
            attempt_number=attempt_number,
            is_last_attempt=is_last_attempt,
            worker_identity=make_worker_identity(self.request.hostname),
        )
    except Exception as e:
        raise self.retry(
            exc=e,
            countdown=retry_countdown(self.request.retries, settings),
            max_retries=settings.INVESTIGATION_MAX_ATTEMPTS - 1,
        )
    return outcome.value
