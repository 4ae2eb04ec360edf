"""
Shared fixtures for orchestrator tests.

Fake collaborators (investigator, queue, heartbeat) plus helpers that seed
posts, investigations and runs in a known state.
"""
import threading
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, List, Optional
from uuid import UUID

from truesight.core.clock import utcnow
from truesight.core.db import SessionLocal
from truesight.models import (
    Claim,
    ClaimSource,
    ContentProvenance,
    Investigation,
    InvestigationRun,
    InvestigationStatus,
    Platform,
    Post,
)
from truesight.services.content import to_content_version, word_count
from truesight.services.investigator import (
    AttemptAudit,
    ClaimSourceResult,
    InvestigationClaimResult,
    InvestigationResult,
    Investigator,
    InvestigatorExecutionError,
    InvestigatorInput,
    InvestigatorOutput,
)


# ---------------------------------------------------------------------------
# Content
# ---------------------------------------------------------------------------

SAMPLE_TEXT = (
    "The Eiffel Tower was completed in 1899.  It is located in Berlin.\n"
    "Paris hosts millions of visitors every year."
)

EDITED_TEXT = (
    "The Eiffel Tower was completed in 1889. It is located in Paris. "
    "Paris hosts millions of visitors every year."
)

SAMPLE_CLAIM = InvestigationClaimResult(
    text="It is located in Berlin.",
    context="The Eiffel Tower was completed in 1899. It is located in Berlin.",
    summary="The Eiffel Tower is in Paris, not Berlin.",
    reasoning="Every encyclopedia places the tower on the Champ de Mars in Paris.",
    sources=[
        ClaimSourceResult(
            url="https://en.wikipedia.org/wiki/Eiffel_Tower",
            title="Eiffel Tower - Wikipedia",
            snippet="The Eiffel Tower is a wrought-iron lattice tower on the Champ de Mars in Paris.",
        )
    ],
)


class TransientProviderError(Exception):
    """Stands in for a provider 5xx / network failure."""

    def __init__(self, message: str = "upstream timeout", status_code: int = 503) -> None:
        super().__init__(message)
        self.status_code = status_code


class RejectedRequestError(Exception):
    def __init__(self, message: str = "bad request", status_code: int = 400) -> None:
        super().__init__(message)
        self.status_code = status_code


def make_audit(**overrides: Any) -> AttemptAudit:
    values = dict(
        request_model="gpt-test",
        request_instructions="instructions",
        request_input="input",
        started_at=utcnow(),
        completed_at=utcnow(),
        response_id="resp_123",
        response_status="stop",
        response_model_version="gpt-test-2026-01-01",
        response_output_text="{}",
        usage={"input_tokens": 10, "output_tokens": 5, "total_tokens": 15},
    )
    values.update(overrides)
    return AttemptAudit(**values)


def make_output(claims: Optional[List[InvestigationClaimResult]] = None) -> InvestigatorOutput:
    return InvestigatorOutput(
        result=InvestigationResult(claims=[SAMPLE_CLAIM] if claims is None else claims),
        model_version="gpt-test-2026-01-01",
        attempt_audit=make_audit(),
    )


def wrap_failure(cause: Exception) -> InvestigatorExecutionError:
    """Raise-and-catch so the wrapper carries `cause` as __cause__, like the real investigator."""
    try:
        try:
            raise cause
        except Exception as e:
            raise InvestigatorExecutionError(
                f"Investigation call failed: {e}",
                attempt_audit=make_audit(
                    response_id=None,
                    response_output_text=None,
                    error_name=type(e).__name__,
                    error_message=str(e),
                    error_status_code=getattr(e, "status_code", None),
                ),
            ) from e
    except InvestigatorExecutionError as wrapped:
        return wrapped


# ---------------------------------------------------------------------------
# Fake collaborators
# ---------------------------------------------------------------------------

class FakeInvestigator(Investigator):
    """Returns a canned output or raises a canned error; records every input."""

    def __init__(
        self,
        output: Optional[InvestigatorOutput] = None,
        error: Optional[Exception] = None,
        on_investigate: Optional[Callable[[InvestigatorInput], None]] = None,
    ) -> None:
        self.output = output or make_output()
        self.error = error
        self.on_investigate = on_investigate
        self.inputs: List[InvestigatorInput] = []

    def investigate(self, investigator_input: InvestigatorInput) -> InvestigatorOutput:
        self.inputs.append(investigator_input)
        if self.on_investigate is not None:
            self.on_investigate(investigator_input)
        if self.error is not None:
            raise self.error
        return self.output


class EnqueueRecorder:
    """Drop-in for enqueue_investigation_run."""

    def __init__(self) -> None:
        self.run_ids: List[UUID] = []

    def __call__(self, run_id: UUID) -> None:
        self.run_ids.append(run_id)


@dataclass
class SpyHeartbeat:
    run_id: UUID
    worker_identity: str
    started: bool = False
    stop_calls: int = 0

    def start(self) -> "SpyHeartbeat":
        self.started = True
        return self

    def stop(self) -> None:
        self.stop_calls += 1


@dataclass
class HeartbeatRecorder:
    created: List[SpyHeartbeat] = field(default_factory=list)

    def factory(self, run_id: UUID, worker_identity: str, **kwargs: Any) -> SpyHeartbeat:
        spy = SpyHeartbeat(run_id=run_id, worker_identity=worker_identity)
        self.created.append(spy)
        return spy


# ---------------------------------------------------------------------------
# Concurrency
# ---------------------------------------------------------------------------

def run_in_parallel(count: int, work: Callable[[Any, int], Any], timeout: float = 30.0):
    """
    Run `work(session, index)` on `count` threads released together by a
    barrier, each with its own session. Returns (results by index, errors).
    """
    barrier = threading.Barrier(count)
    results: List[Any] = [None] * count
    errors: List[Exception] = []

    def runner(index: int) -> None:
        session = SessionLocal()
        try:
            barrier.wait(timeout=timeout)
            results[index] = work(session, index)
        except Exception as e:
            errors.append(e)
        finally:
            session.close()

    threads = [threading.Thread(target=runner, args=(i,)) for i in range(count)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join(timeout)
    return results, errors


# ---------------------------------------------------------------------------
# Seeding helpers
# ---------------------------------------------------------------------------

def seed_post(
    db,
    *,
    external_id: str = "post-1",
    text: str = SAMPLE_TEXT,
    score: float = 0.0,
    platform: Platform = Platform.LESSWRONG,
    media_urls: Optional[List[str]] = None,
) -> Post:
    version = to_content_version(text)
    post = Post(
        platform=platform,
        external_id=external_id,
        url=f"https://www.lesswrong.com/posts/{external_id}",
        author_name="Ada",
        latest_content_hash=version.content_hash,
        latest_content_text=version.content_text,
        word_count=word_count(version.content_text),
        unique_view_score=score,
        media_urls=media_urls,
    )
    db.add(post)
    db.commit()
    return post


def seed_investigation(
    db,
    post: Post,
    *,
    status: InvestigationStatus = InvestigationStatus.PENDING,
    text: Optional[str] = None,
    lease_owner: Optional[str] = None,
    lease_expires_at: Optional[datetime] = None,
    recover_after_at: Optional[datetime] = None,
    checked_at: Optional[datetime] = None,
    parent_investigation_id: Optional[UUID] = None,
    content_diff: Optional[str] = None,
    with_run: bool = True,
):
    version = to_content_version(text if text is not None else post.latest_content_text)
    investigation = Investigation(
        post_id=post.id,
        content_hash=version.content_hash,
        content_text=version.content_text,
        status=status,
        provenance=ContentProvenance.CLIENT_FALLBACK,
        checked_at=checked_at,
        parent_investigation_id=parent_investigation_id,
        content_diff=content_diff,
    )
    db.add(investigation)
    db.flush()

    run = None
    if with_run:
        run = InvestigationRun(
            investigation_id=investigation.id,
            lease_owner=lease_owner,
            lease_expires_at=lease_expires_at,
            recover_after_at=recover_after_at,
            queued_at=utcnow() - timedelta(minutes=10),
        )
        db.add(run)
    db.commit()
    return investigation, run


def seed_claim(db, investigation: Investigation, claim: InvestigationClaimResult = SAMPLE_CLAIM) -> Claim:
    row = Claim(
        investigation_id=investigation.id,
        claim_order=0,
        text=claim.text,
        context=claim.context,
        summary=claim.summary,
        reasoning=claim.reasoning,
    )
    row.sources = [
        ClaimSource(
            url=s.url,
            title=s.title,
            snippet=s.snippet,
            snapshot_text=s.snippet,
            snapshot_hash="0" * 64,
        )
        for s in claim.sources
    ]
    db.add(row)
    db.commit()
    return row
