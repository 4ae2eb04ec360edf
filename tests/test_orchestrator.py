"""
Tests for orchestrator.py - one delivery of an investigation run.

The investigator is a FakeInvestigator and the heartbeat thread is replaced by
a recorder (see the `heartbeats` fixture), so every test is deterministic.
"""
from datetime import timedelta
from uuid import uuid4

import pytest

from truesight.core.clock import utcnow
from truesight.core.config import get_settings
from truesight.core.db import SessionLocal
from truesight.models import (
    AttemptOutcome,
    Claim,
    ClaimSource,
    Investigation,
    InvestigationAttempt,
    InvestigationKeySource,
    InvestigationRun,
    InvestigationStatus,
    InvestigationTraceEvent,
)
from truesight.services import orchestrator
from truesight.services.content import hash_content
from truesight.services.investigator import InvestigatorExecutionError
from truesight.services.key_source import attach_key_source
from truesight.services.orchestrator import ExecutionOutcome, InvestigationExecutor, run_investigation

from tests.fixtures.investigation_fixtures import (
    EDITED_TEXT,
    SAMPLE_CLAIM,
    FakeInvestigator,
    RejectedRequestError,
    TransientProviderError,
    seed_claim,
    seed_investigation,
    seed_post,
    wrap_failure,
)

WORKER = "worker-test:1:abcd"


def _execute(executor, run_id, *, attempt_number=1, is_last_attempt=False, worker_identity=WORKER):
    return executor.execute(
        run_id,
        attempt_number=attempt_number,
        is_last_attempt=is_last_attempt,
        worker_identity=worker_identity,
    )


def _state(db, investigation_id, run_id):
    db.expire_all()
    return db.get(Investigation, investigation_id), db.get(InvestigationRun, run_id)


def _attempts(db, investigation_id):
    return (
        db.query(InvestigationAttempt)
        .filter(InvestigationAttempt.investigation_id == investigation_id)
        .order_by(InvestigationAttempt.attempt_number)
        .all()
    )


# ---------------------------------------------------------------------------
# Happy path
# ---------------------------------------------------------------------------

class TestCompletion:

    def test_completes_and_records_claims(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        investigator = FakeInvestigator()

        outcome = _execute(InvestigationExecutor(investigator), run.id)

        assert outcome == ExecutionOutcome.COMPLETED
        investigation, run = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.COMPLETE
        assert investigation.checked_at is not None
        assert investigation.model_version == "gpt-test-2026-01-01"
        assert run.lease_owner is None
        assert run.lease_expires_at is None
        assert run.completed_at is not None

        claims = db.query(Claim).filter(Claim.investigation_id == investigation.id).all()
        assert [c.text for c in claims] == [SAMPLE_CLAIM.text]
        source = claims[0].sources[0]
        assert source.snapshot_hash == hash_content(SAMPLE_CLAIM.sources[0].snippet)

        attempts = _attempts(db, investigation.id)
        assert [(a.attempt_number, a.outcome) for a in attempts] == [(1, AttemptOutcome.SUCCEEDED)]
        assert attempts[0].response_id == "resp_123"

        steps = {e.step for e in db.query(InvestigationTraceEvent).all()}
        assert {"run:claimed", "run:completed"} <= steps

    def test_heartbeat_runs_for_the_whole_execution(self, db, heartbeats):
        post = seed_post(db)
        _, run = seed_investigation(db, post)

        _execute(InvestigationExecutor(FakeInvestigator()), run.id)

        assert len(heartbeats.created) == 1
        spy = heartbeats.created[0]
        assert spy.run_id == run.id
        assert spy.worker_identity == WORKER
        assert spy.started
        assert spy.stop_calls == 1

    def test_investigator_sees_post_context(self, db, heartbeats):
        post = seed_post(
            db,
            media_urls=["https://cdn.example.com/a.png", "https://cdn.example.com/clip.mp4"],
        )
        _, run = seed_investigation(db, post)
        investigator = FakeInvestigator()

        _execute(InvestigationExecutor(investigator), run.id)

        seen = investigator.inputs[0]
        assert seen.content_text == post.latest_content_text
        assert seen.platform == "LESSWRONG"
        assert seen.author_name == "Ada"
        assert seen.image_urls == ["https://cdn.example.com/a.png"]
        assert seen.has_video is True
        assert seen.is_update is False

    def test_update_carries_previous_claims(self, db, heartbeats):
        post = seed_post(db)
        previous, _ = seed_investigation(db, post, status=InvestigationStatus.COMPLETE, checked_at=utcnow())
        seed_claim(db, previous)
        _, run = seed_investigation(
            db,
            post,
            text=EDITED_TEXT,
            parent_investigation_id=previous.id,
            content_diff="-It is located in Berlin.\n+It is located in Paris.",
        )
        investigator = FakeInvestigator()

        _execute(InvestigationExecutor(investigator), run.id)

        seen = investigator.inputs[0]
        assert seen.is_update is True
        assert [c.text for c in seen.old_claims] == [SAMPLE_CLAIM.text]
        assert seen.old_claims[0].sources[0].url == SAMPLE_CLAIM.sources[0].url
        assert "+It is located in Paris." in seen.content_diff


# ---------------------------------------------------------------------------
# Claim no-ops
# ---------------------------------------------------------------------------

class TestNotClaimed:

    def test_missing_run(self, db, heartbeats):
        investigator = FakeInvestigator()
        assert _execute(InvestigationExecutor(investigator), uuid4()) == ExecutionOutcome.MISSING
        assert investigator.inputs == []
        assert heartbeats.created == []

    @pytest.mark.parametrize("status", [InvestigationStatus.COMPLETE, InvestigationStatus.FAILED])
    def test_terminal_investigation(self, db, heartbeats, status):
        post = seed_post(db)
        _, run = seed_investigation(db, post, status=status)
        investigator = FakeInvestigator()

        assert _execute(InvestigationExecutor(investigator), run.id) == ExecutionOutcome.TERMINAL
        assert investigator.inputs == []

    def test_live_lease_held_by_another_worker(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(
            db,
            post,
            status=InvestigationStatus.PROCESSING,
            lease_owner="other-worker",
            lease_expires_at=utcnow() + timedelta(minutes=5),
        )
        investigator = FakeInvestigator()

        assert _execute(InvestigationExecutor(investigator), run.id) == ExecutionOutcome.LEASE_HELD
        assert investigator.inputs == []
        _, run = _state(db, investigation.id, run.id)
        assert run.lease_owner == "other-worker"


# ---------------------------------------------------------------------------
# Guarded commit
# ---------------------------------------------------------------------------

class TestLostCommit:

    def test_result_is_discarded_when_investigation_moved_on(self, db, heartbeats):
        """If the row left PROCESSING mid-run, nothing from this run is written."""
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        investigation_id = investigation.id

        def fail_elsewhere(_input):
            other = SessionLocal()
            try:
                (
                    other.query(Investigation)
                    .filter(Investigation.id == investigation_id)
                    .update({Investigation.status: InvestigationStatus.FAILED}, synchronize_session=False)
                )
                other.commit()
            finally:
                other.close()

        outcome = _execute(InvestigationExecutor(FakeInvestigator(on_investigate=fail_elsewhere)), run.id)

        assert outcome == ExecutionOutcome.DISCARDED
        investigation, _ = _state(db, investigation_id, run.id)
        assert investigation.status == InvestigationStatus.FAILED
        assert db.query(Claim).count() == 0
        assert db.query(ClaimSource).count() == 0
        assert _attempts(db, investigation_id) == []
        assert heartbeats.created[0].stop_calls == 1


# ---------------------------------------------------------------------------
# Failures and retries
# ---------------------------------------------------------------------------

class TestFailures:

    def test_non_retryable_failure_fails_immediately(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        error = wrap_failure(RejectedRequestError(status_code=400))

        outcome = _execute(InvestigationExecutor(FakeInvestigator(error=error)), run.id, is_last_attempt=False)

        assert outcome == ExecutionOutcome.FAILED
        investigation, run = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.FAILED
        assert investigation.checked_at is None
        assert run.lease_owner is None
        assert run.completed_at is not None

        attempt = _attempts(db, investigation.id)[0]
        assert attempt.outcome == AttemptOutcome.FAILED
        assert attempt.error_name == "RejectedRequestError"
        assert attempt.error_status_code == 400
        assert heartbeats.created[0].stop_calls == 1

    def test_transient_failure_on_last_attempt_fails(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        error = wrap_failure(TransientProviderError())

        outcome = _execute(
            InvestigationExecutor(FakeInvestigator(error=error)), run.id, attempt_number=4, is_last_attempt=True
        )

        assert outcome == ExecutionOutcome.FAILED
        investigation, _ = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.FAILED
        assert [a.attempt_number for a in _attempts(db, investigation.id)] == [4]

    def test_transient_failure_releases_lease_and_raises(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        error = wrap_failure(TransientProviderError())
        before = utcnow()

        with pytest.raises(InvestigatorExecutionError):
            _execute(InvestigationExecutor(FakeInvestigator(error=error)), run.id, is_last_attempt=False)

        investigation, run = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.PROCESSING
        assert run.lease_owner is None
        assert run.lease_expires_at is None
        assert run.recover_after_at > before
        assert run.completed_at is None

        attempt = _attempts(db, investigation.id)[0]
        assert attempt.outcome == AttemptOutcome.FAILED
        assert attempt.error_status_code == 503
        assert heartbeats.created[0].stop_calls == 1

        steps = [e.step for e in db.query(InvestigationTraceEvent).all()]
        assert "run:retry" in steps

    def test_redelivery_after_transient_failure_completes(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)

        with pytest.raises(InvestigatorExecutionError):
            _execute(
                InvestigationExecutor(FakeInvestigator(error=wrap_failure(TransientProviderError()))),
                run.id,
                worker_identity="worker-1",
            )
        outcome = _execute(
            InvestigationExecutor(FakeInvestigator()), run.id, attempt_number=2, worker_identity="worker-2"
        )

        assert outcome == ExecutionOutcome.COMPLETED
        investigation, run = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.COMPLETE
        assert run.recover_after_at is None
        assert [(a.attempt_number, a.outcome) for a in _attempts(db, investigation.id)] == [
            (1, AttemptOutcome.FAILED),
            (2, AttemptOutcome.SUCCEEDED),
        ]
        assert [spy.stop_calls for spy in heartbeats.created] == [1, 1]

    def test_unexpected_error_is_transient(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)

        with pytest.raises(RuntimeError):
            _execute(InvestigationExecutor(FakeInvestigator(error=RuntimeError("boom"))), run.id)

        attempt = _attempts(db, investigation.id)[0]
        assert attempt.error_name == "RuntimeError"
        assert attempt.error_message == "boom"


# ---------------------------------------------------------------------------
# Credentials
# ---------------------------------------------------------------------------

class TestCredentials:

    def test_user_key_is_used_and_consumed(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        attach_key_source(db, run.id, "sk-user-a")
        server = FakeInvestigator()
        user = FakeInvestigator()
        keys = []

        def factory(api_key):
            keys.append(api_key)
            return user

        outcome = _execute(InvestigationExecutor(server, factory), run.id)

        assert outcome == ExecutionOutcome.COMPLETED
        assert keys == ["sk-user-a"]
        assert len(user.inputs) == 1
        assert server.inputs == []
        db.expire_all()
        assert db.get(InvestigationKeySource, run.id) is None

    def test_expired_user_key_fails_without_fallback(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        attach_key_source(db, run.id, "sk-user-a")
        row = db.get(InvestigationKeySource, run.id)
        row.expires_at = utcnow() - timedelta(seconds=1)
        db.commit()
        server = FakeInvestigator()

        outcome = _execute(InvestigationExecutor(server), run.id)

        assert outcome == ExecutionOutcome.FAILED
        assert server.inputs == []
        assert _attempts(db, investigation.id)[0].error_name == "ExpiredKeySourceError"
        db.expire_all()
        assert db.get(InvestigationKeySource, run.id) is None

    def test_no_credentials_fails(self, db, heartbeats):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)

        outcome = _execute(InvestigationExecutor(None), run.id)

        assert outcome == ExecutionOutcome.FAILED
        assert _attempts(db, investigation.id)[0].error_name == "LLMConfigurationError"


# ---------------------------------------------------------------------------
# Celery task
# ---------------------------------------------------------------------------

class TestRunInvestigationTask:

    def test_direct_call_completes(self, db, heartbeats, monkeypatch):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        monkeypatch.setattr(orchestrator, "get_executor", lambda: InvestigationExecutor(FakeInvestigator()))

        assert run_investigation(str(run.id)) == "COMPLETED"
        investigation, _ = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.COMPLETE

    def test_transient_failure_is_retried(self, db, heartbeats, monkeypatch):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        error = wrap_failure(TransientProviderError())
        monkeypatch.setattr(
            orchestrator, "get_executor", lambda: InvestigationExecutor(FakeInvestigator(error=error))
        )

        # Called directly, Celery's retry re-raises the original exception
        with pytest.raises(InvestigatorExecutionError):
            run_investigation(str(run.id))

        investigation, _ = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.PROCESSING

    def test_single_attempt_budget_fails_on_first_transient_error(self, db, heartbeats, monkeypatch):
        post = seed_post(db)
        investigation, run = seed_investigation(db, post)
        error = wrap_failure(TransientProviderError())
        settings = get_settings().model_copy(update={"INVESTIGATION_MAX_ATTEMPTS": 1})
        monkeypatch.setattr(orchestrator, "get_settings", lambda: settings)
        monkeypatch.setattr(
            orchestrator, "get_executor", lambda: InvestigationExecutor(FakeInvestigator(error=error))
        )

        assert run_investigation(str(run.id)) == "FAILED"
        investigation, _ = _state(db, investigation.id, run.id)
        assert investigation.status == InvestigationStatus.FAILED
