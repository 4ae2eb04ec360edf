from celery import Celery

from .config import get_settings
from .logging import configure_logging

settings = get_settings()
configure_logging()

celery_app = Celery(
    "truesight",
    broker=settings.REDIS_URL,
    backend=settings.REDIS_URL,
)

celery_app.conf.update(
    task_routes={
        "truesight.services.orchestrator.run_investigation": {"queue": "investigations"},
        "truesight.services.selector.*": {"queue": "admission"},
    },
    task_serializer="json",
    result_serializer="json",
    accept_content=["json"],
    timezone="UTC",
    enable_utc=True,
    # A worker that dies mid-investigation leaves the message unacked so the
    # broker redelivers it; the run lease decides whether it actually runs.
    task_acks_late=True,
    task_reject_on_worker_lost=True,
    worker_prefetch_multiplier=1,
    imports=("truesight.services.orchestrator", "truesight.services.selector"),
    beat_schedule={
        "select-investigation-candidates": {
            "task": "truesight.services.selector.run_selector_task",
            "schedule": settings.SELECTOR_INTERVAL_SECONDS,
        },
        "recover-stale-investigation-runs": {
            "task": "truesight.services.selector.recover_stale_runs_task",
            "schedule": settings.STALE_RUN_SWEEP_INTERVAL_SECONDS,
        },
    },
)
