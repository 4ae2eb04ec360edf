from __future__ import annotations

import logging
from typing import Callable
from uuid import UUID

from ..core.celery_app import celery_app

logger = logging.getLogger(__name__)

RUN_INVESTIGATION_TASK = "truesight.services.orchestrator.run_investigation"

# Anything that can hand a run id to the worker pool
Enqueue = Callable[[UUID], None]


def enqueue_investigation_run(run_id: UUID) -> None:
    """
    Send the run to the worker queue by task name.

    Delivery is at-least-once; duplicate deliveries are rejected by the lease.
    """
    celery_app.send_task(RUN_INVESTIGATION_TASK, args=[str(run_id)], queue="investigations")
    logger.info("Enqueued investigation run", extra={"run_id": str(run_id), "step": "enqueue"})
