# api/services/stale_jobs.py
"""Re-dispatch of jobs stuck in processing after their consumer vanished."""
from __future__ import annotations

from datetime import timedelta
from typing import List
from uuid import UUID

from api.core.logging import get_structlog_logger
from api.services.dispatcher import ImportJobDispatcher
from api.services.import_jobs import ImportJobRepository

logger = get_structlog_logger()


async def requeue_stale_jobs(
    repository: ImportJobRepository,
    dispatcher: ImportJobDispatcher,
    older_than: timedelta,
    dry_run: bool = False,
) -> List[UUID]:
    """
    Send a fresh message for every job processing longer than ``older_than``.

    The job row is left as is; the next consumer re-claims it from processing.
    """
    stale = await repository.find_stale_processing(older_than)
    requeued: List[UUID] = []

    for job in stale:
        if not dry_run:
            await dispatcher.dispatch(job.id, job.storage_key, job.upload_user_id)
        requeued.append(job.id)
        logger.warning(
            "stale_jobs.requeued",
            job_id=str(job.id),
            started_at=job.started_at.isoformat() if job.started_at else None,
            dry_run=dry_run,
        )

    return requeued
