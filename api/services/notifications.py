# api/services/notifications.py
"""Job-finished events, published without ever holding up the import."""
from __future__ import annotations

import asyncio
import json
from typing import Any, Dict, Optional, Set
from uuid import UUID

from redis.asyncio import Redis

from api.core.config import settings
from api.core.logging import get_structlog_logger

logger = get_structlog_logger()

JOB_FINISHED_EVENT = "import_job.finished"


def build_job_finished_event(
    job_id: UUID,
    status: str,
    total_rows: int = 0,
    successful_imports: int = 0,
    failed_imports: int = 0,
) -> Dict[str, Any]:
    return {
        "event": JOB_FINISHED_EVENT,
        "jobId": str(job_id),
        "status": status,
        "totalRows": total_rows,
        "successfulImports": successful_imports,
        "failedImports": failed_imports,
    }


class ImportNotifier:
    def __init__(self, redis_client: Redis, channel: str = None):
        self.redis = redis_client
        self.channel = channel or settings.import_notifications_channel
        # Strong refs so detached tasks are not collected mid-flight.
        self._pending: Set[asyncio.Task] = set()

    async def publish(self, event: Dict[str, Any]) -> int:
        return await self.redis.publish(self.channel, json.dumps(event))

    def notify_finished(self, job_id: UUID, status: str, **counts: int) -> Optional[asyncio.Task]:
        """Schedule the publish and return immediately."""
        event = build_job_finished_event(job_id, status, **counts)
        try:
            task = asyncio.create_task(self.publish(event))
        except RuntimeError as e:
            logger.warning("notifications.schedule_failed", job_id=str(job_id), error=str(e))
            return None

        self._pending.add(task)
        task.add_done_callback(self._on_done)
        return task

    def _on_done(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.warning(
                "notifications.publish_failed",
                channel=self.channel,
                error=str(error),
            )

    async def drain(self, timeout: float = 5.0) -> None:
        """Give outstanding publishes a bounded chance to finish (worker shutdown)."""
        if not self._pending:
            return
        await asyncio.wait(set(self._pending), timeout=timeout)
