"""
CSV import worker: long-polls the import queue and processes one job at a time.

Run with ``python -m workers.csv_import_worker``. Scale out by running more
processes; the queue's visibility leases keep competing consumers apart.
"""
from __future__ import annotations

import asyncio
import signal
from typing import Optional

import sentry_sdk
from sentry_sdk.integrations.asyncio import AsyncioIntegration

from api.core.config import settings
from api.core.logging import clear_job_context, configure_structlog, get_structlog_logger
from api.db.session import create_database_engine, dispose_engine, get_session_factory
from api.services.csv_import import CsvImportProcessor
from api.services.dispatcher import MalformedJobMessage, parse_job_message
from api.services.import_jobs import ImportJobRepository
from api.services.job_queue import JobQueue, QueueMessage
from api.services.lead_writer import LeadWriter
from api.services.notifications import ImportNotifier
from api.services.object_store import get_object_store
from api.services.redis import close_redis_pool, get_redis_client

logger = get_structlog_logger()


class CsvImportWorker:
    def __init__(
        self,
        queue: JobQueue,
        processor: CsvImportProcessor,
        wait_seconds: Optional[int] = None,
        error_backoff_seconds: Optional[float] = None,
    ):
        self.queue = queue
        self.processor = processor
        self.wait_seconds = (
            wait_seconds if wait_seconds is not None else settings.queue_wait_seconds
        )
        self.error_backoff_seconds = (
            error_backoff_seconds
            if error_backoff_seconds is not None
            else settings.worker_poll_error_backoff_seconds
        )
        self.processed = 0

    async def handle_message(self, message: QueueMessage) -> bool:
        """
        Handle one delivery; returns True when the message was acknowledged.

        Never raises. A message is deleted only once its job reached a terminal
        outcome that a retry cannot change.
        """
        try:
            try:
                job = parse_job_message(message.body, message.attributes)
            except MalformedJobMessage as e:
                logger.error(
                    "csv_import_worker.malformed_message",
                    message_id=message.message_id,
                    error=str(e),
                )
                await self.queue.delete(message.receipt_handle)
                return True

            outcome = await self.processor.process(job.job_id, job.storage_key)
            self.processed += 1

            if not outcome.acknowledge:
                logger.warning(
                    "csv_import_worker.left_for_redelivery",
                    message_id=message.message_id,
                    receive_count=message.receive_count,
                    error_report=outcome.error_report,
                )
                return False

            await self.queue.delete(message.receipt_handle)
            return True

        except Exception as e:
            logger.error(
                "csv_import_worker.handler_error",
                message_id=message.message_id,
                error=str(e),
                exc_info=True,
            )
            return False

        finally:
            clear_job_context()

    async def run(self, stop_event: asyncio.Event) -> None:
        logger.info(
            "csv_import_worker.started",
            queue=self.queue.queue_name,
            wait_seconds=self.wait_seconds,
        )

        while not stop_event.is_set():
            try:
                messages = await self.queue.receive(
                    max_messages=1,
                    wait_seconds=self.wait_seconds,
                )
            except Exception as e:
                logger.error("csv_import_worker.poll_failed", error=str(e))
                await self._pause(stop_event)
                continue

            for message in messages:
                await self.handle_message(message)

        logger.info("csv_import_worker.stopped", processed=self.processed)

    async def _pause(self, stop_event: asyncio.Event) -> None:
        try:
            await asyncio.wait_for(stop_event.wait(), timeout=self.error_backoff_seconds)
        except asyncio.TimeoutError:
            pass


def _install_signal_handlers(stop_event: asyncio.Event) -> None:
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop_event.set)
        except NotImplementedError:
            # Windows event loops: Ctrl+C still raises KeyboardInterrupt.
            logger.warning("csv_import_worker.signal_handler_unsupported", signal=sig.name)


async def worker_main() -> None:
    logger.info("csv_import_worker.starting", environment=settings.environment)

    if settings.sentry_dsn:
        sentry_sdk.init(
            dsn=settings.sentry_dsn,
            environment=settings.environment,
            integrations=[AsyncioIntegration()],
            traces_sample_rate=1.0 if settings.is_development else 0.1,
            send_default_pii=False,
        )

    create_database_engine(application_name="csv_import_worker")
    session_factory = get_session_factory()
    redis_client = await get_redis_client()

    notifier = ImportNotifier(redis_client)
    processor = CsvImportProcessor(
        repository=ImportJobRepository(session_factory),
        object_store=get_object_store(),
        lead_writer=LeadWriter(session_factory),
        notifier=notifier,
    )
    worker = CsvImportWorker(JobQueue(redis_client), processor)

    stop_event = asyncio.Event()
    _install_signal_handlers(stop_event)

    try:
        await worker.run(stop_event)
    finally:
        await notifier.drain()
        await close_redis_pool()
        await dispose_engine()


def main() -> None:
    configure_structlog()
    asyncio.run(worker_main())


if __name__ == "__main__":
    main()
