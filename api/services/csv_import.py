# api/services/csv_import.py
"""
Processing of one staged CSV import job.

claim -> signed URL -> download -> parse -> validate -> bulk write -> complete

Any failure after the claim marks the job failed with a classified report and
leaves the queue message unacknowledged, so the visibility timeout retries it.
An attempt whose claim was taken over by a later delivery records nothing,
sends no notification and is acknowledged.
"""
from __future__ import annotations

import time
from dataclasses import dataclass
from typing import Awaitable, Callable, Optional
from uuid import UUID, uuid4

from api.core.config import settings
from api.core.exceptions import ImportJobError
from api.core.logging import bind_job_context, get_structlog_logger
from api.models.import_job import ImportJobStatus
from api.services.import_jobs import ClaimResult, ImportJobRepository
from api.services.lead_writer import LeadWriter
from api.services.notifications import ImportNotifier
from api.services.object_store import SupabaseObjectStore, download_signed_url
from api.services.row_validation import validate_records
from api.utils.csv_parser import parse_csv_records

logger = get_structlog_logger()

Downloader = Callable[[str], Awaitable[bytes]]

# Outcome of an attempt whose claim was taken over by a later delivery.
SUPERSEDED = "superseded"


@dataclass(frozen=True)
class ImportOutcome:
    job_id: UUID
    status: str
    acknowledge: bool
    total_rows: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    error_report: Optional[str] = None


def classify_failure(error: Exception) -> str:
    """Client-safe error_report for a job-level failure."""
    if isinstance(error, ImportJobError):
        return error.report
    return f"{ImportJobError.code}: unexpected {type(error).__name__}"


class CsvImportProcessor:
    def __init__(
        self,
        repository: ImportJobRepository,
        object_store: SupabaseObjectStore,
        lead_writer: LeadWriter,
        notifier: Optional[ImportNotifier] = None,
        downloader: Downloader = download_signed_url,
    ):
        self.repository = repository
        self.object_store = object_store
        self.lead_writer = lead_writer
        self.notifier = notifier
        self.downloader = downloader

    async def process(self, job_id: UUID, storage_key: str) -> ImportOutcome:
        attempt_id = uuid4()
        bind_job_context(job_id=str(job_id), storage_key=storage_key, attempt_id=str(attempt_id))

        claim = await self.repository.mark_processing(job_id, attempt_id)
        if claim is ClaimResult.NOT_FOUND:
            logger.warning("csv_import.job_missing")
            return ImportOutcome(job_id=job_id, status=claim.value, acknowledge=True)
        if claim is ClaimResult.ALREADY_COMPLETED:
            logger.info("csv_import.duplicate_delivery")
            return ImportOutcome(job_id=job_id, status=claim.value, acknowledge=True)

        logger.info("csv_import.started")
        started = time.perf_counter()

        try:
            outcome = await self._run(job_id, attempt_id, storage_key, started)
        except Exception as e:
            return await self._fail(job_id, attempt_id, e)

        if outcome.status == SUPERSEDED:
            return outcome

        self._notify(outcome)
        return outcome

    async def _run(
        self, job_id: UUID, attempt_id: UUID, storage_key: str, started: float
    ) -> ImportOutcome:
        url = await self.object_store.signed_get_url(
            storage_key, settings.storage_signed_url_ttl_seconds
        )
        content = await self.downloader(url)

        records = parse_csv_records(content)
        valid_rows, row_errors = validate_records(records)
        inserted = await self.lead_writer.insert_contacts(valid_rows)

        total_rows = len(valid_rows) + len(row_errors)
        processing_time_ms = int((time.perf_counter() - started) * 1000)

        recorded = await self.repository.mark_completed(
            job_id,
            attempt_id,
            total_rows=total_rows,
            successful_imports=inserted,
            failed_imports=len(row_errors),
            validation_errors=[error.to_dict() for error in row_errors],
            processing_time_ms=processing_time_ms,
        )
        if not recorded:
            return self._superseded(job_id, "completed")

        logger.info(
            "csv_import.completed",
            total_rows=total_rows,
            successful_imports=inserted,
            failed_imports=len(row_errors),
            duplicates_skipped=len(valid_rows) - inserted,
            processing_time_ms=processing_time_ms,
        )

        return ImportOutcome(
            job_id=job_id,
            status=ImportJobStatus.COMPLETED.value,
            acknowledge=True,
            total_rows=total_rows,
            successful_imports=inserted,
            failed_imports=len(row_errors),
        )

    async def _fail(self, job_id: UUID, attempt_id: UUID, error: Exception) -> ImportOutcome:
        report = classify_failure(error)
        logger.error("csv_import.failed", error_report=report, exc_info=error)

        try:
            recorded = await self.repository.mark_failed(job_id, report, attempt_id)
        except Exception as write_error:
            logger.error("csv_import.mark_failed_error", error=str(write_error))
        else:
            if not recorded:
                return self._superseded(job_id, "failed")

        outcome = ImportOutcome(
            job_id=job_id,
            status=ImportJobStatus.FAILED.value,
            acknowledge=False,
            error_report=report,
        )
        self._notify(outcome)
        return outcome

    def _superseded(self, job_id: UUID, attempted: str) -> ImportOutcome:
        # Another consumer re-claimed the job after this lease lapsed; its
        # result stands and this delivery is finished.
        logger.warning("csv_import.superseded", attempted=attempted)
        return ImportOutcome(job_id=job_id, status=SUPERSEDED, acknowledge=True)

    def _notify(self, outcome: ImportOutcome) -> None:
        if self.notifier is None:
            return
        self.notifier.notify_finished(
            outcome.job_id,
            outcome.status,
            total_rows=outcome.total_rows,
            successful_imports=outcome.successful_imports,
            failed_imports=outcome.failed_imports,
        )
