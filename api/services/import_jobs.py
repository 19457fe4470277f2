# api/services/import_jobs.py
"""Persistence of ImportJob status records.

Every write is a single-row overwrite keyed by job id, so replaying a step
(after a queue redelivery) converges on the same stored values. Terminal
writes also match the claim's attempt id, so a consumer whose lease lapsed
cannot overwrite the outcome of the consumer that took over.
"""
from __future__ import annotations

from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone
from enum import Enum
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence
from uuid import UUID, uuid4

from sqlalchemy import func, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.core.exceptions import DatabaseError, NotFoundError
from api.core.logging import get_structlog_logger
from api.db.session import get_session_factory
from api.models.import_job import ImportJob, ImportJobStatus

logger = get_structlog_logger()


class ClaimResult(str, Enum):
    CLAIMED = "claimed"
    ALREADY_COMPLETED = "already_completed"
    NOT_FOUND = "not_found"


class ImportJobRepository:
    def __init__(self, session_factory: Optional[async_sessionmaker[AsyncSession]] = None):
        self._session_factory = session_factory or get_session_factory()

    @asynccontextmanager
    async def _transaction(self) -> AsyncIterator[AsyncSession]:
        try:
            async with self._session_factory() as session:
                async with session.begin():
                    yield session
        except SQLAlchemyError as e:
            logger.error("import_jobs.database_error", error=str(e))
            raise DatabaseError(message="Import job store error") from e

    async def _update(self, job_id: UUID, *criteria, **values) -> bool:
        stmt = (
            update(ImportJob)
            .where(ImportJob.id == job_id, *criteria)
            .values(**values)
            .returning(ImportJob.id)
            .execution_options(synchronize_session=False)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return result.first() is not None

    async def create(
        self,
        *,
        file_name: str,
        storage_key: str,
        uploader_id: int,
    ) -> ImportJob:
        job = ImportJob(
            id=uuid4(),
            file_name=file_name,
            storage_key=storage_key,
            upload_user_id=uploader_id,
            status=ImportJobStatus.PENDING,
            total_rows=0,
            successful_imports=0,
            failed_imports=0,
            validation_errors=[],
        )

        async with self._transaction() as session:
            session.add(job)

        logger.info(
            "import_jobs.created",
            job_id=str(job.id),
            storage_key=storage_key,
            uploader_id=uploader_id,
        )
        return job

    async def mark_processing(self, job_id: UUID, attempt_id: UUID) -> ClaimResult:
        """
        Claim a job for processing under a fresh ``attempt_id``.

        Pending, processing (lapsed lease) and failed jobs can be claimed; a
        completed job is never re-run. A newer claim supersedes an older one:
        only the attempt holding the latest claim can finish the job.
        """
        claimed = await self._update(
            job_id,
            ImportJob.status != ImportJobStatus.COMPLETED,
            status=ImportJobStatus.PROCESSING,
            attempt_id=attempt_id,
            started_at=func.now(),
            completed_at=None,
            error_report=None,
        )
        if claimed:
            return ClaimResult.CLAIMED

        async with self._transaction() as session:
            result = await session.execute(
                select(ImportJob.status).where(ImportJob.id == job_id)
            )
            status = result.scalar_one_or_none()

        return ClaimResult.NOT_FOUND if status is None else ClaimResult.ALREADY_COMPLETED

    async def mark_completed(
        self,
        job_id: UUID,
        attempt_id: UUID,
        *,
        total_rows: int,
        successful_imports: int,
        failed_imports: int,
        validation_errors: Sequence[Dict[str, Any]],
        processing_time_ms: int,
    ) -> bool:
        """Returns False when the attempt no longer holds the claim."""
        return await self._update(
            job_id,
            *self._claim_held_by(attempt_id),
            status=ImportJobStatus.COMPLETED,
            total_rows=total_rows,
            successful_imports=successful_imports,
            failed_imports=failed_imports,
            validation_errors=list(validation_errors),
            processing_time_ms=processing_time_ms,
            error_report=None,
            completed_at=func.now(),
        )

    async def mark_failed(
        self,
        job_id: UUID,
        error_report: str,
        attempt_id: Optional[UUID] = None,
    ) -> bool:
        """
        Fail a job and zero its counts.

        With ``attempt_id`` only the current claim holder can fail the job;
        without one only a job that was never claimed (still pending) can be.
        Returns False when the write was rejected.
        """
        if attempt_id is None:
            criteria = (ImportJob.status == ImportJobStatus.PENDING,)
        else:
            criteria = self._claim_held_by(attempt_id)

        return await self._update(
            job_id,
            *criteria,
            status=ImportJobStatus.FAILED,
            error_report=error_report,
            total_rows=0,
            successful_imports=0,
            failed_imports=0,
            validation_errors=[],
            completed_at=func.now(),
        )

    @staticmethod
    def _claim_held_by(attempt_id: UUID) -> tuple:
        return (
            ImportJob.status == ImportJobStatus.PROCESSING,
            ImportJob.attempt_id == attempt_id,
        )

    async def get(self, job_id: UUID) -> ImportJob:
        async with self._transaction() as session:
            job = await session.get(ImportJob, job_id)

        if job is None:
            raise NotFoundError(
                message="Import job not found",
                details={"job_id": str(job_id)},
            )
        return job

    async def list_for_uploader(self, uploader_id: int, limit: int = 10) -> List[ImportJob]:
        stmt = (
            select(ImportJob)
            .where(ImportJob.upload_user_id == uploader_id)
            .order_by(ImportJob.created_at.desc())
            .limit(limit)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())

    async def find_stale_processing(self, older_than: timedelta) -> List[ImportJob]:
        cutoff = datetime.now(timezone.utc) - older_than
        stmt = (
            select(ImportJob)
            .where(
                ImportJob.status == ImportJobStatus.PROCESSING,
                ImportJob.started_at < cutoff,
            )
            .order_by(ImportJob.started_at)
        )
        async with self._transaction() as session:
            result = await session.execute(stmt)
            return list(result.scalars().all())
