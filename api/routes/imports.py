# api/routes/imports.py
from __future__ import annotations

from typing import Dict, List, Optional
from uuid import UUID

from fastapi import APIRouter, Depends, File, Query, UploadFile, status

from api.core.config import settings
from api.core.logging import get_structlog_logger
from api.middleware.auth import require_import_role
from api.schemas.import_job import CsvUploadResponse, ImportJobStatusResponse, ImportJobSummary
from api.services.csv_staging import CsvStagingService
from api.services.dispatcher import ImportJobDispatcher
from api.services.import_jobs import ImportJobRepository
from api.services.job_queue import get_job_queue
from api.services.object_store import get_object_store

logger = get_structlog_logger()

router = APIRouter(prefix="/imports", tags=["imports"])


async def get_import_job_repository() -> ImportJobRepository:
    return ImportJobRepository()


async def get_staging_service(
    repository: ImportJobRepository = Depends(get_import_job_repository),
) -> CsvStagingService:
    queue = await get_job_queue()
    return CsvStagingService(
        object_store=get_object_store(),
        repository=repository,
        dispatcher=ImportJobDispatcher(queue),
    )


@router.post(
    "/csv",
    response_model=CsvUploadResponse,
    status_code=status.HTTP_202_ACCEPTED,
)
async def upload_csv(
    file: UploadFile = File(...),
    user: Dict = Depends(require_import_role),
    staging: CsvStagingService = Depends(get_staging_service),
) -> CsvUploadResponse:
    """Stage a CSV of leads for background import; returns before any row is read."""
    # One byte past the ceiling is enough to reject oversized uploads.
    content = await file.read(settings.max_upload_size_bytes + 1)

    staged = await staging.stage_upload(
        content,
        file_name=file.filename,
        content_type=file.content_type,
        uploader_id=user["id"],
    )

    return CsvUploadResponse(job_id=staged.job_id, storage_key=staged.storage_key)


@router.get("/history", response_model=List[ImportJobSummary])
async def import_history(
    limit: Optional[int] = Query(default=None, ge=1, le=100),
    user: Dict = Depends(require_import_role),
    repository: ImportJobRepository = Depends(get_import_job_repository),
) -> List[ImportJobSummary]:
    jobs = await repository.list_for_uploader(
        user["id"],
        limit=limit or settings.import_history_default_limit,
    )
    return [ImportJobSummary.model_validate(job) for job in jobs]


@router.get("/{job_id}/status", response_model=ImportJobStatusResponse)
async def import_status(
    job_id: UUID,
    user: Dict = Depends(require_import_role),
    repository: ImportJobRepository = Depends(get_import_job_repository),
) -> ImportJobStatusResponse:
    job = await repository.get(job_id)
    return ImportJobStatusResponse.model_validate(job)
