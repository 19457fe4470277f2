# api/services/csv_staging.py
from __future__ import annotations

import os
import re
import time
from dataclasses import dataclass
from typing import Optional
from uuid import UUID, uuid4

from api.core.config import settings
from api.core.exceptions import (
    PayloadTooLargeError,
    ServiceUnavailableError,
    UnsupportedMediaTypeError,
    ValidationError,
)
from api.core.logging import get_structlog_logger
from api.services.dispatcher import ImportJobDispatcher
from api.services.import_jobs import ImportJobRepository
from api.services.object_store import SupabaseObjectStore

logger = get_structlog_logger()

STORAGE_PREFIX = "csv"
DISPATCH_FAILED_CODE = "dispatch_failed"

_UNSAFE_NAME_CHARS = re.compile(r"[^A-Za-z0-9._-]+")
_MAX_NAME_LENGTH = 100


@dataclass(frozen=True)
class StagedImport:
    job_id: UUID
    storage_key: str


def sanitize_file_name(file_name: Optional[str]) -> str:
    """Reduce a client-supplied name to a safe key segment."""
    base = os.path.basename((file_name or "").replace("\\", "/"))
    cleaned = _UNSAFE_NAME_CHARS.sub("_", base).strip("._")
    return cleaned[:_MAX_NAME_LENGTH] or "upload.csv"


def build_storage_key(file_name: Optional[str]) -> str:
    # Timestamp plus random component: two uploads of the same name never collide.
    epoch_ms = int(time.time() * 1000)
    return f"{STORAGE_PREFIX}/{epoch_ms}-{uuid4().hex[:12]}-{sanitize_file_name(file_name)}"


def normalize_content_type(content_type: Optional[str]) -> str:
    return (content_type or "").split(";", 1)[0].strip().lower()


class CsvStagingService:
    """Accepts an upload, stores it, records a pending job and enqueues it."""

    def __init__(
        self,
        object_store: SupabaseObjectStore,
        repository: ImportJobRepository,
        dispatcher: ImportJobDispatcher,
    ):
        self.object_store = object_store
        self.repository = repository
        self.dispatcher = dispatcher

    def check_upload(self, content: bytes, content_type: Optional[str]) -> str:
        media_type = normalize_content_type(content_type)
        if media_type not in settings.csv_content_types():
            raise UnsupportedMediaTypeError(
                "Only CSV files are accepted",
                details={"content_type": media_type or None},
            )

        if len(content) > settings.max_upload_size_bytes:
            raise PayloadTooLargeError(
                f"File exceeds the {settings.max_upload_size_mb} MB upload limit",
                details={"max_bytes": settings.max_upload_size_bytes},
            )

        if not content:
            raise ValidationError("Uploaded file is empty")

        return media_type

    async def stage_upload(
        self,
        content: bytes,
        file_name: Optional[str],
        content_type: Optional[str],
        uploader_id: int,
    ) -> StagedImport:
        media_type = self.check_upload(content, content_type)
        storage_key = build_storage_key(file_name)

        await self.object_store.put(content, storage_key, media_type)

        job = await self.repository.create(
            file_name=(file_name or sanitize_file_name(file_name))[:255],
            storage_key=storage_key,
            uploader_id=uploader_id,
        )

        try:
            await self.dispatcher.dispatch(job.id, storage_key, uploader_id)
        except Exception as e:
            logger.error(
                "csv_staging.dispatch_failed",
                job_id=str(job.id),
                storage_key=storage_key,
                error=str(e),
            )
            await self._abandon(job.id)
            raise ServiceUnavailableError(
                "Import queue unavailable, upload was not scheduled",
                details={"job_id": str(job.id)},
            ) from e

        logger.info(
            "csv_staging.staged",
            job_id=str(job.id),
            storage_key=storage_key,
            uploader_id=uploader_id,
            size_bytes=len(content),
        )
        return StagedImport(job_id=job.id, storage_key=storage_key)

    async def _abandon(self, job_id: UUID) -> None:
        try:
            await self.repository.mark_failed(
                job_id, f"{DISPATCH_FAILED_CODE}: job could not be queued"
            )
        except Exception as e:
            logger.error("csv_staging.abandon_failed", job_id=str(job_id), error=str(e))
