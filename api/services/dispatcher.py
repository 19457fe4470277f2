# api/services/dispatcher.py
"""Job descriptor wire format and hand-off onto the import queue."""
from __future__ import annotations

import json
from typing import Any, Mapping
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field
from pydantic import ValidationError as PydanticValidationError

from api.core.logging import get_structlog_logger
from api.services.job_queue import JobQueue

logger = get_structlog_logger()

JOB_TYPE_ATTRIBUTE = "jobType"
CSV_PROCESSING_JOB_TYPE = "csv_processing"


class MalformedJobMessage(Exception):
    """Queue message that can never be processed as a CSV import."""


class ImportJobMessage(BaseModel):
    model_config = ConfigDict(populate_by_name=True, frozen=True)

    job_id: UUID = Field(alias="jobId")
    storage_key: str = Field(alias="storageKey", min_length=1)
    uploader_id: int = Field(alias="uploaderId")

    def to_body(self) -> str:
        return json.dumps(self.model_dump(mode="json", by_alias=True))


def parse_job_message(body: str, attributes: Mapping[str, Any] = None) -> ImportJobMessage:
    job_type = (attributes or {}).get(JOB_TYPE_ATTRIBUTE)
    if job_type is not None and job_type != CSV_PROCESSING_JOB_TYPE:
        raise MalformedJobMessage(f"Unexpected job type {job_type!r}")

    try:
        return ImportJobMessage.model_validate_json(body)
    except PydanticValidationError as e:
        raise MalformedJobMessage(
            f"Invalid import job message: {e.error_count()} error(s)"
        ) from e


class ImportJobDispatcher:
    def __init__(self, queue: JobQueue):
        self.queue = queue

    async def dispatch(self, job_id: UUID, storage_key: str, uploader_id: int) -> str:
        message = ImportJobMessage(
            job_id=job_id,
            storage_key=storage_key,
            uploader_id=uploader_id,
        )

        message_id = await self.queue.send(
            message.to_body(),
            attributes={JOB_TYPE_ATTRIBUTE: CSV_PROCESSING_JOB_TYPE},
        )

        logger.info(
            "dispatcher.dispatched",
            job_id=str(job_id),
            storage_key=storage_key,
            message_id=message_id,
        )
        return message_id
