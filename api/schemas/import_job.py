# api/schemas/import_job.py
from __future__ import annotations

from datetime import datetime
from typing import Any, Dict, List, Optional
from uuid import UUID

from pydantic import BaseModel, ConfigDict, Field

from api.models.import_job import ImportJobStatus


class CsvUploadResponse(BaseModel):
    job_id: UUID
    storage_key: str
    status: ImportJobStatus = ImportJobStatus.PENDING
    message: str = "File uploaded successfully. Processing started."


class ValidationErrorEntry(BaseModel):
    row_number: int = Field(ge=1)
    raw_record: Dict[str, Any]
    error_message: str


class ImportJobSummary(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: UUID
    file_name: str
    status: ImportJobStatus
    total_rows: int = 0
    successful_imports: int = 0
    failed_imports: int = 0
    processing_time_ms: Optional[int] = None
    error_report: Optional[str] = None
    created_at: Optional[datetime] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None


class ImportJobStatusResponse(ImportJobSummary):
    validation_errors: List[ValidationErrorEntry] = Field(default_factory=list)
