# api/models/import_job.py
from __future__ import annotations

from enum import Enum

from sqlalchemy import CheckConstraint, Column, DateTime, Index, Integer, String, Text
from sqlalchemy import Enum as SAEnum
from sqlalchemy.dialects.postgresql import JSONB, UUID

from api.db.base import Base, TimestampMixin, UUIDMixin


class ImportJobStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"


class ImportJob(UUIDMixin, TimestampMixin, Base):
    """Status record for one CSV upload, tracked from staging to a terminal state."""

    __tablename__ = "import_jobs"

    file_name = Column(String(255), nullable=False)
    storage_key = Column(String(512), nullable=False, unique=True)
    upload_user_id = Column(Integer, nullable=False)

    status = Column(
        SAEnum(
            ImportJobStatus,
            name="import_job_status",
            values_callable=lambda enum: [member.value for member in enum],
        ),
        nullable=False,
        default=ImportJobStatus.PENDING,
        server_default=ImportJobStatus.PENDING.value,
    )

    total_rows = Column(Integer, nullable=False, default=0, server_default="0")
    successful_imports = Column(Integer, nullable=False, default=0, server_default="0")
    failed_imports = Column(Integer, nullable=False, default=0, server_default="0")
    # [{row_number, raw_record, error_message}, ...] in file order
    validation_errors = Column(JSONB, nullable=False, default=list, server_default="[]")
    error_report = Column(Text, nullable=True)
    processing_time_ms = Column(Integer, nullable=True)
    # Set per claim; terminal writes must present it.
    attempt_id = Column(UUID(as_uuid=True), nullable=True)

    started_at = Column(DateTime(timezone=True), nullable=True)
    completed_at = Column(DateTime(timezone=True), nullable=True)

    # Load server-generated timestamps on INSERT so detached jobs stay readable.
    __mapper_args__ = {"eager_defaults": True}

    __table_args__ = (
        Index("idx_import_jobs_uploader_created", "upload_user_id", "created_at"),
        Index("idx_import_jobs_status_started", "status", "started_at"),
        CheckConstraint("total_rows >= 0", name="check_total_rows_non_negative"),
        CheckConstraint("successful_imports >= 0", name="check_successful_non_negative"),
        CheckConstraint("failed_imports >= 0", name="check_failed_non_negative"),
    )
