# api/services/__init__.py
"""
Business logic services for the CSV lead import pipeline.
"""

from api.services.csv_import import CsvImportProcessor, ImportOutcome
from api.services.csv_staging import CsvStagingService, StagedImport
from api.services.dispatcher import ImportJobDispatcher, ImportJobMessage, parse_job_message
from api.services.import_jobs import ClaimResult, ImportJobRepository
from api.services.job_queue import JobQueue, QueueMessage
from api.services.lead_writer import LeadWriter
from api.services.row_validation import ContactRow, RowValidationError, validate_row

__all__ = [
    # Staging
    "CsvStagingService",
    "StagedImport",
    # Queue
    "ImportJobDispatcher",
    "ImportJobMessage",
    "JobQueue",
    "QueueMessage",
    "parse_job_message",
    # Processing
    "ClaimResult",
    "ContactRow",
    "CsvImportProcessor",
    "ImportJobRepository",
    "ImportOutcome",
    "LeadWriter",
    "RowValidationError",
    "validate_row",
]
