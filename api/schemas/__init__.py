# api/schemas/__init__.py
"""
Pydantic schemas for request/response validation and serialization.
"""

from api.schemas.import_job import (
    CsvUploadResponse,
    ImportJobStatusResponse,
    ImportJobSummary,
    ValidationErrorEntry,
)

__all__ = [
    "CsvUploadResponse",
    "ImportJobStatusResponse",
    "ImportJobSummary",
    "ValidationErrorEntry",
]
