# api/models/__init__.py
"""
SQLAlchemy ORM models for database entities.
"""

from api.models.import_job import ImportJob, ImportJobStatus
from api.models.lead import Lead

__all__ = [
    "ImportJob",
    "ImportJobStatus",
    "Lead",
]
