# api/db/__init__.py
"""
Database package for SQLAlchemy setup, session management, and base models.
"""

from api.db.base import Base, TimestampMixin, UUIDMixin
from api.db.session import create_database_engine, dispose_engine, get_session_factory

__all__ = [
    "Base",
    "TimestampMixin",
    "UUIDMixin",
    "create_database_engine",
    "dispose_engine",
    "get_session_factory",
]
