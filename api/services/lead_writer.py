# api/services/lead_writer.py
from __future__ import annotations

from typing import Any, Dict, List, Sequence, Tuple

from sqlalchemy import text
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from api.core.config import settings
from api.core.exceptions import LeadWriteError
from api.core.logging import get_structlog_logger
from api.services.row_validation import ContactRow

logger = get_structlog_logger()

DEFAULT_SOURCE = "csv_import"

_COLUMNS = ("name", "phone", "email", "source")


def _build_insert(rows: Sequence[ContactRow]) -> Tuple[Any, Dict[str, Any]]:
    """
    Build one multi-row INSERT that skips any phone already in the table.

    ON CONFLICT DO NOTHING gives set semantics: existing leads are left
    untouched and RETURNING only yields rows that were actually written.
    """
    values_sql: List[str] = []
    params: Dict[str, Any] = {}

    for i, row in enumerate(rows):
        values = row.to_params()
        values["source"] = values["source"] or DEFAULT_SOURCE
        placeholders = []
        for column in _COLUMNS:
            key = f"{column}_{i}"
            placeholders.append(f":{key}")
            params[key] = values[column]
        values_sql.append(f"({', '.join(placeholders)})")

    stmt = text(
        f"""
        INSERT INTO leads (name, phone, email, source)
        VALUES {', '.join(values_sql)}
        ON CONFLICT (phone) DO NOTHING
        RETURNING id
        """
    )
    return stmt, params


async def bulk_insert_contacts(
    session: AsyncSession,
    rows: Sequence[ContactRow],
    chunk_size: int = 1000,
) -> int:
    """
    Insert contacts not already known by phone; return how many were written.

    Runs inside the caller's transaction so a failure leaves no partial import.
    """
    inserted = 0

    for start in range(0, len(rows), chunk_size):
        chunk = rows[start:start + chunk_size]
        stmt, params = _build_insert(chunk)
        result = await session.execute(stmt, params)
        inserted += len(result.fetchall())

    return inserted


class LeadWriter:
    """Writes a job's valid rows to the lead store in a single transaction."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        chunk_size: int = None,
    ):
        self._session_factory = session_factory
        self.chunk_size = chunk_size or settings.lead_insert_chunk_size

    async def insert_contacts(self, rows: Sequence[ContactRow]) -> int:
        if not rows:
            return 0

        try:
            async with self._session_factory() as session:
                async with session.begin():
                    inserted = await bulk_insert_contacts(session, rows, self.chunk_size)
        except SQLAlchemyError as e:
            logger.error("lead_writer.insert_failed", rows=len(rows), error=str(e))
            raise LeadWriteError("Lead store rejected the bulk insert") from e

        logger.info(
            "lead_writer.inserted",
            rows=len(rows),
            inserted=inserted,
            duplicates_skipped=len(rows) - inserted,
        )
        return inserted
