"""CSV decoding for staged lead import files."""
from __future__ import annotations

import csv
import io
from types import MappingProxyType
from typing import Iterator, List, Mapping

from api.core.exceptions import CsvParseError
from api.core.logging import get_structlog_logger

logger = get_structlog_logger()

RawRecord = Mapping[str, str]


def iter_csv_records(
    file_content: bytes,
    encoding: str = "utf-8-sig",
    delimiter: str = ",",
) -> Iterator[RawRecord]:
    """
    Yield one read-only record per data row, keyed by the header row.

    Header names are trimmed; values are passed through untouched so that
    validation errors can echo exactly what the file contained. Columns past
    the header width and blank header cells are dropped, short rows are padded
    with empty strings.
    """
    try:
        text_content = file_content.decode(encoding)
    except UnicodeDecodeError as e:
        logger.error("csv_parser.decode_error", encoding=encoding, error=str(e))
        raise CsvParseError(f"File is not valid {encoding} text") from e

    reader = csv.reader(io.StringIO(text_content, newline=""), delimiter=delimiter, strict=True)

    try:
        header = next(reader, None)
        if header is None:
            raise CsvParseError("File is empty")

        fields = [name.strip() for name in header]
        if not any(fields):
            raise CsvParseError("Header row has no column names")

        for row in reader:
            # Skip blank lines
            if not row or not any(cell.strip() for cell in row):
                continue

            padded = row + [""] * (len(fields) - len(row))
            yield MappingProxyType(
                {field: value for field, value in zip(fields, padded) if field}
            )

    except csv.Error as e:
        logger.error("csv_parser.parse_error", line=reader.line_num, error=str(e))
        raise CsvParseError(f"Malformed CSV near line {reader.line_num}: {e}") from e


def parse_csv_records(file_content: bytes, **kwargs) -> List[RawRecord]:
    """Parse the whole file eagerly; any malformed line fails the whole file."""
    records = list(iter_csv_records(file_content, **kwargs))
    logger.info("csv_parser.parsed", total_rows=len(records))
    return records
