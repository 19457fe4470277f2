# api/services/row_validation.py
"""Row-level validation of CSV contact records.

Every record either becomes a typed ``ContactRow`` or a ``RowValidationError``
carrying all of the row's problems at once. Nothing here raises: a bad row is
an expected outcome, not a failure of the import job.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple, Union

from email_validator import EmailNotValidError, validate_email

NAME_MIN_LENGTH = 2
NAME_MAX_LENGTH = 255
SOURCE_MAX_LENGTH = 100
MIN_PHONE_DIGITS = 10

_PHONE_PATTERN = re.compile(r"^\+?[1-9]\d{1,14}$")

OPTIONAL_FIELDS = ("email", "source")


@dataclass(frozen=True)
class ContactRow:
    name: str
    phone: str
    email: Optional[str] = None
    source: Optional[str] = None

    def to_params(self) -> Dict[str, Optional[str]]:
        return {
            "name": self.name,
            "phone": self.phone,
            "email": self.email,
            "source": self.source,
        }


@dataclass(frozen=True)
class RowValidationError:
    row_number: int
    raw_record: Dict[str, Any]
    error_message: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "row_number": self.row_number,
            "raw_record": self.raw_record,
            "error_message": self.error_message,
        }


RowOutcome = Union[ContactRow, RowValidationError]


def _clean(value: Any) -> Optional[str]:
    """Trim a raw CSV value; empty and missing values both become None."""
    if value is None:
        return None
    text = str(value).strip()
    return text or None


def _check_name(name: Optional[str]) -> Optional[str]:
    if name is None:
        return '"name" is required'
    if not NAME_MIN_LENGTH <= len(name) <= NAME_MAX_LENGTH:
        return (
            f'"name" length must be between {NAME_MIN_LENGTH} '
            f"and {NAME_MAX_LENGTH} characters"
        )
    return None


def _check_phone(phone: Optional[str]) -> Optional[str]:
    if phone is None:
        return '"phone" is required'
    digits = phone.lstrip("+")
    if not _PHONE_PATTERN.match(phone) or len(digits) < MIN_PHONE_DIGITS:
        return f'"phone" with value "{phone}" must be a valid E.164 phone number'
    return None


def _check_email(email: Optional[str]) -> Optional[str]:
    if email is None:
        return None
    try:
        validate_email(email, check_deliverability=False)
    except EmailNotValidError:
        return f'"email" with value "{email}" must be a valid email'
    return None


def _check_source(source: Optional[str]) -> Optional[str]:
    if source is not None and len(source) > SOURCE_MAX_LENGTH:
        return f'"source" length must be less than or equal to {SOURCE_MAX_LENGTH} characters'
    return None


def validate_row(record: Mapping[str, Any], row_number: int) -> RowOutcome:
    """Validate one raw CSV record (header-keyed) into a ContactRow or an error."""
    name = _clean(record.get("name"))
    phone = _clean(record.get("phone"))
    email = _clean(record.get("email"))
    source = _clean(record.get("source"))

    problems = [
        problem
        for problem in (
            _check_name(name),
            _check_phone(phone),
            _check_email(email),
            _check_source(source),
        )
        if problem
    ]

    if problems:
        return RowValidationError(
            row_number=row_number,
            raw_record=dict(record),
            error_message=", ".join(problems),
        )

    return ContactRow(name=name, phone=phone, email=email, source=source)


def validate_records(
    records: Iterable[Mapping[str, Any]],
) -> Tuple[List[ContactRow], List[RowValidationError]]:
    """Split records into valid rows and row errors, numbering data rows from 1."""
    valid: List[ContactRow] = []
    errors: List[RowValidationError] = []

    for row_number, record in enumerate(records, start=1):
        outcome = validate_row(record, row_number)
        if isinstance(outcome, ContactRow):
            valid.append(outcome)
        else:
            errors.append(outcome)

    return valid, errors
