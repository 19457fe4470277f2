from __future__ import annotations

from typing import Any, Dict, Optional


class BaseAPIException(Exception):
    """Base exception for all API errors."""

    def __init__(
        self,
        message: str,
        status_code: int = 500,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        self.message = message
        self.status_code = status_code
        self.code = code or self.__class__.__name__
        self.details = details or {}
        super().__init__(self.message)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "code": self.code,
            "message": self.message,
            "details": self.details,
        }


class AuthenticationError(BaseAPIException):
    """Authentication failed."""
    def __init__(self, message: str = "Authentication failed", **kwargs):
        super().__init__(message, status_code=401, **kwargs)


class AuthorizationError(BaseAPIException):
    """Authorization failed."""
    def __init__(self, message: str = "Authorization failed", **kwargs):
        super().__init__(message, status_code=403, **kwargs)


class NotFoundError(BaseAPIException):
    """Resource not found."""
    def __init__(self, message: str = "Resource not found", **kwargs):
        super().__init__(message, status_code=404, **kwargs)


class ValidationError(BaseAPIException):
    """Validation error."""
    def __init__(self, message: str = "Validation error", **kwargs):
        super().__init__(message, status_code=422, **kwargs)


class PayloadTooLargeError(BaseAPIException):
    """Uploaded payload exceeds the size ceiling."""
    def __init__(self, message: str = "Payload too large", **kwargs):
        super().__init__(message, status_code=413, **kwargs)


class UnsupportedMediaTypeError(BaseAPIException):
    """Uploaded payload has a rejected content type."""
    def __init__(self, message: str = "Unsupported media type", **kwargs):
        super().__init__(message, status_code=415, **kwargs)


class DatabaseError(BaseAPIException):
    """Database error."""
    def __init__(self, message: str = "Database error", **kwargs):
        super().__init__(message, status_code=500, **kwargs)


class ExternalServiceError(BaseAPIException):
    """External service error."""
    def __init__(self, message: str = "External service error", **kwargs):
        super().__init__(message, status_code=502, **kwargs)


class ServiceUnavailableError(BaseAPIException):
    """Service unavailable."""
    def __init__(self, message: str = "Service unavailable", **kwargs):
        super().__init__(message, status_code=503, **kwargs)


class ImportJobError(Exception):
    """Job-level failure of a CSV import; aborts the job and marks it failed."""

    code = "internal_error"

    def __init__(self, message: str, *, code: Optional[str] = None):
        self.message = message
        if code:
            self.code = code
        super().__init__(message)

    @property
    def report(self) -> str:
        """Client-safe failure cause stored in ImportJob.error_report."""
        return f"{self.code}: {self.message}"


class StagedFileDownloadError(ImportJobError):
    code = "download_failed"


class CsvParseError(ImportJobError):
    code = "parse_failed"


class LeadWriteError(ImportJobError):
    code = "write_failed"
