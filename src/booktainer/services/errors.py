"""
Error codes and exceptions shared by the library and TTS services.

Every exception carries a machine-readable code; the HTTP layer maps codes
to status codes and renders ``to_dict()`` as the response body.
"""
from __future__ import annotations

from typing import Any, Dict, Optional


class ErrorCode:
    INVALID_INPUT = "INVALID_INPUT"
    NOT_FOUND = "NOT_FOUND"
    FORBIDDEN = "FORBIDDEN"
    CONVERSION_FAILED = "CONVERSION_FAILED"
    PARSE_FAILED = "PARSE_FAILED"
    NOT_CONFIGURED = "NOT_CONFIGURED"
    PROVIDER_FAILED = "PROVIDER_FAILED"
    INTERNAL_ERROR = "INTERNAL_ERROR"


class BooktainerError(Exception):
    """
    Base exception with a standardized error payload.

    Attributes:
        message: Human-readable error message.
        code: Error code from ErrorCode.
        details: Optional dictionary with additional context.
    """
    def __init__(self, message: str, code: str = ErrorCode.INTERNAL_ERROR, details: Optional[Dict] = None):
        self.message = message
        self.code = code
        self.details = details or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        result = {
            "ok": False,
            "error": self.code,
            "message": self.message,
        }
        if self.details:
            result["details"] = self.details
        return result


class InputError(BooktainerError):
    """Malformed or unsupported input (bad extension, empty title, oversized upload)."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.INVALID_INPUT, details)


class NotFoundError(BooktainerError):
    """Absent, not owned, or expired. Callers never learn which."""
    def __init__(self, message: str = "Not found", details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_FOUND, details)


class ForbiddenError(BooktainerError):
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.FORBIDDEN, details)


class ConversionError(BooktainerError):
    """The external converter failed; ``message`` is its diagnostic text."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.CONVERSION_FAILED, details)


class ParseError(BooktainerError):
    """A container could not be read. Never surfaced by ingestion."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PARSE_FAILED, details)


class ConfigurationError(BooktainerError):
    """A requested capability (provider, voice, binary) is not set up."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.NOT_CONFIGURED, details)


class ProviderError(BooktainerError):
    """A speech provider failed; ``message`` carries its diagnostic text."""
    def __init__(self, message: str, details: Optional[Dict] = None):
        super().__init__(message, ErrorCode.PROVIDER_FAILED, details)
