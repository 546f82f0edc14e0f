"""
Services layer, between the HTTP API and storage/providers.

    - library_service.py: LibraryService (upload, conversion, edits, progress)
    - tts_service.py: TTSService (cached synthesis)
    - errors.py: error codes and exceptions
    - validators.py: input validation
"""
from .errors import (
    BooktainerError,
    ConfigurationError,
    ConversionError,
    ErrorCode,
    ForbiddenError,
    InputError,
    NotFoundError,
    ParseError,
    ProviderError,
)

__all__ = [
    "BooktainerError",
    "ConfigurationError",
    "ConversionError",
    "ErrorCode",
    "ForbiddenError",
    "InputError",
    "NotFoundError",
    "ParseError",
    "ProviderError",
]
