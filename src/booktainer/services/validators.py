"""
Input validation for library and speech requests.

Validation happens before any file or provider work so bad requests are
rejected cheaply with a precise code.

Validation Rules:
    - Speech text: lone surrogates removed, trimmed, 1-4000 characters
    - Voice: required, max 100 characters
    - Rate: optional, 0.5-2.0
    - Title: non-empty after trim
    - Author: trimmed, empty clears
    - Progress location: JSON object

Usage:
    from booktainer.services.validators import sanitize_speech_text, ValidationError

    try:
        text = sanitize_speech_text(body.text)
    except ValidationError as e:
        return error_response(e)
"""
from __future__ import annotations

import re
from typing import Any, Dict, Optional

from booktainer.services.errors import InputError

MAX_TEXT_CHARS = 4000
MAX_VOICE_CHARS = 100
MIN_RATE = 0.5
MAX_RATE = 2.0

_LONE_SURROGATES = re.compile(r"[\ud800-\udfff]")


class ValidationError(InputError):
    """
    Input validation failure.

    Attributes:
        message: Human-readable error description.
        reason: Machine-readable reason (e.g. "TEXT_TOO_LONG").
    """

    def __init__(self, message: str, reason: str = "VALIDATION_ERROR"):
        self.reason = reason
        super().__init__(message, details={"reason": reason})


def sanitize_speech_text(text: Optional[str], max_length: int = MAX_TEXT_CHARS) -> str:
    """
    Strip unpaired UTF-16 surrogates, trim, and enforce the length bounds.

    Raises:
        ValidationError: If nothing speakable remains or the text is too long.
    """
    if text is None:
        raise ValidationError("Text is required", "TEXT_REQUIRED")

    cleaned = _LONE_SURROGATES.sub("", text).strip()
    if not cleaned:
        raise ValidationError("Text is empty after sanitization", "TEXT_REQUIRED")
    if len(cleaned) > max_length:
        raise ValidationError(
            f"Text exceeds maximum length ({len(cleaned)} > {max_length})",
            "TEXT_TOO_LONG",
        )
    return cleaned


def validate_voice(voice: Optional[str], max_length: int = MAX_VOICE_CHARS) -> str:
    if not voice or not voice.strip():
        raise ValidationError("Voice is required", "VOICE_REQUIRED")
    voice = voice.strip()
    if len(voice) > max_length:
        raise ValidationError(
            f"Voice exceeds maximum length ({len(voice)} > {max_length})",
            "VOICE_TOO_LONG",
        )
    return voice


def validate_rate(rate: Optional[float]) -> Optional[float]:
    if rate is None:
        return None
    if not (MIN_RATE <= float(rate) <= MAX_RATE):
        raise ValidationError(
            f"Rate must be between {MIN_RATE} and {MAX_RATE}, got {rate}",
            "RATE_OUT_OF_RANGE",
        )
    return float(rate)


def validate_title(title: str) -> str:
    title = (title or "").strip()
    if not title:
        raise ValidationError("Title must not be empty", "TITLE_REQUIRED")
    return title


def normalize_author(author: Optional[str]) -> Optional[str]:
    if author is None:
        return None
    author = author.strip()
    return author or None


def validate_location(location: Any) -> Dict[str, Any]:
    if not isinstance(location, dict):
        raise ValidationError("Progress location must be a JSON object", "LOCATION_INVALID")
    return location
