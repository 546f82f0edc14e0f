"""Book asset and reading progress records."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from pathlib import PurePath
from typing import Any, Dict, Optional


class BookFormat(str, Enum):
    PDF = "pdf"
    EPUB = "epub"
    MOBI = "mobi"
    TXT = "txt"
    MD = "md"


class BookStatus(str, Enum):
    PROCESSING = "processing"
    READY = "ready"
    ERROR = "error"


class SortKey(str, Enum):
    DATE_ADDED = "dateAdded"
    TITLE = "title"
    AUTHOR = "author"

    @classmethod
    def parse(cls, value: Optional[str]) -> "SortKey":
        """Unknown or missing sort keys fall back to date added."""
        try:
            return cls(value) if value else cls.DATE_ADDED
        except ValueError:
            return cls.DATE_ADDED


# Formats that must be converted before a reader can render them.
CANONICAL_FORMATS = {
    BookFormat.MOBI: BookFormat.EPUB,
}


def canonical_format_for(fmt: BookFormat) -> BookFormat:
    return CANONICAL_FORMATS.get(fmt, fmt)


def format_from_filename(filename: str) -> Optional[BookFormat]:
    """Map a filename extension (case-insensitive) to a BookFormat."""
    suffix = PurePath(filename).suffix.lower().lstrip(".")
    try:
        return BookFormat(suffix)
    except ValueError:
        return None


def utcnow_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


@dataclass
class BookAsset:
    id: str
    owner_id: str
    title: str
    source_format: BookFormat
    canonical_format: BookFormat
    original_path: str
    status: BookStatus
    added_at: str = field(default_factory=utcnow_iso)
    updated_at: str = field(default_factory=utcnow_iso)
    author: Optional[str] = None
    canonical_path: Optional[str] = None
    cover_path: Optional[str] = None
    error_message: Optional[str] = None

    @property
    def served_path(self) -> str:
        """The file a reader should open: the converted copy when one exists."""
        return self.canonical_path or self.original_path

    @property
    def served_format(self) -> BookFormat:
        return self.canonical_format if self.canonical_path else self.source_format


@dataclass
class ReadingProgress:
    owner_id: str
    book_id: str
    location: Dict[str, Any]
    updated_at: str = field(default_factory=utcnow_iso)
