"""
API request/response schemas.

Responses use camelCase on the wire (``dateAdded``, ``coverUrl``) through
pydantic's alias generator; handlers build them with snake_case names.

Models:
    BookOut: one book record
    BookPatch: rename / author edit
    ProgressIn / ProgressOut: reading position
    SpeakIn: synthesis request (body of /speak and /speak-url)
    SpeakUrlOut: tokenized playback URL
    InstallVoiceIn: offline voice installation
"""
from __future__ import annotations

from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from booktainer.library.models import BookAsset, ReadingProgress


class CamelModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class BookOut(CamelModel):
    id: str
    title: str
    author: Optional[str] = None
    format: str
    canonical_format: str
    date_added: str
    updated_at: str
    cover_url: Optional[str] = None
    status: str
    error_message: Optional[str] = None

    @classmethod
    def from_asset(cls, asset: BookAsset) -> "BookOut":
        return cls(
            id=asset.id,
            title=asset.title,
            author=asset.author,
            format=asset.source_format.value,
            canonical_format=asset.canonical_format.value,
            date_added=asset.added_at,
            updated_at=asset.updated_at,
            cover_url=f"/api/books/{asset.id}/cover" if asset.cover_path else None,
            status=asset.status.value,
            error_message=asset.error_message,
        )


class BookListOut(BaseModel):
    books: List[BookOut]


class BookPatch(BaseModel):
    """Omitted fields are left unchanged; ``author: null`` or "" clears it."""
    title: Optional[str] = None
    author: Optional[str] = None


class ProgressIn(BaseModel):
    location: Dict[str, Any]


class ProgressOut(CamelModel):
    book_id: str
    location: Optional[Dict[str, Any]] = None
    updated_at: Optional[str] = None

    @classmethod
    def from_record(cls, book_id: str, record: Optional[ReadingProgress]) -> "ProgressOut":
        if record is None:
            return cls(book_id=book_id)
        return cls(book_id=book_id, location=record.location, updated_at=record.updated_at)


class SpeakIn(BaseModel):
    """Bounds are enforced by SpeakRequest.create so every violation is a 400."""
    mode: str = Field(..., description="online or offline")
    voice: Optional[str] = None
    text: Optional[str] = None
    rate: Optional[float] = Field(default=None, description="0.5-2.0, default 1.0")


class SpeakUrlOut(BaseModel):
    url: str


class InstallVoiceIn(BaseModel):
    voice: str = Field(..., min_length=1)
