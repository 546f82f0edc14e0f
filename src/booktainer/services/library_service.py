"""
LibraryService - book ingestion and lifecycle.

Upload pipeline:
    accept → format check → store original → (convert) → metadata/cover → record

A book whose format needs conversion is recorded as ``processing`` first,
converted within the same call, and finishes as ``ready`` or ``error``.
Metadata and cover extraction never fail an upload; conversion failure is
recorded on the book instead of being raised.

Same-book operations are serialized with a per-book asyncio.Lock, so a
delete issued while the book is still converting waits for the conversion
to settle before the directory is removed.
"""
from __future__ import annotations

import asyncio
import shutil
import uuid
from functools import partial
from pathlib import Path
from typing import Any, AsyncIterable, Dict, List, Optional, Tuple

from booktainer.core.config import AppConfig
from booktainer.core.logging import fail, get_logger, info, success, verbose, warn
from booktainer.core.metrics import metrics
from booktainer.library import epub
from booktainer.library.converter import ConverterRegistry, SubprocessConverter
from booktainer.library.models import (
    BookAsset,
    BookFormat,
    BookStatus,
    ReadingProgress,
    SortKey,
    canonical_format_for,
    format_from_filename,
)
from booktainer.library.repository import BookRepository, ProgressRepository
from booktainer.services.errors import ConversionError, InputError, NotFoundError
from booktainer.services.validators import normalize_author, validate_location, validate_title
from booktainer.utils.timeit import timeit

_LOG = get_logger("booktainer.library")

UNSET: Any = object()

SUPPORTED_EXTENSIONS = ", ".join(f.value for f in BookFormat)


class LibraryService:
    """
    Owns book files on disk and their records.

    Args:
        config: Validated application config (storage layout, upload limits).
        books: Book record repository.
        progress: Reading progress repository.
        converters: Per-format converters; built from config when omitted.
    """

    def __init__(
        self,
        config: AppConfig,
        books: BookRepository,
        progress: ProgressRepository,
        converters: Optional[ConverterRegistry] = None,
    ):
        self._config = config
        self._books = books
        self._progress = progress
        self._converters = converters or ConverterRegistry.from_config(config.converter)
        self._locks: Dict[str, asyncio.Lock] = {}
        config.storage.ensure_dirs()

    @property
    def config(self) -> AppConfig:
        return self._config

    def _lock_for(self, book_id: str) -> asyncio.Lock:
        lock = self._locks.get(book_id)
        if lock is None:
            lock = self._locks[book_id] = asyncio.Lock()
        return lock

    def _book_dir(self, book_id: str) -> Path:
        return self._config.storage.library_dir / book_id

    # -------------------------------------------------------------------------
    # Ingestion
    # -------------------------------------------------------------------------

    async def _store_original(self, stream: AsyncIterable[bytes], target: Path) -> int:
        limit = self._config.library.max_upload_bytes
        written = 0
        with target.open("wb") as fh:
            async for chunk in stream:
                if not chunk:
                    continue
                written += len(chunk)
                if written > limit:
                    raise InputError(
                        f"Upload exceeds the {self._config.library.max_upload_mb} MB limit",
                        details={"max_upload_mb": self._config.library.max_upload_mb},
                    )
                await asyncio.to_thread(fh.write, chunk)
        return written

    async def _extract_container(self, book_id: str, path: Path) -> Tuple[epub.BookMetadata, Optional[str]]:
        """Best-effort metadata and cover; the cover is written to the cover store."""
        try:
            data = await asyncio.to_thread(path.read_bytes)
            metadata, cover = await asyncio.to_thread(epub.extract, data)
        except OSError as e:
            warn(_LOG, "metadata_read_failed", book_id=book_id, error=str(e))
            return epub.BookMetadata(), None

        cover_path: Optional[str] = None
        if cover is not None:
            target = self._config.storage.covers_dir / f"{book_id}.{cover.extension}"
            try:
                await asyncio.to_thread(target.write_bytes, cover.data)
                cover_path = str(target)
            except OSError as e:
                warn(_LOG, "cover_write_failed", book_id=book_id, error=str(e))
        verbose(
            _LOG,
            "metadata_extracted",
            book_id=book_id,
            title=metadata.title,
            author=metadata.author,
            cover=bool(cover_path),
        )
        return metadata, cover_path

    async def accept(self, owner_id: str, filename: Optional[str], stream: AsyncIterable[bytes]) -> BookAsset:
        """
        Ingest an uploaded file and return its stored record.

        Raises:
            InputError: Missing filename, unsupported extension, or oversized upload.
        """
        if not filename:
            raise InputError("Missing file")
        fmt = format_from_filename(filename)
        if fmt is None:
            raise InputError(
                f"Unsupported file format. Supported: {SUPPORTED_EXTENSIONS}",
                details={"filename": filename},
            )

        book_id = uuid.uuid4().hex
        book_dir = self._book_dir(book_id)
        original = book_dir / f"original.{fmt.value}"
        book_dir.mkdir(parents=True, exist_ok=False)
        try:
            size = await self._store_original(stream, original)
        except BaseException:
            await asyncio.to_thread(shutil.rmtree, book_dir, True)
            metrics.record_upload(fmt.value, "rejected")
            raise

        stem = Path(filename).stem
        asset = BookAsset(
            id=book_id,
            owner_id=owner_id,
            title=stem or filename,
            source_format=fmt,
            canonical_format=canonical_format_for(fmt),
            original_path=str(original),
            status=BookStatus.READY,
        )
        info(_LOG, "upload_stored", book_id=book_id, format=fmt.value, bytes=size)

        converter = self._converters.get(fmt)
        if converter is None:
            if fmt is BookFormat.EPUB:
                metadata, asset.cover_path = await self._extract_container(book_id, original)
                asset.title = metadata.title or asset.title
                asset.author = metadata.author or asset.author
            self._books.insert(asset)
            metrics.record_upload(fmt.value, asset.status.value)
            success(_LOG, "book_ready", book_id=book_id, status=asset.status.value)
            return self.get(owner_id, book_id)

        asset.status = BookStatus.PROCESSING
        self._books.insert(asset)
        lock = self._lock_for(book_id)
        try:
            async with lock:
                return await self._convert(asset, converter, book_dir)
        finally:
            if not lock.locked():
                self._locks.pop(book_id, None)

    async def _convert(self, asset: BookAsset, converter: SubprocessConverter, book_dir: Path) -> BookAsset:
        owner_id, book_id, fmt = asset.owner_id, asset.id, asset.source_format
        canonical = book_dir / f"canonical.{asset.canonical_format.value}"
        with timeit("conversion") as t:
            try:
                await converter.convert(Path(asset.original_path), canonical)
            except ConversionError as e:
                metrics.record_conversion(fmt.value, "failed", t.elapsed)
                self._books.update_status(owner_id, book_id, BookStatus.ERROR, error_message=e.message)
                metrics.record_upload(fmt.value, BookStatus.ERROR.value)
                fail(_LOG, "conversion_failed", book_id=book_id, status="error", error=e.message)
                return self.get(owner_id, book_id)
        metrics.record_conversion(fmt.value, "ok", t.elapsed)

        if asset.canonical_format is BookFormat.EPUB:
            metadata, cover_path = await self._extract_container(book_id, canonical)
            if metadata.title or metadata.author:
                self._books.update_metadata(
                    owner_id,
                    book_id,
                    metadata.title or asset.title,
                    metadata.author or asset.author,
                )
            if cover_path:
                self._books.update_cover(owner_id, book_id, cover_path)

        self._books.update_status(owner_id, book_id, BookStatus.READY, canonical_path=str(canonical))
        metrics.record_upload(fmt.value, BookStatus.READY.value)
        success(_LOG, "book_ready", book_id=book_id, status="ready", seconds=t.elapsed)
        return self.get(owner_id, book_id)

    # -------------------------------------------------------------------------
    # Queries and edits
    # -------------------------------------------------------------------------

    def get(self, owner_id: str, book_id: str) -> BookAsset:
        asset = self._books.get(owner_id, book_id)
        if asset is None:
            raise NotFoundError("Book not found")
        return asset

    def list(self, owner_id: str, sort: Optional[str] = None, query: Optional[str] = None) -> List[BookAsset]:
        query = (query or "").strip() or None
        return self._books.list(owner_id, SortKey.parse(sort), query)

    def update(self, owner_id: str, book_id: str, title: Any = UNSET, author: Any = UNSET) -> BookAsset:
        """
        Rename a book. Omitted fields are unchanged; an empty author clears it.

        Raises:
            NotFoundError: Unknown book.
            InputError: Empty title.
        """
        asset = self.get(owner_id, book_id)
        new_title = validate_title(title) if title is not UNSET else asset.title
        new_author = normalize_author(author) if author is not UNSET else asset.author
        self._books.update_metadata(owner_id, book_id, new_title, new_author)
        info(_LOG, "book_updated", book_id=book_id)
        return self.get(owner_id, book_id)

    async def remove(self, owner_id: str, book_id: str) -> bool:
        """Delete a book's files, cover and record. False if there was no such book."""
        async with self._lock_for(book_id):
            asset = self._books.get(owner_id, book_id)
            if asset is None:
                return False
            await asyncio.to_thread(shutil.rmtree, self._book_dir(book_id), True)
            if asset.cover_path:
                await asyncio.to_thread(partial(Path(asset.cover_path).unlink, missing_ok=True))
            self._books.delete(owner_id, book_id)
        self._locks.pop(book_id, None)
        info(_LOG, "book_removed", book_id=book_id)
        return True

    def book_file(self, owner_id: str, book_id: str) -> Tuple[Path, BookFormat]:
        asset = self.get(owner_id, book_id)
        path = Path(asset.served_path)
        if not path.is_file():
            raise NotFoundError("Book file missing")
        return path, asset.served_format

    def cover_file(self, owner_id: str, book_id: str) -> Path:
        asset = self.get(owner_id, book_id)
        if not asset.cover_path or not Path(asset.cover_path).is_file():
            raise NotFoundError("Cover not found")
        return Path(asset.cover_path)

    # -------------------------------------------------------------------------
    # Reading progress
    # -------------------------------------------------------------------------

    def get_progress(self, owner_id: str, book_id: str) -> Optional[ReadingProgress]:
        self.get(owner_id, book_id)
        return self._progress.get(owner_id, book_id)

    def set_progress(self, owner_id: str, book_id: str, location: Any) -> ReadingProgress:
        location = validate_location(location)
        self.get(owner_id, book_id)
        return self._progress.upsert(owner_id, book_id, location)
