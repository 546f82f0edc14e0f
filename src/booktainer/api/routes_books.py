"""
Library routes.

Endpoints:
    GET    /api/books?sort=&q=        list the caller's books
    POST   /api/books/upload          multipart upload (field "file")
    GET    /api/books/{id}            one record
    PATCH  /api/books/{id}            rename / set author
    DELETE /api/books/{id}            remove files and record
    GET    /api/books/{id}/file       book bytes (Range-capable)
    GET    /api/books/{id}/cover      cover bytes (Range-capable)
    GET    /api/books/{id}/progress   reading position
    PUT    /api/books/{id}/progress   save reading position

Books belong to the caller; another owner's id answers 404 exactly like an
unknown one.
"""
from __future__ import annotations

from typing import AsyncIterator, Optional

from fastapi import APIRouter, Depends, File, Request, UploadFile

from booktainer.api.delivery import file_response, guess_media_type
from booktainer.api.dependencies import get_library_service, get_owner_id
from booktainer.api.schemas import BookListOut, BookOut, BookPatch, ProgressIn, ProgressOut
from booktainer.services.errors import ForbiddenError, InputError, NotFoundError
from booktainer.services.library_service import UNSET, LibraryService

router = APIRouter(prefix="/api/books", tags=["books"])

UPLOAD_CHUNK = 1024 * 1024


async def _iter_upload(upload: UploadFile) -> AsyncIterator[bytes]:
    while True:
        chunk = await upload.read(UPLOAD_CHUNK)
        if not chunk:
            break
        yield chunk


@router.get("", response_model=BookListOut, response_model_by_alias=True)
def list_books(
    sort: Optional[str] = None,
    q: Optional[str] = None,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    return BookListOut(books=[BookOut.from_asset(b) for b in library.list(owner_id, sort, q)])


@router.post("/upload", response_model=BookOut, response_model_by_alias=True)
async def upload_book(
    file: Optional[UploadFile] = File(default=None),
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    if not library.config.library.allow_upload:
        raise ForbiddenError("Uploads are disabled")
    if file is None:
        raise InputError("Missing file")
    try:
        asset = await library.accept(owner_id, file.filename, _iter_upload(file))
    finally:
        await file.close()
    return BookOut.from_asset(asset)


@router.get("/{book_id}", response_model=BookOut, response_model_by_alias=True)
def get_book(
    book_id: str,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    return BookOut.from_asset(library.get(owner_id, book_id))


@router.patch("/{book_id}", response_model=BookOut, response_model_by_alias=True)
def update_book(
    book_id: str,
    body: BookPatch,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    fields = body.model_fields_set
    asset = library.update(
        owner_id,
        book_id,
        title=body.title if "title" in fields else UNSET,
        author=body.author if "author" in fields else UNSET,
    )
    return BookOut.from_asset(asset)


@router.delete("/{book_id}")
async def delete_book(
    book_id: str,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    if not await library.remove(owner_id, book_id):
        raise NotFoundError("Book not found")
    return {"ok": True}


@router.get("/{book_id}/file")
def book_file(
    book_id: str,
    request: Request,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    path, fmt = library.book_file(owner_id, book_id)
    return file_response(path, request.headers.get("range"), media_type=guess_media_type(f"book.{fmt.value}"))


@router.get("/{book_id}/cover")
def book_cover(
    book_id: str,
    request: Request,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    path = library.cover_file(owner_id, book_id)
    return file_response(path, request.headers.get("range"))


@router.get("/{book_id}/progress", response_model=ProgressOut, response_model_by_alias=True)
def get_progress(
    book_id: str,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    return ProgressOut.from_record(book_id, library.get_progress(owner_id, book_id))


@router.put("/{book_id}/progress", response_model=ProgressOut, response_model_by_alias=True)
def put_progress(
    book_id: str,
    body: ProgressIn,
    owner_id: str = Depends(get_owner_id),
    library: LibraryService = Depends(get_library_service),
):
    return ProgressOut.from_record(book_id, library.set_progress(owner_id, book_id, body.location))
