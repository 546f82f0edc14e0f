"""
HTTP tests for /api/books: upload, listing, edits, delivery, progress and
owner isolation.
"""
import pytest
from fastapi.testclient import TestClient

from booktainer.main import create_app
from booktainer.tts.providers import ProviderRegistry

from conftest import FakeProvider, build_epub, failing_command

ALICE = {"X-User-Id": "alice"}
BOB = {"X-User-Id": "bob"}


@pytest.fixture
def make_client(make_settings):
    clients = []

    def _make(**sections):
        app = create_app(make_settings(**sections), registry=ProviderRegistry({"offline": FakeProvider()}))
        client = TestClient(app)
        client.__enter__()
        clients.append(client)
        return client

    yield _make
    for client in clients:
        client.__exit__(None, None, None)


@pytest.fixture
def client(make_client):
    return make_client()


def _upload(client, filename, data, headers=ALICE):
    return client.post("/api/books/upload", files={"file": (filename, data, "application/octet-stream")}, headers=headers)


def _epub_with_cover():
    return build_epub(
        title="Dune",
        author="Frank Herbert",
        meta_cover_id="cover",
        manifest=[{"id": "cover", "href": "images/cover.png", "media-type": "image/png"}],
        files={"OEBPS/images/cover.png": b"\x89PNG-cover-bytes"},
    )


class TestUpload:
    def test_epub_upload(self, client):
        response = _upload(client, "dune.epub", _epub_with_cover())

        assert response.status_code == 200
        book = response.json()
        assert book["title"] == "Dune"
        assert book["author"] == "Frank Herbert"
        assert book["format"] == "epub"
        assert book["canonicalFormat"] == "epub"
        assert book["status"] == "ready"
        assert book["coverUrl"] == f"/api/books/{book['id']}/cover"
        assert "dateAdded" in book
        assert "original_path" not in book

    def test_mobi_conversion(self, client):
        response = _upload(client, "old.mobi", build_epub(title="From Mobi"))

        book = response.json()
        assert book["format"] == "mobi"
        assert book["canonicalFormat"] == "epub"
        assert book["status"] == "ready"
        assert book["title"] == "From Mobi"

        file_response = client.get(f"/api/books/{book['id']}/file", headers=ALICE)
        assert file_response.headers["content-type"] == "application/epub+zip"

    def test_conversion_failure_is_reported_on_book(self, make_client):
        client = make_client(converter={"commands": {"mobi": failing_command("cannot read MOBI")}})

        book = _upload(client, "bad.mobi", b"junk").json()

        assert book["status"] == "error"
        assert "cannot read MOBI" in book["errorMessage"]

    def test_unsupported_format(self, client):
        response = _upload(client, "photo.jpg", b"\xff\xd8")

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"
        assert "Unsupported file format" in response.json()["message"]

    def test_missing_file(self, client):
        response = client.post("/api/books/upload", headers=ALICE)

        assert response.status_code == 400
        assert response.json()["message"] == "Missing file"

    def test_uploads_disabled(self, make_client):
        client = make_client(library={"allow_upload": False})

        response = _upload(client, "notes.txt", b"hello")

        assert response.status_code == 403
        assert response.json()["error"] == "FORBIDDEN"
        assert client.get("/api/books", headers=ALICE).json() == {"books": []}


class TestBooks:
    def test_list_sort_and_query(self, client):
        _upload(client, "zeta.txt", b"1")
        _upload(client, "Alpha.md", b"2")

        titles = [b["title"] for b in client.get("/api/books?sort=title", headers=ALICE).json()["books"]]
        assert titles == ["Alpha", "zeta"]

        found = client.get("/api/books", params={"q": "ZET"}, headers=ALICE).json()["books"]
        assert [b["title"] for b in found] == ["zeta"]

    def test_owner_isolation(self, client):
        book = _upload(client, "private.txt", b"secret").json()

        assert client.get("/api/books", headers=BOB).json() == {"books": []}
        assert client.get(f"/api/books/{book['id']}", headers=BOB).status_code == 404
        assert client.get(f"/api/books/{book['id']}/file", headers=BOB).status_code == 404
        assert client.delete(f"/api/books/{book['id']}", headers=BOB).status_code == 404
        assert client.get(f"/api/books/{book['id']}", headers=ALICE).status_code == 200

    def test_default_owner(self, client):
        _upload(client, "anon.txt", b"x", headers={})

        assert len(client.get("/api/books").json()["books"]) == 1
        assert client.get("/api/books", headers=ALICE).json() == {"books": []}

    def test_patch(self, client):
        book = _upload(client, "draft.txt", b"1").json()
        url = f"/api/books/{book['id']}"

        updated = client.patch(url, json={"author": "  Ann Author "}, headers=ALICE).json()
        assert updated["title"] == "draft"
        assert updated["author"] == "Ann Author"

        updated = client.patch(url, json={"title": "Final"}, headers=ALICE).json()
        assert updated["title"] == "Final"
        assert updated["author"] == "Ann Author"

        updated = client.patch(url, json={"author": None}, headers=ALICE).json()
        assert updated["author"] is None

        response = client.patch(url, json={"title": "   "}, headers=ALICE)
        assert response.status_code == 400

    def test_delete(self, client):
        book = _upload(client, "gone.txt", b"1").json()
        url = f"/api/books/{book['id']}"

        assert client.delete(url, headers=ALICE).json() == {"ok": True}
        assert client.get(url, headers=ALICE).status_code == 404
        assert client.delete(url, headers=ALICE).status_code == 404


class TestDelivery:
    def test_file_and_range(self, client):
        data = bytes(range(256)) * 4
        book = _upload(client, "paper.pdf", data).json()
        url = f"/api/books/{book['id']}/file"

        full = client.get(url, headers=ALICE)
        assert full.status_code == 200
        assert full.content == data
        assert full.headers["content-type"] == "application/pdf"
        assert full.headers["accept-ranges"] == "bytes"

        part = client.get(url, headers={**ALICE, "Range": "bytes=0-99"})
        assert part.status_code == 206
        assert part.content == data[:100]
        assert part.headers["content-range"] == "bytes 0-99/1024"

    def test_cover(self, client):
        book = _upload(client, "dune.epub", _epub_with_cover()).json()

        response = client.get(book["coverUrl"], headers=ALICE)

        assert response.status_code == 200
        assert response.content == b"\x89PNG-cover-bytes"
        assert response.headers["content-type"] == "image/png"

    def test_cover_missing(self, client):
        book = _upload(client, "plain.txt", b"1").json()

        assert book["coverUrl"] is None
        assert client.get(f"/api/books/{book['id']}/cover", headers=ALICE).status_code == 404


class TestProgress:
    def test_roundtrip(self, client):
        book = _upload(client, "novel.epub", build_epub()).json()
        url = f"/api/books/{book['id']}/progress"

        empty = client.get(url, headers=ALICE).json()
        assert empty == {"bookId": book["id"], "location": None, "updatedAt": None}

        saved = client.put(url, json={"location": {"cfi": "epubcfi(/6/2)"}}, headers=ALICE).json()
        assert saved["location"] == {"cfi": "epubcfi(/6/2)"}

        assert client.get(url, headers=ALICE).json()["location"] == {"cfi": "epubcfi(/6/2)"}
        assert client.get(url, headers=BOB).status_code == 404

    def test_invalid_location(self, client):
        book = _upload(client, "novel.txt", b"1").json()

        response = client.put(f"/api/books/{book['id']}/progress", json={"location": [1, 2]}, headers=ALICE)

        assert response.status_code == 400
        assert response.json()["error"] == "INVALID_INPUT"


class TestService:
    def test_health(self, client):
        body = client.get("/health").json()

        assert body["ok"] is True
        assert body["uploads_enabled"] is True
        assert body["tts"]["providers"]["offline"]["available"] is True
        assert body["tts"]["providers"]["online"]["provider"] is None

    def test_request_id_echo(self, client):
        response = client.get("/health", headers={"X-Request-Id": "abc123"})

        assert response.headers["x-request-id"] == "abc123"

    def test_error_carries_request_id(self, client):
        response = client.get("/api/books/missing", headers={**ALICE, "X-Request-Id": "req-9"})

        assert response.status_code == 404
        assert response.json()["request_id"] == "req-9"
