"""
Tests for byte-range planning and the file/stream responses.
"""
import pytest
from fastapi import FastAPI, Request
from fastapi.testclient import TestClient

from booktainer.api.delivery import (
    ByteRange,
    file_response,
    guess_media_type,
    parse_range,
    plan_delivery,
    stream_response,
)

from conftest import ListStream

SIZE = 1000


class TestParseRange:
    @pytest.mark.parametrize("header,expected", [
        ("bytes=0-99", ByteRange(0, 99)),
        ("bytes=500-", ByteRange(500, 999)),
        ("bytes=900-5000", ByteRange(900, 999)),
        ("bytes=999-999", ByteRange(999, 999)),
        (" bytes=10-19 ", ByteRange(10, 19)),
    ])
    def test_satisfiable(self, header, expected):
        assert parse_range(header, SIZE) == expected

    @pytest.mark.parametrize("header", [
        None,
        "",
        "bytes=-100",
        "bytes=0-10,20-30",
        "items=0-10",
        "bytes=abc-",
        "bytes=1000-",
        "bytes=50-10",
    ])
    def test_ignored(self, header):
        assert parse_range(header, SIZE) is None

    def test_length(self):
        assert ByteRange(10, 19).length == 10


class TestPlanDelivery:
    def test_full(self):
        plan = plan_delivery(SIZE, None, "audio/mpeg")

        assert plan.status_code == 200
        assert (plan.start, plan.length) == (0, SIZE)
        assert plan.media_type == "audio/mpeg"
        assert plan.headers == {"Accept-Ranges": "bytes", "Content-Length": "1000"}

    def test_partial(self):
        plan = plan_delivery(SIZE, "bytes=100-199", "audio/mpeg")

        assert plan.status_code == 206
        assert (plan.start, plan.length) == (100, 100)
        assert plan.media_type == "audio/mpeg"
        assert plan.headers["Content-Range"] == "bytes 100-199/1000"
        assert plan.headers["Content-Length"] == "100"

    def test_unsatisfiable_falls_back_to_full(self):
        assert plan_delivery(SIZE, "bytes=2000-").status_code == 200


class TestMediaTypes:
    @pytest.mark.parametrize("name,expected", [
        ("book.epub", "application/epub+zip"),
        ("book.mobi", "application/x-mobipocket-ebook"),
        ("book.pdf", "application/pdf"),
        ("book.md", "text/markdown; charset=utf-8"),
        ("book.txt", "text/plain; charset=utf-8"),
        ("cover.PNG", "image/png"),
        ("tts-abc.mp3", "audio/mpeg"),
        ("tts-abc.wav", "audio/wav"),
        ("blob.unknownext", "application/octet-stream"),
    ])
    def test_guess(self, name, expected):
        assert guess_media_type(name) == expected


@pytest.fixture
def payload(tmp_path):
    path = tmp_path / "data.bin"
    data = bytes(i % 256 for i in range(SIZE))
    path.write_bytes(data)
    return path, data


class TestResponses:
    def _client(self, handler):
        app = FastAPI()
        app.add_api_route("/item", handler, methods=["GET"])
        return TestClient(app)

    def test_file_full_and_range(self, payload):
        path, data = payload
        closed = []

        async def on_close():
            closed.append(True)

        def handler(request: Request):
            return file_response(path, request.headers.get("range"), "audio/mpeg", {"X-Cache": "hit"}, on_close)

        client = self._client(handler)

        full = client.get("/item")
        assert full.status_code == 200
        assert full.content == data
        assert full.headers["accept-ranges"] == "bytes"
        assert full.headers["x-cache"] == "hit"
        assert full.headers["content-type"] == "audio/mpeg"

        part = client.get("/item", headers={"Range": "bytes=990-"})
        assert part.status_code == 206
        assert part.content == data[990:]
        assert part.headers["content-range"] == "bytes 990-999/1000"
        assert part.headers["content-length"] == "10"

        assert closed == [True, True]

    def test_file_unlinked_after_open_still_served(self, payload):
        path, data = payload

        def handler(request: Request):
            response = file_response(path, request.headers.get("range"))
            path.unlink()
            return response

        response = self._client(handler).get("/item", headers={"Range": "bytes=0-9"})

        assert response.status_code == 206
        assert response.content == data[:10]
        assert not path.exists()

    def test_missing_file_raises(self, tmp_path):
        with pytest.raises(FileNotFoundError):
            file_response(tmp_path / "gone.mp3")

    def test_stream_closed_after_delivery(self):
        stream = ListStream([b"ID3", b"rest"])

        def handler():
            return stream_response(stream, "audio/mpeg", headers={"X-Cache": "miss"})

        response = self._client(handler).get("/item")

        assert response.content == b"ID3rest"
        assert response.headers["accept-ranges"] == "none"
        assert response.headers["x-cache"] == "miss"
        assert stream.closed
