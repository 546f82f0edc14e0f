"""Tests for the booktainer command-line interface."""
from __future__ import annotations

import json
import os
import subprocess
import sys
import time
from unittest.mock import patch

import pytest
import yaml

from booktainer import cli

from conftest import build_epub


def _json_line(out: str):
    lines = [line for line in out.splitlines() if line.startswith("{")]
    assert lines, out
    return json.loads(lines[-1])


@pytest.fixture
def settings_file(tmp_path, monkeypatch):
    for var in ("BOOKTAINER_DATA_DIR", "OPENAI_API_KEY", "PIPER_VOICES_DIR", "BOOKTAINER_SETTINGS"):
        monkeypatch.delenv(var, raising=False)
    path = tmp_path / "settings.yaml"
    path.write_text(yaml.safe_dump({
        "storage": {"data_dir": str(tmp_path / "data")},
        "tts": {
            "offline": {"voices_dir": str(tmp_path / "voices")},
            "cache": {"stale_part_seconds": 60},
        },
    }))
    return path


class TestInspect:
    def test_json_with_cover(self, tmp_path, capsys):
        book = tmp_path / "book.epub"
        book.write_bytes(build_epub(
            title="Emma",
            author="Jane Austen",
            meta_cover_id="c",
            manifest=[{"id": "c", "href": "cover.jpg", "media-type": "image/jpeg"}],
            files={"OEBPS/cover.jpg": b"\xff\xd8\xff"},
        ))
        cover_out = tmp_path / "cover.jpg"

        code = cli.main(["inspect", str(book), "--json", "--cover-out", str(cover_out)])

        payload = _json_line(capsys.readouterr().out)
        assert code == 0
        assert payload["title"] == "Emma"
        assert payload["author"] == "Jane Austen"
        assert payload["cover"]["media_type"] == "image/jpeg"
        assert payload["cover"]["bytes"] == 3
        assert cover_out.read_bytes() == b"\xff\xd8\xff"

    def test_not_an_epub(self, tmp_path, capsys):
        junk = tmp_path / "junk.epub"
        junk.write_bytes(b"nope")

        assert cli.main(["inspect", str(junk), "--json"]) == 0
        payload = _json_line(capsys.readouterr().out)
        assert payload["title"] is None
        assert payload["cover"] is None

    def test_missing_file(self, tmp_path):
        assert cli.main(["inspect", str(tmp_path / "absent.epub")]) == 2


class TestServiceCommands:
    def test_voices_none_available(self, settings_file, capsys):
        code = cli.main(["--settings", str(settings_file), "voices", "--json"])

        assert code == 0
        assert _json_line(capsys.readouterr().out) == {"online": [], "offline": []}

    def test_cache_cleanup(self, settings_file, tmp_path, capsys):
        cache_dir = tmp_path / "data" / "tts-cache"
        cache_dir.mkdir(parents=True)
        stale = cache_dir / f"tts-{'a' * 64}.mp3.part"
        stale.write_bytes(b"partial")
        past = time.time() - 3600
        os.utime(stale, (past, past))
        (cache_dir / f"tts-{'b' * 64}.mp3").write_bytes(b"ID3")

        code = cli.main(["--settings", str(settings_file), "cache-cleanup", "--json"])

        payload = _json_line(capsys.readouterr().out)
        assert code == 0
        assert payload["parts_removed"] == 1
        assert payload["files_removed"] == 0
        assert payload["file_count"] == 1
        assert not stale.exists()

    def test_install_unknown_voice(self, settings_file, capsys):
        code = cli.main(["--settings", str(settings_file), "install-voice", "xx_XX-nobody-low"])

        assert code == 1
        assert "Unknown Piper voice." in capsys.readouterr().out

    def test_missing_settings(self, tmp_path, capsys):
        code = cli.main(["--settings", str(tmp_path / "absent.yaml"), "voices"])

        assert code == 2
        assert "settings file not found" in capsys.readouterr().out

    def test_invalid_settings(self, tmp_path):
        bad = tmp_path / "bad.yaml"
        bad.write_text(yaml.safe_dump({"library": {"max_upload_mb": 0}}))

        assert cli.main(["--settings", str(bad), "cache-cleanup"]) == 2

    def test_serve_passes_bind_address(self, settings_file):
        with patch("uvicorn.run") as run:
            assert cli.main(["--settings", str(settings_file), "serve", "--port", "9999"]) == 0

        (app,), kwargs = run.call_args
        assert app == "booktainer.main:app"
        assert kwargs["port"] == 9999
        assert kwargs["host"] == "0.0.0.0"
        assert kwargs["reload"] is False
        assert os.environ["BOOKTAINER_SETTINGS"] == str(settings_file)


class TestEntryPoint:
    def test_version(self, capsys):
        with pytest.raises(SystemExit) as exc_info:
            cli.main(["--version"])

        assert exc_info.value.code == 0
        assert "booktainer 0.1.0" in capsys.readouterr().out

    def test_module_help(self):
        result = subprocess.run(
            [sys.executable, "-m", "booktainer.cli", "--help"],
            capture_output=True,
            text=True,
        )

        assert result.returncode == 0
        assert "e-book library" in result.stdout
        for command in ("serve", "inspect", "voices", "install-voice", "cache-cleanup"):
            assert command in result.stdout
