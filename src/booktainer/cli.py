"""
Command-line interface for booktainer.

Usage Examples:
    # Run the HTTP server
    booktainer serve --host 0.0.0.0 --port 8080

    # Show what ingestion would extract from an EPUB
    booktainer inspect book.epub --json

    # List voices available right now
    booktainer voices

    # Download an offline voice
    booktainer install-voice en_US-ryan-medium

    # Sweep expired cache entries and abandoned partial writes
    booktainer cache-cleanup --json

Environment Variables:
    BOOKTAINER_SETTINGS: settings file (default config/settings.yaml)
    BOOKTAINER_DATA_DIR, OPENAI_API_KEY, PIPER_VOICES_DIR: see core/config.py
"""
from __future__ import annotations

import argparse
import asyncio
import json
import os
from pathlib import Path
from typing import Any, Dict, List, Optional
from uuid import uuid4

from booktainer import __version__
from booktainer.core.config import ConfigValidationError, Settings, load_settings
from booktainer.core.logging import configure_logging, get_logger, info, set_request_id
from booktainer.library import epub
from booktainer.services.errors import BooktainerError
from booktainer.tts.providers import PiperProvider, ProviderRegistry
from booktainer.tts.storage import CacheJanitor

SETTINGS_ENV = "BOOKTAINER_SETTINGS"


def _parse_args(argv: Optional[List[str]] = None) -> argparse.Namespace:
    parser = argparse.ArgumentParser(prog="booktainer", description="booktainer e-book library and reader service")
    parser.add_argument("--version", action="version", version=f"booktainer {__version__}")
    parser.add_argument("--settings", help="Settings file (overrides BOOKTAINER_SETTINGS)")
    sub = parser.add_subparsers(dest="command", required=True)

    serve = sub.add_parser("serve", help="Run the HTTP server")
    serve.add_argument("--host", help="Bind address (default from settings)")
    serve.add_argument("--port", type=int, help="Port (default from settings)")
    serve.add_argument("--reload", action="store_true", help="Reload on code changes")

    inspect = sub.add_parser("inspect", help="Show EPUB metadata and cover")
    inspect.add_argument("file", help="Path to an .epub file")
    inspect.add_argument("--cover-out", help="Write the cover image to this path")
    inspect.add_argument("--json", action="store_true", help="Print JSON")

    voices = sub.add_parser("voices", help="List available voices")
    voices.add_argument("--json", action="store_true", help="Print JSON")

    install = sub.add_parser("install-voice", help="Download an offline (Piper) voice")
    install.add_argument("voice_id", help="Catalog voice id, e.g. en_US-ryan-medium")

    cleanup = sub.add_parser("cache-cleanup", help="Remove expired TTS cache entries")
    cleanup.add_argument("--json", action="store_true", help="Print JSON")

    return parser.parse_args(argv)


def _load(args: argparse.Namespace) -> Settings:
    return load_settings(args.settings or os.getenv(SETTINGS_ENV, "config/settings.yaml"))


def _emit(payload: Dict[str, Any], as_json: bool) -> None:
    if as_json:
        print(json.dumps(payload, ensure_ascii=False))
        return
    for key, value in payload.items():
        print(f"{key}: {value}")


def _cmd_serve(args: argparse.Namespace) -> int:
    import uvicorn

    settings = _load(args)
    if args.settings:
        os.environ[SETTINGS_ENV] = args.settings
    uvicorn.run(
        "booktainer.main:app",
        host=args.host or settings.host,
        port=args.port or settings.port,
        reload=args.reload,
    )
    return 0


def _cmd_inspect(args: argparse.Namespace) -> int:
    path = Path(args.file)
    data = path.read_bytes()
    metadata, cover = epub.extract(data)
    payload: Dict[str, Any] = {
        "file": str(path),
        "title": metadata.title,
        "author": metadata.author,
        "cover": None,
    }
    if cover is not None:
        payload["cover"] = {
            "href": cover.href,
            "media_type": cover.media_type,
            "extension": cover.extension,
            "bytes": len(cover.data),
        }
        if args.cover_out:
            Path(args.cover_out).write_bytes(cover.data)
            payload["cover"]["written_to"] = args.cover_out
    _emit(payload, args.json)
    return 0


async def _list_voices(registry: ProviderRegistry) -> Dict[str, Any]:
    try:
        voices = await registry.list_voices()
    finally:
        await registry.aclose()
    return {mode: [v.to_dict() for v in items] for mode, items in voices.items()}


def _cmd_voices(args: argparse.Namespace) -> int:
    config = _load(args).get_app_config()
    payload = asyncio.run(_list_voices(ProviderRegistry.from_config(config)))
    if args.json:
        print(json.dumps(payload, ensure_ascii=False))
        return 0
    for mode, items in payload.items():
        print(f"{mode}:")
        if not items:
            print("  (none)")
        for voice in items:
            print(f"  {voice['id']:<24} {voice['name']}")
    return 0


def _cmd_install_voice(args: argparse.Namespace) -> int:
    config = _load(args).get_app_config()
    provider = PiperProvider(config.offline, tmp_dir=config.storage.tmp_dir)
    voice = asyncio.run(provider.install_voice(args.voice_id))
    print(f"installed {voice.id} into {provider.voices_dir}")
    return 0


def _cmd_cache_cleanup(args: argparse.Namespace) -> int:
    config = _load(args).get_app_config()
    janitor = CacheJanitor(
        config.storage.tts_cache_dir,
        ttl_seconds=config.tts_cache.ttl_seconds,
        stale_part_seconds=config.tts_cache.stale_part_seconds,
        cleanup_interval_seconds=config.tts_cache.cleanup_interval_seconds,
    )
    result = janitor.force_cleanup()
    _emit({**result, **janitor.get_storage_info()}, args.json)
    return 0


_COMMANDS = {
    "serve": _cmd_serve,
    "inspect": _cmd_inspect,
    "voices": _cmd_voices,
    "install-voice": _cmd_install_voice,
    "cache-cleanup": _cmd_cache_cleanup,
}


def main(argv: Optional[List[str]] = None) -> int:
    """
    CLI entry point.

    Returns:
        0 on success, 1 on a service error, 2 on bad configuration.
    """
    args = _parse_args(argv)

    configure_logging()
    log = get_logger("booktainer.cli")
    set_request_id(str(uuid4())[:12])
    info(log, "cli_command", command=args.command)

    try:
        return _COMMANDS[args.command](args)
    except (FileNotFoundError, ConfigValidationError) as e:
        print(f"error: {e}")
        return 2
    except BooktainerError as e:
        print(f"error: {e.message}")
        return 1


if __name__ == "__main__":
    raise SystemExit(main())
