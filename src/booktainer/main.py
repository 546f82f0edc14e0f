"""
FastAPI application entry point.

Routers:
    - Service: /health, /metrics
    - Library: /api/books/...
    - Speech:  /api/tts/...

Long-lived services (database, library, TTS engine, token store) are built
in the lifespan and kept on ``app.state``.

Usage:
    uvicorn booktainer.main:app --host 0.0.0.0 --port 8080
    booktainer serve
"""
from __future__ import annotations

import asyncio
import uuid
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI, Request

from booktainer import __version__
from booktainer.api.dependencies import get_settings
from booktainer.api.routes import install_error_handlers, router
from booktainer.api.routes_books import router as books_router
from booktainer.api.routes_tts import router as tts_router
from booktainer.core.config import Settings
from booktainer.core.logging import configure_logging, get_logger, info, set_request_id
from booktainer.library.repository import BookRepository, Database, ProgressRepository
from booktainer.services.library_service import LibraryService
from booktainer.services.tts_service import TTSService, log_unavailable_modes
from booktainer.tts.providers import ProviderRegistry
from booktainer.tts.storage import AudioCache, CacheJanitor
from booktainer.tts.tokens import TokenStore

_LOG = get_logger("booktainer.main")


def create_app(settings: Optional[Settings] = None, registry: Optional[ProviderRegistry] = None) -> FastAPI:
    """
    Build the application.

    Args:
        settings: Settings to use; loaded from BOOKTAINER_SETTINGS at startup when omitted.
        registry: Speech providers; built from config when omitted.
    """
    configure_logging()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        config = (settings or get_settings()).get_app_config()
        config.storage.ensure_dirs()

        db = Database(config.storage.db_path)
        db.connect()
        library = LibraryService(config, BookRepository(db), ProgressRepository(db))

        cache = AudioCache(config.storage.tts_cache_dir)
        janitor = CacheJanitor(
            config.storage.tts_cache_dir,
            ttl_seconds=config.tts_cache.ttl_seconds,
            stale_part_seconds=config.tts_cache.stale_part_seconds,
            cleanup_interval_seconds=config.tts_cache.cleanup_interval_seconds,
        )
        # Leftover .part files from a previous run can never be committed.
        await asyncio.to_thread(janitor.force_cleanup)

        tts = TTSService(config, registry or ProviderRegistry.from_config(config), cache, janitor)
        tokens = TokenStore(config.auth.session_ttl_seconds, config.auth.token_max_ttl_seconds)

        app.state.config = config
        app.state.db = db
        app.state.library = library
        app.state.tts = tts
        app.state.tokens = tokens

        log_unavailable_modes(tts)
        info(_LOG, "startup", version=__version__, data_dir=config.storage.data_dir)
        try:
            yield
        finally:
            tokens.clear()
            await tts.aclose()
            db.close()
            info(_LOG, "shutdown")

    app = FastAPI(title="booktainer", version=__version__, lifespan=lifespan)

    @app.middleware("http")
    async def request_id_middleware(request: Request, call_next):
        rid = request.headers.get("X-Request-Id") or uuid.uuid4().hex[:12]
        set_request_id(rid)
        response = await call_next(request)
        response.headers["X-Request-Id"] = rid
        return response

    install_error_handlers(app)
    app.include_router(router)
    app.include_router(books_router)
    app.include_router(tts_router)
    return app


app = create_app()
