"""
FastAPI dependency providers.

Long-lived services are built once in the application lifespan (main.py)
and stored on ``app.state``; these functions hand them to route handlers.

    get_settings()          -> Settings loaded from BOOKTAINER_SETTINGS
    get_library_service()   -> LibraryService
    get_tts_service()       -> TTSService
    get_token_store()       -> TokenStore
    get_owner_id()          -> caller identity from the owner header
"""
from __future__ import annotations

import os
from functools import lru_cache

from fastapi import Request

from booktainer.core.config import AppConfig, Settings, load_settings
from booktainer.services.library_service import LibraryService
from booktainer.services.tts_service import TTSService
from booktainer.tts.tokens import TokenStore

SETTINGS_ENV = "BOOKTAINER_SETTINGS"
DEFAULT_SETTINGS_PATH = "config/settings.yaml"


@lru_cache(maxsize=1)
def get_settings() -> Settings:
    """Load settings once; the path comes from BOOKTAINER_SETTINGS when set."""
    return load_settings(os.getenv(SETTINGS_ENV, DEFAULT_SETTINGS_PATH))


def get_app_config(request: Request) -> AppConfig:
    return request.app.state.config


def get_library_service(request: Request) -> LibraryService:
    return request.app.state.library


def get_tts_service(request: Request) -> TTSService:
    return request.app.state.tts


def get_token_store(request: Request) -> TokenStore:
    return request.app.state.tokens


def get_owner_id(request: Request) -> str:
    """
    Caller identity. Session handling lives in front of this service; it
    forwards the user id in ``auth.owner_header``.
    """
    config: AppConfig = request.app.state.config
    owner = request.headers.get(config.auth.owner_header, "").strip()
    return owner or config.auth.default_owner
