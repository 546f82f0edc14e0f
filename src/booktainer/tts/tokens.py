"""
Short-lived playback tokens.

A token stands in for one speak request so a media element can fetch the
audio with a plain GET. Tokens live in this process only and expire after
min(session TTL, token cap). Expired entries are pruned whenever a token is
issued and dropped when looked up.
"""
from __future__ import annotations

import secrets
import threading
import time
from dataclasses import dataclass
from typing import Callable, Dict

from booktainer.core.logging import debug, get_logger
from booktainer.core.metrics import metrics
from booktainer.services.errors import NotFoundError

_LOG = get_logger("booktainer.tts.tokens")

DEFAULT_MAX_TTL_SECONDS = 300.0


@dataclass(frozen=True)
class TokenEntry:
    request: object
    owner_id: str
    expires_at: float


class TokenStore:
    """
    Args:
        ttl_seconds: session lifetime; tokens never outlive it.
        max_ttl_seconds: hard cap on token lifetime.
        clock: monotonic time source, injectable for tests.
    """

    def __init__(
        self,
        ttl_seconds: float,
        max_ttl_seconds: float = DEFAULT_MAX_TTL_SECONDS,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._ttl = float(min(ttl_seconds, max_ttl_seconds))
        self._clock = clock
        self._entries: Dict[str, TokenEntry] = {}
        self._lock = threading.Lock()

    @property
    def ttl_seconds(self) -> float:
        return self._ttl

    def __len__(self) -> int:
        with self._lock:
            return len(self._entries)

    def _prune(self, now: float) -> int:
        expired = [t for t, e in self._entries.items() if e.expires_at <= now]
        for token in expired:
            del self._entries[token]
        return len(expired)

    def issue(self, owner_id: str, request: object) -> str:
        now = self._clock()
        token = secrets.token_urlsafe(24)
        with self._lock:
            pruned = self._prune(now)
            self._entries[token] = TokenEntry(request=request, owner_id=owner_id, expires_at=now + self._ttl)
            live = len(self._entries)
        metrics.record_token_issued(live)
        debug(_LOG, "token_issued", pruned=pruned, live=live)
        return token

    def resolve(self, token: str) -> TokenEntry:
        """
        Raises:
            NotFoundError: unknown or expired token.
        """
        now = self._clock()
        with self._lock:
            entry = self._entries.get(token)
            if entry is None:
                raise NotFoundError("Not found")
            if entry.expires_at <= now:
                del self._entries[token]
                metrics.set_tokens_live(len(self._entries))
                raise NotFoundError("Not found")
            return entry

    def clear(self) -> None:
        with self._lock:
            self._entries.clear()
        metrics.set_tokens_live(0)
