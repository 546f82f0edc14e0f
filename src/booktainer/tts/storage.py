"""
Content-addressed disk cache for synthesized speech.

Layout:
    <cache_dir>/tts-<sha256>.mp3    audio/mpeg results
    <cache_dir>/tts-<sha256>.wav    everything else
    <cache_dir>/tts-<sha256>.<ext>.part   a write in progress

Cache Key:
    SHA256 over the JSON array [mode, voice, rate, text], with rate as a
    float so 1 and 1.0 address the same entry. JSON framing keeps a "|" in
    a voice id from colliding with a different field split.

Population:
    Exactly one writer per key at a time. A writer claims the key by
    creating the ``.part`` file with O_EXCL; whoever loses the race simply
    does not cache. A write is published with an atomic rename only when it
    completed and is non-empty, so readers never see a partial file under
    the final name.

Cleanup:
    CacheJanitor removes entries older than the TTL and ``.part`` files
    abandoned by a crashed writer, at most once per interval, in a
    background thread.
"""
from __future__ import annotations

import hashlib
import json
import os
import shutil
import threading
import time
from dataclasses import dataclass
from pathlib import Path
from typing import Any, BinaryIO, Dict, Iterable, Optional, Tuple

from booktainer.core.config import Defaults
from booktainer.core.logging import debug, get_logger, info, verbose, warn
from booktainer.core.metrics import metrics

_LOG = get_logger("booktainer.tts.cache")

MPEG = "audio/mpeg"
WAV = "audio/wav"

# Lookup order on read.
_PROBE_ORDER: Tuple[Tuple[str, str], ...] = (("mp3", MPEG), ("wav", WAV))

PART_SUFFIX = ".part"


def extension_for(content_type: str) -> str:
    """mp3 for MPEG audio, wav for anything else."""
    return "mp3" if content_type.split(";", 1)[0].strip().lower() == MPEG else "wav"


def make_key(mode: str, voice: str, rate: Optional[float], text: str) -> str:
    """
    Deterministic cache key for one synthesis request.

    ``rate`` of None is treated as the default 1.0.
    """
    payload = json.dumps(
        [mode, voice, repr(float(1.0 if rate is None else rate)), text],
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return hashlib.sha256(payload.encode("utf-8")).hexdigest()


@dataclass(frozen=True)
class CachedAudio:
    path: Path
    content_type: str
    content_length: int


class CacheWriter:
    """
    Exclusive handle on one key's ``.part`` file.

    Exactly one of commit() or abort() takes effect; later calls are no-ops.
    """

    def __init__(self, key: str, part_path: Path, final_path: Path, fh: BinaryIO):
        self.key = key
        self.part_path = part_path
        self.final_path = final_path
        self._fh: Optional[BinaryIO] = fh
        self.bytes_written = 0

    @property
    def closed(self) -> bool:
        return self._fh is None

    def write(self, chunk: bytes) -> None:
        if self._fh is None:
            raise ValueError("cache writer is closed")
        self._fh.write(chunk)
        self.bytes_written += len(chunk)

    def copy_from(self, source: Path) -> None:
        if self._fh is None:
            raise ValueError("cache writer is closed")
        with source.open("rb") as src:
            shutil.copyfileobj(src, self._fh)
        self.bytes_written = self._fh.tell()

    def commit(self) -> bool:
        """
        Publish the entry. Empty writes are discarded.

        Returns:
            True if the entry is now visible under its final name.
        """
        if self._fh is None:
            return False
        fh, self._fh = self._fh, None
        try:
            fh.flush()
            os.fsync(fh.fileno())
            fh.close()
            if self.bytes_written <= 0:
                self.part_path.unlink(missing_ok=True)
                metrics.record_cache_write("skipped")
                return False
            os.replace(self.part_path, self.final_path)
        except OSError as e:
            warn(_LOG, "cache_commit_failed", key=self.key[:8], error=str(e))
            self.part_path.unlink(missing_ok=True)
            metrics.record_cache_write("failed")
            return False
        metrics.record_cache_write("stored")
        info(_LOG, "cache_stored", key=self.key[:8], bytes=self.bytes_written)
        return True

    def abort(self) -> None:
        if self._fh is None:
            return
        fh, self._fh = self._fh, None
        try:
            fh.close()
        finally:
            self.part_path.unlink(missing_ok=True)
        verbose(_LOG, "cache_write_aborted", key=self.key[:8], bytes=self.bytes_written)


class AudioCache:
    """
    Lookup and exclusive population of cached audio files.

    All methods are blocking; async callers run them via asyncio.to_thread.
    """

    def __init__(self, base_dir: str | Path):
        self._base_dir = Path(base_dir)
        self._base_dir.mkdir(parents=True, exist_ok=True)

    @property
    def base_dir(self) -> Path:
        return self._base_dir

    def path_for(self, key: str, content_type: str) -> Path:
        return self._base_dir / f"tts-{key}.{extension_for(content_type)}"

    def lookup(self, key: str) -> Optional[CachedAudio]:
        """
        Find a published entry, trying mp3 then wav.

        Zero-byte files are treated as absent and removed.
        """
        for ext, content_type in _PROBE_ORDER:
            path = self._base_dir / f"tts-{key}.{ext}"
            try:
                st = path.stat()
            except FileNotFoundError:
                continue
            except OSError as e:
                warn(_LOG, "cache_stat_failed", key=key[:8], error=str(e))
                continue
            if not path.is_file():
                continue
            if st.st_size == 0:
                path.unlink(missing_ok=True)
                debug(_LOG, "cache_pruned_empty", key=key[:8])
                continue
            return CachedAudio(path=path, content_type=content_type, content_length=st.st_size)
        return None

    def claim(self, key: str, content_type: str) -> Optional[CacheWriter]:
        """
        Become the single writer for ``key``.

        Returns None when another writer holds the key or the entry already
        exists; the caller should then serve without caching.
        """
        final_path = self.path_for(key, content_type)
        part_path = final_path.with_name(final_path.name + PART_SUFFIX)
        try:
            fd = os.open(part_path, os.O_WRONLY | os.O_CREAT | os.O_EXCL, 0o644)
        except FileExistsError:
            debug(_LOG, "cache_claim_lost", key=key[:8])
            return None
        except OSError as e:
            warn(_LOG, "cache_claim_failed", key=key[:8], error=str(e))
            return None

        if final_path.exists():
            os.close(fd)
            part_path.unlink(missing_ok=True)
            return None
        return CacheWriter(key, part_path, final_path, os.fdopen(fd, "wb"))

    def store_file(self, key: str, content_type: str, source: Path) -> bool:
        """
        Copy a finished file into the cache. Failures are logged, never raised.
        """
        writer = self.claim(key, content_type)
        if writer is None:
            return False
        try:
            writer.copy_from(source)
        except OSError as e:
            warn(_LOG, "cache_copy_failed", key=key[:8], error=str(e))
            writer.abort()
            metrics.record_cache_write("failed")
            return False
        return writer.commit()


class CacheJanitor:
    """
    TTL-based cleanup of the cache directory.

    maybe_cleanup() is cheap and non-blocking: it starts a background
    sweep at most once per ``cleanup_interval_seconds``.
    """

    def __init__(
        self,
        base_dir: str | Path,
        ttl_seconds: int = Defaults.TTS_CACHE_TTL_SECONDS,
        stale_part_seconds: int = Defaults.TTS_CACHE_STALE_PART_SECONDS,
        cleanup_interval_seconds: int = Defaults.TTS_CACHE_CLEANUP_INTERVAL_SECONDS,
    ):
        self._base_dir = Path(base_dir)
        self._ttl_seconds = ttl_seconds
        self._stale_part_seconds = stale_part_seconds
        self._cleanup_interval = cleanup_interval_seconds
        self._last_cleanup = 0.0
        self._lock = threading.Lock()
        self._cleanup_running = False

        self._stats_lock = threading.Lock()
        self._total_cleaned = 0
        self._total_bytes_freed = 0

    @property
    def ttl_seconds(self) -> int:
        return self._ttl_seconds

    def maybe_cleanup(self) -> None:
        now = time.time()
        with self._lock:
            if now - self._last_cleanup < self._cleanup_interval:
                return
            if self._cleanup_running:
                return
            self._cleanup_running = True
            self._last_cleanup = now

        threading.Thread(
            target=self._do_cleanup,
            daemon=True,
            name="tts-cache-cleanup",
        ).start()

    def force_cleanup(self, now: Optional[float] = None) -> Dict[str, int]:
        """Blocking sweep. Returns files_removed, parts_removed, bytes_freed."""
        with self._lock:
            self._cleanup_running = True
        return self._do_cleanup(now)

    def _entries(self) -> Iterable[Path]:
        if not self._base_dir.exists():
            return []
        return [p for p in self._base_dir.iterdir() if p.name.startswith("tts-")]

    def _do_cleanup(self, now: Optional[float] = None) -> Dict[str, int]:
        try:
            now = time.time() if now is None else now
            entry_cutoff = now - self._ttl_seconds
            part_cutoff = now - self._stale_part_seconds
            files_removed = parts_removed = bytes_freed = 0

            for path in self._entries():
                try:
                    st = path.stat()
                    is_part = path.name.endswith(PART_SUFFIX)
                    expired = st.st_mtime < (part_cutoff if is_part else entry_cutoff)
                    if not expired and (is_part or st.st_size > 0):
                        continue
                    path.unlink()
                except FileNotFoundError:
                    continue
                except OSError as e:
                    verbose(_LOG, "cleanup_file_error", file=path.name, error=str(e))
                    continue
                if is_part:
                    parts_removed += 1
                else:
                    files_removed += 1
                bytes_freed += st.st_size

            with self._stats_lock:
                self._total_cleaned += files_removed + parts_removed
                self._total_bytes_freed += bytes_freed

            if files_removed or parts_removed:
                info(
                    _LOG, "cache_cleanup",
                    files_removed=files_removed,
                    parts_removed=parts_removed,
                    bytes_freed=bytes_freed,
                )
            return {
                "files_removed": files_removed,
                "parts_removed": parts_removed,
                "bytes_freed": bytes_freed,
            }
        finally:
            with self._lock:
                self._cleanup_running = False

    def get_stats(self) -> Dict[str, int]:
        with self._stats_lock:
            return {
                "total_files_cleaned": self._total_cleaned,
                "total_bytes_freed": self._total_bytes_freed,
            }

    def get_storage_info(self) -> Dict[str, Any]:
        file_count = 0
        total_bytes = 0
        pending_writes = 0
        for path in self._entries():
            if path.name.endswith(PART_SUFFIX):
                pending_writes += 1
                continue
            try:
                total_bytes += path.stat().st_size
                file_count += 1
            except OSError:
                continue
        return {
            "file_count": file_count,
            "total_bytes": total_bytes,
            "pending_writes": pending_writes,
            "ttl_seconds": self._ttl_seconds,
        }
