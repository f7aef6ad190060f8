"""Read-through TTL cache for static assets stored on local disk.

Every worker process shares the cache directory without locks. Payloads and
metadata are written to a temp file and renamed into place with ``os.replace``
so readers see either the previous complete file or the new one. Concurrent
writers for the same URL just repeat each other's work; the last rename wins.

Filesystem failures never fail a request: lookups degrade to a miss and
stores are dropped.
"""

from __future__ import annotations

import asyncio
import os
import shutil
import tempfile
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import AsyncIterator, BinaryIO, Callable, Optional
from urllib.parse import urlsplit

import structlog

from ..common.metrics import GLOBAL_REGISTRY, Counter
from .keys import CacheKeyTooLong, CachePaths, cache_paths

LOGGER = structlog.get_logger("edgeproxy.cache")

CACHEABLE_EXTENSIONS = frozenset({"css", "js", "png", "jpg", "jpeg", "gif", "webp", "woff2", "woff", "ttf"})
CHUNK_SIZE = 64 * 1024
_TEMP_PREFIX = ".edgeproxy-"
_TEMP_SUFFIX = ".tmp"

HIT_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeproxy_cache_hits_total", "Cache hits"))
MISS_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeproxy_cache_misses_total", "Cache misses"))
STORE_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeproxy_cache_stores_total", "Payloads committed to the cache"))
EXPIRED_COUNTER = GLOBAL_REGISTRY.register(Counter("edgeproxy_cache_expired_total", "Entries evicted on expiry"))
FAULT_COUNTER = GLOBAL_REGISTRY.register(
    Counter("edgeproxy_cache_faults_total", "Filesystem errors downgraded to cache misses")
)


def is_cacheable(request_url: str) -> bool:
    """True when the extension after the last ``.`` of the URL path is allow-listed."""
    path = urlsplit(request_url).path
    _, dot, extension = path.rpartition(".")
    return bool(dot) and extension in CACHEABLE_EXTENSIONS


@dataclass
class CacheHit:
    """Fresh cache entry with an open handle on its payload."""

    paths: CachePaths
    stored_at: float
    size: int
    _handle: BinaryIO = field(repr=False)

    async def iter_chunks(self, chunk_size: int = CHUNK_SIZE) -> AsyncIterator[bytes]:
        try:
            while True:
                chunk = await asyncio.to_thread(self._handle.read, chunk_size)
                if not chunk:
                    break
                yield chunk
        finally:
            self.close()

    def close(self) -> None:
        if not self._handle.closed:
            self._handle.close()


class CacheWriter:
    """Streams one payload into a temp file and renames it into place on commit."""

    def __init__(self, paths: CachePaths, clock: Callable[[], float]) -> None:
        self.paths = paths
        self._clock = clock
        self._handle: Optional[BinaryIO] = None
        self._temp_path: Optional[Path] = None
        self._failed = False
        self._finished = False
        self.bytes_written = 0

    @property
    def failed(self) -> bool:
        return self._failed

    def _open(self) -> None:
        fd, name = tempfile.mkstemp(prefix=_TEMP_PREFIX, suffix=_TEMP_SUFFIX, dir=self.paths.payload.parent)
        self._temp_path = Path(name)
        self._handle = os.fdopen(fd, "wb")

    def _write(self, chunk: bytes) -> None:
        if self._handle is None:
            self._open()
        assert self._handle is not None
        self._handle.write(chunk)

    async def write(self, chunk: bytes) -> None:
        if self._failed or self._finished or not chunk:
            return
        try:
            await asyncio.to_thread(self._write, chunk)
        except OSError as exc:
            self._fail("cache_write_failed", exc)
            return
        self.bytes_written += len(chunk)

    def _commit(self, stored_at: float) -> None:
        if self._handle is None:
            self._open()
        assert self._handle is not None and self._temp_path is not None
        self._handle.close()
        os.replace(self._temp_path, self.paths.payload)
        self._temp_path = None
        _atomic_write_text(self.paths.meta, str(int(stored_at * 1000)))

    async def commit(self, stored_at: float | None = None) -> bool:
        """Publish the payload and its timestamp. Returns False if nothing was stored."""
        if self._failed or self._finished:
            return False
        timestamp = self._clock() if stored_at is None else stored_at
        try:
            await asyncio.to_thread(self._commit, timestamp)
        except OSError as exc:
            self._fail("cache_commit_failed", exc)
            return False
        self._finished = True
        STORE_COUNTER.inc()
        LOGGER.debug("cache_stored", payload=self.paths.payload.name, bytes=self.bytes_written)
        return True

    def abort(self) -> None:
        """Drop the temp file; the published entry, if any, is left untouched."""
        self._finished = True
        try:
            self._discard()
        except OSError as exc:
            LOGGER.warning("cache_temp_cleanup_failed", payload=self.paths.payload.name, error=str(exc))

    def _discard(self) -> None:
        if self._handle is not None and not self._handle.closed:
            self._handle.close()
        if self._temp_path is not None:
            self._temp_path.unlink(missing_ok=True)
            self._temp_path = None

    def _fail(self, event: str, exc: OSError) -> None:
        self._failed = True
        FAULT_COUNTER.inc()
        LOGGER.warning(event, payload=self.paths.payload.name, error=str(exc))
        try:
            self._discard()
        except OSError:
            LOGGER.debug("cache_temp_cleanup_failed", payload=self.paths.payload.name)


def _atomic_write_text(path: Path, content: str) -> None:
    fd, name = tempfile.mkstemp(prefix=_TEMP_PREFIX, suffix=_TEMP_SUFFIX, dir=path.parent)
    try:
        with os.fdopen(fd, "w", encoding="ascii") as handle:
            handle.write(content)
        os.replace(name, path)
    except BaseException:
        Path(name).unlink(missing_ok=True)
        raise


class StaticAssetCache:
    def __init__(
        self,
        cache_dir: Path,
        ttl_seconds: float,
        clock: Callable[[], float] = time.time,
    ) -> None:
        self.cache_dir = Path(cache_dir)
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock

    def ensure_directory(self) -> None:
        try:
            self.cache_dir.mkdir(parents=True, exist_ok=True)
        except OSError as exc:
            LOGGER.warning("cache_dir_unavailable", cache_dir=str(self.cache_dir), error=str(exc))

    def reset(self) -> None:
        """Delete and recreate the cache directory."""
        if self.cache_dir.exists():
            try:
                shutil.rmtree(self.cache_dir)
            except OSError as exc:
                LOGGER.warning("cache_flush_failed", cache_dir=str(self.cache_dir), error=str(exc))
        self.ensure_directory()
        LOGGER.info("cache_flushed", cache_dir=str(self.cache_dir))

    def paths_for(self, request_url: str) -> Optional[CachePaths]:
        try:
            return cache_paths(self.cache_dir, request_url)
        except CacheKeyTooLong:
            LOGGER.debug("cache_key_too_long", url_length=len(request_url))
            return None

    async def lookup(self, request_url: str) -> Optional[CacheHit]:
        """Return a fresh entry, or None on a miss.

        Expired or unreadable entries are deleted before the miss is reported.
        """
        paths = self.paths_for(request_url)
        if paths is None:
            MISS_COUNTER.inc()
            return None
        try:
            hit = await asyncio.to_thread(self._lookup, paths)
        except OSError as exc:
            FAULT_COUNTER.inc()
            LOGGER.warning("cache_lookup_failed", payload=paths.payload.name, error=str(exc))
            hit = None
        if hit is None:
            MISS_COUNTER.inc()
        else:
            HIT_COUNTER.inc()
        return hit

    def _lookup(self, paths: CachePaths) -> Optional[CacheHit]:
        if not paths.payload.exists() or not paths.meta.exists():
            return None
        try:
            stored_at = int(paths.meta.read_text(encoding="ascii").strip()) / 1000.0
        except ValueError:
            LOGGER.warning("cache_meta_malformed", meta=paths.meta.name)
            FAULT_COUNTER.inc()
            self._evict(paths)
            return None
        if self._clock() - stored_at >= self.ttl_seconds:
            EXPIRED_COUNTER.inc()
            self._evict(paths)
            return None
        handle = paths.payload.open("rb")
        size = os.fstat(handle.fileno()).st_size
        return CacheHit(paths=paths, stored_at=stored_at, size=size, _handle=handle)

    @staticmethod
    def _evict(paths: CachePaths) -> None:
        paths.payload.unlink(missing_ok=True)
        paths.meta.unlink(missing_ok=True)

    def open_writer(self, request_url: str) -> Optional[CacheWriter]:
        paths = self.paths_for(request_url)
        if paths is None:
            return None
        return CacheWriter(paths, self._clock)

    async def store(
        self,
        request_url: str,
        chunks: AsyncIterator[bytes],
        stored_at: float | None = None,
    ) -> bool:
        """Consume ``chunks`` into the cache entry for ``request_url``."""
        writer = self.open_writer(request_url)
        if writer is None:
            return False
        try:
            async for chunk in chunks:
                await writer.write(chunk)
        except BaseException:
            writer.abort()
            raise
        return await writer.commit(stored_at)

    def status(self) -> dict[str, object]:
        return {
            "cache_dir": str(self.cache_dir),
            "ttl_seconds": self.ttl_seconds,
            "writable": self.cache_dir.exists() and os.access(self.cache_dir, os.W_OK),
        }
