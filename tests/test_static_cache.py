from __future__ import annotations

import asyncio
import os
from pathlib import Path

import pytest

from edgeproxy.cache import StaticAssetCache, is_cacheable
from edgeproxy.cache import store as cache_store
from edgeproxy.cache.keys import MAX_KEY_BYTES


class FakeClock:
    def __init__(self, now: float = 1_700_000_000.0) -> None:
        self.now = now

    def __call__(self) -> float:
        return self.now


async def _chunks(*parts: bytes):
    for part in parts:
        yield part


async def _read(hit) -> bytes:
    return b"".join([chunk async for chunk in hit.iter_chunks()])


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def cache(tmp_path: Path, clock: FakeClock) -> StaticAssetCache:
    instance = StaticAssetCache(tmp_path / "cache", ttl_seconds=60, clock=clock)
    instance.ensure_directory()
    return instance


@pytest.mark.parametrize(
    "url, expected",
    [
        ("/static/app.css", True),
        ("/bundle.js?v=3", True),
        ("/img/photo.JPEG", False),
        ("/fonts/inter.woff2", True),
        ("/index.html", False),
        ("/api/users", False),
        ("/download?file=report.css", False),
        ("/archive.tar.gz", False),
    ],
)
def test_is_cacheable_checks_path_extension(url: str, expected: bool) -> None:
    assert is_cacheable(url) is expected


@pytest.mark.asyncio
async def test_store_then_lookup_returns_payload(cache: StaticAssetCache, clock: FakeClock) -> None:
    stored = await cache.store("/app.css", _chunks(b"body{", b"color:red}"))
    assert stored is True

    clock.now += 30
    hit = await cache.lookup("/app.css")
    assert hit is not None
    assert hit.size == len(b"body{color:red}")
    assert await _read(hit) == b"body{color:red}"


@pytest.mark.asyncio
async def test_meta_file_holds_epoch_milliseconds(cache: StaticAssetCache, clock: FakeClock) -> None:
    await cache.store("/logo.png", _chunks(b"\x89PNG"))
    paths = cache.paths_for("/logo.png")
    assert paths is not None
    assert paths.meta.read_text(encoding="ascii") == str(int(clock.now * 1000))


@pytest.mark.asyncio
async def test_lookup_misses_and_evicts_expired_entries(cache: StaticAssetCache, clock: FakeClock) -> None:
    await cache.store("/app.js", _chunks(b"console.log(1)"))
    paths = cache.paths_for("/app.js")
    assert paths is not None
    expired_before = cache_store.EXPIRED_COUNTER.value

    clock.now += 60
    assert await cache.lookup("/app.js") is None
    assert not paths.payload.exists()
    assert not paths.meta.exists()
    assert cache_store.EXPIRED_COUNTER.value == expired_before + 1


@pytest.mark.asyncio
async def test_entry_is_fresh_until_ttl_elapses(cache: StaticAssetCache, clock: FakeClock) -> None:
    await cache.store("/app.js", _chunks(b"x"))
    clock.now += 59.9
    hit = await cache.lookup("/app.js")
    assert hit is not None
    hit.close()


@pytest.mark.asyncio
async def test_payload_without_meta_is_a_miss(cache: StaticAssetCache) -> None:
    paths = cache.paths_for("/orphan.css")
    assert paths is not None
    paths.payload.write_bytes(b"stale")
    assert await cache.lookup("/orphan.css") is None


@pytest.mark.asyncio
async def test_malformed_meta_evicts_entry(cache: StaticAssetCache) -> None:
    await cache.store("/broken.css", _chunks(b"a"))
    paths = cache.paths_for("/broken.css")
    assert paths is not None
    paths.meta.write_text("not-a-timestamp", encoding="ascii")

    assert await cache.lookup("/broken.css") is None
    assert not paths.payload.exists()
    assert not paths.meta.exists()


@pytest.mark.asyncio
async def test_restore_overwrites_previous_payload(cache: StaticAssetCache, clock: FakeClock) -> None:
    await cache.store("/app.css", _chunks(b"old"))
    clock.now += 10
    await cache.store("/app.css", _chunks(b"new"))

    hit = await cache.lookup("/app.css")
    assert hit is not None
    assert hit.stored_at == pytest.approx(clock.now)
    assert await _read(hit) == b"new"
    assert sorted(os.listdir(cache.cache_dir)) == sorted([hit.paths.payload.name, hit.paths.meta.name])


@pytest.mark.asyncio
async def test_failed_stream_leaves_no_partial_entry(cache: StaticAssetCache) -> None:
    async def failing():
        yield b"partial"
        raise RuntimeError("upstream reset")

    with pytest.raises(RuntimeError):
        await cache.store("/big.js", failing())

    assert await cache.lookup("/big.js") is None
    assert os.listdir(cache.cache_dir) == []


@pytest.mark.asyncio
async def test_aborted_writer_keeps_published_entry(cache: StaticAssetCache) -> None:
    await cache.store("/app.css", _chunks(b"complete"))
    writer = cache.open_writer("/app.css")
    assert writer is not None
    await writer.write(b"half")
    writer.abort()

    hit = await cache.lookup("/app.css")
    assert hit is not None
    assert await _read(hit) == b"complete"
    assert sorted(os.listdir(cache.cache_dir)) == sorted([hit.paths.payload.name, hit.paths.meta.name])


@pytest.mark.asyncio
async def test_commit_after_abort_is_ignored(cache: StaticAssetCache) -> None:
    writer = cache.open_writer("/app.css")
    assert writer is not None
    await writer.write(b"data")
    writer.abort()
    assert await writer.commit() is False
    assert await cache.lookup("/app.css") is None


@pytest.mark.asyncio
async def test_empty_payload_is_stored(cache: StaticAssetCache) -> None:
    assert await cache.store("/empty.css", _chunks()) is True
    hit = await cache.lookup("/empty.css")
    assert hit is not None
    assert hit.size == 0
    assert await _read(hit) == b""


@pytest.mark.asyncio
async def test_overlong_url_is_never_cached(cache: StaticAssetCache) -> None:
    url = "/" + "a" * MAX_KEY_BYTES + ".css"
    assert await cache.store(url, _chunks(b"x")) is False
    assert await cache.lookup(url) is None


@pytest.mark.asyncio
async def test_missing_cache_directory_degrades_to_miss(tmp_path: Path, clock: FakeClock) -> None:
    cache = StaticAssetCache(tmp_path / "absent", ttl_seconds=60, clock=clock)
    faults_before = cache_store.FAULT_COUNTER.value

    assert await cache.store("/app.css", _chunks(b"x")) is False
    assert await cache.lookup("/app.css") is None
    assert cache_store.FAULT_COUNTER.value > faults_before


@pytest.mark.asyncio
async def test_reset_flushes_existing_entries(cache: StaticAssetCache) -> None:
    await cache.store("/app.css", _chunks(b"x"))
    cache.reset()
    assert cache.cache_dir.is_dir()
    assert os.listdir(cache.cache_dir) == []


def test_status_reports_writable_directory(cache: StaticAssetCache) -> None:
    status = cache.status()
    assert status["writable"] is True
    assert status["ttl_seconds"] == 60.0


@pytest.mark.asyncio
async def test_concurrent_writers_leave_one_complete_payload(cache: StaticAssetCache) -> None:
    first = b"a" * 200_000
    second = b"b" * 150_000

    async def slow(payload: bytes):
        for offset in range(0, len(payload), 10_000):
            await asyncio.sleep(0)
            yield payload[offset : offset + 10_000]

    results = await asyncio.gather(cache.store("/app.js", slow(first)), cache.store("/app.js", slow(second)))

    assert results == [True, True]
    hit = await cache.lookup("/app.js")
    assert hit is not None
    assert await _read(hit) in {first, second}
    assert not [name for name in os.listdir(cache.cache_dir) if name.endswith(".tmp")]
