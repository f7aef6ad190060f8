"""Property-based tests for the cache key codec."""

from __future__ import annotations

import tempfile
from pathlib import Path

from hypothesis import assume, given, strategies as st

from edgeproxy.cache.keys import CacheKeyTooLong, cache_paths, key_for

urls = st.text(min_size=1, max_size=120).filter(lambda s: "\x00" not in s).map(lambda s: "/" + s)


@given(urls)
def test_keys_are_single_safe_file_names(url: str) -> None:
    try:
        payload_key, meta_key = key_for(url)
    except CacheKeyTooLong:
        return
    for key in (payload_key, meta_key):
        assert key.isascii()
        assert "/" not in key
        assert "\\" not in key
        assert key not in {".", ".."}


@given(urls, urls)
def test_distinct_urls_never_share_a_file(first: str, second: str) -> None:
    assume(first != second)
    try:
        first_keys = set(key_for(first))
        second_keys = set(key_for(second))
    except CacheKeyTooLong:
        return
    assert first_keys.isdisjoint(second_keys)


@given(urls)
def test_cache_paths_stay_inside_cache_dir(url: str) -> None:
    with tempfile.TemporaryDirectory() as tmp_dir:
        root = Path(tmp_dir)
        try:
            paths = cache_paths(root, url)
        except CacheKeyTooLong:
            return
        assert paths.payload.resolve().parent == root.resolve()
        assert paths.meta.resolve().parent == root.resolve()
