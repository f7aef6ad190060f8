"""Disk cache for static assets shared by all worker processes."""

from .keys import CacheKeyTooLong, CachePaths, cache_paths, key_for
from .store import CACHEABLE_EXTENSIONS, CacheHit, CacheWriter, StaticAssetCache, is_cacheable

__all__ = [
    "CACHEABLE_EXTENSIONS",
    "CacheHit",
    "CacheKeyTooLong",
    "CachePaths",
    "CacheWriter",
    "StaticAssetCache",
    "cache_paths",
    "is_cacheable",
    "key_for",
]
