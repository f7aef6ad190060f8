"""Filesystem-safe cache keys derived from request URLs."""

from __future__ import annotations

from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

META_SUFFIX = ".meta"

# Characters left unescaped by JavaScript's encodeURIComponent besides
# alphanumerics and "-_.~" (which urllib.parse.quote never escapes).
_SAFE = "!*'()"

# NAME_MAX on common filesystems, minus room for the ".meta" suffix and the
# temp-file decoration added while writing.
MAX_KEY_BYTES = 255 - len(META_SUFFIX) - 32


class CacheKeyTooLong(ValueError):
    """Raised when an encoded URL cannot be used as a single file name."""


@dataclass(frozen=True)
class CachePaths:
    payload: Path
    meta: Path


def key_for(request_url: str) -> tuple[str, str]:
    """Return ``(payload_key, meta_key)`` for a request path plus query.

    Percent-encoding is injective and never yields ``/`` so every URL maps to
    exactly one flat file name. ``quote`` never emits ``%2E``, so escaping a
    dot by hand keeps the mapping injective: it is used to stop ``.`` and
    ``..`` naming directories and to keep payload keys from ending in the
    metadata suffix.
    """
    payload_key = quote(request_url, safe=_SAFE)
    if payload_key in {".", ".."}:
        payload_key = payload_key.replace(".", "%2E")
    elif payload_key.endswith(META_SUFFIX):
        payload_key = payload_key[: -len(META_SUFFIX)] + "%2E" + META_SUFFIX[1:]
    if len(payload_key.encode("ascii")) > MAX_KEY_BYTES:
        raise CacheKeyTooLong(f"encoded cache key is {len(payload_key)} bytes")
    return payload_key, f"{payload_key}{META_SUFFIX}"


def cache_paths(cache_dir: Path, request_url: str) -> CachePaths:
    payload_key, meta_key = key_for(request_url)
    return CachePaths(payload=cache_dir / payload_key, meta=cache_dir / meta_key)
