"""
Reference-counted content cache.

Maps a deterministic key to a shared payload (decoded heightmap data or a
built geometry). The first consumer inserts the payload with ``set``,
later consumers take a reference with ``add_ref``, and every consumer
calls ``release`` when done. The entry is evicted, and its payload
disposed, when the last reference is released.

The cache is not thread-safe: all calls must come from the thread that
owns the engine.
"""

import json
from dataclasses import dataclass
from typing import Any, Dict, Iterator, Optional, Sequence, Tuple

import structlog

from .errors import (
    CacheKeyCollisionError,
    CacheKeyNotFoundError,
    DoubleReleaseError,
)

logger = structlog.get_logger()

HEIGHTMAP_KEY_PREFIX = "heightmap:"
GEOMETRY_KEY_PREFIX = "geometry:"


@dataclass
class CacheEntry:
    """One cached payload and the number of consumers holding it."""

    key: str
    payload: Any
    refcount: int = 1


class ContentCache:
    """
    Arena of shared payloads keyed by content.

    Owned by one coordinating object and handed to every consumer.
    """

    def __init__(self):
        self._entries: Dict[str, CacheEntry] = {}

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: str) -> bool:
        return self.has(key)

    def keys(self) -> Iterator[str]:
        return iter(list(self._entries))

    def has(self, key: str) -> bool:
        return key in self._entries

    def get(self, key: str) -> Any:
        """Return the payload for ``key``; the key must be present."""
        return self._entry(key).payload

    def refcount(self, key: str) -> int:
        """Current number of references held on ``key``."""
        return self._entry(key).refcount

    def set(self, key: str, payload: Any) -> None:
        """Insert a new payload with a refcount of one."""
        if key in self._entries:
            raise CacheKeyCollisionError(key)
        self._entries[key] = CacheEntry(key=key, payload=payload)
        logger.debug("Cache entry added", key=key)

    def add_ref(self, key: str) -> Any:
        """Take another reference on ``key`` and return its payload."""
        entry = self._entry(key)
        entry.refcount += 1
        return entry.payload

    def release(self, key: str) -> None:
        """
        Drop one reference on ``key``.

        At refcount zero the entry is removed and the payload's
        ``dispose()`` is called if it has one. Callers must not touch the
        payload after releasing.
        """
        entry = self._entry(key)
        if entry.refcount <= 0:
            raise DoubleReleaseError(key)
        entry.refcount -= 1
        if entry.refcount > 0:
            return

        del self._entries[key]
        dispose = getattr(entry.payload, "dispose", None)
        if callable(dispose):
            dispose()
        logger.debug("Cache entry evicted", key=key)

    def _entry(self, key: str) -> CacheEntry:
        try:
            return self._entries[key]
        except KeyError:
            raise CacheKeyNotFoundError(key) from None


def heightmap_key(source: str) -> str:
    """Cache key for the raw pixels of one heightmap source."""
    return HEIGHTMAP_KEY_PREFIX + source


def geometry_key(
    sources: Sequence[str],
    max_height: float,
    geometry_style: Any,
    texture_size: Optional[Tuple[int, int]] = None,
) -> str:
    """
    Cache key for a built geometry.

    Every input that changes the generated buffers is part of the key and
    nothing else is, so equal configurations share one geometry. Fields are
    JSON encoded to keep arbitrary source strings from colliding.

    Args:
        sources: Heightmap sources for slots 0-3, empty string when unused
        max_height: Depth scale
        geometry_style: GeometryStyle or its string value
        texture_size: Texture (width, height) used for inset UVs, or None
            when the style does not depend on it
    """
    sources = list(sources) + [""] * (4 - len(sources))
    fields = {
        "heightmaps": [source or "" for source in sources[:4]],
        "max_height": float(max_height),
        "geometry_style": str(getattr(geometry_style, "value", geometry_style)),
        "texture_size": list(texture_size) if texture_size is not None else None,
    }
    return GEOMETRY_KEY_PREFIX + json.dumps(fields, sort_keys=True, separators=(",", ":"))
