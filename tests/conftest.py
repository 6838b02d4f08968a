"""Shared test helpers."""

from typing import Dict, List, Optional

import numpy as np
import pytest
from PIL import Image

from py_heightmesh.core.content_cache import ContentCache
from py_heightmesh.core.errors import DecodeError
from py_heightmesh.core.pixel_sampler import PixelBuffer


def make_buffer(levels) -> PixelBuffer:
    """Gray heightmap from a 2D list of 0-255 levels."""
    gray = np.asarray(levels, dtype=np.uint8)
    rgb = np.repeat(gray[:, :, None], 3, axis=2)
    return PixelBuffer.from_array(rgb)


def flat_buffer(width: int, height: int, level: int = 128) -> PixelBuffer:
    return make_buffer(np.full((height, width), level))


def write_png(path, levels) -> str:
    """Write a gray PNG and return its path as a string."""
    Image.fromarray(np.asarray(levels, dtype=np.uint8)).save(path)
    return str(path)


class FakeDecoder:
    """
    Decoder that completes only when the test says so.

    Requests are queued by ``decode`` and delivered by ``finish``; sources
    missing from ``buffers`` fail with DecodeError. With ``immediate=True``
    every request completes inside ``decode``.
    """

    def __init__(self, buffers: Optional[Dict[str, PixelBuffer]] = None, immediate: bool = False):
        self.buffers = dict(buffers or {})
        self.immediate = immediate
        self.calls: List[str] = []
        self.pending: List[tuple] = []

    def decode(self, source, on_done, on_error):
        self.calls.append(source)
        self.pending.append((source, on_done, on_error))
        if self.immediate:
            self.finish(source)

    def finish(self, source: Optional[str] = None) -> int:
        """Complete the pending requests for ``source`` (all when None)."""
        ready = [p for p in self.pending if source is None or p[0] == source]
        self.pending = [p for p in self.pending if p not in ready]
        for requested, on_done, on_error in ready:
            if requested in self.buffers:
                on_done(self.buffers[requested])
            else:
                on_error(DecodeError(requested, "no such file"))
        return len(ready)


@pytest.fixture
def cache():
    return ContentCache()
