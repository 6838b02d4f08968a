"""Pixel buffers and depth sampling."""

from dataclasses import dataclass, field

import numpy as np

from .errors import PreconditionError

CHANNELS = 4


@dataclass(frozen=True)
class PixelBuffer:
    """Decoded RGBA8 raster, row-major, ``width * height * 4`` bytes."""

    width: int
    height: int
    data: np.ndarray = field(repr=False)

    def __post_init__(self):
        if self.width <= 0 or self.height <= 0:
            raise PreconditionError(
                f"Pixel buffer size must be positive, got {self.width}x{self.height}"
            )
        if isinstance(self.data, (bytes, bytearray, memoryview)):
            data = np.frombuffer(self.data, dtype=np.uint8).copy()
        else:
            data = np.array(self.data, dtype=np.uint8).reshape(-1)
        expected = self.width * self.height * CHANNELS
        if data.size != expected:
            raise PreconditionError(
                f"Pixel buffer of {self.width}x{self.height} needs {expected} bytes, "
                f"got {data.size}"
            )
        data.flags.writeable = False
        object.__setattr__(self, "data", data)

    @classmethod
    def from_array(cls, pixels: np.ndarray) -> "PixelBuffer":
        """Wrap an (H, W, 4) or (H, W, 3) uint8 array."""
        pixels = np.asarray(pixels, dtype=np.uint8)
        if pixels.ndim != 3 or pixels.shape[2] not in (3, 4):
            raise PreconditionError(
                f"Expected an (H, W, 3|4) array, got shape {pixels.shape}"
            )
        if pixels.shape[2] == 3:
            alpha = np.full(pixels.shape[:2] + (1,), 255, dtype=np.uint8)
            pixels = np.concatenate([pixels, alpha], axis=2)
        height, width = pixels.shape[:2]
        return cls(width=width, height=height, data=pixels)

    @property
    def size(self) -> tuple:
        return (self.width, self.height)

    def texels(self) -> np.ndarray:
        """View the bytes as an (H, W, 4) array."""
        return self.data.reshape(self.height, self.width, CHANNELS)


def get_depth(buffer: PixelBuffer, texel_index: int, max_height: float) -> float:
    """
    Depth of a single texel.

    The red, green and blue channels are averaged, normalised to 0..1 and
    scaled by ``max_height``. Alpha is ignored.

    Args:
        buffer: Decoded heightmap
        texel_index: Row-major texel index (not byte offset)
        max_height: Depth of a white texel

    Returns:
        Depth value
    """
    if buffer is None:
        raise PreconditionError("buffer must be valid")
    if not 0 <= texel_index < buffer.width * buffer.height:
        raise PreconditionError(
            f"Texel index {texel_index} outside {buffer.width}x{buffer.height} buffer"
        )
    offset = texel_index * CHANNELS
    r, g, b = (int(c) for c in buffer.data[offset:offset + 3])
    return (r + g + b) / 3.0 / 255.0 * max_height


def depth_grid(buffer: PixelBuffer, max_height: float) -> np.ndarray:
    """Vectorised ``get_depth`` for every texel, shaped (H, W)."""
    if buffer is None:
        raise PreconditionError("buffer must be valid")
    rgb = buffer.texels()[..., :3].astype(np.float64)
    return rgb.sum(axis=2) / 3.0 / 255.0 * max_height
