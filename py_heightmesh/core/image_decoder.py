"""
Image decoding collaborators.

Decoders turn a source path into a PixelBuffer and report back through
callbacks: ``decode(source, on_done, on_error)`` returns immediately or
after invoking a callback, never with a result.
"""

import asyncio
from concurrent.futures import Executor, ThreadPoolExecutor
from typing import Callable, Optional

import numpy as np
import structlog
from PIL import Image, UnidentifiedImageError

from .errors import DecodeError
from .pixel_sampler import PixelBuffer

logger = structlog.get_logger()

DoneCallback = Callable[[PixelBuffer], None]
ErrorCallback = Callable[[DecodeError], None]


def decode_image(source: str, max_size: Optional[int] = None) -> PixelBuffer:
    """
    Decode an image file into RGBA8 pixels.

    Args:
        source: Path of the image file
        max_size: Optional limit on width and height

    Returns:
        PixelBuffer with the image converted to RGBA

    Raises:
        DecodeError: If the file is missing, unreadable or too large
    """
    try:
        with Image.open(source) as image:
            if max_size is not None and max(image.size) > max_size:
                raise DecodeError(
                    source, f"{image.size[0]}x{image.size[1]} exceeds limit of {max_size}"
                )
            pixels = np.asarray(image.convert("RGBA"), dtype=np.uint8)
    except DecodeError:
        raise
    except (OSError, UnidentifiedImageError, ValueError) as e:
        raise DecodeError(source, str(e)) from e

    return PixelBuffer.from_array(pixels)


class SynchronousImageDecoder:
    """Decodes on the calling thread and invokes the callback before returning."""

    def __init__(self, max_size: Optional[int] = None):
        self.max_size = max_size

    def decode(self, source: str, on_done: DoneCallback, on_error: ErrorCallback) -> None:
        logger.debug("Decoding heightmap", source=source)
        try:
            buffer = decode_image(source, self.max_size)
        except DecodeError as e:
            logger.warning("Heightmap decode failed", source=source, error=e.reason)
            on_error(e)
            return
        on_done(buffer)


class AsyncioImageDecoder:
    """
    Decodes on a thread pool and delivers callbacks on the event loop thread.

    Must be used from code running inside the event loop.
    """

    def __init__(
        self,
        loop: Optional[asyncio.AbstractEventLoop] = None,
        executor: Optional[Executor] = None,
        max_workers: int = 4,
        max_size: Optional[int] = None,
    ):
        self._loop = loop
        self._owns_executor = executor is None
        self._executor = executor or ThreadPoolExecutor(
            max_workers=max_workers, thread_name_prefix="heightmap-decode"
        )
        self.max_size = max_size

    def decode(self, source: str, on_done: DoneCallback, on_error: ErrorCallback) -> None:
        loop = self._loop or asyncio.get_running_loop()
        logger.debug("Decoding heightmap", source=source)
        future = loop.run_in_executor(self._executor, decode_image, source, self.max_size)
        future.add_done_callback(
            lambda finished: self._deliver(source, finished, on_done, on_error)
        )

    def _deliver(self, source: str, future: asyncio.Future,
                 on_done: DoneCallback, on_error: ErrorCallback) -> None:
        if future.cancelled():
            on_error(DecodeError(source, "decode cancelled"))
            return
        error = future.exception()
        if error is None:
            on_done(future.result())
            return
        if not isinstance(error, DecodeError):
            error = DecodeError(source, str(error))
        logger.warning("Heightmap decode failed", source=source, error=error.reason)
        on_error(error)

    def close(self) -> None:
        """Shut down the executor if this decoder created it."""
        if self._owns_executor:
            self._executor.shutdown(wait=False)
