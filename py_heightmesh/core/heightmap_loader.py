"""
Heightmap loading with shared, de-duplicated decodes.

Every entity owns a HeightmapLoader with four slots. Decoded pixels live
in the shared ContentCache under ``heightmap_key(source)``. While a decode
is in flight the cache holds a pending HeightmapEntry; other loaders asking
for the same source register a notifier on it instead of decoding again.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable, List, Optional, Sequence

import structlog

from .content_cache import ContentCache, heightmap_key
from .errors import DecodeError, DimensionMismatchError, PreconditionError
from .geometry import MORPH_TARGET_COUNT
from .pixel_sampler import PixelBuffer

logger = structlog.get_logger()

SlotCallback = Callable[[int, Optional[DecodeError]], None]


def normalize_source(source: str) -> str:
    """Make a source absolute so equivalent paths share one cache key."""
    if not source or "://" in source:
        return source
    return str(Path(source).expanduser().resolve())


@dataclass
class HeightmapEntry:
    """
    Cache payload for one heightmap source.

    Starts pending and is completed exactly once, either with pixels or
    with the decode error. Completion fires every notifier once and clears
    the list.
    """

    source: str
    buffer: Optional[PixelBuffer] = None
    error: Optional[DecodeError] = None
    notifiers: List[Callable[["HeightmapEntry"], None]] = field(default_factory=list)

    @property
    def loaded(self) -> bool:
        return self.buffer is not None

    @property
    def pending(self) -> bool:
        return self.buffer is None and self.error is None

    def resolve(self, buffer: PixelBuffer) -> None:
        self._complete(buffer=buffer)

    def reject(self, error: DecodeError) -> None:
        self._complete(error=error)

    def _complete(self, buffer: Optional[PixelBuffer] = None,
                  error: Optional[DecodeError] = None) -> None:
        if not self.pending:
            raise PreconditionError(f"Heightmap entry for {self.source!r} already completed")
        self.buffer = buffer
        self.error = error
        notifiers, self.notifiers = self.notifiers, []
        # Every waiter is notified even if an earlier one raised
        first_error = None
        for notify in notifiers:
            try:
                notify(self)
            except Exception as e:
                if first_error is None:
                    first_error = e
                else:
                    logger.error("Heightmap notifier failed", source=self.source, error=str(e))
        if first_error is not None:
            raise first_error


@dataclass
class HeightmapSlot:
    """One of the four heightmaps of an entity."""

    source: str = ""
    buffer: Optional[PixelBuffer] = None
    cache_key: str = ""

    @property
    def populated(self) -> bool:
        return self.buffer is not None


class HeightmapLoader:
    """
    Loads up to four heightmaps for one entity.

    Slot 0 is the primary heightmap, slots 1-3 are morph targets. The loader
    holds one cache reference per acquired slot and gives it back in
    ``free_slot``.
    """

    def __init__(self, cache: ContentCache, decoder):
        self.cache = cache
        self.decoder = decoder
        self._slots = [HeightmapSlot() for _ in range(MORPH_TARGET_COUNT)]
        # Bumped whenever a slot is freed or reloaded; stale completions are ignored
        self._generations = [0] * MORPH_TARGET_COUNT

    @property
    def slots(self) -> tuple:
        return tuple(self._slots)

    @property
    def buffers(self) -> List[Optional[PixelBuffer]]:
        return [slot.buffer for slot in self._slots]

    @property
    def size(self) -> Optional[tuple]:
        """(width, height) shared by the populated slots, None if none is loaded."""
        for slot in self._slots:
            if slot.populated:
                return slot.buffer.size
        return None

    def populated_count(self) -> int:
        return sum(1 for slot in self._slots if slot.populated)

    def slot(self, index: int) -> HeightmapSlot:
        self._check_index(index)
        return self._slots[index]

    def _check_index(self, index: int) -> None:
        if not isinstance(index, int) or not 0 <= index < MORPH_TARGET_COUNT:
            raise PreconditionError(
                f"index must be between 0 and {MORPH_TARGET_COUNT - 1}, got {index!r}"
            )

    def _detach_slot(self, index: int) -> str:
        """Clear a slot without releasing it; returns the key still held."""
        self._generations[index] += 1
        key = self._slots[index].cache_key
        self._slots[index] = HeightmapSlot()
        return key

    def free_slot(self, index: int) -> None:
        """Release the slot's cache reference and clear it. No-op on empty slots."""
        self._check_index(index)
        key = self._detach_slot(index)
        if key:
            self.cache.release(key)

    def free_all(self) -> None:
        for index in range(MORPH_TARGET_COUNT):
            self.free_slot(index)

    def load_slot(self, source: str, index: int, callback: SlotCallback) -> bool:
        """
        Load one heightmap into a slot.

        The callback receives ``(index, None)`` once the pixels are available
        or ``(index, error)`` if decoding failed, in which case the slot is
        left empty. It may run before this method returns when the pixels
        are already cached.

        Args:
            source: Heightmap path; an empty source leaves the slot untouched
            index: Slot index 0-3
            callback: Completion callback

        Returns:
            True if a load was requested, False for an empty source
        """
        self._check_index(index)
        if callback is None or not callable(callback):
            raise PreconditionError("callback must be a function")
        if not source:
            return False

        self.free_slot(index)
        source = normalize_source(source)
        key = heightmap_key(source)
        generation = self._generations[index]
        self._slots[index] = HeightmapSlot(source=source, cache_key=key)

        def on_entry_complete(entry: HeightmapEntry) -> None:
            self._on_entry_complete(index, generation, entry, callback)

        if self.cache.has(key):
            entry = self.cache.get(key)
            if entry.error is not None:
                self._slots[index] = HeightmapSlot()
                callback(index, entry.error)
                return True

            self.cache.add_ref(key)
            if entry.loaded:
                logger.info("Using cached heightmap", index=index, source=source)
                self._slots[index].buffer = entry.buffer
                callback(index, None)
            else:
                logger.debug("Waiting for pending heightmap", index=index, source=source)
                entry.notifiers.append(on_entry_complete)
            return True

        entry = HeightmapEntry(source=source)
        entry.notifiers.append(on_entry_complete)
        self.cache.set(key, entry)
        self.decoder.decode(source, entry.resolve, entry.reject)
        return True

    def _on_entry_complete(self, index: int, generation: int,
                           entry: HeightmapEntry, callback: SlotCallback) -> None:
        if self._generations[index] != generation:
            # Slot was freed or reloaded while the decode ran
            return

        slot = self._slots[index]
        if entry.error is not None:
            self.cache.release(slot.cache_key)
            self._slots[index] = HeightmapSlot()
            callback(index, entry.error)
            return

        slot.buffer = entry.buffer
        callback(index, None)

    def check_dimensions(self, index: int) -> None:
        """Raise DimensionMismatchError if slot ``index`` differs from any other populated slot."""
        slot = self.slot(index)
        if not slot.populated:
            return
        for other_index, other in enumerate(self._slots):
            if other_index == index or not other.populated:
                continue
            if other.buffer.size != slot.buffer.size:
                raise DimensionMismatchError(index, other.buffer.size, slot.buffer.size)

    def load_all(
        self,
        sources: Sequence[str],
        on_complete: Callable[[], None],
        on_error: Optional[Callable[[Exception], None]] = None,
    ) -> int:
        """
        Load every slot and call ``on_complete`` once all requested loads finished.

        Slots with an empty source are freed. Sizes are checked as each
        heightmap arrives; a mismatch is reported through ``on_error`` (or
        raised when there is none) and the batch never completes. Decode
        failures count as finished loads and are reported through
        ``on_error`` when given.

        Args:
            sources: Up to four heightmap sources
            on_complete: Called once when the batch is done
            on_error: Optional error callback

        Returns:
            Number of loads requested
        """
        if on_complete is None or not callable(on_complete):
            raise PreconditionError("on_complete must be a function")
        if len(sources) > MORPH_TARGET_COUNT:
            raise PreconditionError(
                f"At most {MORPH_TARGET_COUNT} heightmaps are supported, got {len(sources)}"
            )
        sources = list(sources) + [""] * (MORPH_TARGET_COUNT - len(sources))
        requested = sum(1 for source in sources if source)
        state = {"finished": 0, "aborted": False}

        def on_slot(index: int, error: Optional[DecodeError]) -> None:
            if state["aborted"]:
                return

            if error is None:
                try:
                    self.check_dimensions(index)
                except DimensionMismatchError as e:
                    state["aborted"] = True
                    logger.error("Heightmap size mismatch", index=index, error=str(e))
                    if on_error is None:
                        raise
                    on_error(e)
                    return
            elif on_error is not None:
                on_error(error)
            else:
                logger.warning("Heightmap slot left empty", index=index, error=str(error))

            state["finished"] += 1
            if state["finished"] == requested:
                on_complete()

        # Old references are released after the new loads acquired theirs
        held_keys = [self._detach_slot(index) for index in range(MORPH_TARGET_COUNT)]
        try:
            if requested == 0:
                on_complete()
                return 0

            for index, source in enumerate(sources):
                if source:
                    self.load_slot(source, index, on_slot)
            return requested
        finally:
            for key in held_keys:
                if key:
                    self.cache.release(key)
