"""
Exception types raised by the heightmap mesh engine.

Precondition, configuration and cache protocol errors indicate a bug in
the caller and abort the current operation. Decode errors are the only
recoverable kind: they are reported per heightmap slot.
"""


class HeightmeshError(Exception):
    """Base class for all engine errors."""


class PreconditionError(HeightmeshError, ValueError):
    """An argument or required state was missing or out of range."""


class ConfigurationError(HeightmeshError):
    """The combination of heightmaps and settings cannot be built."""


class DimensionMismatchError(ConfigurationError):
    """Two heightmaps of one entity have different sizes."""

    def __init__(self, index: int, expected: tuple, actual: tuple):
        self.index = index
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"All heightmaps must be the same size: slot {index} is "
            f"{actual[0]}x{actual[1]}, expected {expected[0]}x{expected[1]}"
        )


class TopologyConflictError(ConfigurationError):
    """Block geometry was requested with more than one heightmap."""

    def __init__(self, style: str, populated: int):
        self.style = style
        self.populated = populated
        super().__init__(
            f"{style} geometry does not support multiple heightmaps "
            f"({populated} populated)"
        )


class CacheProtocolError(HeightmeshError):
    """The content cache reference counting contract was violated."""

    def __init__(self, key: str, message: str):
        self.key = key
        super().__init__(f"{message}: {key!r}")


class CacheKeyNotFoundError(CacheProtocolError, KeyError):
    """get/add_ref/release on a key that is not cached."""

    def __init__(self, key: str):
        super().__init__(key, "Key not in cache")

    def __str__(self) -> str:
        return self.args[0]


class CacheKeyCollisionError(CacheProtocolError):
    """set on a key that is already cached."""

    def __init__(self, key: str):
        super().__init__(key, "Key already in cache, use add_ref")


class DoubleReleaseError(CacheProtocolError):
    """release on an entry whose refcount is already zero."""

    def __init__(self, key: str):
        super().__init__(key, "Refcount would drop below zero")


class DecodeError(HeightmeshError):
    """A heightmap or texture source could not be decoded."""

    def __init__(self, source: str, reason: str):
        self.source = source
        self.reason = reason
        super().__init__(f"Failed to decode {source!r}: {reason}")
