"""
Morph target weight animation.

Blends a four-component weight vector from its current value to a one-hot
target over a fixed duration. The animator keeps its own clock, advanced
by ``update(dt)``, so it never reads wall-clock time.
"""

import math
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Callable, List, Tuple

import structlog

from .errors import PreconditionError
from .geometry import MORPH_TARGET_COUNT

logger = structlog.get_logger()

Weights = Tuple[float, ...]


class MorphPhase(Enum):
    """Animator state."""

    IDLE = auto()
    MORPHING = auto()


def one_hot(index: int) -> List[float]:
    weights = [0.0] * MORPH_TARGET_COUNT
    weights[index] = 1.0
    return weights


def _default_weights() -> List[float]:
    return one_hot(0)


@dataclass
class MorphState:
    """Weights and timing of the current transition. Times are in seconds."""

    start_weights: List[float] = field(default_factory=_default_weights)
    end_weights: List[float] = field(default_factory=_default_weights)
    current_weights: List[float] = field(default_factory=_default_weights)
    start_time: float = 0.0
    duration: float = 0.0
    elapsed: float = 0.0
    is_morphing: bool = False


class MorphAnimator:
    """
    Drives the morph weights of one entity.

    Weight changes are pushed to every subscriber. ``on_begin`` and
    ``on_end`` listeners hear about animated transitions only; immediate
    transitions just push the new weights.
    """

    def __init__(self):
        self.state = MorphState()
        self._now = 0.0
        self._weight_listeners: List[Callable[[Weights], None]] = []
        self._begin_listeners: List[Callable[[], None]] = []
        self._end_listeners: List[Callable[[], None]] = []

    @property
    def now(self) -> float:
        return self._now

    @property
    def phase(self) -> MorphPhase:
        return MorphPhase.MORPHING if self.state.is_morphing else MorphPhase.IDLE

    @property
    def is_morphing(self) -> bool:
        return self.state.is_morphing

    @property
    def current_weights(self) -> Weights:
        return tuple(self.state.current_weights)

    def subscribe(self, callback: Callable[[Weights], None]) -> Callable[[Weights], None]:
        """Receive every weight update."""
        self._weight_listeners.append(callback)
        return callback

    def unsubscribe(self, callback: Callable[[Weights], None]) -> None:
        if callback in self._weight_listeners:
            self._weight_listeners.remove(callback)

    def on_begin(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._begin_listeners.append(callback)
        return callback

    def on_end(self, callback: Callable[[], None]) -> Callable[[], None]:
        self._end_listeners.append(callback)
        return callback

    def _push(self, weights: List[float]) -> None:
        snapshot = tuple(weights)
        for listener in list(self._weight_listeners):
            listener(snapshot)

    def morph_to(self, target_index: int, duration_seconds: float = 0.0) -> None:
        """
        Start a transition to morph target ``target_index``.

        A duration of zero or less switches immediately; otherwise the
        weights blend linearly from their current value.
        """
        if isinstance(target_index, bool) or not isinstance(target_index, int):
            raise PreconditionError(f"index must be an integer, got {target_index!r}")
        if not 0 <= target_index < MORPH_TARGET_COUNT:
            raise PreconditionError(
                f"index must be between 0 and {MORPH_TARGET_COUNT - 1}, got {target_index}"
            )
        if isinstance(duration_seconds, bool) or not isinstance(duration_seconds, (int, float)):
            raise PreconditionError(f"seconds must be a number, got {duration_seconds!r}")
        if not math.isfinite(duration_seconds):
            raise PreconditionError(f"seconds must be finite, got {duration_seconds}")

        target = one_hot(target_index)
        state = self.state

        if duration_seconds > 0:
            state.start_weights = list(state.current_weights)
            state.end_weights = target
            state.duration = float(duration_seconds)
            state.start_time = self._now
            state.elapsed = 0.0
            state.is_morphing = True
            logger.debug("Morph begin", target=target_index, seconds=duration_seconds)
            for listener in list(self._begin_listeners):
                listener()
            return

        state.start_weights = list(target)
        state.end_weights = list(target)
        state.current_weights = list(target)
        state.is_morphing = False
        state.duration = 0.0
        state.elapsed = 0.0
        self._push(state.current_weights)

    def set_morphing(self, morphing: bool) -> None:
        """Pause (False) or resume (True) the running transition."""
        if not isinstance(morphing, bool):
            raise PreconditionError(f"morphing must be a boolean, got {morphing!r}")

        state = self.state
        if not morphing and state.is_morphing:
            state.is_morphing = False
            state.elapsed = self._now - state.start_time
        elif morphing and not state.is_morphing and state.duration > 0:
            state.is_morphing = True
            state.start_time = self._now - state.elapsed

    def update(self, dt: float) -> None:
        """Advance the clock by ``dt`` seconds and step the transition."""
        if not math.isfinite(dt) or dt < 0:
            raise PreconditionError(f"dt must be finite and >= 0, got {dt}")
        self._now += dt
        if self.state.is_morphing:
            self._tick()

    def _tick(self) -> None:
        state = self.state
        t = (self._now - state.start_time) / state.duration

        if t > 1:
            state.is_morphing = False
            state.duration = 0.0
            state.elapsed = 0.0
            state.current_weights = list(state.end_weights)
            state.start_weights = list(state.current_weights)
            self._push(state.current_weights)
            logger.debug("Morph end")
            for listener in list(self._end_listeners):
                listener()
            return

        inv_t = 1.0 - t
        state.current_weights = [
            start * inv_t + end * t
            for start, end in zip(state.start_weights, state.end_weights)
        ]
        self._push(state.current_weights)
