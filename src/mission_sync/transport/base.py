"""Push-stream connection states and reconnect backoff policy"""

import enum
import random
from typing import Optional

from ..utils.config import StreamConfig


class StreamState(enum.Enum):
    """Connection state of the push subscription"""
    DISCONNECTED = "disconnected"
    CONNECTING = "connecting"
    CONNECTED = "connected"
    RECONNECTING = "reconnecting"
    CLOSED = "closed"


class ReconnectBackoff:
    """Exponential reconnect delay with a cap and per-client jitter.

    The base delay grows by ``multiplier`` per consecutive failure up to
    ``maximum``. Jitter is a scale factor in ``[1 - jitter, 1]`` drawn once per
    connection cycle, so the delays seen by one client never decrease while
    several clients that failed together still spread their reconnects.
    """

    def __init__(self, initial: float = 1.0, maximum: float = 30.0,
                 multiplier: float = 2.0, jitter: float = 0.3,
                 rng: Optional[random.Random] = None):
        if initial <= 0 or maximum < initial:
            raise ValueError("initial must be > 0 and <= maximum")
        if not 0.0 <= jitter < 1.0:
            raise ValueError("jitter must be within [0, 1)")
        self.initial = initial
        self.maximum = maximum
        self.multiplier = multiplier
        self.jitter = jitter
        self.rng = rng or random.Random()
        self.attempts = 0
        self.last_delay: Optional[float] = None
        self._scale = self._draw_scale()

    @classmethod
    def from_config(cls, config: StreamConfig, rng: Optional[random.Random] = None) -> "ReconnectBackoff":
        return cls(
            initial=config.backoff_initial,
            maximum=config.backoff_max,
            multiplier=config.backoff_multiplier,
            jitter=config.backoff_jitter,
            rng=rng,
        )

    def _draw_scale(self) -> float:
        return 1.0 - self.jitter * self.rng.random()

    def base_delay(self) -> float:
        """Un-jittered delay for the next attempt"""
        try:
            delay = self.initial * (self.multiplier ** self.attempts)
        except OverflowError:
            return self.maximum
        return min(delay, self.maximum)

    def next_delay(self) -> float:
        """Delay before the next reconnect; advances the attempt counter"""
        delay = self.base_delay() * self._scale
        self.attempts += 1
        self.last_delay = delay
        return delay

    def reset(self) -> None:
        """Back to the minimum after a successful connection"""
        self.attempts = 0
        self.last_delay = None
        self._scale = self._draw_scale()

    def __repr__(self) -> str:
        return (f"ReconnectBackoff(attempts={self.attempts}, "
                f"next={self.base_delay():.2f}s, max={self.maximum:.2f}s)")
