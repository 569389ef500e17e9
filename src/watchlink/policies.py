"""Reconnection backoff."""

from __future__ import annotations

import random


class ReconnectPolicy:
    """Jittered exponential backoff for a reconnect loop.

    Attempts are unbounded; the loop ends when it succeeds or its owner
    cancels it. The delay grows by ``backoff`` per attempt up to
    ``max_delay`` and is spread by +/- ``jitter_ratio``.
    """

    def __init__(
        self,
        *,
        initial_delay: float = 1.0,
        max_delay: float = 30.0,
        backoff: float = 2.0,
        jitter_ratio: float = 0.1,
        random_source: random.Random | None = None,
    ):
        if initial_delay <= 0:
            raise ValueError(f"initial_delay must be > 0, got {initial_delay}")
        if max_delay < initial_delay:
            raise ValueError(
                f"max_delay ({max_delay}) must be >= initial_delay ({initial_delay})"
            )
        if backoff <= 1.0:
            raise ValueError(f"backoff must be > 1.0, got {backoff}")
        if not 0.0 <= jitter_ratio <= 1.0:
            raise ValueError(f"jitter_ratio must be in [0.0, 1.0], got {jitter_ratio}")
        self.initial_delay = initial_delay
        self.max_delay = max_delay
        self.backoff = backoff
        self.jitter_ratio = jitter_ratio
        self._random = random_source or random.Random()
        self._attempts = 0

    @property
    def attempt_count(self) -> int:
        """Attempts handed out since the last reset()."""
        return self._attempts

    def reset(self) -> None:
        self._attempts = 0

    def delay_for(self, attempt: int) -> float:
        """Jittered delay before the given zero-based attempt."""
        # Exponent capped so a long outage cannot overflow the float
        base = min(self.initial_delay * self.backoff ** min(attempt, 64), self.max_delay)
        spread = base * self.jitter_ratio * self._random.uniform(-1.0, 1.0)
        return max(0.001, base + spread)

    def next_delay(self) -> float:
        """Delay before the next attempt; advances the attempt counter."""
        delay = self.delay_for(self._attempts)
        self._attempts += 1
        return delay
