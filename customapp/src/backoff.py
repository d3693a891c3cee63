from __future__ import annotations

import random
import threading
from collections.abc import Hashable


class ExponentialBackoff:
    """Per-key exponential backoff with a ceiling and random jitter.

    The n-th consecutive failure of a key waits ``base * 2**(n-1)`` seconds,
    capped at ``cap``.  A ``jitter`` fraction spreads the delay by up to
    +/- that share so many keys failing together do not retry in lockstep.
    State is in memory only; a restart forgets it, and the informer resync
    bounds what that costs.
    """

    def __init__(self, base: float = 1.0, cap: float = 300.0, jitter: float = 0.1) -> None:
        if base <= 0:
            raise ValueError("base must be > 0")
        if cap < base:
            raise ValueError("cap must be >= base")
        if not 0 <= jitter < 1:
            raise ValueError("jitter must be in [0, 1)")
        self.base = base
        self.cap = cap
        self.jitter = jitter
        self._failures: dict[Hashable, int] = {}
        self._lock = threading.Lock()

    def when(self, key: Hashable) -> float:
        """Record a failure for *key* and return the delay before the next attempt."""
        with self._lock:
            failures = self._failures.get(key, 0)
            self._failures[key] = failures + 1

        # base * 2**n overflows a float long before n reaches this bound.
        if failures >= 64:
            delay = self.cap
        else:
            delay = min(self.cap, self.base * (2**failures))
        if self.jitter:
            delay *= 1 + self.jitter * (2 * random.random() - 1)  # noqa: S311
        return max(0.0, min(self.cap, delay))

    def failures(self, key: Hashable) -> int:
        with self._lock:
            return self._failures.get(key, 0)

    def forget(self, key: Hashable) -> None:
        """Reset *key* after a successful attempt."""
        with self._lock:
            self._failures.pop(key, None)
