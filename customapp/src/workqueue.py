from __future__ import annotations

import heapq
import itertools
import logging
import threading
import time
from collections import deque
from collections.abc import Callable, Hashable

from customapp.src.backoff import ExponentialBackoff
from customapp.src.metrics import METRICS

LOGGER = logging.getLogger(__name__)


class WorkQueue:
    """Deduplicating, delaying, rate-limited queue of reconcile keys.

    Semantics follow the client-go workqueue the Kubernetes controllers use:

    * a key that is already pending is not queued twice, so a burst of
      change events collapses into one entry;
    * a key that is currently being processed is only marked *dirty* and is
      re-queued when the worker calls :meth:`done`, so two workers never
      process the same key at the same time and no change is lost;
    * :meth:`add_after` parks a key until its delay elapses;
      :meth:`add_rate_limited` does the same with a per-key backoff delay.

    :meth:`get` blocks until a key is ready and returns ``None`` once the
    queue has been shut down.
    """

    def __init__(
        self,
        backoff: ExponentialBackoff | None = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.backoff = backoff or ExponentialBackoff()
        self._clock = clock
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._waiting_due: dict[Hashable, float] = {}
        self._sequence = itertools.count()
        self._cond = threading.Condition()
        self._shutting_down = False
        METRICS.queue_depth.set(0)

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    @property
    def shutting_down(self) -> bool:
        with self._cond:
            return self._shutting_down

    def _publish_depth(self) -> None:
        METRICS.queue_depth.set(len(self._queue))

    def add(self, key: Hashable) -> None:
        with self._cond:
            self._add_locked(key)

    def _add_locked(self, key: Hashable) -> None:
        if self._shutting_down or key in self._dirty:
            return
        self._dirty.add(key)
        if key in self._processing:
            return
        self._queue.append(key)
        self._publish_depth()
        self._cond.notify()

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue *key* once *delay* seconds have passed.

        If the key is already parked with an earlier due time the earlier
        one wins.
        """
        if delay <= 0:
            self.add(key)
            return
        with self._cond:
            if self._shutting_down:
                return
            due_at = self._clock() + delay
            existing = self._waiting_due.get(key)
            if existing is not None and existing <= due_at:
                return
            self._waiting_due[key] = due_at
            heapq.heappush(self._waiting, (due_at, next(self._sequence), key))
            self._cond.notify()

    def add_rate_limited(self, key: Hashable) -> float:
        """Queue *key* after its backoff delay and return that delay."""
        delay = self.backoff.when(key)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        self.backoff.forget(key)

    def num_requeues(self, key: Hashable) -> int:
        return self.backoff.failures(key)

    def _promote_due_locked(self) -> float | None:
        """Move due keys into the active queue; return seconds until the next one."""
        now = self._clock()
        while self._waiting:
            due_at, _, key = self._waiting[0]
            if self._waiting_due.get(key) != due_at:
                heapq.heappop(self._waiting)
                continue
            if due_at > now:
                return due_at - now
            heapq.heappop(self._waiting)
            del self._waiting_due[key]
            self._add_locked(key)
        return None

    def get(self, timeout: float | None = None) -> Hashable | None:
        """Block until a key is ready; return ``None`` on shutdown or timeout."""
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while True:
                next_due = self._promote_due_locked()
                if self._queue:
                    key = self._queue.popleft()
                    self._processing.add(key)
                    self._dirty.discard(key)
                    self._publish_depth()
                    return key
                if self._shutting_down:
                    return None
                wait_for = next_due
                if deadline is not None:
                    remaining = deadline - self._clock()
                    if remaining <= 0:
                        return None
                    wait_for = remaining if wait_for is None else min(wait_for, remaining)
                self._cond.wait(timeout=wait_for)

    def done(self, key: Hashable) -> None:
        """Mark *key* as processed; re-queue it if it changed meanwhile."""
        with self._cond:
            self._processing.discard(key)
            if key in self._dirty and not self._shutting_down:
                self._queue.append(key)
                self._publish_depth()
                self._cond.notify()
            self._cond.notify_all()

    def is_processing(self, key: Hashable) -> bool:
        with self._cond:
            return key in self._processing

    def shut_down(self) -> None:
        """Stop handing out keys; pending and parked keys are discarded."""
        with self._cond:
            self._shutting_down = True
            dropped = len(self._queue) + len(self._waiting_due)
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._waiting_due.clear()
            self._publish_depth()
            self._cond.notify_all()
        if dropped:
            LOGGER.info("Work queue shut down; discarded %d pending key(s)", dropped)

    def shut_down_with_drain(self, timeout: float | None = None) -> bool:
        """Shut down, then wait for in-flight keys to be marked done.

        Returns ``False`` if keys were still being processed at the timeout.
        """
        self.shut_down()
        deadline = None if timeout is None else self._clock() + timeout
        with self._cond:
            while self._processing:
                if deadline is None:
                    self._cond.wait()
                    continue
                remaining = deadline - self._clock()
                if remaining <= 0:
                    return False
                self._cond.wait(timeout=remaining)
        return True
