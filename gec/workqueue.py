from __future__ import annotations

import heapq
import itertools
import time
from collections import deque
from threading import Condition, Thread
from typing import Callable, Hashable

from .ratelimit import RateLimiter


class RateLimitingQueue:
    """Work queue with per-key dedup, delayed adds and rate-limited requeues.

    A key is handed to at most one worker at a time: re-adding a key that is
    being processed marks it dirty, and it is queued again on done(). Delayed
    adds are timer entries served by a single background thread, so no worker
    ever sleeps waiting for a retry.
    """

    def __init__(self, rate_limiter: RateLimiter, name: str = "queue", monotonic: Callable[[], float] = time.monotonic):
        self.name = name
        self.rate_limiter = rate_limiter
        self._monotonic = monotonic
        self._cond = Condition()
        self._queue: deque[Hashable] = deque()
        self._dirty: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._shutting_down = False

        self._seq = itertools.count()
        self._waiting: list[tuple[float, int, Hashable]] = []
        self._ready_at: dict[Hashable, float] = {}  # item -> earliest pending ready time

        self._timer = Thread(target=self._wait_loop, name=f"{name}-delay", daemon=True)
        self._timer.start()

    # -- basic queue ----------------------------------------------------------

    def _add_locked(self, item: Hashable) -> None:
        if self._shutting_down or item in self._dirty:
            return
        self._dirty.add(item)
        if item in self._processing:
            return
        self._queue.append(item)
        self._cond.notify_all()

    def add(self, item: Hashable) -> None:
        with self._cond:
            self._add_locked(item)

    def get(self, timeout: float | None = None) -> tuple[Hashable | None, bool]:
        """Block for the next item. Returns (item, shutting_down); item is None on timeout or shutdown."""
        with self._cond:
            deadline = None if timeout is None else self._monotonic() + timeout
            while not self._queue and not self._shutting_down:
                remaining = None if deadline is None else deadline - self._monotonic()
                if remaining is not None and remaining <= 0:
                    return None, False
                self._cond.wait(remaining)
            if self._shutting_down:
                # Queued work was dropped; the informer resync delivers it again.
                return None, True
            item = self._queue.popleft()
            self._processing.add(item)
            self._dirty.discard(item)
            return item, False

    def done(self, item: Hashable) -> None:
        with self._cond:
            self._processing.discard(item)
            if item in self._dirty and not self._shutting_down:
                self._queue.append(item)
                self._cond.notify_all()

    def shutdown(self) -> None:
        with self._cond:
            self._shutting_down = True
            self._queue.clear()
            self._dirty.clear()
            self._waiting.clear()
            self._ready_at.clear()
            self._cond.notify_all()

    def __len__(self) -> int:
        with self._cond:
            return len(self._queue)

    def pending_delayed(self) -> int:
        with self._cond:
            return len(self._ready_at)

    # -- delaying -------------------------------------------------------------

    def add_after(self, item: Hashable, delay_s: float) -> None:
        with self._cond:
            if self._shutting_down:
                return
            if delay_s <= 0:
                self._add_locked(item)
                return
            ready_at = self._monotonic() + delay_s
            existing = self._ready_at.get(item)
            if existing is not None and existing <= ready_at:
                return
            self._ready_at[item] = ready_at
            heapq.heappush(self._waiting, (ready_at, next(self._seq), item))
            self._cond.notify_all()

    def _wait_loop(self) -> None:
        with self._cond:
            while not self._shutting_down:
                now = self._monotonic()
                while self._waiting and self._waiting[0][0] <= now:
                    ready_at, _, item = heapq.heappop(self._waiting)
                    # Entries superseded by an earlier add_after are skipped.
                    if self._ready_at.get(item) == ready_at:
                        del self._ready_at[item]
                        self._add_locked(item)
                timeout = self._waiting[0][0] - now if self._waiting else None
                self._cond.wait(timeout)

    # -- rate limiting --------------------------------------------------------

    def add_rate_limited(self, item: Hashable) -> None:
        self.add_after(item, self.rate_limiter.when(item))

    def forget(self, item: Hashable) -> None:
        self.rate_limiter.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return self.rate_limiter.num_requeues(item)
