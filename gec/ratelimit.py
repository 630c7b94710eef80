from __future__ import annotations

import time
from dataclasses import dataclass
from threading import Lock
from typing import Callable, Hashable, Protocol


@dataclass(frozen=True)
class RateLimiterOptions:
    base_delay_s: float = 0.005
    max_delay_s: float = 1000.0
    factor: float = 2.0
    qps: float = 10.0
    bucket_size: int = 100

    @classmethod
    def from_settings(cls, s) -> "RateLimiterOptions":
        return cls(
            base_delay_s=s.rate_limiter_base_delay_s,
            max_delay_s=s.rate_limiter_max_delay_s,
            factor=s.rate_limiter_factor,
            qps=s.rate_limiter_qps,
            bucket_size=s.rate_limiter_bucket_size,
        )


class RateLimiter(Protocol):
    def when(self, item: Hashable) -> float: ...

    def forget(self, item: Hashable) -> None: ...

    def num_requeues(self, item: Hashable) -> int: ...


class ItemExponentialFailureRateLimiter:
    """base * factor**failures per item, capped at max_delay."""

    def __init__(self, base_delay_s: float, max_delay_s: float, factor: float = 2.0):
        self.base_delay_s = max(0.0, float(base_delay_s))
        self.max_delay_s = max(self.base_delay_s, float(max_delay_s))
        self.factor = max(1.0, float(factor))
        self._lock = Lock()
        self._failures: dict[Hashable, int] = {}

    def when(self, item: Hashable) -> float:
        with self._lock:
            n = self._failures.get(item, 0)
            self._failures[item] = n + 1
        try:
            delay = self.base_delay_s * (self.factor**n)
        except OverflowError:
            return self.max_delay_s
        return min(delay, self.max_delay_s)

    def forget(self, item: Hashable) -> None:
        with self._lock:
            self._failures.pop(item, None)

    def num_requeues(self, item: Hashable) -> int:
        with self._lock:
            return self._failures.get(item, 0)


class BucketRateLimiter:
    """Overall token bucket: qps refill, burst capacity. Returns the wait for the next token."""

    def __init__(self, qps: float, burst: int, monotonic: Callable[[], float] = time.monotonic):
        self.qps = max(0.001, float(qps))
        self.burst = max(1, int(burst))
        self._monotonic = monotonic
        self._lock = Lock()
        self._tokens = float(self.burst)
        self._last = monotonic()

    def when(self, item: Hashable) -> float:
        with self._lock:
            now = self._monotonic()
            self._tokens = min(float(self.burst), self._tokens + (now - self._last) * self.qps)
            self._last = now
            self._tokens -= 1.0
            if self._tokens >= 0:
                return 0.0
            return -self._tokens / self.qps

    def forget(self, item: Hashable) -> None:
        return None

    def num_requeues(self, item: Hashable) -> int:
        return 0


class MaxOfRateLimiter:
    def __init__(self, *limiters: RateLimiter):
        self.limiters = limiters

    def when(self, item: Hashable) -> float:
        return max((lim.when(item) for lim in self.limiters), default=0.0)

    def forget(self, item: Hashable) -> None:
        for lim in self.limiters:
            lim.forget(item)

    def num_requeues(self, item: Hashable) -> int:
        return max((lim.num_requeues(item) for lim in self.limiters), default=0)


def default_controller_rate_limiter(opts: RateLimiterOptions) -> RateLimiter:
    return MaxOfRateLimiter(
        ItemExponentialFailureRateLimiter(opts.base_delay_s, opts.max_delay_s, opts.factor),
        BucketRateLimiter(opts.qps, opts.bucket_size),
    )
