# FILE: atg/ratelimit.py
import threading
import time
from typing import Any, Callable, Dict, Tuple


class RateLimiter:
    def __init__(
        self,
        capacity: float,
        refill_per_s: float,
        *,
        max_keys: int = 100_000,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.capacity = float(capacity)
        self.refill = float(refill_per_s)
        self.max_keys = int(max_keys)
        self._clock = clock
        self._buckets: Dict[Any, Tuple[float, float]] = {}
        self._lock = threading.Lock()

    def consume(self, key: Any, cost: float = 1.0) -> bool:
        now = self._clock()
        with self._lock:
            if key not in self._buckets and len(self._buckets) >= self.max_keys:
                self._evict_full(now)
            tokens, ts = self._buckets.get(key, (self.capacity, now))
            tokens = min(self.capacity, tokens + (now - ts) * self.refill)
            if tokens >= cost:
                tokens -= cost
                ok = True
            else:
                ok = False
            self._buckets[key] = (tokens, now)
            return ok

    def _evict_full(self, now: float) -> None:
        # Buckets that have refilled completely carry no state worth keeping.
        for k, (tokens, ts) in list(self._buckets.items()):
            if tokens + (now - ts) * self.refill >= self.capacity:
                self._buckets.pop(k, None)
        while len(self._buckets) >= self.max_keys:
            self._buckets.pop(next(iter(self._buckets)), None)
