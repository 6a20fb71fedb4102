"""Per-address accept-rate limiting for LISTEN mode."""

from __future__ import annotations

import time
from dataclasses import dataclass


@dataclass
class _Bucket:
    allowance: float
    last_check: float


class RateLimiter:
    """Token bucket per client address.

    Each address may open ``rate`` connections per ``period`` seconds;
    the allowance refills continuously. Buckets that have refilled
    completely are dropped, since a fresh bucket behaves the same.
    """

    def __init__(self, rate: int = 10, period: float = 1.0, clock=time.monotonic) -> None:
        self.rate = rate
        self.period = period
        self._clock = clock
        self._buckets: dict[str, _Bucket] = {}
        self._last_sweep = clock()

    def __len__(self) -> int:
        """Number of addresses currently tracked."""
        return len(self._buckets)

    def _refilled(self, bucket: _Bucket, now: float) -> float:
        return bucket.allowance + (now - bucket.last_check) * self.rate / self.period

    def _sweep(self, now: float) -> None:
        if now - self._last_sweep < self.period:
            return
        self._last_sweep = now
        full = [
            address for address, bucket in self._buckets.items()
            if self._refilled(bucket, now) >= self.rate
        ]
        for address in full:
            del self._buckets[address]

    def allow(self, address: str) -> bool:
        """Spend one token for ``address``; False if none is left."""
        now = self._clock()
        self._sweep(now)
        bucket = self._buckets.get(address)
        if bucket is None:
            bucket = self._buckets[address] = _Bucket(float(self.rate), now)

        bucket.allowance = min(float(self.rate), self._refilled(bucket, now))
        bucket.last_check = now
        if bucket.allowance < 1.0:
            return False
        bucket.allowance -= 1.0
        return True

    def reset(self) -> None:
        self._buckets.clear()
