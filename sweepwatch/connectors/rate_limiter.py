"""Outbound request pacing for the ledger RPC and the price API.

Each endpoint gets a token bucket. A blocking caller reserves its token up
front (the balance may go negative) and sleeps exactly as long as its
place in line requires, so concurrent callers are served in arrival order
instead of racing each other on every refill.

The ledger adapter calls from worker threads (``acquire_sync``); the
price source calls from the event loop (``acquire``). Every delay is
reported to ``metrics`` under the endpoint tag.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from threading import Lock

from sweepwatch.observability.metrics import metrics


@dataclass
class BucketConfig:
    tokens_per_second: float
    max_burst: int
    name: str = ""


DEFAULT_LIMITS: dict[str, BucketConfig] = {
    # overridden from LedgerConfig when the web3 adapter starts
    "ledger": BucketConfig(tokens_per_second=10.0, max_burst=20, name="Ledger RPC"),
    # public CoinGecko tier allows roughly 30 calls a minute
    "coingecko": BucketConfig(tokens_per_second=0.5, max_burst=3, name="CoinGecko"),
}


class TokenBucket:
    """Thread-safe token bucket with up-front reservations."""

    def __init__(self, endpoint: str, config: BucketConfig):
        self.endpoint = endpoint
        self._config = config
        self._tokens: float = float(config.max_burst)
        self._stamp: float = time.monotonic()
        self._lock = Lock()
        self._granted = 0
        self._delayed = 0
        self._delay_total = 0.0

    def _refill(self, now: float) -> None:
        gained = (now - self._stamp) * self._config.tokens_per_second
        self._tokens = min(float(self._config.max_burst), self._tokens + gained)
        self._stamp = now

    def try_acquire(self) -> bool:
        """Take a token only if one is available right now."""
        with self._lock:
            self._refill(time.monotonic())
            if self._tokens < 1.0:
                return False
            self._tokens -= 1.0
            self._granted += 1
            return True

    def reserve(self) -> float:
        """Claim the next token and return how long to wait before using it."""
        with self._lock:
            self._refill(time.monotonic())
            self._tokens -= 1.0
            self._granted += 1
            if self._tokens >= 0.0:
                return 0.0
            delay = -self._tokens / self._config.tokens_per_second
            self._delayed += 1
            self._delay_total += delay
        metrics.incr("rate_limit.delayed", endpoint=self.endpoint)
        metrics.histogram("rate_limit.delay_ms", delay * 1000.0, endpoint=self.endpoint)
        return delay

    def wait_time(self) -> float:
        """Seconds until a token would be free without a reservation."""
        with self._lock:
            self._refill(time.monotonic())
            if self._tokens >= 1.0:
                return 0.0
            return (1.0 - self._tokens) / self._config.tokens_per_second

    async def acquire(self) -> None:
        delay = self.reserve()
        if delay:
            await asyncio.sleep(delay)

    def acquire_sync(self) -> None:
        delay = self.reserve()
        if delay:
            time.sleep(delay)

    @property
    def stats(self) -> dict[str, float]:
        with self._lock:
            return {
                "granted": self._granted,
                "delayed": self._delayed,
                "delay_secs": round(self._delay_total, 3),
            }


class RateLimiterRegistry:
    """Buckets by endpoint, created from ``DEFAULT_LIMITS`` on first use."""

    def __init__(self) -> None:
        self._buckets: dict[str, TokenBucket] = {}
        self._lock = Lock()

    def get(self, endpoint: str) -> TokenBucket:
        with self._lock:
            bucket = self._buckets.get(endpoint)
            if bucket is None:
                config = DEFAULT_LIMITS.get(
                    endpoint, BucketConfig(tokens_per_second=5.0, max_burst=10, name=endpoint),
                )
                bucket = self._buckets[endpoint] = TokenBucket(endpoint, config)
            return bucket

    def configure(self, endpoint: str, tokens_per_second: float, max_burst: int) -> None:
        if tokens_per_second <= 0 or max_burst < 1:
            raise ValueError(f"invalid rate limit for {endpoint}: {tokens_per_second}/s burst {max_burst}")
        with self._lock:
            self._buckets[endpoint] = TokenBucket(
                endpoint, BucketConfig(tokens_per_second, max_burst, name=endpoint),
            )

    def stats(self) -> dict[str, dict[str, float]]:
        with self._lock:
            buckets = list(self._buckets.items())
        return {name: bucket.stats for name, bucket in buckets}


rate_limiter = RateLimiterRegistry()
