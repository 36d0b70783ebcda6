"""
Admission and quota controls: per-address connection caps and the token
buckets used for per-connection event rates and the HTTP routes.
"""

import logging
from typing import Callable, Dict

from liveroom.exceptions import TooManyConnections
from liveroom.utils.helpers import monotonic_ms

logger = logging.getLogger(__name__)


class TokenBucket:
    """Refills at ``rate`` tokens per second up to ``burst``."""

    def __init__(self, rate: float, burst: int, clock: Callable[[], float] = monotonic_ms):
        self.rate = float(rate)
        self.burst = float(burst)
        self._clock = clock
        self._tokens = float(burst)
        self._updated = clock()

    def _refill(self) -> None:
        now = self._clock()
        elapsed = max(0.0, now - self._updated) / 1000.0
        self._tokens = min(self.burst, self._tokens + elapsed * self.rate)
        self._updated = now

    @property
    def tokens(self) -> float:
        self._refill()
        return self._tokens

    def consume(self, amount: float = 1) -> bool:
        self._refill()
        if self._tokens >= amount:
            self._tokens -= amount
            return True
        return False

    def penalize(self, amount: float) -> None:
        """Drain tokens without a success check; the balance may go negative."""
        self._refill()
        self._tokens -= amount


class AdmissionController:
    """Counts live connections per source address."""

    def __init__(self, max_connections_per_address: int):
        self.max_connections_per_address = max_connections_per_address
        self._connections: Dict[str, int] = {}

    def admit(self, address: str) -> None:
        count = self._connections.get(address, 0)
        if count >= self.max_connections_per_address:
            logger.warning("Rejecting connection from %s: %d already open", address, count)
            raise TooManyConnections()
        self._connections[address] = count + 1

    def release(self, address: str) -> None:
        count = self._connections.get(address, 0) - 1
        if count > 0:
            self._connections[address] = count
        else:
            self._connections.pop(address, None)

    def connections(self, address: str) -> int:
        return self._connections.get(address, 0)

    @property
    def total(self) -> int:
        return sum(self._connections.values())


class RequestRateLimiter:
    """Per-client token buckets for the HTTP routes."""

    def __init__(self, requests: int, window_ms: int, clock: Callable[[], float] = monotonic_ms):
        self._rate = requests / (window_ms / 1000.0)
        self._burst = requests
        self._clock = clock
        self._buckets: Dict[str, TokenBucket] = {}

    def allow(self, client: str) -> bool:
        bucket = self._buckets.get(client)
        if bucket is None:
            bucket = self._buckets[client] = TokenBucket(self._rate, self._burst, self._clock)
        return bucket.consume()
