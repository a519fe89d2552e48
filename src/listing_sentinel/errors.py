"""Exception taxonomy for the notice pipeline.

Duplicates, timing outcomes (future/stale) and watermark skips are expected
steady-state results and are reported as values, never raised.
"""

from __future__ import annotations

from typing import Optional


class ListingSentinelError(Exception):
    """Base class for all pipeline errors."""


class NetworkFailure(ListingSentinelError):
    """Timeout, connection error or non-success HTTP status."""

    def __init__(self, message: str, status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class RateLimitedError(ListingSentinelError):
    """Upstream throttled us, or the local limiter gave up waiting."""


class CircuitOpenError(ListingSentinelError):
    """Call rejected without touching the network because the breaker is open."""

    def __init__(self, name: str, retry_in_ms: float = 0.0):
        super().__init__(f"circuit open for {name}")
        self.name = name
        self.retry_in_ms = retry_in_ms


class DecodeError(ListingSentinelError):
    """A fetched candidate could not be decoded or parsed into notices."""


class PersistenceError(ListingSentinelError):
    """A write or read against the local store failed."""


class StoreInitError(PersistenceError):
    """The persisted state could not be opened or migrated at boot."""
