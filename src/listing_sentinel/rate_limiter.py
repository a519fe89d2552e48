"""
Per-destination request rate limiting.

Independent of the circuit breaker: each destination (key, upper-cased) has a
fixed request budget per window, and repeated failures open a penalty window
that grows geometrically with the number of consecutive failures.

Environment Variables:
* ``RATE_LIMIT_WINDOW_MS`` – window length (default: 60000)
* ``RATE_LIMIT_MAX_REQUESTS`` – requests per window (default: 60)
* ``RATE_LIMIT_RETRY_DELAY_MS`` – first penalty delay (default: 1000)
* ``RATE_LIMIT_MAX_RETRIES`` – attempts in execute_with_rate_limit (default: 3)
* ``RATE_LIMIT_BACKOFF_MULTIPLIER`` – penalty growth factor (default: 2)
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, field, replace
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from .errors import RateLimitedError
from .logging_utils import get_logger

log = get_logger("rate_limiter")

T = TypeVar("T")


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class RateLimitConfig:
    """Rate limit configuration for one destination."""

    time_window_ms: float = 60_000
    max_requests: int = 60
    retry_delay_ms: float = 1_000
    max_retries: int = 3
    backoff_multiplier: float = 2.0

    @classmethod
    def from_env(cls) -> "RateLimitConfig":
        return cls(
            time_window_ms=float(
                os.getenv("RATE_LIMIT_WINDOW_MS", str(cls.time_window_ms))
            ),
            max_requests=int(os.getenv("RATE_LIMIT_MAX_REQUESTS", str(cls.max_requests))),
            retry_delay_ms=float(
                os.getenv("RATE_LIMIT_RETRY_DELAY_MS", str(cls.retry_delay_ms))
            ),
            max_retries=int(os.getenv("RATE_LIMIT_MAX_RETRIES", str(cls.max_retries))),
            backoff_multiplier=float(
                os.getenv("RATE_LIMIT_BACKOFF_MULTIPLIER", str(cls.backoff_multiplier))
            ),
        )


@dataclass
class RateLimitWindow:
    count: int = 0
    window_reset_at: float = 0.0
    consecutive_failures: int = 0
    penalty_until: float = 0.0
    last_used: float = 0.0


def default_destination_configs() -> Dict[str, RateLimitConfig]:
    return {"BITHUMB": RateLimitConfig(max_requests=100)}


@dataclass
class RateLimiter:
    """
    Sliding request-count window per destination with failure penalties.

    ``can_make_request`` never mutates the request count; callers record the
    outcome with ``record_success`` / ``record_failure``.
    """

    default_config: RateLimitConfig = field(default_factory=RateLimitConfig)
    configs: Dict[str, RateLimitConfig] = field(
        default_factory=default_destination_configs
    )
    clock: Callable[[], float] = _now_ms
    sleep: Callable[[float], Awaitable[None]] = asyncio.sleep
    windows: Dict[str, RateLimitWindow] = field(default_factory=dict)

    def config_for(self, key: str) -> RateLimitConfig:
        return self.configs.get(key.upper(), self.default_config)

    def configure(self, key: str, **overrides: Any) -> RateLimitConfig:
        cfg = replace(self.config_for(key), **overrides)
        self.configs[key.upper()] = cfg
        return cfg

    def _window(self, key: str) -> RateLimitWindow:
        k = key.upper()
        win = self.windows.get(k)
        if win is None:
            win = RateLimitWindow()
            self.windows[k] = win
        win.last_used = self.clock()
        return win

    def can_make_request(self, key: str) -> Tuple[bool, float]:
        """
        Check if a request to ``key`` can be made now.

        Returns:
            (allowed, wait_ms) - If not allowed, the recommended wait in ms
        """
        cfg = self.config_for(key)
        win = self._window(key)
        now = self.clock()

        if win.penalty_until > now:
            return False, win.penalty_until - now

        if win.window_reset_at == 0 or now >= win.window_reset_at:
            win.count = 0
            win.window_reset_at = now + cfg.time_window_ms

        if win.count < cfg.max_requests:
            return True, 0.0

        log.debug(
            "rate_limit_hit key=%s count=%d limit=%d",
            key.upper(),
            win.count,
            cfg.max_requests,
        )
        return False, max(0.0, win.window_reset_at - now)

    def record_success(self, key: str) -> None:
        win = self._window(key)
        win.count += 1
        win.consecutive_failures = 0

    def record_failure(self, key: str) -> float:
        """Register a failure; returns the penalty delay in ms."""
        cfg = self.config_for(key)
        win = self._window(key)
        win.consecutive_failures += 1
        delay = cfg.retry_delay_ms * (
            cfg.backoff_multiplier ** (win.consecutive_failures - 1)
        )
        win.penalty_until = self.clock() + delay
        log.info(
            "rate_limit_penalty key=%s failures=%d delay_ms=%.0f",
            key.upper(),
            win.consecutive_failures,
            delay,
        )
        return delay

    async def wait_for_availability(self, key: str) -> None:
        """Sleep until ``key`` has budget.  Cancellable."""
        while True:
            allowed, wait_ms = self.can_make_request(key)
            if allowed:
                return
            log.info("rate_limit_throttle key=%s wait_ms=%.0f", key.upper(), wait_ms)
            await self.sleep(max(wait_ms, 1.0) / 1000.0)

    async def execute_with_rate_limit(
        self, key: str, operation: Callable[[], Awaitable[T]]
    ) -> T:
        cfg = self.config_for(key)
        attempts = max(1, cfg.max_retries)
        last_error: Optional[Exception] = None
        for attempt in range(attempts):
            await self.wait_for_availability(key)
            try:
                result = await operation()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                last_error = e
                self.record_failure(key)
                log.warning(
                    "rate_limited_call_failed key=%s attempt=%d/%d err=%s",
                    key.upper(),
                    attempt + 1,
                    attempts,
                    str(e),
                )
                continue
            self.record_success(key)
            return result

        raise RateLimitedError(
            f"{key.upper()}: giving up after {attempts} attempts"
        ) from last_error

    def get_state_snapshot(self) -> Dict[str, Dict[str, Any]]:
        now = self.clock()
        out: Dict[str, Dict[str, Any]] = {}
        for k, win in self.windows.items():
            cfg = self.config_for(k)
            out[k] = {
                "current_requests": win.count,
                "max_requests": cfg.max_requests,
                "reset_in_ms": max(0.0, win.window_reset_at - now),
                "consecutive_failures": win.consecutive_failures,
                "penalty_remaining_ms": max(0.0, win.penalty_until - now),
            }
        return out

    def reset_state(self, key: Optional[str] = None) -> None:
        if key is None:
            self.windows.clear()
        else:
            self.windows.pop(key.upper(), None)

    def evict_idle(self, ttl_ms: float) -> int:
        """Drop windows idle for longer than ``ttl_ms`` with no active penalty."""
        now = self.clock()
        stale = [
            k
            for k, win in self.windows.items()
            if now - win.last_used > ttl_ms and win.penalty_until <= now
        ]
        for k in stale:
            del self.windows[k]
        if stale:
            log.debug("rate_limit_evicted count=%d", len(stale))
        return len(stale)
