"""
Resilient async HTTP client for the notice board.

- Connection pooling (aiohttp) for HTTP connection reuse
- One circuit breaker per destination host
- Bounded exponential backoff with jitter between attempts
- Hard deadline on every attempt (asyncio.wait_for); a timeout is treated
  exactly like a connection error

Environment Variables:
    HTTP_TIMEOUT_SECS: Per-attempt deadline in seconds (default: 10)
    HTTP_MAX_RETRIES: Retries after the first attempt (default: 3)
    HTTP_BASE_DELAY_MS: Base backoff delay (default: 250)
    HTTP_MAX_DELAY_MS: Backoff cap (default: 4000)
    HTTP_JITTER_PCT: Jitter as a fraction of the delay (default: 0.1)
    BREAKER_ERRORS_BEFORE_OPEN: Consecutive errors that open a breaker (default: 3)
    BREAKER_OPEN_DURATION_MS: Breaker cooldown (default: 60000)

Usage:
    async with ResilientHttpClient() as client:
        body, content_type = await client.get_bytes(url)
"""

from __future__ import annotations

import asyncio
import os
import random
from dataclasses import dataclass
from typing import Awaitable, Callable, Dict, Optional, Tuple, TypeVar
from urllib.parse import urlsplit

import aiohttp

from .circuit_breaker import CircuitBreaker, CircuitBreakerConfig
from .errors import CircuitOpenError, NetworkFailure, RateLimitedError
from .logging_utils import get_logger

log = get_logger("http_client")

T = TypeVar("T")


@dataclass
class HttpClientConfig:
    """Configuration for the resilient HTTP client."""

    timeout_secs: float = 10.0
    max_retries: int = 3
    base_delay_ms: float = 250.0
    max_delay_ms: float = 4000.0
    jitter_pct: float = 0.1
    errors_before_open: int = 3
    open_duration_ms: float = 60_000.0
    user_agent: str = "Mozilla/5.0 (Windows NT 10.0; Win64; x64) AppleWebKit/537.36"

    @classmethod
    def from_env(cls) -> "HttpClientConfig":
        """Load configuration from environment variables."""
        return cls(
            timeout_secs=float(os.getenv("HTTP_TIMEOUT_SECS", str(cls.timeout_secs))),
            max_retries=int(os.getenv("HTTP_MAX_RETRIES", str(cls.max_retries))),
            base_delay_ms=float(
                os.getenv("HTTP_BASE_DELAY_MS", str(cls.base_delay_ms))
            ),
            max_delay_ms=float(os.getenv("HTTP_MAX_DELAY_MS", str(cls.max_delay_ms))),
            jitter_pct=float(os.getenv("HTTP_JITTER_PCT", str(cls.jitter_pct))),
            errors_before_open=int(
                os.getenv("BREAKER_ERRORS_BEFORE_OPEN", str(cls.errors_before_open))
            ),
            open_duration_ms=float(
                os.getenv("BREAKER_OPEN_DURATION_MS", str(cls.open_duration_ms))
            ),
            user_agent=os.getenv("HTTP_USER_AGENT", cls.user_agent),
        )


def backoff_delay_ms(
    attempt: int,
    base_ms: float,
    cap_ms: float,
    jitter_pct: float,
    rand: Callable[[], float] = random.random,
) -> float:
    """``min(base * 2**attempt, cap)`` plus up to ``jitter_pct`` of that on top."""
    delay = min(base_ms * (2**attempt), cap_ms)
    return delay + delay * jitter_pct * rand()


class ResilientHttpClient:
    def __init__(
        self,
        config: Optional[HttpClientConfig] = None,
        session: Optional[aiohttp.ClientSession] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        rand: Callable[[], float] = random.random,
        breaker_clock: Optional[Callable[[], float]] = None,
    ):
        self.config = config or HttpClientConfig.from_env()
        self.session = session
        self._owns_session = session is None
        self._sleep = sleep
        self._rand = rand
        self._breaker_clock = breaker_clock
        self._breakers: Dict[str, CircuitBreaker] = {}

    async def __aenter__(self) -> "ResilientHttpClient":
        await self.open()
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb) -> None:
        await self.close()

    async def open(self) -> None:
        if self.session is None:
            connector = aiohttp.TCPConnector(
                limit=20,
                limit_per_host=10,
                ttl_dns_cache=300,
                keepalive_timeout=60,
            )
            self.session = aiohttp.ClientSession(
                connector=connector,
                headers={"User-Agent": self.config.user_agent},
            )
            self._owns_session = True

    async def close(self) -> None:
        if self.session is not None and self._owns_session:
            await self.session.close()
        self.session = None

    def breaker(self, destination: str) -> CircuitBreaker:
        """Return (creating on first use) the breaker for ``destination``."""
        cb = self._breakers.get(destination)
        if cb is None:
            cfg = CircuitBreakerConfig(
                errors_before_open=self.config.errors_before_open,
                open_duration_ms=self.config.open_duration_ms,
                excluded_exceptions=(RateLimitedError,),
            )
            if self._breaker_clock is not None:
                cb = CircuitBreaker(destination, cfg, clock=self._breaker_clock)
            else:
                cb = CircuitBreaker(destination, cfg)
            self._breakers[destination] = cb
        return cb

    def get_breaker_stats(self) -> Dict[str, dict]:
        return {name: cb.get_stats() for name, cb in self._breakers.items()}

    async def _with_deadline(self, operation: Callable[[], Awaitable[T]]) -> T:
        try:
            return await asyncio.wait_for(operation(), self.config.timeout_secs)
        except asyncio.TimeoutError as e:
            raise NetworkFailure(
                f"deadline exceeded after {self.config.timeout_secs}s"
            ) from e
        except aiohttp.ClientError as e:
            raise NetworkFailure(str(e) or e.__class__.__name__) from e

    async def execute(
        self,
        destination: str,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        """
        Run ``operation`` with breaker protection, deadline and retries.

        Args:
            destination: Breaker key, usually the upstream host
            operation: Zero-argument coroutine factory; called once per attempt
            fallback: Optional coroutine factory used while the breaker is open

        Raises:
            CircuitOpenError: breaker open and no fallback (never retried)
            RateLimitedError: upstream throttled us (left to the rate limiter)
            NetworkFailure / any operation error: after the final attempt
        """
        cb = self.breaker(destination)
        attempts = self.config.max_retries + 1
        last_error: Optional[BaseException] = None

        for attempt in range(attempts):
            try:
                return await cb.execute(
                    lambda: self._with_deadline(operation), fallback
                )
            except (CircuitOpenError, RateLimitedError):
                raise
            except Exception as e:
                last_error = e
                if attempt + 1 >= attempts:
                    break
                delay_ms = backoff_delay_ms(
                    attempt,
                    self.config.base_delay_ms,
                    self.config.max_delay_ms,
                    self.config.jitter_pct,
                    self._rand,
                )
                log.warning(
                    "http_retry destination=%s attempt=%d/%d delay_ms=%.0f err=%s",
                    destination,
                    attempt + 1,
                    attempts,
                    delay_ms,
                    str(e),
                )
                await self._sleep(delay_ms / 1000.0)

        log.error(
            "http_failed destination=%s attempts=%d err=%s",
            destination,
            attempts,
            str(last_error),
        )
        raise last_error  # type: ignore[misc]

    async def _fetch(self, url: str, accept: str) -> Tuple[bytes, str]:
        if self.session is None:
            await self.open()
        async with self.session.get(  # type: ignore[union-attr]
            url, headers={"Accept": accept}, allow_redirects=True
        ) as resp:
            if resp.status == 429:
                raise RateLimitedError(f"HTTP 429 from {url}")
            if resp.status >= 400:
                raise NetworkFailure(f"HTTP {resp.status} from {url}", status=resp.status)
            body = await resp.read()
            return body, resp.headers.get("Content-Type", "")

    async def get_bytes(
        self, url: str, accept: str = "*/*", destination: Optional[str] = None
    ) -> Tuple[bytes, str]:
        """GET ``url`` and return ``(body, content_type)``."""
        dest = destination or urlsplit(url).netloc or url
        return await self.execute(dest, lambda: self._fetch(url, accept))
