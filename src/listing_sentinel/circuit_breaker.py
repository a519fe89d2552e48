"""
Per-destination circuit breaker built on aiobreaker.

CLOSED   normal operation; consecutive errors are counted
OPEN     calls fail fast (or run the fallback) until ``open_duration_ms``
         has elapsed since the breaker opened
HALF_OPEN a single trial call; success closes the breaker, failure re-opens it

aiobreaker owns the state machine.  This wrapper adds the pieces the pipeline
needs around it: an injectable clock for the OPEN cooldown, a one-call gate
in HALF_OPEN, an optional fallback and counters for ``get_stats``.  State
changes are logged at WARNING from a breaker listener.
"""

from __future__ import annotations

import asyncio
import time
from dataclasses import dataclass
from datetime import timedelta
from enum import Enum
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, Type, TypeVar

import aiobreaker

from .errors import CircuitOpenError
from .logging_utils import get_logger

log = get_logger("circuit_breaker")

T = TypeVar("T")


def _now_ms() -> float:
    return time.monotonic() * 1000.0


class CircuitState(str, Enum):
    CLOSED = "CLOSED"
    OPEN = "OPEN"
    HALF_OPEN = "HALF_OPEN"


def _state_name(state: Any) -> str:
    # listeners receive state objects; the enum hangs off ``.state``
    inner = getattr(state, "state", state)
    return getattr(inner, "name", str(inner))


@dataclass
class CircuitBreakerConfig:
    errors_before_open: int = 3
    open_duration_ms: float = 60_000
    # Raised through without counting as an error
    excluded_exceptions: Tuple[Type[BaseException], ...] = ()


class _StateListener(aiobreaker.CircuitBreakerListener):
    def __init__(self, owner: "CircuitBreaker"):
        self.owner = owner

    def state_change(self, breaker, old_state, new_state):
        old, new = _state_name(old_state), _state_name(new_state)
        if old == new:
            return
        if new == CircuitState.OPEN.value:
            self.owner.open_count += 1
            self.owner.opened_at = self.owner._clock()
        log.warning(
            "circuit_breaker state_change name=%s from=%s to=%s errors=%d",
            self.owner.name,
            old,
            new,
            self.owner.error_count,
        )


class CircuitBreaker:
    def __init__(
        self,
        name: str,
        config: Optional[CircuitBreakerConfig] = None,
        clock: Callable[[], float] = _now_ms,
    ):
        self.name = name
        self.config = config or CircuitBreakerConfig()
        self._clock = clock

        self.error_count = 0
        self.opened_at: Optional[float] = None
        self.last_error_time: Optional[float] = None
        self.last_success_time: Optional[float] = None
        self.open_count = 0
        self.total_requests = 0
        self.failed_requests = 0
        self.successful_requests = 0
        self._trial_in_flight = False

        self._excluded = (asyncio.CancelledError,) + tuple(
            self.config.excluded_exceptions
        )
        self._breaker = aiobreaker.CircuitBreaker(
            fail_max=self.config.errors_before_open,
            timeout_duration=timedelta(milliseconds=self.config.open_duration_ms),
            exclude=list(self._excluded),
            listeners=[_StateListener(self)],
            name=name,
        )

    @property
    def state(self) -> CircuitState:
        return CircuitState(self._breaker.current_state.name)

    def _cooldown_remaining(self) -> float:
        if self.opened_at is None:
            return 0.0
        elapsed = self._clock() - self.opened_at
        return max(0.0, self.config.open_duration_ms - elapsed)

    async def _reject(
        self, retry_in_ms: float, fallback: Optional[Callable[[], Awaitable[T]]]
    ) -> T:
        self.failed_requests += 1
        if fallback is not None:
            log.debug("circuit_breaker fallback name=%s", self.name)
            return await fallback()
        raise CircuitOpenError(self.name, retry_in_ms=retry_in_ms)

    async def execute(
        self,
        operation: Callable[[], Awaitable[T]],
        fallback: Optional[Callable[[], Awaitable[T]]] = None,
    ) -> T:
        """Run ``operation`` through the breaker.

        Raises CircuitOpenError (or returns ``fallback()``) while open, and
        for every caller but the first while half-open.  Any exception from
        the operation, including timeouts, counts as an error and is
        re-raised as itself.  Cancellation is re-raised without being counted.
        """
        self.total_requests += 1

        if self.state == CircuitState.OPEN:
            remaining = self._cooldown_remaining()
            if remaining > 0:
                return await self._reject(remaining, fallback)
            self._breaker.half_open()

        trial = self.state == CircuitState.HALF_OPEN
        if trial:
            if self._trial_in_flight:
                return await self._reject(0.0, fallback)
            self._trial_in_flight = True

        failure: Dict[str, BaseException] = {}

        async def guarded() -> T:
            try:
                return await operation()
            except BaseException as e:
                failure["error"] = e
                raise

        try:
            result = await self._breaker.call_async(guarded)
        except aiobreaker.CircuitBreakerError:
            error = failure.get("error")
            if error is None:
                return await self._reject(self._cooldown_remaining(), fallback)
            # the call that tripped the breaker surfaces the upstream error
            self._on_error(error)
            raise error
        except BaseException as e:
            self._on_error(e)
            raise
        else:
            self._on_success()
            return result
        finally:
            if trial:
                self._trial_in_flight = False

    def _on_success(self) -> None:
        self.successful_requests += 1
        self.error_count = 0
        self.last_success_time = self._clock()

    def _on_error(self, error: BaseException) -> None:
        if isinstance(error, self._excluded):
            # aiobreaker books excluded errors as successes
            self.error_count = 0
            return
        self.failed_requests += 1
        self.error_count += 1
        self.last_error_time = self._clock()

    def reset(self) -> None:
        self._breaker.close()
        self.error_count = 0
        self.opened_at = None
        self.last_error_time = None

    def is_open(self) -> bool:
        return self.state == CircuitState.OPEN

    def is_half_open(self) -> bool:
        return self.state == CircuitState.HALF_OPEN

    def is_closed(self) -> bool:
        return self.state == CircuitState.CLOSED

    def get_stats(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "state": self.state.value,
            "error_count": self.error_count,
            "last_error_time": self.last_error_time,
            "last_success_time": self.last_success_time,
            "open_count": self.open_count,
            "total_requests": self.total_requests,
            "failed_requests": self.failed_requests,
            "successful_requests": self.successful_requests,
            "cooldown_remaining_ms": (
                self._cooldown_remaining() if self.is_open() else 0.0
            ),
        }
