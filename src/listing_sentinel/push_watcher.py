# -*- coding: utf-8 -*-
"""
Ticker-stream watcher: the persistent connection behind the push channel.

- Loads the baseline of known KRW bases from the REST ticker before the first
  connect, so existing markets never look like listings
- Connects, subscribes to the KRW tickers and opens the handler's warm-up
- Feeds every decoded ticker message to ``PushChannelHandler`` and drains
  debounced candidates about once per ``PUSH_FLUSH_SEC``
- Reconnects with exponential backoff (1s, 2s, 4s ... capped) until
  ``PUSH_MAX_RECONNECTS`` consecutive failures

Environment Variables:
    PUSH_WS_URL: stream endpoint (default: wss://pubwss.bithumb.com/pub/ws)
    PUSH_REST_URL: ticker snapshot used for the baseline
    PUSH_MAX_RECONNECTS: consecutive failed connects before giving up (0 = never)
    PUSH_FLUSH_SEC: debounce drain interval (default: 1)
"""

from __future__ import annotations

import asyncio
import json
import os
from dataclasses import dataclass
from typing import Any, Awaitable, Callable, List, Optional, Tuple

import websockets
from websockets.exceptions import WebSocketException

from .errors import CircuitOpenError, NetworkFailure, RateLimitedError
from .http_client import ResilientHttpClient
from .logging_utils import get_logger
from .models import ProcessedEvent
from .push_channel import PushChannelHandler

log = get_logger("push_watcher")


@dataclass
class PushWatcherConfig:
    ws_url: str = "wss://pubwss.bithumb.com/pub/ws"
    rest_url: str = "https://api.bithumb.com/public/ticker/ALL_KRW"
    subscribe_symbols: Tuple[str, ...] = ("ALL_KRW",)
    tick_types: Tuple[str, ...] = ("1H",)
    reconnect_base_s: float = 1.0
    reconnect_max_s: float = 60.0
    max_reconnect_attempts: int = 10
    ping_interval_s: float = 25.0
    ping_timeout_s: float = 10.0
    flush_interval_s: float = 1.0

    @classmethod
    def from_env(cls) -> "PushWatcherConfig":
        """Load configuration from environment variables."""
        return cls(
            ws_url=os.getenv("PUSH_WS_URL", cls.ws_url),
            rest_url=os.getenv("PUSH_REST_URL", cls.rest_url),
            max_reconnect_attempts=int(
                os.getenv("PUSH_MAX_RECONNECTS", str(cls.max_reconnect_attempts))
            ),
            flush_interval_s=float(
                os.getenv("PUSH_FLUSH_SEC", str(cls.flush_interval_s))
            ),
        )


def parse_baseline(payload: Any) -> List[str]:
    """Bases listed in an ``ALL_KRW`` ticker snapshot (``{"status": "0000", "data": {...}}``)."""
    if not isinstance(payload, dict) or payload.get("status") != "0000":
        return []
    data = payload.get("data")
    if not isinstance(data, dict):
        return []
    return sorted(k.upper() for k, v in data.items() if isinstance(v, dict))


class PushWatcher:
    def __init__(
        self,
        handler: PushChannelHandler,
        http: Optional[ResilientHttpClient] = None,
        config: Optional[PushWatcherConfig] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.handler = handler
        self.http = http
        self.config = config or PushWatcherConfig.from_env()
        self._sleep = sleep

        self.websocket = None
        self.is_connected = False
        self.reconnect_attempts = 0
        self.messages_processed = 0
        self.reconnects = 0

    async def load_baseline(self) -> int:
        """Seed the handler's baseline from the REST ticker; 0 when unavailable."""
        if self.http is None or not self.config.rest_url:
            return 0
        try:
            body, _ = await self.http.get_bytes(
                self.config.rest_url, accept="application/json"
            )
            payload = json.loads(body.decode("utf-8", errors="replace"))
        except (NetworkFailure, RateLimitedError, CircuitOpenError, ValueError) as e:
            log.warning("push_baseline_unavailable err=%s", str(e))
            return 0
        added = self.handler.add_baseline(parse_baseline(payload))
        log.info(
            "push_baseline_loaded added=%d total=%d", added, len(self.handler.baseline)
        )
        return added

    def subscribe_message(self) -> str:
        return json.dumps(
            {
                "type": "ticker",
                "symbols": list(self.config.subscribe_symbols),
                "tickTypes": list(self.config.tick_types),
            }
        )

    async def connect(self) -> None:
        log.info("push_connecting url=%s", self.config.ws_url)
        self.websocket = await websockets.connect(
            self.config.ws_url,
            ping_interval=self.config.ping_interval_s,
            ping_timeout=self.config.ping_timeout_s,
        )
        await self.websocket.send(self.subscribe_message())
        self.is_connected = True
        self.reconnect_attempts = 0
        self.handler.start_warmup()
        log.info("push_connected url=%s", self.config.ws_url)

    async def disconnect(self) -> None:
        if self.websocket is not None:
            try:
                await self.websocket.close()
            except (WebSocketException, OSError) as e:
                log.debug("push_close_failed err=%s", str(e))
        self.websocket = None
        self.is_connected = False

    def reconnect_delay(self, attempt: int) -> float:
        return min(
            self.config.reconnect_base_s * (2 ** max(attempt - 1, 0)),
            self.config.reconnect_max_s,
        )

    def handle_raw(self, raw: Any) -> Optional[ProcessedEvent]:
        """Decode one frame and hand ticker content to the handler."""
        self.messages_processed += 1
        try:
            data = json.loads(raw)
        except (TypeError, ValueError) as e:
            log.debug("push_frame_undecodable err=%s", str(e))
            return None
        if not isinstance(data, dict):
            return None
        if data.get("type") == "ticker" and isinstance(data.get("content"), dict):
            return self.handler.handle_message(data)
        if data.get("type") == "pong":
            log.debug("push_pong")
        return None

    async def _consume(
        self,
        stop_event: asyncio.Event,
        on_events: Optional[Callable[[List[ProcessedEvent]], None]],
    ) -> None:
        while not stop_event.is_set():
            try:
                raw = await asyncio.wait_for(
                    self.websocket.recv(), timeout=self.config.flush_interval_s
                )
            except asyncio.TimeoutError:
                raw = None
            events: List[ProcessedEvent] = []
            if raw is not None:
                event = self.handle_raw(raw)
                if event is not None:
                    events.append(event)
            events.extend(self.handler.flush_due())
            if events and on_events is not None:
                on_events(events)

    async def run(
        self,
        stop_event: asyncio.Event,
        on_events: Optional[Callable[[List[ProcessedEvent]], None]] = None,
    ) -> None:
        """Stay connected until ``stop_event`` is set.  Cancellation propagates."""
        await self.load_baseline()
        while not stop_event.is_set():
            try:
                await self.connect()
                await self._consume(stop_event, on_events)
            except asyncio.CancelledError:
                raise
            except (WebSocketException, OSError, asyncio.TimeoutError) as e:
                log.warning("push_connection_lost err=%s", str(e) or e.__class__.__name__)
            finally:
                await self.disconnect()
            if stop_event.is_set():
                break

            self.reconnect_attempts += 1
            self.reconnects += 1
            limit = self.config.max_reconnect_attempts
            if limit and self.reconnect_attempts > limit:
                log.error(
                    "push_watcher_gave_up attempts=%d", self.reconnect_attempts - 1
                )
                return
            delay = self.reconnect_delay(self.reconnect_attempts)
            log.info(
                "push_reconnecting attempt=%d delay_s=%.0f",
                self.reconnect_attempts,
                delay,
            )
            await self._sleep(delay)
        log.info("push_watcher_stopped messages=%d", self.messages_processed)
