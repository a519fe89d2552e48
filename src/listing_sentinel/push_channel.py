# -*- coding: utf-8 -*-
"""
Push-channel (ticker stream) handler.

The exchange's ticker stream announces every traded ``BASE_KRW`` symbol, so
most messages are about markets that have existed for years.  A base counts
as a listing only when it is:

- not in the baseline of known KRW bases (preloaded from the REST ticker and
  extended with every base seen during the warm-up after each connect)
- not inside the per-base cooldown
- still pending once its debounce window has passed

Accepted bases go through the same dedup insert as notice events, keyed by
``build_ticker_event_id("bithumb.ws", base)``.

Connection management lives in ``push_watcher``; this module only turns
decoded messages into ``ProcessedEvent`` objects.
"""

from __future__ import annotations

import re
import time
from typing import Any, Callable, Dict, Iterable, List, Optional, Set, Tuple

from .event_id import build_ticker_event_id
from .event_store import EventStore
from .latency import DEDUP_INSERTED, T0_DETECTED, LatencyTracker
from .logging_utils import get_logger
from .models import InsertResult, ProcessedEvent, Timing
from .run_stats import RunStats
from .watermark_store import WatermarkStore

log = get_logger("push_channel")

PUSH_SOURCE = "bithumb.ws"
STABLECOINS = frozenset({"USDT", "USDC", "DAI", "BUSD", "TUSD"})
_BASE_RE = re.compile(r"^[A-Z0-9.]+$")


def _now_ms() -> int:
    return int(time.time() * 1000)


def extract_base_from_symbol(symbol: Optional[str]) -> Optional[str]:
    """``"ABC_KRW" -> "ABC"``; None for anything that is not a tradable base."""
    if not symbol or not isinstance(symbol, str):
        return None
    parts = symbol.split("_")
    if len(parts) != 2:
        return None
    base = parts[0]
    if len(base) <= 1:
        log.debug("push_symbol_ignored symbol=%s reason=single_char", symbol)
        return None
    if base in STABLECOINS:
        return None
    if not _BASE_RE.match(base):
        return None
    return base


class PushChannelHandler:
    def __init__(
        self,
        events: EventStore,
        watermarks: WatermarkStore,
        latency: LatencyTracker,
        run_stats: Optional[RunStats] = None,
        *,
        source: str = PUSH_SOURCE,
        market: str = "KRW",
        cooldown_hours: float = 24.0,
        warmup_ms: int = 5_000,
        debounce_ms: int = 10_000,
        baseline: Optional[Iterable[str]] = None,
        clock: Callable[[], int] = _now_ms,
    ):
        self.events = events
        self.watermarks = watermarks
        self.latency = latency
        self.run_stats = run_stats or RunStats()
        self.source = source
        self.market = market
        self.cooldown_hours = cooldown_hours
        self.warmup_ms = warmup_ms
        self.debounce_ms = debounce_ms
        self._clock = clock
        self._in_flight: Set[str] = set()
        self.baseline: Set[str] = set()
        # base -> (symbol, content, due_ms)
        self._pending: Dict[str, Tuple[str, Dict[str, Any], int]] = {}
        self._warmup_until = self._clock() + self.warmup_ms
        self.add_baseline(baseline or ())

    # ------------------------------------------------------------- baseline

    def add_baseline(self, bases: Iterable[str]) -> int:
        """Mark ``bases`` as already traded; returns how many were new."""
        added = 0
        for b in bases:
            base = str(b).strip().upper()
            if base and base not in self.baseline:
                self.baseline.add(base)
                self._pending.pop(base, None)
                added += 1
        return added

    def start_warmup(self) -> None:
        """Open a warm-up window; every base seen in it joins the baseline."""
        self._warmup_until = self._clock() + self.warmup_ms
        log.info(
            "push_warmup_started warmup_ms=%d baseline=%d",
            self.warmup_ms,
            len(self.baseline),
        )

    @property
    def is_warming_up(self) -> bool:
        return self._clock() < self._warmup_until

    @property
    def pending_bases(self) -> List[str]:
        return sorted(self._pending)

    # ------------------------------------------------------------- messages

    def handle_message(self, payload: Dict[str, Any]) -> Optional[ProcessedEvent]:
        """Process one decoded ticker message.

        Accepts either a bare ``{"symbol": ...}`` object or the stream's
        ``{"type": "ticker", "content": {...}}`` envelope.  With a debounce
        window the candidate is only queued and ``flush_due`` emits it later;
        without one the event (or None) is returned right away.
        """
        content = payload.get("content") if isinstance(payload.get("content"), dict) else payload
        symbol = content.get("symbol")
        base = extract_base_from_symbol(symbol)
        if base is None or base in self.baseline:
            return None

        if self.is_warming_up:
            self.baseline.add(base)
            log.debug("push_baseline_learned base=%s", base)
            return None

        if self.debounce_ms <= 0:
            return self._process(base, symbol, content)

        if base in self._pending:
            return None
        if self.events.is_base_recently_traded(base, self.cooldown_hours):
            log.debug("push_base_in_cooldown base=%s", base)
            return None
        self._pending[base] = (symbol, content, self._clock() + self.debounce_ms)
        log.info(
            "push_candidate_pending base=%s symbol=%s debounce_ms=%d",
            base,
            symbol,
            self.debounce_ms,
        )
        return None

    def flush_due(self, now_ms: Optional[int] = None) -> List[ProcessedEvent]:
        """Run every pending base whose debounce window has passed."""
        now_ms = self._clock() if now_ms is None else now_ms
        due = [b for b, (_, _, at) in self._pending.items() if at <= now_ms]
        accepted: List[ProcessedEvent] = []
        for base in due:
            symbol, content, _ = self._pending.pop(base)
            event = self._process(base, symbol, content)
            if event is not None:
                accepted.append(event)
        return accepted

    def _process(
        self, base: str, symbol: str, content: Dict[str, Any]
    ) -> Optional[ProcessedEvent]:
        if base in self._in_flight:
            log.debug("push_base_in_flight base=%s", base)
            return None
        self._in_flight.add(base)
        try:
            return self._handle_base(base, symbol, content)
        except Exception as e:
            log.warning(
                "push_message_failed base=%s err=%s", base, str(e), exc_info=True
            )
            return None
        finally:
            self._in_flight.discard(base)

    def _handle_base(
        self, base: str, symbol: str, content: Dict[str, Any]
    ) -> Optional[ProcessedEvent]:
        if self.events.is_base_recently_traded(base, self.cooldown_hours):
            log.debug("push_base_in_cooldown base=%s", base)
            return None

        detected_ns = self.latency.now_ns()
        event_id = build_ticker_event_id(self.source, base)
        event = ProcessedEvent(
            event_id=event_id,
            source=self.source,
            base=base,
            url="",
            markets=(self.market,),
            trade_time_utc=None,
            raw_title=f"ticker {symbol}",
            timing=Timing.LIVE,
        )
        result = self.events.try_mark_processed(event)

        message_ts = content.get("timestamp")
        try:
            message_ms = int(message_ts) if message_ts is not None else self._clock()
        except (TypeError, ValueError):
            message_ms = self._clock()
        self.watermarks.update_from_batch(self.source, [(message_ms, symbol)])

        if result is InsertResult.DUPLICATE:
            self.latency.inc_dup()
            return None

        self.latency.inc_new()
        self.events.mark_base_as_traded(base, event_id)
        self.latency.begin(event_id)
        self.latency.mark(event_id, T0_DETECTED, at_ns=detected_ns)
        self.latency.mark(event_id, DEDUP_INSERTED)
        self.run_stats.increment_new_listings()
        self.run_stats.increment_t0_events()
        log.info(
            "push_listing_detected base=%s symbol=%s event_id=%s",
            base,
            symbol,
            event_id[:12],
        )
        return event
