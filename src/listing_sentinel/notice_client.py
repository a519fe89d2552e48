# -*- coding: utf-8 -*-
"""
Notice pipeline orchestrator.

One poll cycle:

1. fetch the JSON and HTML renderings of the notice board (rate limited,
   breaker protected; a failed rendering is simply absent)
2. pick the better-decoded rendering and parse it into ``RawNotice`` objects
3. keep notices newer than the source watermark; HTML rows that carry only a
   date borrow the exact time of the JSON row with the same id when one has
   been seen, so both renderings build the same event id
4. per notice: extract bases, confirm it is a KRW listing, then per base
   independently classify timing, build the event id and try the dedup insert
5. advance the watermark with every considered notice, accepted or not

Environment Variables:
    NOTICE_JSON_URL / NOTICE_HTML_URL: the two renderings
    NOTICE_POLL_SEC: poll interval (default: 5)
    NOTICE_SOURCE: event source label (default: bithumb.notice)
    LIVE_WINDOW_MS, COOLDOWN_HOURS, WATERMARK_GRACE_SEC
"""

from __future__ import annotations

import asyncio
import os
import time
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Callable, Iterable, List, Optional, Tuple

from cachetools import LRUCache

from .errors import (
    CircuitOpenError,
    DecodeError,
    NetworkFailure,
    PersistenceError,
    RateLimitedError,
)
from .event_id import build_event_id, normalize_url
from .event_store import EventStore
from .http_client import ResilientHttpClient
from .latency import DEDUP_INSERTED, T0_DETECTED, T0_FETCH_DONE, LatencyTracker
from .listing_detector import MODE_STANDARD, detect_listing_krw, notice_score
from .log_dedup import LogDeduper
from .logging_utils import get_logger
from .models import InsertResult, ProcessedEvent, RawNotice, Timing
from .notice_parser import parse_candidate
from .rate_limiter import RateLimiter
from .run_stats import RunStats
from .text_source import KIND_HTML, KIND_JSON, TextCandidate, choose_best_source, decode_best
from .tickers import extract_bases
from .timing import classify_listing_timing
from .watermark_store import WatermarkStore

log = get_logger("notice_client")


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class NoticeClientConfig:
    """Configuration for the notice poller."""

    json_url: str = "https://api.bithumb.com/v1/notices"
    html_url: str = "https://feed.bithumb.com/notice"
    source: str = "bithumb.notice"
    rate_limit_key: str = "BITHUMB"
    markets: Tuple[str, ...] = ("KRW",)
    poll_interval_s: float = 5.0
    live_window_ms: int = 120_000
    cooldown_hours: float = 24.0
    watermark_grace_sec: int = 300
    detection_mode: str = MODE_STANDARD
    min_notice_score: int = 2
    disable_retry_s: float = 120.0

    @classmethod
    def from_env(cls) -> "NoticeClientConfig":
        """Load configuration from environment variables."""
        return cls(
            json_url=os.getenv("NOTICE_JSON_URL", cls.json_url),
            html_url=os.getenv("NOTICE_HTML_URL", cls.html_url),
            source=os.getenv("NOTICE_SOURCE", cls.source),
            poll_interval_s=float(os.getenv("NOTICE_POLL_SEC", str(cls.poll_interval_s))),
            live_window_ms=int(os.getenv("LIVE_WINDOW_MS", str(cls.live_window_ms))),
            cooldown_hours=float(os.getenv("COOLDOWN_HOURS", str(cls.cooldown_hours))),
            watermark_grace_sec=int(
                os.getenv("WATERMARK_GRACE_SEC", str(cls.watermark_grace_sec))
            ),
            detection_mode=os.getenv("LISTING_DETECTION_MODE", cls.detection_mode),
        )


class NoticeClient:
    def __init__(
        self,
        http: ResilientHttpClient,
        rate_limiter: RateLimiter,
        watermarks: WatermarkStore,
        events: EventStore,
        latency: LatencyTracker,
        run_stats: Optional[RunStats] = None,
        config: Optional[NoticeClientConfig] = None,
        log_deduper: Optional[LogDeduper] = None,
        clock: Callable[[], datetime] = _utcnow,
    ):
        self.http = http
        self.rate_limiter = rate_limiter
        self.watermarks = watermarks
        self.events = events
        self.latency = latency
        self.run_stats = run_stats or RunStats()
        self.config = config or NoticeClientConfig.from_env()
        self.log_deduper = log_deduper or LogDeduper()
        self._clock = clock
        self._enabled = True
        self._disabled_until = 0.0
        # notice id -> (trade_time_utc, published_ts) learned from JSON rows
        self._known_times: LRUCache = LRUCache(maxsize=2048)
        # untimed notice ids already run through the pipeline this process
        self._untimed_seen: LRUCache = LRUCache(maxsize=2048)

    # ------------------------------------------------------------ lifecycle

    def enable(self) -> None:
        self._enabled = True
        self._disabled_until = 0.0
        log.info("notice_client_enabled source=%s", self.config.source)

    def disable(self, reason: str, retry_after_s: Optional[float] = None) -> None:
        """Stop polling; re-enable automatically after ``retry_after_s``."""
        self._enabled = False
        delay = self.config.disable_retry_s if retry_after_s is None else retry_after_s
        self._disabled_until = time.monotonic() + delay
        log.warning("notice_client_disabled reason=%s retry_in_s=%.0f", reason, delay)

    @property
    def is_enabled(self) -> bool:
        if not self._enabled and time.monotonic() >= self._disabled_until:
            self.enable()
        return self._enabled

    def initialize(self) -> None:
        """Arm the source watermark for a cold start."""
        self.watermarks.initialize_at_boot(
            self.config.source, self.config.watermark_grace_sec
        )

    # ------------------------------------------------------------- fetching

    async def _fetch_candidate(self, url: str, kind: str) -> Optional[TextCandidate]:
        if not url:
            return None
        accept = (
            "application/json"
            if kind == KIND_JSON
            else "text/html,application/xhtml+xml,application/xml;q=0.9,*/*;q=0.8"
        )
        key = self.config.rate_limit_key
        await self.rate_limiter.wait_for_availability(key)
        try:
            body, content_type = await self.http.get_bytes(url, accept=accept)
        except CircuitOpenError as e:
            self.log_deduper.note(
                f"circuit_open:{kind}",
                "notice_fetch_skipped kind=%s reason=circuit_open retry_in_ms=%.0f",
                kind,
                e.retry_in_ms,
            )
            return None
        except (NetworkFailure, RateLimitedError) as e:
            self.rate_limiter.record_failure(key)
            self.log_deduper.note(
                f"fetch_failed:{kind}",
                "notice_fetch_failed kind=%s err=%s",
                kind,
                str(e),
            )
            return None
        self.rate_limiter.record_success(key)
        return decode_best(body, content_type, kind=kind)

    async def fetch_latest_notices(self) -> List[RawNotice]:
        """Fetch both renderings and parse the better one.  Never raises on upstream trouble."""
        json_candidate, html_candidate = await asyncio.gather(
            self._fetch_candidate(self.config.json_url, KIND_JSON),
            self._fetch_candidate(self.config.html_url, KIND_HTML),
        )
        choice = choose_best_source(json_candidate, html_candidate)
        if choice is None:
            self.log_deduper.note("no_source", "notice_source_unavailable")
            return []

        log.debug(
            "notice_source_selected kind=%s reason=%s diagnostics=%s",
            choice.kind,
            choice.reason,
            choice.diagnostics,
        )
        other = html_candidate if choice.kind == KIND_JSON else json_candidate
        notices = self._parse(choice.candidate)
        if notices is None:
            notices = self._parse(other) if other is not None else None
        elif other is not None and other.kind == KIND_JSON:
            # HTML won, but the JSON rows still carry the exact times
            self._parse(other)
        return [self._reconcile(n) for n in notices or []]

    def _parse(self, candidate: TextCandidate) -> Optional[List[RawNotice]]:
        try:
            notices = parse_candidate(candidate, base_url=self.config.html_url)
        except DecodeError as e:
            log.warning("notice_parse_failed kind=%s err=%s", candidate.kind, str(e))
            return None
        if candidate.kind == KIND_JSON:
            self._remember_times(notices)
        return notices

    def _remember_times(self, notices: Iterable[RawNotice]) -> None:
        for n in notices:
            if n.is_timed:
                self._known_times[n.item_id] = (n.trade_time_utc, n.published_ts)

    def _reconcile(self, notice: RawNotice) -> RawNotice:
        """Give a date-only notice the exact time already seen for its id."""
        if notice.is_timed:
            return notice
        known = self._known_times.get(notice.item_id)
        if known is None:
            return notice
        trade_time, published_ts = known
        log.debug("notice_time_reconciled id=%s", notice.item_id)
        return replace(notice, trade_time_utc=trade_time, published_ts=published_ts)

    # ----------------------------------------------------------- processing

    def process_notice(
        self,
        notice: RawNotice,
        *,
        source: Optional[str] = None,
        ignore_watermark: bool = False,
        bypass_cooldown: bool = False,
        now: Optional[datetime] = None,
    ) -> List[ProcessedEvent]:
        """Process one externally supplied notice (replay / tests).

        The watermark is consulted but not advanced; poll cycles own watermark
        progress.
        """
        source = source or self.config.source
        self._remember_times([notice])
        notice = self._reconcile(notice)
        if not ignore_watermark and not self.watermarks.should_consider(source, notice):
            log.debug("notice_skipped_watermark id=%s", notice.item_id)
            return []
        return self._process_notice(
            notice, source=source, bypass_cooldown=bypass_cooldown, now=now
        )

    def _process_notice(
        self,
        notice: RawNotice,
        *,
        source: str,
        bypass_cooldown: bool,
        now: Optional[datetime],
        fetch_done_ns: Optional[int] = None,
    ) -> List[ProcessedEvent]:
        self.run_stats.increment_notices_processed()
        details = extract_bases(notice.title, notice.content)
        if not details:
            return []

        bases = list(details)
        detection = detect_listing_krw(
            notice.title, notice.content, bases, mode=self.config.detection_mode
        )
        score = notice_score(notice.title, notice.content, details)
        if not detection.is_listing or score < self.config.min_notice_score:
            log.debug(
                "notice_not_listing id=%s bases=%s detection_score=%d notice_score=%d reasons=%s",
                notice.item_id,
                ",".join(bases),
                detection.score,
                score,
                detection.reasons,
            )
            return []

        log.info(
            "listing_candidate id=%s bases=%s notice_score=%d reasons=%s",
            notice.item_id,
            ",".join(bases),
            score,
            detection.reasons,
        )
        now = now or self._clock()
        accepted: List[ProcessedEvent] = []
        for base in bases:
            try:
                event = self._process_base(
                    notice, base, source, bypass_cooldown, now, fetch_done_ns
                )
            except Exception as e:
                log.warning(
                    "ticker_processing_failed id=%s base=%s err=%s",
                    notice.item_id,
                    base,
                    str(e),
                    exc_info=True,
                )
                continue
            if event is not None:
                accepted.append(event)

        if accepted:
            self.run_stats.increment_new_listings(len(accepted))
            self.run_stats.increment_t0_events(len(accepted))
        return accepted

    def _process_base(
        self,
        notice: RawNotice,
        base: str,
        source: str,
        bypass_cooldown: bool,
        now: datetime,
        fetch_done_ns: Optional[int],
    ) -> Optional[ProcessedEvent]:
        if not bypass_cooldown and self.events.is_base_recently_traded(
            base, self.config.cooldown_hours
        ):
            log.info("base_in_cooldown base=%s id=%s", base, notice.item_id)
            return None

        detected_ns = self.latency.now_ns()
        timing = classify_listing_timing(
            notice.trade_time_utc, now, self.config.live_window_ms
        )
        event = ProcessedEvent(
            event_id=build_event_id(
                source, base, notice.url, self.config.markets, notice.trade_time_utc
            ),
            source=source,
            base=base,
            url=normalize_url(notice.url),
            markets=self.config.markets,
            trade_time_utc=notice.trade_time_utc,
            raw_title=notice.title,
            timing=timing,
            notice_id=notice.item_id,
        )

        result = self.events.try_mark_processed(event)
        if result is InsertResult.DUPLICATE:
            self.latency.inc_dup()
            log.debug("event_duplicate base=%s event_id=%s", base, event.event_id[:12])
            return None

        if timing is Timing.LIVE:
            self.latency.inc_new()
        elif timing is Timing.FUTURE:
            self.latency.inc_future()
        else:
            self.latency.inc_stale()

        if timing is Timing.LIVE:
            self.events.mark_base_as_traded(base, event.event_id)

        flow_id = event.event_id
        self.latency.begin(flow_id)
        if fetch_done_ns is not None:
            self.latency.mark(flow_id, T0_FETCH_DONE, at_ns=fetch_done_ns)
        self.latency.mark(flow_id, T0_DETECTED, at_ns=detected_ns)
        self.latency.mark(flow_id, DEDUP_INSERTED)

        log.info(
            "listing_event_accepted base=%s timing=%s event_id=%s url=%s",
            base,
            timing.value,
            event.event_id[:12],
            event.url,
        )
        return event

    async def poll_once(
        self, *, ignore_watermark: bool = False, now: Optional[datetime] = None
    ) -> List[ProcessedEvent]:
        """Run one fetch-parse-dedup cycle and return the newly accepted events."""
        if not self.is_enabled:
            return []
        source = self.config.source
        notices = await self.fetch_latest_notices()
        fetch_done_ns = self.latency.now_ns()
        if not notices:
            return []

        considered = [
            n
            for n in notices
            if ignore_watermark
            or (
                self.watermarks.should_consider(source, n)
                and (n.is_timed or n.item_id not in self._untimed_seen)
            )
        ]
        accepted: List[ProcessedEvent] = []
        for notice in considered:
            if not notice.is_timed:
                self._untimed_seen[notice.item_id] = True
            try:
                accepted.extend(
                    self._process_notice(
                        notice,
                        source=source,
                        bypass_cooldown=False,
                        now=now,
                        fetch_done_ns=fetch_done_ns,
                    )
                )
            except Exception as e:
                log.warning(
                    "notice_processing_failed id=%s err=%s",
                    notice.item_id,
                    str(e),
                    exc_info=True,
                )

        if considered:
            try:
                self.watermarks.update_from_batch(source, considered)
            except PersistenceError as e:
                log.error("watermark_update_failed source=%s err=%s", source, str(e))

        log.info(
            "poll_cycle_done fetched=%d considered=%d accepted=%d",
            len(notices),
            len(considered),
            len(accepted),
        )
        return accepted

    async def get_latest_listings(self) -> List[ProcessedEvent]:
        """Fetch and process everything currently on the board, ignoring the watermark."""
        return await self.poll_once(ignore_watermark=True)

    async def run(
        self,
        stop_event: asyncio.Event,
        on_events: Optional[Callable[[List[ProcessedEvent]], None]] = None,
    ) -> None:
        """Poll until ``stop_event`` is set.  Cancellation propagates."""
        log.info(
            "notice_polling_started source=%s interval_s=%.1f",
            self.config.source,
            self.config.poll_interval_s,
        )
        while not stop_event.is_set():
            try:
                events = await self.poll_once()
                if events and on_events is not None:
                    on_events(events)
            except asyncio.CancelledError:
                raise
            except Exception as e:
                log.error("poll_cycle_failed err=%s", str(e), exc_info=True)
            try:
                await asyncio.wait_for(
                    stop_event.wait(), timeout=self.config.poll_interval_s
                )
            except asyncio.TimeoutError:
                pass
        log.info("notice_polling_stopped source=%s", self.config.source)
