"""
Periodic housekeeping, run off the hot path.

Each pass prunes old dedup rows, expired latency flows, idle rate-limit
windows and aged quantile samples, then flushes suppressed-log summaries.
A failing step is logged and the remaining steps still run.
"""

from __future__ import annotations

import asyncio
from typing import Any, Dict, Optional

from .event_store import EventStore
from .latency import LatencyTracker
from .log_dedup import LogDeduper
from .logging_utils import get_logger
from .quantiles import Quantiles
from .rate_limiter import RateLimiter

log = get_logger("maintenance")


class Maintenance:
    def __init__(
        self,
        events: EventStore,
        latency: LatencyTracker,
        rate_limiter: Optional[RateLimiter] = None,
        quantiles: Optional[Quantiles] = None,
        log_deduper: Optional[LogDeduper] = None,
        *,
        retention_days: int = 30,
        flow_ttl_ms: float = 300_000,
        rate_window_idle_ms: float = 3_600_000,
        interval_s: float = 300.0,
    ):
        self.events = events
        self.latency = latency
        self.rate_limiter = rate_limiter
        self.quantiles = quantiles or latency.quantiles
        self.log_deduper = log_deduper
        self.retention_days = retention_days
        self.flow_ttl_ms = flow_ttl_ms
        self.rate_window_idle_ms = rate_window_idle_ms
        self.interval_s = interval_s

    def run_once(self) -> Dict[str, Any]:
        results: Dict[str, Any] = {}
        steps = [
            ("events_removed", lambda: self.events.cleanup_old_events(self.retention_days)),
            ("flows_swept", lambda: self.latency.sweep_expired(self.flow_ttl_ms)),
            ("samples_removed", self.quantiles.cleanup),
        ]
        if self.rate_limiter is not None:
            steps.append(
                (
                    "rate_windows_evicted",
                    lambda: self.rate_limiter.evict_idle(self.rate_window_idle_ms),
                )
            )
        if self.log_deduper is not None:
            steps.append(("logs_suppressed", self.log_deduper.flush))

        for name, step in steps:
            try:
                results[name] = step()
            except Exception as e:
                log.warning("maintenance_step_failed step=%s err=%s", name, str(e), exc_info=True)
                results[name] = None
        log.info(
            "maintenance_done %s",
            " ".join(f"{k}={v}" for k, v in results.items()),
        )
        return results

    async def run(self, stop_event: asyncio.Event) -> None:
        while not stop_event.is_set():
            self.run_once()
            try:
                await asyncio.wait_for(stop_event.wait(), timeout=self.interval_s)
            except asyncio.TimeoutError:
                pass
