"""Wire the pipeline from settings and run it.

.. code-block:: bash

    # one poll cycle, print accepted events as JSON lines
    python -m listing_sentinel.runner --once

    # poll continuously with maintenance in the background
    python -m listing_sentinel.runner --loop
"""

from __future__ import annotations

import argparse
import asyncio
import json
import sys
from dataclasses import dataclass
from typing import List, Optional

from .config import Settings, get_settings
from .errors import StoreInitError
from .event_store import EventStore
from .http_client import HttpClientConfig, ResilientHttpClient
from .latency import LatencyTracker
from .log_dedup import LogDedupConfig, LogDeduper
from .logging_utils import get_logger, setup_logging
from .maintenance import Maintenance
from .models import ProcessedEvent
from .notice_client import NoticeClient, NoticeClientConfig
from .push_channel import PushChannelHandler
from .push_watcher import PushWatcher, PushWatcherConfig
from .quantiles import Quantiles
from .rate_limiter import RateLimiter
from .run_stats import RunStats
from .storage import open_store
from .watermark_store import WatermarkStore

log = get_logger("runner")


@dataclass
class Pipeline:
    settings: Settings
    http: ResilientHttpClient
    rate_limiter: RateLimiter
    watermarks: WatermarkStore
    events: EventStore
    quantiles: Quantiles
    latency: LatencyTracker
    run_stats: RunStats
    log_deduper: LogDeduper
    notices: NoticeClient
    push: PushChannelHandler
    push_watcher: PushWatcher
    maintenance: Maintenance


def build_pipeline(settings: Optional[Settings] = None) -> Pipeline:
    """Open the store and construct every component.  Store failures are fatal."""
    s = settings or get_settings()
    conn = open_store(str(s.db_path))

    http = ResilientHttpClient(
        HttpClientConfig(
            timeout_secs=s.http_timeout_secs,
            max_retries=s.http_max_retries,
            base_delay_ms=s.http_base_delay_ms,
            max_delay_ms=s.http_max_delay_ms,
            jitter_pct=s.http_jitter_pct,
            errors_before_open=s.breaker_errors_before_open,
            open_duration_ms=s.breaker_open_duration_ms,
            user_agent=s.user_agent,
        )
    )
    rate_limiter = RateLimiter()
    watermarks = WatermarkStore(conn)
    events = EventStore(conn)
    quantiles = Quantiles(max_samples=s.quantiles_max_samples)
    latency = LatencyTracker(quantiles)
    run_stats = RunStats()
    log_deduper = LogDeduper(
        LogDedupConfig(
            window_ms=s.log_dedup_window_ms,
            max_per_window=s.log_dedup_max_per_window,
        )
    )
    notices = NoticeClient(
        http,
        rate_limiter,
        watermarks,
        events,
        latency,
        run_stats=run_stats,
        config=NoticeClientConfig(
            json_url=s.notice_json_url,
            html_url=s.notice_html_url,
            source=s.notice_source,
            poll_interval_s=s.notice_poll_sec,
            live_window_ms=s.live_window_ms,
            cooldown_hours=s.cooldown_hours,
            watermark_grace_sec=s.watermark_grace_sec,
        ),
        log_deduper=log_deduper,
    )
    push = PushChannelHandler(
        events,
        watermarks,
        latency,
        run_stats,
        source=s.push_source,
        cooldown_hours=s.cooldown_hours,
        warmup_ms=s.push_warmup_ms,
        debounce_ms=s.push_debounce_ms,
    )
    push_watcher = PushWatcher(
        push,
        http,
        PushWatcherConfig(
            ws_url=s.push_ws_url,
            rest_url=s.push_rest_url,
            max_reconnect_attempts=s.push_max_reconnects,
            flush_interval_s=s.push_flush_sec,
        ),
    )
    maintenance = Maintenance(
        events,
        latency,
        rate_limiter,
        quantiles,
        log_deduper,
        retention_days=s.event_retention_days,
        flow_ttl_ms=s.latency_flow_ttl_ms,
        interval_s=s.maintenance_interval_sec,
    )
    return Pipeline(
        settings=s,
        http=http,
        rate_limiter=rate_limiter,
        watermarks=watermarks,
        events=events,
        quantiles=quantiles,
        latency=latency,
        run_stats=run_stats,
        log_deduper=log_deduper,
        notices=notices,
        push=push,
        push_watcher=push_watcher,
        maintenance=maintenance,
    )


def _emit(events: List[ProcessedEvent]) -> None:
    for ev in events:
        sys.stdout.write(json.dumps(ev.to_dict(), ensure_ascii=False) + "\n")
    sys.stdout.flush()


async def run_pipeline(pipeline: Pipeline, *, once: bool = False) -> int:
    pipeline.notices.initialize()
    async with pipeline.http:
        if once:
            _emit(await pipeline.notices.poll_once())
            log.info("run_once_done %s", pipeline.run_stats.get_formatted_stats())
            return 0

        stop = asyncio.Event()
        tasks = [
            asyncio.create_task(pipeline.notices.run(stop, on_events=_emit)),
            asyncio.create_task(pipeline.maintenance.run(stop)),
        ]
        if pipeline.settings.push_enabled:
            tasks.append(
                asyncio.create_task(pipeline.push_watcher.run(stop, on_events=_emit))
            )
        try:
            await asyncio.gather(*tasks)
        finally:
            stop.set()
            for t in tasks:
                t.cancel()
            log.info("runner_stopped %s", pipeline.run_stats.get_formatted_stats())
    return 0


def runner_main(*, once: bool = False, loop: bool = False) -> int:
    settings = get_settings()
    setup_logging(settings.log_level)
    try:
        pipeline = build_pipeline(settings)
    except StoreInitError as e:
        log.critical("store_init_failed err=%s", str(e))
        return 2
    try:
        return asyncio.run(run_pipeline(pipeline, once=once or not loop))
    except KeyboardInterrupt:
        log.info("runner_interrupted")
        return 0


def main(argv: Optional[List[str]] = None) -> int:
    ap = argparse.ArgumentParser(description="Listing notice ingestion pipeline")
    ap.add_argument("--once", action="store_true", help="Run a single poll cycle and exit")
    ap.add_argument("--loop", action="store_true", help="Poll continuously")
    args = ap.parse_args(argv)
    return runner_main(once=args.once, loop=args.loop)


if __name__ == "__main__":
    sys.exit(main())
