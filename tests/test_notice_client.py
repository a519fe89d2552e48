# -*- coding: utf-8 -*-
import json
from datetime import datetime, timedelta, timezone

import pytest

from listing_sentinel.errors import CircuitOpenError, NetworkFailure
from listing_sentinel.log_dedup import LogDeduper
from listing_sentinel.models import Timing
from listing_sentinel.notice_client import NoticeClient, NoticeClientConfig
from listing_sentinel.notice_parser import (
    KST,
    build_notice,
    parse_notices_html,
    parse_notices_json,
)
from listing_sentinel.rate_limiter import RateLimiter
from listing_sentinel.run_stats import RunStats

pytestmark = pytest.mark.anyio

JSON_URL = "https://api.example.test/notices"
HTML_URL = "https://feed.example.test/notice"


class FakeHttp:
    """Stands in for ResilientHttpClient.get_bytes."""

    def __init__(self, responses):
        self.responses = responses
        self.calls = []

    async def get_bytes(self, url, accept="*/*", destination=None):
        self.calls.append(url)
        resp = self.responses.get(url)
        if isinstance(resp, Exception):
            raise resp
        if resp is None:
            raise NetworkFailure(f"no route to {url}")
        return resp


def _kst_now():
    return datetime.now(timezone.utc).astimezone(KST).replace(microsecond=0)


def _payload(nid, title, published, content=""):
    return {
        "id": nid,
        "title": title,
        "content": content,
        "categories": ["공지"],
        "pc_url": f"https://feed.bithumb.com/notice/{nid}?src=list",
        "published_at": published.strftime("%Y-%m-%d %H:%M:%S"),
    }


def _client(event_store, watermark_store, latency, http=None, **cfg):
    config = NoticeClientConfig(json_url=JSON_URL, html_url=HTML_URL, **cfg)
    limiter = RateLimiter()
    # failures are still counted but never block the next fetch
    limiter.configure("BITHUMB", retry_delay_ms=0)
    return NoticeClient(
        http or FakeHttp({}),
        limiter,
        watermark_store,
        event_store,
        latency,
        run_stats=RunStats(),
        config=config,
        log_deduper=LogDeduper(),
    )


class TestProcessNotice:
    """Per-notice pipeline: extraction, detection, dedup."""

    def test_end_to_end_three_notices(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        published = _kst_now()
        now = published.astimezone(timezone.utc) + timedelta(seconds=5)
        notices = [
            build_notice(_payload(101, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published)),
            build_notice(_payload(102, "[마켓 추가] 베타(BBB) 원화 마켓 추가", published)),
            build_notice(_payload(103, "[점검] 시스템 정기 점검 안내", published)),
        ]

        accepted = []
        for n in notices:
            accepted.extend(
                client.process_notice(n, ignore_watermark=True, bypass_cooldown=True, now=now)
            )

        assert [e.base for e in accepted] == ["AAA", "BBB"]
        assert all(e.timing is Timing.LIVE for e in accepted)
        assert latency.counters["new"] == 2
        assert latency.counters["dup"] == 0
        assert client.run_stats.new_listings_count == 2
        assert client.run_stats.total_notices_processed == 3

    def test_multi_ticker_notice(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        published = _kst_now()
        notice = build_notice(
            _payload(201, "[마켓 추가] 베타(BBB), 감마(CCC) 원화 마켓 추가", published)
        )
        events = client.process_notice(
            notice,
            ignore_watermark=True,
            bypass_cooldown=True,
            now=published.astimezone(timezone.utc),
        )
        assert [e.base for e in events] == ["BBB", "CCC"]
        assert events[0].event_id != events[1].event_id
        assert events[0].url == events[1].url == "https://feed.bithumb.com/notice/201"
        assert events[0].notice_id == "201"

    def test_replay_is_duplicate(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        published = _kst_now()
        notice = build_notice(_payload(301, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published))
        now = published.astimezone(timezone.utc)

        first = client.process_notice(notice, ignore_watermark=True, bypass_cooldown=True, now=now)
        second = client.process_notice(notice, ignore_watermark=True, bypass_cooldown=True, now=now)
        assert len(first) == 1
        assert second == []
        assert latency.counters["new"] == 1
        assert latency.counters["dup"] == 1

    def test_cooldown_blocks_second_source(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        event_store.mark_base_as_traded("AAA", "from-push")
        published = _kst_now()
        notice = build_notice(_payload(302, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published))
        assert client.process_notice(notice, ignore_watermark=True) == []
        assert event_store.get_dedup_stats()["total"] == 0

    def test_live_acceptance_starts_cooldown(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        published = _kst_now()
        notice = build_notice(_payload(303, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published))
        client.process_notice(
            notice, ignore_watermark=True, now=published.astimezone(timezone.utc)
        )
        assert event_store.is_base_recently_traded("AAA")

    def test_timing_counters(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        published = _kst_now()
        utc = published.astimezone(timezone.utc)
        future = build_notice(_payload(401, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published))
        stale = build_notice(_payload(402, "[마켓 추가] 베타(BBB) 원화 마켓 추가", published))

        ev_future = client.process_notice(
            future, ignore_watermark=True, now=utc - timedelta(minutes=10)
        )
        ev_stale = client.process_notice(
            stale, ignore_watermark=True, now=utc + timedelta(minutes=10)
        )
        assert ev_future[0].timing is Timing.FUTURE
        assert ev_stale[0].timing is Timing.STALE
        assert latency.counters["future"] == 1
        assert latency.counters["stale"] == 1
        assert latency.counters["new"] == 0

    def test_ticker_notice_that_is_not_a_listing(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        notice = build_notice(
            _payload(501, "[안내] 알파(AAA) 입출금 일시 중단 안내", _kst_now())
        )
        assert client.process_notice(notice, ignore_watermark=True) == []

    def test_watermark_respected(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        notice = build_notice(
            _payload(601, "[마켓 추가] 알파(AAA) 원화 마켓 추가", _kst_now())
        )
        watermark_store.update_from_batch(client.config.source, [notice])
        assert client.process_notice(notice, bypass_cooldown=True) == []


class TestFetchLatestNotices:
    """Source selection and fallback across the two renderings."""

    async def test_json_preferred_when_equal(self, event_store, watermark_store, latency):
        published = _kst_now()
        body = json.dumps([_payload(701, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published)], ensure_ascii=False)
        html = "<div class='notice-item'><h3>[마켓 추가] 알파(AAA) 원화 마켓 추가</h3><div class='date'>2024-01-01</div></div>"
        http = FakeHttp(
            {
                JSON_URL: (body.encode("utf-8"), "application/json; charset=utf-8"),
                HTML_URL: (html.encode("utf-8"), "text/html; charset=utf-8"),
            }
        )
        client = _client(event_store, watermark_store, latency, http=http)
        notices = await client.fetch_latest_notices()
        assert [n.item_id for n in notices] == ["701"]

    async def test_one_source_down(self, event_store, watermark_store, latency):
        html = "<div class='notice-item'><a href='/notice/702'><h3>[마켓 추가] 알파(AAA) 원화 마켓 추가</h3></a><div class='date'>2024-01-01 10:00</div></div>"
        http = FakeHttp(
            {
                JSON_URL: CircuitOpenError("api.example.test", retry_in_ms=1_000),
                HTML_URL: (html.encode("euc-kr"), "text/html"),
            }
        )
        client = _client(event_store, watermark_store, latency, http=http)
        notices = await client.fetch_latest_notices()
        assert [n.item_id for n in notices] == ["702"]

    async def test_unparsable_winner_falls_back(self, event_store, watermark_store, latency):
        html = "<div class='notice-item'><h3>[마켓 추가] 알파(AAA) 원화 마켓 추가</h3><div class='date'>2024-01-01</div></div>"
        http = FakeHttp(
            {
                JSON_URL: ('{"status": "5600", "message": "점검 중"}'.encode("utf-8"), "application/json"),
                HTML_URL: (html.encode("utf-8"), "text/html"),
            }
        )
        client = _client(event_store, watermark_store, latency, http=http)
        notices = await client.fetch_latest_notices()
        assert len(notices) == 1

    async def test_both_down_yields_nothing(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency, http=FakeHttp({}))
        assert await client.fetch_latest_notices() == []
        # failures penalize the destination
        assert client.rate_limiter.windows["BITHUMB"].consecutive_failures == 2


class TestPollOnce:
    async def test_poll_then_replay(self, event_store, watermark_store, latency):
        published = _kst_now()
        body = json.dumps(
            [
                _payload(801, "[마켓 추가] 알파(AAA) 원화 마켓 추가", published),
                _payload(800, "[점검] 시스템 정기 점검 안내", published - timedelta(minutes=1)),
            ],
            ensure_ascii=False,
        )
        http = FakeHttp({JSON_URL: (body.encode("utf-8"), "application/json"), HTML_URL: NetworkFailure("x")})
        client = _client(event_store, watermark_store, latency, http=http)
        now = published.astimezone(timezone.utc)

        first = await client.poll_once(now=now)
        assert [e.base for e in first] == ["AAA"]
        wm = watermark_store.get(client.config.source)
        assert wm.last_item_id == "801"

        second = await client.poll_once(now=now)
        assert second == []
        assert latency.counters["new"] == 1
        assert latency.counters["dup"] == 0

        stages = latency.get_metrics()["stages"]
        assert "t0_detect_to_insert" in stages

    async def test_disabled_client_skips(self, event_store, watermark_store, latency):
        http = FakeHttp({})
        client = _client(event_store, watermark_store, latency, http=http)
        client.disable("maintenance", retry_after_s=3_600)
        assert await client.poll_once() == []
        assert http.calls == []
        client.enable()
        assert client.is_enabled

    async def test_initialize_arms_watermark(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency, watermark_grace_sec=60)
        client.initialize()
        assert watermark_store.get(client.config.source) is not None


class TestRenderingIndependence:
    """The JSON and HTML views of one notice collapse to one event."""

    TITLE = "[마켓 추가] 알파(AAA) 원화 마켓 추가"

    def _html(self, nid, day):
        return (
            f"<div class='notice-item'><a href='/notice/{nid}'><h3>{self.TITLE}</h3></a>"
            f"<div class='notice-date'>{day}</div></div>"
        )

    def test_same_notice_through_both_parsers(self, event_store, watermark_store, latency):
        client = _client(event_store, watermark_store, latency)
        json_notice = parse_notices_json(
            json.dumps(
                [
                    {
                        "id": 123,
                        "title": self.TITLE,
                        "pc_url": "https://feed.example.test/notice/123",
                        "published_at": "2030-01-15 10:00:00",
                    }
                ],
                ensure_ascii=False,
            )
        )[0]
        html_notice = parse_notices_html(self._html(123, "2030.01.15"), HTML_URL)[0]
        assert html_notice.url == "https://feed.example.test/notice/123"
        assert html_notice.trade_time_utc is None

        now = datetime(2030, 1, 1, tzinfo=timezone.utc)
        accepted = client.process_notice(json_notice, ignore_watermark=True, now=now)
        accepted += client.process_notice(html_notice, ignore_watermark=True, now=now)

        assert len(accepted) == 1
        assert accepted[0].timing is Timing.FUTURE
        assert latency.counters["dup"] == 1

    async def test_json_then_html_only_polls(self, event_store, watermark_store, latency):
        published = datetime(2030, 1, 15, 10, 0, tzinfo=KST)
        body = json.dumps(
            [_payload(124, self.TITLE, published)], ensure_ascii=False
        ).encode("utf-8")
        http = FakeHttp({JSON_URL: (body, "application/json"), HTML_URL: NetworkFailure("x")})
        client = _client(event_store, watermark_store, latency, http=http)
        now = datetime(2030, 1, 1, tzinfo=timezone.utc)

        first = await client.poll_once(now=now)
        assert [e.timing for e in first] == [Timing.FUTURE]

        http.responses = {
            JSON_URL: NetworkFailure("down"),
            HTML_URL: (self._html(124, "2030.01.15").encode("utf-8"), "text/html"),
        }
        assert await client.poll_once(now=now) == []
        assert event_store.get_dedup_stats()["total"] == 1

    async def test_html_only_poll_after_boot(self, event_store, watermark_store, latency):
        today = _kst_now().strftime("%Y.%m.%d")
        http = FakeHttp(
            {
                JSON_URL: NetworkFailure("down"),
                HTML_URL: (self._html(125, today).encode("utf-8"), "text/html"),
            }
        )
        client = _client(event_store, watermark_store, latency, http=http)
        client.initialize()

        first = await client.poll_once()
        assert [e.base for e in first] == ["AAA"]
        # the untimed row does not move the watermark and is not reprocessed
        assert watermark_store.get(client.config.source).last_item_id == ""
        assert await client.poll_once() == []
        assert latency.counters["dup"] == 0
