import pytest

from listing_sentinel.event_id import build_ticker_event_id
from listing_sentinel.push_channel import PushChannelHandler, extract_base_from_symbol
from listing_sentinel.run_stats import RunStats


@pytest.mark.parametrize(
    "symbol,expected",
    [
        ("ABC_KRW", "ABC"),
        ("A1.B_KRW", "A1.B"),
        ("W_KRW", None),
        ("USDT_KRW", None),
        ("abc_KRW", None),
        ("ABC", None),
        ("ABC_KRW_X", None),
        ("", None),
        (None, None),
    ],
)
def test_extract_base_from_symbol(symbol, expected):
    assert extract_base_from_symbol(symbol) == expected


def _handler(event_store, watermark_store, latency, **kw):
    kw.setdefault("warmup_ms", 0)
    kw.setdefault("debounce_ms", 0)
    kw.setdefault("clock", lambda: 1_000)
    return PushChannelHandler(event_store, watermark_store, latency, RunStats(), **kw)


class TestPushChannelHandler:
    """Ticker stream messages through the dedup path."""

    def test_new_base_accepted_once(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency)
        ev = handler.handle_message({"type": "ticker", "content": {"symbol": "ABC_KRW"}})
        assert ev is not None
        assert ev.event_id == build_ticker_event_id("bithumb.ws", "ABC")
        assert ev.markets == ("KRW",)
        assert latency.counters["new"] == 1
        assert event_store.is_base_recently_traded("ABC")

        # second message for the same base is inside the cooldown
        assert handler.handle_message({"symbol": "ABC_KRW"}) is None
        assert latency.counters["new"] == 1

    def test_duplicate_after_cooldown_expires(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency)
        handler.cooldown_hours = 0
        assert handler.handle_message({"symbol": "ABC_KRW"}) is not None
        assert handler.handle_message({"symbol": "ABC_KRW"}) is None
        assert latency.counters["dup"] == 1

    def test_watermark_advanced(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency)
        handler.handle_message({"symbol": "ABC_KRW", "timestamp": 5_000})
        assert watermark_store.get("bithumb.ws").key == (5_000, "ABC_KRW")
        handler.handle_message({"symbol": "DEF_KRW"})
        # clock fallback (1_000) is older, so the watermark keeps its place
        assert watermark_store.get("bithumb.ws").key == (5_000, "ABC_KRW")

    def test_ignored_symbols(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency)
        assert handler.handle_message({"symbol": "USDT_KRW"}) is None
        assert handler.handle_message({"content": {}}) is None
        assert event_store.get_dedup_stats()["total"] == 0

    def test_in_flight_guard(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency)
        handler._in_flight.add("ABC")
        assert handler.handle_message({"symbol": "ABC_KRW"}) is None
        assert event_store.get_dedup_stats()["total"] == 0


class TestExistingMarkets:
    """Markets that already trade never surface as listings."""

    def test_warmup_learns_existing_markets(self, event_store, watermark_store, latency, clock):
        handler = PushChannelHandler(
            event_store, watermark_store, latency, RunStats(), clock=clock
        )
        assert handler.is_warming_up
        for symbol in ("BTC_KRW", "XRP_KRW", "ETH_KRW"):
            assert handler.handle_message({"symbol": symbol}) is None
        assert {"BTC", "XRP", "ETH"} <= handler.baseline

        clock.advance(handler.warmup_ms)
        assert not handler.is_warming_up
        assert handler.handle_message({"symbol": "BTC_KRW"}) is None
        clock.advance(handler.debounce_ms)
        assert handler.flush_due() == []
        assert event_store.get_dedup_stats()["total"] == 0
        assert latency.counters["new"] == 0

    def test_preloaded_baseline(self, event_store, watermark_store, latency):
        handler = _handler(event_store, watermark_store, latency, baseline=["btc", "ETH"])
        assert handler.handle_message({"symbol": "BTC_KRW"}) is None
        assert handler.add_baseline(["ETH", "XRP"]) == 1
        assert handler.handle_message({"symbol": "XRP_KRW"}) is None
        assert handler.handle_message({"symbol": "NEW_KRW"}) is not None

    def test_warmup_restarts_on_reconnect(self, event_store, watermark_store, latency, clock):
        handler = _handler(
            event_store, watermark_store, latency, warmup_ms=5_000, clock=clock
        )
        clock.advance(5_000)
        handler.start_warmup()
        assert handler.handle_message({"symbol": "ADA_KRW"}) is None
        assert "ADA" in handler.baseline


class TestDebounce:
    def test_candidate_waits_for_window(self, event_store, watermark_store, latency, clock):
        handler = _handler(
            event_store, watermark_store, latency, debounce_ms=10_000, clock=clock
        )
        assert handler.handle_message({"symbol": "NEW_KRW"}) is None
        assert handler.handle_message({"symbol": "NEW_KRW"}) is None
        assert handler.pending_bases == ["NEW"]
        assert event_store.get_dedup_stats()["total"] == 0

        clock.advance(9_999)
        assert handler.flush_due() == []
        clock.advance(1)
        [event] = handler.flush_due()
        assert event.base == "NEW"
        assert handler.pending_bases == []
        assert latency.counters["new"] == 1

    def test_baseline_cancels_pending(self, event_store, watermark_store, latency, clock):
        handler = _handler(
            event_store, watermark_store, latency, debounce_ms=10_000, clock=clock
        )
        handler.handle_message({"symbol": "NEW_KRW"})
        handler.add_baseline(["NEW"])
        clock.advance(10_000)
        assert handler.flush_due() == []

    def test_cooldown_blocks_queueing(self, event_store, watermark_store, latency, clock):
        handler = _handler(
            event_store, watermark_store, latency, debounce_ms=10_000, clock=clock
        )
        event_store.mark_base_as_traded("NEW", "e" * 64)
        assert handler.handle_message({"symbol": "NEW_KRW"}) is None
        assert handler.pending_bases == []
