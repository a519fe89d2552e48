import sqlite3
import threading
from datetime import datetime, timezone

import pytest

from listing_sentinel.errors import PersistenceError
from listing_sentinel.event_id import build_event_id
from listing_sentinel.event_store import EventStore
from listing_sentinel.models import InsertResult, ProcessedEvent

TRADE_TIME = datetime(2024, 1, 1, 8, 0, tzinfo=timezone.utc)


def _event(base="AAA", source="bithumb.notice", url="https://feed.bithumb.com/notice/1"):
    return ProcessedEvent(
        event_id=build_event_id(source, base, url, ["KRW"], TRADE_TIME),
        source=source,
        base=base,
        url=url,
        markets=("KRW",),
        trade_time_utc=TRADE_TIME,
        raw_title=f"알파({base}) 원화 마켓 추가",
    )


class TestTryMarkProcessed:
    """Idempotent insert-if-absent."""

    def test_inserted_then_duplicate(self, event_store):
        ev = _event()
        assert event_store.try_mark_processed(ev) is InsertResult.INSERTED
        assert event_store.try_mark_processed(ev) is InsertResult.DUPLICATE
        assert event_store.is_processed(ev.event_id)
        assert event_store.get_dedup_stats()["total"] == 1

    def test_unknown_event_not_processed(self, event_store):
        assert not event_store.is_processed("0" * 64)

    def test_concurrent_inserts_single_winner(self, conn):
        store = EventStore(conn)
        ev = _event()
        results = []
        barrier = threading.Barrier(8)

        def worker():
            barrier.wait()
            results.append(store.try_mark_processed(ev))

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()

        assert results.count(InsertResult.INSERTED) == 1
        assert results.count(InsertResult.DUPLICATE) == 7

    def test_persistence_error_surfaces(self, conn):
        store = EventStore(conn)
        conn.execute("DROP TABLE processed_events")
        with pytest.raises(PersistenceError):
            store.try_mark_processed(_event())


class TestCooldown:
    """Cross-source per-base cooldown."""

    def test_recently_traded(self, conn, clock):
        store = EventStore(conn, clock=clock)
        assert not store.is_base_recently_traded("AAA")
        record = store.mark_base_as_traded("aaa", "e1")
        assert record.base == "AAA"
        assert store.is_base_recently_traded("AAA", cooldown_hours=24)
        assert store.is_base_recently_traded("aaa", cooldown_hours=24)

    def test_cooldown_expires(self, conn, clock):
        store = EventStore(conn, clock=clock)
        store.mark_base_as_traded("AAA", "e1")
        clock.advance(25 * 3_600_000)
        assert not store.is_base_recently_traded("AAA", cooldown_hours=24)
        assert store.is_base_recently_traded("AAA", cooldown_hours=48)


class TestQueriesAndCleanup:
    def test_recent_events_and_stats(self, conn, clock):
        store = EventStore(conn, clock=clock)
        store.try_mark_processed(_event("AAA"))
        clock.advance(10)
        store.try_mark_processed(_event("BBB", source="bithumb.ws"))

        recent = store.get_recent_events(limit=10)
        assert [r["base"] for r in recent] == ["BBB", "AAA"]
        assert recent[0]["markets"] == ["KRW"]
        assert recent[1]["trade_time_utc"] == "2024-01-01T08:00:00.000Z"

        stats = store.get_dedup_stats()
        assert stats["total"] == 2
        assert stats["by_source"] == {"bithumb.notice": 1, "bithumb.ws": 1}

    def test_cleanup_old_events(self, conn, clock):
        store = EventStore(conn, clock=clock)
        store.try_mark_processed(_event("AAA"))
        clock.advance(31 * 86_400_000)
        store.try_mark_processed(_event("BBB"))
        assert store.cleanup_old_events(30) == 1
        assert [r["base"] for r in store.get_recent_events()] == ["BBB"]


def test_schema_has_expected_tables(conn):
    names = {
        row[0]
        for row in conn.execute("SELECT name FROM sqlite_master WHERE type='table'")
    }
    assert {"watermarks", "processed_events", "processed_bases"} <= names
    assert isinstance(conn, sqlite3.Connection)
