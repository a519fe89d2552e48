"""
Event store (idempotent dedup + cross-source cooldown)

Purpose
-------
Persist accepted listing events keyed by their content hash so each real
listing is acted upon exactly once, and remember per base ticker when any
source last acted on it.

Design
------
- ``processed_events(event_id PK, ...)``: written with a single
  ``INSERT OR IGNORE``; the row count tells INSERTED from DUPLICATE.  No
  explicit transactions are opened on the shared connection.
- ``processed_bases(base PK, last_acted_at, last_event_id)``: cooldown index,
  ``last_acted_at`` stored as ISO-8601 UTC text.
- Retention cleanup runs from maintenance, never inline with inserts.
"""

from __future__ import annotations

import json
import sqlite3
import threading
import time
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Optional

from .errors import PersistenceError
from .event_id import format_trade_time, normalize_markets
from .logging_utils import get_logger
from .models import BaseCooldownRecord, InsertResult, ProcessedEvent

log = get_logger("event_store")


def _now_ms() -> int:
    return int(time.time() * 1000)


class EventStore:
    def __init__(
        self,
        conn: sqlite3.Connection,
        clock: Callable[[], int] = _now_ms,
        lock: Optional[threading.Lock] = None,
    ):
        self._conn = conn
        self._clock = clock
        self._lock = lock or threading.Lock()

    def _now_dt(self) -> datetime:
        return datetime.fromtimestamp(self._clock() / 1000.0, tz=timezone.utc)

    def try_mark_processed(self, event: ProcessedEvent) -> InsertResult:
        """Insert ``event`` if its id is new.  Duplicates are not errors."""
        markets = json.dumps(normalize_markets(event.markets))
        trade_time = format_trade_time(event.trade_time_utc)
        with self._lock:
            try:
                cur = self._conn.execute(
                    """
                    INSERT OR IGNORE INTO processed_events
                      (event_id, source, base, url, markets, trade_time_utc,
                       raw_title, created_at)
                    VALUES (?, ?, ?, ?, ?, ?, ?, ?)
                    """,
                    (
                        event.event_id,
                        event.source,
                        event.base.upper(),
                        event.url,
                        markets,
                        trade_time,
                        event.raw_title,
                        self._clock(),
                    ),
                )
            except sqlite3.Error as e:
                log.error(
                    "event_insert_failed event_id=%s err=%s",
                    event.event_id[:12],
                    str(e),
                )
                raise PersistenceError(f"event insert failed: {e}") from e
        if cur.rowcount == 1:
            return InsertResult.INSERTED
        return InsertResult.DUPLICATE

    def is_processed(self, event_id: str) -> bool:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT 1 FROM processed_events WHERE event_id = ? LIMIT 1",
                    (event_id,),
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"event lookup failed: {e}") from e
        return row is not None

    def is_base_recently_traded(self, base: str, cooldown_hours: float = 24) -> bool:
        cutoff = (self._now_dt() - timedelta(hours=cooldown_hours)).isoformat(
            timespec="milliseconds"
        )
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT 1 FROM processed_bases WHERE base = ? AND last_acted_at > ?",
                    (base.upper(), cutoff),
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"cooldown lookup failed: {e}") from e
        return row is not None

    def mark_base_as_traded(self, base: str, event_id: str) -> BaseCooldownRecord:
        record = BaseCooldownRecord(
            base=base.upper(),
            last_acted_at=self._now_dt().isoformat(timespec="milliseconds"),
            last_event_id=event_id,
        )
        with self._lock:
            try:
                self._conn.execute(
                    "INSERT OR REPLACE INTO processed_bases "
                    "(base, last_acted_at, last_event_id) VALUES (?, ?, ?)",
                    (record.base, record.last_acted_at, record.last_event_id),
                )
            except sqlite3.Error as e:
                raise PersistenceError(f"cooldown write failed: {e}") from e
        log.info("base_marked_traded base=%s event_id=%s", record.base, event_id[:12])
        return record

    def get_recent_events(self, limit: int = 50) -> List[Dict[str, Any]]:
        with self._lock:
            rows = self._conn.execute(
                "SELECT event_id, source, base, url, markets, trade_time_utc, "
                "raw_title, created_at FROM processed_events "
                "ORDER BY created_at DESC, rowid DESC LIMIT ?",
                (int(limit),),
            ).fetchall()
        return [
            {
                "event_id": r[0],
                "source": r[1],
                "base": r[2],
                "url": r[3],
                "markets": json.loads(r[4]) if r[4] else [],
                "trade_time_utc": r[5] or None,
                "raw_title": r[6],
                "created_at": r[7],
            }
            for r in rows
        ]

    def get_dedup_stats(self) -> Dict[str, Any]:
        with self._lock:
            total = self._conn.execute(
                "SELECT COUNT(*) FROM processed_events"
            ).fetchone()[0]
            by_source = self._conn.execute(
                "SELECT source, COUNT(*) FROM processed_events GROUP BY source"
            ).fetchall()
            by_base = self._conn.execute(
                "SELECT base, COUNT(*) FROM processed_events GROUP BY base "
                "ORDER BY COUNT(*) DESC, base LIMIT 20"
            ).fetchall()
        return {
            "total": int(total),
            "by_source": {s: int(c) for s, c in by_source},
            "by_base": {b: int(c) for b, c in by_base},
        }

    def cleanup_old_events(self, older_than_days: int) -> int:
        """Delete events older than the retention window; returns rows removed."""
        cutoff = self._clock() - int(older_than_days) * 86_400_000
        with self._lock:
            try:
                cur = self._conn.execute(
                    "DELETE FROM processed_events WHERE created_at < ?", (cutoff,)
                )
            except sqlite3.Error as e:
                log.warning("event_cleanup_failed err=%s", str(e))
                raise PersistenceError(f"event cleanup failed: {e}") from e
        removed = cur.rowcount if cur.rowcount and cur.rowcount > 0 else 0
        log.info("event_cleanup removed=%d older_than_days=%d", removed, older_than_days)
        return removed
