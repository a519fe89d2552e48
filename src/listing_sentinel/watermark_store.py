"""
Watermark store (anti-replay per logical source)

Purpose
-------
Remember, per source ("bithumb.notice", "bithumb.ws", ...), the highest
``(published_at, item_id)`` pair already considered so restarts and repeated
polls skip anything not strictly newer.

Design
------
- Table ``watermarks(source PK, last_published_at, last_item_id, updated_at)``.
- Pairs compare lexicographically: time first, then item id as text.
- The upsert carries its own ``WHERE`` guard, so a stale or out-of-order
  batch can never move a watermark backwards, even under concurrent writers.
- On boot the watermark is armed to "now minus grace" rather than "now", so
  items published just before startup are still seen.
- Notices that carry only a board-local date have no position on the time
  axis.  They are compared by day (same day or later is considered) and never
  move the watermark; repeats are left to the dedup insert.
"""

from __future__ import annotations

import sqlite3
import threading
import time
from datetime import date, datetime, timezone
from typing import Callable, Iterable, Optional, Tuple, Union

from .errors import PersistenceError
from .logging_utils import get_logger
from .models import RawNotice, Watermark
from .notice_parser import KST

log = get_logger("watermark_store")

WatermarkItem = Union[RawNotice, Tuple[int, str]]

_UPSERT_SQL = """
INSERT INTO watermarks (source, last_published_at, last_item_id, updated_at)
VALUES (?, ?, ?, ?)
ON CONFLICT(source) DO UPDATE SET
  last_published_at = excluded.last_published_at,
  last_item_id = excluded.last_item_id,
  updated_at = excluded.updated_at
WHERE excluded.last_published_at > watermarks.last_published_at
   OR (excluded.last_published_at = watermarks.last_published_at
       AND excluded.last_item_id >= watermarks.last_item_id)
"""


def _now_ms() -> int:
    return int(time.time() * 1000)


def item_key(item: WatermarkItem) -> Tuple[int, str]:
    if isinstance(item, RawNotice):
        return (int(item.published_ts), item.item_id)
    published_at, item_id = item
    return (int(published_at), str(item_id))


def _is_untimed(item: WatermarkItem) -> bool:
    return isinstance(item, RawNotice) and not item.is_timed


def _board_day(ts_ms: int) -> date:
    return datetime.fromtimestamp(ts_ms / 1000.0, tz=timezone.utc).astimezone(KST).date()


class WatermarkStore:
    def __init__(
        self,
        conn: sqlite3.Connection,
        clock: Callable[[], int] = _now_ms,
        lock: Optional[threading.Lock] = None,
    ):
        self._conn = conn
        self._clock = clock
        self._lock = lock or threading.Lock()

    def get(self, source: str) -> Optional[Watermark]:
        with self._lock:
            try:
                row = self._conn.execute(
                    "SELECT source, last_published_at, last_item_id, updated_at "
                    "FROM watermarks WHERE source = ?",
                    (source,),
                ).fetchone()
            except sqlite3.Error as e:
                raise PersistenceError(f"watermark read failed: {e}") from e
        if row is None:
            return None
        return Watermark(
            source=row[0],
            last_published_at=int(row[1]),
            last_item_id=str(row[2]),
            updated_at=int(row[3]),
        )

    def should_consider(self, source: str, item: WatermarkItem) -> bool:
        """True when ``item`` is strictly newer than the stored watermark."""
        wm = self.get(source)
        if wm is None:
            return True
        if _is_untimed(item):
            day = item.published_day  # type: ignore[union-attr]
            return day is None or day >= _board_day(wm.last_published_at)
        return item_key(item) > wm.key

    def _upsert(self, source: str, key: Tuple[int, str]) -> bool:
        with self._lock:
            try:
                cur = self._conn.execute(
                    _UPSERT_SQL, (source, key[0], key[1], self._clock())
                )
            except sqlite3.Error as e:
                log.error(
                    "watermark_upsert_failed source=%s err=%s", source, str(e)
                )
                raise PersistenceError(f"watermark upsert failed: {e}") from e
            return cur.rowcount > 0

    def update_from_batch(self, source: str, items: Iterable[WatermarkItem]) -> bool:
        """Advance the watermark to the batch maximum; returns True if it moved.

        Never regresses: a batch whose maximum is older than the stored pair is
        a no-op.
        """
        keys = [item_key(i) for i in items if not _is_untimed(i)]
        if not keys:
            return False
        best = max(keys)
        moved = self._upsert(source, best)
        log.debug(
            "watermark_update source=%s published_at=%d item_id=%s moved=%s",
            source,
            best[0],
            best[1],
            moved,
        )
        return moved

    def initialize_at_boot(self, source: str, grace_seconds: int = 300) -> Watermark:
        """Arm ``source`` at now minus ``grace_seconds`` unless already newer."""
        seed = (self._clock() - int(grace_seconds) * 1000, "")
        self._upsert(source, seed)
        wm = self.get(source)
        if wm is None:  # pragma: no cover - upsert always leaves a row
            raise PersistenceError(f"watermark for {source} missing after boot seed")
        log.info(
            "watermark_initialized source=%s last_published_at=%d last_item_id=%s",
            source,
            wm.last_published_at,
            wm.last_item_id or "-",
        )
        return wm
