"""
Repeated-log suppression.

Polling loops hit the same condition every few seconds ("no source
available", "breaker open").  ``LogDeduper.note`` lets the first
``max_per_window`` occurrences of a key through per window and counts the
rest; ``flush`` emits one summary line per suppressed key.

Env
---
LOG_DEDUP_WINDOW_MS        (default: "60000")
LOG_DEDUP_MAX_PER_WINDOW   (default: "2")
LOG_DEDUP_MAX_ENTRIES      (default: "1000")
"""

from __future__ import annotations

import logging
import os
import time
from dataclasses import dataclass
from typing import Any, Callable, Dict, Optional

import cachetools

from .logging_utils import get_logger

log = get_logger("log_dedup")


def _now_ms() -> float:
    return time.time() * 1000.0


@dataclass
class LogDedupConfig:
    window_ms: float = 60_000
    max_per_window: int = 2
    max_entries: int = 1000
    entry_ttl_ms: float = 300_000

    @classmethod
    def from_env(cls) -> "LogDedupConfig":
        return cls(
            window_ms=float(os.getenv("LOG_DEDUP_WINDOW_MS", str(cls.window_ms))),
            max_per_window=int(
                os.getenv("LOG_DEDUP_MAX_PER_WINDOW", str(cls.max_per_window))
            ),
            max_entries=int(os.getenv("LOG_DEDUP_MAX_ENTRIES", str(cls.max_entries))),
        )


@dataclass
class _Entry:
    count: int
    last_log: float
    suppressed: int = 0


class LogDeduper:
    def __init__(
        self,
        config: Optional[LogDedupConfig] = None,
        clock: Callable[[], float] = _now_ms,
        logger: Optional[logging.Logger] = None,
    ):
        self.cfg = config or LogDedupConfig.from_env()
        self._clock = clock
        self._logger = logger or log
        # Bounded and self-expiring; idle keys fall out after entry_ttl_ms
        self._entries: cachetools.TTLCache = cachetools.TTLCache(
            maxsize=self.cfg.max_entries, ttl=self.cfg.entry_ttl_ms, timer=clock
        )
        self.total_processed = 0
        self.total_suppressed = 0

    def note(self, key: str, message: str, *args: Any, level: int = logging.INFO) -> bool:
        """Log ``message % args`` unless ``key`` is over its budget; returns True if logged."""
        now = self._clock()
        entry = self._entries.get(key)
        if entry is None:
            self._entries[key] = _Entry(count=1, last_log=now)
        elif now - entry.last_log > self.cfg.window_ms:
            entry.count = 1
            entry.last_log = now
            entry.suppressed = 0
        elif entry.count < self.cfg.max_per_window:
            entry.count += 1
        else:
            entry.count += 1
            entry.suppressed += 1
            self.total_suppressed += 1
            return False

        self.total_processed += 1
        self._logger.log(level, message, *args)
        return True

    def flush(self) -> int:
        """Log one summary per key with suppressed lines; returns the total."""
        total = 0
        for key, entry in list(self._entries.items()):
            if entry.suppressed:
                self._logger.info(
                    "log_dedup_summary key=%s suppressed=%d", key, entry.suppressed
                )
                total += entry.suppressed
                entry.suppressed = 0
        return total

    def clear(self) -> None:
        self._entries.clear()

    def get_stats(self) -> Dict[str, Any]:
        return {
            "entries": len(self._entries),
            "total_processed": self.total_processed,
            "total_suppressed": self.total_suppressed,
        }
