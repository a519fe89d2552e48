from __future__ import annotations

import time
from typing import Any, Callable, Dict, Optional


class RunStats:
    """Process-level counters for the notice pipeline (one instance per pipeline)."""

    def __init__(self, clock: Callable[[], float] = time.time):
        self._clock = clock
        self.start_time = clock()
        self.new_listings_count = 0
        self.total_notices_processed = 0
        self.total_t0_events = 0
        self.last_listing_time: Optional[float] = None

    def increment_new_listings(self, count: int = 1) -> None:
        self.new_listings_count += count
        self.last_listing_time = self._clock()

    def increment_notices_processed(self, count: int = 1) -> None:
        self.total_notices_processed += count

    def increment_t0_events(self, count: int = 1) -> None:
        self.total_t0_events += count

    def get_uptime(self) -> float:
        return self._clock() - self.start_time

    def get_stats(self) -> Dict[str, Any]:
        return {
            "new_listings_count": self.new_listings_count,
            "total_notices_processed": self.total_notices_processed,
            "total_t0_events": self.total_t0_events,
            "last_listing_time": self.last_listing_time,
            "start_time": self.start_time,
            "uptime_s": self.get_uptime(),
        }

    def get_formatted_stats(self) -> str:
        uptime = int(self.get_uptime())
        hours, rem = divmod(uptime, 3600)
        minutes, seconds = divmod(rem, 60)
        if self.last_listing_time is None:
            last = "never"
        else:
            last = time.strftime(
                "%Y-%m-%dT%H:%M:%SZ", time.gmtime(self.last_listing_time)
            )
        return (
            f"uptime={hours}h{minutes:02d}m{seconds:02d}s "
            f"new_listings={self.new_listings_count} "
            f"notices={self.total_notices_processed} "
            f"t0_events={self.total_t0_events} "
            f"last_listing={last}"
        )

    def reset(self) -> None:
        self.start_time = self._clock()
        self.new_listings_count = 0
        self.total_notices_processed = 0
        self.total_t0_events = 0
        self.last_listing_time = None
