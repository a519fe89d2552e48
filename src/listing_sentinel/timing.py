from __future__ import annotations

from datetime import datetime, timezone
from typing import Optional

from .models import Timing

DEFAULT_LIVE_WINDOW_MS = 120_000


def _as_utc(dt: datetime) -> datetime:
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def classify_listing_timing(
    trade_time: Optional[datetime],
    now: Optional[datetime] = None,
    live_window_ms: int = DEFAULT_LIVE_WINDOW_MS,
) -> Timing:
    """Classify a listing relative to ``now``.

    Unknown trade time counts as live: an undated listing notice is treated
    as already actionable.  Any positive delta is ``future``; within the live
    window on the past side is ``live``; anything older is ``stale``.
    """
    if trade_time is None:
        return Timing.LIVE
    now = _as_utc(now) if now is not None else datetime.now(timezone.utc)
    delta_ms = (_as_utc(trade_time) - now).total_seconds() * 1000.0
    if delta_ms > 0:
        return Timing.FUTURE
    if abs(delta_ms) <= live_window_ms:
        return Timing.LIVE
    return Timing.STALE
