"""Deterministic content-addressed event identity.

The same listing seen twice (two fetch paths, two encodings, a URL with
tracking parameters) must hash to the same id, which is the dedup key in
``processed_events``.
"""

from __future__ import annotations

import hashlib
import re
from datetime import datetime, timezone
from typing import Iterable, List, Optional, Union
from urllib.parse import urlsplit, urlunsplit

_EVENT_ID_RE = re.compile(r"^[a-f0-9]{64}$")


def normalize_url(url: Optional[str]) -> str:
    """Force https and drop query string and fragment; "" when unusable."""
    if not url:
        return ""
    try:
        parts = urlsplit(url.strip())
    except ValueError:
        return ""
    if not parts.netloc:
        return ""
    return urlunsplit(("https", parts.netloc, parts.path, "", ""))


def normalize_markets(markets: Optional[Iterable[str]]) -> List[str]:
    return sorted({m.strip().upper() for m in (markets or []) if m and m.strip()})


def format_trade_time(trade_time: Union[datetime, str, None]) -> str:
    """UTC ISO-8601 with milliseconds, e.g. ``2024-01-01T08:00:00.000Z``."""
    if trade_time is None or trade_time == "":
        return ""
    if isinstance(trade_time, str):
        return trade_time
    if trade_time.tzinfo is None:
        trade_time = trade_time.replace(tzinfo=timezone.utc)
    utc = trade_time.astimezone(timezone.utc)
    return utc.strftime("%Y-%m-%dT%H:%M:%S.") + f"{utc.microsecond // 1000:03d}Z"


def _digest(raw: str) -> str:
    return hashlib.sha256(raw.encode("utf-8")).hexdigest()


def build_event_id(
    source: str,
    base: str,
    url: Optional[str] = "",
    markets: Optional[Iterable[str]] = None,
    trade_time: Union[datetime, str, None] = None,
) -> str:
    raw = "|".join(
        [
            source,
            (base or "").strip().upper(),
            normalize_url(url),
            ",".join(normalize_markets(markets)),
            format_trade_time(trade_time),
        ]
    )
    return _digest(raw)


def build_ticker_event_id(source: str, base: str) -> str:
    """Id for push-channel detections that carry nothing but a ticker."""
    return _digest(f"{source}|{(base or '').strip().upper()}")


def is_valid_event_id(value: object) -> bool:
    return isinstance(value, str) and bool(_EVENT_ID_RE.match(value))
