from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from enum import Enum
from typing import Any, Dict, List, Optional, Tuple, Union


class Timing(str, Enum):
    LIVE = "live"
    FUTURE = "future"
    STALE = "stale"


class InsertResult(str, Enum):
    INSERTED = "INSERTED"
    DUPLICATE = "DUPLICATE"


@dataclass(frozen=True)
class RawNotice:
    """
    Upstream notice as delivered by the board.  ``published_at`` keeps the
    board's local-time string; ``published_ts`` (epoch ms, UTC) and
    ``trade_time_utc`` are derived when the notice is parsed.  A date-only
    ``published_at`` fills ``published_day`` and leaves both unset (0 / None).
    """

    id: Union[int, str]
    title: str
    content: str = ""
    categories: Tuple[str, ...] = ()
    url: str = ""
    published_at: str = ""
    published_ts: int = 0
    trade_time_utc: Optional[datetime] = None
    published_day: Optional[date] = None

    @property
    def is_timed(self) -> bool:
        return self.published_ts > 0

    @property
    def item_id(self) -> str:
        return str(self.id)

    @property
    def full_text(self) -> str:
        return f"{self.title} {self.content or ''}"


@dataclass(frozen=True)
class ProcessedEvent:
    event_id: str
    source: str
    base: str
    url: str
    markets: Tuple[str, ...]
    trade_time_utc: Optional[datetime]
    raw_title: str
    timing: Timing = Timing.LIVE
    notice_id: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "source": self.source,
            "base": self.base,
            "url": self.url,
            "markets": list(self.markets),
            "trade_time_utc": (
                self.trade_time_utc.isoformat() if self.trade_time_utc else None
            ),
            "raw_title": self.raw_title,
            "timing": self.timing.value,
            "notice_id": self.notice_id,
        }


@dataclass(frozen=True)
class Watermark:
    source: str
    last_published_at: int
    last_item_id: str
    updated_at: int

    @property
    def key(self) -> Tuple[int, str]:
        return (self.last_published_at, self.last_item_id)


@dataclass(frozen=True)
class BaseCooldownRecord:
    base: str
    last_acted_at: str
    last_event_id: str


@dataclass
class ListingDetection:
    is_listing: bool
    confidence: float
    market: str
    reasons: List[str] = field(default_factory=list)
    score: int = 0
