# -*- coding: utf-8 -*-
"""Turn the two renderings of the notice board into ``RawNotice`` objects.

JSON: either a bare array of notices or an object wrapping it under ``data``
(optionally ``data.list``).  Each notice carries ``id, title, content,
categories, pc_url|url, published_at``.

HTML: notice blocks are ``div`` elements whose class contains ``notice``,
with the title in a heading and the date in a ``div`` whose class contains
``date``.

``published_at`` is board-local time (Asia/Seoul) as ``yyyy-MM-dd HH:mm:ss``.
The HTML list often shows only the date; such notices keep their calendar
day but get no trade time rather than an invented midnight.  Relative links
are resolved against the page they came from.
"""

from __future__ import annotations

import hashlib
import json
import re
from datetime import date, datetime, timezone
from typing import Any, Dict, Iterable, List, Optional
from urllib.parse import urljoin
from zoneinfo import ZoneInfo

from bs4 import BeautifulSoup

from .errors import DecodeError
from .logging_utils import get_logger
from .models import RawNotice
from .text_source import KIND_JSON, TextCandidate

log = get_logger("notice_parser")

KST = ZoneInfo("Asia/Seoul")

_KST_DATETIME_FORMATS = (
    "%Y-%m-%d %H:%M:%S",
    "%Y-%m-%d %H:%M",
    "%Y.%m.%d %H:%M:%S",
    "%Y.%m.%d %H:%M",
)
_KST_DATE_FORMATS = ("%Y-%m-%d", "%Y.%m.%d")

_CLASS_NOTICE = re.compile(r"notice", re.IGNORECASE)
_CLASS_DATE = re.compile(r"date", re.IGNORECASE)
_HEADINGS = ["h1", "h2", "h3", "h4", "h5", "h6"]
_NUMERIC_TAIL = re.compile(r"/(\d+)/?$")


def parse_kst(value: Optional[str]) -> Optional[datetime]:
    """Parse a board-local timestamp into an aware UTC datetime.

    None when unparsable or when the string carries a date but no time.
    """
    if not value:
        return None
    raw = value.strip()
    for fmt in _KST_DATETIME_FORMATS:
        try:
            local = datetime.strptime(raw, fmt).replace(tzinfo=KST)
        except ValueError:
            continue
        return local.astimezone(timezone.utc)
    return None


def parse_kst_day(value: Optional[str]) -> Optional[date]:
    """Board-local calendar day of a timestamp or bare date."""
    if not value:
        return None
    raw = value.strip()
    for fmt in _KST_DATETIME_FORMATS + _KST_DATE_FORMATS:
        try:
            return datetime.strptime(raw, fmt).date()
        except ValueError:
            continue
    return None


def _hash_id(s: str) -> str:
    """Stable sha1 for notices that arrive without an id."""
    return hashlib.sha1(s.encode("utf-8")).hexdigest()


def build_notice(payload: Dict[str, Any]) -> RawNotice:
    """Build a RawNotice from one JSON notice object."""
    title = str(payload.get("title") or "").strip()
    if not title:
        raise DecodeError("notice without title")
    published_at = str(payload.get("published_at") or "").strip()
    trade_time = parse_kst(published_at)
    notice_id = payload.get("id")
    if notice_id is None or notice_id == "":
        notice_id = _hash_id(f"{title}|{published_at}")
    categories = payload.get("categories") or ()
    if isinstance(categories, str):
        categories = (categories,)
    return RawNotice(
        id=notice_id,
        title=title,
        content=str(payload.get("content") or ""),
        categories=tuple(str(c) for c in categories),
        url=str(payload.get("pc_url") or payload.get("url") or ""),
        published_at=published_at,
        published_ts=int(trade_time.timestamp() * 1000) if trade_time else 0,
        trade_time_utc=trade_time,
        published_day=parse_kst_day(published_at),
    )


def _unwrap(data: Any) -> List[Any]:
    if isinstance(data, list):
        return data
    if isinstance(data, dict):
        inner = data.get("data")
        if isinstance(inner, list):
            return inner
        if isinstance(inner, dict) and isinstance(inner.get("list"), list):
            return inner["list"]
        if isinstance(data.get("notices"), list):
            return data["notices"]
    raise DecodeError(f"unexpected notice payload type: {type(data).__name__}")


def _build_all(items: Iterable[Any]) -> List[RawNotice]:
    notices: List[RawNotice] = []
    for item in items:
        if not isinstance(item, dict):
            continue
        try:
            notices.append(build_notice(item))
        except DecodeError as e:
            log.debug("notice_skipped reason=%s", str(e))
    return notices


def parse_notices_json(text: str) -> List[RawNotice]:
    try:
        data = json.loads(text)
    except (TypeError, ValueError) as e:
        raise DecodeError(f"invalid notice JSON: {e}") from e
    return _build_all(_unwrap(data))


def parse_notices_html(text: str, base_url: str = "") -> List[RawNotice]:
    try:
        soup = BeautifulSoup(text, "html.parser")
    except Exception as e:
        raise DecodeError(f"unparsable notice HTML: {e}") from e

    notices: List[RawNotice] = []
    for block in soup.find_all("div", class_=_CLASS_NOTICE):
        heading = block.find(_HEADINGS)
        if heading is None:
            continue
        # innermost titled blocks only; list wrappers are also "notice" divs
        if any(
            inner.find(_HEADINGS) is not None
            for inner in block.find_all("div", class_=_CLASS_NOTICE)
        ):
            continue
        date_div = block.find("div", class_=_CLASS_DATE)
        if date_div is None:
            continue
        title = heading.get_text(" ", strip=True)
        published_at = date_div.get_text(" ", strip=True)
        if not title or not published_at:
            continue
        link = block.find("a", href=True)
        url = urljoin(base_url, str(link["href"])) if link is not None else ""
        m = _NUMERIC_TAIL.search(url)
        payload = {
            "id": m.group(1) if m else None,
            "title": title,
            "content": "",
            "categories": ["notice"],
            "url": url,
            "published_at": published_at,
        }
        try:
            notices.append(build_notice(payload))
        except DecodeError as e:
            log.debug("html_notice_skipped reason=%s", str(e))
    return notices


def parse_candidate(candidate: TextCandidate, base_url: str = "") -> List[RawNotice]:
    if candidate.kind == KIND_JSON:
        return parse_notices_json(candidate.text)
    return parse_notices_html(candidate.text, base_url)
