# -*- coding: utf-8 -*-
"""Ticker extraction from exchange notices.

Notices announce new markets as ``자산명(TICKER)``, sometimes with full-width
or CJK brackets and sometimes garbled by a wrong charset.  Brackets are
normalized to ASCII first, then every ``(TICKER)`` token is collected.
A joint listing announcement yields several tickers, each of which becomes
an independent event downstream.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from .text_source import count_replacements, has_hangul

# Quote / settlement currencies and majors that show up in brackets without
# being the listed asset, e.g. "원화(KRW) 마켓".
DENYLIST = frozenset({"KRW", "USDT", "BTC", "ETH", "BNB", "ADA", "DOT"})

# Korean words that sometimes survive as bracketed "aliases".
GENERIC_ALIASES = frozenset(
    {"가상자산", "원화", "마켓", "추가", "공지", "안내", "신규", "상장"}
)

_TICKER_RE = re.compile(r"\(([A-Z0-9]{2,10})\)")
_BASE_RE = re.compile(r"^[A-Z0-9]{2,15}$")
_WS_RE = re.compile(r"\s+")

_BRACKET_TABLE = str.maketrans(
    {
        "（": "(",
        "）": ")",
        "「": '"',
        "」": '"',
        "『": "'",
        "』": "'",
        "［": " ",
        "］": " ",
        "【": " ",
        "】": " ",
        "｛": " ",
        "｝": " ",
        "〈": " ",
        "〉": " ",
    }
)


@dataclass
class TickerExtraction:
    tickers: List[str]
    confidence: float
    has_hangul: bool
    replacement_chars: int


@dataclass
class BaseDetail:
    base: str
    reasons: List[str] = field(default_factory=list)


def normalize_brackets(text: str) -> str:
    """Map visually-equivalent brackets/quotes to ASCII and collapse whitespace."""
    if not text:
        return ""
    return _WS_RE.sub(" ", text.translate(_BRACKET_TABLE)).strip()


def _priority(ticker: str) -> int:
    return 0 if 2 <= len(ticker) <= 6 else 1


def extract_tickers(text: Optional[str]) -> List[str]:
    """Return unique bracketed tickers, 2-6 char ones first, in reading order."""
    if not text:
        return []
    normalized = normalize_brackets(text)
    seen = set()
    found: List[str] = []
    for m in _TICKER_RE.finditer(normalized):
        t = m.group(1)
        if t in seen or t in DENYLIST:
            continue
        seen.add(t)
        found.append(t)
    # sorted() is stable, so appearance order breaks ties
    return sorted(found, key=_priority)


def ticker_confidence(original: str, tickers: List[str]) -> float:
    score = 1.0
    score -= min(0.3, 0.1 * count_replacements(original))
    if has_hangul(original):
        score += 0.1
    if tickers:
        score += 0.2
    if len(original or "") < 10:
        score -= 0.2
    return max(0.0, min(1.0, score))


def extract_tickers_with_confidence(
    text: Optional[str], original: Optional[str] = None
) -> TickerExtraction:
    original = text if original is None else original
    tickers = extract_tickers(text)
    return TickerExtraction(
        tickers=tickers,
        confidence=ticker_confidence(original or "", tickers),
        has_hangul=has_hangul(original or ""),
        replacement_chars=count_replacements(original or ""),
    )


def extract_bases(title: str, content: str = "") -> Dict[str, BaseDetail]:
    """Extract candidate base assets from a notice with per-base reasons.

    Returned dict preserves ticker priority order.
    """
    full_text = f"{title} {content or ''}"
    extraction = extract_tickers_with_confidence(full_text)
    normalized = normalize_brackets(full_text)

    details: Dict[str, BaseDetail] = {}
    for ticker in extraction.tickers:
        if ticker in GENERIC_ALIASES or not _BASE_RE.match(ticker):
            continue
        detail = details.setdefault(ticker, BaseDetail(base=ticker))
        if extraction.confidence > 0.8:
            detail.reasons.append("high_confidence")
        if f"{ticker}-KRW" in normalized:
            detail.reasons.append("pairing_KRW")
        if f"({ticker})" in normalized:
            detail.reasons.append("paren_format")
    return details
