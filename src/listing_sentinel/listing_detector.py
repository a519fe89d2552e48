# -*- coding: utf-8 -*-
"""KRW listing detection for exchange notices.

A notice carrying bracketed tickers is not necessarily a listing: delisting
warnings, maintenance windows and deposit suspensions use the same format.
Detection scores several keyword families over the lower-cased title and
body:

* Korean listing phrases next to 원화/KRW (+2, reason ``KR``)
* English/French listing phrases (+1, reason ``EN/FR``)
* a ticker paired with KRW/won/원화 (+1 per ticker, reason ``Pairing_<T>``)
* at least two generic listing/market/trade words (+1, reason ``Generic``)

A score of 2 or more is a listing.
"""

from __future__ import annotations

import re
from typing import Dict, Iterable, List, Optional, Pattern

from .models import ListingDetection
from .tickers import BaseDetail

MODE_STANDARD = "standard"
MODE_STRICT = "strict"
MODE_LOOSE = "loose"

LISTING_THRESHOLD = 2

_KR_WORDS = r"(상장|신규|오픈|추가|출시|등록)"
_EN_WORDS = r"(list|open|add|new|launch|launched)"

_KOREAN_PATTERNS: List[Pattern[str]] = [
    re.compile(rf"원화.*{_KR_WORDS}"),
    re.compile(rf"{_KR_WORDS}.*원화"),
    re.compile(rf"krw.*{_KR_WORDS}"),
    re.compile(rf"{_KR_WORDS}.*krw"),
]

_ENGLISH_PATTERNS: List[Pattern[str]] = [
    re.compile(rf"krw.*{_EN_WORDS}"),
    re.compile(rf"{_EN_WORDS}.*krw"),
    re.compile(rf"won.*{_EN_WORDS}"),
    re.compile(rf"{_EN_WORDS}.*won"),
    re.compile(r"marché.*(ajout|ouverture|nouveau)"),
    re.compile(r"(ajout|ouverture|nouveau).*marché"),
    re.compile(r"market.*(add|open|new|list)"),
    re.compile(r"(add|open|new|list).*market"),
]

_GENERIC_PATTERNS: List[Pattern[str]] = [
    re.compile(r"(상장|listing|list|add|new|launch)"),
    re.compile(r"(마켓|market|trading|pair)"),
    re.compile(r"(거래|trade|exchange)"),
]

_PAIR_QUOTES = ("krw", "won", "원화")


def _pairing_patterns(ticker: str) -> List[Pattern[str]]:
    t = re.escape(ticker)
    return [
        re.compile(rf"(?:{q}[\s\-]*{t}|{t}[\s\-]*{q})", re.IGNORECASE)
        for q in _PAIR_QUOTES
    ]


def detect_listing_krw(
    title: str,
    body: Optional[str],
    tickers: Iterable[str],
    mode: str = MODE_STANDARD,
) -> ListingDetection:
    tickers = list(tickers)
    if not tickers:
        return ListingDetection(
            is_listing=False,
            confidence=0.0,
            market="UNKNOWN",
            reasons=["NO_TICKERS"],
            score=0,
        )

    text = f"{title} {body or ''}".lower()
    score = 0
    reasons: List[str] = []

    if any(p.search(text) for p in _KOREAN_PATTERNS):
        score += 2
        reasons.append("KR")

    if any(p.search(text) for p in _ENGLISH_PATTERNS):
        score += 1
        reasons.append("EN/FR")

    for ticker in tickers:
        if any(p.search(text) for p in _pairing_patterns(ticker)):
            score += 1
            reasons.append(f"Pairing_{ticker}")

    if sum(1 for p in _GENERIC_PATTERNS if p.search(text)) >= 2:
        score += 1
        reasons.append("Generic")

    is_listing = score >= LISTING_THRESHOLD
    result = ListingDetection(
        is_listing=is_listing,
        confidence=min(1.0, score / 5),
        market="KRW" if is_listing else "UNKNOWN",
        reasons=reasons,
        score=score,
    )

    if mode == MODE_STRICT:
        if not any(r in ("KR", "EN/FR") for r in reasons):
            result.is_listing = False
            result.score = 0
            result.confidence = 0.0
    elif mode == MODE_LOOSE:
        if score >= 1:
            result.is_listing = True
            result.confidence = max(result.confidence, 0.3)
    elif mode != MODE_STANDARD:
        raise ValueError(f"unknown detection mode: {mode}")
    return result


def notice_score(title: str, content: str, details: Dict[str, BaseDetail]) -> int:
    """Keyword score of a whole notice plus bonuses from per-base reasons."""
    text = f"{title} {content or ''}".lower()
    score = 0
    if "krw" in text or "원화" in text:
        score += 1
    if "market" in text or "마켓" in text:
        score += 1
    if "new" in text or "신규" in text or "추가" in text:
        score += 1
    if "listing" in text or "상장" in text:
        score += 1

    for detail in details.values():
        if len(detail.reasons) > 1:
            score += 1
        if "pairing_KRW" in detail.reasons:
            score += 1
        if "high_confidence" in detail.reasons:
            score += 1
    return score
