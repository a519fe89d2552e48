# -*- coding: utf-8 -*-
import pytest

from listing_sentinel.listing_detector import (
    MODE_LOOSE,
    MODE_STRICT,
    detect_listing_krw,
    notice_score,
)
from listing_sentinel.tickers import extract_bases


class TestDetectListingKrw:
    """KRW listing detection over notice text."""

    def test_korean_listing(self):
        d = detect_listing_krw("[마켓 추가] 알파(AAA) 원화 마켓 추가", "", ["AAA"])
        assert d.is_listing
        assert "KR" in d.reasons
        assert d.market == "KRW"

    def test_english_listing_with_pairing(self):
        d = detect_listing_krw("New listing: Alpha AAA KRW market", "", ["AAA"])
        assert d.is_listing
        assert "EN/FR" in d.reasons
        assert "Pairing_AAA" in d.reasons

    def test_no_tickers(self):
        d = detect_listing_krw("원화 마켓 추가", "", [])
        assert not d.is_listing
        assert d.reasons == ["NO_TICKERS"]
        assert d.market == "UNKNOWN"

    def test_maintenance_notice_is_not_listing(self):
        d = detect_listing_krw("[점검] 알파(AAA) 입출금 일시 중단 안내", "", ["AAA"])
        assert not d.is_listing
        assert d.market == "UNKNOWN"

    def test_strict_mode_requires_language_pattern(self):
        # pairing + generic only
        title = "AAA 원화 trading pair 거래"
        assert detect_listing_krw(title, "", ["AAA"]).is_listing
        assert not detect_listing_krw(title, "", ["AAA"], mode=MODE_STRICT).is_listing

    def test_loose_mode_accepts_single_signal(self):
        d = detect_listing_krw("AAA KRW", "", ["AAA"], mode=MODE_LOOSE)
        assert d.is_listing
        assert d.confidence >= 0.3

    def test_unknown_mode(self):
        with pytest.raises(ValueError):
            detect_listing_krw("원화 마켓 추가", "", ["AAA"], mode="bogus")


def test_notice_score_counts_keywords_and_reasons():
    title = "[마켓 추가] 알파(AAA) 원화 마켓 추가"
    details = extract_bases(title, "")
    assert notice_score(title, "", details) >= 2
    assert notice_score("[점검] 시스템 정기 점검 안내", "", {}) == 0
