# -*- coding: utf-8 -*-
"""Pick the best-decoded rendering of the notice board.

The board is available as structured data (JSON) and as markup (HTML).  Both
can arrive mis-encoded.  Each candidate is scored by the number of U+FFFD
replacement characters (irrecoverable decode artifacts, lower is better) and
by whether Hangul survived decoding (likely the right charset).
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Tuple

from .logging_utils import get_logger

log = get_logger("text_source")

REPLACEMENT_CHAR = "�"

_HANGUL_RE = re.compile(r"[가-힯]")
_CHARSET_RE = re.compile(r"charset=([\w\-]+)", re.IGNORECASE)

KIND_JSON = "json"
KIND_HTML = "html"

# Decode attempts in order; earlier entries win ties.
_ENCODINGS: Tuple[str, ...] = ("utf-8", "euc-kr", "cp949", "latin-1", "windows-1252")

_ENCODING_PREFERENCE: Dict[str, int] = {
    "utf-8": 20,
    "euc-kr": 15,
    "cp949": 10,
    "latin-1": -20,
    "windows-1252": -15,
}

# Charset labels servers actually send, mapped onto the names above
_CHARSET_ALIASES: Dict[str, str] = {
    "utf8": "utf-8",
    "utf-8": "utf-8",
    "euc-kr": "euc-kr",
    "euckr": "euc-kr",
    "ks_c_5601-1987": "cp949",
    "cp949": "cp949",
    "iso-8859-1": "latin-1",
    "latin1": "latin-1",
    "latin-1": "latin-1",
    "windows-1252": "windows-1252",
    "cp1252": "windows-1252",
}


def count_replacements(text: str) -> int:
    return (text or "").count(REPLACEMENT_CHAR)


def has_hangul(text: str) -> bool:
    return bool(_HANGUL_RE.search(text or ""))


@dataclass
class TextCandidate:
    """One decoded rendering of a remote resource."""

    text: str
    encoding: str = "utf-8"
    kind: str = KIND_HTML
    replacement_count: int = field(init=False)
    has_hangul: bool = field(init=False)

    def __post_init__(self) -> None:
        self.replacement_count = count_replacements(self.text)
        self.has_hangul = has_hangul(self.text)

    def describe(self) -> Dict[str, Any]:
        return {
            "kind": self.kind,
            "encoding": self.encoding,
            "replacement_count": self.replacement_count,
            "has_hangul": self.has_hangul,
            "length": len(self.text),
        }


@dataclass
class SourceChoice:
    candidate: TextCandidate
    reason: str
    diagnostics: Dict[str, Any]

    @property
    def kind(self) -> str:
        return self.candidate.kind


def choose_best_source(
    json_candidate: Optional[TextCandidate],
    html_candidate: Optional[TextCandidate],
) -> Optional[SourceChoice]:
    """Return the better of two renderings, or None when neither was fetched.

    Order of preference: fewer replacement characters, then Hangul present,
    then the structured-data candidate.
    """
    diagnostics: Dict[str, Any] = {
        "json": json_candidate.describe() if json_candidate else None,
        "html": html_candidate.describe() if html_candidate else None,
    }

    if json_candidate is None and html_candidate is None:
        return None
    if json_candidate is None:
        return SourceChoice(html_candidate, "only_html", diagnostics)  # type: ignore[arg-type]
    if html_candidate is None:
        return SourceChoice(json_candidate, "only_json", diagnostics)

    if json_candidate.replacement_count != html_candidate.replacement_count:
        if json_candidate.replacement_count < html_candidate.replacement_count:
            return SourceChoice(json_candidate, "fewer_replacements", diagnostics)
        return SourceChoice(html_candidate, "fewer_replacements", diagnostics)

    if json_candidate.has_hangul != html_candidate.has_hangul:
        if json_candidate.has_hangul:
            return SourceChoice(json_candidate, "hangul_present", diagnostics)
        return SourceChoice(html_candidate, "hangul_present", diagnostics)

    return SourceChoice(json_candidate, "tie_prefer_structured", diagnostics)


def _content_type_charset(content_type: Optional[str]) -> Optional[str]:
    if not content_type:
        return None
    m = _CHARSET_RE.search(content_type)
    if not m:
        return None
    return _CHARSET_ALIASES.get(m.group(1).strip().lower())


def score_decoding(text: str, encoding: str, content_type: Optional[str] = None) -> int:
    score = -10 * count_replacements(text)
    if has_hangul(text):
        score += 50
    if _content_type_charset(content_type) == encoding:
        score += 30
    score += _ENCODING_PREFERENCE.get(encoding, 0)
    return score


def decode_best(
    raw: bytes, content_type: Optional[str] = None, kind: str = KIND_HTML
) -> TextCandidate:
    """Decode ``raw`` with every supported charset and keep the best scoring one."""
    decoded: List[Tuple[int, str, str]] = []
    for enc in _ENCODINGS:
        text = raw.decode(enc, errors="replace")
        decoded.append((score_decoding(text, enc, content_type), enc, text))

    # max() keeps the first of equal scores
    score, enc, text = max(decoded, key=lambda row: row[0])
    log.debug(
        "decode_best kind=%s chosen=%s score=%d scores=%s",
        kind,
        enc,
        score,
        [(e, s) for s, e, _ in decoded],
    )
    return TextCandidate(text=text, encoding=enc, kind=kind)
