"""Character-range language heuristic (Japanese vs Latin script)."""

from __future__ import annotations

import re

_CJK = re.compile(r"[\u3040-\u309f\u30a0-\u30ff\u4e00-\u9faf]")
_LATIN = re.compile(r"[A-Za-z]")

# One CJK character carries roughly a word's worth of content
JAPANESE_RATIO = 0.3
ENGLISH_RATIO = 0.05


def detect_language(text: str) -> str:
    """Return "ja", "en", "mixed" or "unknown"."""
    cjk = len(_CJK.findall(text))
    latin = len(_LATIN.findall(text))
    if cjk + latin == 0:
        return "unknown"
    ratio = cjk / (cjk + latin)
    if ratio >= JAPANESE_RATIO:
        return "ja"
    if ratio < ENGLISH_RATIO:
        return "en"
    return "mixed"
