"""Regex-driven structured-entity detection.

Patterns live in a pluggable table: each EntityPattern maps a regex to an
entity kind and a base confidence. New locales register extra patterns with
register_pattern() without touching the extraction flow. Matches are produced
lazily, one at a time, so huge documents are never fully materialized.

False positives are an accepted cost of a heuristic layer.
"""

from __future__ import annotations

import itertools
import re
from collections.abc import Callable, Iterable, Iterator
from dataclasses import dataclass

from evidence_engine.extraction.values import parse_number
from evidence_engine.models.enums import EntityKind
from evidence_engine.schemas.evidence import EntityMatch, StructuredData

MAX_ENTITIES = 500

_SCALE = {
    "千": 1e3,
    "万": 1e4,
    "億": 1e8,
    "兆": 1e12,
    "thousand": 1e3,
    "k": 1e3,
    "million": 1e6,
    "m": 1e6,
    "mn": 1e6,
    "billion": 1e9,
    "b": 1e9,
    "bn": 1e9,
    "trillion": 1e12,
}

_CURRENCY = {"円": "JPY", "¥": "JPY", "jpy": "JPY", "$": "USD", "usd": "USD", "€": "EUR", "eur": "EUR", "£": "GBP"}

# Name characters: Latin, digits, katakana, kanji (hiragana excluded so particles end a name)
_NAME = r"[A-Za-z0-9&\u30a0-\u30ff\u4e00-\u9faf]"


@dataclass(frozen=True)
class EntityPattern:
    """One row of the pattern table."""

    kind: EntityKind
    regex: re.Pattern[str]
    confidence: float
    normalize: Callable[[re.Match[str]], tuple[float | None, str | None]] | None = None


def _scaled(number: str | None, scale: str | None) -> float | None:
    if not number:
        return None
    value = parse_number(number)
    if value is None:
        return None
    return value * _SCALE.get((scale or "").lower(), 1.0)


def _amount(match: re.Match[str]) -> tuple[float | None, str | None]:
    groups = match.groupdict()
    currency = (groups.get("currency") or groups.get("suffix") or "").lower()
    return _scaled(groups.get("number"), groups.get("scale")), _CURRENCY.get(currency)


def _percent(match: re.Match[str]) -> tuple[float | None, str | None]:
    return parse_number(match.group("number")), "%"


ENTITY_PATTERNS: list[EntityPattern] = [
    # Japanese amounts: 1,200億円 / 350万円
    EntityPattern(
        EntityKind.AMOUNT,
        re.compile(r"(?P<number>\d{1,3}(?:,\d{3})+|\d+(?:\.\d+)?)\s*(?P<scale>兆|億|万|千)?\s*(?P<suffix>円)"),
        0.9,
        _amount,
    ),
    # Symbol-prefixed amounts: $1.2 billion / ¥500,000 / EUR 30m
    EntityPattern(
        EntityKind.AMOUNT,
        re.compile(
            r"(?P<currency>[$¥€£]|\b(?:USD|JPY|EUR)\b)\s?(?P<number>\d{1,3}(?:,\d{3})+(?:\.\d+)?|\d+(?:\.\d+)?)"
            r"(?:\s*(?P<scale>thousand|million|billion|trillion|bn|mn|[kmb])\b)?",
            re.I,
        ),
        0.9,
        _amount,
    ),
    EntityPattern(
        EntityKind.PERCENTAGE,
        re.compile(r"(?P<number>[+-]?\d+(?:\.\d+)?)\s*(?:%|％|パーセント|\s?percent\b)", re.I),
        0.9,
        _percent,
    ),
    EntityPattern(
        EntityKind.DATE,
        re.compile(
            r"\d{4}年\d{1,2}月(?:\d{1,2}日)?"
            r"|(?:令和|平成|昭和)(?:\d{1,2}|元)年(?:\d{1,2}月)?(?:\d{1,2}日)?"
            r"|\b\d{4}[-/]\d{1,2}[-/]\d{1,2}\b"
            r"|\b(?:Jan|Feb|Mar|Apr|May|Jun|Jul|Aug|Sep|Sept|Oct|Nov|Dec)[a-z]*\.?\s+\d{1,2},?\s+\d{4}\b"
        ),
        0.95,
    ),
    EntityPattern(
        EntityKind.COMPANY,
        re.compile(
            rf"(?:株式会社|有限会社|合同会社|\(株\)|（株）){_NAME}{{1,20}}"
            rf"|{_NAME}{{1,20}}(?:株式会社|有限会社|合同会社|\(株\)|（株）)"
        ),
        0.8,
    ),
    EntityPattern(
        EntityKind.COMPANY,
        re.compile(
            r"\b[A-Z][\w&.-]*(?:\s+[A-Z][\w&.-]*){0,4},?\s+"
            r"(?:Inc|Corp|Corporation|Ltd|LLC|GmbH|PLC|Co\.,?\s?Ltd)\b\.?"
        ),
        0.8,
    ),
    EntityPattern(
        EntityKind.MARKET_SIZE,
        re.compile(
            r"市場規模[はがを]?\s*[:：]?\s*(?:約|およそ)?\s*(?P<number>\d[\d,]*(?:\.\d+)?)\s*(?P<scale>兆|億|万)?\s*(?P<suffix>円)?"
        ),
        0.85,
        _amount,
    ),
    EntityPattern(
        EntityKind.MARKET_SIZE,
        re.compile(
            r"market size\s*(?:of|is|was|:)?\s*(?:approximately|about|around)?\s*(?P<currency>[$¥€£])?\s?"
            r"(?P<number>\d[\d,]*(?:\.\d+)?)\s*(?P<scale>thousand|million|billion|trillion)?",
            re.I,
        ),
        0.85,
        _amount,
    ),
    EntityPattern(
        EntityKind.MARKET_SHARE,
        re.compile(
            r"(?:シェア|市場占有率|market share)\s*[はがを:：]?\s*(?:約|of|about|is)?\s*(?P<number>\d+(?:\.\d+)?)\s*[%％]",
            re.I,
        ),
        0.85,
        _percent,
    ),
    EntityPattern(
        EntityKind.REVENUE,
        re.compile(
            r"(?:売上高|売上|revenue|sales)\s*[はがを:：]?\s*(?:約|of|was|is)?\s*(?P<currency>[$¥€£])?\s?"
            r"(?P<number>\d[\d,]*(?:\.\d+)?)\s*(?P<scale>兆|億|万|thousand|million|billion)?\s*(?P<suffix>円)?",
            re.I,
        ),
        0.8,
        _amount,
    ),
    EntityPattern(
        EntityKind.COMPETITOR,
        re.compile(
            r"(?:競合他社|競合企業|競合|competitors?)\s*(?:は|には|として|include|includes|are|:|：)\s*(?P<names>[^\n。]{2,120})",
            re.I,
        ),
        0.7,
    ),
]


def register_pattern(pattern: EntityPattern) -> None:
    """Add a pattern to the global table (e.g. for a new locale)."""
    ENTITY_PATTERNS.append(pattern)


def iter_entities(text: str, patterns: Iterable[EntityPattern] | None = None) -> Iterator[EntityMatch]:
    """Lazily yield entities pattern by pattern, match by match."""
    for pattern in patterns if patterns is not None else ENTITY_PATTERNS:
        for match in pattern.regex.finditer(text):
            value = match.group(0).strip()
            if not value:
                continue
            normalized, unit = pattern.normalize(match) if pattern.normalize else (None, None)
            yield EntityMatch(
                kind=pattern.kind,
                value=value,
                start=match.start(),
                end=match.end(),
                confidence=pattern.confidence,
                normalized=normalized,
                unit=unit,
            )


def extract_entities(text: str, limit: int = MAX_ENTITIES) -> list[EntityMatch]:
    """First `limit` entities in pattern-table order."""
    return list(itertools.islice(iter_entities(text), limit))


def split_competitor_names(raw: str) -> list[str]:
    """Split "A社、B社とC社" / "Acme, Globex and Initech" into names."""
    parts = re.split(r"[、,，/]|\band\b|と|及び|および", raw)
    names: list[str] = []
    for part in parts:
        name = re.sub(r"\s*(?:など|等|etc\.?)$", "", part.strip()).strip(" \t.。「」\"'（）()")
        if 1 < len(name) <= 40 and name not in names:
            names.append(name)
    return names


def build_structured_data(entities: Iterable[EntityMatch]) -> StructuredData:
    """Group entities into market, competitor and financial data."""
    structured = StructuredData()
    seen_companies: set[str] = set()

    for entity in entities:
        if entity.kind == EntityKind.MARKET_SIZE:
            structured.market_data.append({
                "metric": "market_size",
                "value": entity.normalized,
                "unit": entity.unit,
                "text": entity.value,
                "confidence": entity.confidence,
            })
        elif entity.kind == EntityKind.MARKET_SHARE:
            structured.market_data.append({
                "metric": "market_share",
                "value": entity.normalized,
                "unit": "%",
                "text": entity.value,
                "confidence": entity.confidence,
            })
        elif entity.kind == EntityKind.COMPETITOR:
            names_text = re.sub(r"^.*?(?:は|には|として|include|includes|are|:|：)\s*", "", entity.value, count=1)
            for name in split_competitor_names(names_text):
                if name not in seen_companies:
                    seen_companies.add(name)
                    structured.competitor_data.append({"name": name, "confidence": entity.confidence})
        elif entity.kind == EntityKind.COMPANY:
            if entity.value not in seen_companies:
                seen_companies.add(entity.value)
                structured.competitor_data.append({
                    "name": entity.value,
                    "mention": "company",
                    "confidence": entity.confidence,
                })
        elif entity.kind == EntityKind.REVENUE:
            structured.financial_data.append({
                "metric": "revenue",
                "value": entity.normalized,
                "currency": entity.unit,
                "text": entity.value,
                "confidence": entity.confidence,
            })
        elif entity.kind == EntityKind.AMOUNT:
            structured.financial_data.append({
                "metric": "amount",
                "value": entity.normalized,
                "currency": entity.unit,
                "text": entity.value,
                "confidence": entity.confidence,
            })

    return structured
