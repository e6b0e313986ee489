"""Evidence content → rendering-ready, footnoted tables.

Three table sources, in order:
    1. Tables the extractor already found, enhanced with a data type and footnotes
    2. Tables built from the structured market / competitor / financial groups
    3. Regex text-table detection, only when the extractor found no tables

Every table is scored:
    0.4·source quality + 0.3·table confidence + 0.2·entity confidence + 0.1·footnote completeness
and any table scoring below the caveat threshold carries a caveat footnote.
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterable, Sequence
from datetime import UTC, datetime
from typing import Any

from evidence_engine.config import settings
from evidence_engine.extraction.tables import detect_text_tables
from evidence_engine.models.enums import (
    EntityKind,
    ExtractionMethod,
    FootnoteKind,
    FootnoteType,
    TableDataType,
)
from evidence_engine.schemas.evidence import Cell, EvidenceContent, StructuredData, TableData
from evidence_engine.schemas.transform import Footnote, TableMetadata, TransformedTable

logger = logging.getLogger(__name__)

EXISTING_TABLE_CONFIDENCE = 0.95
DETECTED_TABLE_FACTOR = 0.9

# Footnote kinds that count towards completeness
COMPLETENESS_KINDS = (FootnoteKind.SOURCE, FootnoteKind.EXTERNAL_SOURCE, FootnoteKind.QUALITY_NOTICE)

# First matching group wins; keywords are matched against lowercased header+cell text
DATA_TYPE_KEYWORDS: tuple[tuple[TableDataType, tuple[str, ...]], ...] = (
    (TableDataType.MARKET, ("市場", "シェア", "規模", "market", "share")),
    (TableDataType.COMPETITOR, ("競合", "企業", "会社", "competitor", "company", "companies")),
    (TableDataType.FINANCIAL, ("売上", "利益", "円", "財務", "revenue", "profit", "sales", "financial")),
)


def infer_table_data_type(headers: Sequence[str], rows: Iterable[Sequence[Cell]]) -> TableDataType:
    """Guess a table's subject from keywords in its headers and cells."""
    parts = [str(h) for h in headers]
    parts.extend(str(cell) for row in rows for cell in row)
    text = " ".join(parts).lower()
    for data_type, keywords in DATA_TYPE_KEYWORDS:
        if any(keyword in text for keyword in keywords):
            return data_type
    return TableDataType.GENERAL


def footnote_completeness(footnotes: Iterable[Footnote]) -> float:
    kinds = {f.kind for f in footnotes}
    return sum(1 for kind in COMPLETENESS_KINDS if kind in kinds) / len(COMPLETENESS_KINDS)


def blended_score(source_quality: float, table_confidence: float, entity_confidence: float, completeness: float) -> float:
    score = 0.4 * source_quality + 0.3 * table_confidence + 0.2 * entity_confidence + 0.1 * completeness
    return round(min(max(score, 0.0), 1.0), 4)


def _cell(value: Any) -> Cell:
    if value is None or value == "":
        return "-"
    if isinstance(value, bool):
        return str(value)
    if isinstance(value, int | float | str):
        return value
    return str(value)


class DataTransformationService:
    """Builds TransformedTables from extracted EvidenceContent."""

    def __init__(self, caveat_threshold: float | None = None) -> None:
        self._caveat_threshold = caveat_threshold if caveat_threshold is not None else settings.quality_threshold

    @property
    def caveat_threshold(self) -> float:
        return self._caveat_threshold

    async def transform_to_tables(
        self,
        content: EvidenceContent,
        quality_score: float,
        source_hint: str | None = None,
    ) -> list[TransformedTable]:
        """Derive footnoted tables from extracted content.

        Args:
            content: Extracted content (tables, text, entities, structured groups).
            quality_score: Source extraction quality, 0–1.
            source_hint: Where the document came from (URL or filename) for the
                external-source footnote.

        Returns:
            Tables in source order. Every table below the caveat threshold has
            at least one caveat footnote.
        """
        start = time.monotonic()
        method = ExtractionMethod.OCR if content.ocr_results else ExtractionMethod.STRUCTURED
        has_amounts = any(e.kind in (EntityKind.AMOUNT, EntityKind.REVENUE) for e in content.entities)
        entity_confidence = (
            sum(e.confidence for e in content.entities) / len(content.entities)
            if content.entities else quality_score
        )

        tables: list[TransformedTable] = []

        for index, table in enumerate(content.tables, start=1):
            tables.append(self._enhance_table(
                table, index, quality_score, source_hint, has_amounts, entity_confidence, method,
            ))

        tables.extend(self._structured_tables(
            content.structured, quality_score, source_hint, has_amounts, entity_confidence, method,
        ))

        if not content.tables and content.text:
            detected_method = ExtractionMethod.OCR if content.ocr_results else ExtractionMethod.TEXT
            for index, detected in enumerate(detect_text_tables(content.text), start=1):
                tables.append(self._build(
                    prefix=f"text_{index}",
                    title=detected.table.title or f"Detected table {index}",
                    headers=detected.table.headers,
                    rows=detected.table.rows,
                    data_type=infer_table_data_type(detected.table.headers, detected.table.rows),
                    method=detected_method,
                    quality_score=quality_score,
                    table_confidence=quality_score * DETECTED_TABLE_FACTOR,
                    entity_confidence=entity_confidence,
                    source_hint=source_hint,
                    has_amounts=has_amounts,
                    extra_footnotes=[Footnote(
                        id=f"text_{index}_detected",
                        text="Values detected automatically from running text",
                        confidence=quality_score,
                        type=FootnoteType.EXPLANATION,
                        kind=FootnoteKind.DATA_NOTICE,
                    )],
                ))

        for table in tables:
            self._ensure_caveat(table)

        elapsed_ms = int((time.monotonic() - start) * 1000)
        for table in tables:
            table.metadata.processing_time_ms = elapsed_ms
        logger.info("Transformed %d tables in %dms (quality=%.2f)", len(tables), elapsed_ms, quality_score)
        return tables

    async def regenerate_tables(
        self,
        content: EvidenceContent,
        quality_score: float,
        threshold: float | None = None,
        source_hint: str | None = None,
    ) -> list[TransformedTable]:
        """Transform again, flagging every table below threshold with a timestamped warning."""
        limit = threshold if threshold is not None else settings.reprocess_threshold
        tables = await self.transform_to_tables(content, quality_score, source_hint)
        stamp = datetime.now(UTC)
        flagged = 0
        for index, table in enumerate(tables, start=1):
            if table.quality_score < limit:
                flagged += 1
                table.footnotes.append(Footnote(
                    id=f"regenerated_{index}",
                    text=(
                        f"Regenerated {stamp.strftime('%Y-%m-%d %H:%M UTC')}: quality "
                        f"{table.quality_score:.0%} is below the {limit:.0%} threshold; verify against the source"
                    ),
                    confidence=table.quality_score,
                    type=FootnoteType.CAVEAT,
                    kind=FootnoteKind.REGENERATION_WARNING,
                    created_at=stamp,
                ))
        if flagged:
            logger.warning("Regenerated tables: %d/%d below threshold %.2f", flagged, len(tables), limit)
        return tables

    # ── Table builders ───────────────────────────────────────────────

    def _enhance_table(
        self,
        table: TableData,
        index: int,
        quality_score: float,
        source_hint: str | None,
        has_amounts: bool,
        entity_confidence: float,
        method: ExtractionMethod,
    ) -> TransformedTable:
        prefix = f"table_{index}"
        original = [
            Footnote(
                id=f"{prefix}_original_{n}",
                text=note,
                confidence=quality_score,
                type=FootnoteType.CITATION,
                kind=FootnoteKind.ORIGINAL,
            )
            for n, note in enumerate(table.footnotes, start=1)
        ]
        title = table.title or (f"Sheet {table.sheet}" if table.sheet else f"Table {index}")
        return self._build(
            prefix=prefix,
            title=title,
            headers=table.headers,
            rows=table.rows,
            data_type=infer_table_data_type(table.headers, table.rows),
            method=method,
            quality_score=quality_score,
            table_confidence=EXISTING_TABLE_CONFIDENCE,
            entity_confidence=entity_confidence,
            source_hint=source_hint,
            has_amounts=has_amounts,
            leading_footnotes=original,
        )

    def _structured_tables(
        self,
        structured: StructuredData,
        quality_score: float,
        source_hint: str | None,
        has_amounts: bool,
        entity_confidence: float,
        method: ExtractionMethod,
    ) -> list[TransformedTable]:
        tables: list[TransformedTable] = []

        if structured.market_data:
            units = {d.get("unit") for d in structured.market_data if d.get("unit") and d.get("unit") != "%"}
            table = self._build(
                prefix="market",
                title="Market data",
                headers=["Metric", "Value", "Unit", "Source text"],
                rows=[
                    [_cell(d.get("metric")), _cell(d.get("value")), _cell(d.get("unit")), _cell(d.get("text"))]
                    for d in structured.market_data
                ],
                data_type=TableDataType.MARKET,
                method=method,
                quality_score=quality_score,
                table_confidence=_mean_confidence(structured.market_data, quality_score),
                entity_confidence=entity_confidence,
                source_hint=source_hint,
                has_amounts=has_amounts,
            )
            if len(units) == 1:
                table.metadata.currency = units.pop()
            tables.append(table)

        if structured.competitor_data:
            tables.append(self._build(
                prefix="competitor",
                title="Competitor analysis",
                headers=["Company", "Mention", "Confidence"],
                rows=[
                    [_cell(d.get("name")), d.get("mention", "competitor"), round(float(d.get("confidence", 0.0)), 2)]
                    for d in structured.competitor_data
                ],
                data_type=TableDataType.COMPETITOR,
                method=method,
                quality_score=quality_score,
                table_confidence=_mean_confidence(structured.competitor_data, quality_score),
                entity_confidence=entity_confidence,
                source_hint=source_hint,
                has_amounts=has_amounts,
            ))

        if structured.financial_data:
            by_currency: dict[str, list[dict[str, Any]]] = {}
            for item in structured.financial_data:
                by_currency.setdefault(item.get("currency") or "unknown", []).append(item)

            rows: list[list[Cell]] = []
            notes: list[Footnote] = []
            today = datetime.now(UTC).date().isoformat()
            for currency, items in sorted(by_currency.items()):
                rows.extend(
                    [_cell(i.get("metric")), _cell(i.get("value")), currency, _cell(i.get("text"))] for i in items
                )
                notes.append(Footnote(
                    id=f"financial_currency_{currency}",
                    text=f"{currency} amounts as stated in the source, extracted {today}",
                    confidence=quality_score,
                    type=FootnoteType.EXPLANATION,
                    kind=FootnoteKind.DATA_NOTICE,
                ))

            table = self._build(
                prefix="financial",
                title="Financial data",
                headers=["Metric", "Amount", "Currency", "Source text"],
                rows=rows,
                data_type=TableDataType.FINANCIAL,
                method=method,
                quality_score=quality_score,
                table_confidence=_mean_confidence(structured.financial_data, quality_score),
                entity_confidence=entity_confidence,
                source_hint=source_hint,
                has_amounts=has_amounts,
                extra_footnotes=notes,
            )
            table.metadata.currency = next(iter(by_currency)) if len(by_currency) == 1 else "multiple"
            tables.append(table)

        return tables

    def _build(
        self,
        *,
        prefix: str,
        title: str,
        headers: list[str],
        rows: list[list[Cell]],
        data_type: TableDataType,
        method: ExtractionMethod,
        quality_score: float,
        table_confidence: float,
        entity_confidence: float,
        source_hint: str | None,
        has_amounts: bool,
        leading_footnotes: list[Footnote] | None = None,
        extra_footnotes: list[Footnote] | None = None,
    ) -> TransformedTable:
        footnotes = list(leading_footnotes or [])
        footnotes.extend(self._provenance_footnotes(prefix, title, quality_score, source_hint, has_amounts))
        footnotes.extend(extra_footnotes or [])

        completeness = footnote_completeness(footnotes)
        return TransformedTable(
            title=title,
            headers=list(headers),
            rows=[list(row) for row in rows],
            footnotes=footnotes,
            metadata=TableMetadata(
                data_type=data_type,
                extraction_method=method,
                source_quality=quality_score,
                table_confidence=round(table_confidence, 4),
                footnote_completeness=round(completeness, 4),
            ),
            quality_score=blended_score(quality_score, table_confidence, entity_confidence, completeness),
        )

    def _provenance_footnotes(
        self,
        prefix: str,
        title: str,
        quality_score: float,
        source_hint: str | None,
        has_amounts: bool,
    ) -> list[Footnote]:
        notes = [Footnote(
            id=f"{prefix}_source",
            text=f"Source: {title}, extracted from the submitted evidence",
            source=source_hint,
            confidence=quality_score,
            type=FootnoteType.CITATION,
            kind=FootnoteKind.SOURCE,
        )]
        if source_hint:
            notes.append(Footnote(
                id=f"{prefix}_external",
                text=f"Retrieved from {source_hint}",
                source=source_hint,
                confidence=quality_score,
                type=FootnoteType.CITATION,
                kind=FootnoteKind.EXTERNAL_SOURCE,
            ))
        if quality_score < self._caveat_threshold:
            notes.append(Footnote(
                id=f"{prefix}_quality",
                text=f"Extraction quality {quality_score:.0%}; verify figures against the original document",
                confidence=quality_score,
                type=FootnoteType.CAVEAT,
                kind=FootnoteKind.QUALITY_NOTICE,
            ))
        if has_amounts:
            notes.append(Footnote(
                id=f"{prefix}_amounts",
                text="Monetary amounts were detected automatically and normalized from the source units",
                confidence=quality_score,
                type=FootnoteType.EXPLANATION,
                kind=FootnoteKind.DATA_NOTICE,
            ))
        return notes

    def _ensure_caveat(self, table: TransformedTable) -> None:
        if table.quality_score >= self._caveat_threshold or table.has_caveat():
            return
        table.footnotes.append(Footnote(
            id=f"caveat_{len(table.footnotes) + 1}",
            text=f"Table quality {table.quality_score:.0%} is below {self._caveat_threshold:.0%}; treat values as indicative",
            confidence=table.quality_score,
            type=FootnoteType.CAVEAT,
            kind=FootnoteKind.QUALITY_NOTICE,
        ))


def _mean_confidence(items: Sequence[dict[str, Any]], default: float) -> float:
    values = [float(i["confidence"]) for i in items if i.get("confidence") is not None]
    return sum(values) / len(values) if values else default


# Module-level singleton
transformation_service = DataTransformationService()
