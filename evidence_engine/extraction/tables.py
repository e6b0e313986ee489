"""Regex-driven table detection over free text.

Recognizes three row shapes:
    label value unit      "Market size 1,200 億円"
    year label value      "2023 Revenue 4,500"
    tab-delimited triple  "A\tB\tC"

A shape only becomes a table when at least MIN_TABLE_ROWS lines match it;
a single coincidental match is not a table.
"""

from __future__ import annotations

import re
from dataclasses import dataclass

from evidence_engine.extraction.values import parse_value
from evidence_engine.schemas.evidence import TableData

MIN_TABLE_ROWS = 2

_NUMBER = r"[+-]?\d[\d,]*(?:\.\d+)?"
_UNITS = r"円|千円|万円|億円|兆円|%|％|件|人|社|個|台|USD|JPY|EUR|k|million|billion|units?|people|companies"

_LABEL_VALUE_UNIT = re.compile(rf"^\s*(?P<label>[^\t\d][^\t]*?)\s+(?P<value>{_NUMBER})\s*(?P<unit>{_UNITS})\s*$", re.I)
_YEAR_LABEL_VALUE = re.compile(rf"^\s*(?P<year>(?:19|20)\d{{2}})年?\s+(?P<label>\S.*?)\s+(?P<value>{_NUMBER})\s*$")
_TAB_TRIPLE = re.compile(r"^(?P<a>[^\t]+)\t(?P<b>[^\t]+)\t(?P<c>[^\t]+)$")


@dataclass(frozen=True)
class DetectedTable:
    """A table found in text plus the row shape that produced it."""

    table: TableData
    shape: str
    matched_rows: int


def detect_text_tables(text: str, min_rows: int = MIN_TABLE_ROWS) -> list[DetectedTable]:
    """Find tables in text. Returns one table per row shape with enough matches."""
    lvu_rows: list[list[str | int | float]] = []
    ylv_rows: list[list[str | int | float]] = []
    tab_rows: list[list[str]] = []

    for line in text.splitlines():
        if not line.strip():
            continue
        if match := _TAB_TRIPLE.match(line.strip("\r")):
            tab_rows.append([match["a"].strip(), match["b"].strip(), match["c"].strip()])
            continue
        if match := _YEAR_LABEL_VALUE.match(line):
            ylv_rows.append([int(match["year"]), match["label"].strip(), parse_value(match["value"])])
            continue
        if match := _LABEL_VALUE_UNIT.match(line):
            lvu_rows.append([match["label"].strip(), parse_value(match["value"]), match["unit"]])

    detected: list[DetectedTable] = []
    if len(lvu_rows) >= min_rows:
        detected.append(DetectedTable(
            table=TableData(title="Detected values", headers=["Item", "Value", "Unit"], rows=lvu_rows),
            shape="label_value_unit",
            matched_rows=len(lvu_rows),
        ))
    if len(ylv_rows) >= min_rows:
        detected.append(DetectedTable(
            table=TableData(title="Detected yearly values", headers=["Year", "Item", "Value"], rows=ylv_rows),
            shape="year_label_value",
            matched_rows=len(ylv_rows),
        ))
    if len(tab_rows) >= min_rows:
        detected.append(_tab_table(tab_rows))
    return detected


def _tab_table(rows: list[list[str]]) -> DetectedTable:
    first = rows[0]
    header_like = not any(isinstance(parse_value(cell), int | float) for cell in first)
    if header_like and len(rows) - 1 >= MIN_TABLE_ROWS:
        headers, body = first, rows[1:]
    else:
        headers, body = ["Column 1", "Column 2", "Column 3"], rows
    return DetectedTable(
        table=TableData(
            title="Detected table",
            headers=headers,
            rows=[[parse_value(cell) for cell in row] for row in body],
        ),
        shape="tab_triple",
        matched_rows=len(rows),
    )
