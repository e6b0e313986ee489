"""Excel extraction — every sheet becomes a header+rows table.

.xlsx is read with openpyxl, legacy .xls (OLE2) with xlrd; the container
signature decides, not the declared MIME type.
"""

from __future__ import annotations

import asyncio
import io
from datetime import date, datetime, time
from typing import Any

import openpyxl
import xlrd

from evidence_engine.exceptions import ValidationError
from evidence_engine.extraction.base import STRUCTURED_QUALITY, ExtractionContext, ExtractionOutput
from evidence_engine.extraction.values import Cell, parse_value
from evidence_engine.schemas.evidence import EvidenceContent, TableData

_ZIP_SIGNATURE = b"PK\x03\x04"


def _cell(value: Any) -> Cell:
    if value is None:
        return ""
    if isinstance(value, bool):
        return str(value).upper()
    if isinstance(value, float) and value.is_integer():
        return int(value)
    if isinstance(value, int | float):
        return value
    if isinstance(value, datetime | date | time):
        return value.isoformat()
    return parse_value(str(value))


def _sheet_table(name: str, rows: list[list[Any]]) -> TableData | None:
    rows = [row for row in rows if any(v not in (None, "") for v in row)]
    if not rows:
        return None
    width = max(len(row) for row in rows)
    padded = [list(row) + [None] * (width - len(row)) for row in rows]
    headers = ["" if v is None else str(v).strip() for v in padded[0]]
    body = [[_cell(v) for v in row] for row in padded[1:]]
    return TableData(title=name, sheet=name, headers=headers, rows=body)


def _read_xlsx(data: bytes) -> list[TableData]:
    workbook = openpyxl.load_workbook(io.BytesIO(data), read_only=True, data_only=True)
    try:
        tables = []
        for sheet in workbook.worksheets:
            table = _sheet_table(sheet.title, [list(row) for row in sheet.iter_rows(values_only=True)])
            if table is not None:
                tables.append(table)
        return tables
    finally:
        workbook.close()


def _read_xls(data: bytes) -> list[TableData]:
    book = xlrd.open_workbook(file_contents=data)
    tables = []
    for sheet in book.sheets():
        rows: list[list[Any]] = []
        for r in range(sheet.nrows):
            row: list[Any] = []
            for cell in sheet.row(r):
                if cell.ctype == xlrd.XL_CELL_DATE:
                    row.append(xlrd.xldate_as_datetime(cell.value, book.datemode))
                elif cell.ctype == xlrd.XL_CELL_BOOLEAN:
                    row.append(bool(cell.value))
                elif cell.ctype in (xlrd.XL_CELL_EMPTY, xlrd.XL_CELL_BLANK, xlrd.XL_CELL_ERROR):
                    row.append(None)
                else:
                    row.append(cell.value)
            rows.append(row)
        table = _sheet_table(sheet.name, rows)
        if table is not None:
            tables.append(table)
    return tables


def read_workbook(data: bytes) -> list[TableData]:
    """Read all non-empty sheets.

    Raises:
        ValidationError: If no sheet contains data.
    """
    tables = _read_xlsx(data) if data.startswith(_ZIP_SIGNATURE) else _read_xls(data)
    if not tables:
        msg = "Excel workbook contains no data"
        raise ValidationError(msg)
    return tables


def flatten_tables(tables: list[TableData]) -> str:
    """Tab-joined text of every sheet, each prefixed with its name."""
    blocks = []
    for table in tables:
        lines = [f"[{table.sheet or table.title or 'Sheet'}]", "\t".join(table.headers)]
        lines.extend("\t".join(str(cell) for cell in row) for row in table.rows)
        blocks.append("\n".join(lines))
    return "\n\n".join(blocks)


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    tables = await asyncio.to_thread(read_workbook, data)
    return ExtractionOutput(
        content=EvidenceContent(text=flatten_tables(tables), tables=tables),
        quality_score=STRUCTURED_QUALITY,
    )
