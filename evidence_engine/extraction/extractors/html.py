"""Fetched HTML extraction with BeautifulSoup.

Strips script/style/nav/footer, keeps body text, turns <table> elements
into tables, and resolves <img> and <a> references against the page URL.
"""

from __future__ import annotations

import asyncio
import re
from urllib.parse import urljoin, urlparse

from bs4 import BeautifulSoup, Tag

from evidence_engine.extraction.base import NATIVE_TEXT_QUALITY, ExtractionContext, ExtractionOutput
from evidence_engine.extraction.values import parse_value
from evidence_engine.schemas.evidence import EvidenceContent, ImageRef, TableData

STRIP_TAGS = ["script", "style", "nav", "footer", "noscript", "template", "iframe"]
MAX_LINKS = 200

_WS = re.compile(r"\s+")


def _clean(text: str) -> str:
    return _WS.sub(" ", text).strip()


def _table(element: Tag, index: int) -> TableData | None:
    rows = element.find_all("tr")
    if not rows:
        return None
    header_row = None
    thead = element.find("thead")
    if thead is not None:
        header_row = thead.find("tr")
    if header_row is None:
        header_row = rows[0]

    headers = [_clean(cell.get_text(" ")) for cell in header_row.find_all(["th", "td"])]
    body: list[list[str | int | float]] = []
    for row in rows:
        if row is header_row:
            continue
        cells = [_clean(cell.get_text(" ")) for cell in row.find_all(["th", "td"])]
        if any(cells):
            body.append([parse_value(cell) for cell in cells])
    if not headers and not body:
        return None

    caption = element.find("caption")
    title = _clean(caption.get_text(" ")) if caption else f"Table {index}"
    return TableData(title=title, headers=headers, rows=body)


def parse_html(data: bytes, base_url: str) -> EvidenceContent:
    soup = BeautifulSoup(data, "html.parser")
    for tag in soup(STRIP_TAGS):
        tag.decompose()

    tables = []
    for index, element in enumerate(soup.find_all("table"), start=1):
        table = _table(element, index)
        if table is not None:
            tables.append(table)

    images = []
    for img in soup.find_all("img", src=True):
        src = img["src"].strip()
        if not src or src.startswith("data:"):
            continue
        images.append(ImageRef(url=urljoin(base_url, src), alt=_clean(img.get("alt", ""))))

    urls: list[str] = []
    for anchor in soup.find_all("a", href=True):
        href = urljoin(base_url, anchor["href"].strip())
        if urlparse(href).scheme in ("http", "https") and href not in urls:
            urls.append(href)
        if len(urls) >= MAX_LINKS:
            break

    root = soup.body or soup
    return EvidenceContent(text=_clean(root.get_text(" ")), tables=tables, images=images, urls=urls)


async def extract(data: bytes, ctx: ExtractionContext) -> ExtractionOutput:
    base_url = ctx.options.source_url or (ctx.filename if re.match(r"^https?://", ctx.filename, re.I) else "")
    content = await asyncio.to_thread(parse_html, data, base_url)
    return ExtractionOutput(content=content, quality_score=NATIVE_TEXT_QUALITY)
