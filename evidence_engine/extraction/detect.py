"""Evidence type detection from declared MIME type and filename.

Total and deterministic: every (filename, mime_type) pair maps to exactly one
EvidenceType. A recognized MIME type wins; a generic or unrecognized one lets
the extension decide.
"""

from __future__ import annotations

import re
from urllib.parse import urlparse

from evidence_engine.formats import XLS_MIME, XLSX_MIME, file_extension, normalize_mime
from evidence_engine.models.enums import EvidenceType

MIME_TYPES: dict[str, EvidenceType] = {
    "text/csv": EvidenceType.CSV,
    "application/csv": EvidenceType.CSV,
    XLSX_MIME: EvidenceType.EXCEL,
    XLS_MIME: EvidenceType.EXCEL,
    "application/pdf": EvidenceType.PDF,
    "image/jpeg": EvidenceType.IMAGE,
    "image/png": EvidenceType.IMAGE,
    "image/bmp": EvidenceType.IMAGE,
    "image/tiff": EvidenceType.IMAGE,
    "text/html": EvidenceType.URL,
    "application/xhtml+xml": EvidenceType.URL,
    "text/plain": EvidenceType.TEXT,
    "text/markdown": EvidenceType.TEXT,
}

EXTENSION_TYPES: dict[str, EvidenceType] = {
    ".csv": EvidenceType.CSV,
    ".xlsx": EvidenceType.EXCEL,
    ".xls": EvidenceType.EXCEL,
    ".pdf": EvidenceType.PDF,
    ".jpg": EvidenceType.IMAGE,
    ".jpeg": EvidenceType.IMAGE,
    ".png": EvidenceType.IMAGE,
    ".bmp": EvidenceType.IMAGE,
    ".tif": EvidenceType.IMAGE,
    ".tiff": EvidenceType.IMAGE,
    ".html": EvidenceType.URL,
    ".htm": EvidenceType.URL,
    ".txt": EvidenceType.TEXT,
    ".md": EvidenceType.TEXT,
}

_URL_RE = re.compile(r"^https?://", re.I)


def detect_evidence_type(filename: str | None, mime_type: str | None) -> EvidenceType:
    """Map a filename and declared MIME type to an EvidenceType."""
    mime = normalize_mime(mime_type)
    if mime in MIME_TYPES:
        return MIME_TYPES[mime]

    name = (filename or "").strip()
    is_url = bool(_URL_RE.match(name))
    if is_url:
        name = urlparse(name).path

    by_extension = EXTENSION_TYPES.get(file_extension(name))
    if by_extension is not None:
        return by_extension
    if is_url:
        return EvidenceType.URL
    return EvidenceType.UNKNOWN
