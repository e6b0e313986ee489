"""Accepted file formats: MIME types, extensions and magic numbers.

Shared by the security scanner (signature checks) and the extractor (type detection).
"""

from __future__ import annotations

from pathlib import PurePosixPath

XLSX_MIME = "application/vnd.openxmlformats-officedocument.spreadsheetml.sheet"
XLS_MIME = "application/vnd.ms-excel"

GENERIC_MIMES: frozenset[str] = frozenset({
    "",
    "application/octet-stream",
    "binary/octet-stream",
    "application/unknown",
})

# Leading bytes expected for each binary MIME type
SIGNATURES: dict[str, tuple[bytes, ...]] = {
    "application/pdf": (b"%PDF",),
    "image/png": (b"\x89PNG\r\n\x1a\n",),
    "image/jpeg": (b"\xff\xd8\xff",),
    "image/bmp": (b"BM",),
    "image/tiff": (b"II*\x00", b"MM\x00*"),
    XLSX_MIME: (b"PK\x03\x04",),
    # Legacy OLE2 workbook, or an .xlsx served under the old MIME
    XLS_MIME: (b"\xd0\xcf\x11\xe0\xa1\xb1\x1a\xe1", b"PK\x03\x04"),
}

TEXT_MIMES: frozenset[str] = frozenset({
    "text/csv",
    "application/csv",
    "text/plain",
    "text/markdown",
    "text/html",
    "application/xhtml+xml",
})

ALLOWED_MIMES: frozenset[str] = frozenset(SIGNATURES) | TEXT_MIMES

EXTENSION_MIMES: dict[str, str] = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".bmp": "image/bmp",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".xlsx": XLSX_MIME,
    ".xls": XLS_MIME,
    ".csv": "text/csv",
    ".txt": "text/plain",
    ".md": "text/plain",
    ".html": "text/html",
    ".htm": "text/html",
}

UTF8_BOM = b"\xef\xbb\xbf"


def normalize_mime(mime_type: str | None) -> str:
    """Lowercase and strip parameters ("text/csv; charset=utf-8" -> "text/csv")."""
    if not mime_type:
        return ""
    return mime_type.split(";", 1)[0].strip().lower()


def file_extension(filename: str) -> str:
    """Lowercased final suffix including the dot, or ""."""
    return PurePosixPath(filename.replace("\\", "/")).suffix.lower()


def resolve_mime(filename: str, mime_type: str | None) -> str:
    """Declared MIME when specific, otherwise the one implied by the extension."""
    mime = normalize_mime(mime_type)
    if mime in GENERIC_MIMES:
        return EXTENSION_MIMES.get(file_extension(filename), mime)
    return mime


def matches_signature(data: bytes, mime_type: str) -> bool:
    return any(data.startswith(sig) for sig in SIGNATURES.get(mime_type, ()))


def sniff_binary_format(data: bytes) -> str | None:
    """MIME of the first known binary signature found at the start of data.

    Two-byte signatures (BMP "BM") are ignored; they collide with ordinary text.
    """
    for mime, sigs in SIGNATURES.items():
        if any(len(sig) > 2 and data.startswith(sig) for sig in sigs):
            return mime
    return None
