"""Upload security scanner.

Checks, in order: size ceiling (fail fast), MIME allow-list, magic-number
signature, dangerous extension, executable headers, malware patterns over
the whole buffer, then the pluggable virus scanner. The scanner never raises
for a malformed file: a bad file is an unsafe verdict, not an exception.

Usage:
    from evidence_engine.security.scanner import security_scanner

    result = await security_scanner.scan_file(data, "report.pdf", "application/pdf")
    if not result.is_safe:
        raise SecurityRejection(result)
"""

from __future__ import annotations

import asyncio
import hashlib
import logging
import re
import secrets
import time
from dataclasses import dataclass
from datetime import UTC, datetime

from evidence_engine.config import settings
from evidence_engine.formats import (
    ALLOWED_MIMES,
    SIGNATURES,
    TEXT_MIMES,
    UTF8_BOM,
    XLS_MIME,
    XLSX_MIME,
    file_extension,
    matches_signature,
    resolve_mime,
    sniff_binary_format,
)
from evidence_engine.schemas.security import ScanOptions, SecurityScanResult
from evidence_engine.security.virus import NullVirusScanner, VirusScanner

logger = logging.getLogger(__name__)

DANGEROUS_EXTENSIONS: frozenset[str] = frozenset({
    ".exe", ".bat", ".cmd", ".com", ".pif", ".scr", ".vbs", ".js",
    ".jar", ".sh", ".py", ".pl", ".php", ".asp", ".aspx", ".jsp",
})

EXECUTABLE_HEADERS: dict[bytes, str] = {
    b"MZ": "PE executable header",
    b"\x7fELF": "ELF executable header",
}

# Printable headers that are ordinary text in CSV and plain-text uploads
_TEXT_SAFE_HEADERS: frozenset[bytes] = frozenset({b"MZ"})


@dataclass(frozen=True)
class MalwarePattern:
    """A labelled regex. html_active patterns are skipped for fetched HTML pages."""

    label: str
    regex: re.Pattern[str]
    html_active: bool = False


MALWARE_PATTERNS: tuple[MalwarePattern, ...] = (
    MalwarePattern("JavaScript eval call", re.compile(r"\beval\s*\(", re.I), html_active=True),
    MalwarePattern("document.write call", re.compile(r"document\.write\s*\(", re.I), html_active=True),
    MalwarePattern("Embedded script tag", re.compile(r"<script[^>]*>", re.I), html_active=True),
    MalwarePattern("javascript: URI", re.compile(r"javascript\s*:", re.I), html_active=True),
    MalwarePattern("Inline event handler", re.compile(r"<[^>]+\son[a-z]+\s*=", re.I), html_active=True),
    MalwarePattern("Hex-escaped payload", re.compile(r"(?:\\x[0-9a-f]{2}){4,}", re.I), html_active=True),
    MalwarePattern("vbscript: URI", re.compile(r"vbscript\s*:", re.I)),
    MalwarePattern(
        "PowerShell encoded command",
        re.compile(r"powershell(?:\.exe)?\b[^\n]*\s-e(?:nc|ncodedcommand)?\s+[a-z0-9+/=]{20,}", re.I),
    ),
)

_PDF_SCRIPT_MARKERS = (b"/JavaScript", b"/JS")
_PDF_ACTION_MARKERS = (b"/OpenAction", b"/AA")
_EXCEL_MACRO_MARKERS = (b"vbaProject", b"macrosheet")


class SecurityScanner:
    """Stateless scanner; the same inputs always yield the same verdict."""

    def __init__(self, virus_scanner: VirusScanner | None = None) -> None:
        self._virus_scanner: VirusScanner = virus_scanner or NullVirusScanner()

    async def scan_file(
        self,
        data: bytes,
        filename: str,
        mime_type: str | None,
        options: ScanOptions | None = None,
    ) -> SecurityScanResult:
        """Scan one buffer and return a verdict with diagnostics.

        Args:
            data: Raw bytes (required).
            filename: Original filename, used for the extension checks.
            mime_type: Declared MIME type; generic types resolve from the extension.
            options: Per-call options, defaults when None.

        Returns:
            SecurityScanResult. is_safe is False whenever the signature is invalid,
            a virus was found, or any suspicious pattern matched.

        Raises:
            TypeError: If data is not a bytes-like buffer.
        """
        if not isinstance(data, bytes | bytearray | memoryview):
            msg = f"scan_file expects a bytes buffer, got {type(data).__name__}"
            raise TypeError(msg)
        data = bytes(data)
        opts = options or ScanOptions()
        start = time.monotonic()

        suspicious: list[str] = []
        malware: list[str] = []
        warnings: list[str] = []
        signature_valid = True
        virus_found = False

        max_size = opts.max_file_size if opts.max_file_size is not None else settings.scanner.max_file_size
        if len(data) > max_size:
            suspicious.append(f"File too large: {len(data)} bytes exceeds limit of {max_size} bytes")
            return self._result(signature_valid, virus_found, malware, suspicious, warnings, start)

        if not data:
            suspicious.append("Empty file detected")
            return self._result(signature_valid, virus_found, malware, suspicious, warnings, start)

        mime = resolve_mime(filename, mime_type)
        if mime not in ALLOWED_MIMES:
            suspicious.append(f"Disallowed MIME type: {mime or 'unknown'}")

        if opts.check_file_signature:
            signature_valid = self.check_file_signature(data, mime)
            if not signature_valid:
                logger.info("Signature mismatch for %s (declared %s)", filename, mime)

        extension = file_extension(filename)
        if extension in DANGEROUS_EXTENSIONS:
            suspicious.append(f"Dangerous file extension: {extension}")

        for header, label in EXECUTABLE_HEADERS.items():
            if mime in TEXT_MIMES and header in _TEXT_SAFE_HEADERS:
                continue
            if data.startswith(header):
                suspicious.append("Executable file detected")
                malware.append(label)
                break

        for label in await asyncio.to_thread(_pattern_matches, data, mime in TEXT_MIMES, opts.allow_html_scripts):
            suspicious.append(f"Malicious pattern: {label}")
            malware.append(label)

        if opts.enable_virus_scan:
            try:
                verdict = await self._virus_scanner.scan(data)
            except Exception:
                logger.exception("Virus scanner %s failed for %s", self._virus_scanner.name, filename)
                warnings.append("Virus scan unavailable")
            else:
                if verdict.infected:
                    virus_found = True
                    malware.extend(f"Virus: {sig}" for sig in verdict.signatures)

        warnings.extend(self._content_warnings(data, mime))

        result = self._result(signature_valid, virus_found, malware, suspicious, warnings, start)
        if not result.is_safe:
            logger.warning("Unsafe upload %s: %s", filename, "; ".join(result.failed_checks()))
        return result

    @staticmethod
    def check_file_signature(data: bytes, mime_type: str) -> bool:
        """Compare leading bytes against the signature table for mime_type.

        Text types have no magic number but must not start with a known binary
        signature. Unknown non-text types are invalid.
        """
        if mime_type in TEXT_MIMES:
            body = data[len(UTF8_BOM):] if data.startswith(UTF8_BOM) else data
            return sniff_binary_format(body) is None
        if mime_type in SIGNATURES:
            return matches_signature(data, mime_type)
        return False

    def _content_warnings(self, data: bytes, mime_type: str) -> list[str]:
        """Informational findings that do not affect the verdict."""
        found: list[str] = []
        if mime_type == "application/pdf":
            if any(marker in data for marker in _PDF_SCRIPT_MARKERS):
                found.append("PDF contains JavaScript")
            if any(marker in data for marker in _PDF_ACTION_MARKERS):
                found.append("PDF contains automatic actions")
        elif mime_type in (XLS_MIME, XLSX_MIME):
            if any(marker in data for marker in _EXCEL_MACRO_MARKERS):
                found.append("Excel file contains macros")
        elif mime_type.startswith("image/"):
            if len(data) > settings.scanner.scan_large_image_mb * 1024 * 1024:
                found.append("Image file unusually large")
        return found

    @staticmethod
    def _result(
        signature_valid: bool,
        virus_found: bool,
        malware: list[str],
        suspicious: list[str],
        warnings: list[str],
        start: float,
    ) -> SecurityScanResult:
        return SecurityScanResult(
            is_safe=signature_valid and not virus_found and not suspicious,
            virus_found=virus_found,
            malware_signatures=malware,
            suspicious_patterns=suspicious,
            file_signature_valid=signature_valid,
            warnings=warnings,
            scan_completed_at=datetime.now(UTC),
            scan_engine=settings.scanner.scan_engine_name,
            scan_time_ms=int((time.monotonic() - start) * 1000),
        )


def _pattern_matches(data: bytes, is_text: bool, allow_html_scripts: bool) -> list[str]:
    """Labels of the malware patterns found anywhere in data.

    Every buffer is searched through a byte-for-byte latin-1 view, so scripts
    embedded in PDFs, images or spreadsheets are caught. Text types get a
    second pass over their UTF-8 decoding.
    """
    views = [data.decode("latin-1")]
    if is_text:
        views.append(data.decode("utf-8", errors="ignore"))

    found: list[str] = []
    for pattern in MALWARE_PATTERNS:
        if allow_html_scripts and pattern.html_active:
            continue
        if any(pattern.regex.search(view) for view in views):
            found.append(pattern.label)
    return found


def calculate_file_hash(data: bytes, algorithm: str = "sha256") -> str:
    """Hex digest of data."""
    return hashlib.new(algorithm, data).hexdigest()


def generate_secure_filename(original_filename: str) -> str:
    """Random storage name that keeps only a safe extension."""
    extension = file_extension(original_filename)
    if not re.fullmatch(r"\.[a-z0-9]{1,8}", extension) or extension in DANGEROUS_EXTENSIONS:
        extension = ""
    return f"evidence_{int(time.time() * 1000)}_{secrets.token_hex(8)}{extension}"


# Module-level singleton
security_scanner = SecurityScanner()
