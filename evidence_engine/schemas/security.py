"""Security scan schemas — embedded in Evidence.metadata, never persisted on their own."""

from __future__ import annotations

from datetime import UTC, datetime

from pydantic import BaseModel, Field, model_validator


class ScanOptions(BaseModel):
    """Per-call scanner options. None for max_file_size means the configured ceiling."""

    enable_virus_scan: bool = True
    max_file_size: int | None = None
    check_file_signature: bool = True
    # Fetched HTML pages legitimately carry scripts; the extractor strips them.
    allow_html_scripts: bool = False


class VirusScanVerdict(BaseModel):
    """What a virus-scan collaborator reports for one buffer."""

    infected: bool = False
    signatures: list[str] = Field(default_factory=list)


class SecurityScanResult(BaseModel):
    """Verdict plus diagnostics for one scanned buffer.

    is_safe always equals: file_signature_valid and not virus_found and not suspicious_patterns.
    """

    is_safe: bool
    virus_found: bool = False
    malware_signatures: list[str] = Field(default_factory=list)
    suspicious_patterns: list[str] = Field(default_factory=list)
    file_signature_valid: bool = True
    warnings: list[str] = Field(default_factory=list)
    scan_completed_at: datetime = Field(default_factory=lambda: datetime.now(UTC))
    scan_engine: str = ""
    scan_time_ms: int = 0

    @model_validator(mode="after")
    def _check_verdict(self) -> SecurityScanResult:
        expected = self.file_signature_valid and not self.virus_found and not self.suspicious_patterns
        if self.is_safe != expected:
            msg = "is_safe must reflect signature validity, virus verdict and suspicious patterns"
            raise ValueError(msg)
        return self

    def failed_checks(self) -> list[str]:
        """Human-readable names of every check that failed."""
        checks: list[str] = []
        if not self.file_signature_valid:
            checks.append("file signature mismatch")
        if self.virus_found:
            checks.append("virus detected")
        checks.extend(self.suspicious_patterns)
        return checks
