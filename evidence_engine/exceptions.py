"""Error taxonomy for the ingestion engine.

Every error carries a message naming the violated check so callers can
surface it as-is instead of collapsing it into a generic failure.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from evidence_engine.schemas.security import SecurityScanResult


class EvidenceEngineError(Exception):
    """Base class for all engine errors."""


class ValidationError(EvidenceEngineError):
    """Malformed input: unknown type, empty CSV, unsupported URL scheme. Never retried."""


class SecurityRejection(EvidenceEngineError):
    """Security scan failed. The bytes are never persisted as usable evidence."""

    def __init__(self, scan: SecurityScanResult) -> None:
        self.scan = scan
        checks = ", ".join(scan.failed_checks()) or "unspecified check"
        super().__init__(f"Security scan failed: {checks}")


class ExtractionFailure(EvidenceEngineError):
    """A type-specific parser failed. Wraps the original message."""

    def __init__(self, message: str, evidence_type: str | None = None) -> None:
        super().__init__(message)
        self.evidence_type = evidence_type


class OcrError(EvidenceEngineError):
    """Recognition failed or input exceeded OCR limits."""


class OcrTimeout(OcrError):
    """Recognition exceeded its wall-clock bound. Recoverable at the call site."""

    def __init__(self, timeout: float) -> None:
        super().__init__(f"OCR timed out after {timeout:.1f}s")
        self.timeout = timeout


class FetchError(EvidenceEngineError):
    """URL import failed (HTTP error status, timeout or transport error)."""

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class QueueJobFailure(EvidenceEngineError):
    """A queued job's handler raised or timed out."""


class EvidenceNotFound(EvidenceEngineError):
    def __init__(self, evidence_id: str) -> None:
        super().__init__(f"Evidence not found: {evidence_id}")
        self.evidence_id = evidence_id


class RateLimitExceeded(EvidenceEngineError):
    def __init__(self, retry_after: int) -> None:
        super().__init__(f"Upload rate limit exceeded, retry in {retry_after}s")
        self.retry_after = retry_after
