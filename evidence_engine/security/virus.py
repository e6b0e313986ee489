"""Virus-scan collaborator seam.

The engine only depends on the VirusScanner protocol; deployments without
an AV engine use NullVirusScanner.
"""

from __future__ import annotations

from typing import Protocol

from evidence_engine.schemas.security import VirusScanVerdict

# Standard antivirus test string (harmless, recognized by every AV engine)
EICAR_MARKER = b"EICAR-STANDARD-ANTIVIRUS-TEST-FILE"


class VirusScanner(Protocol):
    name: str

    async def scan(self, data: bytes) -> VirusScanVerdict: ...


class NullVirusScanner:
    """Always-clean stub, except for the EICAR test marker."""

    name = "null"

    async def scan(self, data: bytes) -> VirusScanVerdict:
        if EICAR_MARKER in data:
            return VirusScanVerdict(infected=True, signatures=["EICAR-Test-File"])
        return VirusScanVerdict()
