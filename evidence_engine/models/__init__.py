"""SQLAlchemy ORM models.

Import all models here so Base.metadata.create_all() discovers them.
"""

from evidence_engine.models.base import Base
from evidence_engine.models.evidence import EvidenceRecord

__all__ = ["Base", "EvidenceRecord"]
