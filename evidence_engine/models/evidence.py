"""Evidence model — one ingested document plus everything derived from it."""

from __future__ import annotations

from datetime import datetime
from typing import Any

from sqlalchemy import JSON, DateTime, Float, Integer, String, Text
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import Mapped, mapped_column

from evidence_engine.models.base import Base, TimestampMixin

# JSONB on PostgreSQL, plain JSON on other dialects
_JsonColumn = JSON().with_variant(JSONB(), "postgresql")


class EvidenceRecord(TimestampMixin, Base):
    """Persisted Evidence row. Content and metadata are stored as JSON documents."""

    __tablename__ = "evidence"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)

    evidence_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    source: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    original_filename: Mapped[str] = mapped_column(String(255), nullable=False)
    mime_type: Mapped[str] = mapped_column(String(100), nullable=False)
    size: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    quality_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)

    content: Mapped[dict[str, Any]] = mapped_column(_JsonColumn, nullable=False)
    # "metadata" is reserved on declarative classes
    metadata_: Mapped[dict[str, Any]] = mapped_column("metadata", _JsonColumn, nullable=False)

    processed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    deleted_at: Mapped[datetime | None] = mapped_column(
        DateTime(timezone=True), index=True, comment="Soft-delete tombstone"
    )
    error: Mapped[str | None] = mapped_column(Text)

    def __repr__(self) -> str:
        return f"<EvidenceRecord id={self.id} type={self.evidence_type} status={self.status}>"
