"""Structuring pass: Evidence → StructuredBundle with a quality assessment.

The bundle is cached into Evidence.metadata.structured by the evidence
service; a low overall score flags the evidence for OCR reprocessing.
"""

from __future__ import annotations

import logging

from evidence_engine.models.enums import EvidenceSource
from evidence_engine.schemas.evidence import Evidence
from evidence_engine.schemas.transform import QualityAssessment, StructuredBundle
from evidence_engine.transform.service import DataTransformationService, blended_score, transformation_service

logger = logging.getLogger(__name__)


def assess_quality(evidence: Evidence, bundle: StructuredBundle) -> QualityAssessment:
    content = evidence.content
    if content.ocr_results:
        ocr_quality = sum(r.confidence for r in content.ocr_results) / len(content.ocr_results)
    else:
        ocr_quality = evidence.quality_score

    tables = bundle.tables
    table_confidence = sum(t.metadata.table_confidence for t in tables) / len(tables) if tables else 0.0
    completeness = sum(t.metadata.footnote_completeness for t in tables) / len(tables) if tables else 0.0
    entities = bundle.entities
    entity_accuracy = sum(e.confidence for e in entities) / len(entities) if entities else 0.0

    return QualityAssessment(
        ocr_quality=round(ocr_quality, 4),
        table_detection_confidence=round(table_confidence, 4),
        entity_extraction_accuracy=round(entity_accuracy, 4),
        footnote_completeness=round(completeness, 4),
        overall=blended_score(ocr_quality, table_confidence, entity_accuracy, completeness),
    )


async def build_structured_bundle(
    evidence: Evidence,
    service: DataTransformationService | None = None,
) -> StructuredBundle:
    """Run the transformation over one evidence and assess the result."""
    svc = service or transformation_service
    source_hint = evidence.original_filename if evidence.source == EvidenceSource.URL_FETCH else None

    tables = await svc.transform_to_tables(evidence.content, evidence.quality_score, source_hint)
    footnotes = [f for table in tables for f in table.footnotes]
    bundle = StructuredBundle(tables=tables, entities=list(evidence.content.entities), footnotes=footnotes)
    bundle.quality = assess_quality(evidence, bundle)

    logger.info(
        "Structured %s: %d tables, %d entities, overall=%.2f",
        evidence.id,
        len(tables),
        len(bundle.entities),
        bundle.quality.overall,
    )
    return bundle
