"""
Duplicate-document detection.

A document is a likely duplicate when an already-processed document of the
same type on the same return reports the same payer and the same amount.
The verdict is advisory: the pipeline surfaces it and asks the user to
proceed, cancel or replace, it never blocks processing.
"""
import logging
import re
import uuid
from dataclasses import dataclass, field
from typing import Any, Protocol

from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.models.document import Document, DocumentType, ProcessingStatus
from taxprep.schemas.extraction import ExtractedFields, parse_extraction

logger = logging.getLogger(__name__)

DUPLICATE_THRESHOLD = 0.8


@dataclass
class DuplicateCheckResult:
    is_duplicate: bool = False
    confidence: float = 0.0
    matching_documents: list[dict[str, Any]] = field(default_factory=list)
    match_criteria: dict[str, bool] = field(default_factory=dict)

    def to_dict(self) -> dict:
        return {
            "isDuplicate": self.is_duplicate,
            "confidence": self.confidence,
            "matchingDocuments": self.matching_documents,
            "matchCriteria": self.match_criteria,
        }


class DuplicateChecker(Protocol):
    async def check(
        self,
        db: AsyncSession,
        document_type: DocumentType,
        fields: ExtractedFields,
        tax_return_id: uuid.UUID,
        exclude_document_id: uuid.UUID | None = None,
    ) -> DuplicateCheckResult: ...


def _digits(value: str | None) -> str:
    return re.sub(r"\D", "", value or "")


def _name(value: str | None) -> str:
    return " ".join((value or "").casefold().split())


def score_match(new: ExtractedFields, existing: ExtractedFields) -> tuple[float, dict[str, bool]]:
    new_id, old_id = _digits(new.payer_identifier()), _digits(existing.payer_identifier())
    new_name, old_name = _name(new.payer_display_name()), _name(existing.payer_display_name())
    amount = new.primary_amount()

    criteria = {
        "sameIdentifier": bool(new_id) and new_id == old_id,
        "sameName": bool(new_name) and new_name == old_name,
        "sameAmount": amount > 0 and amount == existing.primary_amount(),
        "sameWithholding": new.withholding() > 0 and new.withholding() == existing.withholding(),
    }
    if criteria["sameIdentifier"] and criteria["sameAmount"]:
        score = 0.95
    elif (criteria["sameIdentifier"] or criteria["sameName"]) and criteria["sameAmount"]:
        score = 0.8
    elif criteria["sameIdentifier"] and criteria["sameName"]:
        score = 0.6
    else:
        score = 0.0
    return score, criteria


class DatabaseDuplicateChecker:
    """Compares against completed documents already attached to the return."""

    async def check(
        self,
        db: AsyncSession,
        document_type: DocumentType,
        fields: ExtractedFields,
        tax_return_id: uuid.UUID,
        exclude_document_id: uuid.UUID | None = None,
    ) -> DuplicateCheckResult:
        query = select(Document).where(
            Document.tax_return_id == tax_return_id,
            Document.document_type == document_type.value,
            Document.processing_status == ProcessingStatus.COMPLETED.value,
        )
        if exclude_document_id is not None:
            query = query.where(Document.id != exclude_document_id)
        candidates = (await db.execute(query)).scalars().all()

        result = DuplicateCheckResult()
        for doc in candidates:
            existing = parse_extraction(document_type, doc.extracted_data)
            score, criteria = score_match(fields, existing)
            if score > result.confidence:
                result.confidence = score
                result.match_criteria = criteria
            if score >= DUPLICATE_THRESHOLD:
                result.matching_documents.append({
                    "id": str(doc.id),
                    "fileName": doc.file_name,
                    "documentType": doc.document_type,
                    "confidence": score,
                })

        result.is_duplicate = result.confidence >= DUPLICATE_THRESHOLD
        if result.is_duplicate:
            logger.info(
                "Possible duplicate %s on return %s (%d match(es), confidence %.2f)",
                document_type.value, tax_return_id, len(result.matching_documents), result.confidence,
            )
        return result
