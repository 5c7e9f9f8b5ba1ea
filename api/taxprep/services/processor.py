"""
Document processing pipeline.

One call takes a document from PENDING to COMPLETED or FAILED:

  1. ownership check (not found otherwise)
  2. COMPLETED  → return the stored result, no external calls
  3. PROCESSING → conflict
  4. claim the document (atomic PENDING|FAILED → PROCESSING), run OCR,
     persist a corrected document type
  5. state detection          (non-fatal)
  6. duplicate detection      (non-fatal, advisory)
  7. field mapping            (non-fatal)
  8. income entry + recompute from valid entries only
  9. persist document + tax return in one transaction

Steps 7–9 run under the per-tax-return lock with the return row locked, so
two documents of the same return finishing together cannot lose an update.
Any fatal failure marks the document FAILED in a separate transaction.
"""
import asyncio
import json
import logging
import time
import traceback
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from pydantic import ValidationError
from sqlalchemy import delete, select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxprep.core.config import settings
from taxprep.core.database import async_session
from taxprep.core.errors import (
    DocumentNotFound,
    ExtractionError,
    PersistenceError,
    ProcessingConflict,
    ProcessingError,
    classify_error,
    new_support_reference,
    user_message,
)
from taxprep.core.redis import tax_return_lock
from taxprep.core.security import protect_ssn
from taxprep.models.document import Document, DocumentType, IncomeEntry, ProcessingStatus
from taxprep.models.tax_return import StateSource, TaxReturn
from taxprep.services.duplicates import DuplicateCheckResult, DuplicateChecker
from taxprep.services.income import lock_tax_return, recompute_tax_return
from taxprep.services.ocr import DocumentExtractor
from taxprep.services.state_detection import StateDetectionResult, StateDetector
from taxprep.services.storage import document_path
from taxprep.services.tax_calculator import TaxCalculationResult
from taxprep.services.tax_mapper import MappingResult, PersonalInfo, map_document
from taxprep.schemas.extraction import parse_extraction

logger = logging.getLogger(__name__)

REVIEW_CONFIDENCE = 0.8

ProgressCallback = Callable[[str, int, str], Awaitable[None]]

ACTION_REVIEW_DUPLICATES = "Review potential duplicate documents before proceeding"
ACTION_VERIFY_STATE = "Verify state information for accurate tax calculations"
ACTION_REVIEW_SUGGESTIONS = "Review tax optimization suggestions to maximize savings"
ACTION_SUCCESS = "Document processed successfully - review extracted data"


def _now() -> datetime:
    return datetime.now(timezone.utc)


def suggested_actions(
    duplicate: DuplicateCheckResult | None,
    state: StateDetectionResult | None,
    calculation: TaxCalculationResult | None,
) -> list[str]:
    actions: list[str] = []
    if duplicate is not None and duplicate.is_duplicate:
        actions.append(ACTION_REVIEW_DUPLICATES)
    if state is None or state.confidence < REVIEW_CONFIDENCE:
        actions.append(ACTION_VERIFY_STATE)
    if calculation is not None and calculation.suggestions:
        actions.append(ACTION_REVIEW_SUGGESTIONS)
    if not actions:
        actions.append(ACTION_SUCCESS)
    return actions


def tax_return_snapshot(tax_return: TaxReturn) -> dict[str, Any]:
    """Persisted aggregates, as shown when a result is re-fetched."""
    return {
        "filingStatus": tax_return.filing_status,
        "totalIncome": float(tax_return.total_income),
        "totalWithholdings": float(tax_return.total_withholdings),
        "adjustedGrossIncome": float(tax_return.adjusted_gross_income),
        "standardDeduction": float(tax_return.standard_deduction),
        "itemizedDeduction": float(tax_return.itemized_deduction),
        "taxableIncome": float(tax_return.taxable_income),
        "taxLiability": float(tax_return.tax_liability),
        "totalCredits": float(tax_return.total_credits),
        "refundAmount": float(tax_return.refund_amount),
        "amountOwed": float(tax_return.amount_owed),
        "stateTaxLiability": float(tax_return.state_tax_liability),
        "stateStandardDeduction": float(tax_return.state_standard_deduction),
        "stateTaxableIncome": float(tax_return.state_taxable_income),
        "stateEffectiveRate": float(tax_return.state_effective_rate),
    }


def error_payload(exc: BaseException, reference: str) -> dict[str, Any]:
    category = classify_error(exc)
    body: dict[str, Any] = {
        "error": user_message(category),
        "errorType": category.value,
        "supportReference": reference,
        "timestamp": _now().isoformat(),
    }
    if settings.environment == "development":
        body["details"] = str(exc) or exc.__class__.__name__
        body["traceback"] = "".join(traceback.format_exception(exc))
    return body


def _apply_personal_info(tax_return: TaxReturn, info: PersonalInfo) -> None:
    # Non-empty values from the document win; empty ones never erase what is there
    for key, value in info.filled().items():
        if key == "ssn":
            protected = protect_ssn(value)
            if protected:
                tax_return.ssn_encrypted, tax_return.ssn_last4 = protected
        else:
            setattr(tax_return, key, value)


class DocumentProcessor:
    def __init__(
        self,
        extractor: DocumentExtractor,
        state_detector: StateDetector,
        duplicate_checker: DuplicateChecker,
        session_factory: async_sessionmaker[AsyncSession] = async_session,
    ):
        self.extractor = extractor
        self.state_detector = state_detector
        self.duplicate_checker = duplicate_checker
        self.session_factory = session_factory

    # ── Entry point ─────────────────────────────────────────────────────────────

    async def process(
        self,
        document_id: uuid.UUID,
        user_id: uuid.UUID,
        on_progress: ProgressCallback | None = None,
    ) -> dict[str, Any]:
        """Run the pipeline; raises DocumentNotFound / ProcessingConflict before any side effect."""
        async with self.session_factory() as db:
            doc, tax_return = await self._load_owned(db, document_id, user_id)

            if doc.processing_status == ProcessingStatus.COMPLETED.value:
                logger.info("Document %s already processed, returning stored result", doc.id)
                return self._stored_payload(doc, tax_return)
            if doc.processing_status == ProcessingStatus.PROCESSING.value:
                raise ProcessingConflict("Document is already being processed")

            claimed = await db.execute(
                update(Document)
                .where(
                    Document.id == doc.id,
                    Document.processing_status.in_(
                        [ProcessingStatus.PENDING.value, ProcessingStatus.FAILED.value]
                    ),
                )
                .values(processing_status=ProcessingStatus.PROCESSING.value, updated_at=_now())
                .execution_options(synchronize_session=False)
            )
            await db.commit()
            if claimed.rowcount != 1:
                # Another request claimed it between our read and our update
                raise ProcessingConflict("Document is already being processed")

        logger.info("Processing document %s (%s)", document_id, doc.file_name)
        try:
            return await self._run(document_id, on_progress)
        except (Exception, asyncio.CancelledError):
            # A claimed document must end COMPLETED or FAILED, or retries get 409
            await asyncio.shield(self._mark_failed(document_id))
            raise

    # ── Pipeline ────────────────────────────────────────────────────────────────

    async def _run(self, document_id: uuid.UUID, on_progress: ProgressCallback | None) -> dict[str, Any]:
        started = time.monotonic()

        async def progress(stage: str, percent: int, message: str) -> None:
            if on_progress is not None:
                await on_progress(stage, percent, message)

        async with self.session_factory() as db:
            doc = await db.get(Document, document_id)
            if doc is None:
                raise DocumentNotFound("Document not found")

            # Step 4: extraction (fatal)
            await progress("extraction", 10, "Extracting text and identifying form fields...")
            declared = DocumentType.parse(doc.document_type)
            raw = await self.extractor.extract(document_path(doc), declared.value, doc.file_type)

            document_type = declared
            if raw.get("correctedDocumentType"):
                corrected = DocumentType.parse(raw["correctedDocumentType"])
                if corrected is not declared:
                    logger.info("Document %s type corrected %s -> %s", doc.id, declared.value, corrected.value)
                    doc.document_type = corrected.value
                    await db.commit()
                    document_type = corrected

            try:
                fields = parse_extraction(document_type, raw)
            except ValidationError as exc:
                raise ExtractionError(f"Extraction returned unusable fields: {exc}") from exc

            # Step 5: state detection (non-fatal)
            await progress("state_detection", 35, "Detecting filing state...")
            try:
                state = await self.state_detector.detect(document_type.value, fields)
            except Exception as exc:
                logger.warning("State detection failed for document %s: %s", doc.id, exc)
                state = StateDetectionResult()

            # Step 6: duplicate detection (non-fatal)
            await progress("duplicate_check", 50, "Checking for duplicate documents...")
            duplicate: DuplicateCheckResult | None
            try:
                duplicate = await self.duplicate_checker.check(
                    db, document_type, fields, doc.tax_return_id, exclude_document_id=doc.id
                )
            except Exception as exc:
                logger.warning("Duplicate detection failed for document %s: %s", doc.id, exc)
                duplicate = None

            # Step 7: mapping (non-fatal)
            await progress("mapping", 65, "Mapping fields to your return...")
            mapping: MappingResult | None
            try:
                mapping = map_document(document_type, fields)
            except (ValueError, TypeError, AttributeError) as exc:
                logger.warning("Field mapping failed for document %s: %s", doc.id, exc)
                mapping = None

            # Steps 7-9: entry, recompute, persist (atomic)
            await progress("calculation", 80, "Recalculating taxes...")
            try:
                async with tax_return_lock(doc.tax_return_id):
                    tax_return, calculation = await self._persist(db, doc, document_type, raw, fields.full_text, state, mapping)
            except ProcessingError:
                await db.rollback()
                raise
            except SQLAlchemyError as exc:
                await db.rollback()
                raise PersistenceError(f"Database update failed: {exc}") from exc

            await progress("complete", 100, "Processing complete")
            elapsed_ms = int((time.monotonic() - started) * 1000)
            logger.info(
                "Document %s completed in %d ms (state=%s, duplicate=%s)",
                doc.id, elapsed_ms, state.detected_state,
                duplicate.is_duplicate if duplicate else None,
            )
            return self._result_payload(doc, tax_return, state, calculation, mapping, duplicate, elapsed_ms)

    async def _persist(
        self,
        db: AsyncSession,
        doc: Document,
        document_type: DocumentType,
        raw: dict[str, Any],
        full_text: str,
        state: StateDetectionResult,
        mapping: MappingResult | None,
    ) -> tuple[TaxReturn, TaxCalculationResult]:
        tax_return = await lock_tax_return(db, doc.tax_return_id)
        if tax_return is None:
            raise DocumentNotFound("Tax return not found")

        # A retried document replaces whatever entry an earlier attempt left
        await db.execute(
            delete(IncomeEntry)
            .where(IncomeEntry.document_id == doc.id)
            .execution_options(synchronize_session=False)
        )
        if mapping is not None and mapping.income_entry is not None:
            draft = mapping.income_entry
            db.add(IncomeEntry(
                tax_return_id=tax_return.id,
                document_id=doc.id,
                income_type=draft.income_type.value,
                description=draft.description,
                amount=draft.amount,
                federal_tax_withheld=draft.federal_tax_withheld,
                employer_name=draft.employer_name,
                employer_ein=draft.employer_ein,
                payer_name=draft.payer_name,
                payer_tin=draft.payer_tin,
            ))
            await db.flush()

        calculation = await recompute_tax_return(
            db, tax_return, state.detected_state or tax_return.detected_state
        )

        if mapping is not None:
            _apply_personal_info(tax_return, mapping.personal_info)
        if state.detected_state:
            tax_return.detected_state = state.detected_state
            tax_return.state_confidence = state.confidence
            tax_return.state_source = state.source.value
            tax_return.state = state.detected_state

        doc.processing_status = ProcessingStatus.COMPLETED.value
        doc.document_type = document_type.value
        doc.extracted_data = raw
        doc.ocr_text = full_text or None
        doc.is_verified = False
        doc.duplicate_resolution = None
        doc.updated_at = _now()

        await db.commit()
        return tax_return, calculation

    async def _mark_failed(self, document_id: uuid.UUID) -> None:
        try:
            async with self.session_factory() as db:
                await db.execute(
                    update(Document)
                    .where(Document.id == document_id)
                    .values(processing_status=ProcessingStatus.FAILED.value, updated_at=_now())
                    .execution_options(synchronize_session=False)
                )
                await db.commit()
        except SQLAlchemyError as exc:
            logger.error("Could not mark document %s as FAILED: %s", document_id, exc)

    # ── Lookups & payloads ──────────────────────────────────────────────────────

    async def _load_owned(
        self, db: AsyncSession, document_id: uuid.UUID, user_id: uuid.UUID
    ) -> tuple[Document, TaxReturn]:
        row = (await db.execute(
            select(Document, TaxReturn)
            .join(TaxReturn, TaxReturn.id == Document.tax_return_id)
            .where(Document.id == document_id, TaxReturn.user_id == user_id)
        )).first()
        if row is None:
            raise DocumentNotFound("Document not found")
        return row[0], row[1]

    def _document_fields(self, doc: Document) -> dict[str, Any]:
        return {
            "documentId": str(doc.id),
            "fileName": doc.file_name,
            "documentType": doc.document_type,
            "processingStatus": doc.processing_status,
            "extractedData": doc.extracted_data,
            "ocrText": doc.ocr_text,
            "isVerified": doc.is_verified,
        }

    def _state_fields(self, tax_return: TaxReturn) -> dict[str, Any]:
        return {
            "detectedState": tax_return.detected_state,
            "stateConfidence": tax_return.state_confidence,
            "stateSource": tax_return.state_source,
        }

    def _stored_payload(self, doc: Document, tax_return: TaxReturn) -> dict[str, Any]:
        state_known = tax_return.detected_state is not None
        return {
            **self._document_fields(doc),
            **self._state_fields(tax_return),
            "alreadyProcessed": True,
            "taxCalculations": tax_return_snapshot(tax_return),
            "processedAt": doc.updated_at.isoformat() if doc.updated_at else None,
            "requiresManualReview": (tax_return.state_confidence or 0) < REVIEW_CONFIDENCE,
            "suggestedActions": [ACTION_SUCCESS] if state_known else [ACTION_VERIFY_STATE],
        }

    def _result_payload(
        self,
        doc: Document,
        tax_return: TaxReturn,
        state: StateDetectionResult,
        calculation: TaxCalculationResult,
        mapping: MappingResult | None,
        duplicate: DuplicateCheckResult | None,
        elapsed_ms: int,
    ) -> dict[str, Any]:
        return {
            **self._document_fields(doc),
            **self._state_fields(tax_return),
            "stateDetectionResult": state.to_dict(),
            "taxCalculations": calculation.to_dict(),
            "form1040Mapping": mapping.to_dict() if mapping else None,
            "duplicateCheck": duplicate.to_dict() if duplicate else None,
            "processedAt": _now().isoformat(),
            "processingTime": elapsed_ms,
            "requiresManualReview": bool(duplicate and duplicate.is_duplicate)
            or state.confidence < REVIEW_CONFIDENCE,
            "suggestedActions": suggested_actions(duplicate, state, calculation),
        }


# ─── SSE variant of the process call ───────────────────────────────────────────

def sse(payload: dict[str, Any]) -> str:
    return f"data: {json.dumps(payload, default=str)}\n\n"


# Pipelines whose stream consumer disconnected; held so they are not collected
_detached: set[asyncio.Task] = set()


def _finish_detached(task: asyncio.Task) -> None:
    _detached.discard(task)
    if not task.cancelled() and task.exception() is not None:
        logger.warning("Background processing failed: %s", task.exception())


async def stream_processing(
    processor: DocumentProcessor,
    document_id: uuid.UUID,
    user_id: uuid.UUID,
) -> AsyncIterator[str]:
    """Run the pipeline, yielding `progress` events and a final `result` or `error`."""
    queue: asyncio.Queue[dict[str, Any]] = asyncio.Queue()

    async def on_progress(stage: str, percent: int, message: str) -> None:
        await queue.put({"type": "progress", "stage": stage, "progress": percent, "message": message})

    task = asyncio.create_task(processor.process(document_id, user_id, on_progress=on_progress))
    getter: asyncio.Task | None = None
    try:
        while not task.done() or not queue.empty():
            getter = asyncio.create_task(queue.get())
            done, _ = await asyncio.wait({getter, task}, return_when=asyncio.FIRST_COMPLETED)
            if getter in done:
                yield sse(getter.result())
            else:
                getter.cancel()

        exc = task.exception()
        if exc is None:
            yield sse({"type": "result", "data": task.result()})
        else:
            reference = new_support_reference()
            logger.error("Processing failed for document %s [%s]: %s", document_id, reference, exc)
            yield sse({"type": "error", **error_payload(exc, reference)})
    finally:
        if getter is not None and not getter.done():
            getter.cancel()
        if not task.done():
            # Client went away; the OCR call cannot be cancelled, so let the run finish
            logger.info("Stream for document %s closed, processing continues in background", document_id)
            _detached.add(task)
            task.add_done_callback(_finish_detached)
