"""
Server-sent status channel for a single document.

The channel never drives processing; it only watches the persisted document
row. It opens with `connected`, polls every `status_poll_interval_seconds`
and always ends with exactly one terminal event:

    completed   document reached COMPLETED (after a final status_update)
    error       document FAILED, vanished, or the database stayed unreachable
    timeout     `status_max_polls` polls without a terminal status

It also stops quietly when the client disconnects.
"""
import asyncio
import logging
import uuid
from datetime import datetime, timezone
from typing import Any, AsyncIterator, Awaitable, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from taxprep.core.config import settings
from taxprep.core.database import async_session
from taxprep.models.document import Document, ProcessingStatus

logger = logging.getLogger(__name__)

MSG_CONNECTED = "Status stream connected"
MSG_COMPLETED = "Document processing completed successfully"
MSG_FAILED = "Document processing failed"
MSG_NOT_FOUND = "Document not found"
MSG_INTERRUPTED = "Status stream interrupted"
MSG_TIMEOUT = "Processing is taking longer than expected. Please refresh the page to check status."

# (upper bound in seconds, message) for a document still PROCESSING
_PHASES: list[tuple[float, str]] = [
    (60, "Starting document analysis..."),
    (180, "Extracting text and identifying form fields..."),
    (300, "Processing tax information and validating data..."),
]
_FINAL_PHASE = "Finalizing extraction and performing quality checks..."

Sleep = Callable[[float], Awaitable[Any]]
DisconnectProbe = Callable[[], Awaitable[bool]]


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _aware(value: datetime | None) -> datetime | None:
    # SQLite hands back naive datetimes; everything we store is UTC
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _iso(value: datetime | None) -> str | None:
    value = _aware(value)
    return value.isoformat() if value else None


def phase_message(elapsed_seconds: float) -> str:
    for limit, message in _PHASES:
        if elapsed_seconds < limit:
            return message
    return _FINAL_PHASE


def synthetic_progress(elapsed_seconds: float, assumed_seconds: float | None = None) -> int:
    """Percent complete from wall-clock time, capped at 95 until the row says otherwise."""
    assumed = assumed_seconds or settings.assumed_processing_seconds
    if elapsed_seconds <= 0:
        return 0
    return min(95, int(elapsed_seconds / assumed * 100))


def processing_stages(doc: Document) -> dict[str, dict[str, Any]]:
    created = _iso(doc.created_at)
    updated = _iso(doc.updated_at)
    status = doc.processing_status
    if status == ProcessingStatus.COMPLETED.value:
        return {
            "upload": {"completed": True, "timestamp": created},
            "extraction": {"completed": True, "timestamp": updated},
            "processing": {"completed": True, "timestamp": updated},
            "complete": {"completed": True, "timestamp": updated},
        }
    extraction: dict[str, Any] = {"completed": False}
    if status == ProcessingStatus.PROCESSING.value:
        extraction = {
            "completed": False,
            "inProgress": True,
            "message": "Extracting text and analyzing document structure...",
        }
    return {
        "upload": {"completed": True, "timestamp": created},
        "extraction": extraction,
        "processing": {"completed": False},
        "complete": {"completed": False},
    }


def status_update(doc: Document, poll_count: int, now: datetime | None = None) -> dict[str, Any]:
    now = now or _now()
    event: dict[str, Any] = {
        "type": "status_update",
        "documentId": str(doc.id),
        "status": doc.processing_status,
        "fileName": doc.file_name,
        "documentType": doc.document_type,
        "pollCount": poll_count,
        "timestamp": now.isoformat(),
        "hasExtractedData": bool(doc.extracted_data),
        "hasOcrText": bool(doc.ocr_text),
        "isVerified": doc.is_verified,
        "updatedAt": _iso(doc.updated_at),
        "processingStages": processing_stages(doc),
    }
    if doc.processing_status == ProcessingStatus.PROCESSING.value:
        started = _aware(doc.updated_at) or now
        elapsed = max(0.0, (now - started).total_seconds())
        event["progress"] = synthetic_progress(elapsed)
        event["message"] = phase_message(elapsed)
        event["elapsedTime"] = int(elapsed * 1000)
    elif doc.processing_status == ProcessingStatus.COMPLETED.value:
        event["ocrText"] = doc.ocr_text
        event["extractedData"] = doc.extracted_data
    return event


def _event(kind: str, message: str, **extra: Any) -> dict[str, Any]:
    return {"type": kind, "message": message, **extra, "timestamp": _now().isoformat()}


async def _load(session_factory: async_sessionmaker[AsyncSession], document_id: uuid.UUID) -> Document | None:
    async with session_factory() as db:
        return await db.get(Document, document_id)


async def status_events(
    document_id: uuid.UUID,
    *,
    session_factory: async_sessionmaker[AsyncSession] = async_session,
    sleep: Sleep = asyncio.sleep,
    is_disconnected: DisconnectProbe | None = None,
    interval: float | None = None,
    max_polls: int | None = None,
    error_backoff: float | None = None,
    max_errors: int | None = None,
) -> AsyncIterator[dict[str, Any]]:
    """Yield status events for `document_id` until a terminal event or disconnect.

    Ownership is checked by the caller before the channel is opened.
    """
    interval = settings.status_poll_interval_seconds if interval is None else interval
    max_polls = settings.status_max_polls if max_polls is None else max_polls
    error_backoff = settings.status_error_backoff_seconds if error_backoff is None else error_backoff
    max_errors = settings.status_max_errors if max_errors is None else max_errors

    try:
        doc = await _load(session_factory, document_id)
    except SQLAlchemyError as exc:
        logger.error("Status stream for %s could not read the document: %s", document_id, exc)
        yield _event("error", MSG_INTERRUPTED, documentId=str(document_id))
        return
    if doc is None:
        yield _event("error", MSG_NOT_FOUND)
        return

    yield _event(
        "connected", MSG_CONNECTED,
        documentId=str(doc.id), initialStatus=doc.processing_status,
    )

    polls = 0
    errors = 0
    while polls < max_polls:
        if is_disconnected is not None and await is_disconnected():
            logger.info("Status stream for %s closed by client after %d polls", document_id, polls)
            return

        try:
            doc = await _load(session_factory, document_id)
        except SQLAlchemyError as exc:
            errors += 1
            logger.warning(
                "Status poll %d/%d for %s failed: %s", errors, max_errors, document_id, exc
            )
            if errors >= max_errors:
                yield _event("error", MSG_INTERRUPTED, documentId=str(document_id))
                return
            await sleep(error_backoff)
            continue

        errors = 0
        polls += 1
        if doc is None:
            yield _event("error", MSG_NOT_FOUND)
            return

        if doc.processing_status == ProcessingStatus.FAILED.value:
            yield _event("error", MSG_FAILED, documentId=str(doc.id))
            return

        yield status_update(doc, polls)
        if doc.processing_status == ProcessingStatus.COMPLETED.value:
            yield _event("completed", MSG_COMPLETED, documentId=str(doc.id))
            return

        await sleep(interval)

    logger.warning("Status stream for %s gave up after %d polls", document_id, polls)
    yield _event("timeout", MSG_TIMEOUT, documentId=str(document_id))
