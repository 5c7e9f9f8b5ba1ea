import logging
import uuid
from pathlib import Path

from fastapi import APIRouter, Depends, File, Form, HTTPException, Request, UploadFile
from fastapi.responses import JSONResponse, StreamingResponse
from sqlalchemy import delete, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.database import get_db
from taxprep.core.deps import get_current_user, get_processor
from taxprep.core.errors import DocumentNotFound, ProcessingConflict, new_support_reference
from taxprep.core.redis import tax_return_lock
from taxprep.models.document import Document, DocumentType, IncomeEntry, ProcessingStatus
from taxprep.models.tax_return import TaxReturn
from taxprep.models.user import User
from taxprep.schemas.document import DocumentResponse, DuplicateActionRequest
from taxprep.services.income import lock_tax_return, recompute_or_reset, reset_after_delete
from taxprep.services.processor import (
    DocumentProcessor,
    error_payload,
    sse,
    stream_processing,
    tax_return_snapshot,
)
from taxprep.services.status_stream import status_events
from taxprep.services.storage import document_dir, remove_document_file

logger = logging.getLogger(__name__)

router = APIRouter(tags=["documents"])

MAX_FILE_SIZE = 50 * 1024 * 1024  # 50 MB
CHUNK_SIZE = 1024 * 1024  # 1 MB streaming chunks

# Tax forms arrive as PDFs or phone photos. The client-supplied Content-Type
# is ignored; we derive it from the extension.
_ALLOWED: dict[str, str] = {
    "pdf":  "application/pdf",
    "png":  "image/png",
    "jpg":  "image/jpeg",
    "jpeg": "image/jpeg",
    "tif":  "image/tiff",
    "tiff": "image/tiff",
    "heic": "image/heic",
    "webp": "image/webp",
}

_SSE_HEADERS = {"Cache-Control": "no-cache", "X-Accel-Buffering": "no"}


def _validate_upload(filename: str) -> str:
    """Return the safe MIME type for the file, or raise 400."""
    ext = Path(filename).suffix.lstrip(".").lower()
    mime = _ALLOWED.get(ext)
    if mime is None:
        allowed = ", ".join(sorted(_ALLOWED))
        raise HTTPException(
            status_code=400,
            detail=f"File type '.{ext}' is not allowed. Allowed: {allowed}",
        )
    return mime


async def _owned_tax_return(db: AsyncSession, tax_return_id: uuid.UUID, user: User) -> TaxReturn:
    result = await db.execute(
        select(TaxReturn).where(TaxReturn.id == tax_return_id, TaxReturn.user_id == user.id)
    )
    tax_return = result.scalar_one_or_none()
    if not tax_return:
        raise HTTPException(status_code=404, detail="Tax return not found")
    return tax_return


async def _owned_document(db: AsyncSession, document_id: uuid.UUID, user: User) -> Document:
    result = await db.execute(
        select(Document)
        .join(TaxReturn, TaxReturn.id == Document.tax_return_id)
        .where(Document.id == document_id, TaxReturn.user_id == user.id)
    )
    doc = result.scalar_one_or_none()
    if not doc:
        raise HTTPException(status_code=404, detail="Document not found")
    return doc


async def _drop_document(db: AsyncSession, doc: Document) -> None:
    """Remove a document, its income entries and its file. Caller holds the return lock."""
    await db.execute(
        delete(IncomeEntry)
        .where(IncomeEntry.document_id == doc.id)
        .execution_options(synchronize_session=False)
    )
    remove_document_file(doc)
    await db.delete(doc)
    await db.flush()


# ─── Upload ───────────────────────────────────────────────────────────────────

@router.post("/tax-returns/{tax_return_id}/documents", response_model=DocumentResponse, status_code=201)
async def upload_document(
    tax_return_id: uuid.UUID,
    file: UploadFile = File(...),
    document_type: str = Form(DocumentType.OTHER_TAX_DOCUMENT.value),
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = await _owned_tax_return(db, tax_return_id, user)
    original_name = Path(file.filename or "upload").name
    mime = _validate_upload(original_name)

    # Stream the upload in chunks to avoid loading an oversized file into RAM
    chunks: list[bytes] = []
    total = 0
    while True:
        chunk = await file.read(CHUNK_SIZE)
        if not chunk:
            break
        total += len(chunk)
        if total > MAX_FILE_SIZE:
            raise HTTPException(status_code=400, detail="File too large (max 50 MB)")
        chunks.append(chunk)
    if total == 0:
        raise HTTPException(status_code=400, detail="File is empty")

    stored_name = f"{uuid.uuid4()}_{original_name}"
    dir_path = document_dir(tax_return.id)
    dir_path.mkdir(parents=True, exist_ok=True)
    (dir_path / stored_name).write_bytes(b"".join(chunks))

    doc = Document(
        tax_return_id=tax_return.id,
        file_name=original_name,
        stored_filename=stored_name,
        file_type=mime,
        file_size=total,
        document_type=DocumentType.parse(document_type).value,
        processing_status=ProcessingStatus.PENDING.value,
    )
    db.add(doc)
    await db.flush()
    await db.refresh(doc)
    logger.info("Uploaded %s (%s, %d bytes) to tax return %s", original_name, doc.document_type, total, tax_return.id)
    return doc


# ─── Read ─────────────────────────────────────────────────────────────────────

@router.get("/tax-returns/{tax_return_id}/documents", response_model=list[DocumentResponse])
async def list_documents(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned_tax_return(db, tax_return_id, user)
    result = await db.execute(
        select(Document)
        .where(Document.tax_return_id == tax_return_id)
        .order_by(Document.created_at.desc())
    )
    return result.scalars().all()


@router.get("/documents/{document_id}", response_model=DocumentResponse)
async def get_document(
    document_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _owned_document(db, document_id, user)


# ─── Delete ───────────────────────────────────────────────────────────────────

@router.delete("/documents/{document_id}")
async def delete_document(
    document_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    doc = await _owned_document(db, document_id, user)
    async with tax_return_lock(doc.tax_return_id):
        tax_return = await lock_tax_return(db, doc.tax_return_id)
        await _drop_document(db, doc)
        # Figures that depend on the full calculation are zeroed, not left stale
        await reset_after_delete(db, tax_return)
        await db.commit()

    logger.info("Deleted document %s from tax return %s", document_id, tax_return.id)
    return {
        "message": "Document deleted",
        "documentId": str(document_id),
        "taxReturn": tax_return_snapshot(tax_return),
    }


# ─── Process ──────────────────────────────────────────────────────────────────

@router.post("/documents/{document_id}/process")
async def process_document(
    document_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
    processor: DocumentProcessor = Depends(get_processor),
):
    if "text/event-stream" in request.headers.get("accept", ""):
        doc = await _owned_document(db, document_id, user)
        if doc.processing_status == ProcessingStatus.PROCESSING.value:
            raise HTTPException(status_code=409, detail="Document is already being processed")
        # The stream opens its own sessions; do not hold this one for minutes
        await db.close()
        return StreamingResponse(
            stream_processing(processor, document_id, user.id),
            media_type="text/event-stream",
            headers=_SSE_HEADERS,
        )

    try:
        return await processor.process(document_id, user.id)
    except DocumentNotFound:
        raise HTTPException(status_code=404, detail="Document not found")
    except ProcessingConflict:
        raise HTTPException(status_code=409, detail="Document is already being processed")
    except Exception as exc:
        reference = new_support_reference()
        logger.exception("Processing failed for document %s [%s]", document_id, reference)
        return JSONResponse(status_code=500, content=error_payload(exc, reference))


@router.get("/documents/{document_id}/status-stream")
async def document_status_stream(
    document_id: uuid.UUID,
    request: Request,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned_document(db, document_id, user)
    await db.close()
    events = status_events(document_id, is_disconnected=request.is_disconnected)
    return StreamingResponse(
        (sse(event) async for event in events),
        media_type="text/event-stream",
        headers=_SSE_HEADERS,
    )


# ─── Duplicate resolution ─────────────────────────────────────────────────────

@router.post("/documents/{document_id}/duplicate-action")
async def duplicate_action(
    document_id: uuid.UUID,
    payload: DuplicateActionRequest,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    doc = await _owned_document(db, document_id, user)

    if payload.action == "proceed":
        doc.duplicate_resolution = "proceed"
        await db.commit()
        return {"success": True, "action": "proceed", "message": "Document kept alongside the existing one"}

    if payload.action == "replace":
        if payload.replacement_document_id == doc.id:
            raise HTTPException(status_code=400, detail="A document cannot replace itself")
        replaced = await _owned_document(db, payload.replacement_document_id, user)
        if replaced.tax_return_id != doc.tax_return_id:
            raise HTTPException(status_code=400, detail="Documents belong to different tax returns")

        async with tax_return_lock(doc.tax_return_id):
            tax_return = await lock_tax_return(db, doc.tax_return_id)
            await _drop_document(db, replaced)
            doc.duplicate_resolution = "replace"
            await recompute_or_reset(db, tax_return)
            await db.commit()
        logger.info("Document %s replaced %s on tax return %s", doc.id, replaced.id, tax_return.id)
        return {
            "success": True,
            "action": "replace",
            "message": "Previous document replaced",
            "replacedDocumentId": str(replaced.id),
            "taxReturn": tax_return_snapshot(tax_return),
        }

    async with tax_return_lock(doc.tax_return_id):
        tax_return = await lock_tax_return(db, doc.tax_return_id)
        await _drop_document(db, doc)
        await recompute_or_reset(db, tax_return)
        await db.commit()
    logger.info("Import of document %s cancelled after duplicate warning", document_id)
    return {
        "success": True,
        "action": "cancel",
        "message": "Import cancelled due to duplicate warning",
        "taxReturn": tax_return_snapshot(tax_return),
    }
