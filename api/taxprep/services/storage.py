"""On-disk layout for uploaded documents: {upload_dir}/documents/{tax_return_id}/{stored_filename}."""
import logging
import uuid
from pathlib import Path

from taxprep.core.config import settings
from taxprep.models.document import Document

logger = logging.getLogger(__name__)


def document_dir(tax_return_id: uuid.UUID) -> Path:
    return Path(settings.upload_dir) / "documents" / str(tax_return_id)


def document_path(doc: Document) -> Path:
    return document_dir(doc.tax_return_id) / doc.stored_filename


def remove_document_file(doc: Document) -> None:
    try:
        document_path(doc).unlink(missing_ok=True)
    except OSError as exc:
        # The row is the source of truth; a stray file is only wasted space
        logger.warning("Could not remove file for document %s: %s", doc.id, exc)
