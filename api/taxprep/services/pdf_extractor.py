"""
Local PDF text extraction.

Used when the OCR service returns structured fields but no `fullText` for a
PDF that has a text layer, so the state classifier and the stored OCR text
still have something to work with. Returns None for:
  - Non-PDF files (images)
  - Scanned-only PDFs with no text layer
  - Any extraction failure
"""
import logging
from pathlib import Path

import pdfplumber

logger = logging.getLogger(__name__)


def extract_pdf_text(file_path: str | Path) -> str | None:
    """Return the full text (pages joined by double newline), or None."""
    path = Path(file_path)
    if path.suffix.lower() != ".pdf":
        return None

    try:
        with pdfplumber.open(str(path)) as pdf:
            pages: list[str] = []
            for page in pdf.pages:
                text = page.extract_text()
                if text and text.strip():
                    pages.append(text.strip())
    except Exception as exc:
        logger.warning("Text extraction failed for %s: %s", path.name, exc)
        return None

    if not pages:
        return None  # scanned / image-only PDF
    return "\n\n".join(pages)
