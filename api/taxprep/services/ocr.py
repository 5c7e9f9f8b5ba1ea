"""
Client for the document extraction (OCR) service.

The service takes the file and the declared document type and answers with
the typed fields it read, the raw `fullText`, and, when it recognised a
different form than the one declared, `correctedDocumentType`.
"""
import logging
from pathlib import Path
from typing import Any, Protocol

import httpx

from taxprep.core.config import settings
from taxprep.core.errors import ExtractionError
from taxprep.services.pdf_extractor import extract_pdf_text

logger = logging.getLogger(__name__)


class DocumentExtractor(Protocol):
    async def extract(self, file_path: Path, document_type: str, content_type: str) -> dict[str, Any]: ...


class OcrClient:
    def __init__(
        self,
        base_url: str | None = None,
        api_key: str | None = None,
        timeout: float | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
    ):
        self.base_url = (base_url or settings.ocr_service_url).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.ocr_api_key
        self.timeout = timeout or settings.ocr_timeout_seconds
        self._transport = transport

    async def extract(self, file_path: Path, document_type: str, content_type: str) -> dict[str, Any]:
        if not file_path.exists():
            raise ExtractionError(f"Document extraction failed: file missing on disk ({file_path.name})")

        headers = {"Authorization": f"Bearer {self.api_key}"} if self.api_key else {}
        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self._transport) as client:
                with file_path.open("rb") as fh:
                    resp = await client.post(
                        f"{self.base_url}/extract",
                        data={"documentType": document_type},
                        files={"file": (file_path.name, fh, content_type)},
                        headers=headers,
                    )
                resp.raise_for_status()
                data = resp.json()
        except httpx.HTTPError as e:
            logger.error("OCR request failed for %s: %s", file_path.name, e)
            raise ExtractionError(f"Document extraction failed: {e}") from e
        except ValueError as e:
            raise ExtractionError(f"Document extraction failed: invalid response ({e})") from e

        if not isinstance(data, dict):
            raise ExtractionError("Document extraction failed: response was not an object")

        # Some service versions wrap the fields
        if isinstance(data.get("extractedData"), dict):
            data = {**data["extractedData"], **{k: v for k, v in data.items() if k != "extractedData"}}

        if not data.get("fullText"):
            text = extract_pdf_text(file_path)
            if text:
                data["fullText"] = text
        return data
