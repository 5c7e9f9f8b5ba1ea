"""
Async client that drives one file through upload, processing and monitoring.

Monitoring prefers the server's status stream. Losing the stream never fails
the document by itself: the client marks realtime updates offline and falls
back to polling the document until it reaches a terminal status.
"""
import asyncio
import json
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, AsyncIterator, Awaitable, Callable

import httpx

from taxprep.client.connections import ConnectionManager
from taxprep.client.errors import ProcessingClientError, classify_exception
from taxprep.client.tracker import DocumentState, DocumentTracker

logger = logging.getLogger(__name__)

POLL_INTERVAL_SECONDS = 2.0
MAX_POLL_ATTEMPTS = 240          # ~8 minutes at 2 s
MAX_CONSECUTIVE_ERRORS = 12
RECONNECT_DELAY_SECONDS = 1.0

MSG_NOT_FOUND = "Document not found. It may have been deleted or there was an upload issue."
MSG_FAILED = "Document processing failed - the document may be corrupted or in an unsupported format"
MSG_CONNECTION_LOST = (
    "Unable to check processing status due to persistent connection issues. "
    "Please check your internet connection and try refreshing the page."
)
MSG_UNVERIFIED = (
    "Unable to verify processing completion due to connection issues. "
    "Please refresh the page to check if your document was processed successfully."
)
MSG_STREAM_LOST = "Connection to real-time updates lost. Processing may continue in background."
MSG_UPLOAD_CONNECTION = "Upload failed due to connection issues. Please check your internet connection and try again."
MSG_INVALID_DOCUMENT = (
    "Document processing failed. Please verify the document is a valid tax document "
    "(W-2, 1099, etc.) and try again."
)
MSG_CANCELLED = "Import cancelled due to duplicate warning"

Sleep = Callable[[float], Awaitable[Any]]
EventCallback = Callable[[dict[str, Any]], None]

_CONTENT_TYPES = {
    ".pdf": "application/pdf",
    ".png": "image/png",
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".tif": "image/tiff",
    ".tiff": "image/tiff",
    ".heic": "image/heic",
    ".webp": "image/webp",
}


@dataclass
class ProcessingEvent:
    """A status event, from the stream or synthesized by the poll loop."""

    type: str                       # connected | status_update | completed | error | timeout | offline
    status: str | None = None       # server processing status, when known
    progress: int | None = None
    message: str | None = None
    data: dict[str, Any] = field(default_factory=dict)

    @property
    def is_terminal(self) -> bool:
        return self.type in ("completed", "error", "timeout")

    @classmethod
    def from_stream(cls, raw: dict[str, Any]) -> "ProcessingEvent":
        return cls(
            type=raw.get("type", "unknown"),
            status=raw.get("status"),
            progress=raw.get("progress"),
            message=raw.get("message"),
            data=raw,
        )


def poll_progress(attempt: int, max_attempts: int = MAX_POLL_ATTEMPTS) -> int:
    return min(95, 50 + (attempt * 45) // max_attempts)


def _poll_message(attempt: int, max_attempts: int) -> str:
    elapsed = (attempt + 1) * 2 // 60
    total = max_attempts * 2 // 60
    if elapsed < 2:
        return "Extracting text and analyzing document structure..."
    if elapsed < 4:
        return "Processing document fields and tax information..."
    if elapsed < 6:
        return f"Performing detailed analysis and validation... ({elapsed}/{total} minutes)"
    return f"Finalizing extraction and data validation... ({elapsed}/{total} minutes)"


async def _sse_payloads(response: httpx.Response) -> AsyncIterator[dict[str, Any]]:
    async for line in response.aiter_lines():
        if not line.startswith("data:"):
            continue
        try:
            payload = json.loads(line[5:].strip())
        except json.JSONDecodeError:
            logger.debug("Skipping unreadable SSE line: %r", line)
            continue
        if isinstance(payload, dict):
            yield payload


def _error_detail(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.text or response.reason_phrase
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or body)
    return str(body)


class ProcessingClient:
    def __init__(
        self,
        base_url: str = "http://localhost:8000/api/v1",
        token: str | None = None,
        transport: httpx.AsyncBaseTransport | None = None,
        sleep: Sleep = asyncio.sleep,
        poll_interval: float = POLL_INTERVAL_SECONDS,
        max_poll_attempts: int = MAX_POLL_ATTEMPTS,
        max_consecutive_errors: int = MAX_CONSECUTIVE_ERRORS,
        reconnect_delay: float = RECONNECT_DELAY_SECONDS,
        timeout: float = 300.0,
    ):
        headers = {"Authorization": f"Bearer {token}"} if token else {}
        self._http = httpx.AsyncClient(
            base_url=base_url.rstrip("/"), headers=headers, transport=transport, timeout=timeout
        )
        self.sleep = sleep
        self.poll_interval = poll_interval
        self.max_poll_attempts = max_poll_attempts
        self.max_consecutive_errors = max_consecutive_errors
        self.reconnect_delay = reconnect_delay
        self.connections = ConnectionManager()

    async def __aenter__(self) -> "ProcessingClient":
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.aclose()

    async def aclose(self) -> None:
        await self.connections.close_all()
        await self._http.aclose()

    # ── Requests ────────────────────────────────────────────────────────────────

    async def upload(self, tax_return_id: str, path: Path, document_type: str) -> dict[str, Any]:
        content_type = _CONTENT_TYPES.get(path.suffix.lower(), "application/octet-stream")
        with path.open("rb") as fh:
            resp = await self._http.post(
                f"/tax-returns/{tax_return_id}/documents",
                data={"document_type": document_type},
                files={"file": (path.name, fh, content_type)},
            )
        if resp.status_code != 201:
            raise ProcessingClientError(
                f"Failed to upload document: {_error_detail(resp)}", resp.status_code
            )
        return resp.json()

    async def start_processing(
        self,
        document_id: str,
        stream: bool = False,
        on_event: EventCallback | None = None,
    ) -> dict[str, Any] | None:
        """Start server-side processing and return the result payload.

        The response may be plain JSON or an SSE body carrying `progress`
        events and a final `result` / `error`. Returns None when the server
        reports the document is already being processed elsewhere.
        """
        accept = "text/event-stream" if stream else "application/json"
        async with self._http.stream(
            "POST", f"/documents/{document_id}/process", headers={"Accept": accept}
        ) as resp:
            if resp.status_code == 409:
                logger.info("Document %s is already processing; monitoring instead", document_id)
                return None
            if resp.status_code >= 400:
                await resp.aread()
                raise self._process_error(resp)

            if "text/event-stream" not in resp.headers.get("content-type", ""):
                await resp.aread()
                return resp.json()

            async for payload in _sse_payloads(resp):
                kind = payload.get("type")
                if kind == "result":
                    return payload.get("data") or {}
                if kind == "error":
                    raise ProcessingClientError(
                        f"Processing failed: {payload.get('error', 'unknown error')}"
                    )
                if on_event is not None:
                    on_event(payload)
        raise ProcessingClientError("Streaming completed without result")

    def _process_error(self, resp: httpx.Response) -> ProcessingClientError:
        status = resp.status_code
        if status == 404:
            return ProcessingClientError("Processing failed: document not found", status)
        if status in (502, 503, 504):
            return ProcessingClientError(f"Server temporarily unavailable ({status})", status)
        if status == 500:
            return ProcessingClientError(f"Processing failed: {_error_detail(resp)}", status)
        return ProcessingClientError(f"Failed to process document ({status})", status)

    async def get_document(self, document_id: str) -> httpx.Response:
        return await self._http.get(f"/documents/{document_id}")

    async def submit_duplicate_action(
        self,
        document_id: str,
        action: str,
        replacement_document_id: str | None = None,
    ) -> dict[str, Any]:
        body: dict[str, Any] = {"action": action}
        if replacement_document_id:
            body["replacementDocumentId"] = replacement_document_id
        resp = await self._http.post(f"/documents/{document_id}/duplicate-action", json=body)
        if resp.status_code != 200:
            raise ProcessingClientError(
                f"Failed to process duplicate action: {_error_detail(resp)}", resp.status_code
            )
        return resp.json()

    # ── Monitoring ──────────────────────────────────────────────────────────────

    async def stream_status(self, document_id: str) -> AsyncIterator[ProcessingEvent]:
        """Events from the status stream; transport errors propagate."""
        async with self._http.stream(
            "GET",
            f"/documents/{document_id}/status-stream",
            headers={"Accept": "text/event-stream"},
            timeout=httpx.Timeout(None, connect=10.0),
        ) as resp:
            if resp.status_code != 200:
                await resp.aread()
                raise ProcessingClientError(
                    f"Status stream connection failed ({resp.status_code})", resp.status_code
                )
            async for payload in _sse_payloads(resp):
                yield ProcessingEvent.from_stream(payload)

    async def poll_events(self, document_id: str) -> AsyncIterator[ProcessingEvent]:
        """Poll the document until it is terminal; always ends with a terminal event.

        Attempts and consecutive errors are counted separately; any good
        response resets the error count.
        """
        attempts = 0
        errors = 0
        while True:
            failure: str | None = None
            try:
                resp = await self.get_document(document_id)
                if resp.status_code == 404:
                    yield ProcessingEvent("error", message=MSG_NOT_FOUND)
                    return
                if resp.status_code >= 500:
                    failure = f"Server temporarily unavailable ({resp.status_code})"
                elif resp.status_code != 200:
                    failure = f"API response error: {resp.status_code}"
                else:
                    document = resp.json()
                    # Document responses are snake_case; events carry the camelCase key
                    document.setdefault("extractedData", document.get("extracted_data"))
            except (httpx.HTTPError, ValueError) as exc:
                failure = str(exc) or exc.__class__.__name__

            if failure is None:
                errors = 0
                status = document.get("processing_status")
                if status == "COMPLETED":
                    yield ProcessingEvent(
                        "completed", status=status, progress=100,
                        message="Document processed successfully", data=document,
                    )
                    return
                if status == "FAILED":
                    yield ProcessingEvent("error", status=status, message=MSG_FAILED, data=document)
                    return
                if attempts >= self.max_poll_attempts:
                    minutes = (attempts + 1) * 2 // 60
                    yield ProcessingEvent(
                        "timeout",
                        status=status,
                        message=(
                            f"Document processing is taking longer than expected ({minutes} minutes). "
                            "Please refresh the page to check if processing completed, or try again later."
                        ),
                    )
                    return
                yield ProcessingEvent(
                    "status_update",
                    status=status,
                    progress=poll_progress(attempts, self.max_poll_attempts),
                    message=_poll_message(attempts, self.max_poll_attempts),
                )
                attempts += 1
                await self.sleep(self.poll_interval)
                continue

            errors += 1
            logger.warning("Status poll for %s failed (%d in a row): %s", document_id, errors, failure)
            if errors >= self.max_consecutive_errors:
                yield ProcessingEvent("error", message=MSG_CONNECTION_LOST)
                return
            if attempts >= self.max_poll_attempts:
                yield ProcessingEvent("error", message=MSG_UNVERIFIED)
                return
            attempts += 1
            yield ProcessingEvent(
                "status_update",
                progress=poll_progress(attempts, self.max_poll_attempts),
                message=f"Verifying processing status... ({attempts * 2 // 60} minutes elapsed)",
            )
            await self.sleep(5.0 if errors > 3 else 3.0)

    async def monitor(self, document_id: str) -> AsyncIterator[ProcessingEvent]:
        """Stream events, degrading to polling if the stream drops before a terminal event."""
        try:
            async for event in self.stream_status(document_id):
                yield event
                if event.is_terminal:
                    return
        except (httpx.HTTPError, ProcessingClientError) as exc:
            logger.warning("Status stream for %s lost: %s", document_id, exc)
        yield ProcessingEvent("offline", message=MSG_STREAM_LOST)
        await self.sleep(self.reconnect_delay)
        async for event in self.poll_events(document_id):
            yield event

    # ── Driving a tracker ───────────────────────────────────────────────────────

    def apply_event(self, tracker: DocumentTracker, event: ProcessingEvent) -> None:
        if event.type == "connected":
            tracker.update(progress=55, message="Real-time monitoring connected", realtime=True)
        elif event.type == "status_update":
            if event.status == "COMPLETED":
                tracker.extracted_data = event.data.get("extractedData")
                if tracker.state is not DocumentState.COMPLETED:
                    tracker.transition(
                        DocumentState.COMPLETED, progress=100, message="Document processing completed!"
                    )
            elif event.status == "PROCESSING":
                tracker.transition(
                    DocumentState.EXTRACTION,
                    progress=event.progress if event.progress is not None else 60,
                    message=event.message or "Extracting and analyzing document...",
                )
            else:
                tracker.update(progress=event.progress, message=event.message)
        elif event.type == "completed":
            if event.data.get("extractedData") is not None:
                tracker.extracted_data = event.data["extractedData"]
            if tracker.state is not DocumentState.COMPLETED:
                tracker.transition(
                    DocumentState.COMPLETED, progress=100,
                    message=event.message or "Processing completed successfully!",
                )
        elif event.type in ("error", "timeout"):
            tracker.transition(
                DocumentState.ERROR,
                progress=90 if event.type == "timeout" else 0,
                message=event.message or "Processing failed",
            )
            tracker.update(realtime=False)
        elif event.type == "offline":
            tracker.update(message=event.message, realtime=False)

    async def follow_stream(self, tracker: DocumentTracker, document_id: str) -> None:
        """Drive the tracker from the status stream.

        Returns on `completed` or `timeout` (timeout leaves the tracker in
        error), raises on `error`, and returns after a short delay if the
        stream cannot be opened or drops, so the caller can fall back to
        polling.
        """
        tracker.update(realtime=True, message="Connecting to real-time updates...")
        failure: str | None = None
        try:
            async for event in self.stream_status(document_id):
                self.apply_event(tracker, event)
                if event.type == "error":
                    failure = event.message or "Processing failed"
                    break
                if event.type in ("completed", "timeout"):
                    return
        except (httpx.HTTPError, ProcessingClientError) as exc:
            logger.warning("Status stream for %s dropped: %s", document_id, exc)
        if failure is not None:
            raise ProcessingClientError(failure)
        tracker.update(realtime=False, message=MSG_STREAM_LOST)
        await self.sleep(self.reconnect_delay)

    async def poll_status(self, tracker: DocumentTracker, document_id: str) -> None:
        async for event in self.poll_events(document_id):
            if event.type == "status_update":
                if tracker.state is DocumentState.EXTRACTION:
                    tracker.update(progress=event.progress, message=event.message)
                else:
                    tracker.transition(DocumentState.PROCESSING, progress=event.progress, message=event.message)
            else:
                self.apply_event(tracker, event)

    def _apply_result(self, tracker: DocumentTracker, result: dict[str, Any]) -> None:
        tracker.result = result
        tracker.extracted_data = result.get("extractedData", tracker.extracted_data)
        duplicate = result.get("duplicateCheck") or {}
        if duplicate.get("isDuplicate"):
            tracker.duplicate_check = duplicate
            tracker.transition(
                DocumentState.DUPLICATE_WARNING,
                progress=100,
                message="Potential duplicate detected - user action required",
            )
        elif tracker.state is not DocumentState.COMPLETED:
            tracker.transition(DocumentState.COMPLETED, progress=100, message="Document processed successfully")

    async def _recover(self, tracker: DocumentTracker, exc: BaseException) -> None:
        kind = classify_exception(exc)
        message = str(exc) or exc.__class__.__name__
        logger.warning("Processing %s hit a %s error: %s", tracker.file_name, kind.value, message)

        if tracker.is_terminal:
            return
        if kind.recoverable and tracker.document_id:
            tracker.transition(
                DocumentState.PROCESSING, progress=70,
                message="Connection issue detected - verifying processing status...",
            )
            await self.poll_status(tracker, tracker.document_id)
        elif kind.recoverable:
            tracker.transition(DocumentState.ERROR, progress=0, message=MSG_UPLOAD_CONNECTION)
        else:
            text = MSG_INVALID_DOCUMENT if "processing failed" in message.lower() else f"Processing error: {message}"
            tracker.transition(DocumentState.ERROR, progress=0, message=text)

    async def process_file(
        self,
        tracker: DocumentTracker,
        tax_return_id: str,
        path: Path,
        document_type: str,
        realtime: bool = True,
    ) -> DocumentTracker:
        """Upload `path` and see it through to a terminal (or duplicate_warning) state."""
        tracker.transition(DocumentState.UPLOADING, progress=10, message="Uploading document...")
        try:
            document = await self.upload(tax_return_id, path, document_type)
        except (httpx.HTTPError, ProcessingClientError) as exc:
            await self._recover(tracker, exc)
            return tracker

        tracker.document_id = str(document["id"])
        tracker.transition(
            DocumentState.PROCESSING, progress=50,
            message="Document uploaded successfully. Starting processing...",
        )
        try:
            if realtime:
                await self._process_realtime(tracker, tracker.document_id)
            else:
                await self._process_direct(tracker, tracker.document_id)
        except (httpx.HTTPError, ProcessingClientError) as exc:
            await self._recover(tracker, exc)
        return tracker

    async def _process_realtime(self, tracker: DocumentTracker, document_id: str) -> None:
        processing = asyncio.create_task(self.start_processing(document_id))
        follower = self.connections.open(document_id, self.follow_stream(tracker, document_id))
        try:
            await follower
        except ProcessingClientError:
            processing.cancel()
            raise
        finally:
            await self.connections.close(document_id)

        if tracker.state is DocumentState.ERROR:
            # Stream timed out; the user refreshes manually
            processing.cancel()
            return

        try:
            result = await processing
        except (httpx.HTTPError, ProcessingClientError) as exc:
            if tracker.state is DocumentState.COMPLETED:
                logger.warning("Process response for %s lost after completion: %s", document_id, exc)
                return
            raise
        if result is not None:
            self._apply_result(tracker, result)
        elif not tracker.is_terminal:
            await self.poll_status(tracker, document_id)

    async def _process_direct(self, tracker: DocumentTracker, document_id: str) -> None:
        def on_event(payload: dict[str, Any]) -> None:
            if payload.get("type") == "progress":
                tracker.update(progress=payload.get("progress"), message=payload.get("message"))

        result = await self.start_processing(document_id, stream=True, on_event=on_event)
        if result is None:
            await self.poll_status(tracker, document_id)
        else:
            self._apply_result(tracker, result)

    async def resolve_duplicate(
        self,
        tracker: DocumentTracker,
        action: str,
        replacement_document_id: str | None = None,
    ) -> DocumentTracker:
        """Submit the user's choice for a duplicate warning; no reprocessing happens."""
        if tracker.state is not DocumentState.DUPLICATE_WARNING or not tracker.document_id:
            raise ProcessingClientError(f"No duplicate warning to resolve for {tracker.file_name}")
        if action == "replace" and replacement_document_id is None:
            matches = (tracker.duplicate_check or {}).get("matchingDocuments") or []
            replacement_document_id = matches[0]["id"] if matches else None

        try:
            await self.submit_duplicate_action(tracker.document_id, action, replacement_document_id)
        except (httpx.HTTPError, ProcessingClientError) as exc:
            tracker.transition(DocumentState.ERROR, message=str(exc) or "Failed to process duplicate action")
            return tracker

        if action == "cancel":
            tracker.transition(DocumentState.ERROR, progress=0, message=MSG_CANCELLED)
        elif action == "replace":
            tracker.transition(DocumentState.COMPLETED, progress=100, message="Document replaced successfully")
        else:
            tracker.transition(
                DocumentState.COMPLETED, progress=100, message="Document imported despite duplicate warning"
            )
        return tracker
