"""
ProcessingClient against an in-memory server (httpx.MockTransport), with
sleeps recorded instead of awaited.
"""
import json

import httpx
import pytest

from taxprep.client.errors import ProcessingClientError
from taxprep.client.processing import (
    MSG_CANCELLED,
    MSG_CONNECTION_LOST,
    MSG_FAILED,
    MSG_INVALID_DOCUMENT,
    MSG_NOT_FOUND,
    MSG_STREAM_LOST,
    MSG_UNVERIFIED,
    MSG_UPLOAD_CONNECTION,
    ProcessingClient,
    poll_progress,
)
from taxprep.client.tracker import DocumentState, DocumentTracker

DOC = "doc-1"
RETURN = "tr-1"

RESULT = {
    "documentId": DOC,
    "processingStatus": "COMPLETED",
    "extractedData": {"wages": "55000"},
    "duplicateCheck": {"isDuplicate": False},
}


def sse(*events: dict) -> httpx.Response:
    body = "".join(f"data: {json.dumps(e)}\n\n" for e in events)
    return httpx.Response(200, headers={"content-type": "text/event-stream"}, content=body.encode())


class RecordingSleep:
    def __init__(self):
        self.calls: list[float] = []

    async def __call__(self, seconds):
        self.calls.append(seconds)


class FakeServer:
    """Routes the handful of endpoints the client uses.

    `statuses` feeds successive GET /documents/{id} answers (the last one
    repeats): a status string, an HTTP status code, or an httpx exception
    class to raise.
    """

    def __init__(self, *, statuses=("COMPLETED",), process=None, stream=None, upload=None, duplicate=None):
        self.statuses = list(statuses)
        self.process = process or (lambda request: httpx.Response(200, json=RESULT))
        self.stream = stream or (lambda request: httpx.Response(503))
        self.upload = upload or (lambda request: httpx.Response(201, json={"id": DOC, "processing_status": "PENDING"}))
        self.duplicate = duplicate or (lambda request: httpx.Response(200, json={"success": True}))
        self.requests: list[httpx.Request] = []

    def _document(self, request):
        item = self.statuses.pop(0) if len(self.statuses) > 1 else self.statuses[0]
        if isinstance(item, type):
            raise item("connection refused", request=request)
        if isinstance(item, int):
            return httpx.Response(item, json={"detail": "nope"})
        return httpx.Response(200, json={"id": DOC, "processing_status": item, "extracted_data": {"wages": "1"}})

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        path = request.url.path
        if path == f"/api/v1/tax-returns/{RETURN}/documents":
            return self.upload(request)
        if path == f"/api/v1/documents/{DOC}/process":
            return self.process(request)
        if path == f"/api/v1/documents/{DOC}/status-stream":
            return self.stream(request)
        if path == f"/api/v1/documents/{DOC}/duplicate-action":
            return self.duplicate(request)
        if path == f"/api/v1/documents/{DOC}":
            return self._document(request)
        return httpx.Response(404, json={"detail": "Not Found"})


def _client(server: FakeServer, sleep=None, **kwargs) -> ProcessingClient:
    return ProcessingClient(
        base_url="http://test/api/v1",
        transport=httpx.MockTransport(server),
        sleep=sleep or RecordingSleep(),
        **kwargs,
    )


async def _poll(server, **kwargs):
    sleep = RecordingSleep()
    async with _client(server, sleep=sleep, **kwargs) as client:
        events = [e async for e in client.poll_events(DOC)]
    return events, sleep.calls


@pytest.fixture
def w2_file(tmp_path):
    path = tmp_path / "w2.pdf"
    path.write_bytes(b"%PDF-1.4 fake w2")
    return path


# ── Polling ──────────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestPolling:
    async def test_until_completed(self):
        events, sleeps = await _poll(FakeServer(statuses=["PROCESSING", "PROCESSING", "COMPLETED"]))

        assert [e.type for e in events] == ["status_update", "status_update", "completed"]
        assert events[0].status == "PROCESSING"
        assert events[0].progress == poll_progress(0)
        assert events[-1].progress == 100
        assert events[-1].data["extracted_data"] == {"wages": "1"}
        assert sleeps == [2.0, 2.0]

    async def test_pending_counts_as_in_progress(self):
        events, _ = await _poll(FakeServer(statuses=["PENDING", "COMPLETED"]))
        assert [e.type for e in events] == ["status_update", "completed"]

    async def test_failed(self):
        events, _ = await _poll(FakeServer(statuses=["FAILED"]))
        assert [(e.type, e.message) for e in events] == [("error", MSG_FAILED)]

    async def test_not_found(self):
        events, sleeps = await _poll(FakeServer(statuses=[404]))
        assert [(e.type, e.message) for e in events] == [("error", MSG_NOT_FOUND)]
        assert sleeps == []

    async def test_persistent_connection_errors(self):
        events, sleeps = await _poll(FakeServer(statuses=[httpx.ConnectError]))

        assert [e.type for e in events] == ["status_update"] * 11 + ["error"]
        assert events[-1].message == MSG_CONNECTION_LOST
        assert sleeps == [3.0] * 3 + [5.0] * 8

    async def test_errors_reset_after_a_good_response(self):
        server = FakeServer(statuses=[503, 503, 503, 503, "PROCESSING", 503, "COMPLETED"])
        events, sleeps = await _poll(server, max_consecutive_errors=5)

        assert events[-1].type == "completed"
        assert events[4].status == "PROCESSING"
        assert sleeps == [3.0, 3.0, 3.0, 5.0, 2.0, 3.0]

    async def test_timeout(self):
        events, _ = await _poll(FakeServer(statuses=["PROCESSING"]), max_poll_attempts=2)
        assert [e.type for e in events] == ["status_update", "status_update", "timeout"]
        assert "taking longer than expected" in events[-1].message

    async def test_attempts_exhausted_by_errors(self):
        events, _ = await _poll(FakeServer(statuses=[500]), max_poll_attempts=1)
        assert [e.type for e in events] == ["status_update", "error"]
        assert events[-1].message == MSG_UNVERIFIED

    async def test_poll_status_keeps_extracted_data(self):
        server = FakeServer(statuses=["PROCESSING", "COMPLETED"])
        tracker = DocumentTracker("w2.pdf")
        tracker.transition(DocumentState.UPLOADING)
        tracker.transition(DocumentState.PROCESSING)

        async with _client(server) as client:
            await client.poll_status(tracker, DOC)

        assert tracker.state is DocumentState.COMPLETED
        assert tracker.extracted_data == {"wages": "1"}


class TestPollProgress:
    def test_bounds(self):
        assert poll_progress(0) == 50
        assert poll_progress(240) == 95
        assert poll_progress(10_000) == 95


# ── Starting processing ──────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestStartProcessing:
    async def test_json_result(self):
        async with _client(FakeServer()) as client:
            assert await client.start_processing(DOC) == RESULT

    async def test_event_stream_result(self):
        seen = []
        server = FakeServer(process=lambda r: sse(
            {"type": "progress", "stage": "extraction", "progress": 10, "message": "Extracting..."},
            {"type": "progress", "stage": "calculation", "progress": 80, "message": "Calculating..."},
            {"type": "result", "data": RESULT},
        ))
        async with _client(server) as client:
            result = await client.start_processing(DOC, stream=True, on_event=seen.append)

        assert result == RESULT
        assert [e["progress"] for e in seen] == [10, 80]
        assert server.requests[0].headers["accept"] == "text/event-stream"

    async def test_event_stream_error(self):
        server = FakeServer(process=lambda r: sse({"type": "error", "error": "OCR unavailable"}))
        async with _client(server) as client:
            with pytest.raises(ProcessingClientError, match="Processing failed: OCR unavailable"):
                await client.start_processing(DOC, stream=True)

    async def test_event_stream_without_result(self):
        server = FakeServer(process=lambda r: sse({"type": "progress", "progress": 10}))
        async with _client(server) as client:
            with pytest.raises(ProcessingClientError, match="Streaming completed without result"):
                await client.start_processing(DOC, stream=True)

    async def test_conflict_means_monitor(self):
        server = FakeServer(process=lambda r: httpx.Response(409, json={"detail": "busy"}))
        async with _client(server) as client:
            assert await client.start_processing(DOC) is None

    @pytest.mark.parametrize("status,text", [
        (404, "document not found"),
        (503, "Server temporarily unavailable (503)"),
        (500, "Processing failed: Could not read the document"),
        (422, "Failed to process document (422)"),
    ])
    async def test_http_errors(self, status, text):
        server = FakeServer(process=lambda r: httpx.Response(status, json={"error": "Could not read the document"}))
        async with _client(server) as client:
            with pytest.raises(ProcessingClientError) as info:
                await client.start_processing(DOC)
        assert text in info.value.message
        assert info.value.status_code == status


# ── Monitoring ───────────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestMonitor:
    async def test_stream_to_completion(self):
        server = FakeServer(stream=lambda r: sse(
            {"type": "connected", "message": "Status stream connected"},
            {"type": "status_update", "status": "COMPLETED", "extractedData": {"wages": "1"}},
            {"type": "completed", "message": "Document processing completed successfully"},
            {"type": "status_update", "status": "COMPLETED"},
        ))
        async with _client(server) as client:
            events = [e async for e in client.monitor(DOC)]
        assert [e.type for e in events] == ["connected", "status_update", "completed"]

    async def test_stream_unavailable_falls_back_to_polling(self):
        sleep = RecordingSleep()
        server = FakeServer(statuses=["PROCESSING", "COMPLETED"])
        async with _client(server, sleep=sleep) as client:
            events = [e async for e in client.monitor(DOC)]

        assert [e.type for e in events] == ["offline", "status_update", "completed"]
        assert events[0].message == MSG_STREAM_LOST
        assert sleep.calls == [1.0, 2.0]

    async def test_stream_ends_early(self):
        server = FakeServer(stream=lambda r: sse({"type": "connected"}), statuses=["COMPLETED"])
        async with _client(server) as client:
            events = [e async for e in client.monitor(DOC)]
        assert [e.type for e in events] == ["connected", "offline", "completed"]


# ── Whole-file flows ─────────────────────────────────────────────────────────

STREAM_TO_COMPLETION = (
    {"type": "connected", "message": "Status stream connected"},
    {"type": "status_update", "status": "PROCESSING", "progress": 60, "message": "Starting document analysis..."},
    {"type": "status_update", "status": "COMPLETED", "extractedData": {"wages": "55000"}},
    {"type": "completed", "message": "Document processing completed successfully"},
)


@pytest.mark.asyncio
class TestProcessFile:
    async def test_realtime_happy_path(self, w2_file):
        server = FakeServer(stream=lambda r: sse(*STREAM_TO_COMPLETION))
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.COMPLETED
        assert tracker.history == [
            DocumentState.PENDING,
            DocumentState.UPLOADING,
            DocumentState.PROCESSING,
            DocumentState.EXTRACTION,
            DocumentState.COMPLETED,
        ]
        assert tracker.document_id == DOC
        assert tracker.progress == 100
        assert tracker.result == RESULT
        assert tracker.extracted_data == {"wages": "55000"}

    async def test_realtime_duplicate_warning(self, w2_file):
        duplicate = {**RESULT, "duplicateCheck": {"isDuplicate": True, "matchingDocuments": [{"id": "doc-0"}]}}
        server = FakeServer(
            stream=lambda r: sse(*STREAM_TO_COMPLETION),
            process=lambda r: httpx.Response(200, json=duplicate),
        )
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.DUPLICATE_WARNING
        assert tracker.duplicate_check["matchingDocuments"] == [{"id": "doc-0"}]

    async def test_stream_reports_failure(self, w2_file):
        server = FakeServer(stream=lambda r: sse(
            {"type": "connected"},
            {"type": "error", "message": "Document processing failed"},
        ))
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.ERROR
        assert tracker.message == "Document processing failed"
        assert tracker.realtime is False

    async def test_stream_unavailable_uses_process_result(self, w2_file):
        tracker = DocumentTracker("w2.pdf")
        async with _client(FakeServer()) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.COMPLETED
        assert tracker.realtime is False
        assert tracker.result == RESULT

    async def test_already_processing_is_monitored(self, w2_file):
        server = FakeServer(
            process=lambda r: httpx.Response(409, json={"detail": "busy"}),
            statuses=["PROCESSING", "COMPLETED"],
        )
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.COMPLETED

    async def test_direct_mode_reports_progress(self, w2_file):
        server = FakeServer(process=lambda r: sse(
            {"type": "progress", "stage": "extraction", "progress": 10, "message": "Extracting..."},
            {"type": "result", "data": RESULT},
        ))
        tracker = DocumentTracker("w2.pdf")
        seen: list[int] = []
        tracker.subscribe(lambda t: seen.append(t.progress))

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2", realtime=False)

        assert tracker.state is DocumentState.COMPLETED
        assert 10 in seen
        assert seen[-1] == 100

    async def test_processing_error_is_final(self, w2_file):
        server = FakeServer(process=lambda r: httpx.Response(500, json={"error": "Could not read the document"}))
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2", realtime=False)

        assert tracker.state is DocumentState.ERROR
        assert tracker.message == MSG_INVALID_DOCUMENT

    async def test_timeout_checks_real_status(self, w2_file):
        def hang(request):
            raise httpx.ReadTimeout("read timed out", request=request)

        server = FakeServer(process=hang, statuses=["PROCESSING", "COMPLETED"])
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2", realtime=False)

        assert tracker.state is DocumentState.COMPLETED

    async def test_upload_failure(self, w2_file):
        server = FakeServer(upload=lambda r: httpx.Response(400, json={"detail": "File is empty"}))
        tracker = DocumentTracker("w2.pdf")

        async with _client(server) as client:
            await client.process_file(tracker, RETURN, w2_file, "W2")

        assert tracker.state is DocumentState.ERROR
        assert tracker.message == MSG_UPLOAD_CONNECTION
        assert tracker.document_id is None


# ── Duplicate resolution ─────────────────────────────────────────────────────

def _warned_tracker() -> DocumentTracker:
    tracker = DocumentTracker("w2.pdf")
    tracker.document_id = DOC
    tracker.duplicate_check = {"isDuplicate": True, "matchingDocuments": [{"id": "doc-0"}]}
    for state in (DocumentState.UPLOADING, DocumentState.PROCESSING, DocumentState.DUPLICATE_WARNING):
        tracker.transition(state)
    return tracker


@pytest.mark.asyncio
class TestResolveDuplicate:
    async def test_replace_uses_first_match(self):
        server = FakeServer()
        async with _client(server) as client:
            tracker = await client.resolve_duplicate(_warned_tracker(), "replace")

        assert tracker.state is DocumentState.COMPLETED
        assert tracker.message == "Document replaced successfully"
        assert json.loads(server.requests[-1].content) == {"action": "replace", "replacementDocumentId": "doc-0"}

    async def test_proceed(self):
        async with _client(FakeServer()) as client:
            tracker = await client.resolve_duplicate(_warned_tracker(), "proceed")
        assert tracker.state is DocumentState.COMPLETED
        assert tracker.message == "Document imported despite duplicate warning"

    async def test_cancel(self):
        async with _client(FakeServer()) as client:
            tracker = await client.resolve_duplicate(_warned_tracker(), "cancel")
        assert tracker.state is DocumentState.ERROR
        assert tracker.message == MSG_CANCELLED

    async def test_server_rejects(self):
        server = FakeServer(duplicate=lambda r: httpx.Response(400, json={"detail": "A document cannot replace itself"}))
        async with _client(server) as client:
            tracker = await client.resolve_duplicate(_warned_tracker(), "replace", DOC)
        assert tracker.state is DocumentState.ERROR
        assert "A document cannot replace itself" in tracker.message

    async def test_requires_warning(self):
        async with _client(FakeServer()) as client:
            with pytest.raises(ProcessingClientError):
                await client.resolve_duplicate(DocumentTracker("w2.pdf"), "proceed")
