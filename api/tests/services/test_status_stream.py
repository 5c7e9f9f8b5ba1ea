"""
Status stream: event sequencing over a real SQLite row, with sleeps stubbed out.
"""
import uuid
from contextlib import asynccontextmanager
from datetime import datetime, timedelta, timezone

import pytest
from sqlalchemy import delete, update
from sqlalchemy.exc import OperationalError

from taxprep.core.database import async_session
from taxprep.models.document import Document, ProcessingStatus
from taxprep.services.status_stream import (
    MSG_FAILED,
    MSG_INTERRUPTED,
    MSG_NOT_FOUND,
    MSG_TIMEOUT,
    phase_message,
    processing_stages,
    status_events,
    status_update,
    synthetic_progress,
)


class RecordingSleep:
    """No-op sleep that can run a side effect on a given call."""

    def __init__(self, on_call: dict[int, object] | None = None):
        self.calls: list[float] = []
        self.on_call = on_call or {}

    async def __call__(self, seconds: float) -> None:
        self.calls.append(seconds)
        action = self.on_call.get(len(self.calls))
        if action is not None:
            await action()


class FlakySessionFactory:
    """Session factory whose Nth opened session fails with a database error."""

    def __init__(self, failing_calls):
        self.failing_calls = failing_calls
        self.calls = 0

    @asynccontextmanager
    async def __call__(self):
        self.calls += 1
        if self.calls in self.failing_calls:
            raise OperationalError("SELECT documents", {}, Exception("database unavailable"))
        async with async_session() as session:
            yield session


async def _set_status(document_id, status: ProcessingStatus, **values):
    async with async_session() as s:
        await s.execute(
            update(Document).where(Document.id == document_id).values(processing_status=status.value, **values)
        )
        await s.commit()


async def _collect(document_id, **kwargs) -> list[dict]:
    return [event async for event in status_events(document_id, **kwargs)]


# ── Pure helpers ─────────────────────────────────────────────────────────────

class TestHelpers:
    @pytest.mark.parametrize("elapsed,expected", [
        (0, "Starting document analysis..."),
        (59, "Starting document analysis..."),
        (60, "Extracting text and identifying form fields..."),
        (200, "Processing tax information and validating data..."),
        (300, "Finalizing extraction and performing quality checks..."),
    ])
    def test_phase_message(self, elapsed, expected):
        assert phase_message(elapsed) == expected

    def test_synthetic_progress(self):
        assert synthetic_progress(0, 300) == 0
        assert synthetic_progress(150, 300) == 50
        assert synthetic_progress(10_000, 300) == 95

    def test_status_update_while_processing(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        doc = Document(
            id=uuid.uuid4(), file_name="w2.pdf", document_type="W2",
            processing_status="PROCESSING", is_verified=False,
            created_at=now - timedelta(minutes=3), updated_at=now - timedelta(seconds=90),
        )
        event = status_update(doc, poll_count=4, now=now)
        assert event["type"] == "status_update"
        assert event["pollCount"] == 4
        assert event["elapsedTime"] == 90_000
        assert event["progress"] == 30
        assert event["message"] == "Extracting text and identifying form fields..."
        assert event["processingStages"]["extraction"]["inProgress"] is True
        assert "extractedData" not in event

    def test_status_update_naive_timestamps(self):
        now = datetime(2024, 3, 1, 12, 0, tzinfo=timezone.utc)
        doc = Document(
            id=uuid.uuid4(), file_name="w2.pdf", document_type="W2",
            processing_status="PROCESSING", is_verified=False,
            updated_at=datetime(2024, 3, 1, 11, 59),
        )
        assert status_update(doc, 1, now=now)["elapsedTime"] == 60_000

    def test_completed_stages(self):
        doc = Document(
            id=uuid.uuid4(), processing_status="COMPLETED",
            created_at=datetime(2024, 3, 1, tzinfo=timezone.utc),
            updated_at=datetime(2024, 3, 2, tzinfo=timezone.utc),
        )
        stages = processing_stages(doc)
        assert all(stage["completed"] for stage in stages.values())


# ── Event sequences ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestStatusEvents:
    async def test_stuck_document_times_out(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)
        sleep = RecordingSleep()

        events = await _collect(doc.id, sleep=sleep)

        kinds = [e["type"] for e in events]
        assert kinds[0] == "connected"
        assert kinds[1:-1] == ["status_update"] * 300
        assert kinds[-1] == "timeout"
        assert kinds.count("timeout") == 1
        assert events[-1]["message"] == MSG_TIMEOUT
        assert events[-2]["pollCount"] == 300
        assert sleep.calls == [2.0] * 300

    async def test_completion(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)

        async def finish():
            await _set_status(doc.id, ProcessingStatus.COMPLETED, extracted_data={"wages": "1"}, ocr_text="W-2")

        events = await _collect(doc.id, sleep=RecordingSleep({1: finish}))

        assert [e["type"] for e in events] == ["connected", "status_update", "status_update", "completed"]
        assert events[0]["initialStatus"] == "PROCESSING"
        final = events[2]
        assert final["status"] == "COMPLETED"
        assert final["extractedData"] == {"wages": "1"}
        assert final["ocrText"] == "W-2"

    async def test_failure_is_a_single_error(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)

        async def fail():
            await _set_status(doc.id, ProcessingStatus.FAILED)

        events = await _collect(doc.id, sleep=RecordingSleep({1: fail}))

        assert [e["type"] for e in events] == ["connected", "status_update", "error"]
        assert events[-1]["message"] == MSG_FAILED

    async def test_document_deleted_mid_stream(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PENDING.value)

        async def remove():
            async with async_session() as s:
                await s.execute(delete(Document).where(Document.id == doc.id))
                await s.commit()

        events = await _collect(doc.id, sleep=RecordingSleep({2: remove}))

        assert [e["type"] for e in events] == ["connected", "status_update", "status_update", "error"]
        assert events[-1]["message"] == MSG_NOT_FOUND

    async def test_unknown_document(self, db_setup):
        events = await _collect(uuid.uuid4(), sleep=RecordingSleep())
        assert [(e["type"], e["message"]) for e in events] == [("error", MSG_NOT_FOUND)]

    async def test_client_disconnect_stops_quietly(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)

        async def gone():
            return True

        events = await _collect(doc.id, sleep=RecordingSleep(), is_disconnected=gone)
        assert [e["type"] for e in events] == ["connected"]


# ── Database errors ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestDatabaseErrors:
    async def test_transient_errors_back_off_and_recover(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)
        sleep = RecordingSleep()

        events = await _collect(
            doc.id, sleep=sleep, session_factory=FlakySessionFactory({2, 3}), max_polls=1,
        )

        assert [e["type"] for e in events] == ["connected", "status_update", "timeout"]
        assert events[1]["pollCount"] == 1
        assert sleep.calls == [5.0, 5.0, 2.0]

    async def test_persistent_errors_end_the_stream(self, make_document):
        doc = await make_document(processing_status=ProcessingStatus.PROCESSING.value)
        sleep = RecordingSleep()

        events = await _collect(
            doc.id, sleep=sleep, session_factory=FlakySessionFactory(set(range(2, 100))), max_errors=3,
        )

        assert [e["type"] for e in events] == ["connected", "error"]
        assert events[-1]["message"] == MSG_INTERRUPTED
        assert sleep.calls == [5.0, 5.0]

    async def test_initial_load_error(self, db_setup):
        events = await _collect(uuid.uuid4(), sleep=RecordingSleep(), session_factory=FlakySessionFactory({1}))
        assert [(e["type"], e["message"]) for e in events] == [("error", MSG_INTERRUPTED)]
