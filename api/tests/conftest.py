"""
Shared fixtures: a throwaway SQLite database and an in-process API client
wired to the fakes in `tests.fakes`.

Settings are read at import time, so the environment is prepared before
anything from taxprep is imported.
"""
import os
import tempfile
import uuid
from decimal import Decimal
from pathlib import Path

from cryptography.fernet import Fernet

_TMP = Path(tempfile.mkdtemp(prefix="taxprep-tests-"))

os.environ.update({
    "ENVIRONMENT": "test",
    "API_SECRET_KEY": "test-secret-key-that-is-long-enough-0123456789",
    "ENCRYPTION_KEY": Fernet.generate_key().decode(),
    "DATABASE_URL": f"sqlite+aiosqlite:///{_TMP / 'taxprep.db'}",
    "DATABASE_URL_SYNC": f"sqlite:///{_TMP / 'taxprep.db'}",
    "REDIS_URL": "redis://localhost:6379/15",
    "USE_REDIS_LOCKS": "false",
    "RATE_LIMIT_ENABLED": "false",
    "UPLOAD_DIR": str(_TMP / "uploads"),
    "OCR_SERVICE_URL": "http://ocr.test",
})

import pytest  # noqa: E402
import pytest_asyncio  # noqa: E402
from httpx import ASGITransport, AsyncClient  # noqa: E402

from taxprep.core import redis as redis_module  # noqa: E402
from taxprep.core.database import Base, async_session, engine  # noqa: E402
from taxprep.core.deps import get_current_user, get_processor  # noqa: E402
from taxprep.main import app  # noqa: E402
from taxprep.models.document import Document, IncomeEntry, ProcessingStatus  # noqa: E402
from taxprep.models.tax_return import TaxReturn  # noqa: E402
from taxprep.models.user import User  # noqa: E402
from tests.fakes import FakeClassifier, build_processor  # noqa: E402


# ── Database ─────────────────────────────────────────────────────────────────

@pytest_asyncio.fixture
async def db_setup():
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    yield
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()
    redis_module._local_locks.clear()


@pytest_asyncio.fixture
async def db(db_setup):
    async with async_session() as session:
        yield session


@pytest_asyncio.fixture
async def user(db):
    u = User(
        email=f"{uuid.uuid4().hex[:10]}@example.com",
        hashed_password="not-a-real-hash",
        full_name="Jane Filer",
    )
    db.add(u)
    await db.commit()
    return u


@pytest_asyncio.fixture
async def tax_return(db, user):
    tr = TaxReturn(user_id=user.id, tax_year=2024, filing_status="SINGLE")
    db.add(tr)
    await db.commit()
    return tr


@pytest.fixture
def make_document(db, tax_return):
    async def _make(**overrides) -> Document:
        values = {
            "tax_return_id": tax_return.id,
            "file_name": "w2.pdf",
            "stored_filename": f"{uuid.uuid4()}_w2.pdf",
            "file_type": "application/pdf",
            "file_size": 1024,
            "document_type": "W2",
            "processing_status": ProcessingStatus.PENDING.value,
        }
        values.update(overrides)
        doc = Document(**values)
        db.add(doc)
        await db.commit()
        return doc
    return _make


@pytest.fixture
def make_income_entry(db, tax_return):
    async def _make(document_id, amount, withheld="0", **overrides) -> IncomeEntry:
        values = {
            "tax_return_id": tax_return.id,
            "document_id": document_id,
            "income_type": "W2_WAGES",
            "description": "W2 wages from Acme Corp",
            "amount": Decimal(amount),
            "federal_tax_withheld": Decimal(withheld),
        }
        values.update(overrides)
        entry = IncomeEntry(**values)
        db.add(entry)
        await db.commit()
        return entry
    return _make


# ── API client ───────────────────────────────────────────────────────────────

@pytest.fixture
def processor():
    return build_processor(classifier=FakeClassifier())


@pytest_asyncio.fixture
async def client(db_setup, user, processor):
    app.dependency_overrides[get_current_user] = lambda: user
    app.dependency_overrides[get_processor] = lambda: processor
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as ac:
        yield ac
    app.dependency_overrides.clear()
