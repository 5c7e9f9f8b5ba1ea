"""
Tax return, dependent and income-integrity endpoints.
"""
import uuid
from decimal import Decimal

import pytest

from taxprep.models.tax_return import TaxReturn
from taxprep.models.user import User

API = "/api/v1"


@pytest.mark.asyncio
class TestTaxReturns:
    async def test_create_normalizes_filing_status(self, client):
        resp = await client.post(
            f"{API}/tax-returns", json={"tax_year": 2023, "filing_status": "marriedFilingJointly"}
        )
        assert resp.status_code == 201
        body = resp.json()
        assert body["filing_status"] == "MARRIED_FILING_JOINTLY"
        assert Decimal(body["total_income"]) == 0
        assert body["state_source"] == "UNKNOWN"

    async def test_create_rejects_unknown_status(self, client):
        resp = await client.post(f"{API}/tax-returns", json={"filing_status": "complicated"})
        assert resp.status_code == 422

    async def test_list_only_own_returns(self, client, db, tax_return):
        stranger = User(email="stranger@example.com", hashed_password="x", full_name="Stranger")
        db.add(stranger)
        await db.flush()
        db.add(TaxReturn(user_id=stranger.id, tax_year=2024))
        await db.commit()

        resp = await client.get(f"{API}/tax-returns")
        assert [r["id"] for r in resp.json()] == [str(tax_return.id)]

    async def test_other_users_return_is_hidden(self, client, db):
        stranger = User(email="other@example.com", hashed_password="x", full_name="Other")
        db.add(stranger)
        await db.flush()
        theirs = TaxReturn(user_id=stranger.id, tax_year=2024)
        db.add(theirs)
        await db.commit()

        assert (await client.get(f"{API}/tax-returns/{theirs.id}")).status_code == 404

    async def test_manual_state_override(self, client, tax_return, make_document, make_income_entry):
        doc = await make_document()
        await make_income_entry(doc.id, "80000")

        resp = await client.patch(f"{API}/tax-returns/{tax_return.id}", json={"detected_state": "ca"})

        assert resp.status_code == 200
        body = resp.json()
        assert body["detected_state"] == "CA"
        assert body["state"] == "CA"
        assert body["state_source"] == "MANUAL"
        assert body["state_confidence"] == 1.0
        assert Decimal(body["state_tax_liability"]) > 0
        assert Decimal(body["total_income"]) == Decimal("80000")

    async def test_manual_state_must_exist(self, client, tax_return):
        resp = await client.patch(f"{API}/tax-returns/{tax_return.id}", json={"detected_state": "ZZ"})
        assert resp.status_code == 422

    async def test_filing_status_change_recomputes(self, client, tax_return, make_document, make_income_entry):
        doc = await make_document()
        await make_income_entry(doc.id, "50000")

        single = (await client.patch(f"{API}/tax-returns/{tax_return.id}", json={})).json()
        joint = (await client.patch(
            f"{API}/tax-returns/{tax_return.id}", json={"filing_status": "MARRIED_FILING_JOINTLY"}
        )).json()

        assert Decimal(single["tax_liability"]) == Decimal("4016.00")
        assert Decimal(joint["tax_liability"]) < Decimal(single["tax_liability"])


@pytest.mark.asyncio
class TestDependents:
    async def test_dependent_feeds_credits(self, client, tax_return, make_document, make_income_entry):
        doc = await make_document()
        await make_income_entry(doc.id, "50000")

        resp = await client.post(
            f"{API}/tax-returns/{tax_return.id}/dependents",
            json={"first_name": "Sam", "last_name": "Filer", "qualifies_for_ctc": True},
        )
        assert resp.status_code == 201
        dependent_id = resp.json()["id"]

        tr = (await client.get(f"{API}/tax-returns/{tax_return.id}")).json()
        assert Decimal(tr["total_credits"]) == Decimal("2000")
        assert Decimal(tr["amount_owed"]) == Decimal("2016")

        listed = (await client.get(f"{API}/tax-returns/{tax_return.id}/dependents")).json()
        assert [d["first_name"] for d in listed] == ["Sam"]

        resp = await client.delete(f"{API}/tax-returns/{tax_return.id}/dependents/{dependent_id}")
        assert resp.status_code == 204
        tr = (await client.get(f"{API}/tax-returns/{tax_return.id}")).json()
        assert Decimal(tr["total_credits"]) == 0

    async def test_missing_dependent(self, client, tax_return):
        resp = await client.delete(f"{API}/tax-returns/{tax_return.id}/dependents/{uuid.uuid4()}")
        assert resp.status_code == 404


@pytest.mark.asyncio
class TestIncomeIntegrity:
    async def test_current_income_reports_orphans(self, client, tax_return, make_document, make_income_entry):
        doc = await make_document()
        await make_income_entry(doc.id, "55000", "6000")
        await make_income_entry(uuid.uuid4(), "99999")

        resp = await client.get(f"{API}/tax-returns/{tax_return.id}/current-income")

        assert resp.status_code == 200
        body = resp.json()
        assert len(body["incomeEntries"]) == 1
        assert body["incomeEntries"][0]["document"]["fileName"] == "w2.pdf"
        summary = body["summary"]
        assert summary["totalIncome"] == 55000.0
        assert summary["totalWithholdings"] == 6000.0
        assert summary["invalidReferenceEntriesFound"] == 1
        assert summary["needsCleanup"] is True

    async def test_cleanup(self, client, tax_return, make_document, make_income_entry):
        doc = await make_document()
        await make_income_entry(doc.id, "55000", "6000")
        await make_income_entry(uuid.uuid4(), "99999")

        resp = await client.post(f"{API}/tax-returns/{tax_return.id}/cleanup-orphaned-data")

        assert resp.status_code == 200
        summary = resp.json()["summary"]
        assert summary["invalidDocumentEntriesDeleted"] == 1
        assert summary["validIncomeEntriesRemaining"] == 1
        assert summary["newTotalIncome"] == 55000.0
        assert summary["taxCalculationResult"]["totalIncome"] == 55000.0

        after = (await client.get(f"{API}/tax-returns/{tax_return.id}/current-income")).json()
        assert after["summary"]["needsCleanup"] is False

    async def test_scenarios(self, client, tax_return):
        resp = await client.get(f"{API}/tax-returns/{tax_return.id}/tax-scenarios")
        assert resp.status_code == 200
        assert len(resp.json()["scenarios"]) == 5


@pytest.mark.asyncio
class TestReferenceData:
    async def test_state_summary(self, client):
        resp = await client.get(f"{API}/states/ca/summary")
        assert resp.status_code == 200
        assert resp.json()["stateCode"] == "CA"
        assert resp.json()["hasIncomeTax"] is True

    async def test_unsupported_state(self, client):
        assert (await client.get(f"{API}/states/ZZ/summary")).status_code == 404

    async def test_health(self, client):
        resp = await client.get("/health")
        assert resp.json() == {"status": "ok", "supportedStates": 17}


class _Redis:
    def __init__(self, error: Exception | None = None):
        self.error = error

    async def ping(self):
        if self.error:
            raise self.error
        return True


@pytest.mark.asyncio
class TestReadiness:
    async def test_ready(self, client, monkeypatch):
        from taxprep.routers import health

        monkeypatch.setattr(health, "get_redis", lambda: _Redis())
        resp = await client.get("/health/ready")
        assert resp.status_code == 200
        assert resp.json()["checks"]["database"] == "connected"
        assert resp.json()["checks"]["redis"] == "connected"

    async def test_redis_down(self, client, monkeypatch):
        from redis.exceptions import ConnectionError as RedisConnectionError

        from taxprep.routers import health

        monkeypatch.setattr(health, "get_redis", lambda: _Redis(RedisConnectionError("refused")))
        resp = await client.get("/health/ready")
        assert resp.status_code == 503
        assert resp.json()["status"] == "degraded"
        assert resp.json()["checks"]["redis"] == "unavailable"
