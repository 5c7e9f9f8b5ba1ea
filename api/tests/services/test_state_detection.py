"""
Tests for the three detection tiers. The classifier tier uses an in-memory fake.
"""
import pytest

from taxprep.core.errors import StateDetectionError
from taxprep.models.tax_return import StateSource
from taxprep.schemas.extraction import ExtractedFields, W2Fields
from taxprep.services.state_detection import (
    ADDRESS_CONFIDENCE,
    DIRECT_CONFIDENCE,
    StateDetector,
    build_classifier_prompt,
    is_valid_state,
    resolve_state,
    state_from_address,
)
from tests.fakes import FakeClassifier


# ── Helpers ──────────────────────────────────────────────────────────────────

class TestHelpers:
    def test_valid_codes(self):
        assert is_valid_state("CA")
        assert is_valid_state(" dc ")
        assert not is_valid_state("ZZ")
        assert not is_valid_state(None)
        assert not is_valid_state("")

    def test_resolve_full_name(self):
        assert resolve_state("New  York") == "NY"
        assert resolve_state("illinois") == "IL"
        assert resolve_state("Narnia") is None

    @pytest.mark.parametrize("address,expected", [
        ("123 Main St, Springfield, IL 62701", "IL"),
        ("500 Market St San Francisco CA 94105-1234", "CA"),
        ("1 Capitol Way, Albany, New York 12224", "NY"),
        ("PO Box 9, Austin TX", "TX"),
        ("42 Elm Road, Pennsylvania", "PA"),
        ("Somewhere without a state", None),
    ])
    def test_state_from_address(self, address, expected):
        assert state_from_address(address) == expected


# ── Tier 1: explicit state field ─────────────────────────────────────────────

@pytest.mark.asyncio
class TestDirectField:
    async def test_employee_state(self):
        fields = W2Fields.model_validate({"employeeState": "ca", "employeeAddress": "1 Main St, Chicago, IL 60601"})
        result = await StateDetector().detect("W2", fields)
        assert result.detected_state == "CA"
        assert result.confidence == DIRECT_CONFIDENCE
        assert result.source is StateSource.ADDRESS

    async def test_employer_state_is_employer_source(self):
        fields = W2Fields.model_validate({"employerState": "NY"})
        result = await StateDetector().detect("W2", fields)
        assert result.detected_state == "NY"
        assert result.source is StateSource.EMPLOYER

    async def test_invalid_code_falls_through(self):
        fields = W2Fields.model_validate({"employeeState": "ZZ", "employeeAddress": "1 Main St, Chicago, IL 60601"})
        result = await StateDetector().detect("W2", fields)
        assert result.detected_state == "IL"
        assert result.confidence == ADDRESS_CONFIDENCE


# ── Tier 2: address ──────────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestAddress:
    async def test_employee_address(self):
        fields = W2Fields.model_validate({"employeeAddress": "123 Main St, Springfield, IL 62701"})
        classifier = FakeClassifier({"stateCode": "CA", "confidence": 0.99})
        result = await StateDetector(classifier).detect("W2", fields)
        assert result.detected_state == "IL"
        assert result.confidence == 0.85
        assert result.source is StateSource.ADDRESS
        assert classifier.prompts == []

    async def test_employer_address_is_employer_source(self):
        fields = W2Fields.model_validate({"employerAddress": "9 Industrial Pkwy, Dayton, OH 45402"})
        result = await StateDetector().detect("W2", fields)
        assert result.detected_state == "OH"
        assert result.source is StateSource.EMPLOYER


# ── Tier 3: classifier ───────────────────────────────────────────────────────

@pytest.mark.asyncio
class TestClassifier:
    async def test_classifier_answer(self):
        fields = ExtractedFields.model_validate({"fullText": "Colorado Department of Revenue"})
        classifier = FakeClassifier({"stateCode": "co", "confidence": 0.72, "reasoning": "header"})
        result = await StateDetector(classifier).detect("OTHER_TAX_DOCUMENT", fields)
        assert result.detected_state == "CO"
        assert result.confidence == 0.72
        assert result.source is StateSource.DOCUMENT_TYPE
        assert "Colorado Department of Revenue" in classifier.prompts[0]

    async def test_missing_confidence_defaults(self):
        classifier = FakeClassifier({"stateCode": "WA"})
        result = await StateDetector(classifier).detect("W2", W2Fields())
        assert result.confidence == 0.7

    async def test_confidence_clamped(self):
        classifier = FakeClassifier({"stateCode": "WA", "confidence": 7})
        result = await StateDetector(classifier).detect("W2", W2Fields())
        assert result.confidence == 1.0

    async def test_unknown_code_and_classifier_error(self):
        fields = W2Fields.model_validate({"employeeState": "ZZ"})
        classifier = FakeClassifier(error=StateDetectionError("classifier down"))
        result = await StateDetector(classifier).detect("W2", fields)
        assert result.detected_state is None
        assert result.confidence == 0
        assert result.source is StateSource.UNKNOWN

    async def test_garbage_answer(self):
        classifier = FakeClassifier({"stateCode": "somewhere", "confidence": "high"})
        result = await StateDetector(classifier).detect("W2", W2Fields())
        assert result.detected_state is None

    async def test_no_classifier_configured(self):
        result = await StateDetector().detect("W2", W2Fields())
        assert result.detected_state is None
        assert result.to_dict()["source"] == "UNKNOWN"


class TestPrompt:
    def test_text_is_truncated(self):
        fields = ExtractedFields.model_validate({"fullText": "x" * 10000})
        prompt = build_classifier_prompt("W2", fields)
        assert "x" * 4000 in prompt
        assert "x" * 4001 not in prompt
