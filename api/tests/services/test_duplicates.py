"""
Duplicate scoring on extracted fields, independent of the database.
"""
import pytest

from taxprep.models.document import DocumentType
from taxprep.schemas.extraction import parse_extraction
from taxprep.services.duplicates import DUPLICATE_THRESHOLD, DuplicateCheckResult, score_match


def _w2(**fields):
    raw = {"employerName": "Acme Corp", "employerEIN": "12-3456789", "wages": "55000", "federalTaxWithheld": "6000"}
    raw.update(fields)
    return parse_extraction(DocumentType.W2, raw)


class TestScoreMatch:
    def test_same_ein_and_amount(self):
        score, criteria = score_match(_w2(), _w2(employerEIN="123456789"))
        assert score == 0.95
        assert criteria["sameIdentifier"] and criteria["sameAmount"] and criteria["sameWithholding"]

    def test_same_name_and_amount(self):
        score, criteria = score_match(_w2(employerEIN=None), _w2(employerName="  ACME   corp "))
        assert score == 0.8
        assert criteria["sameName"] and not criteria["sameIdentifier"]

    def test_same_payer_different_amount_is_not_a_duplicate(self):
        score, _ = score_match(_w2(), _w2(wages="61000"))
        assert score == 0.6
        assert score < DUPLICATE_THRESHOLD

    def test_zero_amounts_never_match(self):
        score, criteria = score_match(_w2(employerEIN=None, wages="0"), _w2(employerEIN=None, wages="0"))
        assert criteria["sameAmount"] is False
        assert score == 0.0

    def test_unrelated(self):
        score, _ = score_match(_w2(), _w2(employerName="Globex", employerEIN="98-7654321", wages="1"))
        assert score == 0.0

    @pytest.mark.parametrize("doc_type,raw", [
        (DocumentType.FORM_1099_INT, {"payerName": "First Bank", "payerTIN": "11-1111111", "interestIncome": "250.10"}),
        (DocumentType.FORM_1099_DIV, {"payerName": "Index Fund", "payerTIN": "22-2222222", "ordinaryDividends": "1,200"}),
    ])
    def test_1099_same_payer_and_amount(self, doc_type, raw):
        score, _ = score_match(parse_extraction(doc_type, raw), parse_extraction(doc_type, dict(raw)))
        assert score == 0.95


class TestResultPayload:
    def test_defaults(self):
        assert DuplicateCheckResult().to_dict() == {
            "isDuplicate": False,
            "confidence": 0.0,
            "matchingDocuments": [],
            "matchCriteria": {},
        }
