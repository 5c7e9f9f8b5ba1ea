"""
Unit tests for the processing error taxonomy.
"""
import re

import pytest
from sqlalchemy.exc import OperationalError

from taxprep.core.errors import (
    CalculationError,
    DocumentNotFound,
    ErrorCategory,
    ExtractionError,
    ProcessingConflict,
    classify_error,
    new_support_reference,
    user_message,
)


class TestClassifyError:
    def test_typed_errors_keep_their_category(self):
        assert classify_error(ExtractionError("boom")) is ErrorCategory.EXTRACTION
        assert classify_error(CalculationError("boom")) is ErrorCategory.CALCULATION
        assert classify_error(DocumentNotFound("gone")) is ErrorCategory.NOT_FOUND
        assert classify_error(ProcessingConflict("busy")) is ErrorCategory.CONFLICT

    def test_sqlalchemy_errors_are_persistence(self):
        exc = OperationalError("SELECT 1", {}, Exception("disk I/O error"))
        assert classify_error(exc) is ErrorCategory.PERSISTENCE

    @pytest.mark.parametrize("message,expected", [
        ("OCR service returned 500", ErrorCategory.EXTRACTION),
        ("Database connection reset", ErrorCategory.PERSISTENCE),
        ("State detection timed out", ErrorCategory.STATE_DETECTION),
        ("duplicate lookup failed", ErrorCategory.DUPLICATE_DETECTION),
        ("Tax calculation overflow", ErrorCategory.CALCULATION),
        ("field mapping broke", ErrorCategory.MAPPING),
        ("Unauthorized", ErrorCategory.AUTH),
        ("something else entirely", ErrorCategory.UNKNOWN),
    ])
    def test_message_keywords(self, message, expected):
        assert classify_error(RuntimeError(message)) is expected

    def test_every_category_has_a_message(self):
        for category in ErrorCategory:
            assert user_message(category)


class TestSupportReference:
    def test_format(self):
        assert re.fullmatch(r"PROC-\d{13}-[0-9A-F]{6}", new_support_reference())

    def test_unique(self):
        assert len({new_support_reference() for _ in range(50)}) == 50
