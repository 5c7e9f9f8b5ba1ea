"""
Error taxonomy for document processing.

Stage failures are raised as `ProcessingError` subclasses so the pipeline
knows which ones are fatal; anything else that escapes is classified from
its message so the user still gets a stable category and a support
reference that can be matched against the logs.
"""
import enum
import time
import uuid

from sqlalchemy.exc import SQLAlchemyError


class ErrorCategory(str, enum.Enum):
    AUTH = "AUTH"
    NOT_FOUND = "NOT_FOUND"
    CONFLICT = "CONFLICT"
    EXTRACTION = "EXTRACTION"
    STATE_DETECTION = "STATE_DETECTION"
    DUPLICATE_DETECTION = "DUPLICATE_DETECTION"
    MAPPING = "MAPPING"
    CALCULATION = "CALCULATION"
    PERSISTENCE = "PERSISTENCE"
    UNKNOWN = "UNKNOWN"


class ProcessingError(Exception):
    category = ErrorCategory.UNKNOWN


class ExtractionError(ProcessingError):
    category = ErrorCategory.EXTRACTION


class StateDetectionError(ProcessingError):
    category = ErrorCategory.STATE_DETECTION


class DuplicateDetectionError(ProcessingError):
    category = ErrorCategory.DUPLICATE_DETECTION


class MappingError(ProcessingError):
    category = ErrorCategory.MAPPING


class CalculationError(ProcessingError):
    category = ErrorCategory.CALCULATION


class PersistenceError(ProcessingError):
    category = ErrorCategory.PERSISTENCE


class DocumentNotFound(ProcessingError):
    category = ErrorCategory.NOT_FOUND


class ProcessingConflict(ProcessingError):
    category = ErrorCategory.CONFLICT


# Checked in order; first keyword hit wins
_KEYWORDS: list[tuple[tuple[str, ...], ErrorCategory]] = [
    (("ocr", "extraction", "document intelligence"), ErrorCategory.EXTRACTION),
    (("database", "sql", "persist", "integrity"), ErrorCategory.PERSISTENCE),
    (("state detection",), ErrorCategory.STATE_DETECTION),
    (("duplicate",), ErrorCategory.DUPLICATE_DETECTION),
    (("tax calculation",), ErrorCategory.CALCULATION),
    (("mapping",), ErrorCategory.MAPPING),
    (("authentication", "unauthorized", "not authenticated"), ErrorCategory.AUTH),
]

_USER_MESSAGES: dict[ErrorCategory, str] = {
    ErrorCategory.AUTH: "Your session has expired. Please sign in again.",
    ErrorCategory.NOT_FOUND: "Document not found",
    ErrorCategory.CONFLICT: "Document is already being processed",
    ErrorCategory.EXTRACTION: (
        "We couldn't read this document. Please check that the file is a clear, "
        "complete scan and try again."
    ),
    ErrorCategory.STATE_DETECTION: "We couldn't determine your state from this document.",
    ErrorCategory.DUPLICATE_DETECTION: "We couldn't check this document for duplicates.",
    ErrorCategory.MAPPING: "We couldn't map the extracted fields onto your return.",
    ErrorCategory.CALCULATION: "We couldn't calculate your taxes. Please review your entries.",
    ErrorCategory.PERSISTENCE: "We couldn't save your results. Please try again in a moment.",
    ErrorCategory.UNKNOWN: "Document processing failed. Please try again or contact support.",
}


def classify_error(exc: BaseException) -> ErrorCategory:
    """Map an exception to an error category."""
    if isinstance(exc, ProcessingError):
        return exc.category
    if isinstance(exc, SQLAlchemyError):
        return ErrorCategory.PERSISTENCE

    message = str(exc).lower()
    for keywords, category in _KEYWORDS:
        if any(k in message for k in keywords):
            return category
    return ErrorCategory.UNKNOWN


def user_message(category: ErrorCategory) -> str:
    return _USER_MESSAGES[category]


def new_support_reference() -> str:
    """Token quoted to support; also written to the log line for the failure."""
    return f"PROC-{int(time.time() * 1000)}-{uuid.uuid4().hex[:6].upper()}"
