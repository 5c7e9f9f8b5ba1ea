"""
Filer-state detection for uploaded tax documents.

Three tiers, first hit wins:
  1. an explicit 2-letter state field on the form (confidence 0.95)
  2. a state parsed out of one of the address blocks (confidence 0.85)
  3. an external text classifier fed the OCR text and addresses

Detection never raises: a classifier outage or garbage answer just means
"no state found", and the pipeline carries on without one.
"""
import logging
import re
from dataclasses import dataclass, field
from typing import Any, Protocol

from taxprep.models.tax_return import StateSource
from taxprep.schemas.extraction import ExtractedFields

logger = logging.getLogger(__name__)

STATE_NAMES: dict[str, str] = {
    "AL": "Alabama", "AK": "Alaska", "AZ": "Arizona", "AR": "Arkansas",
    "CA": "California", "CO": "Colorado", "CT": "Connecticut", "DE": "Delaware",
    "DC": "District of Columbia", "FL": "Florida", "GA": "Georgia", "HI": "Hawaii",
    "ID": "Idaho", "IL": "Illinois", "IN": "Indiana", "IA": "Iowa",
    "KS": "Kansas", "KY": "Kentucky", "LA": "Louisiana", "ME": "Maine",
    "MD": "Maryland", "MA": "Massachusetts", "MI": "Michigan", "MN": "Minnesota",
    "MS": "Mississippi", "MO": "Missouri", "MT": "Montana", "NE": "Nebraska",
    "NV": "Nevada", "NH": "New Hampshire", "NJ": "New Jersey", "NM": "New Mexico",
    "NY": "New York", "NC": "North Carolina", "ND": "North Dakota", "OH": "Ohio",
    "OK": "Oklahoma", "OR": "Oregon", "PA": "Pennsylvania", "RI": "Rhode Island",
    "SC": "South Carolina", "SD": "South Dakota", "TN": "Tennessee", "TX": "Texas",
    "UT": "Utah", "VT": "Vermont", "VA": "Virginia", "WA": "Washington",
    "WV": "West Virginia", "WI": "Wisconsin", "WY": "Wyoming",
}
_NAME_TO_CODE: dict[str, str] = {name.lower(): code for code, name in STATE_NAMES.items()}

DIRECT_CONFIDENCE = 0.95
ADDRESS_CONFIDENCE = 0.85
CLASSIFIER_DEFAULT_CONFIDENCE = 0.7

# (attribute on ExtractedFields, camelCase name as it appears in the payload)
_DIRECT_FIELDS = [
    ("employee_state", "employeeState"),
    ("employer_state", "employerState"),
    ("recipient_state", "recipientState"),
    ("payer_state", "payerState"),
]
_ADDRESS_FIELDS = [
    ("employee_address", "employeeAddress", StateSource.ADDRESS),
    ("recipient_address", "recipientAddress", StateSource.ADDRESS),
    ("employer_address", "employerAddress", StateSource.EMPLOYER),
    ("payer_address", "payerAddress", StateSource.EMPLOYER),
]
_ADDRESS_PATTERNS = [
    re.compile(r",\s*([A-Z]{2})\s+\d{5}(?:-\d{4})?"),        # City, ST 12345
    re.compile(r"\s+([A-Z]{2})\s+\d{5}(?:-\d{4})?"),         # City ST 12345
    re.compile(r",\s*([A-Za-z\s]+)\s+\d{5}(?:-\d{4})?"),     # City, State Name 12345
    re.compile(r"\b([A-Z]{2})\s*$"),                         # ... ST
    re.compile(r"\b([A-Za-z\s]+)\s*$"),                      # ... State Name
]

_PROMPT_TEXT_LIMIT = 4000


def is_valid_state(code: str | None) -> bool:
    return bool(code) and code.strip().upper() in STATE_NAMES


def resolve_state(candidate: str) -> str | None:
    """Resolve a 2-letter code or a full state name to its code."""
    value = candidate.strip()
    if not value:
        return None
    if value.upper() in STATE_NAMES and len(value) == 2:
        return value.upper()
    return _NAME_TO_CODE.get(" ".join(value.lower().split()))


def state_from_address(address: str) -> str | None:
    for pattern in _ADDRESS_PATTERNS:
        match = pattern.search(address)
        if match:
            code = resolve_state(match.group(1))
            if code:
                return code
    return None


class StateClassifier(Protocol):
    async def classify(self, prompt: str) -> dict[str, Any]: ...


@dataclass
class StateDetectionResult:
    detected_state: str | None = None
    confidence: float = 0.0
    source: StateSource = StateSource.UNKNOWN
    raw: dict[str, Any] = field(default_factory=dict)

    @property
    def state_name(self) -> str | None:
        return STATE_NAMES.get(self.detected_state) if self.detected_state else None

    def to_dict(self) -> dict[str, Any]:
        return {
            "detectedState": self.detected_state,
            "stateName": self.state_name,
            "confidence": self.confidence,
            "source": self.source.value,
            "rawData": self.raw,
        }


def _direct_field(fields: ExtractedFields) -> StateDetectionResult | None:
    for attr, name in _DIRECT_FIELDS:
        value = getattr(fields, attr)
        if value and is_valid_state(value) and len(value.strip()) == 2:
            source = StateSource.ADDRESS if "employee" in name.lower() else StateSource.EMPLOYER
            return StateDetectionResult(
                detected_state=value.strip().upper(),
                confidence=DIRECT_CONFIDENCE,
                source=source,
                raw={"field": name, "value": value},
            )
    return None


def _address_field(fields: ExtractedFields) -> StateDetectionResult | None:
    for attr, name, source in _ADDRESS_FIELDS:
        address = getattr(fields, attr)
        if not address:
            continue
        code = state_from_address(address)
        if code:
            return StateDetectionResult(
                detected_state=code,
                confidence=ADDRESS_CONFIDENCE,
                source=source,
                raw={"field": name, "address": address},
            )
    return None


def build_classifier_prompt(document_type: str, fields: ExtractedFields) -> str:
    addresses = [
        f"{name}: {getattr(fields, attr)}"
        for attr, name, _ in _ADDRESS_FIELDS
        if getattr(fields, attr)
    ]
    text = fields.full_text[:_PROMPT_TEXT_LIMIT]
    return (
        "Determine which US state this tax document belongs to (the taxpayer's state of residence "
        "or, failing that, the state where the income was earned).\n\n"
        f"Document type: {document_type}\n"
        f"Addresses found:\n{chr(10).join(addresses) if addresses else 'none'}\n\n"
        f"Document text:\n{text}\n\n"
        "Respond with a JSON object: "
        '{"stateCode": "two-letter code or null", "stateName": "full name or null", '
        '"confidence": number between 0.0 and 1.0, "reasoning": "short explanation"}'
    )


class StateDetector:
    def __init__(self, classifier: StateClassifier | None = None):
        self.classifier = classifier

    async def detect(self, document_type: str, fields: ExtractedFields) -> StateDetectionResult:
        result = _direct_field(fields) or _address_field(fields)
        if result:
            logger.info(
                "State %s detected from %s (confidence %.2f)",
                result.detected_state, result.raw.get("field"), result.confidence,
            )
            return result

        if self.classifier is not None:
            result = await self._classify(document_type, fields)
            if result:
                return result

        logger.info("No state detected for %s document", document_type)
        return StateDetectionResult()

    async def _classify(self, document_type: str, fields: ExtractedFields) -> StateDetectionResult | None:
        try:
            answer = await self.classifier.classify(build_classifier_prompt(document_type, fields))
            code = answer.get("stateCode")
            if not isinstance(code, str) or not is_valid_state(code) or len(code.strip()) != 2:
                logger.info("State classifier returned no usable state: %r", code)
                return None
            confidence = answer.get("confidence")
            if not isinstance(confidence, (int, float)) or isinstance(confidence, bool):
                confidence = CLASSIFIER_DEFAULT_CONFIDENCE
            confidence = min(1.0, max(0.0, float(confidence)))
        except Exception as exc:
            # A classifier outage must never fail the document
            logger.warning("State classifier failed: %s", exc)
            return None

        return StateDetectionResult(
            detected_state=code.strip().upper(),
            confidence=confidence,
            source=StateSource.DOCUMENT_TYPE,
            raw={"reasoning": answer.get("reasoning"), "stateName": answer.get("stateName")},
        )
