"""
Map extracted W-2 / 1099 fields onto the tax return.

Produces two things per document: the personal-info fields the form can
supply (name, SSN, address) and at most one income entry. Pure functions;
the orchestrator decides what to persist.
"""
import re
from dataclasses import asdict, dataclass
from decimal import Decimal

from taxprep.models.document import DocumentType, IncomeType
from taxprep.schemas.extraction import ExtractedFields, Form1099Fields, W2Fields

_INCOME_TYPES: dict[DocumentType, IncomeType] = {
    DocumentType.W2: IncomeType.W2_WAGES,
    DocumentType.FORM_1099_INT: IncomeType.INTEREST,
    DocumentType.FORM_1099_DIV: IncomeType.DIVIDENDS,
    DocumentType.FORM_1099_MISC: IncomeType.BUSINESS_INCOME,
    DocumentType.FORM_1099_NEC: IncomeType.BUSINESS_INCOME,
}

# Document types that produce an income entry
INCOME_DOCUMENT_TYPES = frozenset(_INCOME_TYPES)

_FULL_ADDRESS = re.compile(
    r"^(?P<street>.+?),\s*(?P<city>[^,]+?),?\s+(?P<state>[A-Z]{2})\s+(?P<zip>\d{5}(?:-\d{4})?)\s*$"
)


@dataclass
class PersonalInfo:
    first_name: str | None = None
    last_name: str | None = None
    ssn: str | None = None
    address: str | None = None
    city: str | None = None
    state: str | None = None
    zip_code: str | None = None

    def filled(self) -> dict[str, str]:
        """Only the fields the document actually supplied."""
        return {k: v for k, v in asdict(self).items() if v}


@dataclass
class IncomeEntryDraft:
    income_type: IncomeType
    description: str
    amount: Decimal
    federal_tax_withheld: Decimal
    employer_name: str | None = None
    employer_ein: str | None = None
    payer_name: str | None = None
    payer_tin: str | None = None

    def to_dict(self) -> dict:
        return {
            "incomeType": self.income_type.value,
            "description": self.description,
            "amount": float(self.amount),
            "federalTaxWithheld": float(self.federal_tax_withheld),
            "employerName": self.employer_name,
            "employerEIN": self.employer_ein,
            "payerName": self.payer_name,
            "payerTIN": self.payer_tin,
        }


@dataclass
class MappingResult:
    personal_info: PersonalInfo
    income_entry: IncomeEntryDraft | None

    def to_dict(self) -> dict:
        info = self.personal_info.filled()
        if "ssn" in info:
            info["ssn"] = f"***-**-{info['ssn'][-4:]}"
        return {
            "personalInfo": info,
            "incomeEntry": self.income_entry.to_dict() if self.income_entry else None,
        }


def income_type_for(document_type: DocumentType) -> IncomeType:
    return _INCOME_TYPES.get(document_type, IncomeType.OTHER_INCOME)


def split_name(full_name: str | None) -> tuple[str | None, str | None]:
    if not full_name:
        return None, None
    parts = full_name.split()
    if len(parts) == 1:
        return parts[0], None
    return " ".join(parts[:-1]), parts[-1]


def split_address(address: str | None) -> dict[str, str | None]:
    """Split 'street, city, ST zip' into parts; anything else is kept as the street."""
    if not address:
        return {}
    flat = " ".join(address.replace("\n", ", ").split())
    match = _FULL_ADDRESS.match(flat)
    if not match:
        return {"address": flat}
    return {
        "address": match["street"],
        "city": match["city"],
        "state": match["state"],
        "zip_code": match["zip"],
    }


def map_personal_info(fields: ExtractedFields) -> PersonalInfo:
    if isinstance(fields, W2Fields):
        first, last = fields.employee_first_name, fields.employee_last_name
        if not (first or last):
            first, last = split_name(fields.employee_name)
        return PersonalInfo(
            first_name=first,
            last_name=last,
            ssn=fields.employee_ssn,
            **split_address(fields.employee_address),
        )
    if isinstance(fields, Form1099Fields):
        first, last = split_name(fields.recipient_name)
        return PersonalInfo(
            first_name=first,
            last_name=last,
            ssn=fields.recipient_tin,
            **split_address(fields.recipient_address),
        )
    return PersonalInfo()


def map_income_entry(document_type: DocumentType, fields: ExtractedFields) -> IncomeEntryDraft | None:
    if document_type not in INCOME_DOCUMENT_TYPES:
        return None
    amount = fields.primary_amount()
    if amount <= 0:
        return None

    if isinstance(fields, W2Fields):
        return IncomeEntryDraft(
            income_type=IncomeType.W2_WAGES,
            description=f"W2 wages from {fields.employer_name or 'Employer'}",
            amount=amount,
            federal_tax_withheld=fields.federal_tax_withheld,
            employer_name=fields.employer_name,
            employer_ein=fields.employer_ein,
        )
    return IncomeEntryDraft(
        income_type=income_type_for(document_type),
        description=f"{document_type.value} income from {fields.payer_display_name() or 'Payer'}",
        amount=amount,
        federal_tax_withheld=fields.withholding(),
        payer_name=fields.payer_display_name(),
        payer_tin=fields.payer_identifier(),
    )


def map_document(document_type: DocumentType, fields: ExtractedFields) -> MappingResult:
    return MappingResult(
        personal_info=map_personal_info(fields),
        income_entry=map_income_entry(document_type, fields),
    )
