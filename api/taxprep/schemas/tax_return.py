import uuid
from datetime import date, datetime
from decimal import Decimal

from pydantic import BaseModel, ConfigDict, Field, field_validator

from taxprep.models.tax_return import FilingStatus
from taxprep.services.state_detection import is_valid_state


def _filing_status(v: str | None) -> str | None:
    return FilingStatus.parse(v).value if v is not None else None


class TaxReturnCreate(BaseModel):
    tax_year: int = Field(default=2024, ge=2020, le=2100)
    filing_status: str = FilingStatus.SINGLE.value
    itemized_deduction: Decimal = Field(default=Decimal("0"), ge=0)
    state_itemized_deduction: Decimal = Field(default=Decimal("0"), ge=0)

    @field_validator("filing_status")
    @classmethod
    def normalize_filing_status(cls, v: str) -> str:
        return _filing_status(v)


class TaxReturnUpdate(BaseModel):
    filing_status: str | None = None
    itemized_deduction: Decimal | None = Field(default=None, ge=0)
    state_itemized_deduction: Decimal | None = Field(default=None, ge=0)
    first_name: str | None = None
    last_name: str | None = None
    address: str | None = None
    city: str | None = None
    zip_code: str | None = None
    # Manual override of the detected state
    detected_state: str | None = None

    @field_validator("filing_status")
    @classmethod
    def normalize_filing_status(cls, v: str | None) -> str | None:
        return _filing_status(v)

    @field_validator("detected_state")
    @classmethod
    def known_state(cls, v: str | None) -> str | None:
        if v is None:
            return None
        code = v.strip().upper()
        if not is_valid_state(code):
            raise ValueError(f"Unknown state code: {v}")
        return code


class TaxReturnResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tax_year: int
    filing_status: str
    first_name: str | None
    last_name: str | None
    ssn_last4: str | None
    address: str | None
    city: str | None
    state: str | None
    zip_code: str | None
    total_income: Decimal
    total_withholdings: Decimal
    adjusted_gross_income: Decimal
    standard_deduction: Decimal
    itemized_deduction: Decimal
    taxable_income: Decimal
    tax_liability: Decimal
    total_credits: Decimal
    refund_amount: Decimal
    amount_owed: Decimal
    state_tax_liability: Decimal
    state_standard_deduction: Decimal
    state_itemized_deduction: Decimal
    state_taxable_income: Decimal
    state_effective_rate: Decimal
    detected_state: str | None
    state_confidence: float
    state_source: str
    last_calculated_at: datetime | None
    created_at: datetime


class DependentCreate(BaseModel):
    first_name: str = Field(min_length=1, max_length=100)
    last_name: str = Field(min_length=1, max_length=100)
    relationship: str = "child"
    date_of_birth: date | None = None
    qualifies_for_ctc: bool = False
    qualifies_for_eitc: bool = False


class DependentResponse(BaseModel):
    model_config = ConfigDict(from_attributes=True)

    id: uuid.UUID
    tax_return_id: uuid.UUID
    first_name: str
    last_name: str
    relationship: str
    date_of_birth: date | None
    qualifies_for_ctc: bool
    qualifies_for_eitc: bool
