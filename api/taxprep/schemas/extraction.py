"""Typed views of the OCR service output, one model per document type.

The OCR payload is validated here, at the point it enters the pipeline.
Amount fields are normalized with `parse_amount`, unknown keys are kept so
the raw payload can still be stored and shown back to the user.
"""
from decimal import Decimal
from typing import Annotated

from pydantic import BaseModel, BeforeValidator, ConfigDict, Field
from pydantic.alias_generators import to_camel

from taxprep.models.document import DocumentType
from taxprep.services.amounts import parse_amount

Amount = Annotated[Decimal, BeforeValidator(parse_amount)]


def _text(value: object) -> str | None:
    if value is None:
        return None
    text = str(value).strip()
    return text or None


Text = Annotated[str | None, BeforeValidator(_text)]
FullText = Annotated[str, BeforeValidator(lambda v: "" if v is None else str(v))]


class ExtractedFields(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, extra="allow")

    full_text: FullText = ""
    corrected_document_type: Text = None
    # ── Fields used for state detection ────────────────────────────────────────
    employee_state: Text = None
    employer_state: Text = None
    recipient_state: Text = None
    payer_state: Text = None
    employee_address: Text = None
    recipient_address: Text = None
    employer_address: Text = None
    payer_address: Text = None

    def primary_amount(self) -> Decimal:
        """The amount this form contributes to income (0 for non-income forms)."""
        return Decimal("0.00")

    def withholding(self) -> Decimal:
        return Decimal("0.00")

    def payer_identifier(self) -> str | None:
        return None

    def payer_display_name(self) -> str | None:
        return None


class W2Fields(ExtractedFields):
    employee_name: Text = None
    employee_first_name: Text = None
    employee_last_name: Text = None
    employee_ssn: Text = Field(default=None, alias="employeeSSN")
    employer_name: Text = None
    employer_ein: Text = Field(default=None, alias="employerEIN")
    wages: Amount = Decimal("0.00")
    federal_tax_withheld: Amount = Decimal("0.00")
    social_security_wages: Amount = Decimal("0.00")
    medicare_wages: Amount = Decimal("0.00")
    state_wages: Amount = Decimal("0.00")
    state_tax_withheld: Amount = Decimal("0.00")

    def primary_amount(self) -> Decimal:
        return self.wages

    def withholding(self) -> Decimal:
        return self.federal_tax_withheld

    def payer_identifier(self) -> str | None:
        return self.employer_ein

    def payer_display_name(self) -> str | None:
        return self.employer_name


class Form1099Fields(ExtractedFields):
    payer_name: Text = None
    payer_tin: Text = Field(default=None, alias="payerTIN")
    recipient_name: Text = None
    recipient_tin: Text = Field(default=None, alias="recipientTIN")
    federal_tax_withheld: Amount = Decimal("0.00")

    def withholding(self) -> Decimal:
        return self.federal_tax_withheld

    def payer_identifier(self) -> str | None:
        return self.payer_tin

    def payer_display_name(self) -> str | None:
        return self.payer_name


class Form1099IntFields(Form1099Fields):
    interest_income: Amount = Decimal("0.00")

    def primary_amount(self) -> Decimal:
        return self.interest_income


class Form1099DivFields(Form1099Fields):
    ordinary_dividends: Amount = Decimal("0.00")
    qualified_dividends: Amount = Decimal("0.00")

    def primary_amount(self) -> Decimal:
        return self.ordinary_dividends


class Form1099MiscFields(Form1099Fields):
    rents: Amount = Decimal("0.00")
    royalties: Amount = Decimal("0.00")
    other_income: Amount = Decimal("0.00")
    nonemployee_compensation: Amount = Decimal("0.00")

    def primary_amount(self) -> Decimal:
        # The OCR backend sometimes repeats one figure in several boxes,
        # so the largest box is taken rather than the sum.
        return max(self.rents, self.royalties, self.other_income, self.nonemployee_compensation)


class Form1099NecFields(Form1099Fields):
    nonemployee_compensation: Amount = Decimal("0.00")

    def primary_amount(self) -> Decimal:
        return self.nonemployee_compensation


class Form1099RFields(Form1099Fields):
    gross_distribution: Amount = Decimal("0.00")
    taxable_amount: Amount = Decimal("0.00")


class Form1099GFields(Form1099Fields):
    unemployment_compensation: Amount = Decimal("0.00")
    state_tax_refund: Amount = Decimal("0.00")


_MODELS: dict[DocumentType, type[ExtractedFields]] = {
    DocumentType.W2: W2Fields,
    DocumentType.FORM_1099_INT: Form1099IntFields,
    DocumentType.FORM_1099_DIV: Form1099DivFields,
    DocumentType.FORM_1099_MISC: Form1099MiscFields,
    DocumentType.FORM_1099_NEC: Form1099NecFields,
    DocumentType.FORM_1099_R: Form1099RFields,
    DocumentType.FORM_1099_G: Form1099GFields,
    DocumentType.FORM_1099_GENERIC: Form1099Fields,
    DocumentType.OTHER_TAX_DOCUMENT: ExtractedFields,
}


def parse_extraction(document_type: DocumentType, raw: dict | None) -> ExtractedFields:
    """Validate raw OCR output into the model for `document_type`."""
    return _MODELS[document_type].model_validate(raw or {})
