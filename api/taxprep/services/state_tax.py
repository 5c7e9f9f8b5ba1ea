"""State income tax calculation over the tables in `tax_data`."""
from dataclasses import dataclass
from decimal import Decimal
from typing import Iterable

from taxprep.models.tax_return import FilingStatus
from taxprep.services.amounts import ZERO, to_cents
from taxprep.services.tax_data import STATE_TAX_DATA, Bracket, StateTaxInfo, table_status


class UnsupportedStateError(ValueError):
    pass


def apply_brackets(income: Decimal, brackets: Iterable[Bracket]) -> Decimal:
    """Marginal accumulation: each bracket taxes only the slice above its floor.

    Accumulation stops at the first bracket whose floor is at or above the
    income, so an income exactly on a floor pays nothing in that bracket.
    """
    tax = Decimal(0)
    for bracket in brackets:
        if income <= bracket.min:
            break
        top = income if bracket.max is None else min(income, bracket.max)
        tax += (top - bracket.min) * bracket.rate
    return to_cents(tax)


def marginal_rate(income: Decimal, brackets: Iterable[Bracket]) -> Decimal:
    """Rate of the highest bracket whose floor is below `income`."""
    rate = Decimal(0)
    for bracket in brackets:
        if bracket.min < income:
            rate = bracket.rate
    return rate


def effective_rate(liability: Decimal, income: Decimal) -> Decimal:
    if income <= 0:
        return ZERO
    return (liability / income * 100).quantize(Decimal("0.001"))


def get_state_info(state_code: str) -> StateTaxInfo:
    info = STATE_TAX_DATA.get((state_code or "").strip().upper())
    if info is None:
        raise UnsupportedStateError(f"Unsupported state: {state_code}")
    return info


def state_standard_deduction(filing_status: FilingStatus, state_code: str) -> Decimal:
    info = get_state_info(state_code)
    return info.standard_deduction.get(table_status(filing_status), ZERO)


@dataclass(frozen=True)
class StateTaxResult:
    state_code: str
    state_name: str
    has_income_tax: bool
    state_adjusted_gross_income: Decimal
    state_standard_deduction: Decimal
    state_itemized_deduction: Decimal
    state_deduction_used: str           # standard | itemized
    state_personal_exemption: Decimal
    state_taxable_income: Decimal
    state_tax_liability: Decimal
    state_effective_rate: Decimal
    state_marginal_rate: Decimal
    notes: str | None = None

    def to_dict(self) -> dict:
        return {
            "stateCode": self.state_code,
            "stateName": self.state_name,
            "hasIncomeTax": self.has_income_tax,
            "stateAdjustedGrossIncome": float(self.state_adjusted_gross_income),
            "stateStandardDeduction": float(self.state_standard_deduction),
            "stateItemizedDeduction": float(self.state_itemized_deduction),
            "stateDeductionUsed": self.state_deduction_used,
            "statePersonalExemption": float(self.state_personal_exemption),
            "stateTaxableIncome": float(self.state_taxable_income),
            "stateTaxLiability": float(self.state_tax_liability),
            "stateEffectiveRate": float(self.state_effective_rate),
            "stateMarginalRate": float(self.state_marginal_rate),
            "notes": self.notes,
        }


def calculate_state_tax(
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus,
    state_code: str,
    dependents: int = 0,
    itemized_deductions: Decimal = ZERO,
) -> StateTaxResult:
    info = get_state_info(state_code)
    agi = Decimal(adjusted_gross_income)

    if not info.has_income_tax:
        return StateTaxResult(
            state_code=info.code,
            state_name=info.name,
            has_income_tax=False,
            state_adjusted_gross_income=agi,
            state_standard_deduction=ZERO,
            state_itemized_deduction=ZERO,
            state_deduction_used="standard",
            state_personal_exemption=ZERO,
            state_taxable_income=ZERO,
            state_tax_liability=ZERO,
            state_effective_rate=ZERO,
            state_marginal_rate=ZERO,
            notes=info.notes or f"State {info.code} has no income tax",
        )

    status = table_status(filing_status)
    brackets = info.brackets.get(status)
    if not brackets:
        raise UnsupportedStateError(f"No {status.value} brackets for state {info.code}")

    standard = info.standard_deduction.get(status, ZERO)
    itemized = Decimal(itemized_deductions)
    deduction = max(standard, itemized)
    exemption = info.personal_exemption * (1 + dependents)
    taxable = max(ZERO, agi - deduction - exemption)

    liability = apply_brackets(taxable, brackets)
    return StateTaxResult(
        state_code=info.code,
        state_name=info.name,
        has_income_tax=True,
        state_adjusted_gross_income=agi,
        state_standard_deduction=standard,
        state_itemized_deduction=itemized,
        state_deduction_used="itemized" if itemized > standard else "standard",
        state_personal_exemption=exemption,
        state_taxable_income=to_cents(taxable),
        state_tax_liability=liability,
        state_effective_rate=effective_rate(liability, agi),
        state_marginal_rate=marginal_rate(taxable, brackets),
        notes=info.notes,
    )


def state_tax_summary(state_code: str) -> dict:
    info = get_state_info(state_code)
    single = info.brackets.get(FilingStatus.SINGLE, ())
    return {
        "stateCode": info.code,
        "stateName": info.name,
        "hasIncomeTax": info.has_income_tax,
        "isFlatTax": len(single) == 1,
        "topMarginalRate": float(single[-1].rate) if single else 0.0,
        "hasStandardDeduction": any(v > 0 for v in info.standard_deduction.values()),
        "personalExemption": float(info.personal_exemption),
        "notes": info.notes,
    }
