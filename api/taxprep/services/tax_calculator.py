"""
Federal + state tax calculation for a return.

`calculate_tax_return` is a pure function of its inputs: the caller passes
the totals re-derived from valid income entries, the dependents' credit
flags and the deduction inputs, and gets back every aggregate that is
written to the tax return plus the suggestions shown on the review step.

A failure in the state half never fails the calculation; the result falls
back to federal-only figures and says so in the suggestions.
"""
import logging
from dataclasses import dataclass, field, replace
from decimal import ROUND_CEILING, Decimal
from typing import Iterable

from taxprep.models.tax_return import FilingStatus
from taxprep.services.amounts import ZERO, to_cents
from taxprep.services.state_tax import (
    StateTaxResult,
    apply_brackets,
    calculate_state_tax,
    effective_rate,
    marginal_rate,
)
from taxprep.services.tax_data import (
    CHILD_TAX_CREDIT,
    CTC_PHASEOUT_AMOUNT,
    CTC_PHASEOUT_START,
    CTC_PHASEOUT_STEP,
    EITC_MAX_CREDIT,
    EITC_PHASE_IN_RATE,
    EITC_PHASEOUT_RATE,
    EITC_PHASEOUT_START,
    FEDERAL_BRACKETS,
    FEDERAL_STANDARD_DEDUCTION,
    table_status,
)

logger = logging.getLogger(__name__)

SCENARIO_INCREMENTS = (1000, 2500, 5000, 10000)


@dataclass(frozen=True)
class DependentInfo:
    qualifies_for_ctc: bool = False
    qualifies_for_eitc: bool = False


@dataclass(frozen=True)
class DeductionComparison:
    standard_deduction: Decimal
    itemized_deduction: Decimal
    standard_tax_liability: Decimal
    itemized_tax_liability: Decimal
    recommended_method: str             # standard | itemized
    tax_savings: Decimal
    effective_standard_rate: Decimal
    effective_itemized_rate: Decimal

    def to_dict(self) -> dict:
        return {
            "standardDeduction": float(self.standard_deduction),
            "itemizedDeduction": float(self.itemized_deduction),
            "standardTaxLiability": float(self.standard_tax_liability),
            "itemizedTaxLiability": float(self.itemized_tax_liability),
            "recommendedMethod": self.recommended_method,
            "taxSavings": float(self.tax_savings),
            "effectiveStandardRate": float(self.effective_standard_rate),
            "effectiveItemizedRate": float(self.effective_itemized_rate),
        }


@dataclass(frozen=True)
class CombinedTaxResult:
    federal_tax_liability: Decimal
    state_tax_liability: Decimal
    total_tax_liability: Decimal
    total_credits: Decimal
    total_withholdings: Decimal
    final_tax: Decimal
    refund_amount: Decimal
    amount_owed: Decimal

    def to_dict(self) -> dict:
        return {
            "federalTaxLiability": float(self.federal_tax_liability),
            "stateTaxLiability": float(self.state_tax_liability),
            "totalTaxLiability": float(self.total_tax_liability),
            "totalCredits": float(self.total_credits),
            "totalWithholdings": float(self.total_withholdings),
            "finalTax": float(self.final_tax),
            "refundAmount": float(self.refund_amount),
            "amountOwed": float(self.amount_owed),
        }


@dataclass(frozen=True)
class TaxCalculationResult:
    filing_status: FilingStatus
    total_income: Decimal
    adjusted_gross_income: Decimal
    standard_deduction: Decimal
    itemized_deduction: Decimal
    deduction_used: str
    taxable_income: Decimal
    tax_liability: Decimal
    marginal_rate: Decimal
    effective_rate: Decimal
    child_tax_credit: Decimal
    earned_income_credit: Decimal
    total_credits: Decimal
    total_withholdings: Decimal
    final_tax: Decimal
    refund_amount: Decimal
    amount_owed: Decimal
    deduction_comparison: DeductionComparison
    suggestions: tuple[str, ...] = ()
    state_tax: StateTaxResult | None = None
    combined: CombinedTaxResult | None = None

    def to_dict(self) -> dict:
        return {
            "filingStatus": self.filing_status.value,
            "totalIncome": float(self.total_income),
            "adjustedGrossIncome": float(self.adjusted_gross_income),
            "standardDeduction": float(self.standard_deduction),
            "itemizedDeduction": float(self.itemized_deduction),
            "deductionUsed": self.deduction_used,
            "taxableIncome": float(self.taxable_income),
            "taxLiability": float(self.tax_liability),
            "marginalRate": float(self.marginal_rate),
            "effectiveRate": float(self.effective_rate),
            "childTaxCredit": float(self.child_tax_credit),
            "earnedIncomeCredit": float(self.earned_income_credit),
            "totalCredits": float(self.total_credits),
            "totalWithholdings": float(self.total_withholdings),
            "finalTax": float(self.final_tax),
            "refundAmount": float(self.refund_amount),
            "amountOwed": float(self.amount_owed),
            "deductionComparison": self.deduction_comparison.to_dict(),
            "taxOptimizationSuggestions": list(self.suggestions),
            "stateTax": self.state_tax.to_dict() if self.state_tax else None,
            "combinedTaxResult": self.combined.to_dict() if self.combined else None,
        }


# ─── Federal pieces ────────────────────────────────────────────────────────────

def federal_standard_deduction(filing_status: FilingStatus) -> Decimal:
    return FEDERAL_STANDARD_DEDUCTION[table_status(filing_status)]


def federal_tax_liability(taxable_income: Decimal, filing_status: FilingStatus) -> Decimal:
    return apply_brackets(taxable_income, FEDERAL_BRACKETS[table_status(filing_status)])


def compare_deductions(
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus,
    itemized_deductions: Decimal,
) -> DeductionComparison:
    standard = federal_standard_deduction(filing_status)
    itemized = Decimal(itemized_deductions or 0)

    standard_liability = federal_tax_liability(max(ZERO, adjusted_gross_income - standard), filing_status)
    itemized_liability = federal_tax_liability(max(ZERO, adjusted_gross_income - itemized), filing_status)

    return DeductionComparison(
        standard_deduction=standard,
        itemized_deduction=itemized,
        standard_tax_liability=standard_liability,
        itemized_tax_liability=itemized_liability,
        recommended_method="itemized" if itemized_liability < standard_liability else "standard",
        tax_savings=abs(standard_liability - itemized_liability),
        effective_standard_rate=effective_rate(standard_liability, adjusted_gross_income),
        effective_itemized_rate=effective_rate(itemized_liability, adjusted_gross_income),
    )


def child_tax_credit(
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus,
    dependents: Iterable[DependentInfo],
) -> Decimal:
    eligible = sum(1 for d in dependents if d.qualifies_for_ctc)
    if not eligible:
        return ZERO
    credit = CHILD_TAX_CREDIT * eligible
    excess = adjusted_gross_income - CTC_PHASEOUT_START[table_status(filing_status)]
    if excess > 0:
        steps = (excess / CTC_PHASEOUT_STEP).to_integral_value(rounding=ROUND_CEILING)
        credit -= steps * CTC_PHASEOUT_AMOUNT
    return to_cents(max(ZERO, credit))


def earned_income_credit(
    earned_income: Decimal,
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus,
    dependents: Iterable[DependentInfo],
) -> Decimal:
    """EITC for filers with qualifying children (phase-in, plateau, phase-out)."""
    children = min(3, sum(1 for d in dependents if d.qualifies_for_eitc))
    if not children or filing_status is FilingStatus.MARRIED_FILING_SEPARATELY:
        return ZERO
    credit = min(EITC_MAX_CREDIT[children], earned_income * EITC_PHASE_IN_RATE[children])
    joint = table_status(filing_status) is FilingStatus.MARRIED_FILING_JOINTLY
    excess = max(earned_income, adjusted_gross_income) - EITC_PHASEOUT_START[joint]
    if excess > 0:
        credit -= excess * EITC_PHASEOUT_RATE[children]
    return to_cents(max(ZERO, credit))


def _split_final_tax(final_tax: Decimal) -> tuple[Decimal, Decimal]:
    """(refund, owed) for a signed final tax."""
    return (to_cents(-final_tax), ZERO) if final_tax < 0 else (ZERO, to_cents(final_tax))


def _money(amount: Decimal) -> str:
    return f"${amount:,.0f}"


# ─── Suggestions ───────────────────────────────────────────────────────────────

def federal_suggestions(
    comparison: DeductionComparison,
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus,
    dependents: list[DependentInfo],
) -> list[str]:
    suggestions: list[str] = []

    if comparison.recommended_method == "itemized":
        suggestions.append(
            f"Itemizing deductions saves you {_money(comparison.tax_savings)} compared to the standard deduction"
        )
    elif comparison.tax_savings > 0:
        suggestions.append(
            f"The standard deduction saves you {_money(comparison.tax_savings)} compared to itemizing"
        )
    else:
        suggestions.append("Both deduction methods result in the same tax liability")

    gap = comparison.standard_deduction - comparison.itemized_deduction
    if comparison.recommended_method == "standard" and 0 < gap < 5000:
        suggestions.append(
            f"You're close to benefiting from itemizing! You need {_money(gap)} more in deductions to break even"
        )

    if filing_status is FilingStatus.MARRIED_FILING_SEPARATELY:
        suggestions.append("Consider whether filing jointly with your spouse would result in lower combined taxes")

    ctc_eligible = sum(1 for d in dependents if d.qualifies_for_ctc)
    eitc_eligible = sum(1 for d in dependents if d.qualifies_for_eitc)
    if ctc_eligible:
        suggestions.append(
            f"You may qualify for up to {_money(CHILD_TAX_CREDIT * ctc_eligible)} in Child Tax Credits"
        )
    if eitc_eligible:
        suggestions.append(f"You may qualify for Earned Income Credit with {eitc_eligible} qualifying children")

    if adjusted_gross_income > 100000:
        suggestions.append("Consider maximizing retirement contributions to reduce taxable income")
    if adjusted_gross_income < 50000 and not eitc_eligible:
        suggestions.append("Look into the Earned Income Tax Credit and other low-income tax benefits")

    return suggestions


def state_suggestions(
    suggestions: list[str],
    state: StateTaxResult,
    comparison: DeductionComparison,
) -> list[str]:
    result = list(suggestions)
    if not state.has_income_tax:
        result.insert(0, f"Great news! {state.state_name} has no state income tax")
        return result

    if state.state_tax_liability > 0:
        result.append(
            f"{state.state_name} state tax: ${state.state_tax_liability:,.2f} "
            f"({state.state_effective_rate:.2f}% effective rate)"
        )
        if 0 < state.state_standard_deduction < state.state_itemized_deduction:
            savings = (state.state_itemized_deduction - state.state_standard_deduction) * state.state_marginal_rate
            if savings > 100:
                result.append(f"Itemizing saves {_money(savings)} on {state.state_name} state taxes")
        if state.state_effective_rate > 5:
            result.append(
                f"{state.state_name} has relatively high state taxes. "
                "Consider tax-advantaged retirement contributions."
            )

    if state.state_standard_deduction != comparison.standard_deduction:
        result.append(f"Note: {state.state_name} has different deduction amounts than federal")
    return result


# ─── Entry points ──────────────────────────────────────────────────────────────

def calculate_tax_return(
    total_income: Decimal,
    filing_status: FilingStatus | str,
    dependents: Iterable[DependentInfo] = (),
    itemized_deductions: Decimal = ZERO,
    total_withholdings: Decimal = ZERO,
    state_code: str | None = None,
    state_itemized_deductions: Decimal | None = None,
) -> TaxCalculationResult:
    status = FilingStatus.parse(filing_status)
    deps = list(dependents)
    income = to_cents(Decimal(total_income))
    withholdings = to_cents(Decimal(total_withholdings or 0))
    agi = income  # no above-the-line adjustments

    comparison = compare_deductions(agi, status, Decimal(itemized_deductions or 0))
    if comparison.recommended_method == "itemized":
        deduction, liability = comparison.itemized_deduction, comparison.itemized_tax_liability
    else:
        deduction, liability = comparison.standard_deduction, comparison.standard_tax_liability
    taxable = to_cents(max(ZERO, agi - deduction))

    ctc = child_tax_credit(agi, status, deps)
    eitc = earned_income_credit(income, agi, status, deps)
    credits = ctc + eitc

    final_tax = liability - credits - withholdings
    refund, owed = _split_final_tax(final_tax)
    suggestions = federal_suggestions(comparison, agi, status, deps)

    result = TaxCalculationResult(
        filing_status=status,
        total_income=income,
        adjusted_gross_income=agi,
        standard_deduction=comparison.standard_deduction,
        itemized_deduction=comparison.itemized_deduction,
        deduction_used=comparison.recommended_method,
        taxable_income=taxable,
        tax_liability=liability,
        marginal_rate=marginal_rate(taxable, FEDERAL_BRACKETS[table_status(status)]),
        effective_rate=effective_rate(liability, agi),
        child_tax_credit=ctc,
        earned_income_credit=eitc,
        total_credits=credits,
        total_withholdings=withholdings,
        final_tax=to_cents(final_tax),
        refund_amount=refund,
        amount_owed=owed,
        deduction_comparison=comparison,
        suggestions=tuple(suggestions),
    )
    if not state_code:
        return result

    try:
        state_itemized = state_itemized_deductions or comparison.itemized_deduction
        state = calculate_state_tax(agi, status, state_code, len(deps), Decimal(state_itemized))
    except Exception as exc:
        logger.warning("State tax calculation failed for %s: %s", state_code, exc)
        return replace(result, suggestions=(
            *suggestions,
            f"State tax calculation failed for {state_code}. Showing federal taxes only.",
        ))

    total = liability + state.state_tax_liability
    combined_final = total - credits - withholdings
    combined_refund, combined_owed = _split_final_tax(combined_final)
    combined = CombinedTaxResult(
        federal_tax_liability=liability,
        state_tax_liability=state.state_tax_liability,
        total_tax_liability=total,
        total_credits=credits,
        total_withholdings=withholdings,
        final_tax=to_cents(combined_final),
        refund_amount=combined_refund,
        amount_owed=combined_owed,
    )
    return replace(
        result,
        final_tax=combined.final_tax,
        refund_amount=combined_refund,
        amount_owed=combined_owed,
        state_tax=state,
        combined=combined,
        suggestions=tuple(state_suggestions(suggestions, state, comparison)),
    )


@dataclass(frozen=True)
class TaxScenario:
    scenario: str
    description: str
    itemized_deductions: Decimal
    tax_liability: Decimal
    savings: Decimal = field(default=ZERO)

    def to_dict(self) -> dict:
        return {
            "scenario": self.scenario,
            "description": self.description,
            "itemizedDeductions": float(self.itemized_deductions),
            "taxLiability": float(self.tax_liability),
            "savings": float(self.savings),
        }


def _best_liability(comparison: DeductionComparison) -> Decimal:
    if comparison.recommended_method == "itemized":
        return comparison.itemized_tax_liability
    return comparison.standard_tax_liability


def tax_impact_scenarios(
    adjusted_gross_income: Decimal,
    filing_status: FilingStatus | str,
    current_itemized_deductions: Decimal,
) -> list[TaxScenario]:
    """Federal liability if the filer found more itemized deductions."""
    status = FilingStatus.parse(filing_status)
    agi = Decimal(adjusted_gross_income)
    current = Decimal(current_itemized_deductions or 0)
    base = _best_liability(compare_deductions(agi, status, current))

    scenarios = [TaxScenario("Current", "Your current deductions", current, base)]
    for extra in SCENARIO_INCREMENTS:
        itemized = current + extra
        liability = _best_liability(compare_deductions(agi, status, itemized))
        scenarios.append(TaxScenario(
            scenario=f"+{_money(Decimal(extra))}",
            description=f"With {_money(Decimal(extra))} more in itemized deductions",
            itemized_deductions=itemized,
            tax_liability=liability,
            savings=base - liability,
        ))
    return scenarios
