"""
Income totals for a tax return, always re-derived from valid income entries.

An income entry only counts while the document that produced it exists on
the same return. Every recompute path purges entries that fail that test
first, so a deleted or re-imported document can never be counted twice.
"""
import logging
import uuid
from dataclasses import dataclass
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import delete, func, select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.errors import CalculationError
from taxprep.models.document import Document, IncomeEntry
from taxprep.models.tax_return import Dependent, TaxReturn
from taxprep.services.amounts import ZERO, to_cents
from taxprep.services.tax_calculator import DependentInfo, TaxCalculationResult, calculate_tax_return

logger = logging.getLogger(__name__)


@dataclass
class OrphanCounts:
    null_document: int = 0
    invalid_document: int = 0

    @property
    def total(self) -> int:
        return self.null_document + self.invalid_document


def _documents_of(tax_return_id: uuid.UUID):
    return select(Document.id).where(Document.tax_return_id == tax_return_id)


def _dangling(tax_return_id: uuid.UUID):
    return (
        IncomeEntry.tax_return_id == tax_return_id,
        IncomeEntry.document_id.is_not(None),
        IncomeEntry.document_id.not_in(_documents_of(tax_return_id)),
    )


async def count_orphans(db: AsyncSession, tax_return_id: uuid.UUID) -> OrphanCounts:
    null_count = await db.scalar(
        select(func.count()).select_from(IncomeEntry).where(
            IncomeEntry.tax_return_id == tax_return_id,
            IncomeEntry.document_id.is_(None),
        )
    )
    dangling_count = await db.scalar(
        select(func.count()).select_from(IncomeEntry).where(*_dangling(tax_return_id))
    )
    return OrphanCounts(null_document=null_count or 0, invalid_document=dangling_count or 0)


async def purge_orphans(db: AsyncSession, tax_return_id: uuid.UUID) -> OrphanCounts:
    """Delete entries with no document, then entries whose document is gone."""
    nulls = await db.execute(
        delete(IncomeEntry)
        .where(IncomeEntry.tax_return_id == tax_return_id, IncomeEntry.document_id.is_(None))
        .execution_options(synchronize_session=False)
    )
    dangling = await db.execute(
        delete(IncomeEntry)
        .where(*_dangling(tax_return_id))
        .execution_options(synchronize_session=False)
    )
    counts = OrphanCounts(null_document=nulls.rowcount or 0, invalid_document=dangling.rowcount or 0)
    if counts.total:
        logger.warning(
            "Purged %d orphaned income entries (%d without document, %d with missing document) "
            "from tax return %s",
            counts.total, counts.null_document, counts.invalid_document, tax_return_id,
        )
    return counts


async def valid_entries(db: AsyncSession, tax_return_id: uuid.UUID) -> list[tuple[IncomeEntry, Document]]:
    result = await db.execute(
        select(IncomeEntry, Document)
        .join(Document, Document.id == IncomeEntry.document_id)
        .where(
            IncomeEntry.tax_return_id == tax_return_id,
            Document.tax_return_id == tax_return_id,
        )
        .order_by(IncomeEntry.created_at)
    )
    return [(entry, doc) for entry, doc in result.all()]


async def income_totals(db: AsyncSession, tax_return_id: uuid.UUID) -> tuple[Decimal, Decimal, int]:
    """(total income, total withholdings, entry count) over valid entries."""
    row = (await db.execute(
        select(
            func.coalesce(func.sum(IncomeEntry.amount), 0),
            func.coalesce(func.sum(IncomeEntry.federal_tax_withheld), 0),
            func.count(IncomeEntry.id),
        )
        .join(Document, Document.id == IncomeEntry.document_id)
        .where(
            IncomeEntry.tax_return_id == tax_return_id,
            Document.tax_return_id == tax_return_id,
        )
    )).one()
    return to_cents(Decimal(str(row[0]))), to_cents(Decimal(str(row[1]))), row[2]


async def dependent_infos(db: AsyncSession, tax_return_id: uuid.UUID) -> list[DependentInfo]:
    dependents = (await db.execute(
        select(Dependent).where(Dependent.tax_return_id == tax_return_id)
    )).scalars().all()
    return [
        DependentInfo(qualifies_for_ctc=d.qualifies_for_ctc, qualifies_for_eitc=d.qualifies_for_eitc)
        for d in dependents
    ]


def apply_calculation(tax_return: TaxReturn, result: TaxCalculationResult) -> None:
    tax_return.total_income = result.total_income
    tax_return.total_withholdings = result.total_withholdings
    tax_return.adjusted_gross_income = result.adjusted_gross_income
    tax_return.standard_deduction = result.standard_deduction
    tax_return.taxable_income = result.taxable_income
    tax_return.tax_liability = result.tax_liability
    tax_return.total_credits = result.total_credits
    tax_return.refund_amount = result.refund_amount
    tax_return.amount_owed = result.amount_owed

    state = result.state_tax
    tax_return.state_tax_liability = state.state_tax_liability if state else ZERO
    tax_return.state_standard_deduction = state.state_standard_deduction if state else ZERO
    tax_return.state_taxable_income = state.state_taxable_income if state else ZERO
    tax_return.state_effective_rate = state.state_effective_rate if state else ZERO
    tax_return.last_calculated_at = datetime.now(timezone.utc)


async def recompute_tax_return(
    db: AsyncSession,
    tax_return: TaxReturn,
    state_code: str | None = None,
) -> TaxCalculationResult:
    """Purge orphans, re-sum valid entries and rerun the full calculation.

    `state_code` overrides the return's known state (the pipeline passes the
    state it just detected). Raises CalculationError if the federal
    calculation fails.
    """
    await purge_orphans(db, tax_return.id)
    total_income, total_withholdings, count = await income_totals(db, tax_return.id)
    dependents = await dependent_infos(db, tax_return.id)

    try:
        result = calculate_tax_return(
            total_income=total_income,
            filing_status=tax_return.filing_status,
            dependents=dependents,
            itemized_deductions=tax_return.itemized_deduction or ZERO,
            total_withholdings=total_withholdings,
            state_code=state_code or tax_return.detected_state,
            state_itemized_deductions=tax_return.state_itemized_deduction or ZERO,
        )
    except (ValueError, ArithmeticError, KeyError) as exc:
        raise CalculationError(f"Tax calculation failed: {exc}") from exc

    apply_calculation(tax_return, result)
    logger.info(
        "Recomputed tax return %s from %d income entries: income=%s liability=%s refund=%s owed=%s",
        tax_return.id, count, result.total_income, result.tax_liability,
        result.refund_amount, result.amount_owed,
    )
    return result


def reset_calculated_fields(tax_return: TaxReturn) -> None:
    """Zero every figure that needs a full recalculation to be trusted again."""
    tax_return.taxable_income = ZERO
    tax_return.tax_liability = ZERO
    tax_return.total_credits = ZERO
    tax_return.refund_amount = ZERO
    tax_return.amount_owed = ZERO
    tax_return.state_tax_liability = ZERO
    tax_return.state_taxable_income = ZERO
    tax_return.state_effective_rate = ZERO
    tax_return.last_calculated_at = None


async def reset_after_delete(db: AsyncSession, tax_return: TaxReturn) -> None:
    """Re-derive income totals after a document delete and clear downstream figures."""
    await purge_orphans(db, tax_return.id)
    total_income, total_withholdings, _ = await income_totals(db, tax_return.id)
    tax_return.total_income = total_income
    tax_return.total_withholdings = total_withholdings
    tax_return.adjusted_gross_income = total_income
    reset_calculated_fields(tax_return)


async def recompute_or_reset(db: AsyncSession, tax_return: TaxReturn) -> TaxCalculationResult | None:
    """Full recompute; if the calculation itself fails, fall back to fresh totals with zeroed figures."""
    try:
        return await recompute_tax_return(db, tax_return)
    except CalculationError as exc:
        logger.warning("Recompute failed for tax return %s, resetting calculated fields: %s", tax_return.id, exc)
        await reset_after_delete(db, tax_return)
        return None


async def lock_tax_return(db: AsyncSession, tax_return_id: uuid.UUID) -> TaxReturn | None:
    """Row-lock the return for a read-modify-write of its aggregates."""
    result = await db.execute(
        select(TaxReturn)
        .where(TaxReturn.id == tax_return_id)
        .with_for_update()
        .execution_options(populate_existing=True)
    )
    return result.scalar_one_or_none()
