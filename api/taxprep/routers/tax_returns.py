import logging
import uuid

from fastapi import APIRouter, Depends, HTTPException
from sqlalchemy import select
from sqlalchemy.ext.asyncio import AsyncSession

from taxprep.core.database import get_db
from taxprep.core.deps import get_current_user
from taxprep.core.redis import tax_return_lock
from taxprep.models.tax_return import Dependent, StateSource, TaxReturn
from taxprep.models.user import User
from taxprep.schemas.tax_return import (
    DependentCreate,
    DependentResponse,
    TaxReturnCreate,
    TaxReturnResponse,
    TaxReturnUpdate,
)
from taxprep.services.income import (
    count_orphans,
    income_totals,
    lock_tax_return,
    purge_orphans,
    recompute_or_reset,
    valid_entries,
)
from taxprep.services.state_tax import UnsupportedStateError, state_tax_summary
from taxprep.services.tax_calculator import tax_impact_scenarios

logger = logging.getLogger(__name__)

router = APIRouter(tags=["tax-returns"])


async def _owned(db: AsyncSession, tax_return_id: uuid.UUID, user: User) -> TaxReturn:
    result = await db.execute(
        select(TaxReturn).where(TaxReturn.id == tax_return_id, TaxReturn.user_id == user.id)
    )
    tax_return = result.scalar_one_or_none()
    if not tax_return:
        raise HTTPException(status_code=404, detail="Tax return not found")
    return tax_return


async def _recompute_locked(db: AsyncSession, tax_return_id: uuid.UUID) -> TaxReturn:
    async with tax_return_lock(tax_return_id):
        tax_return = await lock_tax_return(db, tax_return_id)
        await recompute_or_reset(db, tax_return)
        await db.commit()
    return tax_return


# ─── Tax returns ──────────────────────────────────────────────────────────────

@router.get("/tax-returns", response_model=list[TaxReturnResponse])
async def list_tax_returns(
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    result = await db.execute(
        select(TaxReturn)
        .where(TaxReturn.user_id == user.id)
        .order_by(TaxReturn.tax_year.desc(), TaxReturn.created_at.desc())
    )
    return result.scalars().all()


@router.post("/tax-returns", response_model=TaxReturnResponse, status_code=201)
async def create_tax_return(
    payload: TaxReturnCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = TaxReturn(user_id=user.id, **payload.model_dump())
    db.add(tax_return)
    await db.flush()
    await db.refresh(tax_return)
    return tax_return


@router.get("/tax-returns/{tax_return_id}", response_model=TaxReturnResponse)
async def get_tax_return(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    return await _owned(db, tax_return_id, user)


@router.patch("/tax-returns/{tax_return_id}", response_model=TaxReturnResponse)
async def update_tax_return(
    tax_return_id: uuid.UUID,
    payload: TaxReturnUpdate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = await _owned(db, tax_return_id, user)

    changes = payload.model_dump(exclude_unset=True)
    manual_state = changes.pop("detected_state", None)
    for field, value in changes.items():
        if value is not None:
            setattr(tax_return, field, value)
    if manual_state:
        # A user-entered state outranks anything detected from documents
        tax_return.detected_state = manual_state
        tax_return.state = manual_state
        tax_return.state_source = StateSource.MANUAL.value
        tax_return.state_confidence = 1.0
    await db.flush()

    return await _recompute_locked(db, tax_return.id)


# ─── Dependents ───────────────────────────────────────────────────────────────

@router.get("/tax-returns/{tax_return_id}/dependents", response_model=list[DependentResponse])
async def list_dependents(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, tax_return_id, user)
    result = await db.execute(
        select(Dependent).where(Dependent.tax_return_id == tax_return_id).order_by(Dependent.created_at)
    )
    return result.scalars().all()


@router.post("/tax-returns/{tax_return_id}/dependents", response_model=DependentResponse, status_code=201)
async def add_dependent(
    tax_return_id: uuid.UUID,
    payload: DependentCreate,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, tax_return_id, user)
    dependent = Dependent(tax_return_id=tax_return_id, **payload.model_dump())
    db.add(dependent)
    await db.flush()
    await db.refresh(dependent)

    await _recompute_locked(db, tax_return_id)
    return dependent


@router.delete("/tax-returns/{tax_return_id}/dependents/{dependent_id}", status_code=204)
async def delete_dependent(
    tax_return_id: uuid.UUID,
    dependent_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, tax_return_id, user)
    result = await db.execute(
        select(Dependent).where(Dependent.id == dependent_id, Dependent.tax_return_id == tax_return_id)
    )
    dependent = result.scalar_one_or_none()
    if not dependent:
        raise HTTPException(status_code=404, detail="Dependent not found")

    await db.delete(dependent)
    await db.flush()
    await _recompute_locked(db, tax_return_id)


# ─── Income integrity ─────────────────────────────────────────────────────────

@router.get("/tax-returns/{tax_return_id}/current-income")
async def current_income(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    """Valid income entries only, plus how many orphans are waiting for cleanup."""
    await _owned(db, tax_return_id, user)
    orphans = await count_orphans(db, tax_return_id)
    rows = await valid_entries(db, tax_return_id)
    total_income, total_withholdings, count = await income_totals(db, tax_return_id)

    return {
        "incomeEntries": [
            {
                "id": str(entry.id),
                "incomeType": entry.income_type,
                "description": entry.description,
                "amount": float(entry.amount),
                "federalTaxWithheld": float(entry.federal_tax_withheld),
                "employerName": entry.employer_name,
                "payerName": entry.payer_name,
                "document": {
                    "id": str(doc.id),
                    "fileName": doc.file_name,
                    "documentType": doc.document_type,
                    "processingStatus": doc.processing_status,
                },
            }
            for entry, doc in rows
        ],
        "summary": {
            "totalEntries": count,
            "totalIncome": float(total_income),
            "totalWithholdings": float(total_withholdings),
            "orphanedEntriesFound": orphans.null_document,
            "invalidReferenceEntriesFound": orphans.invalid_document,
            "needsCleanup": orphans.total > 0,
        },
    }


@router.post("/tax-returns/{tax_return_id}/cleanup-orphaned-data")
async def cleanup_orphaned_data(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    await _owned(db, tax_return_id, user)
    async with tax_return_lock(tax_return_id):
        tax_return = await lock_tax_return(db, tax_return_id)
        purged = await purge_orphans(db, tax_return_id)
        calculation = await recompute_or_reset(db, tax_return)
        _, _, remaining = await income_totals(db, tax_return_id)
        await db.commit()

    logger.info(
        "Cleanup on tax return %s removed %d orphaned entries, %d remain",
        tax_return_id, purged.total, remaining,
    )
    return {
        "success": True,
        "summary": {
            "orphanedIncomeEntriesDeleted": purged.null_document,
            "invalidDocumentEntriesDeleted": purged.invalid_document,
            "validIncomeEntriesRemaining": remaining,
            "newTotalIncome": float(tax_return.total_income),
            "newTotalWithholdings": float(tax_return.total_withholdings),
            "taxCalculationResult": calculation.to_dict() if calculation else None,
        },
    }


# ─── Planning ─────────────────────────────────────────────────────────────────

@router.get("/tax-returns/{tax_return_id}/tax-scenarios")
async def tax_scenarios(
    tax_return_id: uuid.UUID,
    user: User = Depends(get_current_user),
    db: AsyncSession = Depends(get_db),
):
    tax_return = await _owned(db, tax_return_id, user)
    scenarios = tax_impact_scenarios(
        tax_return.adjusted_gross_income,
        tax_return.filing_status,
        tax_return.itemized_deduction,
    )
    return {"scenarios": [s.to_dict() for s in scenarios]}


@router.get("/states/{state_code}/summary")
async def state_summary(state_code: str, user: User = Depends(get_current_user)):
    try:
        return state_tax_summary(state_code)
    except UnsupportedStateError as exc:
        raise HTTPException(status_code=404, detail=str(exc))
