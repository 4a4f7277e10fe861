"""Operator endpoints for manual credit adjustments and ledger checks."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field, field_validator
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import raise_credit_http_error, require_admin
from services import credit_service, ledger
from services.credit_errors import CreditError

router = APIRouter(dependencies=[Depends(require_admin)])
logger = logging.getLogger(__name__)


class CreditAdjustmentRequest(BaseModel):
    delta: int = Field(ge=-1_000_000, le=1_000_000)
    reason: str = Field(min_length=1, max_length=255)
    reference_id: Optional[str] = Field(default=None, max_length=128)

    @field_validator("delta")
    @classmethod
    def _non_zero(cls, value: int) -> int:
        if value == 0:
            raise ValueError("delta must not be 0")
        return value


class MonthlyAllocationRequest(BaseModel):
    period: Optional[str] = Field(default=None, pattern=r"^\d{4}-\d{2}$")


@router.post("/users/{user_id}/credits")
async def adjust_user_credits(
    user_id: str,
    request: CreditAdjustmentRequest,
    db: AsyncSession = Depends(get_db),
):
    """Positive deltas grant, negative deltas debit. Debits never drive the balance below zero."""
    description = f"Admin adjustment: {request.reason}"
    try:
        if request.delta > 0:
            result = await ledger.add_credits(
                user_id,
                db,
                amount=request.delta,
                transaction_type="admin_adjustment",
                description=description,
                reference_id=request.reference_id,
            )
            balance_after = result.balance_after
            transaction_id = result.transaction_id
            applied = result.applied
        else:
            debit = await ledger.deduct_credits(
                user_id,
                db,
                amount=-request.delta,
                description=description,
                reference_id=request.reference_id,
                transaction_type="admin_adjustment",
            )
            balance_after = debit.balance_after
            transaction_id = debit.transaction_id
            applied = not debit.replayed
    except CreditError as exc:
        raise_credit_http_error(exc)

    logger.info("admin_credit_adjustment user=%s delta=%s reason=%s", user_id, request.delta, request.reason)
    return {
        "ok": True,
        "user_id": user_id,
        "delta": request.delta,
        "balance_after": balance_after,
        "transaction_id": transaction_id,
        "applied": applied,
        "replayed": not applied,
    }


@router.post("/users/{user_id}/monthly-allocation")
async def grant_user_monthly_allocation(
    user_id: str,
    request: MonthlyAllocationRequest,
    db: AsyncSession = Depends(get_db),
):
    try:
        result = await credit_service.grant_monthly_allocation(user_id, db, period_key=request.period)
    except CreditError as exc:
        raise_credit_http_error(exc)

    if result is None:
        return {"ok": True, "user_id": user_id, "applied": False, "amount": 0}
    return {"ok": True, "user_id": user_id, **result.to_dict()}


@router.get("/users/{user_id}/reconcile")
async def reconcile_user_ledger(user_id: str, db: AsyncSession = Depends(get_db)):
    try:
        report = await credit_service.reconcile_user(user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)
    if report["drift"]:
        logger.warning("ledger_drift user=%s drift=%s", user_id, report["drift"])
    return {**report, "consistent": report["drift"] == 0}
