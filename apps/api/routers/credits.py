"""Credits router: balance, history, feature costs and feature charging."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_user_scope, get_auth_context, raise_credit_http_error
from routers.rate_limit import rate_limit
from services import credit_service, ledger
from services.credit_errors import CreditError

router = APIRouter()
logger = logging.getLogger(__name__)


class ConsumeCreditsRequest(BaseModel):
    user_id: Optional[str] = None
    feature_type: str = Field(min_length=1)
    quantity: float = Field(default=1, gt=0, le=1000)
    description: Optional[str] = Field(default=None, max_length=255)


class ReferralRequest(BaseModel):
    user_id: Optional[str] = None
    referral_type: Literal["inviteFriend", "submitFeedback"]


@router.get("")
async def credits_summary(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        info = await credit_service.get_user_credit_info(scoped_user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)
    info["costs"] = credit_service.get_all_feature_costs()
    return info


@router.get("/history")
async def credit_history(
    user_id: Optional[str] = Query(default=None),
    limit: int = Query(default=50, ge=1, le=500),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        entries = await credit_service.get_credit_history(scoped_user_id, db, limit=limit)
    except CreditError as exc:
        raise_credit_http_error(exc)
    return {"user_id": scoped_user_id, "transactions": entries}


@router.get("/costs")
async def feature_costs():
    return {"costs": credit_service.get_all_feature_costs()}


@router.get("/cost/{feature_type}")
async def feature_cost(
    feature_type: str,
    quantity: float = Query(default=1, gt=0, le=1000),
):
    try:
        cost = credit_service.get_credit_cost(feature_type, quantity)
    except CreditError as exc:
        raise_credit_http_error(exc)
    return {"feature_type": feature_type, "quantity": quantity, "cost": cost}


@router.get("/check/{feature_type}")
async def check_feature_credits(
    feature_type: str,
    quantity: float = Query(default=1, gt=0, le=1000),
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        allowed = await credit_service.has_credits(scoped_user_id, db, feature_type=feature_type, quantity=quantity)
        cost = credit_service.get_credit_cost(feature_type, quantity)
        balance = await ledger.get_balance(scoped_user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)
    return {
        "feature_type": feature_type,
        "cost": cost,
        "balance": balance,
        "has_credits": allowed,
    }


@router.post("/consume")
async def consume_feature_credits(
    request: ConsumeCreditsRequest,
    _rate_limit: None = Depends(rate_limit("credits_consume", limit=600, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Charge a completed feature run. Declines with 402 and leaves the balance unchanged."""
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        result = await ledger.consume_credits(
            scoped_user_id,
            db,
            feature_type=request.feature_type,
            quantity=request.quantity,
            description=request.description,
        )
    except CreditError as exc:
        raise_credit_http_error(exc)

    if not result.ok:
        raise HTTPException(
            status_code=402,
            detail={
                "message": result.message,
                "feature_type": request.feature_type,
                "required": result.required,
                "available": result.available,
                "upgrade_required": True,
            },
        )
    return result.to_dict()


@router.get("/rollover")
async def credit_rollover(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, user_id)
    try:
        rollover = await credit_service.calculate_credit_rollover(scoped_user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)
    return {"user_id": scoped_user_id, "rollover": rollover}


@router.post("/referral")
async def referral_reward(
    request: ReferralRequest,
    _rate_limit: None = Depends(rate_limit("credits_referral", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    scoped_user_id = ensure_user_scope(auth.user_id, request.user_id)
    try:
        result = await credit_service.award_referral_credits(
            scoped_user_id,
            db,
            referral_type=request.referral_type,
        )
    except CreditError as exc:
        raise_credit_http_error(exc)

    if result is None:
        return {"ok": True, "credits_added": 0}
    return {"ok": True, "credits_added": result.amount, "balance_after": result.balance_after}
