"""Billing router: plan catalog, subscription state and payment webhooks."""

from __future__ import annotations

import logging
from typing import Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Request
from pydantic import ValidationError
from sqlalchemy.ext.asyncio import AsyncSession

from config import require_payment_webhook_secret, settings
from database import get_db
from routers.auth_scope import AuthContext, get_auth_context, raise_credit_http_error
from routers.rate_limit import rate_limit
from services.credit_errors import CreditError
from services.payment_webhook import PaymentEvent, apply_payment_event, verify_signature
from services.pricing import CREDIT_PACKAGES, SUBSCRIPTION_PLANS, calculate_yearly_savings
from services.subscription import cancel_subscription, check_feature_access, get_subscription_status

router = APIRouter()
logger = logging.getLogger(__name__)


@router.get("/plans")
async def list_plans():
    return {
        "plans": [
            {**plan.to_dict(), "yearly_savings": calculate_yearly_savings(plan.id)}
            for plan in SUBSCRIPTION_PLANS.values()
        ]
    }


@router.get("/packages")
async def list_credit_packages():
    return {"packages": [package.to_dict() for package in CREDIT_PACKAGES.values()]}


@router.get("/subscription")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    try:
        return await get_subscription_status(auth.user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)


@router.get("/features/{feature_id}")
async def feature_access(
    feature_id: str,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Whether the caller's plan unlocks ``feature_id``, and which plan to upgrade to if not."""
    try:
        return await check_feature_access(auth.user_id, db, feature_id)
    except CreditError as exc:
        raise_credit_http_error(exc)


@router.post("/subscription/cancel")
async def cancel_current_subscription(
    _rate_limit: None = Depends(rate_limit("billing_cancel", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    """Return to the free plan. Remaining credits stay on the account."""
    try:
        return await cancel_subscription(auth.user_id, db)
    except CreditError as exc:
        raise_credit_http_error(exc)


@router.post("/webhook")
async def payment_webhook(
    request: Request,
    x_payment_signature: Optional[str] = Header(default=None),
    _rate_limit: None = Depends(rate_limit("billing_webhook", limit=600, window_seconds=3600)),
    db: AsyncSession = Depends(get_db),
):
    """Apply a signed payment event. Re-delivered events are acknowledged without a second grant."""
    if not settings.BILLING_ENABLED:
        raise HTTPException(status_code=503, detail="Billing is disabled. Enable BILLING_ENABLED to accept payments.")
    try:
        secret = require_payment_webhook_secret()
    except ValueError as exc:
        raise HTTPException(status_code=503, detail="Payment webhook secret is not configured.") from exc

    body = await request.body()
    if not verify_signature(body, x_payment_signature, secret):
        logger.warning("payment_webhook_rejected reason=bad_signature")
        raise HTTPException(status_code=401, detail="Invalid payment signature.")

    try:
        event = PaymentEvent.model_validate_json(body)
    except ValidationError as exc:
        raise HTTPException(status_code=422, detail="Malformed payment event.") from exc

    try:
        result = await apply_payment_event(event, db)
    except CreditError as exc:
        raise_credit_http_error(exc)
    except ValueError as exc:
        raise HTTPException(status_code=422, detail=str(exc)) from exc

    return {"ok": True, "payment_id": event.payment_id, **result}
