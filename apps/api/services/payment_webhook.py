"""Verified payment events feeding the credit ledger."""

from __future__ import annotations

import hashlib
import hmac
import logging
from typing import Any, Dict, Literal, Optional

from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from services import ledger
from services.pricing import get_credit_package
from services.subscription import upgrade_subscription

logger = logging.getLogger(__name__)


class PaymentEvent(BaseModel):
    payment_id: str = Field(min_length=1)
    user_id: str = Field(min_length=1)
    purpose: Literal["credits", "subscription"]
    package_id: Optional[str] = None
    plan_id: Optional[str] = None


def compute_signature(body: bytes, secret: str) -> str:
    return hmac.new(secret.encode("utf-8"), body, hashlib.sha256).hexdigest()


def verify_signature(body: bytes, signature: Optional[str], secret: str) -> bool:
    if not signature or not secret:
        return False
    return hmac.compare_digest(compute_signature(body, secret), signature.strip().lower())


async def apply_payment_event(event: PaymentEvent, db: AsyncSession) -> Dict[str, Any]:
    """Credit the ledger for a completed payment. The payment id makes replays no-ops."""
    reference_id = f"payment:{event.payment_id}"

    if event.purpose == "credits":
        if not event.package_id:
            raise ValueError("package_id is required for credit purchases")
        package = get_credit_package(event.package_id)
        result = await ledger.add_credits(
            event.user_id,
            db,
            amount=package.total_credits,
            transaction_type="purchase",
            description=f"Credit purchase: {package.name} (+{package.bonus_credits} bonus)",
            reference_id=reference_id,
        )
        logger.info(
            "payment_applied payment=%s user=%s purpose=credits applied=%s",
            event.payment_id,
            event.user_id,
            result.applied,
        )
        return {"purpose": "credits", "package_id": package.id, **result.to_dict()}

    if not event.plan_id:
        raise ValueError("plan_id is required for subscription payments")
    upgrade = await upgrade_subscription(
        event.user_id,
        db,
        plan_id=event.plan_id,
        reference_id=reference_id,
    )
    logger.info(
        "payment_applied payment=%s user=%s purpose=subscription applied=%s",
        event.payment_id,
        event.user_id,
        upgrade["applied"],
    )
    return {"purpose": "subscription", **upgrade}
