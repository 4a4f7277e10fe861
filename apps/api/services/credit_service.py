"""Feature-level credit policy on top of the ledger."""

from __future__ import annotations

from datetime import datetime, timezone
import logging
import time
from typing import Any, Awaitable, Callable, Dict, Optional, Tuple, TypeVar

from sqlalchemy import func
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.credit_transaction import DEBIT_TYPES, CreditTransaction
from models.user import User
from services import ledger
from services.credit_errors import InsufficientCreditsError, NotFoundError
from services.pricing import (
    CREDIT_COSTS,
    REFERRAL_REWARDS,
    calculate_credit_cost,
    get_plan_or_default,
)

logger = logging.getLogger(__name__)

T = TypeVar("T")


def _current_period_key(now: Optional[datetime] = None) -> str:
    current = now or datetime.now(timezone.utc)
    return current.strftime("%Y-%m")


async def load_user(user_id: str, db: AsyncSession) -> User:
    """Fetch a user, refreshing any stale identity-map copy after ledger updates."""
    result = await db.execute(
        select(User).where(User.id == user_id).execution_options(populate_existing=True)
    )
    user = result.scalar_one_or_none()
    if user is None:
        raise NotFoundError(f"User not found: {user_id}")
    return user


def get_credit_cost(feature_type: str, quantity: float = 1) -> int:
    return calculate_credit_cost(feature_type, quantity)


def get_all_feature_costs() -> Dict[str, float]:
    return dict(CREDIT_COSTS)


async def has_credits(user_id: str, db: AsyncSession, *, feature_type: str, quantity: float = 1) -> bool:
    required = calculate_credit_cost(feature_type, quantity)
    balance = await ledger.get_balance(user_id, db)
    return balance >= required


async def get_credit_history(user_id: str, db: AsyncSession, *, limit: int = 50) -> list:
    await ledger.get_balance(user_id, db)
    capped = min(max(int(limit), 1), max(int(settings.CREDIT_HISTORY_MAX_LIMIT), 1))
    entries = await ledger.get_transactions(user_id, db, limit=capped)
    return [entry.to_dict() for entry in entries]


async def get_user_credit_info(user_id: str, db: AsyncSession, *, limit: Optional[int] = None) -> Dict[str, Any]:
    user = await load_user(user_id, db)
    recent = await ledger.get_transactions(
        user_id,
        db,
        limit=limit or max(int(settings.RECENT_TRANSACTIONS_LIMIT), 1),
    )
    plan = get_plan_or_default(user.plan)
    return {
        "user_id": user.id,
        "current_credits": int(user.credits or 0),
        "plan": plan.id,
        "plan_monthly_credits": plan.credits,
        "subscription_status": user.subscription_status,
        "next_billing": user.current_period_end.isoformat() if user.current_period_end else None,
        "recent_transactions": [entry.to_dict() for entry in recent],
    }


async def calculate_credit_rollover(user_id: str, db: AsyncSession) -> int:
    """Unused credits from the last completed monthly cycle, capped at that cycle's allocation.

    The cycle runs from the previous ``monthly_allocation`` to the latest one
    and is funded by the previous allocation. Read-only.
    """
    await ledger.get_balance(user_id, db)
    allocations = await ledger.get_transactions(
        user_id,
        db,
        limit=2,
        transaction_type="monthly_allocation",
    )
    if len(allocations) < 2:
        return 0

    last_allocation, previous_allocation = allocations[0], allocations[1]
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.type.in_(DEBIT_TYPES),
            CreditTransaction.created_at >= previous_allocation.created_at,
            CreditTransaction.created_at <= last_allocation.created_at,
        )
    )
    used = abs(int(result.scalar() or 0))
    allocation = int(previous_allocation.amount or 0)
    rollover = max(0, allocation - used)
    return min(rollover, allocation)


async def award_referral_credits(
    user_id: str,
    db: AsyncSession,
    *,
    referral_type: str,
) -> Optional[ledger.GrantResult]:
    credits = REFERRAL_REWARDS.get(referral_type)
    if not credits:
        logger.info("referral_reward_skipped user=%s type=%s", user_id, referral_type)
        return None

    return await ledger.add_credits(
        user_id,
        db,
        amount=credits,
        transaction_type="earned",
        description=f"Referral reward: {referral_type}",
        reference_id=f"referral_{referral_type}_{int(time.time() * 1000)}",
    )


async def reset_monthly_credits(user_id: str) -> None:
    """Automatic monthly resets are disabled; credits are purchased or explicitly granted."""
    logger.info(
        "monthly_credit_reset_disabled user=%s policy=credits are never reset automatically",
        user_id,
    )


async def grant_monthly_allocation(
    user_id: str,
    db: AsyncSession,
    *,
    period_key: Optional[str] = None,
) -> Optional[ledger.GrantResult]:
    """Explicit, additive grant of the user's plan allocation for one billing period."""
    user = await load_user(user_id, db)
    plan = get_plan_or_default(user.plan)
    if plan.credits <= 0:
        return None

    period = period_key or _current_period_key()
    return await ledger.add_credits(
        user_id,
        db,
        amount=plan.credits,
        transaction_type="monthly_allocation",
        description=f"Monthly {plan.name} allocation ({period})",
        reference_id=f"monthly:{period}",
    )


async def charge_after_success(
    user_id: str,
    db: AsyncSession,
    *,
    feature_type: str,
    operation: Callable[[], Awaitable[T]],
    quantity: float = 1,
    description: Optional[str] = None,
) -> Tuple[T, ledger.DebitResult]:
    """Run a feature and charge for it only once it has succeeded.

    Raises ``InsufficientCreditsError`` before running when the balance is
    short. Exceptions from ``operation`` propagate without any charge.
    """
    required = calculate_credit_cost(feature_type, quantity)
    available = await ledger.get_balance(user_id, db)
    if available < required:
        raise InsufficientCreditsError(required, available, feature_type)

    value = await operation()

    charge = await ledger.consume_credits(
        user_id,
        db,
        feature_type=feature_type,
        quantity=quantity,
        description=description,
    )
    if not charge.ok:
        # Balance was spent elsewhere while the feature ran; the work is kept uncharged.
        logger.warning(
            "credits_post_charge_declined user=%s feature=%s required=%s available=%s",
            user_id,
            feature_type,
            charge.required,
            charge.available,
        )
    return value, charge


async def reconcile_user(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    """Compare the stored balance with the ledger sum for one user."""
    balance = await ledger.get_balance(user_id, db)
    ledger_total = await ledger.get_ledger_total(user_id, db)
    return {
        "user_id": user_id,
        "balance": balance,
        "ledger_total": ledger_total,
        "drift": balance - ledger_total,
    }
