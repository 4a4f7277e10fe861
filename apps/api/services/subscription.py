"""Subscription lifecycle: signup allocation, additive plan upgrades, cancellation."""

from __future__ import annotations

import calendar
from datetime import datetime, timezone
import logging
from typing import Any, Dict, Optional, Tuple
import uuid

from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.user import User
from services import ledger
from services.credit_errors import ConflictError
from services.credit_service import load_user
from services.pricing import DEFAULT_PLAN_ID, get_plan, get_plan_or_default, validate_feature_access

logger = logging.getLogger(__name__)

SIGNUP_REFERENCE = "signup"


def _add_one_month(value: datetime) -> datetime:
    year = value.year + (1 if value.month == 12 else 0)
    month = 1 if value.month == 12 else value.month + 1
    day = min(value.day, calendar.monthrange(year, month)[1])
    return value.replace(year=year, month=month, day=day)


async def _find_user_by_email(email: str, db: AsyncSession) -> Optional[User]:
    result = await db.execute(select(User).where(User.email == email))
    return result.scalar_one_or_none()


async def _get_or_insert_user(
    email: str,
    db: AsyncSession,
    *,
    name: Optional[str],
    user_id: Optional[str],
) -> Tuple[User, bool]:
    """Return ``(user, created)``. A concurrent insert of the same email resolves to the winner's row."""
    normalized_email = email.strip().lower()
    existing = await _find_user_by_email(normalized_email, db)
    if existing is not None:
        return existing, False

    user = User(
        id=user_id or str(uuid.uuid4()),
        email=normalized_email,
        name=name,
        plan=DEFAULT_PLAN_ID,
        subscription_status="free",
        credits=0,
    )
    db.add(user)
    try:
        await db.commit()
    except IntegrityError:
        await db.rollback()
        existing = await _find_user_by_email(normalized_email, db)
        if existing is None:
            raise
        logger.info("user_create_raced email_owner=%s", existing.id)
        return existing, False

    logger.info("user_created user=%s", user.id)
    return user, True


async def _grant_signup_allocation(user_id: str, db: AsyncSession) -> None:
    free_plan = get_plan(DEFAULT_PLAN_ID)
    if free_plan.credits > 0:
        await ledger.add_credits(
            user_id,
            db,
            amount=free_plan.credits,
            transaction_type="bonus",
            description=f"{free_plan.name} plan signup allocation",
            reference_id=SIGNUP_REFERENCE,
        )


async def create_user(
    email: str,
    db: AsyncSession,
    *,
    name: Optional[str] = None,
    user_id: Optional[str] = None,
) -> User:
    """Create (or return) a user and grant the free-tier allocation once.

    Users start at zero and receive the free allocation as a ``bonus``
    transaction, so the balance always equals the ledger sum. For internal
    callers only: it hands back existing accounts.
    """
    user, _created = await _get_or_insert_user(email, db, name=name, user_id=user_id)
    await _grant_signup_allocation(user.id, db)
    return await load_user(user.id, db)


async def register_user(email: str, db: AsyncSession, *, name: Optional[str] = None) -> User:
    """Public signup. Raises ``ConflictError`` when the email already has an account."""
    user, created = await _get_or_insert_user(email, db, name=name, user_id=None)
    if not created:
        logger.warning("signup_rejected reason=email_exists")
        raise ConflictError("An account with this email already exists.")
    await _grant_signup_allocation(user.id, db)
    return await load_user(user.id, db)


async def upgrade_subscription(
    user_id: str,
    db: AsyncSession,
    *,
    plan_id: str,
    reference_id: Optional[str] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Move a user to ``plan_id`` and add (never assign) its credit allocation.

    Any plan may move to any plan and each move grants the full target
    allocation without pro-rating. Replaying a ``reference_id`` (payment id)
    changes nothing.
    """
    plan = get_plan(plan_id)
    started_at = now or datetime.now(timezone.utc)

    async with ledger.user_ledger_lock(user_id):
        try:
            user = await load_user(user_id, db)
            previous_plan = user.plan

            existing = await ledger.find_transaction_by_reference(user_id, reference_id, db)
            if existing is not None:
                ledger.ensure_replay_matches(existing, "subscription_upgrade", debit=False)
                logger.info("subscription_upgrade_replayed user=%s reference=%s", user_id, reference_id)
                return {
                    "user_id": user_id,
                    "previous_plan": previous_plan,
                    "plan": user.plan,
                    "credits_added": 0,
                    "balance_after": int(user.credits or 0),
                    "transaction_id": existing.id,
                    "applied": False,
                }

            user.plan = plan.id
            user.subscription_status = "active"
            user.current_period_start = started_at
            user.current_period_end = _add_one_month(started_at)
            await db.flush()

            grant = await ledger.apply_grant(
                user_id,
                db,
                amount=plan.credits,
                transaction_type="subscription_upgrade",
                description=f"Subscription upgrade: {previous_plan} -> {plan.id} (+{plan.credits} credits)",
                reference_id=reference_id,
            )
            await db.commit()
        except IntegrityError:
            await db.rollback()
            existing = await ledger.find_transaction_by_reference(user_id, reference_id, db)
            if existing is None:
                raise
            ledger.ensure_replay_matches(existing, "subscription_upgrade", debit=False)
            user = await load_user(user_id, db)
            return {
                "user_id": user_id,
                "previous_plan": user.plan,
                "plan": user.plan,
                "credits_added": 0,
                "balance_after": int(user.credits or 0),
                "transaction_id": existing.id,
                "applied": False,
            }
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "subscription_upgraded user=%s from=%s to=%s added=%s balance=%s",
        user_id,
        previous_plan,
        plan.id,
        plan.credits,
        grant.balance_after,
    )
    return {
        "user_id": user_id,
        "previous_plan": previous_plan,
        "plan": plan.id,
        "credits_added": plan.credits,
        "balance_after": grant.balance_after,
        "transaction_id": grant.transaction_id,
        "applied": True,
    }


async def cancel_subscription(user_id: str, db: AsyncSession, *, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Drop to the free plan. The credit balance is left untouched."""
    user = await load_user(user_id, db)
    previous_plan = user.plan
    user.plan = DEFAULT_PLAN_ID
    user.subscription_status = "canceled"
    user.current_period_end = now or datetime.now(timezone.utc)
    await db.commit()
    logger.info("subscription_canceled user=%s from=%s", user_id, previous_plan)
    return await get_subscription_status(user_id, db)


async def get_subscription_status(user_id: str, db: AsyncSession) -> Dict[str, Any]:
    user = await load_user(user_id, db)
    plan = get_plan_or_default(user.plan)
    return {
        "user_id": user.id,
        "plan": plan.id,
        "status": user.subscription_status or "free",
        "credits": int(user.credits or 0),
        "monthly_credits": plan.credits,
        "limits": dict(plan.limits),
        "next_billing": user.current_period_end.isoformat() if user.current_period_end else None,
    }


async def check_feature_access(user_id: str, db: AsyncSession, feature_id: str) -> Dict[str, Any]:
    """Plan gate for ``feature_id`` on the user's current plan."""
    user = await load_user(user_id, db)
    plan = get_plan_or_default(user.plan)
    access = validate_feature_access(plan.id, feature_id)
    return {"feature_id": feature_id, "plan": plan.id, **access.to_dict()}
