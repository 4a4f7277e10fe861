"""Credit ledger: the only code path that mutates ``User.credits``.

Every mutation is a single atomic delta against the balance column
(``UPDATE users SET credits = credits + :delta``) plus exactly one appended
``CreditTransaction``, committed together. Mutations for the same user are
also serialized in-process, so a read of ``balance_before`` is never
interleaved with another writer in this worker.
"""

from __future__ import annotations

import asyncio
from contextlib import asynccontextmanager
from dataclasses import dataclass
import logging
import time
from typing import Any, AsyncIterator, Dict, List, Optional
import uuid
import weakref

from sqlalchemy import func, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.credit_transaction import GRANT_TYPES, CreditTransaction
from models.user import User
from services.credit_errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    ReferenceConflictError,
    NotFoundError,
    insufficient_credits_message,
)
from services.pricing import calculate_credit_cost

logger = logging.getLogger(__name__)

_user_locks: "weakref.WeakValueDictionary[str, asyncio.Lock]" = weakref.WeakValueDictionary()


@dataclass(frozen=True)
class GrantResult:
    applied: bool
    amount: int
    balance_after: int
    transaction_id: str

    def to_dict(self) -> Dict[str, Any]:
        return {
            "applied": self.applied,
            "amount": self.amount,
            "balance_after": self.balance_after,
            "transaction_id": self.transaction_id,
        }


@dataclass(frozen=True)
class DebitResult:
    """Outcome of a debit. ``ok=False`` is the routine "not enough credits" case."""

    ok: bool
    required: int
    balance_before: int
    balance_after: int
    charged: int = 0
    transaction_id: Optional[str] = None
    feature_type: Optional[str] = None
    replayed: bool = False

    @property
    def available(self) -> int:
        return self.balance_before

    @property
    def message(self) -> Optional[str]:
        if self.ok:
            return None
        return insufficient_credits_message(self.required, self.available)

    def to_error(self) -> InsufficientCreditsError:
        return InsufficientCreditsError(self.required, self.available, self.feature_type)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "ok": self.ok,
            "charged": self.charged,
            "required": self.required,
            "balance_before": self.balance_before,
            "balance_after": self.balance_after,
            "transaction_id": self.transaction_id,
            "message": self.message,
        }


def _lock_for(user_id: str) -> asyncio.Lock:
    lock = _user_locks.get(user_id)
    if lock is None:
        lock = asyncio.Lock()
        _user_locks[user_id] = lock
    return lock


@asynccontextmanager
async def user_ledger_lock(user_id: str) -> AsyncIterator[None]:
    """Serialize ledger writers for one user. Not reentrant."""
    lock = _lock_for(user_id)
    async with lock:
        yield


async def get_balance(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(select(User.credits).where(User.id == user_id))
    balance = result.scalar_one_or_none()
    if balance is None:
        raise NotFoundError(f"User not found: {user_id}")
    return int(balance)


async def get_transactions(
    user_id: str,
    db: AsyncSession,
    *,
    limit: int = 50,
    transaction_type: Optional[str] = None,
) -> List[CreditTransaction]:
    query = select(CreditTransaction).where(CreditTransaction.user_id == user_id)
    if transaction_type:
        query = query.where(CreditTransaction.type == transaction_type)
    result = await db.execute(query.order_by(CreditTransaction.created_at.desc()).limit(max(int(limit), 1)))
    return list(result.scalars().all())


async def get_ledger_total(user_id: str, db: AsyncSession) -> int:
    result = await db.execute(
        select(func.coalesce(func.sum(CreditTransaction.amount), 0)).where(CreditTransaction.user_id == user_id)
    )
    return int(result.scalar() or 0)


async def find_transaction_by_reference(
    user_id: str,
    reference_id: Optional[str],
    db: AsyncSession,
) -> Optional[CreditTransaction]:
    if not reference_id:
        return None
    result = await db.execute(
        select(CreditTransaction).where(
            CreditTransaction.user_id == user_id,
            CreditTransaction.reference_id == reference_id,
        )
    )
    return result.scalar_one_or_none()


def ensure_replay_matches(existing: CreditTransaction, transaction_type: str, *, debit: bool) -> None:
    """A reference replays only the same kind of entry; anything else is a conflict."""
    same_sign = int(existing.amount) < 0 if debit else int(existing.amount) > 0
    if existing.type != transaction_type or not same_sign:
        requested = f"{transaction_type} {'debit' if debit else 'grant'}"
        raise ReferenceConflictError(existing.reference_id, existing.type, requested)


async def _apply_delta(
    user_id: str,
    db: AsyncSession,
    *,
    delta: int,
    minimum_balance: Optional[int] = None,
) -> Optional[int]:
    """Atomically add ``delta`` and return the new balance.

    With ``minimum_balance`` the update only applies while the current balance
    is at least that value; ``None`` is returned when the guard rejects it or
    the user does not exist.
    """
    stmt = update(User).where(User.id == user_id)
    if minimum_balance is not None:
        stmt = stmt.where(User.credits >= minimum_balance)
    stmt = (
        stmt.values(credits=User.credits + delta, updated_at=func.now())
        .returning(User.credits)
        .execution_options(synchronize_session=False)
    )
    result = await db.execute(stmt)
    balance = result.scalar_one_or_none()
    return None if balance is None else int(balance)


def _append_transaction(
    user_id: str,
    db: AsyncSession,
    *,
    transaction_type: str,
    amount: int,
    description: Optional[str],
    reference_id: Optional[str],
    balance_after: int,
) -> CreditTransaction:
    entry = CreditTransaction(
        id=str(uuid.uuid4()),
        user_id=user_id,
        type=transaction_type,
        amount=int(amount),
        description=description,
        reference_id=reference_id,
        balance_after=balance_after,
    )
    db.add(entry)
    return entry


async def apply_grant(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str,
    description: str,
    reference_id: Optional[str] = None,
) -> GrantResult:
    """Additive grant inside the caller's transaction.

    The caller must hold ``user_ledger_lock(user_id)`` and commit. Used
    directly where the grant has to commit together with other writes
    (subscription upgrades).
    """
    existing = await find_transaction_by_reference(user_id, reference_id, db)
    if existing is not None:
        ensure_replay_matches(existing, transaction_type, debit=False)
        return GrantResult(
            applied=False,
            amount=int(existing.amount),
            balance_after=await get_balance(user_id, db),
            transaction_id=existing.id,
        )

    balance_after = await _apply_delta(user_id, db, delta=amount)
    if balance_after is None:
        raise NotFoundError(f"User not found: {user_id}")

    entry = _append_transaction(
        user_id,
        db,
        transaction_type=transaction_type,
        amount=amount,
        description=description,
        reference_id=reference_id,
        balance_after=balance_after,
    )
    await db.flush()
    return GrantResult(applied=True, amount=amount, balance_after=balance_after, transaction_id=entry.id)


def _validate_grant(amount: int, transaction_type: str) -> int:
    if transaction_type not in GRANT_TYPES:
        raise ValueError(f"Not a grant transaction type: {transaction_type}")
    grant = int(amount)
    if grant <= 0:
        raise InvalidAmountError("amount must be greater than 0")
    return grant


async def _replay_after_conflict(user_id: str, reference_id: Optional[str], db: AsyncSession) -> Optional[CreditTransaction]:
    """Resolve a unique-constraint race against another worker holding the same reference."""
    await db.rollback()
    return await find_transaction_by_reference(user_id, reference_id, db)


async def add_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    transaction_type: str,
    description: str,
    reference_id: Optional[str] = None,
) -> GrantResult:
    grant = _validate_grant(amount, transaction_type)

    async with user_ledger_lock(user_id):
        try:
            result = await apply_grant(
                user_id,
                db,
                amount=grant,
                transaction_type=transaction_type,
                description=description,
                reference_id=reference_id,
            )
            await db.commit()
        except IntegrityError:
            existing = await _replay_after_conflict(user_id, reference_id, db)
            if existing is None:
                raise
            ensure_replay_matches(existing, transaction_type, debit=False)
            result = GrantResult(
                applied=False,
                amount=int(existing.amount),
                balance_after=await get_balance(user_id, db),
                transaction_id=existing.id,
            )
        except Exception:
            await db.rollback()
            raise

    if result.applied:
        logger.info(
            "credits_added user=%s type=%s amount=%s balance=%s",
            user_id,
            transaction_type,
            grant,
            result.balance_after,
        )
    else:
        logger.info("credits_add_replayed user=%s reference=%s", user_id, reference_id)
    return result


async def _debit(
    user_id: str,
    db: AsyncSession,
    *,
    cost: int,
    transaction_type: str,
    description: Optional[str],
    reference_id: Optional[str],
    feature_type: Optional[str] = None,
) -> DebitResult:
    async with user_ledger_lock(user_id):
        try:
            existing = await find_transaction_by_reference(user_id, reference_id, db)
            if existing is not None:
                ensure_replay_matches(existing, transaction_type, debit=True)
                balance = await get_balance(user_id, db)
                return DebitResult(
                    ok=True,
                    required=cost,
                    balance_before=balance,
                    balance_after=balance,
                    charged=abs(int(existing.amount)),
                    transaction_id=existing.id,
                    feature_type=feature_type,
                    replayed=True,
                )

            balance_after = await _apply_delta(user_id, db, delta=-cost, minimum_balance=cost)
            if balance_after is None:
                available = await get_balance(user_id, db)
                await db.rollback()
                logger.warning(
                    "credits_declined user=%s type=%s required=%s available=%s",
                    user_id,
                    transaction_type,
                    cost,
                    available,
                )
                return DebitResult(
                    ok=False,
                    required=cost,
                    balance_before=available,
                    balance_after=available,
                    feature_type=feature_type,
                )

            entry = _append_transaction(
                user_id,
                db,
                transaction_type=transaction_type,
                amount=-cost,
                description=description,
                reference_id=reference_id,
                balance_after=balance_after,
            )
            await db.commit()
        except Exception:
            await db.rollback()
            raise

    logger.info(
        "credits_debited user=%s type=%s amount=%s balance=%s",
        user_id,
        transaction_type,
        cost,
        balance_after,
    )
    return DebitResult(
        ok=True,
        required=cost,
        balance_before=balance_after + cost,
        balance_after=balance_after,
        charged=cost,
        transaction_id=entry.id,
        feature_type=feature_type,
    )


async def consume_credits(
    user_id: str,
    db: AsyncSession,
    *,
    feature_type: str,
    quantity: float = 1,
    description: Optional[str] = None,
) -> DebitResult:
    """Charge a feature. Returns a declined result instead of raising when short."""
    total_cost = calculate_credit_cost(feature_type, quantity)
    reference_id = f"{feature_type}_{int(time.time() * 1000)}_{uuid.uuid4().hex[:8]}"
    return await _debit(
        user_id,
        db,
        cost=total_cost,
        transaction_type="used",
        description=description or f"{feature_type} usage ({quantity:g}x)",
        reference_id=reference_id,
        feature_type=feature_type,
    )


async def deduct_credits(
    user_id: str,
    db: AsyncSession,
    *,
    amount: int,
    description: str = "Credit usage",
    reference_id: Optional[str] = None,
    transaction_type: str = "spent",
) -> DebitResult:
    """Deduct a raw amount. Raises ``InsufficientCreditsError`` when short."""
    if transaction_type not in ("spent", "admin_adjustment"):
        raise ValueError(f"Unsupported debit type: {transaction_type}")
    cost = int(amount)
    if cost <= 0:
        raise InvalidAmountError("amount must be greater than 0")

    result = await _debit(
        user_id,
        db,
        cost=cost,
        transaction_type=transaction_type,
        description=description,
        reference_id=reference_id,
    )
    if not result.ok:
        raise result.to_error()
    return result
