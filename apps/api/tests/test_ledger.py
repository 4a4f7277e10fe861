import asyncio

import pytest

from services import ledger
from services.credit_errors import (
    InsufficientCreditsError,
    InvalidAmountError,
    NotFoundError,
    ReferenceConflictError,
)
from services.credit_service import reconcile_user


async def _fund(session_maker, user_id: str, amount: int, reference_id=None):
    async with session_maker() as session:
        return await ledger.add_credits(
            user_id,
            session,
            amount=amount,
            transaction_type="purchase",
            description="Test funding",
            reference_id=reference_id,
        )


async def _balance(session_maker, user_id: str) -> int:
    async with session_maker() as session:
        return await ledger.get_balance(user_id, session)


async def _transactions(session_maker, user_id: str):
    async with session_maker() as session:
        return await ledger.get_transactions(user_id, session, limit=100)


@pytest.mark.asyncio
async def test_add_credits_is_additive_and_recorded(session_maker, seed_user):
    await seed_user("ledger-add")
    first = await _fund(session_maker, "ledger-add", 100)
    second = await _fund(session_maker, "ledger-add", 250)

    assert first.applied and second.applied
    assert first.balance_after == 100
    assert second.balance_after == 350
    assert await _balance(session_maker, "ledger-add") == 350

    entries = await _transactions(session_maker, "ledger-add")
    assert [entry.amount for entry in entries] == [250, 100]
    assert entries[0].balance_after == 350
    assert all(entry.type == "purchase" for entry in entries)


@pytest.mark.asyncio
async def test_add_credits_rejects_non_positive_amount(session_maker, seed_user):
    await seed_user("ledger-zero")
    with pytest.raises(InvalidAmountError):
        await _fund(session_maker, "ledger-zero", 0)
    assert await _transactions(session_maker, "ledger-zero") == []


@pytest.mark.asyncio
async def test_add_credits_rejects_unknown_type(session_maker, seed_user):
    await seed_user("ledger-type")
    async with session_maker() as session:
        with pytest.raises(ValueError):
            await ledger.add_credits(
                "ledger-type",
                session,
                amount=10,
                transaction_type="gift",
                description="nope",
            )


@pytest.mark.asyncio
async def test_unknown_user_is_not_found(session_maker):
    with pytest.raises(NotFoundError):
        await _fund(session_maker, "ghost", 10)
    with pytest.raises(NotFoundError):
        await _balance(session_maker, "ghost")


@pytest.mark.asyncio
async def test_replayed_reference_grants_once(session_maker, seed_user):
    await seed_user("ledger-replay")
    first = await _fund(session_maker, "ledger-replay", 110, reference_id="payment:abc")
    replay = await _fund(session_maker, "ledger-replay", 110, reference_id="payment:abc")

    assert first.applied is True
    assert replay.applied is False
    assert replay.transaction_id == first.transaction_id
    assert replay.balance_after == 110
    assert len(await _transactions(session_maker, "ledger-replay")) == 1


@pytest.mark.asyncio
async def test_consume_credits_charges_feature_cost(session_maker, seed_user):
    await seed_user("ledger-consume")
    await _fund(session_maker, "ledger-consume", 20)

    async with session_maker() as session:
        result = await ledger.consume_credits("ledger-consume", session, feature_type="imageGeneration", quantity=2)

    assert result.ok is True
    assert result.charged == 10
    assert result.balance_before == 20
    assert result.balance_after == 10

    latest = (await _transactions(session_maker, "ledger-consume"))[0]
    assert latest.type == "used"
    assert latest.amount == -10
    assert latest.reference_id.startswith("imageGeneration_")
    assert latest.description == "imageGeneration usage (2x)"


@pytest.mark.asyncio
async def test_consume_credits_declines_without_touching_balance(session_maker, seed_user):
    await seed_user("ledger-short")
    await _fund(session_maker, "ledger-short", 30)

    async with session_maker() as session:
        result = await ledger.consume_credits("ledger-short", session, feature_type="video")

    assert result.ok is False
    assert result.required == 50
    assert result.available == 30
    assert result.message == (
        "Insufficient credits. Required: 50, available: 30. "
        "Upgrade your plan or purchase more credits to continue."
    )
    assert await _balance(session_maker, "ledger-short") == 30
    assert len(await _transactions(session_maker, "ledger-short")) == 1


@pytest.mark.asyncio
async def test_deduct_more_than_balance_raises_and_keeps_balance(session_maker, seed_user):
    await seed_user("ledger-deduct")
    await _fund(session_maker, "ledger-deduct", 10)

    async with session_maker() as session:
        with pytest.raises(InsufficientCreditsError) as exc_info:
            await ledger.deduct_credits("ledger-deduct", session, amount=50)

    assert exc_info.value.status_code == 402
    assert exc_info.value.required == 50
    assert exc_info.value.available == 10
    assert await _balance(session_maker, "ledger-deduct") == 10
    assert len(await _transactions(session_maker, "ledger-deduct")) == 1


@pytest.mark.asyncio
async def test_deduct_exact_balance_reaches_zero(session_maker, seed_user):
    await seed_user("ledger-exact")
    await _fund(session_maker, "ledger-exact", 40)

    async with session_maker() as session:
        result = await ledger.deduct_credits("ledger-exact", session, amount=40, description="Export")

    assert result.balance_after == 0
    latest = (await _transactions(session_maker, "ledger-exact"))[0]
    assert latest.type == "spent"
    assert latest.amount == -40
    assert latest.balance_after == 0


@pytest.mark.asyncio
async def test_deduct_rejects_non_positive_amount(session_maker, seed_user):
    await seed_user("ledger-neg")
    async with session_maker() as session:
        with pytest.raises(InvalidAmountError):
            await ledger.deduct_credits("ledger-neg", session, amount=-5)


@pytest.mark.asyncio
async def test_replayed_debit_reference_charges_once(session_maker, seed_user):
    await seed_user("ledger-debit-replay")
    await _fund(session_maker, "ledger-debit-replay", 100)

    async with session_maker() as session:
        first = await ledger.deduct_credits("ledger-debit-replay", session, amount=30, reference_id="job-1")
    async with session_maker() as session:
        replay = await ledger.deduct_credits("ledger-debit-replay", session, amount=30, reference_id="job-1")

    assert first.replayed is False
    assert replay.replayed is True
    assert replay.transaction_id == first.transaction_id
    assert await _balance(session_maker, "ledger-debit-replay") == 70


@pytest.mark.asyncio
async def test_concurrent_grant_and_consume_are_both_applied(session_maker, seed_user):
    await seed_user("ledger-race")
    await _fund(session_maker, "ledger-race", 200)

    async def grant():
        return await _fund(session_maker, "ledger-race", 100)

    async def consume():
        async with session_maker() as session:
            return await ledger.consume_credits("ledger-race", session, feature_type="video")

    granted, consumed = await asyncio.gather(grant(), consume())

    assert granted.applied is True
    assert consumed.ok is True
    assert await _balance(session_maker, "ledger-race") == 250
    assert len(await _transactions(session_maker, "ledger-race")) == 3


@pytest.mark.asyncio
async def test_concurrent_debits_never_overdraw(session_maker, seed_user):
    await seed_user("ledger-overdraw")
    await _fund(session_maker, "ledger-overdraw", 60)

    async def consume():
        async with session_maker() as session:
            return await ledger.consume_credits("ledger-overdraw", session, feature_type="video")

    results = await asyncio.gather(consume(), consume(), consume())

    assert sorted(result.ok for result in results) == [False, False, True]
    assert await _balance(session_maker, "ledger-overdraw") == 10


@pytest.mark.asyncio
async def test_balance_matches_ledger_sum_after_mixed_activity(session_maker, seed_user):
    await seed_user("ledger-sum")
    await _fund(session_maker, "ledger-sum", 300)
    async with session_maker() as session:
        await ledger.consume_credits("ledger-sum", session, feature_type="thumbnails-pro", quantity=3)
    async with session_maker() as session:
        await ledger.deduct_credits("ledger-sum", session, amount=17)
    async with session_maker() as session:
        await ledger.consume_credits("ledger-sum", session, feature_type="video", quantity=10)

    async with session_maker() as session:
        report = await reconcile_user("ledger-sum", session)

    assert report["balance"] == 300 - 24 - 17
    assert report["ledger_total"] == report["balance"]
    assert report["drift"] == 0


@pytest.mark.asyncio
async def test_debit_types_cannot_be_granted(session_maker, seed_user):
    await seed_user("ledger-grant-debit-type")
    for debit_type in ("used", "spent"):
        async with session_maker() as session:
            with pytest.raises(ValueError):
                await ledger.add_credits(
                    "ledger-grant-debit-type",
                    session,
                    amount=25,
                    transaction_type=debit_type,
                    description="Positive debit row",
                )
    assert await _transactions(session_maker, "ledger-grant-debit-type") == []


@pytest.mark.asyncio
async def test_debit_reusing_grant_reference_is_a_conflict(session_maker, seed_user):
    await seed_user("ledger-ref-clash")
    async with session_maker() as session:
        await ledger.add_credits(
            "ledger-ref-clash",
            session,
            amount=100,
            transaction_type="admin_adjustment",
            description="Goodwill",
            reference_id="ticket-1",
        )

    async with session_maker() as session:
        with pytest.raises(ReferenceConflictError) as exc_info:
            await ledger.deduct_credits(
                "ledger-ref-clash",
                session,
                amount=40,
                reference_id="ticket-1",
                transaction_type="admin_adjustment",
            )

    assert exc_info.value.status_code == 409
    assert await _balance(session_maker, "ledger-ref-clash") == 100
    assert len(await _transactions(session_maker, "ledger-ref-clash")) == 1


@pytest.mark.asyncio
async def test_grant_reusing_reference_of_other_type_is_a_conflict(session_maker, seed_user):
    await seed_user("ledger-ref-type")
    await _fund(session_maker, "ledger-ref-type", 50, reference_id="payment:p9")

    async with session_maker() as session:
        with pytest.raises(ReferenceConflictError):
            await ledger.add_credits(
                "ledger-ref-type",
                session,
                amount=50,
                transaction_type="refund",
                description="Refund",
                reference_id="payment:p9",
            )
    assert await _balance(session_maker, "ledger-ref-type") == 50
