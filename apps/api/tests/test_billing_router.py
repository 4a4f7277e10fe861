import json

import pytest

from config import settings
from services import ledger
from services.payment_webhook import compute_signature, verify_signature

WEBHOOK_SECRET = "whsec_test_0123456789abcdef"


@pytest.fixture
def billing_enabled(monkeypatch):
    monkeypatch.setattr(settings, "BILLING_ENABLED", True)
    monkeypatch.setattr(settings, "PAYMENT_WEBHOOK_SECRET", WEBHOOK_SECRET)


def _signed(event: dict):
    body = json.dumps(event).encode("utf-8")
    return body, {"X-Payment-Signature": compute_signature(body, WEBHOOK_SECRET), "Content-Type": "application/json"}


def test_verify_signature():
    body = b'{"payment_id": "p1"}'
    signature = compute_signature(body, WEBHOOK_SECRET)
    assert verify_signature(body, signature, WEBHOOK_SECRET) is True
    assert verify_signature(body, signature.upper(), WEBHOOK_SECRET) is True
    assert verify_signature(body + b" ", signature, WEBHOOK_SECRET) is False
    assert verify_signature(body, None, WEBHOOK_SECRET) is False


@pytest.mark.asyncio
async def test_plan_and_package_catalog(api_client):
    plans = await api_client.get("/billing/plans")
    packages = await api_client.get("/billing/packages")

    assert [plan["id"] for plan in plans.json()["plans"]] == ["free", "starter", "pro", "business"]
    assert plans.json()["plans"][0]["yearly_savings"] == 0
    assert packages.json()["packages"][1]["total_credits"] == 110


@pytest.mark.asyncio
async def test_webhook_rejected_while_billing_disabled(api_client, monkeypatch):
    monkeypatch.setattr(settings, "BILLING_ENABLED", False)
    response = await api_client.post("/billing/webhook", content=b"{}")
    assert response.status_code == 503


@pytest.mark.asyncio
async def test_webhook_rejects_bad_signature(api_client, seed_user, billing_enabled):
    await seed_user("bill-bad-sig")
    body, _ = _signed({"payment_id": "p1", "user_id": "bill-bad-sig", "purpose": "credits", "package_id": "credits-50"})
    response = await api_client.post(
        "/billing/webhook",
        content=body,
        headers={"X-Payment-Signature": "deadbeef", "Content-Type": "application/json"},
    )
    assert response.status_code == 401


@pytest.mark.asyncio
async def test_credit_purchase_webhook_is_idempotent(api_client, session_maker, seed_user, billing_enabled):
    await seed_user("bill-purchase")
    body, headers = _signed(
        {"payment_id": "pay_100", "user_id": "bill-purchase", "purpose": "credits", "package_id": "credits-100"}
    )

    first = await api_client.post("/billing/webhook", content=body, headers=headers)
    replay = await api_client.post("/billing/webhook", content=body, headers=headers)

    assert first.status_code == 200
    assert first.json()["applied"] is True
    assert first.json()["balance_after"] == 110
    assert replay.status_code == 200
    assert replay.json()["applied"] is False

    async with session_maker() as session:
        assert await ledger.get_balance("bill-purchase", session) == 110
        entries = await ledger.get_transactions("bill-purchase", session)
    assert [(entry.type, entry.reference_id) for entry in entries] == [("purchase", "payment:pay_100")]


@pytest.mark.asyncio
async def test_subscription_webhook_upgrades_additively(api_client, session_maker, seed_user, billing_enabled, auth_headers):
    await seed_user("bill-sub")
    async with session_maker() as session:
        await ledger.add_credits(
            "bill-sub",
            session,
            amount=1100,
            transaction_type="purchase",
            description="Existing balance",
        )
    body, headers = _signed({"payment_id": "pay_biz", "user_id": "bill-sub", "purpose": "subscription", "plan_id": "business"})

    response = await api_client.post("/billing/webhook", content=body, headers=headers)

    assert response.status_code == 200
    assert response.json()["balance_after"] == 3100
    status = await api_client.get("/billing/subscription", headers=auth_headers("bill-sub"))
    assert status.json()["plan"] == "business"
    assert status.json()["credits"] == 3100


@pytest.mark.asyncio
async def test_webhook_unknown_package_is_400(api_client, seed_user, billing_enabled):
    await seed_user("bill-unknown")
    body, headers = _signed({"payment_id": "pay_x", "user_id": "bill-unknown", "purpose": "credits", "package_id": "nope"})
    response = await api_client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 400


@pytest.mark.asyncio
async def test_webhook_missing_plan_is_422(api_client, seed_user, billing_enabled):
    await seed_user("bill-noplan")
    body, headers = _signed({"payment_id": "pay_y", "user_id": "bill-noplan", "purpose": "subscription"})
    response = await api_client.post("/billing/webhook", content=body, headers=headers)
    assert response.status_code == 422


@pytest.mark.asyncio
async def test_cancel_subscription_keeps_credits(api_client, session_maker, seed_user, auth_headers):
    await seed_user("bill-cancel", plan="pro")
    async with session_maker() as session:
        await ledger.add_credits(
            "bill-cancel",
            session,
            amount=400,
            transaction_type="subscription_upgrade",
            description="Pro plan",
        )

    response = await api_client.post("/billing/subscription/cancel", headers=auth_headers("bill-cancel"))

    assert response.status_code == 200
    assert response.json()["plan"] == "free"
    assert response.json()["status"] == "canceled"
    assert response.json()["credits"] == 400


@pytest.mark.asyncio
async def test_feature_access_for_callers_plan(api_client, seed_user, auth_headers):
    await seed_user("bill-free")
    await seed_user("bill-business", plan="business")

    locked = await api_client.get("/billing/features/legal-assistant", headers=auth_headers("bill-free"))
    unlocked = await api_client.get("/billing/features/legal-assistant", headers=auth_headers("bill-business"))
    unknown = await api_client.get("/billing/features/time-travel", headers=auth_headers("bill-business"))

    assert locked.json() == {
        "feature_id": "legal-assistant",
        "plan": "free",
        "allowed": False,
        "limit": None,
        "upgrade": "business",
    }
    assert unlocked.json()["allowed"] is True
    assert unlocked.json()["limit"] == 30
    assert unknown.json()["allowed"] is False
    assert unknown.json()["upgrade"] == "starter"


@pytest.mark.asyncio
async def test_feature_access_requires_session(api_client):
    response = await api_client.get("/billing/features/dashboard")
    assert response.status_code == 401
