import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker, create_async_engine

from conftest import create_coupon
from database import Base, get_db
from main import app
from services.payments import build_settlement_payload, compute_signature
from services.session_token import create_session_token


TEST_USER_ID = "ledger-router-user"
TEST_AUTH_HEADER = {"Authorization": f"Bearer {create_session_token(TEST_USER_ID)['token']}"}


@pytest_asyncio.fixture
async def integration_env(tmp_path):
    db_path = tmp_path / "ledger_router.db"
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", connect_args={"timeout": 30})
    session_maker = async_sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    async def override_get_db():
        async with session_maker() as session:
            yield session

    app.dependency_overrides[get_db] = override_get_db
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as client:
        yield client, session_maker

    app.dependency_overrides.pop(get_db, None)
    await engine.dispose()


async def _settle(client, intent, gateway_payment_id="pay_router_1", signature=None):
    payload = build_settlement_payload(intent["external_reference"], gateway_payment_id)
    return await client.post(
        "/billing/settle",
        json={
            "intent_id": intent["id"],
            "external_reference": intent["external_reference"],
            "gateway_payment_id": gateway_payment_id,
        },
        headers={"X-Payment-Signature": signature or compute_signature(payload)},
    )


@pytest.mark.asyncio
async def test_usage_reserve_and_refund_flow(integration_env):
    client, _ = integration_env

    balance_resp = await client.get("/billing/balance", headers=TEST_AUTH_HEADER)
    assert balance_resp.status_code == 200
    assert balance_resp.json()["total_available"] == 1000

    reserve_resp = await client.post("/usage/reserve", json={"words": 600}, headers=TEST_AUTH_HEADER)
    assert reserve_resp.status_code == 200
    usage = reserve_resp.json()
    assert usage["from_plan"] == 600
    assert usage["balance"]["plan_remaining"] == 400

    short_resp = await client.post("/usage/reserve", json={"words": 500}, headers=TEST_AUTH_HEADER)
    assert short_resp.status_code == 402
    assert short_resp.json()["detail"]["error"] == "INSUFFICIENT_BALANCE"
    assert short_resp.json()["detail"]["shortfall"] == 100

    refund_body = {"words": 100, "transaction_id": usage["transaction_id"]}
    refund_resp = await client.post("/usage/refund", json=refund_body, headers=TEST_AUTH_HEADER)
    replay_resp = await client.post("/usage/refund", json=refund_body, headers=TEST_AUTH_HEADER)
    assert refund_resp.status_code == 200
    assert replay_resp.json()["already_settled"] is True

    history = (await client.get("/billing/transactions", headers=TEST_AUTH_HEADER)).json()["transactions"]
    assert [entry["reason"] for entry in history].count("refund") == 1


@pytest.mark.asyncio
async def test_subscription_purchase_through_webhook(integration_env):
    client, _ = integration_env

    intent_resp = await client.post(
        "/billing/intents",
        json={"purpose": "subscription", "plan": "pro"},
        headers=TEST_AUTH_HEADER,
    )
    assert intent_resp.status_code == 200
    intent = intent_resp.json()["intent"]
    assert intent["amount"] == 9900

    forged_resp = await _settle(client, intent, signature="ab" * 32)
    assert forged_resp.status_code == 401
    assert forged_resp.json()["detail"]["error"] == "SIGNATURE_INVALID"

    settle_resp = await _settle(client, intent)
    replay_resp = await _settle(client, intent)
    assert settle_resp.status_code == 200
    assert settle_resp.json()["already_settled"] is False
    assert replay_resp.status_code == 200
    assert replay_resp.json()["already_settled"] is True

    status_payload = (await client.get("/subscriptions/status", headers=TEST_AUTH_HEADER)).json()
    assert status_payload["state"] == "active"
    assert status_payload["plan"] == "pro"
    assert status_payload["balance"]["plan_quota_limit"] == 10000

    invoices = (await client.get("/billing/invoices", headers=TEST_AUTH_HEADER)).json()["invoices"]
    assert len(invoices) == 1
    assert invoices[0]["amount"] == 9900

    downgrade_resp = await client.post(
        "/billing/intents",
        json={"purpose": "subscription", "plan": "free"},
        headers=TEST_AUTH_HEADER,
    )
    assert downgrade_resp.status_code == 422
    assert downgrade_resp.json()["detail"]["error"] == "PLAN_NOT_PURCHASABLE"


@pytest.mark.asyncio
async def test_free_grant_endpoint_and_coupon_validation(integration_env):
    client, session_maker = integration_env
    async with session_maker() as db:
        await create_coupon(db, "WELCOME100", max_uses=1, applicable_purpose="subscription")

    quote_resp = await client.post(
        "/coupons/validate",
        json={"code": "welcome100", "purpose": "subscription", "amount": 29900},
        headers=TEST_AUTH_HEADER,
    )
    assert quote_resp.status_code == 200
    assert quote_resp.json()["final_amount"] == 0

    grant_resp = await client.post(
        "/coupons/free-grant",
        json={"code": "WELCOME100", "purpose": "subscription", "plan": "premium"},
        headers=TEST_AUTH_HEADER,
    )
    assert grant_resp.status_code == 200
    assert grant_resp.json()["plan"] == "premium"

    exhausted_resp = await client.post(
        "/coupons/free-grant",
        json={"code": "WELCOME100", "purpose": "subscription", "plan": "premium"},
        headers=TEST_AUTH_HEADER,
    )
    assert exhausted_resp.status_code == 400
    assert exhausted_resp.json()["detail"]["error"] == "COUPON_EXHAUSTED"


@pytest.mark.asyncio
async def test_auth_is_required_and_scoped(integration_env):
    client, _ = integration_env

    anonymous = await client.get("/billing/balance")
    assert anonymous.status_code == 401

    cross_user = await client.get("/billing/balance?user_id=someone-else", headers=TEST_AUTH_HEADER)
    assert cross_user.status_code == 403

    plans = await client.get("/plans")
    assert plans.status_code == 200
    assert [plan["tier"] for plan in plans.json()["plans"]] == ["free", "pro", "premium"]
