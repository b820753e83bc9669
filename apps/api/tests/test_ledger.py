import asyncio
import random

import pytest

from conftest import create_account
from services.ledger import AccountLedger
from services.ledger_result import LedgerErrorKind
from services.subscriptions import SubscriptionLifecycleManager


@pytest.mark.asyncio
async def test_usage_spills_into_purchased_credit(db):
    account = await create_account(db, plan_quota_limit=10000, plan_quota_used=9500, purchased_credit=200)

    result = await AccountLedger(db).reserve_and_commit(account.id, 600)

    assert result.ok
    assert result.data["from_plan"] == 500
    assert result.data["from_credit"] == 100
    refreshed = await AccountLedger(db).get_account(account.id)
    assert refreshed.plan_quota_used == 10000
    assert refreshed.purchased_credit == 100
    assert refreshed.version == 1


@pytest.mark.asyncio
async def test_insufficient_balance_leaves_account_untouched(db):
    account = await create_account(db, plan_quota_used=1000)
    ledger = AccountLedger(db)

    result = await ledger.reserve_and_commit(account.id, 1)

    assert not result.ok
    assert result.kind is LedgerErrorKind.INSUFFICIENT_BALANCE
    assert result.data["shortfall"] == 1
    refreshed = await ledger.get_account(account.id)
    assert (refreshed.plan_quota_used, refreshed.purchased_credit, refreshed.version) == (1000, 0, 0)
    assert await ledger.recent_transactions(account.id) == []


@pytest.mark.asyncio
async def test_refund_restores_credit_first_and_only_once(db):
    account = await create_account(db, plan_quota_limit=10000, plan_quota_used=9500, purchased_credit=200)
    ledger = AccountLedger(db)
    usage = await ledger.reserve_and_commit(account.id, 600)

    first = await ledger.refund(account.id, 150, usage.data["transaction_id"])
    second = await ledger.refund(account.id, 150, usage.data["transaction_id"])

    assert first.ok and not first.already_settled
    assert first.data["to_credit"] == 100
    assert first.data["to_plan"] == 50
    assert second.already_settled
    refreshed = await ledger.get_account(account.id)
    assert refreshed.purchased_credit == 200
    assert refreshed.plan_quota_used == 9950


@pytest.mark.asyncio
async def test_refund_requires_a_usage_entry_of_the_same_account(db):
    owner = await create_account(db)
    other = await create_account(db)
    ledger = AccountLedger(db)
    usage = await ledger.reserve_and_commit(owner.id, 10)

    result = await ledger.refund(other.id, 10, usage.data["transaction_id"])
    too_much = await ledger.refund(owner.id, 11, usage.data["transaction_id"])

    assert result.kind is LedgerErrorKind.UNKNOWN_TRANSACTION
    assert too_much.kind is LedgerErrorKind.INVALID_AMOUNT


@pytest.mark.asyncio
async def test_refund_after_renewal_restores_nothing_and_keeps_slot_open(db):
    account = await create_account(db, plan_quota_limit=1000)
    ledger = AccountLedger(db)
    usage = await ledger.reserve_and_commit(account.id, 300)
    await SubscriptionLifecycleManager(db, ledger).renew(account.id, external_reference="renewal:manual")

    first = await ledger.refund(account.id, 300, usage.data["transaction_id"])

    assert first.ok and not first.already_settled
    assert first.data["refunded"] == 0
    assert first.data["plan_clamped"] == 300
    assert "transaction_id" not in first.data
    assert await ledger.find_by_reference(f"refund:{usage.data['transaction_id']}") is None
    assert (await ledger.get_account(account.id)).plan_quota_used == 0


@pytest.mark.asyncio
async def test_credit_is_applied_once_per_reference(db):
    account = await create_account(db)
    ledger = AccountLedger(db)

    first = await ledger.credit(account.id, "credit_purchase", 0, 5000, "order_abc", amount_paid=15500)
    replay = await ledger.credit(account.id, "credit_purchase", 0, 5000, "order_abc", amount_paid=15500)

    assert first.ok and not first.already_settled
    assert replay.already_settled
    assert replay.data["transaction_id"] == first.data["transaction_id"]
    assert (await ledger.get_account(account.id)).purchased_credit == 5000


@pytest.mark.asyncio
async def test_zero_amount_credit_without_coupon_is_rejected(db):
    account = await create_account(db)
    ledger = AccountLedger(db)

    result = await ledger.credit(account.id, "credit_purchase", 0, 1000, "grant:1", amount_paid=0)

    assert result.kind is LedgerErrorKind.FREE_GRANT_WITHOUT_COUPON
    assert (await ledger.get_account(account.id)).purchased_credit == 0


@pytest.mark.asyncio
async def test_balance_invariants_hold_across_random_operations(db):
    account = await create_account(db, plan_quota_limit=10000, purchased_credit=3000)
    ledger = AccountLedger(db)
    rng = random.Random(7)
    usage_ids = []

    for step in range(60):
        roll = rng.random()
        if roll < 0.6:
            result = await ledger.reserve_and_commit(account.id, rng.randint(0, 900))
            if result.ok and result.data.get("transaction_id"):
                usage_ids.append((result.data["transaction_id"], result.data["charged"]))
        elif roll < 0.8 and usage_ids:
            transaction_id, charged = rng.choice(usage_ids)
            await ledger.refund(account.id, rng.randint(0, charged), transaction_id)
        else:
            await ledger.credit(account.id, "credit_purchase", 0, rng.randint(1, 400), f"order_{step}", amount_paid=100)

        current = await ledger.get_account(account.id)
        assert 0 <= current.plan_quota_used <= current.plan_quota_limit
        assert current.purchased_credit >= 0


@pytest.mark.asyncio
async def test_concurrent_reserves_never_overdraw(session_maker):
    async with session_maker() as db:
        account = await create_account(db, plan_quota_limit=1000, plan_quota_used=0, purchased_credit=0)

    async def reserve():
        async with session_maker() as session:
            return await AccountLedger(session, max_retries=50).reserve_and_commit(account.id, 300)

    results = await asyncio.gather(*(reserve() for _ in range(5)))

    succeeded = [result for result in results if result.ok]
    assert len(succeeded) == 3
    assert all(result.kind is LedgerErrorKind.INSUFFICIENT_BALANCE for result in results if not result.ok)
    async with session_maker() as db:
        current = await AccountLedger(db).get_account(account.id)
        assert current.plan_quota_used == 900
        assert len(await AccountLedger(db).recent_transactions(account.id)) == 3


@pytest.mark.asyncio
async def test_open_account_is_idempotent(db):
    account = await create_account(db, user_id="repeat-user")
    again = await AccountLedger(db).open_account("repeat-user")
    assert again.id == account.id
    assert again.plan == "free"
    assert again.plan_quota_limit == 1000
