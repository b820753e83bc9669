import asyncio

import pytest
from sqlalchemy.future import select

from conftest import create_account, create_coupon
from models.invoice import Invoice
from services.coupons import CouponRedeemer
from services.ledger import AccountLedger
from services.ledger_result import LedgerErrorKind, LedgerResult
from services.payments import (
    PaymentReconciler,
    build_settlement_payload,
    compute_signature,
    parse_settlement_payload,
    verify_signature,
)
from services.subscriptions import SubscriptionLifecycleManager


def _signed(intent, gateway_payment_id="pay_001"):
    payload = build_settlement_payload(intent["external_reference"], gateway_payment_id)
    return compute_signature(payload), payload


async def _pro_account(db, **extra):
    return await create_account(db, plan="pro", plan_quota_limit=10000, max_purchasable_credit=36000, **extra)


def test_signature_round_trip_and_tamper_detection():
    signature = compute_signature("order_1|pay_1", "s3cret-signing-key")
    assert len(signature) == 64
    assert verify_signature("order_1|pay_1", signature, "s3cret-signing-key")
    assert not verify_signature("order_1|pay_2", signature, "s3cret-signing-key")
    assert not verify_signature("order_1|pay_1", "not-hex", "s3cret-signing-key")
    assert parse_settlement_payload("order_1|pay_1") == ("order_1", "pay_1")
    assert parse_settlement_payload("order_1") is None


@pytest.mark.asyncio
async def test_create_intent_quotes_server_side_price(db):
    account = await _pro_account(db)
    reconciler = PaymentReconciler(db)

    created = await reconciler.create_intent(account.id, "credit_purchase", words=2000)
    mismatch = await reconciler.create_intent(account.id, "credit_purchase", amount=1, words=2000)
    capped = await reconciler.create_intent(account.id, "credit_purchase", words=40000)
    currency = await reconciler.create_intent(account.id, "subscription", plan="premium", currency="USD")

    assert created.ok
    assert created.data["intent"]["amount"] == 6200
    assert created.data["intent"]["status"] == "pending"
    assert mismatch.kind is LedgerErrorKind.INVALID_AMOUNT
    assert mismatch.data["quoted_amount"] == 6200
    assert capped.kind is LedgerErrorKind.CREDIT_CAP_EXCEEDED
    assert currency.kind is LedgerErrorKind.UNSUPPORTED_CURRENCY


@pytest.mark.asyncio
async def test_settle_twice_credits_exactly_once(db):
    account = await _pro_account(db)
    reconciler = PaymentReconciler(db)
    intent = (await reconciler.create_intent(account.id, "credit_purchase", words=5000)).data["intent"]
    signature, payload = _signed(intent)

    first = await reconciler.verify_and_settle(intent["id"], signature, payload)
    second = await reconciler.verify_and_settle(intent["id"], signature, payload)

    assert first.ok and not first.already_settled
    assert second.already_settled
    assert first.data["intent"]["status"] == "completed"
    assert first.data["intent"]["settled_transaction_id"] == first.data["transaction_id"]
    assert (await AccountLedger(db).get_account(account.id)).purchased_credit == 5000
    invoices = (await db.execute(select(Invoice).where(Invoice.account_id == account.id))).scalars().all()
    assert len(invoices) == 1
    assert invoices[0].amount == 15500


@pytest.mark.asyncio
async def test_invalid_signature_and_unknown_intent(db):
    account = await _pro_account(db)
    reconciler = PaymentReconciler(db)
    intent = (await reconciler.create_intent(account.id, "credit_purchase", words=1000)).data["intent"]
    _, payload = _signed(intent)

    forged = await reconciler.verify_and_settle(intent["id"], "00" * 32, payload)
    other_reference = build_settlement_payload("order_other", "pay_001")
    replayed = await reconciler.verify_and_settle(intent["id"], compute_signature(other_reference), other_reference)
    unknown = await reconciler.verify_and_settle("missing", "00" * 32, payload)

    assert forged.kind is LedgerErrorKind.SIGNATURE_INVALID
    assert replayed.kind is LedgerErrorKind.SIGNATURE_INVALID
    assert unknown.kind is LedgerErrorKind.UNKNOWN_INTENT
    assert (await AccountLedger(db).get_account(account.id)).purchased_credit == 0
    assert (await reconciler.get_intent(intent["id"])).status == "pending"


@pytest.mark.asyncio
async def test_failed_intent_cannot_be_settled_and_is_flagged(db):
    account = await _pro_account(db)
    reconciler = PaymentReconciler(db)
    intent = (await reconciler.create_intent(account.id, "credit_purchase", words=1000)).data["intent"]

    failed = await reconciler.mark_failed(intent["id"], "card_declined")
    again = await reconciler.mark_failed(intent["id"], "card_declined")
    signature, payload = _signed(intent)
    late = await reconciler.verify_and_settle(intent["id"], signature, payload)

    assert failed.ok and failed.data["intent"]["status"] == "failed"
    assert again.already_settled
    assert late.kind is LedgerErrorKind.INTENT_CLOSED
    assert late.data["intent"]["needs_reconciliation"] is True
    assert (await AccountLedger(db).get_account(account.id)).purchased_credit == 0


@pytest.mark.asyncio
async def test_ledger_failure_after_payment_becomes_reconciliation_gap(db, monkeypatch, queued_reconciliations):
    account = await _pro_account(db)
    reconciler = PaymentReconciler(db)
    intent = (await reconciler.create_intent(account.id, "credit_purchase", words=3000)).data["intent"]
    signature, payload = _signed(intent)

    real_credit = AccountLedger.credit

    async def broken_credit(self, *args, **kwargs):
        return LedgerResult.failure(LedgerErrorKind.CONCURRENT_MODIFICATION, "simulated contention")

    monkeypatch.setattr(AccountLedger, "credit", broken_credit)
    gap = await reconciler.verify_and_settle(intent["id"], signature, payload)

    assert gap.kind is LedgerErrorKind.RECONCILIATION_GAP
    assert gap.data["intent"]["status"] == "completed"
    assert gap.data["intent"]["needs_reconciliation"] is True
    assert queued_reconciliations == [intent["id"]]
    assert [item["id"] for item in await reconciler.list_reconciliation_gaps()] == [intent["id"]]

    monkeypatch.setattr(AccountLedger, "credit", real_credit)
    retried = await reconciler.retry_reconciliation(intent["id"])

    assert retried.ok
    assert retried.data["intent"]["needs_reconciliation"] is False
    assert (await AccountLedger(db).get_account(account.id)).purchased_credit == 3000
    assert await reconciler.list_reconciliation_gaps() == []


@pytest.mark.asyncio
async def test_concurrent_settlements_credit_once(session_maker):
    async with session_maker() as db:
        account = await _pro_account(db)
        intent = (await PaymentReconciler(db).create_intent(account.id, "credit_purchase", words=2000)).data["intent"]
    signature, payload = _signed(intent)

    async def settle():
        async with session_maker() as session:
            return await PaymentReconciler(session).verify_and_settle(intent["id"], signature, payload)

    results = await asyncio.gather(*(settle() for _ in range(5)))

    assert all(result.ok for result in results)
    assert sum(1 for result in results if not result.already_settled) == 1
    async with session_maker() as db:
        assert (await AccountLedger(db).get_account(account.id)).purchased_credit == 2000


@pytest.mark.asyncio
async def test_subscription_settlement_activates_plan_and_redeems_coupon(db):
    account = await create_account(db)
    await create_coupon(db, "LAUNCH20", discount_value=20, max_uses=5, applicable_purpose="subscription")
    reconciler = PaymentReconciler(db)
    intent = (
        await reconciler.create_intent(account.id, "subscription", plan="premium", coupon_code="launch20")
    ).data["intent"]
    signature, payload = _signed(intent)

    settled = await reconciler.verify_and_settle(intent["id"], signature, payload)

    assert intent["amount"] == 23920
    assert intent["discount_amount"] == 5980
    assert settled.ok
    refreshed = await AccountLedger(db).get_account(account.id)
    assert (refreshed.plan, refreshed.plan_quota_limit) == ("premium", 50000)
    coupon = await CouponRedeemer(db).get_coupon("LAUNCH20")
    assert coupon.used_count == 1


@pytest.mark.asyncio
async def test_full_discount_intent_is_redirected_to_free_grant(db):
    account = await create_account(db)
    await create_coupon(db, "WELCOME100", max_uses=1, applicable_purpose="subscription")

    result = await PaymentReconciler(db).create_intent(
        account.id, "subscription", plan="premium", coupon_code="WELCOME100"
    )

    assert result.kind is LedgerErrorKind.INVALID_AMOUNT
    assert result.data["quoted_amount"] == 0


@pytest.mark.asyncio
async def test_single_use_coupon_is_held_by_one_open_intent(db):
    first_account = await _pro_account(db)
    second_account = await _pro_account(db)
    await create_coupon(db, "ONCE20", discount_value=20, max_uses=1)
    reconciler = PaymentReconciler(db)

    first = await reconciler.create_intent(first_account.id, "credit_purchase", words=2000, coupon_code="once20")
    second = await reconciler.create_intent(second_account.id, "credit_purchase", words=2000, coupon_code="ONCE20")

    assert first.ok
    assert first.data["intent"]["coupon_redemption_id"]
    assert second.kind is LedgerErrorKind.COUPON_EXHAUSTED
    assert (await CouponRedeemer(db).get_coupon("ONCE20")).used_count == 1

    failed = await reconciler.mark_failed(first.data["intent"]["id"], "card_declined")
    assert failed.ok
    assert (await CouponRedeemer(db).get_coupon("ONCE20")).used_count == 0

    retried = await reconciler.create_intent(second_account.id, "credit_purchase", words=2000, coupon_code="ONCE20")
    assert retried.ok
    assert retried.data["intent"]["discount_amount"] == 1240
    signature, payload = _signed(retried.data["intent"])
    assert (await reconciler.verify_and_settle(retried.data["intent"]["id"], signature, payload)).ok
    assert (await CouponRedeemer(db).get_coupon("ONCE20")).used_count == 1


@pytest.mark.asyncio
async def test_settlement_refused_by_a_higher_plan_waits_for_manual_review(db, queued_reconciliations):
    account = await create_account(db)
    reconciler = PaymentReconciler(db)
    intent = (await reconciler.create_intent(account.id, "subscription", plan="pro")).data["intent"]
    await SubscriptionLifecycleManager(db).activate(account.id, "premium", external_reference="order_elsewhere")
    signature, payload = _signed(intent)

    result = await reconciler.verify_and_settle(intent["id"], signature, payload)

    assert result.kind is LedgerErrorKind.RECONCILIATION_GAP
    assert result.data["cause"] == "DOWNGRADE_BLOCKED"
    assert result.data["manual_review"] is True
    assert result.data["intent"]["needs_reconciliation"] is True
    assert result.data["intent"]["reconciliation_error"].startswith("manual_review")
    assert queued_reconciliations == []
    assert (await AccountLedger(db).get_account(account.id)).plan == "premium"
