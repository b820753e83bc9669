"""Payment intents, gateway signature verification and settlement.

Money collection and balance changes are two separate commits: an intent is
first moved ``pending -> completed`` and only then applied to the ledger
under the intent's ``external_reference``. When the second step fails the
intent is flagged ``needs_reconciliation`` and retried; it is never lost
silently.
"""

from __future__ import annotations

import asyncio
import logging
import uuid
from typing import Any, Dict, List, Optional, Tuple, Union

from cryptography.exceptions import InvalidSignature
from cryptography.hazmat.primitives import hashes, hmac
from sqlalchemy import update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from database import async_session_maker
from models.payment_intent import PaymentIntent
from services.coupons import CouponRedeemer
from services.invoices import InvoiceEmitter
from services.ledger import AccountLedger, as_utc, utcnow
from services.ledger_result import LedgerErrorKind, LedgerResult
from services.plan_catalog import (
    PAYMENT_PURPOSES,
    PURPOSE_SUBSCRIPTION,
    credit_price,
    resolve_tier,
    subscription_price,
)
from services.reconciliation_queue import enqueue_reconciliation_retry
from services.subscriptions import SubscriptionLifecycleManager, SubscriptionState, subscription_state


logger = logging.getLogger(__name__)

INTENT_PENDING = "pending"
INTENT_COMPLETED = "completed"
INTENT_FAILED = "failed"

# Settlement outcomes that a retry cannot change; these wait for manual review.
MANUAL_REVIEW_KINDS = frozenset(
    {
        LedgerErrorKind.DOWNGRADE_BLOCKED,
        LedgerErrorKind.PLAN_UNKNOWN,
        LedgerErrorKind.PLAN_NOT_PURCHASABLE,
        LedgerErrorKind.ACCOUNT_NOT_FOUND,
    }
)

SETTLEMENT_SEPARATOR = "|"


def _to_bytes(value: Union[str, bytes]) -> bytes:
    return value if isinstance(value, bytes) else str(value).encode("utf-8")


def compute_signature(raw_payload: Union[str, bytes], secret: Optional[str] = None) -> str:
    """HMAC-SHA256 of the payload as lowercase hex."""
    mac = hmac.HMAC(_to_bytes(secret or settings.PAYMENT_WEBHOOK_SECRET), hashes.SHA256())
    mac.update(_to_bytes(raw_payload))
    return mac.finalize().hex()


def verify_signature(raw_payload: Union[str, bytes], signature: str, secret: Optional[str] = None) -> bool:
    try:
        expected = bytes.fromhex(str(signature or "").strip())
    except ValueError:
        return False
    mac = hmac.HMAC(_to_bytes(secret or settings.PAYMENT_WEBHOOK_SECRET), hashes.SHA256())
    mac.update(_to_bytes(raw_payload))
    try:
        mac.verify(expected)
    except InvalidSignature:
        return False
    return True


def build_settlement_payload(external_reference: str, gateway_payment_id: str) -> str:
    return f"{external_reference}{SETTLEMENT_SEPARATOR}{gateway_payment_id}"


def parse_settlement_payload(raw_payload: Union[str, bytes]) -> Optional[Tuple[str, str]]:
    """Split ``<external_reference>|<gateway_payment_id>``."""
    text = raw_payload.decode("utf-8", errors="replace") if isinstance(raw_payload, bytes) else str(raw_payload)
    reference, sep, payment_id = text.partition(SETTLEMENT_SEPARATOR)
    if not sep or not reference.strip() or not payment_id.strip():
        return None
    return reference.strip(), payment_id.strip()


def intent_to_dict(intent: PaymentIntent) -> Dict[str, Any]:
    created_at = as_utc(intent.created_at)
    completed_at = as_utc(intent.completed_at)
    return {
        "id": intent.id,
        "account_id": intent.account_id,
        "amount": intent.amount,
        "currency": intent.currency,
        "purpose": intent.purpose,
        "status": intent.status,
        "external_reference": intent.external_reference,
        "plan": intent.plan,
        "words": intent.words,
        "coupon_code": intent.coupon_code,
        "coupon_redemption_id": intent.coupon_redemption_id,
        "original_amount": intent.original_amount,
        "discount_amount": intent.discount_amount,
        "gateway_payment_id": intent.gateway_payment_id,
        "failure_reason": intent.failure_reason,
        "settled_transaction_id": intent.settled_transaction_id,
        "needs_reconciliation": bool(intent.needs_reconciliation),
        "reconciliation_error": intent.reconciliation_error,
        "created_at": created_at.isoformat() if created_at else None,
        "completed_at": completed_at.isoformat() if completed_at else None,
    }


class PaymentReconciler:
    """Creates, verifies and settles payment intents for one session."""

    def __init__(self, db: AsyncSession, *, ledger: Optional[AccountLedger] = None, secret: Optional[str] = None):
        self.db = db
        self.ledger = ledger or AccountLedger(db)
        self.lifecycle = SubscriptionLifecycleManager(db, self.ledger)
        self.coupons = CouponRedeemer(db, self.ledger)
        self.invoices = InvoiceEmitter(db)
        self.secret = secret or settings.PAYMENT_WEBHOOK_SECRET

    async def get_intent(self, intent_id: str) -> Optional[PaymentIntent]:
        result = await self.db.execute(
            select(PaymentIntent).where(PaymentIntent.id == intent_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def create_intent(
        self,
        account_id: str,
        purpose: str,
        amount: Optional[int] = None,
        currency: Optional[str] = None,
        *,
        plan: Optional[str] = None,
        words: Optional[int] = None,
        coupon_code: Optional[str] = None,
    ) -> LedgerResult:
        """Record a pending payment at the server-side price.

        ``amount``, when given, must equal the quoted price after discount.
        """
        if purpose not in PAYMENT_PURPOSES:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, f"Unknown payment purpose: {purpose}")
        currency = str(currency or settings.DEFAULT_CURRENCY).upper()

        account = await self.ledger.get_account(account_id)
        if account is None:
            return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")

        tier = None
        if purpose == PURPOSE_SUBSCRIPTION:
            tier = resolve_tier(plan)
            if tier is None:
                return LedgerResult.failure(LedgerErrorKind.PLAN_UNKNOWN, f"Unknown plan: {plan}")
            if not tier.is_paid:
                return LedgerResult.failure(LedgerErrorKind.PLAN_NOT_PURCHASABLE, "The free plan cannot be purchased")
            current = resolve_tier(account.plan)
            if subscription_state(account) is SubscriptionState.ACTIVE and current and tier.rank < current.rank:
                return LedgerResult.failure(
                    LedgerErrorKind.DOWNGRADE_BLOCKED,
                    f"Cannot switch from {current.value} to {tier.value} before the current cycle ends.",
                )
            price = subscription_price(tier, currency)
            words = None
        else:
            words = int(words or 0)
            if words <= 0:
                return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "words must be > 0")
            if account.purchased_credit + words > account.max_purchasable_credit:
                return LedgerResult.failure(
                    LedgerErrorKind.CREDIT_CAP_EXCEEDED,
                    "Purchase would exceed the credit cap for the current plan.",
                    purchasable_remaining=max(0, account.max_purchasable_credit - account.purchased_credit),
                )
            price = credit_price(words, currency)

        if price is None:
            return LedgerResult.failure(LedgerErrorKind.UNSUPPORTED_CURRENCY, f"Unsupported currency: {currency}")

        discount = 0
        if coupon_code:
            quote = await self.coupons.validate(coupon_code, purpose, price)
            if not quote.valid:
                return quote.as_result()
            discount = quote.discount

        final_amount = price - discount
        if final_amount <= 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_AMOUNT,
                "The coupon covers the full price; use the free grant instead.",
                quoted_amount=0,
            )
        if amount is not None and int(amount) != final_amount:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_AMOUNT,
                f"Amount {amount} does not match the quoted price {final_amount}.",
                quoted_amount=final_amount,
            )

        normalized_code = None
        redemption_id = None
        if coupon_code:
            # Each open intent holds one use of its coupon until it fails.
            redeemed = await self.coupons.redeem(
                coupon_code,
                account_id=account_id,
                purpose=purpose,
                original_amount=price,
                discount_amount=discount,
            )
            if not redeemed.ok:
                return redeemed
            normalized_code = redeemed.data["coupon_code"]
            redemption_id = redeemed.data["redemption_id"]

        intent = PaymentIntent(
            id=str(uuid.uuid4()),
            account_id=account_id,
            amount=final_amount,
            currency=currency,
            purpose=purpose,
            status=INTENT_PENDING,
            external_reference=f"order_{uuid.uuid4().hex[:20]}",
            plan=tier.value if tier is not None else None,
            words=words,
            coupon_code=normalized_code,
            coupon_redemption_id=redemption_id,
            original_amount=price,
            discount_amount=discount,
            needs_reconciliation=False,
            created_at=utcnow(),
        )
        self.db.add(intent)
        try:
            await self.db.commit()
        except SQLAlchemyError:
            await self.db.rollback()
            if redemption_id:
                await self.coupons.release(redemption_id)
            raise
        logger.info(
            "payment_intent_created intent=%s account=%s purpose=%s amount=%s %s",
            intent.id,
            account_id,
            purpose,
            final_amount,
            currency,
        )
        return LedgerResult.success(intent=intent_to_dict(intent))

    async def verify_and_settle(
        self,
        intent_id: str,
        signature: str,
        raw_payload: Union[str, bytes],
    ) -> LedgerResult:
        """Verify a gateway confirmation and apply its effect exactly once."""
        intent = await self.get_intent(intent_id)
        if intent is None:
            return LedgerResult.failure(LedgerErrorKind.UNKNOWN_INTENT, "Payment intent not found")

        if not verify_signature(raw_payload, signature, self.secret):
            logger.warning("settlement_signature_invalid intent=%s", intent_id)
            return LedgerResult.failure(LedgerErrorKind.SIGNATURE_INVALID, "Invalid payment signature")

        parsed = parse_settlement_payload(raw_payload)
        if parsed is None or parsed[0] != intent.external_reference:
            logger.warning("settlement_reference_mismatch intent=%s", intent_id)
            return LedgerResult.failure(
                LedgerErrorKind.SIGNATURE_INVALID,
                "Signed payload does not reference this payment",
            )
        gateway_payment_id = parsed[1]

        if intent.status == INTENT_FAILED:
            await self._flag_gap(intent_id, "Verified settlement received for a failed payment")
            logger.error(
                "settlement_for_failed_intent intent=%s gateway_payment=%s",
                intent_id,
                gateway_payment_id,
            )
            intent = await self.get_intent(intent_id)
            return LedgerResult.failure(
                LedgerErrorKind.INTENT_CLOSED,
                "Payment was already marked failed; flagged for manual review.",
                intent=intent_to_dict(intent),
            )

        if intent.status == INTENT_COMPLETED:
            if intent.settled_transaction_id:
                return LedgerResult.settled(
                    intent=intent_to_dict(intent),
                    transaction_id=intent.settled_transaction_id,
                )
            # Redelivery of a settlement whose ledger write has not landed yet.
            return await self._apply_settlement(intent_id)

        result = await self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status == INTENT_PENDING)
            .values(status=INTENT_COMPLETED, gateway_payment_id=gateway_payment_id, completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        won = result.rowcount == 1
        await self.db.commit()

        if not won:
            intent = await self.get_intent(intent_id)
            if intent is not None and intent.status == INTENT_COMPLETED:
                return LedgerResult.settled(
                    intent=intent_to_dict(intent),
                    transaction_id=intent.settled_transaction_id,
                )
            return LedgerResult.failure(LedgerErrorKind.INTENT_CLOSED, "Payment is no longer pending")

        logger.info("payment_completed intent=%s gateway_payment=%s", intent_id, gateway_payment_id)
        return await self._apply_settlement(intent_id)

    async def mark_failed(self, intent_id: str, reason: Optional[str] = None) -> LedgerResult:
        intent = await self.get_intent(intent_id)
        if intent is None:
            return LedgerResult.failure(LedgerErrorKind.UNKNOWN_INTENT, "Payment intent not found")

        result = await self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.status == INTENT_PENDING)
            .values(status=INTENT_FAILED, failure_reason=(reason or "payment_failed")[:500], completed_at=utcnow())
            .execution_options(synchronize_session=False)
        )
        changed = result.rowcount == 1
        await self.db.commit()

        intent = await self.get_intent(intent_id)
        if not changed:
            if intent.status == INTENT_FAILED:
                return LedgerResult.settled(intent=intent_to_dict(intent))
            return LedgerResult.failure(
                LedgerErrorKind.INTENT_CLOSED,
                "Payment already completed",
                intent=intent_to_dict(intent),
            )
        if intent.coupon_redemption_id:
            await self.coupons.release(intent.coupon_redemption_id)
            intent = await self.get_intent(intent_id)
        logger.info("payment_failed intent=%s reason=%s", intent_id, intent.failure_reason)
        return LedgerResult.success(intent=intent_to_dict(intent))

    async def retry_reconciliation(self, intent_id: str) -> LedgerResult:
        """Re-apply a completed payment whose ledger write did not land."""
        intent = await self.get_intent(intent_id)
        if intent is None:
            return LedgerResult.failure(LedgerErrorKind.UNKNOWN_INTENT, "Payment intent not found")
        if intent.status != INTENT_COMPLETED:
            return LedgerResult.failure(
                LedgerErrorKind.INTENT_CLOSED,
                f"Only completed payments can be reconciled (status={intent.status}).",
            )
        if intent.settled_transaction_id:
            return LedgerResult.settled(intent=intent_to_dict(intent), transaction_id=intent.settled_transaction_id)
        return await self._apply_settlement(intent_id, schedule_retry=False)

    async def list_reconciliation_gaps(self, limit: int = 100) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(PaymentIntent)
            .where(PaymentIntent.needs_reconciliation.is_(True))
            .order_by(PaymentIntent.completed_at)
            .limit(max(1, min(int(limit), 500)))
        )
        return [intent_to_dict(intent) for intent in result.scalars().all()]

    async def _apply_effect(self, intent: PaymentIntent) -> LedgerResult:
        reference = intent.external_reference
        if intent.purpose == PURPOSE_SUBSCRIPTION:
            account = await self.ledger.get_account(intent.account_id)
            if account is None:
                return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")
            tier = resolve_tier(intent.plan)
            if subscription_state(account) is SubscriptionState.ACTIVE and resolve_tier(account.plan) is tier:
                return await self.lifecycle.renew(intent.account_id, external_reference=reference)
            return await self.lifecycle.activate(
                intent.account_id,
                tier or str(intent.plan),
                external_reference=reference,
                amount_paid=intent.amount,
            )
        return await self.ledger.credit(
            intent.account_id,
            intent.purpose,
            0,
            int(intent.words or 0),
            reference,
            amount_paid=intent.amount,
            note=f"payment {intent.id}",
        )

    async def _apply_settlement(self, intent_id: str, *, schedule_retry: bool = True) -> LedgerResult:
        intent = await self.get_intent(intent_id)
        try:
            result = await self._apply_effect(intent)
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.exception("settlement_ledger_write_failed intent=%s", intent_id)
            result = LedgerResult.failure(LedgerErrorKind.RECONCILIATION_GAP, f"Ledger write failed: {exc}")

        if not result.ok:
            manual_review = result.kind in MANUAL_REVIEW_KINDS
            error = f"{result.kind.value if result.kind else 'ERROR'}: {result.detail}"
            if manual_review:
                error = f"manual_review {error}"
            await self._flag_gap(intent_id, error)
            intent = await self.get_intent(intent_id)
            logger.error(
                "reconciliation_gap intent=%s account=%s reference=%s error=%s",
                intent_id,
                intent.account_id,
                intent.external_reference,
                error,
            )
            if manual_review:
                detail = "Payment verified but cannot be applied to the account; flagged for manual review."
            else:
                detail = "Payment verified but the balance update failed; queued for reconciliation."
                if schedule_retry:
                    self._schedule_retry(intent_id)
            return LedgerResult.failure(
                LedgerErrorKind.RECONCILIATION_GAP,
                detail,
                intent=intent_to_dict(intent),
                cause=result.kind.value if result.kind else None,
                manual_review=manual_review,
            )

        transaction_id = result.data.get("transaction_id")
        await self._mark_applied(intent_id, transaction_id)
        intent = await self.get_intent(intent_id)

        if transaction_id:
            await self.invoices.emit(
                account_id=intent.account_id,
                ledger_transaction_id=transaction_id,
                invoice_type="subscription" if intent.purpose == PURPOSE_SUBSCRIPTION else "credit",
                amount=intent.amount,
                currency=intent.currency,
                payment_method="gateway",
                plan_name=intent.plan,
                words_purchased=intent.words,
                payment_intent_id=intent.id,
                external_reference=intent.external_reference,
            )
            intent = await self.get_intent(intent_id)

        data = {key: value for key, value in result.data.items() if key != "intent"}
        if result.already_settled:
            return LedgerResult.settled(intent=intent_to_dict(intent), **data)
        return LedgerResult.success(intent=intent_to_dict(intent), **data)

    async def _flag_gap(self, intent_id: str, error: str) -> None:
        await self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id)
            .values(needs_reconciliation=True, reconciliation_error=error[:500])
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()

    async def _mark_applied(self, intent_id: str, transaction_id: Optional[str]) -> bool:
        result = await self.db.execute(
            update(PaymentIntent)
            .where(PaymentIntent.id == intent_id, PaymentIntent.settled_transaction_id.is_(None))
            .values(settled_transaction_id=transaction_id, needs_reconciliation=False, reconciliation_error=None)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        return result.rowcount == 1

    def _schedule_retry(self, intent_id: str) -> None:
        if not settings.RECONCILIATION_RETRY_ENABLED:
            return
        try:
            enqueue_reconciliation_retry(intent_id)
        except Exception as exc:
            logger.warning("reconciliation_enqueue_failed intent=%s: %s", intent_id, exc)


async def process_reconciliation_retry_job_async(intent_id: str) -> None:
    """Async reconciliation retry executed by the RQ worker wrapper."""
    async with async_session_maker() as db:
        result = await PaymentReconciler(db).retry_reconciliation(intent_id)
    retryable = result.kind is not LedgerErrorKind.INTENT_CLOSED and not result.data.get("manual_review")
    if not result.ok and retryable:
        raise RuntimeError(f"Reconciliation retry failed for {intent_id}: {result.detail}")
    logger.info("reconciliation_retry_done intent=%s ok=%s", intent_id, result.ok)


def process_reconciliation_retry_job(intent_id: str) -> None:
    """RQ worker entrypoint for reconciliation retries."""
    asyncio.run(process_reconciliation_retry_job_async(intent_id))
