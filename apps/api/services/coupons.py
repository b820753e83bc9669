"""Coupon validation, atomic redemption and coupon-funded grants."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Dict, Optional

from sqlalchemy import or_, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.coupon import Coupon, CouponRedemption
from services.invoices import InvoiceEmitter
from services.ledger import AccountLedger, as_utc, utcnow
from services.ledger_result import LedgerErrorKind, LedgerResult
from services.plan_catalog import (
    PURPOSE_CREDIT_PURCHASE,
    PURPOSE_SUBSCRIPTION,
    credit_price,
    resolve_tier,
    subscription_price,
)
from services.subscriptions import SubscriptionLifecycleManager


logger = logging.getLogger(__name__)

COUPON_PURPOSE_SUBSCRIPTION = "subscription"
COUPON_PURPOSE_CREDIT = "credit"
COUPON_PURPOSE_BOTH = "both"

DISCOUNT_PERCENTAGE = "percentage"
DISCOUNT_FIXED = "fixed"


def normalize_code(code: Optional[str]) -> str:
    return str(code or "").strip().upper()


def coupon_purpose_for(purpose: Optional[str]) -> Optional[str]:
    """Map a payment purpose onto the purpose a coupon is issued for."""
    normalized = str(purpose or "").strip().lower()
    if normalized == PURPOSE_SUBSCRIPTION:
        return COUPON_PURPOSE_SUBSCRIPTION
    if normalized in (PURPOSE_CREDIT_PURCHASE, COUPON_PURPOSE_CREDIT):
        return COUPON_PURPOSE_CREDIT
    return None


def compute_discount(coupon: Coupon, amount: int) -> int:
    """Discount in minor units; percentages round up and never exceed ``amount``."""
    amount = max(int(amount), 0)
    value = max(int(coupon.discount_value or 0), 0)
    if coupon.discount_type == DISCOUNT_PERCENTAGE:
        discount = -(-amount * value // 100)
    else:
        discount = value
    return max(0, min(amount, discount))


@dataclass
class CouponQuote:
    valid: bool
    original_amount: int = 0
    discount: int = 0
    final_amount: int = 0
    coupon_code: Optional[str] = None
    discount_type: Optional[str] = None
    kind: Optional[LedgerErrorKind] = None
    message: str = ""

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "valid": self.valid,
            "coupon_code": self.coupon_code,
            "original_amount": self.original_amount,
            "discount": self.discount,
            "final_amount": self.final_amount,
            "discount_type": self.discount_type,
        }
        if not self.valid:
            payload["error"] = self.kind.value if self.kind else None
            payload["message"] = self.message
        return payload

    def as_result(self) -> LedgerResult:
        if self.valid:
            return LedgerResult.success(**self.to_payload())
        return LedgerResult.failure(self.kind or LedgerErrorKind.INVALID_COUPON, self.message)


def _rejection(coupon: Optional[Coupon], now: datetime) -> CouponQuote:
    if coupon is None or not coupon.active:
        return CouponQuote(valid=False, kind=LedgerErrorKind.INVALID_COUPON, message="Invalid coupon code")
    expires_at = as_utc(coupon.expires_at)
    if expires_at is not None and expires_at <= now:
        return CouponQuote(valid=False, kind=LedgerErrorKind.COUPON_EXPIRED, message="Coupon has expired")
    if coupon.max_uses is not None and coupon.used_count >= coupon.max_uses:
        return CouponQuote(
            valid=False,
            kind=LedgerErrorKind.COUPON_EXHAUSTED,
            message="Coupon usage limit reached",
        )
    return CouponQuote(
        valid=False,
        kind=LedgerErrorKind.COUPON_NOT_APPLICABLE,
        message="Coupon is not applicable for this purchase",
    )


class CouponRedeemer:
    """Coupon checks and redemptions bound to one database session."""

    def __init__(self, db: AsyncSession, ledger: Optional[AccountLedger] = None):
        self.db = db
        self.ledger = ledger or AccountLedger(db)

    async def get_coupon(self, code: str) -> Optional[Coupon]:
        result = await self.db.execute(
            select(Coupon).where(Coupon.code == normalize_code(code)).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def validate(
        self,
        code: str,
        purpose: str,
        amount: int,
        *,
        now: Optional[datetime] = None,
    ) -> CouponQuote:
        """Quote the discount for ``amount`` without consuming a use."""
        current = now or utcnow()
        amount = int(amount)
        if amount <= 0:
            return CouponQuote(valid=False, kind=LedgerErrorKind.INVALID_AMOUNT, message="amount must be > 0")

        coupon = await self.get_coupon(code)
        rejection = _rejection(coupon, current)
        if rejection.kind is not LedgerErrorKind.COUPON_NOT_APPLICABLE:
            return rejection

        target = coupon_purpose_for(purpose)
        if target is None or coupon.applicable_purpose not in (target, COUPON_PURPOSE_BOTH):
            return rejection

        discount = compute_discount(coupon, amount)
        return CouponQuote(
            valid=True,
            original_amount=amount,
            discount=discount,
            final_amount=amount - discount,
            coupon_code=coupon.code,
            discount_type=coupon.discount_type,
        )

    async def redeem(
        self,
        code: str,
        *,
        account_id: Optional[str] = None,
        purpose: Optional[str] = None,
        original_amount: Optional[int] = None,
        discount_amount: Optional[int] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Consume one use of ``code``.

        The increment is a single conditional UPDATE, so concurrent callers on
        a coupon with one use left see exactly one success.
        """
        normalized = normalize_code(code)
        current = now or utcnow()
        conditions = [
            Coupon.code == normalized,
            Coupon.active.is_(True),
            or_(Coupon.max_uses.is_(None), Coupon.used_count < Coupon.max_uses),
            or_(Coupon.expires_at.is_(None), Coupon.expires_at > current),
        ]
        target = coupon_purpose_for(purpose) if purpose else None
        if purpose and target is None:
            return LedgerResult.failure(LedgerErrorKind.COUPON_NOT_APPLICABLE, "Unknown purchase purpose")
        if target is not None:
            conditions.append(Coupon.applicable_purpose.in_([target, COUPON_PURPOSE_BOTH]))

        result = await self.db.execute(
            update(Coupon)
            .where(*conditions)
            .values(used_count=Coupon.used_count + 1, last_used_at=current)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            await self.db.commit()
            rejection = _rejection(await self.get_coupon(normalized), current)
            logger.info("coupon_redeem_rejected code=%s error=%s", normalized, rejection.kind)
            return rejection.as_result()

        coupon_id = (await self.db.execute(select(Coupon.id).where(Coupon.code == normalized))).scalar_one()
        redemption = CouponRedemption(
            id=str(uuid.uuid4()),
            coupon_id=coupon_id,
            account_id=account_id,
            purpose=target,
            original_amount=original_amount,
            discount_amount=discount_amount,
            created_at=current,
        )
        self.db.add(redemption)
        await self.db.commit()
        logger.info("coupon_redeemed code=%s account=%s redemption=%s", normalized, account_id, redemption.id)
        return LedgerResult.success(redemption_id=redemption.id, coupon_code=normalized)

    async def release(self, redemption_id: str) -> bool:
        """Undo a redemption whose grant could not be applied."""
        current = utcnow()
        result = await self.db.execute(
            update(CouponRedemption)
            .where(CouponRedemption.id == redemption_id, CouponRedemption.released_at.is_(None))
            .values(released_at=current)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return False

        coupon_id = (
            await self.db.execute(select(CouponRedemption.coupon_id).where(CouponRedemption.id == redemption_id))
        ).scalar_one()
        await self.db.execute(
            update(Coupon)
            .where(Coupon.id == coupon_id, Coupon.used_count > 0)
            .values(used_count=Coupon.used_count - 1)
            .execution_options(synchronize_session=False)
        )
        await self.db.commit()
        logger.warning("coupon_redemption_released redemption=%s", redemption_id)
        return True

    async def apply_free_grant(
        self,
        account_id: str,
        code: str,
        purpose: str,
        *,
        plan: Optional[str] = None,
        words: Optional[int] = None,
        currency: Optional[str] = None,
    ) -> LedgerResult:
        """Apply a purchase fully covered by a coupon, without a payment intent."""
        currency = str(currency or settings.DEFAULT_CURRENCY).upper()
        tier = None
        if purpose == PURPOSE_SUBSCRIPTION:
            tier = resolve_tier(plan)
            if tier is None:
                return LedgerResult.failure(LedgerErrorKind.PLAN_UNKNOWN, f"Unknown plan: {plan}")
            if not tier.is_paid:
                return LedgerResult.failure(LedgerErrorKind.PLAN_NOT_PURCHASABLE, "The free plan cannot be purchased")
            amount = subscription_price(tier, currency)
        elif purpose == PURPOSE_CREDIT_PURCHASE:
            words = int(words or 0)
            if words <= 0:
                return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "words must be > 0")
            account = await self.ledger.get_account(account_id)
            if account is None:
                return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")
            if account.purchased_credit + words > account.max_purchasable_credit:
                return LedgerResult.failure(
                    LedgerErrorKind.CREDIT_CAP_EXCEEDED,
                    "Purchase would exceed the credit cap for the current plan.",
                    purchasable_remaining=max(0, account.max_purchasable_credit - account.purchased_credit),
                )
            amount = credit_price(words, currency)
        else:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, f"Unknown purchase purpose: {purpose}")

        if amount is None:
            return LedgerResult.failure(LedgerErrorKind.UNSUPPORTED_CURRENCY, f"Unsupported currency: {currency}")

        quote = await self.validate(code, purpose, amount)
        if not quote.valid:
            return quote.as_result()
        if quote.final_amount != 0:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_AMOUNT,
                "Coupon does not cover the full price; create a payment intent instead.",
                final_amount=quote.final_amount,
            )

        redeemed = await self.redeem(
            code,
            account_id=account_id,
            purpose=purpose,
            original_amount=amount,
            discount_amount=quote.discount,
        )
        if not redeemed.ok:
            return redeemed
        redemption_id = redeemed.data["redemption_id"]
        reference = f"coupon:{redemption_id}"

        try:
            if tier is not None:
                result = await SubscriptionLifecycleManager(self.db, self.ledger).activate(
                    account_id,
                    tier,
                    external_reference=reference,
                    amount_paid=0,
                    coupon_redemption_id=redemption_id,
                )
            else:
                result = await self.ledger.credit(
                    account_id,
                    purpose,
                    0,
                    words,
                    reference,
                    amount_paid=0,
                    coupon_redemption_id=redemption_id,
                    note=f"coupon {quote.coupon_code}",
                )
        except SQLAlchemyError:
            await self.db.rollback()
            await self.release(redemption_id)
            raise

        if not result.ok:
            await self.release(redemption_id)
            return result

        if result.data.get("transaction_id"):
            await InvoiceEmitter(self.db).emit(
                account_id=account_id,
                ledger_transaction_id=result.data["transaction_id"],
                invoice_type="subscription" if tier is not None else "credit",
                amount=0,
                currency=currency,
                payment_method="coupon",
                plan_name=tier.value if tier is not None else None,
                words_purchased=words if tier is None else None,
                external_reference=reference,
            )
        logger.info("free_grant_applied account=%s purpose=%s code=%s", account_id, purpose, quote.coupon_code)
        return LedgerResult.success(
            redemption_id=redemption_id,
            coupon_code=quote.coupon_code,
            original_amount=amount,
            discount=quote.discount,
            **result.data,
        )
