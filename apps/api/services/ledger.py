"""Account ledger: balance reads, usage deductions, refunds and credits.

``AccountLedger`` is the only code that writes ``Account`` rows. Every write
is a conditional ``UPDATE ... WHERE version = v`` committed together with its
``LedgerTransaction``; a lost race re-reads and recomputes instead of
overwriting a concurrent change.
"""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta, timezone
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

from sqlalchemy import update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from models.coupon import CouponRedemption
from models.ledger_transaction import LedgerTransaction
from services.ledger_result import LedgerErrorKind, LedgerResult
from services.plan_catalog import PlanTier, limits_for
from services.quota import plan_remaining, split_deduction, total_available


logger = logging.getLogger(__name__)

ACCOUNT_STATUS_ACTIVE = "active"
ACCOUNT_STATUS_EXPIRED = "expired"

REASON_USAGE = "usage"
REASON_REFUND = "refund"
REASON_CREDIT = "credit"
REASON_RENEWAL = "renewal"
REASON_ACTIVATION = "activation"
REASON_EXPIRY = "expiry"

_BALANCE_FIELDS = (
    "plan",
    "status",
    "plan_quota_limit",
    "plan_quota_used",
    "purchased_credit",
    "upload_limit_mb",
    "max_purchasable_credit",
    "cycle_start",
    "cycle_expires_at",
    "version",
)


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: Optional[datetime]) -> Optional[datetime]:
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


def _isoformat(value: Optional[datetime]) -> Optional[str]:
    value = as_utc(value)
    return value.isoformat() if value else None


@dataclass
class AccountChange:
    """New balance column values plus the ledger entry describing them."""

    reason: str
    values: Dict[str, Any]
    delta_plan_quota: int = 0
    delta_purchased_credit: int = 0
    note: Optional[str] = None
    related_transaction_id: Optional[str] = None
    data: Dict[str, Any] = field(default_factory=dict)


ChangeBuilder = Callable[[Account], Union[AccountChange, LedgerResult]]


def get_available(account: Account) -> int:
    """Words the account can spend right now."""
    return total_available(account.plan_quota_limit, account.plan_quota_used, account.purchased_credit)


def _account_values(account: Account) -> Dict[str, Any]:
    return {name: getattr(account, name) for name in _BALANCE_FIELDS}


def balance_view(values: Mapping[str, Any]) -> Dict[str, Any]:
    limit = int(values["plan_quota_limit"])
    used = int(values["plan_quota_used"])
    purchased = int(values["purchased_credit"])
    max_purchasable = int(values["max_purchasable_credit"])
    return {
        "plan": values["plan"],
        "status": values["status"],
        "plan_quota_limit": limit,
        "plan_quota_used": used,
        "plan_remaining": plan_remaining(limit, used),
        "purchased_credit": purchased,
        "total_available": total_available(limit, used, purchased),
        "upload_limit_mb": int(values["upload_limit_mb"]),
        "max_purchasable_credit": max_purchasable,
        "purchasable_remaining": max(0, max_purchasable - purchased),
        "cycle_start": _isoformat(values.get("cycle_start")),
        "cycle_expires_at": _isoformat(values.get("cycle_expires_at")),
        "version": int(values.get("version") or 0),
    }


def balance_summary(account: Account) -> Dict[str, Any]:
    return {"account_id": account.id, **balance_view(_account_values(account))}


def transaction_to_dict(entry: LedgerTransaction) -> Dict[str, Any]:
    return {
        "id": entry.id,
        "account_id": entry.account_id,
        "reason": entry.reason,
        "delta_plan_quota": entry.delta_plan_quota,
        "delta_purchased_credit": entry.delta_purchased_credit,
        "external_reference": entry.external_reference,
        "related_transaction_id": entry.related_transaction_id,
        "plan_quota_used_after": entry.plan_quota_used_after,
        "purchased_credit_after": entry.purchased_credit_after,
        "note": entry.note,
        "created_at": _isoformat(entry.created_at),
    }


class AccountLedger:
    """Per-request ledger bound to one database session."""

    def __init__(self, db: AsyncSession, *, max_retries: Optional[int] = None):
        self.db = db
        self.max_retries = max(int(max_retries or settings.LEDGER_MAX_RETRIES), 1)

    async def get_account(self, account_id: str) -> Optional[Account]:
        result = await self.db.execute(
            select(Account).where(Account.id == account_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def get_account_for_user(self, user_id: str) -> Optional[Account]:
        result = await self.db.execute(
            select(Account).where(Account.user_id == user_id).execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def open_account(self, user_id: str, *, now: Optional[datetime] = None) -> Account:
        """Create the Free account for a new user; returns the existing one on replay."""
        existing = await self.get_account_for_user(user_id)
        if existing is not None:
            return existing

        current = now or utcnow()
        limits = limits_for(PlanTier.FREE)
        account = Account(
            id=str(uuid.uuid4()),
            user_id=user_id,
            plan=PlanTier.FREE.value,
            status=ACCOUNT_STATUS_ACTIVE,
            plan_quota_limit=limits.quota_limit,
            plan_quota_used=0,
            purchased_credit=0,
            upload_limit_mb=limits.upload_limit_mb,
            max_purchasable_credit=limits.max_purchasable_credit,
            cycle_start=current,
            cycle_expires_at=current + timedelta(days=max(int(settings.PLAN_CYCLE_DAYS), 1)),
            version=0,
            created_at=current,
        )
        self.db.add(account)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            existing = await self.get_account_for_user(user_id)
            if existing is None:
                raise
            return existing
        logger.info("account_opened user=%s account=%s", user_id, account.id)
        return account

    async def find_by_reference(self, external_reference: str) -> Optional[LedgerTransaction]:
        result = await self.db.execute(
            select(LedgerTransaction).where(LedgerTransaction.external_reference == external_reference)
        )
        return result.scalar_one_or_none()

    async def get_transaction(self, transaction_id: str) -> Optional[LedgerTransaction]:
        result = await self.db.execute(select(LedgerTransaction).where(LedgerTransaction.id == transaction_id))
        return result.scalar_one_or_none()

    async def recent_transactions(self, account_id: str, limit: int = 30) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(LedgerTransaction)
            .where(LedgerTransaction.account_id == account_id)
            .order_by(LedgerTransaction.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return [transaction_to_dict(entry) for entry in result.scalars().all()]

    async def reserve_and_commit(
        self,
        account_id: str,
        words: int,
        *,
        external_reference: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerResult:
        """Deduct ``words`` all-or-nothing, plan quota first."""
        requested = int(words)
        if requested < 0:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "words must be >= 0")
        if requested == 0:
            account = await self.get_account(account_id)
            if account is None:
                return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")
            return LedgerResult.success(charged=0, from_plan=0, from_credit=0, balance=balance_view(_account_values(account)))

        def build(account: Account) -> Union[AccountChange, LedgerResult]:
            split = split_deduction(
                account.plan_quota_limit,
                account.plan_quota_used,
                account.purchased_credit,
                requested,
            )
            if not split.sufficient:
                available = get_available(account)
                return LedgerResult.failure(
                    LedgerErrorKind.INSUFFICIENT_BALANCE,
                    f"Insufficient words. Required: {requested}, available: {available}.",
                    required=requested,
                    available=available,
                    shortfall=split.shortfall,
                )
            return AccountChange(
                reason=REASON_USAGE,
                values={
                    "plan_quota_used": account.plan_quota_used + split.from_plan,
                    "purchased_credit": account.purchased_credit - split.from_credit,
                },
                delta_plan_quota=-split.from_plan,
                delta_purchased_credit=-split.from_credit,
                note=note,
                data={"charged": requested, "from_plan": split.from_plan, "from_credit": split.from_credit},
            )

        return await self.commit_change(account_id, build, external_reference=external_reference)

    async def refund(self, account_id: str, words: int, original_transaction_id: str) -> LedgerResult:
        """Give back words from a usage entry; replays of the same original are no-ops."""
        requested = int(words)
        if requested < 0:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "words must be >= 0")

        original = await self.get_transaction(original_transaction_id)
        if original is None or original.account_id != account_id or original.reason != REASON_USAGE:
            return LedgerResult.failure(
                LedgerErrorKind.UNKNOWN_TRANSACTION,
                "Usage transaction not found for this account",
                original_transaction_id=original_transaction_id,
            )

        deducted_plan = max(-int(original.delta_plan_quota or 0), 0)
        deducted_credit = max(-int(original.delta_purchased_credit or 0), 0)
        if requested > deducted_plan + deducted_credit:
            return LedgerResult.failure(
                LedgerErrorKind.INVALID_AMOUNT,
                f"Cannot refund {requested} words; the original deduction was {deducted_plan + deducted_credit}.",
            )
        if requested == 0:
            return LedgerResult.success(refunded=0, to_plan=0, to_credit=0)

        # Credit was consumed last, so it is restored first.
        to_credit = min(requested, deducted_credit)
        to_plan = requested - to_credit

        def build(account: Account) -> Union[AccountChange, LedgerResult]:
            restored_plan = min(to_plan, account.plan_quota_used)
            if restored_plan + to_credit == 0:
                # Plan usage was already reset by a renewal or plan change.
                return LedgerResult.success(refunded=0, to_plan=0, to_credit=0, plan_clamped=to_plan)
            return AccountChange(
                reason=REASON_REFUND,
                values={
                    "plan_quota_used": account.plan_quota_used - restored_plan,
                    "purchased_credit": account.purchased_credit + to_credit,
                },
                delta_plan_quota=restored_plan,
                delta_purchased_credit=to_credit,
                related_transaction_id=original.id,
                data={
                    "refunded": restored_plan + to_credit,
                    "to_plan": restored_plan,
                    "to_credit": to_credit,
                    "plan_clamped": to_plan - restored_plan,
                },
            )

        return await self.commit_change(
            account_id,
            build,
            external_reference=f"refund:{original_transaction_id}",
        )

    async def credit(
        self,
        account_id: str,
        purpose: str,
        plan_delta: int,
        credit_delta: int,
        external_reference: str,
        *,
        amount_paid: Optional[int] = None,
        coupon_redemption_id: Optional[str] = None,
        note: Optional[str] = None,
    ) -> LedgerResult:
        """Add plan bonus and/or purchased credit exactly once per ``external_reference``."""
        plan_bonus = int(plan_delta or 0)
        credited = int(credit_delta or 0)
        if plan_bonus < 0 or credited < 0 or plan_bonus + credited == 0:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "credit deltas must be positive")
        if not external_reference:
            return LedgerResult.failure(LedgerErrorKind.INVALID_AMOUNT, "external_reference is required for credits")

        def build(account: Account) -> AccountChange:
            return AccountChange(
                reason=REASON_CREDIT,
                values={
                    "plan_quota_limit": account.plan_quota_limit + plan_bonus,
                    "purchased_credit": account.purchased_credit + credited,
                },
                delta_plan_quota=plan_bonus,
                delta_purchased_credit=credited,
                note=note or purpose,
                data={"purpose": purpose, "credited_words": credited, "plan_bonus": plan_bonus},
            )

        return await self.commit_change(
            account_id,
            build,
            external_reference=external_reference,
            amount_paid=amount_paid,
            coupon_redemption_id=coupon_redemption_id,
        )

    async def commit_change(
        self,
        account_id: str,
        build: ChangeBuilder,
        *,
        external_reference: Optional[str] = None,
        amount_paid: Optional[int] = None,
        coupon_redemption_id: Optional[str] = None,
    ) -> LedgerResult:
        """Apply ``build(account)`` with a version-guarded write.

        ``build`` is called again on a fresh read whenever a concurrent writer
        bumped the version first. Returns ``ALREADY_SETTLED`` when
        ``external_reference`` was applied before.
        """
        if amount_paid is not None and int(amount_paid) == 0:
            violation = await self._check_free_grant(account_id, coupon_redemption_id)
            if violation is not None:
                return violation

        for attempt in range(1, self.max_retries + 1):
            if external_reference:
                existing = await self.find_by_reference(external_reference)
                if existing is not None:
                    return LedgerResult.settled(
                        transaction_id=existing.id,
                        transaction=transaction_to_dict(existing),
                    )

            account = await self.get_account(account_id)
            if account is None:
                return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")

            outcome = build(account)
            if isinstance(outcome, LedgerResult):
                return outcome

            result = await self._write(account, outcome, external_reference)
            if result is not None:
                return result
            logger.warning(
                "ledger_version_conflict account=%s reason=%s attempt=%s",
                account_id,
                outcome.reason,
                attempt,
            )

        logger.error("ledger_retries_exhausted account=%s attempts=%s", account_id, self.max_retries)
        return LedgerResult.failure(
            LedgerErrorKind.CONCURRENT_MODIFICATION,
            "Account was modified concurrently; retry the request.",
        )

    async def _write(
        self,
        account: Account,
        change: AccountChange,
        external_reference: Optional[str],
    ) -> Optional[LedgerResult]:
        now = utcnow()
        expected_version = int(account.version or 0)
        result = await self.db.execute(
            update(Account)
            .where(Account.id == account.id, Account.version == expected_version)
            .values(**change.values, version=expected_version + 1, updated_at=now)
            .execution_options(synchronize_session=False)
        )
        if result.rowcount != 1:
            return None

        after = {**_account_values(account), **change.values, "version": expected_version + 1}
        entry = LedgerTransaction(
            id=str(uuid.uuid4()),
            account_id=account.id,
            delta_plan_quota=int(change.delta_plan_quota),
            delta_purchased_credit=int(change.delta_purchased_credit),
            reason=change.reason,
            external_reference=external_reference,
            related_transaction_id=change.related_transaction_id,
            plan_quota_used_after=int(after["plan_quota_used"]),
            purchased_credit_after=int(after["purchased_credit"]),
            note=change.note,
            created_at=now,
        )
        self.db.add(entry)
        try:
            await self.db.commit()
        except IntegrityError:
            await self.db.rollback()
            if external_reference:
                existing = await self.find_by_reference(external_reference)
                if existing is not None:
                    logger.info(
                        "ledger_duplicate_reference account=%s reference=%s",
                        account.id,
                        external_reference,
                    )
                    return LedgerResult.settled(
                        transaction_id=existing.id,
                        transaction=transaction_to_dict(existing),
                    )
            raise

        logger.info(
            "ledger_commit account=%s reason=%s delta_plan=%s delta_credit=%s reference=%s",
            account.id,
            change.reason,
            change.delta_plan_quota,
            change.delta_purchased_credit,
            external_reference,
        )
        return LedgerResult.success(
            transaction_id=entry.id,
            transaction=transaction_to_dict(entry),
            balance=balance_view(after),
            **change.data,
        )

    async def _check_free_grant(
        self,
        account_id: str,
        coupon_redemption_id: Optional[str],
    ) -> Optional[LedgerResult]:
        redemption = None
        if coupon_redemption_id:
            result = await self.db.execute(
                select(CouponRedemption).where(CouponRedemption.id == coupon_redemption_id)
            )
            redemption = result.scalar_one_or_none()

        if (
            redemption is None
            or redemption.released_at is not None
            or (redemption.account_id and redemption.account_id != account_id)
        ):
            logger.error(
                "free_grant_rejected account=%s redemption=%s",
                account_id,
                coupon_redemption_id,
            )
            return LedgerResult.failure(
                LedgerErrorKind.FREE_GRANT_WITHOUT_COUPON,
                "A zero-amount grant requires a coupon redeemed for this account.",
            )
        return None
