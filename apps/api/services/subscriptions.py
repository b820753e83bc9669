"""Subscription lifecycle: plan activation, cycle renewal and expiry."""

from __future__ import annotations

import logging
import math
from datetime import datetime, timedelta
from enum import Enum
from typing import Any, Dict, Optional, Union

from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from config import settings
from models.account import Account
from services.ledger import (
    ACCOUNT_STATUS_ACTIVE,
    ACCOUNT_STATUS_EXPIRED,
    REASON_ACTIVATION,
    REASON_EXPIRY,
    REASON_RENEWAL,
    AccountChange,
    AccountLedger,
    as_utc,
    utcnow,
)
from services.ledger_result import LedgerErrorKind, LedgerResult
from services.plan_catalog import PlanTier, limits_for, resolve_tier
from services.quota import plan_remaining


logger = logging.getLogger(__name__)


class SubscriptionState(str, Enum):
    FREE = "free"
    ACTIVE = "active"
    EXPIRED = "expired"


def default_cycle_length() -> timedelta:
    return timedelta(days=max(int(settings.PLAN_CYCLE_DAYS), 1))


def effective_tier(account: Account) -> PlanTier:
    """Tier whose limits apply; an expired paid plan falls back to Free."""
    if account.status == ACCOUNT_STATUS_EXPIRED:
        return PlanTier.FREE
    return resolve_tier(account.plan) or PlanTier.FREE


def subscription_state(account: Account, now: Optional[datetime] = None) -> SubscriptionState:
    if account.status == ACCOUNT_STATUS_EXPIRED:
        return SubscriptionState.EXPIRED
    tier = resolve_tier(account.plan) or PlanTier.FREE
    if not tier.is_paid:
        return SubscriptionState.FREE
    expires_at = as_utc(account.cycle_expires_at)
    if expires_at is None or expires_at <= (now or utcnow()):
        return SubscriptionState.EXPIRED
    return SubscriptionState.ACTIVE


def state_payload(account: Account, now: Optional[datetime] = None) -> Dict[str, Any]:
    current = now or utcnow()
    expires_at = as_utc(account.cycle_expires_at)
    days_until_expiry = None
    if expires_at is not None:
        days_until_expiry = max(0, math.ceil((expires_at - current).total_seconds() / 86400))
    return {
        "account_id": account.id,
        "state": subscription_state(account, current).value,
        "plan": account.plan,
        "effective_plan": effective_tier(account).value,
        "cycle_start": as_utc(account.cycle_start).isoformat() if account.cycle_start else None,
        "cycle_expires_at": expires_at.isoformat() if expires_at else None,
        "days_until_expiry": days_until_expiry,
    }


def _cycle_unchanged(account: Account, expected: Optional[datetime]) -> bool:
    if expected is None:
        return True
    return as_utc(account.cycle_expires_at) == as_utc(expected)


class SubscriptionLifecycleManager:
    """Drives plan changes through the account ledger."""

    def __init__(self, db: AsyncSession, ledger: Optional[AccountLedger] = None):
        self.db = db
        self.ledger = ledger or AccountLedger(db)

    async def activate(
        self,
        account_id: str,
        tier: Union[PlanTier, str],
        cycle_length: Optional[timedelta] = None,
        *,
        external_reference: Optional[str] = None,
        amount_paid: Optional[int] = None,
        coupon_redemption_id: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Start a paid cycle from Free/Expired, or upgrade an active one."""
        target = resolve_tier(tier)
        if target is None:
            return LedgerResult.failure(LedgerErrorKind.PLAN_UNKNOWN, f"Unknown plan: {tier}")
        if not target.is_paid:
            return LedgerResult.failure(LedgerErrorKind.PLAN_NOT_PURCHASABLE, "The free plan cannot be activated")

        length = cycle_length or default_cycle_length()
        current_time = now or utcnow()
        limits = limits_for(target)

        def build(account: Account) -> Union[AccountChange, LedgerResult]:
            state = subscription_state(account, current_time)
            current = resolve_tier(account.plan) or PlanTier.FREE
            if state is SubscriptionState.ACTIVE:
                if target.rank < current.rank:
                    return LedgerResult.failure(
                        LedgerErrorKind.DOWNGRADE_BLOCKED,
                        f"Cannot switch from {current.value} to {target.value} before the current cycle ends.",
                        cycle_expires_at=as_utc(account.cycle_expires_at).isoformat(),
                    )
                if target is current:
                    return LedgerResult.failure(
                        LedgerErrorKind.PLAN_ALREADY_ACTIVE,
                        f"The {target.value} plan is already active.",
                        cycle_expires_at=as_utc(account.cycle_expires_at).isoformat(),
                    )

            expires_at = current_time + length
            return AccountChange(
                reason=REASON_ACTIVATION,
                values={
                    "plan": target.value,
                    "status": ACCOUNT_STATUS_ACTIVE,
                    "plan_quota_limit": limits.quota_limit,
                    "plan_quota_used": 0,
                    "upload_limit_mb": limits.upload_limit_mb,
                    "max_purchasable_credit": limits.max_purchasable_credit,
                    "cycle_start": current_time,
                    "cycle_expires_at": expires_at,
                },
                delta_plan_quota=limits.quota_limit - plan_remaining(account.plan_quota_limit, account.plan_quota_used),
                note=f"{current.value}->{target.value}",
                data={
                    "plan": target.value,
                    "previous_plan": current.value,
                    "previous_state": state.value,
                    "cycle_expires_at": expires_at.isoformat(),
                },
            )

        result = await self.ledger.commit_change(
            account_id,
            build,
            external_reference=external_reference,
            amount_paid=amount_paid,
            coupon_redemption_id=coupon_redemption_id,
        )
        if result.ok and not result.already_settled:
            logger.info("plan_activated account=%s plan=%s", account_id, target.value)
        return result

    async def renew(
        self,
        account_id: str,
        *,
        cycle_length: Optional[timedelta] = None,
        external_reference: Optional[str] = None,
        expected_cycle_expires_at: Optional[datetime] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Reset plan usage and move the cycle forward; purchased credit is untouched.

        Without an ``external_reference`` this is the scheduled renewal: it only
        runs once the current cycle has ended and is keyed by that boundary, so
        a retried call settles as a no-op instead of advancing twice. Paid
        renewals pass the payment's reference and may extend an active cycle.
        """
        length = cycle_length or default_cycle_length()
        current_time = now or utcnow()

        if external_reference is None:
            account = await self.ledger.get_account(account_id)
            if account is None:
                return LedgerResult.failure(LedgerErrorKind.ACCOUNT_NOT_FOUND, "Account not found")
            boundary = as_utc(expected_cycle_expires_at or account.cycle_expires_at)
            if boundary is not None:
                if boundary > current_time:
                    return LedgerResult.settled(
                        "Current cycle has not ended",
                        cycle_expires_at=boundary.isoformat(),
                    )
                expected_cycle_expires_at = boundary
                external_reference = f"renewal:{account_id}:{boundary.isoformat()}"

        def build(account: Account) -> Union[AccountChange, LedgerResult]:
            if not _cycle_unchanged(account, expected_cycle_expires_at):
                return LedgerResult.settled("Cycle already advanced")

            limits = limits_for(effective_tier(account))
            previous_expiry = as_utc(account.cycle_expires_at) or current_time
            cycle_start = previous_expiry
            cycle_expires_at = previous_expiry + length
            if cycle_expires_at <= current_time:
                cycle_start = current_time
                cycle_expires_at = current_time + length

            return AccountChange(
                reason=REASON_RENEWAL,
                values={
                    "plan_quota_used": 0,
                    "plan_quota_limit": limits.quota_limit,
                    "cycle_start": cycle_start,
                    "cycle_expires_at": cycle_expires_at,
                },
                delta_plan_quota=limits.quota_limit - plan_remaining(account.plan_quota_limit, account.plan_quota_used),
                note=f"renewal of {account.plan}",
                data={
                    "plan": account.plan,
                    "cycle_start": cycle_start.isoformat(),
                    "cycle_expires_at": cycle_expires_at.isoformat(),
                },
            )

        return await self.ledger.commit_change(account_id, build, external_reference=external_reference)

    async def expire(
        self,
        account_id: str,
        *,
        expected_cycle_expires_at: Optional[datetime] = None,
        external_reference: Optional[str] = None,
        now: Optional[datetime] = None,
    ) -> LedgerResult:
        """Drop a lapsed paid plan to Free limits, preserving purchased credit."""
        current_time = now or utcnow()
        free_limits = limits_for(PlanTier.FREE)

        def build(account: Account) -> Union[AccountChange, LedgerResult]:
            if not _cycle_unchanged(account, expected_cycle_expires_at):
                return LedgerResult.settled("Cycle already advanced")
            if subscription_state(account, current_time) is not SubscriptionState.EXPIRED:
                return LedgerResult.failure(
                    LedgerErrorKind.PLAN_ALREADY_ACTIVE,
                    "The current cycle has not ended yet.",
                )
            cycle_expires_at = current_time + default_cycle_length()
            return AccountChange(
                reason=REASON_EXPIRY,
                values={
                    "status": ACCOUNT_STATUS_EXPIRED,
                    "plan_quota_limit": free_limits.quota_limit,
                    "plan_quota_used": 0,
                    "upload_limit_mb": free_limits.upload_limit_mb,
                    "max_purchasable_credit": free_limits.max_purchasable_credit,
                    "cycle_start": current_time,
                    "cycle_expires_at": cycle_expires_at,
                },
                delta_plan_quota=free_limits.quota_limit
                - plan_remaining(account.plan_quota_limit, account.plan_quota_used),
                note=f"{account.plan} expired",
                data={"plan": account.plan, "preserved_credit": account.purchased_credit},
            )

        result = await self.ledger.commit_change(account_id, build, external_reference=external_reference)
        if result.ok and not result.already_settled:
            logger.info("plan_expired account=%s", account_id)
        return result

    async def run_cycle_sweep(self, now: Optional[datetime] = None, limit: int = 500) -> Dict[str, int]:
        """Renew or expire every account whose cycle has ended."""
        current_time = now or utcnow()
        result = await self.db.execute(
            select(Account.id, Account.plan, Account.status, Account.cycle_expires_at)
            .where(Account.cycle_expires_at <= current_time)
            .order_by(Account.cycle_expires_at)
            .limit(max(int(limit), 1))
        )
        due = result.all()

        counts = {"renewed": 0, "expired": 0, "skipped": 0, "failed": 0}
        for account_id, plan, status, cycle_expires_at in due:
            boundary = as_utc(cycle_expires_at)
            tier = resolve_tier(plan) or PlanTier.FREE
            if status == ACCOUNT_STATUS_EXPIRED or not tier.is_paid or settings.AUTO_RENEW_PAID_PLANS:
                outcome = await self.renew(
                    account_id,
                    external_reference=f"renewal:{account_id}:{boundary.isoformat()}",
                    expected_cycle_expires_at=boundary,
                    now=current_time,
                )
                bucket = "renewed"
            else:
                outcome = await self.expire(
                    account_id,
                    external_reference=f"expiry:{account_id}:{boundary.isoformat()}",
                    expected_cycle_expires_at=boundary,
                    now=current_time,
                )
                bucket = "expired"

            if not outcome.ok:
                counts["failed"] += 1
                logger.warning("cycle_sweep_failed account=%s error=%s", account_id, outcome.kind)
            elif outcome.already_settled:
                counts["skipped"] += 1
            else:
                counts[bucket] += 1
        return counts
