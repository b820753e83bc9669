"""Plan tiers, limits and prices."""

from __future__ import annotations

from enum import Enum
from typing import Any, Dict, NamedTuple, Optional


class PlanTier(str, Enum):
    FREE = "free"
    PRO = "pro"
    PREMIUM = "premium"

    @property
    def rank(self) -> int:
        return _TIER_RANK[self]

    @property
    def is_paid(self) -> bool:
        return self is not PlanTier.FREE


_TIER_RANK: Dict[PlanTier, int] = {
    PlanTier.FREE: 0,
    PlanTier.PRO: 1,
    PlanTier.PREMIUM: 2,
}


class PlanLimits(NamedTuple):
    """Per-tier allowances."""

    quota_limit: int
    upload_limit_mb: int
    max_purchasable_credit: int


PLAN_LIMITS: Dict[PlanTier, PlanLimits] = {
    PlanTier.FREE: PlanLimits(quota_limit=1000, upload_limit_mb=10, max_purchasable_credit=0),
    PlanTier.PRO: PlanLimits(quota_limit=10000, upload_limit_mb=25, max_purchasable_credit=36000),
    PlanTier.PREMIUM: PlanLimits(quota_limit=50000, upload_limit_mb=100, max_purchasable_credit=49000),
}

# Monthly subscription prices in minor units
SUBSCRIPTION_PRICES: Dict[PlanTier, Dict[str, int]] = {
    PlanTier.PRO: {"INR": 9900},
    PlanTier.PREMIUM: {"INR": 29900},
}

# Purchased credit price per 1,000 words in minor units
CREDIT_PRICE_PER_THOUSAND: Dict[str, int] = {
    "INR": 3100,
    "USD": 50,
}

PURPOSE_SUBSCRIPTION = "subscription"
PURPOSE_CREDIT_PURCHASE = "credit_purchase"
PAYMENT_PURPOSES = (PURPOSE_SUBSCRIPTION, PURPOSE_CREDIT_PURCHASE)


def resolve_tier(value: Any) -> Optional[PlanTier]:
    """Resolve a client-supplied tier name; None when it is not a known tier."""
    if isinstance(value, PlanTier):
        return value
    normalized = str(value or "").strip().lower()
    try:
        return PlanTier(normalized)
    except ValueError:
        return None


def limits_for(tier: PlanTier) -> PlanLimits:
    return PLAN_LIMITS[tier]


def subscription_price(tier: PlanTier, currency: str) -> Optional[int]:
    return SUBSCRIPTION_PRICES.get(tier, {}).get(str(currency or "").upper())


def credit_price(words: int, currency: str) -> Optional[int]:
    """Price of ``words`` purchased credit, rounded up to the next minor unit."""
    per_thousand = CREDIT_PRICE_PER_THOUSAND.get(str(currency or "").upper())
    if per_thousand is None:
        return None
    return -(-int(words) * per_thousand // 1000)


def catalog_payload() -> Dict[str, Any]:
    return {
        "plans": [
            {
                "tier": tier.value,
                "quota_limit": limits.quota_limit,
                "upload_limit_mb": limits.upload_limit_mb,
                "max_purchasable_credit": limits.max_purchasable_credit,
                "prices": dict(SUBSCRIPTION_PRICES.get(tier, {})),
            }
            for tier, limits in PLAN_LIMITS.items()
        ],
        "credit_price_per_thousand": dict(CREDIT_PRICE_PER_THOUSAND),
    }
