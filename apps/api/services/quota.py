"""Deduction ordering between plan quota and purchased credit."""

from __future__ import annotations

from typing import NamedTuple


class DeductionSplit(NamedTuple):
    from_plan: int
    from_credit: int
    shortfall: int = 0

    @property
    def sufficient(self) -> bool:
        return self.shortfall == 0


def plan_remaining(plan_quota_limit: int, plan_quota_used: int) -> int:
    return max(0, int(plan_quota_limit) - int(plan_quota_used))


def total_available(plan_quota_limit: int, plan_quota_used: int, purchased_credit: int) -> int:
    return plan_remaining(plan_quota_limit, plan_quota_used) + max(int(purchased_credit), 0)


def split_deduction(
    plan_quota_limit: int,
    plan_quota_used: int,
    purchased_credit: int,
    words_to_deduct: int,
) -> DeductionSplit:
    """Take words from plan quota first, then from purchased credit.

    Purchased credit never expires, so it is only touched once the plan
    quota for the cycle is used up. When the request cannot be covered the
    split is returned with ``shortfall > 0`` and must not be applied.
    """
    words = int(words_to_deduct)
    if words < 0:
        raise ValueError("words_to_deduct must be >= 0")
    if words == 0:
        return DeductionSplit(0, 0)

    from_plan = min(plan_remaining(plan_quota_limit, plan_quota_used), words)
    from_credit = words - from_plan
    if from_credit > purchased_credit:
        return DeductionSplit(from_plan, from_credit, shortfall=from_credit - max(int(purchased_credit), 0))
    return DeductionSplit(from_plan, from_credit)
