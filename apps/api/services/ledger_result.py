"""Explicit result values returned by ledger, payment and coupon services."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, Optional

from fastapi import HTTPException


class LedgerErrorKind(str, Enum):
    INSUFFICIENT_BALANCE = "INSUFFICIENT_BALANCE"
    INVALID_COUPON = "INVALID_COUPON"
    COUPON_EXHAUSTED = "COUPON_EXHAUSTED"
    COUPON_EXPIRED = "COUPON_EXPIRED"
    COUPON_NOT_APPLICABLE = "COUPON_NOT_APPLICABLE"
    SIGNATURE_INVALID = "SIGNATURE_INVALID"
    UNKNOWN_INTENT = "UNKNOWN_INTENT"
    ALREADY_SETTLED = "ALREADY_SETTLED"
    DOWNGRADE_BLOCKED = "DOWNGRADE_BLOCKED"
    PLAN_UNKNOWN = "PLAN_UNKNOWN"
    PLAN_NOT_PURCHASABLE = "PLAN_NOT_PURCHASABLE"
    PLAN_ALREADY_ACTIVE = "PLAN_ALREADY_ACTIVE"
    ACCOUNT_NOT_FOUND = "ACCOUNT_NOT_FOUND"
    INVALID_AMOUNT = "INVALID_AMOUNT"
    CREDIT_CAP_EXCEEDED = "CREDIT_CAP_EXCEEDED"
    UNSUPPORTED_CURRENCY = "UNSUPPORTED_CURRENCY"
    UNKNOWN_TRANSACTION = "UNKNOWN_TRANSACTION"
    INTENT_CLOSED = "INTENT_CLOSED"
    FREE_GRANT_WITHOUT_COUPON = "FREE_GRANT_WITHOUT_COUPON"
    CONCURRENT_MODIFICATION = "CONCURRENT_MODIFICATION"
    RECONCILIATION_GAP = "RECONCILIATION_GAP"


HTTP_STATUS_BY_KIND: Dict[LedgerErrorKind, int] = {
    LedgerErrorKind.INSUFFICIENT_BALANCE: 402,
    LedgerErrorKind.INVALID_COUPON: 400,
    LedgerErrorKind.COUPON_EXHAUSTED: 400,
    LedgerErrorKind.COUPON_EXPIRED: 400,
    LedgerErrorKind.COUPON_NOT_APPLICABLE: 400,
    LedgerErrorKind.SIGNATURE_INVALID: 401,
    LedgerErrorKind.UNKNOWN_INTENT: 404,
    LedgerErrorKind.DOWNGRADE_BLOCKED: 409,
    LedgerErrorKind.PLAN_UNKNOWN: 422,
    LedgerErrorKind.PLAN_NOT_PURCHASABLE: 422,
    LedgerErrorKind.PLAN_ALREADY_ACTIVE: 409,
    LedgerErrorKind.ACCOUNT_NOT_FOUND: 404,
    LedgerErrorKind.INVALID_AMOUNT: 422,
    LedgerErrorKind.CREDIT_CAP_EXCEEDED: 409,
    LedgerErrorKind.UNSUPPORTED_CURRENCY: 422,
    LedgerErrorKind.UNKNOWN_TRANSACTION: 404,
    LedgerErrorKind.INTENT_CLOSED: 409,
    LedgerErrorKind.FREE_GRANT_WITHOUT_COUPON: 422,
    LedgerErrorKind.CONCURRENT_MODIFICATION: 409,
    LedgerErrorKind.RECONCILIATION_GAP: 502,
}


@dataclass
class LedgerResult:
    """Outcome of a balance-affecting operation.

    ``ok`` is True for successes, including idempotent replays which carry
    ``kind=ALREADY_SETTLED``. Failures always carry a ``kind`` and guarantee
    that no state was changed, except ``RECONCILIATION_GAP``.
    """

    ok: bool
    kind: Optional[LedgerErrorKind] = None
    detail: str = ""
    data: Dict[str, Any] = field(default_factory=dict)

    @classmethod
    def success(cls, **data: Any) -> "LedgerResult":
        return cls(ok=True, data=data)

    @classmethod
    def settled(cls, detail: str = "Already settled", **data: Any) -> "LedgerResult":
        return cls(ok=True, kind=LedgerErrorKind.ALREADY_SETTLED, detail=detail, data=data)

    @classmethod
    def failure(cls, kind: LedgerErrorKind, detail: str, **data: Any) -> "LedgerResult":
        return cls(ok=False, kind=kind, detail=detail, data=data)

    @property
    def already_settled(self) -> bool:
        return self.ok and self.kind == LedgerErrorKind.ALREADY_SETTLED

    def to_payload(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {"ok": self.ok, "already_settled": self.already_settled}
        payload.update(self.data)
        if self.detail:
            payload["message"] = self.detail
        return payload


def raise_for_result(result: LedgerResult) -> Dict[str, Any]:
    """Translate a failed result into an HTTPException; return the payload otherwise."""
    if result.ok:
        return result.to_payload()
    kind = result.kind or LedgerErrorKind.INVALID_AMOUNT
    detail: Dict[str, Any] = {"error": kind.value, "message": result.detail}
    detail.update(result.data)
    raise HTTPException(status_code=HTTP_STATUS_BY_KIND.get(kind, 400), detail=detail)
