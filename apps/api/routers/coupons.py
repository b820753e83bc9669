"""Coupon router: quotes, redemptions and fully-covered grants."""

from __future__ import annotations

from typing import Literal, Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account, get_auth_context
from routers.rate_limit import rate_limit
from services.coupons import CouponRedeemer
from services.ledger_result import raise_for_result

router = APIRouter()


class ValidateCouponRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    purpose: Literal["subscription", "credit_purchase"]
    amount: int = Field(ge=1)


class RedeemCouponRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    purpose: Optional[Literal["subscription", "credit_purchase"]] = None


class FreeGrantRequest(BaseModel):
    code: str = Field(min_length=1, max_length=64)
    purpose: Literal["subscription", "credit_purchase"]
    plan: Optional[str] = None
    words: Optional[int] = Field(default=None, ge=1, le=1_000_000)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)


@router.post("/validate")
async def validate_coupon(
    request: ValidateCouponRequest,
    _rate_limit: None = Depends(rate_limit("coupon_validate", limit=60, window_seconds=3600)),
    _auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    quote = await CouponRedeemer(db).validate(request.code, request.purpose, request.amount)
    return raise_for_result(quote.as_result())


@router.post("/redeem")
async def redeem_coupon(
    request: RedeemCouponRequest,
    _rate_limit: None = Depends(rate_limit("coupon_redeem", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    result = await CouponRedeemer(db).redeem(request.code, account_id=account.id, purpose=request.purpose)
    return raise_for_result(result)


@router.post("/free-grant")
async def free_grant(
    request: FreeGrantRequest,
    _rate_limit: None = Depends(rate_limit("coupon_free_grant", limit=10, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    result = await CouponRedeemer(db).apply_free_grant(
        account.id,
        request.code,
        request.purpose,
        plan=request.plan,
        words=request.words,
        currency=request.currency,
    )
    return raise_for_result(result)
