"""Usage router: word deductions and refunds."""

from __future__ import annotations

from typing import Optional

from fastapi import APIRouter, Depends
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.ledger import AccountLedger
from services.ledger_result import raise_for_result

router = APIRouter()


class ReserveRequest(BaseModel):
    user_id: Optional[str] = None
    words: int = Field(ge=0, le=10_000_000)
    request_id: Optional[str] = Field(default=None, max_length=128)
    note: Optional[str] = Field(default=None, max_length=255)


class RefundRequest(BaseModel):
    user_id: Optional[str] = None
    words: int = Field(ge=0, le=10_000_000)
    transaction_id: str


@router.post("/reserve")
async def reserve_words(
    request: ReserveRequest,
    _rate_limit: None = Depends(rate_limit("usage_reserve", limit=600, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth.user_id, request.user_id)
    account = await ensure_account(db, auth)
    reference = f"usage:{account.id}:{request.request_id}" if request.request_id else None
    result = await AccountLedger(db).reserve_and_commit(
        account.id,
        request.words,
        external_reference=reference,
        note=request.note,
    )
    return raise_for_result(result)


@router.post("/refund")
async def refund_words(
    request: RefundRequest,
    _rate_limit: None = Depends(rate_limit("usage_refund", limit=120, window_seconds=60)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth.user_id, request.user_id)
    account = await ensure_account(db, auth)
    result = await AccountLedger(db).refund(account.id, request.words, request.transaction_id)
    return raise_for_result(result)
