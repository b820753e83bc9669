"""Billing router: balances, payment intents and gateway settlement."""

from __future__ import annotations

import logging
from typing import Literal, Optional

from fastapi import APIRouter, Depends, Header, HTTPException, Query, Request
from pydantic import BaseModel, Field
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account, ensure_user_scope, get_auth_context
from routers.rate_limit import rate_limit
from services.invoices import InvoiceEmitter
from services.ledger import AccountLedger, balance_summary
from services.ledger_result import raise_for_result
from services.payments import PaymentReconciler

router = APIRouter()
logger = logging.getLogger(__name__)

SIGNATURE_HEADER = "X-Payment-Signature"


class CreateIntentRequest(BaseModel):
    user_id: Optional[str] = None
    purpose: Literal["subscription", "credit_purchase"]
    amount: Optional[int] = Field(default=None, ge=1)
    currency: Optional[str] = Field(default=None, min_length=3, max_length=3)
    plan: Optional[str] = None
    words: Optional[int] = Field(default=None, ge=1, le=1_000_000)
    coupon_code: Optional[str] = Field(default=None, max_length=64)


class FailIntentRequest(BaseModel):
    reason: Optional[str] = Field(default=None, max_length=500)


class SettleRequest(BaseModel):
    intent_id: str
    gateway_payment_id: str = Field(min_length=1, max_length=128)
    external_reference: str = Field(min_length=1, max_length=128)
    signature: Optional[str] = None


async def _owned_intent(reconciler: PaymentReconciler, intent_id: str, account_id: str):
    intent = await reconciler.get_intent(intent_id)
    if intent is None or intent.account_id != account_id:
        raise HTTPException(
            status_code=404,
            detail={"error": "UNKNOWN_INTENT", "message": "Payment intent not found"},
        )
    return intent


@router.get("/balance")
async def get_balance(
    user_id: Optional[str] = Query(default=None),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth.user_id, user_id)
    account = await ensure_account(db, auth)
    return balance_summary(account)


@router.get("/transactions")
async def list_transactions(
    limit: int = Query(default=30, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    return {"transactions": await AccountLedger(db).recent_transactions(account.id, limit=limit)}


@router.get("/invoices")
async def list_invoices(
    limit: int = Query(default=50, ge=1, le=200),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    return {"invoices": await InvoiceEmitter(db).list_invoices(account.id, limit=limit)}


@router.post("/intents")
async def create_intent(
    request: CreateIntentRequest,
    _rate_limit: None = Depends(rate_limit("billing_intent", limit=30, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    ensure_user_scope(auth.user_id, request.user_id)
    account = await ensure_account(db, auth)
    result = await PaymentReconciler(db).create_intent(
        account.id,
        request.purpose,
        request.amount,
        request.currency,
        plan=request.plan,
        words=request.words,
        coupon_code=request.coupon_code,
    )
    return raise_for_result(result)


@router.post("/intents/{intent_id}/fail")
async def fail_intent(
    intent_id: str,
    request: FailIntentRequest,
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    reconciler = PaymentReconciler(db)
    await _owned_intent(reconciler, intent_id, account.id)
    return raise_for_result(await reconciler.mark_failed(intent_id, request.reason))


@router.post("/settle")
async def settle_payment(
    request: SettleRequest,
    http_request: Request,
    signature_header: Optional[str] = Header(default=None, alias=SIGNATURE_HEADER),
    _rate_limit: None = Depends(rate_limit("billing_settle", limit=120, window_seconds=60)),
    db: AsyncSession = Depends(get_db),
):
    """Gateway confirmation; the HMAC over ``<reference>|<payment id>`` is the credential."""
    signature = signature_header or request.signature
    if not signature:
        raise HTTPException(
            status_code=401,
            detail={"error": "SIGNATURE_INVALID", "message": f"Missing {SIGNATURE_HEADER} header"},
        )
    payload = f"{request.external_reference}|{request.gateway_payment_id}"
    result = await PaymentReconciler(db).verify_and_settle(request.intent_id, signature, payload)
    if not result.ok:
        client = http_request.client.host if http_request.client else "unknown"
        logger.warning("settle_rejected intent=%s client=%s error=%s", request.intent_id, client, result.kind)
    return raise_for_result(result)


@router.post("/reconcile/{intent_id}")
async def reconcile_payment(
    intent_id: str,
    _rate_limit: None = Depends(rate_limit("billing_reconcile", limit=20, window_seconds=3600)),
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    reconciler = PaymentReconciler(db)
    await _owned_intent(reconciler, intent_id, account.id)
    return raise_for_result(await reconciler.retry_reconciliation(intent_id))
