"""Plan catalog and subscription status endpoints."""

from fastapi import APIRouter, Depends
from sqlalchemy.ext.asyncio import AsyncSession

from database import get_db
from routers.auth_scope import AuthContext, ensure_account, get_auth_context
from services.ledger import balance_summary
from services.plan_catalog import catalog_payload
from services.subscriptions import state_payload

router = APIRouter()


@router.get("/plans")
async def list_plans():
    return catalog_payload()


@router.get("/subscriptions/status")
async def subscription_status(
    auth: AuthContext = Depends(get_auth_context),
    db: AsyncSession = Depends(get_db),
):
    account = await ensure_account(db, auth)
    return {**state_payload(account), "balance": balance_summary(account)}
