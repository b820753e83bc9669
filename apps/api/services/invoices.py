"""Invoice records for settled payments and coupon grants."""

from __future__ import annotations

import logging
import secrets
import uuid
from typing import Any, Dict, List, Optional

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession
from sqlalchemy.future import select

from models.invoice import Invoice
from services.ledger import as_utc, utcnow


logger = logging.getLogger(__name__)


def _invoice_number(account_id: str) -> str:
    stamp = int(utcnow().timestamp() * 1000)
    return f"INV-{stamp}-{account_id[:8]}-{secrets.token_hex(2)}"


def invoice_to_dict(invoice: Invoice) -> Dict[str, Any]:
    created_at = as_utc(invoice.created_at)
    return {
        "id": invoice.id,
        "invoice_number": invoice.invoice_number,
        "invoice_type": invoice.invoice_type,
        "ledger_transaction_id": invoice.ledger_transaction_id,
        "payment_intent_id": invoice.payment_intent_id,
        "amount": invoice.amount,
        "currency": invoice.currency,
        "plan_name": invoice.plan_name,
        "words_purchased": invoice.words_purchased,
        "payment_method": invoice.payment_method,
        "external_reference": invoice.external_reference,
        "created_at": created_at.isoformat() if created_at else None,
    }


class InvoiceEmitter:
    """Writes one receipt per ledger transaction.

    Receipts are a side effect: a failed write is logged and never undoes the
    settlement that triggered it.
    """

    def __init__(self, db: AsyncSession):
        self.db = db

    async def emit(
        self,
        *,
        account_id: str,
        ledger_transaction_id: str,
        invoice_type: str,
        amount: int,
        currency: str,
        payment_method: str,
        plan_name: Optional[str] = None,
        words_purchased: Optional[int] = None,
        payment_intent_id: Optional[str] = None,
        external_reference: Optional[str] = None,
    ) -> Optional[Invoice]:
        try:
            existing = await self.db.execute(
                select(Invoice).where(Invoice.ledger_transaction_id == ledger_transaction_id)
            )
            invoice = existing.scalar_one_or_none()
            if invoice is not None:
                return invoice

            invoice = Invoice(
                id=str(uuid.uuid4()),
                account_id=account_id,
                invoice_number=_invoice_number(account_id),
                invoice_type=invoice_type,
                ledger_transaction_id=ledger_transaction_id,
                payment_intent_id=payment_intent_id,
                amount=int(amount or 0),
                currency=currency,
                plan_name=plan_name,
                words_purchased=words_purchased,
                payment_method=payment_method,
                external_reference=external_reference,
                created_at=utcnow(),
            )
            self.db.add(invoice)
            await self.db.commit()
        except SQLAlchemyError as exc:
            await self.db.rollback()
            logger.warning(
                "invoice_emit_failed account=%s transaction=%s: %s",
                account_id,
                ledger_transaction_id,
                exc,
            )
            return None

        logger.info("invoice_emitted account=%s invoice=%s", account_id, invoice.invoice_number)
        return invoice

    async def list_invoices(self, account_id: str, limit: int = 50) -> List[Dict[str, Any]]:
        result = await self.db.execute(
            select(Invoice)
            .where(Invoice.account_id == account_id)
            .order_by(Invoice.created_at.desc())
            .limit(max(1, min(int(limit), 200)))
        )
        return [invoice_to_dict(invoice) for invoice in result.scalars().all()]
