"""Invoice model: receipt for a completed ledger credit."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Invoice(Base):
    """Immutable receipt, one per ledger transaction."""

    __tablename__ = "invoices"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    invoice_number = Column(String, nullable=False, unique=True)
    invoice_type = Column(String, nullable=False)  # subscription, credit
    ledger_transaction_id = Column(String, ForeignKey("ledger_transactions.id"), nullable=False, unique=True)
    payment_intent_id = Column(String, ForeignKey("payment_intents.id"), nullable=True, index=True)
    amount = Column(Integer, nullable=False, default=0)
    currency = Column(String, nullable=False)
    plan_name = Column(String, nullable=True)
    words_purchased = Column(Integer, nullable=True)
    payment_method = Column(String, nullable=False)  # gateway, coupon
    external_reference = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="invoices")
