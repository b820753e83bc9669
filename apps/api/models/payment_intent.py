"""PaymentIntent model for gateway payments."""

import uuid

from sqlalchemy import Boolean, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class PaymentIntent(Base):
    """Payment recorded before the gateway is contacted."""

    __tablename__ = "payment_intents"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    amount = Column(Integer, nullable=False)  # minor units, after discount
    currency = Column(String, nullable=False)
    purpose = Column(String, nullable=False)  # subscription, credit_purchase
    status = Column(String, nullable=False, default="pending", index=True)  # pending, completed, failed
    external_reference = Column(String, nullable=False, unique=True, index=True)
    plan = Column(String, nullable=True)
    words = Column(Integer, nullable=True)
    coupon_code = Column(String, nullable=True)
    coupon_redemption_id = Column(String, ForeignKey("coupon_redemptions.id"), nullable=True)
    original_amount = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=False, default=0)
    gateway_payment_id = Column(String, nullable=True)
    failure_reason = Column(String, nullable=True)
    settled_transaction_id = Column(String, ForeignKey("ledger_transactions.id"), nullable=True)
    needs_reconciliation = Column(Boolean, nullable=False, default=False, index=True)
    reconciliation_error = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    completed_at = Column(DateTime(timezone=True), nullable=True)
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    account = relationship("Account", back_populates="payment_intents")
