"""LedgerTransaction model: append-only audit log of balance changes."""

import uuid

from sqlalchemy import Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class LedgerTransaction(Base):
    """Immutable ledger entry.

    Deltas are signed changes to the available balance: usage is negative,
    refunds, renewals and credits are positive. ``external_reference`` is the
    idempotency key for replayed external events.
    """

    __tablename__ = "ledger_transactions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    account_id = Column(String, ForeignKey("accounts.id"), nullable=False, index=True)
    delta_plan_quota = Column(Integer, nullable=False, default=0)
    delta_purchased_credit = Column(Integer, nullable=False, default=0)
    reason = Column(String, nullable=False)  # usage, refund, credit, renewal, activation, expiry
    external_reference = Column(String, nullable=True, unique=True)
    related_transaction_id = Column(String, ForeignKey("ledger_transactions.id"), nullable=True, index=True)
    plan_quota_used_after = Column(Integer, nullable=True)
    purchased_credit_after = Column(Integer, nullable=True)
    note = Column(String, nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now(), index=True)

    account = relationship("Account", back_populates="transactions")
