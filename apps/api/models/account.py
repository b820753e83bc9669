"""Account model holding the word balances of one user."""

import uuid

from sqlalchemy import CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Account(Base):
    """Plan quota plus never-expiring purchased credit.

    Rows are only written through ``services.ledger.AccountLedger``; every write
    is guarded by ``version``.
    """

    __tablename__ = "accounts"
    __table_args__ = (
        CheckConstraint("plan_quota_used >= 0", name="ck_accounts_plan_quota_used_non_negative"),
        CheckConstraint("plan_quota_used <= plan_quota_limit", name="ck_accounts_plan_quota_used_within_limit"),
        CheckConstraint("purchased_credit >= 0", name="ck_accounts_purchased_credit_non_negative"),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    user_id = Column(String, ForeignKey("users.id"), nullable=False, unique=True, index=True)
    plan = Column(String, nullable=False, default="free")  # free, pro, premium
    status = Column(String, nullable=False, default="active")  # active, expired
    plan_quota_limit = Column(Integer, nullable=False, default=0)
    plan_quota_used = Column(Integer, nullable=False, default=0)
    purchased_credit = Column(Integer, nullable=False, default=0)
    upload_limit_mb = Column(Integer, nullable=False, default=0)
    max_purchasable_credit = Column(Integer, nullable=False, default=0)
    cycle_start = Column(DateTime(timezone=True), nullable=True)
    cycle_expires_at = Column(DateTime(timezone=True), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=0)
    created_at = Column(DateTime(timezone=True), server_default=func.now())
    updated_at = Column(DateTime(timezone=True), onupdate=func.now())

    user = relationship("User", back_populates="account")
    transactions = relationship("LedgerTransaction", back_populates="account", cascade="all, delete-orphan")
    payment_intents = relationship("PaymentIntent", back_populates="account", cascade="all, delete-orphan")
    invoices = relationship("Invoice", back_populates="account", cascade="all, delete-orphan")
