"""Coupon and redemption models."""

import uuid

from sqlalchemy import Boolean, CheckConstraint, Column, DateTime, ForeignKey, Integer, String
from sqlalchemy.orm import relationship
from sqlalchemy.sql import func

from database import Base


class Coupon(Base):
    """Discount code with a bounded number of uses."""

    __tablename__ = "coupons"
    __table_args__ = (
        CheckConstraint("used_count >= 0", name="ck_coupons_used_count_non_negative"),
        CheckConstraint(
            "max_uses IS NULL OR used_count <= max_uses",
            name="ck_coupons_used_count_within_max_uses",
        ),
    )

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    code = Column(String, nullable=False, unique=True, index=True)  # stored upper-case
    discount_type = Column(String, nullable=False)  # percentage, fixed
    discount_value = Column(Integer, nullable=False)
    max_uses = Column(Integer, nullable=True)  # NULL means unlimited
    used_count = Column(Integer, nullable=False, default=0)
    expires_at = Column(DateTime(timezone=True), nullable=True)
    applicable_purpose = Column(String, nullable=False, default="both")  # subscription, credit, both
    active = Column(Boolean, nullable=False, default=True)
    last_used_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    redemptions = relationship("CouponRedemption", back_populates="coupon", cascade="all, delete-orphan")


class CouponRedemption(Base):
    """One successful use of a coupon."""

    __tablename__ = "coupon_redemptions"

    id = Column(String, primary_key=True, default=lambda: str(uuid.uuid4()))
    coupon_id = Column(String, ForeignKey("coupons.id"), nullable=False, index=True)
    account_id = Column(String, ForeignKey("accounts.id"), nullable=True, index=True)
    purpose = Column(String, nullable=True)
    original_amount = Column(Integer, nullable=True)
    discount_amount = Column(Integer, nullable=True)
    released_at = Column(DateTime(timezone=True), nullable=True)
    created_at = Column(DateTime(timezone=True), server_default=func.now())

    coupon = relationship("Coupon", back_populates="redemptions")
