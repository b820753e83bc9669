"""Models package."""

from .user import User
from .account import Account
from .ledger_transaction import LedgerTransaction
from .payment_intent import PaymentIntent
from .coupon import Coupon, CouponRedemption
from .invoice import Invoice
