"""Routers package."""

from . import (
    health,
    billing,
    usage,
    coupons,
    subscriptions,
)
