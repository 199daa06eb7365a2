"""Routers package."""

from . import (
    health,
    account,
    credits,
    subscriptions,
    payments,
    promotions,
    internal,
)
