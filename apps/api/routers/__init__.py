"""Routers package."""

from . import (
    health,
    billing,
    wallet,
    topup,
    promo,
    admin,
)
