# API Routes Module
from app.api.routes import (
    auth,
    plans,
    credits,
    subscriptions,
    payments,
    webhooks,
    admin,
)

__all__ = [
    "auth",
    "plans",
    "credits",
    "subscriptions",
    "payments",
    "webhooks",
    "admin",
]
