"""API routes."""

from bnpl_engine.api.routes.early_payments import router as early_payments_router
from bnpl_engine.api.routes.health import router as health_router
from bnpl_engine.api.routes.payments import router as payments_router
from bnpl_engine.api.routes.transactions import router as transactions_router
from bnpl_engine.api.routes.webhooks import router as webhooks_router

__all__ = [
    "early_payments_router",
    "health_router",
    "payments_router",
    "transactions_router",
    "webhooks_router",
]
