"""API routes."""

from mpesa_reconciliation.api.routes.callbacks import router as callbacks_router
from mpesa_reconciliation.api.routes.health import router as health_router
from mpesa_reconciliation.api.routes.orders import router as orders_router
from mpesa_reconciliation.api.routes.payments import router as payments_router
from mpesa_reconciliation.api.routes.transactions import router as transactions_router

__all__ = [
    "callbacks_router",
    "health_router",
    "orders_router",
    "payments_router",
    "transactions_router",
]
