"""ORM models."""

from mpesa_reconciliation.models.attempt import PaymentAttemptRecord
from mpesa_reconciliation.models.base import Base, TimestampMixin, utcnow
from mpesa_reconciliation.models.order import Order, PaymentStatus
from mpesa_reconciliation.models.transaction import (
    AuditAction,
    MpesaTransaction,
    PaymentAuditLog,
    TransactionType,
)

__all__ = [
    "AuditAction",
    "Base",
    "MpesaTransaction",
    "Order",
    "PaymentAttemptRecord",
    "PaymentAuditLog",
    "PaymentStatus",
    "TimestampMixin",
    "TransactionType",
    "utcnow",
]
