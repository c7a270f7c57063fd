"""Order model.

Orders belong to the order subsystem. This package reads them and writes
only ``payment_status`` and ``remaining_balance``, always through the
aggregator.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum

from sqlalchemy import CheckConstraint, Numeric, String
from sqlalchemy.orm import Mapped, mapped_column

from mpesa_reconciliation.models.base import Base, TimestampMixin


class PaymentStatus(str, Enum):
    """Order payment status values."""

    UNPAID = "unpaid"
    PARTIAL = "partial"
    PAID = "paid"
    PENDING = "pending"
    FAILED = "failed"


class Order(Base, TimestampMixin):
    """A customer order as seen by reconciliation."""

    __tablename__ = "orders"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    order_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    total_amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    payment_status: Mapped[str] = mapped_column(
        String(16), nullable=False, default=PaymentStatus.UNPAID.value
    )
    remaining_balance: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    customer_phone: Mapped[str | None] = mapped_column(String(128), nullable=True)

    __table_args__ = (
        CheckConstraint("total_amount >= 0", name="orders_total_nonneg_ck"),
        CheckConstraint(
            "payment_status IN ('unpaid', 'partial', 'paid', 'pending', 'failed')",
            name="orders_payment_status_ck",
        ),
    )
