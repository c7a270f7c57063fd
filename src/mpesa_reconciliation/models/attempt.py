"""Push-payment attempts.

One row per STK push the gateway accepted. The row is what ties a
checkout_request_id back to the order that asked for it, so a callback can
be linked by any worker, before or after a restart.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from uuid import UUID, uuid4

from sqlalchemy import CheckConstraint, DateTime, Index, Integer, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mpesa_reconciliation.models.base import Base, TimestampMixin


class PaymentAttemptRecord(Base, TimestampMixin):
    """Durable copy of a PaymentAttempt."""

    __tablename__ = "payment_attempt"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    checkout_request_id: Mapped[str] = mapped_column(String(128), nullable=False, unique=True)
    order_id: Mapped[str] = mapped_column(String(64), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(32), nullable=False)
    amount: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    state: Mapped[str] = mapped_column(String(16), nullable=False, default="pending")
    attempt_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    result_code: Mapped[str | None] = mapped_column(String(32), nullable=True)
    result_desc: Mapped[str | None] = mapped_column(Text, nullable=True)
    completed_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    acknowledged_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    acknowledged_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)

    __table_args__ = (
        CheckConstraint(
            "state IN ('pending', 'success', 'failed', 'timed_out', 'superseded')",
            name="payment_attempt_state_ck",
        ),
        Index("payment_attempt_order_idx", "order_id", "state"),
    )
