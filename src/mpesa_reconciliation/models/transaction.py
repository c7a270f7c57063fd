"""M-Pesa transaction ledger and payment audit log.

Transactions are append-only facts reported by the gateway (or entered by an
operator). Only the connection metadata changes after creation:
is_connected_to_order, connected_order_id, connected_at, connected_by, notes.

connected_order_id deliberately carries no foreign key. Orders live in
another subsystem and may be deleted underneath a connected transaction;
that state is the "broken link" the resolver reports.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from enum import Enum
from uuid import UUID, uuid4

from sqlalchemy import Boolean, CheckConstraint, DateTime, Index, Numeric, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from mpesa_reconciliation.models.base import Base, TimestampMixin, utcnow


class TransactionType(str, Enum):
    """How the payment reached us."""

    C2B = "C2B"
    STK_PUSH = "STK_PUSH"


class AuditAction(str, Enum):
    """Payment audit log actions."""

    AUTO_MATCH = "auto_match"
    MANUAL_LINK = "manual_link"
    MANUAL_UNLINK = "manual_unlink"
    MANUAL_ENTRY = "manual_entry"


class MpesaTransaction(Base, TimestampMixin):
    """A gateway-reported payment."""

    __tablename__ = "mpesa_transaction"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False, unique=True)
    mpesa_receipt_number: Mapped[str] = mapped_column(String(64), nullable=False)
    transaction_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    phone_number: Mapped[str] = mapped_column(String(128), nullable=False)
    amount_paid: Mapped[Decimal] = mapped_column(Numeric(14, 2), nullable=False)
    transaction_type: Mapped[str] = mapped_column(String(16), nullable=False)
    customer_name: Mapped[str | None] = mapped_column(String(255), nullable=True)
    bill_ref_number: Mapped[str | None] = mapped_column(String(64), nullable=True)
    checkout_request_id: Mapped[str | None] = mapped_column(String(128), nullable=True)
    is_connected_to_order: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False)
    connected_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    connected_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    connected_by: Mapped[str | None] = mapped_column(String(128), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)

    __table_args__ = (
        CheckConstraint("amount_paid > 0", name="mpesa_transaction_amount_pos_ck"),
        CheckConstraint(
            "transaction_type IN ('C2B', 'STK_PUSH')",
            name="mpesa_transaction_type_ck",
        ),
        Index("mpesa_transaction_order_idx", "connected_order_id"),
        Index("mpesa_transaction_checkout_idx", "checkout_request_id"),
    )


class PaymentAuditLog(Base):
    """One row per link, unlink, auto-match or manual entry."""

    __tablename__ = "payment_audit_log"

    id: Mapped[UUID] = mapped_column(primary_key=True, default=uuid4)
    action: Mapped[str] = mapped_column(String(32), nullable=False)
    transaction_id: Mapped[str] = mapped_column(String(64), nullable=False)
    order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    actor: Mapped[str] = mapped_column(String(128), nullable=False)
    amount: Mapped[Decimal | None] = mapped_column(Numeric(14, 2), nullable=True)
    phone_number: Mapped[str | None] = mapped_column(String(128), nullable=True)
    previous_order_id: Mapped[str | None] = mapped_column(String(64), nullable=True)
    previous_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    new_status: Mapped[str | None] = mapped_column(String(16), nullable=True)
    notes: Mapped[str | None] = mapped_column(Text, nullable=True)
    created_at: Mapped[datetime] = mapped_column(
        DateTime(timezone=True), default=utcnow, nullable=False
    )

    __table_args__ = (
        CheckConstraint(
            "action IN ('auto_match', 'manual_link', 'manual_unlink', 'manual_entry')",
            name="payment_audit_log_action_ck",
        ),
        Index("payment_audit_log_txn_idx", "transaction_id"),
    )
