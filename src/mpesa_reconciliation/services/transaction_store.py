"""Transaction store.

Append-only ledger of gateway-reported payments. Amounts, ids and dates are
immutable once written; only connection metadata changes.

The store does no locking and no committing. Callers own the unit of work and
serialize per transaction id (see ReconciliationResolver).
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal
from typing import Union

from sqlalchemy import select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_reconciliation.errors import DataIntegrityError, NotFoundError, ValidationError
from mpesa_reconciliation.models import MpesaTransaction, TransactionType, utcnow
from mpesa_reconciliation.services.order_repository import OrderSnapshot

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class TransactionData:
    """Input for recording a transaction."""

    transaction_id: str
    amount: Decimal
    phone_number: str
    transaction_type: str = TransactionType.C2B.value
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    customer_name: str | None = None
    bill_ref_number: str | None = None
    checkout_request_id: str | None = None
    notes: str | None = None

    def __post_init__(self) -> None:
        """Validate input."""
        if not self.transaction_id or not self.transaction_id.strip():
            raise ValidationError("Transaction id is required")
        if self.amount is None or Decimal(self.amount) <= 0:
            raise ValidationError("Amount must be greater than zero", amount=str(self.amount))
        if self.transaction_type not in {t.value for t in TransactionType}:
            raise ValidationError(
                f"Unknown transaction type '{self.transaction_type}'",
                transaction_type=self.transaction_type,
            )


@dataclass(frozen=True)
class RecordResult:
    """Result of recording a transaction.

    IMPORTANT: check `is_new`. A duplicate delivery returns the existing row
    untouched, connection metadata included.
    """

    transaction: MpesaTransaction
    is_new: bool

    @property
    def was_duplicate(self) -> bool:
        return not self.is_new


@dataclass(frozen=True)
class UnresolvedOrderRef:
    """A connection whose order id does not resolve to a live order."""

    order_id: str | None


@dataclass(frozen=True)
class ResolvedOrderRef:
    """A connection to an order that exists."""

    order: OrderSnapshot

    @property
    def order_id(self) -> str:
        return self.order.id


OrderRef = Union[UnresolvedOrderRef, ResolvedOrderRef]


def resolve_connection(
    txn: MpesaTransaction, orders: dict[str, OrderSnapshot]
) -> OrderRef | None:
    """Resolve a transaction's order reference.

    Returns None for unconnected transactions.
    """
    if not txn.is_connected_to_order:
        return None
    order = orders.get(txn.connected_order_id) if txn.connected_order_id else None
    if order is None:
        return UnresolvedOrderRef(txn.connected_order_id)
    return ResolvedOrderRef(order)


class TransactionStore:
    """Data access for MpesaTransaction rows."""

    def __init__(self, session: AsyncSession):
        self.session = session

    async def get(self, transaction_id: str) -> MpesaTransaction | None:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.transaction_id == transaction_id)
            .execution_options(populate_existing=True)
        )
        return result.scalar_one_or_none()

    async def require(self, transaction_id: str) -> MpesaTransaction:
        txn = await self.get(transaction_id)
        if txn is None:
            raise NotFoundError("Transaction", transaction_id)
        return txn

    async def get_by_checkout_request_id(self, checkout_request_id: str) -> MpesaTransaction | None:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.checkout_request_id == checkout_request_id)
            .order_by(MpesaTransaction.created_at)
            .limit(1)
        )
        return result.scalar_one_or_none()

    async def record_transaction(self, data: TransactionData) -> RecordResult:
        """Idempotent insert keyed by transaction_id.

        Must be the first write of its unit of work: a unique-key race is
        resolved by rolling the session back and re-reading the winner.

        Raises:
            DataIntegrityError: the id exists with a different amount.
        """
        existing = await self.get(data.transaction_id)
        if existing is not None:
            return self._duplicate(existing, data)

        txn = MpesaTransaction(
            transaction_id=data.transaction_id,
            mpesa_receipt_number=data.receipt_number or data.transaction_id,
            transaction_date=data.transaction_date or utcnow(),
            phone_number=data.phone_number,
            amount_paid=Decimal(data.amount),
            transaction_type=data.transaction_type,
            customer_name=data.customer_name,
            bill_ref_number=data.bill_ref_number,
            checkout_request_id=data.checkout_request_id,
            is_connected_to_order=False,
            notes=data.notes,
        )
        self.session.add(txn)
        try:
            await self.session.flush()
        except IntegrityError:
            # Another process inserted the same id first
            await self.session.rollback()
            existing = await self.get(data.transaction_id)
            if existing is None:
                raise
            return self._duplicate(existing, data)

        logger.info(
            "Transaction recorded: id=%s type=%s amount=%s",
            txn.transaction_id,
            txn.transaction_type,
            txn.amount_paid,
        )
        return RecordResult(transaction=txn, is_new=True)

    def _duplicate(self, existing: MpesaTransaction, data: TransactionData) -> RecordResult:
        if Decimal(existing.amount_paid) != Decimal(data.amount):
            logger.error(
                "Transaction redelivered with different amount: id=%s stored=%s received=%s",
                existing.transaction_id,
                existing.amount_paid,
                data.amount,
            )
            raise DataIntegrityError(
                f"Transaction '{existing.transaction_id}' already recorded with a different amount",
                transaction_id=existing.transaction_id,
                stored_amount=str(existing.amount_paid),
                received_amount=str(data.amount),
            )
        logger.info("Duplicate transaction delivery ignored: id=%s", existing.transaction_id)
        return RecordResult(transaction=existing, is_new=False)

    async def set_connection(
        self,
        txn: MpesaTransaction,
        order_id: str,
        connected_by: str,
        notes: str | None = None,
    ) -> str | None:
        """Point a transaction at an order. Returns the previous order id."""
        previous = txn.connected_order_id if txn.is_connected_to_order else None
        txn.is_connected_to_order = True
        txn.connected_order_id = order_id
        txn.connected_at = utcnow()
        txn.connected_by = connected_by
        if notes is not None:
            txn.notes = notes
        await self.session.flush()
        return previous

    async def clear_connection(self, txn: MpesaTransaction, notes: str | None = None) -> str | None:
        """Detach a transaction from its order. Returns the previous order id."""
        previous = txn.connected_order_id
        txn.is_connected_to_order = False
        txn.connected_order_id = None
        txn.connected_at = None
        txn.connected_by = None
        if notes is not None:
            txn.notes = notes
        await self.session.flush()
        return previous

    async def list_unconnected(self) -> list[MpesaTransaction]:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.is_connected_to_order.is_(False))
            .order_by(MpesaTransaction.transaction_date.desc())
        )
        return list(result.scalars())

    async def list_connected(self) -> list[MpesaTransaction]:
        """All transactions flagged connected, broken links included."""
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(MpesaTransaction.is_connected_to_order.is_(True))
            .order_by(MpesaTransaction.transaction_date.desc())
        )
        return list(result.scalars())

    async def list_for_order(self, order_id: str) -> list[MpesaTransaction]:
        result = await self.session.execute(
            select(MpesaTransaction)
            .where(
                MpesaTransaction.is_connected_to_order.is_(True),
                MpesaTransaction.connected_order_id == order_id,
            )
            .order_by(MpesaTransaction.transaction_date)
        )
        return list(result.scalars())

    async def connected_order_ids(self) -> list[str]:
        result = await self.session.execute(
            select(MpesaTransaction.connected_order_id)
            .where(
                MpesaTransaction.is_connected_to_order.is_(True),
                MpesaTransaction.connected_order_id.is_not(None),
            )
            .distinct()
        )
        return sorted(result.scalars())
