"""Order payment aggregator.

The only writer of an order's ``payment_status`` and ``remaining_balance``.
Both are derived from the sum of amounts connected to the order:

    paid       sum >= total
    partial    0 < sum < total
    unpaid     sum == 0

    remaining_balance = max(total - sum, 0)

Recomputation reads only committed transaction rows and the order total, so
running it twice gives the same answer.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any

from mpesa_reconciliation.errors import NotFoundError
from mpesa_reconciliation.models import PaymentStatus
from mpesa_reconciliation.services.order_repository import OrderRepository
from mpesa_reconciliation.services.transaction_store import TransactionStore

logger = logging.getLogger(__name__)

CENT = Decimal("0.01")


@dataclass(frozen=True)
class PaymentFields:
    """Derived payment fields for one order."""

    payment_status: str
    remaining_balance: Decimal


def compute_payment_fields(total_amount: Decimal, total_paid: Decimal) -> PaymentFields:
    """Derive payment status and remaining balance.

    An order with a zero total is paid.
    """
    total = Decimal(total_amount).quantize(CENT)
    paid = Decimal(total_paid).quantize(CENT)

    if paid >= total:
        status = PaymentStatus.PAID
    elif paid > 0:
        status = PaymentStatus.PARTIAL
    else:
        status = PaymentStatus.UNPAID

    remaining = max(total - paid, Decimal("0.00"))
    return PaymentFields(payment_status=status.value, remaining_balance=remaining.quantize(CENT))


@dataclass(frozen=True)
class RecomputeResult:
    """Outcome of recomputing one order."""

    order_id: str
    total_amount: Decimal
    total_paid: Decimal
    payment_status: str
    remaining_balance: Decimal
    previous_status: str
    previous_balance: Decimal
    transaction_count: int

    @property
    def changed(self) -> bool:
        return (
            self.payment_status != self.previous_status
            or self.remaining_balance != Decimal(self.previous_balance).quantize(CENT)
        )

    def to_dict(self) -> dict[str, Any]:
        return {
            "order_id": self.order_id,
            "total_amount": str(self.total_amount),
            "total_paid": str(self.total_paid),
            "payment_status": self.payment_status,
            "remaining_balance": str(self.remaining_balance),
            "previous_status": self.previous_status,
            "previous_balance": str(self.previous_balance),
            "transaction_count": self.transaction_count,
            "changed": self.changed,
        }


@dataclass
class RecomputeAllResult:
    """Outcome of a bulk recompute. Per-order failures are collected."""

    full: bool
    results: list[RecomputeResult] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def processed(self) -> int:
        return len(self.results)

    @property
    def changed(self) -> int:
        return sum(1 for r in self.results if r.changed)

    @property
    def success(self) -> bool:
        return not self.errors

    def to_dict(self) -> dict[str, Any]:
        return {
            "full": self.full,
            "processed": self.processed,
            "changed": self.changed,
            "errors": self.errors,
            "results": [r.to_dict() for r in self.results if r.changed],
        }


class OrderPaymentAggregator:
    """Recomputes order payment fields inside the caller's unit of work."""

    def __init__(self, store: TransactionStore, orders: OrderRepository):
        self.store = store
        self.orders = orders

    async def recompute_for_order(self, order_id: str) -> RecomputeResult:
        """Recompute and persist one order's payment fields.

        Raises:
            NotFoundError: the order does not exist.
        """
        order = await self.orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)

        transactions = await self.store.list_for_order(order_id)
        total_paid = sum((Decimal(t.amount_paid) for t in transactions), Decimal("0")).quantize(CENT)
        fields = compute_payment_fields(order.total_amount, total_paid)

        await self.orders.update_payment_fields(
            order_id, fields.payment_status, fields.remaining_balance
        )

        result = RecomputeResult(
            order_id=order_id,
            total_amount=Decimal(order.total_amount).quantize(CENT),
            total_paid=total_paid,
            payment_status=fields.payment_status,
            remaining_balance=fields.remaining_balance,
            previous_status=order.payment_status,
            previous_balance=order.remaining_balance,
            transaction_count=len(transactions),
        )
        if result.changed:
            logger.info(
                "Order payment recomputed: order=%s %s -> %s paid=%s remaining=%s",
                order_id,
                order.payment_status,
                fields.payment_status,
                total_paid,
                fields.remaining_balance,
            )
        return result

    async def recompute_if_exists(self, order_id: str | None) -> RecomputeResult | None:
        """Recompute an order, skipping ids that no longer resolve."""
        if not order_id:
            return None
        if await self.orders.get_by_id(order_id) is None:
            logger.warning("Skipping recompute for missing order: order=%s", order_id)
            return None
        return await self.recompute_for_order(order_id)

    async def target_order_ids(self, full: bool = False) -> list[str]:
        """Orders a bulk recompute visits.

        full=False: orders with at least one connected transaction.
        full=True: every order (resets orders whose transactions were all removed).
        """
        if full:
            return await self.orders.list_order_ids()
        ids = await self.store.connected_order_ids()
        existing = await self.orders.get_many(ids)
        return [i for i in ids if i in existing]
