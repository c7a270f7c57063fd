"""Order repository.

Orders are owned by the order subsystem. Reconciliation needs a narrow view:
read an order, write its two payment fields, enumerate ids for bulk repair,
and find unpaid orders for a phone number.
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Protocol

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_reconciliation.models import Order, PaymentStatus
from mpesa_reconciliation.phone import PhoneNormalizer


@dataclass(frozen=True)
class OrderSnapshot:
    """Read-only view of an order."""

    id: str
    total_amount: Decimal
    payment_status: str
    remaining_balance: Decimal
    customer_phone: str | None = None
    customer_name: str | None = None
    order_number: str | None = None

    @property
    def is_paid(self) -> bool:
        return self.payment_status == PaymentStatus.PAID.value

    @classmethod
    def from_model(cls, order: Order) -> OrderSnapshot:
        return cls(
            id=order.id,
            total_amount=order.total_amount,
            payment_status=order.payment_status,
            remaining_balance=order.remaining_balance,
            customer_phone=order.customer_phone,
            customer_name=order.customer_name,
            order_number=order.order_number,
        )


class OrderRepository(Protocol):
    """What reconciliation consumes from the order subsystem."""

    async def get_by_id(self, order_id: str) -> OrderSnapshot | None:
        ...

    async def get_many(self, order_ids: list[str]) -> dict[str, OrderSnapshot]:
        ...

    async def update_payment_fields(
        self, order_id: str, payment_status: str, remaining_balance: Decimal
    ) -> None:
        ...

    async def list_order_ids(self) -> list[str]:
        ...

    async def list_unpaid_by_phone(self, phone_number: str) -> list[OrderSnapshot]:
        ...


class SqlOrderRepository:
    """OrderRepository over the ``orders`` table."""

    def __init__(self, session: AsyncSession, normalizer: PhoneNormalizer | None = None):
        self.session = session
        self.normalizer = normalizer or PhoneNormalizer()

    async def get_by_id(self, order_id: str) -> OrderSnapshot | None:
        order = await self.session.get(Order, order_id, populate_existing=True)
        return OrderSnapshot.from_model(order) if order else None

    async def get_many(self, order_ids: list[str]) -> dict[str, OrderSnapshot]:
        if not order_ids:
            return {}
        result = await self.session.execute(select(Order).where(Order.id.in_(set(order_ids))))
        return {o.id: OrderSnapshot.from_model(o) for o in result.scalars()}

    async def update_payment_fields(
        self, order_id: str, payment_status: str, remaining_balance: Decimal
    ) -> None:
        await self.session.execute(
            update(Order)
            .where(Order.id == order_id)
            .values(payment_status=payment_status, remaining_balance=remaining_balance)
        )

    async def list_order_ids(self) -> list[str]:
        result = await self.session.execute(select(Order.id).order_by(Order.id))
        return list(result.scalars())

    async def list_unpaid_by_phone(self, phone_number: str) -> list[OrderSnapshot]:
        """Orders not fully paid whose customer phone is the same subscriber.

        Stored phones are free text, so the comparison happens after
        canonicalization rather than in SQL.
        """
        canonical = self.normalizer.canonical_or_none(phone_number)
        if canonical is None:
            return []
        result = await self.session.execute(
            select(Order)
            .where(Order.payment_status != PaymentStatus.PAID.value)
            .order_by(Order.created_at.desc())
        )
        return [
            OrderSnapshot.from_model(o)
            for o in result.scalars()
            if self.normalizer.canonical_or_none(o.customer_phone) == canonical
        ]
