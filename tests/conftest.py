"""Pytest fixtures for reconciliation tests."""

from __future__ import annotations

from collections.abc import AsyncGenerator, Awaitable, Callable
from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from mpesa_reconciliation.config import PollerConfig
from mpesa_reconciliation.database import create_schema, make_session_factory, session_scope
from mpesa_reconciliation.gateway import PaymentGatewayClient, StubGateway
from mpesa_reconciliation.locking import KeyedLocks
from mpesa_reconciliation.models import Order
from mpesa_reconciliation.phone import PhoneNormalizer
from mpesa_reconciliation.services import (
    PaymentService,
    ReconciliationResolver,
    StatusPoller,
    TransactionData,
)

OrderFactory = Callable[..., Awaitable[Order]]
TransactionFactory = Callable[..., Awaitable[str]]


@pytest_asyncio.fixture
async def engine(tmp_path) -> AsyncGenerator[AsyncEngine, None]:
    """Throwaway SQLite database per test."""
    engine = create_async_engine(f"sqlite+aiosqlite:///{tmp_path / 'test.db'}", echo=False)
    await create_schema(engine)
    yield engine
    await engine.dispose()


@pytest.fixture
def session_factory(engine: AsyncEngine) -> async_sessionmaker[AsyncSession]:
    return make_session_factory(engine)


@pytest.fixture
def normalizer() -> PhoneNormalizer:
    return PhoneNormalizer()


@pytest.fixture
def resolver(session_factory, normalizer) -> ReconciliationResolver:
    return ReconciliationResolver(session_factory, normalizer=normalizer, locks=KeyedLocks())


@pytest.fixture
def gateway() -> StubGateway:
    return StubGateway()


@pytest.fixture
def poller_config() -> PollerConfig:
    """No waiting between checks; 30 checks like production."""
    return PollerConfig(initial_delay_seconds=0, interval_seconds=0, max_attempts=30)


@pytest_asyncio.fixture
async def poller(gateway, normalizer, poller_config) -> AsyncGenerator[StatusPoller, None]:
    poller = StatusPoller(PaymentGatewayClient(gateway, normalizer), poller_config)
    yield poller
    await poller.shutdown()


@pytest.fixture
def payment_service(gateway, normalizer, poller, resolver) -> PaymentService:
    return PaymentService(PaymentGatewayClient(gateway, normalizer), poller, resolver, normalizer)


@pytest.fixture
def make_order(session_factory) -> OrderFactory:
    """Insert an order with its payment fields in the unpaid state."""

    async def _make(
        order_id: str,
        total: str | Decimal = "1200.00",
        phone: str | None = "0712345678",
        name: str | None = "Jane Wanjiku",
    ) -> Order:
        total = Decimal(str(total))
        order = Order(
            id=order_id,
            order_number=f"#{order_id}",
            total_amount=total,
            payment_status="unpaid",
            remaining_balance=total,
            customer_name=name,
            customer_phone=phone,
        )
        async with session_scope(session_factory) as session:
            session.add(order)
        return order

    return _make


@pytest.fixture
def make_transaction(resolver) -> TransactionFactory:
    """Record a C2B transaction through the resolver; returns its id."""

    async def _make(
        transaction_id: str,
        amount: str | Decimal = "500.00",
        phone: str = "254712345678",
        **kwargs,
    ) -> str:
        result = await resolver.record_transaction(
            TransactionData(
                transaction_id=transaction_id,
                amount=Decimal(str(amount)),
                phone_number=phone,
                **kwargs,
            )
        )
        return result.transaction.transaction_id

    return _make


@pytest.fixture
def fetch_order(session_factory) -> Callable[[str], Awaitable[Order | None]]:
    async def _fetch(order_id: str) -> Order | None:
        async with session_factory() as session:
            return await session.get(Order, order_id)

    return _fetch
