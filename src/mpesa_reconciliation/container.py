"""Wiring of gateway, poller and services from settings.

Both the HTTP app and the CLI build one ``ServiceContainer`` per process.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass

from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_reconciliation.config import Settings
from mpesa_reconciliation.gateway import (
    DarajaGateway,
    PaymentGatewayClient,
    PushPaymentGateway,
    StubGateway,
)
from mpesa_reconciliation.locking import KeyedLocks
from mpesa_reconciliation.phone import PhoneNormalizer
from mpesa_reconciliation.services import (
    PaymentAttemptRepository,
    PaymentService,
    ReconciliationResolver,
    StatusPoller,
)

logger = logging.getLogger(__name__)


@dataclass
class ServiceContainer:
    """Process-wide service graph."""

    settings: Settings
    session_factory: async_sessionmaker[AsyncSession]
    gateway: PushPaymentGateway
    normalizer: PhoneNormalizer
    locks: KeyedLocks
    client: PaymentGatewayClient
    poller: StatusPoller
    resolver: ReconciliationResolver
    attempts: PaymentAttemptRepository
    payments: PaymentService

    async def aclose(self) -> None:
        """Stop polling and release gateway resources."""
        await self.poller.shutdown()
        if isinstance(self.gateway, DarajaGateway):
            await self.gateway.aclose()


def build_gateway(settings: Settings) -> PushPaymentGateway:
    """Gateway adapter selected by MPESA_GATEWAY."""
    processing_code = settings.poller_config().processing_code
    if settings.gateway == "daraja":
        return DarajaGateway(settings.daraja_config(), processing_code=processing_code)
    if settings.gateway == "stub":
        logger.warning("Using stub payment gateway; no payment will reach M-Pesa")
        return StubGateway(processing_code=processing_code)
    raise ValueError(f"Unknown MPESA_GATEWAY '{settings.gateway}' (expected 'daraja' or 'stub')")


def build_container(
    settings: Settings,
    session_factory: async_sessionmaker[AsyncSession],
    gateway: PushPaymentGateway | None = None,
) -> ServiceContainer:
    """Assemble the service graph."""
    normalizer = PhoneNormalizer(settings.phone_config())
    locks = KeyedLocks()
    gateway = gateway or build_gateway(settings)
    client = PaymentGatewayClient(gateway, normalizer)
    poller = StatusPoller(client, settings.poller_config())
    resolver = ReconciliationResolver(session_factory, normalizer=normalizer, locks=locks)
    attempts = PaymentAttemptRepository(session_factory)
    payments = PaymentService(client, poller, resolver, normalizer, attempts=attempts)
    return ServiceContainer(
        settings=settings,
        session_factory=session_factory,
        gateway=gateway,
        normalizer=normalizer,
        locks=locks,
        client=client,
        poller=poller,
        resolver=resolver,
        attempts=attempts,
        payments=payments,
    )
