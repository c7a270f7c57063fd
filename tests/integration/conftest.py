"""API test fixtures: the app wired to the per-test database and a stub gateway."""

from collections.abc import AsyncGenerator

import pytest
import pytest_asyncio
from httpx import ASGITransport, AsyncClient

from mpesa_reconciliation.api.app import create_app
from mpesa_reconciliation.config import Settings
from mpesa_reconciliation.container import ServiceContainer, build_container


@pytest.fixture
def settings() -> Settings:
    return Settings(
        database_url="sqlite+aiosqlite://",
        host="127.0.0.1",
        port=8000,
        debug=False,
        gateway="stub",
        mpesa_environment="sandbox",
        mpesa_consumer_key="",
        mpesa_consumer_secret="",
        mpesa_passkey="",
        mpesa_short_code="",
        mpesa_callback_url="",
        # attempts stay pending until a callback resolves them
        poll_initial_delay_seconds=60,
        poll_interval_seconds=60,
    )


@pytest_asyncio.fixture
async def container(settings, session_factory, gateway) -> AsyncGenerator[ServiceContainer, None]:
    container = build_container(settings, session_factory, gateway=gateway)
    yield container
    await container.aclose()


@pytest_asyncio.fixture
async def client(container) -> AsyncGenerator[AsyncClient, None]:
    """Create async HTTP client for API testing."""
    app = create_app(container)
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url="http://test") as client:
        yield client
