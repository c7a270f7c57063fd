"""FastAPI dependencies for dependency injection."""

from collections.abc import AsyncGenerator
from dataclasses import dataclass
from typing import Annotated

from fastapi import Depends, Header, HTTPException, Request, status
from sqlalchemy.ext.asyncio import AsyncSession

from mpesa_reconciliation.container import ServiceContainer
from mpesa_reconciliation.services import PaymentService, ReconciliationResolver


def get_container(request: Request) -> ServiceContainer:
    """Service graph built at startup."""
    return request.app.state.container


async def get_db_session(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> AsyncGenerator[AsyncSession, None]:
    """Get database session dependency."""
    async with container.session_factory() as session:
        try:
            yield session
        finally:
            await session.close()


def get_resolver(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> ReconciliationResolver:
    return container.resolver


def get_payment_service(
    container: Annotated[ServiceContainer, Depends(get_container)],
) -> PaymentService:
    return container.payments


@dataclass(frozen=True)
class Operator:
    """The authenticated operator, as identified upstream."""

    id: str
    role: str


async def get_operator(
    container: Annotated[ServiceContainer, Depends(get_container)],
    x_operator_id: Annotated[str | None, Header()] = None,
    x_operator_role: Annotated[str | None, Header()] = None,
) -> Operator:
    """Operator from the X-Operator-Id / X-Operator-Role headers."""
    if not x_operator_id or not x_operator_role:
        raise HTTPException(
            status_code=status.HTTP_401_UNAUTHORIZED,
            detail="X-Operator-Id and X-Operator-Role headers are required",
        )
    if x_operator_role not in container.settings.operator_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{x_operator_role}' may not access reconciliation",
        )
    return Operator(id=x_operator_id, role=x_operator_role)


async def get_privileged_operator(
    container: Annotated[ServiceContainer, Depends(get_container)],
    operator: Annotated[Operator, Depends(get_operator)],
) -> Operator:
    """Operator allowed to change connections and enter transactions."""
    if operator.role not in container.settings.privileged_roles:
        raise HTTPException(
            status_code=status.HTTP_403_FORBIDDEN,
            detail=f"Role '{operator.role}' may not modify reconciliation data",
        )
    return operator


# Type aliases for cleaner dependency injection
DbSession = Annotated[AsyncSession, Depends(get_db_session)]
Resolver = Annotated[ReconciliationResolver, Depends(get_resolver)]
Payments = Annotated[PaymentService, Depends(get_payment_service)]
CurrentOperator = Annotated[Operator, Depends(get_operator)]
PrivilegedOperator = Annotated[Operator, Depends(get_privileged_operator)]
