"""Transaction listing and manual reconciliation endpoints."""

from typing import Annotated, Literal

from fastapi import APIRouter, Path, Query, status

from mpesa_reconciliation.api.dependencies import CurrentOperator, PrivilegedOperator, Resolver
from mpesa_reconciliation.api.schemas import (
    ConnectionOutcomeResponse,
    ConnectRequest,
    DisconnectRequest,
    ErrorResponse,
    ManualTransactionRequest,
    ManualTransactionResponse,
    MatchSuggestionResponse,
    TransactionListResponse,
    TransactionResponse,
    TransactionStatsResponse,
)
from mpesa_reconciliation.services.resolver import TransactionView

router = APIRouter(prefix="/transactions", tags=["transactions"])


def _view(view: TransactionView) -> TransactionResponse:
    return TransactionResponse.model_validate(view.to_dict())


@router.get("", response_model=TransactionListResponse)
async def list_transactions(
    resolver: Resolver,
    operator: CurrentOperator,
    filter_: Annotated[
        Literal["unconnected", "connected", "broken"], Query(alias="filter")
    ] = "unconnected",
) -> TransactionListResponse:
    """List transactions by connection state."""
    views = await resolver.list_transactions(filter_)
    return TransactionListResponse(
        filter=filter_,
        items=[_view(v) for v in views],
        total=len(views),
    )


@router.get("/stats", response_model=TransactionStatsResponse)
async def transaction_stats(
    resolver: Resolver,
    operator: CurrentOperator,
) -> TransactionStatsResponse:
    """Counts and amounts per connection state."""
    stats = await resolver.stats()
    return TransactionStatsResponse.model_validate(stats.to_dict())


@router.post(
    "",
    response_model=ManualTransactionResponse,
    status_code=status.HTTP_201_CREATED,
    responses={400: {"model": ErrorResponse}, 404: {"model": ErrorResponse}},
)
async def record_manual_transaction(
    resolver: Resolver,
    operator: PrivilegedOperator,
    payload: ManualTransactionRequest,
) -> ManualTransactionResponse:
    """Record a transaction entered by an operator."""
    record, outcome = await resolver.record_manual_transaction(
        transaction_id=payload.transaction_id,
        amount=payload.amount,
        phone_number=payload.phone_number,
        operator=operator.id,
        receipt_number=payload.receipt_number,
        transaction_date=payload.transaction_date,
        transaction_type=payload.transaction_type,
        customer_name=payload.customer_name,
        notes=payload.notes,
        order_id=payload.order_id,
    )
    view = await resolver.get_transaction(record.transaction.transaction_id)
    return ManualTransactionResponse(
        transaction=_view(view),
        is_new=record.is_new,
        connection=ConnectionOutcomeResponse.model_validate(outcome.to_dict()) if outcome else None,
    )


@router.get(
    "/{transaction_id}",
    response_model=TransactionResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_transaction(
    resolver: Resolver,
    operator: CurrentOperator,
    transaction_id: Annotated[str, Path()],
) -> TransactionResponse:
    """One transaction with its connection state."""
    return _view(await resolver.get_transaction(transaction_id))


@router.post(
    "/{transaction_id}/connect",
    response_model=ConnectionOutcomeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def connect_transaction(
    resolver: Resolver,
    operator: PrivilegedOperator,
    transaction_id: Annotated[str, Path()],
    payload: ConnectRequest,
) -> ConnectionOutcomeResponse:
    """Connect a transaction to an order."""
    outcome = await resolver.connect(
        transaction_id,
        payload.order_id,
        operator=operator.id,
        notes=payload.notes,
        allow_reconnect=payload.allow_reconnect,
    )
    return ConnectionOutcomeResponse.model_validate(outcome.to_dict())


@router.post(
    "/{transaction_id}/disconnect",
    response_model=ConnectionOutcomeResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def disconnect_transaction(
    resolver: Resolver,
    operator: PrivilegedOperator,
    transaction_id: Annotated[str, Path()],
    payload: DisconnectRequest | None = None,
) -> ConnectionOutcomeResponse:
    """Disconnect a transaction from its order."""
    outcome = await resolver.disconnect(
        transaction_id,
        operator=operator.id,
        notes=payload.notes if payload else None,
    )
    return ConnectionOutcomeResponse.model_validate(outcome.to_dict())


@router.get(
    "/{transaction_id}/suggestions",
    response_model=list[MatchSuggestionResponse],
    responses={404: {"model": ErrorResponse}},
)
async def suggest_orders(
    resolver: Resolver,
    operator: CurrentOperator,
    transaction_id: Annotated[str, Path()],
) -> list[MatchSuggestionResponse]:
    """Unpaid orders this transaction may belong to."""
    suggestions = await resolver.suggest_orders_for_transaction(transaction_id)
    return [MatchSuggestionResponse.model_validate(s.to_dict()) for s in suggestions]
