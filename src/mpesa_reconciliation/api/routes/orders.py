"""Order payment recompute and matching endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, Query

from mpesa_reconciliation.api.dependencies import CurrentOperator, Resolver
from mpesa_reconciliation.api.schemas import (
    ErrorResponse,
    MatchSuggestionResponse,
    RecomputeAllResponse,
    RecomputeResponse,
)

router = APIRouter(prefix="/orders", tags=["orders"])


@router.post("/recompute", response_model=RecomputeAllResponse)
async def recompute_all(
    resolver: Resolver,
    operator: CurrentOperator,
    full: Annotated[bool, Query()] = False,
) -> RecomputeAllResponse:
    """Recompute payment fields in bulk."""
    result = await resolver.recompute_all(full=full)
    return RecomputeAllResponse.model_validate(result.to_dict())


@router.post(
    "/{order_id}/recompute",
    response_model=RecomputeResponse,
    responses={404: {"model": ErrorResponse}},
)
async def recompute_order(
    resolver: Resolver,
    operator: CurrentOperator,
    order_id: Annotated[str, Path()],
) -> RecomputeResponse:
    """Recompute one order's payment fields."""
    result = await resolver.recompute_for_order(order_id)
    return RecomputeResponse.model_validate(result.to_dict())


@router.get(
    "/{order_id}/suggestions",
    response_model=list[MatchSuggestionResponse],
    responses={404: {"model": ErrorResponse}},
)
async def suggest_transactions(
    resolver: Resolver,
    operator: CurrentOperator,
    order_id: Annotated[str, Path()],
) -> list[MatchSuggestionResponse]:
    """Unconnected transactions that may belong to this order."""
    suggestions = await resolver.suggest_transactions_for_order(order_id)
    return [MatchSuggestionResponse.model_validate(s.to_dict()) for s in suggestions]
