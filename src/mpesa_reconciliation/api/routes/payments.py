"""Push-payment endpoints."""

from typing import Annotated

from fastapi import APIRouter, Path, status

from mpesa_reconciliation.api.dependencies import CurrentOperator, Payments
from mpesa_reconciliation.api.schemas import (
    ErrorResponse,
    InitiatePaymentRequest,
    PaymentAttemptResponse,
)

router = APIRouter(prefix="/payments", tags=["payments"])


@router.post(
    "",
    response_model=PaymentAttemptResponse,
    status_code=status.HTTP_202_ACCEPTED,
    responses={
        400: {"model": ErrorResponse},
        404: {"model": ErrorResponse},
        409: {"model": ErrorResponse},
        502: {"model": ErrorResponse},
    },
)
async def initiate_payment(
    payments: Payments,
    payload: InitiatePaymentRequest,
) -> PaymentAttemptResponse:
    """Send a push payment and start polling for its result."""
    attempt = await payments.initiate_payment(
        payload.order_id,
        phone_number=payload.phone_number,
        amount=payload.amount,
    )
    return PaymentAttemptResponse.model_validate(attempt.to_dict())


@router.get(
    "/timed-out",
    response_model=list[PaymentAttemptResponse],
)
async def list_timed_out(
    payments: Payments,
    operator: CurrentOperator,
) -> list[PaymentAttemptResponse]:
    """Timed out attempts awaiting acknowledgement."""
    return [PaymentAttemptResponse.model_validate(a.to_dict()) for a in await payments.list_timed_out()]


@router.get(
    "/{checkout_request_id}",
    response_model=PaymentAttemptResponse,
    responses={404: {"model": ErrorResponse}},
)
async def get_attempt_status(
    payments: Payments,
    checkout_request_id: Annotated[str, Path()],
) -> PaymentAttemptResponse:
    """Current state of a push-payment attempt."""
    attempt = await payments.get_attempt_status(checkout_request_id)
    return PaymentAttemptResponse.model_validate(attempt.to_dict())


@router.post(
    "/{checkout_request_id}/acknowledge",
    response_model=PaymentAttemptResponse,
    responses={404: {"model": ErrorResponse}, 409: {"model": ErrorResponse}},
)
async def acknowledge_timeout(
    payments: Payments,
    operator: CurrentOperator,
    checkout_request_id: Annotated[str, Path()],
) -> PaymentAttemptResponse:
    """Acknowledge a timed out attempt."""
    attempt = await payments.acknowledge_timeout(checkout_request_id, operator.id)
    return PaymentAttemptResponse.model_validate(attempt.to_dict())
