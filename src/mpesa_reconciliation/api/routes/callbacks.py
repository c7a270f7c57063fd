"""Gateway callback endpoints.

The gateway only needs an acknowledgement; the processing outcome is
returned alongside for logs and tests. Invalid payloads are still
acknowledged so the gateway stops redelivering them.
"""

from typing import Any

from fastapi import APIRouter, Body

from mpesa_reconciliation.api.dependencies import Payments
from mpesa_reconciliation.api.schemas import CallbackAck

router = APIRouter(prefix="/callbacks", tags=["callbacks"])


@router.post("/stk", response_model=CallbackAck)
async def stk_callback(
    payments: Payments,
    payload: dict[str, Any] = Body(...),
) -> CallbackAck:
    """STK push result callback."""
    result = await payments.handle_stk_callback(payload)
    return CallbackAck(status=result.status.value)


@router.post("/c2b/confirmation", response_model=CallbackAck)
async def c2b_confirmation(
    payments: Payments,
    payload: dict[str, Any] = Body(...),
) -> CallbackAck:
    """C2B confirmation callback."""
    result = await payments.handle_c2b_confirmation(payload)
    return CallbackAck(status=result.status.value)
