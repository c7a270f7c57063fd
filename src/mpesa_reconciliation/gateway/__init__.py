"""Push-payment gateway adapters and payload parsing."""

from mpesa_reconciliation.gateway.base import (
    InitiateResult,
    PushPaymentGateway,
    StatusQueryResult,
)
from mpesa_reconciliation.gateway.callbacks import (
    C2BConfirmation,
    StkCallback,
    parse_c2b_confirmation,
    parse_stk_callback,
)
from mpesa_reconciliation.gateway.client import InitiatedPayment, PaymentGatewayClient
from mpesa_reconciliation.gateway.daraja import DarajaGateway
from mpesa_reconciliation.gateway.stub import StubGateway

__all__ = [
    "C2BConfirmation",
    "DarajaGateway",
    "InitiateResult",
    "InitiatedPayment",
    "PaymentGatewayClient",
    "PushPaymentGateway",
    "StatusQueryResult",
    "StkCallback",
    "StubGateway",
    "parse_c2b_confirmation",
    "parse_stk_callback",
]
