"""Payment gateway client.

Thin validating layer over a PushPaymentGateway adapter: checks the amount,
canonicalizes the phone number and rounds to whole shillings before anything
leaves the process. Status queries pass straight through, uninterpreted.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation

from mpesa_reconciliation.errors import ValidationError
from mpesa_reconciliation.gateway.base import PushPaymentGateway, StatusQueryResult
from mpesa_reconciliation.phone import PhoneNormalizer

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class InitiatedPayment:
    """A push payment the gateway accepted."""

    checkout_request_id: str
    order_id: str
    phone_number: str
    amount: Decimal
    merchant_request_id: str | None = None
    customer_message: str = ""


def to_whole_amount(amount: Decimal | int | float | str) -> Decimal:
    """Validate and round an amount to whole currency units (half up)."""
    try:
        value = Decimal(str(amount))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount '{amount}'", amount=str(amount)) from e
    if not value.is_finite() or value <= 0:
        raise ValidationError("Amount must be greater than zero", amount=str(amount))
    rounded = value.quantize(Decimal("1"), rounding=ROUND_HALF_UP)
    if rounded < 1:
        raise ValidationError("Amount rounds to zero", amount=str(amount))
    return rounded


class PaymentGatewayClient:
    """Issues push-payment requests and raw status queries."""

    def __init__(self, gateway: PushPaymentGateway, normalizer: PhoneNormalizer):
        self.gateway = gateway
        self.normalizer = normalizer

    async def initiate(
        self,
        order_id: str,
        phone_number: str,
        amount: Decimal | int | float | str,
        description: str | None = None,
    ) -> InitiatedPayment:
        """Send a push-payment prompt for an order.

        Raises:
            ValidationError: bad order id, amount or phone number.
            GatewayError: the gateway refused or could not be reached.
        """
        if not order_id:
            raise ValidationError("Order id is required")
        whole = to_whole_amount(amount)
        phone = self.normalizer.normalize(phone_number)

        result = await self.gateway.initiate_push(
            phone_number=phone,
            amount=int(whole),
            account_reference=order_id,
            description=description or f"Payment for order {order_id}",
        )
        logger.info(
            "Push payment initiated: order=%s checkout_request_id=%s amount=%s",
            order_id,
            result.checkout_request_id,
            whole,
        )
        return InitiatedPayment(
            checkout_request_id=result.checkout_request_id,
            order_id=order_id,
            phone_number=phone,
            amount=whole,
            merchant_request_id=result.merchant_request_id,
            customer_message=result.customer_message,
        )

    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        """Raw status of one attempt. The result code is not interpreted here."""
        if not checkout_request_id:
            raise ValidationError("Checkout request id is required")
        return await self.gateway.query_status(checkout_request_id)
