"""Base protocol and types for push-payment gateways.

All gateway adapters must implement the PushPaymentGateway protocol. Adapters
report what the gateway said; they never decide whether a result code means
success, failure or "still processing". That is the poller's job.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from typing import Any, Protocol


@dataclass(frozen=True)
class InitiateResult:
    """Result of submitting a push-payment request."""

    checkout_request_id: str
    merchant_request_id: str | None = None
    response_code: str = "0"
    response_description: str = ""
    customer_message: str = ""


@dataclass(frozen=True)
class StatusQueryResult:
    """Raw status query outcome.

    result_code is None when the gateway answered without one; the caller
    keeps waiting in that case.
    """

    result_code: str | None
    result_desc: str = ""
    raw: dict[str, Any] = field(default_factory=dict)


class PushPaymentGateway(Protocol):
    """Protocol for push-payment gateway adapters."""

    provider_name: str

    async def initiate_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> InitiateResult:
        """Send a payment prompt to the payer's phone.

        Args:
            phone_number: Canonical international number, e.g. 254712345678.
            amount: Whole currency units.
            account_reference: Shown to the payer; we use the order id.
            description: Short free text.

        Returns:
            InitiateResult carrying the checkout request id.

        Raises:
            GatewayError: the gateway refused the request.
            GatewayTransportError: the gateway could not be reached.
        """
        ...

    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        """Ask the gateway for the current result of one attempt.

        Raises:
            GatewayTransportError: transient failure, safe to retry.
        """
        ...
