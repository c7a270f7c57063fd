"""In-memory push-payment gateway for local development and testing.

Every attempt reports "still processing" until a test or a developer
scripts an outcome with one of the ``simulate_*`` helpers.
"""

from __future__ import annotations

import itertools
from collections import deque
from typing import Any

from mpesa_reconciliation.errors import GatewayError, GatewayTransportError
from mpesa_reconciliation.gateway.base import InitiateResult, StatusQueryResult


class StubGateway:
    """Scriptable gateway double."""

    provider_name = "stub"

    def __init__(self, processing_code: str = "1032"):
        self.processing_code = processing_code
        self._ids = itertools.count(1)
        self._script: dict[str, deque[StatusQueryResult | Exception]] = {}
        self._final: dict[str, StatusQueryResult] = {}
        self._reject_next: GatewayError | None = None
        self.requests: list[dict[str, Any]] = []
        self.queries: list[str] = []

    async def initiate_push(
        self,
        phone_number: str,
        amount: int,
        account_reference: str,
        description: str,
    ) -> InitiateResult:
        """Record the request and hand out a fresh checkout request id."""
        self.requests.append(
            {
                "phone_number": phone_number,
                "amount": amount,
                "account_reference": account_reference,
                "description": description,
            }
        )
        if self._reject_next is not None:
            error, self._reject_next = self._reject_next, None
            raise error

        checkout_request_id = f"ws_CO_STUB_{next(self._ids):06d}"
        self._script[checkout_request_id] = deque()
        return InitiateResult(
            checkout_request_id=checkout_request_id,
            merchant_request_id=f"STUB-{checkout_request_id[-6:]}",
            response_description="Success. Request accepted for processing",
            customer_message="Success. Request accepted for processing",
        )

    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        """Return the next scripted outcome, else the final one, else processing."""
        self.queries.append(checkout_request_id)
        queue = self._script.get(checkout_request_id)
        if queue:
            outcome = queue.popleft()
            if isinstance(outcome, Exception):
                raise outcome
            return outcome
        if checkout_request_id in self._final:
            return self._final[checkout_request_id]
        return StatusQueryResult(
            result_code=self.processing_code,
            result_desc="The transaction is being processed",
        )

    def simulate_success(self, checkout_request_id: str, desc: str = "The service request is processed successfully.") -> None:
        """Make subsequent queries report success."""
        self._final[checkout_request_id] = StatusQueryResult(result_code="0", result_desc=desc)

    def simulate_failure(
        self,
        checkout_request_id: str,
        result_code: str = "1",
        desc: str = "The balance is insufficient for the transaction.",
    ) -> None:
        """Make subsequent queries report a decisive failure."""
        self._final[checkout_request_id] = StatusQueryResult(result_code=result_code, result_desc=desc)

    def simulate_transport_error(self, checkout_request_id: str, count: int = 1) -> None:
        """Fail the next ``count`` queries with a transport error."""
        queue = self._script.setdefault(checkout_request_id, deque())
        for _ in range(count):
            queue.append(GatewayTransportError("Simulated gateway timeout"))

    def simulate_processing(self, checkout_request_id: str, count: int = 1) -> None:
        """Queue ``count`` explicit still-processing answers."""
        queue = self._script.setdefault(checkout_request_id, deque())
        for _ in range(count):
            queue.append(
                StatusQueryResult(
                    result_code=self.processing_code,
                    result_desc="The transaction is being processed",
                )
            )

    def reject_next_request(self, response_code: str = "400.002.02", desc: str = "Invalid request") -> None:
        """Make the next initiate_push raise GatewayError."""
        self._reject_next = GatewayError(
            "Payment request rejected by gateway",
            response_code=response_code,
            response_description=desc,
        )
