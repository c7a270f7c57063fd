"""Error taxonomy for reconciliation operations.

Every error raised on purpose by this package is a ``ReconciliationError``.
The HTTP layer maps each subclass to a status code, the CLI to an exit code.
"""

from __future__ import annotations

from typing import Any


class ReconciliationError(Exception):
    """Base class for reconciliation errors."""

    code = "reconciliation_error"

    def __init__(self, message: str, **details: Any):
        self.message = message
        self.details = details
        super().__init__(message)

    def to_dict(self) -> dict[str, Any]:
        """Serialize for API responses."""
        payload: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.details:
            payload["details"] = self.details
        return payload


class ValidationError(ReconciliationError):
    """Input rejected before any side effect."""

    code = "validation_error"


class NotFoundError(ReconciliationError):
    """A referenced transaction, order or attempt does not exist."""

    code = "not_found"

    def __init__(self, kind: str, identifier: str):
        self.kind = kind
        self.identifier = identifier
        super().__init__(f"{kind} '{identifier}' not found", kind=kind, id=identifier)


class ConflictError(ReconciliationError):
    """The requested change conflicts with current state."""

    code = "conflict"


class GatewayError(ReconciliationError):
    """The payment gateway rejected a request."""

    code = "gateway_error"

    def __init__(
        self,
        message: str,
        response_code: str | None = None,
        response_description: str | None = None,
    ):
        self.response_code = response_code
        self.response_description = response_description
        super().__init__(
            message,
            response_code=response_code,
            response_description=response_description,
        )


class GatewayTransportError(GatewayError):
    """The gateway could not be reached or answered unintelligibly.

    Transient: the poller retries on the next tick.
    """

    code = "gateway_transport_error"


class PollingTimeoutError(ReconciliationError):
    """A payment attempt exhausted its status checks without a decisive result."""

    code = "polling_timeout"

    def __init__(self, checkout_request_id: str, attempts: int):
        self.checkout_request_id = checkout_request_id
        self.attempts = attempts
        super().__init__(
            f"No decisive result for '{checkout_request_id}' after {attempts} checks",
            checkout_request_id=checkout_request_id,
            attempts=attempts,
        )


class DataIntegrityError(ReconciliationError):
    """Stored data contradicts an invariant (e.g. amount changed on redelivery)."""

    code = "data_integrity_error"
