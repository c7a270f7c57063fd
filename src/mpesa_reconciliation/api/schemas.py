"""Pydantic schemas for API request/response models."""

from datetime import datetime
from decimal import Decimal
from typing import Any, Literal

from pydantic import BaseModel, ConfigDict, Field


class ErrorResponse(BaseModel):
    """Error response."""

    code: str
    message: str
    details: dict[str, Any] | None = None


# ============================================================================
# Payments
# ============================================================================


class InitiatePaymentRequest(BaseModel):
    """Start a push payment for an order.

    Phone and amount default to the order's customer phone and remaining
    balance.
    """

    order_id: str = Field(min_length=1, max_length=64)
    phone_number: str | None = None
    amount: Decimal | None = Field(default=None, gt=0)


class PaymentAttemptResponse(BaseModel):
    """A push-payment attempt."""

    model_config = ConfigDict(from_attributes=True)

    checkout_request_id: str
    order_id: str
    phone_number: str
    amount: Decimal
    attempt_count: int
    state: str
    result_code: str | None = None
    result_desc: str | None = None
    message: str
    created_at: datetime
    completed_at: datetime | None = None
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None


class CallbackAck(BaseModel):
    """Acknowledgement returned to the gateway."""

    ResultCode: int = 0
    ResultDesc: str = "Accepted"
    status: str


# ============================================================================
# Transactions
# ============================================================================


class LinkedOrder(BaseModel):
    """Order summary embedded in a transaction."""

    id: str
    order_number: str | None = None
    total_amount: Decimal
    payment_status: str
    remaining_balance: Decimal
    customer_name: str | None = None


class TransactionResponse(BaseModel):
    """A transaction with its connection state."""

    transaction_id: str
    mpesa_receipt_number: str
    transaction_date: datetime | None = None
    phone_number: str
    phone_corrupted: bool
    amount_paid: Decimal
    transaction_type: str
    customer_name: str | None = None
    bill_ref_number: str | None = None
    checkout_request_id: str | None = None
    is_connected_to_order: bool
    connected_order_id: str | None = None
    connected_at: datetime | None = None
    connected_by: str | None = None
    notes: str | None = None
    connection_state: Literal["unconnected", "connected", "broken"]
    order: LinkedOrder | None = None


class TransactionStatsResponse(BaseModel):
    """Counts and amounts per connection state."""

    total_count: int
    unconnected_count: int
    connected_count: int
    broken_count: int
    total_amount: Decimal
    unconnected_amount: Decimal
    connected_amount: Decimal
    broken_amount: Decimal


class TransactionListResponse(BaseModel):
    """Listing of transactions in one connection state."""

    filter: str
    items: list[TransactionResponse]
    total: int


class ManualTransactionRequest(BaseModel):
    """Operator-entered transaction."""

    transaction_id: str = Field(min_length=1, max_length=64)
    amount: Decimal = Field(gt=0)
    phone_number: str = Field(min_length=1)
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    transaction_type: Literal["C2B", "STK_PUSH"] = "C2B"
    customer_name: str | None = None
    notes: str | None = None
    order_id: str | None = None


class ConnectRequest(BaseModel):
    """Connect a transaction to an order."""

    order_id: str = Field(min_length=1, max_length=64)
    notes: str | None = None
    allow_reconnect: bool = True


class DisconnectRequest(BaseModel):
    """Disconnect a transaction."""

    notes: str | None = None


class RecomputeResponse(BaseModel):
    """Outcome of recomputing one order."""

    order_id: str
    total_amount: Decimal
    total_paid: Decimal
    payment_status: str
    remaining_balance: Decimal
    previous_status: str
    previous_balance: Decimal
    transaction_count: int
    changed: bool


class ConnectionOutcomeResponse(BaseModel):
    """Outcome of a connect or disconnect."""

    transaction_id: str
    order_id: str | None = None
    previous_order_id: str | None = None
    changed: bool
    warnings: list[str] = Field(default_factory=list)
    recomputed: list[RecomputeResponse] = Field(default_factory=list)


class ManualTransactionResponse(BaseModel):
    """Outcome of manual entry."""

    transaction: TransactionResponse
    is_new: bool
    connection: ConnectionOutcomeResponse | None = None


class RecomputeAllResponse(BaseModel):
    """Outcome of a bulk recompute."""

    full: bool
    processed: int
    changed: int
    errors: list[dict[str, Any]]
    results: list[RecomputeResponse]


class MatchSuggestionResponse(BaseModel):
    """A candidate transaction/order pairing."""

    transaction_id: str
    order_id: str
    phone_number: str
    amount: Decimal
    remaining_balance: Decimal
    amount_matches_balance: bool
