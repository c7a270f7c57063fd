"""Parsing of inbound gateway payloads.

Two shapes arrive from Daraja:
- STK callback: ``{"Body": {"stkCallback": {...}}}`` with the payment
  details in ``CallbackMetadata.Item`` as ``{"Name": ..., "Value": ...}`` pairs.
- C2B confirmation: a flat object (``TransID``, ``TransAmount``, ``MSISDN``...).

Parsers validate shape and types only; they do not touch storage.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any

from mpesa_reconciliation.errors import ValidationError
from mpesa_reconciliation.gateway.daraja import EAT


@dataclass(frozen=True)
class StkCallback:
    """Result of one STK push as reported by the gateway."""

    checkout_request_id: str
    result_code: str
    result_desc: str
    merchant_request_id: str | None = None
    receipt_number: str | None = None
    transaction_date: datetime | None = None
    phone_number: str | None = None
    amount: Decimal | None = None

    @property
    def has_payment(self) -> bool:
        """True when the callback carries enough to record a transaction."""
        return bool(self.receipt_number) and self.amount is not None


@dataclass(frozen=True)
class C2BConfirmation:
    """A customer-initiated paybill/till payment."""

    transaction_id: str
    amount: Decimal
    phone_number: str
    transaction_date: datetime
    transaction_type: str = ""
    business_short_code: str | None = None
    bill_ref_number: str | None = None
    org_account_balance: str | None = None
    third_party_trans_id: str | None = None
    first_name: str | None = None
    middle_name: str | None = None
    last_name: str | None = None

    @property
    def customer_name(self) -> str | None:
        parts = [p for p in (self.first_name, self.middle_name, self.last_name) if p]
        return " ".join(parts) or None


def parse_gateway_timestamp(value: Any) -> datetime:
    """Parse a YYYYMMDDHHMMSS gateway timestamp (East Africa Time)."""
    try:
        return datetime.strptime(str(value), "%Y%m%d%H%M%S").replace(tzinfo=EAT)
    except (TypeError, ValueError) as e:
        raise ValidationError(f"Invalid gateway timestamp '{value}'") from e


def _amount(value: Any) -> Decimal:
    try:
        amount = Decimal(str(value))
    except (InvalidOperation, ValueError) as e:
        raise ValidationError(f"Invalid amount '{value}'") from e
    if not amount.is_finite() or amount <= 0:
        raise ValidationError(f"Invalid amount '{value}'")
    return amount


def parse_stk_callback(payload: dict[str, Any]) -> StkCallback:
    """Parse an STK callback body.

    Raises:
        ValidationError: the payload is not an STK callback.
    """
    try:
        callback = payload["Body"]["stkCallback"]
        checkout_request_id = callback["CheckoutRequestID"]
        result_code = callback["ResultCode"]
    except (KeyError, TypeError) as e:
        raise ValidationError("Malformed STK callback") from e

    if not checkout_request_id:
        raise ValidationError("STK callback missing CheckoutRequestID")

    items: dict[str, Any] = {}
    metadata = callback.get("CallbackMetadata") or {}
    for item in metadata.get("Item") or []:
        if isinstance(item, dict) and "Name" in item:
            items[item["Name"]] = item.get("Value")

    transaction_date = None
    if items.get("TransactionDate") is not None:
        transaction_date = parse_gateway_timestamp(items["TransactionDate"])

    amount = _amount(items["Amount"]) if items.get("Amount") is not None else None
    phone = items.get("PhoneNumber")

    return StkCallback(
        checkout_request_id=str(checkout_request_id),
        result_code=str(result_code),
        result_desc=str(callback.get("ResultDesc", "")),
        merchant_request_id=callback.get("MerchantRequestID"),
        receipt_number=items.get("MpesaReceiptNumber"),
        transaction_date=transaction_date,
        phone_number=None if phone is None else str(phone),
        amount=amount,
    )


def _field(payload: dict[str, Any], name: str) -> Any:
    # Daraja sends PascalCase; some relays forward camelCase
    for key in (name, name[0].lower() + name[1:], name.lower()):
        if key in payload:
            return payload[key]
    return None


def parse_c2b_confirmation(payload: dict[str, Any]) -> C2BConfirmation:
    """Parse a C2B confirmation body.

    Raises:
        ValidationError: required fields are missing or malformed.
    """
    if not isinstance(payload, dict):
        raise ValidationError("Malformed C2B confirmation")

    trans_id = _field(payload, "TransID")
    msisdn = _field(payload, "MSISDN")
    if not trans_id:
        raise ValidationError("C2B confirmation missing TransID")
    if not msisdn:
        raise ValidationError("C2B confirmation missing MSISDN")

    def optional(name: str) -> str | None:
        value = _field(payload, name)
        return None if value in (None, "") else str(value)

    return C2BConfirmation(
        transaction_id=str(trans_id),
        amount=_amount(_field(payload, "TransAmount")),
        phone_number=str(msisdn),
        transaction_date=parse_gateway_timestamp(_field(payload, "TransTime")),
        transaction_type=optional("TransactionType") or "",
        business_short_code=optional("BusinessShortCode"),
        bill_ref_number=optional("BillRefNumber"),
        org_account_balance=optional("OrgAccountBalance"),
        third_party_trans_id=optional("ThirdPartyTransID"),
        first_name=optional("FirstName"),
        middle_name=optional("MiddleName"),
        last_name=optional("LastName"),
    )
