"""Advisory matching between transactions and orders.

Suggestions only. Nothing here connects anything; an operator (or the STK
success path, which knows the order up front) does that.

Rules:
- a transaction is a candidate only while unconnected
- an order is a candidate only while not fully paid
- phones are compared in canonical form
- corrupted phone values (64-hex digests) never match anything
"""

from __future__ import annotations

from dataclasses import dataclass
from decimal import Decimal
from typing import Any

from mpesa_reconciliation.models import MpesaTransaction
from mpesa_reconciliation.phone import PhoneNormalizer, display_phone, is_corrupted_phone
from mpesa_reconciliation.services.order_repository import OrderSnapshot


@dataclass(frozen=True)
class MatchSuggestion:
    """One candidate pairing of transaction and order."""

    transaction_id: str
    order_id: str
    phone_number: str
    amount: Decimal
    remaining_balance: Decimal
    amount_matches_balance: bool

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "order_id": self.order_id,
            "phone_number": self.phone_number,
            "amount": str(self.amount),
            "remaining_balance": str(self.remaining_balance),
            "amount_matches_balance": self.amount_matches_balance,
        }


class MatchingService:
    """Finds candidate matches by canonical phone number."""

    def __init__(self, normalizer: PhoneNormalizer):
        self.normalizer = normalizer

    def transaction_phone(self, txn: MpesaTransaction) -> str | None:
        """Canonical phone of a transaction, None when unusable or corrupted."""
        if is_corrupted_phone(txn.phone_number):
            return None
        return self.normalizer.canonical_or_none(txn.phone_number)

    def candidate_transactions_for_order(
        self,
        order: OrderSnapshot,
        transactions: list[MpesaTransaction],
    ) -> list[MatchSuggestion]:
        """Unconnected transactions paid from the order's customer phone."""
        if order.is_paid:
            return []
        order_phone = self.normalizer.canonical_or_none(order.customer_phone)
        if order_phone is None:
            return []

        suggestions = [
            self._suggest(txn, order)
            for txn in transactions
            if not txn.is_connected_to_order and self.transaction_phone(txn) == order_phone
        ]
        return self._rank(suggestions)

    def candidate_orders_for_transaction(
        self,
        txn: MpesaTransaction,
        orders: list[OrderSnapshot],
    ) -> list[MatchSuggestion]:
        """Unpaid orders whose customer phone matches the transaction's."""
        if txn.is_connected_to_order:
            return []
        txn_phone = self.transaction_phone(txn)
        if txn_phone is None:
            return []

        suggestions = [
            self._suggest(txn, order)
            for order in orders
            if not order.is_paid
            and self.normalizer.canonical_or_none(order.customer_phone) == txn_phone
        ]
        return self._rank(suggestions)

    def _suggest(self, txn: MpesaTransaction, order: OrderSnapshot) -> MatchSuggestion:
        amount = Decimal(txn.amount_paid)
        balance = Decimal(order.remaining_balance)
        return MatchSuggestion(
            transaction_id=txn.transaction_id,
            order_id=order.id,
            phone_number=display_phone(txn.phone_number),
            amount=amount,
            remaining_balance=balance,
            amount_matches_balance=amount == balance,
        )

    @staticmethod
    def _rank(suggestions: list[MatchSuggestion]) -> list[MatchSuggestion]:
        # exact balance matches first, stable otherwise
        return sorted(suggestions, key=lambda s: not s.amount_matches_balance)
