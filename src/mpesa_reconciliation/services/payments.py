"""Push-payment flow and gateway callback ingestion.

initiate_payment -> StatusPoller -> terminal outcome -> link transaction
-> aggregator recompute. Callbacks feed the same path: they record the
transaction, resolve the attempt and link on success. The order an attempt
belongs to is read from its stored record, so any worker can link a callback.
Every step is idempotent, so a callback and a poll reporting the same success
do no double work.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from decimal import Decimal
from enum import Enum
from typing import Any

from mpesa_reconciliation.errors import (
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from mpesa_reconciliation.gateway.callbacks import parse_c2b_confirmation, parse_stk_callback
from mpesa_reconciliation.gateway.client import PaymentGatewayClient
from mpesa_reconciliation.models import TransactionType, utcnow
from mpesa_reconciliation.phone import PhoneNormalizer
from mpesa_reconciliation.services.attempt_repository import PaymentAttemptRepository
from mpesa_reconciliation.services.poller import AttemptState, PaymentAttempt, StatusPoller
from mpesa_reconciliation.services.resolver import ReconciliationResolver
from mpesa_reconciliation.services.transaction_store import TransactionData

logger = logging.getLogger(__name__)

STK_ACTOR = "system:stk_push"


class CallbackStatus(str, Enum):
    """Outcome of processing a gateway callback."""

    PROCESSED = "processed"
    DUPLICATE = "duplicate"
    INVALID = "invalid"
    UNKNOWN = "unknown"


@dataclass(frozen=True)
class CallbackResult:
    """What a callback did."""

    status: CallbackStatus
    checkout_request_id: str | None = None
    transaction_id: str | None = None
    message: str = ""

    def to_dict(self) -> dict[str, Any]:
        return {
            "status": self.status.value,
            "checkout_request_id": self.checkout_request_id,
            "transaction_id": self.transaction_id,
            "message": self.message,
        }


class PaymentService:
    """Initiates push payments and ingests gateway callbacks."""

    def __init__(
        self,
        client: PaymentGatewayClient,
        poller: StatusPoller,
        resolver: ReconciliationResolver,
        normalizer: PhoneNormalizer | None = None,
        attempts: PaymentAttemptRepository | None = None,
    ):
        self.client = client
        self.poller = poller
        self.resolver = resolver
        self.attempts = attempts or PaymentAttemptRepository(resolver.session_factory)
        self.normalizer = normalizer or client.normalizer
        poller.add_listener(self._on_attempt_terminal)

    async def initiate_payment(
        self,
        order_id: str,
        phone_number: str | None = None,
        amount: Decimal | str | None = None,
    ) -> PaymentAttempt:
        """Send a push payment for an order and start polling it.

        Phone and amount default to the order's customer phone and remaining
        balance.

        Raises:
            NotFoundError: unknown order.
            ConflictError: the order is already paid.
            ValidationError: bad phone or amount.
            GatewayError: the gateway refused the request.
        """
        order = await self.resolver.get_order(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)
        if order.is_paid:
            raise ConflictError(f"Order '{order_id}' is already paid", order_id=order_id)

        phone = phone_number or order.customer_phone
        if not phone:
            raise ValidationError("No phone number given and the order has none")
        value = amount if amount is not None else order.remaining_balance

        initiated = await self.client.initiate(order_id, phone, value)
        attempt = PaymentAttempt(
            checkout_request_id=initiated.checkout_request_id,
            order_id=order_id,
            phone_number=initiated.phone_number,
            amount=initiated.amount,
        )
        await self.attempts.save_new(attempt)
        return self.poller.start(attempt)

    async def get_attempt_status(self, checkout_request_id: str) -> PaymentAttempt:
        """Current state of an attempt, from memory or from its stored record."""
        attempt = self.poller.get(checkout_request_id)
        if attempt is not None:
            return attempt
        return await self.attempts.require(checkout_request_id)

    async def list_timed_out(self) -> list[PaymentAttempt]:
        """TIMED_OUT attempts still awaiting operator acknowledgement."""
        return await self.attempts.list_unacknowledged_timeouts()

    async def acknowledge_timeout(self, checkout_request_id: str, operator: str) -> PaymentAttempt:
        """Operator acknowledgement of a TIMED_OUT attempt."""
        live = self.poller.get(checkout_request_id)
        if live is not None:
            self.poller.acknowledge(checkout_request_id, operator)
        stored = await self.attempts.acknowledge(checkout_request_id, operator)
        return live or stored

    async def handle_stk_callback(self, payload: dict[str, Any]) -> CallbackResult:
        """Ingest an STK push result callback."""
        try:
            callback = parse_stk_callback(payload)
        except ValidationError as e:
            logger.warning("Invalid STK callback: %s", e)
            return CallbackResult(CallbackStatus.INVALID, message=str(e))

        cid = callback.checkout_request_id
        attempt = self.poller.get(cid) or await self.attempts.get(cid)
        succeeded = callback.result_code == self.poller.config.success_code

        record = None
        if succeeded and callback.has_payment:
            data = TransactionData(
                transaction_id=callback.receipt_number,
                receipt_number=callback.receipt_number,
                amount=callback.amount,
                phone_number=self._ingest_phone(callback.phone_number or (attempt.phone_number if attempt else "")),
                transaction_type=TransactionType.STK_PUSH.value,
                transaction_date=callback.transaction_date or utcnow(),
                bill_ref_number=attempt.order_id if attempt else None,
                checkout_request_id=cid,
            )
            try:
                record = await self.resolver.record_transaction(data)
            except DataIntegrityError as e:
                return CallbackResult(
                    CallbackStatus.INVALID, cid, callback.receipt_number, message=str(e)
                )

        resolved = await self.poller.resolve_externally(cid, callback.result_code, callback.result_desc)
        if resolved is None and attempt is not None:
            # polled by another worker, or by a process that has since restarted
            state = self.poller.classify(callback.result_code)
            if state is not None:
                await self.attempts.record_outcome(cid, state, callback.result_code, callback.result_desc)

        if succeeded and record is not None and attempt is not None:
            await self.resolver.link_payment(
                record.transaction.transaction_id, attempt.order_id, actor=STK_ACTOR
            )

        txn_id = record.transaction.transaction_id if record else None
        if record is not None and record.was_duplicate:
            return CallbackResult(CallbackStatus.DUPLICATE, cid, txn_id, "Already recorded")
        if record is None and attempt is None:
            logger.info("STK callback for unknown attempt: checkout_request_id=%s", cid)
            return CallbackResult(CallbackStatus.UNKNOWN, cid, None, callback.result_desc)
        if succeeded and record is not None and attempt is None:
            logger.warning(
                "STK payment for unknown attempt left unconnected: checkout_request_id=%s txn=%s",
                cid,
                txn_id,
            )
        return CallbackResult(CallbackStatus.PROCESSED, cid, txn_id, callback.result_desc)

    async def handle_c2b_confirmation(self, payload: dict[str, Any]) -> CallbackResult:
        """Ingest a C2B confirmation. The transaction is left unconnected."""
        try:
            confirmation = parse_c2b_confirmation(payload)
        except ValidationError as e:
            logger.warning("Invalid C2B confirmation: %s", e)
            return CallbackResult(CallbackStatus.INVALID, message=str(e))

        data = TransactionData(
            transaction_id=confirmation.transaction_id,
            receipt_number=confirmation.transaction_id,
            amount=confirmation.amount,
            phone_number=self._ingest_phone(confirmation.phone_number),
            transaction_type=TransactionType.C2B.value,
            transaction_date=confirmation.transaction_date,
            customer_name=confirmation.customer_name,
            bill_ref_number=confirmation.bill_ref_number,
        )
        try:
            record = await self.resolver.record_transaction(data)
        except DataIntegrityError as e:
            return CallbackResult(
                CallbackStatus.INVALID, transaction_id=confirmation.transaction_id, message=str(e)
            )

        status = CallbackStatus.PROCESSED if record.is_new else CallbackStatus.DUPLICATE
        return CallbackResult(status, transaction_id=confirmation.transaction_id)

    async def _on_attempt_terminal(self, attempt: PaymentAttempt) -> None:
        stored = await self.attempts.record_outcome(
            attempt.checkout_request_id,
            attempt.state,
            attempt.result_code,
            attempt.result_desc,
            attempt_count=attempt.attempt_count,
        )
        if attempt.state is not AttemptState.SUCCESS:
            return
        order_id = stored.order_id if stored is not None else attempt.order_id
        txn_id = await self.resolver.find_transaction_id_by_checkout(attempt.checkout_request_id)
        if txn_id is None:
            # the callback carries the receipt; linking happens when it lands
            logger.info(
                "Payment confirmed before callback: order=%s checkout_request_id=%s",
                order_id,
                attempt.checkout_request_id,
            )
            return
        await self.resolver.link_payment(txn_id, order_id, actor=STK_ACTOR)

    def _ingest_phone(self, raw: str) -> str:
        # keep unparseable values verbatim so listings can flag them
        return self.normalizer.canonical_or_none(raw) or raw
