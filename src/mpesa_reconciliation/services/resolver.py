"""Manual reconciliation resolver.

Operator-facing operations over the transaction store and the aggregator.
Each mutating call is one unit of work: the transaction's connection
metadata, every affected order's recomputed payment fields and the audit row
commit together or not at all.

Serialization: a per-key asyncio lock for the transaction and for every
order the call touches, always acquired in sorted key order.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Callable

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_reconciliation.database import session_scope
from mpesa_reconciliation.errors import (
    ConflictError,
    NotFoundError,
    ReconciliationError,
    ValidationError,
)
from mpesa_reconciliation.locking import KeyedLocks
from mpesa_reconciliation.models import (
    AuditAction,
    MpesaTransaction,
    PaymentAuditLog,
    PaymentStatus,
    TransactionType,
)
from mpesa_reconciliation.phone import PhoneNormalizer, display_phone, is_corrupted_phone
from mpesa_reconciliation.services.aggregator import (
    OrderPaymentAggregator,
    RecomputeAllResult,
    RecomputeResult,
)
from mpesa_reconciliation.services.matching import MatchingService, MatchSuggestion
from mpesa_reconciliation.services.order_repository import (
    OrderRepository,
    OrderSnapshot,
    SqlOrderRepository,
)
from mpesa_reconciliation.services.transaction_store import (
    OrderRef,
    RecordResult,
    ResolvedOrderRef,
    TransactionData,
    TransactionStore,
    UnresolvedOrderRef,
    resolve_connection,
)

logger = logging.getLogger(__name__)

# connection may move between peek and lock; retry this many times
_CONNECT_RETRIES = 3


def txn_key(transaction_id: str) -> str:
    return f"txn:{transaction_id}"


def order_key(order_id: str | None) -> str | None:
    return f"order:{order_id}" if order_id else None


class ConnectionState(str, Enum):
    """Where a transaction stands relative to orders."""

    UNCONNECTED = "unconnected"
    CONNECTED = "connected"
    BROKEN = "broken"


@dataclass(frozen=True)
class TransactionView:
    """A transaction annotated for operator listings."""

    transaction: MpesaTransaction
    state: ConnectionState
    order_ref: OrderRef | None = None

    @property
    def phone_corrupted(self) -> bool:
        return is_corrupted_phone(self.transaction.phone_number)

    @property
    def phone_display(self) -> str:
        return display_phone(self.transaction.phone_number)

    def to_dict(self) -> dict[str, Any]:
        txn = self.transaction
        data: dict[str, Any] = {
            "transaction_id": txn.transaction_id,
            "mpesa_receipt_number": txn.mpesa_receipt_number,
            "transaction_date": txn.transaction_date.isoformat() if txn.transaction_date else None,
            "phone_number": self.phone_display,
            "phone_corrupted": self.phone_corrupted,
            "amount_paid": str(txn.amount_paid),
            "transaction_type": txn.transaction_type,
            "customer_name": txn.customer_name,
            "bill_ref_number": txn.bill_ref_number,
            "checkout_request_id": txn.checkout_request_id,
            "is_connected_to_order": txn.is_connected_to_order,
            "connected_order_id": txn.connected_order_id,
            "connected_at": txn.connected_at.isoformat() if txn.connected_at else None,
            "connected_by": txn.connected_by,
            "notes": txn.notes,
            "connection_state": self.state.value,
            "order": None,
        }
        if isinstance(self.order_ref, ResolvedOrderRef):
            order = self.order_ref.order
            data["order"] = {
                "id": order.id,
                "order_number": order.order_number,
                "total_amount": str(order.total_amount),
                "payment_status": order.payment_status,
                "remaining_balance": str(order.remaining_balance),
                "customer_name": order.customer_name,
            }
        return data


@dataclass(frozen=True)
class ConnectionOutcome:
    """Result of a connect or disconnect."""

    transaction_id: str
    order_id: str | None
    previous_order_id: str | None
    changed: bool
    warnings: list[str] = field(default_factory=list)
    recomputed: list[RecomputeResult] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "transaction_id": self.transaction_id,
            "order_id": self.order_id,
            "previous_order_id": self.previous_order_id,
            "changed": self.changed,
            "warnings": list(self.warnings),
            "recomputed": [r.to_dict() for r in self.recomputed],
        }


@dataclass(frozen=True)
class TransactionStats:
    """Counts and amounts per connection state."""

    total_count: int = 0
    unconnected_count: int = 0
    connected_count: int = 0
    broken_count: int = 0
    total_amount: Decimal = Decimal("0")
    unconnected_amount: Decimal = Decimal("0")
    connected_amount: Decimal = Decimal("0")
    broken_amount: Decimal = Decimal("0")

    def to_dict(self) -> dict[str, Any]:
        return {
            "total_count": self.total_count,
            "unconnected_count": self.unconnected_count,
            "connected_count": self.connected_count,
            "broken_count": self.broken_count,
            "total_amount": str(self.total_amount),
            "unconnected_amount": str(self.unconnected_amount),
            "connected_amount": str(self.connected_amount),
            "broken_amount": str(self.broken_amount),
        }


class ReconciliationResolver:
    """Reconciliation operations, each in its own unit of work."""

    def __init__(
        self,
        session_factory: async_sessionmaker[AsyncSession],
        normalizer: PhoneNormalizer | None = None,
        locks: KeyedLocks | None = None,
        order_repository_factory: Callable[[AsyncSession], OrderRepository] | None = None,
    ):
        self.session_factory = session_factory
        self.normalizer = normalizer or PhoneNormalizer()
        self.locks = locks or KeyedLocks()
        self.matching = MatchingService(self.normalizer)
        self._order_repository_factory = order_repository_factory or (
            lambda session: SqlOrderRepository(session, self.normalizer)
        )

    # ------------------------------------------------------------------
    # Recording
    # ------------------------------------------------------------------

    async def record_transaction(self, data: TransactionData) -> RecordResult:
        """Idempotently record a gateway-reported transaction."""
        async with self.locks.hold(txn_key(data.transaction_id)):
            async with session_scope(self.session_factory) as session:
                return await TransactionStore(session).record_transaction(data)

    async def record_manual_transaction(
        self,
        *,
        transaction_id: str,
        amount: Decimal | str,
        phone_number: str,
        operator: str,
        receipt_number: str | None = None,
        transaction_date: datetime | None = None,
        transaction_type: str = TransactionType.C2B.value,
        customer_name: str | None = None,
        notes: str | None = None,
        order_id: str | None = None,
    ) -> tuple[RecordResult, ConnectionOutcome | None]:
        """Record a transaction keyed in by an operator, optionally linking it.

        The receipt number defaults to the transaction id.

        Raises:
            ValidationError: bad amount or phone number.
            NotFoundError: order_id given but missing.
            DataIntegrityError: id already recorded with another amount.
        """
        data = TransactionData(
            transaction_id=transaction_id.strip(),
            amount=_decimal(amount),
            phone_number=self.normalizer.normalize(phone_number),
            transaction_type=transaction_type,
            receipt_number=receipt_number or transaction_id.strip(),
            transaction_date=transaction_date,
            customer_name=customer_name,
            notes=notes,
        )
        keys = [txn_key(data.transaction_id), order_key(order_id)]
        async with self.locks.hold_many(keys):
            async with session_scope(self.session_factory) as session:
                store = TransactionStore(session)
                record = await store.record_transaction(data)
                if record.is_new:
                    self._audit(
                        session,
                        AuditAction.MANUAL_ENTRY,
                        record.transaction,
                        actor=operator,
                        notes=notes,
                    )
                outcome = None
                if order_id:
                    outcome = await self._connect_in_session(
                        session,
                        record.transaction,
                        order_id,
                        actor=operator,
                        notes=notes,
                        allow_reconnect=False,
                        action=AuditAction.MANUAL_LINK,
                    )
                return record, outcome

    # ------------------------------------------------------------------
    # Connect / disconnect
    # ------------------------------------------------------------------

    async def connect(
        self,
        transaction_id: str,
        order_id: str,
        operator: str,
        notes: str | None = None,
        allow_reconnect: bool = True,
    ) -> ConnectionOutcome:
        """Connect a transaction to an order (manual link).

        Reconnecting to a different order is allowed and recomputes both
        orders. It is reported as a warning, or raised as ConflictError when
        allow_reconnect is False.

        Raises:
            NotFoundError: transaction or order missing.
            ConflictError: reconnection refused.
        """
        if not order_id:
            raise ValidationError("Order id is required")

        for _ in range(_CONNECT_RETRIES):
            previous = await self._peek_connected_order(transaction_id)
            keys = [txn_key(transaction_id), order_key(order_id), order_key(previous)]
            async with self.locks.hold_many(keys):
                async with session_scope(self.session_factory) as session:
                    txn = await TransactionStore(session).require(transaction_id)
                    current = txn.connected_order_id if txn.is_connected_to_order else None
                    if current != previous:
                        continue
                    return await self._connect_in_session(
                        session,
                        txn,
                        order_id,
                        actor=operator,
                        notes=notes,
                        allow_reconnect=allow_reconnect,
                        action=AuditAction.MANUAL_LINK,
                    )
        raise ConflictError(
            "Transaction connection changed concurrently, retry",
            transaction_id=transaction_id,
        )

    async def link_payment(
        self, transaction_id: str, order_id: str, actor: str = "system:stk_push"
    ) -> ConnectionOutcome | None:
        """Connect a confirmed push payment to the order that requested it.

        Never moves a transaction that is already connected. Returns None when
        nothing was linked.
        """
        async with self.locks.hold_many([txn_key(transaction_id), order_key(order_id)]):
            async with session_scope(self.session_factory) as session:
                txn = await TransactionStore(session).get(transaction_id)
                if txn is None:
                    logger.info("No transaction yet for confirmed payment: order=%s", order_id)
                    return None
                if txn.is_connected_to_order:
                    if txn.connected_order_id != order_id:
                        logger.warning(
                            "Confirmed payment already connected elsewhere: txn=%s order=%s connected=%s",
                            transaction_id,
                            order_id,
                            txn.connected_order_id,
                        )
                    return None
                orders = self._orders(session)
                if await orders.get_by_id(order_id) is None:
                    logger.warning(
                        "Confirmed payment for missing order left unconnected: txn=%s order=%s",
                        transaction_id,
                        order_id,
                    )
                    return None
                return await self._connect_in_session(
                    session,
                    txn,
                    order_id,
                    actor=actor,
                    notes=None,
                    allow_reconnect=False,
                    action=AuditAction.AUTO_MATCH,
                )

    async def disconnect(
        self, transaction_id: str, operator: str, notes: str | None = None
    ) -> ConnectionOutcome:
        """Detach a transaction from its order.

        The previous order is recomputed when it still exists. For a broken
        link it does not, and disconnecting is the repair.

        Raises:
            NotFoundError: transaction missing.
            ConflictError: transaction not connected.
        """
        for _ in range(_CONNECT_RETRIES):
            previous = await self._peek_connected_order(transaction_id)
            async with self.locks.hold_many([txn_key(transaction_id), order_key(previous)]):
                async with session_scope(self.session_factory) as session:
                    store = TransactionStore(session)
                    txn = await store.require(transaction_id)
                    if not txn.is_connected_to_order:
                        raise ConflictError(
                            f"Transaction '{transaction_id}' is not connected to an order",
                            transaction_id=transaction_id,
                        )
                    if txn.connected_order_id != previous:
                        continue

                    orders = self._orders(session)
                    before = await orders.get_by_id(previous) if previous else None
                    await store.clear_connection(txn, notes=notes)
                    recomputed = await OrderPaymentAggregator(store, orders).recompute_if_exists(previous)

                    warnings = [] if before is not None else ["broken_link_repaired"]
                    self._audit(
                        session,
                        AuditAction.MANUAL_UNLINK,
                        txn,
                        actor=operator,
                        order_id=previous,
                        previous_order_id=previous,
                        previous_status=before.payment_status if before else None,
                        new_status=recomputed.payment_status if recomputed else None,
                        notes=notes,
                    )
                    logger.info(
                        "Transaction disconnected: txn=%s order=%s by=%s",
                        transaction_id,
                        previous,
                        operator,
                    )
                    return ConnectionOutcome(
                        transaction_id=transaction_id,
                        order_id=None,
                        previous_order_id=previous,
                        changed=True,
                        warnings=warnings,
                        recomputed=[recomputed] if recomputed else [],
                    )
        raise ConflictError(
            "Transaction connection changed concurrently, retry",
            transaction_id=transaction_id,
        )

    async def _connect_in_session(
        self,
        session: AsyncSession,
        txn: MpesaTransaction,
        order_id: str,
        *,
        actor: str,
        notes: str | None,
        allow_reconnect: bool,
        action: AuditAction,
    ) -> ConnectionOutcome:
        store = TransactionStore(session)
        orders = self._orders(session)
        order = await orders.get_by_id(order_id)
        if order is None:
            raise NotFoundError("Order", order_id)

        previous = txn.connected_order_id if txn.is_connected_to_order else None
        if previous == order_id:
            return ConnectionOutcome(
                transaction_id=txn.transaction_id,
                order_id=order_id,
                previous_order_id=previous,
                changed=False,
                warnings=["already_connected"],
            )
        if previous and not allow_reconnect:
            raise ConflictError(
                f"Transaction '{txn.transaction_id}' is already connected to order '{previous}'",
                transaction_id=txn.transaction_id,
                connected_order_id=previous,
            )

        warnings = self._connect_warnings(txn, order, previous)
        await store.set_connection(txn, order_id, connected_by=actor, notes=notes)

        aggregator = OrderPaymentAggregator(store, orders)
        recomputed = [await aggregator.recompute_for_order(order_id)]
        if previous:
            old = await aggregator.recompute_if_exists(previous)
            if old is not None:
                recomputed.append(old)

        self._audit(
            session,
            action,
            txn,
            actor=actor,
            order_id=order_id,
            previous_order_id=previous,
            previous_status=order.payment_status,
            new_status=recomputed[0].payment_status,
            notes=notes,
        )
        logger.info(
            "Transaction connected: txn=%s order=%s previous=%s by=%s warnings=%s",
            txn.transaction_id,
            order_id,
            previous,
            actor,
            warnings,
        )
        return ConnectionOutcome(
            transaction_id=txn.transaction_id,
            order_id=order_id,
            previous_order_id=previous,
            changed=True,
            warnings=warnings,
            recomputed=recomputed,
        )

    def _connect_warnings(
        self, txn: MpesaTransaction, order: OrderSnapshot, previous: str | None
    ) -> list[str]:
        warnings: list[str] = []
        if is_corrupted_phone(txn.phone_number):
            warnings.append("phone_data_error")
        else:
            txn_phone = self.normalizer.canonical_or_none(txn.phone_number)
            order_phone = self.normalizer.canonical_or_none(order.customer_phone)
            if txn_phone and order_phone and txn_phone != order_phone:
                warnings.append("phone_mismatch")
        if previous:
            warnings.append("reconnected")
        if order.payment_status == PaymentStatus.PAID.value:
            warnings.append("order_already_paid")
        return warnings

    async def _peek_connected_order(self, transaction_id: str) -> str | None:
        async with session_scope(self.session_factory) as session:
            txn = await TransactionStore(session).require(transaction_id)
            return txn.connected_order_id if txn.is_connected_to_order else None

    # ------------------------------------------------------------------
    # Recompute
    # ------------------------------------------------------------------

    async def recompute_for_order(self, order_id: str) -> RecomputeResult:
        """Recompute one order's payment fields."""
        async with self.locks.hold(order_key(order_id)):
            async with session_scope(self.session_factory) as session:
                return await self._aggregator(session).recompute_for_order(order_id)

    async def recompute_all(self, full: bool = False) -> RecomputeAllResult:
        """Recompute every order with connected transactions (or every order).

        Each order is its own unit of work; failures are collected.
        """
        async with session_scope(self.session_factory) as session:
            order_ids = await self._aggregator(session).target_order_ids(full)

        result = RecomputeAllResult(full=full)
        for order_id in order_ids:
            try:
                result.results.append(await self.recompute_for_order(order_id))
            except (ReconciliationError, SQLAlchemyError) as e:
                logger.exception("Recompute failed: order=%s", order_id)
                result.errors.append(
                    {
                        "order_id": order_id,
                        "code": getattr(e, "code", type(e).__name__),
                        "message": str(e),
                    }
                )
        logger.info(
            "Bulk recompute finished: full=%s processed=%d changed=%d errors=%d",
            full,
            result.processed,
            result.changed,
            len(result.errors),
        )
        return result

    # ------------------------------------------------------------------
    # Listing
    # ------------------------------------------------------------------

    async def get_order(self, order_id: str) -> OrderSnapshot | None:
        async with session_scope(self.session_factory) as session:
            return await self._orders(session).get_by_id(order_id)

    async def get_transaction(self, transaction_id: str) -> TransactionView:
        """One transaction with its resolved connection."""
        async with session_scope(self.session_factory) as session:
            txn = await TransactionStore(session).require(transaction_id)
            views = await self._views(session, [txn])
            return views[0]

    async def find_transaction_id_by_checkout(self, checkout_request_id: str) -> str | None:
        async with session_scope(self.session_factory) as session:
            txn = await TransactionStore(session).get_by_checkout_request_id(checkout_request_id)
            return txn.transaction_id if txn else None

    async def list_unconnected(self) -> list[TransactionView]:
        """Transactions not connected to any order. Broken links excluded."""
        async with session_scope(self.session_factory) as session:
            txns = await TransactionStore(session).list_unconnected()
            return [TransactionView(t, ConnectionState.UNCONNECTED) for t in txns]

    async def list_connected(self) -> list[TransactionView]:
        """Transactions connected to an order that exists."""
        return [v for v in await self._connected_views() if v.state is ConnectionState.CONNECTED]

    async def list_broken_links(self) -> list[TransactionView]:
        """Transactions flagged connected whose order does not resolve."""
        views = [v for v in await self._connected_views() if v.state is ConnectionState.BROKEN]
        for view in views:
            logger.warning(
                "Broken link: txn=%s order=%s",
                view.transaction.transaction_id,
                view.transaction.connected_order_id,
            )
        return views

    async def list_transactions(self, state: ConnectionState | str) -> list[TransactionView]:
        state = ConnectionState(state)
        if state is ConnectionState.UNCONNECTED:
            return await self.list_unconnected()
        if state is ConnectionState.CONNECTED:
            return await self.list_connected()
        return await self.list_broken_links()

    async def stats(self) -> TransactionStats:
        """Counts and amounts by connection state."""
        unconnected = await self.list_unconnected()
        connected = await self._connected_views()
        buckets: dict[ConnectionState, list[Decimal]] = {s: [] for s in ConnectionState}
        for view in [*unconnected, *connected]:
            buckets[view.state].append(Decimal(view.transaction.amount_paid))

        def total(amounts: list[Decimal]) -> Decimal:
            return sum(amounts, Decimal("0"))

        every = [a for amounts in buckets.values() for a in amounts]
        return TransactionStats(
            total_count=len(every),
            unconnected_count=len(buckets[ConnectionState.UNCONNECTED]),
            connected_count=len(buckets[ConnectionState.CONNECTED]),
            broken_count=len(buckets[ConnectionState.BROKEN]),
            total_amount=total(every),
            unconnected_amount=total(buckets[ConnectionState.UNCONNECTED]),
            connected_amount=total(buckets[ConnectionState.CONNECTED]),
            broken_amount=total(buckets[ConnectionState.BROKEN]),
        )

    async def _connected_views(self) -> list[TransactionView]:
        async with session_scope(self.session_factory) as session:
            txns = await TransactionStore(session).list_connected()
            return await self._views(session, txns)

    async def _views(
        self, session: AsyncSession, txns: list[MpesaTransaction]
    ) -> list[TransactionView]:
        ids = [t.connected_order_id for t in txns if t.is_connected_to_order and t.connected_order_id]
        orders = await self._orders(session).get_many(ids)
        views = []
        for txn in txns:
            ref = resolve_connection(txn, orders)
            if ref is None:
                state = ConnectionState.UNCONNECTED
            elif isinstance(ref, UnresolvedOrderRef):
                state = ConnectionState.BROKEN
            else:
                state = ConnectionState.CONNECTED
            views.append(TransactionView(txn, state, ref))
        return views

    # ------------------------------------------------------------------
    # Suggestions
    # ------------------------------------------------------------------

    async def suggest_transactions_for_order(self, order_id: str) -> list[MatchSuggestion]:
        """Unconnected transactions that may belong to an order."""
        async with session_scope(self.session_factory) as session:
            order = await self._orders(session).get_by_id(order_id)
            if order is None:
                raise NotFoundError("Order", order_id)
            txns = await TransactionStore(session).list_unconnected()
            return self.matching.candidate_transactions_for_order(order, txns)

    async def suggest_orders_for_transaction(self, transaction_id: str) -> list[MatchSuggestion]:
        """Unpaid orders a transaction may belong to."""
        async with session_scope(self.session_factory) as session:
            txn = await TransactionStore(session).require(transaction_id)
            if is_corrupted_phone(txn.phone_number):
                return []
            orders = await self._orders(session).list_unpaid_by_phone(txn.phone_number)
            return self.matching.candidate_orders_for_transaction(txn, orders)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _orders(self, session: AsyncSession) -> OrderRepository:
        return self._order_repository_factory(session)

    def _aggregator(self, session: AsyncSession) -> OrderPaymentAggregator:
        return OrderPaymentAggregator(TransactionStore(session), self._orders(session))

    @staticmethod
    def _audit(
        session: AsyncSession,
        action: AuditAction,
        txn: MpesaTransaction,
        *,
        actor: str,
        order_id: str | None = None,
        previous_order_id: str | None = None,
        previous_status: str | None = None,
        new_status: str | None = None,
        notes: str | None = None,
    ) -> None:
        session.add(
            PaymentAuditLog(
                action=action.value,
                transaction_id=txn.transaction_id,
                order_id=order_id,
                actor=actor,
                amount=txn.amount_paid,
                phone_number=txn.phone_number,
                previous_order_id=previous_order_id,
                previous_status=previous_status,
                new_status=new_status,
                notes=notes,
            )
        )


def _decimal(value: Decimal | str) -> Decimal:
    try:
        return Decimal(str(value))
    except ArithmeticError as e:
        raise ValidationError(f"Invalid amount '{value}'", amount=str(value)) from e
