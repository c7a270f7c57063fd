"""Tests for manual reconciliation: connect, disconnect, listings."""

import asyncio
from decimal import Decimal

import pytest
from sqlalchemy import delete, select

from mpesa_reconciliation.errors import (
    ConflictError,
    DataIntegrityError,
    NotFoundError,
    ValidationError,
)
from mpesa_reconciliation.models import MpesaTransaction, Order, PaymentAuditLog
from mpesa_reconciliation.services import (
    ConnectionState,
    ReconciliationResolver,
    SqlOrderRepository,
    TransactionData,
)

pytestmark = pytest.mark.asyncio

DIGEST = "a3f1" * 16


async def audit_rows(session_factory) -> list[PaymentAuditLog]:
    async with session_factory() as session:
        result = await session.execute(select(PaymentAuditLog).order_by(PaymentAuditLog.created_at))
        return list(result.scalars())


async def delete_order(session_factory, order_id: str) -> None:
    async with session_factory() as session:
        await session.execute(delete(Order).where(Order.id == order_id))
        await session.commit()


class TestConnect:
    """Tests for connecting transactions to orders."""

    async def test_connect_updates_order_and_audits(
        self, resolver, make_order, make_transaction, fetch_order, session_factory
    ):
        await make_order("ORD-1", total="1200.00")
        await make_transaction("T1", amount="500.00")

        outcome = await resolver.connect("T1", "ORD-1", operator="admin-1", notes="walk-in")

        assert outcome.changed
        assert outcome.previous_order_id is None
        assert outcome.warnings == []
        assert [r.order_id for r in outcome.recomputed] == ["ORD-1"]

        view = await resolver.get_transaction("T1")
        assert view.state is ConnectionState.CONNECTED
        assert view.transaction.connected_by == "admin-1"
        assert view.transaction.connected_at is not None
        assert view.transaction.notes == "walk-in"

        order = await fetch_order("ORD-1")
        assert order.payment_status == "partial"

        rows = await audit_rows(session_factory)
        assert [(r.action, r.order_id, r.actor) for r in rows] == [("manual_link", "ORD-1", "admin-1")]
        assert rows[0].previous_status == "unpaid"
        assert rows[0].new_status == "partial"

    async def test_reconnect_moves_amount(self, resolver, make_order, make_transaction, fetch_order):
        """Reconnecting recomputes both the old and the new order."""
        await make_order("ORD-1", total="1200.00")
        await make_order("ORD-2", total="500.00")
        await make_transaction("T1", amount="500.00")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        outcome = await resolver.connect("T1", "ORD-2", operator="admin-2")

        assert outcome.previous_order_id == "ORD-1"
        assert "reconnected" in outcome.warnings
        assert sorted(r.order_id for r in outcome.recomputed) == ["ORD-1", "ORD-2"]

        old = await fetch_order("ORD-1")
        assert old.payment_status == "unpaid"
        assert old.remaining_balance == Decimal("1200.00")
        new = await fetch_order("ORD-2")
        assert new.payment_status == "paid"
        assert new.remaining_balance == Decimal("0.00")

    async def test_reconnect_refused(self, resolver, make_order, make_transaction, fetch_order):
        await make_order("ORD-1")
        await make_order("ORD-2")
        await make_transaction("T1")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        with pytest.raises(ConflictError):
            await resolver.connect("T1", "ORD-2", operator="admin-1", allow_reconnect=False)

        view = await resolver.get_transaction("T1")
        assert view.transaction.connected_order_id == "ORD-1"
        assert (await fetch_order("ORD-2")).payment_status == "unpaid"

    async def test_connect_same_order_is_noop(self, resolver, make_order, make_transaction, session_factory):
        await make_order("ORD-1")
        await make_transaction("T1")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        outcome = await resolver.connect("T1", "ORD-1", operator="admin-1")

        assert not outcome.changed
        assert outcome.warnings == ["already_connected"]
        assert len(await audit_rows(session_factory)) == 1

    async def test_missing_order(self, resolver, make_transaction):
        await make_transaction("T1")
        with pytest.raises(NotFoundError) as exc:
            await resolver.connect("T1", "NOPE", operator="admin-1")
        assert exc.value.kind == "Order"

    async def test_missing_transaction(self, resolver, make_order):
        await make_order("ORD-1")
        with pytest.raises(NotFoundError) as exc:
            await resolver.connect("NOPE", "ORD-1", operator="admin-1")
        assert exc.value.kind == "Transaction"

    async def test_blank_order_id(self, resolver, make_transaction):
        await make_transaction("T1")
        with pytest.raises(ValidationError):
            await resolver.connect("T1", "", operator="admin-1")

    async def test_warnings(self, resolver, make_order, make_transaction):
        await make_order("ORD-1", total="100.00", phone="0798765432")
        await make_order("ORD-2", total="100.00")
        await make_transaction("T-OTHER", amount="100.00")
        await make_transaction("T-HASH", amount="100.00", phone=DIGEST)
        await make_transaction("T-PAID", amount="10.00")

        mismatch = await resolver.connect("T-OTHER", "ORD-1", operator="admin-1")
        corrupted = await resolver.connect("T-HASH", "ORD-2", operator="admin-1")
        paid = await resolver.connect("T-PAID", "ORD-2", operator="admin-1")

        assert mismatch.warnings == ["phone_mismatch"]
        assert corrupted.warnings == ["phone_data_error"]
        assert paid.warnings == ["order_already_paid"]

    async def test_failure_rolls_back_everything(
        self, session_factory, normalizer, make_order, make_transaction, fetch_order
    ):
        class FailingRepository(SqlOrderRepository):
            async def update_payment_fields(self, order_id, payment_status, remaining_balance):
                raise RuntimeError("order table unavailable")

        resolver = ReconciliationResolver(
            session_factory,
            normalizer=normalizer,
            order_repository_factory=lambda session: FailingRepository(session, normalizer),
        )
        await make_order("ORD-1")
        await make_transaction("T1")

        with pytest.raises(RuntimeError):
            await resolver.connect("T1", "ORD-1", operator="admin-1")

        view = await resolver.get_transaction("T1")
        assert view.state is ConnectionState.UNCONNECTED
        assert (await fetch_order("ORD-1")).payment_status == "unpaid"
        assert await audit_rows(session_factory) == []


class TestDisconnect:
    """Tests for disconnecting and broken links."""

    async def test_disconnect_recomputes(self, resolver, make_order, make_transaction, fetch_order, session_factory):
        await make_order("ORD-1", total="500.00")
        await make_transaction("T1", amount="500.00")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        outcome = await resolver.disconnect("T1", operator="admin-2", notes="wrong customer")

        assert outcome.previous_order_id == "ORD-1"
        assert outcome.warnings == []
        assert outcome.recomputed[0].payment_status == "unpaid"
        order = await fetch_order("ORD-1")
        assert order.payment_status == "unpaid"
        assert order.remaining_balance == Decimal("500.00")

        view = await resolver.get_transaction("T1")
        assert view.state is ConnectionState.UNCONNECTED
        assert view.transaction.connected_by is None

        actions = [r.action for r in await audit_rows(session_factory)]
        assert actions == ["manual_link", "manual_unlink"]

    async def test_disconnect_unconnected(self, resolver, make_transaction):
        await make_transaction("T1")
        with pytest.raises(ConflictError):
            await resolver.disconnect("T1", operator="admin-1")

    async def test_broken_link_is_not_unconnected(self, resolver, make_order, make_transaction, session_factory):
        """A link to a deleted order is broken, and disconnecting repairs it."""
        await make_order("ORD-GONE")
        await make_transaction("T1")
        await resolver.connect("T1", "ORD-GONE", operator="admin-1")
        await delete_order(session_factory, "ORD-GONE")

        assert [v.transaction.transaction_id for v in await resolver.list_broken_links()] == ["T1"]
        assert await resolver.list_unconnected() == []
        assert await resolver.list_connected() == []

        view = await resolver.get_transaction("T1")
        assert view.state is ConnectionState.BROKEN
        assert view.to_dict()["order"] is None

        outcome = await resolver.disconnect("T1", operator="admin-1")

        assert outcome.warnings == ["broken_link_repaired"]
        assert outcome.recomputed == []
        assert await resolver.list_broken_links() == []
        assert [v.transaction.transaction_id for v in await resolver.list_unconnected()] == ["T1"]

    async def test_reconnect_from_broken_link(self, resolver, make_order, make_transaction, session_factory, fetch_order):
        await make_order("ORD-GONE")
        await make_order("ORD-2", total="500.00")
        await make_transaction("T1", amount="500.00")
        await resolver.connect("T1", "ORD-GONE", operator="admin-1")
        await delete_order(session_factory, "ORD-GONE")

        outcome = await resolver.connect("T1", "ORD-2", operator="admin-1")

        assert outcome.previous_order_id == "ORD-GONE"
        assert [r.order_id for r in outcome.recomputed] == ["ORD-2"]
        assert (await fetch_order("ORD-2")).payment_status == "paid"


class TestManualEntry:
    """Tests for operator-entered transactions."""

    async def test_manual_entry_with_order(self, resolver, make_order, fetch_order, session_factory):
        await make_order("ORD-1", total="1200.00")

        record, outcome = await resolver.record_manual_transaction(
            transaction_id="QGH1234XYZ",
            amount="1200",
            phone_number="+254 712 345 678",
            operator="admin-1",
            order_id="ORD-1",
            notes="paid at the counter",
        )

        assert record.is_new
        assert record.transaction.phone_number == "254712345678"
        assert record.transaction.mpesa_receipt_number == "QGH1234XYZ"
        assert outcome is not None and outcome.order_id == "ORD-1"
        assert (await fetch_order("ORD-1")).payment_status == "paid"
        actions = sorted(r.action for r in await audit_rows(session_factory))
        assert actions == ["manual_entry", "manual_link"]

    async def test_manual_entry_without_order(self, resolver, session_factory):
        record, outcome = await resolver.record_manual_transaction(
            transaction_id="QGH1234XYZ",
            amount=Decimal("300.00"),
            phone_number="0712345678",
            operator="admin-1",
            receipt_number="RCPT-1",
        )

        assert outcome is None
        assert record.transaction.mpesa_receipt_number == "RCPT-1"
        assert record.transaction.is_connected_to_order is False

    async def test_manual_entry_missing_order_rolls_back(self, resolver, session_factory):
        with pytest.raises(NotFoundError):
            await resolver.record_manual_transaction(
                transaction_id="QGH1234XYZ",
                amount="300",
                phone_number="0712345678",
                operator="admin-1",
                order_id="NOPE",
            )

        async with session_factory() as session:
            rows = (await session.execute(select(MpesaTransaction))).scalars().all()
        assert rows == []

    async def test_manual_entry_bad_phone(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.record_manual_transaction(
                transaction_id="QGH1234XYZ",
                amount="300",
                phone_number="12345",
                operator="admin-1",
            )

    async def test_manual_entry_bad_amount(self, resolver):
        with pytest.raises(ValidationError):
            await resolver.record_manual_transaction(
                transaction_id="QGH1234XYZ",
                amount="abc",
                phone_number="0712345678",
                operator="admin-1",
            )

    async def test_manual_entry_conflicting_amount(self, resolver, make_transaction):
        await make_transaction("QGH1234XYZ", amount="300.00")
        with pytest.raises(DataIntegrityError):
            await resolver.record_manual_transaction(
                transaction_id="QGH1234XYZ",
                amount="400",
                phone_number="0712345678",
                operator="admin-1",
            )


class TestListings:
    """Tests for listings, stats and suggestions."""

    async def test_list_by_state(self, resolver, make_order, make_transaction):
        await make_order("ORD-1")
        await make_transaction("T1")
        await make_transaction("T2")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        connected = await resolver.list_transactions("connected")
        unconnected = await resolver.list_transactions(ConnectionState.UNCONNECTED)

        assert [v.transaction.transaction_id for v in connected] == ["T1"]
        assert connected[0].to_dict()["order"]["id"] == "ORD-1"
        assert [v.transaction.transaction_id for v in unconnected] == ["T2"]

    async def test_unknown_state(self, resolver):
        with pytest.raises(ValueError):
            await resolver.list_transactions("paid")

    async def test_corrupted_phone_displayed_as_data_error(self, resolver, make_transaction):
        await make_transaction("T-HASH", phone=DIGEST)

        view = (await resolver.list_unconnected())[0]

        assert view.phone_corrupted
        assert view.to_dict()["phone_number"] == "Data Error"

    async def test_stats(self, resolver, make_order, make_transaction, session_factory):
        await make_order("ORD-1")
        await make_order("ORD-GONE")
        await make_transaction("T1", amount="100.00")
        await make_transaction("T2", amount="200.00")
        await make_transaction("T3", amount="300.00")
        await resolver.connect("T1", "ORD-1", operator="admin-1")
        await resolver.connect("T2", "ORD-GONE", operator="admin-1")
        await delete_order(session_factory, "ORD-GONE")

        stats = await resolver.stats()

        assert stats.total_count == 3
        assert (stats.connected_count, stats.broken_count, stats.unconnected_count) == (1, 1, 1)
        assert stats.total_amount == Decimal("600.00")
        assert stats.connected_amount == Decimal("100.00")
        assert stats.broken_amount == Decimal("200.00")
        assert stats.unconnected_amount == Decimal("300.00")
        assert stats.to_dict()["total_amount"] == "600.00"

    async def test_suggestions(self, resolver, make_order, make_transaction):
        await make_order("ORD-1", total="1200.00", phone="0712 345 678")
        await make_transaction("T-EXACT", amount="1200.00", phone="254712345678")
        await make_transaction("T-PART", amount="100.00", phone="254712345678")
        await make_transaction("T-OTHER", amount="1200.00", phone="254798765432")

        for_order = await resolver.suggest_transactions_for_order("ORD-1")
        for_txn = await resolver.suggest_orders_for_transaction("T-PART")

        assert sorted(s.transaction_id for s in for_order) == ["T-EXACT", "T-PART"]
        assert for_order[0].transaction_id == "T-EXACT"
        assert for_order[0].amount_matches_balance
        assert [s.order_id for s in for_txn] == ["ORD-1"]

    async def test_suggestions_for_missing_order(self, resolver):
        with pytest.raises(NotFoundError):
            await resolver.suggest_transactions_for_order("NOPE")

    async def test_find_by_checkout(self, resolver, make_transaction):
        await make_transaction("QRC1", transaction_type="STK_PUSH", checkout_request_id="ws_CO_1")

        assert await resolver.find_transaction_id_by_checkout("ws_CO_1") == "QRC1"
        assert await resolver.find_transaction_id_by_checkout("ws_CO_2") is None


class TestConcurrency:
    """Interleaved operations on shared transactions and orders."""

    async def test_concurrent_connects_to_one_order(
        self, resolver, make_order, make_transaction, fetch_order, session_factory
    ):
        await make_order("ORD-1", total="1200.00")
        await make_transaction("T1", amount="500.00")
        await make_transaction("T2", amount="700.00")

        first, second = await asyncio.gather(
            resolver.connect("T1", "ORD-1", operator="admin-1"),
            resolver.connect("T2", "ORD-1", operator="admin-2"),
        )

        assert first.changed and second.changed
        order = await fetch_order("ORD-1")
        assert order.payment_status == "paid"
        assert order.remaining_balance == Decimal("0.00")
        statuses = sorted(r.new_status for r in await audit_rows(session_factory))
        assert statuses == ["paid", "partial"]

    async def test_many_concurrent_connects(self, resolver, make_order, make_transaction, fetch_order):
        await make_order("ORD-1", total="1000.00")
        for i in range(5):
            await make_transaction(f"T{i}", amount="200.00")

        await asyncio.gather(*(resolver.connect(f"T{i}", "ORD-1", operator="admin-1") for i in range(5)))

        order = await fetch_order("ORD-1")
        assert order.payment_status == "paid"
        assert order.remaining_balance == Decimal("0.00")

    async def test_connect_and_disconnect_on_one_order(
        self, resolver, make_order, make_transaction, fetch_order
    ):
        await make_order("ORD-1", total="1200.00")
        await make_transaction("T1", amount="500.00")
        await make_transaction("T2", amount="700.00")
        await resolver.connect("T2", "ORD-1", operator="admin-1")

        await asyncio.gather(
            resolver.connect("T1", "ORD-1", operator="admin-1"),
            resolver.disconnect("T2", operator="admin-2"),
        )

        order = await fetch_order("ORD-1")
        assert order.payment_status == "partial"
        assert order.remaining_balance == Decimal("700.00")

    async def test_redelivery_racing_operator_connect(
        self, resolver, make_order, make_transaction, fetch_order
    ):
        await make_order("ORD-1", total="500.00")
        await make_transaction("T1", amount="500.00")

        record, outcome = await asyncio.gather(
            resolver.record_transaction(
                TransactionData(transaction_id="T1", amount=Decimal("500.00"), phone_number="254712345678")
            ),
            resolver.connect("T1", "ORD-1", operator="admin-1"),
        )

        assert record.was_duplicate
        assert outcome.changed
        view = await resolver.get_transaction("T1")
        assert view.state is ConnectionState.CONNECTED
        assert view.transaction.connected_by == "admin-1"
        assert (await fetch_order("ORD-1")).payment_status == "paid"

    async def test_first_delivery_racing_operator_connect(
        self, resolver, make_order, fetch_order, session_factory
    ):
        await make_order("ORD-1", total="500.00")

        record, outcome = await asyncio.gather(
            resolver.record_transaction(
                TransactionData(transaction_id="T1", amount=Decimal("500.00"), phone_number="254712345678")
            ),
            resolver.connect("T1", "ORD-1", operator="admin-1"),
            return_exceptions=True,
        )

        assert record.is_new
        async with session_factory() as session:
            rows = (await session.execute(select(MpesaTransaction))).scalars().all()
        assert len(rows) == 1

        view = await resolver.get_transaction("T1")
        order = await fetch_order("ORD-1")
        if isinstance(outcome, NotFoundError):
            # the operator looked before the webhook committed
            assert view.state is ConnectionState.UNCONNECTED
            assert order.payment_status == "unpaid"
        else:
            assert outcome.changed
            assert view.state is ConnectionState.CONNECTED
            assert order.payment_status == "paid"

    async def test_reconnect_racing_disconnect(
        self, resolver, make_order, make_transaction, fetch_order
    ):
        await make_order("ORD-1", total="500.00")
        await make_order("ORD-2", total="500.00")
        await make_transaction("T1", amount="500.00")
        await resolver.connect("T1", "ORD-1", operator="admin-1")

        results = await asyncio.gather(
            resolver.connect("T1", "ORD-2", operator="admin-1"),
            resolver.disconnect("T1", operator="admin-2"),
            return_exceptions=True,
        )

        for result in results:
            assert not isinstance(result, Exception) or isinstance(result, ConflictError)

        first = await fetch_order("ORD-1")
        second = await fetch_order("ORD-2")
        assert first.payment_status == "unpaid"
        assert first.remaining_balance == Decimal("500.00")

        view = await resolver.get_transaction("T1")
        if view.state is ConnectionState.CONNECTED:
            assert view.transaction.connected_order_id == "ORD-2"
            assert second.payment_status == "paid"
            assert second.remaining_balance == Decimal("0.00")
        else:
            assert view.state is ConnectionState.UNCONNECTED
            assert second.payment_status == "unpaid"
            assert second.remaining_balance == Decimal("500.00")
