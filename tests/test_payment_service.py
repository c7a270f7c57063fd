"""Tests for push-payment initiation and callback ingestion."""

from decimal import Decimal

import pytest
import pytest_asyncio
from sqlalchemy import select

from mpesa_reconciliation.config import PollerConfig
from mpesa_reconciliation.errors import ConflictError, GatewayError, NotFoundError, ValidationError
from mpesa_reconciliation.gateway import PaymentGatewayClient
from mpesa_reconciliation.locking import KeyedLocks
from mpesa_reconciliation.models import MpesaTransaction, PaymentAuditLog
from mpesa_reconciliation.services import (
    AttemptState,
    CallbackStatus,
    ConnectionState,
    PaymentService,
    ReconciliationResolver,
    StatusPoller,
)

pytestmark = pytest.mark.asyncio


@pytest.fixture
def poller_config() -> PollerConfig:
    """Attempts stay pending until a callback or test resolves them."""
    return PollerConfig(initial_delay_seconds=60, interval_seconds=60)


def stk_success(cid: str, receipt: str = "QKL2ABC123", amount: int = 1200, phone: int = 254712345678) -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": cid,
                "ResultCode": 0,
                "ResultDesc": "The service request is processed successfully.",
                "CallbackMetadata": {
                    "Item": [
                        {"Name": "Amount", "Value": amount},
                        {"Name": "MpesaReceiptNumber", "Value": receipt},
                        {"Name": "Balance"},
                        {"Name": "TransactionDate", "Value": 20240115103000},
                        {"Name": "PhoneNumber", "Value": phone},
                    ]
                },
            }
        }
    }


def stk_failure(cid: str, code: int = 1032, desc: str = "Request cancelled by user") -> dict:
    return {
        "Body": {
            "stkCallback": {
                "MerchantRequestID": "29115-34620561-1",
                "CheckoutRequestID": cid,
                "ResultCode": code,
                "ResultDesc": desc,
            }
        }
    }


def c2b(trans_id: str = "QGR7XYZ123", amount: str = "500.00", msisdn: str = "254712345678") -> dict:
    return {
        "TransactionType": "Pay Bill",
        "TransID": trans_id,
        "TransTime": "20240115103000",
        "TransAmount": amount,
        "BusinessShortCode": "600638",
        "BillRefNumber": "ORD-1",
        "OrgAccountBalance": "49197.00",
        "MSISDN": msisdn,
        "FirstName": "Jane",
        "LastName": "Wanjiku",
    }


class TestInitiatePayment:
    """Tests for initiate_payment."""

    async def test_defaults_from_order(self, payment_service, gateway, make_order):
        await make_order("ORD-1", total="1200.40", phone="0712 345 678")

        attempt = await payment_service.initiate_payment("ORD-1")

        assert attempt.state is AttemptState.PENDING
        assert attempt.phone_number == "254712345678"
        assert attempt.amount == Decimal("1200")
        assert gateway.requests[0]["amount"] == 1200
        assert gateway.requests[0]["account_reference"] == "ORD-1"
        assert await payment_service.get_attempt_status(attempt.checkout_request_id) is attempt

    async def test_explicit_phone_and_amount(self, payment_service, gateway, make_order):
        await make_order("ORD-1")

        await payment_service.initiate_payment("ORD-1", phone_number="0798765432", amount="250.50")

        assert gateway.requests[0]["phone_number"] == "254798765432"
        assert gateway.requests[0]["amount"] == 251

    async def test_unknown_order(self, payment_service):
        with pytest.raises(NotFoundError):
            await payment_service.initiate_payment("NOPE")

    async def test_paid_order(self, payment_service, make_order):
        await make_order("ORD-FREE", total="0.00")
        await payment_service.resolver.recompute_for_order("ORD-FREE")

        with pytest.raises(ConflictError):
            await payment_service.initiate_payment("ORD-FREE")

    async def test_bad_phone(self, payment_service, gateway, make_order):
        await make_order("ORD-1", phone="12345")

        with pytest.raises(ValidationError):
            await payment_service.initiate_payment("ORD-1")
        assert gateway.requests == []

    async def test_gateway_rejection(self, payment_service, gateway, make_order):
        await make_order("ORD-1")
        gateway.reject_next_request()

        with pytest.raises(GatewayError):
            await payment_service.initiate_payment("ORD-1")
        assert payment_service.poller.pending_for_order("ORD-1") is None


class TestStkCallback:
    """Tests for STK callback handling."""

    async def test_success_records_links_and_recomputes(
        self, payment_service, make_order, fetch_order, session_factory
    ):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        cid = attempt.checkout_request_id

        result = await payment_service.handle_stk_callback(stk_success(cid))

        assert result.status is CallbackStatus.PROCESSED
        assert result.transaction_id == "QKL2ABC123"
        assert attempt.state is AttemptState.SUCCESS

        view = await payment_service.resolver.get_transaction("QKL2ABC123")
        assert view.state is ConnectionState.CONNECTED
        assert view.transaction.connected_order_id == "ORD-1"
        assert view.transaction.connected_by == "system:stk_push"
        assert view.transaction.transaction_type == "STK_PUSH"
        assert view.transaction.checkout_request_id == cid

        order = await fetch_order("ORD-1")
        assert order.payment_status == "paid"
        assert order.remaining_balance == Decimal("0.00")

        async with session_factory() as session:
            actions = (await session.execute(select(PaymentAuditLog.action))).scalars().all()
        assert actions == ["auto_match"]

    async def test_duplicate_callback(self, payment_service, make_order, session_factory):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        payload = stk_success(attempt.checkout_request_id)

        await payment_service.handle_stk_callback(payload)
        again = await payment_service.handle_stk_callback(payload)

        assert again.status is CallbackStatus.DUPLICATE
        async with session_factory() as session:
            rows = (await session.execute(select(MpesaTransaction))).scalars().all()
        assert len(rows) == 1

    async def test_failure_callback(self, payment_service, make_order, fetch_order):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")

        result = await payment_service.handle_stk_callback(
            stk_failure(attempt.checkout_request_id, code=1, desc="Insufficient funds")
        )

        assert result.status is CallbackStatus.PROCESSED
        assert result.transaction_id is None
        assert attempt.state is AttemptState.FAILED
        assert attempt.user_message == "Payment failed: Insufficient funds"
        assert (await fetch_order("ORD-1")).payment_status == "unpaid"

    async def test_processing_callback_keeps_pending(self, payment_service, make_order):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")

        await payment_service.handle_stk_callback(stk_failure(attempt.checkout_request_id, code=1032))

        assert attempt.state is AttemptState.PENDING

    async def test_unknown_attempt_success_is_recorded_unconnected(self, payment_service):
        result = await payment_service.handle_stk_callback(stk_success("ws_CO_ELSEWHERE"))

        assert result.status is CallbackStatus.PROCESSED
        view = await payment_service.resolver.get_transaction("QKL2ABC123")
        assert view.state is ConnectionState.UNCONNECTED

    async def test_unknown_attempt_failure(self, payment_service):
        result = await payment_service.handle_stk_callback(stk_failure("ws_CO_ELSEWHERE", code=1))
        assert result.status is CallbackStatus.UNKNOWN

    async def test_invalid_payload(self, payment_service):
        result = await payment_service.handle_stk_callback({"Body": {}})
        assert result.status is CallbackStatus.INVALID

    async def test_conflicting_amount_is_invalid(self, payment_service, make_order):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")
        await payment_service.handle_stk_callback(stk_success(attempt.checkout_request_id, amount=1200))

        result = await payment_service.handle_stk_callback(
            stk_success(attempt.checkout_request_id, amount=900)
        )

        assert result.status is CallbackStatus.INVALID


class TestPollDriven:
    """Tests where the poller reaches the outcome first."""

    @pytest.fixture
    def poller_config(self) -> PollerConfig:
        return PollerConfig(initial_delay_seconds=0, interval_seconds=0, max_attempts=30)

    async def test_poll_success_then_callback_links_once(
        self, payment_service, gateway, make_order, fetch_order, session_factory
    ):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        gateway.simulate_success(attempt.checkout_request_id)
        await payment_service.poller.wait(attempt.checkout_request_id)
        assert attempt.state is AttemptState.SUCCESS
        assert (await fetch_order("ORD-1")).payment_status == "unpaid"

        await payment_service.handle_stk_callback(stk_success(attempt.checkout_request_id))

        assert (await fetch_order("ORD-1")).payment_status == "paid"
        async with session_factory() as session:
            actions = (await session.execute(select(PaymentAuditLog.action))).scalars().all()
        assert actions == ["auto_match"]

    async def test_acknowledge_timeout(self, payment_service, make_order):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")
        await payment_service.poller.wait(attempt.checkout_request_id)

        assert [a.checkout_request_id for a in await payment_service.list_timed_out()] == [
            attempt.checkout_request_id
        ]

        acked = await payment_service.acknowledge_timeout(attempt.checkout_request_id, "support-1")

        assert acked.state is AttemptState.TIMED_OUT
        assert acked.acknowledged_by == "support-1"
        assert await payment_service.list_timed_out() == []
        stored = await payment_service.attempts.get(attempt.checkout_request_id)
        assert stored.acknowledged_by == "support-1"


class TestAttemptRecords:
    """Tests for attempts read back from the database by another worker."""

    @pytest_asyncio.fixture
    async def other_worker(self, session_factory, gateway, normalizer, poller_config):
        """Same database, but its own poller, locks and resolver."""
        client = PaymentGatewayClient(gateway, normalizer)
        poller = StatusPoller(client, poller_config)
        resolver = ReconciliationResolver(session_factory, normalizer=normalizer, locks=KeyedLocks())
        yield PaymentService(client, poller, resolver, normalizer)
        await poller.shutdown()

    async def test_callback_on_another_worker_links_order(
        self, payment_service, other_worker, make_order, fetch_order
    ):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        cid = attempt.checkout_request_id
        assert other_worker.poller.get(cid) is None

        result = await other_worker.handle_stk_callback(stk_success(cid))

        assert result.status is CallbackStatus.PROCESSED
        view = await other_worker.resolver.get_transaction("QKL2ABC123")
        assert view.state is ConnectionState.CONNECTED
        assert view.transaction.connected_order_id == "ORD-1"
        assert view.transaction.bill_ref_number == "ORD-1"

        order = await fetch_order("ORD-1")
        assert order.payment_status == "paid"
        assert order.remaining_balance == Decimal("0.00")

        stored = await other_worker.get_attempt_status(cid)
        assert stored.state is AttemptState.SUCCESS
        assert stored.order_id == "ORD-1"

    async def test_failure_on_another_worker_is_stored(
        self, payment_service, other_worker, make_order, fetch_order
    ):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")

        result = await other_worker.handle_stk_callback(
            stk_failure(attempt.checkout_request_id, code=1, desc="Request cancelled by user")
        )

        assert result.status is CallbackStatus.PROCESSED
        stored = await other_worker.get_attempt_status(attempt.checkout_request_id)
        assert stored.state is AttemptState.FAILED
        assert stored.result_desc == "Request cancelled by user"
        assert (await fetch_order("ORD-1")).payment_status == "unpaid"

    async def test_outcome_reported_on_both_workers_links_once(
        self, payment_service, other_worker, make_order, session_factory
    ):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        cid = attempt.checkout_request_id

        await other_worker.handle_stk_callback(stk_success(cid))
        await payment_service.poller.resolve_externally(cid, "0", "Processed")

        assert attempt.state is AttemptState.SUCCESS
        async with session_factory() as session:
            actions = (await session.execute(select(PaymentAuditLog.action))).scalars().all()
        assert actions == ["auto_match"]

    async def test_new_attempt_supersedes_stored_pending(self, payment_service, make_order):
        await make_order("ORD-1")
        first = await payment_service.initiate_payment("ORD-1")
        second = await payment_service.initiate_payment("ORD-1")

        stored_first = await payment_service.attempts.get(first.checkout_request_id)
        stored_second = await payment_service.attempts.get(second.checkout_request_id)
        assert stored_first.state is AttemptState.SUPERSEDED
        assert stored_second.state is AttemptState.PENDING

    async def test_unknown_attempt_status(self, payment_service):
        with pytest.raises(NotFoundError):
            await payment_service.get_attempt_status("ws_CO_404")


class TestDroppedFromMemory:
    """Tests for attempts the poller no longer holds."""

    @pytest.fixture
    def poller_config(self) -> PollerConfig:
        return PollerConfig(initial_delay_seconds=0, interval_seconds=0, max_attempts=30, retention_seconds=0)

    async def test_status_read_from_record(self, payment_service, gateway, make_order):
        await make_order("ORD-1")
        attempt = await payment_service.initiate_payment("ORD-1")
        cid = attempt.checkout_request_id
        gateway.simulate_failure(cid, result_code="2001", desc="The initiator information is invalid.")
        await payment_service.poller.wait(cid)

        assert payment_service.poller.get(cid) is None
        status = await payment_service.get_attempt_status(cid)
        assert status.state is AttemptState.FAILED
        assert status.result_desc == "The initiator information is invalid."
        assert status.attempt_count == 1

    async def test_late_callback_still_links(self, payment_service, gateway, make_order, fetch_order):
        await make_order("ORD-1", total="1200.00")
        attempt = await payment_service.initiate_payment("ORD-1")
        cid = attempt.checkout_request_id
        gateway.simulate_success(cid)
        await payment_service.poller.wait(cid)
        assert payment_service.poller.get(cid) is None

        result = await payment_service.handle_stk_callback(stk_success(cid))

        assert result.status is CallbackStatus.PROCESSED
        assert (await fetch_order("ORD-1")).payment_status == "paid"


class TestC2BConfirmation:
    """Tests for C2B confirmation handling."""

    async def test_recorded_unconnected(self, payment_service, make_order, fetch_order):
        await make_order("ORD-1", total="500.00")

        result = await payment_service.handle_c2b_confirmation(c2b())

        assert result.status is CallbackStatus.PROCESSED
        view = await payment_service.resolver.get_transaction("QGR7XYZ123")
        assert view.state is ConnectionState.UNCONNECTED
        assert view.transaction.customer_name == "Jane Wanjiku"
        assert view.transaction.bill_ref_number == "ORD-1"
        assert (await fetch_order("ORD-1")).payment_status == "unpaid"

    async def test_duplicate(self, payment_service):
        await payment_service.handle_c2b_confirmation(c2b())
        again = await payment_service.handle_c2b_confirmation(c2b())
        assert again.status is CallbackStatus.DUPLICATE

    async def test_hashed_msisdn_kept_for_review(self, payment_service):
        digest = "ab" * 32
        await payment_service.handle_c2b_confirmation(c2b(msisdn=digest))

        view = await payment_service.resolver.get_transaction("QGR7XYZ123")
        assert view.transaction.phone_number == digest
        assert view.phone_display == "Data Error"

    async def test_invalid(self, payment_service):
        result = await payment_service.handle_c2b_confirmation({"TransID": "X"})
        assert result.status is CallbackStatus.INVALID
