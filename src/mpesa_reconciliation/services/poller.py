"""Status poller for push-payment attempts.

Each attempt is an explicit value (``PaymentAttempt``) paired with the
asyncio task polling it (``PollTask``). Starting a new attempt for an order
that already has a pending one supersedes it: the old task is cancelled and
the old attempt ends in SUPERSEDED.

Cadence: first check after ``initial_delay_seconds``, then every
``interval_seconds``, at most ``max_attempts`` checks. Classification of
each answer:

    result_code == success_code           -> SUCCESS
    result_code == processing_code         -> keep waiting
    result_code is None / transport error  -> keep waiting
    any other result_code                  -> FAILED
    checks exhausted                       -> TIMED_OUT

TIMED_OUT is not FAILED: the payer may well have been charged. It stays on
record until an operator acknowledges it.

Finished attempts are dropped from memory ``retention_seconds`` after their
listeners have run (unacknowledged timeouts only once acknowledged). The
durable copy lives in PaymentAttemptRepository.
"""

from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Awaitable, Callable, Protocol

from mpesa_reconciliation.config import PollerConfig
from mpesa_reconciliation.errors import (
    ConflictError,
    GatewayError,
    NotFoundError,
    PollingTimeoutError,
)
from mpesa_reconciliation.gateway.base import StatusQueryResult
from mpesa_reconciliation.models import utcnow

logger = logging.getLogger(__name__)


class AttemptState(str, Enum):
    """Payment attempt states."""

    PENDING = "pending"
    SUCCESS = "success"
    FAILED = "failed"
    TIMED_OUT = "timed_out"
    SUPERSEDED = "superseded"


class InvalidTransitionError(Exception):
    """Raised when an invalid state transition is attempted."""

    def __init__(self, from_state: str, to_state: str):
        self.from_state = from_state
        self.to_state = to_state
        super().__init__(f"Invalid transition from '{from_state}' to '{to_state}'")


class AttemptStateMachine:
    """Allowed transitions: pending -> any terminal state. Terminal states are sinks."""

    VALID_TRANSITIONS: dict[str, list[str]] = {
        AttemptState.PENDING: [
            AttemptState.SUCCESS,
            AttemptState.FAILED,
            AttemptState.TIMED_OUT,
            AttemptState.SUPERSEDED,
        ],
        AttemptState.SUCCESS: [],
        AttemptState.FAILED: [],
        AttemptState.TIMED_OUT: [],
        AttemptState.SUPERSEDED: [],
    }

    @classmethod
    def can_transition(cls, from_state: str, to_state: str) -> bool:
        return to_state in cls.VALID_TRANSITIONS.get(from_state, [])

    @classmethod
    def validate_transition(cls, from_state: str, to_state: str) -> None:
        if not cls.can_transition(from_state, to_state):
            raise InvalidTransitionError(from_state, to_state)

    @classmethod
    def is_terminal(cls, state: str) -> bool:
        return not cls.VALID_TRANSITIONS.get(state, [])


USER_MESSAGES = {
    AttemptState.PENDING: "Payment request sent. Check your phone and enter your M-Pesa PIN.",
    AttemptState.SUCCESS: "Payment received. Thank you.",
    AttemptState.TIMED_OUT: (
        "We could not confirm this payment yet. If money left your account it has not been "
        "lost; please contact support with your M-Pesa message before paying again."
    ),
    AttemptState.SUPERSEDED: "This payment request was replaced by a newer one.",
}


@dataclass
class PaymentAttempt:
    """One initiated push payment."""

    checkout_request_id: str
    order_id: str
    phone_number: str
    amount: Decimal
    attempt_count: int = 0
    state: AttemptState = AttemptState.PENDING
    result_code: str | None = None
    result_desc: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    completed_at: datetime | None = None
    acknowledged_by: str | None = None
    acknowledged_at: datetime | None = None

    @property
    def is_terminal(self) -> bool:
        return AttemptStateMachine.is_terminal(self.state)

    @property
    def user_message(self) -> str:
        """Text safe to show the payer."""
        if self.state is AttemptState.PENDING and self.attempt_count > 0:
            return "Processing your payment..."
        if self.state is AttemptState.FAILED:
            return f"Payment failed: {self.result_desc or 'declined by M-Pesa'}"
        return USER_MESSAGES[self.state]

    def transition(self, to_state: AttemptState) -> None:
        AttemptStateMachine.validate_transition(self.state, to_state)
        self.state = to_state
        self.completed_at = utcnow()

    def to_dict(self) -> dict[str, Any]:
        return {
            "checkout_request_id": self.checkout_request_id,
            "order_id": self.order_id,
            "phone_number": self.phone_number,
            "amount": str(self.amount),
            "attempt_count": self.attempt_count,
            "state": self.state.value,
            "result_code": self.result_code,
            "result_desc": self.result_desc,
            "message": self.user_message,
            "created_at": self.created_at.isoformat(),
            "completed_at": self.completed_at.isoformat() if self.completed_at else None,
            "acknowledged_by": self.acknowledged_by,
            "acknowledged_at": self.acknowledged_at.isoformat() if self.acknowledged_at else None,
        }


@dataclass
class PollTask:
    """An attempt and the task polling it."""

    attempt: PaymentAttempt
    task: asyncio.Task[None] | None = None

    def cancel(self) -> None:
        if self.task is not None and not self.task.done():
            self.task.cancel()


class StatusSource(Protocol):
    async def query_status(self, checkout_request_id: str) -> StatusQueryResult:
        ...


TerminalListener = Callable[[PaymentAttempt], Awaitable[None]]


class StatusPoller:
    """Runs one polling task per pending attempt."""

    def __init__(
        self,
        source: StatusSource,
        config: PollerConfig | None = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ):
        self.source = source
        self.config = config or PollerConfig()
        self._sleep = sleep
        self._tasks: dict[str, PollTask] = {}
        self._pending_by_order: dict[str, str] = {}
        self._listeners: list[TerminalListener] = []
        self._evictions: dict[str, asyncio.TimerHandle] = {}

    def add_listener(self, listener: TerminalListener) -> None:
        """Register a coroutine called once per SUCCESS, FAILED or TIMED_OUT."""
        self._listeners.append(listener)

    def start(self, attempt: PaymentAttempt) -> PaymentAttempt:
        """Begin polling an attempt, superseding any pending one for the order."""
        if attempt.checkout_request_id in self._tasks:
            raise ConflictError(
                f"Attempt '{attempt.checkout_request_id}' is already being polled",
                checkout_request_id=attempt.checkout_request_id,
            )

        previous_id = self._pending_by_order.get(attempt.order_id)
        if previous_id is not None:
            self._supersede(self._tasks[previous_id])

        poll_task = PollTask(attempt=attempt)
        self._tasks[attempt.checkout_request_id] = poll_task
        self._pending_by_order[attempt.order_id] = attempt.checkout_request_id
        poll_task.task = asyncio.create_task(
            self._run(poll_task), name=f"poll:{attempt.checkout_request_id}"
        )
        logger.info(
            "Polling started: order=%s checkout_request_id=%s",
            attempt.order_id,
            attempt.checkout_request_id,
        )
        return attempt

    def get(self, checkout_request_id: str) -> PaymentAttempt | None:
        poll_task = self._tasks.get(checkout_request_id)
        return poll_task.attempt if poll_task else None

    def require(self, checkout_request_id: str) -> PaymentAttempt:
        attempt = self.get(checkout_request_id)
        if attempt is None:
            raise NotFoundError("Payment attempt", checkout_request_id)
        return attempt

    def pending_for_order(self, order_id: str) -> PaymentAttempt | None:
        checkout_request_id = self._pending_by_order.get(order_id)
        return self.get(checkout_request_id) if checkout_request_id else None

    def timed_out(self) -> list[PaymentAttempt]:
        """TIMED_OUT attempts still awaiting operator acknowledgement."""
        return [
            t.attempt
            for t in self._tasks.values()
            if t.attempt.state is AttemptState.TIMED_OUT and t.attempt.acknowledged_at is None
        ]

    async def wait(self, checkout_request_id: str, raise_on_timeout: bool = False) -> PaymentAttempt:
        """Wait for an attempt to leave PENDING.

        Raises:
            PollingTimeoutError: raise_on_timeout and the attempt timed out.
        """
        poll_task = self._tasks.get(checkout_request_id)
        if poll_task is None:
            raise NotFoundError("Payment attempt", checkout_request_id)
        if poll_task.task is not None:
            await asyncio.wait({poll_task.task})
        attempt = poll_task.attempt
        if raise_on_timeout and attempt.state is AttemptState.TIMED_OUT:
            raise PollingTimeoutError(checkout_request_id, attempt.attempt_count)
        return attempt

    async def resolve_externally(
        self, checkout_request_id: str, result_code: str, result_desc: str = ""
    ) -> PaymentAttempt | None:
        """Apply a result that arrived by callback.

        Returns the attempt (possibly already terminal), or None when the
        attempt is unknown to this process. A still-processing code leaves
        the attempt pending.
        """
        poll_task = self._tasks.get(checkout_request_id)
        if poll_task is None:
            return None
        attempt = poll_task.attempt
        if attempt.is_terminal:
            return attempt

        state = self.classify(result_code)
        if state is None:
            return attempt

        self._finish(attempt, state, result_code, result_desc)
        poll_task.cancel()
        await self._notify(attempt)
        self._retire(attempt)
        return attempt

    def acknowledge(self, checkout_request_id: str, operator: str) -> PaymentAttempt:
        """Mark a TIMED_OUT attempt as seen by an operator.

        Raises:
            NotFoundError: unknown attempt.
            ConflictError: the attempt is not TIMED_OUT.
        """
        attempt = self.require(checkout_request_id)
        if attempt.state is not AttemptState.TIMED_OUT:
            raise ConflictError(
                f"Only timed out attempts need acknowledgement (state is '{attempt.state.value}')",
                checkout_request_id=checkout_request_id,
            )
        if attempt.acknowledged_at is None:
            attempt.acknowledged_by = operator
            attempt.acknowledged_at = utcnow()
            logger.info(
                "Timed out attempt acknowledged: checkout_request_id=%s by=%s",
                checkout_request_id,
                operator,
            )
            self._retire(attempt)
        return attempt

    def cancel(self, checkout_request_id: str) -> None:
        """Stop polling an attempt without changing its state."""
        poll_task = self._tasks.get(checkout_request_id)
        if poll_task is not None:
            poll_task.cancel()

    async def shutdown(self) -> None:
        """Cancel every running task."""
        for handle in self._evictions.values():
            handle.cancel()
        self._evictions.clear()
        tasks = [t.task for t in self._tasks.values() if t.task is not None and not t.task.done()]
        for task in tasks:
            task.cancel()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    async def _run(self, poll_task: PollTask) -> None:
        attempt = poll_task.attempt
        cfg = self.config
        await self._sleep(cfg.initial_delay_seconds)

        while attempt.state is AttemptState.PENDING:
            attempt.attempt_count += 1
            try:
                status = await self.source.query_status(attempt.checkout_request_id)
            except GatewayError as e:
                logger.warning(
                    "Status check %d/%d failed, will retry: checkout_request_id=%s error=%s",
                    attempt.attempt_count,
                    cfg.max_attempts,
                    attempt.checkout_request_id,
                    e,
                )
                status = None

            # a callback may have resolved the attempt while we were querying
            if attempt.state is not AttemptState.PENDING:
                return

            if status is not None:
                state = self.classify(status.result_code)
                if state is not None:
                    self._finish(attempt, state, status.result_code, status.result_desc)
                    await self._notify(attempt)
                    self._retire(attempt)
                    return

            if attempt.attempt_count >= cfg.max_attempts:
                if status is not None:
                    attempt.result_code = status.result_code
                    attempt.result_desc = status.result_desc
                self._finish(attempt, AttemptState.TIMED_OUT, attempt.result_code, attempt.result_desc)
                await self._notify(attempt)
                self._retire(attempt)
                return

            await self._sleep(cfg.interval_seconds)

    def classify(self, result_code: str | None) -> AttemptState | None:
        """Terminal state for a gateway result code, or None to keep waiting."""
        if result_code is None:
            return None
        code = str(result_code)
        if code == self.config.success_code:
            return AttemptState.SUCCESS
        if code == self.config.processing_code:
            return None
        return AttemptState.FAILED

    def _finish(
        self,
        attempt: PaymentAttempt,
        state: AttemptState,
        result_code: str | None,
        result_desc: str | None,
    ) -> None:
        attempt.transition(state)
        attempt.result_code = result_code
        attempt.result_desc = result_desc
        if self._pending_by_order.get(attempt.order_id) == attempt.checkout_request_id:
            del self._pending_by_order[attempt.order_id]

        log = logger.warning if state is AttemptState.TIMED_OUT else logger.info
        log(
            "Payment attempt %s: order=%s checkout_request_id=%s checks=%d code=%s desc=%s",
            state.value,
            attempt.order_id,
            attempt.checkout_request_id,
            attempt.attempt_count,
            result_code,
            result_desc,
        )

    def _supersede(self, poll_task: PollTask) -> None:
        attempt = poll_task.attempt
        if attempt.is_terminal:
            return
        self._finish(attempt, AttemptState.SUPERSEDED, attempt.result_code, "Superseded by a newer attempt")
        poll_task.cancel()
        self._retire(attempt)

    async def _notify(self, attempt: PaymentAttempt) -> None:
        for listener in self._listeners:
            try:
                await listener(attempt)
            except Exception:
                # outcome is already recorded
                logger.exception(
                    "Terminal listener failed: checkout_request_id=%s", attempt.checkout_request_id
                )

    def _retire(self, attempt: PaymentAttempt) -> None:
        """Schedule a finished attempt to be dropped from memory."""
        if attempt.state is AttemptState.TIMED_OUT and attempt.acknowledged_at is None:
            return
        checkout_request_id = attempt.checkout_request_id
        if checkout_request_id in self._evictions:
            return
        if self.config.retention_seconds <= 0:
            self._evict(checkout_request_id)
            return
        self._evictions[checkout_request_id] = asyncio.get_running_loop().call_later(
            self.config.retention_seconds, self._evict, checkout_request_id
        )

    def _evict(self, checkout_request_id: str) -> None:
        self._evictions.pop(checkout_request_id, None)
        poll_task = self._tasks.get(checkout_request_id)
        if poll_task is not None and poll_task.attempt.is_terminal:
            del self._tasks[checkout_request_id]
