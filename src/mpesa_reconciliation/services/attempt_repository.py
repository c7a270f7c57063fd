"""Durable push-payment attempts.

The poller keeps live attempts in memory; this repository keeps the record
every worker can read. Writes only move an attempt out of PENDING once, so a
poll result and a callback reporting the same outcome do no double work.
"""

from __future__ import annotations

import logging
from decimal import Decimal

from sqlalchemy import select, update
from sqlalchemy.ext.asyncio import AsyncSession, async_sessionmaker

from mpesa_reconciliation.database import session_scope
from mpesa_reconciliation.errors import ConflictError, NotFoundError
from mpesa_reconciliation.models import PaymentAttemptRecord, utcnow
from mpesa_reconciliation.services.poller import AttemptState, PaymentAttempt

logger = logging.getLogger(__name__)


def to_attempt(record: PaymentAttemptRecord) -> PaymentAttempt:
    """Rebuild a PaymentAttempt value from its row."""
    return PaymentAttempt(
        checkout_request_id=record.checkout_request_id,
        order_id=record.order_id,
        phone_number=record.phone_number,
        amount=Decimal(record.amount),
        attempt_count=record.attempt_count,
        state=AttemptState(record.state),
        result_code=record.result_code,
        result_desc=record.result_desc,
        created_at=record.created_at,
        completed_at=record.completed_at,
        acknowledged_by=record.acknowledged_by,
        acknowledged_at=record.acknowledged_at,
    )


class PaymentAttemptRepository:
    """Data access for PaymentAttemptRecord rows, one unit of work per call."""

    def __init__(self, session_factory: async_sessionmaker[AsyncSession]):
        self.session_factory = session_factory

    async def save_new(self, attempt: PaymentAttempt) -> None:
        """Store a just-initiated attempt and supersede older pending ones for the order."""
        async with session_scope(self.session_factory) as session:
            superseded = await session.execute(
                update(PaymentAttemptRecord)
                .where(
                    PaymentAttemptRecord.order_id == attempt.order_id,
                    PaymentAttemptRecord.state == AttemptState.PENDING.value,
                    PaymentAttemptRecord.checkout_request_id != attempt.checkout_request_id,
                )
                .values(
                    state=AttemptState.SUPERSEDED.value,
                    result_desc="Superseded by a newer attempt",
                    completed_at=utcnow(),
                )
            )
            if superseded.rowcount:
                logger.info(
                    "Superseded %d stored attempt(s): order=%s", superseded.rowcount, attempt.order_id
                )
            session.add(
                PaymentAttemptRecord(
                    checkout_request_id=attempt.checkout_request_id,
                    order_id=attempt.order_id,
                    phone_number=attempt.phone_number,
                    amount=attempt.amount,
                    state=attempt.state.value,
                    attempt_count=attempt.attempt_count,
                )
            )

    async def get(self, checkout_request_id: str) -> PaymentAttempt | None:
        async with session_scope(self.session_factory) as session:
            record = await self._get(session, checkout_request_id)
            return to_attempt(record) if record else None

    async def require(self, checkout_request_id: str) -> PaymentAttempt:
        attempt = await self.get(checkout_request_id)
        if attempt is None:
            raise NotFoundError("Payment attempt", checkout_request_id)
        return attempt

    async def record_outcome(
        self,
        checkout_request_id: str,
        state: AttemptState,
        result_code: str | None,
        result_desc: str | None,
        attempt_count: int | None = None,
    ) -> PaymentAttempt | None:
        """Move a stored attempt out of PENDING.

        Returns the stored attempt, unchanged when it was already terminal,
        or None when no attempt with that id was ever initiated.
        """
        async with session_scope(self.session_factory) as session:
            record = await self._get(session, checkout_request_id)
            if record is None:
                return None
            if record.state == AttemptState.PENDING.value:
                record.state = state.value
                record.result_code = result_code
                record.result_desc = result_desc
                record.completed_at = utcnow()
                if attempt_count is not None:
                    record.attempt_count = attempt_count
            return to_attempt(record)

    async def acknowledge(self, checkout_request_id: str, operator: str) -> PaymentAttempt:
        """Mark a stored TIMED_OUT attempt as seen by an operator.

        Raises:
            NotFoundError: unknown attempt.
            ConflictError: the attempt is not TIMED_OUT.
        """
        async with session_scope(self.session_factory) as session:
            record = await self._get(session, checkout_request_id)
            if record is None:
                raise NotFoundError("Payment attempt", checkout_request_id)
            if record.state != AttemptState.TIMED_OUT.value:
                raise ConflictError(
                    f"Only timed out attempts need acknowledgement (state is '{record.state}')",
                    checkout_request_id=checkout_request_id,
                )
            if record.acknowledged_at is None:
                record.acknowledged_by = operator
                record.acknowledged_at = utcnow()
            return to_attempt(record)

    async def list_unacknowledged_timeouts(self) -> list[PaymentAttempt]:
        async with session_scope(self.session_factory) as session:
            result = await session.execute(
                select(PaymentAttemptRecord)
                .where(
                    PaymentAttemptRecord.state == AttemptState.TIMED_OUT.value,
                    PaymentAttemptRecord.acknowledged_at.is_(None),
                )
                .order_by(PaymentAttemptRecord.created_at)
            )
            return [to_attempt(r) for r in result.scalars()]

    @staticmethod
    async def _get(session: AsyncSession, checkout_request_id: str) -> PaymentAttemptRecord | None:
        result = await session.execute(
            select(PaymentAttemptRecord).where(
                PaymentAttemptRecord.checkout_request_id == checkout_request_id
            )
        )
        return result.scalar_one_or_none()
