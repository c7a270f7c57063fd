"""Reconciliation services."""

from mpesa_reconciliation.services.aggregator import (
    OrderPaymentAggregator,
    PaymentFields,
    RecomputeAllResult,
    RecomputeResult,
    compute_payment_fields,
)
from mpesa_reconciliation.services.attempt_repository import PaymentAttemptRepository
from mpesa_reconciliation.services.matching import MatchingService, MatchSuggestion
from mpesa_reconciliation.services.order_repository import (
    OrderRepository,
    OrderSnapshot,
    SqlOrderRepository,
)
from mpesa_reconciliation.services.payments import CallbackResult, CallbackStatus, PaymentService
from mpesa_reconciliation.services.poller import (
    AttemptState,
    AttemptStateMachine,
    InvalidTransitionError,
    PaymentAttempt,
    StatusPoller,
)
from mpesa_reconciliation.services.resolver import (
    ConnectionOutcome,
    ConnectionState,
    ReconciliationResolver,
    TransactionStats,
    TransactionView,
)
from mpesa_reconciliation.services.transaction_store import (
    RecordResult,
    ResolvedOrderRef,
    TransactionData,
    TransactionStore,
    UnresolvedOrderRef,
)

__all__ = [
    # Store
    "TransactionStore",
    "TransactionData",
    "RecordResult",
    "ResolvedOrderRef",
    "UnresolvedOrderRef",
    # Orders
    "OrderRepository",
    "OrderSnapshot",
    "SqlOrderRepository",
    # Aggregator
    "OrderPaymentAggregator",
    "PaymentFields",
    "RecomputeResult",
    "RecomputeAllResult",
    "compute_payment_fields",
    # Matching
    "MatchingService",
    "MatchSuggestion",
    # Resolver
    "ReconciliationResolver",
    "ConnectionOutcome",
    "ConnectionState",
    "TransactionStats",
    "TransactionView",
    # Poller
    "StatusPoller",
    "PaymentAttempt",
    "AttemptState",
    "AttemptStateMachine",
    "InvalidTransitionError",
    # Payments
    "PaymentService",
    "CallbackResult",
    "CallbackStatus",
    "PaymentAttemptRepository",
]
