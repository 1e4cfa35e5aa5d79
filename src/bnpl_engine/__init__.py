"""Buy-now-pay-later installment engine.

This package contains:
- Installment planning
- The payment ledger and its state machine
- Retry scheduling for failed collections
- Gateway webhook reconciliation
- Early-payment quotes and settlement
- The InstallmentEngine facade tying them together
"""

from bnpl_engine.domain import (
    CreditDecision,
    EarlySettlementQuote,
    GatewayEvent,
    GatewayOutcome,
    LineItem,
    Payment,
    PurchaseRequest,
    ReconciliationResult,
    ReconciliationStatus,
    Transaction,
)
from bnpl_engine.engine import (
    ApprovalResult,
    ApprovalStatus,
    ConfirmResult,
    ConfirmStatus,
    InstallmentEngine,
    TransactionSummary,
    build_engine,
)
from bnpl_engine.errors import (
    BnplEngineError,
    ConcurrentModificationError,
    EarlyPaymentDeclinedError,
    GatewayPayloadError,
    GatewaySignatureError,
    GatewayTimeoutError,
    InvalidPlanError,
    InvalidTransitionError,
    NotEligibleForEarlyPaymentError,
    NotFoundError,
    QuoteExpiredError,
    RetryExhaustedError,
)
from bnpl_engine.policies import (
    DiscountPolicy,
    EngineConfig,
    PlanPolicy,
    ReconciliationPolicy,
    RetryPolicy,
)
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus

__version__ = "0.1.0"

__all__ = [
    # Facade
    "InstallmentEngine",
    "build_engine",
    "ApprovalResult",
    "ApprovalStatus",
    "ConfirmResult",
    "ConfirmStatus",
    "TransactionSummary",
    # Domain
    "PurchaseRequest",
    "LineItem",
    "CreditDecision",
    "Transaction",
    "Payment",
    "EarlySettlementQuote",
    "GatewayEvent",
    "GatewayOutcome",
    "ReconciliationResult",
    "ReconciliationStatus",
    "PaymentStatus",
    "TransactionStatus",
    # Policies
    "EngineConfig",
    "PlanPolicy",
    "RetryPolicy",
    "DiscountPolicy",
    "ReconciliationPolicy",
    # Errors
    "BnplEngineError",
    "NotFoundError",
    "InvalidPlanError",
    "InvalidTransitionError",
    "ConcurrentModificationError",
    "NotEligibleForEarlyPaymentError",
    "QuoteExpiredError",
    "EarlyPaymentDeclinedError",
    "GatewaySignatureError",
    "GatewayPayloadError",
    "GatewayTimeoutError",
    "RetryExhaustedError",
]
