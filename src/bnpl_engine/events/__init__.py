"""Installment engine domain events package.

This package provides:
- Typed domain events for transaction, payment and settlement operations
- Event emitter for publishing events to collaborators
"""

from bnpl_engine.events.emitter import EventBatch, EventEmitter, EventHandler
from bnpl_engine.events.types import (
    # Base
    DomainEvent,
    EventCategory,
    EventMetadata,
    # Transaction Events
    TransactionApproved,
    TransactionCancelled,
    TransactionCreated,
    TransactionRejected,
    TransactionStatusChanged,
    # Payment Events
    PaymentAttemptStarted,
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    PaymentRefunded,
    PaymentRescheduled,
    PaymentRetryExhausted,
    PaymentRetryScheduled,
    # Settlement Events
    EarlyPaymentSettled,
    # Reconciliation Events
    ActionRequiredExpired,
    LateSuccessOnCancelledPayment,
)

__all__ = [
    "DomainEvent",
    "EventCategory",
    "EventMetadata",
    "EventEmitter",
    "EventBatch",
    "EventHandler",
    "TransactionCreated",
    "TransactionApproved",
    "TransactionRejected",
    "TransactionStatusChanged",
    "TransactionCancelled",
    "PaymentAttemptStarted",
    "PaymentCompleted",
    "PaymentFailed",
    "PaymentRetryScheduled",
    "PaymentRescheduled",
    "PaymentRetryExhausted",
    "PaymentCancelled",
    "PaymentRefunded",
    "EarlyPaymentSettled",
    "LateSuccessOnCancelledPayment",
    "ActionRequiredExpired",
]
