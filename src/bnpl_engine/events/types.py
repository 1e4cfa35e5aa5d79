"""Domain events emitted by the installment engine.

Each event is a frozen dataclass named after what happened. Its class name is
the ``event_type`` used for routing and metrics labels, and ``category`` groups
it for subscribers that care about a whole area (credit, notifications, audit).
"""

from __future__ import annotations

import json
from dataclasses import asdict, dataclass
from datetime import datetime
from enum import Enum
from typing import Any, ClassVar
from uuid import UUID, uuid4

from bnpl_engine.domain import utcnow


class EventCategory(str, Enum):
    TRANSACTION = "transaction"
    PAYMENT = "payment"
    SETTLEMENT = "settlement"
    RECONCILIATION = "reconciliation"


@dataclass(frozen=True)
class EventMetadata:
    """Identity and provenance of one event.

    ``correlation_id`` ties together the events produced by one engine call;
    ``causation_id`` points at the event that triggered this one. ``actor`` is
    one of ``user``, ``system``, ``scheduler`` or ``webhook``.
    """

    event_id: UUID
    occurred_at: datetime
    correlation_id: UUID
    causation_id: UUID | None
    actor: str
    source_service: str = "bnpl_engine"

    @classmethod
    def create(
        cls,
        correlation_id: UUID | None = None,
        causation_id: UUID | None = None,
        actor: str = "system",
    ) -> EventMetadata:
        return cls(
            event_id=uuid4(),
            occurred_at=utcnow(),
            correlation_id=correlation_id or uuid4(),
            causation_id=causation_id,
            actor=actor,
        )


@dataclass(frozen=True)
class DomainEvent:
    category: ClassVar[EventCategory]

    metadata: EventMetadata

    @property
    def event_type(self) -> str:
        return type(self).__name__

    def to_dict(self) -> dict[str, Any]:
        data = _jsonable(asdict(self))
        data["event_type"] = self.event_type
        data["category"] = self.category.value
        return data

    def to_json(self) -> str:
        return json.dumps(self.to_dict())


def _jsonable(value: Any) -> Any:
    if isinstance(value, dict):
        return {key: _jsonable(item) for key, item in value.items()}
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, datetime):
        return value.isoformat()
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, UUID):
        return str(value)
    return value


# =============================================================================
# Transaction Events
# =============================================================================


@dataclass(frozen=True)
class TransactionCreated(DomainEvent):
    """A purchase was submitted for financing."""

    category = EventCategory.TRANSACTION

    transaction_id: str
    user_id: str
    merchant_id: str
    principal: int
    currency: str
    installment_count: int


@dataclass(frozen=True)
class TransactionApproved(DomainEvent):
    """Credit decision approved; installments were scheduled."""

    category = EventCategory.TRANSACTION

    transaction_id: str
    user_id: str
    principal: int
    payment_ids: tuple[str, ...]
    final_due_at: datetime


@dataclass(frozen=True)
class TransactionRejected(DomainEvent):
    """Credit decision declined the purchase."""

    category = EventCategory.TRANSACTION

    transaction_id: str
    user_id: str
    reason: str | None


@dataclass(frozen=True)
class TransactionStatusChanged(DomainEvent):
    """Derived transaction status changed after a payment transition."""

    category = EventCategory.TRANSACTION

    transaction_id: str
    user_id: str
    previous_status: str
    new_status: str
    outstanding_amount: int


@dataclass(frozen=True)
class TransactionCancelled(DomainEvent):
    """Transaction was cancelled with its remaining installments."""

    category = EventCategory.TRANSACTION

    transaction_id: str
    user_id: str
    cancelled_payment_ids: tuple[str, ...]
    outstanding_amount: int
    reason: str | None


# =============================================================================
# Payment Events
# =============================================================================


@dataclass(frozen=True)
class PaymentAttemptStarted(DomainEvent):
    """A collection attempt was submitted to the gateway."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    amount: int
    gateway_reference: str
    attempt_number: int


@dataclass(frozen=True)
class PaymentCompleted(DomainEvent):
    """Installment was collected."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    user_id: str
    amount: int
    paid_amount: int
    paid_at: datetime
    gateway_reference: str | None


@dataclass(frozen=True)
class PaymentFailed(DomainEvent):
    """Collection attempt failed."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    user_id: str
    amount: int
    retry_count: int
    failure_reason: str | None


@dataclass(frozen=True)
class PaymentRetryScheduled(DomainEvent):
    """A retry timer was set for a failed payment."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    retry_count: int
    eligible_at: datetime


@dataclass(frozen=True)
class PaymentRescheduled(DomainEvent):
    """Failed payment returned to SCHEDULED for another attempt."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    retry_count: int
    due_at: datetime


@dataclass(frozen=True)
class PaymentRetryExhausted(DomainEvent):
    """Retry budget used up; the payment was cancelled."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    user_id: str
    amount: int
    retry_count: int


@dataclass(frozen=True)
class PaymentCancelled(DomainEvent):
    """Payment was cancelled by an operator or with its transaction."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    amount: int
    reason: str | None


@dataclass(frozen=True)
class PaymentRefunded(DomainEvent):
    """Collected amount (or part of it) was refunded through the gateway."""

    category = EventCategory.PAYMENT

    payment_id: str
    transaction_id: str
    refunded_amount: int
    refund_reference: str


# =============================================================================
# Settlement Events
# =============================================================================


@dataclass(frozen=True)
class EarlyPaymentSettled(DomainEvent):
    """Future installments were settled early against a quote."""

    category = EventCategory.SETTLEMENT

    quote_id: str
    transaction_id: str
    user_id: str
    payment_ids: tuple[str, ...]
    gross_amount: int
    discount_amount: int
    net_amount: int
    gateway_reference: str | None


# =============================================================================
# Reconciliation Events
# =============================================================================


@dataclass(frozen=True)
class LateSuccessOnCancelledPayment(DomainEvent):
    """Gateway reported a success for a payment the ledger had cancelled.

    The ledger is not changed; the funds need an operator refund.
    """

    payment_id: str
    transaction_id: str
    gateway_event_id: str
    gateway_reference: str
    amount: int

    category = EventCategory.RECONCILIATION


@dataclass(frozen=True)
class ActionRequiredExpired(DomainEvent):
    """Payment waited on customer action too long and was failed."""

    category = EventCategory.RECONCILIATION

    payment_id: str
    transaction_id: str
    action_required_at: datetime
