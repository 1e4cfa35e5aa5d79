"""Payment and transaction state machines with transition validation."""

from __future__ import annotations

from collections.abc import Iterable
from enum import Enum
from typing import TYPE_CHECKING

from bnpl_engine.errors import InvalidTransitionError

if TYPE_CHECKING:
    from bnpl_engine.domain import Payment


class PaymentStatus(str, Enum):
    """Installment payment status values."""

    SCHEDULED = "scheduled"
    PROCESSING = "processing"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"


class TransactionStatus(str, Enum):
    """Transaction status values."""

    PENDING_APPROVAL = "pending_approval"
    APPROVED = "approved"
    REJECTED = "rejected"
    PARTIALLY_PAID = "partially_paid"
    COMPLETED = "completed"
    CANCELLED = "cancelled"


class PaymentEvent(str, Enum):
    """Events that drive payment transitions."""

    BEGIN_ATTEMPT = "begin_attempt"
    GATEWAY_CONFIRMED = "gateway_confirmed"
    GATEWAY_FAILED = "gateway_failed"
    RETRY_ELIGIBLE = "retry_eligible"
    RETRY_EXHAUSTED = "retry_exhausted"
    MANUAL_CANCEL = "manual_cancel"
    EARLY_SETTLE = "early_settle"


class PaymentStateMachine:
    """State machine for installment payments.

    Allowed transitions:
    - scheduled → processing (begin_attempt)
    - processing → completed (gateway_confirmed)
    - processing → failed (gateway_failed)
    - failed → scheduled (retry_eligible)
    - failed → cancelled (retry_exhausted)
    - scheduled | failed → cancelled (manual_cancel)
    - scheduled → completed (early_settle)
    """

    TRANSITIONS: dict[tuple[PaymentStatus, PaymentEvent], PaymentStatus] = {
        (PaymentStatus.SCHEDULED, PaymentEvent.BEGIN_ATTEMPT): PaymentStatus.PROCESSING,
        (PaymentStatus.PROCESSING, PaymentEvent.GATEWAY_CONFIRMED): PaymentStatus.COMPLETED,
        (PaymentStatus.PROCESSING, PaymentEvent.GATEWAY_FAILED): PaymentStatus.FAILED,
        (PaymentStatus.FAILED, PaymentEvent.RETRY_ELIGIBLE): PaymentStatus.SCHEDULED,
        (PaymentStatus.FAILED, PaymentEvent.RETRY_EXHAUSTED): PaymentStatus.CANCELLED,
        (PaymentStatus.SCHEDULED, PaymentEvent.MANUAL_CANCEL): PaymentStatus.CANCELLED,
        (PaymentStatus.FAILED, PaymentEvent.MANUAL_CANCEL): PaymentStatus.CANCELLED,
        (PaymentStatus.SCHEDULED, PaymentEvent.EARLY_SETTLE): PaymentStatus.COMPLETED,
    }

    TERMINAL = frozenset({PaymentStatus.COMPLETED, PaymentStatus.CANCELLED})

    @classmethod
    def can_apply(cls, status: PaymentStatus, event: PaymentEvent) -> bool:
        """Check if an event is allowed from a status."""
        return (status, event) in cls.TRANSITIONS

    @classmethod
    def next_status(cls, status: PaymentStatus, event: PaymentEvent) -> PaymentStatus:
        """Resolve the target status, raising InvalidTransitionError if invalid."""
        target = cls.TRANSITIONS.get((status, event))
        if target is None:
            reason = "terminal state" if status in cls.TERMINAL else None
            raise InvalidTransitionError(status.value, event.value, reason)
        return target

    @classmethod
    def is_terminal(cls, status: PaymentStatus) -> bool:
        return status in cls.TERMINAL

    @classmethod
    def events_from(cls, status: PaymentStatus) -> list[PaymentEvent]:
        """Events that may be applied from a status."""
        return [event for (source, event) in cls.TRANSITIONS if source == status]


ABSORBING_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.REJECTED, TransactionStatus.CANCELLED}
)


def derive_transaction_status(
    current: TransactionStatus,
    payments: Iterable[Payment],
) -> TransactionStatus:
    """Project a transaction's status from its payments.

    REJECTED and CANCELLED are absorbing. A transaction without payments keeps
    its current status (it has not been planned yet).
    """
    if current in ABSORBING_TRANSACTION_STATUSES:
        return current

    statuses = [p.status for p in payments]
    if not statuses:
        return current

    if all(s == PaymentStatus.COMPLETED for s in statuses):
        return TransactionStatus.COMPLETED

    # Every payment settled one way or the other, and not all were paid
    if all(s in PaymentStateMachine.TERMINAL for s in statuses):
        return TransactionStatus.CANCELLED

    if any(s == PaymentStatus.COMPLETED for s in statuses):
        return TransactionStatus.PARTIALLY_PAID

    return TransactionStatus.APPROVED
