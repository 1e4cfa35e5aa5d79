"""Downstream collaborators notified after ledger commits.

Both are fire-and-forget: they are wired to the event emitter, which
isolates and logs their failures. A failing collaborator never unwinds a
committed transition.
"""

from __future__ import annotations

import logging
from typing import Protocol

from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import (
    DomainEvent,
    EarlyPaymentSettled,
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    PaymentRetryExhausted,
    TransactionApproved,
    TransactionCancelled,
    TransactionRejected,
    TransactionStatusChanged,
)

logger = logging.getLogger(__name__)


class CreditLedger(Protocol):
    """User credit limit bookkeeping."""

    def on_payment_completed(self, user_id: str, transaction_id: str, amount: int) -> None:
        """Restore `amount` of the user's available credit."""
        ...

    def on_transaction_cancelled(self, user_id: str, transaction_id: str, amount: int) -> None:
        """Release the uncollected balance of a cancelled transaction."""
        ...


class Notifier(Protocol):
    """User-facing notifications (email, push, ...)."""

    def notify(self, event: DomainEvent) -> None:
        ...


# Events a user is told about
NOTIFIABLE_EVENTS: list[type[DomainEvent]] = [
    TransactionApproved,
    TransactionRejected,
    TransactionCancelled,
    TransactionStatusChanged,
    PaymentCompleted,
    PaymentFailed,
    PaymentCancelled,
    PaymentRetryExhausted,
    EarlyPaymentSettled,
]


class CreditLedgerHandler:
    """Translates domain events into CreditLedger calls."""

    def __init__(self, credit: CreditLedger):
        self.credit = credit

    def __call__(self, event: DomainEvent) -> None:
        if isinstance(event, PaymentCompleted):
            self.credit.on_payment_completed(event.user_id, event.transaction_id, event.amount)
        elif isinstance(event, EarlyPaymentSettled):
            # Credit is restored by the gross amount; the discount is the lender's cost
            self.credit.on_payment_completed(event.user_id, event.transaction_id, event.gross_amount)
        elif isinstance(event, TransactionCancelled):
            self.credit.on_transaction_cancelled(
                event.user_id, event.transaction_id, event.outstanding_amount
            )


def register_collaborators(
    emitter: EventEmitter,
    credit: CreditLedger | None = None,
    notifier: Notifier | None = None,
) -> None:
    """Subscribe collaborators to the events they consume."""
    if credit is not None:
        emitter.on(
            [PaymentCompleted, EarlyPaymentSettled, TransactionCancelled],
            CreditLedgerHandler(credit),
        )
    if notifier is not None:
        emitter.on(NOTIFIABLE_EVENTS, notifier.notify)


class LoggingNotifier:
    """Notifier that writes events to the log. Default for local runs."""

    def notify(self, event: DomainEvent) -> None:
        logger.info("notify %s %s", event.event_type, event.to_json())


class InMemoryCreditLedger:
    """Credit ledger keeping per-user available credit in memory."""

    def __init__(self) -> None:
        self.restored: dict[str, int] = {}
        self.released: dict[str, int] = {}

    def on_payment_completed(self, user_id: str, transaction_id: str, amount: int) -> None:
        self.restored[user_id] = self.restored.get(user_id, 0) + amount

    def on_transaction_cancelled(self, user_id: str, transaction_id: str, amount: int) -> None:
        self.released[user_id] = self.released.get(user_id, 0) + amount
