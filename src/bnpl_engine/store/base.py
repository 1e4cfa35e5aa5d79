"""Base protocol for ledger stores.

All store adapters must implement the Store protocol. Every save takes the
version the caller read; a mismatch raises ConcurrentModificationError and
the caller reloads and retries.
"""

from __future__ import annotations

from contextlib import AbstractContextManager
from dataclasses import dataclass
from datetime import datetime
from typing import Protocol

from bnpl_engine.domain import (
    EarlySettlementQuote,
    Payment,
    ReconciliationResult,
    Transaction,
)
from bnpl_engine.services.state_machine import PaymentStatus


@dataclass(frozen=True)
class RetryTimer:
    """Pending retry for a failed payment. At most one per payment id."""

    payment_id: str
    eligible_at: datetime


class Store(Protocol):
    """Transactional row store with per-entity optimistic versioning."""

    def atomic(self) -> AbstractContextManager[None]:
        """All writes inside the block commit together or not at all."""
        ...

    def load_transaction(self, transaction_id: str) -> Transaction:
        """Load a transaction or raise NotFoundError."""
        ...

    def save_transaction(self, transaction: Transaction, expected_version: int | None) -> Transaction:
        """Persist a transaction.

        Args:
            transaction: New snapshot
            expected_version: Version read by the caller, None to insert

        Returns:
            The stored snapshot with its incremented version.
        """
        ...

    def load_payment(self, payment_id: str) -> Payment:
        """Load a payment or raise NotFoundError."""
        ...

    def save_payment(self, payment: Payment, expected_version: int | None) -> Payment:
        """Persist a payment (same contract as save_transaction)."""
        ...

    def list_payments(self, transaction_id: str) -> list[Payment]:
        """Payments of a transaction ordered by sequence."""
        ...

    def list_payments_by_status(
        self,
        status: PaymentStatus,
        due_before: datetime | None = None,
    ) -> list[Payment]:
        """Payments in a status, optionally due at or before a time."""
        ...

    def find_payment_by_intent(self, intent_reference: str) -> Payment | None:
        """Payment whose current gateway reference matches."""
        ...

    def get_gateway_event(self, event_id: str) -> ReconciliationResult | None:
        """Result recorded for a processed gateway event."""
        ...

    def record_gateway_event(self, result: ReconciliationResult) -> bool:
        """Record a processed event. Returns False if already recorded."""
        ...

    def upsert_retry_timer(self, timer: RetryTimer) -> None:
        """Create or replace the pending retry for a payment."""
        ...

    def get_retry_timer(self, payment_id: str) -> RetryTimer | None:
        ...

    def delete_retry_timer(self, payment_id: str) -> None:
        ...

    def list_due_retry_timers(self, now: datetime) -> list[RetryTimer]:
        """Timers with eligible_at at or before now, oldest first."""
        ...

    def save_quote(self, quote: EarlySettlementQuote) -> None:
        ...

    def load_quote(self, quote_id: str) -> EarlySettlementQuote:
        """Load a quote or raise NotFoundError."""
        ...
