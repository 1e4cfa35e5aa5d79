"""In-memory store for tests, local development and embedding.

Thread-safe: a re-entrant lock serialises access, and `atomic()` holds the
lock for the whole block, restoring a snapshot if the block raises.
"""

from __future__ import annotations

import threading
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import replace
from datetime import datetime

from bnpl_engine.domain import (
    EarlySettlementQuote,
    Payment,
    ReconciliationResult,
    Transaction,
)
from bnpl_engine.errors import ConcurrentModificationError, NotFoundError
from bnpl_engine.services.state_machine import PaymentStatus
from bnpl_engine.store.base import RetryTimer


class InMemoryStore:
    """Dictionary-backed Store implementation."""

    def __init__(self) -> None:
        self._lock = threading.RLock()
        self._transactions: dict[str, Transaction] = {}
        self._payments: dict[str, Payment] = {}
        self._gateway_events: dict[str, ReconciliationResult] = {}
        self._retry_timers: dict[str, RetryTimer] = {}
        self._quotes: dict[str, EarlySettlementQuote] = {}

    @contextmanager
    def atomic(self) -> Iterator[None]:
        with self._lock:
            # Nested blocks restore their own snapshot, so a caught inner
            # failure leaves the outer block's writes intact
            snapshot = self._snapshot()
            try:
                yield
            except BaseException:
                self._restore(snapshot)
                raise

    def _snapshot(self) -> tuple[dict, ...]:
        # Entities are frozen dataclasses, shallow copies are enough
        return (
            dict(self._transactions),
            dict(self._payments),
            dict(self._gateway_events),
            dict(self._retry_timers),
            dict(self._quotes),
        )

    def _restore(self, snapshot: tuple[dict, ...]) -> None:
        (
            self._transactions,
            self._payments,
            self._gateway_events,
            self._retry_timers,
            self._quotes,
        ) = snapshot

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def load_transaction(self, transaction_id: str) -> Transaction:
        with self._lock:
            try:
                return self._transactions[transaction_id]
            except KeyError:
                raise NotFoundError("Transaction", transaction_id) from None

    def save_transaction(self, transaction: Transaction, expected_version: int | None) -> Transaction:
        with self._lock:
            current = self._transactions.get(transaction.id)
            self._check_version("Transaction", transaction.id, current, expected_version)
            stored = replace(transaction, version=(current.version + 1) if current else 1)
            self._transactions[transaction.id] = stored
            return stored

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def load_payment(self, payment_id: str) -> Payment:
        with self._lock:
            try:
                return self._payments[payment_id]
            except KeyError:
                raise NotFoundError("Payment", payment_id) from None

    def save_payment(self, payment: Payment, expected_version: int | None) -> Payment:
        with self._lock:
            current = self._payments.get(payment.id)
            self._check_version("Payment", payment.id, current, expected_version)
            stored = replace(payment, version=(current.version + 1) if current else 1)
            self._payments[payment.id] = stored
            return stored

    def list_payments(self, transaction_id: str) -> list[Payment]:
        with self._lock:
            payments = [p for p in self._payments.values() if p.transaction_id == transaction_id]
        return sorted(payments, key=lambda p: p.sequence)

    def list_payments_by_status(
        self,
        status: PaymentStatus,
        due_before: datetime | None = None,
    ) -> list[Payment]:
        with self._lock:
            payments = [
                p
                for p in self._payments.values()
                if p.status == status and (due_before is None or p.due_at <= due_before)
            ]
        return sorted(payments, key=lambda p: (p.due_at, p.sequence))

    def find_payment_by_intent(self, intent_reference: str) -> Payment | None:
        with self._lock:
            for payment in self._payments.values():
                if payment.gateway_reference == intent_reference:
                    return payment
        return None

    # -------------------------------------------------------------------------
    # Gateway events
    # -------------------------------------------------------------------------

    def get_gateway_event(self, event_id: str) -> ReconciliationResult | None:
        with self._lock:
            return self._gateway_events.get(event_id)

    def record_gateway_event(self, result: ReconciliationResult) -> bool:
        with self._lock:
            if result.event_id in self._gateway_events:
                return False
            self._gateway_events[result.event_id] = result
            return True

    # -------------------------------------------------------------------------
    # Retry timers
    # -------------------------------------------------------------------------

    def upsert_retry_timer(self, timer: RetryTimer) -> None:
        with self._lock:
            self._retry_timers[timer.payment_id] = timer

    def get_retry_timer(self, payment_id: str) -> RetryTimer | None:
        with self._lock:
            return self._retry_timers.get(payment_id)

    def delete_retry_timer(self, payment_id: str) -> None:
        with self._lock:
            self._retry_timers.pop(payment_id, None)

    def list_due_retry_timers(self, now: datetime) -> list[RetryTimer]:
        with self._lock:
            due = [t for t in self._retry_timers.values() if t.eligible_at <= now]
        return sorted(due, key=lambda t: t.eligible_at)

    # -------------------------------------------------------------------------
    # Quotes
    # -------------------------------------------------------------------------

    def save_quote(self, quote: EarlySettlementQuote) -> None:
        with self._lock:
            self._quotes[quote.quote_id] = quote

    def load_quote(self, quote_id: str) -> EarlySettlementQuote:
        with self._lock:
            try:
                return self._quotes[quote_id]
            except KeyError:
                raise NotFoundError("Quote", quote_id) from None

    @staticmethod
    def _check_version(
        entity: str,
        entity_id: str,
        current: Transaction | Payment | None,
        expected_version: int | None,
    ) -> None:
        actual = current.version if current else None
        if expected_version is None:
            if current is not None:
                raise ConcurrentModificationError(entity, entity_id, 0, actual)
            return
        if actual != expected_version:
            raise ConcurrentModificationError(entity, entity_id, expected_version, actual)
