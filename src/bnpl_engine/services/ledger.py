"""Payment Ledger - authoritative payment and transaction state.

Every mutation goes through one guarded transition function:

    1. Resolve the target status from the transition table
    2. Check event-specific guards (retry budget, transaction status)
    3. Save the new payment snapshot under the version the caller read
    4. Re-derive the transaction status from all of its payments and save it

Steps 3 and 4 run inside a single `store.atomic()` block. A stale snapshot
surfaces as ConcurrentModificationError and nothing is written.

The ledger never calls collaborators. Each operation returns a
TransitionResult carrying the domain events that describe it; the engine
publishes them after the commit.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from bnpl_engine.domain import (
    EarlySettlementQuote,
    Payment,
    PaymentSpec,
    PurchaseRequest,
    Transaction,
    new_id,
    utcnow,
)
from bnpl_engine.errors import (
    ConcurrentModificationError,
    InvalidPlanError,
    InvalidTransitionError,
)
from bnpl_engine.events.types import (
    DomainEvent,
    EarlyPaymentSettled,
    EventMetadata,
    PaymentAttemptStarted,
    PaymentCancelled,
    PaymentCompleted,
    PaymentFailed,
    PaymentRescheduled,
    PaymentRetryExhausted,
    TransactionApproved,
    TransactionCancelled,
    TransactionCreated,
    TransactionRejected,
    TransactionStatusChanged,
)
from bnpl_engine.policies import RetryPolicy
from bnpl_engine.services.state_machine import (
    PaymentEvent,
    PaymentStateMachine,
    PaymentStatus,
    TransactionStatus,
    derive_transaction_status,
)
from bnpl_engine.store.base import Store

logger = logging.getLogger(__name__)

R = TypeVar("R")


def retry_on_conflict(fn: Callable[[], R], attempts: int = 3) -> R:
    """Run `fn`, retrying on ConcurrentModificationError.

    `fn` must re-read whatever state it depends on each time it is called.
    The last conflict is re-raised when the attempts are used up.
    """
    if attempts < 1:
        raise ValueError("attempts must be at least 1")

    for attempt in range(1, attempts + 1):
        try:
            return fn()
        except ConcurrentModificationError as e:
            if attempt == attempts:
                raise
            logger.info(
                "Version conflict on %s %s (attempt %d/%d), retrying with fresh state",
                e.entity,
                e.entity_id,
                attempt,
                attempts,
            )
    raise AssertionError("unreachable")


@dataclass(frozen=True)
class TransitionResult:
    """Outcome of a ledger operation.

    Attributes:
        transaction: Transaction snapshot after the operation
        payments: Payment snapshots written by the operation
        events: Domain events to publish once the operation is committed
    """

    transaction: Transaction
    payments: tuple[Payment, ...] = ()
    events: tuple[DomainEvent, ...] = field(default_factory=tuple)

    @property
    def payment(self) -> Payment:
        """The single payment written by a per-payment transition."""
        if len(self.payments) != 1:
            raise ValueError(f"Operation wrote {len(self.payments)} payments")
        return self.payments[0]


class PaymentLedger:
    """Transaction and payment state owner.

    Usage:
        ledger = PaymentLedger(store, retry_policy)

        payment = ledger.get_payment(payment_id)
        result = ledger.begin_attempt(payment, gateway_reference="pi_123")
        result = ledger.confirm(result.payment)
    """

    def __init__(self, store: Store, retry_policy: RetryPolicy | None = None):
        self.store = store
        self.retry_policy = retry_policy or RetryPolicy()

    # -------------------------------------------------------------------------
    # Reads
    # -------------------------------------------------------------------------

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self.store.load_transaction(transaction_id)

    def get_payment(self, payment_id: str) -> Payment:
        return self.store.load_payment(payment_id)

    def list_payments(self, transaction_id: str) -> list[Payment]:
        return self.store.list_payments(transaction_id)

    # -------------------------------------------------------------------------
    # Transaction lifecycle
    # -------------------------------------------------------------------------

    def create_transaction(
        self,
        purchase: PurchaseRequest,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Record a purchase awaiting its credit decision."""
        if purchase.principal <= 0:
            raise InvalidPlanError("Principal must be positive")

        now = now or utcnow()
        transaction = Transaction(
            id=new_id(),
            user_id=purchase.user_id,
            merchant_id=purchase.merchant_id,
            principal=purchase.principal,
            currency=purchase.currency.upper(),
            installment_count=purchase.installment_count,
            status=TransactionStatus.PENDING_APPROVAL,
            outstanding_amount=purchase.principal,
            items=tuple(purchase.items),
            created_at=now,
            updated_at=now,
        )
        stored = self.store.save_transaction(transaction, expected_version=None)
        logger.info("Transaction %s created for user %s", stored.id, stored.user_id)

        event = TransactionCreated(
            metadata=EventMetadata.create(),
            transaction_id=stored.id,
            user_id=stored.user_id,
            merchant_id=stored.merchant_id,
            principal=stored.principal,
            currency=stored.currency,
            installment_count=stored.installment_count,
        )
        return TransitionResult(transaction=stored, events=(event,))

    def approve(
        self,
        transaction: Transaction,
        specs: Sequence[PaymentSpec],
        now: datetime | None = None,
    ) -> TransitionResult:
        """Persist the planned payments and move the transaction to APPROVED."""
        self._require_pending(transaction, "approve")
        if sum(spec.amount for spec in specs) != transaction.principal:
            raise InvalidPlanError("Installment amounts must sum to the principal")
        if len(specs) != transaction.installment_count:
            raise InvalidPlanError("Plan does not match the transaction's installment count")

        now = now or utcnow()
        with self.store.atomic():
            payments = tuple(
                self.store.save_payment(
                    Payment(
                        id=new_id(),
                        transaction_id=transaction.id,
                        sequence=spec.sequence,
                        amount=spec.amount,
                        due_at=spec.due_at,
                    ),
                    expected_version=None,
                )
                for spec in sorted(specs, key=lambda s: s.sequence)
            )
            stored = self.store.save_transaction(
                replace(
                    transaction,
                    status=TransactionStatus.APPROVED,
                    final_due_at=payments[-1].due_at,
                    updated_at=now,
                ),
                expected_version=transaction.version,
            )

        logger.info(
            "Transaction %s approved with %d installments, final due %s",
            stored.id,
            len(payments),
            stored.final_due_at.isoformat(),
        )
        event = TransactionApproved(
            metadata=EventMetadata.create(),
            transaction_id=stored.id,
            user_id=stored.user_id,
            principal=stored.principal,
            payment_ids=tuple(p.id for p in payments),
            final_due_at=stored.final_due_at,
        )
        return TransitionResult(transaction=stored, payments=payments, events=(event,))

    def reject(
        self,
        transaction: Transaction,
        reason: str | None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Mark a pending transaction REJECTED. No payments are created."""
        self._require_pending(transaction, "reject")
        stored = self.store.save_transaction(
            replace(
                transaction,
                status=TransactionStatus.REJECTED,
                decision_reason=reason,
                updated_at=now or utcnow(),
            ),
            expected_version=transaction.version,
        )
        logger.info("Transaction %s rejected: %s", stored.id, reason)

        event = TransactionRejected(
            metadata=EventMetadata.create(),
            transaction_id=stored.id,
            user_id=stored.user_id,
            reason=reason,
        )
        return TransitionResult(transaction=stored, events=(event,))

    def cancel_transaction(
        self,
        transaction: Transaction,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """Cancel a transaction and every one of its SCHEDULED payments.

        Allowed only while no payment has left SCHEDULED. A transaction that
        is still pending approval is cancelled without payments.
        """
        if transaction.status in (
            TransactionStatus.REJECTED,
            TransactionStatus.CANCELLED,
            TransactionStatus.COMPLETED,
        ):
            raise InvalidTransitionError(transaction.status.value, "cancel", "transaction is closed")

        now = now or utcnow()
        correlation_id = uuid4()
        with self.store.atomic():
            payments = self.store.list_payments(transaction.id)
            active = [p for p in payments if p.status != PaymentStatus.CANCELLED]
            started = [p for p in active if p.status != PaymentStatus.SCHEDULED]
            if started:
                raise InvalidTransitionError(
                    transaction.status.value,
                    "cancel",
                    f"payment {started[0].id} already left scheduled",
                )

            cancelled = []
            for payment in active:
                target = PaymentStateMachine.next_status(payment.status, PaymentEvent.MANUAL_CANCEL)
                cancelled.append(
                    self.store.save_payment(
                        replace(payment, status=target, failure_reason=reason),
                        expected_version=payment.version,
                    )
                )

            stored = self.store.save_transaction(
                replace(
                    transaction,
                    status=TransactionStatus.CANCELLED,
                    decision_reason=reason or transaction.decision_reason,
                    updated_at=now,
                ),
                expected_version=transaction.version,
            )

        logger.info(
            "Transaction %s cancelled with %d scheduled payments", stored.id, len(cancelled)
        )
        events: list[DomainEvent] = [
            PaymentCancelled(
                metadata=EventMetadata.create(correlation_id=correlation_id),
                payment_id=p.id,
                transaction_id=p.transaction_id,
                amount=p.amount,
                reason=reason,
            )
            for p in cancelled
        ]
        events.append(
            TransactionCancelled(
                metadata=EventMetadata.create(correlation_id=correlation_id),
                transaction_id=stored.id,
                user_id=stored.user_id,
                cancelled_payment_ids=tuple(p.id for p in cancelled),
                outstanding_amount=stored.outstanding_amount,
                reason=reason,
            )
        )
        return TransitionResult(transaction=stored, payments=tuple(cancelled), events=tuple(events))

    # -------------------------------------------------------------------------
    # Payment transitions
    # -------------------------------------------------------------------------

    def begin_attempt(
        self,
        payment: Payment,
        gateway_reference: str,
        now: datetime | None = None,
    ) -> TransitionResult:
        """SCHEDULED → PROCESSING, recording the gateway intent reference."""
        return self.apply(
            payment,
            PaymentEvent.BEGIN_ATTEMPT,
            now=now,
            gateway_reference=gateway_reference,
            failure_reason=None,
            action_required_at=None,
        )

    def confirm(
        self,
        payment: Payment,
        now: datetime | None = None,
        paid_amount: int | None = None,
    ) -> TransitionResult:
        """PROCESSING → COMPLETED."""
        now = now or utcnow()
        return self.apply(
            payment,
            PaymentEvent.GATEWAY_CONFIRMED,
            now=now,
            paid_at=now,
            paid_amount=payment.amount if paid_amount is None else paid_amount,
            action_required_at=None,
        )

    def fail(
        self,
        payment: Payment,
        reason: str | None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """PROCESSING → FAILED, consuming one unit of the retry budget."""
        return self.apply(
            payment,
            PaymentEvent.GATEWAY_FAILED,
            now=now,
            retry_count=payment.retry_count + 1,
            failure_reason=reason,
            action_required_at=None,
        )

    def reschedule(
        self,
        payment: Payment,
        eligible_at: datetime,
        now: datetime | None = None,
    ) -> TransitionResult:
        """FAILED → SCHEDULED for another attempt at `eligible_at`."""
        return self.apply(
            payment,
            PaymentEvent.RETRY_ELIGIBLE,
            now=now,
            gateway_reference=None,
            due_at=eligible_at,
        )

    def exhaust(
        self,
        payment: Payment,
        now: datetime | None = None,
        past_cutoff: bool = False,
    ) -> TransitionResult:
        """FAILED → CANCELLED once no further retry is possible.

        Requires the retry budget to be spent, unless `past_cutoff` says the
        next retry would land after the transaction's grace cutoff.
        """
        return self.apply(payment, PaymentEvent.RETRY_EXHAUSTED, now=now, past_cutoff=past_cutoff)

    def cancel_payment(
        self,
        payment: Payment,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> TransitionResult:
        """SCHEDULED | FAILED → CANCELLED by operator action."""
        changes: dict[str, Any] = {}
        if reason is not None:
            changes["failure_reason"] = reason
        return self.apply(payment, PaymentEvent.MANUAL_CANCEL, now=now, **changes)

    def mark_action_required(self, payment: Payment, at: datetime) -> Payment:
        """Stamp the time the gateway asked for customer action.

        Not a status transition: the payment stays PROCESSING. The stamp is
        kept from the first request so the timeout cannot be extended by
        repeated notifications.
        """
        if payment.status != PaymentStatus.PROCESSING:
            raise InvalidTransitionError(payment.status.value, "requires_action", "payment is not processing")
        if payment.action_required_at is not None:
            return payment
        return self.store.save_payment(
            replace(payment, action_required_at=at),
            expected_version=payment.version,
        )

    def apply(
        self,
        payment: Payment,
        event: PaymentEvent,
        now: datetime | None = None,
        *,
        past_cutoff: bool = False,
        **changes: Any,
    ) -> TransitionResult:
        """Apply a single-payment transition.

        Args:
            payment: Snapshot the caller read; its version guards the write
            event: Transition to apply
            now: Transition time
            past_cutoff: RETRY_EXHAUSTED only; no retry fits before the cutoff
            **changes: Extra attribute updates for the new snapshot

        Raises:
            InvalidTransitionError: event not allowed from the current status
            ConcurrentModificationError: payment or transaction changed since read
        """
        now = now or utcnow()
        target = PaymentStateMachine.next_status(payment.status, event)
        if (
            event == PaymentEvent.RETRY_EXHAUSTED
            and not past_cutoff
            and payment.retry_count < self.retry_policy.max_attempts
        ):
            raise InvalidTransitionError(
                payment.status.value,
                event.value,
                f"retry budget remaining ({payment.retry_count}/{self.retry_policy.max_attempts})",
            )

        with self.store.atomic():
            transaction = self.store.load_transaction(payment.transaction_id)
            if event == PaymentEvent.MANUAL_CANCEL and transaction.status == TransactionStatus.COMPLETED:
                raise InvalidTransitionError(
                    payment.status.value, event.value, "transaction already completed"
                )

            saved = self.store.save_payment(
                replace(payment, status=target, **changes),
                expected_version=payment.version,
            )

            outstanding = transaction.outstanding_amount
            if target == PaymentStatus.COMPLETED:
                outstanding -= saved.amount

            updated = self._save_derived(transaction, outstanding, now)

        logger.info(
            "Payment %s %s → %s (%s), transaction %s %s",
            saved.id,
            payment.status.value,
            saved.status.value,
            event.value,
            updated.id,
            updated.status.value,
        )

        metadata = EventMetadata.create()
        events: list[DomainEvent] = []
        payment_event = self._payment_event(event, saved, updated, metadata)
        if payment_event is not None:
            events.append(payment_event)
        events.extend(self._status_change_events(transaction, updated, metadata))
        return TransitionResult(transaction=updated, payments=(saved,), events=tuple(events))

    def early_settle(
        self,
        quote: EarlySettlementQuote,
        now: datetime | None = None,
        gateway_reference: str | None = None,
    ) -> TransitionResult:
        """Settle every payment in a quote, all or nothing.

        Each payment must still be SCHEDULED at the version it was quoted at;
        otherwise ConcurrentModificationError is raised and the caller should
        request a new quote.
        """
        now = now or utcnow()
        with self.store.atomic():
            transaction = self.store.load_transaction(quote.transaction_id)
            settled = []
            for line in quote.lines:
                current = self.store.load_payment(line.payment_id)
                if current.version != line.quoted_version:
                    raise ConcurrentModificationError(
                        "Payment", current.id, line.quoted_version, current.version
                    )
                target = PaymentStateMachine.next_status(current.status, PaymentEvent.EARLY_SETTLE)
                settled.append(
                    self.store.save_payment(
                        replace(
                            current,
                            status=target,
                            paid_at=now,
                            paid_amount=line.net_amount,
                            discount_amount=line.discount,
                            settlement_quote_id=quote.quote_id,
                            gateway_reference=gateway_reference,
                        ),
                        expected_version=line.quoted_version,
                    )
                )

            updated = self._save_derived(
                transaction, transaction.outstanding_amount - quote.gross_amount, now
            )

        logger.info(
            "Quote %s settled %d payments of transaction %s (net %d, discount %d)",
            quote.quote_id,
            len(settled),
            updated.id,
            quote.net_amount,
            quote.discount_amount,
        )

        metadata = EventMetadata.create()
        events: list[DomainEvent] = [
            EarlyPaymentSettled(
                metadata=metadata,
                quote_id=quote.quote_id,
                transaction_id=updated.id,
                user_id=updated.user_id,
                payment_ids=quote.payment_ids,
                gross_amount=quote.gross_amount,
                discount_amount=quote.discount_amount,
                net_amount=quote.net_amount,
                gateway_reference=gateway_reference,
            )
        ]
        events.extend(self._status_change_events(transaction, updated, metadata))
        return TransitionResult(transaction=updated, payments=tuple(settled), events=tuple(events))

    # -------------------------------------------------------------------------
    # Internals
    # -------------------------------------------------------------------------

    def _save_derived(self, transaction: Transaction, outstanding: int, now: datetime) -> Transaction:
        payments = self.store.list_payments(transaction.id)
        status = derive_transaction_status(transaction.status, payments)
        return self.store.save_transaction(
            replace(
                transaction,
                status=status,
                outstanding_amount=max(outstanding, 0),
                updated_at=now,
            ),
            expected_version=transaction.version,
        )

    @staticmethod
    def _require_pending(transaction: Transaction, action: str) -> None:
        if transaction.status != TransactionStatus.PENDING_APPROVAL:
            raise InvalidTransitionError(transaction.status.value, action, "transaction is not pending approval")

    def _status_change_events(
        self,
        before: Transaction,
        after: Transaction,
        metadata: EventMetadata,
    ) -> list[DomainEvent]:
        if before.status == after.status:
            return []
        caused_by = EventMetadata.create(
            correlation_id=metadata.correlation_id,
            causation_id=metadata.event_id,
        )
        events: list[DomainEvent] = [
            TransactionStatusChanged(
                metadata=caused_by,
                transaction_id=after.id,
                user_id=after.user_id,
                previous_status=before.status.value,
                new_status=after.status.value,
                outstanding_amount=after.outstanding_amount,
            )
        ]
        if after.status == TransactionStatus.CANCELLED:
            # Derived cancel releases the uncollected balance like an explicit one
            cancelled = self.store.list_payments(after.id)
            events.append(
                TransactionCancelled(
                    metadata=EventMetadata.create(
                        correlation_id=metadata.correlation_id,
                        causation_id=caused_by.event_id,
                    ),
                    transaction_id=after.id,
                    user_id=after.user_id,
                    cancelled_payment_ids=tuple(
                        p.id for p in cancelled if p.status == PaymentStatus.CANCELLED
                    ),
                    outstanding_amount=after.outstanding_amount,
                    reason=None,
                )
            )
        return events

    @staticmethod
    def _payment_event(
        event: PaymentEvent,
        payment: Payment,
        transaction: Transaction,
        metadata: EventMetadata,
    ) -> DomainEvent | None:
        if event == PaymentEvent.BEGIN_ATTEMPT:
            return PaymentAttemptStarted(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                gateway_reference=payment.gateway_reference or "",
                attempt_number=payment.retry_count + 1,
            )
        if event == PaymentEvent.GATEWAY_CONFIRMED:
            return PaymentCompleted(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                user_id=transaction.user_id,
                amount=payment.amount,
                paid_amount=payment.paid_amount if payment.paid_amount is not None else payment.amount,
                paid_at=payment.paid_at,
                gateway_reference=payment.gateway_reference,
            )
        if event == PaymentEvent.GATEWAY_FAILED:
            return PaymentFailed(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                user_id=transaction.user_id,
                amount=payment.amount,
                retry_count=payment.retry_count,
                failure_reason=payment.failure_reason,
            )
        if event == PaymentEvent.RETRY_ELIGIBLE:
            return PaymentRescheduled(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                retry_count=payment.retry_count,
                due_at=payment.due_at,
            )
        if event == PaymentEvent.RETRY_EXHAUSTED:
            return PaymentRetryExhausted(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                user_id=transaction.user_id,
                amount=payment.amount,
                retry_count=payment.retry_count,
            )
        if event == PaymentEvent.MANUAL_CANCEL:
            return PaymentCancelled(
                metadata=metadata,
                payment_id=payment.id,
                transaction_id=payment.transaction_id,
                amount=payment.amount,
                reason=payment.failure_reason,
            )
        return None
