"""Gateway Reconciler - converge gateway outcomes into the payment ledger.

Outcomes arrive twice: synchronously from confirm_intent and asynchronously
from signed webhooks, in any order and possibly repeated. Both paths go
through `apply_outcome`, which reads the payment fresh and applies only the
transitions still needed to reach the reported state:

    succeeded        SCHEDULED → PROCESSING → COMPLETED
                     PROCESSING → COMPLETED
                     FAILED → SCHEDULED → PROCESSING → COMPLETED (late success)
    failed           PROCESSING → FAILED, then retry timer or exhaustion
    requires_action  stamp action_required_at, no transition

Webhooks are never refused for business-state reasons. Unknown or
cancelled payments produce a STALE result and are acknowledged.
"""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any

from bnpl_engine.domain import (
    GatewayEvent,
    GatewayOutcome,
    Payment,
    ReconciliationResult,
    ReconciliationStatus,
    utcnow,
)
from bnpl_engine.errors import ConcurrentModificationError, InvalidTransitionError, NotFoundError
from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import (
    ActionRequiredExpired,
    DomainEvent,
    EventMetadata,
    LateSuccessOnCancelledPayment,
    PaymentRetryScheduled,
)
from bnpl_engine.policies import ReconciliationPolicy
from bnpl_engine.services.ledger import PaymentLedger, retry_on_conflict
from bnpl_engine.services.retry_scheduler import RetryScheduler
from bnpl_engine.services.state_machine import PaymentStatus

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class OutcomeApplication:
    """What applying one gateway outcome did to the ledger."""

    status: ReconciliationStatus
    payment: Payment | None
    events: tuple[DomainEvent, ...] = ()
    message: str = ""


@dataclass
class ExpiryRunResult:
    """Result of an expire_stuck run."""

    run_at: datetime
    payments_examined: int = 0
    payments_expired: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class GatewayReconciler:
    """Applies gateway outcomes to the ledger idempotently."""

    def __init__(
        self,
        ledger: PaymentLedger,
        scheduler: RetryScheduler,
        policy: ReconciliationPolicy | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.store = ledger.store
        self.scheduler = scheduler
        self.policy = policy or ReconciliationPolicy()
        self.emitter = emitter
        self.clock = clock

    # -------------------------------------------------------------------------
    # Webhook path
    # -------------------------------------------------------------------------

    def reconcile(self, event: GatewayEvent) -> ReconciliationResult:
        """Process one verified gateway event.

        A repeated event id returns the result recorded the first time,
        flagged as duplicate, without touching the ledger.
        """
        prior = self.store.get_gateway_event(event.event_id)
        if prior is not None:
            logger.warning("Duplicate gateway event %s ignored", event.event_id)
            return replace(prior, duplicate=True)

        def attempt() -> tuple[ReconciliationResult, OutcomeApplication, bool]:
            with self.store.atomic():
                applied = self._apply_event(event)
                result = ReconciliationResult(
                    event_id=event.event_id,
                    status=applied.status,
                    payment_id=applied.payment.id if applied.payment else None,
                    payment_status=applied.payment.status if applied.payment else None,
                    message=applied.message,
                )
                recorded = self.store.record_gateway_event(result)
                return result, applied, recorded

        result, applied, recorded = retry_on_conflict(attempt, self.policy.conflict_retries)
        if not recorded:
            # A concurrent delivery of the same event id committed first
            prior = self.store.get_gateway_event(event.event_id)
            logger.warning("Gateway event %s was processed concurrently", event.event_id)
            return replace(prior or result, duplicate=True)

        logger.info(
            "Gateway event %s (%s) for payment %s: %s",
            event.event_id,
            event.outcome.value,
            result.payment_id,
            result.status.value,
        )
        self._publish(applied.events)
        return result

    def _apply_event(self, event: GatewayEvent) -> OutcomeApplication:
        payment = self.store.find_payment_by_intent(event.intent_reference)
        if payment is None and event.payment_id:
            try:
                payment = self.store.load_payment(event.payment_id)
            except NotFoundError:
                payment = None

        if payment is None:
            logger.warning(
                "Gateway event %s references unknown intent %s",
                event.event_id,
                event.intent_reference,
            )
            return OutcomeApplication(ReconciliationStatus.STALE, None, message="unknown payment")

        if event.amount != payment.amount and event.outcome == GatewayOutcome.SUCCEEDED:
            logger.warning(
                "Gateway event %s amount %d differs from payment %s amount %d",
                event.event_id,
                event.amount,
                payment.id,
                payment.amount,
            )

        if payment.status == PaymentStatus.CANCELLED:
            events: tuple[DomainEvent, ...] = ()
            if event.outcome == GatewayOutcome.SUCCEEDED:
                logger.warning(
                    "Late success %s on cancelled payment %s, refund required",
                    event.event_id,
                    payment.id,
                )
                events = (
                    LateSuccessOnCancelledPayment(
                        metadata=EventMetadata.create(actor="webhook"),
                        payment_id=payment.id,
                        transaction_id=payment.transaction_id,
                        gateway_event_id=event.event_id,
                        gateway_reference=event.intent_reference,
                        amount=event.amount,
                    ),
                )
            return OutcomeApplication(
                ReconciliationStatus.STALE, payment, events, message="payment cancelled"
            )

        return self.apply_outcome(
            payment,
            event.outcome,
            event.intent_reference,
            event.occurred_at,
            event.failure_reason,
        )

    # -------------------------------------------------------------------------
    # Shared outcome application
    # -------------------------------------------------------------------------

    def apply_outcome(
        self,
        payment: Payment,
        outcome: GatewayOutcome,
        intent_reference: str,
        at: datetime,
        failure_reason: str | None = None,
    ) -> OutcomeApplication:
        """Move a payment toward the state a gateway outcome reports.

        Must be called with a fresh payment snapshot. Losing a race to a
        concurrent writer that already applied the same outcome is reported
        as ALREADY_APPLIED.
        """
        try:
            if outcome == GatewayOutcome.SUCCEEDED:
                return self._apply_success(payment, intent_reference, at)
            if outcome == GatewayOutcome.FAILED:
                return self._apply_failure(payment, intent_reference, at, failure_reason)
            return self._apply_requires_action(payment, intent_reference, at)
        except InvalidTransitionError as e:
            logger.warning("Payment %s outcome %s not applied: %s", payment.id, outcome.value, e)
            current = self.store.load_payment(payment.id)
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED, current, message=str(e)
            )

    def _apply_success(self, payment: Payment, intent_reference: str, at: datetime) -> OutcomeApplication:
        if payment.status == PaymentStatus.COMPLETED:
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED, payment, message="payment already completed"
            )

        events: list[DomainEvent] = []
        with self.store.atomic():
            if payment.status == PaymentStatus.FAILED:
                # Funds arrived for an attempt the ledger already counted as failed
                rescheduled = self.ledger.reschedule(payment, eligible_at=payment.due_at, now=at)
                events.extend(rescheduled.events)
                payment = rescheduled.payment
                self.scheduler.cancel(payment.id)

            if payment.status == PaymentStatus.SCHEDULED:
                started = self.ledger.begin_attempt(payment, intent_reference, now=at)
                events.extend(started.events)
                payment = started.payment
            elif payment.gateway_reference != intent_reference:
                logger.warning(
                    "Payment %s confirmed by intent %s while attempt %s is open",
                    payment.id,
                    intent_reference,
                    payment.gateway_reference,
                )
                payment = self.store.save_payment(
                    replace(payment, gateway_reference=intent_reference),
                    expected_version=payment.version,
                )

            confirmed = self.ledger.confirm(payment, now=at)
            events.extend(confirmed.events)

        return OutcomeApplication(
            ReconciliationStatus.APPLIED, confirmed.payment, tuple(events), message="payment completed"
        )

    def _apply_failure(
        self,
        payment: Payment,
        intent_reference: str,
        at: datetime,
        failure_reason: str | None,
    ) -> OutcomeApplication:
        if payment.status in (PaymentStatus.FAILED, PaymentStatus.COMPLETED):
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED,
                payment,
                message=f"payment already {payment.status.value}",
            )

        if payment.status == PaymentStatus.PROCESSING and payment.gateway_reference not in (
            None,
            intent_reference,
        ):
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED, payment, message="failure of a superseded attempt"
            )

        if payment.status == PaymentStatus.SCHEDULED and payment.retry_count > 0:
            # Rescheduled after an earlier failure; this is that failure again
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED, payment, message="failure already counted"
            )

        events: list[DomainEvent] = []
        with self.store.atomic():
            if payment.status == PaymentStatus.SCHEDULED:
                started = self.ledger.begin_attempt(payment, intent_reference, now=at)
                events.extend(started.events)
                payment = started.payment

            payment, failure_events = self.record_failure(payment, failure_reason, at)
            events.extend(failure_events)

        return OutcomeApplication(
            ReconciliationStatus.APPLIED, payment, tuple(events), message=f"payment {payment.status.value}"
        )

    def _apply_requires_action(self, payment: Payment, intent_reference: str, at: datetime) -> OutcomeApplication:
        if payment.status not in (PaymentStatus.SCHEDULED, PaymentStatus.PROCESSING):
            return OutcomeApplication(
                ReconciliationStatus.ALREADY_APPLIED,
                payment,
                message=f"payment already {payment.status.value}",
            )

        events: list[DomainEvent] = []
        with self.store.atomic():
            if payment.status == PaymentStatus.SCHEDULED:
                started = self.ledger.begin_attempt(payment, intent_reference, now=at)
                events.extend(started.events)
                payment = started.payment
            payment = self.ledger.mark_action_required(payment, at)

        return OutcomeApplication(
            ReconciliationStatus.PENDING_ACTION, payment, tuple(events), message="awaiting customer action"
        )

    def record_failure(
        self,
        payment: Payment,
        failure_reason: str | None,
        failed_at: datetime,
    ) -> tuple[Payment, list[DomainEvent]]:
        """PROCESSING → FAILED, then schedule a retry or exhaust the payment."""
        events: list[DomainEvent] = []
        with self.store.atomic():
            failed = self.ledger.fail(payment, failure_reason, now=failed_at)
            events.extend(failed.events)
            payment = failed.payment

            cutoff = self.scheduler.cutoff_for(failed.transaction.final_due_at or payment.due_at)
            eligible_at = self.scheduler.on_failure(payment, failed_at, cutoff)
            if eligible_at is None:
                exhausted = self.ledger.exhaust(
                    payment,
                    now=failed_at,
                    past_cutoff=payment.retry_count < self.scheduler.policy.max_attempts,
                )
                events.extend(exhausted.events)
                payment = exhausted.payment
            else:
                events.append(
                    PaymentRetryScheduled(
                        metadata=EventMetadata.create(actor="scheduler"),
                        payment_id=payment.id,
                        transaction_id=payment.transaction_id,
                        retry_count=payment.retry_count,
                        eligible_at=eligible_at,
                    )
                )
        return payment, events

    # -------------------------------------------------------------------------
    # Stuck payments
    # -------------------------------------------------------------------------

    def expire_stuck(self, now: datetime | None = None) -> ExpiryRunResult:
        """Fail payments that waited on customer action past the timeout."""
        now = now or self.clock()
        result = ExpiryRunResult(run_at=now)
        threshold = now - self.policy.requires_action_timeout

        for candidate in self.store.list_payments_by_status(PaymentStatus.PROCESSING):
            if candidate.action_required_at is None:
                continue
            result.payments_examined += 1
            if candidate.action_required_at > threshold:
                continue

            def attempt(payment_id: str = candidate.id) -> list[DomainEvent]:
                with self.store.atomic():
                    payment = self.store.load_payment(payment_id)
                    if (
                        payment.status != PaymentStatus.PROCESSING
                        or payment.action_required_at is None
                        or payment.action_required_at > threshold
                    ):
                        return []
                    _, events = self.record_failure(payment, "requires_action timeout", now)
                    events.insert(
                        0,
                        ActionRequiredExpired(
                            metadata=EventMetadata.create(actor="scheduler"),
                            payment_id=payment.id,
                            transaction_id=payment.transaction_id,
                            action_required_at=payment.action_required_at,
                        ),
                    )
                    return events

            try:
                events = retry_on_conflict(attempt, self.policy.conflict_retries)
            except (ConcurrentModificationError, InvalidTransitionError) as e:
                logger.warning("Could not expire payment %s: %s", candidate.id, e)
                result.errors.append({"payment_id": candidate.id, "message": str(e)})
                continue

            if events:
                result.payments_expired.append(candidate.id)
                logger.info("Payment %s failed after requires_action timeout", candidate.id)
                self._publish(events)

        return result

    def _publish(self, events: tuple[DomainEvent, ...] | list[DomainEvent]) -> None:
        if self.emitter is not None and events:
            self.emitter.emit_all(list(events))
