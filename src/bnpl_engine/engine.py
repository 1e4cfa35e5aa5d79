"""Installment Engine Facade - single integration path.

This facade is the blessed way to drive the installment engine. It wires
the planner, ledger, retry scheduler, reconciler and early-payment
calculator together and publishes domain events only after the ledger
commit that produced them.

Usage:
    engine = InstallmentEngine(store, gateway, config)

    # Admit a purchase and apply the credit decision
    tx = engine.create_transaction(purchase)
    result = engine.approve_transaction(tx.id, decision, first_due_at)

    # Collect an installment (sync leg; webhooks converge on the same state)
    result = engine.confirm_payment(payment_id, payment_method_ref)

    # Signed gateway webhook
    result = engine.reconcile_webhook(raw_body, signature_header)

    # Settle future installments early
    quote = engine.quote_early_payment(tx.id)
    result = engine.settle_early_payment(quote.quote_id, payment_method_ref)

    # Periodic jobs
    engine.process_due_payments(now, method_resolver)
    engine.process_due_retries(now)
    engine.expire_stuck(now)
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from bnpl_engine.collaborators import (
    CreditLedger,
    LoggingNotifier,
    Notifier,
    register_collaborators,
)
from bnpl_engine.config import Settings, get_settings
from bnpl_engine.database import create_schema, init_db
from bnpl_engine.domain import (
    CreditDecision,
    EarlySettlementQuote,
    GatewayEvent,
    GatewayOutcome,
    Payment,
    PurchaseRequest,
    ReconciliationResult,
    ReconciliationStatus,
    Transaction,
    utcnow,
)
from bnpl_engine.errors import (
    BnplEngineError,
    ConcurrentModificationError,
    EarlyPaymentDeclinedError,
    GatewayTimeoutError,
    InvalidTransitionError,
)
from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import DomainEvent, EventMetadata, PaymentRefunded
from bnpl_engine.gateways.base import GatewayClient, RefundResult
from bnpl_engine.gateways.signature import WebhookVerifier
from bnpl_engine.gateways.stub import StubGateway
from bnpl_engine.metrics import EngineMetrics, MetricsRecorder
from bnpl_engine.policies import EngineConfig
from bnpl_engine.services.early_payment import EarlyPaymentCalculator, SettlementResult
from bnpl_engine.services.ledger import PaymentLedger, retry_on_conflict
from bnpl_engine.services.planner import InstallmentPlanner
from bnpl_engine.services.reconciler import ExpiryRunResult, GatewayReconciler
from bnpl_engine.services.retry_scheduler import RetryScheduler
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus
from bnpl_engine.store.base import Store
from bnpl_engine.store.sql import SqlAlchemyStore

logger = logging.getLogger(__name__)

MethodResolver = Callable[[Payment, Transaction], "str | None"]

COLLECTABLE_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.APPROVED, TransactionStatus.PARTIALLY_PAID}
)


class ApprovalStatus(str, Enum):
    """Result of approve_transaction."""

    APPROVED = "approved"  # Payments planned and scheduled
    REJECTED = "rejected"  # Credit decision declined


class ConfirmStatus(str, Enum):
    """Result of confirm_payment."""

    SUCCEEDED = "succeeded"  # Payment completed
    FAILED = "failed"  # Attempt failed (retry scheduled or exhausted)
    PENDING_ACTION = "pending_action"  # Waiting on customer action
    ALREADY_APPLIED = "already_applied"  # A concurrent path got there first


@dataclass
class ApprovalResult:
    """Result of applying a credit decision."""

    status: ApprovalStatus
    transaction: Transaction
    payments: list[Payment]


@dataclass
class ConfirmResult:
    """Result of a synchronous collection attempt."""

    status: ConfirmStatus
    payment: Payment
    intent_reference: str | None
    message: str = ""


@dataclass
class TransactionSummary:
    """Read model of a transaction and its repayment progress."""

    transaction: Transaction
    payments: list[Payment]
    amount_paid: int
    discount_total: int
    outstanding_amount: int
    next_payment: Payment | None

    @property
    def payments_remaining(self) -> int:
        return sum(1 for p in self.payments if not p.is_terminal)


@dataclass
class DueRunResult:
    """Result of a process_due_payments run."""

    run_at: datetime
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    pending_action: int = 0
    skipped: int = 0
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


@dataclass
class RetryRunResult:
    """Result of a process_due_retries run."""

    run_at: datetime
    rescheduled: list[str] = field(default_factory=list)
    dropped: list[str] = field(default_factory=list)
    errors: list[dict[str, Any]] = field(default_factory=list)

    @property
    def success(self) -> bool:
        return not self.errors


class InstallmentEngine:
    """Synchronous installment engine facade.

    The engine holds no state of its own; everything lives in the store.
    Several engine instances may share one store.
    """

    def __init__(
        self,
        store: Store,
        gateway: GatewayClient,
        config: EngineConfig | None = None,
        event_emitter: EventEmitter | None = None,
        credit: CreditLedger | None = None,
        notifier: Notifier | None = None,
        verifier: WebhookVerifier | None = None,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self._store = store
        self._gateway = gateway
        self._config = config or EngineConfig()
        self._verifier = verifier
        self._clock = clock

        # Event emitter and subscribers
        self._emitter = event_emitter or EventEmitter()
        self.metrics = MetricsRecorder()
        self._emitter.on_all(self.metrics)
        register_collaborators(self._emitter, credit=credit, notifier=notifier)
        publisher = self._emitter if self._config.emit_events else None

        # Wire up services
        self._planner = InstallmentPlanner(self._config.plan)
        self._ledger = PaymentLedger(store, self._config.retry)
        self._scheduler = RetryScheduler(store, self._config.retry)
        self._reconciler = GatewayReconciler(
            self._ledger,
            self._scheduler,
            self._config.reconciliation,
            emitter=publisher,
            clock=clock,
        )
        self._early = EarlyPaymentCalculator(
            self._ledger,
            self._config.discount,
            emitter=publisher,
            clock=clock,
        )

    @property
    def config(self) -> EngineConfig:
        return self._config

    @property
    def emitter(self) -> EventEmitter:
        return self._emitter

    @property
    def store(self) -> Store:
        return self._store

    @property
    def webhooks_enabled(self) -> bool:
        return self._verifier is not None

    # -------------------------------------------------------------------------
    # Transactions
    # -------------------------------------------------------------------------

    def create_transaction(self, purchase: PurchaseRequest, now: datetime | None = None) -> Transaction:
        """Record a purchase awaiting its credit decision.

        Raises:
            InvalidPlanError: the purchase cannot be financed as requested
        """
        now = now or self._clock()
        self._planner.validate(
            purchase.principal,
            purchase.currency,
            purchase.installment_count,
            first_due_at=now,
            now=now,
        )
        result = self._ledger.create_transaction(purchase, now)
        self._publish(result.events)
        return result.transaction

    def approve_transaction(
        self,
        transaction_id: str,
        decision: CreditDecision,
        first_due_at: datetime,
        now: datetime | None = None,
    ) -> ApprovalResult:
        """Apply the credit decision to a pending transaction.

        Approval plans the installments and persists them as SCHEDULED in the
        same unit of work as the status change. A declined decision marks the
        transaction REJECTED and creates no payments.
        """
        now = now or self._clock()
        transaction = self._ledger.get_transaction(transaction_id)

        if not decision.approved:
            result = self._ledger.reject(transaction, decision.reason, now)
            self._publish(result.events)
            return ApprovalResult(ApprovalStatus.REJECTED, result.transaction, [])

        specs = self._planner.plan(
            transaction.principal,
            transaction.currency,
            transaction.installment_count,
            first_due_at,
            now=now,
        )
        result = self._ledger.approve(transaction, specs, now)
        self._publish(result.events)
        return ApprovalResult(ApprovalStatus.APPROVED, result.transaction, list(result.payments))

    def cancel_transaction(
        self,
        transaction_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Transaction:
        """Cancel a transaction whose payments are all still SCHEDULED."""
        now = now or self._clock()

        def attempt():
            transaction = self._ledger.get_transaction(transaction_id)
            return self._ledger.cancel_transaction(transaction, reason, now)

        result = retry_on_conflict(attempt, self._config.reconciliation.conflict_retries)
        for payment in result.payments:
            self._scheduler.cancel(payment.id)
        self._publish(result.events)
        return result.transaction

    def get_transaction(self, transaction_id: str) -> Transaction:
        return self._ledger.get_transaction(transaction_id)

    def get_payment(self, payment_id: str) -> Payment:
        return self._ledger.get_payment(payment_id)

    def list_payments(self, transaction_id: str) -> list[Payment]:
        return self._ledger.list_payments(transaction_id)

    def get_transaction_summary(self, transaction_id: str) -> TransactionSummary:
        """Transaction, its payments and repayment progress."""
        transaction = self._ledger.get_transaction(transaction_id)
        payments = self._ledger.list_payments(transaction_id)
        completed = [p for p in payments if p.status == PaymentStatus.COMPLETED]
        upcoming = sorted(
            (p for p in payments if not p.is_terminal),
            key=lambda p: (p.due_at, p.sequence),
        )
        return TransactionSummary(
            transaction=transaction,
            payments=payments,
            amount_paid=sum(p.paid_amount if p.paid_amount is not None else p.amount for p in completed),
            discount_total=sum(p.discount_amount for p in completed),
            outstanding_amount=transaction.outstanding_amount,
            next_payment=upcoming[0] if upcoming else None,
        )

    # -------------------------------------------------------------------------
    # Payments
    # -------------------------------------------------------------------------

    def confirm_payment(
        self,
        payment_id: str,
        payment_method_ref: str,
        now: datetime | None = None,
    ) -> ConfirmResult:
        """Attempt to collect a SCHEDULED payment synchronously.

        Steps:
        1. Create a gateway intent and move the payment to PROCESSING
        2. Confirm the intent, bounded by the confirm timeout
        3. Apply the outcome through the reconciler

        A timeout counts as a failure; a later webhook for the same intent
        still converges the payment to its real outcome. Losing a race to a
        webhook that already applied the outcome is reported as
        ALREADY_APPLIED. So is a second caller racing the same payment: its
        gateway intent is voided and the first attempt stands.

        Raises:
            InvalidTransitionError: payment is FAILED or CANCELLED, or the
                transaction is not collectable
        """
        now = now or self._clock()
        payment = self._ledger.get_payment(payment_id)
        if payment.status == PaymentStatus.COMPLETED:
            return ConfirmResult(ConfirmStatus.ALREADY_APPLIED, payment, payment.gateway_reference, "payment already completed")

        transaction = self._ledger.get_transaction(payment.transaction_id)
        if transaction.status not in COLLECTABLE_TRANSACTION_STATUSES:
            raise InvalidTransitionError(
                payment.status.value, "begin_attempt", f"transaction is {transaction.status.value}"
            )
        if payment.status == PaymentStatus.PROCESSING:
            return self._attempt_in_flight(payment)
        if payment.status != PaymentStatus.SCHEDULED:
            raise InvalidTransitionError(payment.status.value, "begin_attempt")

        # Step 1: intent + PROCESSING
        intent = self._gateway.create_intent(
            payment.amount,
            transaction.currency,
            {"payment_id": payment.id, "transaction_id": transaction.id},
        )
        try:
            started = self._ledger.begin_attempt(payment, intent.intent_reference, now)
        except (ConcurrentModificationError, InvalidTransitionError) as e:
            # Another caller moved the payment first; their attempt stands.
            if not self._gateway.cancel_intent(intent.intent_reference):
                logger.warning("Could not void orphan intent %s", intent.intent_reference)
            current = self._ledger.get_payment(payment.id)
            if current.status in (PaymentStatus.PROCESSING, PaymentStatus.COMPLETED, PaymentStatus.FAILED):
                logger.info("Payment %s confirm lost the start race: %s", payment.id, e)
                return self._attempt_in_flight(current)
            raise
        self._publish(started.events)

        # Step 2: synchronous confirm
        try:
            confirmed = self._gateway.confirm_intent(
                intent.intent_reference,
                payment_method_ref,
                self._config.reconciliation.confirm_timeout,
            )
            outcome, reason = confirmed.outcome, confirmed.failure_reason
        except GatewayTimeoutError as e:
            logger.warning("Confirm of payment %s timed out: %s", payment.id, e)
            outcome, reason = GatewayOutcome.FAILED, "gateway timeout"

        # Step 3: converge
        def attempt():
            with self._store.atomic():
                fresh = self._ledger.get_payment(payment.id)
                return self._reconciler.apply_outcome(fresh, outcome, intent.intent_reference, now, reason)

        try:
            applied = retry_on_conflict(attempt, self._config.reconciliation.conflict_retries)
        except ConcurrentModificationError as e:
            logger.warning("Payment %s confirm lost a race, treating as applied: %s", payment.id, e)
            return ConfirmResult(
                ConfirmStatus.ALREADY_APPLIED,
                self._ledger.get_payment(payment.id),
                intent.intent_reference,
                "concurrent update",
            )

        self._publish(applied.events)
        return ConfirmResult(
            self._confirm_status(applied.status, outcome),
            applied.payment,
            intent.intent_reference,
            applied.message,
        )

    @staticmethod
    def _attempt_in_flight(payment: Payment) -> ConfirmResult:
        messages = {
            PaymentStatus.COMPLETED: "payment already completed",
            PaymentStatus.FAILED: "concurrent attempt already failed",
        }
        message = messages.get(payment.status, "collection already in progress")
        return ConfirmResult(ConfirmStatus.ALREADY_APPLIED, payment, payment.gateway_reference, message)

    @staticmethod
    def _confirm_status(status: ReconciliationStatus, outcome: GatewayOutcome) -> ConfirmStatus:
        if status == ReconciliationStatus.ALREADY_APPLIED:
            return ConfirmStatus.ALREADY_APPLIED
        if status == ReconciliationStatus.PENDING_ACTION:
            return ConfirmStatus.PENDING_ACTION
        if outcome == GatewayOutcome.SUCCEEDED:
            return ConfirmStatus.SUCCEEDED
        return ConfirmStatus.FAILED

    def cancel_payment(
        self,
        payment_id: str,
        reason: str | None = None,
        now: datetime | None = None,
    ) -> Payment:
        """Cancel a SCHEDULED or FAILED payment (operator action)."""
        now = now or self._clock()

        def attempt():
            payment = self._ledger.get_payment(payment_id)
            return self._ledger.cancel_payment(payment, reason, now)

        result = retry_on_conflict(attempt, self._config.reconciliation.conflict_retries)
        self._scheduler.cancel(payment_id)
        self._publish(result.events)
        return result.payment

    def refund_payment(self, payment_id: str, amount: int | None = None) -> RefundResult:
        """Refund (part of) a COMPLETED payment through the gateway.

        Ledger state is unchanged; refunds are a gateway passthrough.
        """
        payment = self._ledger.get_payment(payment_id)
        if payment.status != PaymentStatus.COMPLETED or not payment.gateway_reference:
            raise InvalidTransitionError(payment.status.value, "refund", "payment has no collected charge")

        collected = payment.paid_amount if payment.paid_amount is not None else payment.amount
        amount = collected if amount is None else amount
        if amount <= 0 or amount > collected:
            raise InvalidTransitionError(
                payment.status.value, "refund", f"amount must be between 1 and {collected}"
            )

        result = self._gateway.refund(payment.gateway_reference, amount)
        if result.success:
            logger.info("Refunded %d of payment %s (%s)", amount, payment.id, result.refund_reference)
            self._publish([
                PaymentRefunded(
                    metadata=EventMetadata.create(actor="user"),
                    payment_id=payment.id,
                    transaction_id=payment.transaction_id,
                    refunded_amount=amount,
                    refund_reference=result.refund_reference,
                )
            ])
        else:
            logger.warning("Refund of payment %s rejected: %s", payment.id, result.message)
        return result

    # -------------------------------------------------------------------------
    # Early payment
    # -------------------------------------------------------------------------

    def quote_early_payment(
        self,
        transaction_id: str,
        payment_ids: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> EarlySettlementQuote:
        """Price early settlement of future installments."""
        return self._early.quote(transaction_id, payment_ids, now)

    def settle_early_payment(
        self,
        quote_id: str,
        payment_method_ref: str,
        as_of: datetime | None = None,
    ) -> SettlementResult:
        """Charge a quote's net amount and settle its payments.

        The charge is collected before the ledger is touched. If the ledger
        step then fails the charge is refunded and the error re-raised.
        Settling an already-settled quote returns the original result
        without charging again.

        Raises:
            QuoteExpiredError: quote is past its validity
            NotEligibleForEarlyPaymentError: a payment is no longer settleable
            EarlyPaymentDeclinedError: the gateway did not collect the charge
        """
        as_of = as_of or self._clock()
        quote = self._early.get_quote(quote_id)

        settled = self._early.already_settled(quote)
        if settled is not None:
            return self._early.settle(quote_id, as_of)

        self._early.check_settleable(quote, as_of)
        if quote.net_amount == 0:
            return self._early.settle(quote_id, as_of)

        transaction = self._ledger.get_transaction(quote.transaction_id)
        intent = self._gateway.create_intent(
            quote.net_amount,
            transaction.currency,
            {"quote_id": quote.quote_id, "transaction_id": transaction.id},
        )
        try:
            confirmed = self._gateway.confirm_intent(
                intent.intent_reference,
                payment_method_ref,
                self._config.reconciliation.confirm_timeout,
            )
        except GatewayTimeoutError:
            logger.warning("Early payment charge for quote %s timed out, voiding", quote_id)
            self._gateway.refund(intent.intent_reference, quote.net_amount)
            raise EarlyPaymentDeclinedError(quote_id, "timeout") from None

        if not confirmed.succeeded:
            raise EarlyPaymentDeclinedError(quote_id, confirmed.outcome.value)

        try:
            return self._early.settle(quote_id, as_of, gateway_reference=intent.intent_reference)
        except BnplEngineError:
            logger.exception("Ledger rejected settlement of quote %s after charge, refunding", quote_id)
            self._gateway.refund(intent.intent_reference, quote.net_amount)
            raise

    # -------------------------------------------------------------------------
    # Gateway webhooks
    # -------------------------------------------------------------------------

    def reconcile_webhook(
        self,
        payload: bytes,
        signature: str | None,
        now: datetime | None = None,
    ) -> ReconciliationResult:
        """Verify and apply a raw webhook delivery.

        Raises:
            GatewaySignatureError: signature missing, stale or wrong
            GatewayPayloadError: body is not a gateway event
        """
        if self._verifier is None:
            raise RuntimeError("No webhook verifier configured")
        event = self._verifier.parse(payload, signature, now or self._clock())
        return self._reconciler.reconcile(event)

    def reconcile_event(self, event: GatewayEvent) -> ReconciliationResult:
        """Apply an already-verified gateway event."""
        return self._reconciler.reconcile(event)

    # -------------------------------------------------------------------------
    # Periodic jobs
    # -------------------------------------------------------------------------

    def process_due_payments(
        self,
        now: datetime | None = None,
        method_resolver: MethodResolver | None = None,
    ) -> DueRunResult:
        """Attempt every SCHEDULED payment due at or before `now`.

        `method_resolver` returns the payment method to charge for a payment,
        or None to skip it this run.
        """
        now = now or self._clock()
        result = DueRunResult(run_at=now)

        for payment in self._store.list_payments_by_status(PaymentStatus.SCHEDULED, due_before=now):
            transaction = self._ledger.get_transaction(payment.transaction_id)
            if transaction.status not in COLLECTABLE_TRANSACTION_STATUSES:
                result.skipped += 1
                continue

            method = method_resolver(payment, transaction) if method_resolver else None
            if method is None:
                result.skipped += 1
                continue

            result.attempted += 1
            try:
                confirmed = self.confirm_payment(payment.id, method, now)
            except BnplEngineError as e:
                logger.warning("Due payment %s not attempted: %s", payment.id, e)
                result.errors.append({"payment_id": payment.id, "message": str(e)})
                continue

            if confirmed.status in (ConfirmStatus.SUCCEEDED, ConfirmStatus.ALREADY_APPLIED):
                result.succeeded += 1
            elif confirmed.status == ConfirmStatus.PENDING_ACTION:
                result.pending_action += 1
            else:
                result.failed += 1

        logger.info(
            "Due run at %s: attempted=%d succeeded=%d failed=%d skipped=%d",
            now.isoformat(),
            result.attempted,
            result.succeeded,
            result.failed,
            result.skipped,
        )
        return result

    def process_due_retries(self, now: datetime | None = None) -> RetryRunResult:
        """Return FAILED payments whose retry timer elapsed to SCHEDULED.

        Timers are advisory: a payment that is no longer FAILED just has its
        timer dropped.
        """
        now = now or self._clock()
        result = RetryRunResult(run_at=now)

        for payment_id in self._scheduler.due_for_retry(now):

            def attempt(payment_id: str = payment_id) -> list[DomainEvent] | None:
                with self._store.atomic():
                    timer = self._scheduler.pending(payment_id)
                    payment = self._ledger.get_payment(payment_id)
                    if timer is None or payment.status != PaymentStatus.FAILED:
                        self._scheduler.cancel(payment_id)
                        return None
                    rescheduled = self._ledger.reschedule(payment, timer.eligible_at, now)
                    self._scheduler.cancel(payment_id)
                    return list(rescheduled.events)

            try:
                events = retry_on_conflict(attempt, self._config.reconciliation.conflict_retries)
            except BnplEngineError as e:
                logger.warning("Retry of payment %s not applied: %s", payment_id, e)
                result.errors.append({"payment_id": payment_id, "message": str(e)})
                continue

            if events is None:
                result.dropped.append(payment_id)
            else:
                result.rescheduled.append(payment_id)
                self._publish(events)

        return result

    def expire_stuck(self, now: datetime | None = None) -> ExpiryRunResult:
        """Fail payments stuck waiting on customer action."""
        return self._reconciler.expire_stuck(now)

    # -------------------------------------------------------------------------
    # Observability
    # -------------------------------------------------------------------------

    def metrics_snapshot(self) -> EngineMetrics:
        return self.metrics.snapshot(self._store)

    def _publish(self, events: Iterable[DomainEvent]) -> None:
        if self._config.emit_events:
            self._emitter.emit_all(list(events))


def build_engine(
    settings: Settings | None = None,
    gateway: GatewayClient | None = None,
    store: Store | None = None,
) -> InstallmentEngine:
    """Assemble an engine from settings.

    Without an explicit store the engine runs on the configured database,
    creating tables if needed. Without a gateway the stub gateway is used.
    """
    settings = settings or get_settings()

    if store is None:
        db_engine, session_factory = init_db(settings.database_url)
        create_schema(db_engine)
        store = SqlAlchemyStore(session_factory)

    verifier = WebhookVerifier(settings.webhook_secret) if settings.webhook_secret else None
    return InstallmentEngine(
        store,
        gateway or StubGateway(webhook_secret=settings.webhook_secret),
        settings.engine_config(),
        notifier=LoggingNotifier(),
        verifier=verifier,
    )
