"""Early-payment quotes and settlement.

Discount for one payment settled `days_early` before its due date:

    discount = amount * rate * min(1, days_early / normalization_window_days)

rounded down to the minor unit. The net collected is never below the
processing cost floor and never above the payment amount.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field
from datetime import datetime
from decimal import ROUND_DOWN, Decimal

from bnpl_engine.domain import (
    EarlySettlementQuote,
    Payment,
    QuoteLine,
    Transaction,
    new_id,
    utcnow,
)
from bnpl_engine.errors import NotEligibleForEarlyPaymentError, QuoteExpiredError
from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import DomainEvent
from bnpl_engine.policies import DiscountPolicy
from bnpl_engine.services.ledger import PaymentLedger
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus

logger = logging.getLogger(__name__)

SECONDS_PER_DAY = Decimal(86400)

SETTLEABLE_TRANSACTION_STATUSES = frozenset(
    {TransactionStatus.APPROVED, TransactionStatus.PARTIALLY_PAID}
)


@dataclass(frozen=True)
class SettlementResult:
    """Result of settling a quote.

    IMPORTANT: check `is_new`. A repeated settle of the same quote returns
    the original outcome with `is_new=False` and must not trigger another
    charge or notification.
    """

    quote: EarlySettlementQuote
    transaction: Transaction
    payments: tuple[Payment, ...]
    is_new: bool
    gateway_reference: str | None = None
    events: tuple[DomainEvent, ...] = field(default_factory=tuple)

    @property
    def was_duplicate(self) -> bool:
        return not self.is_new

    @property
    def net_amount(self) -> int:
        return self.quote.net_amount


class EarlyPaymentCalculator:
    """Prices and applies early settlement of future installments."""

    def __init__(
        self,
        ledger: PaymentLedger,
        policy: DiscountPolicy | None = None,
        emitter: EventEmitter | None = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.ledger = ledger
        self.store = ledger.store
        self.policy = policy or DiscountPolicy()
        self.emitter = emitter
        self.clock = clock

    def price(self, payment: Payment, now: datetime) -> QuoteLine:
        """Price a single payment settled at `now`."""
        amount = payment.amount
        seconds_early = Decimal(str(max((payment.due_at - now).total_seconds(), 0.0)))
        days_early = seconds_early / SECONDS_PER_DAY

        fraction = min(Decimal(1), days_early / Decimal(self.policy.normalization_window_days))
        discount = (Decimal(amount) * self.policy.rate * fraction).to_integral_value(rounding=ROUND_DOWN)

        net = amount - int(discount)
        net = max(net, max(0, self.policy.processing_cost_floor))
        net = min(net, amount)

        return QuoteLine(
            payment_id=payment.id,
            amount=amount,
            days_early=round(float(days_early), 4),
            discount=amount - net,
            net_amount=net,
            quoted_version=payment.version,
        )

    def quote(
        self,
        transaction_id: str,
        target_payment_ids: Iterable[str] | None = None,
        now: datetime | None = None,
    ) -> EarlySettlementQuote:
        """
        Quote early settlement of payments of a transaction.

        Args:
            transaction_id: Owning transaction
            target_payment_ids: Payments to settle; None selects every
                remaining SCHEDULED payment due after `now`
            now: Pricing time

        Returns:
            EarlySettlementQuote valid for the policy's quote validity

        Raises:
            NotEligibleForEarlyPaymentError: a target is not SCHEDULED, not in
                the future, or not part of the transaction
        """
        now = now or self.clock()
        transaction = self.store.load_transaction(transaction_id)
        payments = {p.id: p for p in self.store.list_payments(transaction_id)}

        if target_payment_ids is None:
            targets = [
                p for p in payments.values()
                if p.status == PaymentStatus.SCHEDULED and p.due_at > now
            ]
            if not targets:
                raise NotEligibleForEarlyPaymentError(transaction_id, "no future scheduled payments")
        else:
            ids = list(dict.fromkeys(target_payment_ids))
            if not ids:
                raise NotEligibleForEarlyPaymentError(transaction_id, "no payments selected")
            targets = []
            for payment_id in ids:
                payment = payments.get(payment_id)
                if payment is None:
                    raise NotEligibleForEarlyPaymentError(payment_id, "not part of this transaction")
                self._check_eligible(payment, now)
                targets.append(payment)

        if transaction.status not in SETTLEABLE_TRANSACTION_STATUSES:
            raise NotEligibleForEarlyPaymentError(
                targets[0].id, f"transaction is {transaction.status.value}"
            )

        lines = tuple(self.price(p, now) for p in sorted(targets, key=lambda p: p.sequence))
        quote = EarlySettlementQuote(
            quote_id=new_id(),
            transaction_id=transaction_id,
            lines=lines,
            created_at=now,
            expires_at=now + self.policy.quote_validity,
        )
        self.store.save_quote(quote)

        logger.info(
            "Quote %s for transaction %s: %d payments, gross %d, net %d",
            quote.quote_id,
            transaction_id,
            len(lines),
            quote.gross_amount,
            quote.net_amount,
        )
        return quote

    def get_quote(self, quote_id: str) -> EarlySettlementQuote:
        return self.store.load_quote(quote_id)

    def already_settled(self, quote: EarlySettlementQuote) -> tuple[Payment, ...] | None:
        """Payments of a quote if it was settled before, else None."""
        payments = tuple(self.store.load_payment(pid) for pid in quote.payment_ids)
        if all(
            p.status == PaymentStatus.COMPLETED and p.settlement_quote_id == quote.quote_id
            for p in payments
        ):
            return payments
        return None

    def check_settleable(self, quote: EarlySettlementQuote, as_of: datetime) -> None:
        """Raise unless the quote can still be settled at `as_of`."""
        if quote.is_expired(as_of):
            raise QuoteExpiredError(quote.quote_id)
        for payment_id in quote.payment_ids:
            self._check_eligible(self.store.load_payment(payment_id), as_of)

    def settle(
        self,
        quote_id: str,
        as_of: datetime | None = None,
        gateway_reference: str | None = None,
    ) -> SettlementResult:
        """
        Move every payment of a quote to COMPLETED, all or nothing.

        Raises:
            QuoteExpiredError: `as_of` is past the quote's expiry
            NotEligibleForEarlyPaymentError: a payment is no longer settleable
            ConcurrentModificationError: a payment changed since it was quoted
        """
        as_of = as_of or self.clock()
        quote = self.store.load_quote(quote_id)

        settled = self.already_settled(quote)
        if settled is not None:
            logger.info("Quote %s already settled", quote_id)
            return SettlementResult(
                quote=quote,
                transaction=self.store.load_transaction(quote.transaction_id),
                payments=settled,
                is_new=False,
                gateway_reference=settled[0].gateway_reference if settled else None,
            )

        self.check_settleable(quote, as_of)
        result = self.ledger.early_settle(quote, now=as_of, gateway_reference=gateway_reference)

        if self.emitter is not None:
            self.emitter.emit_all(list(result.events))

        return SettlementResult(
            quote=quote,
            transaction=result.transaction,
            payments=result.payments,
            is_new=True,
            gateway_reference=gateway_reference,
            events=result.events,
        )

    @staticmethod
    def _check_eligible(payment: Payment, now: datetime) -> None:
        if payment.status != PaymentStatus.SCHEDULED:
            raise NotEligibleForEarlyPaymentError(payment.id, f"payment is {payment.status.value}")
        if payment.due_at <= now:
            raise NotEligibleForEarlyPaymentError(payment.id, "payment is already due")
