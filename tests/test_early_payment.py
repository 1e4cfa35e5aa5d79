"""Tests for early-payment quotes and settlement."""

from datetime import timedelta
from decimal import Decimal

import pytest
from hypothesis import given, settings
from hypothesis import strategies as st

from bnpl_engine.domain import GatewayOutcome, Payment
from bnpl_engine.errors import (
    ConcurrentModificationError,
    EarlyPaymentDeclinedError,
    NotEligibleForEarlyPaymentError,
    NotFoundError,
    QuoteExpiredError,
)
from bnpl_engine.events.types import EarlyPaymentSettled
from bnpl_engine.gateways.stub import StubGateway
from bnpl_engine.policies import DiscountPolicy
from bnpl_engine.services.early_payment import EarlyPaymentCalculator
from bnpl_engine.services.ledger import PaymentLedger
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus
from bnpl_engine.store.memory import InMemoryStore

from conftest import NOW, make_purchase


def payment_due_in(delta: timedelta, amount: int = 5000) -> Payment:
    return Payment(id="p1", transaction_id="tx", sequence=0, amount=amount, due_at=NOW + delta)


def calculator(policy: DiscountPolicy | None = None) -> EarlyPaymentCalculator:
    return EarlyPaymentCalculator(PaymentLedger(InMemoryStore()), policy or DiscountPolicy())


class TestPricing:
    """Test the per-payment discount formula."""

    @pytest.mark.parametrize(
        "days,discount",
        [(0, 0), (1, 8), (15, 125), (29, 241), (30, 250), (43, 250)],
    )
    def test_discount_by_days_early(self, days, discount):
        """5% of 5000 earned linearly over 30 days, rounded down."""
        line = calculator().price(payment_due_in(timedelta(days=days)), NOW)

        assert line.discount == discount
        assert line.net_amount == 5000 - discount
        assert line.amount == 5000

    def test_overdue_payment_earns_nothing(self):
        line = calculator().price(payment_due_in(timedelta(days=-3)), NOW)
        assert line.discount == 0
        assert line.days_early == 0

    def test_processing_cost_floor(self):
        """Net never drops below the floor."""
        policy = DiscountPolicy(rate=Decimal("0.5"), processing_cost_floor=4000)
        line = calculator(policy).price(payment_due_in(timedelta(days=30)), NOW)

        assert line.net_amount == 4000
        assert line.discount == 1000

    def test_floor_capped_at_amount(self):
        """A floor above the payment amount never charges more than the amount."""
        policy = DiscountPolicy(processing_cost_floor=10000)
        line = calculator(policy).price(payment_due_in(timedelta(days=30)), NOW)

        assert line.net_amount == 5000
        assert line.discount == 0

    def test_quoted_version_recorded(self):
        line = calculator().price(payment_due_in(timedelta(days=5)), NOW)
        assert line.quoted_version == 0

    @given(
        amount=st.integers(min_value=0, max_value=10**9),
        seconds_early=st.integers(min_value=-(10**7), max_value=10**8),
        floor=st.integers(min_value=0, max_value=10**6),
    )
    @settings(max_examples=200)
    def test_discount_bounds(self, amount, seconds_early, floor):
        """0 <= discount <= amount * rate and min(floor, amount) <= net <= amount."""
        policy = DiscountPolicy(processing_cost_floor=floor)
        line = calculator(policy).price(
            payment_due_in(timedelta(seconds=seconds_early), amount=amount), NOW
        )

        assert 0 <= line.discount <= amount * policy.rate
        assert min(floor, amount) <= line.net_amount <= amount
        assert line.discount + line.net_amount == amount


class TestQuote:
    """Test quote creation and eligibility."""

    def test_quote_all_remaining(self, engine, approved):
        """Omitting targets quotes every future scheduled payment."""
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)

        assert quote.payment_ids == tuple(p.id for p in approved.payments)
        assert quote.gross_amount == 20000
        assert quote.discount_amount == 8 + 125 + 241 + 250
        assert quote.net_amount == 20000 - 624
        assert quote.expires_at == NOW + timedelta(minutes=15)

    def test_quote_subset_sorted_by_sequence(self, engine, approved):
        last, third = approved.payments[3], approved.payments[2]
        quote = engine.quote_early_payment(approved.transaction.id, [last.id, third.id, last.id], now=NOW)

        assert quote.payment_ids == (third.id, last.id)

    def test_quote_is_stored(self, engine, approved, store):
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        assert store.load_quote(quote.quote_id) == quote

    def test_past_due_payment_not_eligible(self, engine, approved):
        first = approved.payments[0]
        with pytest.raises(NotEligibleForEarlyPaymentError, match="already due"):
            engine.quote_early_payment(approved.transaction.id, [first.id], now=NOW + timedelta(days=2))

    def test_completed_payment_not_eligible(self, engine, approved):
        first = approved.payments[0]
        engine.confirm_payment(first.id, "pm_1", now=NOW)

        with pytest.raises(NotEligibleForEarlyPaymentError, match="completed"):
            engine.quote_early_payment(approved.transaction.id, [first.id], now=NOW)

    def test_foreign_payment_not_eligible(self, engine, approved):
        with pytest.raises(NotEligibleForEarlyPaymentError, match="not part"):
            engine.quote_early_payment(approved.transaction.id, ["someone-elses"], now=NOW)

    def test_pending_transaction_not_eligible(self, engine):
        tx = engine.create_transaction(make_purchase(), now=NOW)
        with pytest.raises(NotEligibleForEarlyPaymentError):
            engine.quote_early_payment(tx.id, now=NOW)

    def test_unknown_transaction(self, engine):
        with pytest.raises(NotFoundError):
            engine.quote_early_payment("missing", now=NOW)


class TestSettle:
    """Test settlement through the engine."""

    def test_settle_all(self, engine, gateway, approved, credit, event_log):
        """Settling every remaining payment completes the transaction."""
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        result = engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW + timedelta(minutes=5))

        assert result.is_new
        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.transaction.outstanding_amount == 0
        for payment, line in zip(result.payments, quote.lines):
            assert payment.status == PaymentStatus.COMPLETED
            assert payment.paid_amount == line.net_amount
            assert payment.discount_amount == line.discount
            assert payment.settlement_quote_id == quote.quote_id

        intent = gateway.intents[result.gateway_reference]
        assert intent["amount"] == quote.net_amount
        assert intent["metadata"]["quote_id"] == quote.quote_id
        assert credit.restored["user_1"] == 20000
        settled = event_log.of_type(EarlyPaymentSettled)
        assert len(settled) == 1
        assert settled[0].net_amount == quote.net_amount

    def test_settle_subset(self, engine, approved):
        last = approved.payments[3]
        quote = engine.quote_early_payment(approved.transaction.id, [last.id], now=NOW)
        result = engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW)

        assert result.transaction.status == TransactionStatus.PARTIALLY_PAID
        assert result.transaction.outstanding_amount == 15000
        assert engine.get_payment(approved.payments[0].id).status == PaymentStatus.SCHEDULED

    def test_settle_twice_charges_once(self, engine, gateway, approved):
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        first = engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW)
        charges = len(gateway.confirm_calls)

        second = engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW + timedelta(hours=2))

        assert second.was_duplicate
        assert second.gateway_reference == first.gateway_reference
        assert len(gateway.confirm_calls) == charges

    def test_expired_quote(self, engine, gateway, approved):
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)

        with pytest.raises(QuoteExpiredError):
            engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW + timedelta(minutes=16))

        assert gateway.confirm_calls == []
        assert all(p.status == PaymentStatus.SCHEDULED for p in engine.list_payments(approved.transaction.id))

    def test_declined_charge(self, engine, gateway, approved):
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        gateway.script(GatewayOutcome.FAILED)

        with pytest.raises(EarlyPaymentDeclinedError):
            engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW)

        assert all(p.status == PaymentStatus.SCHEDULED for p in engine.list_payments(approved.transaction.id))
        assert gateway.refunds == []

    def test_timeout_voids_charge(self, engine, gateway, approved):
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        gateway.script("timeout")

        with pytest.raises(EarlyPaymentDeclinedError, match="timeout"):
            engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW)

        assert len(gateway.refunds) == 1
        assert gateway.refunds[0].amount == quote.net_amount

    def test_payment_changed_after_quote(self, engine, gateway, approved):
        """A payment touched since quoting fails the whole settlement and refunds the charge."""
        quote = engine.quote_early_payment(approved.transaction.id, now=NOW)
        second = approved.payments[1]
        gateway.script(GatewayOutcome.FAILED)
        engine.confirm_payment(second.id, "pm_1", now=NOW)
        engine.process_due_retries(NOW + timedelta(hours=24))
        assert engine.get_payment(second.id).status == PaymentStatus.SCHEDULED

        with pytest.raises(ConcurrentModificationError):
            engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW + timedelta(minutes=5))

        assert len(gateway.refunds) == 1
        payments = engine.list_payments(approved.transaction.id)
        assert all(p.status == PaymentStatus.SCHEDULED for p in payments)
        assert engine.get_transaction(approved.transaction.id).outstanding_amount == 20000


class RacingGateway(StubGateway):
    """Gateway that runs a callback while a charge is being confirmed."""

    def __init__(self, on_confirm):
        super().__init__()
        self.on_confirm = on_confirm

    def confirm_intent(self, intent_reference, payment_method_ref, timeout):
        self.on_confirm()
        return super().confirm_intent(intent_reference, payment_method_ref, timeout)


class TestSettleRace:
    """Test losing a race between the charge and the ledger write."""

    def test_payment_cancelled_during_charge(self, store):
        from bnpl_engine.domain import CreditDecision
        from bnpl_engine.engine import InstallmentEngine

        holder = {}
        gateway = RacingGateway(lambda: holder.get("race", lambda: None)())
        engine = InstallmentEngine(store, gateway, clock=lambda: NOW)
        tx = engine.create_transaction(make_purchase(), now=NOW)
        approved = engine.approve_transaction(
            tx.id, CreditDecision(approved=True), NOW + timedelta(days=1), now=NOW
        )
        quote = engine.quote_early_payment(tx.id, now=NOW)
        holder["race"] = lambda: engine.cancel_payment(approved.payments[2].id, "operator", now=NOW)

        with pytest.raises(NotEligibleForEarlyPaymentError):
            engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW)

        assert len(gateway.refunds) == 1
        assert gateway.refunds[0].success
        statuses = [p.status for p in engine.list_payments(tx.id)]
        assert statuses.count(PaymentStatus.COMPLETED) == 0
