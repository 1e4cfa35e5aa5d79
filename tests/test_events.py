"""Tests for domain events, the emitter and downstream collaborators."""

import json
from datetime import timedelta

import pytest

from bnpl_engine.collaborators import InMemoryCreditLedger, register_collaborators
from bnpl_engine.domain import CreditDecision, GatewayOutcome
from bnpl_engine.engine import ConfirmStatus, InstallmentEngine
from bnpl_engine.events.emitter import EventEmitter
from bnpl_engine.events.types import (
    EarlyPaymentSettled,
    EventCategory,
    EventMetadata,
    PaymentCompleted,
    PaymentFailed,
    TransactionCancelled,
)
from bnpl_engine.metrics import Counter, EngineMetrics, Gauge, MetricsRecorder
from bnpl_engine.services.state_machine import PaymentStatus

from conftest import NOW, EventLog, make_purchase


def completed(amount: int = 5000, user_id: str = "user_1") -> PaymentCompleted:
    return PaymentCompleted(
        metadata=EventMetadata.create(),
        payment_id="p1",
        transaction_id="tx_1",
        user_id=user_id,
        amount=amount,
        paid_amount=amount,
        paid_at=NOW,
        gateway_reference="pi_1",
    )


def failed() -> PaymentFailed:
    return PaymentFailed(
        metadata=EventMetadata.create(),
        payment_id="p1",
        transaction_id="tx_1",
        user_id="user_1",
        amount=5000,
        retry_count=1,
        failure_reason="card_declined",
    )


class TestEventSerialization:
    """Test event payloads."""

    def test_to_dict(self):
        data = completed().to_dict()

        assert data["event_type"] == "PaymentCompleted"
        assert data["amount"] == 5000
        assert data["paid_at"] == NOW.isoformat()
        assert isinstance(data["metadata"]["event_id"], str)
        assert data["metadata"]["source_service"] == "bnpl_engine"

    def test_to_json(self):
        assert json.loads(completed().to_json())["payment_id"] == "p1"

    def test_categories(self):
        assert completed().category == EventCategory.PAYMENT


class TestEmitter:
    """Test handler registration and isolation."""

    def test_type_filter(self):
        emitter = EventEmitter()
        log = EventLog()
        emitter.on(PaymentCompleted, log)

        emitter.emit(completed())
        emitter.emit(failed())

        assert log.types() == ["PaymentCompleted"]

    def test_category_filter(self):
        emitter = EventEmitter()
        log = EventLog()
        emitter.on_category(EventCategory.TRANSACTION, log)

        emitter.emit(completed())

        assert log.events == []

    def test_failing_handler_isolated(self):
        emitter = EventEmitter()
        log = EventLog()

        def broken(event):
            raise RuntimeError("notifier down")

        emitter.on_all(broken)
        emitter.on_all(log)

        errors = emitter.emit(completed())

        assert len(errors) == 1
        assert isinstance(errors[0], RuntimeError)
        assert len(log.events) == 1

    def test_off(self):
        emitter = EventEmitter()
        log = EventLog()
        emitter.on_all(log)
        emitter.off(log)

        emitter.emit(completed())

        assert log.events == []

    def test_batch_emits_on_exit(self):
        emitter = EventEmitter()
        log = EventLog()
        emitter.on_all(log)

        with emitter.batch() as batch:
            batch.add(completed())
            batch.add(failed())
            assert log.events == []

        assert log.types() == ["PaymentCompleted", "PaymentFailed"]
        assert batch.errors == []

    def test_batch_discarded_on_error(self):
        emitter = EventEmitter()
        log = EventLog()
        emitter.on_all(log)

        with pytest.raises(ValueError):
            with emitter.batch() as batch:
                batch.add(completed())
                raise ValueError("step failed")

        assert log.events == []
        emitter.emit(failed())
        assert log.types() == ["PaymentFailed"]


class TestCollaborators:
    """Test credit and notification wiring."""

    def test_credit_restored_on_completion(self):
        emitter = EventEmitter()
        credit = InMemoryCreditLedger()
        register_collaborators(emitter, credit=credit)

        emitter.emit(completed(amount=5000))
        emitter.emit(completed(amount=2500))

        assert credit.restored == {"user_1": 7500}

    def test_credit_restored_by_gross_on_early_settlement(self):
        emitter = EventEmitter()
        credit = InMemoryCreditLedger()
        register_collaborators(emitter, credit=credit)

        emitter.emit(
            EarlyPaymentSettled(
                metadata=EventMetadata.create(),
                quote_id="q_1",
                transaction_id="tx_1",
                user_id="user_1",
                payment_ids=("p2", "p3"),
                gross_amount=10000,
                discount_amount=491,
                net_amount=9509,
                gateway_reference="pi_2",
            )
        )

        assert credit.restored == {"user_1": 10000}

    def test_cancel_releases_outstanding(self):
        emitter = EventEmitter()
        credit = InMemoryCreditLedger()
        register_collaborators(emitter, credit=credit)

        emitter.emit(
            TransactionCancelled(
                metadata=EventMetadata.create(),
                transaction_id="tx_1",
                user_id="user_1",
                cancelled_payment_ids=("p1",),
                outstanding_amount=20000,
                reason=None,
            )
        )

        assert credit.released == {"user_1": 20000}
        assert credit.restored == {}

    def test_notifier_sees_user_events(self, engine, approved, gateway, notifier):
        gateway.script(GatewayOutcome.FAILED)
        engine.confirm_payment(approved.payments[0].id, "pm_1", now=NOW)

        assert "TransactionApproved" in notifier.types()
        assert "PaymentFailed" in notifier.types()
        assert "TransactionCreated" not in notifier.types()
        assert "PaymentAttemptStarted" not in notifier.types()

    def test_notifier_sees_manual_cancel(self, engine, approved, notifier):
        engine.cancel_payment(approved.payments[3].id, "operator", now=NOW)

        assert "PaymentCancelled" in notifier.types()

    def test_broken_collaborator_does_not_undo_commit(self, store, gateway):
        """A failing notifier is logged; the ledger transition stands."""

        class BrokenNotifier:
            def notify(self, event):
                raise ConnectionError("smtp unavailable")

        engine = InstallmentEngine(store, gateway, notifier=BrokenNotifier(), clock=lambda: NOW)
        tx = engine.create_transaction(make_purchase(), now=NOW)
        approved = engine.approve_transaction(
            tx.id, CreditDecision(approved=True), NOW + timedelta(days=1), now=NOW
        )

        confirmed = engine.confirm_payment(approved.payments[0].id, "pm_1", now=NOW)

        assert confirmed.status == ConfirmStatus.SUCCEEDED
        assert engine.get_payment(approved.payments[0].id).status == PaymentStatus.COMPLETED


class TestMetrics:
    """Test event counters and exports."""

    def test_recorder_counts_by_type(self):
        recorder = MetricsRecorder()
        recorder(completed())
        recorder(completed())
        recorder(failed())

        assert recorder.count("PaymentCompleted") == 2
        assert recorder.count("PaymentFailed") == 1
        assert recorder.count("PaymentCancelled") == 0

    def test_snapshot_with_store(self, engine, approved):
        snapshot = engine.metrics_snapshot()

        gauges = {(g.name, g.labels.get("status")): g.value for g in snapshot.gauges}
        assert gauges[("bnpl_payments_open", "scheduled")] == 4
        assert gauges[("bnpl_payments_open", "failed")] == 0
        assert gauges[("bnpl_retry_timers_due", None)] == 0

    def test_prometheus_describes_each_name_once(self):
        snapshot = EngineMetrics(
            counters=[
                Counter("bnpl_domain_events_total", 2, {"event_type": "payment_completed"}, "Events"),
                Counter("bnpl_domain_events_total", 1, {"event_type": "payment_failed"}, "Events"),
            ],
            gauges=[Gauge("bnpl_retry_timers_due", 0, help_text="Due timers")],
        )

        text = snapshot.to_prometheus()

        assert text.count("# TYPE bnpl_domain_events_total counter") == 1
        assert text.count("# HELP bnpl_domain_events_total Events") == 1
        assert 'bnpl_domain_events_total{event_type="payment_failed"} 1' in text
        assert "# TYPE bnpl_retry_timers_due gauge" in text
        assert "bnpl_retry_timers_due 0" in text

    def test_json_export(self):
        snapshot = MetricsRecorder().snapshot()
        data = json.loads(snapshot.to_json())

        assert data["counters"] == []
        assert data["gauges"] == []
        assert "collected_at" in data
