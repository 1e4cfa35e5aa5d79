"""Tests for the SQLAlchemy store on in-memory SQLite."""

from dataclasses import replace
from datetime import timedelta

import pytest
from sqlalchemy.orm import sessionmaker

from bnpl_engine.database import create_schema, get_engine
from bnpl_engine.domain import (
    CreditDecision,
    EarlySettlementQuote,
    LineItem,
    Payment,
    QuoteLine,
    ReconciliationResult,
    ReconciliationStatus,
    Transaction,
)
from bnpl_engine.engine import ConfirmStatus, InstallmentEngine
from bnpl_engine.errors import ConcurrentModificationError, NotFoundError
from bnpl_engine.gateways.stub import StubGateway
from bnpl_engine.services.state_machine import PaymentStatus, TransactionStatus
from bnpl_engine.store.base import RetryTimer
from bnpl_engine.store.sql import SqlAlchemyStore

from conftest import NOW, make_purchase


@pytest.fixture
def sql_store():
    db_engine = get_engine("sqlite://")
    create_schema(db_engine)
    yield SqlAlchemyStore(sessionmaker(db_engine, expire_on_commit=False, autoflush=False))
    db_engine.dispose()


def transaction(tx_id: str = "tx_1") -> Transaction:
    return Transaction(
        id=tx_id,
        user_id="user_1",
        merchant_id="merchant_1",
        principal=20000,
        currency="USD",
        installment_count=4,
        status=TransactionStatus.APPROVED,
        outstanding_amount=20000,
        items=(LineItem(name="Headphones", unit_price=20000),),
        final_due_at=NOW + timedelta(days=43),
        created_at=NOW,
        updated_at=NOW,
    )


def payment(sequence: int, tx_id: str = "tx_1", due_in_days: int = 1) -> Payment:
    return Payment(
        id=f"{tx_id}_p{sequence}",
        transaction_id=tx_id,
        sequence=sequence,
        amount=5000,
        due_at=NOW + timedelta(days=due_in_days),
    )


class TestVersioning:
    """Test optimistic versioning of transactions and payments."""

    def test_insert_and_load(self, sql_store):
        stored = sql_store.save_transaction(transaction(), expected_version=None)
        loaded = sql_store.load_transaction("tx_1")

        assert stored.version == 1
        assert loaded == stored
        assert loaded.items == (LineItem(name="Headphones", unit_price=20000),)
        assert loaded.final_due_at.tzinfo is not None

    def test_update_increments_version(self, sql_store):
        stored = sql_store.save_transaction(transaction(), expected_version=None)

        updated = sql_store.save_transaction(
            replace(stored, outstanding_amount=15000, status=TransactionStatus.PARTIALLY_PAID),
            expected_version=stored.version,
        )

        assert updated.version == 2
        assert sql_store.load_transaction("tx_1").outstanding_amount == 15000

    def test_stale_version_rejected(self, sql_store):
        stored = sql_store.save_transaction(transaction(), expected_version=None)
        sql_store.save_transaction(replace(stored, decision_reason="a"), expected_version=1)

        with pytest.raises(ConcurrentModificationError) as exc_info:
            sql_store.save_transaction(replace(stored, decision_reason="b"), expected_version=1)

        assert exc_info.value.actual_version == 2
        assert sql_store.load_transaction("tx_1").decision_reason == "a"

    def test_duplicate_insert_rejected(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        with pytest.raises(ConcurrentModificationError):
            sql_store.save_transaction(transaction(), expected_version=None)

    def test_payment_versioning(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        stored = sql_store.save_payment(payment(0), expected_version=None)

        processing = sql_store.save_payment(
            replace(stored, status=PaymentStatus.PROCESSING, gateway_reference="pi_1"),
            expected_version=1,
        )

        assert processing.version == 2
        with pytest.raises(ConcurrentModificationError):
            sql_store.save_payment(replace(stored, status=PaymentStatus.CANCELLED), expected_version=1)
        assert sql_store.load_payment(stored.id).status == PaymentStatus.PROCESSING

    def test_missing_rows(self, sql_store):
        with pytest.raises(NotFoundError):
            sql_store.load_transaction("missing")
        with pytest.raises(NotFoundError):
            sql_store.load_payment("missing")
        with pytest.raises(NotFoundError):
            sql_store.load_quote("missing")


class TestAtomic:
    """Test units of work."""

    def test_commit(self, sql_store):
        with sql_store.atomic():
            sql_store.save_transaction(transaction(), expected_version=None)
            sql_store.save_payment(payment(0), expected_version=None)

        assert [p.id for p in sql_store.list_payments("tx_1")] == ["tx_1_p0"]

    def test_rollback_on_error(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)

        with pytest.raises(ConcurrentModificationError):
            with sql_store.atomic():
                sql_store.save_payment(payment(0), expected_version=None)
                sql_store.save_transaction(transaction(), expected_version=7)

        assert sql_store.list_payments("tx_1") == []
        assert sql_store.load_transaction("tx_1").version == 1

    def test_nested_block_joins_outer(self, sql_store):
        with pytest.raises(RuntimeError):
            with sql_store.atomic():
                sql_store.save_transaction(transaction(), expected_version=None)
                with sql_store.atomic():
                    sql_store.save_payment(payment(0), expected_version=None)
                raise RuntimeError("boom")

        with pytest.raises(NotFoundError):
            sql_store.load_transaction("tx_1")

    def test_reads_inside_block_see_writes(self, sql_store):
        with sql_store.atomic():
            sql_store.save_transaction(transaction(), expected_version=None)
            assert sql_store.load_transaction("tx_1").version == 1


class TestQueries:
    """Test payment queries."""

    def test_list_payments_ordered_by_sequence(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        for sequence in (2, 0, 1):
            sql_store.save_payment(payment(sequence, due_in_days=1 + 14 * sequence), expected_version=None)

        assert [p.sequence for p in sql_store.list_payments("tx_1")] == [0, 1, 2]

    def test_list_by_status_due_before_inclusive(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        sql_store.save_payment(payment(0, due_in_days=1), expected_version=None)
        sql_store.save_payment(payment(1, due_in_days=15), expected_version=None)

        due = sql_store.list_payments_by_status(PaymentStatus.SCHEDULED, due_before=NOW + timedelta(days=1))

        assert [p.sequence for p in due] == [0]
        assert due[0].due_at == NOW + timedelta(days=1)
        assert len(sql_store.list_payments_by_status(PaymentStatus.SCHEDULED)) == 2
        assert sql_store.list_payments_by_status(PaymentStatus.FAILED) == []

    def test_find_by_intent(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        sql_store.save_payment(replace(payment(0), gateway_reference="pi_42"), expected_version=None)

        assert sql_store.find_payment_by_intent("pi_42").id == "tx_1_p0"
        assert sql_store.find_payment_by_intent("pi_other") is None


class TestGatewayEvents:
    """Test processed-event bookkeeping."""

    def test_record_once(self, sql_store):
        result = ReconciliationResult(
            event_id="evt_1",
            status=ReconciliationStatus.APPLIED,
            payment_id="tx_1_p0",
            payment_status=PaymentStatus.COMPLETED,
            message="payment completed",
        )

        assert sql_store.record_gateway_event(result) is True
        assert sql_store.record_gateway_event(result) is False
        assert sql_store.get_gateway_event("evt_1") == result
        assert sql_store.get_gateway_event("evt_2") is None

    def test_stale_event_without_payment(self, sql_store):
        result = ReconciliationResult(event_id="evt_3", status=ReconciliationStatus.STALE)
        sql_store.record_gateway_event(result)

        assert sql_store.get_gateway_event("evt_3").payment_status is None


class TestRetryTimers:
    """Test retry timer rows."""

    def test_upsert_replaces(self, sql_store):
        sql_store.upsert_retry_timer(RetryTimer("p1", NOW + timedelta(hours=24)))
        sql_store.upsert_retry_timer(RetryTimer("p1", NOW + timedelta(hours=72)))

        assert sql_store.get_retry_timer("p1") == RetryTimer("p1", NOW + timedelta(hours=72))

    def test_due_timers_oldest_first(self, sql_store):
        sql_store.upsert_retry_timer(RetryTimer("late", NOW + timedelta(hours=2)))
        sql_store.upsert_retry_timer(RetryTimer("early", NOW + timedelta(hours=1)))
        sql_store.upsert_retry_timer(RetryTimer("future", NOW + timedelta(days=3)))

        due = sql_store.list_due_retry_timers(NOW + timedelta(hours=2))

        assert [t.payment_id for t in due] == ["early", "late"]

    def test_delete(self, sql_store):
        sql_store.upsert_retry_timer(RetryTimer("p1", NOW))
        sql_store.delete_retry_timer("p1")
        sql_store.delete_retry_timer("p1")

        assert sql_store.get_retry_timer("p1") is None


class TestQuotes:
    """Test quote persistence."""

    def test_round_trip(self, sql_store):
        sql_store.save_transaction(transaction(), expected_version=None)
        quote = EarlySettlementQuote(
            quote_id="q_1",
            transaction_id="tx_1",
            lines=(
                QuoteLine("tx_1_p2", 5000, 29.0, 241, 4759, 1),
                QuoteLine("tx_1_p3", 5000, 43.0, 250, 4750, 1),
            ),
            created_at=NOW,
            expires_at=NOW + timedelta(minutes=15),
        )

        sql_store.save_quote(quote)

        assert sql_store.load_quote("q_1") == quote


class TestEngineOnSql:
    """Run the facade against the SQL store."""

    def test_full_lifecycle(self, sql_store):
        gateway = StubGateway()
        engine = InstallmentEngine(sql_store, gateway, clock=lambda: NOW)

        tx = engine.create_transaction(make_purchase(), now=NOW)
        approved = engine.approve_transaction(
            tx.id, CreditDecision(approved=True), NOW + timedelta(days=1), now=NOW
        )
        first, *rest = approved.payments

        confirmed = engine.confirm_payment(first.id, "pm_1", now=NOW + timedelta(days=1))
        assert confirmed.status == ConfirmStatus.SUCCEEDED

        quote = engine.quote_early_payment(tx.id, now=NOW + timedelta(days=1))
        assert quote.payment_ids == tuple(p.id for p in rest)
        result = engine.settle_early_payment(quote.quote_id, "pm_1", as_of=NOW + timedelta(days=1))

        assert result.transaction.status == TransactionStatus.COMPLETED
        assert result.transaction.outstanding_amount == 0
        stored = sql_store.list_payments(tx.id)
        assert all(p.status == PaymentStatus.COMPLETED for p in stored)
        assert stored[0].version == 3
        assert engine.settle_early_payment(quote.quote_id, "pm_1").was_duplicate

    def test_failed_payment_retry_timer(self, sql_store):
        gateway = StubGateway()
        engine = InstallmentEngine(sql_store, gateway, clock=lambda: NOW)
        tx = engine.create_transaction(make_purchase(), now=NOW)
        approved = engine.approve_transaction(
            tx.id, CreditDecision(approved=True), NOW + timedelta(days=1), now=NOW
        )
        payment_id = approved.payments[0].id
        gateway.script("failed")

        engine.confirm_payment(payment_id, "pm_1", now=NOW)
        run = engine.process_due_retries(NOW + timedelta(hours=24))

        assert run.rescheduled == [payment_id]
        rescheduled = sql_store.load_payment(payment_id)
        assert rescheduled.status == PaymentStatus.SCHEDULED
        assert rescheduled.retry_count == 1
        assert rescheduled.due_at == NOW + timedelta(hours=24)
        assert sql_store.get_retry_timer(payment_id) is None
